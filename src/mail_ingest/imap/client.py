# =============================================================================
# Mailbox Client
# =============================================================================
# Async IMAP client wrapper around aioimaplib, reduced to exactly what a
# polling ingester needs.
#
# Key responsibilities:
#   - Connection lifecycle (connect, reuse across cycles, close, reconnect)
#   - Authentication over an encrypted transport (implicit TLS or STARTTLS)
#   - Listing unseen messages oldest-first, bounded by a batch size
#   - Fetching one message without touching its \Seen flag (BODY.PEEK)
#   - Marking a message processed (\Seen), idempotently
#
# Design notes:
#   - One client owns one MailboxConnection; nothing else talks to the server
#   - Every low-level failure is translated into the MailboxError taxonomy at
#     the bottom of this module so the retry layer can classify it
#   - An expired session (server BYE, dropped socket, aioimaplib Abort) gets
#     one transparent reconnect-and-retry of the failed operation
#   - Messages are never deleted or expunged
# =============================================================================

import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from aioimaplib import aioimaplib

from mail_ingest.core import FetchBatch, MailboxAccount, MessageHandle, MessageRef

if TYPE_CHECKING:
    from mail_ingest.imap.credentials import CredentialProvider

logger = logging.getLogger(__name__)

# Low-level exceptions that mean "the network let us down"
_NETWORK_ERRORS = (asyncio.TimeoutError, aioimaplib.CommandTimeout, OSError)

# "... BODY[] {1234}" at the end of a FETCH line announces a literal
_LITERAL_RE = re.compile(r"\{(\d+)\}\s*$")
_UID_RE = re.compile(r"UID\s+(\d+)", re.IGNORECASE)
_FLAGS_RE = re.compile(r"FLAGS\s+\(([^)]*)\)", re.IGNORECASE)
_UIDVALIDITY_RE = re.compile(r"UIDVALIDITY\s+(\d+)", re.IGNORECASE)


def _quote_folder_name(name: str) -> str:
    """
    Quote an IMAP folder name if it contains special characters.

    IMAP folder names with spaces or special characters must be quoted,
    with internal quotes and backslashes escaped.
    """
    if ' ' in name or '"' in name or '\\' in name or any(c in name for c in '(){}[]'):
        escaped = name.replace('\\', '\\\\').replace('"', '\\"')
        return f'"{escaped}"'
    return name


def _decode(line: Any) -> str:
    if isinstance(line, (bytes, bytearray)):
        return bytes(line).decode("utf-8", errors="replace")
    return str(line)


def _default_imap_factory(account: MailboxAccount) -> Any:
    """
    Create the aioimaplib protocol object for an account.

    There is no plaintext branch: "starttls" starts on a plain socket but
    the client refuses to LOGIN until the upgrade has happened.
    """
    if account.security == "ssl":
        return aioimaplib.IMAP4_SSL(
            host=account.host,
            port=account.port,
            timeout=account.timeout,
        )
    if account.security == "starttls":
        return aioimaplib.IMAP4(
            host=account.host,
            port=account.port,
            timeout=account.timeout,
        )
    raise MailboxProtocolError(f"Unsupported security mode: {account.security!r}")


# Builds an aioimaplib-compatible object for an account (overridable in tests)
ImapFactory = Callable[[MailboxAccount], Any]


class SessionState(Enum):
    """Lifecycle of the single mailbox session."""
    CLOSED = auto()         # No session (initial, or after close())
    CONNECTING = auto()     # Handshake / LOGIN / SELECT in progress
    OPEN = auto()           # Authenticated, folder selected, reusable
    FAILED = auto()         # Last operation broke the session; reconnect needed


@dataclass
class MailboxConnection:
    """
    One authenticated session to the remote mailbox.

    Attributes:
        account: Endpoint and login name of this session.
        state: Current session state.
        uidvalidity: UIDVALIDITY of the selected folder. Refs carrying a
                     different value belong to an older session.
        capabilities: Server capabilities from the greeting.
    """
    account: MailboxAccount
    state: SessionState = SessionState.CLOSED
    uidvalidity: int | None = None
    capabilities: list[str] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN


class MailboxClient:
    """
    Owns the connection to one mailbox folder.

    Usage:
        >>> client = MailboxClient(account, KeyringCredentials())
        >>> await client.connect()
        >>> batch = await client.list_unseen(max_batch=10)
        >>> for ref in batch:
        ...     message = await client.fetch(ref)
        ...     await client.mark_processed(ref)
        >>> await client.close()

    The connection is opened lazily by any operation and reused across poll
    cycles until it fails or close() is called.
    """

    # Flag that means "processed" on the server
    PROCESSED_FLAG = "\\Seen"

    def __init__(
        self,
        account: MailboxAccount,
        credentials: "CredentialProvider",
        imap_factory: ImapFactory | None = None,
    ) -> None:
        self.account = account
        self.credentials = credentials
        self.connection = MailboxConnection(account=account)
        self._imap_factory = imap_factory or _default_imap_factory
        self._imap: Any = None

    @property
    def state(self) -> SessionState:
        return self.connection.state

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self) -> MailboxConnection:
        """
        Open, authenticate and select the folder.

        Reuses the current session when it is already open. A FAILED session
        is closed before a new one is opened.

        Raises:
            MailboxAuthError: Credentials rejected or missing (fatal).
            MailboxProtocolError: TLS/folder/configuration mismatch (fatal).
            MailboxNetworkError: Server unreachable or timed out (transient).
        """
        if self.connection.is_open:
            return self.connection

        if self._imap is not None:
            await self.close()

        self.connection.state = SessionState.CONNECTING
        logger.info(f"Connecting to {self.account.store_url}")

        try:
            imap = self._imap_factory(self.account)
            self._imap = imap

            await imap.wait_hello_from_server()
            self.connection.capabilities = list(getattr(imap.protocol, "capabilities", []))

            if self.account.security == "starttls":
                if not imap.has_capability("STARTTLS"):
                    raise MailboxProtocolError(
                        f"{self.account.host} does not offer STARTTLS; refusing plaintext login"
                    )
                logger.debug("Upgrading to TLS via STARTTLS")
                await imap.starttls()

            password = self.credentials.get_password(self.account)
            response = await imap.login(self.account.username, password)
            if response.result != "OK":
                raise MailboxAuthError(f"Authentication failed for {self.account.username}")

            response = await imap.select(_quote_folder_name(self.account.folder))
            if response.result != "OK":
                raise MailboxProtocolError(
                    f"Cannot select folder {self.account.folder!r}: {response.result}"
                )
            self._update_uidvalidity(response.lines)

        except MailboxError:
            self.connection.state = SessionState.FAILED
            raise
        except aioimaplib.Abort as e:
            self.connection.state = SessionState.FAILED
            raise MailboxNetworkError(f"Connection to {self.account.host} aborted: {e}") from e
        except _NETWORK_ERRORS as e:
            self.connection.state = SessionState.FAILED
            raise MailboxNetworkError(
                f"Failed to connect to {self.account.host}:{self.account.port}: {e!r}"
            ) from e

        self.connection.state = SessionState.OPEN
        logger.info(f"Connected to {self.account.host}, folder {self.account.folder}")
        return self.connection

    async def close(self) -> None:
        """
        Log out and release the session.

        Safe to call in any state and more than once. Errors while logging
        out are logged and dropped: the socket is going away regardless.
        """
        imap, self._imap = self._imap, None
        if imap is not None:
            try:
                logger.debug("Sending LOGOUT")
                await asyncio.wait_for(imap.logout(), timeout=self.account.timeout)
            except Exception as e:
                logger.warning(f"Error during logout: {e!r}")
        self.connection.state = SessionState.CLOSED

    def _update_uidvalidity(self, lines: list) -> None:
        for line in lines:
            match = _UIDVALIDITY_RE.search(_decode(line))
            if match:
                value = int(match.group(1))
                previous = self.connection.uidvalidity
                if previous is not None and previous != value:
                    logger.warning(
                        f"UIDVALIDITY of {self.account.folder} changed "
                        f"({previous} -> {value}); older message refs are stale"
                    )
                self.connection.uidvalidity = value
                return

    # =========================================================================
    # Session Guard
    # =========================================================================

    async def _run(
        self,
        operation: str,
        command: Callable[[Any], Awaitable[Any]],
        ref: MessageRef | None = None,
    ) -> Any:
        """
        Run one IMAP command on an open session.

        An expired session is reconnected once and the command retried; a
        second failure propagates. When the command targets ref, the ref is
        checked against the new session's UIDVALIDITY before the retry.
        """
        await self.connect()
        try:
            return await self._guarded(operation, command)
        except SessionExpiredError as e:
            logger.info(f"Session expired during {operation} ({e}); reconnecting once")
            await self.close()
            await self.connect()
            if ref is not None:
                self._check_current(ref)
            return await self._guarded(operation, command)

    async def _guarded(self, operation: str, command: Callable[[Any], Awaitable[Any]]) -> Any:
        try:
            response = await command(self._imap)
        except aioimaplib.Abort as e:
            self.connection.state = SessionState.FAILED
            raise SessionExpiredError(f"{operation}: {e}") from e
        except _NETWORK_ERRORS as e:
            self.connection.state = SessionState.FAILED
            raise MailboxNetworkError(f"{operation} failed: {e!r}") from e

        if response.result == "OK":
            return response
        if response.result == "BYE":
            self.connection.state = SessionState.FAILED
            raise SessionExpiredError(f"{operation}: server closed the session")
        if response.result == "NO":
            # NO on an established session is the server saying "not now"
            raise MailboxNetworkError(f"{operation} refused by server: {response.lines}")
        raise MailboxProtocolError(f"{operation} rejected: {response.result} {response.lines}")

    def _check_current(self, ref: MessageRef) -> None:
        """Refuse to act on a UID from a previous UIDVALIDITY epoch."""
        if (
            ref.uidvalidity is not None
            and self.connection.uidvalidity is not None
            and ref.uidvalidity != self.connection.uidvalidity
        ):
            raise MessageNotFoundError(
                f"{ref} belongs to UIDVALIDITY {ref.uidvalidity}, "
                f"mailbox is now at {self.connection.uidvalidity}"
            )

    # =========================================================================
    # Message Operations
    # =========================================================================

    async def list_unseen(self, max_batch: int) -> FetchBatch:
        """List up to max_batch unprocessed messages, oldest first."""
        response = await self._run(
            "UID SEARCH",
            lambda imap: imap.uid_search("UNSEEN", charset=None),
        )
        uids = _parse_search_response(response.lines)
        batch = FetchBatch.from_uids(uids, max_batch, self.connection.uidvalidity)
        logger.debug(f"{len(uids)} unseen in {self.account.folder}, batch of {len(batch)}")
        return batch

    async def fetch(self, ref: MessageRef) -> MessageHandle:
        """
        Fetch one message without setting \\Seen.

        Raises:
            MessageNotFoundError: The message is gone (expunged elsewhere) or
                                  ref is from an older UIDVALIDITY.
        """
        await self.connect()
        self._check_current(ref)

        response = await self._run(
            "UID FETCH",
            lambda imap: imap.uid("FETCH", str(ref.uid), "(UID FLAGS BODY.PEEK[])"),
            ref=ref,
        )

        raw, flags = _parse_fetch_response(response.lines, ref.uid)
        if raw is None:
            raise MessageNotFoundError(f"{ref} no longer exists in {self.account.folder}")
        return MessageHandle(ref=ref, raw=raw, flags=flags)

    async def mark_processed(self, ref: MessageRef) -> None:
        """
        Add \\Seen to a message.

        Idempotent: STORE of a flag that is already set is a no-op on the
        server, and a repeated call succeeds silently.
        """
        await self.connect()
        self._check_current(ref)

        await self._run(
            "UID STORE",
            lambda imap: imap.uid("STORE", str(ref.uid), f"+FLAGS.SILENT ({self.PROCESSED_FLAG})"),
            ref=ref,
        )
        logger.debug(f"Marked {ref} processed")


# =============================================================================
# Response Parsing
# =============================================================================

def _parse_search_response(lines: list) -> list[int]:
    """
    Extract UIDs from a SEARCH response.

    aioimaplib returns the numbers as one line (with or without the leading
    "SEARCH" keyword) followed by the completion line.
    """
    uids: list[int] = []
    for line in lines:
        tokens = _decode(line).split()
        if tokens and tokens[0].upper() == "SEARCH":
            tokens = tokens[1:]
        if tokens and all(token.isdigit() for token in tokens):
            uids.extend(int(token) for token in tokens)
    return uids


def _parse_fetch_response(lines: list, uid: int) -> tuple[bytes | None, frozenset[str]]:
    """
    Pull the message literal and flags out of a UID FETCH response.

    aioimaplib delivers the literal announced by "{N}" as the item right
    after the line that announces it. Returns (None, empty) when the server
    sent no FETCH data for the UID.
    """
    raw: bytes | None = None
    meta = ""
    literal_size: int | None = None

    for item in lines:
        if literal_size is not None:
            data = bytes(item) if isinstance(item, (bytes, bytearray)) else str(item).encode()
            raw = data[:literal_size]
            literal_size = None
            continue

        text = _decode(item)
        meta += " " + text
        match = _LITERAL_RE.search(text)
        if match:
            literal_size = int(match.group(1))

    if raw is None:
        return None, frozenset()

    uid_match = _UID_RE.search(meta)
    if uid_match and int(uid_match.group(1)) != uid:
        return None, frozenset()

    flags_match = _FLAGS_RE.search(meta)
    flags = frozenset(flags_match.group(1).split()) if flags_match else frozenset()
    return raw, flags


# =============================================================================
# Exceptions
# =============================================================================

class MailboxError(Exception):
    """Base exception for mailbox operations."""
    pass


class MailboxNetworkError(MailboxError):
    """Server unreachable, timed out or temporarily unavailable."""
    pass


class SessionExpiredError(MailboxError):
    """The server dropped or closed an established session."""
    pass


class MailboxAuthError(MailboxError):
    """Credentials were rejected or could not be found."""
    pass


class MailboxProtocolError(MailboxError):
    """The server and our configuration disagree (TLS, folder, syntax)."""
    pass


class MessageNotFoundError(MailboxError):
    """The message disappeared between listing and use."""
    pass
