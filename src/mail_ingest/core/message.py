# =============================================================================
# Message Models
# =============================================================================
# The per-cycle data the ingestion pipeline works with:
#   - MessageRef: the identifier of one mailbox entry (UID + UIDVALIDITY)
#   - MessageHandle: a fetched message (raw bytes + parsed headers + flags)
#   - FetchBatch: the ordered, bounded list of refs produced by one poll cycle
#
# IMAP UIDs are only meaningful together with the folder's UIDVALIDITY. A
# reconnect may hand us a new UIDVALIDITY, at which point every ref from the
# old session is stale and must not be used to fetch or flag anything.
# =============================================================================

import email
import email.policy
from dataclasses import dataclass, field
from email.message import EmailMessage
from functools import cached_property


@dataclass(frozen=True, order=True)
class MessageRef:
    """
    Identifier of one message within a mailbox session.

    Ordering is by UID, which on IMAP servers is strictly ascending in
    arrival order, so sorting refs gives oldest-first.
    """
    uid: int
    uidvalidity: int | None = None

    @property
    def key(self) -> str:
        """Fallback delivery key when the message carries no Message-ID."""
        return f"{self.uidvalidity or 0}:{self.uid}"

    def __str__(self) -> str:
        return f"uid={self.uid}"


@dataclass
class MessageHandle:
    """
    One fetched mailbox entry.

    Attributes:
        ref: Identifier the message was fetched with.
        raw: Full RFC 5322 message bytes exactly as the server returned them.
        flags: IMAP flags at fetch time (e.g. {"\\Seen"}). Informational only;
               the server is authoritative for the processed state.
    """
    ref: MessageRef
    raw: bytes
    flags: frozenset[str] = field(default_factory=frozenset)

    @cached_property
    def headers(self) -> EmailMessage:
        """Parsed message (headers are read eagerly, bodies on demand)."""
        return email.message_from_bytes(self.raw, policy=email.policy.default)

    @property
    def uid(self) -> int:
        return self.ref.uid

    @property
    def message_id(self) -> str | None:
        value = self.headers.get("Message-ID")
        return str(value).strip() if value else None

    @property
    def subject(self) -> str:
        return str(self.headers.get("Subject", ""))

    @property
    def sender(self) -> str:
        return str(self.headers.get("From", ""))

    @property
    def processed(self) -> bool:
        """Whether the server reported \\Seen when we fetched it."""
        return "\\Seen" in self.flags

    @property
    def delivery_key(self) -> str:
        """
        Stable key for de-duplication.

        Message-ID survives reconnects and UIDVALIDITY changes, so prefer it.
        """
        return self.message_id or self.ref.key

    def __repr__(self) -> str:
        return (
            f"MessageHandle(uid={self.ref.uid}, message_id={self.message_id!r}, "
            f"size={len(self.raw)})"
        )


@dataclass
class FetchBatch:
    """
    Ordered refs for one poll cycle, oldest first, at most max_size long.
    """
    refs: list[MessageRef]
    max_size: int

    def __post_init__(self) -> None:
        if self.max_size < 1:
            raise ValueError(f"max_size must be positive, got {self.max_size}")
        if len(self.refs) > self.max_size:
            raise ValueError(
                f"batch of {len(self.refs)} exceeds max_size {self.max_size}"
            )

    @classmethod
    def from_uids(
        cls,
        uids: list[int],
        max_size: int,
        uidvalidity: int | None = None,
    ) -> "FetchBatch":
        """Build a batch from unordered UIDs: sort ascending, keep the oldest."""
        ordered = sorted(set(uids))[:max_size]
        return cls(
            refs=[MessageRef(uid, uidvalidity) for uid in ordered],
            max_size=max_size,
        )

    def __iter__(self):
        return iter(self.refs)

    def __len__(self) -> int:
        return len(self.refs)

    def __bool__(self) -> bool:
        return bool(self.refs)
