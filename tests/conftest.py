# =============================================================================
# Pytest Configuration and Fixtures
# =============================================================================
# Shared fixtures for the mail-ingest test suite.
#
# FakeMailServer stands in for a real IMAP server: it hands out FakeIMAP
# objects that speak the subset of the aioimaplib API MailboxClient uses,
# with the same Response(result, lines) shapes, so the client's parsing and
# session handling run for real without a network.
# =============================================================================

import pytest
from aioimaplib import aioimaplib

from mail_ingest.config import AccountConfig, Config, PollingConfig, RetryConfig
from mail_ingest.core import MailboxAccount
from mail_ingest.imap import MailboxClient, StaticCredentials
from mail_ingest.ingest import DeliveryOutcome, RetryPolicy

PASSWORD = "s3cret"


def make_raw(subject: str, message_id: str | None = None) -> bytes:
    """Build a small RFC 5322 message."""
    headers = [
        "From: Sender <sender@example.com>",
        "To: intake@example.com",
        f"Subject: {subject}",
    ]
    if message_id:
        headers.append(f"Message-ID: {message_id}")
    return ("\r\n".join(headers) + "\r\n\r\nBody of " + subject + "\r\n").encode()


class FakeMailServer:
    """
    In-memory mailbox with failure injection.

    Attributes:
        messages: uid -> [raw bytes, set of flags]
        failures: operation name -> queue of things to do instead of the
                  real operation (an exception to raise, or a result string
                  such as "BYE" or "NO" to answer with)
    """

    def __init__(self) -> None:
        self.messages: dict[int, list] = {}
        self.uidvalidity = 42
        self.password = PASSWORD
        self.folders = {"INBOX"}
        self.capabilities = {"IMAP4REV1", "IDLE", "STARTTLS"}
        self.failures: dict[str, list] = {}
        self.connections: list["FakeIMAP"] = []
        self.logins = 0
        self.fetches: list[int] = []
        self.stores: list[int] = []
        self._next_uid = 1

    def add(self, subject: str, message_id: str | None = None, seen: bool = False) -> int:
        uid = self._next_uid
        self._next_uid += 1
        flags = {"\\Seen"} if seen else set()
        self.messages[uid] = [make_raw(subject, message_id), flags]
        return uid

    def seen(self, uid: int) -> bool:
        return "\\Seen" in self.messages[uid][1]

    def fail(self, operation: str, *outcomes) -> None:
        self.failures.setdefault(operation, []).extend(outcomes)

    def factory(self, account: MailboxAccount) -> "FakeIMAP":
        imap = FakeIMAP(self)
        self.connections.append(imap)
        return imap

    @property
    def logouts(self) -> int:
        return sum(1 for imap in self.connections if imap.logged_out)


class FakeProtocol:
    def __init__(self, capabilities: set[str]) -> None:
        self.capabilities = capabilities


class FakeIMAP:
    """One client session, mimicking aioimaplib.IMAP4_SSL."""

    def __init__(self, server: FakeMailServer) -> None:
        self.server = server
        self.protocol = FakeProtocol(set(server.capabilities))
        self.logged_out = False
        self.tls_upgraded = False
        self.expired = False

    def _intercept(self, operation: str) -> aioimaplib.Response | None:
        if self.expired:
            raise aioimaplib.Abort(f"command {operation} illegal in state LOGOUT")
        queue = self.server.failures.get(operation)
        if not queue:
            return None
        outcome = queue.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return aioimaplib.Response(outcome, [f"{operation} {outcome}".encode()])

    def has_capability(self, name: str) -> bool:
        return name in self.protocol.capabilities

    async def wait_hello_from_server(self) -> None:
        self._intercept("hello")

    async def starttls(self) -> aioimaplib.Response:
        self.tls_upgraded = True
        return aioimaplib.Response("OK", [b"Begin TLS negotiation now"])

    async def login(self, user: str, password: str) -> aioimaplib.Response:
        self.server.logins += 1
        injected = self._intercept("login")
        if injected:
            return injected
        if password != self.server.password:
            return aioimaplib.Response("NO", [b"[AUTHENTICATIONFAILED] Invalid credentials"])
        return aioimaplib.Response("OK", [b"LOGIN completed"])

    async def select(self, folder: str) -> aioimaplib.Response:
        injected = self._intercept("select")
        if injected:
            return injected
        if folder.strip('"') not in self.server.folders:
            return aioimaplib.Response("NO", [b"Mailbox doesn't exist"])
        return aioimaplib.Response("OK", [
            f"{len(self.server.messages)} EXISTS".encode(),
            b"0 RECENT",
            f"OK [UIDVALIDITY {self.server.uidvalidity}] UIDs valid".encode(),
            b"[READ-WRITE] Select completed.",
        ])

    async def uid_search(self, *criteria, charset="utf-8") -> aioimaplib.Response:
        injected = self._intercept("search")
        if injected:
            return injected
        assert criteria == ("UNSEEN",)
        # Deliberately newest first: the client must sort
        unseen = sorted(
            (uid for uid, (_, flags) in self.server.messages.items() if "\\Seen" not in flags),
            reverse=True,
        )
        return aioimaplib.Response("OK", [
            " ".join(str(uid) for uid in unseen).encode(),
            b"SEARCH completed (0.001 + 0.000 secs).",
        ])

    async def uid(self, command: str, uid_set: str, items: str) -> aioimaplib.Response:
        operation = command.lower()
        injected = self._intercept(operation)
        if injected:
            return injected

        uid = int(uid_set)
        entry = self.server.messages.get(uid)

        if command == "FETCH":
            assert "PEEK" in items
            self.server.fetches.append(uid)
            if entry is None:
                return aioimaplib.Response("OK", [b"FETCH completed."])
            raw, flags = entry
            seq = sorted(self.server.messages).index(uid) + 1
            return aioimaplib.Response("OK", [
                f"{seq} FETCH (UID {uid} FLAGS ({' '.join(sorted(flags))}) BODY[] {{{len(raw)}}}".encode(),
                bytearray(raw),
                b")",
                b"FETCH completed.",
            ])

        if command == "STORE":
            assert items == "+FLAGS.SILENT (\\Seen)"
            self.server.stores.append(uid)
            if entry is not None:
                entry[1].add("\\Seen")
            return aioimaplib.Response("OK", [b"STORE completed."])

        raise AssertionError(f"unexpected UID command {command}")

    async def logout(self) -> aioimaplib.Response:
        self.logged_out = True
        return aioimaplib.Response("OK", [b"BYE Logging out"])


class RecordingConsumer:
    """Consumer that records deliveries and answers from a script."""

    def __init__(self, answers: dict[str, object] | None = None) -> None:
        self.answers = answers or {}
        self.delivered: list[str] = []

    def __call__(self, message):
        self.delivered.append(message.subject)
        answer = self.answers.get(message.subject, DeliveryOutcome.ACK)
        if isinstance(answer, BaseException):
            raise answer
        return answer


@pytest.fixture
def server():
    """A fake mail server with an empty INBOX."""
    return FakeMailServer()


@pytest.fixture
def account():
    """Account whose username needs percent-encoding."""
    return MailboxAccount(
        name="test",
        username="ingest+bot@example.com",
        host="imap.example.com",
        port=993,
    )


@pytest.fixture
def client(server, account):
    """MailboxClient wired to the fake server."""
    return MailboxClient(account, StaticCredentials(PASSWORD), imap_factory=server.factory)


@pytest.fixture
def sleeps():
    """Delays requested by retry/backoff code, in order."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    """Sleep replacement that records the delay and returns immediately."""
    async def sleep(delay: float) -> None:
        sleeps.append(delay)
    return sleep


@pytest.fixture
def policy(fake_sleep):
    """Default retry policy without real waiting."""
    return RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=300.0, sleep=fake_sleep)


@pytest.fixture
def config(tmp_path):
    """A valid configuration pointing at the fake server."""
    return Config(
        account=AccountConfig(
            name="test",
            username="ingest+bot@example.com",
            host="imap.example.com",
        ),
        polling=PollingConfig(interval_seconds=50.0, max_batch=10),
        retry=RetryConfig(max_attempts=3, base_delay_seconds=1.0, max_delay_seconds=300.0),
    )
