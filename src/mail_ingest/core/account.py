# =============================================================================
# Mailbox Account Model
# =============================================================================
# Describes WHERE to poll: the IMAP endpoint, the login name and the folder.
#
# IMPORTANT: Passwords are NOT stored here. They are resolved at connect time
# by a CredentialProvider (keyring, environment variable, ...) so that no
# object that might end up in a log line or a traceback carries the secret.
# =============================================================================

from dataclasses import dataclass
from urllib.parse import quote

# Accepted transport security modes. There is no plaintext mode.
SECURITY_MODES = ("ssl", "starttls")


@dataclass(frozen=True)
class MailboxAccount:
    """
    Connection details for one remote mailbox.

    Attributes:
        name: Short identifier for this account (used for keyring lookups).
        username: Login name. May contain '@', '+', spaces, etc.
        host: Hostname of the IMAP server (e.g., "imap.example.com").
        port: IMAP port. 993 for implicit TLS, 143 for STARTTLS.
        security: "ssl" (implicit TLS) or "starttls".
        folder: Mailbox folder to poll.
        timeout: I/O timeout in seconds for every IMAP command.

    Example:
        >>> account = MailboxAccount(
        ...     name="support",
        ...     username="support+intake@example.com",
        ...     host="imap.example.com",
        ... )
        >>> account.store_url
        'imaps://support%2Bintake%40example.com@imap.example.com:993/INBOX'
    """

    name: str
    username: str
    host: str
    port: int = 993                     # Implicit TLS port
    security: str = "ssl"               # "ssl" or "starttls"
    folder: str = "INBOX"
    timeout: float = 30.0

    @property
    def keyring_service(self) -> str:
        """
        Service name used for keyring password storage:
            keyring set mail-ingest:support support@example.com
        """
        return f"mail-ingest:{self.name}"

    @property
    def store_url(self) -> str:
        """
        Loggable connection URL.

        The username is percent-encoded so that addresses such as
        "a+b@example.com" survive inside the URL. The password is never part
        of this string.
        """
        scheme = "imaps" if self.security == "ssl" else "imap+starttls"
        user = quote(self.username, safe="")
        return f"{scheme}://{user}@{self.host}:{self.port}/{quote(self.folder)}"

    def __str__(self) -> str:
        return f"{self.name} <{self.store_url}>"
