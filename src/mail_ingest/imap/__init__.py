# =============================================================================
# IMAP Module
# =============================================================================
# Everything that talks to the mail server:
#   - MailboxClient: one encrypted session, list/fetch/mark/close
#   - Credential providers: where the password comes from at LOGIN time
#   - The MailboxError taxonomy the retry layer classifies
#
# Uses aioimaplib for async IMAP so a blocked socket never blocks the event
# loop that runs the scheduler's timer.
# =============================================================================

from mail_ingest.imap.client import (
    MailboxAuthError,
    MailboxClient,
    MailboxConnection,
    MailboxError,
    MailboxNetworkError,
    MailboxProtocolError,
    MessageNotFoundError,
    SessionExpiredError,
    SessionState,
)
from mail_ingest.imap.credentials import (
    CredentialProvider,
    EnvCredentials,
    KeyringCredentials,
    StaticCredentials,
)

__all__ = [
    # Client
    "MailboxClient",
    "MailboxConnection",
    "SessionState",
    # Errors
    "MailboxError",
    "MailboxAuthError",
    "MailboxNetworkError",
    "MailboxProtocolError",
    "MessageNotFoundError",
    "SessionExpiredError",
    # Credentials
    "CredentialProvider",
    "KeyringCredentials",
    "EnvCredentials",
    "StaticCredentials",
]
