# =============================================================================
# Mail Ingest Core Module
# =============================================================================
# Plain dataclasses with no I/O and no third-party dependencies. They can be
# imported from anywhere without causing circular imports.
#
#   - MailboxAccount: where to poll (endpoint, login name, folder)
#   - MessageRef: UID + UIDVALIDITY of one mailbox entry
#   - MessageHandle: a fetched message
#   - FetchBatch: the bounded, oldest-first refs of one poll cycle
# =============================================================================

from mail_ingest.core.account import SECURITY_MODES, MailboxAccount
from mail_ingest.core.message import FetchBatch, MessageHandle, MessageRef

__all__ = [
    "SECURITY_MODES",
    "MailboxAccount",
    "MessageRef",
    "MessageHandle",
    "FetchBatch",
]
