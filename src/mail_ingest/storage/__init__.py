# =============================================================================
# Storage Module
# =============================================================================
# Local persistence. Holds delivery identifiers only; message bodies live on
# the mail server and are never written to disk here.
# =============================================================================

from mail_ingest.storage.ledger import DeliveryLedger

__all__ = ["DeliveryLedger"]
