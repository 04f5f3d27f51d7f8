# =============================================================================
# mail-ingest: Polling IMAP Ingestion
# =============================================================================
#
# Polls a mailbox over an encrypted IMAP session at a fixed delay, hands
# every unseen message to exactly one consumer callback, and marks it
# processed only after the consumer has acknowledged it.
#
# Features:
#   - Implicit TLS or STARTTLS, never plaintext
#   - Oldest-first, bounded batches
#   - Ack-before-mark, at-least-once delivery
#   - Bounded exponential retry and between-cycle backoff
#   - Optional SQLite delivery ledger for de-duplication
#   - XDG Base Directory compliant configuration
#
# =============================================================================

__version__ = "0.1.0"
__app_name__ = "mail-ingest"

__all__ = ["__version__", "__app_name__"]
