# =============================================================================
# Ingest Module
# =============================================================================
# The polling machinery on top of the mailbox client:
#   - RetryPolicy: transient/fatal classification and bounded backoff
#   - DeliveryPipeline: list -> fetch -> deliver -> mark, ack before mark
#   - PollScheduler: fixed-delay cycles with Backoff and a terminal Stopped
#   - MailIngestor: wires them together and owns teardown
# =============================================================================

from mail_ingest.ingest.pipeline import (
    Consumer,
    ConsumerFatalError,
    CycleReport,
    DeliveryOutcome,
    DeliveryPipeline,
)
from mail_ingest.ingest.retry import (
    FailureKind,
    RetryExhaustedError,
    RetryPolicy,
    RetryState,
    classify,
)
from mail_ingest.ingest.scheduler import PollScheduler, SchedulerState
from mail_ingest.ingest.service import IngestStoppedError, MailIngestor

__all__ = [
    # Retry
    "FailureKind",
    "RetryPolicy",
    "RetryState",
    "RetryExhaustedError",
    "classify",
    # Pipeline
    "Consumer",
    "ConsumerFatalError",
    "CycleReport",
    "DeliveryOutcome",
    "DeliveryPipeline",
    # Scheduler
    "PollScheduler",
    "SchedulerState",
    # Service
    "MailIngestor",
    "IngestStoppedError",
]
