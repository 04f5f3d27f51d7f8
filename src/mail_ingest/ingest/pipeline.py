# =============================================================================
# Delivery Pipeline
# =============================================================================
# One poll cycle: list -> fetch -> deliver -> mark, for up to max_batch
# messages, strictly in listing order (oldest first).
#
# The ordering guarantee that everything else rests on:
#
#       consumer acknowledges  ==>  THEN  mark \Seen on the server
#
# A message is never marked before the consumer has accepted it, so a crash
# anywhere in between leaves it unseen and it is delivered again next cycle
# (at-least-once). Consumers must therefore be idempotent, or the optional
# DeliveryLedger has to be enabled to filter repeats.
#
# Failure handling per message:
#   - fetch NotFound          -> skip, continue batch
#   - fetch/mark exhausted    -> leave unseen, continue batch
#   - consumer Nack / raises  -> leave unseen, continue batch
#   - consumer Fatal          -> abort batch, propagate to the scheduler
# Connection-level failures (connect, list) propagate to the scheduler.
# =============================================================================

import inspect
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Union

from mail_ingest.core import MessageHandle, MessageRef
from mail_ingest.imap.client import MailboxClient, MessageNotFoundError
from mail_ingest.ingest.retry import RetryExhaustedError, RetryPolicy

if TYPE_CHECKING:
    from mail_ingest.storage import DeliveryLedger

logger = logging.getLogger(__name__)


class DeliveryOutcome(Enum):
    """What the consumer made of a message."""
    ACK = "ack"             # Accepted; safe to mark processed
    NACK = "nack"           # Not accepted; leave unseen for the next cycle
    FATAL = "fatal"         # Stop ingestion altogether


ConsumerResult = Union[DeliveryOutcome, bool, None]

# The only thing downstream business logic has to implement. Sync or async.
# True/None count as ACK, False as NACK. Raising ConsumerFatalError is FATAL,
# raising anything else, or returning anything else, is NACK.
Consumer = Callable[[MessageHandle], Union[ConsumerResult, Awaitable[ConsumerResult]]]


def _to_outcome(result: ConsumerResult) -> DeliveryOutcome:
    if isinstance(result, DeliveryOutcome):
        return result
    if result is None or result is True:
        return DeliveryOutcome.ACK
    if result is False:
        return DeliveryOutcome.NACK
    raise TypeError(f"Consumer returned unsupported value {result!r}")


@dataclass
class CycleReport:
    """
    Summary of one poll cycle.

    Attributes:
        listed: Messages in the fetched batch.
        acknowledged: Messages the consumer accepted this cycle.
        marked: Messages successfully marked processed.
        rejected: Messages the consumer declined (or raised on).
        skipped: Messages that vanished before they could be fetched.
        unmarked: Acknowledged messages whose mark failed; redelivered later.
        fetch_failed: Messages whose fetch kept failing transiently.
        deduplicated: Repeats filtered by the ledger (marked, not redelivered).
        duration_seconds: Wall time of the cycle.
    """
    listed: int = 0
    acknowledged: int = 0
    marked: int = 0
    rejected: int = 0
    skipped: int = 0
    unmarked: int = 0
    fetch_failed: int = 0
    deduplicated: int = 0
    duration_seconds: float = 0.0

    @property
    def complete(self) -> bool:
        """True when every listed message ended up marked or skipped."""
        return self.marked + self.skipped == self.listed


class DeliveryPipeline:
    """
    Moves messages from the mailbox to a single consumer.

    Usage:
        >>> pipeline = DeliveryPipeline(client, handle_mail, RetryPolicy())
        >>> report = await pipeline.run_cycle()

    Attributes:
        client: Mailbox the messages come from.
        consumer: Downstream callback.
        policy: Retry policy wrapped around every mailbox operation.
        max_batch: Upper bound on messages handled per cycle.
        ledger: Optional acknowledged-key store for de-duplication.
    """

    def __init__(
        self,
        client: MailboxClient,
        consumer: Consumer,
        policy: RetryPolicy,
        max_batch: int = 10,
        ledger: "DeliveryLedger | None" = None,
    ) -> None:
        if max_batch < 1:
            raise ValueError("max_batch must be at least 1")
        self.client = client
        self.consumer = consumer
        self.policy = policy
        self.max_batch = max_batch
        self.ledger = ledger

    async def run_cycle(self) -> CycleReport:
        """
        Run one list/fetch/deliver/mark pass.

        Raises:
            RetryExhaustedError: Connecting or listing kept failing.
            ConsumerFatalError: The consumer asked to stop.
            MailboxAuthError, MailboxProtocolError: Fatal mailbox problems.
        """
        started = time.monotonic()
        report = CycleReport()

        await self.policy.call("connect", self.client.connect)
        batch = await self.policy.call(
            "list unseen",
            lambda: self.client.list_unseen(self.max_batch),
        )
        report.listed = len(batch)

        for ref in batch:
            await self._process(ref, report)

        report.duration_seconds = time.monotonic() - started
        if report.listed:
            logger.info(
                f"Cycle done: {report.listed} listed, {report.acknowledged} acked, "
                f"{report.marked} marked, {report.rejected} rejected, "
                f"{report.skipped} skipped, {report.unmarked} left unmarked"
            )
        else:
            logger.debug("Cycle done: no unseen messages")
        return report

    async def _process(self, ref: MessageRef, report: CycleReport) -> None:
        try:
            message = await self.policy.call(f"fetch {ref}", lambda: self.client.fetch(ref))
        except MessageNotFoundError as e:
            logger.info(f"Skipping {ref}: {e}")
            report.skipped += 1
            return
        except RetryExhaustedError as e:
            logger.warning(f"Leaving {ref} for the next cycle: {e}")
            report.fetch_failed += 1
            return

        if self.ledger is not None and await self.ledger.is_acknowledged(message.delivery_key):
            logger.info(f"{ref} ({message.delivery_key}) was already acknowledged; marking only")
            report.deduplicated += 1
            await self._mark(message, report)
            return

        outcome = await self._deliver(message)

        if outcome is DeliveryOutcome.FATAL:
            raise ConsumerFatalError(f"Consumer reported a fatal condition on {ref}")
        if outcome is DeliveryOutcome.NACK:
            logger.info(f"Consumer declined {ref}; it stays unseen")
            report.rejected += 1
            return

        report.acknowledged += 1
        if self.ledger is not None:
            await self.ledger.record_ack(message.delivery_key, message.uid)
        await self._mark(message, report)

    async def _deliver(self, message: MessageHandle) -> DeliveryOutcome:
        try:
            result = self.consumer(message)
            if inspect.isawaitable(result):
                result = await result
            return _to_outcome(result)
        except ConsumerFatalError:
            raise
        except Exception:
            logger.exception(f"Consumer failed on {message.ref}; treating as not accepted")
            return DeliveryOutcome.NACK

    async def _mark(self, message: MessageHandle, report: CycleReport) -> None:
        ref = message.ref
        try:
            await self.policy.call(f"mark {ref}", lambda: self.client.mark_processed(ref))
        except MessageNotFoundError as e:
            logger.warning(f"Could not mark {ref}, message is gone: {e}")
            report.unmarked += 1
            return
        except RetryExhaustedError as e:
            logger.warning(f"{ref} acknowledged but not marked; it will be redelivered: {e}")
            report.unmarked += 1
            return

        report.marked += 1
        if self.ledger is not None:
            await self.ledger.record_processed(message.delivery_key)


# =============================================================================
# Exceptions
# =============================================================================

class ConsumerFatalError(Exception):
    """Raised by (or on behalf of) a consumer to stop ingestion."""
    pass
