# =============================================================================
# Mail Ingestor
# =============================================================================
# Wires the pieces together for one mailbox:
#
#   PollScheduler --fires--> DeliveryPipeline --uses--> MailboxClient
#                                   |                      (aioimaplib)
#                                   +--delivers--> Consumer
#                                   +--(optional)-> DeliveryLedger
#
# and owns teardown: however ingestion ends (stop(), fatal error, task
# cancellation), the mailbox session is logged out and the ledger closed.
# =============================================================================

import logging

from mail_ingest.config import Config
from mail_ingest.imap.client import ImapFactory, MailboxClient
from mail_ingest.imap.credentials import CredentialProvider, EnvCredentials, KeyringCredentials
from mail_ingest.ingest.pipeline import Consumer, CycleReport, DeliveryPipeline
from mail_ingest.ingest.retry import RetryPolicy, SleepFunc
from mail_ingest.ingest.scheduler import PollScheduler, StateCallback
from mail_ingest.storage import DeliveryLedger

logger = logging.getLogger(__name__)


def credentials_for(config: Config) -> CredentialProvider:
    """Pick the credential source named by the configuration."""
    if config.account.password_env:
        return EnvCredentials(config.account.password_env)
    return KeyringCredentials()


class MailIngestor:
    """
    Polls one mailbox and feeds a consumer until stopped.

    Usage:
        >>> ingestor = MailIngestor(Config.load(), handle_mail)
        >>> await ingestor.run()          # blocks until stop() or fatal error

    Attributes:
        config: Validated configuration.
        client: The mailbox client (one session, reused across cycles).
        pipeline: Delivery pipeline for one cycle.
        scheduler: Fixed-delay scheduler driving the pipeline.
        ledger: Delivery ledger, or None when disabled.
    """

    def __init__(
        self,
        config: Config,
        consumer: Consumer,
        *,
        credentials: CredentialProvider | None = None,
        imap_factory: ImapFactory | None = None,
        ledger: DeliveryLedger | None = None,
        on_state_change: StateCallback | None = None,
        sleep: SleepFunc | None = None,
    ) -> None:
        self.config = config
        self.client = MailboxClient(
            config.account.to_account(),
            credentials or credentials_for(config),
            imap_factory=imap_factory,
        )
        self.policy = RetryPolicy(
            max_attempts=config.retry.max_attempts,
            base_delay=config.retry.base_delay_seconds,
            max_delay=config.retry.max_delay_seconds,
            multiplier=config.retry.multiplier,
            sleep=sleep,
        )
        if ledger is None and config.ledger.enabled:
            ledger = DeliveryLedger(config.ledger.resolved_path())
        self.ledger = ledger
        self.pipeline = DeliveryPipeline(
            self.client,
            consumer,
            self.policy,
            max_batch=config.polling.max_batch,
            ledger=self.ledger,
        )
        self.scheduler = PollScheduler(
            self.pipeline.run_cycle,
            interval=config.polling.interval_seconds,
            backoff=self.policy,
            max_backoff_rounds=config.retry.max_backoff_rounds,
            on_state_change=on_state_change,
            sleep=sleep,
        )

    async def run(self) -> None:
        """
        Poll until stop() is called.

        Raises:
            IngestStoppedError: Ingestion stopped on a fatal condition; the
                                cause is chained.
        """
        logger.info(f"Starting ingestion from {self.client.account.store_url}")
        try:
            await self._open_ledger()
            await self.scheduler.run()
        except Exception as e:
            raise IngestStoppedError(f"Ingestion stopped: {e}") from e
        finally:
            await self._teardown()

    async def run_once(self) -> CycleReport:
        """Run a single poll cycle and tear down."""
        try:
            await self._open_ledger()
            return await self.scheduler.run_once()
        finally:
            await self._teardown()

    def stop(self) -> None:
        """Request a graceful stop (signal-handler safe)."""
        self.scheduler.stop()

    async def _open_ledger(self) -> None:
        if self.ledger is not None:
            await self.ledger.connect()

    async def _teardown(self) -> None:
        await self.client.close()
        if self.ledger is not None:
            await self.ledger.close()


# =============================================================================
# Exceptions
# =============================================================================

class IngestStoppedError(Exception):
    """Ingestion ended because of a fatal condition."""
    pass
