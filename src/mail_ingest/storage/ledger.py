# =============================================================================
# Delivery Ledger
# =============================================================================
# Optional record of which messages the consumer has already acknowledged.
#
# Without the ledger, ingestion is at-least-once: if the process dies after
# the consumer acknowledged a message but before \Seen reached the server,
# the message is delivered again on the next cycle. With the ledger, the
# acknowledgment is written down first, and a redelivered message goes
# straight to "mark processed" without bothering the consumer again.
#
# Schema:
#   - schema_version: single-row version tracking
#   - deliveries: one row per acknowledged delivery key (Message-ID or
#     "<uidvalidity>:<uid>"), with ack and processed timestamps
#
# Only identifiers are stored, never message content.
# =============================================================================

import logging
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

# Current schema version - increment when making schema changes
SCHEMA_VERSION = 1

# Special SQLite path for a throwaway in-memory database
MEMORY = ":memory:"


class DeliveryLedger:
    """
    SQLite-backed set of acknowledged delivery keys.

    Usage:
        >>> ledger = DeliveryLedger(path)
        >>> await ledger.connect()
        >>> if not await ledger.is_acknowledged(key):
        ...     ...deliver...
        ...     await ledger.record_ack(key, uid)
        >>> await ledger.close()
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Open the database and create the schema if needed."""
        if str(self.db_path) != MEMORY:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path)

        # WAL journal: acks survive a crash mid-write
        await self._connection.execute("PRAGMA journal_mode = WAL")
        await self._init_schema()
        logger.debug(f"Delivery ledger open at {self.db_path}")

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    @property
    def conn(self) -> aiosqlite.Connection:
        """
        Get the active database connection.

        Raises:
            RuntimeError: If not connected.
        """
        if self._connection is None:
            raise RuntimeError("Ledger not connected. Call connect() first.")
        return self._connection

    async def _init_schema(self) -> None:
        await self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );

            CREATE TABLE IF NOT EXISTS deliveries (
                key TEXT PRIMARY KEY,
                uid INTEGER,
                acked_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                processed_at TEXT
            );
            """
        )
        await self.conn.execute(
            "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
        await self.conn.commit()

    # =========================================================================
    # Queries
    # =========================================================================

    async def is_acknowledged(self, key: str) -> bool:
        async with self.conn.execute(
            "SELECT 1 FROM deliveries WHERE key = ?", (key,)
        ) as cursor:
            return await cursor.fetchone() is not None

    async def record_ack(self, key: str, uid: int | None = None) -> None:
        """Durably note that the consumer accepted this delivery."""
        await self.conn.execute(
            "INSERT OR IGNORE INTO deliveries (key, uid) VALUES (?, ?)",
            (key, uid),
        )
        await self.conn.commit()

    async def record_processed(self, key: str) -> None:
        """Note that \\Seen reached the server for this delivery."""
        await self.conn.execute(
            "UPDATE deliveries SET processed_at = CURRENT_TIMESTAMP "
            "WHERE key = ? AND processed_at IS NULL",
            (key,),
        )
        await self.conn.commit()

    async def pending(self) -> list[str]:
        """Keys acknowledged by the consumer but never marked on the server."""
        async with self.conn.execute(
            "SELECT key FROM deliveries WHERE processed_at IS NULL ORDER BY acked_at"
        ) as cursor:
            rows = await cursor.fetchall()
        return [row[0] for row in rows]
