"""SQLite schema and connection lifecycle for rounds, bets and their audit trail.

All tables live in one file. Decimal values are TEXT, timestamps are
epoch-ms INTEGER, enums are stored by value.
"""

import os
from typing import Self

import aiosqlite

from rounds.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS rounds (
    id TEXT PRIMARY KEY,
    round_number INTEGER NOT NULL,
    type TEXT NOT NULL,
    status TEXT NOT NULL,
    start_time INTEGER NOT NULL,
    lock_time INTEGER NOT NULL,
    end_time INTEGER NOT NULL,
    gold_start_price TEXT,
    btc_start_price TEXT,
    gold_end_price TEXT,
    btc_end_price TEXT,
    price_snapshot_start_at INTEGER,
    price_snapshot_end_at INTEGER,
    start_price_source TEXT,
    end_price_source TEXT,
    start_price_is_fallback INTEGER NOT NULL DEFAULT 0,
    start_price_fallback_reason TEXT,
    end_price_is_fallback INTEGER NOT NULL DEFAULT 0,
    end_price_fallback_reason TEXT,
    total_pool INTEGER NOT NULL DEFAULT 0,
    total_gold_bets INTEGER NOT NULL DEFAULT 0,
    total_btc_bets INTEGER NOT NULL DEFAULT 0,
    total_bets_count INTEGER NOT NULL DEFAULT 0,
    gold_change_percent TEXT,
    btc_change_percent TEXT,
    winner TEXT,
    platform_fee_rate TEXT NOT NULL,
    platform_fee_collected INTEGER,
    payout_pool INTEGER,
    sui_pool_address TEXT,
    sui_settlement_object_id TEXT,
    betting_opened_at INTEGER,
    betting_locked_at INTEGER,
    round_ended_at INTEGER,
    settlement_completed_at INTEGER,
    settlement_failure_alert_sent_at INTEGER,
    cancellation_reason TEXT,
    cancellation_message TEXT,
    cancelled_by TEXT,
    cancelled_at INTEGER,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    UNIQUE (type, round_number),
    UNIQUE (type, start_time)
);

CREATE TABLE IF NOT EXISTS bets (
    id TEXT PRIMARY KEY,
    round_id TEXT NOT NULL REFERENCES rounds(id),
    user_id TEXT NOT NULL,
    prediction TEXT NOT NULL,
    amount INTEGER NOT NULL CHECK (amount > 0),
    result_status TEXT NOT NULL DEFAULT 'PENDING',
    settlement_status TEXT NOT NULL DEFAULT 'PENDING',
    payout_amount INTEGER NOT NULL DEFAULT 0,
    settled_at INTEGER,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS round_transitions (
    id TEXT PRIMARY KEY,
    round_id TEXT NOT NULL REFERENCES rounds(id),
    from_status TEXT NOT NULL,
    to_status TEXT NOT NULL,
    triggered_by TEXT NOT NULL,
    metadata TEXT,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS settlements (
    id TEXT PRIMARY KEY,
    round_id TEXT NOT NULL UNIQUE REFERENCES rounds(id),
    winner TEXT,
    total_pool INTEGER NOT NULL,
    winning_pool INTEGER NOT NULL,
    losing_pool INTEGER NOT NULL,
    platform_fee INTEGER NOT NULL,
    payout_pool INTEGER NOT NULL,
    payout_ratio TEXT NOT NULL,
    total_winners INTEGER NOT NULL,
    total_losers INTEGER NOT NULL,
    sui_settlement_object_id TEXT,
    calculated_at INTEGER NOT NULL,
    completed_at INTEGER,
    created_at INTEGER NOT NULL
);
"""

_CREATE_INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_rounds_status_start
    ON rounds(status, start_time);

CREATE INDEX IF NOT EXISTS idx_rounds_status_ended
    ON rounds(status, round_ended_at);

CREATE INDEX IF NOT EXISTS idx_bets_round_id
    ON bets(round_id);

CREATE INDEX IF NOT EXISTS idx_round_transitions_round_id
    ON round_transitions(round_id, created_at);
"""


# Applied on every connect (busy_timeout in ms)
_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA busy_timeout=5000",
)


class RoundDatabase:
    """Owns the single aiosqlite connection shared by the round and bet stores.

    Usage:
        async with RoundDatabase("data/rounds.db") as database:
            rounds = SqliteRoundRepository(database)

    Pass ":memory:" for a throwaway database.
    """

    def __init__(self, db_path: str = "data/rounds.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise RuntimeError("RoundDatabase is not connected")
        return self._connection

    async def connect(self) -> None:
        """Open the connection, apply pragmas and bring the schema up to date."""
        if self._db_path != ":memory:":
            parent = os.path.dirname(self._db_path)
            if parent:
                os.makedirs(parent, exist_ok=True)

        connection = await aiosqlite.connect(self._db_path)
        connection.row_factory = aiosqlite.Row
        for pragma in _PRAGMAS:
            await connection.execute(pragma)
        self._connection = connection

        await self._migrate()
        logger.info("round_db_connected", db_path=self._db_path)

    async def close(self) -> None:
        if self._connection is None:
            return
        await self._connection.close()
        self._connection = None
        logger.info("round_db_closed", db_path=self._db_path)

    async def _migrate(self) -> None:
        """Create missing tables and record the schema version.

        Raises:
            RuntimeError: The file was written by a newer schema than this build knows.
        """
        db = self.db
        await db.executescript(_CREATE_TABLES_SQL + _CREATE_INDEXES_SQL)

        cursor = await db.execute("SELECT MAX(version) AS version FROM schema_version")
        row = await cursor.fetchone()
        stored = row["version"] if row is not None else None

        if stored is None:
            await db.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            logger.info("schema_version_set", version=SCHEMA_VERSION)
        elif stored > SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema v{stored} is newer than supported v{SCHEMA_VERSION}"
            )
        await db.commit()

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
