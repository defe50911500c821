"""SQLite implementation of the round repository.

Every write is a single-row UPDATE or INSERT. Status changes go through
compare_and_set_status, which guards on the stored status so two writers
racing on the same round cannot both win.

CRITICAL: Decimal values (prices, percents, fee rate, payout ratio) are
stored as TEXT and restored as Decimal or str on read.
"""

import json
import uuid
from collections.abc import Callable
from dataclasses import asdict, fields
from decimal import Decimal
from enum import Enum
from typing import Any

import aiosqlite

from rounds.data.database import RoundDatabase
from rounds.exceptions import NotFoundError
from rounds.logging import get_logger
from rounds.models import (
    Asset,
    CancelledBy,
    Round,
    RoundStatus,
    RoundType,
    SettlementSummary,
    now_ms,
)
from rounds.repository import RoundRepository

logger = get_logger(__name__)

_ROUND_COLUMNS: tuple[str, ...] = tuple(f.name for f in fields(Round))
_BOOL_COLUMNS = frozenset({"start_price_is_fallback", "end_price_is_fallback"})
_SORTABLE_COLUMNS = frozenset({"start_time", "round_number"})


def to_column(value: Any) -> Any:
    """Convert a Python value to its SQLite storage form."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Decimal):
        return str(value)
    return value


def _row_to_round(row: aiosqlite.Row) -> Round:
    data = {name: row[name] for name in _ROUND_COLUMNS}
    data["type"] = RoundType(data["type"])
    data["status"] = RoundStatus(data["status"])
    data["platform_fee_rate"] = Decimal(data["platform_fee_rate"])
    if data["winner"] is not None:
        data["winner"] = Asset(data["winner"])
    if data["cancelled_by"] is not None:
        data["cancelled_by"] = CancelledBy(data["cancelled_by"])
    for name in _BOOL_COLUMNS:
        data[name] = bool(data[name])
    return Round(**data)


def _check_columns(patch: dict[str, Any]) -> None:
    unknown = set(patch) - set(_ROUND_COLUMNS)
    if unknown:
        raise ValueError(f"Unknown round columns: {sorted(unknown)}")


def _filter_clause(
    round_type: RoundType | None, statuses: list[RoundStatus] | None
) -> tuple[str, tuple[Any, ...]]:
    """WHERE clause for the optional type and status filters."""
    conditions: list[str] = []
    params: list[Any] = []
    if round_type is not None:
        conditions.append("type = ?")
        params.append(to_column(round_type))
    if statuses:
        conditions.append(f"status IN ({', '.join('?' for _ in statuses)})")
        params.extend(to_column(s) for s in statuses)
    if not conditions:
        return "", ()
    return " WHERE " + " AND ".join(conditions), tuple(params)


class SqliteRoundRepository(RoundRepository):
    """Round storage on top of RoundDatabase.

    Args:
        database: Connected RoundDatabase.
        clock: Source of the implicit ``updated_at`` stamp.
    """

    def __init__(
        self,
        database: RoundDatabase,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._database = database
        self._clock = clock

    # ──────────────────────────────────────────────
    # Reads
    # ──────────────────────────────────────────────

    async def _fetch_one(self, sql: str, params: tuple[Any, ...]) -> Round | None:
        cursor = await self._database.db.execute(sql, params)
        row = await cursor.fetchone()
        return _row_to_round(row) if row is not None else None

    async def find_by_id(self, round_id: str) -> Round | None:
        return await self._fetch_one("SELECT * FROM rounds WHERE id = ?", (round_id,))

    async def find_last_round(self, round_type: RoundType) -> Round | None:
        return await self._fetch_one(
            "SELECT * FROM rounds WHERE type = ? ORDER BY round_number DESC LIMIT 1",
            (to_column(round_type),),
        )

    async def find_by_start_time(self, round_type: RoundType, start_time: int) -> Round | None:
        return await self._fetch_one(
            "SELECT * FROM rounds WHERE type = ? AND start_time = ?",
            (to_column(round_type), start_time),
        )

    async def find_latest_by_status(self, status: RoundStatus) -> Round | None:
        return await self._fetch_one(
            "SELECT * FROM rounds WHERE status = ? ORDER BY start_time DESC LIMIT 1",
            (to_column(status),),
        )

    async def find_stuck_calculating_rounds(self, threshold_ms: int) -> list[Round]:
        cursor = await self._database.db.execute(
            "SELECT * FROM rounds WHERE status = ? "
            "AND (round_ended_at IS NULL OR round_ended_at <= ?) "
            "ORDER BY start_time",
            (RoundStatus.CALCULATING.value, threshold_ms),
        )
        rows = await cursor.fetchall()
        return [_row_to_round(row) for row in rows]

    async def find_current_round(self, round_type: RoundType) -> Round | None:
        return await self._fetch_one(
            "SELECT * FROM rounds WHERE type = ? AND status IN (?, ?) "
            "ORDER BY start_time DESC LIMIT 1",
            (
                to_column(round_type),
                RoundStatus.BETTING_OPEN.value,
                RoundStatus.BETTING_LOCKED.value,
            ),
        )

    async def find_many(
        self,
        round_type: RoundType | None,
        statuses: list[RoundStatus] | None,
        sort: str,
        order: str,
        limit: int,
        offset: int,
    ) -> list[Round]:
        column = to_column(sort)
        direction = str(to_column(order)).upper()
        if column not in _SORTABLE_COLUMNS or direction not in ("ASC", "DESC"):
            raise ValueError(f"Unsupported sort: {sort} {order}")
        where, params = _filter_clause(round_type, statuses)
        cursor = await self._database.db.execute(
            f"SELECT * FROM rounds{where} ORDER BY {column} {direction}, id LIMIT ? OFFSET ?",
            (*params, limit, offset),
        )
        rows = await cursor.fetchall()
        return [_row_to_round(row) for row in rows]

    async def count(
        self, round_type: RoundType | None, statuses: list[RoundStatus] | None
    ) -> int:
        where, params = _filter_clause(round_type, statuses)
        cursor = await self._database.db.execute(f"SELECT COUNT(*) FROM rounds{where}", params)
        row = await cursor.fetchone()
        return row[0]

    async def check_overlapping_time(
        self, start_time: int, end_time: int, round_type: RoundType
    ) -> bool:
        cursor = await self._database.db.execute(
            "SELECT 1 FROM rounds WHERE type = ? "
            "AND NOT (? <= start_time OR ? >= end_time) LIMIT 1",
            (to_column(round_type), end_time, start_time),
        )
        return await cursor.fetchone() is not None

    async def list_transitions(self, round_id: str) -> list[dict[str, Any]]:
        """Transition history of one round, oldest first."""
        cursor = await self._database.db.execute(
            "SELECT from_status, to_status, triggered_by, metadata, created_at "
            "FROM round_transitions WHERE round_id = ? ORDER BY created_at, rowid",
            (round_id,),
        )
        rows = await cursor.fetchall()
        return [
            {
                "from_status": row["from_status"],
                "to_status": row["to_status"],
                "triggered_by": row["triggered_by"],
                "metadata": json.loads(row["metadata"]) if row["metadata"] else {},
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    async def get_settlement(self, round_id: str) -> SettlementSummary | None:
        cursor = await self._database.db.execute(
            "SELECT * FROM settlements WHERE round_id = ?", (round_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return SettlementSummary(
            round_id=row["round_id"],
            winner=Asset(row["winner"]) if row["winner"] else None,
            total_pool=row["total_pool"],
            winning_pool=row["winning_pool"],
            losing_pool=row["losing_pool"],
            platform_fee=row["platform_fee"],
            payout_pool=row["payout_pool"],
            payout_ratio=Decimal(row["payout_ratio"]),
            total_winners=row["total_winners"],
            total_losers=row["total_losers"],
            sui_settlement_object_id=row["sui_settlement_object_id"],
            calculated_at=row["calculated_at"],
            completed_at=row["completed_at"],
        )

    # ──────────────────────────────────────────────
    # Writes
    # ──────────────────────────────────────────────

    async def insert(self, round_: Round) -> Round:
        values = [to_column(getattr(round_, name)) for name in _ROUND_COLUMNS]
        placeholders = ", ".join("?" for _ in _ROUND_COLUMNS)
        await self._database.db.execute(
            f"INSERT INTO rounds ({', '.join(_ROUND_COLUMNS)}) VALUES ({placeholders})",
            values,
        )
        await self._database.db.commit()
        logger.debug(
            "round_inserted",
            round_id=round_.id,
            round_number=round_.round_number,
            type=to_column(round_.type),
        )
        return round_

    async def update_by_id(self, round_id: str, patch: dict[str, Any]) -> Round:
        patch = {**patch, "updated_at": patch.get("updated_at", self._clock())}
        _check_columns(patch)
        assignments = ", ".join(f"{name} = ?" for name in patch)
        cursor = await self._database.db.execute(
            f"UPDATE rounds SET {assignments} WHERE id = ?",
            [*(to_column(v) for v in patch.values()), round_id],
        )
        await self._database.db.commit()
        if cursor.rowcount == 0:
            raise NotFoundError("Round", round_id)

        updated = await self.find_by_id(round_id)
        assert updated is not None
        return updated

    async def compare_and_set_status(
        self,
        round_id: str,
        expected_status: RoundStatus,
        patch: dict[str, Any],
    ) -> Round | None:
        patch = {**patch, "updated_at": patch.get("updated_at", self._clock())}
        _check_columns(patch)
        assignments = ", ".join(f"{name} = ?" for name in patch)
        cursor = await self._database.db.execute(
            f"UPDATE rounds SET {assignments} WHERE id = ? AND status = ?",
            [
                *(to_column(v) for v in patch.values()),
                round_id,
                to_column(expected_status),
            ],
        )
        await self._database.db.commit()

        if cursor.rowcount == 0:
            current = await self.find_by_id(round_id)
            if current is None:
                raise NotFoundError("Round", round_id)
            logger.debug(
                "round_status_cas_lost",
                round_id=round_id,
                expected_status=to_column(expected_status),
                actual_status=to_column(current.status),
            )
            return None

        return await self.find_by_id(round_id)

    async def add_to_pool(self, round_id: str, prediction: Asset, amount: int) -> bool:
        """Atomically add a stake to the round's pool aggregates.

        Only applies while betting is open. Returns False if the round is not
        (or no longer) BETTING_OPEN.
        """
        if amount <= 0:
            raise ValueError(f"Stake must be positive, got {amount}")
        prediction = Asset(prediction)
        gold = amount if prediction == Asset.GOLD else 0
        btc = amount if prediction == Asset.BTC else 0
        cursor = await self._database.db.execute(
            "UPDATE rounds SET "
            "total_pool = total_pool + ?, "
            "total_gold_bets = total_gold_bets + ?, "
            "total_btc_bets = total_btc_bets + ?, "
            "total_bets_count = total_bets_count + 1, "
            "updated_at = ? "
            "WHERE id = ? AND status = ?",
            (amount, gold, btc, self._clock(), round_id, RoundStatus.BETTING_OPEN.value),
        )
        await self._database.db.commit()
        return cursor.rowcount == 1

    async def record_transition(
        self,
        round_id: str,
        from_status: RoundStatus,
        to_status: RoundStatus,
        triggered_by: str,
        metadata: dict[str, Any],
        created_at: int,
    ) -> None:
        await self._database.db.execute(
            "INSERT INTO round_transitions "
            "(id, round_id, from_status, to_status, triggered_by, metadata, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                str(uuid.uuid4()),
                round_id,
                to_column(from_status),
                to_column(to_status),
                triggered_by,
                json.dumps({k: to_column(v) for k, v in metadata.items()}) if metadata else None,
                created_at,
            ),
        )
        await self._database.db.commit()

    async def save_settlement(self, summary: SettlementSummary) -> None:
        data = {k: to_column(v) for k, v in asdict(summary).items()}
        await self._database.db.execute(
            "INSERT INTO settlements "
            "(id, round_id, winner, total_pool, winning_pool, losing_pool, platform_fee, "
            "payout_pool, payout_ratio, total_winners, total_losers, "
            "sui_settlement_object_id, calculated_at, completed_at, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(round_id) DO UPDATE SET "
            "winner = excluded.winner, "
            "total_pool = excluded.total_pool, "
            "winning_pool = excluded.winning_pool, "
            "losing_pool = excluded.losing_pool, "
            "platform_fee = excluded.platform_fee, "
            "payout_pool = excluded.payout_pool, "
            "payout_ratio = excluded.payout_ratio, "
            "total_winners = excluded.total_winners, "
            "total_losers = excluded.total_losers, "
            "sui_settlement_object_id = excluded.sui_settlement_object_id, "
            "calculated_at = excluded.calculated_at, "
            "completed_at = excluded.completed_at",
            (
                str(uuid.uuid4()),
                data["round_id"],
                data["winner"],
                data["total_pool"],
                data["winning_pool"],
                data["losing_pool"],
                data["platform_fee"],
                data["payout_pool"],
                data["payout_ratio"],
                data["total_winners"],
                data["total_losers"],
                data["sui_settlement_object_id"],
                data["calculated_at"],
                data["completed_at"],
                self._clock(),
            ),
        )
        await self._database.db.commit()
        logger.debug("settlement_saved", round_id=summary.round_id)
