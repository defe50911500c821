"""SQLite implementation of the bet repository."""

from typing import Any

import aiosqlite

from rounds.data.database import RoundDatabase
from rounds.data.round_store import to_column
from rounds.exceptions import NotFoundError
from rounds.logging import get_logger
from rounds.models import (
    Asset,
    Bet,
    BetResultStatus,
    BetSettlementStatus,
)
from rounds.repository import BetRepository

logger = get_logger(__name__)

_BET_COLUMNS = (
    "id",
    "round_id",
    "user_id",
    "prediction",
    "amount",
    "result_status",
    "settlement_status",
    "payout_amount",
    "settled_at",
    "created_at",
)


def _row_to_bet(row: aiosqlite.Row) -> Bet:
    return Bet(
        id=row["id"],
        round_id=row["round_id"],
        user_id=row["user_id"],
        prediction=Asset(row["prediction"]),
        amount=row["amount"],
        result_status=BetResultStatus(row["result_status"]),
        settlement_status=BetSettlementStatus(row["settlement_status"]),
        payout_amount=row["payout_amount"],
        settled_at=row["settled_at"],
        created_at=row["created_at"],
    )


class SqliteBetRepository(BetRepository):
    """Bet storage on top of RoundDatabase."""

    def __init__(self, database: RoundDatabase) -> None:
        self._database = database

    async def find_by_id(self, bet_id: str) -> Bet | None:
        cursor = await self._database.db.execute("SELECT * FROM bets WHERE id = ?", (bet_id,))
        row = await cursor.fetchone()
        return _row_to_bet(row) if row is not None else None

    async def find_by_round_id(self, round_id: str) -> list[Bet]:
        cursor = await self._database.db.execute(
            "SELECT * FROM bets WHERE round_id = ? ORDER BY created_at, id",
            (round_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_bet(row) for row in rows]

    async def insert(self, bet: Bet) -> Bet:
        placeholders = ", ".join("?" for _ in _BET_COLUMNS)
        await self._database.db.execute(
            f"INSERT INTO bets ({', '.join(_BET_COLUMNS)}) VALUES ({placeholders})",
            [to_column(getattr(bet, name)) for name in _BET_COLUMNS],
        )
        await self._database.db.commit()
        return bet

    async def update_by_id(self, bet_id: str, patch: dict[str, Any]) -> Bet:
        unknown = set(patch) - set(_BET_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown bet columns: {sorted(unknown)}")
        assignments = ", ".join(f"{name} = ?" for name in patch)
        cursor = await self._database.db.execute(
            f"UPDATE bets SET {assignments} WHERE id = ?",
            [*(to_column(v) for v in patch.values()), bet_id],
        )
        await self._database.db.commit()
        if cursor.rowcount == 0:
            raise NotFoundError("Bet", bet_id)

        updated = await self.find_by_id(bet_id)
        assert updated is not None
        return updated

    async def mark_settled(
        self,
        bet_id: str,
        result_status: BetResultStatus,
        payout_amount: int,
        settled_at: int,
    ) -> bool:
        cursor = await self._database.db.execute(
            "UPDATE bets SET result_status = ?, settlement_status = ?, "
            "payout_amount = ?, settled_at = ? "
            "WHERE id = ? AND settlement_status != ?",
            (
                to_column(result_status),
                BetSettlementStatus.COMPLETED.value,
                payout_amount,
                settled_at,
                bet_id,
                BetSettlementStatus.COMPLETED.value,
            ),
        )
        await self._database.db.commit()
        if cursor.rowcount == 1:
            return True

        if await self.find_by_id(bet_id) is None:
            raise NotFoundError("Bet", bet_id)
        logger.debug("bet_already_settled", bet_id=bet_id)
        return False
