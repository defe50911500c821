"""Persistence contracts consumed by the round engine.

The engine assumes nothing stronger than single-row atomicity from the
storage layer. Rounds are mutated through a compare-and-set on ``status``
and bets through a compare-and-set on ``settlement_status``; there are no
multi-row transactions.
"""

from abc import ABC, abstractmethod
from typing import Any

from rounds.models import (
    Bet,
    BetResultStatus,
    Round,
    RoundStatus,
    RoundType,
    SettlementSummary,
)


class RoundRepository(ABC):
    """Storage for rounds, their transition history and settlement summaries."""

    @abstractmethod
    async def find_by_id(self, round_id: str) -> Round | None: ...

    @abstractmethod
    async def update_by_id(self, round_id: str, patch: dict[str, Any]) -> Round:
        """Apply a partial update and stamp ``updated_at``.

        Raises:
            NotFoundError: If the round does not exist.
        """

    @abstractmethod
    async def compare_and_set_status(
        self,
        round_id: str,
        expected_status: RoundStatus,
        patch: dict[str, Any],
    ) -> Round | None:
        """Apply ``patch`` only if the stored status still equals ``expected_status``.

        Returns:
            The updated round, or None if the status no longer matches.

        Raises:
            NotFoundError: If the round does not exist.
        """

    @abstractmethod
    async def find_last_round(self, round_type: RoundType) -> Round | None:
        """Round of ``round_type`` with the highest round number."""

    @abstractmethod
    async def find_by_start_time(self, round_type: RoundType, start_time: int) -> Round | None: ...

    @abstractmethod
    async def find_latest_by_status(self, status: RoundStatus) -> Round | None:
        """Most recent round (latest start time) currently in ``status``."""

    @abstractmethod
    async def find_many(
        self,
        round_type: RoundType | None,
        statuses: list[RoundStatus] | None,
        sort: str,
        order: str,
        limit: int,
        offset: int,
    ) -> list[Round]:
        """One page of rounds matching the optional type and status filters.

        ``sort`` is "start_time" or "round_number"; ``order`` is "asc" or "desc".
        """

    @abstractmethod
    async def count(
        self, round_type: RoundType | None, statuses: list[RoundStatus] | None
    ) -> int: ...

    @abstractmethod
    async def find_current_round(self, round_type: RoundType) -> Round | None:
        """Latest-starting round of ``round_type`` that is BETTING_OPEN or BETTING_LOCKED."""

    @abstractmethod
    async def check_overlapping_time(
        self, start_time: int, end_time: int, round_type: RoundType
    ) -> bool:
        """True if a round of ``round_type`` intersects [start_time, end_time).

        Rounds that merely touch the interval at an endpoint do not overlap.
        """

    @abstractmethod
    async def insert(self, round_: Round) -> Round: ...

    @abstractmethod
    async def find_stuck_calculating_rounds(self, threshold_ms: int) -> list[Round]:
        """CALCULATING rounds that ended at or before ``threshold_ms``.

        Rounds with no ``round_ended_at`` are always included.
        """

    @abstractmethod
    async def record_transition(
        self,
        round_id: str,
        from_status: RoundStatus,
        to_status: RoundStatus,
        triggered_by: str,
        metadata: dict[str, Any],
        created_at: int,
    ) -> None: ...

    @abstractmethod
    async def save_settlement(self, summary: SettlementSummary) -> None:
        """Store the settlement summary; a second save for the same round replaces it."""


class BetRepository(ABC):
    """Storage for bets."""

    @abstractmethod
    async def find_by_round_id(self, round_id: str) -> list[Bet]: ...

    @abstractmethod
    async def update_by_id(self, bet_id: str, patch: dict[str, Any]) -> Bet: ...

    @abstractmethod
    async def mark_settled(
        self,
        bet_id: str,
        result_status: BetResultStatus,
        payout_amount: int,
        settled_at: int,
    ) -> bool:
        """Complete a bet's settlement unless it is already COMPLETED.

        Returns:
            True if this call wrote the row, False if it was already complete.
        """

    @abstractmethod
    async def insert(self, bet: Bet) -> Bet: ...
