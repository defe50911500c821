"""Per-bet settlement with partial-failure tracking.

BetSettler decides the result of every bet in a round (plan) and writes
those results back (apply). Each write is an independent conditional update,
so one failing bet never blocks the rest, and a bet that is already
COMPLETED is never rewritten.
"""

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal

from rounds.calculator import calculate_individual_payout
from rounds.logging import get_logger
from rounds.models import (
    Asset,
    Bet,
    BetResultStatus,
    BetSettlementStatus,
    now_ms,
)
from rounds.repository import BetRepository

logger = get_logger(__name__)


@dataclass(frozen=True)
class BetUpdate:
    """Planned settlement write for one bet."""

    bet_id: str
    result_status: BetResultStatus
    payout_amount: int


@dataclass
class SettlementPlan:
    updates: list[BetUpdate]
    skipped_count: int
    winners: int
    losers: int
    # Payouts of winning bets completed by an earlier run
    completed_payout: int


@dataclass
class BetSettlementOutcome:
    """Result of applying a settlement plan."""

    settled_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    total_payout: int = 0
    failed_bet_ids: list[str] = field(default_factory=list)


class BetSettler:
    """Computes and writes per-bet settlement results.

    Args:
        bet_repository: Bet storage with a conditional mark_settled.
        clock: Returns the current epoch milliseconds for ``settled_at``.
    """

    def __init__(
        self,
        bet_repository: BetRepository,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._bet_repository = bet_repository
        self._clock = clock

    def plan(
        self,
        winner: Asset | None,
        bets: Sequence[Bet],
        payout_ratio: Decimal,
    ) -> SettlementPlan:
        """Decide WON/LOST and the payout for each bet that is not yet complete.

        With no winner every bet loses.
        """
        updates: list[BetUpdate] = []
        skipped = 0
        winners = 0
        losers = 0
        completed_payout = 0

        for bet in bets:
            is_winner = winner is not None and bet.prediction == winner
            if is_winner:
                winners += 1
            else:
                losers += 1

            if bet.settlement_status == BetSettlementStatus.COMPLETED:
                skipped += 1
                if is_winner:
                    completed_payout += bet.payout_amount
                continue

            if is_winner:
                updates.append(
                    BetUpdate(
                        bet_id=bet.id,
                        result_status=BetResultStatus.WON,
                        payout_amount=calculate_individual_payout(bet.amount, payout_ratio),
                    )
                )
            else:
                updates.append(
                    BetUpdate(bet_id=bet.id, result_status=BetResultStatus.LOST, payout_amount=0)
                )

        return SettlementPlan(
            updates=updates,
            skipped_count=skipped,
            winners=winners,
            losers=losers,
            completed_payout=completed_payout,
        )

    async def apply(self, round_id: str, plan: SettlementPlan) -> BetSettlementOutcome:
        """Write every planned update concurrently and tally the results.

        A bet found already COMPLETED by the conditional write (a concurrent
        settler got there first) counts as settled.
        """
        settled_at = self._clock()
        results = await asyncio.gather(
            *(
                self._bet_repository.mark_settled(
                    update.bet_id,
                    update.result_status,
                    update.payout_amount,
                    settled_at,
                )
                for update in plan.updates
            ),
            return_exceptions=True,
        )

        outcome = BetSettlementOutcome(
            skipped_count=plan.skipped_count,
            total_payout=plan.completed_payout,
        )
        for update, result in zip(plan.updates, results):
            if isinstance(result, BaseException):
                outcome.failed_count += 1
                outcome.failed_bet_ids.append(update.bet_id)
                logger.error(
                    "bet_settlement_failed",
                    round_id=round_id,
                    bet_id=update.bet_id,
                    error=str(result),
                )
                continue

            outcome.settled_count += 1
            if update.result_status == BetResultStatus.WON:
                outcome.total_payout += update.payout_amount

        logger.info(
            "bets_settled",
            round_id=round_id,
            settled=outcome.settled_count,
            failed=outcome.failed_count,
            skipped=outcome.skipped_count,
            total_payout=outcome.total_payout,
        )
        return outcome
