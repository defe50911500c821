"""Round lifecycle orchestration.

Each public coroutine is one scheduler job and is safe to run again after
a crash or an overlapping invocation:

- create_next_scheduled_round: insert the next SCHEDULED round (or return it).
- open_round: SCHEDULED -> BETTING_OPEN with the start price snapshot, or
  CANCELLED when the open window was missed.
- lock_round: BETTING_OPEN -> BETTING_LOCKED once lock_time has passed.
- finalize_round: BETTING_LOCKED -> CALCULATING with the winner, then settle.
- settle_round: pay out bets and move CALCULATING -> SETTLED.
- recovery_rounds: retry or escalate rounds stuck in CALCULATING.

Operator reads (get_round, list_rounds, get_current_round) and the manual
create_round sit alongside the jobs.
"""

import asyncio
import time
import uuid
from collections.abc import Callable, Mapping
from typing import Any

from rounds.alerts import AlertNotifier
from rounds.calculator import calculate_payout, determine_winner
from rounds.config import AppSettings
from rounds.exceptions import BusinessRuleError, NotFoundError, ValidationError
from rounds.fsm import RoundStateMachine, validate_round_id
from rounds.ledger import ChainLedger
from rounds.logging import get_logger
from rounds.models import (
    ROUND_DURATIONS_MS,
    CancelledBy,
    JobStatus,
    PriceSnapshot,
    RecoveryResult,
    Round,
    RoundJobResult,
    RoundStatus,
    RoundType,
    SettlementSummary,
    SettleRoundResult,
    SettleStatus,
    now_ms,
)
from rounds.queries import (
    CreateRoundRequest,
    CurrentRoundView,
    RoundListQuery,
    RoundPage,
    current_round_view,
    parse_request,
    total_pages,
)
from rounds.repository import BetRepository, RoundRepository
from rounds.scheduler import next_aligned_start
from rounds.settlement import BetSettler
from rounds.transitions import (
    CancelRound,
    FinalizeRound,
    LockBetting,
    OpenBetting,
    SettleRound,
)

logger = get_logger(__name__)


class RoundService:
    """Drives rounds through their lifecycle.

    All collaborators are injected; see rounds.main.build_components for
    the production wiring.
    """

    def __init__(
        self,
        settings: AppSettings,
        round_repository: RoundRepository,
        bet_repository: BetRepository,
        state_machine: RoundStateMachine,
        bet_settler: BetSettler,
        ledger: ChainLedger,
        notifier: AlertNotifier,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._settings = settings
        self._rounds = round_repository
        self._bets = bet_repository
        self._fsm = state_machine
        self._settler = bet_settler
        self._ledger = ledger
        self._notifier = notifier
        self._clock = clock

    # ──────────────────────────────────────────────
    # Queries and operator actions
    # ──────────────────────────────────────────────

    async def get_round(self, round_id: str) -> Round:
        validate_round_id(round_id)
        round_ = await self._rounds.find_by_id(round_id)
        if round_ is None:
            raise NotFoundError("Round", round_id)
        return round_

    async def list_rounds(
        self, query: RoundListQuery | Mapping[str, Any] | None = None
    ) -> RoundPage:
        """Filtered, sorted page of rounds.

        Raises:
            ValidationError: Unknown type or status, or page/page_size out of range.
        """
        query = parse_request(RoundListQuery, query)
        rounds, total = await asyncio.gather(
            self._rounds.find_many(
                query.type,
                query.statuses,
                query.sort.value,
                query.order.value,
                query.page_size,
                query.offset,
            ),
            self._rounds.count(query.type, query.statuses),
        )
        return RoundPage(
            rounds=rounds,
            page=query.page,
            page_size=query.page_size,
            total=total,
            total_pages=total_pages(total, query.page_size),
        )

    async def get_current_round(self, round_type: RoundType | str) -> CurrentRoundView:
        """The open or locked round of ``round_type`` with its countdowns.

        Raises:
            ValidationError: Unknown round type.
            NotFoundError: No round of that type is open or locked.
        """
        try:
            round_type = RoundType(round_type)
        except ValueError:
            raise ValidationError(
                f"Invalid round type: {round_type}", {"type": str(round_type)}
            ) from None
        round_ = await self._rounds.find_current_round(round_type)
        if round_ is None:
            raise NotFoundError("Current active round", round_type.value)
        return current_round_view(round_, self._clock())

    async def create_round(
        self, request: CreateRoundRequest | Mapping[str, Any]
    ) -> Round:
        """Insert a SCHEDULED round at an explicit start time.

        Raises:
            ValidationError: Malformed request.
            BusinessRuleError: ROUND_TIME_OVERLAP if a round of the same type
                already covers part of the new round's period.
        """
        request = parse_request(CreateRoundRequest, request)
        round_type = request.type
        start_time = request.start_time
        end_time = start_time + ROUND_DURATIONS_MS[round_type]

        if await self._rounds.check_overlapping_time(start_time, end_time, round_type):
            raise BusinessRuleError(
                "ROUND_TIME_OVERLAP",
                "A round already exists for this time period",
                {"type": round_type.value, "start_time": start_time, "end_time": end_time},
            )

        last = await self._rounds.find_last_round(round_type)
        round_number = last.round_number + 1 if last is not None else 1
        inserted = await self._rounds.insert(
            self._new_round(round_type, round_number, start_time)
        )
        logger.info(
            "round_created",
            round_id=inserted.id,
            round_number=inserted.round_number,
            type=round_type.value,
            start_time=inserted.start_time,
            end_time=inserted.end_time,
        )
        return inserted

    async def cancel_round(
        self,
        round_id: str,
        reason: str,
        message: str,
        cancelled_by: CancelledBy = CancelledBy.SYSTEM,
    ) -> Round:
        """Cancel a non-terminal round."""
        return await self._fsm.transition(
            round_id,
            RoundStatus.CANCELLED,
            CancelRound(
                cancellation_reason=reason,
                cancellation_message=message,
                cancelled_by=cancelled_by,
                cancelled_at=self._clock(),
            ),
            triggered_by=CancelledBy(cancelled_by).value,
        )

    # ──────────────────────────────────────────────
    # Scheduler jobs
    # ──────────────────────────────────────────────

    async def create_next_scheduled_round(self) -> Round:
        """Insert the round that follows the last one of the default type.

        The first round starts at the next slot of the start-hour grid. If a
        round already exists at the computed start time it is returned as is.
        """
        round_type = self._settings.rounds.default_type
        duration = ROUND_DURATIONS_MS[round_type]
        last = await self._rounds.find_last_round(round_type)

        if last is None:
            round_number = 1
            start_time = next_aligned_start(self._clock(), self._settings.rounds.start_hours_utc)
        else:
            round_number = last.round_number + 1
            start_time = last.start_time + duration

        existing = await self._rounds.find_by_start_time(round_type, start_time)
        if existing is not None:
            logger.info(
                "round_already_scheduled",
                round_id=existing.id,
                round_number=existing.round_number,
                start_time=start_time,
            )
            return existing

        inserted = await self._rounds.insert(
            self._new_round(round_type, round_number, start_time)
        )
        logger.info(
            "round_scheduled",
            round_id=inserted.id,
            round_number=inserted.round_number,
            type=round_type.value,
            start_time=inserted.start_time,
            lock_time=inserted.lock_time,
            end_time=inserted.end_time,
        )
        return inserted

    def _new_round(self, round_type: RoundType, round_number: int, start_time: int) -> Round:
        now = self._clock()
        return Round(
            id=str(uuid.uuid4()),
            round_number=round_number,
            type=round_type,
            status=RoundStatus.SCHEDULED,
            start_time=start_time,
            lock_time=start_time + self._settings.rounds.betting_window_ms(round_type),
            end_time=start_time + ROUND_DURATIONS_MS[round_type],
            platform_fee_rate=self._settings.settlement.platform_fee_rate,
            created_at=now,
            updated_at=now,
        )

    async def open_round(self, prices: PriceSnapshot) -> RoundJobResult:
        round_ = await self._rounds.find_latest_by_status(RoundStatus.SCHEDULED)
        if round_ is None:
            logger.info("no_scheduled_round")
            return RoundJobResult(JobStatus.NO_ROUND, message="No scheduled round found")

        now = self._clock()
        if round_.start_time > now:
            logger.info(
                "round_not_ready_to_open",
                round_id=round_.id,
                start_time=round_.start_time,
                now=now,
            )
            return RoundJobResult(
                JobStatus.NOT_READY,
                round_,
                "Round not ready yet (start_time not reached)",
            )

        if now >= round_.lock_time:
            logger.warning(
                "open_window_missed",
                round_id=round_.id,
                lock_time=round_.lock_time,
                now=now,
            )
            cancelled = await self.cancel_round(
                round_.id,
                reason="MISSED_OPEN_WINDOW",
                message="Cancelled automatically: lock_time passed before the round opened",
                cancelled_by=CancelledBy.SYSTEM,
            )
            return RoundJobResult(
                JobStatus.CANCELLED,
                cancelled,
                "Round cancelled (missed open window)",
            )

        pool_address = await self._ledger.create_pool(round_)
        opened = await self._fsm.transition(
            round_.id,
            RoundStatus.BETTING_OPEN,
            OpenBetting(
                gold_start_price=str(prices.gold),
                btc_start_price=str(prices.btc),
                price_snapshot_start_at=prices.timestamp_ms,
                start_price_source=prices.source,
                sui_pool_address=pool_address,
                betting_opened_at=self._clock(),
                start_price_is_fallback=prices.is_fallback,
                start_price_fallback_reason=prices.fallback_reason,
            ),
        )
        return RoundJobResult(JobStatus.OPENED, opened)

    async def lock_round(self) -> RoundJobResult:
        round_ = await self._rounds.find_latest_by_status(RoundStatus.BETTING_OPEN)
        if round_ is None:
            logger.info("no_open_round")
            return RoundJobResult(JobStatus.NO_ROUND, message="No open round found")

        now = self._clock()
        if round_.lock_time > now:
            logger.info(
                "round_not_ready_to_lock",
                round_id=round_.id,
                lock_time=round_.lock_time,
                now=now,
            )
            return RoundJobResult(JobStatus.NOT_READY, round_, "Round not ready to lock yet")

        locked = await self._fsm.transition(
            round_.id,
            RoundStatus.BETTING_LOCKED,
            LockBetting(betting_locked_at=now),
        )
        return RoundJobResult(JobStatus.LOCKED, locked)

    async def finalize_round(self, end_prices: PriceSnapshot) -> RoundJobResult:
        """Record the outcome of the locked round and settle it in the same tick.

        The round enters CALCULATING with its end marker and winner in one
        write. Settlement failures after that point leave it in CALCULATING
        for the recovery job.

        Raises:
            BusinessRuleError: ROUND_DATA_MISSING if start prices were never recorded.
        """
        started = time.monotonic()

        round_ = await self._rounds.find_latest_by_status(RoundStatus.BETTING_LOCKED)
        if round_ is None:
            logger.info("no_locked_round")
            return RoundJobResult(JobStatus.NO_ROUND, message="No locked round found")

        now = self._clock()
        if round_.end_time > now:
            logger.info(
                "round_not_ready_to_finalize",
                round_id=round_.id,
                end_time=round_.end_time,
                now=now,
            )
            return RoundJobResult(
                JobStatus.NOT_READY, round_, "Round not ready to finalize yet"
            )

        missing = [
            name
            for name in ("gold_start_price", "btc_start_price")
            if not getattr(round_, name)
        ]
        if missing:
            raise BusinessRuleError(
                "ROUND_DATA_MISSING",
                "Missing required round fields",
                {"round_id": round_.id, "missing": missing},
            )

        outcome = determine_winner(
            gold_start=round_.gold_start_price,  # type: ignore[arg-type]
            gold_end=end_prices.gold,
            btc_start=round_.btc_start_price,  # type: ignore[arg-type]
            btc_end=end_prices.btc,
        )
        logger.info(
            "winner_determined",
            round_id=round_.id,
            winner=outcome.winner.value,
            gold_change_percent=str(outcome.gold_change_percent),
            btc_change_percent=str(outcome.btc_change_percent),
        )

        calculating = await self._fsm.transition(
            round_.id,
            RoundStatus.CALCULATING,
            FinalizeRound(
                round_ended_at=self._clock(),
                gold_end_price=str(end_prices.gold),
                btc_end_price=str(end_prices.btc),
                price_snapshot_end_at=end_prices.timestamp_ms,
                end_price_source=end_prices.source,
                gold_change_percent=str(outcome.gold_change_percent),
                btc_change_percent=str(outcome.btc_change_percent),
                winner=outcome.winner,
                end_price_is_fallback=end_prices.is_fallback,
                end_price_fallback_reason=end_prices.fallback_reason,
            ),
        )

        settlement = await self.settle_round(calculating.id)

        logger.info(
            "round_finalized",
            round_id=calculating.id,
            round_number=calculating.round_number,
            winner=outcome.winner.value,
            settlement_status=settlement.status.value,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return RoundJobResult(JobStatus.FINALIZED, calculating, settlement=settlement)

    async def settle_round(self, round_id: str) -> SettleRoundResult:
        """Pay out every bet of a CALCULATING round and mark it SETTLED.

        Returns PARTIAL (without raising) when some bet writes failed; the
        round then stays in CALCULATING and a later call resumes with the
        bets that are not yet complete.

        Raises:
            NotFoundError: The round does not exist.
            BusinessRuleError: INVALID_ROUND_STATUS if the round is neither
                CALCULATING nor SETTLED.
        """
        validate_round_id(round_id)
        round_ = await self._rounds.find_by_id(round_id)
        if round_ is None:
            raise NotFoundError("Round", round_id)

        if round_.status == RoundStatus.SETTLED:
            logger.info("round_already_settled", round_id=round_id)
            return SettleRoundResult(SettleStatus.ALREADY_SETTLED, round_id)

        if round_.status != RoundStatus.CALCULATING:
            status = RoundStatus(round_.status).value
            raise BusinessRuleError(
                "INVALID_ROUND_STATUS",
                f"Round must be in CALCULATING status, got: {status}",
                {"round_id": round_id, "current_status": status},
            )

        bets = await self._bets.find_by_round_id(round_id)
        if not bets:
            object_id = await self._ledger.record_settlement(round_, 0)
            await self._fsm.transition(
                round_id,
                RoundStatus.SETTLED,
                SettleRound(
                    platform_fee_collected=0,
                    sui_settlement_object_id=object_id,
                    settlement_completed_at=self._clock(),
                    payout_pool=0,
                ),
            )
            logger.info("round_settled_without_bets", round_id=round_id)
            return SettleRoundResult(SettleStatus.NO_BETS, round_id)

        payout = calculate_payout(
            winner=round_.winner,
            total_pool=round_.total_pool,
            total_gold_bets=round_.total_gold_bets,
            total_btc_bets=round_.total_btc_bets,
            platform_fee_rate=round_.platform_fee_rate,
        )
        logger.info(
            "payout_calculated",
            round_id=round_id,
            total_pool=round_.total_pool,
            platform_fee=payout.platform_fee,
            payout_pool=payout.payout_pool,
            payout_ratio=str(payout.payout_ratio),
            winning_pool=payout.winning_pool,
        )

        plan = self._settler.plan(round_.winner, bets, payout.payout_ratio)
        outcome = await self._settler.apply(round_id, plan)

        if outcome.failed_count:
            logger.warning(
                "round_partially_settled",
                round_id=round_id,
                settled=outcome.settled_count,
                failed=outcome.failed_count,
                failed_bet_ids=outcome.failed_bet_ids,
            )
            return SettleRoundResult(
                SettleStatus.PARTIAL,
                round_id,
                settled_count=outcome.settled_count,
                failed_count=outcome.failed_count,
                total_payout=outcome.total_payout,
                message="Partially settled, will retry in recovery",
            )

        now = self._clock()
        object_id = await self._ledger.record_settlement(round_, payout.payout_pool)
        await self._rounds.save_settlement(
            SettlementSummary(
                round_id=round_id,
                winner=round_.winner,
                total_pool=round_.total_pool,
                winning_pool=payout.winning_pool,
                losing_pool=payout.losing_pool,
                platform_fee=payout.platform_fee,
                payout_pool=payout.payout_pool,
                payout_ratio=payout.payout_ratio,
                total_winners=plan.winners,
                total_losers=plan.losers,
                sui_settlement_object_id=object_id,
                calculated_at=now,
                completed_at=now,
            )
        )
        await self._fsm.transition(
            round_id,
            RoundStatus.SETTLED,
            SettleRound(
                platform_fee_collected=payout.platform_fee,
                sui_settlement_object_id=object_id,
                settlement_completed_at=now,
                payout_pool=payout.payout_pool,
            ),
        )

        return SettleRoundResult(
            SettleStatus.SETTLED,
            round_id,
            settled_count=outcome.settled_count + outcome.skipped_count,
            total_payout=outcome.total_payout,
        )

    async def recovery_rounds(self) -> RecoveryResult:
        """Retry or escalate rounds stuck in CALCULATING.

        - already alerted: skipped, no writes
        - stuck >= alert threshold: alert marker written, operator notified once
        - otherwise: settle_round retried; its failures are logged and swallowed
        """
        recovery = self._settings.recovery
        now = self._clock()
        stuck_rounds = await self._rounds.find_stuck_calculating_rounds(
            now - recovery.retry_start_threshold_ms
        )
        result = RecoveryResult(stuck_count=len(stuck_rounds))

        for round_ in stuck_rounds:
            if round_.settlement_failure_alert_sent_at is not None:
                logger.info(
                    "stuck_round_already_alerted",
                    round_id=round_.id,
                    alert_sent_at=round_.settlement_failure_alert_sent_at,
                )
                continue

            stuck_ms = now - (round_.round_ended_at or 0)
            if stuck_ms >= recovery.alert_threshold_ms:
                try:
                    await self._rounds.update_by_id(
                        round_.id, {"settlement_failure_alert_sent_at": now}
                    )
                except Exception as exc:
                    # Not counted; the next tick escalates it again
                    logger.error(
                        "stuck_round_alert_marker_failed",
                        round_id=round_.id,
                        error=str(exc),
                    )
                    continue
                result.alerted_count += 1
                try:
                    await self._notifier.settlement_stuck(round_, stuck_ms)
                except Exception as exc:
                    logger.error(
                        "stuck_round_notification_failed",
                        round_id=round_.id,
                        error=str(exc),
                    )
                continue

            result.retried_count += 1
            logger.info(
                "retrying_stuck_round",
                round_id=round_.id,
                stuck_minutes=stuck_ms // 60_000,
            )
            try:
                await self.settle_round(round_.id)
            except Exception as exc:
                logger.warning(
                    "stuck_round_retry_failed",
                    round_id=round_.id,
                    error=str(exc),
                )

        logger.info(
            "recovery_tick_complete",
            stuck=result.stuck_count,
            retried=result.retried_count,
            alerted=result.alerted_count,
        )
        return result
