"""Shared data models for the round lifecycle engine.

Prices, percents and the fee rate are Decimal (stored as TEXT). Stakes,
pools, fees and payouts are integer token units. All timestamps are
epoch milliseconds.
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class RoundType(str, Enum):
    """Betting period length."""

    ONE_MINUTE = "1MIN"
    SIX_HOUR = "6HOUR"
    ONE_DAY = "1DAY"


ROUND_DURATIONS_MS: dict[RoundType, int] = {
    RoundType.ONE_MINUTE: 60 * 1000,
    RoundType.SIX_HOUR: 6 * 60 * 60 * 1000,
    RoundType.ONE_DAY: 24 * 60 * 60 * 1000,
}


class RoundStatus(str, Enum):
    """Round FSM state."""

    SCHEDULED = "SCHEDULED"
    BETTING_OPEN = "BETTING_OPEN"
    BETTING_LOCKED = "BETTING_LOCKED"
    PRICE_PENDING = "PRICE_PENDING"
    CALCULATING = "CALCULATING"
    SETTLED = "SETTLED"
    CANCELLED = "CANCELLED"
    VOIDED = "VOIDED"


TERMINAL_STATUSES = frozenset(
    {RoundStatus.SETTLED, RoundStatus.CANCELLED, RoundStatus.VOIDED}
)


class Asset(str, Enum):
    """The two competing assets. Used for both bet predictions and winners."""

    GOLD = "GOLD"
    BTC = "BTC"


class BetResultStatus(str, Enum):
    PENDING = "PENDING"
    WON = "WON"
    LOST = "LOST"
    REFUNDED = "REFUNDED"


class BetSettlementStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class CancelledBy(str, Enum):
    SYSTEM = "SYSTEM"
    ADMIN = "ADMIN"


@dataclass
class Round:
    """One betting period.

    Fields required by a transition are filled in by that transition
    (see rounds.transitions); everything else defaults to empty.
    """

    id: str
    round_number: int
    type: RoundType
    status: RoundStatus
    start_time: int
    lock_time: int
    end_time: int

    # Price snapshots (decimal strings)
    gold_start_price: str | None = None
    btc_start_price: str | None = None
    gold_end_price: str | None = None
    btc_end_price: str | None = None
    price_snapshot_start_at: int | None = None
    price_snapshot_end_at: int | None = None
    start_price_source: str | None = None
    end_price_source: str | None = None
    start_price_is_fallback: bool = False
    start_price_fallback_reason: str | None = None
    end_price_is_fallback: bool = False
    end_price_fallback_reason: str | None = None

    # Pool aggregates, owned by bet placement
    total_pool: int = 0
    total_gold_bets: int = 0
    total_btc_bets: int = 0
    total_bets_count: int = 0

    # Outcome and settlement
    gold_change_percent: str | None = None
    btc_change_percent: str | None = None
    winner: Asset | None = None
    platform_fee_rate: Decimal = Decimal("0.05")
    platform_fee_collected: int | None = None
    payout_pool: int | None = None

    # On-chain bookkeeping
    sui_pool_address: str | None = None
    sui_settlement_object_id: str | None = None

    # Lifecycle timestamps
    betting_opened_at: int | None = None
    betting_locked_at: int | None = None
    round_ended_at: int | None = None
    settlement_completed_at: int | None = None
    settlement_failure_alert_sent_at: int | None = None

    # Cancellation
    cancellation_reason: str | None = None
    cancellation_message: str | None = None
    cancelled_by: CancelledBy | None = None
    cancelled_at: int | None = None

    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)


@dataclass
class Bet:
    """One user's wager on one round."""

    id: str
    round_id: str
    user_id: str
    prediction: Asset
    amount: int
    result_status: BetResultStatus = BetResultStatus.PENDING
    settlement_status: BetSettlementStatus = BetSettlementStatus.PENDING
    payout_amount: int = 0
    settled_at: int | None = None
    created_at: int = field(default_factory=now_ms)


@dataclass
class PriceSnapshot:
    """Gold and BTC prices observed at one instant."""

    gold: Decimal
    btc: Decimal
    timestamp_ms: int
    source: str
    is_fallback: bool = False
    fallback_reason: str | None = None


@dataclass
class SettlementSummary:
    """Per-round settlement record kept alongside the round for auditing."""

    round_id: str
    winner: Asset | None
    total_pool: int
    winning_pool: int
    losing_pool: int
    platform_fee: int
    payout_pool: int
    payout_ratio: Decimal
    total_winners: int
    total_losers: int
    sui_settlement_object_id: str | None
    calculated_at: int
    completed_at: int | None = None


class JobStatus(str, Enum):
    """Outcome of a scheduler-driven round job."""

    OPENED = "opened"
    LOCKED = "locked"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"
    NO_ROUND = "no_round"
    NOT_READY = "not_ready"


class SettleStatus(str, Enum):
    SETTLED = "settled"
    ALREADY_SETTLED = "already_settled"
    NO_BETS = "no_bets"
    PARTIAL = "partial"


@dataclass
class SettleRoundResult:
    """Result of one settlement attempt. PARTIAL is a result, not an error."""

    status: SettleStatus
    round_id: str
    settled_count: int = 0
    failed_count: int = 0
    total_payout: int = 0
    message: str | None = None


@dataclass
class RoundJobResult:
    """Result of create/open/lock/finalize."""

    status: JobStatus
    round: Round | None = None
    message: str | None = None
    settlement: SettleRoundResult | None = None


@dataclass
class RecoveryResult:
    """Summary of one recovery tick."""

    stuck_count: int = 0
    retried_count: int = 0
    alerted_count: int = 0
