"""Per-edge transition payloads for the round FSM.

Each allowed (from, to) edge has exactly one payload dataclass. Fields
without a default are required for that edge; optional fields are written
only when set. The required-field table used to validate untyped input
(mappings coming from the CLI or another process) is derived from these
classes, so the typed and runtime contracts cannot drift apart.
"""

from dataclasses import MISSING, dataclass, fields
from decimal import Decimal
from typing import Any

from rounds.models import Asset, CancelledBy, RoundStatus


@dataclass(frozen=True, kw_only=True)
class OpenBetting:
    """SCHEDULED -> BETTING_OPEN"""

    gold_start_price: str
    btc_start_price: str
    price_snapshot_start_at: int
    start_price_source: str
    sui_pool_address: str
    betting_opened_at: int
    start_price_is_fallback: bool = False
    start_price_fallback_reason: str | None = None


@dataclass(frozen=True, kw_only=True)
class LockBetting:
    """BETTING_OPEN -> BETTING_LOCKED"""

    betting_locked_at: int


@dataclass(frozen=True, kw_only=True)
class EndRound:
    """BETTING_LOCKED -> PRICE_PENDING"""

    round_ended_at: int


@dataclass(frozen=True, kw_only=True)
class RecordOutcome:
    """PRICE_PENDING -> CALCULATING"""

    gold_end_price: str
    btc_end_price: str
    price_snapshot_end_at: int
    end_price_source: str
    gold_change_percent: str
    btc_change_percent: str
    winner: Asset
    end_price_is_fallback: bool = False
    end_price_fallback_reason: str | None = None


@dataclass(frozen=True, kw_only=True)
class FinalizeRound(RecordOutcome):
    """BETTING_LOCKED -> CALCULATING in one write (end marker plus outcome)."""

    round_ended_at: int


@dataclass(frozen=True, kw_only=True)
class SettleRound:
    """CALCULATING -> SETTLED"""

    platform_fee_collected: int
    sui_settlement_object_id: str
    settlement_completed_at: int
    payout_pool: int | None = None


@dataclass(frozen=True, kw_only=True)
class VoidRound:
    """CALCULATING -> VOIDED"""

    settlement_completed_at: int


@dataclass(frozen=True, kw_only=True)
class CancelRound:
    """any non-terminal -> CANCELLED"""

    cancellation_reason: str | None = None
    cancellation_message: str | None = None
    cancelled_by: CancelledBy | None = None
    cancelled_at: int | None = None


TransitionPayload = (
    OpenBetting
    | LockBetting
    | EndRound
    | RecordOutcome
    | FinalizeRound
    | SettleRound
    | VoidRound
    | CancelRound
)

S = RoundStatus

EDGE_PAYLOADS: dict[tuple[RoundStatus, RoundStatus], type] = {
    (S.SCHEDULED, S.BETTING_OPEN): OpenBetting,
    (S.BETTING_OPEN, S.BETTING_LOCKED): LockBetting,
    (S.BETTING_LOCKED, S.PRICE_PENDING): EndRound,
    (S.BETTING_LOCKED, S.CALCULATING): FinalizeRound,
    (S.PRICE_PENDING, S.CALCULATING): RecordOutcome,
    (S.CALCULATING, S.SETTLED): SettleRound,
    (S.CALCULATING, S.VOIDED): VoidRound,
    (S.SCHEDULED, S.CANCELLED): CancelRound,
    (S.BETTING_OPEN, S.CANCELLED): CancelRound,
    (S.BETTING_LOCKED, S.CANCELLED): CancelRound,
    (S.PRICE_PENDING, S.CANCELLED): CancelRound,
    (S.CALCULATING, S.CANCELLED): CancelRound,
}


def required_fields(from_status: RoundStatus, to_status: RoundStatus) -> list[str]:
    """Names of the fields an edge must carry, in declaration order."""
    payload_cls = EDGE_PAYLOADS.get((from_status, to_status))
    if payload_cls is None:
        return []
    return [
        f.name
        for f in fields(payload_cls)
        if f.default is MISSING and f.default_factory is MISSING
    ]


def payload_to_patch(payload: TransitionPayload) -> dict[str, Any]:
    """Flatten a payload into a round patch, dropping unset optional fields."""
    patch: dict[str, Any] = {}
    for f in fields(payload):
        value = getattr(payload, f.name)
        if value is None:
            continue
        if isinstance(value, Decimal):
            value = str(value)
        patch[f.name] = value
    return patch
