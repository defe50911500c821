"""Round finite-state machine.

RoundStateMachine.transition is the only code path that changes a round's
status. It validates the edge, validates the per-edge payload, persists
through a compare-and-set on the current status and appends an audit row
to the transition history.

Lifecycle:
    SCHEDULED -> BETTING_OPEN -> BETTING_LOCKED -> [PRICE_PENDING ->] CALCULATING
    CALCULATING -> SETTLED | VOIDED
    any non-terminal -> CANCELLED
"""

import uuid
from collections.abc import Callable, Mapping
from dataclasses import fields
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from rounds.exceptions import BusinessRuleError, NotFoundError, ValidationError
from rounds.logging import get_logger
from rounds.models import Round, RoundStatus, now_ms
from rounds.repository import RoundRepository
from rounds.transitions import (
    EDGE_PAYLOADS,
    TransitionPayload,
    payload_to_patch,
    required_fields,
)

logger = get_logger(__name__)

S = RoundStatus

ALLOWED_TRANSITIONS: dict[RoundStatus, tuple[RoundStatus, ...]] = {
    S.SCHEDULED: (S.BETTING_OPEN, S.CANCELLED),
    S.BETTING_OPEN: (S.BETTING_LOCKED, S.CANCELLED),
    S.BETTING_LOCKED: (S.PRICE_PENDING, S.CALCULATING, S.CANCELLED),
    S.PRICE_PENDING: (S.CALCULATING, S.CANCELLED),
    S.CALCULATING: (S.SETTLED, S.VOIDED, S.CANCELLED),
    S.SETTLED: (),
    S.CANCELLED: (),
    S.VOIDED: (),
}

# Columns a transition payload may write. Identity, schedule, status and the
# bet-owned pool aggregates are excluded.
_PROTECTED_COLUMNS = frozenset({
    "id",
    "round_number",
    "type",
    "status",
    "start_time",
    "lock_time",
    "end_time",
    "total_pool",
    "total_gold_bets",
    "total_btc_bets",
    "total_bets_count",
    "created_at",
    "updated_at",
})
WRITABLE_COLUMNS = frozenset(f.name for f in fields(Round)) - _PROTECTED_COLUMNS

# Price and percent columns hold decimal strings
_DECIMAL_STRING_COLUMNS = frozenset({
    "gold_start_price",
    "btc_start_price",
    "gold_end_price",
    "btc_end_price",
    "gold_change_percent",
    "btc_change_percent",
})
_COLUMN_ADAPTERS: dict[str, TypeAdapter] = {
    f.name: TypeAdapter(f.type)
    for f in fields(Round)
    if f.name in WRITABLE_COLUMNS and f.name not in _DECIMAL_STRING_COLUMNS
}


def _coerce_decimal_string(value: Any) -> str:
    if isinstance(value, (bool, float)) or not isinstance(value, (str, int, Decimal)):
        raise ValueError(f"expected a decimal string, got {type(value).__name__}")
    try:
        parsed = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"not a decimal number: {value!r}") from None
    if not parsed.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return str(parsed)


def _coerce_column(name: str, value: Any, edge: dict[str, Any]) -> Any:
    """Coerce one metadata value to its Round column type."""
    try:
        if name in _DECIMAL_STRING_COLUMNS:
            return _coerce_decimal_string(value)
        return _COLUMN_ADAPTERS[name].validate_python(value)
    except (PydanticValidationError, ValueError) as exc:
        raise ValidationError(
            f"Invalid value for {name}: {value!r}",
            {**edge, "field": name, "value": repr(value), "error": str(exc)},
        ) from None


def can_transition(from_status: RoundStatus | str, to_status: RoundStatus | str) -> bool:
    """Table lookup. Unknown source states are rejected."""
    try:
        allowed = ALLOWED_TRANSITIONS[RoundStatus(from_status)]
    except (KeyError, ValueError):
        logger.warning("unknown_round_status", from_status=str(from_status))
        return False
    return to_status in allowed


def validate_round_id(round_id: str) -> None:
    """Raise ValidationError unless ``round_id`` is a well-formed UUID."""
    try:
        uuid.UUID(str(round_id))
    except ValueError:
        raise ValidationError(
            f"Invalid round id: {round_id}", {"round_id": round_id}
        ) from None


def _metadata_to_patch(
    round_id: str,
    from_status: RoundStatus,
    to_status: RoundStatus,
    metadata: TransitionPayload | Mapping[str, Any] | None,
) -> dict[str, Any]:
    """Validate a transition payload and flatten it into column updates."""
    required = required_fields(from_status, to_status)
    edge = {
        "round_id": round_id,
        "from_status": from_status.value,
        "to_status": to_status.value,
    }

    if metadata is None:
        if required:
            raise ValidationError(
                f"Transition {from_status.value} -> {to_status.value} requires metadata",
                {**edge, "missing_fields": required},
            )
        logger.warning("transition_without_metadata", **edge)
        return {}

    if isinstance(metadata, Mapping):
        unknown = sorted(set(metadata) - WRITABLE_COLUMNS)
        if unknown:
            raise ValidationError(
                f"Unknown transition metadata fields: {', '.join(unknown)}",
                {**edge, "unknown_fields": unknown},
            )
        missing = [name for name in required if metadata.get(name) is None]
        if missing:
            raise ValidationError(
                f"Missing required fields for {from_status.value} -> "
                f"{to_status.value}: {', '.join(missing)}",
                {**edge, "missing_fields": missing},
            )
        return {
            name: _coerce_column(name, value, edge)
            for name, value in metadata.items()
            if value is not None
        }

    expected = EDGE_PAYLOADS.get((from_status, to_status))
    if expected is None or not isinstance(metadata, expected):
        raise ValidationError(
            f"{type(metadata).__name__} is not a valid payload for "
            f"{from_status.value} -> {to_status.value}",
            {**edge, "expected": expected.__name__ if expected else None},
        )
    return payload_to_patch(metadata)


class RoundStateMachine:
    """Validates and persists round status transitions.

    Args:
        repository: Round storage.
        clock: Returns the current epoch milliseconds.
    """

    def __init__(
        self,
        repository: RoundRepository,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._repository = repository
        self._clock = clock

    async def transition(
        self,
        round_id: str,
        new_status: RoundStatus,
        metadata: TransitionPayload | Mapping[str, Any] | None = None,
        triggered_by: str = "SYSTEM",
    ) -> Round:
        """Move a round to ``new_status``.

        A request for the status the round already has is a no-op that
        returns the stored round without writing anything, so callers may
        retry blindly.

        Raises:
            ValidationError: Malformed id, unknown target status, or a payload
                with missing fields or values of the wrong type.
            NotFoundError: The round does not exist.
            BusinessRuleError: INVALID_TRANSITION for an illegal edge,
                CONCURRENT_TRANSITION if another writer moved the round
                somewhere else first.
        """
        validate_round_id(round_id)
        try:
            new_status = RoundStatus(new_status)
        except ValueError:
            raise ValidationError(
                f"Unknown round status: {new_status}",
                {"round_id": round_id, "new_status": str(new_status)},
            ) from None

        round_ = await self._repository.find_by_id(round_id)
        if round_ is None:
            raise NotFoundError("Round", round_id)

        current = RoundStatus(round_.status)
        if current == new_status:
            logger.debug("round_transition_noop", round_id=round_id, status=current.value)
            return round_

        if not can_transition(current, new_status):
            allowed = [s.value for s in ALLOWED_TRANSITIONS.get(current, ())]
            raise BusinessRuleError(
                "INVALID_TRANSITION",
                f"Cannot transition round from {current.value} to {new_status.value}",
                {
                    "round_id": round_id,
                    "current_status": current.value,
                    "new_status": new_status.value,
                    "allowed_transitions": allowed,
                },
            )

        patch = _metadata_to_patch(round_id, current, new_status, metadata)
        now = self._clock()

        updated = await self._repository.compare_and_set_status(
            round_id,
            current,
            {**patch, "status": new_status, "updated_at": now},
        )
        if updated is None:
            latest = await self._repository.find_by_id(round_id)
            if latest is not None and RoundStatus(latest.status) == new_status:
                logger.info(
                    "round_transition_already_applied",
                    round_id=round_id,
                    status=new_status.value,
                )
                return latest
            raise BusinessRuleError(
                "CONCURRENT_TRANSITION",
                f"Round {round_id} changed status during transition to {new_status.value}",
                {
                    "round_id": round_id,
                    "expected_status": current.value,
                    "actual_status": RoundStatus(latest.status).value if latest else None,
                    "new_status": new_status.value,
                },
            )

        await self._repository.record_transition(
            round_id,
            current,
            new_status,
            triggered_by,
            patch,
            now,
        )

        logger.info(
            "round_transitioned",
            round_id=round_id,
            round_number=updated.round_number,
            from_status=current.value,
            to_status=new_status.value,
            triggered_by=triggered_by,
        )
        return updated
