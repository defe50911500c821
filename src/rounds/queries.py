"""Read-side request models and views for rounds.

Inputs are pydantic models so callers can hand in raw mappings (query
strings, JSON bodies); parse_request turns pydantic's errors into the
engine's ValidationError.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from rounds.exceptions import ValidationError
from rounds.models import Round, RoundStatus, RoundType

MAX_PAGE_SIZE = 100


class SortField(str, Enum):
    START_TIME = "start_time"
    ROUND_NUMBER = "round_number"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class RoundListQuery(BaseModel):
    """Filter, sort and page parameters for listing rounds."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: RoundType | None = None
    statuses: list[RoundStatus] | None = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=MAX_PAGE_SIZE)
    sort: SortField = SortField.START_TIME
    order: SortOrder = SortOrder.DESC

    @field_validator("statuses")
    @classmethod
    def _empty_means_any(cls, value: list[RoundStatus] | None) -> list[RoundStatus] | None:
        if not value:
            return None
        return list(dict.fromkeys(value))

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


class CreateRoundRequest(BaseModel):
    """Operator request for a round at an explicit start time."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: RoundType
    start_time: int = Field(gt=0)


ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_request(model: type[ModelT], data: ModelT | Mapping[str, Any] | None) -> ModelT:
    """Validate ``data`` into ``model``.

    Raises:
        ValidationError: With pydantic's error list under ``details["errors"]``.
    """
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(dict(data or {}))
    except PydanticValidationError as exc:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        raise ValidationError(
            f"Invalid {model.__name__}: {errors[0]['field']}: {errors[0]['message']}",
            {"errors": errors},
        ) from None


@dataclass
class RoundPage:
    """One page of rounds plus the paging totals."""

    rounds: list[Round]
    page: int
    page_size: int
    total: int
    total_pages: int


@dataclass
class CurrentRoundView:
    """The active round of a type with countdowns in whole seconds."""

    round: Round
    time_remaining: int
    betting_time_remaining: int
    gold_bets_percentage: str
    btc_bets_percentage: str
    can_bet: bool
    betting_closes_in: str


def total_pages(total: int, page_size: int) -> int:
    return -(-total // page_size) if total > 0 else 0


def seconds_until(deadline_ms: int, now: int) -> int:
    """Whole seconds left before ``deadline_ms``, rounded up and never negative."""
    return max(0, -(-(deadline_ms - now) // 1000))


def format_mm_ss(seconds: int) -> str:
    return f"{seconds // 60:02d}:{seconds % 60:02d}"


def pool_share(side: int, total: int) -> str:
    """Percentage of the pool on one side, two decimals."""
    if total <= 0:
        return "0.00"
    share = Decimal(side) * 100 / Decimal(total)
    return str(share.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def current_round_view(round_: Round, now: int) -> CurrentRoundView:
    betting_left = seconds_until(round_.lock_time, now)
    return CurrentRoundView(
        round=round_,
        time_remaining=seconds_until(round_.end_time, now),
        betting_time_remaining=betting_left,
        gold_bets_percentage=pool_share(round_.total_gold_bets, round_.total_pool),
        btc_bets_percentage=pool_share(round_.total_btc_bets, round_.total_pool),
        can_bet=round_.status == RoundStatus.BETTING_OPEN and now < round_.lock_time,
        betting_closes_in=format_mm_ss(betting_left),
    )
