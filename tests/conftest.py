"""Shared test fixtures for the round lifecycle engine."""

import itertools
import uuid
from collections.abc import AsyncIterator, Callable
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from rounds.alerts import AlertNotifier
from rounds.config import AppSettings, RecoverySettings, RoundSettings, SettlementSettings
from rounds.data import RoundDatabase, SqliteBetRepository, SqliteRoundRepository
from rounds.fsm import RoundStateMachine
from rounds.ledger import PaperLedger
from rounds.models import (
    ROUND_DURATIONS_MS,
    Asset,
    Bet,
    Round,
    RoundStatus,
    RoundType,
)
from rounds.service import RoundService
from rounds.settlement import BetSettler


def utc_ms(year: int, month: int, day: int, hour: int = 0, minute: int = 0, second: int = 0) -> int:
    """Epoch milliseconds for a UTC wall-clock time."""
    return int(datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc).timestamp() * 1000)


# 2025-01-15 05:00 UTC, a start slot on the default grid
T0 = utc_ms(2025, 1, 15, 5)


class FakeClock:
    """Settable epoch-millisecond clock."""

    def __init__(self, now: int) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(T0)


@pytest.fixture
def settings() -> AppSettings:
    """AppSettings with defaults, independent of the host environment."""
    return AppSettings(
        log_level="DEBUG",
        rounds=RoundSettings(),
        settlement=SettlementSettings(),
        recovery=RecoverySettings(),
    )


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncIterator[RoundDatabase]:
    async with RoundDatabase(str(tmp_path / "rounds.db")) as db:
        yield db


@pytest.fixture
def round_repository(database: RoundDatabase, clock: FakeClock) -> SqliteRoundRepository:
    return SqliteRoundRepository(database, clock=clock)


@pytest.fixture
def bet_repository(database: RoundDatabase) -> SqliteBetRepository:
    return SqliteBetRepository(database)


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock(spec=AlertNotifier)


@pytest.fixture
def service(
    settings: AppSettings,
    round_repository: SqliteRoundRepository,
    bet_repository: SqliteBetRepository,
    notifier: AsyncMock,
    clock: FakeClock,
) -> RoundService:
    return RoundService(
        settings=settings,
        round_repository=round_repository,
        bet_repository=bet_repository,
        state_machine=RoundStateMachine(round_repository, clock=clock),
        bet_settler=BetSettler(bet_repository, clock=clock),
        ledger=PaperLedger(),
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture
def make_round(clock: FakeClock) -> Callable[..., Round]:
    """Factory for Round objects. Successive rounds get consecutive numbers and slots."""
    counter = itertools.count(1)

    def _make(**overrides: object) -> Round:
        n = next(counter)
        start = overrides.pop("start_time", clock.now + (n - 1) * ROUND_DURATIONS_MS[RoundType.SIX_HOUR])
        fields: dict = {
            "id": str(uuid.uuid4()),
            "round_number": n,
            "type": RoundType.SIX_HOUR,
            "status": RoundStatus.SCHEDULED,
            "start_time": start,
            "lock_time": start + 60_000,
            "end_time": start + ROUND_DURATIONS_MS[RoundType.SIX_HOUR],
            "created_at": clock.now,
            "updated_at": clock.now,
        }
        fields.update(overrides)
        return Round(**fields)

    return _make


@pytest.fixture
def make_bet(clock: FakeClock) -> Callable[..., Bet]:
    """Factory for Bet objects."""
    counter = itertools.count(1)

    def _make(round_id: str, prediction: Asset, amount: int, **overrides: object) -> Bet:
        n = next(counter)
        fields: dict = {
            "id": str(uuid.uuid4()),
            "round_id": round_id,
            "user_id": f"user-{n}",
            "prediction": prediction,
            "amount": amount,
            "created_at": clock.now + n,
        }
        fields.update(overrides)
        return Bet(**fields)

    return _make
