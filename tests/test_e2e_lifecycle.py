"""End-to-end round lifecycle against a real SQLite database.

One 6HOUR round is created, opened, bet on, locked, finalized and settled,
first by calling the service jobs directly and then through per-minute
JobRunner ticks wired by build_components.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from rounds.main import build_components
from rounds.models import (
    Asset,
    Bet,
    BetResultStatus,
    JobStatus,
    PriceSnapshot,
    RoundStatus,
    SettleStatus,
)
from rounds.prices import PriceSource


def _utc(hour: int, minute: int = 0) -> int:
    return int(datetime(2025, 1, 15, hour, minute, tzinfo=timezone.utc).timestamp() * 1000)


START_PRICES = PriceSnapshot(
    gold=Decimal("2650"), btc=Decimal("98000"), timestamp_ms=_utc(5), source="test"
)
END_PRICES = PriceSnapshot(
    gold=Decimal("2703"), btc=Decimal("98980"), timestamp_ms=_utc(11), source="test"
)

STAKES = [("alice", Asset.GOLD, 100_000), ("bob", Asset.GOLD, 500_000), ("carol", Asset.BTC, 400_000)]


async def _place_bets(round_repository, bet_repository, round_id: str, clock) -> dict[str, Bet]:
    placed = {}
    for offset, (user, prediction, amount) in enumerate(STAKES):
        bet = Bet(
            id=str(uuid.uuid4()),
            round_id=round_id,
            user_id=user,
            prediction=prediction,
            amount=amount,
            created_at=clock.now + offset,
        )
        assert await round_repository.add_to_pool(round_id, prediction, amount)
        placed[user] = await bet_repository.insert(bet)
    return placed


async def _assert_reference_settlement(round_repository, bet_repository, round_id, bets) -> None:
    settled = await round_repository.find_by_id(round_id)
    assert settled.status == RoundStatus.SETTLED
    assert settled.winner == Asset.GOLD
    assert settled.total_pool == 1_000_000
    assert settled.platform_fee_collected == 50_000
    assert settled.payout_pool == 950_000
    assert Decimal(settled.gold_change_percent) == Decimal("2")
    assert Decimal(settled.btc_change_percent) == Decimal("1")

    payouts = {
        user: (await bet_repository.find_by_id(bet.id)).payout_amount
        for user, bet in bets.items()
    }
    assert payouts == {"alice": 158_333, "bob": 791_666, "carol": 0}
    assert (await bet_repository.find_by_id(bets["carol"].id)).result_status == BetResultStatus.LOST

    history = await round_repository.list_transitions(round_id)
    assert [(h["from_status"], h["to_status"]) for h in history] == [
        ("SCHEDULED", "BETTING_OPEN"),
        ("BETTING_OPEN", "BETTING_LOCKED"),
        ("BETTING_LOCKED", "CALCULATING"),
        ("CALCULATING", "SETTLED"),
    ]


class TestServiceLifecycle:
    """Each job called directly at its scheduled minute."""

    @pytest.mark.asyncio()
    async def test_full_round(self, service, round_repository, bet_repository, clock) -> None:
        clock.now = _utc(4, 50)
        created = await service.create_next_scheduled_round()
        assert created.start_time == _utc(5)
        assert created.lock_time == _utc(5, 1)
        assert created.end_time == _utc(11)

        clock.now = _utc(5)
        opened = await service.open_round(START_PRICES)
        assert opened.status == JobStatus.OPENED
        assert opened.round.sui_pool_address is not None

        bets = await _place_bets(round_repository, bet_repository, created.id, clock)

        clock.now = _utc(5, 1)
        locked = await service.lock_round()
        assert locked.status == JobStatus.LOCKED
        assert await round_repository.add_to_pool(created.id, Asset.BTC, 1) is False

        clock.now = _utc(11)
        finalized = await service.finalize_round(END_PRICES)
        assert finalized.status == JobStatus.FINALIZED
        assert finalized.settlement.status == SettleStatus.SETTLED
        assert finalized.settlement.settled_count == 3
        assert finalized.settlement.total_payout == 158_333 + 791_666

        await _assert_reference_settlement(round_repository, bet_repository, created.id, bets)

        again = await service.settle_round(created.id)
        assert again.status == SettleStatus.ALREADY_SETTLED


class TestTickLifecycle:
    """The same round driven only by minute ticks."""

    @pytest.mark.asyncio()
    async def test_ticks_drive_round_to_settlement(self, settings, database, clock) -> None:
        price_source = AsyncMock(spec=PriceSource)
        price_source.fetch_snapshot.side_effect = lambda: (
            START_PRICES if clock.now < _utc(11) else END_PRICES
        )
        components = build_components(settings, database, price_source=price_source, clock=clock)
        runner = components["runner"]
        rounds_repo = components["round_repository"]
        bets_repo = components["bet_repository"]

        clock.now = _utc(4, 50)
        report = await runner.tick()
        assert report.ok
        first = report.results["create"]

        clock.now = _utc(5)
        report = await runner.tick()
        assert report.ok
        assert report.results["finalize"].status == JobStatus.NO_ROUND
        assert report.results["open"].status == JobStatus.OPENED

        bets = await _place_bets(rounds_repo, bets_repo, first.id, clock)

        clock.now = _utc(5, 1)
        report = await runner.tick()
        assert report.results["lock"].status == JobStatus.LOCKED

        clock.now = _utc(10, 50)
        report = await runner.tick()
        second = report.results["create"]
        assert second.round_number == 2
        assert second.start_time == _utc(11)

        clock.now = _utc(11)
        report = await runner.tick()
        assert report.ok
        assert report.results["finalize"].round.id == first.id
        assert report.results["open"].round.id == second.id
        assert report.results["recovery"].stuck_count == 0

        await _assert_reference_settlement(rounds_repo, bets_repo, first.id, bets)
        assert (await rounds_repo.find_by_id(second.id)).status == RoundStatus.BETTING_OPEN
