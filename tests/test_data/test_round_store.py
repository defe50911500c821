"""Tests for SqliteRoundRepository against a real on-disk database."""

import uuid
from decimal import Decimal

import pytest
import pytest_asyncio

from rounds.data import SqliteRoundRepository
from rounds.exceptions import NotFoundError
from rounds.models import (
    Asset,
    RoundStatus,
    RoundType,
    SettlementSummary,
)

MINUTE = 60_000


class TestRoundPersistence:
    """Insert, read back and patch rounds."""

    @pytest.mark.asyncio()
    async def test_round_trip_preserves_types(
        self, round_repository: SqliteRoundRepository, make_round
    ) -> None:
        round_ = make_round(
            status=RoundStatus.CALCULATING,
            gold_start_price="2650.25",
            start_price_is_fallback=True,
            start_price_fallback_reason="primary_timeout",
            winner=Asset.BTC,
            platform_fee_rate=Decimal("0.035"),
        )
        await round_repository.insert(round_)

        stored = await round_repository.find_by_id(round_.id)

        assert stored == round_
        assert stored.start_price_is_fallback is True
        assert stored.platform_fee_rate == Decimal("0.035")
        assert stored.winner is Asset.BTC
        assert stored.type is RoundType.SIX_HOUR

    @pytest.mark.asyncio()
    async def test_missing_round_is_none(self, round_repository: SqliteRoundRepository) -> None:
        assert await round_repository.find_by_id(str(uuid.uuid4())) is None

    @pytest.mark.asyncio()
    async def test_duplicate_slot_rejected(
        self, round_repository: SqliteRoundRepository, make_round, clock
    ) -> None:
        await round_repository.insert(make_round(start_time=clock.now))
        with pytest.raises(Exception, match="UNIQUE"):
            await round_repository.insert(make_round(start_time=clock.now))

    @pytest.mark.asyncio()
    async def test_update_stamps_updated_at(
        self, round_repository: SqliteRoundRepository, make_round, clock
    ) -> None:
        round_ = await round_repository.insert(make_round())
        clock.advance(5 * MINUTE)

        updated = await round_repository.update_by_id(
            round_.id, {"settlement_failure_alert_sent_at": clock.now}
        )

        assert updated.settlement_failure_alert_sent_at == clock.now
        assert updated.updated_at == clock.now

    @pytest.mark.asyncio()
    async def test_update_unknown_round(self, round_repository: SqliteRoundRepository) -> None:
        with pytest.raises(NotFoundError):
            await round_repository.update_by_id(str(uuid.uuid4()), {"total_pool": 1})

    @pytest.mark.asyncio()
    async def test_update_unknown_column(
        self, round_repository: SqliteRoundRepository, make_round
    ) -> None:
        round_ = await round_repository.insert(make_round())
        with pytest.raises(ValueError, match="nonsense"):
            await round_repository.update_by_id(round_.id, {"nonsense": 1})


class TestCompareAndSetStatus:
    """Status writes guarded on the stored status."""

    @pytest.mark.asyncio()
    async def test_matching_status_wins(
        self, round_repository: SqliteRoundRepository, make_round
    ) -> None:
        round_ = await round_repository.insert(make_round())

        updated = await round_repository.compare_and_set_status(
            round_.id,
            RoundStatus.SCHEDULED,
            {"status": RoundStatus.BETTING_OPEN, "gold_start_price": "2650"},
        )

        assert updated is not None
        assert updated.status == RoundStatus.BETTING_OPEN
        assert updated.gold_start_price == "2650"

    @pytest.mark.asyncio()
    async def test_stale_status_loses_without_writing(
        self, round_repository: SqliteRoundRepository, make_round
    ) -> None:
        round_ = await round_repository.insert(make_round(status=RoundStatus.BETTING_OPEN))

        result = await round_repository.compare_and_set_status(
            round_.id, RoundStatus.SCHEDULED, {"status": RoundStatus.CANCELLED}
        )

        assert result is None
        assert (await round_repository.find_by_id(round_.id)).status == RoundStatus.BETTING_OPEN

    @pytest.mark.asyncio()
    async def test_unknown_round(self, round_repository: SqliteRoundRepository) -> None:
        with pytest.raises(NotFoundError):
            await round_repository.compare_and_set_status(
                str(uuid.uuid4()), RoundStatus.SCHEDULED, {"status": RoundStatus.CANCELLED}
            )


class TestRoundQueries:
    """Lookups used by the scheduled jobs."""

    @pytest.mark.asyncio()
    async def test_find_last_round_by_number(
        self, round_repository: SqliteRoundRepository, make_round
    ) -> None:
        for _ in range(3):
            await round_repository.insert(make_round())
        await round_repository.insert(make_round(type=RoundType.ONE_DAY, round_number=99))

        last = await round_repository.find_last_round(RoundType.SIX_HOUR)

        assert last.round_number == 3

    @pytest.mark.asyncio()
    async def test_find_last_round_empty(self, round_repository: SqliteRoundRepository) -> None:
        assert await round_repository.find_last_round(RoundType.SIX_HOUR) is None

    @pytest.mark.asyncio()
    async def test_find_by_start_time(
        self, round_repository: SqliteRoundRepository, make_round, clock
    ) -> None:
        round_ = await round_repository.insert(make_round(start_time=clock.now))

        found = await round_repository.find_by_start_time(RoundType.SIX_HOUR, clock.now)

        assert found.id == round_.id
        assert await round_repository.find_by_start_time(RoundType.ONE_DAY, clock.now) is None

    @pytest.mark.asyncio()
    async def test_find_latest_by_status_picks_latest_start(
        self, round_repository: SqliteRoundRepository, make_round
    ) -> None:
        older = await round_repository.insert(make_round())
        newer = await round_repository.insert(make_round())
        await round_repository.insert(make_round(status=RoundStatus.SETTLED))

        found = await round_repository.find_latest_by_status(RoundStatus.SCHEDULED)

        assert found.id == newer.id
        assert found.id != older.id

    @pytest.mark.asyncio()
    async def test_stuck_calculating_rounds(
        self, round_repository: SqliteRoundRepository, make_round, clock
    ) -> None:
        old = await round_repository.insert(
            make_round(status=RoundStatus.CALCULATING, round_ended_at=clock.now - 20 * MINUTE)
        )
        no_marker = await round_repository.insert(
            make_round(status=RoundStatus.CALCULATING, round_ended_at=None)
        )
        await round_repository.insert(
            make_round(status=RoundStatus.CALCULATING, round_ended_at=clock.now - MINUTE)
        )
        await round_repository.insert(
            make_round(status=RoundStatus.SETTLED, round_ended_at=clock.now - 60 * MINUTE)
        )

        stuck = await round_repository.find_stuck_calculating_rounds(clock.now - 10 * MINUTE)

        assert {r.id for r in stuck} == {old.id, no_marker.id}


class TestPoolAggregates:
    """Atomic pool increments while betting is open."""

    @pytest.mark.asyncio()
    async def test_add_to_open_round(
        self, round_repository: SqliteRoundRepository, make_round
    ) -> None:
        round_ = await round_repository.insert(make_round(status=RoundStatus.BETTING_OPEN))

        assert await round_repository.add_to_pool(round_.id, Asset.GOLD, 100)
        assert await round_repository.add_to_pool(round_.id, Asset.BTC, 40)
        assert await round_repository.add_to_pool(round_.id, Asset.GOLD, 10)

        stored = await round_repository.find_by_id(round_.id)
        assert stored.total_pool == 150
        assert (stored.total_gold_bets, stored.total_btc_bets) == (110, 40)
        assert stored.total_bets_count == 3

    @pytest.mark.asyncio()
    async def test_add_to_locked_round_refused(
        self, round_repository: SqliteRoundRepository, make_round
    ) -> None:
        round_ = await round_repository.insert(make_round(status=RoundStatus.BETTING_LOCKED))

        assert await round_repository.add_to_pool(round_.id, Asset.GOLD, 100) is False
        assert (await round_repository.find_by_id(round_.id)).total_pool == 0

    @pytest.mark.asyncio()
    async def test_non_positive_stake(
        self, round_repository: SqliteRoundRepository, make_round
    ) -> None:
        round_ = await round_repository.insert(make_round(status=RoundStatus.BETTING_OPEN))
        with pytest.raises(ValueError):
            await round_repository.add_to_pool(round_.id, Asset.GOLD, 0)


class TestAuditRecords:
    """Transition history and settlement summaries."""

    @pytest.mark.asyncio()
    async def test_transitions_in_order(
        self, round_repository: SqliteRoundRepository, make_round, clock
    ) -> None:
        round_ = await round_repository.insert(make_round())
        await round_repository.record_transition(
            round_.id,
            RoundStatus.SCHEDULED,
            RoundStatus.BETTING_OPEN,
            "SYSTEM",
            {"gold_start_price": "2650", "start_price_is_fallback": False},
            clock.now,
        )
        await round_repository.record_transition(
            round_.id, RoundStatus.BETTING_OPEN, RoundStatus.CANCELLED, "ADMIN", {}, clock.now
        )

        history = await round_repository.list_transitions(round_.id)

        assert [(h["from_status"], h["to_status"]) for h in history] == [
            ("SCHEDULED", "BETTING_OPEN"),
            ("BETTING_OPEN", "CANCELLED"),
        ]
        assert history[0]["metadata"] == {
            "gold_start_price": "2650",
            "start_price_is_fallback": 0,
        }
        assert history[1]["metadata"] == {}
        assert history[1]["triggered_by"] == "ADMIN"

    @pytest.mark.asyncio()
    async def test_settlement_upsert(
        self, round_repository: SqliteRoundRepository, make_round, clock
    ) -> None:
        round_ = await round_repository.insert(make_round(status=RoundStatus.CALCULATING))
        summary = SettlementSummary(
            round_id=round_.id,
            winner=Asset.GOLD,
            total_pool=1_000_000,
            winning_pool=600_000,
            losing_pool=400_000,
            platform_fee=50_000,
            payout_pool=950_000,
            payout_ratio=Decimal(950_000) / Decimal(600_000),
            total_winners=1,
            total_losers=1,
            sui_settlement_object_id="0xabc",
            calculated_at=clock.now,
            completed_at=None,
        )
        await round_repository.save_settlement(summary)
        summary.completed_at = clock.now + 1
        await round_repository.save_settlement(summary)

        stored = await round_repository.get_settlement(round_.id)

        assert stored == summary

    @pytest.mark.asyncio()
    async def test_no_settlement(self, round_repository: SqliteRoundRepository) -> None:
        assert await round_repository.get_settlement(str(uuid.uuid4())) is None


class TestListingQueries:
    """Filtered listing, counting, current round and overlap checks."""

    @pytest_asyncio.fixture
    async def mixed_rounds(self, round_repository: SqliteRoundRepository, make_round, clock):
        specs = [
            (RoundType.SIX_HOUR, RoundStatus.SETTLED),
            (RoundType.SIX_HOUR, RoundStatus.BETTING_OPEN),
            (RoundType.SIX_HOUR, RoundStatus.SCHEDULED),
            (RoundType.ONE_DAY, RoundStatus.SETTLED),
        ]
        rounds = []
        for round_type, status in specs:
            rounds.append(
                await round_repository.insert(make_round(type=round_type, status=status))
            )
        return rounds

    @pytest.mark.asyncio()
    async def test_find_many_filters_and_sorts(
        self, round_repository: SqliteRoundRepository, mixed_rounds
    ) -> None:
        found = await round_repository.find_many(
            RoundType.SIX_HOUR,
            [RoundStatus.SETTLED, RoundStatus.SCHEDULED],
            "start_time",
            "asc",
            10,
            0,
        )
        assert [r.id for r in found] == [mixed_rounds[0].id, mixed_rounds[2].id]

    @pytest.mark.asyncio()
    async def test_find_many_pages_newest_first(
        self, round_repository: SqliteRoundRepository, mixed_rounds
    ) -> None:
        first = await round_repository.find_many(None, None, "start_time", "desc", 2, 0)
        second = await round_repository.find_many(None, None, "start_time", "desc", 2, 2)

        assert [r.id for r in first] == [mixed_rounds[3].id, mixed_rounds[2].id]
        assert [r.id for r in second] == [mixed_rounds[1].id, mixed_rounds[0].id]

    @pytest.mark.asyncio()
    async def test_find_many_by_round_number(
        self, round_repository: SqliteRoundRepository, mixed_rounds
    ) -> None:
        found = await round_repository.find_many(
            RoundType.SIX_HOUR, None, "round_number", "desc", 10, 0
        )
        assert [r.round_number for r in found] == [3, 2, 1]

    @pytest.mark.asyncio()
    async def test_find_many_rejects_unlisted_sort_column(
        self, round_repository: SqliteRoundRepository
    ) -> None:
        with pytest.raises(ValueError):
            await round_repository.find_many(None, None, "id; DROP TABLE rounds", "asc", 10, 0)

    @pytest.mark.asyncio()
    async def test_count(self, round_repository: SqliteRoundRepository, mixed_rounds) -> None:
        assert await round_repository.count(None, None) == 4
        assert await round_repository.count(RoundType.SIX_HOUR, None) == 3
        assert await round_repository.count(None, [RoundStatus.SETTLED]) == 2
        assert await round_repository.count(RoundType.ONE_MINUTE, None) == 0

    @pytest.mark.asyncio()
    async def test_find_current_round(
        self, round_repository: SqliteRoundRepository, mixed_rounds
    ) -> None:
        current = await round_repository.find_current_round(RoundType.SIX_HOUR)
        assert current.id == mixed_rounds[1].id
        assert await round_repository.find_current_round(RoundType.ONE_DAY) is None

    @pytest.mark.asyncio()
    async def test_current_round_prefers_latest_start(
        self, round_repository: SqliteRoundRepository, make_round
    ) -> None:
        await round_repository.insert(make_round(status=RoundStatus.BETTING_LOCKED))
        later = await round_repository.insert(make_round(status=RoundStatus.BETTING_OPEN))

        current = await round_repository.find_current_round(RoundType.SIX_HOUR)

        assert current.id == later.id

    @pytest.mark.asyncio()
    async def test_overlap_detection(
        self, round_repository: SqliteRoundRepository, make_round, clock
    ) -> None:
        existing = await round_repository.insert(make_round(start_time=clock.now))
        start, end = existing.start_time, existing.end_time
        six_hours = end - start
        six_hour = RoundType.SIX_HOUR

        overlaps = round_repository.check_overlapping_time
        assert await overlaps(start + MINUTE, end + MINUTE, six_hour)
        assert await overlaps(start - MINUTE, start + MINUTE, six_hour)
        assert await overlaps(start + MINUTE, end - MINUTE, six_hour)
        # touching endpoints are not an overlap
        assert not await overlaps(end, end + six_hours, six_hour)
        assert not await overlaps(start - six_hours, start, six_hour)
        # other types are independent
        assert not await overlaps(start, end, RoundType.ONE_DAY)
