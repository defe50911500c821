"""Tests for CcxtPriceSource against a mocked ccxt exchange."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import ccxt
import pytest

from rounds.config import PriceFeedSettings
from rounds.exceptions import PriceUnavailableError
from rounds.prices import CcxtPriceSource

NOW = 1_736_917_200_000


def _ticker(last: float | None, timestamp: int | None = NOW - 1_000) -> dict:
    return {"symbol": "X", "last": last, "timestamp": timestamp}


@pytest.fixture()
def exchange() -> MagicMock:
    mock = MagicMock()
    mock.close = AsyncMock()
    mock.fetch_ticker = AsyncMock(
        side_effect=lambda symbol: {
            "PAXG/USDT": _ticker(2650.5, NOW - 2_000),
            "BTC/USDT": _ticker(98000.0, NOW - 500),
        }[symbol]
    )
    return mock


@pytest.fixture()
def source(exchange: MagicMock) -> CcxtPriceSource:
    return CcxtPriceSource(PriceFeedSettings(), exchange=exchange, clock=lambda: NOW)


class TestFetchSnapshot:
    """Tests for CcxtPriceSource.fetch_snapshot."""

    @pytest.mark.asyncio()
    async def test_both_prices(self, source: CcxtPriceSource, exchange: MagicMock) -> None:
        snapshot = await source.fetch_snapshot()

        assert snapshot.gold == Decimal("2650.5")
        assert snapshot.btc == Decimal("98000.0")
        assert snapshot.timestamp_ms == NOW - 500
        assert snapshot.source == "ccxt:binance"
        assert snapshot.is_fallback is False
        assert exchange.fetch_ticker.await_count == 2

    @pytest.mark.asyncio()
    async def test_missing_last_price(self, source: CcxtPriceSource, exchange: MagicMock) -> None:
        exchange.fetch_ticker.side_effect = lambda symbol: _ticker(None)

        with pytest.raises(PriceUnavailableError, match="no last price"):
            await source.fetch_snapshot()

    @pytest.mark.asyncio()
    async def test_zero_price(self, source: CcxtPriceSource, exchange: MagicMock) -> None:
        exchange.fetch_ticker.side_effect = lambda symbol: _ticker(0)

        with pytest.raises(PriceUnavailableError):
            await source.fetch_snapshot()

    @pytest.mark.asyncio()
    async def test_stale_ticker(self, source: CcxtPriceSource, exchange: MagicMock) -> None:
        exchange.fetch_ticker.side_effect = lambda symbol: _ticker(1.0, NOW - 120_000)

        with pytest.raises(PriceUnavailableError, match="old"):
            await source.fetch_snapshot()

    @pytest.mark.asyncio()
    async def test_missing_timestamp_uses_clock(
        self, source: CcxtPriceSource, exchange: MagicMock
    ) -> None:
        exchange.fetch_ticker.side_effect = lambda symbol: _ticker(5.0, None)

        snapshot = await source.fetch_snapshot()

        assert snapshot.timestamp_ms == NOW

    @pytest.mark.asyncio()
    async def test_exchange_error_wrapped(
        self, source: CcxtPriceSource, exchange: MagicMock
    ) -> None:
        exchange.fetch_ticker.side_effect = ccxt.NetworkError("connection reset")

        with pytest.raises(PriceUnavailableError, match="NetworkError"):
            await source.fetch_snapshot()


class TestClose:
    """Tests for CcxtPriceSource.close."""

    @pytest.mark.asyncio()
    async def test_closes_exchange(self, source: CcxtPriceSource, exchange: MagicMock) -> None:
        await source.close()
        exchange.close.assert_awaited_once()
