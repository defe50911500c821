"""Gold and BTC price snapshots via ccxt async.

Wraps a ccxt.async_support exchange with a per-fetch timeout and
sanity checks. Gold is read from a tokenized-gold pair (PAXG/USDT by
default). The exchange session must be closed when done.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable
from decimal import Decimal

import ccxt
import ccxt.async_support as ccxt_async

from rounds.config import PriceFeedSettings
from rounds.exceptions import PriceUnavailableError
from rounds.logging import get_logger
from rounds.models import PriceSnapshot, now_ms

logger = get_logger(__name__)


class PriceSource(ABC):
    """Supplies gold and BTC prices for round open and finalize."""

    @abstractmethod
    async def fetch_snapshot(self) -> PriceSnapshot:
        """Fetch both prices at (approximately) the same instant.

        Raises:
            PriceUnavailableError: If either price is missing, non-positive or stale.
        """
        ...

    async def close(self) -> None:
        """Release network resources."""


class CcxtPriceSource(PriceSource):
    """PriceSource backed by a public ccxt exchange ticker endpoint."""

    def __init__(
        self,
        settings: PriceFeedSettings,
        exchange: ccxt_async.Exchange | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._settings = settings
        self._clock = clock
        if exchange is None:
            exchange_cls = getattr(ccxt_async, settings.exchange_id)
            exchange = exchange_cls({"enableRateLimit": True, "timeout": settings.timeout_ms})
        self._exchange = exchange

    @property
    def source_id(self) -> str:
        return f"ccxt:{self._settings.exchange_id}"

    async def close(self) -> None:
        """Close the ccxt session (CRITICAL for ccxt async)."""
        await self._exchange.close()
        logger.info("price_source_closed", exchange=self._settings.exchange_id)

    async def _fetch_last(self, symbol: str) -> tuple[Decimal, int]:
        try:
            ticker = await asyncio.wait_for(
                self._exchange.fetch_ticker(symbol),
                timeout=self._settings.timeout_ms / 1000,
            )
        except (ccxt.BaseError, asyncio.TimeoutError) as exc:
            raise PriceUnavailableError(f"{symbol}: {type(exc).__name__}: {exc}") from exc

        last = ticker.get("last")
        if last is None or Decimal(str(last)) <= 0:
            raise PriceUnavailableError(f"{symbol}: no last price in ticker")

        timestamp = ticker.get("timestamp") or self._clock()
        age_ms = self._clock() - int(timestamp)
        if age_ms > self._settings.max_age_ms:
            raise PriceUnavailableError(f"{symbol}: ticker is {age_ms} ms old")

        return Decimal(str(last)), int(timestamp)

    async def fetch_snapshot(self) -> PriceSnapshot:
        (gold, gold_ts), (btc, btc_ts) = await asyncio.gather(
            self._fetch_last(self._settings.gold_symbol),
            self._fetch_last(self._settings.btc_symbol),
        )
        snapshot = PriceSnapshot(
            gold=gold,
            btc=btc,
            timestamp_ms=max(gold_ts, btc_ts),
            source=self.source_id,
        )
        logger.info(
            "price_snapshot_fetched",
            gold=str(gold),
            btc=str(btc),
            timestamp_ms=snapshot.timestamp_ms,
            source=snapshot.source,
        )
        return snapshot
