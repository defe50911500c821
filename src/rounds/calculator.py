"""Winner determination and pool payout arithmetic.

All calculations use Decimal. Inputs may arrive as Decimal, int, float or
decimal strings (prices are stored as TEXT); floats are converted through
str() so 1.5833 stays 1.5833 instead of its binary approximation.

Payout formulas:
  platform_fee = floor(total_pool * fee_rate)
  payout_pool  = total_pool - platform_fee
  payout_ratio = payout_pool / winning_pool   (0 when nobody backed the winner)
  payout       = floor(bet_amount * payout_ratio)

Flooring never overpays: the rounding dust stays with the platform.
"""

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal

from rounds.models import Asset

_HUNDRED = Decimal("100")


def _to_decimal(value: Decimal | int | float | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _floor(value: Decimal) -> int:
    """Truncate toward zero."""
    return int(value.to_integral_value(rounding=ROUND_DOWN))


@dataclass(frozen=True)
class WinnerResult:
    winner: Asset
    gold_change_percent: Decimal
    btc_change_percent: Decimal


@dataclass(frozen=True)
class PayoutResult:
    platform_fee: int
    payout_pool: int
    payout_ratio: Decimal
    winning_pool: int
    losing_pool: int


def determine_winner(
    gold_start: Decimal | int | float | str,
    gold_end: Decimal | int | float | str,
    btc_start: Decimal | int | float | str,
    btc_end: Decimal | int | float | str,
) -> WinnerResult:
    """Pick the asset with the larger fractional price change.

    Ties go to GOLD; there is no draw outcome.
    """
    gold_start, gold_end = _to_decimal(gold_start), _to_decimal(gold_end)
    btc_start, btc_end = _to_decimal(btc_start), _to_decimal(btc_end)

    gold_fraction = (gold_end - gold_start) / gold_start
    btc_fraction = (btc_end - btc_start) / btc_start

    winner = Asset.GOLD if gold_fraction >= btc_fraction else Asset.BTC

    return WinnerResult(
        winner=winner,
        gold_change_percent=gold_fraction * _HUNDRED,
        btc_change_percent=btc_fraction * _HUNDRED,
    )


def calculate_payout(
    winner: Asset | None,
    total_pool: int,
    total_gold_bets: int,
    total_btc_bets: int,
    platform_fee_rate: Decimal | float | str,
) -> PayoutResult:
    """Split the pool into platform fee and payout pool and derive the ratio.

    Example (5% fee, GOLD wins):
        total 1,000,000 = gold 600,000 + btc 400,000
        fee 50,000, payout pool 950,000, ratio 950,000 / 600,000 = 1.5833...

    A None winner means there is no winning pool: the ratio is 0 and every
    bet pays nothing.
    """
    fee_rate = _to_decimal(platform_fee_rate)
    platform_fee = _floor(Decimal(total_pool) * fee_rate)
    payout_pool = total_pool - platform_fee

    if winner == Asset.GOLD:
        winning_pool, losing_pool = total_gold_bets, total_btc_bets
    elif winner == Asset.BTC:
        winning_pool, losing_pool = total_btc_bets, total_gold_bets
    else:
        winning_pool, losing_pool = 0, total_gold_bets + total_btc_bets

    if winning_pool > 0:
        payout_ratio = Decimal(payout_pool) / Decimal(winning_pool)
    else:
        payout_ratio = Decimal("0")

    return PayoutResult(
        platform_fee=platform_fee,
        payout_pool=payout_pool,
        payout_ratio=payout_ratio,
        winning_pool=winning_pool,
        losing_pool=losing_pool,
    )


def calculate_individual_payout(bet_amount: int, payout_ratio: Decimal | float | str) -> int:
    """Payout for one winning bet, floored."""
    return _floor(Decimal(bet_amount) * _to_decimal(payout_ratio))
