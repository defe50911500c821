"""Operator alerting for rounds that cannot settle automatically."""

from abc import ABC, abstractmethod

from rounds.logging import get_logger
from rounds.models import Round

logger = get_logger(__name__)


class AlertNotifier(ABC):
    """Sink for operator-facing alerts."""

    @abstractmethod
    async def settlement_stuck(self, round_: Round, stuck_ms: int) -> None:
        """Report a round that has been stuck in CALCULATING past the alert threshold."""
        ...


class LogAlertNotifier(AlertNotifier):
    """Emits alerts as CRITICAL log lines."""

    async def settlement_stuck(self, round_: Round, stuck_ms: int) -> None:
        logger.critical(
            "settlement_stuck_alert",
            round_id=round_.id,
            round_number=round_.round_number,
            type=round_.type.value,
            round_ended_at=round_.round_ended_at,
            stuck_minutes=stuck_ms // 60_000,
            total_pool=round_.total_pool,
            total_bets_count=round_.total_bets_count,
        )
