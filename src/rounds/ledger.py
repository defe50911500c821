"""On-chain object bookkeeping.

The engine never executes on-chain transactions. It only records the ids
of the pool object created when betting opens and the settlement object
created when a round settles. ChainLedger is the seam a real chain
integration plugs into; PaperLedger is the default.
"""

import hashlib
from abc import ABC, abstractmethod

from rounds.models import Round


class ChainLedger(ABC):
    """Source of on-chain object ids for a round."""

    @abstractmethod
    async def create_pool(self, round_: Round) -> str:
        """Return the pool object address for a round that is opening."""
        ...

    @abstractmethod
    async def record_settlement(self, round_: Round, payout_pool: int) -> str:
        """Return the settlement object id for a round that is settling."""
        ...


def _placeholder_id(kind: str, round_id: str) -> str:
    digest = hashlib.sha256(f"{kind}:{round_id}".encode()).hexdigest()
    return f"0x{digest}"


class PaperLedger(ChainLedger):
    """Deterministic placeholder ids derived from the round id.

    The same round always maps to the same ids, so a retried open or settle
    writes identical values.
    """

    async def create_pool(self, round_: Round) -> str:
        return _placeholder_id("pool", round_.id)

    async def record_settlement(self, round_: Round, payout_pool: int) -> str:
        return _placeholder_id("settlement", round_.id)
