"""SQLite persistence layer.

Provides the connection manager and the round and bet repositories.
"""

from rounds.data.bet_store import SqliteBetRepository
from rounds.data.database import RoundDatabase
from rounds.data.round_store import SqliteRoundRepository

__all__ = [
    "RoundDatabase",
    "SqliteBetRepository",
    "SqliteRoundRepository",
]
