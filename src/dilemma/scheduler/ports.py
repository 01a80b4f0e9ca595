"""
Collaborator interfaces consumed by the scheduler.

The scheduler never talks to Redis or the poll database directly; it goes
through these protocols so adapters can be swapped (and faked in tests).
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol

from .entities import ScheduledItem


# Seconds (1 hour)
STATS_TTL_SECONDS = 3600


class CacheKeys:
    """
    Cache key builders. The layout is shared with the rest of the app:

        dilemma:today / dilemma:tomorrow      current and next dilemma
        dilemma:<id>                          dilemma by id
        stats:global:<id>                     primary vote split
        stats:demo:<id>:<filter>              demographic breakdowns
        stats:friends:<id>:<user>             friends-only breakdowns
    """

    ITEM_TODAY = "dilemma:today"
    ITEM_TOMORROW = "dilemma:tomorrow"

    @staticmethod
    def item(item_id: str) -> str:
        return f"dilemma:{item_id}"

    @staticmethod
    def stats_global(item_id: str) -> str:
        return f"stats:global:{item_id}"

    @staticmethod
    def stats_pattern(item_id: str) -> str:
        """Every statistics key of an item, whatever its breakdown."""
        return f"stats:*:{item_id}*"


class Cache(Protocol):
    """Key/value cache with pattern invalidation."""

    def invalidate(self, *keys: str) -> None:
        ...

    def invalidate_pattern(self, pattern: str) -> None:
        ...

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ...


class ItemRepository(Protocol):
    """Read access to dilemmas, the source of truth for what to schedule."""

    def list_future_items(self, now: datetime) -> list[ScheduledItem]:
        """Items whose publish_at is after `now`, soonest first."""
        ...


@dataclass(frozen=True)
class ChoiceStats:
    count: int
    percentage: int


@dataclass(frozen=True)
class VoteStats:
    """Primary aggregate of a dilemma: vote split between its two options."""

    total_votes: int
    choice_a: ChoiceStats
    choice_b: ChoiceStats

    @classmethod
    def from_counts(cls, total_votes: int, votes_a: int) -> "VoteStats":
        votes_b = total_votes - votes_a
        return cls(
            total_votes=total_votes,
            choice_a=ChoiceStats(votes_a, _percentage(votes_a, total_votes)),
            choice_b=ChoiceStats(votes_b, _percentage(votes_b, total_votes)),
        )

    def as_dict(self) -> dict:
        return {
            "totalVotes": self.total_votes,
            "choiceA": {"count": self.choice_a.count, "percentage": self.choice_a.percentage},
            "choiceB": {"count": self.choice_b.count, "percentage": self.choice_b.percentage},
        }


def _percentage(part: int, total: int) -> int:
    # Half-up rounding, 0 when nobody voted
    if total <= 0:
        return 0
    return (200 * part + total) // (2 * total)


class StatsCompute(Protocol):
    """Computes the primary statistic of an item from its vote counts."""

    def __call__(self, item_id: str) -> VoteStats:
        ...
