"""Scheduling policy tables.

Frequency tiers, priority tiers, per-category defaults and time-of-day
slot weights, bundled into an immutable ``SchedulingPolicy`` that is built
once at startup and handed to the scheduler.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple

# Named scan frequencies in minutes
SCAN_FREQUENCIES: Mapping[str, int] = MappingProxyType({
    "immediate": 0,
    "hourly": 60,
    "bi_hourly": 120,
    "quarter_daily": 360,
    "daily": 1440,
    "weekly": 10080,
    "monthly": 43200,
})

# Priority tiers, lower is more urgent
PRIORITY_WEIGHTS: Mapping[str, int] = MappingProxyType({
    "critical": 1,
    "high": 2,
    "medium": 3,
    "low": 4,
    "maintenance": 5,
})

DEFAULT_CATEGORY = "other"
DEFAULT_PRIORITY = "medium"


@dataclass(frozen=True)
class CategoryPolicy:
    """Scheduling defaults for one target category.

    Attributes:
        frequency: Frequency tier name
        priority: Priority tier name
        timeout: Scan timeout in seconds (None uses the global default)
        retry_attempts: Retry budget
    """

    frequency: str
    priority: str
    timeout: Optional[int]
    retry_attempts: int


@dataclass(frozen=True)
class TimeSlot:
    """A daily window with a load-balancing weight.

    The window covers ``start_hour <= hour < end_hour``. Lower weights mark
    busier windows that should receive less scheduling load.
    """

    name: str
    start_hour: int
    end_hour: int
    weight: float

    def contains(self, hour: int) -> bool:
        return self.start_hour <= hour < self.end_hour


CATEGORY_POLICIES: Mapping[str, CategoryPolicy] = MappingProxyType({
    "ecommerce": CategoryPolicy("quarter_daily", "high", 300, 3),
    "government": CategoryPolicy("daily", "critical", 600, 3),
    "healthcare": CategoryPolicy("bi_hourly", "critical", 600, 3),
    "finance": CategoryPolicy("hourly", "critical", 300, 5),
    "education": CategoryPolicy("daily", "medium", 300, 2),
    "news": CategoryPolicy("quarter_daily", "medium", 180, 2),
    "blog": CategoryPolicy("weekly", "low", 120, 1),
    "portfolio": CategoryPolicy("weekly", "low", 120, 1),
    "corporate": CategoryPolicy("daily", "medium", 240, 2),
    "other": CategoryPolicy("daily", "medium", 180, 2),
})

TIME_SLOTS: Tuple[TimeSlot, ...] = (
    TimeSlot("early_morning", 0, 6, 1.0),
    TimeSlot("morning", 6, 12, 0.7),
    TimeSlot("afternoon", 12, 18, 0.5),
    TimeSlot("evening", 18, 24, 0.8),
)


def _freeze(mapping: Mapping) -> Mapping:
    if isinstance(mapping, MappingProxyType):
        return mapping
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class SchedulingPolicy:
    """Immutable bundle of the scheduling tables.

    Tests build alternate policies by passing their own tables; plain dicts
    are copied and frozen on construction.
    """

    frequencies: Mapping[str, int] = field(default_factory=lambda: SCAN_FREQUENCIES)
    priorities: Mapping[str, int] = field(default_factory=lambda: PRIORITY_WEIGHTS)
    categories: Mapping[str, CategoryPolicy] = field(default_factory=lambda: CATEGORY_POLICIES)
    time_slots: Tuple[TimeSlot, ...] = field(default=TIME_SLOTS)

    def __post_init__(self) -> None:
        object.__setattr__(self, "frequencies", _freeze(self.frequencies))
        object.__setattr__(self, "priorities", _freeze(self.priorities))
        object.__setattr__(self, "categories", _freeze(self.categories))
        object.__setattr__(self, "time_slots", tuple(self.time_slots))

        if DEFAULT_CATEGORY not in self.categories:
            raise ValueError(f"Scheduling policy must define the '{DEFAULT_CATEGORY}' category")
        if DEFAULT_PRIORITY not in self.priorities:
            raise ValueError(f"Scheduling policy must define the '{DEFAULT_PRIORITY}' priority")

    def category(self, name: Optional[str]) -> CategoryPolicy:
        """Get the policy for a category, falling back to ``other``."""
        if name and name in self.categories:
            return self.categories[name]
        return self.categories[DEFAULT_CATEGORY]

    def priority_weight(self, tier: Optional[str]) -> int:
        """Get the weight of a priority tier, falling back to ``medium``."""
        if tier and tier in self.priorities:
            return self.priorities[tier]
        return self.priorities[DEFAULT_PRIORITY]

    def time_slot(self, hour: int) -> Optional[TimeSlot]:
        """Get the slot covering an hour of the day."""
        for slot in self.time_slots:
            if slot.contains(hour):
                return slot
        return None

    def slot_weight(self, hour: int) -> float:
        """Get the load-balancing weight for an hour (1.0 when uncovered)."""
        slot = self.time_slot(hour)
        return slot.weight if slot is not None else 1.0

    def frequency_options(self) -> Dict[str, int]:
        return dict(self.frequencies)

    def priority_options(self) -> Dict[str, int]:
        return dict(self.priorities)

    def category_options(self) -> Dict[str, CategoryPolicy]:
        return dict(self.categories)
