"""
Shared contract for goal progress strategies.

A strategy receives a goal (anything with ``type``, ``target_value``,
``start_value``, ``start_date`` and ``end_date``) and the health records to
evaluate, newest first. Daily-target strategies only look at the records
the caller selected for the evaluation day; use ``records_for_day`` for that.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from services.health_providers.models import as_utc, utc_now
from .rules import ProgressStatus


@dataclass
class GoalProgress:
    """Derived on every read; never persisted."""
    percentage: float
    status: ProgressStatus
    current_value: float
    target_value: float
    remaining_value: float
    remaining_days: int
    is_on_track: bool
    message: str
    start_value: Optional[float] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "percentage": round(self.percentage, 2),
            "status": self.status.value,
            "current_value": self.current_value,
            "target_value": self.target_value,
            "start_value": self.start_value,
            "remaining_value": self.remaining_value,
            "remaining_days": self.remaining_days,
            "is_on_track": self.is_on_track,
            "message": self.message,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


def clamp_percentage(value: float) -> float:
    return min(100.0, max(0.0, value))


def progress_status(percentage: float, end_date: datetime, now: datetime) -> ProgressStatus:
    if percentage >= 100:
        return ProgressStatus.COMPLETED
    if as_utc(now) > as_utc(end_date):
        return ProgressStatus.OVERDUE
    if percentage > 0:
        return ProgressStatus.IN_PROGRESS
    return ProgressStatus.NOT_STARTED


def first_value(records: Iterable[Any], field_name: str) -> Optional[float]:
    """Value of ``field_name`` from the first record that has it."""
    for record in records:
        value = getattr(record, field_name, None)
        if value is not None:
            return value
    return None


def records_for_day(records: Sequence[Any], day: date) -> List[Any]:
    """Keep only the records dated ``day`` (order preserved)."""
    return [r for r in records if getattr(r, "date", None) == day]


class GoalCalculationStrategy(ABC):
    goal_types: tuple = ()

    def supports(self, goal_type) -> bool:
        value = goal_type.value if hasattr(goal_type, "value") else goal_type
        return value in {t.value for t in self.goal_types}

    def calculate(self, goal: Any, records: Sequence[Any], now: Optional[datetime] = None) -> GoalProgress:
        return self._calculate(goal, list(records), as_utc(now) if now else utc_now())

    @abstractmethod
    def _calculate(self, goal: Any, records: List[Any], now: datetime) -> GoalProgress:
        ...
