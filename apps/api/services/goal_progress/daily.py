"""
Daily-target strategies: one day's value against a fixed per-day target.

The caller passes only the evaluation day's records (see
``records_for_day``); the first record carrying the metric is "today".
"""

from datetime import datetime
from typing import Any, List, Optional

from .base import GoalCalculationStrategy, GoalProgress, clamp_percentage, first_value, progress_status
from .rules import GoalType, ProgressStatus, days_remaining, format_progress_message


class DailyTargetStrategy(GoalCalculationStrategy):
    field_name: str = ""

    def current_value(self, records: List[Any]) -> float:
        value: Optional[float] = first_value(records, self.field_name)
        return float(value) if value is not None else 0.0

    def _calculate(self, goal: Any, records: List[Any], now: datetime) -> GoalProgress:
        target = float(goal.target_value)
        current = self.current_value(records)
        percentage = clamp_percentage(current / target * 100) if target > 0 else 0.0
        status = progress_status(percentage, goal.end_date, now)

        return GoalProgress(
            percentage=percentage,
            status=status,
            current_value=current,
            target_value=target,
            remaining_value=max(0.0, target - current),
            remaining_days=days_remaining(goal.end_date, now),
            # No time-based expectation within a day.
            is_on_track=percentage > 0,
            message=format_progress_message(self.goal_types[0], current, target, percentage),
            completed_at=now if status == ProgressStatus.COMPLETED else None,
        )


class StepsStrategy(DailyTargetStrategy):
    goal_types = (GoalType.STEPS,)
    field_name = "steps"


class ExerciseStrategy(DailyTargetStrategy):
    goal_types = (GoalType.EXERCISE,)
    field_name = "exercise_minutes"


class CaloriesIntakeStrategy(DailyTargetStrategy):
    goal_types = (GoalType.CALORIES_INTAKE,)
    field_name = "calories_intake"


class CaloriesBurnStrategy(DailyTargetStrategy):
    goal_types = (GoalType.CALORIES_BURN,)
    field_name = "calories_burned"


class SleepStrategy(DailyTargetStrategy):
    """Records hold minutes; sleep targets are in hours."""
    goal_types = (GoalType.SLEEP,)
    field_name = "sleep_minutes"

    def current_value(self, records: List[Any]) -> float:
        return round(super().current_value(records) / 60, 2)


class WaterIntakeStrategy(DailyTargetStrategy):
    goal_types = (GoalType.WATER_INTAKE,)
    field_name = "water_liters"
