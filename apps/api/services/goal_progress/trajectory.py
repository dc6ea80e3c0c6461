"""
Trajectory strategies: cumulative weight change from a start value toward a
target over the goal window.
"""

from datetime import datetime
from typing import Any, List

from .base import GoalCalculationStrategy, GoalProgress, clamp_percentage, first_value, progress_status
from .rules import (
    GoalType,
    ProgressStatus,
    days_elapsed,
    days_remaining,
    format_progress_message,
    total_days,
)

# On track means at least 80% of the progress expected by elapsed time.
ON_TRACK_RATIO = 0.8


class _WeightTrajectoryStrategy(GoalCalculationStrategy):
    direction = 1  # +1 gain, -1 loss

    def _calculate(self, goal: Any, records: List[Any], now: datetime) -> GoalProgress:
        target = float(goal.target_value)
        latest = first_value(records, "weight")

        # No data yet: fall back so a brand new goal reads as 0%, not an error.
        if latest is not None:
            current = float(latest)
        elif goal.start_value is not None:
            current = float(goal.start_value)
        else:
            current = target
        start = float(goal.start_value) if goal.start_value is not None else current

        delta = (current - start) * self.direction
        total_needed = abs(target - start)
        percentage = clamp_percentage(delta / total_needed * 100) if total_needed > 0 else 0.0

        status = progress_status(percentage, goal.end_date, now)
        expected = days_elapsed(goal.start_date, now) / total_days(goal.start_date, goal.end_date) * 100
        remaining = max(0.0, (target - current) * self.direction)

        return GoalProgress(
            percentage=percentage,
            status=status,
            current_value=current,
            target_value=target,
            start_value=start,
            remaining_value=remaining,
            remaining_days=days_remaining(goal.end_date, now),
            is_on_track=percentage >= expected * ON_TRACK_RATIO,
            message=format_progress_message(self.goal_types[0], current, target, percentage, start=start),
            completed_at=now if status == ProgressStatus.COMPLETED else None,
        )


class WeightLossStrategy(_WeightTrajectoryStrategy):
    goal_types = (GoalType.WEIGHT_LOSS,)
    direction = -1


class WeightGainStrategy(_WeightTrajectoryStrategy):
    goal_types = (GoalType.WEIGHT_GAIN,)
    direction = 1
