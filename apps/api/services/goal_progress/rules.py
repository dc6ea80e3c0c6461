"""
Goal types, realistic target ranges and date helpers.

Target ranges are enforced when a goal is created or its target changes,
independent of progress calculation. For weight goals the range applies to
the amount of change (start to target); the target itself must also be a
plausible body weight.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from services.health_providers.models import as_utc


class GoalType(str, Enum):
    WEIGHT_LOSS = "WEIGHT_LOSS"
    WEIGHT_GAIN = "WEIGHT_GAIN"
    STEPS = "STEPS"
    EXERCISE = "EXERCISE"
    CALORIES_INTAKE = "CALORIES_INTAKE"
    CALORIES_BURN = "CALORIES_BURN"
    SLEEP = "SLEEP"
    WATER_INTAKE = "WATER_INTAKE"


class GoalStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    PAUSED = "PAUSED"


class ProgressStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    OVERDUE = "overdue"


@dataclass(frozen=True)
class TargetRule:
    min: float
    max: float
    unit: str
    description: str


GOAL_TARGET_RULES = {
    GoalType.WEIGHT_LOSS: TargetRule(0.5, 50, "kg", "Maximum safe weight loss"),
    GoalType.WEIGHT_GAIN: TargetRule(0.5, 30, "kg", "Maximum safe weight gain"),
    GoalType.STEPS: TargetRule(1000, 50000, "steps/day", "Daily step target"),
    GoalType.EXERCISE: TargetRule(10, 300, "minutes/day", "Daily exercise target"),
    GoalType.CALORIES_INTAKE: TargetRule(1200, 5000, "kcal/day", "Daily calorie target"),
    GoalType.CALORIES_BURN: TargetRule(100, 2000, "kcal/day", "Daily calorie burn target"),
    GoalType.SLEEP: TargetRule(4, 12, "hours/day", "Daily sleep target"),
    GoalType.WATER_INTAKE: TargetRule(1, 10, "liters/day", "Daily water intake target"),
}

TRAJECTORY_GOALS = (GoalType.WEIGHT_LOSS, GoalType.WEIGHT_GAIN)

DAILY_TARGET_GOALS = (
    GoalType.STEPS,
    GoalType.EXERCISE,
    GoalType.CALORIES_INTAKE,
    GoalType.CALORIES_BURN,
    GoalType.SLEEP,
    GoalType.WATER_INTAKE,
)

# Plausible adult body weight for a weight goal target (kg).
TARGET_WEIGHT_RANGE = (20, 300)
MIN_WEIGHT_LOSS_TARGET = 40


class GoalValidationError(Exception):
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


def coerce_goal_type(goal_type) -> GoalType:
    try:
        return GoalType(goal_type)
    except ValueError:
        raise GoalValidationError(f"Unknown goal type: {goal_type}", field="type")


def is_trajectory_goal(goal_type) -> bool:
    return coerce_goal_type(goal_type) in TRAJECTORY_GOALS


def validate_weight_change(goal_type, start_value: float, target_value: float) -> None:
    goal_type = coerce_goal_type(goal_type)
    rule = GOAL_TARGET_RULES[goal_type]

    if goal_type == GoalType.WEIGHT_LOSS:
        if target_value >= start_value:
            raise GoalValidationError("Target weight must be less than start weight", field="target_value")
        if target_value <= MIN_WEIGHT_LOSS_TARGET:
            raise GoalValidationError(
                f"Target weight must be above {MIN_WEIGHT_LOSS_TARGET}kg", field="target_value"
            )
        change = start_value - target_value
    else:
        if target_value <= start_value:
            raise GoalValidationError("Target weight must be greater than start weight", field="target_value")
        change = target_value - start_value

    if change < rule.min or change > rule.max:
        raise GoalValidationError(
            f"{rule.description}: change must be between {rule.min:g} and {rule.max:g}{rule.unit} "
            f"(got {change:.1f}{rule.unit})",
            field="target_value",
        )


def validate_goal_target(goal_type, target_value: float, start_value: Optional[float] = None) -> None:
    """
    Raises:
        GoalValidationError
    """
    goal_type = coerce_goal_type(goal_type)
    rule = GOAL_TARGET_RULES[goal_type]

    if goal_type in TRAJECTORY_GOALS:
        low, high = TARGET_WEIGHT_RANGE
        if not (low <= target_value <= high):
            raise GoalValidationError(
                f"Target weight must be between {low} and {high}kg", field="target_value"
            )
        if start_value is None:
            raise GoalValidationError("A start weight is required for weight goals", field="start_value")
        validate_weight_change(goal_type, start_value, target_value)
        return

    if not (rule.min <= target_value <= rule.max):
        raise GoalValidationError(
            f"{rule.description} must be between {rule.min:g} and {rule.max:g} {rule.unit}",
            field="target_value",
        )


def _fmt(value: float) -> str:
    if float(value).is_integer():
        return f"{int(value)}"
    return f"{value:.1f}"


def format_progress_message(
    goal_type,
    current: float,
    target: float,
    percentage: float,
    start: Optional[float] = None,
) -> str:
    goal_type = coerce_goal_type(goal_type)
    unit = GOAL_TARGET_RULES[goal_type].unit
    baseline = current if start is None else start

    if goal_type == GoalType.WEIGHT_LOSS:
        return (
            f"You've lost {max(0.0, baseline - current):.1f}{unit} toward your "
            f"{_fmt(target)}{unit} goal ({percentage:.0f}%)"
        )
    if goal_type == GoalType.WEIGHT_GAIN:
        return (
            f"You've gained {max(0.0, current - baseline):.1f}{unit} toward your "
            f"{_fmt(target)}{unit} goal ({percentage:.0f}%)"
        )
    if goal_type == GoalType.STEPS:
        return f"{int(current):,} of {int(target):,} {unit} ({percentage:.0f}%)"
    return f"{_fmt(current)} of {_fmt(target)} {unit} ({percentage:.0f}%)"


# --- Day helpers ---------------------------------------------------------

SECONDS_PER_DAY = 86400


def days_remaining(end_date: datetime, now: datetime) -> int:
    diff = (as_utc(end_date) - as_utc(now)).total_seconds() / SECONDS_PER_DAY
    return max(0, math.ceil(diff))


def days_elapsed(start_date: datetime, now: datetime) -> int:
    diff = (as_utc(now) - as_utc(start_date)).total_seconds() / SECONDS_PER_DAY
    return max(0, math.floor(diff))


def total_days(start_date: datetime, end_date: datetime) -> int:
    diff = (as_utc(end_date) - as_utc(start_date)).total_seconds() / SECONDS_PER_DAY
    return max(1, math.ceil(diff))
