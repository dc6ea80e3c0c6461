"""
Goal Progress Module

Turns a goal plus the user's canonical health records into a progress
snapshot (percentage, status, projection). Two families:
- Trajectory goals (weight loss/gain): change from start toward target
- Daily-target goals (steps, exercise, calories, sleep, water): today vs target
"""

from .base import GoalProgress, GoalCalculationStrategy, records_for_day
from .engine import GoalProgressEngine, UnsupportedGoalTypeError, default_engine
from .rules import (
    GoalStatus,
    GoalType,
    GoalValidationError,
    ProgressStatus,
    validate_goal_target,
)

__all__ = [
    'GoalProgress',
    'GoalCalculationStrategy',
    'records_for_day',
    'GoalProgressEngine',
    'UnsupportedGoalTypeError',
    'default_engine',
    'GoalStatus',
    'GoalType',
    'GoalValidationError',
    'ProgressStatus',
    'validate_goal_target',
]
