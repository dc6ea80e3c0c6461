"""
Goal Progress Engine

Dispatches a goal to the strategy registered for its type. An unknown type
is a hard error: it means a strategy registration is missing.
"""

import logging
from datetime import datetime
from typing import Any, Iterable, List, Optional, Sequence

from .base import GoalCalculationStrategy, GoalProgress
from .daily import (
    CaloriesBurnStrategy,
    CaloriesIntakeStrategy,
    ExerciseStrategy,
    SleepStrategy,
    StepsStrategy,
    WaterIntakeStrategy,
)
from .trajectory import WeightGainStrategy, WeightLossStrategy

logger = logging.getLogger(__name__)


class UnsupportedGoalTypeError(Exception):
    def __init__(self, goal_type):
        super().__init__(f"No progress strategy registered for goal type: {goal_type}")
        self.goal_type = goal_type
        self.field = "type"


class GoalProgressEngine:
    def __init__(self, strategies: Optional[Iterable[GoalCalculationStrategy]] = None):
        self._strategies: List[GoalCalculationStrategy] = list(strategies or [])

    def register(self, strategy: GoalCalculationStrategy) -> None:
        self._strategies.append(strategy)

    def strategy_for(self, goal_type) -> GoalCalculationStrategy:
        for strategy in self._strategies:
            if strategy.supports(goal_type):
                return strategy
        raise UnsupportedGoalTypeError(goal_type)

    def calculate(self, goal: Any, records: Sequence[Any], now: Optional[datetime] = None) -> GoalProgress:
        """
        Raises:
            UnsupportedGoalTypeError
        """
        return self.strategy_for(goal.type).calculate(goal, records, now=now)


def default_engine() -> GoalProgressEngine:
    return GoalProgressEngine([
        WeightLossStrategy(),
        WeightGainStrategy(),
        StepsStrategy(),
        ExerciseStrategy(),
        CaloriesIntakeStrategy(),
        CaloriesBurnStrategy(),
        SleepStrategy(),
        WaterIntakeStrategy(),
    ])
