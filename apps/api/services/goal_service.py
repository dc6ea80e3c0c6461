"""
Goal Service

Create/update goals with their validation rules and compute progress on
demand. Progress is never stored.

Record selection for progress:
- Trajectory goals: every record from the goal's start date through today
- Daily-target goals: today's records only
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from models import Goal
from services.goal_progress import (
    GoalProgress,
    GoalProgressEngine,
    GoalStatus,
    GoalValidationError,
    default_engine,
    records_for_day,
    validate_goal_target,
)
from services.goal_progress.rules import coerce_goal_type, is_trajectory_goal
from services.health_providers.models import as_utc, utc_now
from services.repositories import GoalRepository, HealthRecordRepository

logger = logging.getLogger(__name__)

MAX_GOAL_HORIZON = timedelta(days=365)

# Allowed status changes through update_goal.
STATUS_TRANSITIONS = {
    GoalStatus.ACTIVE: {GoalStatus.PAUSED, GoalStatus.COMPLETED, GoalStatus.CANCELLED},
    GoalStatus.PAUSED: {GoalStatus.ACTIVE, GoalStatus.CANCELLED},
    GoalStatus.COMPLETED: set(),
    GoalStatus.CANCELLED: set(),
}


class GoalNotFoundError(Exception):
    def __init__(self, goal_id):
        super().__init__(f"Goal not found: {goal_id}")
        self.goal_id = goal_id


class GoalConflictError(Exception):
    """A second active goal of the same type, or an illegal status change."""


def serialize_goal(goal: Goal) -> Dict[str, Any]:
    return {
        "id": str(goal.id),
        "type": goal.type,
        "title": goal.title,
        "description": goal.description,
        "target_value": goal.target_value,
        "start_value": goal.start_value,
        "start_date": as_utc(goal.start_date).isoformat(),
        "end_date": as_utc(goal.end_date).isoformat(),
        "status": goal.status,
    }


class GoalService:
    def __init__(self, db: Session, engine: Optional[GoalProgressEngine] = None):
        self.db = db
        self.goals = GoalRepository(db)
        self.records = HealthRecordRepository(db)
        self.engine = engine or default_engine()

    def _get(self, goal_id: UUID, user_id: Optional[UUID] = None) -> Goal:
        goal = self.goals.find_by_id(goal_id)
        if goal is None or (user_id is not None and goal.user_id != user_id):
            raise GoalNotFoundError(goal_id)
        return goal

    def records_for_progress(self, goal: Goal, now: datetime) -> List[Any]:
        today = now.date()
        if is_trajectory_goal(goal.type):
            start = as_utc(goal.start_date).date()
            return self.records.query_range(goal.user_id, start, today)
        return records_for_day(self.records.query_range(goal.user_id, today, today), today)

    def get_goal_progress(
        self,
        goal_id: UUID,
        user_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> GoalProgress:
        """
        Raises:
            GoalNotFoundError, UnsupportedGoalTypeError
        """
        now = now or utc_now()
        goal = self._get(goal_id, user_id)
        return self.engine.calculate(goal, self.records_for_progress(goal, now), now=now)

    def list_active_goals(self, user_id: UUID) -> List[Goal]:
        return self.goals.find_active_by_user(user_id)

    def list_all_goals(self, user_id: UUID) -> List[Goal]:
        return self.goals.find_by_user(user_id)

    def list_goals_with_progress(
        self,
        user_id: UUID,
        active_only: bool = True,
        now: Optional[datetime] = None,
    ) -> List[Tuple[Goal, GoalProgress]]:
        """Goals newest first, each with progress computed against ``now``."""
        now = now or utc_now()
        goals = self.goals.find_active_by_user(user_id) if active_only else self.goals.find_by_user(user_id)
        return [(goal, self.engine.calculate(goal, self.records_for_progress(goal, now), now=now)) for goal in goals]

    def get_goal_stats(self, user_id: UUID) -> Dict[str, Any]:
        """Counts by status and type; completion rate is a percentage of all goals."""
        by_status = self.goals.count_by_status(user_id)
        total = sum(by_status.values())
        completed = by_status.get(GoalStatus.COMPLETED.value, 0)
        stats: Dict[str, Any] = {"total": total}
        for goal_status in GoalStatus:
            stats[goal_status.value.lower()] = by_status.get(goal_status.value, 0)
        stats["completion_rate"] = round(completed / total * 100, 1) if total else 0.0
        stats["by_type"] = self.goals.count_by_type(user_id)
        return stats

    def delete_goal(self, goal_id: UUID, user_id: Optional[UUID] = None) -> None:
        """
        Raises:
            GoalNotFoundError
        """
        goal = self._get(goal_id, user_id)
        goal_type = goal.type
        self.goals.delete(goal)
        logger.info(f"Deleted {goal_type} goal {goal_id}")

    def create_goal(
        self,
        user_id: UUID,
        goal_type: str,
        title: str,
        target_value: float,
        end_date: datetime,
        start_date: Optional[datetime] = None,
        start_value: Optional[float] = None,
        description: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Goal:
        """
        Raises:
            GoalValidationError, GoalConflictError
        """
        now = now or utc_now()
        goal_type = coerce_goal_type(goal_type)
        start_date = as_utc(start_date) if start_date else now
        end_date = as_utc(end_date)

        if end_date <= start_date:
            raise GoalValidationError("End date must be after start date", field="end_date")
        if end_date > now + MAX_GOAL_HORIZON:
            raise GoalValidationError("End date must be within one year", field="end_date")

        if is_trajectory_goal(goal_type):
            if start_value is None:
                start_value = self.records.latest_weight(user_id)
        else:
            start_value = None
        validate_goal_target(goal_type, target_value, start_value)

        if self.goals.find_active_by_user_and_type(user_id, goal_type.value) is not None:
            raise GoalConflictError(f"An active {goal_type.value} goal already exists")

        goal = self.goals.create(
            user_id=user_id,
            type=goal_type.value,
            title=title,
            description=description,
            target_value=target_value,
            start_value=start_value,
            start_date=start_date,
            end_date=end_date,
            status=GoalStatus.ACTIVE.value,
        )
        logger.info(f"Created {goal_type.value} goal {goal.id} for user {user_id}")
        return goal

    def update_goal(
        self,
        goal_id: UUID,
        user_id: Optional[UUID] = None,
        target_value: Optional[float] = None,
        end_date: Optional[datetime] = None,
        status: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Goal:
        """
        Only target value, end date and status are mutable.

        Raises:
            GoalNotFoundError, GoalValidationError, GoalConflictError
        """
        now = now or utc_now()
        goal = self._get(goal_id, user_id)
        changes: Dict[str, Any] = {}

        if target_value is not None:
            validate_goal_target(goal.type, target_value, goal.start_value)
            changes["target_value"] = target_value

        if end_date is not None:
            end_date = as_utc(end_date)
            if end_date <= as_utc(goal.start_date):
                raise GoalValidationError("End date must be after start date", field="end_date")
            if end_date > now + MAX_GOAL_HORIZON:
                raise GoalValidationError("End date must be within one year", field="end_date")
            changes["end_date"] = end_date

        if status is not None:
            try:
                new_status = GoalStatus(status)
            except ValueError:
                raise GoalValidationError(f"Unknown goal status: {status}", field="status")
            current_status = GoalStatus(goal.status)
            if new_status != current_status:
                if new_status not in STATUS_TRANSITIONS[current_status]:
                    raise GoalConflictError(
                        f"Cannot change goal status from {current_status.value} to {new_status.value}"
                    )
                if new_status == GoalStatus.ACTIVE:
                    other = self.goals.find_active_by_user_and_type(goal.user_id, goal.type)
                    if other is not None and other.id != goal.id:
                        raise GoalConflictError(f"An active {goal.type} goal already exists")
                changes["status"] = new_status.value

        if not changes:
            return goal
        return self.goals.update(goal, **changes)
