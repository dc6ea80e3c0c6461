"""
Goals Router

Create, update and delete goals, and read computed progress and stats.
"""
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from core.auth import get_current_user_id
from core.database import get_db
from core.exceptions import to_api_exception
from services.goal_progress import GoalValidationError, UnsupportedGoalTypeError
from services.goal_service import GoalConflictError, GoalNotFoundError, GoalService, serialize_goal

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/goals", tags=["goals"])

GOAL_ERRORS = (GoalNotFoundError, GoalConflictError, GoalValidationError, UnsupportedGoalTypeError)


class GoalCreate(BaseModel):
    type: str
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    target_value: float
    start_value: Optional[float] = None
    start_date: Optional[datetime] = None
    end_date: datetime


class GoalUpdate(BaseModel):
    target_value: Optional[float] = None
    end_date: Optional[datetime] = None
    status: Optional[str] = None


def get_goal_service(db: Session = Depends(get_db)) -> GoalService:
    return GoalService(db)


@router.get("")
def list_goals(
    active_only: bool = Query(True, description="Skip paused, completed and cancelled goals"),
    include_progress: bool = Query(False, description="Attach computed progress to each goal"),
    user_id: UUID = Depends(get_current_user_id),
    service: GoalService = Depends(get_goal_service),
):
    if include_progress:
        goals = service.list_goals_with_progress(user_id, active_only=active_only)
        return {"goals": [{**serialize_goal(g), "progress": p.to_dict()} for g, p in goals]}
    goals = service.list_active_goals(user_id) if active_only else service.list_all_goals(user_id)
    return {"goals": [serialize_goal(g) for g in goals]}


@router.get("/stats")
def get_goal_stats(
    user_id: UUID = Depends(get_current_user_id),
    service: GoalService = Depends(get_goal_service),
):
    return service.get_goal_stats(user_id)



@router.post("", status_code=status.HTTP_201_CREATED)
def create_goal(
    request: GoalCreate,
    user_id: UUID = Depends(get_current_user_id),
    service: GoalService = Depends(get_goal_service),
):
    try:
        goal = service.create_goal(
            user_id=user_id,
            goal_type=request.type,
            title=request.title,
            description=request.description,
            target_value=request.target_value,
            start_value=request.start_value,
            start_date=request.start_date,
            end_date=request.end_date,
        )
    except GOAL_ERRORS as e:
        raise to_api_exception(e)
    return serialize_goal(goal)


@router.patch("/{goal_id}")
def update_goal(
    goal_id: UUID,
    request: GoalUpdate,
    user_id: UUID = Depends(get_current_user_id),
    service: GoalService = Depends(get_goal_service),
):
    try:
        goal = service.update_goal(
            goal_id,
            user_id=user_id,
            target_value=request.target_value,
            end_date=request.end_date,
            status=request.status,
        )
    except GOAL_ERRORS as e:
        raise to_api_exception(e)
    return serialize_goal(goal)


@router.get("/{goal_id}/progress")
def get_goal_progress(
    goal_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    service: GoalService = Depends(get_goal_service),
):
    try:
        progress = service.get_goal_progress(goal_id, user_id=user_id)
    except GOAL_ERRORS as e:
        raise to_api_exception(e)
    return progress.to_dict()


@router.delete("/{goal_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_goal(
    goal_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    service: GoalService = Depends(get_goal_service),
):
    try:
        service.delete_goal(goal_id, user_id=user_id)
    except GoalNotFoundError as e:
        raise to_api_exception(e)
    return None
