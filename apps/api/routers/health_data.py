"""
Health Data Router

Manual entry of daily metrics and reading back the stored records from
every source.
"""
import logging
from datetime import date, timedelta
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from core.auth import get_current_user_id
from core.database import get_db
from core.exceptions import to_api_exception
from services.health_data import HealthDataService, HealthDataValidationError, serialize_health_record
from services.health_providers.models import utc_now

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/health-data", tags=["health-data"])


class HealthDataCreate(BaseModel):
    entry_date: Optional[date] = Field(None, alias="date", description="Defaults to today")
    weight: Optional[float] = None
    steps: Optional[int] = None
    calories_burned: Optional[float] = None
    calories_intake: Optional[float] = None
    exercise_minutes: Optional[int] = None
    active_minutes: Optional[int] = None
    sleep_minutes: Optional[int] = None
    heart_rate: Optional[int] = None
    resting_heart_rate: Optional[int] = None
    distance_meters: Optional[float] = None
    water_liters: Optional[float] = None


def get_health_data_service(db: Session = Depends(get_db)) -> HealthDataService:
    return HealthDataService(db)


@router.post("", status_code=status.HTTP_201_CREATED)
def log_health_data(
    request: HealthDataCreate,
    user_id: UUID = Depends(get_current_user_id),
    service: HealthDataService = Depends(get_health_data_service),
):
    metrics = request.model_dump(exclude={"entry_date"}, exclude_none=True)
    try:
        row = service.log_health_data(user_id, day=request.entry_date, **metrics)
    except HealthDataValidationError as e:
        raise to_api_exception(e)
    return serialize_health_record(row)


@router.get("")
def get_health_data(
    start_date: Optional[date] = Query(None, description="Defaults to 30 days before end_date"),
    end_date: Optional[date] = Query(None, description="Defaults to today"),
    user_id: UUID = Depends(get_current_user_id),
    service: HealthDataService = Depends(get_health_data_service),
):
    end_date = end_date or utc_now().date()
    start_date = start_date or end_date - timedelta(days=30)
    try:
        rows = service.get_health_data(user_id, start_date, end_date)
    except HealthDataValidationError as e:
        raise to_api_exception(e)
    return {"records": [serialize_health_record(r) for r in rows]}
