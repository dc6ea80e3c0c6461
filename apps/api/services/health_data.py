"""
Health Data Service

Manual entries: metrics the user types in themselves, stored as MANUAL
records next to provider-synced ones. Water intake only ever arrives this
way.

Logging the same day again merges into that day's MANUAL record; metrics
not given in the new entry keep their earlier values.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from models import HealthRecord
from services.health_providers.models import (
    METRIC_FIELDS,
    CanonicalHealthRecord,
    HealthDataProvider,
    utc_now,
    validate_canonical_record,
)
from services.repositories import HealthRecordRepository

logger = logging.getLogger(__name__)

# Widest range a single read may cover.
MAX_QUERY_DAYS = 366


class HealthDataValidationError(Exception):
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


def serialize_health_record(row: HealthRecord) -> Dict[str, Any]:
    data = {
        "date": row.date.isoformat(),
        "provider": row.provider,
    }
    for name in METRIC_FIELDS:
        data[name] = getattr(row, name)
    return data


class HealthDataService:
    def __init__(self, db: Session):
        self.db = db
        self.records = HealthRecordRepository(db)

    def log_health_data(
        self,
        user_id: UUID,
        day: Optional[date] = None,
        now: Optional[datetime] = None,
        **metrics: Any,
    ) -> HealthRecord:
        """
        Store a manual entry for ``day`` (today when omitted).

        Raises:
            HealthDataValidationError: no metric given, unknown metric,
                future date, or a value outside its realistic range
        """
        today = (now or utc_now()).date()
        day = day or today

        unknown = sorted(set(metrics) - set(METRIC_FIELDS))
        if unknown:
            raise HealthDataValidationError(f"Unknown metric: {unknown[0]}", field=unknown[0])
        given = {name: value for name, value in metrics.items() if value is not None}
        if not given:
            raise HealthDataValidationError("At least one health metric must be provided")
        if day > today:
            raise HealthDataValidationError("Cannot log health data for future dates", field="date")

        record = CanonicalHealthRecord(date=day, provider=HealthDataProvider.MANUAL)
        existing = self.records.find_for_day(user_id, HealthDataProvider.MANUAL, day)
        if existing is not None:
            for name in METRIC_FIELDS:
                setattr(record, name, getattr(existing, name))
        for name, value in given.items():
            setattr(record, name, value)

        problems = validate_canonical_record(record)
        if problems:
            raise HealthDataValidationError("; ".join(problems))

        self.records.bulk_upsert(user_id, [record])
        logger.info(
            f"Logged manual health data for user {user_id} on {day}",
            extra={"extra_fields": {"user_id": str(user_id), "metrics": sorted(given)}},
        )
        return self.records.find_for_day(user_id, HealthDataProvider.MANUAL, day)

    def get_health_data(self, user_id: UUID, start: date, end: date) -> List[HealthRecord]:
        """
        Every source's records in the inclusive range, newest first.

        Raises:
            HealthDataValidationError: inverted or overly wide range
        """
        if end < start:
            raise HealthDataValidationError("End date must not be before start date", field="end_date")
        if (end - start).days >= MAX_QUERY_DAYS:
            raise HealthDataValidationError(f"Range must not exceed {MAX_QUERY_DAYS} days", field="start_date")
        return self.records.query_range(user_id, start, end)
