"""
SQLAlchemy stores for integrations, health records and goals.

Each repository wraps one ``Session``. Write methods commit so that a sync
running under a per-integration lock never leaves a half-applied state
behind for the next lock holder.
"""

import logging
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Union
from uuid import UUID

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import Goal, HealthRecord, Integration
from services.health_providers.models import (
    METRIC_FIELDS,
    CanonicalHealthRecord,
    HealthDataProvider,
    IntegrationStatus,
    OAuthCredentials,
    utc_now,
)
from services.token_encryption import open_credentials, seal_credentials

logger = logging.getLogger(__name__)

# Statuses the batch scheduler will pick up. EXPIRED and REVOKED need the
# user to reconnect. ERROR is retried, but only with capacity left over after
# every due ACTIVE integration, least recently attempted first.
SYNCABLE_STATUSES = (IntegrationStatus.ACTIVE.value, IntegrationStatus.ERROR.value)


class IntegrationNotFoundError(Exception):
    def __init__(self, integration_id):
        super().__init__(f"Integration not found: {integration_id}")
        self.integration_id = integration_id


class DuplicateIntegrationError(Exception):
    def __init__(self, user_id, provider: str):
        super().__init__(f"User already has a {provider} integration")
        self.user_id = user_id
        self.provider = provider


def _provider_value(provider: Union[HealthDataProvider, str]) -> str:
    return provider.value if isinstance(provider, HealthDataProvider) else str(provider)


class IntegrationRepository:
    def __init__(self, db: Session):
        self.db = db

    def find_by_id(self, integration_id: UUID) -> Optional[Integration]:
        return self.db.query(Integration).filter(Integration.id == integration_id).first()

    def get(self, integration_id: UUID) -> Integration:
        """Like ``find_by_id`` but raises IntegrationNotFoundError."""
        integration = self.find_by_id(integration_id)
        if integration is None:
            raise IntegrationNotFoundError(integration_id)
        return integration

    def find_by_user(self, user_id: UUID) -> List[Integration]:
        return (
            self.db.query(Integration)
            .filter(Integration.user_id == user_id)
            .order_by(Integration.created_at.asc())
            .all()
        )

    def find_by_user_and_provider(
        self, user_id: UUID, provider: Union[HealthDataProvider, str]
    ) -> Optional[Integration]:
        return (
            self.db.query(Integration)
            .filter(
                Integration.user_id == user_id,
                Integration.provider == _provider_value(provider),
            )
            .first()
        )

    def find_due_for_sync(self, stale_before: datetime, limit: int) -> List[Integration]:
        """
        Integrations never synced or last synced before ``stale_before``.

        ACTIVE rows come first: never-synced, then oldest-synced. ERROR rows
        follow, ordered by their last attempt (``updated_at``) so a broken
        integration cannot hold the head of every capped batch. Capped at
        ``limit``.
        """
        is_error = Integration.status == IntegrationStatus.ERROR.value
        errors_last = case((is_error, 1), else_=0)
        never_synced_first = case((Integration.last_synced_at.is_(None), 0), else_=1)
        # NULL for ACTIVE rows, so it only orders ERROR rows among themselves.
        last_attempt = case((is_error, Integration.updated_at), else_=None)
        return (
            self.db.query(Integration)
            .filter(
                Integration.status.in_(SYNCABLE_STATUSES),
                (Integration.last_synced_at.is_(None)) | (Integration.last_synced_at < stale_before),
            )
            .order_by(
                errors_last.asc(),
                last_attempt.asc(),
                never_synced_first.asc(),
                Integration.last_synced_at.asc(),
                Integration.created_at.asc(),
            )
            .limit(limit)
            .all()
        )

    def create(
        self,
        user_id: UUID,
        provider: Union[HealthDataProvider, str],
        credentials: OAuthCredentials,
    ) -> Integration:
        """
        Raises:
            DuplicateIntegrationError: the (user, provider) pair already exists
        """
        provider_value = _provider_value(provider)
        if self.find_by_user_and_provider(user_id, provider_value) is not None:
            raise DuplicateIntegrationError(user_id, provider_value)

        integration = Integration(
            user_id=user_id,
            provider=provider_value,
            credentials=seal_credentials(credentials),
            token_expires_at=credentials.expires_at,
            status=IntegrationStatus.ACTIVE.value,
        )
        self.db.add(integration)
        try:
            self.db.commit()
        except IntegrityError as e:
            # Lost a race with a concurrent callback for the same pair.
            self.db.rollback()
            raise DuplicateIntegrationError(user_id, provider_value) from e
        self.db.refresh(integration)
        return integration

    def update_credentials(self, integration: Integration, credentials: OAuthCredentials) -> Integration:
        integration.credentials = seal_credentials(credentials)
        integration.token_expires_at = credentials.expires_at
        self.db.commit()
        return integration

    def update_status(
        self,
        integration: Integration,
        status: IntegrationStatus,
        error_message: Optional[str] = None,
    ) -> Integration:
        integration.status = status.value
        integration.sync_error_message = error_message
        self.db.commit()
        return integration

    def update_last_synced(self, integration: Integration, synced_at: Optional[datetime] = None) -> Integration:
        integration.last_synced_at = synced_at or utc_now()
        integration.sync_error_message = None
        integration.status = IntegrationStatus.ACTIVE.value
        self.db.commit()
        return integration

    def record_sync_error(self, integration: Integration, message: str) -> Integration:
        integration.status = IntegrationStatus.ERROR.value
        integration.sync_error_message = message
        # Stamped even when status and message repeat; batch order reads it.
        integration.updated_at = utc_now()
        self.db.commit()
        return integration

    def delete(self, integration: Integration) -> None:
        self.db.delete(integration)
        self.db.commit()

    def credentials_for(self, integration: Integration) -> OAuthCredentials:
        return open_credentials(integration.credentials)


class HealthRecordRepository:
    def __init__(self, db: Session):
        self.db = db

    def bulk_upsert(self, user_id: UUID, records: Iterable[CanonicalHealthRecord]) -> int:
        """
        Insert or replace records keyed by (user, provider, date).

        A re-fetched day replaces every metric of the stored row, including
        metrics that are now absent.
        """
        now = utc_now()
        count = 0
        for record in records:
            provider_value = _provider_value(record.provider)
            row = (
                self.db.query(HealthRecord)
                .filter(
                    HealthRecord.user_id == user_id,
                    HealthRecord.provider == provider_value,
                    HealthRecord.date == record.date,
                )
                .first()
            )
            if row is None:
                row = HealthRecord(user_id=user_id, provider=provider_value, date=record.date)
                self.db.add(row)

            for name in METRIC_FIELDS:
                setattr(row, name, getattr(record, name))
            row.raw_payload = record.raw_payload or None
            row.synced_at = now
            count += 1

        self.db.commit()
        return count

    def query_range(
        self,
        user_id: UUID,
        start: date,
        end: date,
        provider: Optional[Union[HealthDataProvider, str]] = None,
    ) -> List[HealthRecord]:
        """Records in the inclusive range, newest first."""
        query = self.db.query(HealthRecord).filter(
            HealthRecord.user_id == user_id,
            HealthRecord.date >= start,
            HealthRecord.date <= end,
        )
        if provider is not None:
            query = query.filter(HealthRecord.provider == _provider_value(provider))
        return query.order_by(HealthRecord.date.desc(), HealthRecord.synced_at.desc()).all()

    def latest_weight(self, user_id: UUID) -> Optional[float]:
        row = (
            self.db.query(HealthRecord)
            .filter(HealthRecord.user_id == user_id, HealthRecord.weight.isnot(None))
            .order_by(HealthRecord.date.desc(), HealthRecord.synced_at.desc())
            .first()
        )
        return row.weight if row else None

    def find_for_day(
        self,
        user_id: UUID,
        provider: Union[HealthDataProvider, str],
        day: date,
    ) -> Optional[HealthRecord]:
        return (
            self.db.query(HealthRecord)
            .filter(
                HealthRecord.user_id == user_id,
                HealthRecord.provider == _provider_value(provider),
                HealthRecord.date == day,
            )
            .first()
        )


class GoalRepository:
    def __init__(self, db: Session):
        self.db = db

    def find_by_id(self, goal_id: UUID) -> Optional[Goal]:
        return self.db.query(Goal).filter(Goal.id == goal_id).first()

    def find_by_user(self, user_id: UUID) -> List[Goal]:
        return self.db.query(Goal).filter(Goal.user_id == user_id).order_by(Goal.created_at.desc()).all()

    def count_by_status(self, user_id: UUID) -> Dict[str, int]:
        rows = (
            self.db.query(Goal.status, func.count(Goal.id))
            .filter(Goal.user_id == user_id)
            .group_by(Goal.status)
            .all()
        )
        return {status: count for status, count in rows}

    def count_by_type(self, user_id: UUID) -> Dict[str, int]:
        rows = (
            self.db.query(Goal.type, func.count(Goal.id))
            .filter(Goal.user_id == user_id)
            .group_by(Goal.type)
            .all()
        )
        return {goal_type: count for goal_type, count in rows}

    def find_active_by_user(self, user_id: UUID) -> List[Goal]:
        return (
            self.db.query(Goal)
            .filter(Goal.user_id == user_id, Goal.status == "ACTIVE")
            .order_by(Goal.created_at.desc())
            .all()
        )

    def find_active_by_user_and_type(self, user_id: UUID, goal_type: str) -> Optional[Goal]:
        return (
            self.db.query(Goal)
            .filter(Goal.user_id == user_id, Goal.type == goal_type, Goal.status == "ACTIVE")
            .first()
        )

    def create(self, **fields) -> Goal:
        goal = Goal(**fields)
        self.db.add(goal)
        self.db.commit()
        self.db.refresh(goal)
        return goal

    def update(self, goal: Goal, **changes) -> Goal:
        for name, value in changes.items():
            setattr(goal, name, value)
        self.db.commit()
        self.db.refresh(goal)
        return goal

    def delete(self, goal: Goal) -> None:
        self.db.delete(goal)
        self.db.commit()
