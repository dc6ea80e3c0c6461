from sqlalchemy import Column, Integer, Float, Date, DateTime, Text, Index, UniqueConstraint, JSON, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from core.database import Base
import uuid

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Integration(Base):
    """
    Link between one user and one third-party health provider.

    A user holds at most one integration per provider. Tokens inside
    ``credentials`` are Fernet-encrypted; expiry is mirrored to
    ``token_expires_at`` so refresh candidates can be queried.
    """
    __tablename__ = "integration"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    provider = Column(Text, nullable=False)  # STRAVA | FITBIT | LOSE_IT

    # {access_token (enc), refresh_token (enc), expires_at (iso), scope, token_type}
    credentials = Column(JSONType, nullable=False)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)

    status = Column(Text, nullable=False, default="ACTIVE")  # ACTIVE | EXPIRED | REVOKED | ERROR
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    sync_error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_integration_user_provider"),
        Index("ix_integration_status_last_synced", "status", "last_synced_at"),
    )


class HealthRecord(Base):
    """
    One calendar day of canonical health data from one provider.

    Re-syncing the same day replaces the earlier values.
    """
    __tablename__ = "health_record"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), nullable=False)
    provider = Column(Text, nullable=False)  # STRAVA | FITBIT | LOSE_IT | MANUAL
    date = Column(Date, nullable=False)

    weight = Column(Float, nullable=True)  # kg
    steps = Column(Integer, nullable=True)
    calories_burned = Column(Float, nullable=True)
    calories_intake = Column(Float, nullable=True)
    exercise_minutes = Column(Integer, nullable=True)
    active_minutes = Column(Integer, nullable=True)
    sleep_minutes = Column(Integer, nullable=True)
    heart_rate = Column(Integer, nullable=True)
    resting_heart_rate = Column(Integer, nullable=True)
    distance_meters = Column(Float, nullable=True)
    water_liters = Column(Float, nullable=True)

    raw_payload = Column(JSONType, nullable=True)
    synced_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "provider", "date", name="uq_health_record_user_provider_date"),
        Index("ix_health_record_user_date", "user_id", "date"),
    )


class Goal(Base):
    """
    User-defined health goal.

    Only target_value, end_date and status change after creation.
    """
    __tablename__ = "goal"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), nullable=False)
    type = Column(Text, nullable=False)  # WEIGHT_LOSS, STEPS, SLEEP, ...
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=True)

    target_value = Column(Float, nullable=False)
    start_value = Column(Float, nullable=True)  # trajectory goals only

    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    status = Column(Text, nullable=False, default="ACTIVE")  # ACTIVE | COMPLETED | CANCELLED | PAUSED

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_goal_user_status", "user_id", "status"),
    )
