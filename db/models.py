"""
db/models.py

SQLAlchemy 2.0 async ORM model definitions.
The engine and session factory are built explicitly and injected into the
store; nothing here opens a connection at import time.
"""

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker


def build_engine(url: str, **kwargs: Any) -> AsyncEngine:
    """Create the async engine; MySQL deployments get a pooled connection."""
    if url.startswith("mysql"):
        kwargs.setdefault("pool_size", 10)
        kwargs.setdefault("max_overflow", 20)
        kwargs.setdefault("pool_pre_ping", True)
    return create_async_engine(url, **kwargs)


def build_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class User(Base):
    """Any account that can receive notifications (patients and specialists)."""

    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="patient")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="Active")


class Patient(Base):
    """Patient profile carrying the optional Normal-range override."""

    __tablename__ = "patients"

    patient_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    threshold_normal_low: Mapped[float | None] = mapped_column(Float, nullable=True)
    threshold_normal_high: Mapped[float | None] = mapped_column(Float, nullable=True)


class CategoryThreshold(Base):
    """System threshold versions; rows are inserted, never updated."""

    __tablename__ = "category_thresholds"

    threshold_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    normal_low: Mapped[float] = mapped_column(Float, nullable=False)
    normal_high: Mapped[float] = mapped_column(Float, nullable=False)
    borderline_low: Mapped[float] = mapped_column(Float, nullable=False)
    borderline_high: Mapped[float] = mapped_column(Float, nullable=False)
    abnormal_low: Mapped[float] = mapped_column(Float, nullable=False)
    abnormal_high: Mapped[float] = mapped_column(Float, nullable=False)
    effective_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)


class SugarReading(Base):
    """Glucose readings submitted by patients."""

    __tablename__ = "sugar_readings"
    __table_args__ = (
        Index("ix_sugar_readings_patient_category_time", "patient_id", "category", "recorded_at"),
    )

    reading_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[str] = mapped_column(String(36), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    unit: Mapped[str] = mapped_column(String(20), nullable=False, default="mg/dL")
    food_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    activity_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    event: Mapped[str | None] = mapped_column(String(255), nullable=True)
    symptoms: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(20), nullable=False)


class SpecialistPatientAssignment(Base):
    """Specialist responsible for a patient; the latest assignment wins."""

    __tablename__ = "specialist_patient_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    specialist_id: Mapped[str] = mapped_column(String(36), nullable=False)
    patient_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )


class AlertRecord(Base):
    """Abnormal-frequency alerts; at most one per patient per week window."""

    __tablename__ = "alerts"
    __table_args__ = (
        UniqueConstraint("patient_id", "week_start", name="uq_alerts_patient_week"),
    )

    alert_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[str] = mapped_column(String(36), nullable=False)
    week_start: Mapped[date] = mapped_column(Date, nullable=False)
    abnormal_count: Mapped[int] = mapped_column(Integer, nullable=False)
    specialist_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    recipients: Mapped[list] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class AlertDeliveryRecord(Base):
    """Per-recipient, per-channel delivery state of an alert."""

    __tablename__ = "alert_deliveries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    alert_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("alerts.alert_id"), nullable=False, index=True
    )
    recipient_id: Mapped[str] = mapped_column(String(36), nullable=False)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=True
    )


class AISuggestion(Base):
    """Latest mined suggestions; replaced wholesale on each persisted run."""

    __tablename__ = "ai_suggestions"

    suggestion_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    token: Mapped[str] = mapped_column(String(255), nullable=False)
    occurrences: Mapped[int] = mapped_column(Integer, nullable=False)
    total_abnormal: Mapped[int] = mapped_column(Integer, nullable=False)
    percent: Mapped[float] = mapped_column(Float, nullable=False)
    time_bucket: Mapped[str] = mapped_column(String(20), nullable=False)
    strength: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    based_on_pattern: Mapped[str | None] = mapped_column(String(255), nullable=True)
    generated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
