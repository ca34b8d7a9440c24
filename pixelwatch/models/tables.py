"""
Database models.

Design principles:
  - Events are append-only except for their processing state fields
  - Pixel counters and Conversion summaries are rollups; the hourly
    recompute from raw events is the source of truth
  - Diagnostics are keyed by (pixel_id, title) and upserted, never duplicated
  - Every workspace-scoped read goes through pixels.workspace_id
"""

from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship

# JSONB on Postgres, plain JSON elsewhere (tests run on SQLite)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Entity tables
# ---------------------------------------------------------------------------

class Workspace(Base):
    __tablename__ = "workspaces"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    pixels = relationship("Pixel", back_populates="workspace")


class Pixel(Base):
    __tablename__ = "pixels"

    id = Column(Uuid, primary_key=True, default=uuid4)
    workspace_id = Column(Uuid, ForeignKey("workspaces.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False, default="")

    status = Column(String(20), nullable=False, default="active")  # active, inactive, error
    status_reason = Column(String(50), nullable=True)               # "inactivity" when auto-deactivated

    # --- Rollups ---
    events_count = Column(Integer, nullable=False, default=0)
    conversions_count = Column(Integer, nullable=False, default=0)
    revenue_total = Column(Float, nullable=False, default=0.0)
    last_activity = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    workspace = relationship("Workspace", back_populates="pixels")


class Conversion(Base):
    __tablename__ = "conversions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    pixel_id = Column(Uuid, ForeignKey("pixels.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False, default="")
    event_name = Column(String(100), nullable=False)
    rules = Column(JSONType, nullable=False, default=list)  # ordered list of {type, operator, field, value}
    is_active = Column(Boolean, nullable=False, default=True)

    # --- Derived summary (recomputed hourly) ---
    conversion_rate = Column(Float, nullable=False, default=0.0)
    total_conversions = Column(Integer, nullable=False, default=0)
    total_value = Column(Float, nullable=False, default=0.0)
    average_value = Column(Float, nullable=False, default=0.0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Diagnostic(Base):
    """One health finding per (pixel, title). check_name is null for manual entries."""
    __tablename__ = "diagnostics"

    id = Column(Uuid, primary_key=True, default=uuid4)
    pixel_id = Column(Uuid, ForeignKey("pixels.id", ondelete="CASCADE"), nullable=False, index=True)
    severity = Column(String(20), nullable=False)    # error, warning, info, success
    category = Column(String(20), nullable=False)    # implementation, events, performance, connection
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    status = Column(String(20), nullable=False, default="active")  # active, resolved
    check_name = Column(String(50), nullable=True)

    last_checked_at = Column(DateTime(timezone=True), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("pixel_id", "title", name="uq_diagnostics_pixel_title"),
        Index("ix_diagnostics_status", "status", "resolved_at"),
    )


# ---------------------------------------------------------------------------
# Event table
# ---------------------------------------------------------------------------

class Event(Base):
    """
    One tracked occurrence. Created by ingestion with processing_state=pending;
    only the event processor moves it to processed/failed.
    """
    __tablename__ = "events"

    id = Column(Uuid, primary_key=True, default=uuid4)
    pixel_id = Column(Uuid, ForeignKey("pixels.id", ondelete="CASCADE"), nullable=False)
    event_name = Column(String(100), nullable=False)
    event_type = Column(String(20), nullable=False, default="standard")   # standard, custom
    parameters = Column(JSONType, nullable=False, default=dict)
    source = Column(String(20), nullable=False, default="web")            # web, server, mobile
    timestamp = Column(DateTime(timezone=True), nullable=False)

    processing_state = Column(String(20), nullable=False, default="pending")  # pending, processed, failed
    error_reason = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_events_pixel_timestamp", "pixel_id", "timestamp"),
        Index("ix_events_state", "processing_state", "pixel_id"),
        Index("ix_events_name_timestamp", "event_name", "timestamp"),
    )
