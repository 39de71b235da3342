"""SQLAlchemy 2.0 async models for spells, runs and step results."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from stationthis.constants import DB_SCHEMA


class Base(DeclarativeBase):
    pass


class SpellRecord(Base):
    __tablename__ = "spells"
    __table_args__ = {"schema": DB_SCHEMA}

    slug: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), default="")
    steps: Mapped[list] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class RunRecord(Base):
    """One cast/cook execution. `version` is the compare-and-set counter."""

    __tablename__ = "runs"
    __table_args__ = {"schema": DB_SCHEMA}

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    kind: Mapped[str] = mapped_column(String(16), default="cast")
    definition_id: Mapped[str] = mapped_column(String(128), index=True)
    definition: Mapped[dict] = mapped_column(JSONB)
    initiator_id: Mapped[str] = mapped_column(String(128), index=True)
    platform: Mapped[str] = mapped_column(String(32), default="none")
    status: Mapped[str] = mapped_column(String(16), default="running")
    accumulated_cost: Mapped[Decimal] = mapped_column(Numeric(14, 6), default=Decimal("0"))
    step_result_ids: Mapped[list] = mapped_column(JSONB, default=list)
    initial_context: Mapped[dict] = mapped_column(JSONB, default=dict)
    notification_context: Mapped[dict] = mapped_column(JSONB, default=dict)
    # "metadata" is reserved on declarative classes
    run_metadata: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    final_step_result_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class StepResultRecord(Base):
    __tablename__ = "step_results"
    __table_args__ = (
        UniqueConstraint("run_id", "step_index", name="uq_step_results_run_step"),
        UniqueConstraint("external_ref", name="uq_step_results_external_ref"),
        {"schema": DB_SCHEMA},
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    run_id: Mapped[str] = mapped_column(
        String(36), ForeignKey(f"{DB_SCHEMA}.runs.id"), index=True
    )
    step_index: Mapped[int] = mapped_column(Integer)
    tool_id: Mapped[str] = mapped_column(String(128))
    delivery_mode: Mapped[str] = mapped_column(String(16))
    status: Mapped[str] = mapped_column(String(16), default="pending")
    input_context: Mapped[dict] = mapped_column(JSONB, default=dict)
    resolved_inputs: Mapped[dict] = mapped_column(JSONB, default=dict)
    external_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    raw_payload: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    output_payload: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    cost_delta: Mapped[Decimal] = mapped_column(Numeric(14, 6), default=Decimal("0"))
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_final: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
