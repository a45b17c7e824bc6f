from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass

class Run(Base):
    """One admitted event: the pipeline snapshot it runs and its reported status."""
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=new_id)
    repo: Mapped[str] = mapped_column(sa.Text, nullable=False)
    ref: Mapped[str] = mapped_column(sa.Text, nullable=False)
    event_kind: Mapped[str] = mapped_column(sa.Text, nullable=False)
    source_identity: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)  # queued|running|succeeded|failed|cancelled
    pipeline_json: Mapped[dict[str, Any]] = mapped_column(sa.JSON, nullable=False, default=dict)
    jobs_json: Mapped[dict[str, Any]] = mapped_column(sa.JSON, nullable=False, default=dict)
    report_json: Mapped[dict[str, Any] | None] = mapped_column(sa.JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.TIMESTAMP(timezone=True), default=now_utc, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(sa.TIMESTAMP(timezone=True), default=now_utc, onupdate=now_utc, nullable=False)

class Lease(Base):
    __tablename__ = "leases"
    run_id: Mapped[str] = mapped_column(sa.String(36), sa.ForeignKey("runs.id", ondelete="CASCADE"), primary_key=True)
    agent_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    leased_at: Mapped[datetime] = mapped_column(sa.TIMESTAMP(timezone=True), default=now_utc, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=False)
