"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB.
  - The resource reference is stored as (ref_kind, ref_id); the unique
    constraint on (tenant_id, ref_kind, ref_id) enforces one deployment per
    channel resource.
  - String primary keys (uuid hex) — no database-specific sequences.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Boolean, DateTime, Text, ForeignKey,
    Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Deployment resources
# ──────────────────────────────────────────────────────────────

class DeploymentRow(Base):
    __tablename__ = "deployment_resources"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    channel: Mapped[str] = mapped_column(String(32), nullable=False)
    ref_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    ref_id: Mapped[str] = mapped_column(String(128), nullable=False)
    display_name: Mapped[str] = mapped_column(String(256), default="")
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=False)

    schedule_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    schedule_start_time: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)
    schedule_end_time: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)
    schedule_days: Mapped[Any] = mapped_column(JSON, default=list)
    schedule_timezone: Mapped[str] = mapped_column(String(64), default="UTC")

    auto_respond: Mapped[bool] = mapped_column(Boolean, default=True)
    handoff_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    max_messages_before_handoff: Mapped[int] = mapped_column(Integer, default=10)

    welcome_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    handoff_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    away_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    priority_mode: Mapped[str] = mapped_column(String(32), default="normal")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "ref_kind", "ref_id", name="uq_deployment_resource_ref"),
        Index("ix_deployments_tenant_channel", "tenant_id", "channel"),
    )


# ──────────────────────────────────────────────────────────────
#  Delegated access
# ──────────────────────────────────────────────────────────────

class DeploymentAccessRow(Base):
    __tablename__ = "deployment_access"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    resource_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("deployment_resources.id", ondelete="CASCADE"), primary_key=True,
    )
    can_view: Mapped[bool] = mapped_column(Boolean, default=True)
    can_enable_disable: Mapped[bool] = mapped_column(Boolean, default=False)
    can_configure: Mapped[bool] = mapped_column(Boolean, default=False)
    granted_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_deployment_access_user", "user_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Conversation handoff state
# ──────────────────────────────────────────────────────────────

class ConversationHandoffRow(Base):
    __tablename__ = "conversation_handoffs"

    conversation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), default="")
    deployment_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    ai_turns: Mapped[int] = mapped_column(Integer, default=0)
    state: Mapped[str] = mapped_column(String(16), default="ai-active")
    handed_off_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reason: Mapped[str] = mapped_column(String(256), default="")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_handoffs_deployment", "deployment_id"),
    )
