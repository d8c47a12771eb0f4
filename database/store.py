"""
SqlDeploymentStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Rows are converted to pydantic models at the boundary; nothing outside
this module sees ORM objects.
"""
from __future__ import annotations

import json
import structlog
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, delete, func
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import InvalidResourceBinding
from database.models import ConversationHandoffRow, DeploymentAccessRow, DeploymentRow
from database.session import session_scope
from database.store_base import BaseDeploymentStore
from models.schemas import (
    Behavior, ConversationHandoff, DelegatedAccess, DeploymentResource,
    HandoffState, MessageTemplates, Schedule, make_ref, ref_key,
)

logger = structlog.get_logger()


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _upsert(db: AsyncSession, values: dict, on_conflict):
    """
    INSERT ... ON CONFLICT / ON DUPLICATE KEY for conversation_handoffs.
    `on_conflict` maps the proposed row (excluded / inserted) to the SET clause.
    """
    table = ConversationHandoffRow.__table__
    dialect = db.get_bind().dialect.name
    if dialect == "mysql":
        stmt = mysql_insert(table).values(**values)
        return stmt.on_duplicate_key_update(**on_conflict(stmt.inserted))
    insert = pg_insert if dialect == "postgresql" else sqlite_insert
    stmt = insert(table).values(**values)
    return stmt.on_conflict_do_update(
        index_elements=[table.c.conversation_id],
        set_=on_conflict(stmt.excluded),
    )


class SqlDeploymentStore(BaseDeploymentStore):
    """
    Persistent deployment store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory

    def _session(self):
        return session_scope(self._session_factory)

    # ── Deployment resources ───────────────────────────────

    async def get_deployment(self, resource_id: str) -> Optional[DeploymentResource]:
        async with self._session() as db:
            row = await db.get(DeploymentRow, resource_id)
            return self._row_to_deployment(row) if row else None

    async def find_deployment(self, tenant_id: str, channel: str, ref_kind: str,
                              ref_id: str) -> Optional[DeploymentResource]:
        async with self._session() as db:
            stmt = select(DeploymentRow).where(
                DeploymentRow.tenant_id == tenant_id,
                DeploymentRow.channel == str(channel),
                DeploymentRow.ref_kind == ref_kind,
                DeploymentRow.ref_id == str(ref_id),
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_deployment(row) if row else None

    async def list_deployments(self, tenant_id: str, channel: str = None) -> list[DeploymentResource]:
        async with self._session() as db:
            stmt = select(DeploymentRow).where(DeploymentRow.tenant_id == tenant_id)
            if channel is not None:
                stmt = stmt.where(DeploymentRow.channel == str(channel))
            stmt = stmt.order_by(DeploymentRow.channel, DeploymentRow.display_name)
            result = await db.execute(stmt)
            return [self._row_to_deployment(r) for r in result.scalars()]

    async def insert_deployment(self, resource: DeploymentResource) -> DeploymentResource:
        try:
            async with self._session() as db:
                row = DeploymentRow(id=resource.id)
                self._apply_to_row(row, resource)
                row.created_at = resource.created_at
                db.add(row)
        except IntegrityError as e:
            raise InvalidResourceBinding(
                f"Resource {ref_key(resource.resource)} already has a deployment",
                tenant_id=resource.tenant_id,
            ) from e
        logger.info("deployment_inserted", resource_id=resource.id, tenant_id=resource.tenant_id)
        return resource

    async def save_deployment(self, resource: DeploymentResource) -> DeploymentResource:
        async with self._session() as db:
            row = await db.get(DeploymentRow, resource.id)
            if row is None:
                row = DeploymentRow(id=resource.id, created_at=resource.created_at)
                db.add(row)
            self._apply_to_row(row, resource)
        return resource

    async def delete_deployment(self, resource_id: str) -> bool:
        async with self._session() as db:
            await db.execute(
                delete(DeploymentAccessRow).where(DeploymentAccessRow.resource_id == resource_id)
            )
            result = await db.execute(delete(DeploymentRow).where(DeploymentRow.id == resource_id))
            return (result.rowcount or 0) > 0

    # ── Delegated access ───────────────────────────────────

    async def get_access(self, user_id: str, resource_id: str) -> Optional[DelegatedAccess]:
        async with self._session() as db:
            row = await db.get(DeploymentAccessRow, (user_id, resource_id))
            return self._row_to_access(row) if row else None

    async def upsert_access(self, access: DelegatedAccess) -> DelegatedAccess:
        async with self._session() as db:
            row = await db.get(DeploymentAccessRow, (access.user_id, access.resource_id))
            if row is None:
                row = DeploymentAccessRow(user_id=access.user_id, resource_id=access.resource_id)
                db.add(row)
            row.can_view = access.can_view
            row.can_enable_disable = access.can_enable_disable
            row.can_configure = access.can_configure
            row.granted_by = access.granted_by
            row.granted_at = access.granted_at
        return access

    async def delete_access(self, user_id: str, resource_id: str) -> bool:
        async with self._session() as db:
            result = await db.execute(
                delete(DeploymentAccessRow).where(
                    DeploymentAccessRow.user_id == user_id,
                    DeploymentAccessRow.resource_id == resource_id,
                )
            )
            return (result.rowcount or 0) > 0

    async def list_access_for_user(self, user_id: str) -> list[DelegatedAccess]:
        async with self._session() as db:
            stmt = select(DeploymentAccessRow).where(DeploymentAccessRow.user_id == user_id)
            result = await db.execute(stmt)
            return [self._row_to_access(r) for r in result.scalars()]

    # ── Handoff state ──────────────────────────────────────

    async def get_handoff(self, conversation_id: str) -> Optional[ConversationHandoff]:
        async with self._session() as db:
            row = await db.get(ConversationHandoffRow, conversation_id)
            return self._row_to_handoff(row) if row else None

    async def save_handoff(self, handoff: ConversationHandoff) -> ConversationHandoff:
        async with self._session() as db:
            row = await db.get(ConversationHandoffRow, handoff.conversation_id)
            if row is None:
                row = ConversationHandoffRow(conversation_id=handoff.conversation_id)
                db.add(row)
            row.tenant_id = handoff.tenant_id
            row.deployment_id = handoff.deployment_id
            row.ai_turns = handoff.ai_turns
            row.state = handoff.state.value
            row.handed_off_at = handoff.handed_off_at
            row.reason = handoff.reason
            row.updated_at = handoff.updated_at
        return handoff

    async def increment_ai_turns(self, conversation_id: str, tenant_id: str,
                                 deployment_id: Optional[str]) -> ConversationHandoff:
        table = ConversationHandoffRow.__table__
        now = datetime.now(timezone.utc)
        values = {
            "conversation_id": conversation_id,
            "tenant_id": tenant_id,
            "deployment_id": deployment_id,
            "ai_turns": 1,
            "state": HandoffState.AI_ACTIVE.value,
            "reason": "",
            "updated_at": now,
        }
        async with self._session() as db:
            await db.execute(_upsert(db, values, lambda new: {
                "ai_turns": table.c.ai_turns + 1,
                "deployment_id": new.deployment_id,
                "updated_at": new.updated_at,
            }))
            return await self._fetch_handoff(db, conversation_id)

    async def mark_handed_off(self, conversation_id: str, reason: str, at: datetime,
                              tenant_id: str = "",
                              deployment_id: Optional[str] = None) -> ConversationHandoff:
        table = ConversationHandoffRow.__table__
        values = {
            "conversation_id": conversation_id,
            "tenant_id": tenant_id,
            "deployment_id": deployment_id,
            "ai_turns": 0,
            "state": HandoffState.HANDED_OFF.value,
            "handed_off_at": at,
            "reason": reason,
            "updated_at": at,
        }
        async with self._session() as db:
            # handed_off_at is NULL exactly while the conversation is ai-active
            await db.execute(_upsert(db, values, lambda new: {
                "state": new.state,
                "handed_off_at": func.coalesce(table.c.handed_off_at, new.handed_off_at),
                "reason": new.reason,
                "updated_at": new.updated_at,
                "deployment_id": func.coalesce(new.deployment_id, table.c.deployment_id),
            }))
            return await self._fetch_handoff(db, conversation_id)

    async def count_handoffs_for_deployment(self, resource_id: str) -> int:
        async with self._session() as db:
            stmt = select(func.count()).select_from(ConversationHandoffRow).where(
                ConversationHandoffRow.deployment_id == resource_id
            )
            return int((await db.execute(stmt)).scalar_one())

    # ── Helpers ───────────────────────────────────────────

    @staticmethod
    async def _fetch_handoff(db: AsyncSession, conversation_id: str) -> ConversationHandoff:
        stmt = (
            select(ConversationHandoffRow)
            .where(ConversationHandoffRow.conversation_id == conversation_id)
            .execution_options(populate_existing=True)
        )
        row = (await db.execute(stmt)).scalar_one()
        return SqlDeploymentStore._row_to_handoff(row)

    @staticmethod
    def _row_to_handoff(row: ConversationHandoffRow) -> ConversationHandoff:
        return ConversationHandoff(
            conversation_id=row.conversation_id,
            tenant_id=row.tenant_id or "",
            deployment_id=row.deployment_id,
            ai_turns=row.ai_turns,
            state=HandoffState(row.state),
            handed_off_at=_aware(row.handed_off_at),
            reason=row.reason or "",
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _apply_to_row(row: DeploymentRow, resource: DeploymentResource) -> None:
        row.tenant_id = resource.tenant_id
        row.channel = resource.channel.value
        row.ref_kind = resource.resource.kind
        row.ref_id = resource.resource.id
        row.display_name = resource.display_name
        row.is_enabled = resource.is_enabled
        row.schedule_enabled = resource.schedule.enabled
        row.schedule_start_time = resource.schedule.start_time
        row.schedule_end_time = resource.schedule.end_time
        row.schedule_days = list(resource.schedule.days)
        row.schedule_timezone = resource.schedule.timezone
        row.auto_respond = resource.behavior.auto_respond
        row.handoff_enabled = resource.behavior.handoff_enabled
        row.max_messages_before_handoff = resource.behavior.max_messages_before_handoff
        row.welcome_message = resource.messages.welcome
        row.handoff_message = resource.messages.handoff
        row.away_message = resource.messages.away
        row.priority_mode = resource.priority_mode.value
        row.updated_at = resource.updated_at

    @staticmethod
    def _row_to_deployment(row: DeploymentRow) -> DeploymentResource:
        days = row.schedule_days or []
        # SQLite can hand JSON back as text
        if isinstance(days, str):
            days = json.loads(days)
        return DeploymentResource(
            id=row.id,
            tenant_id=row.tenant_id,
            channel=row.channel,
            resource=make_ref(row.ref_kind, row.ref_id),
            display_name=row.display_name or "",
            is_enabled=bool(row.is_enabled),
            schedule=Schedule(
                enabled=bool(row.schedule_enabled),
                start_time=row.schedule_start_time,
                end_time=row.schedule_end_time,
                days=days,
                timezone=row.schedule_timezone or "UTC",
            ),
            behavior=Behavior(
                auto_respond=bool(row.auto_respond),
                handoff_enabled=bool(row.handoff_enabled),
                max_messages_before_handoff=row.max_messages_before_handoff,
            ),
            messages=MessageTemplates(
                welcome=row.welcome_message,
                handoff=row.handoff_message,
                away=row.away_message,
            ),
            priority_mode=row.priority_mode,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _row_to_access(row: DeploymentAccessRow) -> DelegatedAccess:
        return DelegatedAccess(
            user_id=row.user_id,
            resource_id=row.resource_id,
            can_view=bool(row.can_view),
            can_enable_disable=bool(row.can_enable_disable),
            can_configure=bool(row.can_configure),
            granted_by=row.granted_by,
            granted_at=_aware(row.granted_at),
        )
