"""
InMemoryDeploymentStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlDeploymentStore
  - Safe under a single asyncio event loop
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Optional

from core.errors import InvalidResourceBinding
from database.store_base import BaseDeploymentStore
from models.schemas import (
    ConversationHandoff, DelegatedAccess, DeploymentResource, HandoffState, ref_key,
)

logger = structlog.get_logger()


class InMemoryDeploymentStore(BaseDeploymentStore):
    """
    Full-featured in-memory store with the same interface as SqlDeploymentStore.
    Returns copies so callers cannot mutate stored state behind the store's back.
    """

    def __init__(self):
        self._deployments: dict[str, DeploymentResource] = {}   # id → resource
        self._access: dict[tuple[str, str], DelegatedAccess] = {}  # (user, resource) → grant
        self._handoffs: dict[str, ConversationHandoff] = {}     # conversation_id → state
        self._handoff_lock = asyncio.Lock()

        # Indexes
        self._ref_index: dict[str, str] = {}    # "tenant|kind:id" → resource id
        logger.info("inmemory_store_initialized")

    @staticmethod
    def _index_key(tenant_id: str, ref) -> str:
        return f"{tenant_id}|{ref_key(ref)}"

    # ── Deployment resources ──────────────────────────────

    async def get_deployment(self, resource_id: str) -> Optional[DeploymentResource]:
        found = self._deployments.get(resource_id)
        return found.model_copy(deep=True) if found else None

    async def find_deployment(self, tenant_id: str, channel: str, ref_kind: str,
                              ref_id: str) -> Optional[DeploymentResource]:
        rid = self._ref_index.get(f"{tenant_id}|{ref_kind}:{ref_id}")
        if not rid:
            return None
        found = self._deployments[rid]
        if found.channel.value != str(channel):
            return None
        return found.model_copy(deep=True)

    async def list_deployments(self, tenant_id: str, channel: str = None) -> list[DeploymentResource]:
        rows = [
            d for d in self._deployments.values()
            if d.tenant_id == tenant_id and (channel is None or d.channel.value == str(channel))
        ]
        rows.sort(key=lambda d: (d.channel.value, d.display_name))
        return [d.model_copy(deep=True) for d in rows]

    async def insert_deployment(self, resource: DeploymentResource) -> DeploymentResource:
        key = self._index_key(resource.tenant_id, resource.resource)
        if key in self._ref_index:
            raise InvalidResourceBinding(
                f"Resource {ref_key(resource.resource)} already has a deployment",
                tenant_id=resource.tenant_id,
            )
        self._deployments[resource.id] = resource.model_copy(deep=True)
        self._ref_index[key] = resource.id
        return resource

    async def save_deployment(self, resource: DeploymentResource) -> DeploymentResource:
        self._deployments[resource.id] = resource.model_copy(deep=True)
        return resource

    async def delete_deployment(self, resource_id: str) -> bool:
        found = self._deployments.pop(resource_id, None)
        if not found:
            return False
        self._ref_index.pop(self._index_key(found.tenant_id, found.resource), None)
        for key in [k for k in self._access if k[1] == resource_id]:
            del self._access[key]
        return True

    # ── Delegated access ──────────────────────────────────

    async def get_access(self, user_id: str, resource_id: str) -> Optional[DelegatedAccess]:
        return self._access.get((user_id, resource_id))

    async def upsert_access(self, access: DelegatedAccess) -> DelegatedAccess:
        self._access[(access.user_id, access.resource_id)] = access
        return access

    async def delete_access(self, user_id: str, resource_id: str) -> bool:
        return self._access.pop((user_id, resource_id), None) is not None

    async def list_access_for_user(self, user_id: str) -> list[DelegatedAccess]:
        return [a for (uid, _), a in self._access.items() if uid == user_id]

    # ── Handoff state ─────────────────────────────────────

    async def get_handoff(self, conversation_id: str) -> Optional[ConversationHandoff]:
        found = self._handoffs.get(conversation_id)
        return found.model_copy() if found else None

    async def save_handoff(self, handoff: ConversationHandoff) -> ConversationHandoff:
        self._handoffs[handoff.conversation_id] = handoff.model_copy()
        return handoff

    async def increment_ai_turns(self, conversation_id: str, tenant_id: str,
                                 deployment_id: Optional[str]) -> ConversationHandoff:
        async with self._handoff_lock:
            state = self._handoffs.get(conversation_id) or ConversationHandoff(
                conversation_id=conversation_id,
                tenant_id=tenant_id,
            )
            state = state.model_copy(update={
                "deployment_id": deployment_id,
                "ai_turns": state.ai_turns + 1,
                "updated_at": datetime.now(timezone.utc),
            })
            self._handoffs[conversation_id] = state
            return state.model_copy()

    async def mark_handed_off(self, conversation_id: str, reason: str, at: datetime,
                              tenant_id: str = "",
                              deployment_id: Optional[str] = None) -> ConversationHandoff:
        async with self._handoff_lock:
            state = self._handoffs.get(conversation_id) or ConversationHandoff(
                conversation_id=conversation_id,
                tenant_id=tenant_id,
            )
            state = state.model_copy(update={
                "state": HandoffState.HANDED_OFF,
                "handed_off_at": state.handed_off_at or at,
                "reason": reason,
                "updated_at": at,
                "deployment_id": deployment_id or state.deployment_id,
            })
            self._handoffs[conversation_id] = state
            return state.model_copy()

    async def count_handoffs_for_deployment(self, resource_id: str) -> int:
        return sum(1 for h in self._handoffs.values() if h.deployment_id == resource_id)

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "deployments": len(self._deployments),
            "access_grants": len(self._access),
            "handoffs": len(self._handoffs),
        }
