"""
Abstract Deployment Store — Interface for all storage backends.

Implementations:
  - SqlDeploymentStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryDeploymentStore (dict-based, single-process, no persistence)

The store is dumb persistence: validation, the one-reference invariant and
partial-patch merging live in deployments.registry.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from models.schemas import ConversationHandoff, DelegatedAccess, DeploymentResource


class BaseDeploymentStore(ABC):
    """Interface that all deployment store backends must implement."""

    # ── Deployment resources ──────────────────────────────────

    @abstractmethod
    async def get_deployment(self, resource_id: str) -> Optional[DeploymentResource]:
        ...

    @abstractmethod
    async def find_deployment(self, tenant_id: str, channel: str, ref_kind: str,
                              ref_id: str) -> Optional[DeploymentResource]:
        ...

    @abstractmethod
    async def list_deployments(self, tenant_id: str, channel: str = None) -> list[DeploymentResource]:
        ...

    @abstractmethod
    async def insert_deployment(self, resource: DeploymentResource) -> DeploymentResource:
        ...

    @abstractmethod
    async def save_deployment(self, resource: DeploymentResource) -> DeploymentResource:
        ...

    @abstractmethod
    async def delete_deployment(self, resource_id: str) -> bool:
        ...

    # ── Delegated access ──────────────────────────────────────

    @abstractmethod
    async def get_access(self, user_id: str, resource_id: str) -> Optional[DelegatedAccess]:
        ...

    @abstractmethod
    async def upsert_access(self, access: DelegatedAccess) -> DelegatedAccess:
        ...

    @abstractmethod
    async def delete_access(self, user_id: str, resource_id: str) -> bool:
        ...

    @abstractmethod
    async def list_access_for_user(self, user_id: str) -> list[DelegatedAccess]:
        ...

    # ── Handoff state ─────────────────────────────────────────

    @abstractmethod
    async def get_handoff(self, conversation_id: str) -> Optional[ConversationHandoff]:
        ...

    @abstractmethod
    async def save_handoff(self, handoff: ConversationHandoff) -> ConversationHandoff:
        ...

    @abstractmethod
    async def increment_ai_turns(self, conversation_id: str, tenant_id: str,
                                 deployment_id: Optional[str]) -> ConversationHandoff:
        """
        Atomically add one AI turn, creating the conversation state if missing.
        Returns the state including this turn.
        """
        ...

    @abstractmethod
    async def mark_handed_off(self, conversation_id: str, reason: str, at: datetime,
                              tenant_id: str = "",
                              deployment_id: Optional[str] = None) -> ConversationHandoff:
        """
        Move the conversation to handed-off without touching its turn counter.
        handed_off_at keeps its first value when the conversation is already handed off.
        """
        ...

    @abstractmethod
    async def count_handoffs_for_deployment(self, resource_id: str) -> int:
        """Conversations whose handoff state references this deployment."""
        ...
