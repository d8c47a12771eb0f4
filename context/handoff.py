"""
Handoff Tracker — per-conversation AI/human ownership.

  ai-active ──(turn counter reaches threshold, or always_human)──▶ handed-off
  handed-off ──(explicit reactivate only)──▶ ai-active

The AI collaborator calls record_ai_turn() after every reply it sends; the
router reads the state when deciding whether AI may answer the next message.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional

from database.store_base import BaseDeploymentStore
from models.schemas import ConversationHandoff, DeploymentResource, HandoffState, PriorityMode

logger = structlog.get_logger()


def _should_hand_off(handoff: ConversationHandoff, deployment: DeploymentResource) -> Optional[str]:
    """Reason for a transition to handed-off, or None to stay with AI."""
    if deployment.priority_mode == PriorityMode.ALWAYS_HUMAN:
        return "priority mode always_human"
    if deployment.priority_mode == PriorityMode.ALWAYS_AI:
        return None
    behavior = deployment.behavior
    if behavior.handoff_enabled and handoff.ai_turns >= behavior.max_messages_before_handoff:
        return f"reached {behavior.max_messages_before_handoff} AI messages"
    return None


class HandoffTracker:

    def __init__(self, store: BaseDeploymentStore):
        self.store = store

    async def get_state(self, conversation_id: str) -> Optional[ConversationHandoff]:
        return await self.store.get_handoff(conversation_id)

    async def is_handed_off(self, conversation_id: str,
                            deployment: DeploymentResource = None) -> bool:
        if deployment is not None and deployment.priority_mode == PriorityMode.ALWAYS_HUMAN:
            return True
        state = await self.store.get_handoff(conversation_id)
        return bool(state and state.is_handed_off)

    async def record_ai_turn(self, tenant_id: str, conversation_id: str,
                             deployment: DeploymentResource) -> ConversationHandoff:
        """
        Count one AI reply and apply the handoff transition if due.

        The increment is a single store operation, so concurrent workers
        replying in the same conversation never lose a turn; the transition
        is decided on the count the increment returned.
        """
        state = await self.store.increment_ai_turns(conversation_id, tenant_id, deployment.id)
        if state.is_handed_off:
            return state

        reason = _should_hand_off(state, deployment)
        if reason:
            state = await self.store.mark_handed_off(
                conversation_id, reason, state.updated_at,
                tenant_id=tenant_id, deployment_id=deployment.id,
            )
            logger.info("conversation_handed_off",
                        conversation_id=conversation_id,
                        tenant_id=tenant_id,
                        deployment_id=deployment.id,
                        ai_turns=state.ai_turns,
                        reason=reason)
        return state

    async def handoff(self, conversation_id: str, reason: str = "manual takeover",
                      tenant_id: str = "", deployment_id: str = None) -> ConversationHandoff:
        """Explicit human takeover."""
        state = await self.store.mark_handed_off(
            conversation_id, reason, datetime.now(timezone.utc),
            tenant_id=tenant_id, deployment_id=deployment_id,
        )
        logger.info("conversation_handed_off", conversation_id=conversation_id, reason=reason)
        return state

    async def reactivate(self, conversation_id: str) -> ConversationHandoff:
        """Give the conversation back to AI and restart the turn counter."""
        state = await self.store.get_handoff(conversation_id) or ConversationHandoff(
            conversation_id=conversation_id,
        )
        state.state = HandoffState.AI_ACTIVE
        state.ai_turns = 0
        state.handed_off_at = None
        state.reason = "reactivated"
        state.updated_at = datetime.now(timezone.utc)
        await self.store.save_handoff(state)
        logger.info("conversation_reactivated", conversation_id=conversation_id)
        return state
