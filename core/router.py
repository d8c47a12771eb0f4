"""
Routing Engine — decides where each inbound message goes.

Strict priority, first match wins:
  1. workflow   tenant has an active workflow for the channel's trigger
  2. campaign   conversation is a reply to an AI-handled outreach campaign
  3. default AI deployment is enabled, in mode, on duty, not handed off
  4. none       nothing to do (silent)

Routing fails closed: a lookup error turns the decision into `none` and
is reported on RoutingOutcome.error, never raised. Only the queue append
in route_and_enqueue() may raise (QueueUnavailable).
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from backend.connector import CampaignLookup, WorkflowTriggerLookup, get_trigger_type
from context.handoff import HandoffTracker
from deployments.decision import evaluate_deployment
from deployments.registry import DeploymentRegistry
from job_queue.message_queue import MessageQueue
from models.schemas import (
    AgentType, AIDecision, ChannelType, Destination, InboundMessage,
    RoutingDecision, RoutingErrorInfo, RoutingOutcome,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_trigger_data(message: InboundMessage, trigger_type: str, now: datetime) -> dict[str, Any]:
    """Payload handed to the workflow engine for a triggered message."""
    if message.channel == ChannelType.EMAIL:
        sender = {"email": message.sender, "name": message.sender_name}
    elif message.channel == ChannelType.WHATSAPP:
        wa_number = message.sender
        if wa_number.startswith("whatsapp:"):
            wa_number = wa_number[len("whatsapp:"):]
        sender = {"phone": message.sender, "wa_number": wa_number}
    else:
        sender = {"id": message.sender}

    return {
        "trigger_type": trigger_type,
        "sender": sender,
        "message": {
            "id": message.id,
            "body": message.body,
            "subject": message.subject,
        },
        "contact_id": message.contact_id,
        "conversation_id": message.conversation_id,
        "timestamp": now.astimezone(timezone.utc).isoformat(),
    }


class RoutingEngine:

    def __init__(
        self,
        registry: DeploymentRegistry,
        workflows: WorkflowTriggerLookup,
        campaigns: CampaignLookup,
        handoff: HandoffTracker,
        queue: MessageQueue = None,
        clock: Callable[[], datetime] = None,
    ):
        self.registry = registry
        self.workflows = workflows
        self.campaigns = campaigns
        self.handoff = handoff
        self.queue = queue
        self.clock = clock or _utcnow

    # ── Routing ───────────────────────────────────────────

    async def route(self, message: InboundMessage) -> RoutingOutcome:
        now = self.clock()
        log = logger.bind(message_id=message.id, tenant_id=message.tenant_id,
                          channel=message.channel.value)

        # 1. Workflow trigger
        trigger_type = get_trigger_type(message.channel, "message")
        try:
            has_trigger = await self.workflows.has_trigger_workflow(message.tenant_id, trigger_type)
        except Exception as e:
            log.warning("workflow_lookup_failed", trigger_type=trigger_type, error=str(e))
            has_trigger = False

        if has_trigger:
            decision = RoutingDecision(
                destination=Destination.WORKFLOW,
                trigger_type=trigger_type,
                trigger_data=build_trigger_data(message, trigger_type, now),
                reason=f"workflow trigger {trigger_type}",
            )
            log.info("message_routed", destination="workflow", trigger_type=trigger_type)
            return RoutingOutcome(message_id=message.id, decision=decision)

        # 2. Campaign reply handled by AI
        try:
            campaign = await self.campaigns.get_campaign_for_conversation(
                message.tenant_id, message.conversation_id)
        except Exception as e:
            log.warning("campaign_lookup_failed", conversation_id=message.conversation_id, error=str(e))
            campaign = None

        if campaign is not None and campaign.reply_handling == "ai":
            decision = RoutingDecision(
                destination=Destination.AI,
                agent_type=AgentType.CAMPAIGN,
                campaign_id=campaign.id,
                reason=f"campaign {campaign.id} replies handled by AI",
            )
            log.info("message_routed", destination="ai", agent_type="campaign", campaign_id=campaign.id)
            return RoutingOutcome(message_id=message.id, decision=decision)

        # 3. Default AI deployment
        try:
            ai = await self._evaluate(message.tenant_id, message.channel, message.resource,
                                      message.conversation_id, now)
        except Exception as e:
            log.warning("routing_failed_closed", error_type=type(e).__name__, error=str(e))
            return RoutingOutcome(
                message_id=message.id,
                decision=RoutingDecision(destination=Destination.NONE,
                                         reason=f"routing failed closed: {e}"),
                error=RoutingErrorInfo(kind=type(e).__name__, detail=str(e)),
            )

        if not ai.should_respond:
            log.debug("message_not_routed", reason=ai.reason)
            return RoutingOutcome(
                message_id=message.id,
                decision=RoutingDecision(
                    destination=Destination.NONE,
                    reason=f"no workflow trigger and AI not enabled: {ai.reason}",
                ),
            )

        log.info("message_routed", destination="ai", agent_type="default", deployment_id=ai.deployment.id)
        return RoutingOutcome(
            message_id=message.id,
            decision=RoutingDecision(destination=Destination.AI, reason=ai.reason),
            deployment_id=ai.deployment.id,
        )

    async def route_and_enqueue(self, message: InboundMessage) -> RoutingOutcome:
        """Route, then append to the matching stream. QueueUnavailable propagates."""
        outcome = await self.route(message)
        decision = outcome.decision
        if decision.destination == Destination.NONE:
            return outcome

        entry_id = await self.queue.enqueue(
            message_id=message.id,
            tenant_id=message.tenant_id,
            conversation_id=message.conversation_id,
            channel=message.channel.value,
            is_workflow=decision.destination == Destination.WORKFLOW,
            trigger_data=decision.trigger_data,
            agent_type=decision.agent_type.value,
            campaign_id=decision.campaign_id,
            deployment_id=outcome.deployment_id,
        )
        return outcome.model_copy(update={"entry_id": entry_id})

    # ── AI eligibility ────────────────────────────────────

    async def _evaluate(self, tenant_id: str, channel, resource_ref,
                        conversation_id: Optional[str], now: datetime) -> AIDecision:
        deployment = await self.registry.resolve(tenant_id, channel, resource_ref)
        state = await self.handoff.get_state(conversation_id) if conversation_id else None
        return evaluate_deployment(deployment, now, state)

    async def explain(self, tenant_id: str, channel, resource_ref=None,
                      conversation_id: str = None) -> AIDecision:
        """Why AI would or would not answer here right now. Never raises."""
        try:
            return await self._evaluate(tenant_id, channel, resource_ref, conversation_id, self.clock())
        except Exception as e:
            logger.warning("ai_decision_failed_closed",
                           tenant_id=tenant_id,
                           channel=str(getattr(channel, "value", channel)),
                           error_type=type(e).__name__,
                           error=str(e))
            return AIDecision(should_respond=False, reason=f"Error: {e}")

    async def should_ai_respond(self, tenant_id: str, channel, resource_ref=None,
                                conversation_id: str = None) -> bool:
        return (await self.explain(tenant_id, channel, resource_ref, conversation_id)).should_respond
