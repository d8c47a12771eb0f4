"""Shared test fixtures for the inbound router."""
import pytest
from datetime import datetime, timezone

from backend.connector import InMemoryCampaignLookup, InMemoryWorkflowLookup
from context.handoff import HandoffTracker
from core.router import RoutingEngine
from database.store_memory import InMemoryDeploymentStore
from deployments.registry import DeploymentRegistry
from job_queue.message_queue import InMemoryMessageQueue
from models.schemas import (
    ChannelType, DeploymentCreateRequest, InboundMessage, WhatsAppAccountRef,
)

# 2024-01-01 is a Monday
MONDAY_10_UTC = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock tests can move."""

    def __init__(self, now: datetime = MONDAY_10_UTC):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def store() -> InMemoryDeploymentStore:
    return InMemoryDeploymentStore()


@pytest.fixture
def registry(store) -> DeploymentRegistry:
    return DeploymentRegistry(store)


@pytest.fixture
def handoff(store) -> HandoffTracker:
    return HandoffTracker(store)


@pytest.fixture
def queue() -> InMemoryMessageQueue:
    return InMemoryMessageQueue()


@pytest.fixture
def workflows() -> InMemoryWorkflowLookup:
    return InMemoryWorkflowLookup()


@pytest.fixture
def campaigns() -> InMemoryCampaignLookup:
    return InMemoryCampaignLookup()


@pytest.fixture
def router(registry, workflows, campaigns, handoff, queue, clock) -> RoutingEngine:
    return RoutingEngine(registry, workflows, campaigns, handoff, queue, clock=clock)


@pytest.fixture
def whatsapp_request():
    """Factory for an enabled WhatsApp deployment request on account wa_1."""
    def _make(**overrides) -> DeploymentCreateRequest:
        data = {
            "channel": "whatsapp",
            "whatsapp_account_id": "wa_1",
            "resource_display_name": "Support line",
            "is_enabled": True,
        }
        data.update(overrides)
        return DeploymentCreateRequest(**data)
    return _make


@pytest.fixture
def inbound():
    """Factory for an inbound WhatsApp message received on wa_1."""
    def _make(**overrides) -> InboundMessage:
        data = {
            "id": "msg_1",
            "tenant_id": "t1",
            "conversation_id": "conv_1",
            "channel": ChannelType.WHATSAPP,
            "sender": "whatsapp:+15550001111",
            "body": "Hi, is my order shipped?",
            "contact_id": "contact_9",
            "resource": WhatsAppAccountRef(id="wa_1"),
        }
        data.update(overrides)
        return InboundMessage(**data)
    return _make
