"""
Collaborator Connectors — the services routing consults and the queue feeds.

Lookups (consulted while routing):
  WorkflowTriggerLookup   does the tenant have an active workflow for a trigger?
  CampaignLookup          is this conversation a reply to an outreach campaign?

Downstream dispatch (called by queue workers):
  AIEngine                generate an AI reply for an inbound message
  WorkflowEngine          start the tenant's workflow for a trigger
  OutboundSender          deliver an outgoing message on its channel

Each has an HTTP implementation (httpx + tenacity retries) and an in-memory
implementation for development and tests. create_collaborators() picks HTTP
when a base URL is configured.
"""
from __future__ import annotations

import abc
import time
import structlog
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from config.settings import CollaboratorConfig, get_settings
from core.errors import ConsumerProcessingError
from job_queue.message_queue import QueueEntry
from models.schemas import CampaignInfo

logger = structlog.get_logger()


_TRIGGER_MAP = {
    "whatsapp:message": "whatsapp_message",
    "email:message": "email_received",
    "phone:missed_call": "missed_call",
}


def get_trigger_type(channel: str, event_kind: str = "message") -> str:
    """Workflow trigger key for a channel event, e.g. ('email', 'message') → 'email_received'."""
    channel = str(getattr(channel, "value", channel))
    return _TRIGGER_MAP.get(f"{channel}:{event_kind}", f"{channel}_message")


# ──────────────────────────────────────────────────────────────
#  Interfaces
# ──────────────────────────────────────────────────────────────

class WorkflowTriggerLookup(abc.ABC):

    @abc.abstractmethod
    async def has_trigger_workflow(self, tenant_id: str, trigger_key: str) -> bool:
        """True when the tenant has an active workflow listening for `trigger_key`."""
        ...

    def clear_cache(self, tenant_id: str) -> None:
        """Forget cached answers for a tenant (call when its workflows change)."""


class CampaignLookup(abc.ABC):

    @abc.abstractmethod
    async def get_campaign_for_conversation(self, tenant_id: str,
                                            conversation_id: str) -> Optional[CampaignInfo]:
        ...


class AIEngine(abc.ABC):

    @abc.abstractmethod
    async def respond(self, entry: QueueEntry) -> Optional[str]:
        """
        Produce a reply for the inbound message in `entry`.
        Returns the id of the stored outgoing message, or None when the
        engine decided not to reply.
        """
        ...


class WorkflowEngine(abc.ABC):

    @abc.abstractmethod
    async def trigger(self, entry: QueueEntry) -> None:
        ...


class OutboundSender(abc.ABC):

    @abc.abstractmethod
    async def send(self, entry: QueueEntry) -> None:
        ...


# ──────────────────────────────────────────────────────────────
#  HTTP implementations
# ──────────────────────────────────────────────────────────────

def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)


class HTTPCollaborator:
    """Shared client handling for collaborator services."""

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self.client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
            )
        return self.client

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        response = await client.request(method, path, **kwargs)
        if response.status_code != 404:
            response.raise_for_status()
        return response

    async def _dispatch(self, path: str, payload: dict[str, Any], entry: QueueEntry) -> dict[str, Any]:
        """POST for downstream dispatch; failures become ConsumerProcessingError."""
        try:
            response = await self._request("POST", path, json=payload)
        except httpx.HTTPStatusError as e:
            raise ConsumerProcessingError(
                f"{path} returned {e.response.status_code}",
                retryable=e.response.status_code >= 500,
                message_id=entry.message_id,
            ) from e
        except httpx.HTTPError as e:
            raise ConsumerProcessingError(f"{path} unreachable: {e}", message_id=entry.message_id) from e
        if response.status_code == 404:
            raise ConsumerProcessingError(f"{path} not found", retryable=False, message_id=entry.message_id)
        return response.json() if response.content else {}

    async def close(self):
        if self.client:
            await self.client.aclose()


class HTTPWorkflowTriggerLookup(HTTPCollaborator, WorkflowTriggerLookup):
    """
    Asks the workflow service whether a trigger is wired up. Answers are
    cached per (tenant, trigger key) for `cache_ttl` seconds.
    """

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 10.0,
                 cache_ttl: float = 30.0):
        super().__init__(base_url, api_key, timeout)
        self.cache_ttl = cache_ttl
        self._cache: dict[tuple[str, str], tuple[bool, float]] = {}

    async def has_trigger_workflow(self, tenant_id: str, trigger_key: str) -> bool:
        cached = self._cache.get((tenant_id, trigger_key))
        if cached and time.monotonic() - cached[1] < self.cache_ttl:
            return cached[0]

        response = await self._request(
            "GET", "/api/workflows/triggers",
            params={"tenant_id": tenant_id, "trigger_type": trigger_key},
        )
        exists = response.status_code != 404 and bool(response.json().get("exists", False))
        self._cache[(tenant_id, trigger_key)] = (exists, time.monotonic())
        logger.debug("workflow_trigger_checked", tenant_id=tenant_id, trigger_type=trigger_key, exists=exists)
        return exists

    def clear_cache(self, tenant_id: str) -> None:
        for key in [k for k in self._cache if k[0] == tenant_id]:
            del self._cache[key]


class HTTPCampaignLookup(HTTPCollaborator, CampaignLookup):

    async def get_campaign_for_conversation(self, tenant_id: str,
                                            conversation_id: str) -> Optional[CampaignInfo]:
        response = await self._request(
            "GET", f"/api/campaigns/by-conversation/{conversation_id}",
            params={"tenant_id": tenant_id},
        )
        if response.status_code == 404:
            return None
        data = response.json() or {}
        if not data.get("id"):
            return None
        return CampaignInfo(
            id=str(data["id"]),
            reply_handling=data.get("reply_handling") or "human",
            name=data.get("name") or "",
        )


class HTTPAIEngine(HTTPCollaborator, AIEngine):

    async def respond(self, entry: QueueEntry) -> Optional[str]:
        payload = {
            "message_id": entry.message_id,
            "tenant_id": entry.tenant_id,
            "conversation_id": entry.conversation_id,
            "channel": entry.channel,
            "agent_type": entry.agent_type,
            "campaign_id": entry.campaign_id,
        }
        result = await self._dispatch("/api/ai/respond", payload, entry)
        return result.get("reply_message_id")


class HTTPWorkflowEngine(HTTPCollaborator, WorkflowEngine):

    async def trigger(self, entry: QueueEntry) -> None:
        trigger_data = entry.trigger_data or {}
        payload = {
            "tenant_id": entry.tenant_id,
            "trigger_type": trigger_data.get("trigger_type"),
            "trigger_data": trigger_data,
            "message_id": entry.message_id,
        }
        await self._dispatch("/api/workflows/trigger", payload, entry)


class HTTPOutboundSender(HTTPCollaborator, OutboundSender):

    async def send(self, entry: QueueEntry) -> None:
        payload = {
            "message_id": entry.message_id,
            "tenant_id": entry.tenant_id,
            "conversation_id": entry.conversation_id,
        }
        await self._dispatch(f"/api/outbound/{entry.channel}/send", payload, entry)


# ──────────────────────────────────────────────────────────────
#  In-memory implementations (development / testing)
# ──────────────────────────────────────────────────────────────

class InMemoryWorkflowLookup(WorkflowTriggerLookup):

    def __init__(self, triggers: dict[str, set[str]] = None):
        self.triggers: dict[str, set[str]] = {t: set(keys) for t, keys in (triggers or {}).items()}

    def add_trigger(self, tenant_id: str, trigger_key: str):
        self.triggers.setdefault(tenant_id, set()).add(trigger_key)

    async def has_trigger_workflow(self, tenant_id: str, trigger_key: str) -> bool:
        return trigger_key in self.triggers.get(tenant_id, set())


class InMemoryCampaignLookup(CampaignLookup):

    def __init__(self):
        self.campaigns: dict[tuple[str, str], CampaignInfo] = {}

    def attach(self, tenant_id: str, conversation_id: str, campaign: CampaignInfo):
        self.campaigns[(tenant_id, conversation_id)] = campaign

    async def get_campaign_for_conversation(self, tenant_id: str,
                                            conversation_id: str) -> Optional[CampaignInfo]:
        return self.campaigns.get((tenant_id, conversation_id))


class _Recorder:
    """Keeps every entry it receives; fails the first `fail_times` calls."""

    def __init__(self, fail_times: int = 0, retryable: bool = True):
        self.received: list[QueueEntry] = []
        self.fail_times = fail_times
        self.retryable = retryable
        self.calls = 0

    def _record(self, entry: QueueEntry):
        self.calls += 1
        if self.calls <= self.fail_times:
            raise ConsumerProcessingError("simulated downstream failure",
                                          retryable=self.retryable, message_id=entry.message_id)
        self.received.append(entry)


class InMemoryAIEngine(_Recorder, AIEngine):

    def __init__(self, reply: bool = True, **kwargs):
        super().__init__(**kwargs)
        self.reply = reply

    async def respond(self, entry: QueueEntry) -> Optional[str]:
        self._record(entry)
        return f"reply_{entry.message_id}" if self.reply else None


class InMemoryWorkflowEngine(_Recorder, WorkflowEngine):

    async def trigger(self, entry: QueueEntry) -> None:
        self._record(entry)


class InMemoryOutboundSender(_Recorder, OutboundSender):

    async def send(self, entry: QueueEntry) -> None:
        self._record(entry)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

@dataclass
class Collaborators:
    workflows: WorkflowTriggerLookup = field(default_factory=InMemoryWorkflowLookup)
    campaigns: CampaignLookup = field(default_factory=InMemoryCampaignLookup)
    ai_engine: AIEngine = field(default_factory=InMemoryAIEngine)
    workflow_engine: WorkflowEngine = field(default_factory=InMemoryWorkflowEngine)
    outbound: OutboundSender = field(default_factory=InMemoryOutboundSender)

    async def close(self):
        for member in (self.workflows, self.campaigns, self.ai_engine, self.workflow_engine, self.outbound):
            if isinstance(member, HTTPCollaborator):
                await member.close()


def create_collaborators(config: CollaboratorConfig = None) -> Collaborators:
    """HTTP collaborators for every configured base URL, in-memory otherwise."""
    config = config or get_settings().collaborators
    common = {"api_key": config.api_key, "timeout": config.timeout_seconds}
    collaborators = Collaborators()

    if config.workflow_base_url:
        collaborators.workflows = HTTPWorkflowTriggerLookup(
            config.workflow_base_url, cache_ttl=config.trigger_cache_ttl, **common)
        collaborators.workflow_engine = HTTPWorkflowEngine(config.workflow_base_url, **common)
    if config.campaign_base_url:
        collaborators.campaigns = HTTPCampaignLookup(config.campaign_base_url, **common)
    if config.ai_engine_url:
        collaborators.ai_engine = HTTPAIEngine(config.ai_engine_url, **common)
    if config.channel_gateway_url:
        collaborators.outbound = HTTPOutboundSender(config.channel_gateway_url, **common)

    unconfigured = [
        name for name, url in (
            ("workflow", config.workflow_base_url),
            ("campaign", config.campaign_base_url),
            ("ai_engine", config.ai_engine_url),
            ("channel_gateway", config.channel_gateway_url),
        ) if not url
    ]
    if unconfigured:
        logger.warning("collaborators_in_memory", services=unconfigured)
    return collaborators
