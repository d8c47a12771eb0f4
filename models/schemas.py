"""
Core data models for the inbound router.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChannelType(str, Enum):
    EMAIL = "email"
    PHONE = "phone"
    WHATSAPP = "whatsapp"
    WIDGET = "widget"


class PriorityMode(str, Enum):
    NORMAL = "normal"
    ALWAYS_AI = "always_ai"
    ALWAYS_HUMAN = "always_human"
    SCHEDULE_ONLY = "schedule_only"


class Destination(str, Enum):
    WORKFLOW = "workflow"
    AI = "ai"
    NONE = "none"


class AgentType(str, Enum):
    DEFAULT = "default"
    CAMPAIGN = "campaign"


class HandoffState(str, Enum):
    AI_ACTIVE = "ai-active"
    HANDED_OFF = "handed-off"


class AccessAction(str, Enum):
    VIEW = "view"
    ENABLE_DISABLE = "enable_disable"
    CONFIGURE = "configure"


WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


def normalize_time(value: str) -> str:
    """'9:00' → '09:00'. Raises ValueError for anything that is not H:MM / HH:MM."""
    match = _TIME_RE.match(str(value).strip())
    if not match:
        raise ValueError(f"invalid time '{value}', expected HH:MM")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"invalid time '{value}', out of range")
    return f"{hour:02d}:{minute:02d}"


# ──────────────────────────────────────────────────────────────
#  Resource references — exactly one per deployment
# ──────────────────────────────────────────────────────────────

class EmailConnectionRef(BaseModel):
    kind: Literal["email_connection"] = "email_connection"
    id: str


class InboundEmailRef(BaseModel):
    kind: Literal["inbound_email"] = "inbound_email"
    id: str


class WhatsAppAccountRef(BaseModel):
    kind: Literal["whatsapp_account"] = "whatsapp_account"
    id: str


class PhoneConfigRef(BaseModel):
    kind: Literal["phone_config"] = "phone_config"
    id: str


class WidgetConfigRef(BaseModel):
    kind: Literal["widget_config"] = "widget_config"
    id: str


ResourceRef = Annotated[
    Union[EmailConnectionRef, InboundEmailRef, WhatsAppAccountRef, PhoneConfigRef, WidgetConfigRef],
    Field(discriminator="kind"),
]

# Request/storage field name for each reference kind
REF_FIELDS: dict[str, str] = {
    "email_connection": "email_connection_id",
    "inbound_email": "allowed_inbound_email_id",
    "whatsapp_account": "whatsapp_account_id",
    "phone_config": "phone_config_id",
    "widget_config": "widget_config_id",
}

_REF_CLASSES = {
    "email_connection": EmailConnectionRef,
    "inbound_email": InboundEmailRef,
    "whatsapp_account": WhatsAppAccountRef,
    "phone_config": PhoneConfigRef,
    "widget_config": WidgetConfigRef,
}

# Which reference kind a channel's inbound traffic is identified by
DEFAULT_REF_KIND: dict[str, str] = {
    "email": "inbound_email",
    "whatsapp": "whatsapp_account",
    "phone": "phone_config",
    "widget": "widget_config",
}


def make_ref(kind: str, resource_id: str):
    """Build a ResourceRef variant from its kind name."""
    cls = _REF_CLASSES.get(kind)
    if cls is None:
        raise ValueError(f"unknown resource reference kind '{kind}'")
    return cls(id=str(resource_id))


def default_ref_for_channel(channel: str, resource_id: str):
    """Resolve a bare resource id to the reference kind the channel uses."""
    return make_ref(DEFAULT_REF_KIND.get(str(channel), "email_connection"), resource_id)


def ref_key(ref) -> str:
    """Stable lookup key, e.g. 'whatsapp_account:wa_123'."""
    return f"{ref.kind}:{ref.id}"


# ──────────────────────────────────────────────────────────────
#  Deployment resource
# ──────────────────────────────────────────────────────────────

class Schedule(BaseModel):
    """Weekly recurring on-duty window."""
    enabled: bool = False
    start_time: Optional[str] = None          # "HH:MM"
    end_time: Optional[str] = None            # "HH:MM"
    days: list[str] = []                      # English weekday names
    timezone: str = "UTC"                     # IANA zone name


class Behavior(BaseModel):
    auto_respond: bool = True
    handoff_enabled: bool = True
    max_messages_before_handoff: int = 10


class MessageTemplates(BaseModel):
    welcome: Optional[str] = None
    handoff: Optional[str] = None
    away: Optional[str] = None


class DeploymentResource(BaseModel):
    """
    One binding of "AI may act here": a tenant, a channel and exactly one
    concrete channel endpoint. The single reference is structural — the
    `resource` field holds one ResourceRef variant.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    tenant_id: str
    channel: ChannelType
    resource: ResourceRef
    display_name: str = ""
    is_enabled: bool = False
    schedule: Schedule = Field(default_factory=Schedule)
    behavior: Behavior = Field(default_factory=Behavior)
    messages: MessageTemplates = Field(default_factory=MessageTemplates)
    priority_mode: PriorityMode = PriorityMode.NORMAL
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def to_flat_dict(self) -> dict[str, Any]:
        """Flat column-style view, as administrative callers see it."""
        data: dict[str, Any] = {field: None for field in REF_FIELDS.values()}
        data[REF_FIELDS[self.resource.kind]] = self.resource.id
        data.update({
            "id": self.id,
            "tenant_id": self.tenant_id,
            "channel": self.channel.value,
            "resource_display_name": self.display_name,
            "is_enabled": self.is_enabled,
            "schedule_enabled": self.schedule.enabled,
            "schedule_start_time": self.schedule.start_time,
            "schedule_end_time": self.schedule.end_time,
            "schedule_days": list(self.schedule.days),
            "schedule_timezone": self.schedule.timezone,
            "auto_respond": self.behavior.auto_respond,
            "handoff_enabled": self.behavior.handoff_enabled,
            "max_messages_before_handoff": self.behavior.max_messages_before_handoff,
            "welcome_message": self.messages.welcome,
            "handoff_message": self.messages.handoff,
            "away_message": self.messages.away,
            "priority_mode": self.priority_mode.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        })
        return data


class DeploymentCreateRequest(BaseModel):
    """Create payload as it arrives from an administrative caller."""
    channel: str
    email_connection_id: Optional[str] = None
    allowed_inbound_email_id: Optional[str] = None
    whatsapp_account_id: Optional[str] = None
    phone_config_id: Optional[str] = None
    widget_config_id: Optional[str] = None
    resource_display_name: str = ""
    is_enabled: Optional[bool] = None
    schedule_enabled: Optional[bool] = None
    schedule_start_time: Optional[str] = None
    schedule_end_time: Optional[str] = None
    schedule_days: Optional[list[str]] = None
    schedule_timezone: Optional[str] = None
    auto_respond: Optional[bool] = None
    handoff_enabled: Optional[bool] = None
    max_messages_before_handoff: Optional[int] = None
    welcome_message: Optional[str] = None
    handoff_message: Optional[str] = None
    away_message: Optional[str] = None
    priority_mode: Optional[str] = None

    def supplied_refs(self) -> list[tuple[str, str]]:
        """(kind, id) for every non-null reference field."""
        return [
            (kind, getattr(self, field))
            for kind, field in REF_FIELDS.items()
            if getattr(self, field) is not None
        ]


class DeploymentPatch(BaseModel):
    """
    Partial update. Every field is optional; only fields the caller
    actually supplied are applied (see deployments.registry.apply_patch).
    """
    resource_display_name: Optional[str] = None
    is_enabled: Optional[bool] = None
    schedule_enabled: Optional[bool] = None
    schedule_start_time: Optional[str] = None
    schedule_end_time: Optional[str] = None
    schedule_days: Optional[list[str]] = None
    schedule_timezone: Optional[str] = None
    auto_respond: Optional[bool] = None
    handoff_enabled: Optional[bool] = None
    max_messages_before_handoff: Optional[int] = None
    welcome_message: Optional[str] = None
    handoff_message: Optional[str] = None
    away_message: Optional[str] = None
    priority_mode: Optional[PriorityMode] = None

    def supplied(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class DelegatedAccess(BaseModel):
    """Per-user rights over one deployment resource, independent of roles."""
    user_id: str
    resource_id: str
    can_view: bool = True
    can_enable_disable: bool = False
    can_configure: bool = False
    granted_by: Optional[str] = None
    granted_at: datetime = Field(default_factory=_utcnow)

    def allows(self, action: AccessAction) -> bool:
        if action == AccessAction.VIEW:
            return self.can_view
        if action == AccessAction.ENABLE_DISABLE:
            return self.can_enable_disable
        if action == AccessAction.CONFIGURE:
            return self.can_configure
        return False


# ──────────────────────────────────────────────────────────────
#  Inbound message — produced by the ingestion collaborator
# ──────────────────────────────────────────────────────────────

class InboundMessage(BaseModel):
    model_config = {"frozen": True}

    id: str
    tenant_id: str
    conversation_id: str
    channel: ChannelType
    sender: str                               # email address, phone, visitor id …
    sender_name: Optional[str] = None
    body: str = ""
    subject: Optional[str] = None
    contact_id: Optional[str] = None
    resource: Optional[ResourceRef] = None    # endpoint that received the message
    received_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Routing
# ──────────────────────────────────────────────────────────────

class RoutingDecision(BaseModel):
    destination: Destination
    agent_type: AgentType = AgentType.DEFAULT
    campaign_id: Optional[str] = None
    trigger_type: Optional[str] = None
    trigger_data: Optional[dict[str, Any]] = None
    reason: str = ""


class RoutingErrorInfo(BaseModel):
    kind: str                                 # exception class name
    detail: str = ""


class RoutingOutcome(BaseModel):
    """
    Result of routing one message. `error` is set when the decision was
    forced to `none` because a lookup failed, so callers can tell that
    apart from an intentional "no AI here".
    """
    message_id: str
    decision: RoutingDecision
    error: Optional[RoutingErrorInfo] = None
    deployment_id: Optional[str] = None
    entry_id: Optional[str] = None

    @property
    def failed_closed(self) -> bool:
        return self.error is not None and self.decision.destination == Destination.NONE

    @property
    def enqueued(self) -> bool:
        return self.entry_id is not None


class AIDecision(BaseModel):
    """Detailed answer to "should AI respond here, now?"."""
    should_respond: bool
    reason: str
    deployment: Optional[DeploymentResource] = None
    send_away_message: bool = False


class CampaignInfo(BaseModel):
    id: str
    reply_handling: str = "human"             # "ai" | "human"
    name: str = ""


# ──────────────────────────────────────────────────────────────
#  Handoff
# ──────────────────────────────────────────────────────────────

class ConversationHandoff(BaseModel):
    conversation_id: str
    tenant_id: str = ""
    deployment_id: Optional[str] = None
    ai_turns: int = 0
    state: HandoffState = HandoffState.AI_ACTIVE
    handed_off_at: Optional[datetime] = None
    reason: str = ""
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_handed_off(self) -> bool:
        return self.state == HandoffState.HANDED_OFF


# ──────────────────────────────────────────────────────────────
#  Validators shared by create / patch paths
# ──────────────────────────────────────────────────────────────

class ScheduleInput(BaseModel):
    """Validates the schedule block of a create/patch request."""
    enabled: bool = False
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    days: list[str] = []
    timezone: str = "UTC"

    @field_validator("start_time", "end_time")
    @classmethod
    def _check_time(cls, value: Optional[str]) -> Optional[str]:
        return normalize_time(value) if value is not None else None

    @field_validator("days")
    @classmethod
    def _check_days(cls, value: list[str]) -> list[str]:
        normalized = []
        for day in value:
            name = str(day).strip().capitalize()
            if name not in WEEKDAYS:
                raise ValueError(f"invalid weekday '{day}'")
            normalized.append(name)
        return normalized
