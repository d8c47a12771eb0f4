"""
Deployment Registry — per-tenant, per-channel-resource AI deployment config.

Owns the rules the store does not:
  - exactly one resource reference per deployment (InvalidResourceBinding)
  - field validation for schedule / behavior / priority (ConfigurationError)
  - partial updates via DeploymentPatch + apply_patch (unsupplied fields kept)
  - delegated per-user access grants

Reads are plain store lookups and safe to run concurrently.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ValidationError

from core.errors import ConfigurationError, InvalidResourceBinding, ResourceNotFound
from database.store_base import BaseDeploymentStore
from models.schemas import (
    AccessAction, Behavior, ChannelType, DelegatedAccess, DeploymentCreateRequest,
    DeploymentPatch, DeploymentResource, MessageTemplates, PriorityMode,
    ScheduleInput, Schedule, DEFAULT_REF_KIND, make_ref, ref_key,
)

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Validation helpers
# ──────────────────────────────────────────────────────────────

def _channel(value: str) -> ChannelType:
    try:
        return ChannelType(str(value))
    except ValueError as e:
        raise ConfigurationError(f"Unknown channel '{value}'") from e


def _priority(value) -> PriorityMode:
    try:
        return PriorityMode(value)
    except ValueError as e:
        raise ConfigurationError(f"Unknown priority mode '{value}'") from e


def _validated_schedule(data: dict[str, Any]) -> Schedule:
    try:
        checked = ScheduleInput(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid schedule: {e.errors()[0]['msg']}") from e
    try:
        ZoneInfo(checked.timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"Unknown timezone '{checked.timezone}'") from e
    if checked.enabled and (checked.start_time is None or checked.end_time is None):
        raise ConfigurationError("An enabled schedule needs both start and end time")
    return Schedule(**checked.model_dump())


def _validated_threshold(value: int) -> int:
    if value is None or int(value) < 0:
        raise ConfigurationError("max_messages_before_handoff must be >= 0")
    return int(value)


def build_deployment(tenant_id: str, request: DeploymentCreateRequest) -> DeploymentResource:
    """
    Turn a raw create request into a DeploymentResource, applying the
    creation defaults. Raises InvalidResourceBinding unless exactly one
    reference field is set.
    """
    refs = request.supplied_refs()
    if len(refs) != 1:
        raise InvalidResourceBinding(
            "Exactly one resource reference must be provided",
            supplied=[kind for kind, _ in refs],
        )
    kind, resource_id = refs[0]
    channel = _channel(request.channel)

    schedule = _validated_schedule({
        "enabled": bool(request.schedule_enabled) if request.schedule_enabled is not None else False,
        "start_time": request.schedule_start_time,
        "end_time": request.schedule_end_time,
        "days": request.schedule_days or [],
        "timezone": request.schedule_timezone or "UTC",
    })
    behavior = Behavior(
        auto_respond=True if request.auto_respond is None else request.auto_respond,
        handoff_enabled=True if request.handoff_enabled is None else request.handoff_enabled,
        max_messages_before_handoff=_validated_threshold(
            10 if request.max_messages_before_handoff is None else request.max_messages_before_handoff
        ),
    )
    return DeploymentResource(
        tenant_id=tenant_id,
        channel=channel,
        resource=make_ref(kind, resource_id),
        display_name=request.resource_display_name or "",
        is_enabled=bool(request.is_enabled) if request.is_enabled is not None else False,
        schedule=schedule,
        behavior=behavior,
        messages=MessageTemplates(
            welcome=request.welcome_message,
            handoff=request.handoff_message,
            away=request.away_message,
        ),
        priority_mode=_priority(request.priority_mode or PriorityMode.NORMAL),
    )


_SCHEDULE_FIELDS = {
    "schedule_enabled": "enabled",
    "schedule_start_time": "start_time",
    "schedule_end_time": "end_time",
    "schedule_days": "days",
    "schedule_timezone": "timezone",
}
_BEHAVIOR_FIELDS = {
    "auto_respond": "auto_respond",
    "handoff_enabled": "handoff_enabled",
    "max_messages_before_handoff": "max_messages_before_handoff",
}
_MESSAGE_FIELDS = {
    "welcome_message": "welcome",
    "handoff_message": "handoff",
    "away_message": "away",
}


def apply_patch(resource: DeploymentResource, patch: DeploymentPatch) -> DeploymentResource:
    """
    Merge the supplied fields of `patch` onto `resource` and return a new
    DeploymentResource. Fields the caller did not supply keep their value;
    an explicit null on a message template clears it.
    """
    supplied = patch.supplied()
    if not supplied:
        raise ConfigurationError("No fields to update")

    schedule = resource.schedule.model_dump()
    behavior = resource.behavior.model_dump()
    messages = resource.messages.model_dump()
    top: dict[str, Any] = {}

    for name, value in supplied.items():
        if name in _SCHEDULE_FIELDS:
            if value is None and name != "schedule_start_time" and name != "schedule_end_time":
                raise ConfigurationError(f"{name} cannot be null")
            schedule[_SCHEDULE_FIELDS[name]] = value
        elif name in _BEHAVIOR_FIELDS:
            if value is None:
                raise ConfigurationError(f"{name} cannot be null")
            behavior[_BEHAVIOR_FIELDS[name]] = value
        elif name in _MESSAGE_FIELDS:
            messages[_MESSAGE_FIELDS[name]] = value
        elif name == "resource_display_name":
            top["display_name"] = value or ""
        elif name == "is_enabled":
            if value is None:
                raise ConfigurationError("is_enabled cannot be null")
            top["is_enabled"] = value
        elif name == "priority_mode":
            if value is None:
                raise ConfigurationError("priority_mode cannot be null")
            top["priority_mode"] = _priority(value)

    behavior["max_messages_before_handoff"] = _validated_threshold(behavior["max_messages_before_handoff"])

    return resource.model_copy(update={
        **top,
        "schedule": _validated_schedule(schedule),
        "behavior": Behavior(**behavior),
        "messages": MessageTemplates(**messages),
        "updated_at": datetime.now(timezone.utc),
    })


# ──────────────────────────────────────────────────────────────
#  Registry
# ──────────────────────────────────────────────────────────────

class DeploymentRegistry:
    """Lookup and administration of DeploymentResources."""

    def __init__(self, store: BaseDeploymentStore):
        self.store = store

    # ── Lookup ────────────────────────────────────────────────

    async def get(self, tenant_id: str, channel: str, resource_ref) -> DeploymentResource:
        """Deployment for (tenant, channel, reference) or ResourceNotFound."""
        channel = str(getattr(channel, "value", channel))
        found = await self.store.find_deployment(tenant_id, channel, resource_ref.kind, resource_ref.id)
        if found is None:
            raise ResourceNotFound(
                f"No AI deployment configured for {ref_key(resource_ref)}",
                tenant_id=tenant_id, channel=channel,
            )
        return found

    async def resolve(self, tenant_id: str, channel: str, resource_ref=None) -> DeploymentResource:
        """
        Like get(), but a missing reference falls back to the tenant's only
        deployment on that channel. None or several → ResourceNotFound.
        """
        if resource_ref is not None:
            return await self.get(tenant_id, channel, resource_ref)

        channel = str(getattr(channel, "value", channel))
        candidates = await self.store.list_deployments(tenant_id, channel)
        if len(candidates) != 1:
            raise ResourceNotFound(
                f"Cannot resolve a single {channel} deployment ({len(candidates)} configured)",
                tenant_id=tenant_id, channel=channel,
            )
        return candidates[0]

    async def get_by_id(self, resource_id: str) -> DeploymentResource:
        found = await self.store.get_deployment(resource_id)
        if found is None:
            raise ResourceNotFound("AI deployment not found", resource_id=resource_id)
        return found

    async def list(self, tenant_id: str, channel: str = None) -> list[DeploymentResource]:
        return await self.store.list_deployments(tenant_id, channel)

    async def list_for_user(self, user_id: str, channel: str = None) -> list[tuple[DeploymentResource, DelegatedAccess]]:
        """Deployments delegated to `user_id`, paired with the grant."""
        pairs = []
        for grant in await self.store.list_access_for_user(user_id):
            deployment = await self.store.get_deployment(grant.resource_id)
            if deployment is None:
                continue
            if channel is not None and deployment.channel.value != str(channel):
                continue
            pairs.append((deployment, grant))
        pairs.sort(key=lambda p: (p[0].channel.value, p[0].display_name))
        return pairs

    # ── Administration ────────────────────────────────────────

    async def create(self, tenant_id: str, request: DeploymentCreateRequest) -> DeploymentResource:
        resource = build_deployment(tenant_id, request)
        existing = await self.store.find_deployment(
            tenant_id, resource.channel.value, resource.resource.kind, resource.resource.id,
        )
        if existing is not None:
            raise InvalidResourceBinding(
                f"Resource {ref_key(resource.resource)} already has a deployment",
                tenant_id=tenant_id, existing_id=existing.id,
            )
        await self.store.insert_deployment(resource)
        if resource.resource.kind != DEFAULT_REF_KIND.get(resource.channel.value):
            logger.warning("deployment_nondefault_reference",
                           resource_id=resource.id,
                           channel=resource.channel.value,
                           ref_kind=resource.resource.kind)
        logger.info("deployment_created",
                    resource_id=resource.id,
                    tenant_id=tenant_id,
                    channel=resource.channel.value,
                    ref=ref_key(resource.resource))
        return resource

    async def update(self, resource_id: str, patch: DeploymentPatch) -> DeploymentResource:
        current = await self.get_by_id(resource_id)
        updated = apply_patch(current, patch)
        await self.store.save_deployment(updated)
        logger.info("deployment_updated",
                    resource_id=resource_id,
                    fields=sorted(patch.supplied().keys()))
        return updated

    async def enable(self, resource_id: str) -> DeploymentResource:
        return await self.update(resource_id, DeploymentPatch(is_enabled=True))

    async def disable(self, resource_id: str) -> DeploymentResource:
        return await self.update(resource_id, DeploymentPatch(is_enabled=False))

    async def delete(self, resource_id: str) -> DeploymentResource:
        """Hard delete; refused while conversations still reference the resource."""
        current = await self.get_by_id(resource_id)
        referencing = await self.store.count_handoffs_for_deployment(resource_id)
        if referencing:
            raise ConfigurationError(
                f"Deployment is referenced by {referencing} conversation(s); disable it instead",
                resource_id=resource_id,
            )
        await self.store.delete_deployment(resource_id)
        logger.info("deployment_deleted", resource_id=resource_id, tenant_id=current.tenant_id)
        return current

    # ── Delegated access ──────────────────────────────────────

    async def grant_access(
        self,
        user_id: str,
        resource_id: str,
        can_view: Optional[bool] = None,
        can_enable_disable: Optional[bool] = None,
        can_configure: Optional[bool] = None,
        granted_by: Optional[str] = None,
    ) -> DelegatedAccess:
        await self.get_by_id(resource_id)
        grant = DelegatedAccess(
            user_id=user_id,
            resource_id=resource_id,
            can_view=True if can_view is None else can_view,
            can_enable_disable=bool(can_enable_disable),
            can_configure=bool(can_configure),
            granted_by=granted_by,
        )
        await self.store.upsert_access(grant)
        logger.info("deployment_access_granted",
                    user_id=user_id, resource_id=resource_id,
                    enable_disable=grant.can_enable_disable,
                    configure=grant.can_configure)
        return grant

    async def revoke_access(self, user_id: str, resource_id: str) -> None:
        removed = await self.store.delete_access(user_id, resource_id)
        if not removed:
            raise ResourceNotFound("AI deployment permission not found",
                                   user_id=user_id, resource_id=resource_id)
        logger.info("deployment_access_revoked", user_id=user_id, resource_id=resource_id)

    async def can_manage(self, user_id: str, resource_id: str,
                         action: AccessAction = AccessAction.VIEW, is_admin: bool = False) -> bool:
        if is_admin:
            return True
        grant = await self.store.get_access(user_id, resource_id)
        return bool(grant and grant.allows(AccessAction(action)))
