"""
FastAPI Application — deployment administration, routing and queue status.

Provides:
- REST API for AI deployment configuration and delegated access
- Message routing entry point for the ingestion service
- AI eligibility status queries
- Conversation handoff control
- Queue diagnostics (stream lengths, pending counts, dead letters)
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config.settings import get_settings
from config.log_setup import configure_logging
from core.errors import ConfigurationError, QueueUnavailable, ResourceNotFound
from core.services import build_services
from models.schemas import (
    AccessAction, ChannelType, DeploymentCreateRequest, DeploymentPatch,
    DeploymentResource, InboundMessage, ResourceRef, default_ref_for_channel, make_ref,
)

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = get_settings()
configure_logging(_settings_boot)
services = build_services(_settings_boot)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await services.start()
    logger.info("inbound_router_started",
                queue_backend=type(services.queue).__name__,
                store_backend=type(services.store).__name__)
    yield
    await services.stop()
    logger.info("inbound_router_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="Inbound Router API",
    description="Inbound message routing and AI deployment decisions",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    return JSONResponse(status_code=400, content={"detail": str(exc), "error": type(exc).__name__})


@app.exception_handler(ResourceNotFound)
async def not_found_handler(request: Request, exc: ResourceNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc), "error": type(exc).__name__})


@app.exception_handler(QueueUnavailable)
async def queue_unavailable_handler(request: Request, exc: QueueUnavailable):
    logger.error("queue_unavailable", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=503, content={"detail": str(exc), "error": type(exc).__name__})


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class DeploymentCreateBody(DeploymentCreateRequest):
    tenant_id: str


class AccessGrantRequest(BaseModel):
    user_id: str
    can_view: Optional[bool] = None
    can_enable_disable: Optional[bool] = None
    can_configure: Optional[bool] = None
    granted_by: Optional[str] = None


class RouteMessageRequest(BaseModel):
    id: str
    tenant_id: str
    conversation_id: str
    channel: ChannelType
    sender: str
    sender_name: Optional[str] = None
    body: str = ""
    subject: Optional[str] = None
    contact_id: Optional[str] = None
    resource: Optional[ResourceRef] = None
    resource_id: Optional[str] = None         # bare id, resolved by channel

    def to_message(self) -> InboundMessage:
        resource = self.resource
        if resource is None and self.resource_id:
            resource = default_ref_for_channel(self.channel.value, self.resource_id)
        return InboundMessage(
            id=self.id,
            tenant_id=self.tenant_id,
            conversation_id=self.conversation_id,
            channel=self.channel,
            sender=self.sender,
            sender_name=self.sender_name,
            body=self.body,
            subject=self.subject,
            contact_id=self.contact_id,
            resource=resource,
        )


class HandoffRequest(BaseModel):
    reason: str = "manual takeover"
    tenant_id: str = ""


def _deployment_out(deployment: DeploymentResource) -> dict[str, Any]:
    return deployment.to_flat_dict()


async def _require(user_id: Optional[str], role: Optional[str], resource_id: str, action: AccessAction):
    """Delegated-access check when the caller identifies a non-admin user."""
    if not user_id:
        return
    allowed = await services.registry.can_manage(user_id, resource_id, action, is_admin=(role == "admin"))
    if not allowed:
        raise HTTPException(403, f"User may not {action.value} this deployment")


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "queue_backend": type(services.queue).__name__,
        "store_backend": type(services.store).__name__,
        "workers_running": services.workers.running,
    }


# ══════════════════════════════════════════════════════════════
#  DEPLOYMENTS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/deployments", status_code=201)
async def create_deployment(req: DeploymentCreateBody):
    request = DeploymentCreateRequest(**req.model_dump(exclude={"tenant_id"}))
    deployment = await services.registry.create(req.tenant_id, request)
    return _deployment_out(deployment)


@app.get("/api/v1/deployments")
async def list_deployments(tenant_id: str = Query(...), channel: Optional[str] = None):
    deployments = await services.registry.list(tenant_id, channel)
    return {"deployments": [_deployment_out(d) for d in deployments], "count": len(deployments)}


@app.get("/api/v1/deployments/{resource_id}")
async def get_deployment(resource_id: str,
                         x_user_id: Optional[str] = Header(None),
                         x_user_role: Optional[str] = Header(None)):
    deployment = await services.registry.get_by_id(resource_id)
    await _require(x_user_id, x_user_role, resource_id, AccessAction.VIEW)
    return _deployment_out(deployment)


@app.patch("/api/v1/deployments/{resource_id}")
async def update_deployment(resource_id: str, patch: DeploymentPatch,
                            x_user_id: Optional[str] = Header(None),
                            x_user_role: Optional[str] = Header(None)):
    await services.registry.get_by_id(resource_id)
    await _require(x_user_id, x_user_role, resource_id, AccessAction.CONFIGURE)
    deployment = await services.registry.update(resource_id, patch)
    return _deployment_out(deployment)


@app.post("/api/v1/deployments/{resource_id}/enable")
async def enable_deployment(resource_id: str,
                            x_user_id: Optional[str] = Header(None),
                            x_user_role: Optional[str] = Header(None)):
    await services.registry.get_by_id(resource_id)
    await _require(x_user_id, x_user_role, resource_id, AccessAction.ENABLE_DISABLE)
    return _deployment_out(await services.registry.enable(resource_id))


@app.post("/api/v1/deployments/{resource_id}/disable")
async def disable_deployment(resource_id: str,
                             x_user_id: Optional[str] = Header(None),
                             x_user_role: Optional[str] = Header(None)):
    await services.registry.get_by_id(resource_id)
    await _require(x_user_id, x_user_role, resource_id, AccessAction.ENABLE_DISABLE)
    return _deployment_out(await services.registry.disable(resource_id))


@app.delete("/api/v1/deployments/{resource_id}")
async def delete_deployment(resource_id: str):
    deployment = await services.registry.delete(resource_id)
    return {"status": "deleted", "id": deployment.id}


# ══════════════════════════════════════════════════════════════
#  DELEGATED ACCESS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/deployments/{resource_id}/access")
async def grant_access(resource_id: str, req: AccessGrantRequest):
    grant = await services.registry.grant_access(
        req.user_id, resource_id,
        can_view=req.can_view,
        can_enable_disable=req.can_enable_disable,
        can_configure=req.can_configure,
        granted_by=req.granted_by,
    )
    return grant.model_dump(mode="json")


@app.delete("/api/v1/deployments/{resource_id}/access/{user_id}")
async def revoke_access(resource_id: str, user_id: str):
    await services.registry.revoke_access(user_id, resource_id)
    return {"status": "revoked", "user_id": user_id, "resource_id": resource_id}


@app.get("/api/v1/users/{user_id}/deployments")
async def list_user_deployments(user_id: str, channel: Optional[str] = None):
    pairs = await services.registry.list_for_user(user_id, channel)
    return {
        "deployments": [
            {
                **_deployment_out(deployment),
                "permissions": {
                    "can_view": grant.can_view,
                    "can_enable_disable": grant.can_enable_disable,
                    "can_configure": grant.can_configure,
                },
            }
            for deployment, grant in pairs
        ],
        "count": len(pairs),
    }


# ══════════════════════════════════════════════════════════════
#  ROUTING
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/messages/route")
async def route_message(req: RouteMessageRequest):
    outcome = await services.router.route_and_enqueue(req.to_message())
    result = outcome.model_dump(mode="json")
    result["failed_closed"] = outcome.failed_closed
    result["enqueued"] = outcome.enqueued
    return result


@app.get("/api/v1/ai/should-respond")
async def should_ai_respond(
    tenant_id: str,
    channel: ChannelType,
    resource_id: Optional[str] = None,
    resource_kind: Optional[str] = None,
    conversation_id: Optional[str] = None,
):
    ref = None
    if resource_id:
        try:
            ref = make_ref(resource_kind, resource_id) if resource_kind else \
                default_ref_for_channel(channel.value, resource_id)
        except ValueError as e:
            raise HTTPException(400, str(e))
    decision = await services.router.explain(tenant_id, channel, ref, conversation_id)
    return {
        "should_respond": decision.should_respond,
        "reason": decision.reason,
        "send_away_message": decision.send_away_message,
        "deployment_id": decision.deployment.id if decision.deployment else None,
    }


# ══════════════════════════════════════════════════════════════
#  HANDOFF
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/conversations/{conversation_id}/handoff")
async def get_handoff(conversation_id: str):
    state = await services.handoff.get_state(conversation_id)
    if state is None:
        return {"conversation_id": conversation_id, "state": "ai-active", "ai_turns": 0}
    return state.model_dump(mode="json")


@app.post("/api/v1/conversations/{conversation_id}/handoff")
async def handoff_conversation(conversation_id: str, req: HandoffRequest):
    state = await services.handoff.handoff(conversation_id, reason=req.reason, tenant_id=req.tenant_id)
    return state.model_dump(mode="json")


@app.post("/api/v1/conversations/{conversation_id}/reactivate")
async def reactivate_conversation(conversation_id: str):
    state = await services.handoff.reactivate(conversation_id)
    return state.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════
#  QUEUE
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/queue/stats")
async def queue_stats():
    return {
        "backend": type(services.queue).__name__,
        "streams": await services.queue.stats(),
    }


@app.get("/api/v1/queue/dead-letter")
async def dead_letters(count: int = Query(20, ge=1, le=500)):
    entries = await services.queue.peek(services.queue.streams.dead_letter, count)
    return {
        "entries": [{"entry_id": e.entry_id, **e.to_dict(), "metadata": e.metadata} for e in entries],
        "count": len(entries),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
