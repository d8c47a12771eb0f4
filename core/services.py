"""
Service wiring — builds the store, queue, collaborators, registry, router
and worker pool from settings. Shared by the API process and the
standalone worker script.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass

from backend.connector import Collaborators, create_collaborators
from config.settings import Settings, get_settings
from context.handoff import HandoffTracker
from core.router import RoutingEngine
from database import init_db, close_db
from database.store import SqlDeploymentStore
from database.store_base import BaseDeploymentStore
from database.store_factory import create_store
from deployments.registry import DeploymentRegistry
from job_queue.consumer import PipelineHandlers, WorkerPool, build_worker_pool
from job_queue.message_queue import MessageQueue, create_message_queue

logger = structlog.get_logger()


@dataclass
class Services:
    settings: Settings
    store: BaseDeploymentStore
    queue: MessageQueue
    collaborators: Collaborators
    registry: DeploymentRegistry
    handoff: HandoffTracker
    router: RoutingEngine
    workers: WorkerPool

    async def start(self, run_workers: bool = True):
        if isinstance(self.store, SqlDeploymentStore):
            await init_db()
        await self.queue.connect()
        if run_workers:
            await self.workers.start()
        logger.info("services_started",
                    store=type(self.store).__name__,
                    queue=type(self.queue).__name__,
                    workers=len(self.workers.workers) if run_workers else 0)

    async def stop(self):
        await self.workers.stop()
        await self.queue.close()
        await self.collaborators.close()
        if isinstance(self.store, SqlDeploymentStore):
            await close_db()
        logger.info("services_stopped")


def build_services(
    settings: Settings = None,
    store: BaseDeploymentStore = None,
    queue: MessageQueue = None,
    collaborators: Collaborators = None,
) -> Services:
    settings = settings or get_settings()
    store = store or create_store({"store_backend": settings.database.store_backend})
    queue = queue or create_message_queue({
        "backend": settings.queue.backend,
        "redis_url": settings.queue.redis_url,
        "streams": settings.queue.streams,
        "processed_ttl_seconds": settings.queue.processed_ttl_seconds,
    })
    collaborators = collaborators or create_collaborators(settings.collaborators)

    registry = DeploymentRegistry(store)
    handoff = HandoffTracker(store)
    router = RoutingEngine(registry, collaborators.workflows, collaborators.campaigns, handoff, queue)
    handlers = PipelineHandlers(queue, collaborators, registry, handoff)
    workers = build_worker_pool(queue, handlers, settings.queue, settings.workers)

    return Services(
        settings=settings,
        store=store,
        queue=queue,
        collaborators=collaborators,
        registry=registry,
        handoff=handoff,
        router=router,
        workers=workers,
    )
