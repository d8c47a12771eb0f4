"""
Queue Consumer — Workers that drain the streams into downstream services.

Runs as async tasks inside the application process (or standalone via
scripts/run_workers.py). For horizontal scaling, run more processes with
the same consumer groups; each entry is delivered to one consumer per
group at a time.

Topology:
  ┌─────────────┐      ┌──────────────────────────┐      ┌────────────────┐
  │ RoutingEngine│──▶──│ stream:incoming_messages  │──▶──│ AI workers     │──┐
  │              │──▶──│ stream:workflow_triggers  │──▶──│ workflow worker│  │ reply
  └─────────────┘      └──────────────────────────┘      └────────────────┘  │
                       ┌──────────────────────────┐      ┌────────────────┐  │
                       │ stream:outgoing:<channel>│──▶──│ outbound worker│◀─┘
                       └──────────────────────────┘      └───────┬────────┘
                                                                 │ max deliveries
                       ┌──────────────────────────┐              │
                       │ stream:dead_letter        │◀────────────┘
                       └──────────────────────────┘

Worker cycle: reclaim stale pending entries, read new ones, skip message
ids the group already processed, run the handler, record, ack. A failing
entry stays pending and is retried after claim_idle_ms; once it has been
delivered max_deliveries times (or the failure is not retryable) it is
copied to the dead-letter stream and acked.
Entries whose fields do not decode are dead-lettered as soon as they are
delivered.
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from typing import Awaitable, Callable

from backend.connector import Collaborators
from config.settings import QueueConfig, WorkerConfig
from context.handoff import HandoffTracker
from core.errors import QueueUnavailable, ResourceNotFound
from deployments.registry import DeploymentRegistry
from job_queue.message_queue import Groups, MessageQueue, QueueEntry

logger = structlog.get_logger()

Handler = Callable[[QueueEntry], Awaitable[None]]


class QueueWorker:
    """
    One consumer in a consumer group, processing one entry at a time.

    Usage:
        worker = QueueWorker(queue, stream, group, handler)
        await worker.run()           # blocks until stop()
        await worker.poll_once()     # single cycle (tests, scripts)
    """

    error_backoff = 1.0  # seconds to wait after a failed cycle

    def __init__(
        self,
        queue: MessageQueue,
        stream: str,
        group: str,
        handler: Handler,
        consumer_name: str = "",
        read_count: int = 5,
        block_ms: int = 5000,
        claim_idle_ms: int = 60000,
        max_deliveries: int = 5,
    ):
        self.queue = queue
        self.stream = stream
        self.group = group
        self.handler = handler
        self.consumer_name = consumer_name or f"{group}-{uuid.uuid4().hex[:8]}"
        self.read_count = read_count
        self.block_ms = block_ms
        self.claim_idle_ms = claim_idle_ms
        self.max_deliveries = max_deliveries
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def run(self):
        self._running = True
        logger.info("worker_started", stream=self.stream, group=self.group, consumer=self.consumer_name)
        while self._running:
            try:
                if not await self.poll_once():
                    await asyncio.sleep(0)
            except asyncio.CancelledError:
                break
            except QueueUnavailable as e:
                logger.error("worker_queue_unavailable", stream=self.stream, group=self.group, error=str(e))
                await asyncio.sleep(self.error_backoff)
            except Exception:
                logger.exception("worker_cycle_failed", stream=self.stream, group=self.group,
                                 consumer=self.consumer_name)
                await asyncio.sleep(self.error_backoff)
        logger.info("worker_stopped", consumer=self.consumer_name)

    def stop(self):
        self._running = False

    async def poll_once(self) -> int:
        """Run one claim + read cycle. Returns the number of entries handled."""
        entries = await self.queue.claim_stale(
            self.stream, self.group, self.consumer_name,
            min_idle_ms=self.claim_idle_ms, count=self.read_count,
        )
        if not entries:
            entries = await self.queue.read(
                self.stream, self.group, self.consumer_name,
                count=self.read_count, block_ms=self.block_ms,
            )
        for entry in entries:
            await self.process(entry)
        return len(entries)

    async def process(self, entry: QueueEntry) -> str:
        """
        Handle a delivered entry. Returns one of
        "processed", "duplicate", "failed", "dead_lettered".
        """
        log = logger.bind(stream=self.stream, group=self.group, entry_id=entry.entry_id,
                          message_id=entry.message_id, delivery=entry.delivery_count)

        if await self.queue.is_processed(self.group, entry.message_id):
            await self.queue.ack(self.stream, self.group, entry.entry_id)
            log.info("entry_already_processed")
            return "duplicate"

        try:
            await self.handler(entry)
        except Exception as e:
            retryable = getattr(e, "retryable", True)
            if not retryable or entry.delivery_count >= self.max_deliveries:
                await self.queue.dead_letter(entry, reason=f"{type(e).__name__}: {e}")
                await self.queue.ack(self.stream, self.group, entry.entry_id)
                return "dead_lettered"
            log.warning("entry_processing_failed", error=str(e), retryable=retryable)
            return "failed"

        await self.queue.mark_processed(self.group, entry.message_id)
        await self.queue.ack(self.stream, self.group, entry.entry_id)
        log.debug("entry_processed")
        return "processed"


# ──────────────────────────────────────────────────────────────
#  Downstream handlers
# ──────────────────────────────────────────────────────────────

class PipelineHandlers:
    """Handlers for each consumer group, bound to the collaborators."""

    def __init__(self, queue: MessageQueue, collaborators: Collaborators,
                 registry: DeploymentRegistry, handoff: HandoffTracker):
        self.queue = queue
        self.collaborators = collaborators
        self.registry = registry
        self.handoff = handoff

    async def handle_incoming(self, entry: QueueEntry):
        """
        AI reply, handoff bookkeeping, then queue the reply for delivery.

        Each side effect is recorded against the message id, so a redelivered
        entry resumes after the last completed step instead of asking the AI
        engine for a second reply or counting the turn twice.
        """
        group = Groups.AI_INGESTION
        log = logger.bind(message_id=entry.message_id, conversation_id=entry.conversation_id)

        reply_id = await self.queue.get_step(group, entry.message_id, "ai-replied")
        if reply_id is None:
            reply_id = await self.collaborators.ai_engine.respond(entry) or ""
            await self.queue.record_step(group, entry.message_id, "ai-replied", reply_id)
        else:
            log.info("ai_reply_reused", reply_id=reply_id)

        if entry.agent_type == "default" and entry.deployment_id:
            if await self.queue.get_step(group, entry.message_id, "ai-turn") is None:
                await self._record_turn(entry)
                await self.queue.record_step(group, entry.message_id, "ai-turn")

        if reply_id:
            await self.queue.enqueue_outbound(
                reply_id, entry.tenant_id, entry.channel,
                conversation_id=entry.conversation_id,
            )

    async def _record_turn(self, entry: QueueEntry):
        try:
            deployment = await self.registry.get_by_id(entry.deployment_id)
        except ResourceNotFound:
            logger.warning("ai_turn_deployment_missing",
                           deployment_id=entry.deployment_id,
                           conversation_id=entry.conversation_id)
            return
        await self.handoff.record_ai_turn(entry.tenant_id, entry.conversation_id, deployment)

    async def handle_workflow(self, entry: QueueEntry):
        await self.collaborators.workflow_engine.trigger(entry)

    async def handle_outbound(self, entry: QueueEntry):
        await self.collaborators.outbound.send(entry)


# ──────────────────────────────────────────────────────────────
#  Worker Pool
# ──────────────────────────────────────────────────────────────

class WorkerPool:
    """
    Runs the configured number of workers per consumer group.

    Usage:
        pool = build_worker_pool(queue, handlers, queue_config, worker_config)
        await pool.start()     # returns immediately, workers run as tasks
        await pool.stop()      # graceful: in-flight entries finish first
    """

    def __init__(self, queue: MessageQueue, workers: list[QueueWorker], shutdown_timeout: float = 30.0):
        self.queue = queue
        self.workers = workers
        self.shutdown_timeout = shutdown_timeout
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def start(self):
        for group_key in {(w.stream, w.group) for w in self.workers}:
            await self.queue.ensure_group(*group_key)
        for worker in self.workers:
            self._tasks.append(asyncio.create_task(worker.run(), name=worker.consumer_name))
        logger.info("worker_pool_started", workers=len(self.workers))

    async def stop(self):
        for worker in self.workers:
            worker.stop()
        if not self._tasks:
            return
        done, pending = await asyncio.wait(self._tasks, timeout=self.shutdown_timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("worker_pool_cancelled", cancelled=len(pending))
        self._tasks.clear()
        logger.info("worker_pool_stopped")


def build_worker_pool(
    queue: MessageQueue,
    handlers: PipelineHandlers,
    queue_config: QueueConfig = None,
    worker_config: WorkerConfig = None,
) -> WorkerPool:
    queue_config = queue_config or QueueConfig()
    worker_config = worker_config or WorkerConfig()
    streams = queue.streams

    plan: list[tuple[str, str, Handler, int]] = [
        (streams.incoming, Groups.AI_INGESTION, handlers.handle_incoming, worker_config.ai_workers),
        (streams.workflow, Groups.WORKFLOW_TRIGGERS, handlers.handle_workflow, worker_config.workflow_workers),
        (streams.outgoing_whatsapp, Groups.OUTBOUND_WHATSAPP, handlers.handle_outbound, worker_config.outbound_workers),
        (streams.outgoing_email, Groups.OUTBOUND_EMAIL, handlers.handle_outbound, worker_config.outbound_workers),
    ]

    workers = []
    for stream, group, handler, count in plan:
        for i in range(count):
            workers.append(QueueWorker(
                queue, stream, group, handler,
                consumer_name=f"{group}-{i + 1}-{uuid.uuid4().hex[:6]}",
                read_count=queue_config.read_count,
                block_ms=queue_config.block_ms,
                claim_idle_ms=queue_config.claim_idle_ms,
                max_deliveries=queue_config.max_deliveries,
            ))
    return WorkerPool(queue, workers, shutdown_timeout=worker_config.shutdown_timeout)
