"""Tests for queue workers, pipeline handlers and the worker pool."""
import asyncio
import pytest
from unittest.mock import AsyncMock

from backend.connector import Collaborators, InMemoryAIEngine, InMemoryOutboundSender
from config.settings import QueueConfig, WorkerConfig
from core.errors import ConsumerProcessingError, QueueUnavailable
from job_queue.consumer import PipelineHandlers, QueueWorker, build_worker_pool
from job_queue.message_queue import Groups, InMemoryMessageQueue
from models.schemas import HandoffState

INCOMING = "stream:incoming_messages"


class FlakyOutboundQueue(InMemoryMessageQueue):
    """In-memory queue whose first append to an outbound stream fails."""

    def __init__(self):
        super().__init__()
        self.outbound_failures = 1

    async def append(self, stream, entry):
        if stream.startswith("stream:outgoing") and self.outbound_failures:
            self.outbound_failures -= 1
            raise QueueUnavailable("outbound append failed", stream=stream)
        return await super().append(stream, entry)


@pytest.fixture
def make_worker(queue):
    async def _make(handler, **kwargs) -> QueueWorker:
        await queue.ensure_group(INCOMING, Groups.AI_INGESTION)
        kwargs.setdefault("block_ms", 0)
        kwargs.setdefault("claim_idle_ms", 0)
        return QueueWorker(queue, INCOMING, Groups.AI_INGESTION, handler,
                           consumer_name="test-worker", **kwargs)
    return _make


async def _enqueue(queue, message_id="m1", **kwargs):
    kwargs.setdefault("deployment_id", None)
    return await queue.enqueue(message_id, "t1", "conv_1", "whatsapp", is_workflow=False, **kwargs)


async def _deliver(queue, worker):
    """Next entry for the worker: a reclaimed one first, then a new one."""
    entries = await queue.claim_stale(INCOMING, Groups.AI_INGESTION, worker.consumer_name, min_idle_ms=0)
    entries = entries or await queue.read(INCOMING, Groups.AI_INGESTION, worker.consumer_name)
    assert len(entries) == 1
    return entries[0]


class TestQueueWorker:
    @pytest.mark.asyncio
    async def test_success_acks_and_records(self, queue, make_worker):
        handler = AsyncMock()
        worker = await make_worker(handler)
        await _enqueue(queue)

        assert await worker.poll_once() == 1

        handler.assert_awaited_once()
        assert await queue.pending_count(INCOMING, Groups.AI_INGESTION) == 0
        assert await queue.is_processed(Groups.AI_INGESTION, "m1")

    @pytest.mark.asyncio
    async def test_retryable_failure_stays_pending_and_is_retried(self, queue, make_worker):
        handler = AsyncMock(side_effect=[ConsumerProcessingError("ai down"), None])
        worker = await make_worker(handler)
        await _enqueue(queue)

        assert await worker.process(await _deliver(queue, worker)) == "failed"
        assert await queue.pending_count(INCOMING, Groups.AI_INGESTION) == 1

        retry = await _deliver(queue, worker)
        assert retry.delivery_count == 2
        assert await worker.process(retry) == "processed"
        assert await queue.pending_count(INCOMING, Groups.AI_INGESTION) == 0

    @pytest.mark.asyncio
    async def test_dead_letter_after_max_deliveries(self, queue, make_worker):
        handler = AsyncMock(side_effect=ConsumerProcessingError("still down"))
        worker = await make_worker(handler, max_deliveries=3)
        await _enqueue(queue)

        results = [await worker.process(await _deliver(queue, worker)) for _ in range(3)]

        assert results == ["failed", "failed", "dead_lettered"]
        assert await queue.pending_count(INCOMING, Groups.AI_INGESTION) == 0
        [dead] = await queue.peek(queue.streams.dead_letter)
        assert dead.metadata["delivery_count"] == 3
        assert "still down" in dead.metadata["dead_letter_reason"]

    @pytest.mark.asyncio
    async def test_non_retryable_failure_dead_letters_immediately(self, queue, make_worker):
        handler = AsyncMock(side_effect=ConsumerProcessingError("bad payload", retryable=False))
        worker = await make_worker(handler)
        await _enqueue(queue)

        assert await worker.process(await _deliver(queue, worker)) == "dead_lettered"
        assert await queue.length(queue.streams.dead_letter) == 1

    @pytest.mark.asyncio
    async def test_redelivered_duplicate_is_skipped(self, queue, make_worker):
        handler = AsyncMock()
        worker = await make_worker(handler)
        await _enqueue(queue)
        await queue.mark_processed(Groups.AI_INGESTION, "m1")

        assert await worker.process(await _deliver(queue, worker)) == "duplicate"
        handler.assert_not_awaited()
        assert await queue.pending_count(INCOMING, Groups.AI_INGESTION) == 0

    @pytest.mark.asyncio
    async def test_empty_poll(self, make_worker):
        worker = await make_worker(AsyncMock())
        assert await worker.poll_once() == 0

    @pytest.mark.asyncio
    async def test_undecodable_entry_is_dead_lettered(self, queue, make_worker):
        handler = AsyncMock()
        worker = await make_worker(handler)
        await _enqueue(queue, message_id="bad")
        await _enqueue(queue, message_id="good")
        queue._streams[INCOMING][0][1]["trigger_data"] = "{bad"

        assert await worker.poll_once() == 1

        [handled] = [call.args[0] for call in handler.await_args_list]
        assert handled.message_id == "good"
        assert await queue.pending_count(INCOMING, Groups.AI_INGESTION) == 0
        [dead] = await queue.peek(queue.streams.dead_letter)
        assert dead.message_id == "bad"
        assert dead.metadata["dead_letter_reason"].startswith("undecodable entry")
        assert dead.metadata["raw_fields"]["trigger_data"] == "{bad"

    @pytest.mark.asyncio
    async def test_run_keeps_going_after_unexpected_error(self, queue, make_worker):
        handler = AsyncMock()
        worker = await make_worker(handler)
        worker.error_backoff = 0
        claim_stale = queue.claim_stale
        calls = []

        async def failing_once(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise RuntimeError("unexpected")
            return await claim_stale(*args, **kwargs)

        queue.claim_stale = failing_once
        await _enqueue(queue)
        task = asyncio.create_task(worker.run())
        for _ in range(100):
            if handler.await_count:
                break
            await asyncio.sleep(0.01)
        worker.stop()
        await asyncio.wait_for(task, timeout=1)

        handler.assert_awaited_once()
        assert len(calls) > 1


class TestPipelineHandlers:
    @pytest.mark.asyncio
    async def test_incoming_records_turn_and_queues_reply(self, queue, registry, handoff, whatsapp_request):
        deployment = await registry.create("t1", whatsapp_request(max_messages_before_handoff=1))
        collaborators = Collaborators()
        handlers = PipelineHandlers(queue, collaborators, registry, handoff)
        await _enqueue(queue, deployment_id=deployment.id)
        [entry] = await queue.peek(queue.streams.incoming)

        await handlers.handle_incoming(entry)

        assert [e.message_id for e in collaborators.ai_engine.received] == ["m1"]
        state = await handoff.get_state("conv_1")
        assert state.ai_turns == 1
        assert state.state == HandoffState.HANDED_OFF
        [outbound] = await queue.peek(queue.streams.outgoing_whatsapp)
        assert outbound.message_id == "reply_m1"
        assert outbound.conversation_id == "conv_1"

    @pytest.mark.asyncio
    async def test_campaign_reply_does_not_count_turns(self, queue, registry, handoff):
        handlers = PipelineHandlers(queue, Collaborators(), registry, handoff)
        await _enqueue(queue, agent_type="campaign", campaign_id="camp_1")
        [entry] = await queue.peek(queue.streams.incoming)

        await handlers.handle_incoming(entry)

        assert await handoff.get_state("conv_1") is None

    @pytest.mark.asyncio
    async def test_no_reply_means_nothing_outbound(self, queue, registry, handoff):
        collaborators = Collaborators(ai_engine=InMemoryAIEngine(reply=False))
        handlers = PipelineHandlers(queue, collaborators, registry, handoff)
        await _enqueue(queue)
        [entry] = await queue.peek(queue.streams.incoming)

        await handlers.handle_incoming(entry)

        assert await queue.length(queue.streams.outgoing_whatsapp) == 0

    @pytest.mark.asyncio
    async def test_deleted_deployment_is_tolerated(self, queue, registry, handoff):
        handlers = PipelineHandlers(queue, Collaborators(), registry, handoff)
        await _enqueue(queue, deployment_id="gone")
        [entry] = await queue.peek(queue.streams.incoming)

        await handlers.handle_incoming(entry)

        assert await queue.length(queue.streams.outgoing_whatsapp) == 1

    @pytest.mark.asyncio
    async def test_redelivery_after_outbound_failure_replies_once(self, registry, handoff, whatsapp_request):
        queue = FlakyOutboundQueue()
        deployment = await registry.create("t1", whatsapp_request())
        collaborators = Collaborators()
        handlers = PipelineHandlers(queue, collaborators, registry, handoff)
        await queue.ensure_group(INCOMING, Groups.AI_INGESTION)
        worker = QueueWorker(queue, INCOMING, Groups.AI_INGESTION, handlers.handle_incoming,
                             consumer_name="ai-1", block_ms=0, claim_idle_ms=0)
        await _enqueue(queue, deployment_id=deployment.id)

        await worker.poll_once()
        assert await queue.pending_count(INCOMING, Groups.AI_INGESTION) == 1
        await worker.poll_once()

        assert [e.message_id for e in collaborators.ai_engine.received] == ["m1"]
        assert (await handoff.get_state("conv_1")).ai_turns == 1
        [outbound] = await queue.peek(queue.streams.outgoing_whatsapp)
        assert outbound.message_id == "reply_m1"
        assert await queue.pending_count(INCOMING, Groups.AI_INGESTION) == 0

    @pytest.mark.asyncio
    async def test_turn_is_not_counted_twice_on_redelivery(self, queue, registry, handoff, whatsapp_request):
        deployment = await registry.create("t1", whatsapp_request())
        handlers = PipelineHandlers(queue, Collaborators(), registry, handoff)
        await _enqueue(queue, deployment_id=deployment.id)
        [entry] = await queue.peek(queue.streams.incoming)

        await handlers.handle_incoming(entry)
        await handlers.handle_incoming(entry)

        assert (await handoff.get_state("conv_1")).ai_turns == 1
        assert await queue.length(queue.streams.outgoing_whatsapp) == 2


class TestWorkerPool:
    @pytest.mark.asyncio
    async def test_pool_drains_incoming_through_outbound(self, queue, registry, handoff):
        collaborators = Collaborators(outbound=InMemoryOutboundSender())
        handlers = PipelineHandlers(queue, collaborators, registry, handoff)
        pool = build_worker_pool(
            queue, handlers,
            QueueConfig(block_ms=20, claim_idle_ms=60000),
            WorkerConfig(ai_workers=2, workflow_workers=1, outbound_workers=1, shutdown_timeout=1.0),
        )
        await pool.start()
        assert pool.running
        await _enqueue(queue)

        for _ in range(100):
            if collaborators.outbound.received:
                break
            await asyncio.sleep(0.01)
        await pool.stop()

        assert [e.message_id for e in collaborators.outbound.received] == ["reply_m1"]
        assert not pool.running

    def test_pool_size_follows_config(self, queue, registry, handoff):
        handlers = PipelineHandlers(queue, Collaborators(), registry, handoff)
        pool = build_worker_pool(queue, handlers, QueueConfig(),
                                 WorkerConfig(ai_workers=3, workflow_workers=2, outbound_workers=1))
        groups = [w.group for w in pool.workers]
        assert groups.count(Groups.AI_INGESTION) == 3
        assert groups.count(Groups.WORKFLOW_TRIGGERS) == 2
        assert groups.count(Groups.OUTBOUND_WHATSAPP) == 1
        assert groups.count(Groups.OUTBOUND_EMAIL) == 1
