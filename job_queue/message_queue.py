"""
Message Queue — Abstract interface with Redis Streams and in-memory backends.

Stream Topology:
  stream:incoming_messages   → group ai-ingestion        (AI engine)
  stream:workflow_triggers   → group workflow-triggers   (workflow engine)
  stream:outgoing:whatsapp   → group outbound-whatsapp   (WhatsApp adapter)
  stream:outgoing:email      → group outbound-email      (email adapter)
  stream:dead_letter         — inspection only

Entry Schema (all values are strings on the wire):
  {
      "message_id":      inbound (or outbound) message id,
      "tenant_id":       owning tenant,
      "conversation_id": conversation the message belongs to,
      "channel":         email|phone|whatsapp|widget,
      "destination":     workflow|ai|outbound,
      "is_workflow":     "1" when routed to the workflow engine,
      "trigger_data":    JSON object for workflow entries, "" otherwise,
      "agent_type":      default|campaign,
      "campaign_id":     campaign id when agent_type == campaign,
      "deployment_id":   deployment that authorized the AI reply,
      "created_at":      ISO timestamp when the entry was appended,
      "metadata":        JSON object (dead-letter reason, source stream …),
  }

Delivery is at-least-once: an entry stays pending for its consumer group
until acked, and is reclaimed by another consumer once it has been idle for
claim_idle_ms. Consumers use the processed ledger (mark_processed /
is_processed) to make redelivery harmless, and record_step / get_step to
resume a multi-step handler after its last completed side effect.
"""
from __future__ import annotations

import asyncio
import itertools
import json
import time
import structlog
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Optional

from redis.exceptions import RedisError, ResponseError

from config.settings import StreamConfig
from core.errors import QueueUnavailable

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Entry Model
# ──────────────────────────────────────────────────────────────

_WIRE_ONLY = ("entry_id", "stream", "delivery_count")


@dataclass
class QueueEntry:
    """A unit of work on a stream."""
    message_id: str
    tenant_id: str
    channel: str
    conversation_id: str = ""
    destination: str = ""                     # workflow | ai | outbound
    is_workflow: bool = False
    trigger_data: Optional[dict[str, Any]] = None
    agent_type: str = "default"
    campaign_id: Optional[str] = None
    deployment_id: Optional[str] = None
    created_at: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    # Filled in on read, never serialized
    entry_id: str = ""
    stream: str = ""
    delivery_count: int = 0

    def __post_init__(self):
        if not self.destination:
            self.destination = "workflow" if self.is_workflow else "ai"
        if not self.created_at:
            self.created_at = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> dict[str, str]:
        d = asdict(self)
        for key in _WIRE_ONLY:
            d.pop(key)
        d["is_workflow"] = "1" if self.is_workflow else "0"
        d["trigger_data"] = json.dumps(self.trigger_data) if self.trigger_data is not None else ""
        d["metadata"] = json.dumps(self.metadata)
        return {k: ("" if v is None else str(v)) for k, v in d.items()}

    @classmethod
    def from_dict(cls, data: dict[str, Any], entry_id: str = "", stream: str = "",
                  delivery_count: int = 0) -> QueueEntry:
        data = dict(data)  # copy
        data["is_workflow"] = str(data.get("is_workflow", "0")) in ("1", "true", "True")
        raw_trigger = data.get("trigger_data")
        data["trigger_data"] = json.loads(raw_trigger) if isinstance(raw_trigger, str) and raw_trigger else None
        raw_meta = data.get("metadata")
        data["metadata"] = json.loads(raw_meta) if isinstance(raw_meta, str) and raw_meta else {}
        if not isinstance(data["metadata"], dict) or not isinstance(data["trigger_data"], (dict, type(None))):
            raise ValueError("trigger_data and metadata must be JSON objects")
        for optional in ("campaign_id", "deployment_id"):
            if data.get(optional) == "":
                data[optional] = None
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__ and k not in _WIRE_ONLY}
        return cls(**known, entry_id=entry_id, stream=stream, delivery_count=delivery_count)


def _raw_entry(fields: dict[str, Any], entry_id: str = "", stream: str = "", **metadata) -> QueueEntry:
    """Stand-in for an entry whose fields do not decode; keeps the raw fields."""
    return QueueEntry(
        message_id=str(fields.get("message_id", "")),
        tenant_id=str(fields.get("tenant_id", "")),
        channel=str(fields.get("channel", "")),
        conversation_id=str(fields.get("conversation_id", "")),
        metadata={"raw_fields": {str(k): str(v) for k, v in fields.items()}, **metadata},
        entry_id=entry_id,
        stream=stream,
    )


def _inspect(fields: dict[str, Any], entry_id: str, stream: str) -> QueueEntry:
    """Decode for read-only inspection (peek); never fails."""
    try:
        return QueueEntry.from_dict(fields, entry_id=entry_id, stream=stream)
    except (ValueError, TypeError) as e:
        return _raw_entry(fields, entry_id=entry_id, stream=stream, undecodable=str(e))


# ──────────────────────────────────────────────────────────────
#  Consumer Group Names
# ──────────────────────────────────────────────────────────────

class Groups:
    AI_INGESTION = "ai-ingestion"
    WORKFLOW_TRIGGERS = "workflow-triggers"
    OUTBOUND_WHATSAPP = "outbound-whatsapp"
    OUTBOUND_EMAIL = "outbound-email"


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):
    """
    Abstract stream queue. Backends implement the primitive operations;
    enqueue / enqueue_outbound / dead_letter / stats are shared.
    """

    def __init__(self, streams: StreamConfig = None, processed_ttl_seconds: int = 86400):
        self.streams = streams or StreamConfig()
        self.processed_ttl_seconds = processed_ttl_seconds

    def topology(self) -> list[tuple[str, str]]:
        """(stream, consumer group) pairs workers consume from."""
        return [
            (self.streams.incoming, Groups.AI_INGESTION),
            (self.streams.workflow, Groups.WORKFLOW_TRIGGERS),
            (self.streams.outgoing_whatsapp, Groups.OUTBOUND_WHATSAPP),
            (self.streams.outgoing_email, Groups.OUTBOUND_EMAIL),
        ]

    def outbound_stream(self, channel: str) -> Optional[tuple[str, str]]:
        return {
            "whatsapp": (self.streams.outgoing_whatsapp, Groups.OUTBOUND_WHATSAPP),
            "email": (self.streams.outgoing_email, Groups.OUTBOUND_EMAIL),
        }.get(str(channel))

    # ── Backend primitives ────────────────────────────────

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def append(self, stream: str, entry: QueueEntry) -> str:
        """Append an entry; returns the stream-assigned entry id."""
        ...

    @abstractmethod
    async def ensure_group(self, stream: str, group: str):
        """Create the consumer group (and stream) if missing."""
        ...

    @abstractmethod
    async def read(self, stream: str, group: str, consumer: str,
                   count: int = 1, block_ms: int = 0) -> list[QueueEntry]:
        """Deliver never-delivered entries to `consumer`, waiting up to block_ms."""
        ...

    @abstractmethod
    async def claim_stale(self, stream: str, group: str, consumer: str,
                          min_idle_ms: int, count: int = 1) -> list[QueueEntry]:
        """Take over pending entries idle for at least min_idle_ms."""
        ...

    @abstractmethod
    async def ack(self, stream: str, group: str, entry_id: str) -> bool:
        """Acknowledge an entry. Acking twice is harmless."""
        ...

    @abstractmethod
    async def length(self, stream: str) -> int:
        ...

    @abstractmethod
    async def pending_count(self, stream: str, group: str) -> int:
        ...

    @abstractmethod
    async def peek(self, stream: str, count: int = 10) -> list[QueueEntry]:
        """Oldest entries of a stream, without delivering them."""
        ...

    @abstractmethod
    async def mark_processed(self, group: str, message_id: str) -> bool:
        """Record that `group` finished `message_id`. False if already recorded."""
        ...

    @abstractmethod
    async def is_processed(self, group: str, message_id: str) -> bool:
        ...

    @abstractmethod
    async def record_step(self, group: str, message_id: str, step: str, value: str = "") -> None:
        """Remember that a side effect of a multi-step handler has happened."""
        ...

    @abstractmethod
    async def get_step(self, group: str, message_id: str, step: str) -> Optional[str]:
        """Value stored by record_step, or None if the step has not happened."""
        ...

    # ── Decoding ──────────────────────────────────────────

    async def _decode(self, stream: str, group: str,
                      delivered: list[tuple[str, dict[str, Any], int]]) -> list[QueueEntry]:
        """
        Decode delivered (entry_id, fields, delivery_count) triples. An entry
        that cannot be decoded is dead-lettered with its raw fields and acked.
        """
        entries = []
        for entry_id, fields, delivery_count in delivered:
            try:
                entries.append(QueueEntry.from_dict(fields, entry_id=entry_id, stream=stream,
                                                    delivery_count=delivery_count))
            except (ValueError, TypeError) as e:
                await self._dead_letter_raw(stream, group, entry_id, fields, delivery_count, e)
        return entries

    async def _dead_letter_raw(self, stream: str, group: str, entry_id: str,
                               fields: dict[str, Any], delivery_count: int, error: Exception):
        dead = _raw_entry(
            fields,
            dead_letter_reason=f"undecodable entry: {type(error).__name__}: {error}",
            source_stream=stream,
            source_entry_id=entry_id,
            delivery_count=delivery_count,
            dead_lettered_at=datetime.now(timezone.utc).isoformat(),
        )
        await self.append(self.streams.dead_letter, dead)
        await self.ack(stream, group, entry_id)
        logger.error("entry_undecodable",
                     stream=stream,
                     group=group,
                     entry_id=entry_id,
                     error=str(error))

    # ── Producer API ──────────────────────────────────────

    async def enqueue(
        self,
        message_id: str,
        tenant_id: str,
        conversation_id: str,
        channel: str,
        is_workflow: bool,
        trigger_data: Optional[dict[str, Any]] = None,
        agent_type: str = "default",
        campaign_id: Optional[str] = None,
        deployment_id: Optional[str] = None,
    ) -> str:
        """Append a routed inbound message to the workflow or AI stream."""
        stream = self.streams.workflow if is_workflow else self.streams.incoming
        entry = QueueEntry(
            message_id=message_id,
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            channel=str(getattr(channel, "value", channel)),
            is_workflow=is_workflow,
            trigger_data=trigger_data if is_workflow else None,
            agent_type=str(getattr(agent_type, "value", agent_type)),
            campaign_id=campaign_id,
            deployment_id=deployment_id,
        )
        entry_id = await self.append(stream, entry)
        logger.info("message_enqueued",
                    stream=stream,
                    entry_id=entry_id,
                    message_id=message_id,
                    tenant_id=tenant_id,
                    agent_type=entry.agent_type)
        return entry_id

    async def enqueue_outbound(self, message_id: str, tenant_id: str, channel: str,
                               conversation_id: str = "",
                               metadata: dict[str, Any] = None) -> Optional[str]:
        """Queue an outgoing message for its channel adapter. None for channels without one."""
        channel = str(getattr(channel, "value", channel))
        target = self.outbound_stream(channel)
        if target is None:
            logger.warning("outbound_channel_unsupported", channel=channel, message_id=message_id)
            return None
        entry = QueueEntry(
            message_id=message_id,
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            channel=channel,
            destination="outbound",
            metadata=metadata or {},
        )
        entry_id = await self.append(target[0], entry)
        logger.info("outbound_enqueued", stream=target[0], entry_id=entry_id, message_id=message_id)
        return entry_id

    async def dead_letter(self, entry: QueueEntry, reason: str) -> str:
        """Copy an entry to the dead-letter stream with the failure reason."""
        dead = QueueEntry.from_dict(entry.to_dict())
        dead.metadata.update({
            "dead_letter_reason": reason,
            "source_stream": entry.stream,
            "source_entry_id": entry.entry_id,
            "delivery_count": entry.delivery_count,
            "dead_lettered_at": datetime.now(timezone.utc).isoformat(),
        })
        entry_id = await self.append(self.streams.dead_letter, dead)
        logger.warning("entry_dead_lettered",
                       stream=entry.stream,
                       entry_id=entry.entry_id,
                       message_id=entry.message_id,
                       deliveries=entry.delivery_count,
                       reason=reason)
        return entry_id

    async def stats(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for stream, group in self.topology():
            result[stream] = {
                "group": group,
                "length": await self.length(stream),
                "pending": await self.pending_count(stream, group),
            }
        result[self.streams.dead_letter] = {"length": await self.length(self.streams.dead_letter)}
        return result


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

class RedisMessageQueue(MessageQueue):
    """
    Production queue backed by Redis Streams with consumer groups.

    - XADD / XREADGROUP / XACK for delivery
    - XAUTOCLAIM for reclaiming entries a dead consumer left pending
    - SET NX EX keys as the processed ledger
    Every Redis failure surfaces as QueueUnavailable.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", streams: StreamConfig = None,
                 processed_ttl_seconds: int = 86400):
        super().__init__(streams, processed_ttl_seconds)
        self._redis_url = redis_url
        self._redis = None

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._call("ping")
        logger.info("redis_queue_connected", url=self._redis_url)

    async def close(self):
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _call(self, op: str, *args, **kwargs):
        """Run the Redis command `op`; connection and command errors become QueueUnavailable."""
        if self._redis is None:
            raise QueueUnavailable("Queue is not connected", op=op)
        try:
            return await getattr(self._redis, op)(*args, **kwargs)
        except RedisError as e:
            raise QueueUnavailable(f"Redis {op} failed: {e}", op=op) from e

    async def append(self, stream: str, entry: QueueEntry) -> str:
        return await self._call("xadd", stream, entry.to_dict())

    async def ensure_group(self, stream: str, group: str):
        try:
            await self._call("xgroup_create", stream, group, id="0", mkstream=True)
            logger.info("consumer_group_created", stream=stream, group=group)
        except QueueUnavailable as e:
            if isinstance(e.__cause__, ResponseError) and "BUSYGROUP" in str(e.__cause__):
                return
            raise

    async def read(self, stream: str, group: str, consumer: str,
                   count: int = 1, block_ms: int = 0) -> list[QueueEntry]:
        response = await self._call(
            "xreadgroup",
            groupname=group,
            consumername=consumer,
            streams={stream: ">"},
            count=count,
            block=block_ms if block_ms > 0 else None,
        )
        delivered = [
            (entry_id, fields, 1)
            for _, messages in response or []
            for entry_id, fields in messages or []
            if fields
        ]
        return await self._decode(stream, group, delivered)

    async def claim_stale(self, stream: str, group: str, consumer: str,
                          min_idle_ms: int, count: int = 1) -> list[QueueEntry]:
        response = await self._call(
            "xautoclaim",
            stream, group, consumer,
            min_idle_time=min_idle_ms,
            start_id="0-0",
            count=count,
        )
        claimed = response[1] if response and len(response) > 1 else []
        delivered = []
        for entry_id, fields in claimed:
            if not fields:
                continue
            details = await self._call(
                "xpending_range",
                stream, group, min=entry_id, max=entry_id, count=1,
            )
            times = int(details[0].get("times_delivered", 1)) if details else 1
            delivered.append((entry_id, fields, times))
        return await self._decode(stream, group, delivered)

    async def ack(self, stream: str, group: str, entry_id: str) -> bool:
        return bool(await self._call("xack", stream, group, entry_id))

    async def length(self, stream: str) -> int:
        return await self._call("xlen", stream)

    async def pending_count(self, stream: str, group: str) -> int:
        try:
            summary = await self._call("xpending", stream, group)
        except QueueUnavailable as e:
            if isinstance(e.__cause__, ResponseError) and "NOGROUP" in str(e.__cause__):
                return 0
            raise
        return int((summary or {}).get("pending", 0))

    async def peek(self, stream: str, count: int = 10) -> list[QueueEntry]:
        messages = await self._call("xrange", stream, count=count)
        return [_inspect(fields, entry_id, stream) for entry_id, fields in messages or [] if fields]

    @staticmethod
    def _processed_key(group: str, message_id: str) -> str:
        return f"processed:{group}:{message_id}"

    async def mark_processed(self, group: str, message_id: str) -> bool:
        result = await self._call(
            "set",
            self._processed_key(group, message_id), "1",
            nx=True, ex=self.processed_ttl_seconds,
        )
        return bool(result)

    async def is_processed(self, group: str, message_id: str) -> bool:
        return bool(await self._call("exists", self._processed_key(group, message_id)))

    async def record_step(self, group: str, message_id: str, step: str, value: str = "") -> None:
        await self._call("set", f"{step}:{group}:{message_id}", value, ex=self.processed_ttl_seconds)

    async def get_step(self, group: str, message_id: str, step: str) -> Optional[str]:
        return await self._call("get", f"{step}:{group}:{message_id}")


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

@dataclass
class _Pending:
    consumer: str
    delivered_at: float
    delivery_count: int


class _GroupState:
    def __init__(self):
        self.cursor = 0                               # index of next undelivered entry
        self.pending: dict[str, _Pending] = {}        # entry id → delivery record


class InMemoryMessageQueue(MessageQueue):
    """
    Development/test queue with the same consumer-group semantics as the
    Redis backend: ordered streams, one consumer per entry per group,
    pending entries until ack, idle-based reclaim. Single process, no
    persistence.
    """

    def __init__(self, streams: StreamConfig = None, processed_ttl_seconds: int = 86400):
        super().__init__(streams, processed_ttl_seconds)
        self._streams: dict[str, list[tuple[str, dict[str, str]]]] = {}
        self._groups: dict[tuple[str, str], _GroupState] = {}
        self._processed: set[tuple[str, str]] = set()
        self._steps: dict[tuple[str, str, str], str] = {}
        self._seq = itertools.count(1)
        self._cond: Optional[asyncio.Condition] = None
        self._closed = False

    def _condition(self) -> asyncio.Condition:
        if self._cond is None:
            self._cond = asyncio.Condition()
        return self._cond

    def _check_open(self, op: str):
        if self._closed:
            raise QueueUnavailable("Queue is closed", op=op)

    def _group(self, stream: str, group: str) -> _GroupState:
        state = self._groups.get((stream, group))
        if state is None:
            raise QueueUnavailable(f"NOGROUP no consumer group '{group}' for '{stream}'",
                                   stream=stream, group=group)
        return state

    def _lookup(self, stream: str, entry_id: str) -> Optional[dict[str, str]]:
        for eid, fields in self._streams.get(stream, []):
            if eid == entry_id:
                return fields
        return None

    async def connect(self):
        self._closed = False
        logger.info("inmemory_queue_connected")

    async def close(self):
        self._closed = True
        if self._cond is not None:
            async with self._cond:
                self._cond.notify_all()

    async def append(self, stream: str, entry: QueueEntry) -> str:
        self._check_open("append")
        entry_id = f"{int(time.time() * 1000)}-{next(self._seq)}"
        self._streams.setdefault(stream, []).append((entry_id, entry.to_dict()))
        cond = self._condition()
        async with cond:
            cond.notify_all()
        return entry_id

    async def ensure_group(self, stream: str, group: str):
        self._check_open("ensure_group")
        self._streams.setdefault(stream, [])
        if (stream, group) not in self._groups:
            self._groups[(stream, group)] = _GroupState()
            logger.info("consumer_group_created", stream=stream, group=group)

    def _take_new(self, stream: str, state: _GroupState, consumer: str,
                  count: int) -> list[tuple[str, dict[str, str], int]]:
        items = self._streams.get(stream, [])
        taken = items[state.cursor:state.cursor + count]
        state.cursor += len(taken)
        now = time.monotonic()
        for entry_id, _ in taken:
            state.pending[entry_id] = _Pending(consumer=consumer, delivered_at=now, delivery_count=1)
        return [(entry_id, fields, 1) for entry_id, fields in taken]

    async def read(self, stream: str, group: str, consumer: str,
                   count: int = 1, block_ms: int = 0) -> list[QueueEntry]:
        self._check_open("read")
        state = self._group(stream, group)
        delivered = self._take_new(stream, state, consumer, count)
        if delivered or block_ms <= 0:
            return await self._decode(stream, group, delivered)

        cond = self._condition()
        has_new = lambda: self._closed or state.cursor < len(self._streams.get(stream, []))
        try:
            async with cond:
                await asyncio.wait_for(cond.wait_for(has_new), timeout=block_ms / 1000)
        except asyncio.TimeoutError:
            return []
        self._check_open("read")
        return await self._decode(stream, group, self._take_new(stream, state, consumer, count))

    async def claim_stale(self, stream: str, group: str, consumer: str,
                          min_idle_ms: int, count: int = 1) -> list[QueueEntry]:
        self._check_open("claim_stale")
        state = self._group(stream, group)
        now = time.monotonic()
        delivered = []
        for entry_id, record in state.pending.items():
            if len(delivered) >= count:
                break
            if (now - record.delivered_at) * 1000 < min_idle_ms:
                continue
            fields = self._lookup(stream, entry_id)
            if fields is None:
                continue
            record.consumer = consumer
            record.delivered_at = now
            record.delivery_count += 1
            delivered.append((entry_id, fields, record.delivery_count))
        return await self._decode(stream, group, delivered)

    async def ack(self, stream: str, group: str, entry_id: str) -> bool:
        self._check_open("ack")
        state = self._groups.get((stream, group))
        if state is None:
            return False
        return state.pending.pop(entry_id, None) is not None

    async def length(self, stream: str) -> int:
        self._check_open("length")
        return len(self._streams.get(stream, []))

    async def pending_count(self, stream: str, group: str) -> int:
        self._check_open("pending_count")
        state = self._groups.get((stream, group))
        return len(state.pending) if state else 0

    async def peek(self, stream: str, count: int = 10) -> list[QueueEntry]:
        self._check_open("peek")
        return [
            _inspect(fields, entry_id, stream)
            for entry_id, fields in self._streams.get(stream, [])[:count]
        ]

    async def mark_processed(self, group: str, message_id: str) -> bool:
        self._check_open("mark_processed")
        key = (group, message_id)
        if key in self._processed:
            return False
        self._processed.add(key)
        return True

    async def is_processed(self, group: str, message_id: str) -> bool:
        self._check_open("is_processed")
        return (group, message_id) in self._processed

    async def record_step(self, group: str, message_id: str, step: str, value: str = "") -> None:
        self._check_open("record_step")
        self._steps[(step, group, message_id)] = value

    async def get_step(self, group: str, message_id: str, step: str) -> Optional[str]:
        self._check_open("get_step")
        return self._steps.get((step, group, message_id))


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[MessageQueue] = None


def create_message_queue(queue_config: dict[str, Any] = None) -> MessageQueue:
    """Factory: create the appropriate queue backend."""
    global _instance
    if _instance:
        return _instance

    config = queue_config or {}
    backend = config.get("backend", "memory")
    streams = config.get("streams")
    if isinstance(streams, dict):
        streams = StreamConfig(**streams)
    ttl = int(config.get("processed_ttl_seconds", 86400))

    if backend == "redis":
        url = config.get("redis_url", "redis://localhost:6379")
        _instance = RedisMessageQueue(redis_url=url, streams=streams, processed_ttl_seconds=ttl)
    else:
        _instance = InMemoryMessageQueue(streams=streams, processed_ttl_seconds=ttl)

    logger.info("message_queue_created", backend=backend)
    return _instance


def get_message_queue() -> MessageQueue:
    """Return the singleton queue instance."""
    global _instance
    if _instance is None:
        _instance = create_message_queue()
    return _instance


def reset_message_queue() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
