"""
Job Queue Module

At-least-once job delivery for the two pipeline stages.

Features:
- Broker-side deduplication by idempotency key (the key becomes the job id)
- Priorities (lower value served first, FIFO within a priority)
- Leases with heartbeats; expired leases are redelivered as stalled jobs
- Exponential backoff between attempts and a dead letter set
- Bounded-concurrency consumers via asyncio semaphores

Two brokers share one interface: RedisJobQueue for multi-process
deployments and InMemoryJobQueue for a single process and tests.
"""

import asyncio
import heapq
import itertools
import json
import logging
import random
import time
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from redis.asyncio import Redis

from .errors import is_retryable

logger = logging.getLogger(__name__)

# Completed job records are kept this long (and keep deduplicating) in Redis
COMPLETED_RETENTION_MS = 24 * 60 * 60 * 1000
# Score spacing between priorities; larger than any epoch-ms timestamp
PRIORITY_SCORE_FACTOR = 10 ** 13
MAX_PRIORITY = 100


def now_ms() -> int:
    return int(time.time() * 1000)


# =============================================================================
# RETRY POLICY
# =============================================================================

@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 5
    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 600.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay with exponential backoff and jitter (attempt is 0-based)."""
    delay = min(
        config.base_delay_seconds * (config.exponential_base ** attempt),
        config.max_delay_seconds
    )
    jitter = delay * config.jitter_factor * (2 * random.random() - 1)
    return max(0, delay + jitter)


# =============================================================================
# JOBS
# =============================================================================

class JobState(str, Enum):
    """Where a job currently sits in the broker."""
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    DEAD = "dead"


@dataclass
class Job:
    """A single delivery of a queued job."""
    job_id: str
    queue: str
    name: str
    payload: Dict[str, Any]
    priority: int = 0
    attempts_made: int = 0
    max_attempts: int = 5
    state: JobState = JobState.WAITING
    enqueued_at: int = field(default_factory=now_ms)
    failed_reason: Optional[str] = None
    lease_token: Optional[str] = None

    @property
    def attempt(self) -> int:
        """1-based number of the current attempt."""
        return self.attempts_made + 1

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts_made + 1 >= self.max_attempts

    @classmethod
    def from_mapping(cls, queue: str, data: Dict[str, str]) -> "Job":
        return cls(
            job_id=data["id"],
            queue=queue,
            name=data.get("name", ""),
            payload=json.loads(data.get("payload") or "{}"),
            priority=int(data.get("priority", 0)),
            attempts_made=int(data.get("attempts_made", 0)),
            max_attempts=int(data.get("max_attempts", 1)),
            state=JobState(data.get("state", JobState.WAITING.value)),
            enqueued_at=int(data.get("enqueued_at", 0)),
            failed_reason=data.get("failed_reason") or None,
            lease_token=data.get("lease_token") or None,
        )


@dataclass
class EnqueueResult:
    job_id: str
    created: bool


@dataclass
class QueueCounts:
    waiting: int = 0
    delayed: int = 0
    active: int = 0
    completed: int = 0
    dead: int = 0

    @property
    def outstanding(self) -> int:
        return self.waiting + self.delayed + self.active


def _clamp_priority(priority: int) -> int:
    return max(0, min(MAX_PRIORITY, int(priority)))


# =============================================================================
# BROKER INTERFACE
# =============================================================================

class JobQueue(ABC):
    """Broker primitives used by producers and QueueWorker."""

    @abstractmethod
    async def enqueue(
        self,
        queue_name: str,
        name: str,
        payload: Dict[str, Any],
        idempotency_key: Optional[str] = None,
        priority: int = 0,
        max_attempts: int = 5,
    ) -> EnqueueResult:
        """Add a job; a known idempotency key is a no-op."""

    @abstractmethod
    async def reserve(self, queue_name: str, lease_ms: int) -> Optional[Job]:
        """Claim the next ready job, or None when nothing is ready."""

    @abstractmethod
    async def extend_lease(self, job: Job, lease_ms: int) -> bool:
        """Push the lease deadline out; False if the lease was lost."""

    @abstractmethod
    async def ack(self, job: Job) -> bool:
        """Mark a delivery as completed."""

    @abstractmethod
    async def retry(self, job: Job, delay_ms: int, consume_attempt: bool = True, reason: str = "") -> bool:
        """Reschedule a delivery after delay_ms."""

    @abstractmethod
    async def dead_letter(self, job: Job, reason: str) -> bool:
        """Move a delivery to the dead letter set."""

    @abstractmethod
    async def requeue_stalled(self, queue_name: str) -> List[str]:
        """Redeliver active jobs whose lease expired; returns their ids."""

    @abstractmethod
    async def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        pass

    @abstractmethod
    async def counts(self, queue_name: str) -> QueueCounts:
        pass

    @abstractmethod
    async def dead_letters(self, queue_name: str) -> List[Job]:
        pass

    async def close(self) -> None:
        pass


# =============================================================================
# IN-MEMORY BROKER
# =============================================================================

class InMemoryJobQueue(JobQueue):
    """
    Single-process broker.

    Args:
        clock: Millisecond clock, injectable so tests can step past delays
    """

    def __init__(self, clock: Callable[[], int] = now_ms):
        self._clock = clock
        self._lock = asyncio.Lock()
        self._seq = itertools.count()
        self._jobs: Dict[str, Dict[str, Job]] = defaultdict(dict)
        self._waiting: Dict[str, List[Tuple[int, int, str]]] = defaultdict(list)
        self._delayed: Dict[str, List[Tuple[int, int, str]]] = defaultdict(list)
        self._active: Dict[str, Dict[str, int]] = defaultdict(dict)
        self._dead: Dict[str, List[str]] = defaultdict(list)

    def _push_waiting(self, job: Job) -> None:
        job.state = JobState.WAITING
        heapq.heappush(self._waiting[job.queue], (job.priority, next(self._seq), job.job_id))

    def _promote_delayed(self, queue_name: str, now: int) -> None:
        delayed = self._delayed[queue_name]
        while delayed and delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(delayed)
            job = self._jobs[queue_name].get(job_id)
            if job is not None and job.state == JobState.DELAYED:
                self._push_waiting(job)

    def _owns(self, job: Job) -> Optional[Job]:
        stored = self._jobs[job.queue].get(job.job_id)
        if stored is None or stored.state != JobState.ACTIVE:
            return None
        if stored.lease_token != job.lease_token:
            return None
        return stored

    def _release(self, stored: Job) -> None:
        self._active[stored.queue].pop(stored.job_id, None)
        stored.lease_token = None

    async def enqueue(
        self,
        queue_name: str,
        name: str,
        payload: Dict[str, Any],
        idempotency_key: Optional[str] = None,
        priority: int = 0,
        max_attempts: int = 5,
    ) -> EnqueueResult:
        job_id = idempotency_key or uuid.uuid4().hex
        async with self._lock:
            if job_id in self._jobs[queue_name]:
                return EnqueueResult(job_id=job_id, created=False)
            job = Job(
                job_id=job_id,
                queue=queue_name,
                name=name,
                payload=dict(payload),
                priority=_clamp_priority(priority),
                max_attempts=max(1, max_attempts),
                enqueued_at=self._clock(),
            )
            self._jobs[queue_name][job_id] = job
            self._push_waiting(job)
        return EnqueueResult(job_id=job_id, created=True)

    async def reserve(self, queue_name: str, lease_ms: int) -> Optional[Job]:
        async with self._lock:
            now = self._clock()
            self._promote_delayed(queue_name, now)
            waiting = self._waiting[queue_name]
            while waiting:
                _, _, job_id = heapq.heappop(waiting)
                job = self._jobs[queue_name].get(job_id)
                if job is None or job.state != JobState.WAITING:
                    continue
                job.state = JobState.ACTIVE
                job.lease_token = uuid.uuid4().hex
                self._active[queue_name][job_id] = now + lease_ms
                return replace(job, payload=dict(job.payload))
        return None

    async def extend_lease(self, job: Job, lease_ms: int) -> bool:
        async with self._lock:
            stored = self._owns(job)
            if stored is None:
                return False
            self._active[job.queue][job.job_id] = self._clock() + lease_ms
            return True

    async def ack(self, job: Job) -> bool:
        async with self._lock:
            stored = self._owns(job)
            if stored is None:
                return False
            self._release(stored)
            stored.state = JobState.COMPLETED
            return True

    async def retry(self, job: Job, delay_ms: int, consume_attempt: bool = True, reason: str = "") -> bool:
        async with self._lock:
            stored = self._owns(job)
            if stored is None:
                return False
            self._release(stored)
            if consume_attempt:
                stored.attempts_made += 1
            stored.failed_reason = reason or None
            if delay_ms <= 0:
                self._push_waiting(stored)
            else:
                stored.state = JobState.DELAYED
                heapq.heappush(
                    self._delayed[job.queue],
                    (self._clock() + delay_ms, next(self._seq), job.job_id),
                )
            return True

    async def dead_letter(self, job: Job, reason: str) -> bool:
        async with self._lock:
            stored = self._owns(job)
            if stored is None:
                return False
            self._release(stored)
            stored.attempts_made += 1
            stored.failed_reason = reason
            stored.state = JobState.DEAD
            self._dead[job.queue].append(job.job_id)
            return True

    async def requeue_stalled(self, queue_name: str) -> List[str]:
        stalled = []
        async with self._lock:
            now = self._clock()
            for job_id, deadline in list(self._active[queue_name].items()):
                if deadline > now:
                    continue
                job = self._jobs[queue_name][job_id]
                self._release(job)
                job.attempts_made += 1
                if job.attempts_made >= job.max_attempts:
                    job.failed_reason = "job stalled more than allowable limit"
                    job.state = JobState.DEAD
                    self._dead[queue_name].append(job_id)
                else:
                    self._push_waiting(job)
                stalled.append(job_id)
        return stalled

    async def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        job = self._jobs[queue_name].get(job_id)
        return replace(job) if job else None

    async def counts(self, queue_name: str) -> QueueCounts:
        counts = QueueCounts()
        for job in self._jobs[queue_name].values():
            setattr(counts, job.state.value, getattr(counts, job.state.value) + 1)
        return counts

    async def dead_letters(self, queue_name: str) -> List[Job]:
        return [replace(self._jobs[queue_name][job_id]) for job_id in self._dead[queue_name]]

    def jobs(self, queue_name: str) -> List[Job]:
        """Every job ever enqueued on a queue, in no particular order."""
        return [replace(job) for job in self._jobs[queue_name].values()]


# =============================================================================
# REDIS BROKER
# =============================================================================

ENQUEUE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return 0
end
redis.call('HSET', KEYS[1],
    'id', ARGV[1], 'name', ARGV[2], 'payload', ARGV[3],
    'priority', ARGV[4], 'max_attempts', ARGV[5], 'attempts_made', 0,
    'state', 'waiting', 'enqueued_at', ARGV[6])
redis.call('ZADD', KEYS[2], ARGV[7], ARGV[1])
return 1
"""

# KEYS: wait, delayed, active. ARGV: now, lease deadline, job key prefix, token, priority factor
RESERVE_SCRIPT = """
local now = tonumber(ARGV[1])
local factor = tonumber(ARGV[5])
local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', now, 'LIMIT', 0, 100)
for _, id in ipairs(due) do
    redis.call('ZREM', KEYS[2], id)
    local prio = tonumber(redis.call('HGET', ARGV[3] .. id, 'priority') or '0')
    redis.call('ZADD', KEYS[1], prio * factor + now, id)
    redis.call('HSET', ARGV[3] .. id, 'state', 'waiting')
end

local popped = redis.call('ZPOPMIN', KEYS[1])
if not popped[1] then
    return nil
end
local id = popped[1]
local job_key = ARGV[3] .. id
redis.call('ZADD', KEYS[3], ARGV[2], id)
redis.call('HSET', job_key, 'state', 'active', 'lease_token', ARGV[4])
return redis.call('HGETALL', job_key)
"""

# KEYS: job, active. ARGV: id, token, deadline
EXTEND_SCRIPT = """
if redis.call('HGET', KEYS[1], 'lease_token') ~= ARGV[2] then
    return 0
end
if not redis.call('ZSCORE', KEYS[2], ARGV[1]) then
    return 0
end
redis.call('ZADD', KEYS[2], ARGV[3], ARGV[1])
return 1
"""

# KEYS: job, active, completed counter. ARGV: id, token, now, retention ms
ACK_SCRIPT = """
if redis.call('HGET', KEYS[1], 'lease_token') ~= ARGV[2] then
    return 0
end
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('HSET', KEYS[1], 'state', 'completed', 'finished_at', ARGV[3])
redis.call('HDEL', KEYS[1], 'lease_token')
redis.call('PEXPIRE', KEYS[1], ARGV[4])
redis.call('INCR', KEYS[3])
return 1
"""

# KEYS: job, active, delayed, wait. ARGV: id, token, ready at, consume, reason, score if immediate
RETRY_SCRIPT = """
if redis.call('HGET', KEYS[1], 'lease_token') ~= ARGV[2] then
    return 0
end
redis.call('ZREM', KEYS[2], ARGV[1])
if ARGV[4] == '1' then
    redis.call('HINCRBY', KEYS[1], 'attempts_made', 1)
end
redis.call('HDEL', KEYS[1], 'lease_token')
redis.call('HSET', KEYS[1], 'failed_reason', ARGV[5])
if ARGV[6] ~= '' then
    redis.call('HSET', KEYS[1], 'state', 'waiting')
    redis.call('ZADD', KEYS[4], ARGV[6], ARGV[1])
else
    redis.call('HSET', KEYS[1], 'state', 'delayed')
    redis.call('ZADD', KEYS[3], ARGV[3], ARGV[1])
end
return 1
"""

# KEYS: job, active, dead. ARGV: id, token, now, reason
DEAD_LETTER_SCRIPT = """
if redis.call('HGET', KEYS[1], 'lease_token') ~= ARGV[2] then
    return 0
end
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('HINCRBY', KEYS[1], 'attempts_made', 1)
redis.call('HDEL', KEYS[1], 'lease_token')
redis.call('HSET', KEYS[1], 'state', 'dead', 'failed_reason', ARGV[4], 'finished_at', ARGV[3])
redis.call('ZADD', KEYS[3], ARGV[3], ARGV[1])
return 1
"""

# KEYS: active, wait, dead. ARGV: now, job key prefix, priority factor
REQUEUE_STALLED_SCRIPT = """
local now = tonumber(ARGV[1])
local factor = tonumber(ARGV[3])
local stalled = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', now, 'LIMIT', 0, 100)
for _, id in ipairs(stalled) do
    local key = ARGV[2] .. id
    redis.call('ZREM', KEYS[1], id)
    redis.call('HDEL', key, 'lease_token')
    local made = redis.call('HINCRBY', key, 'attempts_made', 1)
    local max = tonumber(redis.call('HGET', key, 'max_attempts') or '1')
    if made >= max then
        redis.call('HSET', key, 'state', 'dead', 'failed_reason', 'job stalled more than allowable limit')
        redis.call('ZADD', KEYS[3], now, id)
    else
        local prio = tonumber(redis.call('HGET', key, 'priority') or '0')
        redis.call('HSET', key, 'state', 'waiting')
        redis.call('ZADD', KEYS[2], prio * factor + now, id)
    end
end
return stalled
"""


class RedisJobQueue(JobQueue):
    """
    Broker on Redis sorted sets and hashes.

    Layout per queue (prefix `pageflow:queue:<name>:`):
        job:<id>   hash with the job record
        wait       ready jobs scored by priority then enqueue time
        delayed    backoff jobs scored by ready-at ms
        active     leased jobs scored by lease deadline ms
        dead       dead-lettered jobs scored by failure time
        completed  counter
    """

    def __init__(
        self,
        client: Redis,
        prefix: str = "pageflow:queue:",
        clock: Callable[[], int] = now_ms,
    ):
        self.client = client
        self.prefix = prefix
        self._clock = clock
        self._enqueue = client.register_script(ENQUEUE_SCRIPT)
        self._reserve = client.register_script(RESERVE_SCRIPT)
        self._extend = client.register_script(EXTEND_SCRIPT)
        self._ack = client.register_script(ACK_SCRIPT)
        self._retry = client.register_script(RETRY_SCRIPT)
        self._dead_letter = client.register_script(DEAD_LETTER_SCRIPT)
        self._requeue_stalled = client.register_script(REQUEUE_STALLED_SCRIPT)

    def _base(self, queue_name: str) -> str:
        return f"{self.prefix}{queue_name}:"

    def _job_key(self, queue_name: str, job_id: str) -> str:
        return f"{self._base(queue_name)}job:{job_id}"

    def _key(self, queue_name: str, part: str) -> str:
        return f"{self._base(queue_name)}{part}"

    @staticmethod
    def _pairs(flat: List[Any]) -> Dict[str, str]:
        return {
            _text(flat[i]): _text(flat[i + 1])
            for i in range(0, len(flat), 2)
        }

    async def enqueue(
        self,
        queue_name: str,
        name: str,
        payload: Dict[str, Any],
        idempotency_key: Optional[str] = None,
        priority: int = 0,
        max_attempts: int = 5,
    ) -> EnqueueResult:
        job_id = idempotency_key or uuid.uuid4().hex
        now = self._clock()
        priority = _clamp_priority(priority)
        created = await self._enqueue(
            keys=[self._job_key(queue_name, job_id), self._key(queue_name, "wait")],
            args=[
                job_id, name, json.dumps(payload), priority, max(1, max_attempts),
                now, priority * PRIORITY_SCORE_FACTOR + now,
            ],
        )
        return EnqueueResult(job_id=job_id, created=bool(int(created)))

    async def reserve(self, queue_name: str, lease_ms: int) -> Optional[Job]:
        now = self._clock()
        raw = await self._reserve(
            keys=[
                self._key(queue_name, "wait"),
                self._key(queue_name, "delayed"),
                self._key(queue_name, "active"),
            ],
            args=[now, now + lease_ms, f"{self._base(queue_name)}job:", uuid.uuid4().hex, PRIORITY_SCORE_FACTOR],
        )
        if not raw:
            return None
        return Job.from_mapping(queue_name, self._pairs(raw))

    async def extend_lease(self, job: Job, lease_ms: int) -> bool:
        ok = await self._extend(
            keys=[self._job_key(job.queue, job.job_id), self._key(job.queue, "active")],
            args=[job.job_id, job.lease_token or "", self._clock() + lease_ms],
        )
        return bool(int(ok))

    async def ack(self, job: Job) -> bool:
        ok = await self._ack(
            keys=[
                self._job_key(job.queue, job.job_id),
                self._key(job.queue, "active"),
                self._key(job.queue, "completed"),
            ],
            args=[job.job_id, job.lease_token or "", self._clock(), COMPLETED_RETENTION_MS],
        )
        return bool(int(ok))

    async def retry(self, job: Job, delay_ms: int, consume_attempt: bool = True, reason: str = "") -> bool:
        now = self._clock()
        immediate_score = str(job.priority * PRIORITY_SCORE_FACTOR + now) if delay_ms <= 0 else ""
        ok = await self._retry(
            keys=[
                self._job_key(job.queue, job.job_id),
                self._key(job.queue, "active"),
                self._key(job.queue, "delayed"),
                self._key(job.queue, "wait"),
            ],
            args=[
                job.job_id, job.lease_token or "", now + max(0, delay_ms),
                "1" if consume_attempt else "0", reason, immediate_score,
            ],
        )
        return bool(int(ok))

    async def dead_letter(self, job: Job, reason: str) -> bool:
        ok = await self._dead_letter(
            keys=[
                self._job_key(job.queue, job.job_id),
                self._key(job.queue, "active"),
                self._key(job.queue, "dead"),
            ],
            args=[job.job_id, job.lease_token or "", self._clock(), reason],
        )
        return bool(int(ok))

    async def requeue_stalled(self, queue_name: str) -> List[str]:
        stalled = await self._requeue_stalled(
            keys=[
                self._key(queue_name, "active"),
                self._key(queue_name, "wait"),
                self._key(queue_name, "dead"),
            ],
            args=[self._clock(), f"{self._base(queue_name)}job:", PRIORITY_SCORE_FACTOR],
        )
        return [_text(job_id) for job_id in stalled or []]

    async def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        data = await self.client.hgetall(self._job_key(queue_name, job_id))
        if not data:
            return None
        return Job.from_mapping(queue_name, {_text(k): _text(v) for k, v in data.items()})

    async def counts(self, queue_name: str) -> QueueCounts:
        async with self.client.pipeline(transaction=False) as pipe:
            pipe.zcard(self._key(queue_name, "wait"))
            pipe.zcard(self._key(queue_name, "delayed"))
            pipe.zcard(self._key(queue_name, "active"))
            pipe.get(self._key(queue_name, "completed"))
            pipe.zcard(self._key(queue_name, "dead"))
            waiting, delayed, active, completed, dead = await pipe.execute()
        return QueueCounts(
            waiting=int(waiting),
            delayed=int(delayed),
            active=int(active),
            completed=int(completed or 0),
            dead=int(dead),
        )

    async def dead_letters(self, queue_name: str) -> List[Job]:
        job_ids = await self.client.zrange(self._key(queue_name, "dead"), 0, -1)
        jobs = []
        for job_id in job_ids:
            job = await self.get_job(queue_name, _text(job_id))
            if job is not None:
                jobs.append(job)
        return jobs

    async def close(self) -> None:
        await self.client.aclose()


def _text(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


# =============================================================================
# CONSUMER
# =============================================================================

JobHandler = Callable[[Job], Awaitable[Any]]
DeadLetterHook = Callable[[Job, str], Awaitable[Any]]


class QueueWorker:
    """
    Consumes one queue with bounded concurrency.

    Handler outcomes:
    - return: the job is acked
    - exception with retryable=False: dead-lettered immediately
    - exception on the final attempt: dead-lettered
    - exception with consumes_attempt=False: rescheduled, attempt not spent
    - any other exception: rescheduled with exponential backoff

    `on_dead_letter` runs for every job that lands in the dead letter set,
    including jobs the stalled-job sweep gives up on without a handler call.
    """

    def __init__(
        self,
        queue: JobQueue,
        queue_name: str,
        handler: JobHandler,
        concurrency: int = 1,
        retry_config: Optional[RetryConfig] = None,
        lease_seconds: float = 300.0,
        job_timeout_seconds: Optional[float] = None,
        poll_interval_seconds: float = 0.5,
        stalled_check_interval_seconds: float = 30.0,
        on_dead_letter: Optional[DeadLetterHook] = None,
        metrics=None,
    ):
        self.queue = queue
        self.queue_name = queue_name
        self.handler = handler
        self.concurrency = concurrency
        self.retry_config = retry_config or RetryConfig()
        self.lease_ms = int(lease_seconds * 1000)
        self.job_timeout_seconds = job_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.stalled_check_interval_seconds = stalled_check_interval_seconds
        self.on_dead_letter = on_dead_letter
        self.metrics = metrics

        self._semaphore = asyncio.Semaphore(concurrency)
        self._tasks: Set[asyncio.Task] = set()
        self._stopping = asyncio.Event()

    async def run(self, stop_event: Optional[asyncio.Event] = None):
        """Consume until stop() is called or stop_event is set."""
        logger.info(f"Worker for '{self.queue_name}' started (concurrency={self.concurrency})")
        last_sweep = 0.0

        while not self._should_stop(stop_event):
            if time.monotonic() - last_sweep >= self.stalled_check_interval_seconds:
                await self.check_stalled()
                last_sweep = time.monotonic()

            await self._semaphore.acquire()
            try:
                job = await self.queue.reserve(self.queue_name, self.lease_ms)
            except Exception as e:
                self._semaphore.release()
                logger.error(f"Failed to reserve job from '{self.queue_name}': {e}")
                await self._idle(stop_event)
                continue

            if job is None:
                self._semaphore.release()
                await self._idle(stop_event)
                continue

            task = asyncio.create_task(self._run_and_release(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        if self._tasks:
            logger.info(f"Worker for '{self.queue_name}' draining {len(self._tasks)} in-flight jobs")
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info(f"Worker for '{self.queue_name}' stopped")

    def stop(self):
        self._stopping.set()

    def _should_stop(self, stop_event: Optional[asyncio.Event]) -> bool:
        return self._stopping.is_set() or (stop_event is not None and stop_event.is_set())

    async def _idle(self, stop_event: Optional[asyncio.Event]):
        waiter = stop_event or self._stopping
        try:
            await asyncio.wait_for(waiter.wait(), timeout=self.poll_interval_seconds)
        except asyncio.TimeoutError:
            pass

    async def _run_and_release(self, job: Job):
        try:
            await self.process_job(job)
        finally:
            self._semaphore.release()

    async def check_stalled(self) -> List[str]:
        """Redeliver jobs whose lease expired."""
        try:
            stalled = await self.queue.requeue_stalled(self.queue_name)
        except Exception as e:
            logger.error(f"Stalled-job check failed for '{self.queue_name}': {e}")
            return []
        for job_id in stalled:
            try:
                job = await self.queue.get_job(self.queue_name, job_id)
            except Exception as e:
                logger.error(f"Could not load stalled job {job_id} from '{self.queue_name}': {e}")
                continue
            if job is not None and job.state == JobState.DEAD:
                logger.error(
                    f"Job {job_id} on '{self.queue_name}' stalled on its final attempt "
                    f"and was dead-lettered"
                )
                if self.metrics:
                    self.metrics.record_job(self.queue_name, "dead_lettered")
                await self._notify_dead_letter(job, job.failed_reason or "stalled")
            else:
                logger.warning(f"Job {job_id} on '{self.queue_name}' stalled and was requeued")
        if self.metrics:
            try:
                counts = await self.queue.counts(self.queue_name)
            except Exception as e:
                logger.warning(f"Could not read queue depth for '{self.queue_name}': {e}")
            else:
                self.metrics.set_queue_depth(self.queue_name, counts.outstanding)
        return stalled

    async def process_available(self, max_jobs: Optional[int] = None) -> int:
        """
        Process the jobs that are ready right now, then return.

        Jobs are taken in batches of `concurrency`. Delayed jobs that are not
        yet due are left alone. Returns the number of deliveries processed.
        """
        processed = 0
        while max_jobs is None or processed < max_jobs:
            batch = []
            while len(batch) < self.concurrency and (max_jobs is None or processed + len(batch) < max_jobs):
                job = await self.queue.reserve(self.queue_name, self.lease_ms)
                if job is None:
                    break
                batch.append(job)
            if not batch:
                break
            await asyncio.gather(*(self.process_job(job) for job in batch))
            processed += len(batch)
        return processed

    async def process_job(self, job: Job) -> Any:
        """Run the handler for one delivery and settle the job."""
        started = time.monotonic()
        heartbeat = asyncio.create_task(self._heartbeat(job))
        try:
            if self.job_timeout_seconds:
                result = await asyncio.wait_for(self.handler(job), timeout=self.job_timeout_seconds)
            else:
                result = await self.handler(job)
        except Exception as exc:
            await self._handle_failure(job, exc)
            return None
        finally:
            heartbeat.cancel()

        if not await self.queue.ack(job):
            logger.warning(f"Job {job.job_id} on '{self.queue_name}' finished after losing its lease")
        else:
            logger.info(
                f"Job {job.job_id} ({job.name}) completed on '{self.queue_name}' "
                f"in {int((time.monotonic() - started) * 1000)}ms"
            )
        if self.metrics:
            self.metrics.record_job(self.queue_name, "completed")
        return result

    async def _heartbeat(self, job: Job):
        interval = max(self.lease_ms / 3000, 0.05)
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self.queue.extend_lease(job, self.lease_ms):
                    logger.warning(f"Lost lease on job {job.job_id} ('{self.queue_name}')")
                    return
            except Exception as e:
                logger.warning(f"Lease heartbeat failed for job {job.job_id}: {e}")

    async def _handle_failure(self, job: Job, exc: Exception):
        reason = f"{type(exc).__name__}: {exc}"

        if not is_retryable(exc):
            logger.error(f"Job {job.job_id} on '{self.queue_name}' failed permanently: {reason}")
            await self._dead_letter(job, reason)
            return

        consumes_attempt = getattr(exc, "consumes_attempt", True)
        if consumes_attempt and job.is_final_attempt:
            logger.error(
                f"Job {job.job_id} on '{self.queue_name}' failed on final attempt "
                f"{job.attempt}/{job.max_attempts}: {reason}"
            )
            await self._dead_letter(job, reason)
            return

        delay = calculate_delay(job.attempts_made, self.retry_config)
        retry_after_ms = getattr(exc, "retry_after_ms", 0) or 0
        delay_ms = max(int(delay * 1000), int(retry_after_ms))

        if consumes_attempt:
            logger.warning(
                f"Job {job.job_id} on '{self.queue_name}' failed attempt "
                f"{job.attempt}/{job.max_attempts}, retrying in {delay_ms}ms: {reason}"
            )
        else:
            logger.info(f"Job {job.job_id} on '{self.queue_name}' deferred {delay_ms}ms: {reason}")

        await self.queue.retry(job, delay_ms, consume_attempt=consumes_attempt, reason=reason)
        if self.metrics:
            self.metrics.record_job(self.queue_name, "retried" if consumes_attempt else "deferred")

    async def _dead_letter(self, job: Job, reason: str):
        if not await self.queue.dead_letter(job, reason):
            logger.warning(f"Job {job.job_id} on '{self.queue_name}' lost its lease before dead-lettering")
            return
        if self.metrics:
            self.metrics.record_job(self.queue_name, "dead_lettered")
        await self._notify_dead_letter(job, reason)

    async def _notify_dead_letter(self, job: Job, reason: str):
        if self.on_dead_letter is None:
            return
        try:
            await self.on_dead_letter(job, reason)
        except Exception as e:
            logger.error(f"Dead-letter hook failed for job {job.job_id} on '{self.queue_name}': {e}")
