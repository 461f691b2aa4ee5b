"""Queue server access.

``RedisQueueConnection`` gives Redis beanstalkd-like semantics: named tubes,
priorities, delays, time-to-run leases, release, bury and kick. Exclusivity
of a lease comes from Redis itself: every move of a job between states is one
MULTI/EXEC transaction guarded by WATCH on the job hash, so exactly one client
wins each transition and a dropped connection never leaves a job half moved.
"""
import abc
import asyncio
import logging
import random
import time
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional, Tuple

from redis.exceptions import RedisError, WatchError

from . import redis_helper
from .errors import QueueConnectionError, QueueError, DeadlineSoonError, UnexpectedResponseError
from .job import DEFAULT_PRI, DEFAULT_TTR, DEFAULT_TUBE, SYNC_JOB_ID, Job
from .redis_helper import (
    SEQ_KEY,
    TUBES_KEY,
    buried_key,
    delayed_key,
    job_key,
    member,
    ready_key,
    reserved_key,
)

logger = logging.getLogger(__name__)

# a leased job this close to its deadline makes lease() raise DeadlineSoonError
DEADLINE_MARGIN_SECONDS = 1.0
MAX_PRI = 2 ** 32
# a job hash without these is not a complete record
_RECORD_FIELDS = ("state", "tube", "pri", "delay", "ttr", "created_at")


def synthetic_stats(job_id: int, state: str = "reserved") -> Dict[str, Any]:
    """Best-effort stats for a job the server cannot describe."""
    return {
        "id": job_id,
        "state": state,
        "age": 0,
        "delay": 0,
        "time-left": 5000,
        "timeouts": 0,
        "releases": 0,
        "buries": 0,
        "kicks": 0,
    }


class QueueConnection(abc.ABC):
    """One session with a queue server."""

    address: str = "<none>"

    @abc.abstractmethod
    async def connect(self):
        """Open or revalidate the session. Idempotent."""

    @abc.abstractmethod
    async def watch(self, tube: str):
        pass

    @abc.abstractmethod
    async def enqueue(self, payload: str, pri: int = DEFAULT_PRI, delay: int = 0,
                      ttr: int = DEFAULT_TTR, tube: str = DEFAULT_TUBE) -> Tuple[int, str]:
        pass

    @abc.abstractmethod
    async def lease(self, timeout: Optional[float] = None) -> Optional[Job]:
        """Reserve the next job; None when ``timeout`` seconds pass without one."""

    @abc.abstractmethod
    async def ack(self, job_id: int):
        pass

    @abc.abstractmethod
    async def release(self, job_id: int, pri: int, delay: int = 0):
        pass

    @abc.abstractmethod
    async def bury(self, job_id: int, pri: int):
        pass

    @abc.abstractmethod
    async def touch(self, job_id: int):
        pass

    @abc.abstractmethod
    async def stats(self, job_id: int) -> Dict[str, Any]:
        pass


class RedisQueueConnection(QueueConnection):
    def __init__(
        self,
        client=None,
        url: Optional[str] = None,
        name: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        poll_interval: float = 0.5,
    ):
        self._client = client
        self.url = url
        self.address = url or redis_helper.REDIS_URL
        self.name = name or uuid.uuid4().hex
        self.poll_interval = poll_interval
        self._clock = clock
        self._watched: List[str] = [DEFAULT_TUBE]
        # job id -> lease deadline, for the jobs this connection holds
        self._held: Dict[int, float] = {}

    def __repr__(self):
        return f"<RedisQueueConnection {self.address} {self.name[:8]}>"

    @contextmanager
    def _redis_errors(self):
        try:
            yield
        except RedisError as exc:
            raise QueueConnectionError(f"{self.address}: {exc}") from exc

    async def connect(self):
        with self._redis_errors():
            if self._client is None:
                self._client = await redis_helper.get_redis(self.url)
            await self._client.ping()

    async def _session(self):
        if self._client is None:
            await self.connect()
        return self._client

    @property
    def watched(self) -> List[str]:
        return list(self._watched)

    async def watch(self, tube: str):
        if tube not in self._watched:
            self._watched.append(tube)
        client = await self._session()
        with self._redis_errors():
            await client.sadd(TUBES_KEY, tube)

    async def enqueue(self, payload: str, pri: int = DEFAULT_PRI, delay: int = 0,
                      ttr: int = DEFAULT_TTR, tube: str = DEFAULT_TUBE) -> Tuple[int, str]:
        client = await self._session()
        now = self._clock()
        with self._redis_errors():
            job_id = await client.incr(SEQ_KEY)
            # hash and set entry land together or not at all
            async with client.pipeline(transaction=True) as pipe:
                pipe.hset(job_key(job_id), mapping={
                    "id": job_id,
                    "tube": tube,
                    "body": payload,
                    "ttr": ttr,
                    "created_at": now,
                    "reserves": 0,
                    "timeouts": 0,
                    "releases": 0,
                    "buries": 0,
                    "kicks": 0,
                })
                self._place(pipe, job_id, tube, pri, delay, now)
                pipe.sadd(TUBES_KEY, tube)
                await pipe.execute()
        return job_id, self.address

    @staticmethod
    def _place(pipe, job_id: int, tube: str, pri: int, delay: int, now: float):
        """Queue the commands that make a job delayed or ready."""
        state = "delayed" if delay > 0 else "ready"
        pipe.hset(job_key(job_id), mapping={
            "state": state, "pri": pri, "delay": delay, "ready_at": now + delay, "owner": "",
        })
        if delay > 0:
            pipe.zadd(delayed_key(tube), {member(job_id): now + delay})
        else:
            pipe.zadd(ready_key(tube), {member(job_id): pri})

    async def _transition(self, client, job_id: int, plan) -> Tuple[Dict[str, str], Optional[list]]:
        """Apply one state change to a job atomically.

        The job hash is watched and read, then ``plan(data, pipe)`` queues the
        writes. A false return from ``plan`` leaves the job alone and gives
        ``(data, None)``. Every transition writes the hash, so a concurrent
        change aborts the transaction.
        """
        key = job_key(job_id)
        async with client.pipeline(transaction=True) as pipe:
            await pipe.watch(key)
            data = await pipe.hgetall(key)
            pipe.multi()
            if not plan(data, pipe):
                return data, None
            try:
                return data, await pipe.execute()
            except WatchError:
                raise UnexpectedResponseError(f"NOT_FOUND: job {job_id} changed while being updated") from None

    async def _promote(self, client, tube: str, now: float):
        """Move due delayed jobs and expired leases of ``tube`` to ready."""
        for m in await client.zrangebyscore(delayed_key(tube), 0, now):
            def due(data, pipe, m=m):
                if data.get("state") == "delayed" and float(data["ready_at"]) > now:
                    return False
                pipe.zrem(delayed_key(tube), m)
                if data.get("state") == "delayed":
                    pipe.hset(job_key(int(m)), "state", "ready")
                    pipe.zadd(ready_key(tube), {m: int(data["pri"])})
                return True

            try:
                await self._transition(client, int(m), due)
            except UnexpectedResponseError:
                continue

        for m in await client.zrangebyscore(reserved_key(tube), 0, now):
            def expired(data, pipe, m=m):
                if data.get("state") == "reserved" and float(data["deadline"]) > now:
                    return False
                pipe.zrem(reserved_key(tube), m)
                if data.get("state") == "reserved":
                    pipe.hincrby(job_key(int(m)), "timeouts", 1)
                    pipe.hset(job_key(int(m)), mapping={"state": "ready", "owner": ""})
                    pipe.zadd(ready_key(tube), {m: int(data["pri"])})
                return True

            try:
                data, results = await self._transition(client, int(m), expired)
            except UnexpectedResponseError:
                continue
            if results is not None and data.get("state") == "reserved":
                logger.info("job %s lease expired; back to ready", int(m))

    def _check_deadlines(self, now: float):
        for job_id, deadline in list(self._held.items()):
            if now >= deadline:
                del self._held[job_id]
            elif deadline - now <= DEADLINE_MARGIN_SECONDS:
                raise DeadlineSoonError(f"job {job_id} reaches its deadline in {deadline - now:.2f}s")

    async def _reserve(self, client, job_id: int, tube: str, now: float) -> Optional[Job]:
        m = member(job_id)

        def take(data, pipe):
            pipe.zrem(ready_key(tube), m)
            if data.get("state") != "ready" or data.get("tube") != tube:
                # entry left behind by a job that is gone or moved on
                return True
            deadline = now + int(data["ttr"])
            pipe.zadd(reserved_key(tube), {m: deadline})
            pipe.hincrby(job_key(job_id), "reserves", 1)
            pipe.hset(job_key(job_id), mapping={"state": "reserved", "owner": self.name, "deadline": deadline})
            return True

        try:
            data, results = await self._transition(client, job_id, take)
        except UnexpectedResponseError:
            # another worker got there first
            return None
        if data.get("state") != "ready" or data.get("tube") != tube:
            return None
        deadline = now + int(data["ttr"])
        self._held[job_id] = deadline
        return Job(
            id=job_id,
            body=data["body"],
            pri=int(data["pri"]),
            delay=int(data["delay"]),
            ttr=int(data["ttr"]),
            tube=tube,
            age=now - float(data["created_at"]),
            reserves=results[2],
            timeouts=int(data.get("timeouts", 0)),
            releases=int(data.get("releases", 0)),
            conn=self,
        )

    async def _try_reserve(self, client) -> Optional[Job]:
        now = self._clock()
        with self._redis_errors():
            heads = []
            for tube in self._watched:
                await self._promote(client, tube, now)
                head = await client.zrange(ready_key(tube), 0, 0, withscores=True)
                if head:
                    m, score = head[0]
                    heads.append((score, m, tube))
            for score, m, tube in sorted(heads):
                job = await self._reserve(client, int(m), tube, now)
                if job is not None:
                    return job
        return None

    async def lease(self, timeout: Optional[float] = None) -> Optional[Job]:
        client = await self._session()
        loop = asyncio.get_running_loop()
        give_up = None if timeout is None else loop.time() + timeout
        while True:
            self._check_deadlines(self._clock())
            job = await self._try_reserve(client)
            if job is not None:
                return job
            if give_up is not None:
                remaining = give_up - loop.time()
                if remaining <= 0:
                    return None
                await asyncio.sleep(min(self.poll_interval, remaining))
            else:
                await asyncio.sleep(self.poll_interval)

    def _check_owner(self, job_id: int, data: Dict[str, str], now: float):
        if not data or data.get("state") != "reserved" or data.get("owner") != self.name:
            raise UnexpectedResponseError(f"NOT_FOUND: job {job_id} is not reserved by this connection")
        if float(data["deadline"]) <= now:
            raise UnexpectedResponseError(f"NOT_FOUND: lease on job {job_id} expired")

    async def _settle(self, job_id: int, then):
        """Take a job this connection holds out of the reserved set, then ``then(data, pipe)``."""
        client = await self._session()
        now = self._clock()
        self._held.pop(job_id, None)

        def plan(data, pipe):
            self._check_owner(job_id, data, now)
            pipe.zrem(reserved_key(data["tube"]), member(job_id))
            then(data, pipe, now)
            return True

        with self._redis_errors():
            await self._transition(client, job_id, plan)

    async def ack(self, job_id: int):
        await self._settle(job_id, lambda data, pipe, now: pipe.delete(job_key(job_id)))

    async def release(self, job_id: int, pri: int, delay: int = 0):
        def requeue(data, pipe, now):
            pipe.hincrby(job_key(job_id), "releases", 1)
            self._place(pipe, job_id, data["tube"], pri, delay, now)

        await self._settle(job_id, requeue)

    async def bury(self, job_id: int, pri: int):
        def to_buried(data, pipe, now):
            pipe.hincrby(job_key(job_id), "buries", 1)
            pipe.hset(job_key(job_id), mapping={"state": "buried", "pri": pri, "owner": ""})
            pipe.zadd(buried_key(data["tube"]), {member(job_id): now})

        await self._settle(job_id, to_buried)

    async def touch(self, job_id: int):
        client = await self._session()
        now = self._clock()
        deadline = None

        def extend(data, pipe):
            nonlocal deadline
            self._check_owner(job_id, data, now)
            deadline = now + int(data["ttr"])
            pipe.zadd(reserved_key(data["tube"]), {member(job_id): deadline})
            pipe.hset(job_key(job_id), "deadline", deadline)
            return True

        with self._redis_errors():
            await self._transition(client, job_id, extend)
        self._held[job_id] = deadline

    async def stats(self, job_id: int) -> Dict[str, Any]:
        try:
            client = await self._session()
            with self._redis_errors():
                data = await client.hgetall(job_key(job_id))
        except QueueConnectionError as exc:
            logger.warning("stats for job %s unavailable: %s", job_id, exc)
            return synthetic_stats(job_id, state="unknown")
        if not data:
            return synthetic_stats(job_id, state="deleted")
        if any(k not in data for k in _RECORD_FIELDS):
            logger.warning("job %s has an incomplete record: %s", job_id, sorted(data))
            return synthetic_stats(job_id, state="unknown")
        now = self._clock()
        state = data["state"]
        if state == "reserved":
            time_left = float(data.get("deadline", now)) - now
        elif state == "delayed":
            time_left = float(data.get("ready_at", now)) - now
            if time_left <= 0:
                state = "ready"
        else:
            time_left = 0
        return {
            "id": job_id,
            "tube": data["tube"],
            "state": state,
            "pri": int(data["pri"]),
            "age": int(now - float(data["created_at"])),
            "delay": int(data["delay"]),
            "ttr": int(data["ttr"]),
            "time-left": max(0, int(time_left)),
            "reserves": int(data.get("reserves", 0)),
            "timeouts": int(data.get("timeouts", 0)),
            "releases": int(data.get("releases", 0)),
            "buries": int(data.get("buries", 0)),
            "kicks": int(data.get("kicks", 0)),
        }

    # -- admin operations, usable from any connection --

    async def kick(self, job_id: int) -> bool:
        """Return a buried job to the ready state."""
        client = await self._session()
        now = self._clock()

        def unbury(data, pipe):
            if data.get("state") != "buried":
                return False
            pipe.zrem(buried_key(data["tube"]), member(job_id))
            pipe.hincrby(job_key(job_id), "kicks", 1)
            self._place(pipe, job_id, data["tube"], int(data["pri"]), 0, now)
            return True

        with self._redis_errors():
            try:
                _, results = await self._transition(client, job_id, unbury)
            except UnexpectedResponseError:
                return False
        return results is not None

    async def discard(self, job_id: int) -> bool:
        """Delete a job that is not currently leased."""
        client = await self._session()
        sets = {"ready": ready_key, "delayed": delayed_key, "buried": buried_key}

        def remove(data, pipe):
            key_for = sets.get(data.get("state"))
            if key_for is None:
                return False
            pipe.zrem(key_for(data["tube"]), member(job_id))
            pipe.delete(job_key(job_id))
            return True

        with self._redis_errors():
            try:
                _, results = await self._transition(client, job_id, remove)
            except UnexpectedResponseError:
                return False
        return results is not None

    async def tubes(self) -> List[str]:
        client = await self._session()
        with self._redis_errors():
            return sorted(await client.smembers(TUBES_KEY))

    async def tube_stats(self, tube: str) -> Dict[str, Any]:
        client = await self._session()
        with self._redis_errors():
            return {
                "name": tube,
                "current-jobs-ready": await client.zcard(ready_key(tube)),
                "current-jobs-delayed": await client.zcard(delayed_key(tube)),
                "current-jobs-reserved": await client.zcard(reserved_key(tube)),
                "current-jobs-buried": await client.zcard(buried_key(tube)),
            }


class QueuePool(QueueConnection):
    """Several queue connections used as one.

    Puts and leases go to a random member; the leased job remembers which
    connection it came from so it is settled on that one. Settling through
    the pool itself tries each member until one holds the lease.
    """

    def __init__(self, connections: List[QueueConnection], rng: Optional[random.Random] = None):
        if not connections:
            raise QueueError("a queue pool needs at least one connection")
        self.connections = list(connections)
        self._rng = rng or random.Random()

    @property
    def address(self) -> str:
        return ",".join(c.address for c in self.connections)

    def _pick(self) -> QueueConnection:
        return self._rng.choice(self.connections)

    async def _on_holder(self, call):
        """Run ``call(conn)`` on members until one accepts it."""
        refused = None
        for conn in self.connections:
            try:
                return await call(conn)
            except UnexpectedResponseError as exc:
                refused = exc
        raise refused

    async def connect(self):
        for conn in self.connections:
            await conn.connect()

    async def watch(self, tube: str):
        for conn in self.connections:
            await conn.watch(tube)

    async def enqueue(self, payload: str, pri: int = DEFAULT_PRI, delay: int = 0,
                      ttr: int = DEFAULT_TTR, tube: str = DEFAULT_TUBE) -> Tuple[int, str]:
        return await self._pick().enqueue(payload, pri, delay, ttr, tube)

    async def lease(self, timeout: Optional[float] = None) -> Optional[Job]:
        return await self._pick().lease(timeout)

    async def ack(self, job_id: int):
        await self._on_holder(lambda conn: conn.ack(job_id))

    async def release(self, job_id: int, pri: int, delay: int = 0):
        await self._on_holder(lambda conn: conn.release(job_id, pri, delay))

    async def bury(self, job_id: int, pri: int):
        await self._on_holder(lambda conn: conn.bury(job_id, pri))

    async def touch(self, job_id: int):
        await self._on_holder(lambda conn: conn.touch(job_id))

    async def stats(self, job_id: int) -> Dict[str, Any]:
        for conn in self.connections:
            record = await conn.stats(job_id)
            if record["state"] not in ("deleted", "unknown"):
                return record
        return record


class LocalConnection(QueueConnection):
    """Runs jobs in process, for use when no queue server is configured."""

    address = "<none>"

    def __init__(self, config):
        self.config = config
        self._worker = None

    @property
    def worker(self):
        if self._worker is None:
            from .worker import WorkerLoop

            self._worker = WorkerLoop(self.config)
        return self._worker

    async def connect(self):
        return None

    async def watch(self, tube: str):
        return None

    async def enqueue(self, payload: str, pri: int = DEFAULT_PRI, delay: int = 0,
                      ttr: int = DEFAULT_TTR, tube: str = DEFAULT_TUBE) -> Tuple[int, str]:
        job = Job(id=SYNC_JOB_ID, body=payload, pri=pri, delay=delay, ttr=ttr, tube=tube, conn=self)
        await self.worker.dispatch(job)
        await self.worker.finish_pending_work()
        return SYNC_JOB_ID, self.address

    async def lease(self, timeout: Optional[float] = None) -> Optional[Job]:
        raise QueueError("no queue server is configured; jobs run at submit time")

    async def ack(self, job_id: int):
        return None

    async def release(self, job_id: int, pri: int, delay: int = 0):
        return None

    async def bury(self, job_id: int, pri: int):
        return None

    async def touch(self, job_id: int):
        return None

    async def stats(self, job_id: int) -> Dict[str, Any]:
        return synthetic_stats(job_id)
