import os
from typing import Dict, Optional, List, Tuple, Union

import redis.asyncio as redis
from redis.exceptions import WatchError

TESTING = os.getenv("TESTING") == "1"
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# Key schema. Scores: ready = priority, delayed = ready-at, reserved = deadline,
# buried = burial time. Members are zero padded job ids so that equal scores
# order by id (FIFO inside a priority).
KEY_PREFIX = "tubework"
SEQ_KEY = f"{KEY_PREFIX}:seq"
TUBES_KEY = f"{KEY_PREFIX}:tubes"
ID_WIDTH = 20


def job_key(job_id: int) -> str:
    return f"{KEY_PREFIX}:job:{job_id}"


def ready_key(tube: str) -> str:
    return f"{KEY_PREFIX}:tube:{tube}:ready"


def delayed_key(tube: str) -> str:
    return f"{KEY_PREFIX}:tube:{tube}:delayed"


def reserved_key(tube: str) -> str:
    return f"{KEY_PREFIX}:tube:{tube}:reserved"


def buried_key(tube: str) -> str:
    return f"{KEY_PREFIX}:tube:{tube}:buried"


def member(job_id: int) -> str:
    return str(job_id).zfill(ID_WIDTH)


Scalar = Union[str, int, float]


class InMemoryPipeline:
    """MULTI/EXEC for the in-memory client, with WATCH.

    As with redis-py, commands run immediately while keys are watched and
    ``multi()`` has not been called; otherwise they are buffered and applied
    together by ``execute()``, or not at all if a watched key changed.
    """

    def __init__(self, client: "AsyncInMemoryRedis"):
        self._client = client
        self._watched: Dict[str, int] = {}
        self._explicit = False
        self._commands: List[Tuple[str, tuple, dict]] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.reset()

    async def watch(self, *names: str):
        for name in names:
            self._watched[name] = self._client._version(name)
        return True

    def multi(self):
        self._explicit = True

    def __getattr__(self, name: str):
        method = getattr(self._client, name)
        if self._watched and not self._explicit:
            return method

        def buffer(*args, **kwargs):
            self._commands.append((name, args, kwargs))
            return self

        return buffer

    async def execute(self) -> list:
        try:
            for name, version in self._watched.items():
                if self._client._version(name) != version:
                    raise WatchError(f"watched key {name} changed")
            # no awaits yield inside the client, so the batch applies as one step
            return [await getattr(self._client, n)(*a, **kw) for n, a, kw in self._commands]
        finally:
            await self.reset()

    async def reset(self):
        self._watched = {}
        self._explicit = False
        self._commands = []


class AsyncInMemoryRedis:
    """The subset of the redis.asyncio API the queue uses, kept in process.

    Values come back as strings, like a client created with
    ``decode_responses=True``.
    """

    def __init__(self):
        self._strings: Dict[str, str] = {}
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._sets: Dict[str, set] = {}
        self._zsets: Dict[str, Dict[str, float]] = {}
        # write counter per key, for WATCH
        self._versions: Dict[str, int] = {}

    def _version(self, name: str) -> int:
        return self._versions.get(name, 0)

    def _changed(self, name: str):
        self._versions[name] = self._version(name) + 1

    def pipeline(self, transaction: bool = True) -> InMemoryPipeline:
        return InMemoryPipeline(self)

    async def ping(self):
        return True

    async def incr(self, name: str, amount: int = 1) -> int:
        value = int(self._strings.get(name, "0")) + amount
        self._strings[name] = str(value)
        self._changed(name)
        return value

    async def delete(self, *names: str) -> int:
        removed = 0
        for name in names:
            for store in (self._strings, self._hashes, self._sets, self._zsets):
                if name in store:
                    del store[name]
                    self._changed(name)
                    removed += 1
        return removed

    # hash methods
    async def hset(self, name: str, key: Optional[str] = None, value: Optional[Scalar] = None,
                   mapping: Optional[Dict[str, Scalar]] = None):
        h = self._hashes.setdefault(name, {})
        items = dict(mapping or {})
        if key is not None:
            items[key] = value
        added = sum(1 for k in items if k not in h)
        for k, v in items.items():
            h[k] = str(v)
        self._changed(name)
        return added

    async def hgetall(self, name: str) -> Dict[str, str]:
        return dict(self._hashes.get(name, {}))

    async def hincrby(self, name: str, key: str, amount: int = 1) -> int:
        h = self._hashes.setdefault(name, {})
        value = int(h.get(key, "0")) + amount
        h[key] = str(value)
        self._changed(name)
        return value

    # set methods
    async def sadd(self, name: str, *values: str) -> int:
        s = self._sets.setdefault(name, set())
        added = len(set(values) - s)
        s.update(values)
        self._changed(name)
        return added

    async def smembers(self, name: str) -> set:
        return set(self._sets.get(name, set()))

    # zset methods
    def _sorted(self, name: str) -> List[Tuple[str, float]]:
        z = self._zsets.get(name, {})
        return sorted(z.items(), key=lambda kv: (kv[1], kv[0]))

    async def zadd(self, name: str, mapping: Dict[str, float]):
        z = self._zsets.setdefault(name, {})
        added = 0
        for m, score in mapping.items():
            if m not in z:
                added += 1
            z[m] = float(score)
        self._changed(name)
        return added

    async def zrem(self, name: str, *members: str) -> int:
        z = self._zsets.get(name, {})
        removed = 0
        for m in members:
            if m in z:
                del z[m]
                removed += 1
        if removed:
            self._changed(name)
        return removed

    async def zcard(self, name: str) -> int:
        return len(self._zsets.get(name, {}))

    async def zrange(self, name: str, start: int, end: int, withscores: bool = False):
        items = self._sorted(name)
        stop = None if end == -1 else end + 1
        selected = items[start:stop]
        if withscores:
            return selected
        return [m for m, _ in selected]

    async def zrangebyscore(self, name: str, min_score: float, max_score: float) -> List[str]:
        return [m for m, s in self._sorted(name) if min_score <= s <= max_score]


# Singleton in-memory client for testing
_inmemory_client: Optional[AsyncInMemoryRedis] = None


async def get_redis(url: Optional[str] = None):
    global _inmemory_client
    if TESTING:
        if _inmemory_client is None:
            _inmemory_client = AsyncInMemoryRedis()
        return _inmemory_client
    return redis.Redis.from_url(url or REDIS_URL, decode_responses=True)


def reset_inmemory():
    global _inmemory_client
    _inmemory_client = None
