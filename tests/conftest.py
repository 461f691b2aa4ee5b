import os
import pytest
from httpx import ASGITransport, AsyncClient

os.environ["TESTING"] = "1"

from tubework import redis_helper
from tubework.config import WorkerConfig
from tubework.main import app as fastapi_app
from tubework.queue import RedisQueueConnection
from tubework.worker import WorkerLoop


class FakeClock:
    """Wall clock stand-in for job ages and lease deadlines."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_client():
    return redis_helper.AsyncInMemoryRedis()


@pytest.fixture
def queue(redis_client, clock):
    return RedisQueueConnection(client=redis_client, clock=clock, poll_interval=0.01)


@pytest.fixture
def config(queue):
    return WorkerConfig(queue=queue, sleep_seconds=0, lease_timeout=0)


@pytest.fixture
def worker(config):
    return WorkerLoop(config)


@pytest.fixture
async def client():
    redis_helper.reset_inmemory()
    async with AsyncClient(transport=ASGITransport(app=fastapi_app), base_url="http://testserver") as ac:
        yield ac
    redis_helper.reset_inmemory()


async def drain(worker: WorkerLoop, limit: int = 10_000) -> int:
    """Lease and dispatch until the queue is empty; returns the number of jobs run."""
    count = 0
    while count < limit:
        job = await worker.config.queue.lease(0)
        if job is None:
            return count
        await worker.safe_dispatch(job)
        count += 1
    raise AssertionError("queue did not drain")
