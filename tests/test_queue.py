import random

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tubework import redis_helper
from tubework.errors import DeadlineSoonError, QueueConnectionError, UnexpectedResponseError
from tubework.job import SYNC_JOB_ID
from tubework.queue import LocalConnection, QueuePool, RedisQueueConnection


class DroppingRedis(redis_helper.AsyncInMemoryRedis):
    """Loses the connection once, on the next transaction it is armed for.

    ``"before"`` drops it before the server applies the transaction,
    ``"after"`` once the transaction is applied but before the reply arrives.
    """

    drop = None

    def pipeline(self, transaction=True):
        return DroppingPipeline(self)


class DroppingPipeline(redis_helper.InMemoryPipeline):
    async def execute(self):
        when, self._client.drop = self._client.drop, None
        if when == "before":
            await self.reset()
            raise RedisConnectionError("connection reset by peer")
        results = await super().execute()
        if when == "after":
            raise RedisConnectionError("connection reset by peer")
        return results


async def test_enqueue_lease_ack(queue):
    job_id, address = await queue.enqueue("hello", pri=10, ttr=30)
    assert address == queue.address

    job = await queue.lease(0)
    assert job.id == job_id
    assert job.body == "hello"
    assert (job.pri, job.ttr, job.tube) == (10, 30, "default")
    assert job.conn is queue
    assert (await queue.stats(job_id))["state"] == "reserved"

    await job.delete()
    assert (await queue.stats(job_id))["state"] == "deleted"
    assert await queue.lease(0) is None


async def test_lower_priority_first_then_fifo(queue):
    late = (await queue.enqueue("low", pri=900))[0]
    first = (await queue.enqueue("a", pri=5))[0]
    second = (await queue.enqueue("b", pri=5))[0]

    order = [(await queue.lease(0)).id for _ in range(3)]
    assert order == [first, second, late]


async def test_delayed_job_waits(queue, clock):
    job_id, _ = await queue.enqueue("later", delay=30)
    assert (await queue.stats(job_id))["state"] == "delayed"
    assert await queue.lease(0) is None

    clock.advance(30)
    job = await queue.lease(0)
    assert job.id == job_id
    assert job.delay == 30


async def test_lease_becomes_available_again_after_ttr(redis_client, clock):
    first = RedisQueueConnection(client=redis_client, clock=clock)
    second = RedisQueueConnection(client=redis_client, clock=clock)
    job_id, _ = await first.enqueue("work", ttr=10)

    job = await first.lease(0)
    assert job.id == job_id
    assert await second.lease(0) is None

    # never acknowledged
    clock.advance(11)
    again = await second.lease(0)
    assert again.id == job_id
    assert again.reserves == 2
    assert again.timeouts == 1

    # the first lease is gone; settling it is refused
    with pytest.raises(UnexpectedResponseError):
        await job.delete()
    await again.delete()
    assert (await first.stats(job_id))["state"] == "deleted"


async def test_ack_after_deadline_is_refused(queue, clock):
    await queue.enqueue("work", ttr=5)
    job = await queue.lease(0)
    clock.advance(5)
    with pytest.raises(UnexpectedResponseError):
        await job.delete()


async def test_release_with_delay_and_decay(queue, clock):
    await queue.enqueue("work")
    job = await queue.lease(0)
    await job.release(pri=7, delay=4)
    stats = await queue.stats(job.id)
    assert (stats["state"], stats["pri"], stats["releases"]) == ("delayed", 7, 1)

    clock.advance(4)
    job = await queue.lease(0)
    await job.decay()
    assert (await queue.stats(job.id))["delay"] == 8


async def test_bury_kick_and_discard(queue):
    job_id, _ = await queue.enqueue("work")
    job = await queue.lease(0)
    await job.bury()
    stats = await queue.stats(job_id)
    assert (stats["state"], stats["buries"]) == ("buried", 1)
    assert await queue.lease(0) is None

    assert await queue.kick(job_id)
    assert not await queue.kick(job_id)
    assert (await queue.stats(job_id))["kicks"] == 1

    assert await queue.discard(job_id)
    assert (await queue.stats(job_id))["state"] == "deleted"


async def test_discard_refuses_leased_jobs(queue):
    job_id, _ = await queue.enqueue("work")
    await queue.lease(0)
    assert not await queue.discard(job_id)


async def test_touch_extends_the_lease(queue, clock):
    await queue.enqueue("work", ttr=10)
    job = await queue.lease(0)
    clock.advance(8)
    await job.touch()
    clock.advance(8)
    await job.delete()


async def test_deadline_soon(queue, clock):
    await queue.enqueue("a", ttr=3)
    await queue.lease(0)
    clock.advance(2.5)
    with pytest.raises(DeadlineSoonError):
        await queue.lease(0)


async def test_watched_tubes(queue):
    await queue.enqueue("elsewhere", tube="v2")
    assert await queue.lease(0) is None

    await queue.watch("v2")
    job = await queue.lease(0)
    assert job.tube == "v2"
    assert "v2" in await queue.tubes()


async def test_stats_unknown_when_redis_is_down(clock):
    class Broken:
        async def ping(self):
            raise RedisConnectionError("refused")

        async def hgetall(self, name):
            raise RedisConnectionError("refused")

    conn = RedisQueueConnection(client=Broken(), clock=clock)
    with pytest.raises(QueueConnectionError):
        await conn.connect()
    assert (await conn.stats(4))["state"] == "unknown"


async def test_tube_stats(queue):
    await queue.enqueue("a")
    await queue.enqueue("b", delay=10)
    stats = await queue.tube_stats("default")
    assert stats["current-jobs-ready"] == 1
    assert stats["current-jobs-delayed"] == 1


async def test_pool_settles_on_the_leasing_connection(redis_client, clock):
    a = RedisQueueConnection(client=redis_client, clock=clock, name="a")
    b = RedisQueueConnection(client=redis_client, clock=clock, name="b")
    pool = QueuePool([a, b], rng=random.Random(3))
    await pool.connect()
    await pool.watch("v1")
    assert "v1" in a.watched and "v1" in b.watched

    await pool.enqueue("x", tube="v1")
    job = await pool.lease(0)
    assert job.conn in (a, b)
    await job.delete()


async def test_local_connection_is_inert(config):
    local = LocalConnection(config)
    assert (await local.stats(SYNC_JOB_ID))["state"] == "reserved"
    await local.ack(SYNC_JOB_ID)
    await local.release(SYNC_JOB_ID, 1, 0)
    await local.bury(SYNC_JOB_ID, 1)


async def test_connection_lost_before_a_lease_leaves_the_job_ready(clock):
    conn = RedisQueueConnection(client=DroppingRedis(), clock=clock)
    job_id, _ = await conn.enqueue("work")

    conn._client.drop = "before"
    with pytest.raises(QueueConnectionError):
        await conn.lease(0)
    assert (await conn.stats(job_id))["state"] == "ready"

    job = await conn.lease(0)
    assert (job.id, job.reserves) == (job_id, 1)


async def test_connection_lost_after_a_lease_times_out_normally(clock):
    client = DroppingRedis()
    first = RedisQueueConnection(client=client, clock=clock)
    second = RedisQueueConnection(client=client, clock=clock)
    job_id, _ = await first.enqueue("work", ttr=10)

    client.drop = "after"
    with pytest.raises(QueueConnectionError):
        await first.lease(0)
    assert (await second.stats(job_id))["state"] == "reserved"
    assert await second.lease(0) is None

    clock.advance(11)
    job = await second.lease(0)
    assert job.id == job_id
    assert (job.reserves, job.timeouts) == (2, 1)
    await job.delete()


async def test_connection_lost_during_enqueue_leaves_no_partial_job(clock):
    conn = RedisQueueConnection(client=DroppingRedis(), clock=clock)
    conn._client.drop = "before"
    with pytest.raises(QueueConnectionError):
        await conn.enqueue("work")

    assert (await conn.stats(1))["state"] == "deleted"
    assert (await conn.tube_stats("default"))["current-jobs-ready"] == 0
    job_id, _ = await conn.enqueue("work")
    assert (await conn.lease(0)).id == job_id


async def test_stats_of_an_incomplete_record(queue, redis_client, clock):
    await redis_client.hset(redis_helper.job_key(1), mapping={
        "id": 1, "tube": "default", "body": "x", "ttr": 120, "created_at": clock(), "owner": "",
    })
    stats = await queue.stats(1)
    assert (stats["id"], stats["state"]) == (1, "unknown")


async def test_pool_settles_through_any_member(redis_client, clock):
    a = RedisQueueConnection(client=redis_client, clock=clock, name="a")
    b = RedisQueueConnection(client=redis_client, clock=clock, name="b")
    pool = QueuePool([a, b], rng=random.Random(5))
    job_id, _ = await pool.enqueue("x", ttr=10)
    job = await pool.lease(0)

    clock.advance(8)
    await pool.touch(job_id)
    clock.advance(8)
    assert (await pool.stats(job_id))["state"] == "reserved"

    await pool.ack(job_id)
    assert (await pool.stats(job_id))["state"] == "deleted"
    with pytest.raises(UnexpectedResponseError):
        await pool.ack(job.id)


async def test_pool_release_and_bury(redis_client, clock):
    a = RedisQueueConnection(client=redis_client, clock=clock, name="a")
    b = RedisQueueConnection(client=redis_client, clock=clock, name="b")
    pool = QueuePool([a, b], rng=random.Random(1))
    job_id, _ = await pool.enqueue("x")

    await pool.lease(0)
    await pool.release(job_id, 3)
    assert (await pool.stats(job_id))["pri"] == 3
    await pool.lease(0)
    await pool.bury(job_id, 4)
    assert (await pool.stats(job_id))["state"] == "buried"
