import pytest

from conftest import drain
from tubework.config import FanoutDefaults, WorkerConfig
from tubework.errors import InvalidArgumentError
from tubework.fanout import FANOUT_OPERATION, split_interval, split_options, submit_each


class RecordingEnqueuer:
    """Collects submissions instead of queueing them."""

    def __init__(self, degree=1000, fuzz=0):
        self.config = WorkerConfig(fanout=FanoutDefaults(degree=degree, fuzz=fuzz))
        self.submitted = []

    async def submit(self, target, operation, args=(), options=None):
        self.submitted.append((target, operation, list(args), dict(options or {})))
        return len(self.submitted)


async def expand(enqueuer, submissions):
    """Run split jobs the way a worker would; returns the leaf submissions."""
    leaves = []
    pending = list(submissions)
    while pending:
        target, operation, args, options = pending.pop()
        if operation != FANOUT_OPERATION:
            leaves.append((target, operation, args, options))
            continue
        inner = RecordingEnqueuer()
        inner.config = enqueuer.config
        await submit_each(inner, target, *args)
        pending.extend(inner.submitted)
    return leaves


def test_split_interval_is_balanced():
    pieces = split_interval(range(10), 3)
    assert [len(p) for p in pieces] == [4, 3, 3]
    assert [i for p in pieces for i in p] == list(range(10))


def test_split_interval_keeps_the_step():
    pieces = split_interval(range(0, 20, 2), 4)
    assert [i for p in pieces for i in p] == list(range(0, 20, 2))
    assert all(p.step == 2 for p in pieces)


def test_split_interval_edges():
    assert split_interval(range(0), 4) == []
    assert split_interval(range(3), 10) == [range(0, 1), range(1, 2), range(2, 3)]
    with pytest.raises(InvalidArgumentError):
        split_interval(range(3), 0)


@pytest.mark.parametrize("degree", [1, 2, 10])
@pytest.mark.parametrize("size_of", [lambda f: 0, lambda f: 1, lambda f: f, lambda f: f + 1,
                                     lambda f: 2 * f, lambda f: f * f + 1])
async def test_every_element_gets_exactly_one_leaf(degree, size_of):
    interval = range(5, 5 + size_of(degree))
    enqueuer = RecordingEnqueuer(degree=degree)
    await submit_each(enqueuer, interval, "report", "render", ["pdf"])

    assert len(enqueuer.submitted) <= max(degree, 2)
    leaves = await expand(enqueuer, enqueuer.submitted)
    assert sorted(args[0] for _, _, args, _ in leaves) == list(interval)
    assert all(t == "report" and op == "render" and args[1:] == ["pdf"] for t, op, args, _ in leaves)


async def test_direct_jobs_up_to_the_degree():
    enqueuer = RecordingEnqueuer(degree=4)
    await submit_each(enqueuer, range(4), "t", "op")
    assert [op for _, op, _, _ in enqueuer.submitted] == ["op"] * 4


async def test_one_more_than_the_degree_splits():
    enqueuer = RecordingEnqueuer(degree=4)
    await submit_each(enqueuer, range(5), "t", "op")
    assert len(enqueuer.submitted) == 4
    assert all(op == FANOUT_OPERATION for _, op, _, _ in enqueuer.submitted)
    assert [len(target) for target, _, _, _ in enqueuer.submitted] == [2, 1, 1, 1]


async def test_degree_option_overrides_config():
    enqueuer = RecordingEnqueuer(degree=1000)
    await submit_each(enqueuer, range(30), "t", "op", options={"fanout_degree": 3})
    assert len(enqueuer.submitted) == 3


@pytest.mark.parametrize("degree", [0, -1, "5", True])
async def test_invalid_degree_is_rejected(degree):
    with pytest.raises(InvalidArgumentError):
        await submit_each(RecordingEnqueuer(), range(3), "t", "op", options={"fanout_degree": degree})


async def test_only_ranges_can_fan_out():
    with pytest.raises(InvalidArgumentError):
        await submit_each(RecordingEnqueuer(), [1, 2, 3], "t", "op")


async def test_split_jobs_use_fanout_priority_and_leaves_keep_theirs():
    enqueuer = RecordingEnqueuer(degree=2)
    options = {"pri": 100, "fuzz": 5, "fanout_pri": 10, "fanout_fuzz": 2, "ttr": 30, "delay": None}
    await submit_each(enqueuer, range(5), "t", "op", options=options)

    for _, _, _, child in enqueuer.submitted:
        assert child == {"ttr": 30, "pri": 10, "fuzz": 2}

    leaves = await expand(enqueuer, enqueuer.submitted)
    assert len(leaves) == 5
    for _, _, _, leaf in leaves:
        assert (leaf["pri"], leaf["fuzz"], leaf["ttr"]) == (100, 5, 30)
        assert "delay" not in leaf


def test_split_options_defaults():
    assert split_options({"pri": 7}) == {"pri": 7}
    assert split_options({}, default_fuzz=3) == {"fuzz": 3}
    assert split_options({"tube": "v2", "fanout_fuzz": 0}, default_fuzz=3) == {"tube": "v2"}


async def test_local_mode_runs_every_element():
    seen = []
    config = WorkerConfig(fanout=FanoutDefaults(degree=1000))
    config.operations.register("count", lambda batch, i: seen.append((batch, i)))

    ids = await config.enqueuer().submit_each(range(2500), "batch-7", "count")

    assert len(ids) == 1000
    assert sorted(i for _, i in seen) == list(range(2500))
    assert {batch for batch, _ in seen} == {"batch-7"}


async def test_fanout_through_the_queue(config, worker):
    seen = []
    config.fanout = FanoutDefaults(degree=5)
    config.operations.register("count", lambda batch, i: seen.append(i))

    ids = await worker.enqueuer.submit_each(range(10), "batch", "count")

    assert len(ids) == 5
    # five split jobs, then ten leaves
    assert await drain(worker) == 15
    assert sorted(seen) == list(range(10))
