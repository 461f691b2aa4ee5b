import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

from . import metrics
from .codec import SELF_TYPE, Envelope, render
from .errors import InvalidArgumentError
from .fanout import submit_each
from .job import DEFAULT_DELAY, DEFAULT_PRI, DEFAULT_TTR
from .queue import MAX_PRI, LocalConnection

logger = logging.getLogger(__name__)

RECOGNIZED_OPTIONS = frozenset({
    "pri",
    "fuzz",
    "delay",
    "ttr",
    "tube",
    "delete_first",
    "fanout_degree",
    "fanout_fuzz",
    "fanout_pri",
})


@dataclass
class ResolvedOptions:
    pri: int
    delay: int
    ttr: int
    tube: str
    delete_first: bool = False


def _check_int(name: str, value, minimum: int, maximum: Optional[int] = None) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise InvalidArgumentError(f"{name} must be an integer, got {value!r}")
    if value < minimum or (maximum is not None and value >= maximum):
        raise InvalidArgumentError(f"{name} out of range: {value}")
    return value


class Enqueuer:
    """Producer side: turns (target, operation, args, options) into queued jobs.

    With no queue configured the job runs in process before ``submit`` returns.
    """

    def __init__(self, config, rng: Optional[random.Random] = None):
        self.config = config
        self._rng = rng or random.Random()
        self._local = None

    @property
    def queue(self):
        if self.config.queue is not None:
            return self.config.queue
        if self._local is None:
            self._local = LocalConnection(self.config)
        return self._local

    def resolve_priority(self, pri: int, fuzz: int = 0) -> int:
        """``pri`` plus a uniform random offset in ``[0, fuzz]``."""
        if fuzz:
            pri += self._rng.randint(0, fuzz)
        return min(pri, MAX_PRI - 1)

    def resolve_options(self, options: Optional[Dict[str, Any]]) -> Tuple[ResolvedOptions, Dict[str, Any]]:
        options = {k: v for k, v in (options or {}).items() if v is not None}
        extras = {k: v for k, v in options.items() if k not in RECOGNIZED_OPTIONS}
        pri = _check_int("pri", options.get("pri", DEFAULT_PRI), 0, MAX_PRI)
        fuzz = _check_int("fuzz", options.get("fuzz", 0), 0)
        delay = _check_int("delay", options.get("delay", DEFAULT_DELAY), 0)
        ttr = _check_int("ttr", options.get("ttr", DEFAULT_TTR), 1)
        tube = options.get("tube") or self.config.tube
        if not isinstance(tube, str):
            raise InvalidArgumentError(f"tube must be a string, got {tube!r}")
        resolved = ResolvedOptions(
            pri=self.resolve_priority(pri, fuzz),
            delay=delay,
            ttr=ttr,
            tube=tube,
            delete_first=bool(options.get("delete_first", False)),
        )
        return resolved, extras

    async def submit(self, target, operation: str, args: Sequence = (),
                     options: Optional[Dict[str, Any]] = None) -> int:
        """Schedule ``operation`` on ``target`` with ``args``; returns the job id."""
        if not isinstance(operation, str) or not operation:
            raise InvalidArgumentError(f"operation must be a non-empty string, got {operation!r}")
        resolved, extras = self.resolve_options(options)
        codec = self.config.codec
        # raises NotSerializableError before anything reaches the queue
        descriptor = codec.describe(target, operation, args, extras)
        envelope = Envelope(
            type=SELF_TYPE,
            code=codec.dump_descriptor(descriptor),
            appver=self.config.app_version,
            tube=resolved.tube,
            delete_first=resolved.delete_first,
        )
        metrics.jobs_submitted_total.inc()

        queue = self.queue
        start = time.time()
        try:
            await queue.connect()
            job_id, address = await queue.enqueue(
                envelope.dumps(), resolved.pri, resolved.delay, resolved.ttr, resolved.tube
            )
        finally:
            metrics.enqueue_latency_seconds.observe(time.time() - start)
        metrics.jobs_enqueued_total.inc()
        logger.info("put %s %s -> %s/%s", resolved.pri, render(descriptor), address, job_id)
        return job_id

    async def submit_each(self, interval: range, target, operation: str, args: Sequence = (),
                          options: Optional[Dict[str, Any]] = None):
        return await submit_each(self, interval, target, operation, args, options)
