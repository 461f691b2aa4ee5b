"""Worker loop: lease a job, run it, settle it, repeat.

One ``WorkerLoop`` leases and runs one job at a time. Run more processes for
more throughput; the queue server makes sure a job is leased by only one of
them at a time. Delivery is at-least-once: a job that is not settled within
its TTR is handed out again, so operations should be idempotent.
"""
import asyncio
import logging
import os
import signal
import time
from enum import Enum
from typing import Callable, Optional

from . import metrics
from .affinity import ConnectionAffinity
from .errors import FailureKind, PanicError, QueueError, classify_failure
from .job import Job
from .logutil import log_bracketed
from .registry import TaskContext, maybe_await

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    IDLE = "idle"
    RESERVING = "reserving"
    DISPATCHING = "dispatching"
    SUCCEEDED = "succeeded"
    RETRYING = "retrying"
    DEAD_LETTERED = "dead_lettered"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class Disposition(str, Enum):
    """What happened to a dispatched job."""

    SUCCEEDED = "succeeded"
    RETRYING = "retrying"
    DISCARDED = "discarded"
    DEAD_LETTERED = "dead_lettered"
    EXTERNAL = "external"
    CUSTOM = "custom"


_STATE_AFTER = {
    Disposition.SUCCEEDED: WorkerState.SUCCEEDED,
    Disposition.DISCARDED: WorkerState.SUCCEEDED,
    Disposition.EXTERNAL: WorkerState.SUCCEEDED,
    Disposition.RETRYING: WorkerState.RETRYING,
    Disposition.DEAD_LETTERED: WorkerState.DEAD_LETTERED,
    Disposition.CUSTOM: WorkerState.DEAD_LETTERED,
}

_INTERRUPTS = (KeyboardInterrupt, SystemExit, asyncio.CancelledError)


class WorkerLoop:
    def __init__(self, config, timer: Callable[[], float] = time.monotonic):
        self.config = config
        self.affinity = ConnectionAffinity(config.brief_seconds)
        self.enqueuer = config.enqueuer()
        self.state = WorkerState.IDLE
        self._timer = timer
        self._stop = asyncio.Event()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self):
        """Finish the current job, then leave the loop."""
        if not self._stop.is_set():
            logger.info("stop requested; finishing the current job")
        self._stop.set()

    async def _pause(self, seconds: float):
        try:
            await asyncio.wait_for(self._stop.wait(), seconds)
        except asyncio.TimeoutError:
            pass

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGTERM, self.request_stop)
        except (NotImplementedError, RuntimeError):
            logger.debug("cannot install a SIGTERM handler on this platform")

    async def startup(self):
        with log_bracketed("worker-startup"):
            appver = self.config.app_version
            logger.info("pid is %s", os.getpid())
            logger.info("app version is %s", appver)
            queue = self.config.queue
            if queue is None:
                logger.error("no queue has been configured")
                raise PanicError("no queue has been configured")
            await queue.watch(self.config.default_tube)
            if appver:
                await queue.watch(appver)

    async def run(self):
        await self.startup()
        self._install_signal_handlers()
        try:
            await self.main_loop()
        finally:
            await self.shutdown()

    async def main_loop(self):
        while not self.stop_requested:
            self.state = WorkerState.IDLE
            job = await self.get_job()
            if job is None:
                break
            await self.safe_dispatch(job)

    async def shutdown(self):
        self.state = WorkerState.SHUTTING_DOWN
        with log_bracketed("worker-shutdown"):
            await self.finish_pending_work()
        self.state = WorkerState.STOPPED

    async def finish_pending_work(self):
        hook = self.config.shutdown_hook
        if hook is not None:
            logger.info("finishing all running work")
            await maybe_await(hook())

    # -- leasing --

    async def reserve_and_set_hint(self) -> Optional[Job]:
        default = self.config.queue
        conn = self.affinity.pick(default)
        if conn is not default:
            metrics.affinity_hits_total.inc()
        await conn.connect()
        for hook in self.config.pre_lease_hooks:
            await maybe_await(hook())
        job = None
        started = self._timer()
        try:
            job = await conn.lease(self.config.lease_timeout)
            return job
        finally:
            elapsed = self._timer() - started
            metrics.lease_latency_seconds.observe(elapsed)
            self.affinity.observe(job, elapsed)

    async def get_job(self) -> Optional[Job]:
        """Lease the next job; None once a stop has been requested."""
        with log_bracketed("worker-get-job"):
            while not self.stop_requested:
                self.state = WorkerState.RESERVING
                try:
                    job = await self.reserve_and_set_hint()
                except Exception as exc:
                    kind = classify_failure(exc)
                    metrics.lease_errors_total.labels(kind=kind.value).inc()
                    if kind is FailureKind.DEADLINE_SOON:
                        logger.info("job deadline soon; you should clean up: %s", exc)
                        continue
                    if kind is FailureKind.FATAL:
                        raise
                    self.affinity.clear()
                    logger.warning("failed to get a job (%s): %s", kind.value, exc, exc_info=True)
                    logger.info("sleeping for %ss", self.config.sleep_seconds)
                    await self._pause(self.config.sleep_seconds)
                    continue
                if job is not None:
                    return job
            return None

    # -- dispatching --

    async def safe_dispatch(self, job: Job) -> Disposition:
        """Run ``job`` and settle it; only interrupts and fatal errors escape."""
        with log_bracketed("worker-dispatch"):
            logger.info("got job %s from %s:\n%s", job.id, job.server, job.body)
            with log_bracketed("job-stats"):
                for key, value in (await job.stats()).items():
                    logger.info("%s=%s", key, value)
            started = self._timer()
            try:
                disposition = await self.dispatch(job)
            except _INTERRUPTS:
                await self._settle(job.release)
                raise
            except Exception as exc:
                if classify_failure(exc) is FailureKind.FATAL:
                    await self._settle(job.release)
                    raise
                disposition = await self.handle_error(job, exc)
            elapsed = self._timer() - started
            self.state = _STATE_AFTER[disposition]
            metrics.jobs_executed_total.labels(disposition=disposition.value).inc()
            metrics.execution_latency_seconds.observe(elapsed)
            logger.info("job %s/%s %s in %.3fs", job.server, job.id, disposition.value, elapsed)
            return disposition

    async def dispatch(self, job: Job) -> Disposition:
        self.state = WorkerState.DISPATCHING
        if job.envelope is not None:
            return await self.run_self_job(job)
        return await self.run_other(job)

    async def run_other(self, job: Job) -> Disposition:
        handler = self.config.external_handler
        if handler is None:
            raise PanicError(f"job {job.id} is not a tubework job and no custom handler is defined")
        logger.info("trying custom handler")
        await maybe_await(handler(job))
        return Disposition.EXTERNAL

    async def run_self_job(self, job: Job) -> Disposition:
        envelope = job.envelope
        logger.info("running as tubework job")
        appver = self.config.app_version
        if envelope.appver and appver and envelope.appver != appver:
            logger.warning(
                "job %s was built by app version %s, this worker runs %s; releasing",
                job.id, envelope.appver, appver,
            )
            await self._settle(job.release, job.pri, self.config.mismatch_delay)
            return Disposition.RETRYING

        if self.config.before_job is not None:
            await maybe_await(self.config.before_job(job))
        settle = not envelope.delete_first
        if envelope.delete_first:
            await self._settle(job.delete)

        try:
            await self.run_code(job)
        except Exception as exc:
            if classify_failure(exc) is not FailureKind.TRANSIENT_APP:
                raise
            if job.age >= self.config.stale_age_seconds:
                # old enough that this is most likely permanent
                logger.info("job %s: %s; %.0fs old, deleting", job.id, exc, job.age)
                if settle:
                    await self._settle(job.delete)
                return Disposition.DISCARDED
            # could be replication delay, so retry quietly
            logger.info("job %s: %s; releasing for retry", job.id, exc)
            if settle:
                await self._settle(job.decay)
            return Disposition.RETRYING

        if settle:
            await self._settle(job.delete)
        return Disposition.SUCCEEDED

    async def run_code(self, job: Job):
        config = self.config
        descriptor = config.codec.load_descriptor(job.envelope.code)
        op = config.operations.get(descriptor.operation)
        target, args = descriptor.target, descriptor.args
        if op.resolve:
            target = await config.locator.resolve(target)
            args = await config.locator.resolve(args)
        if op.pass_context:
            ctx = TaskContext(job=job, config=config, enqueuer=self.enqueuer)
            result = op.fn(ctx, target, *args, **descriptor.extras)
        else:
            result = op.fn(target, *args, **descriptor.extras)
        return await maybe_await(result)

    # -- errors --

    async def _settle(self, action, *args) -> bool:
        """Apply a disposition; a lease that is already gone counts as settled."""
        try:
            await action(*args)
        except QueueError as exc:
            logger.info("could not settle job, assuming it is resolved: %s", exc)
            return False
        return True

    async def handle_error(self, job: Job, exc: Exception) -> Disposition:
        handler = self.config.error_handler
        if handler is not None:
            try:
                await maybe_await(handler(job, exc))
                return Disposition.CUSTOM
            except Exception:
                logger.exception("custom error handler failed for job %s", job.id)
        return await self.default_handle_error(job, exc)

    async def default_handle_error(self, job: Job, exc: Exception) -> Disposition:
        logger.error(
            "job failed: %s/%s (%s)", job.server, job.id, classify_failure(exc).value, exc_info=exc,
        )
        if self.config.error_disposition == "release":
            await self._settle(job.decay)
            return Disposition.RETRYING
        await self._settle(job.bury)
        return Disposition.DEAD_LETTERED
