import os
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from .codec import TaskCodec
from .errors import InvalidArgumentError
from .fanout import DEFAULT_FANOUT_DEGREE, DEFAULT_FANOUT_FUZZ
from .hooks import EventHooks
from .job import DEFAULT_TUBE
from .registry import EntityLocator, OperationRegistry

ERROR_DISPOSITIONS = ("bury", "release")


@dataclass
class Settings:
    """Process settings read from the environment."""

    redis_url: str = "redis://localhost:6379/0"
    testing: bool = False
    app_version: Optional[str] = None
    tube: str = DEFAULT_TUBE
    sleep_seconds: float = 60.0
    lease_timeout: float = 5.0
    poll_seconds: float = 0.5
    fanout_degree: int = DEFAULT_FANOUT_DEGREE
    fanout_fuzz: int = DEFAULT_FANOUT_FUZZ
    api_key: str = "dev-key"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            testing=os.getenv("TESTING") == "1",
            app_version=os.getenv("APP_VERSION") or None,
            tube=os.getenv("TUBEWORK_TUBE", DEFAULT_TUBE),
            sleep_seconds=float(os.getenv("WORKER_SLEEP_SECONDS", "60")),
            lease_timeout=float(os.getenv("WORKER_LEASE_TIMEOUT", "5")),
            poll_seconds=float(os.getenv("WORKER_POLL_SECONDS", "0.5")),
            fanout_degree=int(os.getenv("FANOUT_DEGREE", str(DEFAULT_FANOUT_DEGREE))),
            fanout_fuzz=int(os.getenv("FANOUT_FUZZ", str(DEFAULT_FANOUT_FUZZ))),
            api_key=os.getenv("API_KEY", "dev-key"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class FanoutDefaults:
    degree: int = DEFAULT_FANOUT_DEGREE
    fuzz: int = DEFAULT_FANOUT_FUZZ


@dataclass
class WorkerConfig:
    """Everything producers and workers need, built once at start-up.

    Callbacks may be plain functions or coroutine functions:

    - ``error_handler(job, exc)`` replaces the default bury/release policy
    - ``external_handler(job)`` runs jobs that are not tubework envelopes
    - ``pre_lease_hooks``: ``hook()`` before every lease attempt
    - ``before_job(job)`` before every tubework job
    - ``shutdown_hook()`` once when the worker stops, to finish outside work
    """

    queue: Any = None
    app_version: Optional[str] = None
    default_tube: str = DEFAULT_TUBE
    operations: OperationRegistry = field(default_factory=OperationRegistry.with_builtins)
    locator: EntityLocator = field(default_factory=EntityLocator)
    hooks: EventHooks = field(default_factory=EventHooks)
    codec: TaskCodec = field(default_factory=TaskCodec)
    error_handler: Optional[Callable] = None
    external_handler: Optional[Callable] = None
    pre_lease_hooks: List[Callable] = field(default_factory=list)
    before_job: Optional[Callable] = None
    shutdown_hook: Optional[Callable] = None
    sleep_seconds: float = 60.0
    lease_timeout: float = 5.0
    brief_seconds: float = 0.1
    stale_age_seconds: float = 60.0
    error_disposition: str = "bury"
    mismatch_delay: int = 10
    fanout: FanoutDefaults = field(default_factory=FanoutDefaults)

    def __post_init__(self):
        if self.error_disposition not in ERROR_DISPOSITIONS:
            raise InvalidArgumentError(
                f"error_disposition must be one of {ERROR_DISPOSITIONS}, got {self.error_disposition!r}"
            )
        if self.fanout.degree < 1:
            raise InvalidArgumentError("fanout degree must be at least 1")

    @property
    def tube(self) -> str:
        """Tube new jobs go to unless the caller names one."""
        return self.app_version or self.default_tube

    def enqueuer(self):
        from .enqueuer import Enqueuer

        return Enqueuer(self)

    @classmethod
    def from_settings(cls, settings: Settings, **overrides) -> "WorkerConfig":
        from .queue import RedisQueueConnection

        values = dict(
            queue=RedisQueueConnection(url=settings.redis_url, poll_interval=settings.poll_seconds),
            app_version=settings.app_version,
            default_tube=settings.tube,
            sleep_seconds=settings.sleep_seconds,
            lease_timeout=settings.lease_timeout,
            fanout=FanoutDefaults(degree=settings.fanout_degree, fuzz=settings.fanout_fuzz),
        )
        values.update(overrides)
        return cls(**values)
