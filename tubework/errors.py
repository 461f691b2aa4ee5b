"""Error taxonomy shared by the producer and the worker.

Every failure is mapped onto a ``FailureKind`` by ``classify_failure`` and the
handling sites match on that kind instead of on exception classes.
"""
import asyncio
from enum import Enum


class TubeworkError(Exception):
    """Base class for errors raised by this package."""


class QueueError(TubeworkError):
    """Something went wrong talking to the queue server."""


class QueueConnectionError(QueueError, ConnectionError):
    """The queue server is unreachable or the session broke."""


class DeadlineSoonError(QueueError):
    """A job leased by this connection is about to exceed its TTR."""


class UnexpectedResponseError(QueueError):
    """The server refused a job command, usually because the lease is gone."""


class NotSerializableError(TubeworkError, TypeError):
    """A value has no representation in the task descriptor format."""


class InvalidArgumentError(TubeworkError, ValueError):
    pass


class EntityNotFoundError(TubeworkError, LookupError):
    """A referenced entity could not be located (possibly replication lag)."""


class UnknownOperationError(TubeworkError, LookupError):
    pass


class PanicError(TubeworkError):
    """Unrecoverable worker condition; stops the loop."""


class FailureKind(str, Enum):
    TRANSIENT_INFRA = "transient_infra"
    DEADLINE_SOON = "deadline_soon"
    TRANSIENT_APP = "transient_app"
    PERMANENT_APP = "permanent_app"
    SERIALIZATION = "serialization"
    FATAL = "fatal"
    INTERRUPT = "interrupt"


_INTERRUPTS = (KeyboardInterrupt, SystemExit, asyncio.CancelledError)


def classify_failure(exc: BaseException) -> FailureKind:
    """Map an exception onto the failure taxonomy."""
    if isinstance(exc, _INTERRUPTS):
        return FailureKind.INTERRUPT
    if isinstance(exc, PanicError):
        return FailureKind.FATAL
    if isinstance(exc, DeadlineSoonError):
        return FailureKind.DEADLINE_SOON
    if isinstance(exc, (QueueError, ConnectionError, TimeoutError)):
        return FailureKind.TRANSIENT_INFRA
    if isinstance(exc, EntityNotFoundError):
        return FailureKind.TRANSIENT_APP
    if isinstance(exc, NotSerializableError):
        return FailureKind.SERIALIZATION
    return FailureKind.PERMANENT_APP
