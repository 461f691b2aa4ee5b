import inspect
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from .errors import EntityNotFoundError, InvalidArgumentError, UnknownOperationError


async def maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass(frozen=True)
class EntityRef:
    """Stable external identifier of an application entity: type name + key."""

    kind: str
    key: Any


class Submittable:
    """Capability for objects that can be the target of a deferred operation.

    Implementors return a reference that a worker can turn back into the
    object through its ``EntityLocator``.
    """

    def task_ref(self) -> EntityRef:
        raise NotImplementedError

    async def submit(self, enqueuer, operation: str, args: Tuple = (), options: Optional[Dict[str, Any]] = None):
        return await enqueuer.submit(self, operation, args, options)


@dataclass
class Operation:
    name: str
    fn: Callable
    pass_context: bool = False
    resolve: bool = True


class OperationRegistry:
    """Maps operation names to the callables a worker runs for them."""

    def __init__(self):
        self._ops: Dict[str, Operation] = {}

    def register(self, name: str, fn: Optional[Callable] = None, *, pass_context: bool = False,
                 resolve: bool = True):
        """Register ``fn`` under ``name``; usable as a decorator when ``fn`` is omitted.

        ``resolve=False`` hands entity references to ``fn`` as they are instead
        of locating the entities first.
        """
        if not name:
            raise InvalidArgumentError("operation name cannot be empty")

        def _add(f: Callable) -> Callable:
            self._ops[name] = Operation(name=name, fn=f, pass_context=pass_context, resolve=resolve)
            return f

        if fn is None:
            return _add
        return _add(fn)

    def get(self, name: str) -> Operation:
        op = self._ops.get(name)
        if op is None:
            raise UnknownOperationError(f"no operation registered as {name!r}")
        return op

    def __contains__(self, name: str) -> bool:
        return name in self._ops

    def names(self):
        return sorted(self._ops)

    @classmethod
    def with_builtins(cls) -> "OperationRegistry":
        # imported here: both modules call back into the enqueuer
        from .fanout import FANOUT_OPERATION, fanout_each
        from .hooks import HOOKS_OPERATION, run_hooks

        registry = cls()
        registry.register(FANOUT_OPERATION, fanout_each, pass_context=True, resolve=False)
        registry.register(HOOKS_OPERATION, run_hooks, pass_context=True)
        return registry


class EntityLocator:
    """Finds application entities by reference when a job runs."""

    def __init__(self):
        self._finders: Dict[str, Callable] = {}

    def register(self, kind: str, finder: Callable):
        self._finders[kind] = finder

    async def find(self, ref: EntityRef):
        finder = self._finders.get(ref.kind)
        if finder is None:
            raise EntityNotFoundError(f"no finder registered for {ref.kind!r}")
        entity = await maybe_await(finder(ref.key))
        if entity is None:
            raise EntityNotFoundError(f"{ref.kind} {ref.key!r} not found")
        return entity

    async def resolve(self, value):
        """Replace every EntityRef in ``value`` (recursively) with its entity."""
        if isinstance(value, EntityRef):
            return await self.find(value)
        if isinstance(value, list):
            return [await self.resolve(v) for v in value]
        if isinstance(value, tuple):
            return tuple([await self.resolve(v) for v in value])
        if isinstance(value, dict):
            return {k: await self.resolve(v) for k, v in value.items()}
        return value


@dataclass
class TaskContext:
    """Handed to operations registered with ``pass_context=True``."""

    job: Any
    config: Any
    enqueuer: Any
