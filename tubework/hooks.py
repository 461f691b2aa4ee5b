"""Deferred lifecycle callbacks per entity type.

The application subscribes callbacks at configuration time::

    hooks.subscribe("User", AFTER_CREATE, send_welcome_mail)

and calls ``await hooks.notify(enqueuer, user, AFTER_CREATE)`` once the change
is stored. That enqueues a single job; the worker locates the entity again and
runs every callback subscribed for the pair, in subscription order.
"""
import logging
from typing import Callable, Dict, List, Optional, Tuple

from .errors import InvalidArgumentError
from .registry import Submittable, maybe_await

logger = logging.getLogger(__name__)

HOOKS_OPERATION = "hooks.run"

AFTER_CREATE = "after_create"
AFTER_UPDATE = "after_update"
AFTER_SAVE = "after_save"


class EventHooks:
    def __init__(self):
        self._subscribers: Dict[Tuple[str, str], List[Callable]] = {}

    def subscribe(self, kind: str, event: str, callback: Optional[Callable] = None):
        def _add(cb: Callable) -> Callable:
            self._subscribers.setdefault((kind, event), []).append(cb)
            return cb

        if callback is None:
            return _add
        return _add(callback)

    def callbacks(self, kind: str, event: str) -> List[Callable]:
        return list(self._subscribers.get((kind, event), []))

    async def notify(self, enqueuer, entity: Submittable, event: str, options=None) -> Optional[int]:
        """Enqueue the callbacks for ``event`` on ``entity``; None if nobody listens."""
        if not isinstance(entity, Submittable):
            raise InvalidArgumentError(f"{type(entity).__name__} cannot be the target of a hook")
        kind = entity.task_ref().kind
        if not self.callbacks(kind, event):
            return None
        return await enqueuer.submit(entity, HOOKS_OPERATION, [kind, event], options)

    async def run(self, entity, kind: str, event: str):
        for cb in self.callbacks(kind, event):
            logger.debug("running %s hook %s for %s", event, getattr(cb, "__name__", cb), kind)
            await maybe_await(cb(entity))


async def run_hooks(ctx, entity, kind: str, event: str):
    await ctx.config.hooks.run(entity, kind, event)
