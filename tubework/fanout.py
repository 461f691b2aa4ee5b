"""Bulk submission over a range without one top-level job per element.

A range no larger than the fanout degree gets one job per element. A larger
range is cut into ``degree`` contiguous pieces and each piece becomes a job
that runs this same splitter on a worker, so a submission of N elements
creates at most ``degree`` jobs directly and the tree is
``ceil(log_degree(N))`` levels deep.
"""
import logging
from typing import Any, Dict, List, Optional

from .errors import InvalidArgumentError

logger = logging.getLogger(__name__)

FANOUT_OPERATION = "fanout.each"
DEFAULT_FANOUT_DEGREE = 1000
DEFAULT_FANOUT_FUZZ = 0

# keys a split job inherits from the caller's options
_SCHEDULING_KEYS = ("delay", "ttr", "tube")


def split_interval(interval: range, parts: int) -> List[range]:
    """Cut ``interval`` into at most ``parts`` contiguous non-empty ranges.

    Splitting counts elements, not numeric span, so steps are preserved and
    piece sizes differ by at most one.
    """
    if parts < 1:
        raise InvalidArgumentError("invalid number of parts")
    size = len(interval)
    if size == 0:
        return []
    parts = min(parts, size)
    base, extra = divmod(size, parts)
    pieces = []
    start = 0
    for i in range(parts):
        stop = start + base + (1 if i < extra else 0)
        pieces.append(interval[start:stop])
        start = stop
    return pieces


def split_options(options: Dict[str, Any], default_fuzz: int = DEFAULT_FANOUT_FUZZ) -> Dict[str, Any]:
    """Options for the recursive split jobs of a fanout.

    ``fanout_pri`` replaces ``pri`` and ``fanout_fuzz`` replaces ``fuzz``;
    leaf jobs keep the caller's values.
    """
    child = {k: options[k] for k in _SCHEDULING_KEYS if options.get(k) is not None}
    pri = options.get("fanout_pri")
    if pri is None:
        pri = options.get("pri")
    if pri is not None:
        child["pri"] = pri
    fuzz = options.get("fanout_fuzz")
    if fuzz is None:
        fuzz = default_fuzz
    if fuzz:
        child["fuzz"] = fuzz
    return child


async def submit_each(enqueuer, interval: range, target, operation: str, args=(),
                      options: Optional[Dict[str, Any]] = None) -> List[int]:
    """Schedule ``target.operation(i, *args)`` for every ``i`` in ``interval``.

    Returns the ids of the jobs created directly by this call.
    """
    if type(interval) is not range:
        raise InvalidArgumentError(f"fanout needs a range, got {type(interval).__name__}")
    options = {k: v for k, v in (options or {}).items() if v is not None}
    defaults = enqueuer.config.fanout
    degree = options.get("fanout_degree", defaults.degree)
    if not isinstance(degree, int) or isinstance(degree, bool) or degree < 1:
        raise InvalidArgumentError(f"fanout_degree must be a positive integer, got {degree!r}")

    args = list(args)
    if len(interval) <= degree:
        return [await enqueuer.submit(target, operation, [i] + args, options) for i in interval]

    # a degree of 1 would resubmit the same range forever
    pieces = split_interval(interval, max(degree, 2))
    child_options = split_options(options, defaults.fuzz)
    logger.info("fanout %r over %d elements: %d split jobs", operation, len(interval), len(pieces))
    return [
        await enqueuer.submit(piece, FANOUT_OPERATION, [target, operation, args, options], child_options)
        for piece in pieces
    ]


async def fanout_each(ctx, interval: range, target, operation: str, args: List[Any], options: Dict[str, Any]):
    """Worker side of a split job: continue the fanout on this piece."""
    await submit_each(ctx.enqueuer, interval, target, operation, args, options)
