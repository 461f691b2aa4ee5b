DEFAULT_BRIEF_SECONDS = 0.1


class ConnectionAffinity:
    """Remembers the connection that last produced a job quickly.

    If a connection hands out a job right away it probably has more, so the
    worker keeps leasing from it. A slow or empty lease means it is probably
    drained, and the worker goes back to having no preference. This keeps a
    busy tube from starving the others without paying for round-robin.
    """

    def __init__(self, brief_seconds: float = DEFAULT_BRIEF_SECONDS):
        self.brief_seconds = brief_seconds
        self._hint = None

    @property
    def hint(self):
        return self._hint

    def pick(self, default):
        return self._hint if self._hint is not None else default

    def is_brief(self, elapsed: float) -> bool:
        return abs(elapsed) < self.brief_seconds

    def observe(self, job, elapsed: float):
        if job is not None and self.is_brief(elapsed):
            self._hint = job.conn
        else:
            self._hint = None

    def clear(self):
        self._hint = None
