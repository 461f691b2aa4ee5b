from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Dict, Optional

from .codec import Envelope

DEFAULT_PRI = 512
DEFAULT_DELAY = 0
DEFAULT_TTR = 120
DEFAULT_TUBE = "default"
# id reported for jobs run in-process when no queue is configured
SYNC_JOB_ID = 0


@dataclass
class Job:
    """One leased (or synchronously run) unit of work."""

    id: int
    body: str
    pri: int = DEFAULT_PRI
    delay: int = DEFAULT_DELAY
    ttr: int = DEFAULT_TTR
    tube: str = DEFAULT_TUBE
    age: float = 0.0
    reserves: int = 0
    timeouts: int = 0
    releases: int = 0
    conn: Any = field(default=None, repr=False, compare=False)

    @cached_property
    def envelope(self) -> Optional[Envelope]:
        return Envelope.parse(self.body)

    @property
    def server(self) -> str:
        return self.conn.address if self.conn is not None else "<none>"

    async def delete(self):
        await self.conn.ack(self.id)

    async def release(self, pri: Optional[int] = None, delay: int = 0):
        await self.conn.release(self.id, self.pri if pri is None else pri, delay)

    async def bury(self, pri: Optional[int] = None):
        await self.conn.bury(self.id, self.pri if pri is None else pri)

    async def decay(self):
        # back off by doubling the delay on every retry
        await self.release(self.pri, max(1, self.delay) * 2)

    async def touch(self):
        await self.conn.touch(self.id)

    async def stats(self) -> Dict[str, Any]:
        return await self.conn.stats(self.id)
