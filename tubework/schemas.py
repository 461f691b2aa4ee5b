from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class JobCreate(BaseModel):
    """A task descriptor in wire form (see tubework.codec) plus options."""

    operation: str = Field(min_length=1)
    target: Any = None
    args: List[Any] = Field(default_factory=list)
    options: Dict[str, Any] = Field(default_factory=dict)


class JobResponse(BaseModel):
    job_id: int
    status: str
    tube: Optional[str] = None


class TubeStats(BaseModel):
    name: str
    ready: int
    delayed: int
    reserved: int
    buried: int
