"""Task descriptor and job envelope wire format.

A task descriptor names a target, an operation and its arguments. Values are
drawn from a closed set and rendered as tagged JSON so that the worker gets
back exactly what the producer submitted::

    {"v": 1, "target": {"$ref": ["User", 7]}, "op": "send_digest",
     "args": [{"$range": [0, 10, 1]}, "weekly"], "extras": {}}

Anything outside that set is rejected with ``NotSerializableError`` before a
job is created.
"""
import json
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import NotSerializableError
from .registry import EntityRef, Submittable

FORMAT_VERSION = 1
SELF_TYPE = "tubework"

_PLAIN = (type(None), bool, int, float, str)


@dataclass
class TaskDescriptor:
    target: Any
    operation: str
    args: List[Any] = field(default_factory=list)
    extras: Dict[str, Any] = field(default_factory=dict)
    version: int = FORMAT_VERSION


@dataclass
class Envelope:
    """Scheduling metadata wrapped around an encoded task descriptor."""

    type: str
    code: Dict[str, Any]
    appver: Optional[str] = None
    tube: Optional[str] = None
    delete_first: bool = False

    def dumps(self) -> str:
        return json.dumps(
            {
                "type": self.type,
                "code": self.code,
                "appver": self.appver,
                "tube": self.tube,
                "delete_first": self.delete_first,
            },
            sort_keys=True,
        )

    @classmethod
    def parse(cls, body: str) -> Optional["Envelope"]:
        """Return the envelope carried by ``body``, or None for foreign jobs."""
        try:
            data = json.loads(body)
        except (TypeError, ValueError):
            return None
        if not isinstance(data, dict) or data.get("type") != SELF_TYPE:
            return None
        if not isinstance(data.get("code"), dict):
            return None
        return cls(
            type=SELF_TYPE,
            code=data["code"],
            appver=data.get("appver"),
            tube=data.get("tube"),
            delete_first=bool(data.get("delete_first", False)),
        )


class TaskCodec:
    """Encodes and decodes descriptor values.

    Enum classes must be registered on both sides so that members can be
    restored by name.
    """

    def __init__(self):
        self._enums: Dict[str, type] = {}

    @staticmethod
    def _enum_key(cls) -> str:
        return f"{cls.__module__}:{cls.__qualname__}"

    def register_enum(self, cls):
        if not (isinstance(cls, type) and issubclass(cls, Enum)):
            raise NotSerializableError(f"{cls!r} is not an Enum class")
        self._enums[self._enum_key(cls)] = cls
        return cls

    def encode(self, value):
        if isinstance(value, Enum):
            key = self._enum_key(type(value))
            if key not in self._enums:
                raise NotSerializableError(f"enum {key} is not registered")
            return {"$enum": [key, value.name]}
        if type(value) in _PLAIN:
            return value
        if isinstance(value, Submittable):
            return self.encode(value.task_ref())
        if type(value) is EntityRef:
            return {"$ref": [value.kind, self.encode(value.key)]}
        if type(value) is list:
            return [self.encode(v) for v in value]
        if type(value) is tuple:
            return {"$tuple": [self.encode(v) for v in value]}
        if type(value) is dict:
            return {"$map": [[self.encode(k), self.encode(v)] for k, v in value.items()]}
        if type(value) is range:
            return {"$range": [value.start, value.stop, value.step]}
        if type(value) is datetime:
            return {"$datetime": value.isoformat()}
        if type(value) is date:
            return {"$date": value.isoformat()}
        raise NotSerializableError(
            f"no task descriptor representation for {type(value).__name__}: {value!r}"
        )

    def decode(self, value):
        if type(value) in _PLAIN:
            return value
        if isinstance(value, list):
            return [self.decode(v) for v in value]
        if not isinstance(value, dict) or len(value) != 1:
            raise NotSerializableError(f"malformed descriptor value: {value!r}")
        (tag, body), = value.items()
        if tag == "$tuple":
            return tuple(self.decode(v) for v in body)
        if tag == "$map":
            return {self.decode(k): self.decode(v) for k, v in body}
        if tag == "$range":
            return range(*body)
        if tag == "$datetime":
            return datetime.fromisoformat(body)
        if tag == "$date":
            return date.fromisoformat(body)
        if tag == "$ref":
            kind, key = body
            return EntityRef(kind, self.decode(key))
        if tag == "$enum":
            key, name = body
            cls = self._enums.get(key)
            if cls is None:
                raise NotSerializableError(f"enum {key} is not registered")
            return cls[name]
        raise NotSerializableError(f"unknown descriptor tag {tag!r}")

    def describe(self, target, operation: str, args=(), extras=None) -> TaskDescriptor:
        """Build a descriptor, encoding every value up front."""
        return TaskDescriptor(
            target=self.encode(target),
            operation=operation,
            args=[self.encode(a) for a in args],
            extras={k: self.encode(v) for k, v in (extras or {}).items()},
        )

    def dump_descriptor(self, descriptor: TaskDescriptor) -> Dict[str, Any]:
        return {
            "v": descriptor.version,
            "target": descriptor.target,
            "op": descriptor.operation,
            "args": descriptor.args,
            "extras": descriptor.extras,
        }

    def load_descriptor(self, data: Dict[str, Any]) -> TaskDescriptor:
        """Decode a wire descriptor into live values (EntityRefs left unresolved)."""
        version = data.get("v")
        if version != FORMAT_VERSION:
            raise NotSerializableError(f"unsupported descriptor version {version!r}")
        if not isinstance(data.get("op"), str):
            raise NotSerializableError("descriptor has no operation name")
        return TaskDescriptor(
            target=self.decode(data.get("target")),
            operation=data["op"],
            args=[self.decode(a) for a in data.get("args", [])],
            extras={k: self.decode(v) for k, v in data.get("extras", {}).items()},
            version=version,
        )


def render(descriptor: TaskDescriptor) -> str:
    """Short human readable form for logs."""
    return f"{descriptor.target!r}.{descriptor.operation}({', '.join(repr(a) for a in descriptor.args)})"
