"""
DDP frame codec.

Every frame on the wire is a JSON object whose "msg" field names its kind:

    {"msg": "method", "id": "7", "method": "sendMessage", "params": [...]}
    {"msg": "result", "id": "7", "result": {...}}
    {"msg": "changed", "collection": "stream-room-messages", "id": "id",
     "fields": {"eventName": "GENERAL", "args": [...]}}

decode() turns a text frame into one of the dataclasses below. Kinds the
driver does not know (and objects without "msg", such as the service's
initial {"server_id": "0"} greeting) decode to Unknown so the stream keeps
flowing.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Dict, List, Optional, Union
import json

from shared.errors import DecodeError

DDP_VERSION = "1"
SUPPORTED_VERSIONS = ["1", "pre2", "pre1"]


@dataclass
class Connect:
    kind: ClassVar[str] = "connect"
    version: str = DDP_VERSION
    support: List[str] = field(default_factory=lambda: list(SUPPORTED_VERSIONS))
    session: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"version": self.version, "support": self.support}
        if self.session is not None:
            data["session"] = self.session
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Connect":
        return cls(
            version=str(data.get("version", DDP_VERSION)),
            support=list(data.get("support") or []),
            session=data.get("session"),
        )


@dataclass
class Connected:
    kind: ClassVar[str] = "connected"
    session: str

    def to_dict(self) -> Dict[str, Any]:
        return {"session": self.session}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Connected":
        return cls(session=_require_str(data, "session", cls.kind))


@dataclass
class Failed:
    """Handshake refused; 'version' is the one the service would accept."""
    kind: ClassVar[str] = "failed"
    version: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"version": self.version} if self.version is not None else {}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Failed":
        return cls(version=data.get("version"))


@dataclass
class MethodCall:
    kind: ClassVar[str] = "method"
    id: str
    method: str
    params: List[Any] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "method": self.method, "params": self.params}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MethodCall":
        params = data.get("params", [])
        if not isinstance(params, list):
            raise DecodeError("'params' must be a list")
        return cls(
            id=_require_str(data, "id", cls.kind),
            method=_require_str(data, "method", cls.kind),
            params=params,
        )


@dataclass
class MethodResult:
    """Exactly one of result/error is meaningful; error wins when both are set."""
    kind: ClassVar[str] = "result"
    id: str
    result: Any = None
    error: Optional[Dict[str, Any]] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> Dict[str, Any]:
        if self.error is not None:
            return {"id": self.id, "error": self.error}
        return {"id": self.id, "result": self.result}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MethodResult":
        error = data.get("error")
        if error is not None and not isinstance(error, dict):
            error = {"reason": str(error)}
        return cls(id=_require_str(data, "id", cls.kind), result=data.get("result"), error=error)


@dataclass
class Updated:
    kind: ClassVar[str] = "updated"
    methods: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"methods": self.methods}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Updated":
        return cls(methods=[str(m) for m in data.get("methods") or []])


@dataclass
class Subscribe:
    kind: ClassVar[str] = "sub"
    id: str
    name: str
    params: List[Any] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "params": self.params}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Subscribe":
        return cls(
            id=_require_str(data, "id", cls.kind),
            name=_require_str(data, "name", cls.kind),
            params=list(data.get("params") or []),
        )


@dataclass
class Unsubscribe:
    kind: ClassVar[str] = "unsub"
    id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Unsubscribe":
        return cls(id=_require_str(data, "id", cls.kind))


@dataclass
class Ready:
    kind: ClassVar[str] = "ready"
    subs: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"subs": self.subs}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Ready":
        subs = data.get("subs")
        if not isinstance(subs, list):
            raise DecodeError("'ready' frame requires a 'subs' list")
        return cls(subs=[str(s) for s in subs])


@dataclass
class NoSub:
    kind: ClassVar[str] = "nosub"
    id: str
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id}
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NoSub":
        error = data.get("error")
        if error is not None and not isinstance(error, dict):
            error = {"reason": str(error)}
        return cls(id=_require_str(data, "id", cls.kind), error=error)


@dataclass
class _CollectionEvent:
    collection: str
    id: str
    fields: Dict[str, Any] = field(default_factory=dict)

    @property
    def event_name(self) -> Optional[str]:
        """Stream events carry the routing key (e.g. a room id) in fields.eventName."""
        name = self.fields.get("eventName")
        return str(name) if name is not None else None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"collection": self.collection, "id": self.id}
        if self.fields:
            data["fields"] = self.fields
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        fields = data.get("fields") or {}
        if not isinstance(fields, dict):
            raise DecodeError("'fields' must be an object")
        return cls(
            collection=_require_str(data, "collection", cls.kind),  # type: ignore[attr-defined]
            id=_require_str(data, "id", cls.kind),  # type: ignore[attr-defined]
            fields=fields,
        )


@dataclass
class Added(_CollectionEvent):
    kind: ClassVar[str] = "added"


@dataclass
class Changed(_CollectionEvent):
    kind: ClassVar[str] = "changed"


@dataclass
class Removed(_CollectionEvent):
    kind: ClassVar[str] = "removed"


@dataclass
class Ping:
    kind: ClassVar[str] = "ping"
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id} if self.id is not None else {}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Ping":
        ping_id = data.get("id")
        return cls(id=str(ping_id) if ping_id is not None else None)


@dataclass
class Pong:
    kind: ClassVar[str] = "pong"
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id} if self.id is not None else {}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pong":
        pong_id = data.get("id")
        return cls(id=str(pong_id) if pong_id is not None else None)


@dataclass
class Error:
    """Service complaint about a frame it could not process."""
    kind: ClassVar[str] = "error"
    reason: str = ""
    offending_message: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"reason": self.reason}
        if self.offending_message is not None:
            data["offendingMessage"] = self.offending_message
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Error":
        return cls(reason=str(data.get("reason", "")), offending_message=data.get("offendingMessage"))


@dataclass
class Unknown:
    kind: ClassVar[str] = "unknown"
    data: Dict[str, Any] = field(default_factory=dict)


Frame = Union[
    Connect, Connected, Failed, MethodCall, MethodResult, Updated, Subscribe,
    Unsubscribe, Ready, NoSub, Added, Changed, Removed, Ping, Pong, Error, Unknown,
]

_DECODERS: Dict[str, Callable[[Dict[str, Any]], Any]] = {
    cls.kind: cls.from_dict
    for cls in (
        Connect, Connected, Failed, MethodCall, MethodResult, Updated, Subscribe,
        Unsubscribe, Ready, NoSub, Added, Changed, Removed, Ping, Pong, Error,
    )
}


def encode(frame: Frame) -> str:
    """Serialize a frame to its compact JSON text form."""
    if isinstance(frame, Unknown):
        data = dict(frame.data)
    else:
        data = {"msg": frame.kind}
        data.update(frame.to_dict())
    return json.dumps(data, separators=(",", ":"))


def decode(text: Union[str, bytes]) -> Frame:
    """Parse one text frame. Raises DecodeError for frames that cannot be used."""
    if isinstance(text, bytes):
        try:
            text = text.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"Frame is not valid UTF-8: {e}")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise DecodeError(f"Invalid JSON: {e}")
    if not isinstance(data, dict):
        raise DecodeError(f"Frame must be a JSON object, got {type(data).__name__}")

    msg = data.get("msg")
    decoder = _DECODERS.get(msg) if isinstance(msg, str) else None
    if decoder is None:
        return Unknown(data=data)
    return decoder(data)


def _require_str(data: Dict[str, Any], key: str, kind: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise DecodeError(f"'{kind}' frame requires a non-empty string '{key}'")
    return value
