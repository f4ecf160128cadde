from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ConnectionState(str, Enum):
    """Per-driver connection lifecycle."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class SessionIdentity:
    user_id: str
    username: str
    token: Optional[str] = None


@dataclass(frozen=True)
class ChatMessage:
    """
    A room message as seen by this session.

    is_bot, is_bot_mentioned and is_from_myself are derived by the classifier
    when the message is ingested; they are never read from the wire as-is.
    """
    id: str
    room_id: str
    sender_id: str
    sender_username: str
    text: str
    timestamp: Optional[datetime]
    is_bot: bool = False
    is_bot_mentioned: bool = False
    is_from_myself: bool = False
    edited_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class FullUserData:
    id: str
    username: str
    name: Optional[str] = None
    emails: List[str] = field(default_factory=list)
    roles: List[str] = field(default_factory=list)
    active: bool = True
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "FullUserData":
        emails = [
            e.get("address") for e in data.get("emails") or []
            if isinstance(e, dict) and e.get("address")
        ]
        return cls(
            id=str(data.get("_id", "")),
            username=str(data.get("username", "")),
            name=data.get("name"),
            emails=emails,
            roles=list(data.get("roles") or []),
            active=bool(data.get("active", True)),
            raw=data,
        )
