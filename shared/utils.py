from __future__ import annotations
import hashlib
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# ========================================
#           DDP VALUE HELPERS
# ========================================
"""
Small helpers shared by the driver when it builds method payloads or reads
EJSON values out of service replies.
"""

# Meteor's Random.id() alphabet: no ambiguous characters (0/O, 1/l/I)
_ID_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTWXYZabcdefghijkmnopqrstuvwxyz"


def now_ms() -> int:
    return int(time.time() * 1000)


def random_id(length: int = 17) -> str:
    """
    Client-side document id in the service's own format, used for message _id
    so a sent message can be matched with its stream echo.
    """
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def password_digest(password: str) -> Dict[str, str]:
    """
    The login method never carries the plain password: it takes
    {"digest": sha256-hex, "algorithm": "sha-256"}.
    """
    return {
        "digest": hashlib.sha256(password.encode("utf-8")).hexdigest(),
        "algorithm": "sha-256",
    }


def ejson_date(value: Any) -> Optional[datetime]:
    """
    Decode an EJSON date ({"$date": <unix ms>}) into an aware UTC datetime.

    Plain numbers are taken as unix ms; anything else yields None.
    """
    if isinstance(value, dict):
        value = value.get("$date")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)


def to_ejson_date(moment: datetime) -> Dict[str, int]:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return {"$date": int(moment.timestamp() * 1000)}
