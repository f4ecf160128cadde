"""
Chat message classification.

Turns a raw room message payload into a ChatMessage and derives three flags
relative to the logged-in session:

- is_from_myself: the sender id equals the session user id
- is_bot_mentioned: the text mentions @<session username> and the message
  is not our own (the bot must not react to itself)
- is_bot: the payload carries the service's bot marker

Mentions are case-sensitive and must cover the whole username: "@alice"
does not match inside "@alicex". A username ends at the first character that
cannot be part of one; a single trailing "." before whitespace or end of text
is read as punctuation.
"""

from __future__ import annotations
import re
from functools import lru_cache
from typing import Any, Dict, Optional, Pattern

from driver.state import ChatMessage, SessionIdentity
from shared.utils import ejson_date

# Characters allowed in a username (regex class body). Matches the service's
# default UTF8_Names_Validation of [0-9a-zA-Z-_.]
DEFAULT_USERNAME_CHARS = r"\w.\-"


@lru_cache(maxsize=64)
def mention_pattern(username: str, username_chars: str = DEFAULT_USERNAME_CHARS) -> Pattern[str]:
    name_char = f"[{username_chars}]"
    return re.compile(
        rf"(?<!{name_char})(?<!@)@{re.escape(username)}(?=\.?(?!{name_char}))"
    )


def mentions(text: str, username: str, username_chars: str = DEFAULT_USERNAME_CHARS) -> bool:
    if not text or not username:
        return False
    return mention_pattern(username, username_chars).search(text) is not None


def classify_message(
    payload: Dict[str, Any],
    identity: Optional[SessionIdentity],
    *,
    username_chars: str = DEFAULT_USERNAME_CHARS,
) -> ChatMessage:
    sender = payload.get("u")
    if not isinstance(sender, dict):
        sender = {}
    sender_id = str(sender.get("_id") or "")
    text = payload.get("msg")
    if not isinstance(text, str):
        text = ""

    is_from_myself = identity is not None and bool(sender_id) and sender_id == identity.user_id
    is_bot_mentioned = (
        identity is not None
        and not is_from_myself
        and mentions(text, identity.username, username_chars)
    )

    return ChatMessage(
        id=str(payload.get("_id", "")),
        room_id=str(payload.get("rid", "")),
        sender_id=sender_id,
        sender_username=str(sender.get("username", "")),
        text=text,
        timestamp=ejson_date(payload.get("ts")),
        is_bot=bool(payload.get("bot")),
        is_bot_mentioned=is_bot_mentioned,
        is_from_myself=is_from_myself,
        edited_at=ejson_date(payload.get("editedAt")),
        raw=payload,
    )
