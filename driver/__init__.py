from driver.config import DriverConfig, load_config
from driver.driver import MY_MESSAGES, ROOM_MESSAGES_STREAM, ChatDriver
from driver.state import ChatMessage, ConnectionState, FullUserData, SessionIdentity

__all__ = [
    "ChatDriver",
    "ChatMessage",
    "ConnectionState",
    "DriverConfig",
    "FullUserData",
    "MY_MESSAGES",
    "ROOM_MESSAGES_STREAM",
    "SessionIdentity",
    "load_config",
]
