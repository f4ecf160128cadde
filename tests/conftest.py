import asyncio
import hashlib
import itertools
import json
import sys
import time
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from driver.config import DriverConfig
from driver.driver import ChatDriver
from shared.errors import DriverConnectionError


def ms() -> int:
    return int(time.time() * 1000)


class FakeTransport:
    """In-memory stand-in for the WebSocket: records sent frames, replays pushed ones."""

    def __init__(self, server=None) -> None:
        self.server = server
        self.sent: list[dict] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    def push(self, frame) -> None:
        self._inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self) -> None:
        """Server side hang-up."""
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(None)

    def sent_of(self, kind: str) -> list[dict]:
        return [f for f in self.sent if f.get("msg") == kind]

    async def send(self, text: str) -> None:
        if self.closed:
            raise DriverConnectionError("Connection closed while sending")
        frame = json.loads(text)
        self.sent.append(frame)
        if self.server is not None:
            self.server.handle(self, frame)

    async def __aiter__(self):
        while True:
            item = await self._inbox.get()
            if item is None:
                return
            yield item

    async def close(self) -> None:
        self.drop()


class FakeChatServer:
    """
    Scripted chat service speaking just enough DDP for the driver tests.

    Methods are answered synchronously from handle(); names listed in
    silent_methods never get a reply, and answer_pings=False withholds pongs.
    """

    def __init__(self) -> None:
        self.users = {
            "alice": {"_id": "u-alice", "password": "secret", "name": "Alice", "email": "alice@example.org"},
            "bob": {"_id": "u-bob", "password": "hunter2", "name": "Bob", "email": "bob@example.org"},
        }
        self.rooms: dict[str, list[dict]] = {"GENERAL": []}
        self.transports: list[FakeTransport] = []
        self.logins: dict[int, str] = {}
        self.room_subs: dict[int, dict[str, str]] = {}
        self.answer_pings = True
        self.greet = True
        self.refuse_handshake = False
        self.silent_methods: set[str] = set()
        self._sessions = itertools.count(1)
        self._rooms = itertools.count(1)

    async def factory(self) -> FakeTransport:
        transport = FakeTransport(self)
        self.transports.append(transport)
        if self.greet:
            transport.push({"server_id": "0"})
        return transport

    @property
    def transport(self) -> FakeTransport:
        return self.transports[-1]

    # -- frame handling -------------------------------------------------

    def handle(self, transport: FakeTransport, frame: dict) -> None:
        kind = frame.get("msg")
        if kind == "connect":
            if self.refuse_handshake:
                transport.push({"msg": "failed", "version": "1"})
            else:
                transport.push({"msg": "connected", "session": f"session-{next(self._sessions)}"})
        elif kind == "ping":
            if self.answer_pings:
                transport.push({"msg": "pong", "id": frame.get("id")})
        elif kind == "sub":
            if frame["name"] != "stream-room-messages":
                transport.push({"msg": "nosub", "id": frame["id"],
                                "error": {"error": 404, "reason": "Subscription not found"}})
                return
            self.room_subs.setdefault(id(transport), {})[frame["id"]] = frame["params"][0]
            transport.push({"msg": "ready", "subs": [frame["id"]]})
        elif kind == "unsub":
            self.room_subs.get(id(transport), {}).pop(frame["id"], None)
            transport.push({"msg": "nosub", "id": frame["id"]})
        elif kind == "method":
            if frame["method"] in self.silent_methods:
                return
            handler = getattr(self, "m_" + frame["method"], None)
            if handler is None:
                transport.push({"msg": "result", "id": frame["id"],
                                "error": {"error": 404, "reason": f"Method '{frame['method']}' not found"}})
                return
            try:
                result = handler(transport, *frame.get("params", []))
            except RemoteFailure as e:
                transport.push({"msg": "result", "id": frame["id"], "error": e.payload})
                return
            transport.push({"msg": "result", "id": frame["id"], "result": result})
            transport.push({"msg": "updated", "methods": [frame["id"]]})

    # -- service side helpers -------------------------------------------

    def publish(self, message: dict) -> None:
        """Fan a stored message out to every matching room stream subscription."""
        for transport in self.transports:
            if transport.closed:
                continue
            for sub_id, room in self.room_subs.get(id(transport), {}).items():
                if room in (message["rid"], "__my_messages__"):
                    transport.push({
                        "msg": "changed",
                        "collection": "stream-room-messages",
                        "id": "id",
                        "fields": {"eventName": message["rid"], "args": [message]},
                    })

    def post_as(self, username: str, room: str, text: str, bot: bool = False) -> dict:
        user = self.users[username]
        message = {
            "_id": f"m-{ms()}-{len(self.rooms.setdefault(room, []))}",
            "rid": room,
            "msg": text,
            "ts": {"$date": ms()},
            "_updatedAt": {"$date": ms()},
            "u": {"_id": user["_id"], "username": username},
        }
        if bot:
            message["bot"] = {"i": "integration"}
        self.rooms[room].append(message)
        self.publish(message)
        return message

    def _user_of(self, transport: FakeTransport) -> str:
        username = self.logins.get(id(transport))
        if username is None:
            raise RemoteFailure(401, "You must be logged in to do this.")
        return username

    # -- methods --------------------------------------------------------

    def m_login(self, transport, credentials):
        if "resume" in credentials:
            for name, user in self.users.items():
                if credentials["resume"] == f"token-{name}":
                    self.logins[id(transport)] = name
                    return {"id": user["_id"], "token": f"token-{name}"}
            raise RemoteFailure(403, "You've been logged out by the server. Please log in again.")
        name = credentials["user"]["username"]
        user = self.users.get(name)
        digest = credentials["password"]["digest"]
        if user is None or hashlib.sha256(user["password"].encode()).hexdigest() != digest:
            raise RemoteFailure(403, "User not found")
        self.logins[id(transport)] = name
        return {"id": user["_id"], "token": f"token-{name}", "tokenExpires": {"$date": ms() + 3600_000}}

    def m_logout(self, transport):
        self.logins.pop(id(transport), None)
        return None

    def m_sendMessage(self, transport, payload):
        username = self._user_of(transport)
        if payload["rid"] not in self.rooms:
            raise RemoteFailure("error-invalid-room", "Invalid room")
        user = self.users[username]
        message = dict(payload)
        message.update({
            "ts": {"$date": ms()},
            "_updatedAt": {"$date": ms()},
            "u": {"_id": user["_id"], "username": username},
        })
        self.rooms[payload["rid"]].append(message)
        self.publish(message)
        return message

    def m_loadHistory(self, transport, room_id, end, limit, last_seen):
        self._user_of(transport)
        newest_first = list(reversed(self.rooms.get(room_id, [])))
        return {"messages": newest_first[:limit], "unreadNotLoaded": 0}

    def m_createChannel(self, transport, name, members, read_only):
        self._user_of(transport)
        room_id = f"room-{next(self._rooms)}"
        self.rooms[room_id] = []
        return {"rid": room_id}

    def m_eraseRoom(self, transport, room_id):
        self._user_of(transport)
        if self.rooms.pop(room_id, None) is None:
            raise RemoteFailure("error-invalid-room", "Invalid room")
        return True

    def m_getFullUserData(self, transport, query):
        self._user_of(transport)
        matches = [
            {"_id": u["_id"], "username": name, "name": u["name"], "active": True,
             "roles": ["user"], "emails": [{"address": u["email"], "verified": True}]}
            for name, u in self.users.items() if query["filter"] in name
        ]
        return matches[: query.get("limit", 1)]

    def m_getRoomIdByNameOrId(self, transport, name):
        return name if name in self.rooms else None


class RemoteFailure(Exception):
    def __init__(self, code, reason):
        super().__init__(reason)
        self.payload = {"error": code, "reason": reason, "message": f"{reason} [{code}]",
                        "errorType": "Meteor.Error"}


async def wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    end = loop.time() + timeout
    while loop.time() < end:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return False


@pytest.fixture
def chat_server():
    return FakeChatServer()


@pytest.fixture
def make_driver(chat_server):
    def _make(**overrides) -> ChatDriver:
        settings = {
            "connect_timeout": 2.0,
            "call_timeout": 2.0,
            "keepalive_interval": 60.0,
            "keepalive_timeout": 5.0,
        }
        settings.update(overrides)
        return ChatDriver(DriverConfig(**settings), transport_factory=chat_server.factory)

    return _make
