from __future__ import annotations
import asyncio
from contextlib import suppress
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Union

from driver.classifier import classify_message
from driver.config import DriverConfig
from driver.correlation import CorrelationRegistry
from driver.dedup import RecentMessageCache
from driver.dispatch import ListenerDispatcher
from driver.keepalive import KeepAliveMonitor
from driver.state import ChatMessage, ConnectionState, FullUserData, SessionIdentity
from driver.subscriptions import EventListener, Subscription, SubscriptionManager
from driver.ws_client import Transport, TransportFactory, WebSocketTransport
from shared.errors import (
    AuthenticationError,
    ConnectionLostError,
    DecodeError,
    DriverConnectionError,
    RemoteError,
)
from shared.frames import (
    Added, Changed, Connect, Connected, Error, Failed, Frame, MethodCall, MethodResult,
    NoSub, Ping, Pong, Ready, Removed, Unknown, Updated, decode, encode,
)
from shared.log import get_logger, log_frame
from shared.utils import password_digest, random_id, to_ejson_date

logger = get_logger(__name__)

MessageListener = Callable[[ChatMessage], Union[None, Awaitable[None]]]
DisconnectListener = Callable[[str], Union[None, Awaitable[None]]]

ROOM_MESSAGES_STREAM = "stream-room-messages"
MY_MESSAGES = "__my_messages__"
# getFullUserData filters by substring, so fetch enough rows to find the exact match
USER_LOOKUP_LIMIT = 100


class ChatDriver:
    """
    Real-time DDP client for a Rocket.Chat-style service.

    One driver owns one connection at a time. connect() starts an epoch and
    the ingestion task that reads every inbound frame and routes it to the
    correlation registry (method results, pongs), the subscription manager
    (ready/nosub/collection events) or the handshake. Room message events
    are classified and handed to message listeners through a dispatcher task,
    so application callbacks never stall the ingestion path.

    When the epoch ends (transport closed, undecodable stream, keep-alive
    timeout, or disconnect()) every pending call fails with
    ConnectionLostError and every subscription is stopped. There is no
    automatic reconnect; call connect() again for a fresh epoch.
    """

    def __init__(
        self,
        config: Optional[DriverConfig] = None,
        *,
        transport_factory: Optional[TransportFactory] = None,
    ) -> None:
        self.config = config or DriverConfig()
        self._transport_factory = transport_factory or self._open_websocket

        self.registry = CorrelationRegistry()
        self._dispatcher = ListenerDispatcher()
        self.subscriptions = SubscriptionManager(self.registry.issue, self._send, self._dispatcher)
        self.keepalive = KeepAliveMonitor(
            self.registry,
            self._send,
            self._on_unhealthy,
            interval=self.config.keepalive_interval,
            timeout=self.config.keepalive_timeout,
        )
        self._recent = RecentMessageCache()
        self._message_listeners: List[MessageListener] = []
        self._disconnect_listeners: List[DisconnectListener] = []

        self.state = ConnectionState.DISCONNECTED
        self.epoch = 0
        self.session_id: Optional[str] = None
        self.identity: Optional[SessionIdentity] = None

        self._transport: Optional[Transport] = None
        self._ingest_task: Optional[asyncio.Task] = None
        self._handshake: Optional[asyncio.Future] = None
        self._background_tasks: Set[asyncio.Task] = set()

    async def __aenter__(self) -> "ChatDriver":
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    @property
    def is_connected(self) -> bool:
        return self.state in (ConnectionState.CONNECTED, ConnectionState.AUTHENTICATED)

    # ========================================
    #           LISTENERS
    # ========================================

    def add_message_listener(self, listener: MessageListener) -> MessageListener:
        self._message_listeners.append(listener)
        return listener

    def remove_message_listener(self, listener: MessageListener) -> None:
        with suppress(ValueError):
            self._message_listeners.remove(listener)

    def add_disconnect_listener(self, listener: DisconnectListener) -> DisconnectListener:
        self._disconnect_listeners.append(listener)
        return listener

    def remove_disconnect_listener(self, listener: DisconnectListener) -> None:
        with suppress(ValueError):
            self._disconnect_listeners.remove(listener)

    async def wait_for_listeners(self) -> None:
        """Wait until every notification posted so far has been delivered."""
        if self._dispatcher.running:
            await self._dispatcher.drain()

    # ========================================
    #           CONNECTION LIFECYCLE
    # ========================================

    async def _open_websocket(self) -> Transport:
        transport = WebSocketTransport(
            self.config.url,
            ping_interval=self.config.transport_ping_interval,
            ping_timeout=self.config.transport_ping_timeout,
            open_timeout=self.config.connect_timeout,
        )
        return await transport.connect()

    async def connect(self) -> None:
        """Open the transport and complete the DDP handshake."""
        if self.state is not ConnectionState.DISCONNECTED:
            raise DriverConnectionError(f"Cannot connect while {self.state.value}")

        self.state = ConnectionState.CONNECTING
        self.epoch += 1
        epoch = self.epoch
        logger.info("Connecting to %s (epoch %d)", self.config.url, epoch)

        try:
            transport = await self._transport_factory()
        except BaseException:
            self.state = ConnectionState.DISCONNECTED
            raise

        self._transport = transport
        self._recent.clear()
        self._handshake = asyncio.get_running_loop().create_future()
        self._dispatcher.start()
        self._ingest_task = asyncio.create_task(self._ingest(transport, epoch), name=f"ddp-ingest-{epoch}")

        try:
            await self._send(Connect())
            session = await asyncio.wait_for(asyncio.shield(self._handshake), timeout=self.config.connect_timeout)
        except asyncio.TimeoutError:
            await self._abort("no 'connected' reply to handshake")
            raise DriverConnectionError(
                f"Handshake with {self.config.url} timed out after {self.config.connect_timeout}s"
            ) from None
        except DriverConnectionError as e:
            await self._abort(str(e))
            raise

        self.session_id = session
        self.state = ConnectionState.CONNECTED
        self.keepalive.start()
        logger.info("DDP session established", extra={"session_id": session})

    async def disconnect(self) -> None:
        """End the current epoch; pending calls fail with ConnectionLostError."""
        await self._abort("disconnected by client")
        task, self._ingest_task = self._ingest_task, None
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        await self.keepalive.wait_stopped()

    async def close(self) -> None:
        """Disconnect and stop delivering notifications."""
        await self.disconnect()
        await self._dispatcher.stop()
        for task in list(self._background_tasks):
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def _abort(self, reason: str) -> None:
        self._handle_disconnect(reason)
        await self._close_transport()

    async def _close_transport(self, transport: Optional[Transport] = None) -> None:
        """Close `transport` (default: the current one); never touches a newer epoch's transport."""
        if transport is None:
            transport = self._transport
        if transport is None:
            return
        if self._transport is transport:
            self._transport = None
        try:
            await transport.close()
        except Exception as e:
            logger.debug("Error closing transport: %s", e)

    def _handle_disconnect(self, reason: str) -> None:
        if self.state is ConnectionState.DISCONNECTED:
            return
        self.state = ConnectionState.DISCONNECTED
        self.keepalive.stop()

        error = ConnectionLostError(reason)
        if self._handshake is not None and not self._handshake.done():
            self._handshake.set_exception(error)
            self._handshake.exception()
        self.registry.cancel_all(error)
        self.subscriptions.stop_all(error)
        self.identity = None
        self.session_id = None

        logger.warning("Disconnected: %s", reason)
        self._dispatcher.post(self._disconnect_listeners, reason)

    def _on_unhealthy(self, reason: str) -> None:
        transport = self._transport
        self._handle_disconnect(reason)
        if transport is not None:
            self._spawn(self._close_transport(transport))

    def _spawn(self, coroutine: Awaitable[Any]) -> None:
        """Keep a strong reference to background tasks until completion."""
        task = asyncio.ensure_future(coroutine)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    # ========================================
    #           INGESTION
    # ========================================

    async def _ingest(self, transport: Transport, epoch: int) -> None:
        reason = "connection closed by server"
        try:
            async for raw in transport:
                self._ingest_frame(raw)
        except DriverConnectionError as e:
            reason = str(e)
        except UnicodeDecodeError as e:
            reason = f"undecodable frame on stream: {e}"
        except Exception as e:
            logger.error("Ingestion loop failed: %s", e)
            reason = f"ingestion failed: {e}"
        finally:
            if epoch == self.epoch:
                self._handle_disconnect(reason)
                if self._transport is transport:
                    self._spawn(self._close_transport(transport))

    def _ingest_frame(self, raw: str) -> None:
        try:
            frame = decode(raw)
        except DecodeError as e:
            logger.warning("Dropping malformed frame: %s", e)
            return
        try:
            self._dispatch(frame)
        except Exception as e:
            logger.error("Failed to process %s frame: %s", frame.kind, e, extra={"frame_kind": frame.kind})

    def _dispatch(self, frame: Frame) -> None:
        if isinstance(frame, MethodResult):
            if frame.error is not None:
                self.registry.fail(frame.id, RemoteError.from_payload(frame.error))
            else:
                self.registry.resolve(frame.id, frame.result)
        elif isinstance(frame, (Added, Changed, Removed)):
            if self.subscriptions.route_event(frame) and frame.collection == ROOM_MESSAGES_STREAM:
                self._on_room_event(frame)
        elif isinstance(frame, Ready):
            for sub_id in frame.subs:
                self.subscriptions.mark_ready(sub_id)
        elif isinstance(frame, NoSub):
            self.subscriptions.mark_failed(frame.id, frame.error)
        elif isinstance(frame, Pong):
            self.keepalive.pong(frame.id)
        elif isinstance(frame, Ping):
            self._spawn(self._reply_pong(frame.id))
        elif isinstance(frame, Connected):
            if self._handshake is None or self._handshake.done():
                logger.warning("Unexpected 'connected' frame", extra={"session_id": frame.session})
            else:
                self._handshake.set_result(frame.session)
        elif isinstance(frame, Failed):
            if self._handshake is not None and not self._handshake.done():
                self._handshake.set_exception(
                    DriverConnectionError(f"Service refused DDP handshake (wants version {frame.version})")
                )
        elif isinstance(frame, Error):
            log_frame(logger, "warning", f"Service reported protocol error: {frame.reason}",
                      {"msg": frame.kind, **frame.to_dict()})
        elif isinstance(frame, (Updated, Unknown)):
            logger.debug("Ignoring %s frame", frame.kind)
        else:
            log_frame(logger, "warning", "Unexpected frame from service", {"msg": frame.kind})

    def _on_room_event(self, frame: Union[Added, Changed, Removed]) -> None:
        if isinstance(frame, Removed):
            return
        for payload in frame.fields.get("args") or []:
            if not isinstance(payload, dict) or self._recent.check_and_mark(payload):
                continue
            message = classify_message(payload, self.identity, username_chars=self.config.username_chars)
            logger.debug("Message %s", message.id, extra={"room_id": message.room_id})
            self._dispatcher.post(self._message_listeners, message)

    async def _reply_pong(self, ping_id: Optional[str]) -> None:
        try:
            await self._send(Pong(id=ping_id))
        except DriverConnectionError as e:
            logger.debug("Could not answer ping: %s", e)

    async def _send(self, frame: Frame) -> None:
        transport = self._transport
        if transport is None or self.state is ConnectionState.DISCONNECTED:
            raise DriverConnectionError("Not connected")
        await transport.send(encode(frame))

    def _require_connected(self) -> None:
        if not self.is_connected:
            raise DriverConnectionError(f"Not connected (state: {self.state.value})")

    # ========================================
    #           CALLS AND SUBSCRIPTIONS
    # ========================================

    async def call_method(
        self,
        method: str,
        params: Optional[Sequence[Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Invoke a remote method and wait for its result.

        Raises RemoteError when the service answers with an error,
        CallTimeoutError when no reply arrives within `timeout` (default:
        config.call_timeout) and ConnectionLostError if the epoch ends first.
        """
        self._require_connected()
        call_id = self.registry.issue()
        pending = self.registry.register(call_id, timeout=self.config.call_timeout if timeout is None else timeout)
        try:
            await self._send(MethodCall(id=call_id, method=method, params=list(params or [])))
        except BaseException:
            self.registry.retire(call_id)
            raise
        logger.debug("Called %s", method, extra={"call_id": call_id})
        return await self.registry.wait(pending)

    async def subscribe(
        self,
        name: str,
        params: Optional[Sequence[Any]] = None,
        *,
        collection: Optional[str] = None,
        event_name: Optional[str] = None,
        listener: Optional[EventListener] = None,
        timeout: Optional[float] = None,
    ) -> Subscription:
        self._require_connected()
        return await self.subscriptions.subscribe(
            name,
            list(params or []),
            collection=collection,
            event_name=event_name,
            listener=listener,
            timeout=self.config.call_timeout if timeout is None else timeout,
        )

    async def unsubscribe(self, sub_id: str) -> bool:
        self._require_connected()
        return await self.subscriptions.unsubscribe(sub_id)

    async def ping(self, timeout: Optional[float] = None) -> float:
        """Explicit keep-alive round trip; returns latency in seconds."""
        self._require_connected()
        return await self.keepalive.ping_once(timeout)

    # ========================================
    #           AUTHENTICATION
    # ========================================

    async def login(self, username: str, password: str) -> SessionIdentity:
        params = [{"user": {"username": username}, "password": password_digest(password)}]
        return await self._login(params, username)

    async def login_resume(self, token: str, username: str) -> SessionIdentity:
        """Log in with a resume token from an earlier session."""
        return await self._login([{"resume": token}], username)

    async def _login(self, params: List[Dict[str, Any]], username: str) -> SessionIdentity:
        try:
            result = await self.call_method("login", params)
        except RemoteError as e:
            raise AuthenticationError(f"Login rejected for {username}: {e.reason or e}") from e
        if not isinstance(result, dict) or not result.get("id"):
            raise AuthenticationError(f"Malformed login result for {username}")

        self.identity = SessionIdentity(user_id=str(result["id"]), username=username, token=result.get("token"))
        self.state = ConnectionState.AUTHENTICATED
        logger.info("Logged in as %s", username, extra={"session_id": self.session_id})
        return self.identity

    async def logout(self) -> None:
        await self.call_method("logout")
        self.identity = None
        if self.state is ConnectionState.AUTHENTICATED:
            self.state = ConnectionState.CONNECTED

    # ========================================
    #           CHAT OPERATIONS
    # ========================================

    async def subscribe_to_room_messages(self, room_id: str = MY_MESSAGES) -> Subscription:
        """
        Stream new messages of one room, or of every room the user is in
        when room_id is __my_messages__.
        """
        return await self.subscribe(
            ROOM_MESSAGES_STREAM,
            [room_id, False],
            collection=ROOM_MESSAGES_STREAM,
            event_name=None if room_id == MY_MESSAGES else room_id,
        )

    async def send_message(self, text: str, room_id: str) -> ChatMessage:
        payload: Dict[str, Any] = {"_id": random_id(), "rid": room_id, "msg": text}
        if self.config.mark_as_bot:
            payload["bot"] = {"i": self.config.bot_id}
        result = await self.call_method("sendMessage", [payload])
        return self._classify(result if isinstance(result, dict) else payload)

    async def update_message(self, message_id: str, room_id: str, text: str) -> None:
        await self.call_method("updateMessage", [{"_id": message_id, "rid": room_id, "msg": text}])

    async def delete_message(self, message_id: str) -> None:
        await self.call_method("deleteMessage", [{"_id": message_id}])

    async def load_message_history(
        self,
        room_id: str,
        limit: Optional[int] = None,
        until: Optional[datetime] = None,
    ) -> List[ChatMessage]:
        """Most recent messages of a room (before `until`), oldest first."""
        end = to_ejson_date(until) if until is not None else None
        result = await self.call_method(
            "loadHistory", [room_id, end, self.config.history_limit if limit is None else limit, None]
        )
        payloads = result.get("messages") or [] if isinstance(result, dict) else []
        messages = [self._classify(p) for p in payloads if isinstance(p, dict)]
        messages.reverse()
        return messages

    async def create_room(self, name: str, members: Optional[List[str]] = None, read_only: bool = False) -> str:
        """Create a public channel; returns its room id."""
        result = await self.call_method("createChannel", [name, members or [], read_only])
        return self._room_id_from(result, name)

    async def create_private_group(self, name: str, members: Optional[List[str]] = None) -> str:
        result = await self.call_method("createPrivateGroup", [name, members or []])
        return self._room_id_from(result, name)

    async def erase_room(self, room_id: str) -> bool:
        return bool(await self.call_method("eraseRoom", [room_id]))

    async def get_room_id(self, name_or_id: str) -> Optional[str]:
        result = await self.call_method("getRoomIdByNameOrId", [name_or_id])
        return str(result) if result else None

    async def get_full_user_data(self, username: str) -> Optional[FullUserData]:
        """Look up a user by exact username; None when there is no such user."""
        result = await self.call_method("getFullUserData", [{"filter": username, "limit": USER_LOOKUP_LIMIT}])
        for user in result or []:
            if isinstance(user, dict) and user.get("username") == username:
                return FullUserData.from_payload(user)
        return None

    def _classify(self, payload: Dict[str, Any]) -> ChatMessage:
        return classify_message(payload, self.identity, username_chars=self.config.username_chars)

    @staticmethod
    def _room_id_from(result: Any, name: str) -> str:
        if isinstance(result, dict) and result.get("rid"):
            return str(result["rid"])
        raise RemoteError(reason=f"Service did not return a room id for {name}")
