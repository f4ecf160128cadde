import asyncio
import time

import pytest

from driver.driver import MY_MESSAGES, ROOM_MESSAGES_STREAM
from driver.state import ConnectionState
from shared.errors import (
    AuthenticationError,
    CallTimeoutError,
    ConnectionLostError,
    DriverConnectionError,
    RemoteError,
)
from conftest import wait_for


async def logged_in(make_driver, username="alice", password="secret", **overrides):
    driver = make_driver(**overrides)
    await driver.connect()
    await driver.login(username, password)
    return driver


@pytest.mark.asyncio
async def test_connect_completes_handshake(chat_server, make_driver):
    driver = make_driver()
    try:
        await driver.connect()
        assert driver.state is ConnectionState.CONNECTED
        assert driver.session_id == "session-1"
        first = chat_server.transport.sent[0]
        assert first["msg"] == "connect" and first["version"] == "1"
    finally:
        await driver.close()
    assert driver.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_refused_handshake_raises(chat_server, make_driver):
    chat_server.refuse_handshake = True
    driver = make_driver()
    try:
        with pytest.raises(DriverConnectionError):
            await driver.connect()
        assert driver.state is ConnectionState.DISCONNECTED
    finally:
        await driver.close()


@pytest.mark.asyncio
async def test_connect_twice_is_rejected(make_driver):
    driver = make_driver()
    try:
        await driver.connect()
        with pytest.raises(DriverConnectionError):
            await driver.connect()
    finally:
        await driver.close()


@pytest.mark.asyncio
async def test_login_sends_digest_and_sets_identity(chat_server, make_driver):
    driver = await logged_in(make_driver)
    try:
        assert driver.state is ConnectionState.AUTHENTICATED
        assert driver.identity.user_id == "u-alice"
        assert driver.identity.token == "token-alice"
        login = [f for f in chat_server.transport.sent_of("method") if f["method"] == "login"][0]
        assert login["params"][0]["password"]["algorithm"] == "sha-256"
        assert "secret" not in str(login)
    finally:
        await driver.close()


@pytest.mark.asyncio
async def test_rejected_credentials_raise_authentication_error(make_driver):
    driver = make_driver()
    try:
        await driver.connect()
        with pytest.raises(AuthenticationError):
            await driver.login("alice", "wrong")
        assert driver.state is ConnectionState.CONNECTED
        assert driver.identity is None
        assert len(driver.registry) == 0
    finally:
        await driver.close()


@pytest.mark.asyncio
async def test_resume_login_and_logout(make_driver):
    driver = make_driver()
    try:
        await driver.connect()
        identity = await driver.login_resume("token-bob", "bob")
        assert identity.user_id == "u-bob"
        await driver.logout()
        assert driver.state is ConnectionState.CONNECTED
        assert driver.identity is None
    finally:
        await driver.close()


@pytest.mark.asyncio
async def test_own_message_is_notified_once(chat_server, make_driver):
    driver = await logged_in(make_driver)
    received = []
    driver.add_message_listener(received.append)
    try:
        await driver.subscribe_to_room_messages("GENERAL")
        sent = await driver.send_message("hi", "GENERAL")
        assert await wait_for(lambda: len(received) >= 1)
        await asyncio.sleep(0.05)
        await driver.wait_for_listeners()
    finally:
        await driver.close()

    assert len(received) == 1
    message = received[0]
    assert message.room_id == "GENERAL"
    assert message.text == "hi"
    assert message.id == sent.id
    assert message.is_from_myself is True
    assert message.is_bot is True
    assert message.is_bot_mentioned is False


@pytest.mark.asyncio
async def test_overlapping_subscriptions_do_not_duplicate(chat_server, make_driver):
    driver = await logged_in(make_driver)
    received = []
    driver.add_message_listener(received.append)
    try:
        await driver.subscribe_to_room_messages("GENERAL")
        await driver.subscribe_to_room_messages(MY_MESSAGES)
        chat_server.post_as("bob", "GENERAL", "hello everyone")
        assert await wait_for(lambda: len(received) >= 1)
        await asyncio.sleep(0.05)
        await driver.wait_for_listeners()
    finally:
        await driver.close()
    assert [m.text for m in received] == ["hello everyone"]


@pytest.mark.asyncio
async def test_mention_from_other_user(chat_server, make_driver):
    driver = await logged_in(make_driver)
    received = []
    driver.add_message_listener(received.append)
    try:
        await driver.subscribe_to_room_messages("GENERAL")
        chat_server.post_as("bob", "GENERAL", "hello @alicex")
        chat_server.post_as("bob", "GENERAL", "hello @alice", bot=True)
        assert await wait_for(lambda: len(received) >= 2)
    finally:
        await driver.close()

    first, second = received
    assert not first.is_bot_mentioned and not first.is_bot
    assert second.is_bot_mentioned and second.is_bot
    assert not second.is_from_myself


@pytest.mark.asyncio
async def test_room_filter_ignores_other_rooms(chat_server, make_driver):
    chat_server.rooms["random"] = []
    driver = await logged_in(make_driver)
    received = []
    driver.add_message_listener(received.append)
    try:
        await driver.subscribe_to_room_messages("GENERAL")
        chat_server.post_as("bob", "random", "elsewhere")
        chat_server.post_as("bob", "GENERAL", "here")
        assert await wait_for(lambda: len(received) >= 1)
        await asyncio.sleep(0.05)
    finally:
        await driver.close()
    assert [m.text for m in received] == ["here"]


@pytest.mark.asyncio
async def test_unknown_user_lookup_returns_none(make_driver):
    driver = await logged_in(make_driver)
    try:
        assert await driver.get_full_user_data("mallory") is None
        # filter matches by substring; only an exact username counts
        assert await driver.get_full_user_data("ali") is None
        bob = await driver.get_full_user_data("bob")
    finally:
        await driver.close()
    assert bob.id == "u-bob"
    assert bob.emails == ["bob@example.org"]
    assert bob.roles == ["user"]


@pytest.mark.asyncio
async def test_remote_error_surfaces_code_and_reason(make_driver):
    driver = await logged_in(make_driver)
    try:
        with pytest.raises(RemoteError) as exc:
            await driver.call_method("noSuchMethod")
        assert exc.value.error == 404
        with pytest.raises(RemoteError):
            await driver.send_message("hi", "nowhere")
    finally:
        await driver.close()


@pytest.mark.asyncio
async def test_call_timeout_retires_entry(chat_server, make_driver):
    chat_server.silent_methods.add("slowMethod")
    driver = await logged_in(make_driver)
    try:
        with pytest.raises(CallTimeoutError):
            await driver.call_method("slowMethod", timeout=0.05)
        assert len(driver.registry) == 0
        assert driver.state is ConnectionState.AUTHENTICATED
        # the connection is still usable afterwards
        assert await driver.get_room_id("GENERAL") == "GENERAL"
    finally:
        await driver.close()


@pytest.mark.asyncio
async def test_missing_pong_ends_epoch_and_fails_pending_calls(chat_server, make_driver):
    chat_server.silent_methods.add("slowMethod")
    chat_server.answer_pings = False
    driver = await logged_in(make_driver, keepalive_interval=0.05, keepalive_timeout=0.05, call_timeout=5.0)
    reasons = []
    driver.add_disconnect_listener(reasons.append)
    try:
        sub = await driver.subscribe_to_room_messages("GENERAL")
        with pytest.raises(ConnectionLostError):
            await driver.call_method("slowMethod")
        assert driver.state is ConnectionState.DISCONNECTED
        assert len(driver.registry) == 0
        assert not sub.is_active
        assert await wait_for(lambda: len(reasons) == 1)
        assert "pong" in reasons[0]
        assert await wait_for(lambda: chat_server.transport.closed)
    finally:
        await driver.close()


@pytest.mark.asyncio
async def test_server_hangup_fails_pending_calls(chat_server, make_driver):
    chat_server.silent_methods.add("slowMethod")
    driver = await logged_in(make_driver, call_timeout=5.0)
    try:
        call = asyncio.create_task(driver.call_method("slowMethod"))
        await asyncio.sleep(0.01)
        chat_server.transport.drop()
        with pytest.raises(ConnectionLostError):
            await call
        assert driver.state is ConnectionState.DISCONNECTED
        assert driver.identity is None
        with pytest.raises(DriverConnectionError):
            await driver.call_method("logout")
    finally:
        await driver.close()


@pytest.mark.asyncio
async def test_reconnect_starts_a_fresh_epoch(chat_server, make_driver):
    driver = await logged_in(make_driver)
    try:
        chat_server.transport.drop()
        assert await wait_for(lambda: driver.state is ConnectionState.DISCONNECTED)
        await driver.connect()
        assert driver.epoch == 2
        assert driver.session_id == "session-2"
        await driver.login("alice", "secret")
        assert driver.state is ConnectionState.AUTHENTICATED
    finally:
        await driver.close()


@pytest.mark.asyncio
async def test_client_disconnect_notifies_listeners(make_driver):
    driver = await logged_in(make_driver)
    reasons = []
    driver.add_disconnect_listener(reasons.append)
    try:
        await driver.disconnect()
        await driver.wait_for_listeners()
        assert reasons == ["disconnected by client"]
        await driver.disconnect()
        await driver.wait_for_listeners()
        assert len(reasons) == 1
    finally:
        await driver.close()


@pytest.mark.asyncio
async def test_service_ping_is_answered(chat_server, make_driver):
    driver = make_driver()
    try:
        await driver.connect()
        chat_server.transport.push({"msg": "ping", "id": "srv-1"})
        assert await wait_for(lambda: {"msg": "pong", "id": "srv-1"} in chat_server.transport.sent)
        assert await driver.ping() >= 0
    finally:
        await driver.close()


@pytest.mark.asyncio
async def test_malformed_and_unmatched_frames_are_dropped(chat_server, make_driver):
    driver = await logged_in(make_driver)
    try:
        chat_server.transport.push("{not json")
        chat_server.transport.push({"msg": "result", "id": "9999", "result": 1})
        chat_server.transport.push({"msg": "error", "reason": "Bad request"})
        chat_server.transport.push({"msg": "teleport"})
        assert await driver.get_room_id("GENERAL") == "GENERAL"
        assert driver.state is ConnectionState.AUTHENTICATED
    finally:
        await driver.close()


@pytest.mark.asyncio
async def test_slow_listener_does_not_block_calls(chat_server, make_driver):
    driver = await logged_in(make_driver)
    release = asyncio.Event()
    started = []

    async def slow(message):
        started.append(message.text)
        await release.wait()

    driver.add_message_listener(slow)
    try:
        await driver.subscribe_to_room_messages("GENERAL")
        chat_server.post_as("bob", "GENERAL", "first")
        assert await wait_for(lambda: started == ["first"])
        # listener is still blocked; protocol traffic keeps flowing
        assert await asyncio.wait_for(driver.get_room_id("GENERAL"), timeout=1) == "GENERAL"
        release.set()
        await driver.wait_for_listeners()
    finally:
        release.set()
        await driver.close()


@pytest.mark.asyncio
async def test_room_lifecycle_and_history(chat_server, make_driver):
    driver = await logged_in(make_driver)
    try:
        room_id = await driver.create_room("test-room")
        assert room_id in chat_server.rooms
        for text in ("one", "two", "three"):
            await driver.send_message(text, room_id)

        history = await driver.load_message_history(room_id, limit=2)
        assert [m.text for m in history] == ["two", "three"]
        assert all(m.is_from_myself for m in history)

        assert await driver.erase_room(room_id) is True
        assert room_id not in chat_server.rooms
        with pytest.raises(RemoteError):
            await driver.erase_room(room_id)
    finally:
        await driver.close()


@pytest.mark.asyncio
async def test_operations_require_connection(make_driver):
    driver = make_driver()
    with pytest.raises(DriverConnectionError):
        await driver.send_message("hi", "GENERAL")
    with pytest.raises(DriverConnectionError):
        await driver.subscribe_to_room_messages()
    await driver.close()


@pytest.mark.asyncio
async def test_async_context_manager(chat_server, make_driver):
    async with make_driver() as driver:
        assert driver.is_connected
    assert driver.state is ConnectionState.DISCONNECTED
    assert chat_server.transport.closed


@pytest.mark.asyncio
async def test_user_lookup_skips_longer_usernames_listed_first(chat_server, make_driver):
    # "alicex" also matches the "alice" filter and comes back first
    chat_server.users = {
        "alicex": {"_id": "u-alicex", "password": "x", "name": "Alice X", "email": "alicex@example.org"},
        **chat_server.users,
    }
    driver = await logged_in(make_driver, username="bob", password="hunter2")
    try:
        alice = await driver.get_full_user_data("alice")
        alicex = await driver.get_full_user_data("alicex")
    finally:
        await driver.close()
    assert alice is not None and alice.id == "u-alice"
    assert alicex is not None and alicex.id == "u-alicex"


@pytest.mark.asyncio
async def test_blocking_subscription_listener_does_not_stall_calls(chat_server, make_driver):
    driver = await logged_in(make_driver)
    started = []

    def slow(event):
        started.append(event)
        time.sleep(0.5)

    try:
        await driver.subscribe(ROOM_MESSAGES_STREAM, ["GENERAL", False], collection=ROOM_MESSAGES_STREAM,
                               event_name="GENERAL", listener=slow)
        chat_server.post_as("bob", "GENERAL", "wake up")
        assert await wait_for(lambda: len(started) == 1)
        begin = time.monotonic()
        assert await driver.get_room_id("GENERAL") == "GENERAL"
        assert time.monotonic() - begin < 0.2
    finally:
        await driver.close()


@pytest.mark.asyncio
async def test_malformed_sender_does_not_drop_rest_of_batch(chat_server, make_driver):
    driver = await logged_in(make_driver)
    received = []
    driver.add_message_listener(received.append)
    try:
        await driver.subscribe_to_room_messages("GENERAL")
        chat_server.transport.push({
            "msg": "changed",
            "collection": "stream-room-messages",
            "id": "id",
            "fields": {"eventName": "GENERAL", "args": [
                {"_id": "m-bad", "rid": "GENERAL", "msg": "odd", "u": "bob", "ts": {"$date": 1}},
                {"_id": "m-good", "rid": "GENERAL", "msg": "fine", "u": {"_id": "u-bob", "username": "bob"},
                 "ts": {"$date": 2}},
            ]},
        })
        assert await wait_for(lambda: len(received) == 2)
    finally:
        await driver.close()
    assert [m.id for m in received] == ["m-bad", "m-good"]
    assert received[0].sender_id == ""
    assert received[1].sender_username == "bob"


@pytest.mark.asyncio
async def test_history_limit_zero_is_sent_as_is(chat_server, make_driver):
    driver = await logged_in(make_driver)
    try:
        chat_server.post_as("bob", "GENERAL", "one")
        assert await driver.load_message_history("GENERAL", limit=0) == []
        assert len(await driver.load_message_history("GENERAL")) == 1
    finally:
        await driver.close()
    calls = [f for f in chat_server.transport.sent_of("method") if f["method"] == "loadHistory"]
    assert calls[0]["params"][2] == 0
    assert calls[1]["params"][2] == 50
