import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from client.negotiation import SessionPhase
from client.session import ChatSession
from errors import TransientIOError


@pytest.fixture
def api():
    api = MagicMock()
    api.join_queue = AsyncMock(return_value={"matched": False, "waiting": True, "yourUsername": "Stranger_7"})
    api.check_match = AsyncMock()
    api.send_signal = AsyncMock()
    api.get_signals = AsyncMock(return_value=[])
    api.disconnect = AsyncMock()
    api.send_message = AsyncMock()
    api.get_messages = AsyncMock(return_value=[])
    return api


def _chat(api, media_devices, transports, **kwargs):
    return ChatSession("alice", api, media_devices, transports,
                       match_poll_interval=0, signal_poll_interval=0.01, **kwargs)


@pytest.mark.asyncio
async def test_find_partner_polls_until_matched(api, media_devices, transports):
    partner = {"userId": "bob", "username": "Stranger_8"}
    api.check_match.side_effect = [
        TransientIOError("502"),
        {"matched": False, "waiting": True},
        {"matched": True, "partner": partner},
    ]
    chat = _chat(api, media_devices, transports)

    result = await chat.find_partner(["music"])

    assert result == partner
    assert chat.username == "Stranger_7"
    api.join_queue.assert_awaited_once_with("alice", ["music"])
    assert api.check_match.await_count == 3
    assert chat.peer.partner_id == "bob"
    assert chat.peer.phase == SessionPhase.NEGOTIATING
    await chat.end()


@pytest.mark.asyncio
async def test_immediate_match_skips_polling(api, media_devices, transports):
    api.join_queue.return_value = {"matched": True, "partner": {"userId": "bob", "username": "B"}, "yourUsername": "A"}
    chat = _chat(api, media_devices, transports)

    await chat.find_partner([])

    api.check_match.assert_not_awaited()
    await chat.end()


@pytest.mark.asyncio
async def test_new_session_starts_after_previous_is_released(api, media_devices, transports):
    chat = _chat(api, media_devices, transports)
    first = await chat.start({"userId": "bob", "username": "B"})

    second = await chat.start({"userId": "carol", "username": "C"})

    assert first.closed and first.phase == SessionPhase.DISCONNECTED
    assert transports.built[0].closed is True
    # the second capture request saw every earlier track stopped
    assert media_devices.requests[-1]["previous_released"] is True
    assert second.partner_id == "carol"
    await chat.end()


@pytest.mark.asyncio
async def test_next_partner_disconnects_then_rejoins(api, media_devices, transports):
    api.join_queue.return_value = {"matched": True, "partner": {"userId": "carol", "username": "C"}, "yourUsername": "A"}
    chat = _chat(api, media_devices, transports)
    first = await chat.start({"userId": "bob", "username": "B"})

    partner = await chat.next_partner(["art"])

    assert partner["userId"] == "carol"
    assert first.closed
    api.disconnect.assert_awaited_once_with("alice")
    await chat.end()


@pytest.mark.asyncio
async def test_end_is_idempotent_and_tolerates_network_errors(api, media_devices, transports):
    api.disconnect.side_effect = TransientIOError("offline")
    chat = _chat(api, media_devices, transports)
    peer = await chat.start({"userId": "bob", "username": "B"})

    await chat.end()
    await chat.end()

    assert peer.closed
    assert chat.peer is None
    assert api.disconnect.await_count == 2


@pytest.mark.asyncio
async def test_partner_left_callback(api, media_devices, transports, waiter):
    on_partner_left = MagicMock()
    chat = _chat(api, media_devices, transports, on_partner_left=on_partner_left)
    await chat.start({"userId": "bob", "username": "B"})

    transports.built[0].emit("connectionstatechange", "disconnected")
    await waiter(lambda: on_partner_left.called)

    assert chat.peer.closed
    await chat.end()


@pytest.mark.asyncio
async def test_messages_go_through_api(api, media_devices, transports):
    api.get_messages.return_value = [{"from": "bob", "body": "hey", "sentAt": "2026-01-01T00:00:00"}]
    chat = _chat(api, media_devices, transports)
    await chat.start({"userId": "bob", "username": "B"})

    await chat.send_message("hi")
    messages = await chat.fetch_messages()

    api.send_message.assert_awaited_once_with("alice", "hi")
    assert messages[0]["body"] == "hey"
    await chat.end()


@pytest.mark.asyncio
async def test_messages_from_previous_partner_are_dropped(api, media_devices, transports):
    api.get_messages.return_value = [
        {"from": "bob", "body": "secret for alice", "sentAt": "2026-01-01T00:00:00"},
        {"from": "carol", "body": "hello", "sentAt": "2026-01-01T00:00:01"},
    ]
    chat = _chat(api, media_devices, transports)
    await chat.start({"userId": "carol", "username": "C"})

    messages = await chat.fetch_messages()

    assert [m["body"] for m in messages] == ["hello"]
    await chat.end()


@pytest.mark.asyncio
async def test_end_during_join_request_cancels_search(api, media_devices, transports):
    release, joining = asyncio.Event(), asyncio.Event()

    async def slow_join(user_id, interests):
        joining.set()
        await release.wait()
        return {"matched": False, "waiting": True, "yourUsername": "Stranger_7"}

    api.join_queue.side_effect = slow_join
    chat = _chat(api, media_devices, transports)
    search = asyncio.create_task(chat.find_partner([]))
    await asyncio.wait_for(joining.wait(), timeout=1)

    await chat.end()
    release.set()
    result = await asyncio.wait_for(search, timeout=1)

    assert result is None
    api.check_match.assert_not_awaited()
    assert chat.peer is None
    assert transports.built == []
    # once from end(), once more after the late join returned
    assert api.disconnect.await_count == 2


@pytest.mark.asyncio
async def test_end_during_join_discards_late_match(api, media_devices, transports):
    release, joining = asyncio.Event(), asyncio.Event()

    async def slow_join(user_id, interests):
        joining.set()
        await release.wait()
        return {"matched": True, "partner": {"userId": "bob", "username": "B"}, "yourUsername": "A"}

    api.join_queue.side_effect = slow_join
    chat = _chat(api, media_devices, transports)
    search = asyncio.create_task(chat.find_partner([]))
    await asyncio.wait_for(joining.wait(), timeout=1)

    await chat.end()
    release.set()

    assert await asyncio.wait_for(search, timeout=1) is None
    assert chat.peer is None
    assert chat.partner is None
    assert transports.built == []


@pytest.mark.asyncio
async def test_end_while_polling_stops_search(api, media_devices, transports):
    api.check_match.return_value = {"matched": False, "waiting": True}
    chat = ChatSession("alice", api, media_devices, transports, match_poll_interval=0.01, signal_poll_interval=0.01)
    search = asyncio.create_task(chat.find_partner([]))
    await asyncio.sleep(0.03)

    await chat.end()
    assert await asyncio.wait_for(search, timeout=1) is None
    polls = api.check_match.await_count
    await asyncio.sleep(0.05)

    assert api.check_match.await_count == polls
