import pytest

from errors import InvalidEnvelope, NotConnected, ValidationError
from services.matchmaking import MatchmakingQueue
from services.relay import SignalRelay, TextRelay


def _offer(sender="alice", recipient="bob", **overrides):
    envelope = {"from": sender, "to": recipient, "type": "offer", "data": {"type": "offer", "sdp": "v=0"}}
    envelope.update(overrides)
    return envelope


def test_signal_delivered_exactly_once(store):
    relay = SignalRelay(store)
    relay.send(_offer())

    assert relay.poll("bob") == [_offer()]
    assert relay.poll("bob") == []


def test_signal_not_visible_to_other_users(store):
    relay = SignalRelay(store)
    relay.send(_offer())

    assert relay.poll("alice") == []
    assert len(relay.poll("bob")) == 1


@pytest.mark.parametrize("recipient, other", [("a:b", "a"), ("a", "a:b"), ("a*", "ab")])
def test_signal_mailbox_is_not_a_prefix_of_another(store, recipient, other):
    relay = SignalRelay(store)
    relay.send(_offer(recipient=recipient))

    assert relay.poll(other) == []
    assert [s["to"] for s in relay.poll(recipient)] == [recipient]


def test_signal_expires_after_ttl(store, clock):
    relay = SignalRelay(store)
    relay.send(_offer())

    clock.advance(60)

    assert relay.poll("bob") == []


def test_signals_keep_send_order(store):
    relay = SignalRelay(store)
    relay.send(_offer())
    relay.send(_offer(type="ice-candidate", data={"candidate": "c1"}))
    relay.send(_offer(type="ice-candidate", data={"candidate": "c2"}))

    kinds = [(s["type"], (s["data"] or {}).get("candidate")) for s in relay.poll("bob")]

    assert kinds == [("offer", None), ("ice-candidate", "c1"), ("ice-candidate", "c2")]


@pytest.mark.parametrize("missing", ["from", "to", "type"])
def test_signal_missing_field_is_invalid(store, missing):
    envelope = _offer()
    del envelope[missing]

    with pytest.raises(InvalidEnvelope):
        SignalRelay(store).send(envelope)


def test_signal_unknown_type_is_invalid(store):
    with pytest.raises(InvalidEnvelope):
        SignalRelay(store).send(_offer(type="renegotiate"))


def test_concurrent_poll_sees_each_envelope_once(store, monkeypatch):
    relay = SignalRelay(store)
    relay.send(_offer())
    original_scan = store.scan_prefix
    snapshot = original_scan("signal:bob:")
    # both polls scan the same snapshot; only one delete can win
    monkeypatch.setattr(store, "scan_prefix", lambda prefix: list(snapshot))

    first, second = relay.poll("bob"), relay.poll("bob")

    assert len(first) + len(second) == 1


def test_poll_requires_user_id(store):
    with pytest.raises(ValidationError):
        SignalRelay(store).poll("")


def test_text_message_requires_partner(store):
    with pytest.raises(NotConnected):
        TextRelay(store).send("alice", "hi")


def test_text_message_requires_body(store):
    with pytest.raises(ValidationError):
        TextRelay(store).send("alice", "")


def test_text_message_reaches_partner_once(store):
    queue = MatchmakingQueue(store)
    queue.join("alice", [])
    queue.join("bob", [])
    relay = TextRelay(store)

    relay.send("alice", "hello")
    relay.send("alice", "are you there?")

    messages = relay.poll("bob")
    assert [m["body"] for m in messages] == ["hello", "are you there?"]
    assert all(m["from"] == "alice" and m["sentAt"] for m in messages)
    assert relay.poll("bob") == []
    assert relay.poll("alice") == []


def test_text_message_outlives_signal_ttl(store, clock):
    queue = MatchmakingQueue(store)
    queue.join("alice", [])
    queue.join("bob", [])
    TextRelay(store).send("alice", "hello")

    clock.advance(120)
    assert len(TextRelay(store).poll("bob")) == 1

    TextRelay(store).send("alice", "late")
    clock.advance(300)
    assert TextRelay(store).poll("bob") == []
