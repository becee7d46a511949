from wind_tavern.events import ChatEventBus, InFlightChats, MessageEvent, RunEvent
from wind_tavern.models import ChatRun, Message


def _message(chat_id: str = "c1") -> Message:
    return Message(chat_id=chat_id, role="user", content="hi")


# ── ChatEventBus ─────────────────────────────────────────────


def test_publish_reaches_only_that_chat():
    bus = ChatEventBus()
    got_c1, got_c2 = [], []
    bus.subscribe("c1", got_c1.append)
    bus.subscribe("c2", got_c2.append)

    bus.publish_message("c1", _message())

    assert len(got_c1) == 1
    assert isinstance(got_c1[0], MessageEvent)
    assert got_c1[0].type == "message"
    assert got_c2 == []


def test_run_event():
    bus = ChatEventBus()
    got = []
    bus.subscribe("c1", got.append)
    bus.publish_run("c1", ChatRun(chat_id="c1", user_message_id="m"))
    assert isinstance(got[0], RunEvent)
    assert got[0].type == "run"


def test_unsubscribe():
    bus = ChatEventBus()
    got = []
    unsubscribe = bus.subscribe("c1", got.append)
    unsubscribe()
    unsubscribe()
    bus.publish_message("c1", _message())
    assert got == []
    assert bus.subscriber_count("c1") == 0


def test_failing_listener_does_not_stop_others():
    bus = ChatEventBus()
    got = []

    def broken(event):
        raise RuntimeError("listener bug")

    bus.subscribe("c1", broken)
    bus.subscribe("c1", got.append)
    bus.publish_message("c1", _message())
    assert len(got) == 1


def test_buses_are_independent():
    a, b = ChatEventBus(), ChatEventBus()
    a.subscribe("c1", lambda e: None)
    assert b.subscriber_count("c1") == 0


# ── InFlightChats ────────────────────────────────────────────


def test_claim_is_exclusive():
    chats = InFlightChats()
    assert chats.claim("c1") is True
    assert chats.claim("c1") is False
    assert chats.claim("c2") is True
    assert "c1" in chats


def test_release_allows_reclaim():
    chats = InFlightChats()
    chats.claim("c1")
    chats.release("c1")
    assert "c1" not in chats
    assert chats.claim("c1") is True
