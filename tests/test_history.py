"""Tests for history retention and the history store accessor."""

import json

import pytest

from baymax.config import AuthMode, DEFAULT_SYSTEM_PROMPT, Settings
from baymax.service.auth import Identity
from baymax.service.errors import ForbiddenError
from baymax.service.history import HistoryStore, apply_retention
from baymax.storage.common import history_key, owner_key
from baymax.storage.memory import MemoryCache
from baymax.storage.models import (
    ChatMessage,
    assistant_message,
    system_message,
    user_message,
)


def _conversation(turns):
    history = [system_message("persona")]
    for i in range(turns):
        history.append(user_message(f"q{i}"))
        history.append(assistant_message(f"a{i}"))
    return history


@pytest.fixture
def settings():
    return Settings(auth_mode=AuthMode.PASSWORD, jwt_secret="x" * 40, max_history=5)


@pytest.fixture
def store():
    return MemoryCache()


@pytest.fixture
def history(store, settings):
    return HistoryStore(store, settings)


class TestApplyRetention:
    """Retention keeps the persona and the newest entries."""

    def test_short_history_unchanged(self):
        history = _conversation(1)
        assert apply_retention(history, 20) == history

    def test_caps_length_and_keeps_system_first(self):
        history = _conversation(30)
        retained = apply_retention(history, 20)

        assert len(retained) == 20
        assert retained[0] == system_message("persona")
        assert all(m.role != "system" for m in retained[1:])

    def test_drops_oldest_non_system_entries(self):
        retained = apply_retention(_conversation(30), 5)

        assert [m.content for m in retained] == ["persona", "q28", "a28", "q29", "a29"]

    def test_without_system_message_keeps_latest(self):
        history = [user_message(f"m{i}") for i in range(10)]
        retained = apply_retention(history, 3)
        assert [m.content for m in retained] == ["m7", "m8", "m9"]

    def test_later_system_messages_dropped(self):
        history = [
            system_message("first"),
            user_message("hi"),
            system_message("second"),
            assistant_message("hello"),
        ]
        retained = apply_retention(history, 20)
        assert [m.content for m in retained] == ["first", "hi", "hello"]

    def test_max_length_one_keeps_only_system(self):
        assert apply_retention(_conversation(3), 1) == [system_message("persona")]


class TestHistoryStore:
    """Read, append, save and clear against the in-memory backend."""

    async def test_read_missing_returns_persona(self, history):
        assert await history.read("user:nobody") == [system_message(DEFAULT_SYSTEM_PROMPT)]

    async def test_read_corrupt_json_returns_persona(self, history, store):
        await store.set(history_key("user:alice"), "{not json")
        assert await history.read("user:alice") == history.default_history()

    async def test_read_wrong_shape_returns_persona(self, history, store):
        await store.set(history_key("user:alice"), json.dumps({"role": "user"}))
        assert await history.read("user:alice") == history.default_history()

        await store.set(history_key("user:alice"), json.dumps([{"role": "robot", "content": "x"}]))
        assert await history.read("user:alice") == history.default_history()

    async def test_append_persists_with_retention(self, history, store):
        for i in range(10):
            stored = await history.append("user:alice", user_message(f"m{i}"))

        assert len(stored) == 5
        assert stored[0].role == "system"
        raw = json.loads(await store.get(history_key("user:alice")))
        assert raw[-1] == {"role": "user", "content": "m9"}
        assert len(raw) == 5

    async def test_save_returns_stored_list(self, history):
        stored = await history.save("user:bob", _conversation(1))
        assert stored == await history.read("user:bob")

    async def test_clear_is_idempotent(self, history):
        await history.append("user:alice", user_message("hello"))
        await history.clear("user:alice")
        await history.clear("user:alice")
        assert await history.read("user:alice") == history.default_history()

    async def test_history_gets_ttl(self, store, settings):
        now = [0.0]
        ttl_store = MemoryCache(clock=lambda: now[0])
        accessor = HistoryStore(ttl_store, settings)
        await accessor.append("user:alice", user_message("hello"))

        now[0] = settings.history_ttl_seconds + 1
        assert await accessor.read("user:alice") == accessor.default_history()


class TestSubjects:
    """Subject resolution and owner tags."""

    def test_identity_bound_outside_token_mode(self, history):
        identity = Identity(user_id="user:alice", subject="alice", username="alice")
        assert history.subject_for(identity, "other-session") == "user:alice"

    def test_token_mode_uses_requested_session(self, store):
        settings = Settings(auth_mode=AuthMode.TOKEN, jwt_secret="x" * 40)
        accessor = HistoryStore(store, settings)
        identity = Identity(user_id="session:abc", subject="abc")

        assert accessor.subject_for(identity, "chat-1") == "chat-1"
        assert accessor.subject_for(identity) == "abc"

    async def test_claim_owner_first_writer_wins(self, history, store):
        first = Identity(user_id="session:one", subject="one")
        second = Identity(user_id="session:two", subject="two")

        await history.claim_owner("shared", first)
        await history.claim_owner("shared", first)
        assert await store.get(owner_key("shared")) == "session:one"

        with pytest.raises(ForbiddenError):
            await history.claim_owner("shared", second)

    async def test_owner_tag_survives_clear(self, history, store):
        identity = Identity(user_id="session:one", subject="one")
        await history.claim_owner("chat-1", identity)
        await history.clear("chat-1")
        assert await store.get(owner_key("chat-1")) == "session:one"

    async def test_owner_tag_outlives_active_history(self, settings):
        now = [0.0]
        clocked = MemoryCache(clock=lambda: now[0])
        accessor = HistoryStore(clocked, settings.model_copy(update={"history_ttl_seconds": 100}))
        owner = Identity(user_id="session:one", subject="one")
        intruder = Identity(user_id="session:two", subject="two")

        await accessor.claim_owner("shared", owner)
        await accessor.append("shared", user_message("first"))
        now[0] = 60
        await accessor.claim_owner("shared", owner)
        await accessor.append("shared", user_message("second"))

        now[0] = 110
        assert len(await accessor.read("shared")) == 3
        with pytest.raises(ForbiddenError):
            await accessor.claim_owner("shared", intruder)

    async def test_reserve_only_once(self, history, store):
        assert await history.reserve("room", "session:room")
        assert not await history.reserve("room", "session:room")
        assert await store.get(owner_key("room")) == "session:room"


def test_chat_message_from_dict_rejects_malformed():
    assert ChatMessage.from_dict({"role": "user", "content": "hi"}) == user_message("hi")
    assert ChatMessage.from_dict({"role": "user", "content": 3}) is None
    assert ChatMessage.from_dict(["user", "hi"]) is None
