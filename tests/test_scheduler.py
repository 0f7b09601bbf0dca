"""Tests for PersistenceScheduler."""

import asyncio

import pytest

from diagram_sessions.adapters import LocalStorageAdapter
from diagram_sessions.errors import DiagramTooLargeError
from diagram_sessions.models import empty_payload
from diagram_sessions.scheduler import PersistenceScheduler, SaveState

from conftest import user, xml


class CountingAdapter(LocalStorageAdapter):
    def __init__(self, store):
        super().__init__(store)
        self.saves = []
        self.immediate = []
        self.fail = False

    def save_conversation(self, conversation_id, update):
        self.saves.append((conversation_id, update))
        if self.fail:
            return False
        return super().save_conversation(conversation_id, update)

    def save_immediately(self, conversation_id, payload):
        self.immediate.append((conversation_id, payload))
        super().save_immediately(conversation_id, payload)


@pytest.fixture
def adapter(store):
    adapter = CountingAdapter(store)
    adapter.create_conversation("c1", empty_payload(session_id="s"), 1000)
    return adapter


def snap(label="a", messages=0):
    payload = empty_payload(xml=xml(label), session_id="s")
    payload.messages = [user(f"m{i}") for i in range(messages)]
    return payload


class TestWithoutEventLoop:
    def test_writes_immediately(self, adapter):
        scheduler = PersistenceScheduler(adapter)
        assert scheduler.notify_change("c1", snap("a"))
        assert len(adapter.saves) == 1
        assert scheduler.state("c1") is SaveState.IDLE

    def test_identical_changes_write_once(self, adapter):
        scheduler = PersistenceScheduler(adapter)
        scheduler.notify_change("c1", snap("a"))
        assert not scheduler.notify_change("c1", snap("a"))
        assert len(adapter.saves) == 1

    def test_mark_saved_suppresses_restored_state(self, adapter):
        scheduler = PersistenceScheduler(adapter)
        scheduler.mark_saved("c1", snap("a"))
        assert not scheduler.notify_change("c1", snap("a"))
        assert adapter.saves == []

    def test_failed_write_is_retried_on_next_change(self, adapter):
        scheduler = PersistenceScheduler(adapter)
        adapter.fail = True
        assert not scheduler.notify_change("c1", snap("a"))
        assert scheduler.state("c1") is SaveState.IDLE

        adapter.fail = False
        assert scheduler.notify_change("c1", snap("a"))
        assert len(adapter.saves) == 2

    def test_oversized_snapshot_is_rejected(self, adapter):
        scheduler = PersistenceScheduler(adapter, max_xml_size=10)
        with pytest.raises(DiagramTooLargeError):
            scheduler.notify_change("c1", snap("big"))
        assert adapter.saves == []


class TestDebounce:
    def test_burst_coalesces_into_one_write(self, adapter):
        async def scenario():
            scheduler = PersistenceScheduler(adapter, debounce_seconds=0.05)
            for i in range(5):
                scheduler.notify_change("c1", snap("a", messages=i + 1))
            assert scheduler.state("c1") is SaveState.PENDING
            assert adapter.saves == []
            await asyncio.sleep(0.15)
            return scheduler

        scheduler = asyncio.run(scenario())
        assert len(adapter.saves) == 1
        assert len(adapter.saves[0][1].messages) == 5
        assert scheduler.state("c1") is SaveState.IDLE

    def test_flush_writes_pending_now(self, adapter):
        async def scenario():
            scheduler = PersistenceScheduler(adapter, debounce_seconds=10)
            scheduler.notify_change("c1", snap("b"))
            assert scheduler.flush("c1")
            assert len(adapter.saves) == 1
            assert scheduler.state("c1") is SaveState.IDLE
            assert scheduler.flush("c1")
            assert len(adapter.saves) == 1

        asyncio.run(scenario())

    def test_cancel_and_forget(self, adapter):
        async def scenario():
            scheduler = PersistenceScheduler(adapter, debounce_seconds=0.01)
            scheduler.notify_change("c1", snap("b"))
            scheduler.cancel("c1")
            scheduler.notify_change("c2", snap("c"))
            scheduler.forget("c2")
            await asyncio.sleep(0.05)

        asyncio.run(scenario())
        assert adapter.saves == []

    def test_reverting_to_saved_state_drops_pending(self, adapter):
        async def scenario():
            scheduler = PersistenceScheduler(adapter, debounce_seconds=10)
            scheduler.mark_saved("c1", snap("a"))
            scheduler.notify_change("c1", snap("b"))
            assert scheduler.has_pending("c1")
            assert not scheduler.notify_change("c1", snap("a"))
            assert not scheduler.has_pending("c1")

        asyncio.run(scenario())
        assert adapter.saves == []

    def test_flush_all(self, adapter):
        adapter.create_conversation("c2", empty_payload(), 1000)

        async def scenario():
            scheduler = PersistenceScheduler(adapter, debounce_seconds=10)
            scheduler.notify_change("c1", snap("a"))
            scheduler.notify_change("c2", snap("b"))
            assert scheduler.flush_all()

        asyncio.run(scenario())
        assert sorted(cid for cid, _ in adapter.saves) == ["c1", "c2"]


class TestTeardown:
    def test_teardown_cancels_timer_and_saves_synchronously(self, adapter, store):
        async def scenario():
            scheduler = PersistenceScheduler(adapter, debounce_seconds=0.01)
            scheduler.notify_change("c1", snap("a"))
            scheduler.teardown("c1", snap("final"))
            await asyncio.sleep(0.05)

        asyncio.run(scenario())
        assert adapter.saves == []
        assert len(adapter.immediate) == 1
        assert store.read_payload("c1").xml == xml("final")

    def test_teardown_never_raises(self, adapter):
        def boom(conversation_id, payload):
            raise RuntimeError("storage gone")

        adapter.save_immediately = boom
        PersistenceScheduler(adapter).teardown("c1", snap("a"))


class TestForcedSave:
    def test_same_shape_change_replaces_pending(self, adapter, store):
        async def scenario():
            scheduler = PersistenceScheduler(adapter, debounce_seconds=10)
            first = snap("a")
            first.messages = [user("hel")]
            latest = snap("a")
            latest.messages = [user("hello, the whole reply")]
            assert scheduler.notify_change("c1", first)
            assert not scheduler.notify_change("c1", latest)
            assert scheduler.flush("c1")

        asyncio.run(scenario())
        assert len(adapter.saves) == 1
        assert store.read_payload("c1").messages[0].parts[0].text == "hello, the whole reply"

    def test_save_now_ignores_fingerprint(self, adapter, store):
        scheduler = PersistenceScheduler(adapter)
        saved = snap("a")
        saved.messages = [user("draft")]
        scheduler.mark_saved("c1", saved)
        edited = snap("a")
        edited.messages = [user("final")]

        assert scheduler.save_now("c1", edited)
        assert len(adapter.saves) == 1
        assert store.read_payload("c1").messages[0].parts[0].text == "final"

    def test_save_now_skips_unchanged_state(self, adapter):
        scheduler = PersistenceScheduler(adapter)
        scheduler.mark_saved("c1", snap("a"))
        assert scheduler.save_now("c1", snap("a"))
        assert adapter.saves == []

    def test_save_now_cancels_pending_timer(self, adapter):
        async def scenario():
            scheduler = PersistenceScheduler(adapter, debounce_seconds=0.01)
            scheduler.notify_change("c1", snap("b"))
            scheduler.save_now("c1", snap("c"))
            assert not scheduler.has_pending("c1")
            await asyncio.sleep(0.05)

        asyncio.run(scenario())
        assert [p.xml for _, p in adapter.saves] == [xml("c")]
