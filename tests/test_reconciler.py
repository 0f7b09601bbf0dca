"""Tests for the sync reconciler, outbox and query cache."""

import asyncio

from diagram_sessions.cache import QueryCache
from diagram_sessions.local_store import LocalConversationStore
from diagram_sessions.models import ConversationMeta, PushRecord, empty_payload, now_ms
from diagram_sessions.outbox import Outbox
from diagram_sessions.reconciler import SyncReconciler

from conftest import FakeClock, xml


def put_local(store, cid, updated_at, label=None):
    store.write_payload(cid, empty_payload(xml=xml(label or cid)))
    store.upsert_meta(ConversationMeta(id=cid, created_at=1, updated_at=updated_at))


def put_remote(remote, cid, updated_at, label=None, deleted=False):
    remote.records[cid] = PushRecord(
        id=cid,
        payload=None if deleted else empty_payload(xml=xml(label or cid)),
        deleted=deleted or None,
        created_at=1,
        updated_at=updated_at,
    )


class TestQueryCache:
    def test_freshness_window(self):
        clock = FakeClock()
        cache = QueryCache(clock)
        cache.set("k", [1], stale_after=60)
        assert cache.is_fresh("k")
        clock.advance(61)
        assert not cache.is_fresh("k")
        assert cache.get("k") == [1]

    def test_invalidate_keeps_value(self):
        cache = QueryCache(FakeClock())
        cache.set(("conversation", "u", "c1"), True, stale_after=30)
        cache.invalidate_prefix(("conversation", "u"))
        assert not cache.is_fresh(("conversation", "u", "c1"))
        assert cache.get(("conversation", "u", "c1")) is True

    def test_update_keeps_freshness(self):
        cache = QueryCache(FakeClock())
        cache.set("k", [1], stale_after=60)
        cache.update("k", lambda v: v + [2])
        assert cache.get("k") == [1, 2]
        assert cache.is_fresh("k")


class TestOutbox:
    def test_coalesces_and_tombstone_is_sticky(self, store):
        outbox = Outbox(store)
        outbox.enqueue("c1")
        outbox.enqueue("c1", deleted=True)
        outbox.enqueue("c1")
        assert len(outbox) == 1
        assert outbox.get("c1").deleted is True
        assert outbox.get("c1").seq == 3

    def test_survives_restart(self, kv, store):
        Outbox(store).enqueue("c1")
        reopened = Outbox(LocalConversationStore(kv, store.user_id))
        assert "c1" in reopened
        assert reopened.enqueue("c2").seq == 2

    def test_acknowledge_skips_reenqueued(self, store):
        outbox = Outbox(store)
        first = outbox.enqueue("c1")
        outbox.enqueue("c1")
        outbox.acknowledge({"c1": first.seq})
        assert "c1" in outbox


class TestPush:
    def test_retry_then_success(self, store, remote, reconciler):
        put_local(store, "c1", 100)
        remote.fail_next = 1

        async def scenario():
            reconciler.queue_push("c1")
            return await reconciler.flush()

        assert asyncio.run(scenario()) is True
        assert remote.records["c1"].payload.xml == xml("c1")
        assert reconciler.status()["pending"] == 0
        assert reconciler.status()["last_ok_at"] is not None

    def test_push_carries_snapshot_at_drain_time(self, store, remote, reconciler):
        put_local(store, "c1", 100, label="old")

        async def scenario():
            reconciler.queue_push("c1")
            store.write_payload("c1", empty_payload(xml=xml("new")))
            await reconciler.settle()

        asyncio.run(scenario())
        assert len(remote.pushes) == 1
        assert remote.records["c1"].payload.xml == xml("new")

    def test_failure_keeps_entry_and_refetches(self, store, remote, reconciler):
        put_local(store, "c1", 100)
        put_remote(remote, "c2", 50)
        remote.fail_next = 2

        async def scenario():
            reconciler.queue_push("c1")
            ok = await reconciler.flush()
            await reconciler.settle()
            return ok

        assert asyncio.run(scenario()) is False
        entry = reconciler.outbox.get("c1")
        assert entry is not None and entry.attempts == 1
        assert reconciler.status()["last_error_at"] is not None
        assert "c1" not in remote.records
        # the refetch after the failure pulled the remote-only conversation
        assert store.get_meta("c2") is not None

    def test_no_loop_defers_drain(self, store, remote, reconciler):
        put_local(store, "c1", 100)
        reconciler.queue_push("c1")
        assert remote.pushes == []
        assert "c1" in reconciler.outbox


class TestLastWriteWins:
    def test_newer_remote_replaces_local(self, store, reconciler):
        put_local(store, "c1", 100, label="local")
        changed = reconciler.apply_remote_conversations(
            [PushRecord(id="c1", payload=empty_payload(xml=xml("remote")), updated_at=200, title="R")]
        )
        assert changed == ["c1"]
        assert store.read_payload("c1").xml == xml("remote")
        meta = store.get_meta("c1")
        assert meta.updated_at == 200
        assert meta.title == "R"

    def test_older_or_equal_remote_is_ignored(self, store, reconciler):
        put_local(store, "c1", 200, label="local")
        changed = reconciler.apply_remote_conversations(
            [PushRecord(id="c1", payload=empty_payload(xml=xml("remote")), updated_at=200)]
        )
        assert changed == []
        assert store.read_payload("c1").xml == xml("local")

    def test_pending_local_change_wins(self, store, reconciler):
        put_local(store, "c1", 100, label="local")
        reconciler.outbox.enqueue("c1")
        reconciler.apply_remote_conversations(
            [PushRecord(id="c1", payload=empty_payload(xml=xml("remote")), updated_at=500)]
        )
        assert store.read_payload("c1").xml == xml("local")

    def test_tombstone_removes_local_copy(self, store, reconciler):
        put_local(store, "c1", 100)
        put_local(store, "c2", 100)
        refreshed = []
        reconciler.on_conversation_refreshed = refreshed.append

        reconciler.apply_remote_conversations([PushRecord(id="c1", deleted=True, updated_at=50)])

        assert store.read_payload("c1") is None
        assert [m.id for m in store.read_metas()] == ["c2"]
        assert refreshed == ["c1"]

    def test_unpushed_tombstone_keeps_conversation_deleted(self, store, remote, reconciler):
        put_local(store, "keep", 100)
        put_remote(remote, "keep", 100)
        put_remote(remote, "gone", 100)
        reconciler.outbox.enqueue("gone", deleted=True)
        remote.fail_next = 2

        async def scenario():
            assert await reconciler.worker.drain() is False
            return await reconciler.refresh_list()

        metas = asyncio.run(scenario())
        assert [m.id for m in metas] == ["keep"]
        assert store.get_meta("gone") is None
        assert reconciler.outbox.get("gone").deleted is True


class TestStaleWhileRevalidate:
    def test_list_returns_local_then_refreshes(self, store, remote, clock):
        reconciler = SyncReconciler(store, remote, clock=clock, push_delay=0, retry_min=0, retry_max=0)
        put_local(store, "c1", 100)
        put_remote(remote, "c2", 300)

        async def scenario():
            first = reconciler.list_metas()
            await reconciler.settle()
            second = reconciler.list_metas()
            return first, second

        first, second = asyncio.run(scenario())
        assert [m.id for m in first] == ["c1"]
        assert {m.id for m in second} == {"c1", "c2"}
        assert reconciler.cache.is_fresh(reconciler.list_key)

        calls = remote.calls
        reconciler.list_metas()
        assert remote.calls == calls

        clock.advance(61)
        assert not reconciler.cache.is_fresh(reconciler.list_key)

    def test_newer_remote_meta_pulls_detail(self, store, remote, reconciler):
        put_local(store, "c1", 100, label="local")
        put_remote(remote, "c1", 300, label="remote")
        refreshed = []
        reconciler.on_conversation_refreshed = refreshed.append

        asyncio.run(reconciler.refresh_list())

        assert store.read_payload("c1").xml == xml("remote")
        assert refreshed == ["c1"]

    def test_detail_revalidation_respects_ttl(self, store, remote, clock, reconciler):
        put_local(store, "c1", 100)
        put_remote(remote, "c1", 100)

        async def scenario():
            reconciler.revalidate_detail("c1")
            await reconciler.settle()
            before = remote.calls
            reconciler.revalidate_detail("c1")
            await reconciler.settle()
            assert remote.calls == before
            clock.advance(31)
            reconciler.revalidate_detail("c1")
            await reconciler.settle()
            assert remote.calls == before + 1

        asyncio.run(scenario())


class TestBootstrap:
    def test_pull_push_pull_cleanup(self, store, remote, reconciler):
        put_local(store, "local-only", now_ms())
        put_remote(remote, "remote-only", now_ms() + 1)

        result = asyncio.run(reconciler.bootstrap(authenticated=True))

        assert "local-only" in remote.records
        assert {m.id for m in store.read_metas()} == {"local-only", "remote-only"}
        assert result["total_removed"] == 0
        assert len(reconciler.outbox) == 0

    def test_beacon_uses_remote_transport(self, store, remote, reconciler):
        put_local(store, "c1", 100)
        reconciler.send_beacon("c1", empty_payload(xml=xml("bye")), store.get_meta("c1"))
        assert remote.beacons[0][0].payload.xml == xml("bye")
        assert remote.beacons[0][0].updated_at == 100
