"""Cloud-mode reconciliation between the local cache and the remote store.

Reads are served from the local cache and revalidated in the background when
stale. Writes land in the cache first and are pushed later through the
outbox. A failed push invalidates the affected queries and refetches instead
of rolling anything back. Remote records win only when strictly newer
(``updated_at``) and nothing is pending locally for them; divergent
concurrent edits are not merged.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine, Iterable, Sequence

from .cache import QueryCache
from .config import (
    DETAIL_STALE_SECONDS,
    LIST_PAGE_SIZE,
    LIST_STALE_SECONDS,
    SYNC_MAX_RETRIES,
    SYNC_PUSH_DELAY_SECONDS,
    SYNC_RETRY_MAX_SECONDS,
    SYNC_RETRY_MIN_SECONDS,
)
from .errors import DiagramTooLargeError, RemoteSyncError, StorageError
from .local_store import LocalConversationStore
from .models import ConversationMeta, ConversationPayload, OutboxEntry, PushRecord, now_ms
from .outbox import Outbox, OutboxWorker
from .remote import RemoteConversationStore

logger = logging.getLogger(__name__)


class SyncReconciler:
    def __init__(
        self,
        store: LocalConversationStore,
        remote: RemoteConversationStore,
        clock: Callable[[], float] = time.monotonic,
        push_delay: float = SYNC_PUSH_DELAY_SECONDS,
        max_retries: int = SYNC_MAX_RETRIES,
        retry_min: float = SYNC_RETRY_MIN_SECONDS,
        retry_max: float = SYNC_RETRY_MAX_SECONDS,
        list_stale: float = LIST_STALE_SECONDS,
        detail_stale: float = DETAIL_STALE_SECONDS,
        page_size: int = LIST_PAGE_SIZE,
    ):
        self.store = store
        self.remote = remote
        self.cache = QueryCache(clock)
        self.list_stale = list_stale
        self.detail_stale = detail_stale
        self.page_size = page_size
        self.outbox = Outbox(store)
        self.worker = OutboxWorker(
            self.outbox,
            remote,
            self._build_record,
            on_error=self._on_push_error,
            push_delay=push_delay,
            max_retries=max_retries,
            retry_min=retry_min,
            retry_max=retry_max,
        )
        self.on_conversation_refreshed: Callable[[str], None] | None = None
        self.last_pull_error_at: int | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def list_key(self) -> tuple:
        return ("conversations", self.store.user_id)

    def detail_key(self, conversation_id: str) -> tuple:
        return ("conversation", self.store.user_id, conversation_id)

    # -- background tasks --

    def _spawn(self, coro: Coroutine) -> asyncio.Task | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.debug("No running event loop, background refresh skipped")
            return None
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def settle(self) -> None:
        """Wait until background refreshes and the outbox drain are done."""
        while True:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            await self.worker.wait_idle()
            if not self._tasks:
                return

    # -- list projection --

    def list_metas(self) -> list[ConversationMeta]:
        """Cached list (seeded from the local store), revalidated in the background when stale."""
        if not self.cache.has(self.list_key):
            self.cache.set(self.list_key, self.store.read_metas(), self.list_stale)
            self.cache.invalidate(self.list_key)
        if not self.cache.is_fresh(self.list_key):
            self._spawn(self.refresh_list())
        return list(self.cache.get(self.list_key, []))

    def cached_metas(self) -> list[ConversationMeta]:
        if self.cache.has(self.list_key):
            return list(self.cache.get(self.list_key))
        return self.store.read_metas()

    def update_list(self, metas: Sequence[ConversationMeta]) -> None:
        """Replace the list projection without touching its freshness."""
        if self.cache.has(self.list_key):
            self.cache.update(self.list_key, lambda _: list(metas))
        else:
            self.cache.set(self.list_key, list(metas), self.list_stale)
            self.cache.invalidate(self.list_key)

    async def refresh_list(self) -> list[ConversationMeta]:
        try:
            remote_metas = await asyncio.to_thread(self.remote.list_metas, self.page_size, 0)
        except RemoteSyncError as e:
            logger.warning("Conversation list refresh failed: %s", e)
            self.last_pull_error_at = now_ms()
            return self.cached_metas()

        newer = self._merge_remote_metas(remote_metas)
        for conversation_id in newer:
            await self.refresh_detail(conversation_id)

        metas = self.store.read_metas()
        self.cache.set(self.list_key, metas, self.list_stale)
        return metas

    def _merge_remote_metas(self, remote_metas: Iterable[ConversationMeta]) -> list[str]:
        """Add unknown conversations to the local list; return ids whose remote copy is newer.

        Ids with a pending outbox entry are skipped, so an unpushed tombstone keeps
        its conversation deleted.
        """
        local = {m.id: m for m in self.store.read_metas()}
        added = []
        newer = []
        for meta in remote_metas:
            if meta.id in self.outbox:
                continue
            mine = local.get(meta.id)
            if mine is None:
                local[meta.id] = meta
                added.append(meta.id)
            elif meta.updated_at > mine.updated_at:
                newer.append(meta.id)
        if added:
            try:
                self.store.write_metas(list(local.values()))
            except StorageError as e:
                logger.warning("Could not cache %d remote conversations: %s", len(added), e)
        return newer

    # -- detail --

    def revalidate_detail(self, conversation_id: str) -> None:
        if not self.cache.is_fresh(self.detail_key(conversation_id)):
            self._spawn(self.refresh_detail(conversation_id))

    async def refresh_detail(self, conversation_id: str) -> bool:
        """Fetch one conversation and apply it if it wins. Returns True when the cache changed."""
        try:
            record = await asyncio.to_thread(self.remote.get_by_id, conversation_id)
        except RemoteSyncError as e:
            logger.warning("Refresh of %s failed: %s", conversation_id, e)
            self.last_pull_error_at = now_ms()
            return False
        self.cache.set(self.detail_key(conversation_id), True, self.detail_stale)
        if record is None:
            return False
        changed = self.apply_remote_conversations([record])
        return conversation_id in changed

    def apply_remote_conversations(self, records: Sequence[PushRecord]) -> list[str]:
        """Last-write-wins merge of remote records into the local cache."""
        metas = {m.id: m for m in self.store.read_metas()}
        changed: list[str] = []
        for record in records:
            if record.id in self.outbox:
                logger.debug("Skipping remote copy of %s, local changes pending", record.id)
                continue
            local = metas.get(record.id)

            if record.deleted:
                if local is not None or self.store.has_payload(record.id):
                    self.store.remove_payload(record.id)
                    metas.pop(record.id, None)
                    changed.append(record.id)
                continue

            if record.payload is None:
                continue
            remote_updated = record.updated_at or 0
            if local is not None and remote_updated <= local.updated_at and self.store.has_payload(record.id):
                continue

            try:
                self.store.write_payload(record.id, record.payload)
            except (StorageError, DiagramTooLargeError) as e:
                logger.warning("Could not cache remote copy of %s: %s", record.id, e)
                continue
            metas[record.id] = ConversationMeta(
                id=record.id,
                created_at=record.created_at or (local.created_at if local else remote_updated),
                updated_at=max(remote_updated, local.updated_at if local else 0),
                title=record.title or (local.title if local else None),
            )
            changed.append(record.id)

        if changed:
            merged = list(metas.values())
            try:
                self.store.write_metas(merged)
            except StorageError as e:
                logger.warning("Could not write merged conversation list: %s", e)
            self.update_list(merged)
            if self.on_conversation_refreshed is not None:
                for conversation_id in changed:
                    self.on_conversation_refreshed(conversation_id)
        return changed

    # -- writes --

    def queue_push(self, conversation_id: str, deleted: bool = False, immediate: bool = False) -> None:
        self.outbox.enqueue(conversation_id, deleted=deleted)
        self.worker.schedule(immediate=immediate)

    def _build_record(self, entry: OutboxEntry) -> PushRecord | None:
        if entry.deleted:
            return PushRecord(id=entry.conversation_id, deleted=True, updated_at=now_ms())
        meta = self.store.get_meta(entry.conversation_id)
        payload = self.store.read_payload(entry.conversation_id)
        if meta is None or payload is None:
            return None
        return PushRecord(
            id=meta.id,
            payload=payload,
            title=meta.title,
            created_at=meta.created_at,
            updated_at=meta.updated_at,
        )

    def send_beacon(self, conversation_id: str, payload: ConversationPayload, meta: ConversationMeta | None) -> None:
        record = PushRecord(
            id=conversation_id,
            payload=payload,
            title=meta.title if meta else None,
            created_at=meta.created_at if meta else None,
            updated_at=meta.updated_at if meta else now_ms(),
        )
        try:
            self.remote.send_beacon([record])
        except RemoteSyncError as e:
            logger.debug("Beacon for %s not sent: %s", conversation_id, e)

    def _on_push_error(self, conversation_ids: list[str]) -> None:
        self.invalidate_list()
        for conversation_id in conversation_ids:
            self.invalidate_detail(conversation_id)
        self._spawn(self.refresh_list())

    def invalidate_list(self) -> None:
        self.cache.invalidate(self.list_key)

    def invalidate_detail(self, conversation_id: str) -> None:
        self.cache.invalidate(self.detail_key(conversation_id))

    # -- lifecycle --

    async def flush(self) -> bool:
        return await self.worker.flush()

    async def bootstrap(self, authenticated: bool = True) -> dict[str, int]:
        """Initial sync after sign-in: pull, push everything local, pull again, tidy the cache."""
        await self.refresh_list()
        for meta in self.store.read_metas():
            self.outbox.enqueue(meta.id)
        await self.flush()
        await self.refresh_list()
        result = self.store.smart_cleanup(authenticated)
        self.update_list(self.store.read_metas())
        if result["total_removed"]:
            logger.info("Cache cleanup removed %d conversations", result["total_removed"])
        return result

    def status(self) -> dict:
        return {
            "in_flight": self.worker.in_flight,
            "pending": len(self.outbox),
            "last_ok_at": self.worker.last_ok_at,
            "last_error_at": self.worker.last_error_at,
        }

    async def aclose(self) -> None:
        try:
            await self.flush()
        finally:
            self.worker.cancel()
            for task in list(self._tasks):
                task.cancel()
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
