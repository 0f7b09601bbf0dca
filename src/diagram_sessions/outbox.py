"""Durable push queue for cloud sync and the worker that drains it.

Entries are coalesced per conversation and carry a sequence number. The worker
builds each record from the local cache when it drains, so a push always
carries the full current snapshot. An entry is removed only when its push is
acknowledged and it was not re-enqueued while the push was in flight.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import SYNC_MAX_RETRIES, SYNC_PUSH_DELAY_SECONDS, SYNC_RETRY_MAX_SECONDS, SYNC_RETRY_MIN_SECONDS
from .errors import RemoteSyncError, StorageError
from .local_store import LocalConversationStore
from .models import OutboxEntry, PushRecord, now_ms
from .remote import RemoteConversationStore

logger = logging.getLogger(__name__)


class Outbox:
    """Pending remote pushes, persisted through the local store."""

    def __init__(self, store: LocalConversationStore):
        self.store = store
        self._entries: dict[str, OutboxEntry] = {e.conversation_id: e for e in store.read_outbox()}
        self._seq = max((e.seq for e in self._entries.values()), default=0)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._entries

    def entries(self) -> list[OutboxEntry]:
        return sorted(self._entries.values(), key=lambda e: e.seq)

    def get(self, conversation_id: str) -> OutboxEntry | None:
        return self._entries.get(conversation_id)

    def enqueue(self, conversation_id: str, deleted: bool = False) -> OutboxEntry:
        """Add or refresh the entry for ``conversation_id``. Tombstones are sticky."""
        self._seq += 1
        prev = self._entries.get(conversation_id)
        entry = OutboxEntry(
            conversation_id=conversation_id,
            deleted=deleted or bool(prev and prev.deleted),
            seq=self._seq,
            attempts=prev.attempts if prev else 0,
        )
        self._entries[conversation_id] = entry
        self._persist()
        return entry

    def acknowledge(self, seqs: dict[str, int]) -> None:
        """Drop entries whose sequence number is unchanged since the push was built."""
        changed = False
        for conversation_id, seq in seqs.items():
            entry = self._entries.get(conversation_id)
            if entry is not None and entry.seq == seq:
                del self._entries[conversation_id]
                changed = True
        if changed:
            self._persist()

    def record_failure(self, conversation_ids) -> None:
        for conversation_id in conversation_ids:
            entry = self._entries.get(conversation_id)
            if entry is not None:
                self._entries[conversation_id] = entry.model_copy(update={"attempts": entry.attempts + 1})
        self._persist()

    def discard(self, conversation_id: str) -> None:
        if self._entries.pop(conversation_id, None) is not None:
            self._persist()

    def _persist(self) -> None:
        try:
            self.store.write_outbox(self.entries())
        except StorageError as e:
            logger.warning("Could not persist outbox (%d entries kept in memory): %s", len(self._entries), e)


class OutboxWorker:
    """Debounced background drain of an Outbox to a remote store.

    ``build_record`` turns an entry into the record to push, or None when
    there is nothing left to send for it.
    """

    def __init__(
        self,
        outbox: Outbox,
        remote: RemoteConversationStore,
        build_record: Callable[[OutboxEntry], PushRecord | None],
        on_error: Callable[[list[str]], None] | None = None,
        push_delay: float = SYNC_PUSH_DELAY_SECONDS,
        max_retries: int = SYNC_MAX_RETRIES,
        retry_min: float = SYNC_RETRY_MIN_SECONDS,
        retry_max: float = SYNC_RETRY_MAX_SECONDS,
    ):
        self.outbox = outbox
        self.remote = remote
        self.build_record = build_record
        self.on_error = on_error
        self.push_delay = push_delay
        self.max_retries = max(1, max_retries)
        self.retry_min = retry_min
        self.retry_max = retry_max

        self.in_flight = 0
        self.last_ok_at: int | None = None
        self.last_error_at: int | None = None

        self._timer: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None
        self._rerun = False

    def schedule(self, immediate: bool = False) -> None:
        """Arm (or re-arm) the drain timer on the running loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, %d outbox entries wait for the next drain", len(self.outbox))
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(0 if immediate else self.push_delay, self._start_drain)

    def _start_drain(self) -> None:
        self._timer = None
        if self._task is not None and not self._task.done():
            self._rerun = True
            return
        self._task = asyncio.get_running_loop().create_task(self._drain_loop())

    async def _drain_loop(self) -> None:
        while True:
            self._rerun = False
            ok = await self.drain()
            if not ok or not self._rerun:
                return

    async def wait_idle(self) -> None:
        """Wait for a scheduled or running drain to finish."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            await self.drain()
        if self._task is not None and not self._task.done():
            await self._task

    async def flush(self) -> bool:
        """Drain now, after any drain already running."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._task is not None and not self._task.done():
            await self._task
        return await self.drain()

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def drain(self) -> bool:
        """Push every pending entry once (with retries). Returns False on failure."""
        records: list[PushRecord] = []
        seqs: dict[str, int] = {}
        for entry in self.outbox.entries():
            record = self.build_record(entry)
            if record is None:
                self.outbox.discard(entry.conversation_id)
                continue
            records.append(record)
            seqs[entry.conversation_id] = entry.seq
        if not records:
            return True

        self.in_flight += 1
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_retries),
                wait=wait_exponential(multiplier=self.retry_min, min=self.retry_min, max=self.retry_max),
                retry=retry_if_exception_type(RemoteSyncError),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    await asyncio.to_thread(self.remote.push, records)
        except RemoteSyncError as e:
            logger.warning("Push of %d conversations failed after retries: %s", len(records), e)
            self.last_error_at = now_ms()
            self.outbox.record_failure(seqs)
            if self.on_error is not None:
                self.on_error(list(seqs))
            return False
        finally:
            self.in_flight -= 1

        self.outbox.acknowledge(seqs)
        self.last_ok_at = now_ms()
        logger.debug("Pushed %d conversations", len(records))
        return True
