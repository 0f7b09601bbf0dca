"""Storage adapters: one contract, local-only and cloud-backed implementations."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from typing import Any, Union

from pydantic import ValidationError

from .errors import DiagramTooLargeError, PersistenceError, StorageError
from .local_store import LocalConversationStore
from .messages import derive_conversation_title
from .models import ConversationMeta, ConversationPayload, check_xml_size, empty_payload, now_ms
from .reconciler import SyncReconciler

logger = logging.getLogger(__name__)

PayloadUpdate = Union[ConversationPayload, Mapping[str, Any]]
PushHook = Callable[..., None]


class ConversationStorageAdapter(ABC):
    """Uniform read/write contract over conversation storage.

    Reads are synchronous and never wait on the network. Writes report
    storage failures as ``False`` (or a logged warning) and raise only
    DiagramTooLargeError from ``save_conversation``.
    """

    @abstractmethod
    def list_conversations(self) -> list[ConversationMeta]:
        pass

    @abstractmethod
    def load_conversation(self, conversation_id: str) -> ConversationPayload | None:
        pass

    @abstractmethod
    def get_current_conversation_id(self) -> str:
        pass

    @abstractmethod
    def create_conversation(self, conversation_id: str, payload: ConversationPayload, timestamp: int) -> bool:
        pass

    @abstractmethod
    def save_conversation(self, conversation_id: str, update: PayloadUpdate) -> bool:
        pass

    @abstractmethod
    def save_immediately(self, conversation_id: str, payload: ConversationPayload) -> None:
        """Synchronous teardown write. Never raises."""

    @abstractmethod
    def delete_conversation(self, conversation_id: str) -> None:
        pass

    @abstractmethod
    def update_title(self, conversation_id: str, title: str) -> None:
        pass

    @abstractmethod
    def set_current_conversation_id(self, conversation_id: str) -> None:
        pass

    @abstractmethod
    def update_meta(self, conversation_id: str, **updates: Any) -> None:
        pass

    @abstractmethod
    def get_cached_conversations(self) -> list[ConversationMeta]:
        pass

    def set_refresh_listener(self, callback: Callable[[str], None] | None) -> None:
        """Called with a conversation id after a background refresh replaced it."""


def _merge_payload(existing: ConversationPayload | None, update: PayloadUpdate) -> ConversationPayload:
    if isinstance(update, ConversationPayload):
        return update
    base = existing or empty_payload()
    fields = {name: getattr(base, name) for name in ConversationPayload.model_fields}
    fields.update(update)
    return ConversationPayload.model_validate(fields)


def _update_xml(update: PayloadUpdate) -> str:
    if isinstance(update, ConversationPayload):
        return update.xml
    return update.get("xml") or ""


class LocalStorageAdapter(ConversationStorageAdapter):
    """Adapter over a single durable store.

    ``push_hook(conversation_id, deleted=..., immediate=...)`` lets a signed-in
    user in local mode still queue remote pushes.
    """

    def __init__(self, store: LocalConversationStore, push_hook: PushHook | None = None):
        self.store = store
        self.push_hook = push_hook
        self._cached: list[ConversationMeta] = []

    # -- hooks --

    def _queue_push(self, conversation_id: str, deleted: bool = False, immediate: bool = False) -> None:
        if self.push_hook is not None:
            self.push_hook(conversation_id, deleted=deleted, immediate=immediate)

    def _after_teardown_write(self, conversation_id: str, payload: ConversationPayload) -> None:
        pass

    def _invalidate(self, conversation_id: str) -> None:
        pass

    def _set_list(self, metas: list[ConversationMeta]) -> None:
        self._cached = list(metas)

    # -- reads --

    def list_conversations(self) -> list[ConversationMeta]:
        metas = self.store.read_metas()
        self._set_list(metas)
        return metas

    def load_conversation(self, conversation_id: str) -> ConversationPayload | None:
        try:
            return self.store.read_payload(conversation_id)
        except StorageError as e:
            logger.warning("Failed to load %s: %s", conversation_id, e)
            return None

    def get_current_conversation_id(self) -> str:
        try:
            return self.store.read_current_id()
        except StorageError as e:
            logger.warning("Failed to read current conversation id: %s", e)
            return ""

    def get_cached_conversations(self) -> list[ConversationMeta]:
        return list(self._cached)

    # -- writes --

    def create_conversation(self, conversation_id: str, payload: ConversationPayload, timestamp: int) -> bool:
        try:
            self.store.write_payload(conversation_id, payload)
            meta = ConversationMeta(
                id=conversation_id,
                created_at=timestamp,
                updated_at=timestamp,
                title=derive_conversation_title(payload.messages),
            )
            metas = [meta] + [m for m in self.store.read_metas() if m.id != conversation_id]
            self.store.write_metas(metas)
            self.store.write_current_id(conversation_id)
        except PersistenceError as e:
            logger.warning("Failed to create conversation %s: %s", conversation_id, e)
            return False
        self._set_list(metas)
        self._queue_push(conversation_id, immediate=True)
        return True

    def _touch_meta(self, conversation_id: str, payload: ConversationPayload) -> list[ConversationMeta]:
        now = now_ms()
        metas = self.store.read_metas()
        found = False
        for i, meta in enumerate(metas):
            if meta.id == conversation_id:
                found = True
                metas[i] = meta.model_copy(
                    update={
                        "updated_at": max(now, meta.updated_at),
                        "title": meta.title or derive_conversation_title(payload.messages),
                    }
                )
        if not found:
            metas.append(
                ConversationMeta(
                    id=conversation_id,
                    created_at=now,
                    updated_at=now,
                    title=derive_conversation_title(payload.messages),
                )
            )
        self.store.write_metas(metas)
        return metas

    def save_conversation(self, conversation_id: str, update: PayloadUpdate) -> bool:
        check_xml_size(_update_xml(update), self.store.max_xml_size)
        try:
            existing = None if isinstance(update, ConversationPayload) else self.store.read_payload(conversation_id)
            merged = _merge_payload(existing, update)
            self.store.write_payload(conversation_id, merged)
            metas = self._touch_meta(conversation_id, merged)
        except DiagramTooLargeError:
            raise
        except (StorageError, ValidationError) as e:
            logger.warning("Failed to save conversation %s: %s", conversation_id, e)
            return False
        self._set_list(metas)
        self._queue_push(conversation_id)
        return True

    def save_immediately(self, conversation_id: str, payload: ConversationPayload) -> None:
        try:
            self.store.write_payload(conversation_id, payload)
            metas = self._touch_meta(conversation_id, payload)
            self._set_list(metas)
            self._queue_push(conversation_id, immediate=True)
        except PersistenceError as e:
            logger.warning("Teardown save of %s failed: %s", conversation_id, e)
            return
        self._after_teardown_write(conversation_id, payload)

    def delete_conversation(self, conversation_id: str) -> None:
        self._queue_push(conversation_id, deleted=True, immediate=True)
        try:
            self.store.remove_conversation(conversation_id)
            metas = self.store.read_metas()
        except StorageError as e:
            logger.warning("Failed to delete conversation %s: %s", conversation_id, e)
            return
        self._set_list(metas)
        self._invalidate(conversation_id)

    def update_title(self, conversation_id: str, title: str) -> None:
        try:
            metas = self.store.read_metas()
            now = now_ms()
            metas = [
                m.model_copy(update={"title": title, "updated_at": max(now, m.updated_at)})
                if m.id == conversation_id
                else m
                for m in metas
            ]
            self.store.write_metas(metas)
        except StorageError as e:
            logger.warning("Failed to rename conversation %s: %s", conversation_id, e)
            return
        self._set_list(metas)
        self._queue_push(conversation_id)
        self._invalidate(conversation_id)

    def set_current_conversation_id(self, conversation_id: str) -> None:
        try:
            self.store.write_current_id(conversation_id)
        except StorageError as e:
            logger.warning("Failed to store current conversation id: %s", e)

    def update_meta(self, conversation_id: str, **updates: Any) -> None:
        updates.pop("id", None)
        try:
            metas = [
                m.model_copy(update=updates) if m.id == conversation_id else m
                for m in self.store.read_metas()
            ]
            self.store.write_metas(metas)
        except StorageError as e:
            logger.warning("Failed to update meta of %s: %s", conversation_id, e)
            return
        self._set_list(metas)


class CloudStorageAdapter(LocalStorageAdapter):
    """Local cache plus remote sync through a SyncReconciler.

    Every write lands in the local cache and the list projection before any
    network call; pushes go through the reconciler's outbox.
    """

    def __init__(self, store: LocalConversationStore, reconciler: SyncReconciler):
        super().__init__(store)
        self.reconciler = reconciler

    def _queue_push(self, conversation_id: str, deleted: bool = False, immediate: bool = False) -> None:
        self.reconciler.queue_push(conversation_id, deleted=deleted, immediate=immediate)

    def _after_teardown_write(self, conversation_id: str, payload: ConversationPayload) -> None:
        self.reconciler.send_beacon(conversation_id, payload, self.store.get_meta(conversation_id))

    def _invalidate(self, conversation_id: str) -> None:
        self.reconciler.invalidate_detail(conversation_id)

    def _set_list(self, metas: list[ConversationMeta]) -> None:
        super()._set_list(metas)
        self.reconciler.update_list(metas)

    def list_conversations(self) -> list[ConversationMeta]:
        metas = self.reconciler.list_metas()
        self._cached = list(metas)
        return metas

    def get_cached_conversations(self) -> list[ConversationMeta]:
        return self.reconciler.cached_metas()

    def load_conversation(self, conversation_id: str) -> ConversationPayload | None:
        payload = super().load_conversation(conversation_id)
        self.reconciler.revalidate_detail(conversation_id)
        return payload

    def set_refresh_listener(self, callback: Callable[[str], None] | None) -> None:
        self.reconciler.on_conversation_refreshed = callback
