"""Conversation session: the facade a chat UI drives.

Holds the active conversation's messages, diagram xml and version history,
feeds every change to the PersistenceScheduler and flushes the outgoing
conversation before switching, creating or deleting.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence

from .adapters import CloudStorageAdapter, ConversationStorageAdapter, LocalStorageAdapter
from .config import CLOUD_SAVE_DEBOUNCE_SECONDS, LOCAL_SAVE_DEBOUNCE_SECONDS, MAX_DIAGRAM_VERSIONS, MAX_XML_SIZE
from .errors import DiagramTooLargeError
from .history import DiagramVersionHistory, RenderCallback
from .local_store import LocalConversationStore
from .messages import display_title, strip_file_parts
from .models import (
    ChatMessage,
    ConversationMeta,
    ConversationPayload,
    DiagramVersionState,
    check_xml_size,
    create_conversation_id,
    create_session_id,
    empty_payload,
    now_ms,
)
from .reconciler import SyncReconciler
from .remote import RemoteConversationStore
from .scheduler import PersistenceScheduler, SaveState
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

NoticeCallback = Callable[[str, str], None]


def _no_render(xml: str, skip_validation: bool) -> str | None:
    return None


def _no_clear() -> None:
    pass


class ConversationSession:
    def __init__(
        self,
        adapter: ConversationStorageAdapter,
        display: RenderCallback | None = None,
        clear_diagram: Callable[[], None] | None = None,
        scheduler: PersistenceScheduler | None = None,
        debounce_seconds: float = LOCAL_SAVE_DEBOUNCE_SECONDS,
        locale: str = "en",
        strip_file_parts: bool = False,
        on_notice: NoticeCallback | None = None,
        max_versions: int = MAX_DIAGRAM_VERSIONS,
        max_xml_size: int = MAX_XML_SIZE,
    ):
        self.adapter = adapter
        self.scheduler = scheduler or PersistenceScheduler(
            adapter, debounce_seconds=debounce_seconds, max_xml_size=max_xml_size
        )
        self._display = display or _no_render
        self._clear_diagram = clear_diagram or _no_clear
        self.locale = locale
        self.strip_file_parts = strip_file_parts
        self.on_notice = on_notice
        self.max_xml_size = max_xml_size

        self.history = DiagramVersionHistory(
            self._render,
            on_change=self._on_history_change,
            max_versions=max_versions,
            max_xml_size=max_xml_size,
        )
        self.messages: list[ChatMessage] = []
        self.xml = ""
        self.session_id = create_session_id()
        self.current_conversation_id = ""
        self.version_state = DiagramVersionState()
        self.in_memory_only = False
        self._loading = False

        adapter.set_refresh_listener(self._on_conversation_refreshed)

    # -- internals --

    def _notice(self, level: str, message: str) -> None:
        if self.on_notice is not None:
            self.on_notice(level, message)

    def _render(self, xml: str, skip_validation: bool) -> str | None:
        error = self._display(xml, skip_validation)
        if not error:
            self.xml = xml
        return error

    def _on_history_change(self, state: DiagramVersionState) -> None:
        self.version_state = state
        if not self._loading:
            self._notify_scheduler()

    def _notify_scheduler(self) -> None:
        if not self.current_conversation_id or self.in_memory_only:
            return
        self.scheduler.notify_change(self.current_conversation_id, self.snapshot())

    def _flush_current(self) -> bool:
        """Write the current in-memory state now, whatever is pending."""
        if not self.current_conversation_id or self.in_memory_only:
            return True
        return self.scheduler.save_now(self.current_conversation_id, self.snapshot())

    def snapshot(self) -> ConversationPayload:
        messages = strip_file_parts(self.messages) if self.strip_file_parts else list(self.messages)
        return ConversationPayload(
            messages=messages,
            xml=self.xml,
            diagram_versions=list(self.history.versions),
            diagram_version_cursor=self.history.cursor,
            diagram_version_marks=dict(self.history.marks),
            session_id=self.session_id,
        )

    # -- lifecycle --

    def start(self) -> str:
        """Restore the last active conversation (or create one). Returns its id."""
        metas = self.adapter.list_conversations()
        if not metas:
            self.new_chat()
            return self.current_conversation_id

        stored = self.adapter.get_current_conversation_id()
        if stored and any(m.id == stored for m in metas):
            target = stored
        else:
            target = max(metas, key=lambda m: m.updated_at).id
        self._activate(target)
        return target

    def _activate(self, conversation_id: str) -> None:
        self.current_conversation_id = conversation_id
        self.in_memory_only = False
        self.adapter.set_current_conversation_id(conversation_id)
        self.load_conversation(conversation_id)

    def load_conversation(self, conversation_id: str) -> ConversationPayload:
        payload = self.adapter.load_conversation(conversation_id)
        if payload is None:
            logger.info("No stored payload for %s, starting empty", conversation_id)
            payload = empty_payload()

        self._loading = True
        try:
            self.messages = list(payload.messages)
            self.session_id = payload.session_id
            self.history.restore_state(
                payload.diagram_versions,
                payload.diagram_version_cursor,
                payload.diagram_version_marks,
            )
            self.version_state = self.history.snapshot()

            xml = payload.xml or self.history.diagram_xml_at_cursor()
            if xml:
                error = self._display(xml, True)
                if error:
                    logger.warning("Render of %s reported: %s", conversation_id, error)
                self.xml = xml
            else:
                self._clear_diagram()
                self.xml = ""
        finally:
            self._loading = False

        self.scheduler.mark_saved(conversation_id, self.snapshot())
        return payload

    def close(self) -> bool:
        pending_ok = self.scheduler.flush_all()
        return self._flush_current() and pending_ok

    def handle_visibility_hidden(self) -> None:
        if self.current_conversation_id and not self.in_memory_only:
            self.scheduler.teardown(self.current_conversation_id, self.snapshot())

    def handle_unload(self) -> None:
        self.handle_visibility_hidden()

    def _on_conversation_refreshed(self, conversation_id: str) -> None:
        if conversation_id != self.current_conversation_id:
            return
        if not any(m.id == conversation_id for m in self.adapter.get_cached_conversations()):
            logger.info("Current conversation %s was deleted elsewhere", conversation_id)
            self.scheduler.forget(conversation_id)
            self._select_fallback()
            return
        if self.scheduler.state(conversation_id) is not SaveState.IDLE:
            logger.debug("Ignoring refresh of %s, local save pending", conversation_id)
            return
        self.load_conversation(conversation_id)

    # -- state updates --

    def set_messages(self, messages: Sequence[ChatMessage]) -> None:
        self.messages = list(messages)
        self._notify_scheduler()

    def set_xml(self, xml: str) -> None:
        try:
            check_xml_size(xml, self.max_xml_size)
        except DiagramTooLargeError as e:
            self._notice("error", str(e))
            raise
        self.xml = xml or ""
        self._notify_scheduler()

    # -- version history --

    def ensure_diagram_version_for_message(self, message_index: int, xml: str, note: str | None = None) -> str:
        return self.history.ensure_diagram_version_for_message(message_index, xml, note)

    def append_diagram_version(self, xml: str, note: str | None = None) -> None:
        self.history.append_diagram_version(xml, note)

    def restore_diagram_version_index(self, index: int) -> None:
        self.history.restore_diagram_version_index(index)

    def undo(self) -> None:
        self.history.undo()

    def redo(self) -> None:
        self.history.redo()

    def truncate_diagram_versions_after_message(self, message_index: int) -> None:
        self.history.truncate_diagram_versions_after_message(message_index)

    def diagram_xml_for_message(self, message_index: int) -> str:
        return self.history.diagram_xml_for_message(message_index)

    def diagram_version_index_for_message(self, message_index: int) -> int:
        return self.history.diagram_version_index_for_message(message_index)

    def previous_diagram_xml_before_message(self, message_index: int) -> str:
        return self.history.previous_diagram_xml_before_message(message_index)

    # -- conversation operations --

    @property
    def conversations(self) -> list[ConversationMeta]:
        return sorted(self.adapter.get_cached_conversations(), key=lambda m: m.updated_at, reverse=True)

    def display_title(self, conversation_id: str) -> str:
        return display_title(self.conversations, conversation_id, self.locale)

    def new_chat(self, keep_diagram: bool = False) -> bool:
        """Start a fresh conversation. False when it could only be kept in memory."""
        self._flush_current()
        conversation_id = create_conversation_id()
        payload = empty_payload(xml=self.xml if keep_diagram else "")
        created = self.adapter.create_conversation(conversation_id, payload, now_ms())

        self._loading = True
        try:
            self.messages = []
            self.session_id = payload.session_id
            self.history.clear()
            if not keep_diagram:
                self._clear_diagram()
                self.xml = ""
        finally:
            self._loading = False

        self.current_conversation_id = conversation_id
        self.in_memory_only = not created
        if created:
            self.scheduler.mark_saved(conversation_id, self.snapshot())
        else:
            self._notice("warning", "Storage is unavailable, this conversation will not be saved")
        return created

    def select_conversation(self, conversation_id: str) -> None:
        if not conversation_id or conversation_id == self.current_conversation_id:
            return
        self._flush_current()
        self._activate(conversation_id)

    def delete_conversation(self, conversation_id: str) -> None:
        self._flush_current()
        self.scheduler.forget(conversation_id)
        self.adapter.delete_conversation(conversation_id)
        if conversation_id != self.current_conversation_id:
            return

        self._select_fallback()

    def _select_fallback(self) -> None:
        self.current_conversation_id = ""
        remaining = self.conversations
        if remaining:
            self._activate(remaining[0].id)
        else:
            self.new_chat()

    def rename_conversation(self, conversation_id: str, title: str) -> None:
        title = title.strip()
        if not title:
            return
        self.adapter.update_title(conversation_id, title)


def create_local_session(
    kv: KeyValueStore,
    user_id: str | None = None,
    push_hook=None,
    on_notice: NoticeCallback | None = None,
    **kwargs,
) -> ConversationSession:
    store = LocalConversationStore(kv, user_id, on_notice=on_notice)
    adapter = LocalStorageAdapter(store, push_hook=push_hook)
    kwargs.setdefault("debounce_seconds", LOCAL_SAVE_DEBOUNCE_SECONDS)
    return ConversationSession(adapter, on_notice=on_notice, **kwargs)


def create_cloud_session(
    kv: KeyValueStore,
    remote: RemoteConversationStore,
    user_id: str,
    on_notice: NoticeCallback | None = None,
    reconciler_options: dict | None = None,
    **kwargs,
) -> tuple[ConversationSession, SyncReconciler]:
    store = LocalConversationStore(kv, user_id, on_notice=on_notice)
    reconciler = SyncReconciler(store, remote, **(reconciler_options or {}))
    adapter = CloudStorageAdapter(store, reconciler)
    kwargs.setdefault("debounce_seconds", CLOUD_SAVE_DEBOUNCE_SECONDS)
    return ConversationSession(adapter, on_notice=on_notice, **kwargs), reconciler
