"""User-scoped conversation records on top of a KeyValueStore.

Layout per user:

    diagram-sessions:conversations:<user>              -> [ConversationMeta]
    diagram-sessions:current-conversation-id:<user>    -> conversation id
    diagram-sessions:conversation:<user>:<id>          -> ConversationPayload
    diagram-sessions:outbox:<user>                     -> [OutboxEntry]
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from pydantic import TypeAdapter, ValidationError

from .config import (
    ANONYMOUS_USER_ID,
    KEY_PREFIX,
    MAX_CACHED_CONVERSATIONS_ANONYMOUS,
    MAX_CACHED_CONVERSATIONS_SIGNED_IN,
    MAX_XML_SIZE,
    QUOTA_EVICT_META_COUNT,
    QUOTA_EVICT_PAYLOAD_COUNT,
    STALE_PAYLOAD_DAYS,
)
from .errors import StorageQuotaExceededError
from .messages import sanitize_messages
from .models import ConversationMeta, ConversationPayload, OutboxEntry, check_xml_size, now_ms
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

_META_LIST = TypeAdapter(list[ConversationMeta])
_OUTBOX_LIST = TypeAdapter(list[OutboxEntry])

DAY_MS = 24 * 60 * 60 * 1000

NoticeCallback = Callable[[str, str], None]


def cache_quota(authenticated: bool) -> int:
    return MAX_CACHED_CONVERSATIONS_SIGNED_IN if authenticated else MAX_CACHED_CONVERSATIONS_ANONYMOUS


class LocalConversationStore:
    """Reads and writes one user's conversation records."""

    def __init__(
        self,
        kv: KeyValueStore,
        user_id: str | None = None,
        max_xml_size: int = MAX_XML_SIZE,
        on_notice: NoticeCallback | None = None,
    ):
        self.kv = kv
        self.user_id = user_id or ANONYMOUS_USER_ID
        self.max_xml_size = max_xml_size
        self.on_notice = on_notice

    # -- keys --

    @property
    def metas_key(self) -> str:
        return f"{KEY_PREFIX}:conversations:{self.user_id}"

    @property
    def current_id_key(self) -> str:
        return f"{KEY_PREFIX}:current-conversation-id:{self.user_id}"

    @property
    def outbox_key(self) -> str:
        return f"{KEY_PREFIX}:outbox:{self.user_id}"

    def payload_key(self, conversation_id: str) -> str:
        return f"{KEY_PREFIX}:conversation:{self.user_id}:{conversation_id}"

    def _notice(self, level: str, message: str) -> None:
        if self.on_notice is not None:
            self.on_notice(level, message)

    # -- metas --

    def read_metas(self) -> list[ConversationMeta]:
        raw = self.kv.get(self.metas_key)
        if not raw:
            return []
        try:
            return _META_LIST.validate_json(raw)
        except ValidationError as e:
            logger.warning("Conversation list for %s is unreadable: %s", self.user_id, e)
            return []

    def get_meta(self, conversation_id: str) -> ConversationMeta | None:
        return next((m for m in self.read_metas() if m.id == conversation_id), None)

    def _set_metas(self, metas: list[ConversationMeta]) -> None:
        data = _META_LIST.dump_json(metas, by_alias=True, exclude_none=True).decode()
        self.kv.set(self.metas_key, data)

    def write_metas(self, metas: list[ConversationMeta]) -> None:
        """Persist the meta list, evicting old conversations once if over quota."""
        try:
            self._set_metas(metas)
        except StorageQuotaExceededError:
            logger.warning("Store quota exceeded writing conversation list, evicting old conversations")
            evicted = self.clean_oldest(QUOTA_EVICT_META_COUNT)
            if not evicted:
                raise
            self._notice("warning", f"Storage is full; removed {len(evicted)} old conversations")
            self._set_metas([m for m in metas if m.id not in evicted])

    def upsert_meta(self, meta: ConversationMeta) -> None:
        metas = [m for m in self.read_metas() if m.id != meta.id]
        metas.append(meta)
        self.write_metas(metas)

    def remove_meta(self, conversation_id: str) -> None:
        metas = self.read_metas()
        remaining = [m for m in metas if m.id != conversation_id]
        if len(remaining) != len(metas):
            self.write_metas(remaining)

    # -- current pointer --

    def read_current_id(self) -> str:
        return self.kv.get(self.current_id_key) or ""

    def write_current_id(self, conversation_id: str) -> None:
        if conversation_id:
            self.kv.set(self.current_id_key, conversation_id)
        else:
            self.kv.delete(self.current_id_key)

    # -- payloads --

    def has_payload(self, conversation_id: str) -> bool:
        return self.kv.get(self.payload_key(conversation_id)) is not None

    def read_payload(self, conversation_id: str) -> ConversationPayload | None:
        """Load and sanitize a payload. Corrupt or legacy records read as missing."""
        raw = self.kv.get(self.payload_key(conversation_id))
        if not raw:
            return None
        try:
            payload = ConversationPayload.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Payload for %s is corrupt, treating as missing: %s", conversation_id, e)
            return None

        if payload.xml and not payload.xml.lstrip().startswith("<"):
            logger.warning("Removing legacy compressed payload for %s", conversation_id)
            self.remove_payload(conversation_id)
            return None

        payload.messages = sanitize_messages(payload.messages)
        return payload

    def write_payload(self, conversation_id: str, payload: ConversationPayload) -> None:
        check_xml_size(payload.xml, self.max_xml_size)
        key = self.payload_key(conversation_id)
        data = payload.model_dump_json(by_alias=True, exclude_none=True)
        try:
            self.kv.set(key, data)
        except StorageQuotaExceededError:
            logger.warning("Store quota exceeded writing %s, evicting old conversations", conversation_id)
            evicted = self.clean_oldest(QUOTA_EVICT_PAYLOAD_COUNT, keep=conversation_id)
            if not evicted:
                raise
            self._notice("warning", f"Storage is full; removed {len(evicted)} old conversations")
            self.kv.set(key, data)

    def remove_payload(self, conversation_id: str) -> None:
        self.kv.delete(self.payload_key(conversation_id))

    def remove_conversation(self, conversation_id: str) -> None:
        self.remove_payload(conversation_id)
        self.remove_meta(conversation_id)

    # -- outbox --

    def read_outbox(self) -> list[OutboxEntry]:
        raw = self.kv.get(self.outbox_key)
        if not raw:
            return []
        try:
            return _OUTBOX_LIST.validate_json(raw)
        except ValidationError as e:
            logger.warning("Outbox for %s is unreadable, starting empty: %s", self.user_id, e)
            return []

    def write_outbox(self, entries: list[OutboxEntry]) -> None:
        if not entries:
            self.kv.delete(self.outbox_key)
            return
        self.kv.set(self.outbox_key, _OUTBOX_LIST.dump_json(entries, by_alias=True).decode())

    # -- housekeeping --

    def clean_oldest(self, count: int, keep: str | None = None) -> list[str]:
        """Remove up to ``count`` least recently updated conversations.

        Never removes the last conversation, the current one, or ``keep``.
        Returns the removed ids.
        """
        metas = self.read_metas()
        if len(metas) <= 1 or count <= 0:
            return []
        protected = {keep, self.read_current_id()}
        candidates = sorted((m for m in metas if m.id not in protected), key=lambda m: m.updated_at)
        victims = [m.id for m in candidates[: min(count, len(metas) - 1)]]
        if not victims:
            return []

        for conversation_id in victims:
            self.remove_payload(conversation_id)
        self._set_metas([m for m in metas if m.id not in victims])
        logger.info("Evicted %d oldest conversations for %s", len(victims), self.user_id)
        return victims

    def clean_stale_payloads(self, days: int = STALE_PAYLOAD_DAYS, now: int | None = None) -> int:
        """Drop payloads not updated within ``days``. Metas stay listed."""
        cutoff = (now if now is not None else now_ms()) - days * DAY_MS
        current = self.read_current_id()
        removed = 0
        for meta in self.read_metas():
            if meta.updated_at >= cutoff or meta.id == current:
                continue
            if self.has_payload(meta.id):
                self.remove_payload(meta.id)
                removed += 1
        if removed:
            logger.info("Removed %d stale payloads for %s", removed, self.user_id)
        return removed

    def enforce_cache_quota(self, authenticated: bool) -> int:
        metas = self.read_metas()
        excess = len(metas) - cache_quota(authenticated)
        if excess <= 0:
            return 0
        return len(self.clean_oldest(excess))

    def smart_cleanup(self, authenticated: bool) -> dict[str, int]:
        stale_removed = self.clean_stale_payloads()
        quota_removed = self.enforce_cache_quota(authenticated)
        return {
            "stale_removed": stale_removed,
            "quota_removed": quota_removed,
            "total_removed": stale_removed + quota_removed,
        }

    def should_cleanup(self, authenticated: bool) -> bool:
        return len(self.read_metas()) > cache_quota(authenticated) * 0.8

    def cache_stats(self, authenticated: bool, now: int | None = None) -> dict[str, float]:
        metas = self.read_metas()
        quota = cache_quota(authenticated)
        cutoff = (now if now is not None else now_ms()) - STALE_PAYLOAD_DAYS * DAY_MS
        return {
            "cached": len(metas),
            "quota": quota,
            "usage_percentage": len(metas) / quota * 100,
            "stale_count": sum(1 for m in metas if m.updated_at < cutoff),
            "bytes_used": self.kv.usage_bytes(),
        }

    def reset(self) -> int:
        """Remove every record for this user. Returns the number of keys deleted."""
        keys = [self.metas_key, self.current_id_key, self.outbox_key]
        keys += self.kv.keys(f"{KEY_PREFIX}:conversation:{self.user_id}:")
        removed = 0
        for key in keys:
            if self.kv.get(key) is not None:
                self.kv.delete(key)
                removed += 1
        return removed
