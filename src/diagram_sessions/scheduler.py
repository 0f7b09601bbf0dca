"""Debounced auto-save with forced-flush triggers.

Each conversation moves through idle -> pending -> flushing -> idle. A change
whose fingerprint matches the last saved snapshot is ignored; one matching the
pending snapshot replaces it without re-arming the timer. Forced saves compare
the full snapshot instead of the fingerprint.
Debounce timers are callbacks on the running asyncio loop; without a running
loop a change is written immediately.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

from .adapters import ConversationStorageAdapter
from .config import LOCAL_SAVE_DEBOUNCE_SECONDS, MAX_XML_SIZE
from .errors import DiagramTooLargeError
from .fingerprint import ChangeFingerprint, compute_fingerprint
from .models import ConversationPayload, check_xml_size

logger = logging.getLogger(__name__)


class SaveState(Enum):
    IDLE = "idle"
    PENDING = "pending"
    FLUSHING = "flushing"


@dataclass
class _Slot:
    state: SaveState = SaveState.IDLE
    timer: asyncio.TimerHandle | None = None
    pending: ConversationPayload | None = None
    pending_fingerprint: ChangeFingerprint | None = None
    saved_fingerprint: ChangeFingerprint | None = None
    saved: ConversationPayload | None = None


class PersistenceScheduler:
    def __init__(
        self,
        adapter: ConversationStorageAdapter,
        debounce_seconds: float = LOCAL_SAVE_DEBOUNCE_SECONDS,
        max_xml_size: int = MAX_XML_SIZE,
    ):
        self.adapter = adapter
        self.debounce_seconds = debounce_seconds
        self.max_xml_size = max_xml_size
        self._slots: dict[str, _Slot] = {}

    def state(self, conversation_id: str) -> SaveState:
        slot = self._slots.get(conversation_id)
        return slot.state if slot else SaveState.IDLE

    def has_pending(self, conversation_id: str) -> bool:
        slot = self._slots.get(conversation_id)
        return bool(slot and slot.pending is not None)

    def notify_change(self, conversation_id: str, snapshot: ConversationPayload) -> bool:
        """Record a new in-memory state. Returns True when a save was scheduled or written."""
        check_xml_size(snapshot.xml, self.max_xml_size)
        fingerprint = compute_fingerprint(snapshot)
        slot = self._slots.setdefault(conversation_id, _Slot())

        if fingerprint == slot.pending_fingerprint:
            slot.pending = snapshot
            return False
        if fingerprint == slot.saved_fingerprint:
            if slot.pending is not None:
                self.cancel(conversation_id)
            return False

        slot.pending = snapshot
        slot.pending_fingerprint = fingerprint

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return self.flush(conversation_id)

        if slot.timer is not None:
            slot.timer.cancel()
        slot.timer = loop.call_later(self.debounce_seconds, self._fire, conversation_id)
        slot.state = SaveState.PENDING
        return True

    def _fire(self, conversation_id: str) -> None:
        slot = self._slots.get(conversation_id)
        if slot is not None:
            slot.timer = None
        self.flush(conversation_id)

    def flush(self, conversation_id: str) -> bool:
        """Write the pending snapshot now. False only when a pending write failed."""
        slot = self._slots.get(conversation_id)
        if slot is None or slot.pending is None:
            return True
        if slot.timer is not None:
            slot.timer.cancel()
            slot.timer = None

        snapshot, fingerprint = slot.pending, slot.pending_fingerprint
        slot.pending = None
        slot.pending_fingerprint = None
        slot.state = SaveState.FLUSHING
        try:
            ok = self.adapter.save_conversation(conversation_id, snapshot)
        except DiagramTooLargeError as e:
            logger.warning("Save of %s rejected: %s", conversation_id, e)
            ok = False
        finally:
            slot.state = SaveState.IDLE

        if ok:
            slot.saved_fingerprint = fingerprint
            slot.saved = snapshot
        else:
            logger.warning("Save of %s failed, will retry on the next change", conversation_id)
        return ok

    def save_now(self, conversation_id: str, snapshot: ConversationPayload) -> bool:
        """Write ``snapshot`` unless it equals the last saved one, ignoring fingerprints."""
        check_xml_size(snapshot.xml, self.max_xml_size)
        slot = self._slots.setdefault(conversation_id, _Slot())
        if slot.timer is not None:
            slot.timer.cancel()
            slot.timer = None
        slot.pending = None
        slot.pending_fingerprint = None
        if slot.saved is not None and snapshot == slot.saved:
            slot.state = SaveState.IDLE
            return True

        slot.state = SaveState.FLUSHING
        try:
            ok = self.adapter.save_conversation(conversation_id, snapshot)
        finally:
            slot.state = SaveState.IDLE
        if ok:
            self.mark_saved(conversation_id, snapshot)
        else:
            logger.warning("Forced save of %s failed", conversation_id)
        return ok

    def flush_all(self) -> bool:
        results = [self.flush(conversation_id) for conversation_id in list(self._slots)]
        return all(results)

    def cancel(self, conversation_id: str) -> None:
        slot = self._slots.get(conversation_id)
        if slot is None:
            return
        if slot.timer is not None:
            slot.timer.cancel()
            slot.timer = None
        slot.pending = None
        slot.pending_fingerprint = None
        slot.state = SaveState.IDLE

    def forget(self, conversation_id: str) -> None:
        self.cancel(conversation_id)
        self._slots.pop(conversation_id, None)

    def mark_saved(self, conversation_id: str, snapshot: ConversationPayload) -> None:
        """Use ``snapshot`` as the saved baseline, e.g. right after loading it."""
        slot = self._slots.setdefault(conversation_id, _Slot())
        slot.saved_fingerprint = compute_fingerprint(snapshot)
        slot.saved = snapshot

    def teardown(self, conversation_id: str, snapshot: ConversationPayload) -> None:
        """Best-effort synchronous save for page hide/unload. Never raises."""
        self.cancel(conversation_id)
        try:
            self.adapter.save_immediately(conversation_id, snapshot)
            self.mark_saved(conversation_id, snapshot)
        except Exception:
            logger.exception("Teardown save of %s failed", conversation_id)
