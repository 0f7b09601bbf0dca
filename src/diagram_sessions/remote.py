"""Remote conversation store: HTTP client and an in-memory stand-in."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Sequence

import requests
from pydantic import TypeAdapter, ValidationError

from .config import BEACON_TIMEOUT_SECONDS, REMOTE_TIMEOUT_SECONDS
from .errors import RemoteSyncError
from .models import ConversationMeta, PushRecord, now_ms

logger = logging.getLogger(__name__)

_META_LIST = TypeAdapter(list[ConversationMeta])


class RemoteConversationStore(ABC):
    """Server-side conversation records.

    ``push`` is an idempotent full-snapshot upsert; records with
    ``deleted=True`` are tombstones. Implementations raise RemoteSyncError.
    """

    @abstractmethod
    def push(self, records: Sequence[PushRecord]) -> dict:
        pass

    @abstractmethod
    def get_by_id(self, conversation_id: str) -> PushRecord | None:
        pass

    @abstractmethod
    def list_metas(self, limit: int, offset: int = 0) -> list[ConversationMeta]:
        pass

    @abstractmethod
    def send_beacon(self, records: Sequence[PushRecord]) -> None:
        """Fire-and-forget push. Must return without waiting on the network."""


def _push_body(records: Sequence[PushRecord]) -> dict:
    return {"conversations": [r.to_record() for r in records]}


class HttpRemoteStore(RemoteConversationStore):
    """JSON-over-HTTP client for the conversation endpoints."""

    def __init__(
        self,
        base_url: str,
        session: requests.Session | None = None,
        timeout: float = REMOTE_TIMEOUT_SECONDS,
        headers: dict[str, str] | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        if headers:
            self.session.headers.update(headers)

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def push(self, records: Sequence[PushRecord]) -> dict:
        try:
            resp = self.session.post(
                self._url("/conversations/push"), json=_push_body(records), timeout=self.timeout
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise RemoteSyncError(f"Push of {len(records)} conversations failed: {e}") from e
        return resp.json() if resp.content else {}

    def get_by_id(self, conversation_id: str) -> PushRecord | None:
        try:
            resp = self.session.get(self._url(f"/conversations/{conversation_id}"), timeout=self.timeout)
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return PushRecord.model_validate(resp.json())
        except requests.RequestException as e:
            raise RemoteSyncError(f"Fetch of {conversation_id} failed: {e}") from e
        except (ValueError, ValidationError) as e:
            raise RemoteSyncError(f"Malformed record for {conversation_id}: {e}") from e

    def list_metas(self, limit: int, offset: int = 0) -> list[ConversationMeta]:
        try:
            resp = self.session.get(
                self._url("/conversations"),
                params={"limit": limit, "offset": offset},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            body = resp.json()
        except requests.RequestException as e:
            raise RemoteSyncError(f"Listing conversations failed: {e}") from e
        except ValueError as e:
            raise RemoteSyncError(f"Malformed conversation list: {e}") from e

        items = body.get("conversations", []) if isinstance(body, dict) else body
        try:
            return _META_LIST.validate_python(items)
        except ValidationError as e:
            raise RemoteSyncError(f"Malformed conversation list: {e}") from e

    def send_beacon(self, records: Sequence[PushRecord]) -> None:
        body = _push_body(records)
        thread = threading.Thread(target=self._post_beacon, args=(body,), daemon=True)
        thread.start()

    def _post_beacon(self, body: dict) -> None:
        try:
            requests.post(
                self._url("/conversations/push"),
                json=body,
                headers=dict(self.session.headers),
                timeout=BEACON_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            logger.debug("Beacon push failed: %s", e)


class InMemoryRemoteStore(RemoteConversationStore):
    """Remote stand-in that keeps records in a dict.

    ``fail_next`` makes that many following calls raise RemoteSyncError.
    """

    def __init__(self):
        self.records: dict[str, PushRecord] = {}
        self.pushes: list[list[PushRecord]] = []
        self.beacons: list[list[PushRecord]] = []
        self.fail_next = 0
        self.calls = 0

    def _maybe_fail(self, op: str) -> None:
        self.calls += 1
        if self.fail_next > 0:
            self.fail_next -= 1
            raise RemoteSyncError(f"Simulated {op} failure")

    def _store(self, records: Sequence[PushRecord]) -> None:
        for record in records:
            self.records[record.id] = record.model_copy(deep=True)

    def push(self, records: Sequence[PushRecord]) -> dict:
        self._maybe_fail("push")
        self.pushes.append(list(records))
        self._store(records)
        return {"ok": True, "count": len(records), "at": now_ms()}

    def get_by_id(self, conversation_id: str) -> PushRecord | None:
        self._maybe_fail("get")
        record = self.records.get(conversation_id)
        return record.model_copy(deep=True) if record else None

    def list_metas(self, limit: int, offset: int = 0) -> list[ConversationMeta]:
        self._maybe_fail("list")
        live = [r for r in self.records.values() if not r.deleted]
        live.sort(key=lambda r: r.updated_at or 0, reverse=True)
        return [
            ConversationMeta(
                id=r.id,
                created_at=r.created_at or 0,
                updated_at=r.updated_at or 0,
                title=r.title,
            )
            for r in live[offset : offset + limit]
        ]

    def send_beacon(self, records: Sequence[PushRecord]) -> None:
        self.beacons.append(list(records))
        self._store(records)
