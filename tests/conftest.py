"""Shared fixtures for diagram_sessions tests."""

from __future__ import annotations

import pytest

from diagram_sessions.adapters import CloudStorageAdapter, LocalStorageAdapter
from diagram_sessions.local_store import LocalConversationStore
from diagram_sessions.models import MessagePart, UserMessage, AssistantMessage
from diagram_sessions.reconciler import SyncReconciler
from diagram_sessions.remote import InMemoryRemoteStore
from diagram_sessions.storage import InMemoryKeyValueStore


class RenderRecorder:
    """Stand-in for the diagram surface: records every render and clear."""

    def __init__(self):
        self.rendered: list[str] = []
        self.clears = 0
        self.error: str | None = None

    def display(self, xml: str, skip_validation: bool = False) -> str | None:
        self.rendered.append(xml)
        return self.error

    def clear(self) -> None:
        self.clears += 1

    @property
    def last(self) -> str | None:
        return self.rendered[-1] if self.rendered else None


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def xml(label: str) -> str:
    return f'<mxGraphModel><root><mxCell id="{label}"/></root></mxGraphModel>'


def user(text: str, msg_id: str = "") -> UserMessage:
    return UserMessage(id=msg_id or f"u-{text[:8]}", parts=[MessagePart(type="text", text=text)])


def assistant(text: str, msg_id: str = "") -> AssistantMessage:
    return AssistantMessage(id=msg_id or f"a-{text[:8]}", parts=[MessagePart(type="text", text=text)])


@pytest.fixture
def kv():
    return InMemoryKeyValueStore()


@pytest.fixture
def store(kv):
    return LocalConversationStore(kv, "user-1")


@pytest.fixture
def local_adapter(store):
    return LocalStorageAdapter(store)


@pytest.fixture
def remote():
    return InMemoryRemoteStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def reconciler(store, remote, clock):
    return SyncReconciler(store, remote, clock=clock, push_delay=0, max_retries=2, retry_min=0, retry_max=0)


@pytest.fixture
def cloud_adapter(store, reconciler):
    return CloudStorageAdapter(store, reconciler)


@pytest.fixture
def renderer():
    return RenderRecorder()
