"""Cheap structural fingerprint used to skip redundant saves.

The xml is summarized by its length plus head/tail slices instead of a full
content hash, so an edit confined to the interior of a large diagram that keeps
the length unchanged is not detected. Forced flushes and teardown writes do not
consult the fingerprint.
"""

from __future__ import annotations

from typing import NamedTuple

from .config import FINGERPRINT_EDGE_CHARS
from .models import ConversationPayload


class ChangeFingerprint(NamedTuple):
    message_count: int
    xml_length: int
    xml_head: str
    xml_tail: str
    session_id: str
    version_count: int
    cursor: int


def compute_fingerprint(payload: ConversationPayload) -> ChangeFingerprint:
    xml = payload.xml or ""
    return ChangeFingerprint(
        message_count=len(payload.messages),
        xml_length=len(xml),
        xml_head=xml[:FINGERPRINT_EDGE_CHARS],
        xml_tail=xml[-FINGERPRINT_EDGE_CHARS:] if xml else "",
        session_id=payload.session_id,
        version_count=len(payload.diagram_versions),
        cursor=payload.diagram_version_cursor,
    )
