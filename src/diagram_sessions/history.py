"""Linear diagram version history with message bookmarks and undo/redo.

Producing new content from a non-tail cursor discards everything after the
cursor (branch overwrite); marks that pointed into the discarded tail are
cleared. The list is capped at ``max_versions``: appending to a full list
evicts the oldest entries and shifts the remaining marks down.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence

from .config import MAX_DIAGRAM_VERSIONS, MAX_XML_SIZE
from .models import DiagramVersion, DiagramVersionState, check_xml_size, normalize_cursor

logger = logging.getLogger(__name__)

RenderCallback = Callable[[str, bool], "str | None"]


class DiagramVersionHistory:
    """Cursor-addressed list of diagram snapshots."""

    def __init__(
        self,
        display: RenderCallback,
        on_change: Callable[[DiagramVersionState], None] | None = None,
        max_versions: int = MAX_DIAGRAM_VERSIONS,
        max_xml_size: int = MAX_XML_SIZE,
    ):
        if max_versions < 1:
            raise ValueError("max_versions must be at least 1")
        self._display = display
        self.on_change = on_change
        self.max_versions = max_versions
        self.max_xml_size = max_xml_size
        self.versions: list[DiagramVersion] = []
        self.cursor = -1
        self.marks: dict[int, int] = {}

    @property
    def can_undo(self) -> bool:
        return self.cursor > 0

    @property
    def can_redo(self) -> bool:
        return 0 <= self.cursor < len(self.versions) - 1

    def snapshot(self) -> DiagramVersionState:
        return DiagramVersionState(
            diagram_versions=list(self.versions),
            cursor=self.cursor,
            marks=dict(self.marks),
        )

    def restore_state(
        self,
        versions: Sequence[DiagramVersion],
        cursor: int,
        marks: Mapping[int, int],
    ) -> None:
        """Replace the whole state (used when loading a conversation). Does not notify."""
        self.versions = list(versions)
        self.cursor = normalize_cursor(cursor, len(self.versions))
        self.marks = {k: v for k, v in marks.items() if 0 <= v < len(self.versions)}

    def clear(self) -> None:
        self.restore_state([], -1, {})
        self._notify()

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change(self.snapshot())

    def diagram_xml_at_cursor(self) -> str:
        if 0 <= self.cursor < len(self.versions):
            return self.versions[self.cursor].xml
        return ""

    def _push_version(self, xml: str, note: str | None) -> None:
        kept = self.versions
        marks = self.marks
        if 0 <= self.cursor < len(kept) - 1:
            kept = kept[: self.cursor + 1]
            marks = {k: v for k, v in marks.items() if v <= self.cursor}
        else:
            kept = list(kept)

        if len(kept) >= self.max_versions:
            evicted = len(kept) - self.max_versions + 1
            kept = kept[evicted:]
            marks = {k: v - evicted for k, v in marks.items() if v >= evicted}
            logger.debug("Evicted %d oldest diagram versions", evicted)

        kept.append(DiagramVersion(xml=xml, note=note))
        self.versions = kept
        self.marks = dict(marks)
        self.cursor = len(kept) - 1

    def ensure_diagram_version_for_message(self, message_index: int, xml: str, note: str | None = None) -> str:
        """Bookmark ``message_index`` to a version holding ``xml``, appending one if needed."""
        next_xml = xml or ""
        check_xml_size(next_xml, self.max_xml_size)

        if next_xml and next_xml != self.diagram_xml_at_cursor():
            self._push_version(next_xml, note)

        if self.cursor >= 0:
            self.marks[message_index] = self.cursor

        self._notify()
        return next_xml

    def append_diagram_version(self, xml: str, note: str | None = None) -> None:
        next_xml = xml or ""
        if not next_xml:
            return
        check_xml_size(next_xml, self.max_xml_size)
        if next_xml == self.diagram_xml_at_cursor():
            return
        self._push_version(next_xml, note)
        self._notify()

    def diagram_xml_for_message(self, message_index: int) -> str:
        idx = self.marks.get(message_index)
        if idx is None or not 0 <= idx < len(self.versions):
            return ""
        return self.versions[idx].xml

    def diagram_version_index_for_message(self, message_index: int) -> int:
        return self.marks.get(message_index, -1)

    def previous_diagram_xml_before_message(self, message_index: int) -> str:
        earlier = [k for k in self.marks if k < message_index]
        if not earlier:
            return ""
        idx = self.marks[max(earlier)]
        return self.versions[idx].xml if 0 <= idx < len(self.versions) else ""

    def restore_diagram_version_index(self, index: int) -> None:
        """Render version ``index`` (clamped) and move the cursor there."""
        next_index = normalize_cursor(index, len(self.versions))
        if next_index < 0:
            return
        entry = self.versions[next_index]
        error = self._display(entry.xml, True)
        if error:
            logger.warning("Render callback reported an error for version %s: %s", entry.id, error)
        self.cursor = next_index
        self._notify()

    def undo(self) -> None:
        if self.can_undo:
            self.restore_diagram_version_index(self.cursor - 1)

    def redo(self) -> None:
        if self.can_redo:
            self.restore_diagram_version_index(self.cursor + 1)

    def truncate_diagram_versions_after_message(self, message_index: int) -> None:
        """Drop versions (and marks) causally after ``message_index``.

        Used when an earlier message is edited or regenerated.
        """
        mark = self.marks.get(message_index)
        if mark is None:
            return

        if 0 <= mark < len(self.versions):
            versions = self.versions[: mark + 1]
        else:
            versions = list(self.versions)

        self.marks = {k: v for k, v in self.marks.items() if k <= message_index and v <= mark}
        self.versions = versions
        self.cursor = normalize_cursor(min(self.cursor, mark), len(versions))
        self._notify()
