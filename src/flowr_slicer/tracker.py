"""Tracked slicing positions per document.

A tracker holds the offsets the user selected as slicing criteria and keeps
them on their tokens while the document is edited. Trackers live in a
:class:`TrackerRegistry` and remove themselves from it as soon as they
track nothing.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence

from flowr_slicer.document import TextDocument
from flowr_slicer.offsets import Edit, map_offset

logger = logging.getLogger(__name__)


class PositionTracker:
    """Ordered, duplicate-free set of tracked offsets for one document."""

    def __init__(
        self,
        document: TextDocument,
        on_dispose: Callable[[PositionTracker], None] | None = None,
    ) -> None:
        self.document = document
        self.offsets: list[int] = []
        self.disposed = False
        self._on_dispose = on_dispose

    @property
    def uri(self) -> str:
        return self.document.uri

    def __len__(self) -> int:
        return len(self.offsets)

    def __contains__(self, offset: object) -> bool:
        return offset in self.offsets

    def _normalize_all(self, raw: Iterable[int]) -> list[int]:
        index = self.document.token_index()
        result: list[int] = []
        for offset in raw:
            norm = index.normalize(offset)
            if norm is None:
                logger.debug("%s: offset %d is not on a token", self.uri, offset)
                continue
            if norm not in result:
                result.append(norm)
        return result

    def toggle_positions(self, raw_offsets: Iterable[int]) -> bool:
        """Toggle offsets as one batch. Returns True if the tracked set changed.

        If every (normalized) offset is already tracked they are all removed,
        otherwise the untracked ones are added.
        """
        offsets = self._normalize_all(raw_offsets)
        if not offsets:
            return False

        if all(o in self.offsets for o in offsets):
            self.offsets = [o for o in self.offsets if o not in offsets]
            self._check_empty()
            return True

        for offset in offsets:
            if offset not in self.offsets:
                self.offsets.append(offset)
        return True

    def apply_edits(self, edits: Sequence[Edit]) -> None:
        """Remap every tracked offset through ``edits`` (already applied to the document)."""
        if not edits:
            return
        shifted: list[int] = []
        for offset in self.offsets:
            new = map_offset(offset, edits)
            if new is None:
                logger.debug("%s: tracked offset %d removed by edit", self.uri, offset)
                continue
            shifted.append(new)
        self.offsets = self._normalize_all(shifted)
        self._check_empty()

    def criteria(self) -> list[str]:
        """Current offsets as flowR ``line:col`` criteria."""
        snapshot = self.document.snapshot()
        return [snapshot.criterion_at(o) for o in self.offsets]

    def token_ranges(self) -> list[tuple[int, int]]:
        index = self.document.token_index()
        ranges = []
        for offset in self.offsets:
            rng = index.token_range(offset)
            if rng is not None:
                ranges.append(rng)
        return ranges

    def _check_empty(self) -> None:
        if not self.offsets:
            self.dispose()

    def dispose(self) -> None:
        if self.disposed:
            return
        self.disposed = True
        self.offsets = []
        if self._on_dispose is not None:
            self._on_dispose(self)


class TrackerRegistry:
    """Document URI → tracker mapping."""

    def __init__(self) -> None:
        self._trackers: dict[str, PositionTracker] = {}

    def get(self, uri: str) -> PositionTracker | None:
        return self._trackers.get(uri)

    def __contains__(self, uri: object) -> bool:
        return uri in self._trackers

    def __len__(self) -> int:
        return len(self._trackers)

    def uris(self) -> list[str]:
        return list(self._trackers)

    def _remove(self, tracker: PositionTracker) -> None:
        if self._trackers.get(tracker.uri) is tracker:
            del self._trackers[tracker.uri]
            logger.debug("%s: tracker released", tracker.uri)

    def toggle(self, document: TextDocument, raw_offsets: Iterable[int]) -> tuple[PositionTracker | None, bool]:
        """Toggle positions in ``document``, creating its tracker on demand.

        Returns the tracker (None if it ended up empty) and whether the
        tracked set changed.
        """
        tracker = self._trackers.get(document.uri)
        if tracker is None:
            tracker = PositionTracker(document, on_dispose=self._remove)
            self._trackers[document.uri] = tracker
        changed = tracker.toggle_positions(raw_offsets)
        if not tracker.offsets:
            tracker.dispose()
            return None, changed
        return tracker, changed

    def apply_edits(self, uri: str, edits: Sequence[Edit]) -> PositionTracker | None:
        """Remap the document's tracker; None if it has none (any longer)."""
        tracker = self._trackers.get(uri)
        if tracker is None:
            return None
        tracker.apply_edits(edits)
        return None if tracker.disposed else tracker

    def discard(self, uri: str) -> bool:
        tracker = self._trackers.get(uri)
        if tracker is None:
            return False
        tracker.dispose()
        return True

    def clear(self) -> None:
        for tracker in list(self._trackers.values()):
            tracker.dispose()
