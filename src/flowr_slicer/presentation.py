"""Boundary between the slicing core and whatever displays its results."""

from __future__ import annotations

from typing import Protocol

from flowr_slicer.errors import Notice
from flowr_slicer.session.base import SessionKind, SessionState, SliceResult
from flowr_slicer.source import DocumentSnapshot

NO_SLICE = "# No slice"
RECONSTRUCTION_SUFFIX = "Slice"


class SlicePresenter(Protocol):
    """Receives fire-and-forget updates from the coordinator and registry."""

    def on_slice_updated(self, uri: str, result: SliceResult | None) -> None:
        """A new slice for ``uri``; None means there is no slice to show."""

    def on_diagram_ready(self, uri: str, diagram: str) -> None:
        ...

    def on_session_state_changed(self, kind: SessionKind, state: SessionState) -> None:
        ...

    def on_notice(self, notice: Notice) -> None:
        ...


class NullPresenter:
    """Presenter that drops everything."""

    def on_slice_updated(self, uri: str, result: SliceResult | None) -> None:
        pass

    def on_diagram_ready(self, uri: str, diagram: str) -> None:
        pass

    def on_session_state_changed(self, kind: SessionKind, state: SessionState) -> None:
        pass

    def on_notice(self, notice: Notice) -> None:
        pass


def reconstruction_code(result: SliceResult | None) -> str:
    if result is None or not result.code:
        return NO_SLICE
    return result.code


def reconstruction_uri(uri: str) -> str:
    """URI of the virtual document showing the reconstruction of ``uri``."""
    return f"{uri} - {RECONSTRUCTION_SUFFIX}"


def unsliced_line_ranges(snapshot: DocumentSnapshot, result: SliceResult | None) -> list[tuple[int, int, int]]:
    """``(line, start_char, end_char)`` for every line outside the slice.

    These are the lines an editor dims. Without a slice nothing is dimmed.
    """
    if result is None or result.empty:
        return []
    sliced = result.lines()
    ranges = []
    for line in range(snapshot.line_count):
        if line not in sliced:
            ranges.append((line, 0, len(snapshot.line_at(line))))
    return ranges
