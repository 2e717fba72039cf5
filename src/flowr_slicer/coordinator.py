"""Keeps each document's published slice in line with its positions and text.

Every change to a tracked document bumps that document's sequence number
before anything is awaited. Slice responses are only published if they
still carry the latest sequence number and come from the session that is
still active, so a slow or reordered response never replaces a newer one.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence

from flowr_slicer.document import DocumentStore
from flowr_slicer.errors import BackendAnalysisError, SlicerError
from flowr_slicer.offsets import Edit
from flowr_slicer.presentation import NullPresenter, SlicePresenter
from flowr_slicer.registry import SessionRegistry
from flowr_slicer.session.base import SliceResult
from flowr_slicer.source import DocumentSnapshot
from flowr_slicer.tracker import PositionTracker, TrackerRegistry

logger = logging.getLogger(__name__)


class SlicingCoordinator:
    """Binds position trackers to the active session."""

    def __init__(
        self,
        documents: DocumentStore,
        sessions: SessionRegistry,
        presenter: SlicePresenter | None = None,
        trackers: TrackerRegistry | None = None,
    ) -> None:
        self.documents = documents
        self.sessions = sessions
        self.presenter: SlicePresenter = presenter or NullPresenter()
        self.trackers = trackers or TrackerRegistry()
        self._sequence: dict[str, int] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    # ── Events ───────────────────────────────────────────────────

    def toggle_positions(self, uri: str, raw_offsets: Iterable[int]) -> asyncio.Task[None] | None:
        """Toggle slicing criteria in ``uri`` and refresh its slice if they changed."""
        doc = self.documents.get(uri)
        if doc is None:
            logger.debug("toggle in unknown document %s", uri)
            return None
        _tracker, changed = self.trackers.toggle(doc, raw_offsets)
        if not changed:
            return None
        return self.request_update(uri)

    def document_changed(self, uri: str, edits: Sequence[Edit]) -> asyncio.Task[None] | None:
        """Remap tracked positions after ``edits`` were applied to the document."""
        if uri not in self.trackers:
            return None
        self.trackers.apply_edits(uri, edits)
        return self.request_update(uri)

    def clear(self, uri: str) -> None:
        """Stop slicing ``uri`` and withdraw its slice."""
        self.trackers.discard(uri)
        self.request_update(uri)

    def document_closed(self, uri: str) -> None:
        # the sequence number outlives the document: a request still in
        # flight must stay stale after the document is reopened
        self.clear(uri)

    def tracker(self, uri: str) -> PositionTracker | None:
        return self.trackers.get(uri)

    def latest_sequence(self, uri: str) -> int:
        return self._sequence.get(uri, 0)

    # ── Slicing ──────────────────────────────────────────────────

    def request_update(self, uri: str) -> asyncio.Task[None] | None:
        """Schedule a slice request for the document's current state.

        Returns None (and publishes "no slice" at once) when nothing is
        tracked in ``uri``.
        """
        seq = self._sequence.get(uri, 0) + 1
        self._sequence[uri] = seq

        tracker = self.trackers.get(uri)
        doc = self.documents.get(uri)
        if tracker is None or not tracker.offsets or doc is None:
            self.presenter.on_slice_updated(uri, None)
            return None

        positions = list(tracker.offsets)
        snapshot = doc.snapshot()
        return self._spawn(self._update(uri, seq, positions, snapshot))

    async def _update(self, uri: str, seq: int, positions: list[int], snapshot: DocumentSnapshot) -> None:
        try:
            session = await self.sessions.get_session()
        except SlicerError as e:
            logger.warning("no flowR session for %s: %s", uri, e)
            self._publish(uri, seq, None)
            return

        try:
            result = await session.retrieve_slice(positions, snapshot)
        except BackendAnalysisError as e:
            logger.warning("slicing %s failed: %s", uri, e)
            result = None
        except SlicerError as e:
            logger.error("slicing %s failed: %s", uri, e)
            result = None

        if not self.sessions.is_active(session):
            logger.debug("%s: dropping response #%d from replaced session", uri, seq)
            return
        self._publish(uri, seq, result)

    def _publish(self, uri: str, seq: int, result: SliceResult | None) -> None:
        if seq != self._sequence.get(uri):
            logger.debug("%s: dropping stale response #%d (latest #%s)", uri, seq, self._sequence.get(uri))
            return
        if result is not None and result.empty:
            result = None
        self.presenter.on_slice_updated(uri, result)

    async def slice_once(self, uri: str, raw_offsets: Iterable[int]) -> SliceResult | None:
        """Slice for positions without tracking them."""
        doc = self.documents.get(uri)
        if doc is None:
            return None
        index = doc.token_index()
        positions = []
        for offset in raw_offsets:
            norm = index.normalize(offset)
            if norm is not None and norm not in positions:
                positions.append(norm)
        if not positions:
            return None
        session = await self.sessions.get_session()
        result = await session.retrieve_slice(positions, doc.snapshot())
        return None if result.empty else result

    async def show_dataflow(self, uri: str) -> str | None:
        """Request the dataflow diagram of ``uri`` and hand it to the presenter."""
        doc = self.documents.get(uri)
        if doc is None:
            return None
        session = await self.sessions.get_session()
        diagram = await session.retrieve_dataflow_diagram(doc.snapshot())
        self.presenter.on_diagram_ready(uri, diagram)
        return diagram

    # ── Task bookkeeping ─────────────────────────────────────────

    def _spawn(self, coro) -> asyncio.Task[None]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for every scheduled slice request to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
