"""Tests for the flowR slicing LSP server."""

from __future__ import annotations

from types import SimpleNamespace

from lsprotocol import types as lsp

from flowr_slicer.config import SlicerConfig
from flowr_slicer.document import TextDocument
from flowr_slicer.errors import Notice, Severity
from flowr_slicer.lsp import (
    SESSION_STATE,
    SLICE_UPDATED,
    LspPresenter,
    SlicerContext,
    _command_args,
    _position_offsets,
    slice_notification,
    source_range_to_lsp,
)
from flowr_slicer.session import SessionKind, SessionState
from flowr_slicer.source import SourceRange
from flowr_slicer.tracker import PositionTracker
from tests.helpers import PROGRAM, RecordingPresenter, make_config, result_for

URI = "file:///a.R"


def rng(sl, sc, el, ec):
    return {"start": {"line": sl, "character": sc}, "end": {"line": el, "character": ec}}


class FakeLanguageServer:
    def __init__(self):
        self.notifications = []
        self.messages = []
        self.protocol = SimpleNamespace(notify=lambda method, payload: self.notifications.append((method, payload)))

    def window_show_message(self, params):
        self.messages.append(params)


class TestConversions:
    def test_source_range_to_lsp(self):
        r = source_range_to_lsp(SourceRange(2, 1, 2, 10))
        assert (r.start.line, r.start.character) == (1, 0)
        assert (r.end.line, r.end.character) == (1, 10)

    def test_source_range_in_client_units(self):
        doc = TextDocument(URI, '# 😀\nx <- "😀"\n')
        r = source_range_to_lsp(SourceRange(2, 1, 2, 8), doc)
        assert (r.start.line, r.start.character) == (1, 0)
        assert (r.end.line, r.end.character) == (1, 9)

    def test_command_args(self):
        assert _command_args(([URI, 1],)) == [URI, 1]
        assert _command_args((URI, 1)) == [URI, 1]
        assert _command_args(()) == []

    def test_position_offsets(self):
        doc = TextDocument(URI, PROGRAM)
        assert _position_offsets(doc, {"line": 1, "character": 5}) == [12]
        assert _position_offsets(doc, lsp.Position(line=2, character=6)) == [24]
        assert _position_offsets(doc, [{"line": 0, "character": 0}, lsp.Position(line=1, character=0)]) == [0, 7]
        assert _position_offsets(doc, None) == []


class TestSliceNotification:
    def test_with_slice(self):
        doc = TextDocument(URI, PROGRAM)
        tracker = PositionTracker(doc)
        tracker.toggle_positions([24])
        result = result_for((1, "a <- 1"), (2, "b <- a + 1"))
        payload = slice_notification(URI, result, doc, tracker, SlicerConfig())
        assert payload["uri"] == URI
        assert payload["reconstructionUri"] == f"{URI} - Slice"
        assert payload["hasSlice"]
        assert payload["code"] == "a <- 1\nb <- a + 1"
        assert payload["elements"][1] == {"id": "2", "range": rng(1, 0, 1, 10)}
        assert payload["positions"] == [rng(2, 6, 2, 7)]
        assert payload["unslicedRanges"] == [rng(2, 0, 2, 8), rng(3, 0, 3, 0)]
        assert payload["display"] == "text"
        assert payload["opacity"] == 0.25

    def test_without_slice(self):
        doc = TextDocument(URI, PROGRAM)
        payload = slice_notification(URI, None, doc, None, SlicerConfig())
        assert payload["code"] == "# No slice"
        assert not payload["hasSlice"]
        assert payload["elements"] == []
        assert payload["unslicedRanges"] == []


class TestLspPresenter:
    def test_publishes_slices(self):
        ls = FakeLanguageServer()
        context = SlicerContext(SlicerConfig())
        presenter = LspPresenter(ls, context)
        context.set_presenter(presenter)
        context.open_document(URI, PROGRAM)
        result = result_for((1, "a <- 1"))
        presenter.on_slice_updated(URI, result)
        method, payload = ls.notifications[-1]
        assert method == SLICE_UPDATED
        assert payload["code"] == "a <- 1"
        assert presenter.reconstructions[URI] == "a <- 1"

    def test_session_state(self):
        ls = FakeLanguageServer()
        presenter = LspPresenter(ls, SlicerContext(SlicerConfig()))
        presenter.on_session_state_changed(SessionKind.REMOTE, SessionState.CONNECTED)
        assert ls.notifications == [
            (SESSION_STATE, {"kind": "remote", "state": "connected", "text": "flowR connected"}),
        ]

    def test_notice_is_shown(self):
        ls = FakeLanguageServer()
        presenter = LspPresenter(ls, SlicerContext(SlicerConfig()))
        presenter.on_notice(Notice(Severity.WARNING, "old R"))
        assert ls.messages[0].type == lsp.MessageType.Warning
        assert ls.messages[0].message == "old R"


class TestSlicerContext:
    def test_status_without_session(self):
        context = SlicerContext(SlicerConfig())
        assert context.status() == {"kind": None, "state": "uninitialized"}

    def test_toggle_unknown_document(self):
        context = SlicerContext(SlicerConfig())
        assert context.toggle(URI, {"line": 0, "character": 0}) == {"uri": URI, "tracked": 0}

    async def test_toggle_edit_close(self):
        presenter = RecordingPresenter()
        context = SlicerContext(make_config(), presenter)
        context.open_document(URI, PROGRAM, 1)
        try:
            assert context.toggle(URI, {"line": 2, "character": 6}) == {"uri": URI, "tracked": 1}
            await context.coordinator.wait_idle()
            assert presenter.slices[-1][1].code == "a <- 1\nb <- a + 1\nprint(b)"

            change = SimpleNamespace(
                range=lsp.Range(start=lsp.Position(line=0, character=0), end=lsp.Position(line=0, character=0)),
                text="# setup\n",
            )
            context.change_document(URI, [change], 2)
            await context.coordinator.wait_idle()
            assert context.coordinator.tracker(URI).criteria() == ["4:7"]
            assert presenter.slices[-1][1] is not None

            status = context.status()
            assert status["kind"] == "local"
            assert status["state"] == "active"
            assert status["versions"] == {"flowr": "2.0.0", "r": "4.3.1"}

            context.close_document(URI)
            assert presenter.slices[-1] == (URI, None)
            assert URI not in context.documents
        finally:
            await context.sessions.aclose()

    async def test_toggle_counts_utf16_units(self):
        presenter = RecordingPresenter()
        context = SlicerContext(make_config(), presenter)
        context.open_document(URI, 's <- "😀😀😀"; bb <- 1\n', 1)
        try:
            assert context.toggle(URI, {"line": 0, "character": 15}) == {"uri": URI, "tracked": 1}
            assert context.coordinator.tracker(URI).offsets == [12]
            await context.coordinator.wait_idle()
            payload = slice_notification(
                URI, None, context.documents.get(URI), context.coordinator.tracker(URI), SlicerConfig(),
            )
            assert payload["positions"] == [rng(0, 15, 0, 17)]
        finally:
            await context.sessions.aclose()

    async def test_slice_cursor(self):
        context = SlicerContext(make_config(), RecordingPresenter())
        context.open_document(URI, PROGRAM)
        try:
            payload = await context.slice_cursor(URI, [{"line": 0, "character": 0}])
        finally:
            await context.sessions.aclose()
        assert payload["code"] == "a <- 1"
        assert payload["positions"] == []
        assert context.coordinator.tracker(URI) is None

    def test_change_unknown_document(self):
        context = SlicerContext(SlicerConfig())
        assert context.change_document(URI, [SimpleNamespace(text="x")]) is None
