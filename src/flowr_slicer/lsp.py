"""flowR slicing language server: pygls-based LSP for R files.

Tracks slicing criteria in open documents, keeps them in place while the
documents are edited, and pushes updated slices to the client through
custom ``flowr/*`` notifications. Commands toggle criteria, slice once at
the cursor, show the dataflow graph and manage the engine session.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any

from lsprotocol import types as lsp
from pygls.lsp.server import LanguageServer

from flowr_slicer import __version__
from flowr_slicer.config import SlicerConfig, apply_settings, load_default_config
from flowr_slicer.coordinator import SlicingCoordinator
from flowr_slicer.document import DocumentStore, TextDocument
from flowr_slicer.errors import Notice, Severity, SlicerError
from flowr_slicer.presentation import (
    reconstruction_code,
    reconstruction_uri,
    unsliced_line_ranges,
)
from flowr_slicer.registry import SessionRegistry
from flowr_slicer.session.base import SessionKind, SessionState, SliceResult
from flowr_slicer.source import SourceRange
from flowr_slicer.tracker import PositionTracker

logger = logging.getLogger(__name__)

# ── Conversion helpers ────────────────────────────────────────────

_SEVERITY_MAP = {
    Severity.ERROR: lsp.MessageType.Error,
    Severity.WARNING: lsp.MessageType.Warning,
    Severity.NOTE: lsp.MessageType.Info,
}

SLICE_UPDATED = "flowr/sliceUpdated"
DIAGRAM_READY = "flowr/dataflowDiagram"
SESSION_STATE = "flowr/sessionState"

CMD_TOGGLE = "flowr.slice.toggle"
CMD_CURSOR = "flowr.slice.cursor"
CMD_CLEAR = "flowr.slice.clear"
CMD_RECONSTRUCTION = "flowr.slice.reconstruction"
CMD_DATAFLOW = "flowr.dataflow"
CMD_CONNECT = "flowr.session.connect"
CMD_DISCONNECT = "flowr.session.disconnect"
CMD_STATUS = "flowr.session.status"


def source_range_to_lsp(rng: SourceRange, doc: TextDocument | None = None) -> lsp.Range:
    """Convert a 1-indexed inclusive flowR range to a 0-indexed LSP Range.

    flowR columns count code points; with ``doc`` they are re-counted in
    the client's position encoding.
    """
    sl, sc, el, ec = rng.start_line - 1, rng.start_col - 1, rng.end_line - 1, rng.end_col
    if doc is not None:
        sc, ec = doc.client_character(sl, sc), doc.client_character(el, ec)
    return lsp.Range(
        start=lsp.Position(line=sl, character=sc),
        end=lsp.Position(line=el, character=ec),
    )


def offsets_to_range(doc: TextDocument, start: int, end: int) -> lsp.Range:
    return lsp.Range(start=doc.client_position(start), end=doc.client_position(end))


def _range_json(rng: lsp.Range) -> dict[str, Any]:
    return {
        "start": {"line": rng.start.line, "character": rng.start.character},
        "end": {"line": rng.end.line, "character": rng.end.character},
    }


def _position_offsets(doc: TextDocument, positions: Any) -> list[int]:
    """Offsets for LSP positions given as objects or ``{"line", "character"}`` dicts."""
    if isinstance(positions, dict) or hasattr(positions, "line"):
        positions = [positions]
    offsets = []
    for pos in positions or []:
        if isinstance(pos, dict):
            line, character = pos.get("line", 0), pos.get("character", 0)
        else:
            line, character = pos.line, pos.character
        offsets.append(doc.offset_from_client(int(line), int(character)))
    return offsets


def _command_args(args: tuple[Any, ...]) -> list[Any]:
    """Command arguments, whether spread or passed as a single list."""
    if len(args) == 1 and isinstance(args[0], list):
        return args[0]
    return list(args)


def slice_notification(
    uri: str,
    result: SliceResult | None,
    doc: TextDocument | None,
    tracker: PositionTracker | None,
    config: SlicerConfig,
) -> dict[str, Any]:
    """Payload of a ``flowr/sliceUpdated`` notification."""
    payload: dict[str, Any] = {
        "uri": uri,
        "reconstructionUri": reconstruction_uri(uri),
        "code": reconstruction_code(result),
        "hasSlice": result is not None and not result.empty,
        "display": config.style.slice_display,
        "opacity": config.style.slice_opacity,
        "elements": [],
        "positions": [],
        "unslicedRanges": [],
    }
    if result is not None:
        payload["elements"] = [
            {"id": e.id, "range": _range_json(source_range_to_lsp(e.range, doc))}
            for e in result.elements
        ]
    if doc is not None:
        if tracker is not None and not tracker.disposed:
            payload["positions"] = [
                _range_json(offsets_to_range(doc, start, end))
                for start, end in tracker.token_ranges()
            ]
        payload["unslicedRanges"] = [
            _range_json(lsp.Range(
                start=lsp.Position(line=line, character=doc.client_character(line, start)),
                end=lsp.Position(line=line, character=doc.client_character(line, end)),
            ))
            for line, start, end in unsliced_line_ranges(doc.snapshot(), result)
        ]
    return payload


# ── Presentation over LSP ─────────────────────────────────────────


class LspPresenter:
    """Publishes core events to the client."""

    def __init__(self, ls: LanguageServer, context: SlicerContext) -> None:
        self.ls = ls
        self.context = context
        self.reconstructions: dict[str, str] = {}

    def _notify(self, method: str, payload: dict[str, Any]) -> None:
        try:
            self.ls.protocol.notify(method, payload)
        except RuntimeError as e:
            # no client attached (server not started)
            logger.debug("cannot send %s: %s", method, e)

    def on_slice_updated(self, uri: str, result: SliceResult | None) -> None:
        payload = slice_notification(
            uri, result,
            self.context.documents.get(uri),
            self.context.coordinator.tracker(uri),
            self.context.config,
        )
        self.reconstructions[uri] = payload["code"]
        self._notify(SLICE_UPDATED, payload)

    def on_diagram_ready(self, uri: str, diagram: str) -> None:
        self._notify(DIAGRAM_READY, {"uri": uri, "mermaid": diagram})

    def on_session_state_changed(self, kind: SessionKind, state: SessionState) -> None:
        self._notify(SESSION_STATE, {
            "kind": kind.value,
            "state": state.value,
            "text": f"flowR {state.value}",
        })

    def on_notice(self, notice: Notice) -> None:
        try:
            self.ls.window_show_message(lsp.ShowMessageParams(
                type=_SEVERITY_MAP[notice.severity],
                message=notice.message,
            ))
        except RuntimeError as e:
            logger.debug("cannot show message: %s", e)


# ── Server state ─────────────────────────────────────────────────


class SlicerContext:
    """Everything one language server instance owns."""

    def __init__(self, config: SlicerConfig, presenter: Any = None) -> None:
        self.config = config
        self.documents = DocumentStore()
        self.sessions = SessionRegistry(config, presenter)
        self.coordinator = SlicingCoordinator(self.documents, self.sessions, presenter)

    def set_presenter(self, presenter: Any) -> None:
        self.sessions.presenter = presenter
        self.coordinator.presenter = presenter

    def configure(self, config: SlicerConfig) -> None:
        self.config = config
        self.sessions.config = config

    # Document sync

    def open_document(self, uri: str, text: str, version: int = 0, language_id: str = "r") -> TextDocument:
        return self.documents.open(uri, text, version, language_id)

    def change_document(self, uri: str, changes: list[Any], version: int | None = None) -> asyncio.Task[None] | None:
        doc = self.documents.get(uri)
        if doc is None:
            logger.debug("change for unknown document %s", uri)
            return None
        edits = doc.apply_changes(changes, version)
        return self.coordinator.document_changed(uri, edits)

    def close_document(self, uri: str) -> None:
        self.coordinator.document_closed(uri)
        self.documents.close(uri)

    # Commands

    def toggle(self, uri: str, positions: Any) -> dict[str, Any]:
        doc = self.documents.get(uri)
        if doc is None:
            return {"uri": uri, "tracked": 0}
        self.coordinator.toggle_positions(uri, _position_offsets(doc, positions))
        tracker = self.coordinator.tracker(uri)
        return {"uri": uri, "tracked": len(tracker) if tracker is not None else 0}

    async def slice_cursor(self, uri: str, positions: Any) -> dict[str, Any]:
        doc = self.documents.get(uri)
        if doc is None:
            return {"uri": uri, "code": reconstruction_code(None), "elements": []}
        result = await self.coordinator.slice_once(uri, _position_offsets(doc, positions))
        return slice_notification(uri, result, doc, None, self.config)

    def status(self) -> dict[str, Any]:
        session = self.sessions.active
        if session is None:
            return {"kind": None, "state": SessionState.UNINITIALIZED.value}
        status: dict[str, Any] = {
            "kind": session.kind.value,
            "state": session.state.value,
            "endpoint": session.description,
        }
        if session.handshake is not None:
            status["versions"] = session.handshake.versions
        if session.error is not None:
            status["error"] = str(session.error)
        return status


# ── Server ────────────────────────────────────────────────────────

server = LanguageServer(
    "flowr-slicer", __version__,
    text_document_sync_kind=lsp.TextDocumentSyncKind.Incremental,
)
_context = SlicerContext(SlicerConfig())
_context.set_presenter(LspPresenter(server, _context))


def _configure_logging(config: SlicerConfig) -> None:
    logging.getLogger("flowr_slicer").setLevel(logging.DEBUG if config.verbose_log else logging.INFO)


@server.feature(lsp.INITIALIZE)
def initialize(params: lsp.InitializeParams) -> None:
    try:
        config = apply_settings(load_default_config(), params.initialization_options)
    except SlicerError as e:
        logger.error("invalid settings, using defaults: %s", e)
        config = SlicerConfig()
    _context.configure(config)
    _configure_logging(config)
    # pygls has already picked the position encoding from the client capabilities
    _context.documents.codec = server.workspace.position_codec


@server.feature(lsp.INITIALIZED)
def initialized(params: lsp.InitializedParams) -> None:
    _context.sessions.establish_default()


@server.feature(lsp.WORKSPACE_DID_CHANGE_CONFIGURATION)
def did_change_configuration(params: lsp.DidChangeConfigurationParams) -> None:
    try:
        config = apply_settings(_context.config, params.settings)
    except SlicerError as e:
        logger.error("invalid settings ignored: %s", e)
        return
    _context.configure(config)
    _configure_logging(_context.config)


@server.feature(lsp.SHUTDOWN)
def shutdown(params: None = None) -> None:
    _context.sessions.shutdown()


@server.feature(lsp.TEXT_DOCUMENT_DID_OPEN)
def did_open(params: lsp.DidOpenTextDocumentParams) -> None:
    td = params.text_document
    _context.open_document(td.uri, td.text, td.version, td.language_id)


@server.feature(lsp.TEXT_DOCUMENT_DID_CHANGE)
def did_change(params: lsp.DidChangeTextDocumentParams) -> None:
    _context.change_document(
        params.text_document.uri, list(params.content_changes), params.text_document.version,
    )


@server.feature(lsp.TEXT_DOCUMENT_DID_CLOSE)
def did_close(params: lsp.DidCloseTextDocumentParams) -> None:
    _context.close_document(params.text_document.uri)


@server.command(CMD_TOGGLE)
def toggle_positions(*args: Any) -> dict[str, Any]:
    """Arguments: uri, position or list of positions."""
    uri, positions = (_command_args(args) + [None, None])[:2]
    return _context.toggle(str(uri), positions)


@server.command(CMD_CURSOR)
async def slice_cursor(*args: Any) -> dict[str, Any]:
    uri, positions = (_command_args(args) + [None, None])[:2]
    try:
        return await _context.slice_cursor(str(uri), positions)
    except SlicerError as e:
        server.window_show_message(lsp.ShowMessageParams(
            type=lsp.MessageType.Error, message=f"flowR: {e}",
        ))
        return {"uri": uri, "code": reconstruction_code(None), "elements": []}


@server.command(CMD_CLEAR)
def clear_slice(*args: Any) -> None:
    uri = (_command_args(args) + [None])[0]
    if uri is not None:
        _context.coordinator.clear(str(uri))


@server.command(CMD_RECONSTRUCTION)
def reconstruction(*args: Any) -> dict[str, str]:
    uri = str((_command_args(args) + [""])[0])
    presenter = _context.coordinator.presenter
    code = getattr(presenter, "reconstructions", {}).get(uri, reconstruction_code(None))
    return {"uri": reconstruction_uri(uri), "code": code}


@server.command(CMD_DATAFLOW)
async def dataflow(*args: Any) -> dict[str, str] | None:
    uri = str((_command_args(args) + [""])[0])
    try:
        diagram = await _context.coordinator.show_dataflow(uri)
    except SlicerError as e:
        server.window_show_message(lsp.ShowMessageParams(
            type=lsp.MessageType.Error, message=f"flowR: {e}",
        ))
        return None
    return {"uri": uri, "mermaid": diagram} if diagram is not None else None


@server.command(CMD_CONNECT)
def connect(*args: Any) -> dict[str, Any]:
    cmd_args = _command_args(args)
    host = cmd_args[0] if len(cmd_args) > 0 else None
    port = int(cmd_args[1]) if len(cmd_args) > 1 else None
    _context.sessions.establish_remote(host, port)
    return _context.status()


@server.command(CMD_DISCONNECT)
def disconnect(*args: Any) -> dict[str, Any]:
    _context.sessions.disconnect()
    return _context.status()


@server.command(CMD_STATUS)
def status(*args: Any) -> dict[str, Any]:
    return _context.status()


# ── Entry point ──────────────────────────────────────────────────


def main() -> None:
    """Start the flowR slicing language server on stdio."""
    # stdout carries the protocol
    logging.basicConfig(stream=sys.stderr, format="%(levelname)s %(name)s: %(message)s")
    server.start_io()
