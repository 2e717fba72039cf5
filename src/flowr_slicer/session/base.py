"""The slice session capability shared by the local and remote engines."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from flowr_slicer.config import SlicerConfig
from flowr_slicer.errors import (
    BackendAnalysisError,
    BackendFatalError,
    Notice,
    SessionEstablishmentError,
    SessionUnavailableError,
    SlicerError,
)
from flowr_slicer.session.protocol import (
    REQUEST_DATAFLOW_DIAGRAM,
    REQUEST_FILE_ANALYSIS,
    REQUEST_SLICE,
    Handshake,
    MessageChannel,
    ProtocolError,
    check_versions,
)
from flowr_slicer.source import DocumentSnapshot, SourceRange

logger = logging.getLogger(__name__)


class SessionKind(Enum):
    LOCAL = "local"
    REMOTE = "remote"


class SessionState(Enum):
    UNINITIALIZED = "uninitialized"
    STARTING = "starting"
    ACTIVE = "active"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERRORED = "errored"
    TERMINATED = "terminated"
    DISCONNECTED = "disconnected"


READY_STATES = frozenset({SessionState.ACTIVE, SessionState.CONNECTED})
FINAL_STATES = frozenset({SessionState.TERMINATED, SessionState.DISCONNECTED})


@dataclass(frozen=True)
class SliceElement:
    """A program element that is part of a slice."""

    id: str
    range: SourceRange


@dataclass(frozen=True)
class SliceResult:
    """Reconstructed code of a slice and the elements it consists of."""

    code: str
    elements: tuple[SliceElement, ...] = field(default_factory=tuple)

    @property
    def empty(self) -> bool:
        return not self.elements

    def lines(self) -> set[int]:
        """0-indexed lines touched by the slice."""
        lines: set[int] = set()
        for element in self.elements:
            lines.update(element.range.lines())
        return lines


def parse_slice_response(message: dict[str, Any]) -> SliceResult:
    """Build a SliceResult from a ``response-slice`` message."""
    results = message.get("results") or {}
    try:
        raw_elements = (results.get("slice") or {}).get("elements") or []
        elements = tuple(
            SliceElement(str(e["id"]), SourceRange.from_list(e["location"]))
            for e in raw_elements
        )
        code = str((results.get("reconstruct") or {}).get("code", ""))
    except (KeyError, TypeError, ValueError) as e:
        raise BackendAnalysisError(f"malformed slice response: {e}", message.get("id")) from e
    return SliceResult(code=code, elements=elements)


StateListener = Callable[["SliceSession", SessionState], None]


class SliceSession(ABC):
    """Connection to a flowR engine.

    ``initialize`` kicks off establishment and returns at once; requests
    are only accepted once the session is ready. ``destroy`` may be called
    in any state and is final.
    """

    kind: SessionKind
    pending_state: SessionState
    ready_state: SessionState
    closed_state: SessionState

    def __init__(self, config: SlicerConfig) -> None:
        self.config = config
        self.state = SessionState.UNINITIALIZED
        self.handshake: Handshake | None = None
        self.notices: list[Notice] = []
        self.error: SlicerError | None = None
        self._channel: MessageChannel | None = None
        self._ready: asyncio.Future[bool] | None = None
        self._listeners: list[StateListener] = []
        self._filetokens: dict[str, str] = {}
        self._analyzed: dict[str, str] = {}
        self._file_locks: dict[str, asyncio.Lock] = {}

    # ── Subclass hooks ───────────────────────────────────────────

    @property
    @abstractmethod
    def establish_timeout(self) -> float:
        """Seconds allowed for opening the transport and the handshake."""

    @property
    @abstractmethod
    def description(self) -> str:
        """Human readable endpoint, e.g. the command line or host:port."""

    @abstractmethod
    async def _open(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Spawn or connect and return the stream pair."""

    @abstractmethod
    def _close_transport(self) -> None:
        """Release the process or socket. Must be idempotent."""

    async def _wait_closed(self) -> None:
        """Wait for the transport to be fully released."""

    # ── State ────────────────────────────────────────────────────

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _set_state(self, state: SessionState) -> None:
        if state is self.state:
            return
        logger.info("%s session (%s): %s -> %s", self.kind.value, self.description, self.state.value, state.value)
        self.state = state
        for listener in list(self._listeners):
            listener(self, state)

    @property
    def is_ready(self) -> bool:
        return self.state in READY_STATES

    @property
    def is_closed(self) -> bool:
        return self.state in FINAL_STATES

    def _fail(self, error: SlicerError) -> None:
        if self.is_closed:
            self._teardown()
            return
        if self.state is SessionState.ERRORED:
            return
        self.error = error
        logger.error("%s session (%s) failed: %s", self.kind.value, self.description, error)
        self._set_state(SessionState.ERRORED)
        self._teardown()

    def _on_channel_lost(self, reason: str) -> None:
        self._fail(BackendFatalError(reason))

    # ── Lifecycle ────────────────────────────────────────────────

    def initialize(self) -> asyncio.Future[bool]:
        """Start establishing the session; the future resolves to readiness."""
        if self._ready is None:
            if self.is_closed:
                raise SessionUnavailableError(self.state)
            self._set_state(self.pending_state)
            self._ready = asyncio.ensure_future(self._establish())
        return self._ready

    async def _establish(self) -> bool:
        try:
            handshake = await asyncio.wait_for(self._connect(), self.establish_timeout)
            self.notices = check_versions(handshake, self.config.session.min_flowr_version)
        except asyncio.TimeoutError:
            self._fail(SessionEstablishmentError(
                f"no answer from {self.description} within {self.establish_timeout}s",
            ))
            return False
        except OSError as e:
            self._fail(SessionEstablishmentError(f"cannot reach {self.description}: {e}"))
            return False
        except ProtocolError as e:
            self._fail(SessionEstablishmentError(f"bad greeting from {self.description}: {e}"))
            return False
        except SessionEstablishmentError as e:
            self._fail(e)
            return False
        except BackendFatalError as e:
            self._fail(SessionEstablishmentError(str(e)))
            return False

        if self.is_closed:
            # destroyed while we were connecting
            self._teardown()
            return False
        self.handshake = handshake
        for notice in self.notices:
            logger.warning("%s", notice)
        assert self._channel is not None
        self._channel.start()
        self._set_state(self.ready_state)
        return True

    async def _connect(self) -> Handshake:
        reader, writer = await self._open()
        self._channel = MessageChannel(
            reader, writer, name=self.description, on_lost=self._on_channel_lost,
        )
        message = await self._channel.read_message()
        return Handshake.from_message(message)

    async def wait_ready(self) -> None:
        """Initialize if needed and wait; raises if the session cannot be used."""
        ok = await self.initialize()
        if self.is_ready:
            return
        if not ok and isinstance(self.error, SessionEstablishmentError):
            raise self.error
        raise SessionUnavailableError(self.state)

    def _teardown(self) -> None:
        if self._channel is not None:
            self._channel.on_lost = None
            self._channel.close()
        self._close_transport()

    def destroy(self) -> None:
        """Release everything; safe to call repeatedly and in any state."""
        if self.is_closed:
            return
        self._set_state(self.closed_state)
        self._teardown()

    async def aclose(self) -> None:
        """Destroy and wait until the process or socket is gone."""
        self.destroy()
        await self._wait_closed()

    # ── Requests ─────────────────────────────────────────────────

    def _require_ready(self) -> MessageChannel:
        if not self.is_ready or self._channel is None:
            raise SessionUnavailableError(self.state)
        return self._channel

    async def _request(self, kind: str, payload: dict[str, Any]) -> dict[str, Any]:
        channel = self._require_ready()
        try:
            return await channel.request(kind, payload, self.config.session.request_timeout)
        except BackendFatalError as e:
            self._fail(e)
            raise

    def _file_lock(self, uri: str) -> asyncio.Lock:
        lock = self._file_locks.get(uri)
        if lock is None:
            lock = self._file_locks[uri] = asyncio.Lock()
        return lock

    async def _analyze(self, snapshot: DocumentSnapshot) -> str:
        """Make the engine hold ``snapshot`` under the document's file token.

        Each document keeps one token for the session's lifetime, so the
        engine replaces its analysis instead of accumulating one per
        request. Callers hold the document's lock until they are done
        with the analysis.
        """
        filetoken = self._filetokens.get(snapshot.uri)
        if filetoken is None:
            filetoken = self._filetokens[snapshot.uri] = f"{snapshot.uri}#{len(self._filetokens) + 1}"
        elif self._analyzed.get(filetoken) == snapshot.text:
            return filetoken
        self._analyzed.pop(filetoken, None)
        await self._request(REQUEST_FILE_ANALYSIS, {
            "filetoken": filetoken,
            "filename": snapshot.uri,
            "content": snapshot.text,
        })
        self._analyzed[filetoken] = snapshot.text
        return filetoken

    async def retrieve_slice(self, positions: Sequence[int], snapshot: DocumentSnapshot) -> SliceResult:
        """Slice ``snapshot`` for the given offsets."""
        self._require_ready()
        criteria = [snapshot.criterion_at(o) for o in positions]
        async with self._file_lock(snapshot.uri):
            filetoken = await self._analyze(snapshot)
            response = await self._request(REQUEST_SLICE, {
                "filetoken": filetoken,
                "criterion": criteria,
            })
        result = parse_slice_response(response)
        logger.debug("slice for %s at %s: %d element(s)", snapshot.uri, criteria, len(result.elements))
        return result

    async def retrieve_dataflow_diagram(self, snapshot: DocumentSnapshot) -> str:
        """Mermaid description of the dataflow graph of ``snapshot``."""
        self._require_ready()
        async with self._file_lock(snapshot.uri):
            filetoken = await self._analyze(snapshot)
            response = await self._request(REQUEST_DATAFLOW_DIAGRAM, {"filetoken": filetoken})
        mermaid = (response.get("results") or {}).get("mermaid")
        if not isinstance(mermaid, str):
            raise BackendAnalysisError("dataflow response carries no diagram", response.get("id"))
        return mermaid

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.description} {self.state.value}>"


def destroy_session(session: SliceSession | None) -> None:
    """Destroy ``session`` if there is one."""
    if session is not None:
        session.destroy()
