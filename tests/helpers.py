"""Shared test helpers for the flowr-slicer test suite."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

from flowr_slicer.config import LocalConfig, SlicerConfig
from flowr_slicer.session.base import SessionKind, SliceElement, SliceResult
from flowr_slicer.source import SourceRange

FAKE_FLOWR = Path(__file__).parent / "fake_flowr.py"

PROGRAM = "a <- 1\nb <- a + 1\nprint(b)\n"


def make_config(*engine_args: str, startup_timeout: float = 10.0, request_timeout: float = 10.0) -> SlicerConfig:
    """Config whose local engine is the scripted fake engine."""
    config = SlicerConfig()
    config.local = LocalConfig(
        command=[sys.executable, str(FAKE_FLOWR), "--stdio", *engine_args],
        startup_timeout=startup_timeout,
    )
    config.server.connect_timeout = startup_timeout
    config.session.request_timeout = request_timeout
    return config


def result_for(*lines: tuple[int, str]) -> SliceResult:
    """SliceResult covering whole 1-indexed lines."""
    return SliceResult(
        code="\n".join(text for _, text in lines),
        elements=tuple(
            SliceElement(str(n), SourceRange(n, 1, n, len(text))) for n, text in lines
        ),
    )


async def settle(rounds: int = 10) -> None:
    """Let scheduled tasks run up to their next real suspension."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class RecordingPresenter:
    def __init__(self) -> None:
        self.slices: list[tuple[str, SliceResult | None]] = []
        self.diagrams: list[tuple[str, str]] = []
        self.states: list[tuple[SessionKind, object]] = []
        self.notices: list[object] = []

    def on_slice_updated(self, uri, result):
        self.slices.append((uri, result))

    def on_diagram_ready(self, uri, diagram):
        self.diagrams.append((uri, diagram))

    def on_session_state_changed(self, kind, state):
        self.states.append((kind, state))

    def on_notice(self, notice):
        self.notices.append(notice)


class ScriptedSession:
    """In-process session whose slice requests are answered by the test."""

    kind = SessionKind.LOCAL

    def __init__(self) -> None:
        self.calls: list[tuple[list[int], object, asyncio.Future]] = []

    async def retrieve_slice(self, positions, snapshot):
        future = asyncio.get_running_loop().create_future()
        self.calls.append((list(positions), snapshot, future))
        return await future

    async def retrieve_dataflow_diagram(self, snapshot):
        return f"flowchart TD\n    %% {snapshot.uri}"


class ScriptedSessions:
    """Stands in for a SessionRegistry holding one scripted session."""

    def __init__(self, session: ScriptedSession | None = None) -> None:
        self.session = session or ScriptedSession()
        self.error: Exception | None = None
        self.lookups = 0

    async def get_session(self):
        self.lookups += 1
        if self.error is not None:
            raise self.error
        return self.session

    def is_active(self, session) -> bool:
        return session is self.session
