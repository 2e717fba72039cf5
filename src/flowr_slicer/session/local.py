"""Session backed by a flowR engine subprocess speaking over stdio."""

from __future__ import annotations

import asyncio
import contextlib
import logging

from flowr_slicer.config import SlicerConfig
from flowr_slicer.session.base import SessionKind, SessionState, SliceSession
from flowr_slicer.session.protocol import STREAM_LIMIT

logger = logging.getLogger(__name__)


class LocalSession(SliceSession):
    """Spawns the engine and talks to it through its stdin/stdout."""

    kind = SessionKind.LOCAL
    pending_state = SessionState.STARTING
    ready_state = SessionState.ACTIVE
    closed_state = SessionState.TERMINATED

    def __init__(self, config: SlicerConfig) -> None:
        super().__init__(config)
        self.argv = config.local.argv()
        self.process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task[None] | None = None

    @property
    def establish_timeout(self) -> float:
        return self.config.local.startup_timeout

    @property
    def description(self) -> str:
        return " ".join(self.argv)

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    async def _open(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        logger.info("starting flowR: %s", self.description)
        self.process = await asyncio.create_subprocess_exec(
            *self.argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LIMIT,
        )
        assert self.process.stdout is not None and self.process.stdin is not None
        if self.process.stderr is not None:
            self._stderr_task = asyncio.ensure_future(self._drain_stderr(self.process.stderr))
        return self.process.stdout, self.process.stdin

    async def _drain_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            line = await stream.readline()
            if not line:
                return
            logger.debug("[flowr stderr] %s", line.decode("utf-8", "replace").rstrip())

    def _close_transport(self) -> None:
        process = self.process
        if process is None:
            return
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.kill()

    async def _wait_closed(self) -> None:
        if self.process is not None:
            await self.process.wait()
        if self._stderr_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
