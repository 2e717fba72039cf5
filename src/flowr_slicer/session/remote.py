"""Session backed by a flowR server reached over TCP."""

from __future__ import annotations

import asyncio
import contextlib
import logging

from flowr_slicer.config import SlicerConfig
from flowr_slicer.session.base import SessionKind, SessionState, SliceSession
from flowr_slicer.session.protocol import STREAM_LIMIT

logger = logging.getLogger(__name__)


class RemoteSession(SliceSession):
    kind = SessionKind.REMOTE
    pending_state = SessionState.CONNECTING
    ready_state = SessionState.CONNECTED
    closed_state = SessionState.DISCONNECTED

    def __init__(self, config: SlicerConfig, host: str | None = None, port: int | None = None) -> None:
        super().__init__(config)
        self.host = host or config.server.host
        self.port = port or config.server.port
        self._writer: asyncio.StreamWriter | None = None

    @property
    def establish_timeout(self) -> float:
        return self.config.server.connect_timeout

    @property
    def description(self) -> str:
        return f"{self.host}:{self.port}"

    async def _open(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        logger.info("connecting to flowR server at %s", self.description)
        reader, writer = await asyncio.open_connection(self.host, self.port, limit=STREAM_LIMIT)
        self._writer = writer
        return reader, writer

    def _close_transport(self) -> None:
        if self._writer is not None and not self._writer.is_closing():
            self._writer.close()

    async def _wait_closed(self) -> None:
        if self._writer is not None:
            with contextlib.suppress(ConnectionError, OSError):
                await self._writer.wait_closed()
