"""flowR message protocol: newline-delimited JSON over a byte stream.

The engine greets every new client with a ``hello`` message carrying its
versions. After that every request carries an ``id`` and is answered by a
response (or an ``error``) with the same ``id``; responses may arrive in
any order.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from flowr_slicer.errors import (
    BackendAnalysisError,
    BackendFatalError,
    HandshakeError,
    Notice,
    Severity,
)

logger = logging.getLogger(__name__)

# R versions below this cannot run flowR at all
MINIMUM_R_MAJOR = 3
# flowR is developed and tested against this R major
BEST_R_MAJOR = 4

# Upper bound on a single message line
STREAM_LIMIT = 1 << 24

HELLO = "hello"
ERROR = "error"
REQUEST_FILE_ANALYSIS = "request-file-analysis"
REQUEST_SLICE = "request-slice"
REQUEST_DATAFLOW_DIAGRAM = "request-dataflow-diagram"

RESPONSE_TYPES = {
    REQUEST_FILE_ANALYSIS: "response-file-analysis",
    REQUEST_SLICE: "response-slice",
    REQUEST_DATAFLOW_DIAGRAM: "response-dataflow-diagram",
}


class ProtocolError(ValueError):
    """A message could not be decoded."""


def encode_message(message: dict[str, Any]) -> bytes:
    return (json.dumps(message, separators=(",", ":")) + "\n").encode("utf-8")


def decode_message(line: bytes | str) -> dict[str, Any]:
    if isinstance(line, bytes):
        line = line.decode("utf-8")
    try:
        message = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"invalid JSON message: {e}") from e
    if not isinstance(message, dict) or "type" not in message:
        raise ProtocolError(f"message without type: {line.strip()[:80]}")
    return message


# ── Handshake ────────────────────────────────────────────────────


def parse_version(text: str) -> tuple[int, ...]:
    """Leading numeric components of a version string, e.g. ``"v4.3.1"`` → (4, 3, 1)."""
    m = re.search(r"\d+(?:\.\d+)*", text or "")
    if m is None:
        return ()
    return tuple(int(p) for p in m.group(0).split("."))


@dataclass(frozen=True)
class Handshake:
    """What the engine told us about itself in its ``hello``."""

    client_name: str
    flowr_version: str
    r_version: str

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> Handshake:
        if message.get("type") != HELLO:
            raise HandshakeError(f"expected hello message, got {message.get('type')!r}")
        versions = message.get("versions") or {}
        return cls(
            client_name=str(message.get("clientName", "")),
            flowr_version=str(versions.get("flowr", "")),
            r_version=str(versions.get("r", "")),
        )

    @property
    def versions(self) -> dict[str, str]:
        return {"flowr": self.flowr_version, "r": self.r_version}


def check_versions(handshake: Handshake, min_flowr_version: str = "") -> list[Notice]:
    """Validate engine versions. Raises HandshakeError if R is too old to work.

    Anything else that is older than expected only produces notices.
    """
    notices: list[Notice] = []
    r_version = parse_version(handshake.r_version)
    if r_version:
        if r_version[0] < MINIMUM_R_MAJOR:
            raise HandshakeError(
                f"R version {handshake.r_version} is not supported, "
                f"R {MINIMUM_R_MAJOR} or later is required",
                handshake.versions,
            )
        if r_version[0] < BEST_R_MAJOR:
            notices.append(Notice(
                Severity.WARNING,
                f"flowR is tested with R {BEST_R_MAJOR}, "
                f"found R {handshake.r_version}; some results may be off",
            ))
    flowr_version = parse_version(handshake.flowr_version)
    minimum = parse_version(min_flowr_version)
    if flowr_version and minimum and flowr_version < minimum:
        notices.append(Notice(
            Severity.WARNING,
            f"flowR {handshake.flowr_version} is older than the recommended "
            f"{min_flowr_version}",
        ))
    return notices


# ── Channel ──────────────────────────────────────────────────────


class MessageChannel:
    """Request/response correlation over a stream pair.

    ``on_lost`` is called once with a reason when the stream ends or a
    fatal error arrives; every pending request then fails with
    :class:`BackendFatalError`.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        name: str = "flowr",
        on_lost: Callable[[str], None] | None = None,
    ) -> None:
        self.reader = reader
        self.writer = writer
        self.name = name
        self.on_lost = on_lost
        self.closed = False
        self._ids = itertools.count(1)
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._reader_task: asyncio.Task[None] | None = None

    async def read_message(self) -> dict[str, Any]:
        """Read one message directly (used for the greeting)."""
        line = await self.reader.readline()
        if not line:
            raise BackendFatalError(f"{self.name}: connection closed")
        return decode_message(line)

    def start(self) -> None:
        if self._reader_task is None:
            self._reader_task = asyncio.ensure_future(self._read_loop())

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def _read_loop(self) -> None:
        reason = "connection closed"
        try:
            while True:
                line = await self.reader.readline()
                if not line:
                    break
                if not line.strip():
                    continue
                try:
                    message = decode_message(line)
                except ProtocolError as e:
                    logger.warning("%s: dropping message: %s", self.name, e)
                    continue
                if self._dispatch(message):
                    reason = str(message.get("reason", "fatal engine error"))
                    break
        except (ConnectionError, ValueError) as e:
            reason = f"connection failed: {e}"
        except asyncio.CancelledError:
            self._lost("channel closed")
            raise
        self._lost(reason)

    def _dispatch(self, message: dict[str, Any]) -> bool:
        """Resolve the request a message answers. Returns True on a fatal error."""
        kind = message.get("type")
        msg_id = message.get("id")
        logger.debug("%s: <- %s (id=%s)", self.name, kind, msg_id)
        fatal = kind == ERROR and bool(message.get("fatal", False))
        future = self._pending.pop(str(msg_id), None) if msg_id is not None else None
        if future is None:
            if not fatal:
                logger.debug("%s: unsolicited %s message", self.name, kind)
            return fatal
        if future.done():
            return fatal
        if kind == ERROR:
            reason = str(message.get("reason", "unknown engine error"))
            if fatal:
                future.set_exception(BackendFatalError(f"{self.name}: {reason}"))
            else:
                future.set_exception(BackendAnalysisError(reason, str(msg_id)))
        else:
            future.set_result(message)
        return fatal

    def _lost(self, reason: str) -> None:
        if self.closed:
            return
        self.closed = True
        for future in self._pending.values():
            if not future.done():
                future.set_exception(BackendFatalError(f"{self.name}: {reason}"))
        self._pending.clear()
        if self.on_lost is not None:
            self.on_lost(reason)

    async def request(self, kind: str, payload: dict[str, Any], timeout: float | None = None) -> dict[str, Any]:
        """Send a request and wait for its response message."""
        if self.closed:
            raise BackendFatalError(f"{self.name}: channel is closed")
        msg_id = str(next(self._ids))
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future
        logger.debug("%s: -> %s (id=%s)", self.name, kind, msg_id)
        try:
            self.writer.write(encode_message({"type": kind, "id": msg_id, **payload}))
            await self.writer.drain()
        except (ConnectionError, RuntimeError) as e:
            self._pending.pop(msg_id, None)
            self._lost(f"write failed: {e}")
            raise BackendFatalError(f"{self.name}: write failed: {e}") from e

        try:
            response = await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            self._pending.pop(msg_id, None)
            raise BackendAnalysisError(f"{kind} timed out after {timeout}s", msg_id) from None

        expected = RESPONSE_TYPES.get(kind)
        if expected is not None and response.get("type") != expected:
            raise BackendAnalysisError(
                f"expected {expected}, got {response.get('type')!r}", msg_id,
            )
        return response

    def close(self) -> None:
        """Stop reading and fail whatever is still pending."""
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
        on_lost, self.on_lost = self.on_lost, None
        self._lost("channel closed")
        self.on_lost = on_lost
