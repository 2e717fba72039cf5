from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass

import pytest

from tests.fake_flowr import FakeEngine, serve_tcp
from tests.helpers import make_config


@dataclass
class FlowrServer:
    engine: FakeEngine
    host: str
    port: int


@pytest.fixture
def local_config():
    return make_config()


@pytest.fixture
async def flowr_server():
    """A fake flowR server listening on an ephemeral local port."""
    engine = FakeEngine()
    server = await serve_tcp(engine, "127.0.0.1", 0)
    host, port = server.sockets[0].getsockname()[:2]
    yield FlowrServer(engine, host, port)
    server.close()
    with contextlib.suppress(asyncio.TimeoutError):
        await asyncio.wait_for(server.wait_closed(), 2)


@pytest.fixture
async def old_r_server():
    engine = FakeEngine(r_version="2.15.0")
    server = await serve_tcp(engine, "127.0.0.1", 0)
    host, port = server.sockets[0].getsockname()[:2]
    yield FlowrServer(engine, host, port)
    server.close()
    with contextlib.suppress(asyncio.TimeoutError):
        await asyncio.wait_for(server.wait_closed(), 2)
