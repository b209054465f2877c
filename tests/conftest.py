"""
Shared fixtures: a scriptable fake realtime service and a relay in front of it.
"""

import asyncio
import json
import socket
from contextlib import asynccontextmanager

import pytest
import pytest_asyncio
from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from voice_relay.token_client import StaticKeyCredentials
from voice_relay.websocket_server import WebSocketRelayServer


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll `predicate` until it is true or fail after `timeout` seconds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def free_port() -> int:
    """Get a TCP port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class FakeUpstream:
    """
    Stand-in for the realtime service.

    Records every message and the Authorization header, and lets a test
    script replies through `on_connect` / `on_message` coroutines.
    """

    def __init__(self):
        self.url = None
        self.received = []
        self.auth_headers = []
        self.close_codes = []
        self.connections = []
        self.closed = asyncio.Event()
        self.on_connect = None
        self.on_message = None

    @property
    def received_json(self):
        return [json.loads(message) for message in self.received]

    async def handler(self, connection):
        self.connections.append(connection)
        self.auth_headers.append(connection.request.headers.get("Authorization"))

        if self.on_connect is not None:
            await self.on_connect(connection)

        try:
            async for message in connection:
                self.received.append(message)
                if self.on_message is not None:
                    await self.on_message(connection, json.loads(message))
        except ConnectionClosed:
            pass
        finally:
            self.close_codes.append(connection.close_code)
            self.closed.set()


@pytest_asyncio.fixture
async def fake_upstream():
    """A running fake realtime service."""
    upstream = FakeUpstream()
    async with serve(upstream.handler, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        upstream.url = f"ws://127.0.0.1:{port}"
        yield upstream


@asynccontextmanager
async def running_relay(upstream_url, credentials=None, path="/ws"):
    """Run a relay on an ephemeral port; yields (relay, client_url)."""
    relay = WebSocketRelayServer(
        upstream_url=upstream_url,
        credentials=credentials or StaticKeyCredentials("test-key"),
        host="127.0.0.1",
        port=0,
        path=path,
        open_timeout=2.0,
    )
    async with relay.serve() as server:
        port = server.sockets[0].getsockname()[1]
        yield relay, f"ws://127.0.0.1:{port}{path}"


@pytest.fixture
def relay_factory():
    return running_relay


@pytest.fixture
def wait_for():
    return wait_until


@pytest.fixture
def unused_port():
    return free_port()
