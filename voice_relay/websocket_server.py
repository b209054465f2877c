"""
WebSocket relay between local clients and the upstream realtime service.

Every client connection (downstream) gets exactly one upstream connection.
Messages are forwarded verbatim in both directions; when either leg closes or
fails the other leg is closed with a matching code, so a half-open pair is
never left running.
"""

import asyncio
import json
import uuid
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from urllib.parse import urlsplit

from loguru import logger
from websockets.asyncio.client import ClientConnection, connect
from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI
from websockets.protocol import State

from .errors import ConnectError, TransportError


DOWNSTREAM = "downstream"
UPSTREAM = "upstream"

PROXY_CONNECTED = "proxy.connected"
ERROR_MESSAGE_TYPE = "error"

# Close codes a peer may put in a close frame.
SENDABLE_CLOSE_CODES = {1000, 1001, 1002, 1003, 1007, 1008, 1009, 1010, 1011, 1012, 1013, 1014}
MAX_CLOSE_REASON_BYTES = 123


def mirror_close(code: Optional[int], reason: str = "") -> Tuple[int, str]:
    """
    Map the close code seen on one leg to a code that can be sent on the other.

    Args:
        code (Optional[int]): Close code received on the leg that closed first
        reason (str): Close reason received with it

    Returns:
        Tuple[int, str]: Close code and reason for the other leg
    """
    encoded = (reason or "").encode("utf-8")[:MAX_CLOSE_REASON_BYTES]
    reason = encoded.decode("utf-8", errors="ignore")

    if code in SENDABLE_CLOSE_CODES or (code is not None and 3000 <= code <= 4999):
        return code, reason
    if code is None or code == 1005:
        return 1000, reason
    return 1011, reason


@dataclass(frozen=True)
class LegClosed:
    """Which leg ended the session, and how."""

    leg: str
    code: Optional[int]
    reason: str = ""
    abnormal: bool = False

    @classmethod
    def from_exception(cls, leg: str, exc: ConnectionClosed) -> "LegClosed":
        if exc.rcvd is not None:
            return cls(leg, exc.rcvd.code, exc.rcvd.reason)
        return cls(leg, 1006, "", abnormal=True)

    def to_error(self) -> TransportError:
        return TransportError(f"{self.leg.capitalize()} connection lost")


def first_closed(done) -> Optional[LegClosed]:
    """Result of the first finished pump; cancelled pumps carry none."""
    for task in done:
        if not task.cancelled():
            return task.result()
    return None


UpstreamOpener = Callable[[], Awaitable[ClientConnection]]


class ConnectionPair:
    """
    One downstream client connection bound to one upstream connection.

    A pair owns both legs for the lifetime of a session and shares no state
    with any other pair.
    """

    def __init__(self, downstream: ServerConnection, open_upstream: UpstreamOpener,
                 pair_id: Optional[str] = None):
        """
        Initialize connection pair.

        Args:
            downstream (ServerConnection): Accepted client connection
            open_upstream (UpstreamOpener): Coroutine function opening the upstream leg
            pair_id (Optional[str]): Identifier used in log lines
        """
        self.downstream = downstream
        self.upstream: Optional[ClientConnection] = None
        self.open_upstream = open_upstream
        self.pair_id = pair_id or uuid.uuid4().hex[:8]

        self.closing = False
        self.forwarded = {DOWNSTREAM: 0, UPSTREAM: 0}
        self.dropped = {DOWNSTREAM: 0, UPSTREAM: 0}

        self._tasks: Dict[str, asyncio.Task] = {}
        self._connect_task: Optional[asyncio.Task] = None

    def _destination(self, source_leg: str):
        return self.upstream if source_leg == DOWNSTREAM else self.downstream

    async def _pump(self, source_leg: str) -> LegClosed:
        """Forward messages from one leg to the other until a leg closes."""
        source = self.downstream if source_leg == DOWNSTREAM else self.upstream
        destination_leg = UPSTREAM if source_leg == DOWNSTREAM else DOWNSTREAM

        while True:
            try:
                message = await source.recv()
            except ConnectionClosed as e:
                return LegClosed.from_exception(source_leg, e)

            if self.closing:
                return LegClosed(source_leg, None)

            destination = self._destination(source_leg)
            if destination is None or destination.state is not State.OPEN:
                self.dropped[source_leg] += 1
                logger.debug(f"[{self.pair_id}] {destination_leg} not open, dropped message")
                continue

            try:
                await destination.send(message)
            except ConnectionClosed as e:
                return LegClosed.from_exception(destination_leg, e)
            self.forwarded[source_leg] += 1

    async def _notify_downstream(self, message: Dict[str, Any]) -> None:
        if self.downstream.state is not State.OPEN:
            return
        try:
            await self.downstream.send(json.dumps(message))
        except ConnectionClosed:
            logger.debug(f"[{self.pair_id}] Client gone before {message['type']} was delivered")

    async def _notify_error(self, description: str) -> None:
        await self._notify_downstream({
            "type": ERROR_MESSAGE_TYPE,
            "error": {"message": description},
        })

    async def _connect(self) -> Optional[LegClosed]:
        """Open the upstream leg while the downstream pump is already running."""
        connect_task = asyncio.create_task(self.open_upstream())
        self._connect_task = connect_task
        done, _ = await asyncio.wait(
            {self._tasks[DOWNSTREAM], connect_task},
            return_when=asyncio.FIRST_COMPLETED,
        )

        if connect_task not in done:
            connect_task.cancel()
            await asyncio.gather(connect_task, return_exceptions=True)
            logger.info(f"[{self.pair_id}] Client left before upstream was ready")
            return first_closed({self._tasks[DOWNSTREAM]}) or LegClosed(DOWNSTREAM, None)

        try:
            self.upstream = connect_task.result()
        except ConnectError as e:
            logger.error(f"[{self.pair_id}] Upstream connection failed: {e}")
            await self._notify_error(f"Upstream connection failed: {e}")
            return LegClosed(UPSTREAM, 1011, "Upstream connection failed")

        logger.info(f"[{self.pair_id}] Upstream connected")
        await self._notify_downstream({"type": PROXY_CONNECTED})
        return None

    async def run(self) -> None:
        """Relay until either leg closes, then tear both down."""
        closed: Optional[LegClosed] = None
        self._tasks[DOWNSTREAM] = asyncio.create_task(self._pump(DOWNSTREAM))
        try:
            closed = await self._connect()
            if closed is None and not self.closing:
                self._tasks[UPSTREAM] = asyncio.create_task(self._pump(UPSTREAM))
                done, _ = await asyncio.wait(
                    set(self._tasks.values()), return_when=asyncio.FIRST_COMPLETED
                )
                closed = first_closed(done)
        finally:
            await self.close(closed)

    async def close(self, closed: Optional[LegClosed] = None) -> None:
        """
        Close both legs. Safe to call more than once.

        Args:
            closed (Optional[LegClosed]): The leg that ended the session, if known
        """
        if self.closing:
            return
        self.closing = True

        current = asyncio.current_task()
        pending = [task for task in self._tasks.values() if task is not current and not task.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        task = self._connect_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        elif task is not None and self.upstream is None and not task.cancelled() and task.exception() is None:
            self.upstream = task.result()

        if closed is None:
            code, reason = 1011, "Relay error"
        else:
            code, reason = mirror_close(closed.code, closed.reason)
            if closed.abnormal:
                error = closed.to_error()
                logger.warning(f"[{self.pair_id}] {error}")
                if closed.leg == UPSTREAM:
                    await self._notify_error(str(error))

        if self.upstream is not None:
            await self.upstream.close(code, reason)
        await self.downstream.close(code, reason)

        logger.info(
            f"[{self.pair_id}] Session closed ({code} {reason!r}); "
            f"forwarded up={self.forwarded[DOWNSTREAM]} down={self.forwarded[UPSTREAM]}"
        )


class WebSocketRelayServer:
    """
    WebSocket server pairing each client connection with an upstream connection.
    """

    def __init__(self,
                 upstream_url: str,
                 credentials,
                 host: str = "localhost",
                 port: int = 3000,
                 path: str = "/ws",
                 open_timeout: float = 10.0):
        """
        Initialize relay server.

        Args:
            upstream_url (str): Realtime service WebSocket URL
            credentials: Provider of upstream `Authorization` headers
            host (str): Server host
            port (int): Server port
            path (str): Only this request path is upgraded
            open_timeout (float): Upstream handshake timeout in seconds
        """
        self.upstream_url = upstream_url
        self.credentials = credentials
        self.host = host
        self.port = port
        self.path = path
        self.open_timeout = open_timeout

        self.active_sessions: Dict[str, ConnectionPair] = {}

        logger.info(f"Relay server initialized on {host}:{port}{path} -> {upstream_url}")

    async def open_upstream(self) -> ClientConnection:
        """
        Open an authenticated upstream connection.

        Raises:
            ConnectError: If the credential or the handshake fails
        """
        headers = await self.credentials.authorization_headers()
        try:
            return await connect(
                self.upstream_url,
                additional_headers=headers,
                max_size=None,
                open_timeout=self.open_timeout,
            )
        except (OSError, InvalidHandshake, InvalidURI, asyncio.TimeoutError) as e:
            raise ConnectError(str(e) or type(e).__name__) from e

    def process_request(self, connection: ServerConnection, request):
        """Reject any request path other than the relay path."""
        if urlsplit(request.path).path != self.path:
            return connection.respond(HTTPStatus.NOT_FOUND, "Not found\n")
        return None

    async def handle_client(self, connection: ServerConnection) -> None:
        """Handle one client connection for its whole lifetime."""
        pair = ConnectionPair(connection, self.open_upstream)
        client_id = "{}:{}".format(*connection.remote_address[:2])
        self.active_sessions[pair.pair_id] = pair
        logger.info(f"[{pair.pair_id}] Client connected: {client_id} "
                    f"({len(self.active_sessions)} active)")

        try:
            await pair.run()
        finally:
            self.active_sessions.pop(pair.pair_id, None)

    def serve(self, host: Optional[str] = None, port: Optional[int] = None):
        """Return the websockets server context for this relay."""
        return serve(
            self.handle_client,
            host if host is not None else self.host,
            port if port is not None else self.port,
            process_request=self.process_request,
            max_size=None,
        )

    async def start_server(self):
        """Start the relay and serve until cancelled."""
        logger.info(f"Starting relay server on {self.host}:{self.port}")

        async with self.serve() as server:
            logger.info("Relay server started successfully")
            await server.serve_forever()

    def run_server(self):
        """Run the relay server in the current thread."""
        asyncio.run(self.start_server())
