"""Live distribution hub: fans driver location and status events out to viewers.

Each viewer connection gets a bounded outbound queue drained by its own writer
task, so a broadcast never waits on a socket. A viewer whose queue is full is
dropped instead of slowing everyone else down.

Hub methods run on the event loop that serves the connections. Code running in
worker threads (sync FastAPI endpoints, batch jobs) goes through
``LiveHub.call_threadsafe``.
"""

import asyncio
import dataclasses
import datetime
import enum
import json
import logging
import threading
import time
from typing import Any, Callable, Optional, Protocol

from errors import LiveConnectionError

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"
DEFAULT_ROLE = "viewer"

QUEUE_SIZE = 256
PING_INTERVAL_S = 54.0       # must be shorter than PONG_WAIT_S
PONG_WAIT_S = 60.0
WRITE_WAIT_S = 10.0
MAX_MESSAGE_BYTES = 512

PING_MESSAGE = json.dumps({"type": "ping"})
PONG_MESSAGE = json.dumps({"type": "pong"})

_CLOSE = object()


class Connection(Protocol):
    """The subset of starlette's WebSocket the hub needs."""

    async def send_text(self, data: str) -> None: ...

    async def receive_text(self) -> str: ...

    async def close(self, code: int = 1000) -> None: ...


class ClientState(enum.Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclasses.dataclass
class LocationUpdate:
    driver_id: str
    name: str
    latitude: float
    longitude: float
    speed: float = 0.0
    is_moving: bool = False
    status: str = "unknown"
    timestamp: Optional[int] = None

    def to_message(self) -> dict[str, Any]:
        message = {"type": "location_update", **dataclasses.asdict(self)}
        if message["timestamp"] is None:
            message["timestamp"] = int(time.time())
        return message


class LiveClient:
    """One connected viewer and its outbound queue."""

    def __init__(
        self,
        connection: Connection,
        client_id: str | None = None,
        role: str = DEFAULT_ROLE,
        queue_size: int = QUEUE_SIZE,
    ):
        self.connection = connection
        self.client_id = client_id or f"client-{time.time_ns()}"
        self.role = role
        self.state = ClientState.CONNECTING
        self.connected_at = datetime.datetime.utcnow()
        self._outbound: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._lock = threading.Lock()

    def __repr__(self):
        return f"LiveClient({self.client_id!r}, role={self.role!r}, state={self.state.value})"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    def offer(self, data: str) -> bool:
        """Queue a message without waiting. False if the queue is full or closed."""
        with self._lock:
            if self.state not in (ClientState.CONNECTING, ClientState.OPEN):
                return False
            try:
                self._outbound.put_nowait(data)
            except asyncio.QueueFull:
                return False
            return True

    def close(self) -> bool:
        """Close the outbound queue. Only the first call does anything."""
        with self._lock:
            if self.state in (ClientState.CLOSING, ClientState.CLOSED):
                return False
            self.state = ClientState.CLOSING
            # Undelivered messages are discarded; the writer only needs the sentinel
            while not self._outbound.empty():
                self._outbound.get_nowait()
            self._outbound.put_nowait(_CLOSE)
            return True

    async def next_message(self, timeout: float):
        return await asyncio.wait_for(self._outbound.get(), timeout)

    async def send(self, data: str) -> None:
        try:
            await self.connection.send_text(data)
        except Exception as e:
            raise LiveConnectionError(f"send to {self.client_id} failed: {e}") from e

    async def receive(self) -> str:
        try:
            return await self.connection.receive_text()
        except Exception as e:
            raise LiveConnectionError(f"receive from {self.client_id} failed: {e}") from e

    async def finish(self) -> None:
        """Close the transport and mark the client CLOSED."""
        self.close()
        try:
            await self.connection.close()
        except Exception as e:
            # Usually the peer already went away
            logger.debug("Closing transport for %s: %s", self.client_id, e)
        with self._lock:
            self.state = ClientState.CLOSED


class LiveHub:
    """Registry of live viewers plus the broadcast operations over it."""

    def __init__(
        self,
        queue_size: int = QUEUE_SIZE,
        ping_interval: float = PING_INTERVAL_S,
        pong_wait: float = PONG_WAIT_S,
        write_wait: float = WRITE_WAIT_S,
        max_message_bytes: int = MAX_MESSAGE_BYTES,
    ):
        self.queue_size = queue_size
        self.ping_interval = ping_interval
        self.pong_wait = pong_wait
        self.write_wait = write_wait
        self.max_message_bytes = max_message_bytes
        self._clients: set[LiveClient] = set()
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None

    # -- registry ----------------------------------------------------------

    def attach(self, loop: asyncio.AbstractEventLoop) -> None:
        """Remember the event loop that serves connections."""
        self._loop = loop

    def new_client(self, connection: Connection, client_id: str | None = None, role: str = DEFAULT_ROLE) -> LiveClient:
        return LiveClient(connection, client_id=client_id, role=role, queue_size=self.queue_size)

    def register(self, client: LiveClient) -> None:
        with self._lock:
            if client.state is not ClientState.CONNECTING:
                return
            self._clients.add(client)
            client.state = ClientState.OPEN
        logger.info("Live client connected: %s (admin: %s)", client.client_id, client.is_admin)

    def unregister(self, client: LiveClient) -> bool:
        """Remove the client and close its queue. Safe to call any number of times."""
        with self._lock:
            present = client in self._clients
            self._clients.discard(client)
        client.close()
        if present:
            logger.info("Live client disconnected: %s", client.client_id)
        return present

    def stats(self) -> dict[str, int]:
        with self._lock:
            clients = list(self._clients)
        return {
            "connected_clients": len(clients),
            "admin_clients": sum(1 for c in clients if c.is_admin),
        }

    # -- broadcasting ------------------------------------------------------

    def _fan_out(self, message: dict[str, Any], accept: Callable[[LiveClient], bool]) -> int:
        data = json.dumps(message)
        sent = 0
        dropped = []
        with self._lock:
            for client in self._clients:
                if not accept(client):
                    continue
                if client.offer(data):
                    sent += 1
                else:
                    dropped.append(client)
            for client in dropped:
                self._clients.discard(client)
        for client in dropped:
            client.close()
            logger.warning("Dropped slow live client %s", client.client_id)
        return sent

    def broadcast(self, message: dict[str, Any]) -> int:
        """Send to every connection; returns how many queued it."""
        return self._fan_out(message, lambda c: True)

    def broadcast_to_role(self, role: str, message: dict[str, Any]) -> int:
        return self._fan_out(message, lambda c: c.role == role)

    def broadcast_location(self, update: LocationUpdate) -> int:
        return self.broadcast(update.to_message())

    def broadcast_driver_status(self, driver_id: str, name: str, status: str) -> int:
        message = {"type": "driver_status", "driver_id": driver_id, "name": name, "status": status}
        return self.broadcast_to_role(ADMIN_ROLE, message)

    def call_threadsafe(self, fn: Callable[..., Any], *args) -> bool:
        """Run a hub method on the hub's loop from another thread.

        Returns False (and does nothing) if no loop has served a connection yet,
        in which case there is nobody to deliver to.
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            return False
        loop.call_soon_threadsafe(fn, *args)
        return True

    # -- connection lifecycle ----------------------------------------------

    async def serve(self, client: LiveClient) -> None:
        """Pump messages for one connection until it closes, errors, or times out."""
        self._loop = asyncio.get_running_loop()
        self.register(client)
        reader = asyncio.create_task(self._read_pump(client))
        writer = asyncio.create_task(self._write_pump(client))
        try:
            await asyncio.wait({reader, writer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            self.unregister(client)
            # The writer drains to the close sentinel; give it write_wait to say goodbye
            done, _ = await asyncio.wait({writer}, timeout=self.write_wait)
            if not done:
                writer.cancel()
            reader.cancel()
            await asyncio.gather(reader, writer, return_exceptions=True)
            await client.finish()

    async def _read_pump(self, client: LiveClient) -> None:
        while True:
            try:
                raw = await asyncio.wait_for(client.receive(), self.pong_wait)
            except asyncio.TimeoutError:
                logger.info("Live client %s missed its read deadline", client.client_id)
                return
            except LiveConnectionError as e:
                logger.debug("%s", e)
                return

            if len(raw.encode("utf-8")) > self.max_message_bytes:
                logger.warning("Live client %s sent an oversized message", client.client_id)
                return

            try:
                message = json.loads(raw)
            except ValueError:
                message = None
            if isinstance(message, dict) and message.get("type") == "ping":
                client.offer(PONG_MESSAGE)
                continue
            logger.debug("Message from %s: %s", client.client_id, raw)

    async def _write_pump(self, client: LiveClient) -> None:
        loop = asyncio.get_running_loop()
        # Pings go out every ping_interval even while data is flowing
        next_ping = loop.time() + self.ping_interval
        while True:
            wait = next_ping - loop.time()
            if wait <= 0:
                data = PING_MESSAGE
                next_ping = loop.time() + self.ping_interval
            else:
                try:
                    data = await client.next_message(wait)
                except asyncio.TimeoutError:
                    continue
            if data is _CLOSE:
                return
            try:
                await asyncio.wait_for(client.send(data), self.write_wait)
            except (LiveConnectionError, asyncio.TimeoutError) as e:
                logger.debug("Write to %s failed: %s", client.client_id, e)
                self.unregister(client)
                return
