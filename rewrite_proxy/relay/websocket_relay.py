"""
WebSocket relay registry and heartbeat.

The heartbeat is an application-level probe: every ``WS_HEARTBEAT_INTERVAL``
seconds each open connection receives a text frame
``{"type": "ping", "timestamp": <ms>}``. Clients are expected to answer with
``{"type": "pong"}`` (or send any other traffic); a connection silent for more
than ``WS_TIMEOUT`` seconds is closed with code 1000 and reason ``Timeout``.
Browsers do not answer this probe on their own.

Protocol-level liveness (WebSocket ping/pong control frames) is left to the
ASGI server; ``python -m rewrite_proxy`` starts uvicorn with
``ws_ping_interval`` and ``ws_ping_timeout`` set from the same variables.
"""

import asyncio
import contextlib
import json
import logging
import time
from typing import Callable, Optional

from rewrite_proxy.errors import ConnectionCapacityExceeded, RelayConnectionError
from rewrite_proxy.metrics import (
    RELAY_CONNECTIONS_EVICTED,
    RELAY_CONNECTIONS_OPEN,
    RELAY_CONNECTIONS_REJECTED,
)
from rewrite_proxy.relay.connection import (
    ConnectionState,
    RelayConnection,
    generate_connection_id,
)
from rewrite_proxy.relay.upstream import ChannelFactory, EchoUpstreamChannel, Frame
from rewrite_proxy.store import KeyValueStore, build_store
from rewrite_proxy.utils.exception_logging import log_exception_with_details
from rewrite_proxy.vars import WS_HEARTBEAT_INTERVAL, WS_MAX_CONNECTIONS, WS_TIMEOUT

logger = logging.getLogger("uvicorn.error")

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001


def _remote_address(websocket) -> str:
    client = getattr(websocket, "client", None)
    if not client:
        return "unknown"
    return f"{client.host}:{client.port}"


class WebSocketRelay:
    """
    Registry and lifecycle of persistent client connections.

    Each connection goes CONNECTING -> OPEN -> CLOSED, or through ERROR on a
    socket fault. Registration is refused once ``max_connections`` records
    exist. A heartbeat task sweeps the registry every ``heartbeat_interval``
    seconds: idle connections are evicted first, then the survivors are probed.

    Registry check-and-insert never awaits, so a single event loop needs no lock.
    """

    def __init__(
        self,
        max_connections: int = WS_MAX_CONNECTIONS,
        heartbeat_interval: float = WS_HEARTBEAT_INTERVAL,
        idle_timeout: float = WS_TIMEOUT,
        channel_factory: ChannelFactory = EchoUpstreamChannel,
        registry: Optional[KeyValueStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.max_connections = max_connections
        self.heartbeat_interval = heartbeat_interval
        self.idle_timeout = idle_timeout
        self.channel_factory = channel_factory
        self.registry = registry if registry is not None else build_store()
        self.clock = clock
        self._heartbeat_task: Optional[asyncio.Task] = None

    def register(
        self, websocket, remote_address: str, target_url: Optional[str] = None
    ) -> RelayConnection:
        if len(self.registry) >= self.max_connections:
            raise ConnectionCapacityExceeded(self.max_connections)

        now = self.clock()
        connection = RelayConnection(
            id=generate_connection_id(),
            socket=websocket,
            remote_address=remote_address,
            created_at=now,
            last_activity=now,
            target_url=target_url,
        )
        self.registry.set(connection.id, connection)
        RELAY_CONNECTIONS_OPEN.set(len(self.registry))
        return connection

    def deregister(self, connection_id: str) -> Optional[RelayConnection]:
        connection = self.registry.delete(connection_id)
        RELAY_CONNECTIONS_OPEN.set(len(self.registry))
        return connection

    def get(self, connection_id: str) -> Optional[RelayConnection]:
        return self.registry.get(connection_id)

    async def handle(
        self, websocket, target_url: Optional[str] = None
    ) -> Optional[RelayConnection]:
        """Run one client connection from upgrade to close."""
        remote_address = _remote_address(websocket)
        try:
            connection = self.register(websocket, remote_address, target_url)
        except ConnectionCapacityExceeded as e:
            RELAY_CONNECTIONS_REJECTED.inc()
            logger.warning(
                f"[WebSocket Relay] Rejected connection from {remote_address}: {e.message}"
            )
            await websocket.accept()
            await websocket.close(code=e.close_code, reason=e.message)
            return None

        logger.info(
            f"[WebSocket Relay] New connection from {remote_address}: {connection.id}"
        )
        pump: Optional[asyncio.Task] = None
        try:
            await websocket.accept()
            connection.state = ConnectionState.OPEN
            connection.channel = self.channel_factory()
            await connection.channel.open(connection)
            pump = asyncio.create_task(
                self._pump(connection), name=f"relay-pump-{connection.id}"
            )

            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                data = message.get("text")
                if data is None:
                    data = message.get("bytes") or b""
                await self.handle_message(connection, data)
        except Exception as e:
            connection.state = ConnectionState.ERROR
            error = RelayConnectionError(connection.id, str(e))
            error.__cause__ = e
            log_exception_with_details(
                logger, f"[WebSocket Relay] Error on connection {connection.id}:", error
            )
        finally:
            if connection.channel is not None:
                await connection.channel.close()
            if pump is not None:
                pump.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await pump
            self.deregister(connection.id)
            connection.state = ConnectionState.CLOSED
            logger.info(
                f"[WebSocket Relay] Connection closed: {connection.id} ({connection.messages} messages)"
            )
        return connection

    async def handle_message(self, connection: RelayConnection, data: Frame) -> None:
        connection.last_activity = self.clock()
        if self._is_pong(data):
            return
        connection.messages += 1
        logger.debug(
            f"[WebSocket Relay] Message from {connection.id}: {len(data)} bytes"
        )
        await connection.channel.send(data)

    @staticmethod
    def _is_pong(data: Frame) -> bool:
        if not isinstance(data, str) or "pong" not in data:
            return False
        try:
            payload = json.loads(data)
        except ValueError:
            return False
        return isinstance(payload, dict) and payload.get("type") == "pong"

    async def _send(self, connection: RelayConnection, frame: Frame) -> None:
        if isinstance(frame, bytes):
            await connection.socket.send_bytes(frame)
        else:
            await connection.socket.send_text(frame)

    async def _pump(self, connection: RelayConnection) -> None:
        """Deliver upstream frames back to the client."""
        async for frame in connection.channel.frames():
            try:
                await self._send(connection, frame)
            except Exception as e:
                log_exception_with_details(
                    logger,
                    f"[WebSocket Relay] Could not deliver frame to {connection.id}:",
                    e,
                    logging.WARNING,
                )
                return

    async def sweep(self) -> list[str]:
        """
        Evict connections idle longer than ``idle_timeout``, then probe the rest.

        Returns the ids of evicted connections.
        """
        now = self.clock()
        idle = [
            c for c in self.registry.values() if c.idle_for(now) > self.idle_timeout
        ]
        for connection in idle:
            self.deregister(connection.id)
            connection.state = ConnectionState.CLOSED
            connection.closed_reason = "Timeout"
            RELAY_CONNECTIONS_EVICTED.labels(reason="idle").inc()
            logger.info(f"[WebSocket Relay] Closing idle connection: {connection.id}")
            try:
                await connection.socket.close(code=CLOSE_NORMAL, reason="Timeout")
            except Exception as e:
                logger.debug(
                    f"[WebSocket Relay] Close of idle connection {connection.id} failed: {e}"
                )

        probe = json.dumps({"type": "ping", "timestamp": int(now * 1000)})
        for connection in self.registry.values():
            try:
                await connection.socket.send_text(probe)
            except Exception as e:
                connection.state = ConnectionState.ERROR
                self.deregister(connection.id)
                RELAY_CONNECTIONS_EVICTED.labels(reason="probe_failed").inc()
                log_exception_with_details(
                    logger,
                    f"[WebSocket Relay] Probe failed for {connection.id}:",
                    RelayConnectionError(connection.id, str(e)),
                    logging.WARNING,
                )

        return [c.id for c in idle]

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.sweep()
            except Exception as e:
                log_exception_with_details(
                    logger, "[WebSocket Relay] Heartbeat sweep failed:", e
                )

    def start_heartbeat(self) -> None:
        if self._heartbeat_task and not self._heartbeat_task.done():
            return
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(), name="relay-heartbeat"
        )
        logger.info(
            f"[WebSocket Relay] Heartbeat every {self.heartbeat_interval}s, idle timeout {self.idle_timeout}s"
        )

    async def stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if not task:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def close_all(self) -> None:
        for connection in self.registry.values():
            self.deregister(connection.id)
            connection.state = ConnectionState.CLOSED
            with contextlib.suppress(Exception):
                await connection.socket.close(
                    code=CLOSE_GOING_AWAY, reason="Server shutting down"
                )

    def stats(self) -> dict:
        connections = self.registry.values()
        now = self.clock()
        oldest = min((c.created_at for c in connections), default=None)
        return {
            "active_connections": len(connections),
            "total_messages": sum(c.messages for c in connections),
            "oldest_connection_age": (now - oldest) if oldest is not None else 0,
            "max_capacity": self.max_connections,
        }
