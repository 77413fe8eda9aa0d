"""
JSON Server - Client Connection
=================================
One object per WebSocket client. It decodes every incoming frame as a
JSON message, dispatches it by its "op" field to the handler table that
is currently active for the connection, and sends replies back.

Connection states:
    - "unauthenticated" : Active table is the server's auth table
                          (only when auth handlers are configured)
    - "authenticated"   : Active table is the server's full table
    - "closed"          : Transport closed; nothing is dispatched anymore

Any message that cannot be dispatched closes the connection without a
reply:
    - the frame is not valid JSON, or not a JSON object
    - "op" is missing or not a string
    - "op" has no handler in the active table
    - the handler raised an exception
    - the handler returned Rejected(...)

This forces a client that sent bad input (or bad credentials) to
reconnect and authenticate from scratch.

Message format:
    { "op": "echo", "text": "hi" }
"""

import asyncio
import inspect
import json
import time
import traceback
from typing import Any, Coroutine

from fastapi.websockets import WebSocket, WebSocketState

from jsonserver.auth import Accepted, Rejected
from jsonserver.processes import ProcessManager


class ProtocolError(Exception):
    """Raised when an incoming frame is not a dispatchable message."""


def _now_ms() -> int:
    """Current wall clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class ClientConnection:
    """
    A single client connection to the JsonServer.

    Attributes:
        server:      The JsonServer that accepted the connection.
        ws:          WebSocket used to talk to the client.
        remote_host: Client address.
        remote_port: Client port.
        headers:     Snapshot of the HTTP upgrade request headers.
        start:       Creation time (epoch milliseconds).
        last:        Time the last message was dispatched (epoch milliseconds).
        handlers:    Active handler table (auth table or full table).
        processes:   Background processes started by this client.
        tasks:       Extra background tasks handlers attached to the connection.
    """

    def __init__(
        self,
        server,
        ws: WebSocket,
        remote_host: str = "",
        remote_port: int | None = None,
        headers: dict[str, str] | None = None,
    ):
        self.server = server
        self.ws = ws
        self.remote_host = remote_host
        self.remote_port = remote_port
        self.headers = dict(headers or {})
        self.start = _now_ms()
        self.last = self.start
        self.handlers: dict[str, Any] = {}
        self.processes = ProcessManager(self)
        self.tasks: set[asyncio.Task] = set()
        self._closed = False

    @classmethod
    def from_websocket(cls, server, ws: WebSocket) -> "ClientConnection":
        """Build a connection from an accepted Starlette WebSocket."""
        host, port = ("", None)
        if ws.client is not None:
            host, port = ws.client.host, ws.client.port
        return cls(server, ws, host, port, dict(ws.headers))

    # -- Transport state -------------------------------------------------------

    def is_open(self) -> bool:
        """True while the WebSocket can send and receive messages."""
        return (
            not self._closed
            and self.ws.client_state == WebSocketState.CONNECTED
            and self.ws.application_state == WebSocketState.CONNECTED
        )

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self, code: int = 1000) -> None:
        """
        Close the connection (safe to call more than once).

        Live background processes receive SIGTERM and handler tasks are
        cancelled.
        """
        if self._closed:
            return
        still_connected = self.is_open()
        self._release()
        if still_connected:
            await self.ws.close(code)
        self.log(1, f"[CLOSE] Connection closed: {self}")

    def transport_closed(self) -> None:
        """Called when the client went away on its own."""
        if self._closed:
            return
        self._release()
        self.log(1, f"[CLOSE] Client disconnected: {self}")

    def _release(self) -> None:
        self._closed = True
        signalled = self.processes.terminate_all()
        if signalled:
            self.log(3, f"[EXEC] {self} terminating {signalled} process(es) on close")
        for task in list(self.tasks):
            task.cancel()
        self.server.forget(self)

    # -- Handlers --------------------------------------------------------------

    def set_handlers(self, handlers: dict[str, Any]) -> None:
        """
        Set the active handler table.

        Args:
            handlers: Mapping of operation name to callback(cc, msg).
        """
        self.handlers = handlers

    @property
    def authenticated(self) -> bool:
        """True once the full handler table is active."""
        return self.handlers is self.server.registry.all_handlers

    def add_task(self, coro: Coroutine) -> asyncio.Task:
        """
        Run a coroutine in the background for as long as the connection
        stays open.
        """
        task = asyncio.create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    # -- Messaging -------------------------------------------------------------

    async def send_obj(self, op: str, obj: dict) -> bool:
        """
        Send a reply message to the client.

        The reply is a new dict: a copy of obj with "op" set. obj itself
        is not modified.

        Args:
            op:  Operation name to put in the reply.
            obj: Reply fields (must be JSON serializable).

        Returns:
            True if the message was handed to the transport, False if the
            connection had already closed.
        """
        reply = dict(obj)
        reply["op"] = op
        msg = json.dumps(reply, ensure_ascii=False, allow_nan=False)

        if not self.is_open():
            self.log(2, f"[SEND] Dropping message to closed connection {self}: op={op}")
            return False

        self.log(8, f"[SEND] message to: {self}, sending: {msg}")
        await self.ws.send_text(msg)
        return True

    def _parse(self, raw: str | bytes) -> tuple[dict, Any]:
        """Decode a frame and find its handler in the active table."""
        try:
            if isinstance(raw, (bytes, bytearray)):
                raw = raw.decode("utf-8")
            msg = json.loads(raw)
        except (UnicodeDecodeError, ValueError) as e:
            raise ProtocolError(f"invalid JSON: {e}") from e

        if not isinstance(msg, dict):
            raise ProtocolError("message is not a JSON object")

        op = msg.get("op")
        if not isinstance(op, str):
            raise ProtocolError("missing operation name")

        handler = self.handlers.get(op)
        if handler is None:
            raise ProtocolError(f"no handler for operation '{op}'")

        return msg, handler

    async def process_message(self, raw: str | bytes) -> bool:
        """
        Dispatch one incoming message.

        NOTE: If the message cannot be dispatched or its handler fails,
        the connection is closed!

        Args:
            raw: The frame payload as received from the client.

        Returns:
            True if the message was handled, False if the connection was
            closed because of it.
        """
        try:
            msg, handler = self._parse(raw)
        except ProtocolError as e:
            self.log(1, f"[PROTOCOL] message from: {self}, ERROR: {e}, message: {raw!r}")
            await self.close()
            return False

        self.log(8, f"[RECV] message from: {self}, received: {raw!r}")

        try:
            result = handler(self, msg)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            self.log(1, f"[FAULT] message from: {self}, handler '{msg['op']}' raised "
                        f"{type(e).__name__}: {e}")
            self.log(1, traceback.format_exc().rstrip())
            await self.close()
            return False

        if isinstance(result, Rejected):
            self.log(1, f"[REJECT] message from: {self}, op '{msg['op']}': {result.reason}")
            await self.close()
            return False

        if isinstance(result, Accepted):
            self.server.set_authenticated(self)

        self.last = _now_ms()
        return True

    # -- Background processes --------------------------------------------------

    async def exec(self, msg: dict, op: str | None = None):
        """Start a background process (see ProcessManager.exec)."""
        return await self.processes.exec(msg, op)

    async def kill(self, msg: dict, op: str | None = None) -> bool:
        """Signal one of this client's processes (see ProcessManager.kill)."""
        return await self.processes.kill(msg, op)

    # -- Status / logging ------------------------------------------------------

    def get_status(self) -> dict:
        """
        Get status information about the client connection.

        Returns:
            Dict with timestamps, active handler names, address, headers
            and the background processes still running.
        """
        now = _now_ms()
        return {
            "start": self.start,
            "last": self.last,
            "age": round((now - self.start) / 1000.0, 3),
            "authenticated": self.authenticated,
            "handlers": list(self.handlers.keys()),
            "remoteAddress": self.remote_host,
            "remotePort": self.remote_port,
            "running": self.processes.running(),
            "headers": self.headers,
        }

    def log(self, level: int, text: str) -> None:
        self.server.logger.log(level, text)

    def __str__(self) -> str:
        """HOST:PORT, with IPv6 hosts inside square brackets."""
        host = self.remote_host or "?"
        if ":" in host:
            host = f"[{host}]"
        return f"{host}:{self.remote_port}"
