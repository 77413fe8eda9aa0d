"""
JSON Server - Server and ASGI Application
===========================================
Implements a WebSocket server where all data is exchanged as JSON
messages between the client and the server.

Responsibilities:
    - Own the handler registry (full table + optional auth table)
    - Own configuration and the run-time verbosity level
    - Create the FastAPI app whose WebSocket endpoint turns every client
      into a ClientConnection
    - Offer the built-in "factory" handlers (echo, time, status,
      verbosity, exec, kill) through explicit add_*_handler() calls
    - Run the app with uvicorn

Usage:
    server = JsonServer({"port": 9981, "verbosity": 3})
    server.add_echo_handler()
    server.set_auth_handler("auth", check_key)
    server.start()

Every JsonServer keeps its own state, so several independent servers
can live in one process.
"""

import time
from types import ModuleType
from typing import Any

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from jsonserver.config import ServerConfig
from jsonserver.connection import ClientConnection
from jsonserver.logger import ServerLogger
from jsonserver.registry import (
    Handler,
    HandlerRegistry,
    discover_modules,
    install_module,
    load_module_file,
)


class JsonServer:
    """
    JSON message server over WebSockets.

    Attributes:
        config:      Immutable ServerConfig.
        registry:    Full and auth handler tables.
        logger:      Verbosity-gated logger (shared with connections).
        connections: Currently open client connections.
    """

    def __init__(self, config: ServerConfig | dict | None = None):
        """
        Construct (but do not start) the server.

        Args:
            config: ServerConfig, or a dict of options (camelCase names
                    like "bindHost" are accepted). Missing options use
                    the defaults.

        Raises:
            pydantic.ValidationError: If an option has an invalid value.
            HandlerLoadError: If handlerDir is set but cannot be loaded.
        """
        if not isinstance(config, ServerConfig):
            config = ServerConfig.model_validate(config or {})
        self.config = config
        self.registry = HandlerRegistry()
        self.logger = ServerLogger(config.verbosity, config.log_dir)
        self.connections: set[ClientConnection] = set()
        self._app: FastAPI | None = None

        # Load all run time client handlers found in the handler directory
        if config.handler_dir:
            self.load_handlers(config.handler_dir)

    # -- Settings / logging ----------------------------------------------------

    def get_port(self) -> int:
        """Returns the port the server is configured to listen on."""
        return self.config.port

    @property
    def verbosity(self) -> int:
        """Current run-time verbosity level."""
        return self.logger.verbosity

    @verbosity.setter
    def verbosity(self, level: int) -> None:
        self.logger.verbosity = int(level)

    def should_log(self, level: int) -> bool:
        """Determine if a certain verbosity level should be logged."""
        return self.logger.should_log(level)

    def __str__(self) -> str:
        return f"JsonServer:{self.get_port()}"

    # -- Handler registration --------------------------------------------------

    def set_handler(self, name: str, handler: Handler) -> None:
        """
        Set a single JSON message handler.

        This will replace an existing handler with the same name.

        Args:
            name:    The operation name (like: "exec").
            handler: Callback receiving (cc, msg) where cc is the
                     ClientConnection that sent the message and msg the
                     decoded message dict. May be a coroutine function.
        """
        self.registry.set_handler(name, handler)

    def set_auth_handler(self, name: str, handler: Handler) -> None:
        """
        Set a single JSON message handler used during client authentication.

        Once any auth handler is installed, new connections can only use
        the auth handlers until one of them returns Accepted() (or calls
        set_authenticated(cc)). A handler returning Rejected(...) closes
        the connection.

        If no auth handler is installed, every client that can connect
        gets access to all handlers.

        Args:
            name:    The operation name (like: "auth").
            handler: Callback receiving (cc, msg).
        """
        self.registry.set_auth_handler(name, handler)

    def set_authenticated(self, cc: ClientConnection) -> None:
        """
        Indicate that a client connection has authenticated itself.

        After this call the client has access to all of the normal
        message handlers. There is no way back to the auth table.
        """
        cc.set_handlers(self.registry.all_handlers)
        self.logger.log(2, f"[AUTH] Connection authenticated: {cc}")

    def install_handlers(self, *modules: ModuleType | str) -> None:
        """
        Install handler modules chosen by the caller.

        Args:
            modules: Module objects or dotted names, each exposing
                     install_handlers(server).
        """
        for module in modules:
            installed = install_module(module, self)
            self.logger.log(2, f"[HANDLERS] Installed handler module: {installed.__name__}")

    def load_handlers(self, hdir: str) -> None:
        """
        Load every handler module found in a directory.

        Args:
            hdir: Directory to load from (must exist, but does not need to
                  contain any Python files).

        Raises:
            HandlerLoadError: If the directory is missing or a module has
                              no install_handlers() function.
        """
        self.logger.info(f"[HANDLERS] Looking for handlers in: {hdir}")
        for path in discover_modules(hdir):
            self.logger.log(6, f"[HANDLERS] Installing handler: {path}")
            install_module(load_module_file(path), self)
            self.logger.log(2, f"[HANDLERS] Installed handler: {path}")

    # -- Factory handlers ------------------------------------------------------

    def add_echo_handler(self) -> None:
        """Reply with the message exactly as it was received."""
        async def _echo(cc, msg):
            await cc.send_obj("echo", msg)
        self.set_handler("echo", _echo)

    def add_time_handler(self) -> None:
        """Reply with the message plus the server time in epoch millis."""
        async def _time(cc, msg):
            reply = dict(msg)
            reply["time"] = int(time.time() * 1000)
            await cc.send_obj("time", reply)
        self.set_handler("time", _time)

    def add_status_handler(self) -> None:
        """Reply with status information about the client connection."""
        async def _status(cc, msg):
            status = cc.get_status()
            status["server"] = str(self)
            await cc.send_obj("status", status)
        self.set_handler("status", _status)

    def add_verbosity_handler(self) -> None:
        """Query ({}) or change ({"set": n}) the server verbosity."""
        async def _verbosity(cc, msg):
            level = msg.get("set")
            if level is not None:
                self.verbosity = int(level)
            await cc.send_obj("verbosity", {"verbosity": self.verbosity})
        self.set_handler("verbosity", _verbosity)

    def add_exec_handler(self) -> None:
        """
        DANGER: lets clients run any executable the server process can
        access. Output is streamed back asynchronously.
        """
        async def _exec(cc, msg):
            await cc.exec(msg)
        self.set_handler("exec", _exec)

    def add_kill_handler(self) -> None:
        """Lets clients signal processes they started themselves."""
        async def _kill(cc, msg):
            await cc.kill(msg)
        self.set_handler("kill", _kill)

    def add_factory_handlers(self) -> None:
        """Install every built-in handler (including exec and kill)."""
        self.add_status_handler()
        self.add_echo_handler()
        self.add_time_handler()
        self.add_verbosity_handler()
        self.add_exec_handler()
        self.add_kill_handler()

    # -- Connections -----------------------------------------------------------

    def accept(self, cc: ClientConnection) -> None:
        """Register a new connection and give it its initial handler table."""
        self.connections.add(cc)
        cc.set_handlers(self.registry.initial_handlers())
        self.logger.info(f"[CONNECT] New connection from: {cc}")

    def forget(self, cc: ClientConnection) -> None:
        """Drop a connection from the live set."""
        self.connections.discard(cc)

    async def serve_connection(self, websocket: WebSocket) -> None:
        """
        Run the receive loop of one WebSocket client.

        Messages are dispatched one at a time in arrival order.
        """
        await websocket.accept()
        cc = ClientConnection.from_websocket(self, websocket)
        self.accept(cc)
        try:
            while cc.is_open():
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                await cc.process_message(raw)
        except WebSocketDisconnect:
            pass
        finally:
            cc.transport_closed()

    def create_app(self) -> FastAPI:
        """
        Create the FastAPI application serving this server.

        Routes:
            /        WebSocket endpoint for JSON messages
            /health  Liveness check (GET)
        """
        if self._app is not None:
            return self._app

        app = FastAPI(
            title="JSON WebSocket Server",
            description="JSON message server with background process streaming",
            version="1.0.0",
            docs_url=None,
            redoc_url=None,
        )
        app.state.json_server = self

        @app.websocket("/")
        async def websocket_endpoint(websocket: WebSocket):
            await self.serve_connection(websocket)

        @app.get("/health")
        async def health() -> dict[str, Any]:
            return {"status": "ok", "connections": len(self.connections)}

        self._app = app
        return app

    def start(self) -> None:
        """Start running the server and accepting client connections (blocks)."""
        port = self.get_port()
        host = self.config.bind_host or "0.0.0.0"
        self.logger.info(f"[START] Starting WebSocket server on {host}:{port}")

        if not self.registry.requires_auth:
            self.logger.warning("No authentication handler configured - allowing ALL connections")

        uvicorn.run(
            self.create_app(),
            host=host,
            port=port,
            log_level="info" if self.should_log(2) else "warning",
        )
