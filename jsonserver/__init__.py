"""
JSON Server - Package
=======================
A WebSocket server where every message is a JSON object dispatched by
its "op" field to a registered handler.

This package provides:
- JsonServer: handler registry, configuration and the FastAPI/uvicorn app
- ClientConnection: per-client dispatch, auth gating and replies
- ProcessManager: background processes with streamed output
- AuthManager: bcrypt key + JWT token authentication

Architecture:
    server.py     -> JsonServer, factory handlers, ASGI app, start()
    connection.py -> ClientConnection (dispatch state machine)
    processes.py  -> ProcessManager (exec / kill / exit reporting)
    registry.py   -> Handler tables and handler module loading
    auth.py       -> Accepted / Rejected outcomes, AuthManager, auth handler
    config.py     -> config.yaml + environment -> ServerConfig
    logger.py     -> Verbosity-gated logger
    handlers/     -> Optional handler modules (fs, demo)
"""

from jsonserver.auth import Accepted, AuthManager, Rejected, install_auth_handler
from jsonserver.config import ConfigManager, ServerConfig
from jsonserver.connection import ClientConnection
from jsonserver.processes import ProcessManager
from jsonserver.registry import HandlerLoadError, HandlerRegistry
from jsonserver.server import JsonServer

__all__ = [
    "Accepted",
    "AuthManager",
    "ClientConnection",
    "ConfigManager",
    "HandlerLoadError",
    "HandlerRegistry",
    "JsonServer",
    "ProcessManager",
    "Rejected",
    "ServerConfig",
    "install_auth_handler",
]
