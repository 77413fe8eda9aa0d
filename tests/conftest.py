"""Shared fixtures: an in-memory WebSocket stand-in and connection helpers.

Also makes the project root importable so ``import jsonserver`` works when
tests are run from the repository root without installing the package.
"""

import json
import os
import sys

import pytest
from fastapi.websockets import WebSocketState

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from jsonserver import ClientConnection, JsonServer  # noqa: E402


class FakeWebSocket:
    """Records sent frames and close calls instead of talking to a client."""

    def __init__(self, fail_after: int | None = None):
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[str] = []
        self.close_code: int | None = None
        # Number of frames accepted before send_text starts raising.
        self.fail_after = fail_after

    async def send_text(self, data: str) -> None:
        if self.fail_after is not None and len(self.sent) >= self.fail_after:
            raise RuntimeError("transport send failed")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.close_code = code
        self.application_state = WebSocketState.DISCONNECTED

    @property
    def replies(self) -> list[dict]:
        return [json.loads(m) for m in self.sent]


@pytest.fixture
def server():
    """A quiet server with no handlers installed."""
    return JsonServer({"verbosity": 0})


@pytest.fixture
def make_connection():
    """Factory: attach a new fake-transport connection to a server."""
    def _make(srv: JsonServer) -> ClientConnection:
        cc = ClientConnection(srv, FakeWebSocket(), "127.0.0.1", 50000, {"host": "localhost"})
        srv.accept(cc)
        return cc
    return _make


@pytest.fixture
def cc(server, make_connection):
    return make_connection(server)
