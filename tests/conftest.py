"""
Fixtures compartidos por toda la suite PyTest.

Objetivo → correr los tests **sin** red ni reloj real: el registro usa un
reloj falso en milisegundos y la app se construye con `create_app()`.
"""
from __future__ import annotations

import asyncio
from typing import Iterator, List

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketState

from discopeer.config import Config
from discopeer.server.api import create_app

_ENV_VARS = (
    "HOST", "PORT", "HOME_URL", "API_KEY", "MDNS_ANNOUNCE", "MAX_GROUPS",
    "MAX_GROUP_AGE", "PERSISTENCE_FILE", "SNAPSHOT_INTERVAL", "RATE_LIMIT_MAX",
    "RATE_LIMIT_WINDOW", "FORWARDED_HOP", "CORS_ORIGINS",
)


# ════════════════════════════════════════════════════════════════════════════
# Entorno limpio: ninguna variable del host debe alterar `Config`
# ════════════════════════════════════════════════════════════════════════════
@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


# ════════════════════════════════════════════════════════════════════════════
# Reloj falso (ms)
# ════════════════════════════════════════════════════════════════════════════
class FakeClock:
    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ════════════════════════════════════════════════════════════════════════════
# App + TestClient (ejecuta el lifespan)
# ════════════════════════════════════════════════════════════════════════════
@pytest.fixture
def config() -> Config:
    return Config(rate_limit_max=0)


@pytest.fixture
def client(config: Config, clock: FakeClock) -> Iterator[TestClient]:
    app = create_app(config, clock=clock)
    with TestClient(app) as c:
        yield c


# ════════════════════════════════════════════════════════════════════════════
# WebSocket en memoria para el hub
# ════════════════════════════════════════════════════════════════════════════
class FakeWebSocket:
    """Imita la parte de `fastapi.WebSocket` que usa el hub."""

    def __init__(self, fail: bool = False, block: bool = False) -> None:
        self.client_state = WebSocketState.CONNECTED
        self.sent: List[str] = []
        self.inbox: asyncio.Queue[str] = asyncio.Queue()
        self.closed_with: int | None = None
        self._fail = fail
        self._block = block

    async def send_text(self, data: str) -> None:
        if self._fail:
            raise RuntimeError("connection reset")
        if self._block:
            await asyncio.Event().wait()
        self.sent.append(data)
        await self.inbox.put(data)

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code
        self.client_state = WebSocketState.DISCONNECTED


@pytest.fixture
def fake_ws():
    """Fábrica de `FakeWebSocket` (se instancia dentro del loop del test)."""
    return FakeWebSocket
