# discopeer/server/security.py
from __future__ import annotations

import time
from collections import defaultdict
from typing import Iterable

from fastapi import Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.requests import HTTPConnection

# --------------------------------------------------------------------------- #
# API-Key (rutas de administración)
# --------------------------------------------------------------------------- #
def api_key_auth(request: Request, x_api_key: str | None = Header(None, alias="X-API-Key")):
    """
    Valida que `X-API-Key` coincida con `config.api_key`.
    Sin `API_KEY` configurada las rutas de administración quedan deshabilitadas.
    """
    config = getattr(request.app.state, "config", None)
    if config is None:
        raise HTTPException(status_code=503, detail="Server is starting up, please wait.")
    if not config.api_key:
        raise HTTPException(status_code=403, detail="Admin API disabled")
    if x_api_key != config.api_key:
        raise HTTPException(status_code=401, detail="Bad API key")


# --------------------------------------------------------------------------- #
# CORS helper
# --------------------------------------------------------------------------- #
def add_cors_middleware(app, allowed_origins: Iterable[str] | None = None) -> None:
    origins = list(allowed_origins) if allowed_origins is not None else ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )


# --------------------------------------------------------------------------- #
# Dirección del cliente
# --------------------------------------------------------------------------- #
def _clean_ip(raw: str) -> str:
    ip = raw.strip()
    if ip.startswith("::ffff:"):
        ip = ip[7:]
    if "," in ip:
        ip = ip.split(",")[-1].strip()
    return ip


def client_ip(conn: HTTPConnection, forwarded_hop: str = "last") -> str:
    """
    IP del cliente. Con `X-Forwarded-For` se toma el último salto (`last`)
    o el primero (`first`); `none` ignora la cabecera.
    """
    header = conn.headers.get("x-forwarded-for")
    if header and forwarded_hop != "none":
        hops = [h.strip() for h in header.split(",") if h.strip()]
        if hops:
            return _clean_ip(hops[-1] if forwarded_hop == "last" else hops[0])
    host = conn.client.host if conn.client else ""
    return _clean_ip(host) if host else "unknown"


def client_address(conn: HTTPConnection, forwarded_hop: str = "last") -> str:
    """`"<ip>:<port>"` estable; el puerto siempre es el del socket."""
    port = conn.client.port if conn.client else 0
    return f"{client_ip(conn, forwarded_hop)}:{port}"


# --------------------------------------------------------------------------- #
# Rate-limit por IP (ventana deslizante)
# --------------------------------------------------------------------------- #
class RateLimiter:
    def __init__(self, max_requests: int, window_s: int) -> None:
        self.max_requests = max_requests
        self.window_s = window_s
        self._requests: dict[str, list[float]] = defaultdict(list)

    @property
    def enabled(self) -> bool:
        return self.max_requests > 0

    def hit(self, key: str, now: float | None = None) -> bool:
        """Registra una petición; devuelve False si `key` excede el límite."""
        if not self.enabled:
            return True
        now = time.monotonic() if now is None else now
        window_start = now - self.window_s
        recent = [t for t in self._requests[key] if t > window_start]
        if len(recent) >= self.max_requests:
            self._requests[key] = recent
            return False
        recent.append(now)
        self._requests[key] = recent
        return True

    def prune(self, now: float | None = None) -> None:
        now = time.monotonic() if now is None else now
        window_start = now - self.window_s
        for key in [k for k, ts in self._requests.items() if not ts or ts[-1] <= window_start]:
            del self._requests[key]


async def rate_limit(request: Request) -> None:
    limiter: RateLimiter | None = getattr(request.app.state, "rate_limiter", None)
    if limiter is None or not limiter.enabled:
        return
    hop = request.app.state.config.forwarded_hop
    if not limiter.hit(client_ip(request, hop)):
        raise HTTPException(status_code=429, detail="Too many requests, please try again later.")
