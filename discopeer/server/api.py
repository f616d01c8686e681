# discopeer/server/api.py
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, RedirectResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..config import Config
from ..discovery import PeerService, RegistryStore, parse_registration
from ..discovery import mdns
from ..errors import DiscopeerError, InternalError, ValidationError
from .hub import Observer, SubscriptionHub
from .security import RateLimiter, add_cors_middleware, api_key_auth, client_address, rate_limit
from .snapshot import SnapshotManager

logger = logging.getLogger(__name__)

_MAINTENANCE_INTERVAL_S = 60


# --------------------------------------------------------------------------- #
# Ciclo de vida
# --------------------------------------------------------------------------- #
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Construye el registro, el hub y la persistencia; los libera al parar."""
    config: Config = app.state.config
    clock: Optional[Callable[[], int]] = app.state.clock
    store = RegistryStore(config.max_groups, config.max_group_age, clock=clock)
    hub = SubscriptionHub()
    service = PeerService(store, notify=hub.publish, clock=clock)

    app.state.store = store
    app.state.hub = hub
    app.state.service = service
    app.state.rate_limiter = RateLimiter(config.rate_limit_max, config.rate_limit_window)
    app.state.snapshot = None

    if config.persistence_file:
        snapshot = SnapshotManager(config.persistence_file)
        snapshot.ensure_directory()
        loaded = service.load_snapshot(snapshot.load())
        snapshot.groups_loaded = loaded
        logger.info("Loaded %d peer groups from %s", loaded, snapshot.filepath)
        app.state.snapshot = snapshot

    if config.mdns_announce:
        await asyncio.to_thread(mdns.announce_self, config.port, f"discopeer {__version__}")

    maintenance = asyncio.create_task(_maintenance(app), name="discopeer-maintenance")
    logger.info("discopeer listo: %r", config)
    try:
        yield
    finally:
        maintenance.cancel()
        with suppress(asyncio.CancelledError):
            await maintenance
        await hub.shutdown()
        if app.state.snapshot is not None:
            try:
                await _save_snapshot(app)
            except InternalError as exc:
                logger.error("%s", exc.message)
        if config.mdns_announce:
            await asyncio.to_thread(mdns.withdraw)


async def _save_snapshot(app: FastAPI) -> int:
    groups = app.state.service.dump_snapshot()
    return await asyncio.to_thread(app.state.snapshot.save, groups)


def _sweep(app: FastAPI) -> None:
    """Poda el rate-limiter y los grupos caducados del registro."""
    app.state.rate_limiter.prune()
    app.state.service.purge_expired()


async def _maintenance(app: FastAPI) -> None:
    """Barrido periódico y, si está configurado, snapshots cada `snapshot_interval` s."""
    config: Config = app.state.config
    interval = min(_MAINTENANCE_INTERVAL_S, config.snapshot_interval or _MAINTENANCE_INTERVAL_S)
    since_save = 0
    while True:
        await asyncio.sleep(interval)
        _sweep(app)
        if app.state.snapshot is None or not config.snapshot_interval:
            continue
        since_save += interval
        if since_save < config.snapshot_interval:
            continue
        since_save = 0
        try:
            await _save_snapshot(app)
        except InternalError as exc:
            logger.error("%s", exc.message)


# --------------------------------------------------------------------------- #
# Manejo de errores
# --------------------------------------------------------------------------- #
async def _discopeer_error(request: Request, exc: DiscopeerError) -> JSONResponse:
    if isinstance(exc, InternalError):
        logger.error("Error interno en %s %s: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=getattr(exc, "headers", None))


async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Error no controlado en %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# --------------------------------------------------------------------------- #
# Rutas HTTP
# --------------------------------------------------------------------------- #
router = APIRouter(dependencies=[Depends(rate_limit)])


def _service(request: Request) -> PeerService:
    return request.app.state.service


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Invalid request body") from None


async def root(request: Request) -> RedirectResponse:
    return RedirectResponse(request.app.state.config.home_url, status_code=301)


@router.post("/subscribe/{secret_hash}")
async def subscribe(secret_hash: str, request: Request) -> Dict[str, Any]:
    """Registra (o actualiza) un peer en el grupo `secret_hash`."""
    req = parse_registration(await _read_json(request))
    source = client_address(request, request.app.state.config.forwarded_hop)
    reg = _service(request).register(secret_hash, req, source)
    return {
        "message": "Successfully registered",
        "peerId": reg.peer_id,
        "ttl": reg.ttl,
        "sourceAddress": reg.source_address,
    }


@router.get("/discovery/{secret_hash}")
async def discovery(secret_hash: str, request: Request) -> Dict[str, Any]:
    return {"peers": _service(request).discover(secret_hash)}


@router.get("/discovery/{secret_hash}/ndjson")
async def discovery_ndjson(secret_hash: str, request: Request) -> StreamingResponse:
    """Mismos datos que `/discovery`, un objeto JSON por línea."""
    peers = _service(request).discover(secret_hash)

    async def streamer() -> AsyncIterator[str]:
        for peer in peers:
            yield json.dumps(peer) + "\n"

    return StreamingResponse(streamer(), media_type="application/x-ndjson")


@router.post("/heartbeat/{secret_hash}/{peer_id}")
async def heartbeat(secret_hash: str, peer_id: str, request: Request) -> Dict[str, Any]:
    _service(request).heartbeat(secret_hash, peer_id)
    return {"message": "Heartbeat received"}


@router.delete("/unsubscribe/{secret_hash}/{peer_id}")
async def unsubscribe(secret_hash: str, peer_id: str, request: Request) -> Dict[str, Any]:
    _service(request).unsubscribe(secret_hash, peer_id)
    return {"message": "Successfully unsubscribed"}


@router.get("/health")
async def health(request: Request) -> Dict[str, Any]:
    state = request.app.state
    hub: SubscriptionHub = state.hub
    return {
        "status": "healthy",
        "cacheSize": state.service.group_count(),
        "activeWebSocketConnections": hub.observer_count,
        "activeHashGroups": hub.key_count,
        "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        "persistence": state.snapshot.get_stats() if state.snapshot else None,
    }


@router.get("/snapshot", dependencies=[Depends(api_key_auth)])
async def read_snapshot(request: Request) -> Dict[str, Any]:
    """Volcado literal del registro (sin filtrar expirados)."""
    return _service(request).dump_snapshot()


@router.post("/snapshot", dependencies=[Depends(api_key_auth)])
async def save_snapshot(request: Request) -> Dict[str, Any]:
    if request.app.state.snapshot is None:
        raise HTTPException(status_code=409, detail="Persistence is not enabled. Set PERSISTENCE_FILE.")
    saved = await _save_snapshot(request.app)
    return {"message": "Snapshot saved", "groups": saved}


# --------------------------------------------------------------------------- #
# WebSocket: suscripción en tiempo real
# --------------------------------------------------------------------------- #
def _handle_ws_message(websocket: WebSocket, observer: Observer, raw: str) -> None:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Mensaje WebSocket inválido de %s", observer.id)
        return
    if not isinstance(data, dict) or data.get("type") != "subscribe":
        logger.debug("Mensaje ignorado de %s: %r", observer.id, data)
        return
    key = data.get("hash")
    if not isinstance(key, str) or not key:
        logger.debug("Suscripción sin hash de %s", observer.id)
        return
    service: PeerService = websocket.app.state.service
    websocket.app.state.hub.subscribe(observer, key, service.view(key))


async def peers_ws(websocket: WebSocket) -> None:
    """
    Canal persistente: el cliente envía `{"type": "subscribe", "hash": ...}`
    y recibe `{"type": "peers", "peers": [...]}` ahora y en cada cambio.
    """
    await websocket.accept()
    hub: SubscriptionHub = websocket.app.state.hub
    observer = await hub.connect(websocket)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None and message.get("bytes") is not None:
                raw = message["bytes"].decode("utf-8", errors="replace")
            if raw is not None:
                _handle_ws_message(websocket, observer, raw)
    except WebSocketDisconnect:
        logger.debug("Observador %s cerró la conexión", observer.id)
    finally:
        hub.disconnect(observer)


# --------------------------------------------------------------------------- #
# Fábrica
# --------------------------------------------------------------------------- #
def create_app(config: Config | None = None, clock: Optional[Callable[[], int]] = None) -> FastAPI:
    """Crea la aplicación. `clock` (ms) sólo se inyecta en tests."""
    config = config or Config()
    app = FastAPI(
        title="discopeer – rendezvous de peers",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.clock = clock

    add_cors_middleware(app, config.cors_origins)
    app.add_exception_handler(DiscopeerError, _discopeer_error)
    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.add_exception_handler(Exception, _unexpected_error)

    # la redirección de la raíz queda fuera del rate-limit
    app.add_api_route("/", root, methods=["GET"], include_in_schema=False)
    app.include_router(router)
    app.add_api_websocket_route("/", peers_ws)
    app.add_api_websocket_route("/ws", peers_ws)
    return app


app = create_app()
