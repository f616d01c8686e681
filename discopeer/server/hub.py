# discopeer/server/hub.py
"""
Fan-out de suscripciones: `groupKey → {Observer}`.

Cada observador (una conexión WebSocket) está suscrito a lo sumo a un
grupo. Las notificaciones se encolan en el *outbox* del observador y un
task por conexión las escribe en orden; así una conexión lenta nunca
bloquea la mutación que la originó ni a los demás observadores.
Entrega "at-most-once": si el outbox se llena o el envío falla, el
observador se descarta (el cliente se resincroniza re-suscribiéndose).
"""
from __future__ import annotations

import asyncio
import json
import logging
import threading
import uuid
from typing import Any, Dict, List, Optional, Set

from fastapi import WebSocket
from starlette.websockets import WebSocketState

logger = logging.getLogger(__name__)

OUTBOX_SIZE: int = 64


class Observer:
    """Estado explícito de una conexión: `{connection, subscribedKey}`."""

    def __init__(self, websocket: WebSocket) -> None:
        self.id: str = uuid.uuid4().hex[:8]
        self.websocket = websocket
        self.key: Optional[str] = None
        self.outbox: asyncio.Queue[str] = asyncio.Queue(maxsize=OUTBOX_SIZE)
        self.writer: Optional[asyncio.Task] = None
        self.closed: bool = False

    async def send(self, message: str) -> None:
        if self.websocket.client_state != WebSocketState.CONNECTED:
            raise ConnectionError("websocket no conectado")
        await self.websocket.send_text(message)

    def __repr__(self) -> str:
        return f"<Observer {self.id} key={self.key[:8] + '…' if self.key else None}>"


def peers_message(peers: List[Dict[str, Any]]) -> str:
    return json.dumps({"type": "peers", "peers": peers})


class SubscriptionHub:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subs: Dict[str, Set[Observer]] = {}
        self._observers: Set[Observer] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._closing: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------ #
    # Ciclo de vida de un observador
    # ------------------------------------------------------------------ #
    async def connect(self, websocket: WebSocket) -> Observer:
        """Registra la conexión y arranca su task escritor."""
        self._loop = asyncio.get_running_loop()
        observer = Observer(websocket)
        observer.writer = asyncio.create_task(self._writer(observer), name=f"discopeer-ws-{observer.id}")
        with self._lock:
            self._observers.add(observer)
        logger.debug("Observador %s conectado (%d activos)", observer.id, len(self._observers))
        return observer

    def subscribe(self, observer: Observer, key: str, peers: List[Dict[str, Any]]) -> None:
        """Mueve al observador a `key` y le encola la vista actual (catch-up)."""
        with self._lock:
            if observer.closed:
                return
            self._detach_locked(observer)
            observer.key = key
            self._subs.setdefault(key, set()).add(observer)
        self._enqueue(observer, peers_message(peers))

    def disconnect(self, observer: Observer) -> None:
        """Idempotente. Cancela el escritor salvo que sea quien llama."""
        with self._lock:
            if observer.closed:
                return
            observer.closed = True
            self._detach_locked(observer)
            self._observers.discard(observer)
        writer = observer.writer
        if writer is not None and not writer.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if writer is not current:
                writer.cancel()
        logger.debug("Observador %s desconectado", observer.id)

    # ------------------------------------------------------------------ #
    # Publicación
    # ------------------------------------------------------------------ #
    def publish(self, key: str, peers: List[Dict[str, Any]]) -> int:
        """
        Encola la vista `peers` para todos los observadores de `key`.

        Puede llamarse desde el event loop o desde otro hilo. Devuelve el
        número de observadores a los que se les encoló el mensaje.
        """
        with self._lock:
            targets = list(self._subs.get(key, ()))
        if not targets:
            return 0
        message = peers_message(peers)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is None and self._loop is not None and not self._loop.is_closed():
            for obs in targets:
                self._loop.call_soon_threadsafe(self._enqueue, obs, message)
        else:
            for obs in targets:
                self._enqueue(obs, message)
        return len(targets)

    def _enqueue(self, observer: Observer, message: str) -> None:
        if observer.closed:
            return
        try:
            observer.outbox.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Observador %s saturado; se descarta.", observer.id)
            self.disconnect(observer)
            task = asyncio.get_running_loop().create_task(self._close(observer, code=1013))
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)

    async def _writer(self, observer: Observer) -> None:
        while True:
            message = await observer.outbox.get()
            try:
                await observer.send(message)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.debug("Envío a %s falló (%r); se descarta.", observer.id, exc)
                self.disconnect(observer)
                return

    async def _close(self, observer: Observer, code: int = 1000) -> None:
        if observer.websocket.client_state != WebSocketState.CONNECTED:
            return
        try:
            await observer.websocket.close(code=code)
        except RuntimeError as exc:
            logger.debug("Cierre de %s ignorado: %s", observer.id, exc)

    async def shutdown(self) -> None:
        """Desconecta a todos los observadores y espera a sus escritores."""
        with self._lock:
            observers = list(self._observers)
        for obs in observers:
            self.disconnect(obs)
        writers = [o.writer for o in observers if o.writer is not None]
        await asyncio.gather(*writers, return_exceptions=True)
        logger.info("SubscriptionHub terminado (%d observadores).", len(observers))

    # ------------------------------------------------------------------ #
    @property
    def observer_count(self) -> int:
        with self._lock:
            return len(self._observers)

    @property
    def key_count(self) -> int:
        with self._lock:
            return len(self._subs)

    def subscribers(self, key: str) -> int:
        with self._lock:
            return len(self._subs.get(key, ()))

    def _detach_locked(self, observer: Observer) -> None:
        if observer.key is None:
            return
        subs = self._subs.get(observer.key)
        if subs is not None:
            subs.discard(observer)
            if not subs:
                del self._subs[observer.key]
        observer.key = None
