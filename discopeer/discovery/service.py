# discopeer/discovery/service.py
"""
Protocolo de mutación y consulta del registro.

Cada operación sobre un mismo `groupKey` se ejecuta dentro de su propia
sección crítica (leer → modificar → escribir → notificar), de modo que
dos registros concurrentes nunca pisan la lista del otro. Grupos
distintos no comparten cerrojo.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

from ..errors import NotFoundError
from .peers import (
    PeerRecord,
    RegisterRequest,
    filter_active_peers,
    max_ttl,
    now_ms,
    resolve_peer_id,
    split_active,
)
from .registry import RegistryStore

logger = logging.getLogger(__name__)

PeerView = Dict[str, Any]
Notifier = Callable[[str, List[PeerView]], None]


@dataclass(slots=True, frozen=True)
class Registration:
    peer_id: str
    ttl: int
    source_address: str


class _KeyedLocks:
    """Un `threading.Lock` por clave, eliminado cuando nadie lo usa."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, users + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                _, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


def _no_notify(key: str, peers: List[PeerView]) -> None:
    return None


class PeerService:
    """Registro, heartbeat, baja y descubrimiento sobre un `RegistryStore`."""

    def __init__(
        self,
        store: RegistryStore,
        notify: Notifier | None = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.store = store
        self._notify: Notifier = notify or _no_notify
        self._clock = clock or now_ms
        self._locks = _KeyedLocks()

    # ------------------------------------------------------------------ #
    # Mutaciones
    # ------------------------------------------------------------------ #
    def register(self, key: str, req: RegisterRequest, source_address: str) -> Registration:
        """Alta o actualización (upsert por `peerId`) de un peer en el grupo."""
        peer_id = resolve_peer_id(req, source_address)
        with self._locks.hold(key):
            now = self._clock()
            peers = [p for p in (self.store.get(key) or []) if p.peer_id != peer_id]
            peers.append(
                PeerRecord(
                    name=req.name,
                    endpoint=req.endpoint,
                    ttl=req.ttl,
                    metadata=req.metadata,
                    peer_id=peer_id,
                    source_address=source_address,
                    registered_at=now,
                )
            )
            self.store.put(key, peers, max_ttl(peers))
            self._publish(key, peers, now)
        logger.debug("Peer %s registrado (ttl=%ss, origen=%s)", peer_id, req.ttl, source_address)
        return Registration(peer_id=peer_id, ttl=req.ttl, source_address=source_address)

    def heartbeat(self, key: str, peer_id: str) -> None:
        """Refresca `registeredAt`. No notifica: sólo cambia la edad."""
        with self._locks.hold(key):
            peers = self.store.get(key) or []
            for idx, peer in enumerate(peers):
                if peer.peer_id == peer_id:
                    break
            else:
                raise NotFoundError("Peer not found")
            peers[idx] = replace(peer, registered_at=self._clock())
            self.store.put(key, peers, max_ttl(peers))

    def unsubscribe(self, key: str, peer_id: str) -> None:
        """Baja idempotente; borra el grupo si queda vacío y notifica siempre."""
        with self._locks.hold(key):
            peers = [p for p in (self.store.get(key) or []) if p.peer_id != peer_id]
            if peers:
                self.store.put(key, peers, max_ttl(peers))
            else:
                self.store.delete(key)
            self._publish(key, peers, self._clock())

    # ------------------------------------------------------------------ #
    # Consultas
    # ------------------------------------------------------------------ #
    def discover(self, key: str) -> List[PeerView]:
        """
        Vista pública de los peers vivos del grupo.

        Si el filtro descarta a alguien, la lista podada se escribe de
        vuelta (o se borra el grupo) y se notifica a los observadores,
        para que nunca vean algo más viejo que un cliente que consulta.
        """
        with self._locks.hold(key):
            now = self._clock()
            peers = self.store.get(key) or []
            active = split_active(peers, now)
            if len(active) < len(peers):
                if active:
                    self.store.put(key, active, max_ttl(active))
                else:
                    self.store.delete(key)
                self._publish(key, active, now)
            return filter_active_peers(active, now)

    def view(self, key: str) -> List[PeerView]:
        """Vista filtrada sin escribir de vuelta (catch-up de suscriptores)."""
        now = self._clock()
        return filter_active_peers(self.store.get(key) or [], now)

    # ------------------------------------------------------------------ #
    # Snapshot
    # ------------------------------------------------------------------ #
    def load_snapshot(self, groups: Mapping[str, List[Any]]) -> int:
        """
        Carga masiva `groupKey → miembros` (dicts o `PeerRecord`).

        Aplica el filtro de expiración antes de insertar y descarta los
        grupos que quedan vacíos. Devuelve el número de grupos cargados.
        """
        loaded = 0
        for key, raw_members in groups.items():
            members: List[PeerRecord] = []
            for raw in raw_members or []:
                if isinstance(raw, PeerRecord):
                    members.append(raw)
                    continue
                try:
                    members.append(PeerRecord.from_dict(raw))
                except ValueError as exc:
                    logger.warning("Snapshot: se descarta un peer del grupo %s…: %s", key[:8], exc)
            with self._locks.hold(key):
                active = split_active(members, self._clock())
                if not active:
                    continue
                self.store.put(key, active, max_ttl(active))
            loaded += 1
        return loaded

    def dump_snapshot(self) -> Dict[str, List[Dict[str, Any]]]:
        """Todos los grupos tal cual (sin filtrar), listos para serializar."""
        return {key: [p.to_dict() for p in members] for key, members in self.store.items()}

    # ------------------------------------------------------------------ #
    def group_count(self) -> int:
        return len(self.store)

    def purge_expired(self) -> int:
        """Barre los grupos caducados del registro; devuelve cuántos se eliminaron."""
        removed = self.store.purge()
        if removed:
            logger.debug("Mantenimiento: %d grupos caducados eliminados", removed)
        return removed

    def _publish(self, key: str, peers: List[PeerRecord], now: int) -> None:
        self._notify(key, filter_active_peers(peers, now))


__all__ = ["PeerService", "PeerView", "Registration", "Notifier"]
