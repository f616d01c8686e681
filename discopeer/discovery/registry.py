# discopeer/discovery/registry.py
from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from .peers import PeerRecord, now_ms

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY: int = 10_000
DEFAULT_MAX_AGE_S: int = 24 * 60 * 60


@dataclass(slots=True)
class _Entry:
    members: List[PeerRecord]
    ttl: int
    expires_at: int


class RegistryStore:
    """
    Mapa acotado `groupKey → [PeerRecord]` con TTL por grupo y desalojo LRU.

    * El TTL del grupo se recorta a `max_age` segundos.
    * `put` con lista vacía equivale a `delete`: nunca se guarda un grupo vacío.
    * Al superar `capacity` se desaloja el grupo menos usado recientemente
      (por acceso al store, no por la edad de sus miembros).
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        max_age: int = DEFAULT_MAX_AGE_S,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity debe ser >= 1")
        self.capacity = capacity
        self.max_age = max_age
        self._clock = clock or now_ms
        self._lock = threading.Lock()
        self._store: "OrderedDict[str, _Entry]" = OrderedDict()

    def get(self, key: str) -> Optional[List[PeerRecord]]:
        with self._lock:
            entry = self._live_entry_locked(key, self._clock())
            if entry is None:
                return None
            self._store.move_to_end(key)
            return list(entry.members)

    def put(self, key: str, members: Sequence[PeerRecord], ttl: int) -> None:
        if not members:
            self.delete(key)
            return
        now = self._clock()
        # ttl 0 → se aplica el techo global (el grupo caduca por sus miembros)
        effective = min(ttl, self.max_age) if ttl > 0 else self.max_age
        with self._lock:
            self._store[key] = _Entry(list(members), ttl, now + effective * 1000)
            self._store.move_to_end(key)
            self._evict_locked(now)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._store.pop(key, None) is not None

    def group_ttl(self, key: str) -> Optional[int]:
        """TTL (sin recortar) registrado en la última escritura del grupo."""
        with self._lock:
            entry = self._live_entry_locked(key, self._clock())
            return entry.ttl if entry else None

    def items(self) -> Iterator[Tuple[str, List[PeerRecord]]]:
        """Copia de los grupos vigentes, sin filtrar miembros ni tocar el orden LRU."""
        with self._lock:
            now = self._clock()
            snapshot = [(k, list(e.members)) for k, e in self._store.items() if e.expires_at > now]
        return iter(snapshot)

    def to_dict(self) -> Dict[str, List[PeerRecord]]:
        return dict(self.items())

    def purge(self) -> int:
        """Elimina todos los grupos caducados. O(N): sólo para mantenimiento periódico."""
        with self._lock:
            return self._purge_locked(self._clock())

    def __len__(self) -> int:
        # incluye grupos caducados que nadie ha tocado desde entonces (ver `purge`)
        with self._lock:
            return len(self._store)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return isinstance(key, str) and self._live_entry_locked(key, self._clock()) is not None

    # ------------------------------------------------------------------ #
    def _live_entry_locked(self, key: str, now: int) -> Optional[_Entry]:
        entry = self._store.get(key)
        if entry is not None and entry.expires_at <= now:
            self._store.pop(key, None)
            return None
        return entry

    def _evict_locked(self, now: int) -> None:
        # sólo se mira la cabeza LRU: coste constante por inserción
        while len(self._store) > self.capacity:
            evicted, entry = self._store.popitem(last=False)
            if entry.expires_at <= now:
                logger.debug("Grupo %s… caducado, liberado al insertar", evicted[:8])
            else:
                logger.debug("Grupo %s… desalojado por capacidad (%d)", evicted[:8], self.capacity)

    def _purge_locked(self, now: int) -> int:
        expired = [k for k, e in self._store.items() if e.expires_at <= now]
        for k in expired:
            self._store.pop(k, None)
        return len(expired)
