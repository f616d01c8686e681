# discopeer/discovery/peers.py
"""
discopeer.discovery.peers
=========================

Modelo de un *peer* anunciado y las funciones puras que operan sobre él:

* `parse_registration` – valida el cuerpo de un registro (pydantic).
* `resolve_peer_id` / `derive_peer_id` – identidad estable dentro del grupo.
* `split_active` / `filter_active_peers` – filtro de expiración y vista pública.

Todas las marcas de tiempo son milisegundos (enteros) desde la época Unix;
los TTL son segundos enteros.
"""
from __future__ import annotations

import hashlib
import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictStr, field_validator
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError

DEFAULT_TTL_S: int = 300
PEER_ID_LENGTH: int = 32

_FIELD_ERRORS: Dict[str, str] = {
    "name": "Invalid name parameter",
    "endpoint": "Invalid endpoint parameter",
    "ttl": "Invalid TTL parameter",
    "metadata": "Invalid metadata format",
    "peerId": "Invalid peerId format",
}


def now_ms() -> int:
    return int(time.time() * 1000)


# ──────────────────────────────────────────────────────────────────────────────
# Modelo
# ──────────────────────────────────────────────────────────────────────────────
@dataclass(slots=True)
class PeerRecord:
    """Presencia de un peer dentro de un grupo."""

    name: str
    endpoint: str
    peer_id: str
    source_address: str
    registered_at: int
    ttl: int = DEFAULT_TTL_S
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_active(self, now: int) -> bool:
        return now - self.registered_at < self.ttl * 1000

    def age(self, now: int) -> int:
        # redondeo "half-up", no el de banquero de round()
        return int(math.floor((now - self.registered_at) / 1000 + 0.5))

    def to_public(self, now: int) -> Dict[str, Any]:
        return {
            "name": self.name,
            "endpoint": self.endpoint,
            "sourceAddress": self.source_address,
            "peerId": self.peer_id,
            "metadata": self.metadata,
            "age": self.age(now),
        }

    def to_dict(self) -> Dict[str, Any]:
        """Forma persistida (snapshot), sin pérdida de campos."""
        return {
            "name": self.name,
            "endpoint": self.endpoint,
            "ttl": self.ttl,
            "metadata": self.metadata,
            "peerId": self.peer_id,
            "sourceAddress": self.source_address,
            "registeredAt": self.registered_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PeerRecord":
        """Inverso de `to_dict`. Lanza `ValueError` si el registro está corrupto."""
        try:
            return cls(
                name=str(data["name"]),
                endpoint=str(data["endpoint"]),
                ttl=int(data.get("ttl", DEFAULT_TTL_S)),
                metadata=dict(data.get("metadata") or {}),
                peer_id=str(data["peerId"]),
                source_address=str(data.get("sourceAddress", "")),
                registered_at=int(data["registeredAt"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Registro de peer inválido: {exc}") from exc


# ──────────────────────────────────────────────────────────────────────────────
# Validación de entrada
# ──────────────────────────────────────────────────────────────────────────────
class RegisterRequest(BaseModel):
    """Cuerpo JSON de `POST /subscribe/{hash}`."""

    model_config = ConfigDict(extra="ignore")

    name: StrictStr = Field(..., min_length=1, description="Nombre legible del peer.")
    endpoint: StrictStr = Field(..., min_length=1, description="Dirección opaca donde contactar al peer.")
    ttl: int = Field(DEFAULT_TTL_S, ge=0, description="Segundos de vida sin heartbeat.")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Datos arbitrarios del peer.")
    peerId: Optional[StrictStr] = Field(None, description="Identificador estable elegido por el cliente.")

    @field_validator("ttl", mode="before")
    @classmethod
    def _coerce_ttl(cls, v: Any) -> Any:
        if v is None:
            return DEFAULT_TTL_S
        if isinstance(v, bool):
            raise ValueError("ttl must be an integer")
        if isinstance(v, str):
            return int(v.strip())
        if isinstance(v, float):
            if not v.is_integer():
                raise ValueError("ttl must be an integer")
            return int(v)
        return v

    @field_validator("metadata", mode="before")
    @classmethod
    def _default_metadata(cls, v: Any) -> Any:
        return {} if v is None else v

    @field_validator("peerId", mode="before")
    @classmethod
    def _empty_peer_id(cls, v: Any) -> Any:
        return None if v == "" else v


def parse_registration(body: Any) -> RegisterRequest:
    """
    Valida `body` y devuelve un `RegisterRequest`.

    Traduce el primer error de pydantic a un `ValidationError` con el
    mensaje propio del campo, antes de tocar el registro.
    """
    if not isinstance(body, dict):
        raise ValidationError("Invalid request body")
    try:
        return RegisterRequest.model_validate(body)
    except PydanticValidationError as exc:
        errors = exc.errors()
        loc = errors[0]["loc"] if errors else ()
        fld = str(loc[0]) if loc else ""
        raise ValidationError(_FIELD_ERRORS.get(fld, "Invalid request body"), field=fld or None) from None


# ──────────────────────────────────────────────────────────────────────────────
# Identidad
# ──────────────────────────────────────────────────────────────────────────────
def derive_peer_id(name: str, endpoint: str, source_address: str) -> str:
    """Hash determinista de (name, endpoint, sourceAddress): 32 caracteres hex."""
    digest = hashlib.sha256(f"{name}:{endpoint}:{source_address}".encode("utf-8")).hexdigest()
    return digest[:PEER_ID_LENGTH]


def resolve_peer_id(req: RegisterRequest, source_address: str) -> str:
    if req.peerId:
        return req.peerId
    return derive_peer_id(req.name, req.endpoint, source_address)


# ──────────────────────────────────────────────────────────────────────────────
# Filtro de expiración
# ──────────────────────────────────────────────────────────────────────────────
def split_active(peers: Iterable[PeerRecord], now: int) -> List[PeerRecord]:
    """Sub-secuencia de `peers` que sigue viva en el instante `now` (ms)."""
    return [p for p in peers if p.is_active(now)]


def filter_active_peers(peers: Iterable[PeerRecord], now: int) -> List[Dict[str, Any]]:
    """Vista pública de los peers vivos; sólo depende de sus argumentos."""
    return [p.to_public(now) for p in split_active(peers, now)]


def max_ttl(peers: Iterable[PeerRecord]) -> int:
    """TTL del grupo: el mayor TTL de sus miembros (0 si está vacío)."""
    return max((p.ttl for p in peers), default=0)
