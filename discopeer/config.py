# discopeer/config.py

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

FORWARDED_HOPS = ("last", "first", "none")
DEFAULT_HOME_URL = "https://github.com/lmangani/discopeer"


# --- Funciones de ayuda ---
def _getenv_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None: return default
    try: return int(raw)
    except (TypeError, ValueError): return default

def _getenv_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None: return default
    return raw.strip().lower() in ("1", "true", "yes", "on")

def _getenv_list(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(slots=True)
class Config:
    # --- Parámetros del Servidor ---
    host: str = field(default_factory=lambda: os.getenv("HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: _getenv_int("PORT", 3000))
    home_url: str = field(default_factory=lambda: os.getenv("HOME_URL", DEFAULT_HOME_URL))
    api_key: str | None = field(default_factory=lambda: os.getenv("API_KEY") or None)
    mdns_announce: bool = field(default_factory=lambda: _getenv_bool("MDNS_ANNOUNCE"))

    # --- Parámetros del Registro ---
    max_groups: int = field(default_factory=lambda: _getenv_int("MAX_GROUPS", 10_000))
    max_group_age: int = field(default_factory=lambda: _getenv_int("MAX_GROUP_AGE", 24 * 60 * 60))

    # --- Persistencia (opcional) ---
    persistence_file: str | None = field(default_factory=lambda: os.getenv("PERSISTENCE_FILE") or None)
    snapshot_interval: int = field(default_factory=lambda: _getenv_int("SNAPSHOT_INTERVAL", 0))

    # --- Colaboradores HTTP: rate-limit, CORS, dirección del cliente ---
    rate_limit_max: int = field(default_factory=lambda: _getenv_int("RATE_LIMIT_MAX", 100))
    rate_limit_window: int = field(default_factory=lambda: _getenv_int("RATE_LIMIT_WINDOW", 15 * 60))
    forwarded_hop: str = field(default_factory=lambda: os.getenv("FORWARDED_HOP", "last"))
    cors_origins: list[str] = field(default_factory=lambda: _getenv_list("CORS_ORIGINS", "*"))


    def __post_init__(self) -> None:
        """Normaliza y valida los valores para fallar rápido en el arranque."""
        self.forwarded_hop = self.forwarded_hop.strip().lower()
        if self.forwarded_hop not in FORWARDED_HOPS:
            raise ValueError(
                f"FORWARDED_HOP inválido: {self.forwarded_hop!r}. Valores posibles: {', '.join(FORWARDED_HOPS)}."
            )
        if self.max_groups < 1:
            raise ValueError("MAX_GROUPS debe ser >= 1.")
        if self.max_group_age < 1:
            raise ValueError("MAX_GROUP_AGE debe ser >= 1 segundo.")
        if self.rate_limit_max < 0 or self.rate_limit_window < 1:
            raise ValueError("RATE_LIMIT_MAX debe ser >= 0 y RATE_LIMIT_WINDOW >= 1.")
        if self.snapshot_interval < 0:
            raise ValueError("SNAPSHOT_INTERVAL debe ser >= 0.")
        if self.persistence_file:
            self.persistence_file = str(Path(self.persistence_file).expanduser())


    def __repr__(self) -> str:
        persist_info = f", persistence='{self.persistence_file}'" if self.persistence_file else ""
        mdns_info = ", mdns=on" if self.mdns_announce else ""
        params = (
            f"host='{self.host}:{self.port}', max_groups={self.max_groups}, "
            f"max_group_age={self.max_group_age}s, rate_limit={self.rate_limit_max}/{self.rate_limit_window}s, "
            f"forwarded_hop='{self.forwarded_hop}'{persist_info}{mdns_info}"
        )
        return f"<Config {params}>"
