"""
discopeer – rendezvous de peers
===============================

Paquete raíz.  Mantiene metadatos de la distribución y expone algunas
utilidades de alto nivel sin cargar toda la aplicación (evita arrancar
FastAPI si sólo se usa el registro en memoria).
"""
from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version as _pkg_version

# ---------------------------------------------------------------------------#
# Metadatos
# ---------------------------------------------------------------------------#
try:
    __version__: str = _pkg_version(__name__)
except PackageNotFoundError:  # running from source tree
    __version__ = "0.0.0.dev0"

# ---------------------------------------------------------------------------#
# API pública mínima
# ---------------------------------------------------------------------------#
from .config import Config  # noqa: E402  (import tardío para evitar ciclos)
from .errors import InternalError, NotFoundError, ValidationError  # noqa: E402


def run_cli() -> None:
    """
    Punto de entrada “amigable” para lanzar la CLI desde código:

    ```python
    import discopeer
    discopeer.run_cli()
    ```
    """
    # Importación diferida para no forzar Typer si sólo se
    # usa el registro en memoria.
    from .cli import cli  # noqa: WPS433, E402 (importación diferida)

    cli()


__all__ = [
    "__version__",
    "Config",
    "InternalError",
    "NotFoundError",
    "ValidationError",
    "run_cli",
]
