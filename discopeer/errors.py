# discopeer/errors.py
"""
Jerarquía de errores del registro.

* `ValidationError` – petición mal formada (HTTP 400).
* `NotFoundError`   – el `peerId` no existe en el grupo (HTTP 404).
* `InternalError`   – fallo inesperado de almacenamiento o serialización (HTTP 500).
"""
from __future__ import annotations


class DiscopeerError(Exception):
    """Base de todos los errores del servicio."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(DiscopeerError):
    status_code = 400

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(DiscopeerError):
    status_code = 404


class InternalError(DiscopeerError):
    status_code = 500


__all__ = ["DiscopeerError", "ValidationError", "NotFoundError", "InternalError"]
