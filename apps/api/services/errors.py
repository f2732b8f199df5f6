"""HTTP-mapped failures raised by the economy and provisioning services."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import HTTPException


class ServiceError(HTTPException):
    """Base failure rendered as ``{"error": message, **extra}``."""

    status_code_default = 500

    def __init__(self, message: str, status_code: int | None = None, **extra: Any):
        detail: Dict[str, Any] = {"error": message}
        detail.update(extra)
        super().__init__(status_code=status_code or self.status_code_default, detail=detail)
        self.message = message


class Unauthenticated(ServiceError):
    status_code_default = 401


class NotFound(ServiceError):
    status_code_default = 404


class InvalidInput(ServiceError):
    status_code_default = 400


class Forbidden(ServiceError):
    status_code_default = 403


class Conflict(ServiceError):
    status_code_default = 409


class Gone(ServiceError):
    status_code_default = 410


class CooldownActive(ServiceError):
    status_code_default = 429


class InsufficientFunds(ServiceError):
    status_code_default = 400

    def __init__(self, required: int, current: int):
        super().__init__("Insufficient balance", required=int(required), current=int(current))


class UpstreamFailure(ServiceError):
    status_code_default = 502


class InternalPersistenceFailure(ServiceError):
    status_code_default = 500
