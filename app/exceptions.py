"""Service level exceptions shared by the engine, services and routes."""

from __future__ import annotations

from typing import Any


class ServiceError(Exception):
    """Base exception for all service errors."""

    status_code = 500

    def __init__(self, message: str, *args: Any) -> None:
        super().__init__(message, *args)
        self.message = message


class ValidationError(ServiceError):
    """Raised before any write when input is unrecognized or incomplete."""

    status_code = 400


class NotFoundError(ServiceError):
    """Raised when a content item or a favorite relationship does not exist."""

    status_code = 404

    def __init__(self, entity_type: str, entity_id: Any, detail: str | None = None) -> None:
        message = detail or f"{entity_type} with id {entity_id} not found"
        super().__init__(message)
        self.entity_type = entity_type
        self.entity_id = entity_id


class DatabaseError(ServiceError):
    """Wraps a persistence failure; the surrounding transaction was rolled back."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class IngestionError(ServiceError):
    """Raised when the metadata provider keeps failing after all retries."""

    status_code = 502
