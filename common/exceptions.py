from __future__ import annotations

import functools
import logging
from collections.abc import Mapping, Sequence
from typing import Any

from django.db import DatabaseError, IntegrityError
from rest_framework import status
from rest_framework.exceptions import (
    APIException,
    AuthenticationFailed,
    MethodNotAllowed,
    NotAuthenticated,
    NotFound,
    NotAcceptable,
    ParseError,
    PermissionDenied,
    Throttled,
    UnsupportedMediaType,
    ValidationError,
)
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)

GENERIC_SERVER_ERROR_MESSAGE = "An unexpected error occurred."

EXCEPTION_CODE_MAP: dict[type[Exception], str] = {
    ValidationError: "validation_error",
    NotAuthenticated: "not_authenticated",
    AuthenticationFailed: "authentication_failed",
    PermissionDenied: "permission_denied",
    NotFound: "not_found",
    MethodNotAllowed: "method_not_allowed",
    NotAcceptable: "not_acceptable",
    UnsupportedMediaType: "unsupported_media_type",
    ParseError: "parse_error",
    Throttled: "throttled",
}


class DomainError(Exception):
    """Base class for errors raised by the domain services.

    Every service operation either succeeds or raises exactly one subclass of
    this error. The API layer renders it through `custom_exception_handler`
    without changing its code.
    """

    code = "domain_error"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "The request could not be completed."

    def __init__(self, message: str | None = None, *, details: Mapping[str, Any] | None = None):
        self.message = message or self.default_message
        self.details = dict(details or {})
        super().__init__(self.message)


class ValidationFailedError(DomainError):
    code = "validation_error"
    default_message = "Validation failed."


class NotFoundError(DomainError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found."

    def __init__(self, entity: str, entity_id: Any = None, message: str | None = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            message or f"{entity.capitalize()} not found.",
            details={"entity": entity, "id": str(entity_id) if entity_id is not None else None},
        )


class InactiveEntityError(DomainError):
    code = "inactive_entity"
    status_code = status.HTTP_409_CONFLICT
    default_message = "The referenced record is inactive."

    def __init__(self, entity: str, entity_id: Any = None, message: str | None = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            message or f"{entity.capitalize()} is inactive.",
            details={"entity": entity, "id": str(entity_id) if entity_id is not None else None},
        )


class ConflictError(DomainError):
    code = "conflict"
    status_code = status.HTTP_409_CONFLICT
    default_message = "The request conflicts with the current state of the resource."


class ResourceBusyError(ConflictError):
    code = "resource_busy"
    default_message = "The resource is busy, try again later."


class InvalidStateError(DomainError):
    code = "invalid_state"
    status_code = status.HTTP_409_CONFLICT
    default_message = "The operation is not allowed in the current state."


class InvalidTransitionError(InvalidStateError):
    code = "invalid_transition"

    def __init__(self, entity: str, source: str, target: str, allowed=()):
        self.entity = entity
        self.source = source
        self.target = target
        super().__init__(
            f"Cannot change {entity} from '{source}' to '{target}'.",
            details={"entity": entity, "from": source, "to": target, "allowed": sorted(allowed)},
        )


class TrackingNotActiveError(InvalidStateError):
    code = "tracking_not_active"
    default_message = "Tracking is not active for this delivery."


class InsufficientStockError(DomainError):
    code = "insufficient_stock"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, available: int, requested: int, *, product_id: Any = None):
        self.available = available
        self.requested = requested
        self.shortfall = requested - available
        details = {"available": available, "requested": requested, "shortfall": self.shortfall}
        if product_id is not None:
            details["product_id"] = str(product_id)
        super().__init__(
            f"Insufficient stock. Available: {available}, requested: {requested}.",
            details=details,
        )


class InfrastructureError(DomainError):
    code = "infrastructure_error"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "The storage backend is unavailable."


def build_error_envelope(
    *,
    code: str,
    message: str,
    errors: Any,
    status_code: int,
) -> dict[str, Any]:
    return {
        "code": code,
        "message": message,
        "errors": errors,
        "status": status_code,
    }


def error_response(
    *,
    code: str,
    message: str,
    errors: Any = None,
    status_code: int = status.HTTP_400_BAD_REQUEST,
) -> Response:
    return Response(
        build_error_envelope(
            code=code,
            message=message,
            errors=errors,
            status_code=status_code,
        ),
        status=status_code,
    )


def custom_exception_handler(exc: Exception, context: dict[str, Any]) -> Response:
    view_name = context.get("view").__class__.__name__ if context.get("view") else "unknown"

    if isinstance(exc, DomainError):
        if isinstance(exc, InfrastructureError):
            logger.error("Infrastructure failure in %s", view_name, exc_info=exc)
        else:
            logger.warning("domain_error code=%s view=%s message=%s", exc.code, view_name, exc.message)
        return error_response(
            code=exc.code,
            message=exc.message,
            errors=exc.details or None,
            status_code=exc.status_code,
        )

    response = drf_exception_handler(exc, context)

    if response is None:
        logger.exception("Unhandled API exception in %s", view_name)
        return error_response(
            code="internal_server_error",
            message=GENERIC_SERVER_ERROR_MESSAGE,
            errors=None,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    status_code = response.status_code
    errors = _normalize_errors(response.data)
    message = _build_message(exc, response.data)
    code = _build_code(exc)

    response.data = build_error_envelope(
        code=code,
        message=message,
        errors=errors,
        status_code=status_code,
    )
    return response


def _build_code(exc: Exception) -> str:
    for exception_type, stable_code in EXCEPTION_CODE_MAP.items():
        if isinstance(exc, exception_type):
            return stable_code

    if isinstance(exc, APIException):
        return str(getattr(exc, "default_code", "api_error"))

    return "internal_server_error"


def _build_message(exc: Exception, data: Any) -> str:
    if isinstance(exc, ValidationError):
        return "Validation failed."

    detail = None
    if isinstance(data, Mapping):
        detail = data.get("detail")
    elif isinstance(data, str):
        detail = data

    if detail:
        return str(detail)

    if isinstance(exc, Throttled):
        return "Request was throttled."

    if isinstance(exc, APIException):
        return str(getattr(exc, "detail", "Request failed."))

    return GENERIC_SERVER_ERROR_MESSAGE


def _normalize_errors(data: Any) -> Any:
    if isinstance(data, Mapping):
        if set(data.keys()) == {"detail"}:
            return None
        return data

    if isinstance(data, Sequence) and not isinstance(data, str):
        return data

    return None


def translate_database_errors(func):
    """Re-raise database failures escaping a service as domain errors.

    Constraint violations surface as `ConflictError`; anything else the
    driver raises becomes `InfrastructureError`.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except IntegrityError as exc:
            logger.warning("integrity_error in %s: %s", func.__qualname__, exc)
            raise ConflictError("The change conflicts with existing data.") from exc
        except DatabaseError as exc:
            raise InfrastructureError() from exc

    return wrapper
