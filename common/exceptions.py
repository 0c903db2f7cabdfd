from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from django.core.exceptions import PermissionDenied as DjangoPermissionDenied
from django.core.exceptions import ValidationError as DjangoValidationError
from django.http import Http404
from rest_framework import exceptions as drf_exceptions
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)

SERVER_ERROR_MESSAGE = "An unexpected error occurred."


class DomainError(Exception):
    """Business rule violation raised by services and the order workflow.

    Nothing here depends on a request, so the pricing, reconciliation and
    editor modules stay usable on their own; the API layer turns these into
    the standard error envelope.
    """

    code = "domain_error"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, message: str, *, errors: Any = None):
        super().__init__(message)
        self.message = message
        self.errors = errors


class InvalidTransition(DomainError):
    code = "invalid_transition"


class EditNotPermitted(DomainError):
    code = "edit_not_permitted"
    status_code = status.HTTP_403_FORBIDDEN


class FieldValidationError(DomainError):
    """Per-field messages, e.g. ``{"email": "Enter a valid email address."}``."""

    code = "validation_error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, errors: Mapping[str, Any], message: str = "Validation failed."):
        super().__init__(message, errors=dict(errors))


# Checked in order, so subclasses must precede their bases.
STABLE_CODES = (
    (drf_exceptions.ValidationError, "validation_error"),
    (drf_exceptions.NotAuthenticated, "not_authenticated"),
    (drf_exceptions.AuthenticationFailed, "authentication_failed"),
    (drf_exceptions.PermissionDenied, "permission_denied"),
    (drf_exceptions.NotFound, "not_found"),
    (drf_exceptions.MethodNotAllowed, "method_not_allowed"),
    (drf_exceptions.NotAcceptable, "not_acceptable"),
    (drf_exceptions.UnsupportedMediaType, "unsupported_media_type"),
    (drf_exceptions.ParseError, "parse_error"),
    (drf_exceptions.Throttled, "throttled"),
)


def envelope(code: str, message: str, errors: Any, status_code: int) -> dict[str, Any]:
    return {"code": code, "message": message, "errors": errors, "status": status_code}


def custom_exception_handler(exc: Exception, context: dict[str, Any]) -> Response:
    """DRF exception handler emitting ``{code, message, errors, status}`` for every failure."""
    if isinstance(exc, DomainError):
        return Response(envelope(exc.code, exc.message, exc.errors, exc.status_code), status=exc.status_code)

    if isinstance(exc, DjangoValidationError):
        detail = exc.message_dict if hasattr(exc, "error_dict") else exc.messages
        exc = drf_exceptions.ValidationError(detail=detail)
    elif isinstance(exc, Http404):
        exc = drf_exceptions.NotFound()
    elif isinstance(exc, DjangoPermissionDenied):
        exc = drf_exceptions.PermissionDenied()

    response = drf_exception_handler(exc, context)
    if response is None:
        view = context.get("view")
        logger.exception("Unhandled API exception in %s", type(view).__name__ if view else "unknown")
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
        return Response(envelope("internal_server_error", SERVER_ERROR_MESSAGE, None, code), status=code)

    response.data = envelope(
        _code_for(exc),
        _message_for(exc, response.data),
        _errors_from(response.data),
        response.status_code,
    )
    return response


def _code_for(exc: Exception) -> str:
    for exception_type, code in STABLE_CODES:
        if isinstance(exc, exception_type):
            return code
    return str(getattr(exc, "default_code", "api_error"))


def _message_for(exc: Exception, data: Any) -> str:
    if isinstance(exc, drf_exceptions.ValidationError):
        return "Validation failed."
    detail = data.get("detail") if isinstance(data, Mapping) else data if isinstance(data, str) else None
    if detail:
        return str(detail)
    if isinstance(exc, drf_exceptions.Throttled):
        return "Request was throttled."
    return str(getattr(exc, "detail", "Request failed."))


def _errors_from(data: Any) -> Any:
    # A bare {"detail": ...} is already carried by the message.
    if isinstance(data, Mapping):
        return None if set(data) == {"detail"} else data
    if isinstance(data, list):
        return data
    return None
