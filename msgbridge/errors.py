"""Error taxonomy shared by the converters, the backend client and the HTTP layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

import httpx

from .schemas.anthropic import ErrorResponse


class ErrorType(str, Enum):
    INVALID_REQUEST = "invalid_request_error"
    AUTHENTICATION = "authentication_error"
    PERMISSION = "permission_error"
    NOT_FOUND = "not_found_error"
    NOT_SUPPORTED = "not_supported_error"
    API = "api_error"
    TIMEOUT = "timeout_error"
    NETWORK = "network_error"
    RATE_LIMIT = "rate_limit_error"
    INTERNAL = "internal_error"


_STATUS_BY_TYPE: Dict[ErrorType, int] = {
    ErrorType.INVALID_REQUEST: 400,
    ErrorType.NOT_SUPPORTED: 400,
    ErrorType.AUTHENTICATION: 401,
    ErrorType.PERMISSION: 403,
    ErrorType.NOT_FOUND: 404,
    ErrorType.TIMEOUT: 408,
    ErrorType.RATE_LIMIT: 429,
    ErrorType.NETWORK: 502,
    ErrorType.API: 500,
    ErrorType.INTERNAL: 500,
}


def status_for(error_type: ErrorType) -> int:
    return _STATUS_BY_TYPE.get(error_type, 500)


@dataclass
class ConversionError:
    type: ErrorType
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


T = TypeVar("T")


@dataclass
class ConversionResult(Generic[T]):
    """Tagged success/failure value returned by the converters."""

    value: Optional[T] = None
    error: Optional[ConversionError] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @classmethod
    def ok(cls, value: T) -> "ConversionResult[T]":
        return cls(value=value)

    @classmethod
    def fail(
        cls,
        error_type: ErrorType,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> "ConversionResult[T]":
        return cls(error=ConversionError(type=error_type, message=message, details=details or {}))


class BackendError(Exception):
    """Raised by the backend client when the upstream call fails."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.API,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        self.details = details or {}

    def to_conversion_error(self) -> ConversionError:
        return ConversionError(type=self.error_type, message=self.message, details=dict(self.details))


def error_type_for_status(status: int) -> ErrorType:
    if status == 400:
        return ErrorType.INVALID_REQUEST
    if status == 401:
        return ErrorType.AUTHENTICATION
    if status == 403:
        return ErrorType.PERMISSION
    if status == 404:
        return ErrorType.NOT_FOUND
    if status in (408, 504):
        return ErrorType.TIMEOUT
    if status == 429:
        return ErrorType.RATE_LIMIT
    if status == 502:
        return ErrorType.NETWORK
    return ErrorType.API


# Upstream error codes/types seen in OpenAI-compatible payloads
_CODE_TYPES: Dict[str, ErrorType] = {
    "invalid_request_error": ErrorType.INVALID_REQUEST,
    "invalid_api_key": ErrorType.AUTHENTICATION,
    "authentication_error": ErrorType.AUTHENTICATION,
    "permission_error": ErrorType.PERMISSION,
    "insufficient_quota": ErrorType.RATE_LIMIT,
    "rate_limit_exceeded": ErrorType.RATE_LIMIT,
    "rate_limit_error": ErrorType.RATE_LIMIT,
    "model_not_found": ErrorType.NOT_FOUND,
    "not_found_error": ErrorType.NOT_FOUND,
    "timeout": ErrorType.TIMEOUT,
}


def _type_from_code(code: Any) -> Optional[ErrorType]:
    if isinstance(code, int):
        return error_type_for_status(code)
    if isinstance(code, str):
        if code.isdigit():
            return error_type_for_status(int(code))
        return _CODE_TYPES.get(code.lower())
    return None


def _match_backend_error(value: Any) -> Optional[ConversionError]:
    if isinstance(value, BackendError):
        return value.to_conversion_error()
    return None


def _match_timeout(value: Any) -> Optional[ConversionError]:
    if isinstance(value, httpx.TimeoutException):
        return ConversionError(ErrorType.TIMEOUT, f"Backend request timed out: {value}")
    return None


def _match_status_error(value: Any) -> Optional[ConversionError]:
    if isinstance(value, httpx.HTTPStatusError):
        status = value.response.status_code
        return ConversionError(
            error_type_for_status(status),
            f"Backend returned HTTP {status}",
            {"status": status},
        )
    return None


def _match_transport(value: Any) -> Optional[ConversionError]:
    # after the timeout matcher: httpx timeouts are transport errors too
    if isinstance(value, httpx.TransportError):
        return ConversionError(ErrorType.NETWORK, f"Backend connection failed: {value}")
    return None


def _match_nested_payload(value: Any) -> Optional[ConversionError]:
    if not isinstance(value, dict) or not isinstance(value.get("error"), dict):
        return None
    err = value["error"]
    message = err.get("message") or "Backend error"
    error_type = _type_from_code(err.get("code")) or _type_from_code(err.get("type")) or ErrorType.API
    return ConversionError(error_type, str(message), {k: v for k, v in err.items() if k != "message"})


def _match_flat_payload(value: Any) -> Optional[ConversionError]:
    if not isinstance(value, dict) or "message" not in value:
        return None
    error_type = _type_from_code(value.get("code")) or ErrorType.API
    return ConversionError(error_type, str(value.get("message")), {"code": value.get("code")})


_MATCHERS: List[Callable[[Any], Optional[ConversionError]]] = [
    _match_backend_error,
    _match_timeout,
    _match_status_error,
    _match_transport,
    _match_nested_payload,
    _match_flat_payload,
]


def normalize_backend_error(value: Any) -> ConversionError:
    """Map an exception or upstream error payload onto the error taxonomy."""
    for matcher in _MATCHERS:
        matched = matcher(value)
        if matched is not None:
            return matched
    return ConversionError(ErrorType.API, str(value) or "Unknown backend error")


def error_body(error: ConversionError) -> Dict[str, Any]:
    return ErrorResponse(error={"type": error.type.value, "message": error.message}).model_dump()
