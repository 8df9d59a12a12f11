"""
Cache Layer Exceptions

Domain-specific exceptions for remote calls, persisted state and internal
invariants. Remote failures are never swallowed by the cache layer: cache
state is settled first, then the original exception propagates.
"""

from typing import Optional, Any, Dict

DEFAULT_ERROR_MESSAGE = "An unexpected error occurred"

_DUPLICATE_MARKERS = ("already exists", "duplicate", "unique constraint", "already in use")
_PERMISSION_MARKERS = ("permission", "unauthorized", "forbidden", "access denied")
_INVALID_INPUT_MARKERS = ("required", "invalid", "validation", "field")


class CacheLayerException(Exception):
    """Base exception for cache layer errors.

    Keeps a human-readable message plus a stable error code and details.
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class RemoteCallError(CacheLayerException):
    """Raised when a call across the remote API boundary fails."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.status_code = status_code
        details = dict(details or {})
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message=message, error_code=error_code, details=details)


class NetworkFailure(RemoteCallError):
    """Raised when the remote call was rejected at transport level or timed out."""

    def __init__(
        self,
        message: str = "Remote service unavailable",
        method: Optional[str] = None,
        path: Optional[str] = None,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        details: Dict[str, Any] = {}
        if method:
            details["method"] = method
        if path:
            details["path"] = path
        if original_error:
            details["original_error"] = str(original_error)
            details["original_error_type"] = type(original_error).__name__

        super().__init__(
            message=message,
            error_code="NETWORK_FAILURE",
            status_code=status_code,
            details=details,
        )
        # Preserve exception context for debugging (exception chaining)
        if original_error:
            self.__cause__ = original_error


class ValidationFailure(RemoteCallError):
    """Raised when the transport succeeded but the domain rejected the call."""

    def __init__(
        self,
        message: str = DEFAULT_ERROR_MESSAGE,
        status_code: Optional[int] = None,
        method: Optional[str] = None,
        path: Optional[str] = None,
        body: Any = None,
    ):
        details: Dict[str, Any] = {}
        if method:
            details["method"] = method
        if path:
            details["path"] = path
        if body is not None:
            details["body"] = body

        super().__init__(
            message=message,
            error_code="VALIDATION_FAILURE",
            status_code=status_code,
            details=details,
        )

    def _matches(self, markers) -> bool:
        lowered = self.message.lower()
        return any(marker in lowered for marker in markers)

    @property
    def is_duplicate(self) -> bool:
        """True when the server reported a duplicate/conflicting record."""
        lowered = self.message.lower()
        return self._matches(_DUPLICATE_MARKERS) or (
            "username" in lowered and "taken" in lowered
        )

    @property
    def is_permission_denied(self) -> bool:
        """True when the server refused the call for authorization reasons."""
        return self._matches(_PERMISSION_MARKERS)

    @property
    def is_invalid_input(self) -> bool:
        """True when the server rejected a field or payload as invalid."""
        return self._matches(_INVALID_INPUT_MARKERS)


class InvariantViolation(CacheLayerException):
    """Raised on internal programming errors, e.g. rollback without a snapshot."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message, error_code="INVARIANT_VIOLATION", details=details
        )


class StorageException(CacheLayerException):
    """Raised when the persisted-state boundary cannot be used."""

    def __init__(
        self,
        message: str,
        storage_key: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        details: Dict[str, Any] = {}
        if storage_key:
            details["storage_key"] = storage_key
        if original_error:
            details["original_error"] = str(original_error)
            details["original_error_type"] = type(original_error).__name__

        super().__init__(message=message, error_code="STORAGE_ERROR", details=details)
        if original_error:
            self.__cause__ = original_error


def extract_error_message(body: Any, default: str = DEFAULT_ERROR_MESSAGE) -> str:
    """Pull the human-readable message out of an error response body.

    Handles bare strings and the ``error`` / ``detail`` / ``message`` /
    ``errors`` shapes the scoring backend returns.
    """
    if isinstance(body, str):
        return body or default

    if isinstance(body, dict):
        for field in ("error", "detail", "message"):
            value = body.get(field)
            if isinstance(value, str) and value:
                return value

        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            return ", ".join(str(item) for item in errors)
        if isinstance(errors, dict) and errors:
            parts = []
            for field, problems in errors.items():
                if isinstance(problems, list):
                    problems = ", ".join(str(p) for p in problems)
                parts.append(f"{field}: {problems}")
            return "; ".join(parts)

    return default
