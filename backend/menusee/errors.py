from __future__ import annotations

from typing import Any, Dict, Optional

from .observability import ErrorCode


class MenuSeeError(Exception):
    """Base for every domain error raised by the pipeline."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        *,
        code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}
        super().__init__(message)


class ConfigurationError(MenuSeeError):
    """Missing provider credentials or settings. Surfaced verbatim."""

    code = ErrorCode.PROVIDER_NOT_CONFIGURED


class ProviderError(MenuSeeError):
    """An external provider call failed, timed out or returned malformed data."""

    code = ErrorCode.INTERNAL_ERROR


class NotFoundError(MenuSeeError):
    code = ErrorCode.SCAN_NOT_FOUND


class InvalidTransitionError(MenuSeeError):
    code = ErrorCode.INVALID_TRANSITION


class QuotaExceededError(MenuSeeError):
    """Soft error: the per-scan image ceiling is reached.

    Queue operations report zero queued instead of raising this.
    """

    code = ErrorCode.QUOTA_EXCEEDED
