"""
Error taxonomy for vulnintel.

Fetch-side errors (``FetchError`` and subclasses) never leave a fetcher:
they are captured on the ``SourceOutcome`` and the aggregator treats them as
"no data from this source". Generation-side errors drive backend fallback in
the dispatcher; only ``ExhaustedFallbackError`` reaches pipeline callers.
"""

from __future__ import annotations

import asyncio
import errno
from enum import Enum
from typing import Any, Dict, List, Optional


class VulnIntelError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(VulnIntelError):
    """Invalid or inconsistent configuration."""


# --------------------------------------------------------------------------- #
#                               Fetch errors                                  #
# --------------------------------------------------------------------------- #


class FetchError(VulnIntelError):
    """A source could not deliver a payload.

    Carries the last HTTP status (when there was one) and the source name
    once the fetcher boundary has attributed it.
    """

    def __init__(
        self,
        message: str,
        *,
        source: Optional[str] = None,
        status: Optional[int] = None,
        url: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.source = source
        self.status = status
        self.url = url

    def with_source(self, source: str) -> "FetchError":
        if self.source is None:
            self.source = source
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "source": self.source,
            "status": self.status,
            "url": self.url,
        }

    def __str__(self) -> str:
        prefix = f"[{self.source}] " if self.source else ""
        status = f" (status={self.status})" if self.status is not None else ""
        return f"{prefix}{self.message}{status}"


class TransportError(FetchError):
    """Network failure, timeout or 5xx that outlived the retry budget."""


class RateLimitError(TransportError):
    """HTTP 429 that outlived the retry budget."""

    def __init__(
        self,
        message: str,
        *,
        retry_after: Optional[float] = None,
        source: Optional[str] = None,
        url: Optional[str] = None,
    ) -> None:
        super().__init__(message, source=source, status=429, url=url)
        self.retry_after = retry_after


class ParseError(FetchError):
    """Provider payload did not have the expected shape."""


# --------------------------------------------------------------------------- #
#                             Generation errors                               #
# --------------------------------------------------------------------------- #


class GenerationError(VulnIntelError):
    """A generation backend call failed."""

    def __init__(
        self,
        message: str,
        *,
        backend: Optional[str] = None,
        model: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.model = model


class AuthError(GenerationError):
    """Missing or rejected backend credentials."""


class BackendUnavailableError(GenerationError):
    """Backend reachable in principle but refusing work (429, 5xx, network)."""


class ExhaustedFallbackError(VulnIntelError):
    """Every backend in the preference list failed."""

    def __init__(self, phase: str, attempts: List[Dict[str, Any]]) -> None:
        tried = ", ".join(a.get("backend", "?") for a in attempts) or "none"
        super().__init__(f"All generation backends failed for {phase} phase (tried: {tried})")
        self.phase = phase
        self.attempts = attempts


# --------------------------------------------------------------------------- #
#                      Categories and recovery suggestions                    #
# --------------------------------------------------------------------------- #


class ErrorCategory(str, Enum):
    API = "API_ERROR"
    NETWORK = "NETWORK_ERROR"
    AUTH = "AUTHENTICATION_ERROR"
    INPUT = "INPUT_ERROR"
    CONFIG = "CONFIGURATION_ERROR"
    LLM = "LLM_ERROR"
    IO = "FILE_IO_ERROR"
    UNKNOWN = "UNKNOWN_ERROR"


def categorize_error(error: BaseException) -> ErrorCategory:
    """Map an exception to a coarse category.

    Typed errors are matched first; message heuristics only apply to
    foreign exceptions.
    """
    if isinstance(error, AuthError):
        return ErrorCategory.AUTH
    if isinstance(error, (GenerationError, ExhaustedFallbackError)):
        return ErrorCategory.LLM
    if isinstance(error, ConfigError):
        return ErrorCategory.CONFIG
    if isinstance(error, TransportError):
        return ErrorCategory.API if error.status else ErrorCategory.NETWORK
    if isinstance(error, FetchError):
        return ErrorCategory.API
    if isinstance(error, (asyncio.TimeoutError, ConnectionError)):
        return ErrorCategory.NETWORK
    if isinstance(error, OSError):
        return ErrorCategory.IO

    msg = str(error).lower()
    if any(t in msg for t in ("econnrefused", "enotfound", "network", "connection")):
        return ErrorCategory.NETWORK
    if any(t in msg for t in ("api key", "credential", "unauthorized", "forbidden")):
        return ErrorCategory.AUTH
    if any(t in msg for t in ("token limit", "model", "openai", "claude", "gemini")):
        return ErrorCategory.LLM
    if any(t in msg for t in ("environment", "config", "missing setting")):
        return ErrorCategory.CONFIG
    if isinstance(error, ValueError) or any(t in msg for t in ("invalid", "required")):
        return ErrorCategory.INPUT
    return ErrorCategory.UNKNOWN


def recovery_suggestion(category: ErrorCategory, error: Optional[BaseException] = None) -> str:
    status = getattr(error, "status", None)
    msg = str(error).lower() if error is not None else ""

    if category is ErrorCategory.API:
        if status == 429:
            return "Rate limited by API. Wait a few minutes and try again."
        if status and status >= 500:
            return "External API service is experiencing issues. Try again later."
        return "Check API endpoints and request format. See logs for details."
    if category is ErrorCategory.NETWORK:
        return "Check your internet connection. Ensure API services are accessible."
    if category is ErrorCategory.AUTH:
        return "Verify your API keys in the environment variables or .env file."
    if category is ErrorCategory.INPUT:
        return "Check input parameters and data formats. Ensure the CVE ID is valid."
    if category is ErrorCategory.CONFIG:
        return "Check environment variables and configuration. Missing or invalid settings."
    if category is ErrorCategory.LLM:
        if "token limit" in msg:
            return "Input too large for the model context. Reduce input size or pick another model."
        if "rate limit" in msg or "quota" in msg:
            return "LLM provider rate limit exceeded. Wait or try a different backend with --backend."
        return "Try a different LLM backend with the --backend flag."
    if category is ErrorCategory.IO:
        code = getattr(error, "errno", None)
        if code == errno.ENOENT:
            return "File or directory not found. Check paths and create missing directories."
        if code == errno.EACCES:
            return "Permission denied when accessing file. Check file permissions."
        return "File system error. Check paths and disk space."
    return "Unexpected error. Re-run with LOG_LEVEL=DEBUG for details."
