"""
Error classification and logging for the pipeline and the CLI.
"""

from __future__ import annotations

import traceback
from typing import Any, Dict, Optional

import structlog

from vulnintel.core.errors import (
    ErrorCategory,
    FetchError,
    GenerationError,
    categorize_error,
    recovery_suggestion,
)
from vulnintel.services.metrics import MetricsFacade, metrics as default_metrics

logger = structlog.get_logger(__name__)


def error_details(error: BaseException) -> Dict[str, Any]:
    details: Dict[str, Any] = {}
    if isinstance(error, FetchError):
        details.update({k: v for k, v in error.to_dict().items() if v is not None})
    elif isinstance(error, GenerationError):
        details.update({"backend": error.backend, "model": error.model})
    for attr in ("errno", "filename", "strerror"):
        value = getattr(error, attr, None)
        if value is not None:
            details[attr] = value
    return details


def classify_and_log_error(
    error: BaseException,
    component: str,
    context: Optional[Dict[str, Any]] = None,
    *,
    metrics: Optional[MetricsFacade] = None,
) -> Dict[str, Any]:
    """Categorize, log and record an error; returns a user-facing summary.

    The returned dict carries ``category``, ``message`` and ``suggestion``.
    """
    category = categorize_error(error)
    suggestion = recovery_suggestion(category, error)
    payload = {
        "component": component,
        "category": category.value,
        "message": str(error),
        "error_type": type(error).__name__,
        "details": error_details(error),
        "context": context or {},
    }
    level = "error" if category in (ErrorCategory.UNKNOWN, ErrorCategory.IO) else "warning"
    getattr(logger, level)(
        "Classified error",
        suggestion=suggestion,
        stack_trace=traceback.format_exc() if level == "error" else None,
        **payload,
    )
    (metrics or default_metrics).record_error(payload)
    return {"category": category.value, "message": str(error), "suggestion": suggestion}
