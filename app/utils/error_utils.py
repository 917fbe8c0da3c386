"""Utilities for building sanitized error responses."""

import re
from typing import Any, Dict, Optional

GENERIC_ERROR = "An internal error occurred. Please try again later."

# (pattern, replacement, flags)
REDACTIONS = [
    (r"sk-[a-zA-Z0-9_-]{10,}", "sk-***", 0),
    (r"api[_-]?key[=:]\s*[a-zA-Z0-9_-]+", "api_key=***", re.IGNORECASE),
    (r"password[=:]\s*[^\s]+", "password=***", re.IGNORECASE),
    (r"(\w+(?:\+\w+)?://)[^:/\s]+:[^@/\s]+@", r"\1***:***@", 0),  # credentials in DB URLs
    (r"/[^\s]+\.(py|db|sqlite3?|log)", "***", 0),
]


def sanitize_error_message(error_message: str, is_production: bool = False) -> str:
    """
    Redact secrets and file paths from an error message.

    Args:
        error_message: Original error message
        is_production: Whether running in production mode

    Returns:
        The message unchanged in development, redacted in production
    """
    if not is_production:
        return error_message

    sanitized = error_message
    for pattern, replacement, flags in REDACTIONS:
        sanitized = re.sub(pattern, replacement, sanitized, flags=flags)

    if sanitized != error_message and len(sanitized.strip()) < 10:
        return GENERIC_ERROR
    return sanitized


def error_body(
    code: str,
    message: str,
    request_id: str,
    details: Optional[Any] = None,
    is_production: bool = False,
) -> Dict[str, Any]:
    """
    Build the ``{"error": {...}}`` response envelope.

    Args:
        code: Error code (exception class name)
        message: Human readable message
        request_id: Request id from the middleware
        details: Structured details
        is_production: Whether running in production mode

    Returns:
        JSON-serializable response body
    """
    return {
        "error": {
            "code": code,
            "message": sanitize_error_message(message, is_production),
            "details": details if details is not None else {},
            "request_id": request_id,
        }
    }
