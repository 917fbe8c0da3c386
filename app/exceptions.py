"""Custom exception classes."""

from typing import Any, Dict, Optional


class QuestionPoolException(Exception):
    """Base exception for the application."""

    status_code: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize exception.

        Args:
            message: Error message
            details: Additional error details
        """
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationException(QuestionPoolException):
    """Exception raised when LLM or vector index credentials are missing."""

    status_code = 503


class ValidationException(QuestionPoolException):
    """Exception raised during input validation."""

    status_code = 400


class GenerationException(QuestionPoolException):
    """Exception raised when the LLM call fails or returns no usable JSON."""

    pass


class TransientStoreException(QuestionPoolException):
    """Exception raised when a single relational store operation fails."""

    status_code = 503


class VectorIndexException(QuestionPoolException):
    """Exception raised during embedding generation or vector index access."""

    status_code = 503


class QuotaException(QuestionPoolException):
    """Exception raised when not enough unique questions could be assembled."""

    def __init__(self, requested: int, returned: int):
        self.requested = requested
        self.returned = returned
        super().__init__(
            "Failed to generate enough unique questions",
            details={
                "requested": requested,
                "returned": returned,
                "hint": "Try increasing dedupe thresholds or FILL_ATTEMPTS.",
            },
        )
