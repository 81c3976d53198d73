#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports. Message
source failures are not exceptions: the fetcher decodes them into page
variants (see models.py) and recovers locally.
"""

from typing import Dict, Any, Optional


class DigestError(Exception):
    """Base class for errors that fail a channel's summary.

    Attributes:
        details: Optional provider-specific payload for diagnostics.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class ServiceUnavailable(DigestError):
    """Raised when the completion service responds with a non-success status."""

    def __init__(self, message: str = "Completion service unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class MalformedResponse(DigestError):
    """Raised when a completion choice cannot be parsed into topic summaries."""

    def __init__(self, message: str = "Malformed completion response", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


__all__ = ["DigestError", "ServiceUnavailable", "MalformedResponse"]
