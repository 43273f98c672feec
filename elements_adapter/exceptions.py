"""Custom exceptions for the Elements adapter."""

from __future__ import annotations

from typing import Any


class ElementsError(Exception):
    """Base exception for Elements node and Esplora API errors."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ElementsAuthError(ElementsError):
    """Authentication/authorization error (401/403)."""

    pass


class ElementsNotFoundError(ElementsError):
    """Resource not found error (404)."""

    pass


class ElementsValidationError(ElementsError):
    """Request rejected by the server (400/422)."""

    pass


class ElementsRateLimitError(ElementsError):
    """Rate limit exceeded error (429)."""

    pass


class ElementsServerError(ElementsError):
    """Server-side error (5xx) without a JSON-RPC error body."""

    pass


class ElementsNetworkError(ElementsError):
    """Network connectivity error."""

    pass


class ElementsRPCError(ElementsError):
    """JSON-RPC error returned by the node.

    The node answers RPC failures with a JSON body carrying a numeric
    ``code``; callers classify on it (e.g. -26 for a rejected transaction).
    """

    def __init__(self, message: str, code: int, details: Any = None):
        super().__init__(message, details)
        self.code = code

    def __str__(self) -> str:
        return f"RPC error {self.code}: {self.message}"
