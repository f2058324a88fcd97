"""Errors raised by the remote record store client."""
from typing import Any, Optional


class RemoteStoreError(Exception):
    """Base exception for remote record store errors."""


class RemoteConnectionError(RemoteStoreError):
    """Raised for network or connection issues, including timeouts."""


class RemoteResponseError(RemoteStoreError):
    """Raised for non-2xx responses or responses that cannot be interpreted."""

    def __init__(self, status_code: int, message: str, response_data: Optional[Any] = None):
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.response_data = response_data


class AuthenticationError(RemoteResponseError):
    """Raised when the remote store rejects the access token (401/403)."""
