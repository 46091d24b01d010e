"""Firebase-specific exceptions raised by the low-level HTTP client."""
from __future__ import annotations


class FirebaseError(Exception):
    """Base exception for all Firebase client operations."""
    pass


class FirebaseAPIError(FirebaseError):
    """4xx error from the Identity Toolkit API.

    Attributes:
        status_code: HTTP status code
        code: Provider error code, e.g. "EMAIL_EXISTS" (the part of
            ``error.message`` before any " : " detail)
        endpoint: API endpoint that failed (without the API key)
    """

    def __init__(self, status_code: int, code: str, endpoint: str):
        self.status_code = status_code
        self.code = code
        self.endpoint = endpoint
        super().__init__(f"[{status_code}] {endpoint}: {code}")
