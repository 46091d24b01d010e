"""Firebase Authentication client library.

Architecture:
- client.py: HTTP client for the public (API key) and administrative
  (service account) channels, with token auto-refresh
- credentials.py: Credential lifecycle and ID token verification
- exceptions.py: Raw provider errors before taxonomy translation

Usage:
    from academy_iam.core.firebase import FirebaseClient, CredentialProvider

    client = FirebaseClient(project_id, api_key, client_email=..., private_key=...)
    provider = CredentialProvider(client)
    external_id = provider.create_credential("new@school.test", "Secret123!")
"""
from .client import FirebaseClient, REQUEST_TIMEOUT, parse_error_code
from .credentials import CredentialProvider, PROVIDER_ERROR_KINDS, translate_error
from .exceptions import FirebaseError, FirebaseAPIError

__all__ = [
    "FirebaseClient",
    "CredentialProvider",
    "REQUEST_TIMEOUT",
    "PROVIDER_ERROR_KINDS",
    "parse_error_code",
    "translate_error",
    "FirebaseError",
    "FirebaseAPIError",
]
