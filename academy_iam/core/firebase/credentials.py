"""Credential operations against Firebase Authentication.

Translates create/update/delete/lookup/list/verify into Identity Toolkit
calls and maps provider error codes onto the local error taxonomy.
"""
from __future__ import annotations
import logging
from typing import Optional

import jwt
from jwt import PyJWKClient
from jwt.exceptions import (
    InvalidTokenError,
    ExpiredSignatureError,
    PyJWKClientConnectionError,
    PyJWKClientError,
)

from ..errors import (
    DuplicateIdentity,
    IdentityError,
    InvalidEmail,
    InvalidSession,
    NotFound,
    ProviderRejected,
    ProviderUnavailable,
    WeakSecret,
)
from ..validators import validate_email, validate_secret
from .client import FirebaseClient
from .exceptions import FirebaseAPIError

logger = logging.getLogger(__name__)

SECURETOKEN_JWKS_URL = "https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com"
SECURETOKEN_ISSUER = "https://securetoken.google.com/{project_id}"
MAX_PAGE_SIZE = 1000

PROVIDER_ERROR_KINDS: dict[str, type[IdentityError]] = {
    "EMAIL_EXISTS": DuplicateIdentity,
    "DUPLICATE_EMAIL": DuplicateIdentity,
    "WEAK_PASSWORD": WeakSecret,
    "MISSING_PASSWORD": WeakSecret,
    "INVALID_EMAIL": InvalidEmail,
    "MISSING_EMAIL": InvalidEmail,
    "INVALID_ID_TOKEN": InvalidSession,
    "MISSING_ID_TOKEN": InvalidSession,
    "TOKEN_EXPIRED": InvalidSession,
    "USER_DISABLED": InvalidSession,
    "CREDENTIAL_TOO_OLD_LOGIN_AGAIN": InvalidSession,
    "USER_NOT_FOUND": NotFound,
}

# On self-service calls a vanished account means the session is dead
SESSION_ERROR_OVERRIDES: dict[str, type[IdentityError]] = {
    "USER_NOT_FOUND": InvalidSession,
}


def translate_error(exc: FirebaseAPIError, *, session_call: bool = False) -> IdentityError:
    """Map a provider error code to the local taxonomy."""
    error_cls = None
    if session_call:
        error_cls = SESSION_ERROR_OVERRIDES.get(exc.code)
    error_cls = error_cls or PROVIDER_ERROR_KINDS.get(exc.code, ProviderRejected)
    return error_cls(f"Credential provider rejected the request: {exc.code}")


def _credential_view(user: dict) -> dict:
    return {
        "external_id": user.get("localId"),
        "email": user.get("email"),
        "disabled": bool(user.get("disabled", False)),
        "created_at": user.get("createdAt"),
        "last_login_at": user.get("lastLoginAt"),
    }


class CredentialProvider:
    """Service for managing provider credentials.

    Self-service updates require the identity owner's own session token;
    there is no administrator-issued credential edit. Deletion, lookup and
    listing go through the administrative channel.
    """

    def __init__(self, client: FirebaseClient, *, jwks_url: str = SECURETOKEN_JWKS_URL):
        """Initialize credential service.

        Args:
            client: Configured Firebase client
            jwks_url: JWKS endpoint used to verify ID tokens
        """
        self.client = client
        self._jwks_url = jwks_url
        self._jwks_client: Optional[PyJWKClient] = None

    def create_credential(self, email: str, secret: str) -> str:
        """Register a new email/password credential without signing it in.

        Returns:
            Provider-assigned external id (localId)

        Raises:
            InvalidEmail, WeakSecret, DuplicateIdentity, ProviderUnavailable
        """
        email = validate_email(email)
        validate_secret(secret)
        try:
            data = self.client.post_public(
                "/accounts:signUp",
                {"email": email, "password": secret, "returnSecureToken": True},
            )
        except FirebaseAPIError as exc:
            raise translate_error(exc)

        external_id = data.get("localId")
        if not external_id:
            raise ProviderRejected("Credential provider returned no localId")
        logger.info("Credential created (external_id=%s)", external_id)
        return external_id

    def update_credential_email(self, session_token: str, new_email: str) -> dict:
        """Change the login email of the session owner.

        Returns:
            Dict with external_id, email and the refreshed session_token
        """
        new_email = validate_email(new_email)
        return self._update_with_session(session_token, {"email": new_email})

    def update_credential_secret(self, session_token: str, new_secret: str) -> dict:
        """Change the password of the session owner."""
        validate_secret(new_secret)
        return self._update_with_session(session_token, {"password": new_secret})

    def _update_with_session(self, session_token: str, changes: dict) -> dict:
        if not session_token:
            raise InvalidSession("Session token is required")
        try:
            data = self.client.post_public(
                "/accounts:update",
                {"idToken": session_token, **changes, "returnSecureToken": True},
            )
        except FirebaseAPIError as exc:
            raise translate_error(exc, session_call=True)
        return {
            "external_id": data.get("localId"),
            "email": data.get("email"),
            "session_token": data.get("idToken"),
        }

    def delete_credential(self, external_id: str) -> None:
        """Delete a credential through the administrative channel.

        Idempotent: a credential that is already gone counts as deleted.
        """
        try:
            self.client.post_admin("/accounts:delete", {"localId": external_id})
        except FirebaseAPIError as exc:
            if exc.code == "USER_NOT_FOUND":
                logger.info("Credential %s already absent; delete treated as success", external_id)
                return
            raise translate_error(exc)
        logger.info("Credential deleted (external_id=%s)", external_id)

    def get_credential(self, external_id: str) -> Optional[dict]:
        """Return the credential view for ``external_id`` or None."""
        try:
            data = self.client.post_admin("/accounts:lookup", {"localId": [external_id]})
        except FirebaseAPIError as exc:
            if exc.code == "USER_NOT_FOUND":
                return None
            raise translate_error(exc)
        users = data.get("users") or []
        return _credential_view(users[0]) if users else None

    def list_credentials(self, page_size: int = MAX_PAGE_SIZE, page_token: Optional[str] = None) -> tuple[list[dict], Optional[str]]:
        """Return one page of credentials and the token of the next page."""
        params = {"maxResults": max(1, min(MAX_PAGE_SIZE, int(page_size)))}
        if page_token:
            params["nextPageToken"] = page_token
        try:
            data = self.client.get_admin("/accounts:batchGet", params=params)
        except FirebaseAPIError as exc:
            raise translate_error(exc)
        users = [_credential_view(u) for u in data.get("users") or []]
        return users, data.get("nextPageToken") or None

    def iter_credentials(self, limit: Optional[int] = None):
        """Yield credentials across pages, stopping after ``limit`` entries."""
        page_token = None
        seen = 0
        while True:
            page_size = MAX_PAGE_SIZE if limit is None else min(MAX_PAGE_SIZE, limit - seen)
            if page_size <= 0:
                return
            users, page_token = self.list_credentials(page_size, page_token)
            for user in users:
                yield user
                seen += 1
                if limit is not None and seen >= limit:
                    return
            if not page_token:
                return

    # ─────────────────────────────────────────────────────────────────────────
    # Session verification
    # ─────────────────────────────────────────────────────────────────────────
    def _get_jwks_client(self) -> PyJWKClient:
        if self._jwks_client is None:
            logger.info("Initializing JWKS client for: %s", self._jwks_url)
            self._jwks_client = PyJWKClient(
                self._jwks_url,
                cache_keys=True,
                max_cached_keys=16,
                lifespan=3600,
                timeout=int(self.client.timeout),
            )
        return self._jwks_client

    def verify_session(self, session_token: str) -> dict:
        """Verify a Firebase ID token and return the identity it carries.

        Validations performed:
        1. RS256 signature against Google's securetoken JWKS
        2. exp / iat present and valid (5s leeway)
        3. Issuer https://securetoken.google.com/<project>
        4. Audience <project>
        5. Non-empty subject

        Returns:
            Dict with external_id, email, email_verified

        Raises:
            InvalidSession: Token invalid for any reason
            ProviderUnavailable: Signing keys could not be fetched
        """
        if not session_token:
            raise InvalidSession("Session token is required")
        project_id = self.client.project_id
        try:
            signing_key = self._get_jwks_client().get_signing_key_from_jwt(session_token)
            claims = jwt.decode(
                session_token,
                signing_key.key,
                algorithms=["RS256"],
                audience=project_id,
                issuer=SECURETOKEN_ISSUER.format(project_id=project_id),
                options={"require": ["exp", "iat", "sub"]},
                leeway=5,
            )
        except PyJWKClientConnectionError as exc:
            raise ProviderUnavailable(f"Signing keys unavailable: {exc}")
        except ExpiredSignatureError:
            raise InvalidSession("Session token expired")
        except (PyJWKClientError, InvalidTokenError) as exc:
            raise InvalidSession(f"Session token rejected: {exc}")

        if not claims.get("sub"):
            raise InvalidSession("Session token has no subject")
        return {
            "external_id": claims["sub"],
            "email": claims.get("email"),
            "email_verified": bool(claims.get("email_verified", False)),
        }
