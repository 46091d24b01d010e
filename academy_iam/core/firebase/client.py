"""Low-level HTTP client for the Firebase Identity Toolkit API.

Handles the two channels the provider exposes, token management, and HTTP
error translation.
"""
from __future__ import annotations
import time
from typing import Optional, Dict, Any
from datetime import datetime, timedelta

import jwt
import requests

from ..errors import ProviderUnavailable
from .exceptions import FirebaseAPIError

REQUEST_TIMEOUT = 5
IDENTITY_TOOLKIT_URL = "https://identitytoolkit.googleapis.com/v1"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
ADMIN_SCOPES = " ".join([
    "https://www.googleapis.com/auth/identitytoolkit",
    "https://www.googleapis.com/auth/cloud-platform",
])
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"


class FirebaseClient:
    """HTTP client for the Identity Toolkit API with automatic token management.

    Features:
    - Public channel: calls authenticated with the project's Web API key
      (sign-up, self-service updates)
    - Administrative channel: calls authenticated with a service-account
      OAuth token, refreshed automatically before expiry (delete, lookup, list)
    - Centralized error handling: 5xx/429 and transport failures raise
      ProviderUnavailable, other 4xx raise FirebaseAPIError

    Usage:
        client = FirebaseClient("my-project", api_key="AIza...",
                                client_email="svc@my-project.iam.gserviceaccount.com",
                                private_key=pem)
        data = client.post_public("/accounts:signUp", {"email": e, "password": p})
        client.post_admin("/accounts:delete", {"localId": uid})
    """

    def __init__(
        self,
        project_id: str,
        api_key: str = "",
        *,
        client_email: str = "",
        private_key: str = "",
        token_uri: str = DEFAULT_TOKEN_URI,
        base_url: Optional[str] = None,
        timeout: float = REQUEST_TIMEOUT,
    ):
        """Initialize Firebase client.

        Args:
            project_id: Firebase project ID
            api_key: Web API key for the public channel
            client_email: Service account email for the administrative channel
            private_key: Service account RSA private key (PEM)
            token_uri: OAuth2 token endpoint for the JWT-bearer grant
            base_url: Identity Toolkit base URL (override for tests)
            timeout: Per-request timeout in seconds
        """
        self.project_id = project_id
        self.base_url = (base_url or IDENTITY_TOOLKIT_URL).rstrip("/")
        self.timeout = timeout
        self._api_key = api_key
        self._client_email = client_email
        self._private_key = private_key
        self._token_uri = token_uri
        self._token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

    @property
    def has_admin_credentials(self) -> bool:
        return bool(self._client_email and self._private_key)

    # ─────────────────────────────────────────────────────────────────────────
    # Administrative token
    # ─────────────────────────────────────────────────────────────────────────
    def authenticate_service_account(self) -> str:
        """Exchange a signed service-account assertion for an access token.

        Returns:
            Access token
        """
        if not self.has_admin_credentials:
            raise ProviderUnavailable("Administrative channel not configured (missing service account)")

        now = int(time.time())
        assertion = jwt.encode(
            {
                "iss": self._client_email,
                "scope": ADMIN_SCOPES,
                "aud": self._token_uri,
                "iat": now,
                "exp": now + 3600,
            },
            self._private_key,
            algorithm="RS256",
        )
        try:
            resp = requests.post(
                self._token_uri,
                data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise ProviderUnavailable(f"Token endpoint unreachable: {exc}")

        if resp.status_code != 200:
            raise ProviderUnavailable(f"Service account token request failed [{resp.status_code}]")

        payload = resp.json()
        self._token = payload["access_token"]
        expires_in = int(payload.get("expires_in", 3600))
        self._token_expires_at = datetime.now() + timedelta(seconds=expires_in)
        return self._token

    def _ensure_authenticated(self) -> None:
        """Ensure we have a valid admin token, refreshing if necessary."""
        # Refresh if token missing, expired or expiring soon (within 60 seconds)
        if not self._token or not self._token_expires_at or datetime.now() >= self._token_expires_at - timedelta(seconds=60):
            self.authenticate_service_account()

    # ─────────────────────────────────────────────────────────────────────────
    # Channels
    # ─────────────────────────────────────────────────────────────────────────
    def post_public(self, path: str, json: Dict[str, Any]) -> Dict[str, Any]:
        """Execute a public-channel POST (API key auth).

        Args:
            path: Endpoint path (e.g., "/accounts:signUp")
            json: JSON payload

        Returns:
            Decoded JSON response

        Raises:
            FirebaseAPIError: On 4xx provider error
            ProviderUnavailable: On transport failure or 5xx
        """
        if not self._api_key:
            raise ProviderUnavailable("FIREBASE_API_KEY is not configured")
        endpoint = f"{self.base_url}{path}"
        return self._send("post", endpoint, params={"key": self._api_key}, json=json)

    def post_admin(self, path: str, json: Dict[str, Any]) -> Dict[str, Any]:
        """Execute an administrative POST scoped to the project.

        Args:
            path: Endpoint path below /projects/{id} (e.g., "/accounts:delete")
            json: JSON payload
        """
        self._ensure_authenticated()
        endpoint = f"{self.base_url}/projects/{self.project_id}{path}"
        headers = {"Authorization": f"Bearer {self._token}"}
        return self._send("post", endpoint, json=json, headers=headers)

    def get_admin(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute an administrative GET scoped to the project."""
        self._ensure_authenticated()
        endpoint = f"{self.base_url}/projects/{self.project_id}{path}"
        headers = {"Authorization": f"Bearer {self._token}"}
        return self._send("get", endpoint, params=params, headers=headers)

    def _send(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        sender = requests.post if method == "post" else requests.get
        try:
            resp = sender(endpoint, timeout=self.timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise ProviderUnavailable(f"Credential provider unreachable: {exc}")
        self._handle_error(resp, endpoint)
        if not resp.content:
            return {}
        return resp.json()

    def _handle_error(self, resp: requests.Response, endpoint: str) -> None:
        """Centralized error handling for HTTP responses.

        Args:
            resp: Response object to check
            endpoint: Endpoint URL without credentials

        Raises:
            ProviderUnavailable: 5xx or rate limiting
            FirebaseAPIError: Other 4xx
        """
        if resp.status_code < 400:
            return
        code = parse_error_code(resp)
        if resp.status_code >= 500 or resp.status_code == 429 or code.startswith("TOO_MANY_ATTEMPTS"):
            raise ProviderUnavailable(f"Credential provider error [{resp.status_code}] {code}")
        raise FirebaseAPIError(resp.status_code, code, endpoint)


def parse_error_code(resp: requests.Response) -> str:
    """Extract the provider error code from an Identity Toolkit error body.

    Bodies look like {"error": {"code": 400, "message": "WEAK_PASSWORD : Password should be ..."}}.
    """
    try:
        body = resp.json()
    except ValueError:
        return (resp.text or "").strip()[:200] or "UNKNOWN"
    message = ""
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        message = str(body["error"].get("message") or "")
    return message.split(" : ", 1)[0].strip() or "UNKNOWN"
