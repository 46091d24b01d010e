"""Pytest shared fixtures: fake credential provider, stores, tokens and app."""
import os
import pathlib
import sys
import threading
import time
from typing import Optional

# Add project root to Python path
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Configure test environment BEFORE any app imports
os.environ.setdefault("DEMO_MODE", "true")
os.environ.setdefault("IDENTITY_STORE_BACKEND", "memory")

import pytest
import requests
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.backends import default_backend
from authlib.jose import JsonWebKey, jwt as authlib_jwt

from academy_iam.config import AppConfig
from academy_iam.core.errors import DuplicateIdentity, InvalidSession
from academy_iam.core.models import Identity, Role
from academy_iam.core.stores import InMemoryIdentityStore
from academy_iam.core.synchronizer import IdentitySynchronizer
from academy_iam.core.validators import validate_email, validate_secret
from scripts import audit


# ─────────────────────────────────────────────────────────────────────────────
# Network Guard Rails
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture(autouse=True)
def _block_network(monkeypatch, request):
    """
    Prevent unit tests from reaching Google or Firebase.

    Tests that exercise the HTTP client install their own stubs on top.
    """
    if request.node.get_closest_marker("integration"):
        return

    def _stub_post(url, *args, **kwargs):
        raise RuntimeError(f"Unexpected HTTP POST in unit test: {url}")

    def _stub_get(url, *args, **kwargs):
        raise RuntimeError(f"Unexpected HTTP GET in unit test: {url}")

    monkeypatch.setattr(requests, "post", _stub_post)
    monkeypatch.setattr(requests, "get", _stub_get)


@pytest.fixture(autouse=True)
def _isolated_audit_log(monkeypatch, tmp_path):
    """Write audit events to a per-test directory."""
    audit_dir = tmp_path / "audit"
    monkeypatch.setattr(audit, "AUDIT_LOG_DIR", audit_dir)
    monkeypatch.setattr(audit, "AUDIT_LOG_FILE", audit_dir / "identity-events.jsonl")
    monkeypatch.setenv("AUDIT_LOG_SIGNING_KEY", "test-signing-key-for-audit-trail")
    return audit_dir


# ─────────────────────────────────────────────────────────────────────────────
# Fake credential provider
# ─────────────────────────────────────────────────────────────────────────────
class FakeCredentialProvider:
    """In-process stand-in for CredentialProvider.

    Session tokens are "token-<uid>". Set ``failures[method] = exc`` to make
    the next calls of that method raise ``exc``; ``calls`` records every call.
    """

    def __init__(self):
        self.credentials: dict[str, dict] = {}
        self.failures: dict[str, Exception] = {}
        self.calls: list[tuple] = []
        self._next = 1
        self._lock = threading.Lock()

    def _maybe_fail(self, method: str, *args):
        self.calls.append((method,) + args)
        exc = self.failures.get(method)
        if exc is not None:
            raise exc

    def add(self, email: str, uid: Optional[str] = None, created_at: Optional[int] = None,
            email_verified: bool = True) -> str:
        with self._lock:
            uid = uid or f"uid-{self._next}"
            self._next += 1
            self.credentials[uid] = {
                "email": email,
                "password": "Secret123!",
                "created_at": str(created_at if created_at is not None else 0),
                "email_verified": email_verified,
            }
        return uid

    def create_credential(self, email, secret):
        email = validate_email(email)
        validate_secret(secret)
        self._maybe_fail("create_credential", email)
        with self._lock:
            if any(c["email"] == email for c in self.credentials.values()):
                raise DuplicateIdentity("Credential provider rejected the request: EMAIL_EXISTS")
            uid = f"uid-{self._next}"
            self._next += 1
            self.credentials[uid] = {"email": email, "password": secret, "created_at": str(int(time.time() * 1000))}
        return uid

    def _uid_for(self, session_token):
        uid = (session_token or "").removeprefix("token-")
        if uid not in self.credentials:
            raise InvalidSession("Credential provider rejected the request: INVALID_ID_TOKEN")
        return uid

    def update_credential_email(self, session_token, new_email):
        new_email = validate_email(new_email)
        self._maybe_fail("update_credential_email", session_token, new_email)
        uid = self._uid_for(session_token)
        if any(u != uid and c["email"] == new_email for u, c in self.credentials.items()):
            raise DuplicateIdentity("Credential provider rejected the request: EMAIL_EXISTS")
        self.credentials[uid]["email"] = new_email
        return {"external_id": uid, "email": new_email, "session_token": f"token-{uid}"}

    def update_credential_secret(self, session_token, new_secret):
        validate_secret(new_secret)
        self._maybe_fail("update_credential_secret", session_token)
        uid = self._uid_for(session_token)
        self.credentials[uid]["password"] = new_secret
        return {"external_id": uid, "email": self.credentials[uid]["email"], "session_token": f"token-{uid}"}

    def delete_credential(self, external_id):
        self._maybe_fail("delete_credential", external_id)
        with self._lock:
            self.credentials.pop(external_id, None)

    def get_credential(self, external_id):
        self._maybe_fail("get_credential", external_id)
        c = self.credentials.get(external_id)
        if c is None:
            return None
        return {"external_id": external_id, "email": c["email"], "disabled": False,
                "created_at": c["created_at"], "last_login_at": None}

    def iter_credentials(self, limit=None):
        self._maybe_fail("iter_credentials")
        uids = sorted(self.credentials)
        if limit is not None:
            uids = uids[:limit]
        for uid in uids:
            yield self.get_credential(uid)

    def verify_session(self, session_token):
        self._maybe_fail("verify_session", session_token)
        uid = self._uid_for(session_token)
        credential = self.credentials[uid]
        return {"external_id": uid, "email": credential["email"],
                "email_verified": credential.get("email_verified", False)}


class FlakyStore(InMemoryIdentityStore):
    """In-memory store whose methods can be made to fail.

    ``failures[name] = exc`` raises before the operation runs;
    ``after_success[name] = exc`` applies the operation and then raises,
    which models a timeout after the database committed.
    """

    def __init__(self):
        super().__init__()
        self.failures: dict[str, Exception] = {}
        self.after_success: dict[str, Exception] = {}

    def _wrap(self, name, fn, *args):
        if name in self.failures:
            raise self.failures[name]
        result = fn(*args)
        if name in self.after_success:
            raise self.after_success[name]
        return result

    def insert(self, identity):
        return self._wrap("insert", super().insert, identity)

    def update(self, external_id, fields):
        return self._wrap("update", super().update, external_id, fields)

    def delete_row(self, user_id):
        return self._wrap("delete_row", super().delete_row, user_id)

    def find_by_external_id(self, external_id):
        return self._wrap("find_by_external_id", super().find_by_external_id, external_id)


@pytest.fixture()
def provider():
    return FakeCredentialProvider()


@pytest.fixture()
def store():
    return FlakyStore()


@pytest.fixture()
def audit_events():
    """Audit sink recording (event_type, subject, kwargs) tuples."""
    events = []

    def sink(event_type, subject, **kwargs):
        events.append((event_type, subject, kwargs))
        return True

    sink.events = events
    return sink


@pytest.fixture()
def synchronizer(provider, store, audit_events):
    return IdentitySynchronizer(provider, store, audit_sink=audit_events)


def add_user(store, provider=None, *, email="user@school.test", role=Role.STUDENT, branch_id=None,
             full_name="Test User", linked=True, external_id=None, **extra) -> Identity:
    """Insert a row (and a matching credential when ``linked`` and a provider is given)."""
    if linked and provider is not None:
        external_id = provider.add(email)
    return store.insert(Identity(
        email=email, full_name=full_name, role=role, branch_id=branch_id, external_id=external_id, **extra
    ))


def auth_header(identity_or_uid) -> dict:
    uid = getattr(identity_or_uid, "external_id", identity_or_uid)
    return {"Authorization": f"Bearer token-{uid}"}


# ─────────────────────────────────────────────────────────────────────────────
# Flask Test Client
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture()
def app_config():
    return AppConfig(demo_mode=True, secret_key="test-secret", firebase_project_id="academy-test",
                     identity_store_backend="memory")


@pytest.fixture()
def flask_app(app_config, provider, store, audit_events):
    from academy_iam.flask_app import create_app

    flask_app = create_app(app_config, provider=provider, store=store)
    flask_app.config.update(TESTING=True)
    flask_app.config["SYNCHRONIZER"]._audit = audit_events
    return flask_app


@pytest.fixture()
def client(flask_app):
    with flask_app.test_client() as client:
        with flask_app.app_context():
            yield client


# ─────────────────────────────────────────────────────────────────────────────
# RSA Key Pair for ID token testing
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture(scope="session")
def rsa_key_pair():
    """Generate RSA key pair for JWT signing in tests."""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
        backend=default_backend()
    )

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )

    public_key = private_key.public_key()
    public_pem = public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )

    return {
        "private_key": private_key,
        "private_pem": private_pem,
        "public_key": public_key,
        "public_pem": public_pem,
    }


def jwks_for(rsa_key_pair: dict, kid: str = "default-key-id") -> dict:
    """JWKS document exposing the test public key."""
    jwk = JsonWebKey.import_key(rsa_key_pair["public_pem"], {"kty": "RSA"})
    jwk_dict = jwk.as_dict()
    jwk_dict["kid"] = kid
    jwk_dict["use"] = "sig"
    jwk_dict["alg"] = "RS256"
    return {"keys": [jwk_dict]}


def create_firebase_id_token(
    rsa_key_pair: dict,
    project_id: str = "academy-test",
    sub: str = "uid-123",
    email: str = "alice@school.test",
    exp_offset: int = 3600,
    issuer: Optional[str] = None,
    audience: Optional[str] = None,
    kid: str = "default-key-id",
) -> str:
    """Create an RS256-signed token shaped like a Firebase ID token."""
    now = int(time.time())
    header = {"alg": "RS256", "typ": "JWT", "kid": kid}
    payload = {
        "iss": issuer or f"https://securetoken.google.com/{project_id}",
        "aud": audience or project_id,
        "sub": sub,
        "user_id": sub,
        "email": email,
        "email_verified": True,
        "auth_time": now,
        "iat": now,
        "exp": now + exp_offset,
    }
    token = authlib_jwt.encode(header, payload, rsa_key_pair["private_key"])
    return token.decode("utf-8") if isinstance(token, bytes) else token


# ─────────────────────────────────────────────────────────────────────────────
# Pytest Configuration
# ─────────────────────────────────────────────────────────────────────────────
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (requires running stack)"
    )
