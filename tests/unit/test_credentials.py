"""Unit tests for CredentialProvider: provider calls, error mapping, ID token verification."""
from unittest.mock import MagicMock

import pytest
from jwt import PyJWKClient
from jwt.exceptions import PyJWKClientConnectionError

from academy_iam.core.errors import (
    DuplicateIdentity,
    InvalidEmail,
    InvalidSession,
    NotFound,
    ProviderRejected,
    ProviderUnavailable,
    WeakSecret,
)
from academy_iam.core.firebase import CredentialProvider, FirebaseAPIError, translate_error

from tests.conftest import create_firebase_id_token, jwks_for


def _api_error(code, status=400):
    return FirebaseAPIError(status, code, "https://toolkit.test/v1/accounts:signUp")


@pytest.fixture()
def fb_client():
    client = MagicMock()
    client.project_id = "academy-test"
    client.timeout = 5
    return client


@pytest.fixture()
def credentials(fb_client):
    return CredentialProvider(fb_client)


# ─────────────────────────────────────────────────────────────────────────────
# Error mapping
# ─────────────────────────────────────────────────────────────────────────────
@pytest.mark.parametrize("code,expected", [
    ("EMAIL_EXISTS", DuplicateIdentity),
    ("WEAK_PASSWORD", WeakSecret),
    ("INVALID_EMAIL", InvalidEmail),
    ("INVALID_ID_TOKEN", InvalidSession),
    ("TOKEN_EXPIRED", InvalidSession),
    ("USER_NOT_FOUND", NotFound),
    ("OPERATION_NOT_ALLOWED", ProviderRejected),
])
def test_translate_error(code, expected):
    assert isinstance(translate_error(_api_error(code)), expected)


def test_translate_error_user_not_found_on_session_call_is_invalid_session():
    assert isinstance(translate_error(_api_error("USER_NOT_FOUND"), session_call=True), InvalidSession)


# ─────────────────────────────────────────────────────────────────────────────
# Create / update
# ─────────────────────────────────────────────────────────────────────────────
def test_create_credential_returns_local_id(credentials, fb_client):
    fb_client.post_public.return_value = {"localId": "uid-42", "idToken": "ignored"}

    assert credentials.create_credential("New@X.com", "Secret123!") == "uid-42"
    path, body = fb_client.post_public.call_args.args
    assert path == "/accounts:signUp"
    assert body["email"] == "new@x.com"


def test_create_credential_duplicate_email(credentials, fb_client):
    fb_client.post_public.side_effect = _api_error("EMAIL_EXISTS")

    with pytest.raises(DuplicateIdentity):
        credentials.create_credential("a@x.com", "Secret123!")


def test_create_credential_validates_locally(credentials, fb_client):
    with pytest.raises(InvalidEmail):
        credentials.create_credential("not-an-email", "Secret123!")
    with pytest.raises(WeakSecret):
        credentials.create_credential("a@x.com", "123")
    fb_client.post_public.assert_not_called()


def test_create_credential_without_local_id_is_rejected(credentials, fb_client):
    fb_client.post_public.return_value = {}

    with pytest.raises(ProviderRejected):
        credentials.create_credential("a@x.com", "Secret123!")


def test_update_email_returns_refreshed_token(credentials, fb_client):
    fb_client.post_public.return_value = {"localId": "uid-1", "email": "new@x.com", "idToken": "fresh"}

    result = credentials.update_credential_email("old-token", "new@x.com")

    assert result == {"external_id": "uid-1", "email": "new@x.com", "session_token": "fresh"}
    _, body = fb_client.post_public.call_args.args
    assert body["idToken"] == "old-token"


def test_update_secret_requires_session(credentials, fb_client):
    with pytest.raises(InvalidSession):
        credentials.update_credential_secret("", "Secret123!")
    fb_client.post_public.assert_not_called()


def test_update_secret_with_stale_session(credentials, fb_client):
    fb_client.post_public.side_effect = _api_error("CREDENTIAL_TOO_OLD_LOGIN_AGAIN")

    with pytest.raises(InvalidSession):
        credentials.update_credential_secret("token", "Secret123!")


# ─────────────────────────────────────────────────────────────────────────────
# Delete / lookup / list
# ─────────────────────────────────────────────────────────────────────────────
def test_delete_credential_is_idempotent(credentials, fb_client):
    fb_client.post_admin.side_effect = [{}, _api_error("USER_NOT_FOUND")]

    credentials.delete_credential("uid-1")
    credentials.delete_credential("uid-1")

    assert fb_client.post_admin.call_count == 2


def test_delete_credential_propagates_unavailable(credentials, fb_client):
    fb_client.post_admin.side_effect = ProviderUnavailable("down")

    with pytest.raises(ProviderUnavailable):
        credentials.delete_credential("uid-1")


def test_get_credential(credentials, fb_client):
    fb_client.post_admin.return_value = {"users": [
        {"localId": "uid-1", "email": "a@x.com", "createdAt": "1700000000000"}
    ]}

    view = credentials.get_credential("uid-1")

    assert view == {"external_id": "uid-1", "email": "a@x.com", "disabled": False,
                    "created_at": "1700000000000", "last_login_at": None}


def test_get_credential_absent(credentials, fb_client):
    fb_client.post_admin.return_value = {}

    assert credentials.get_credential("uid-1") is None


def test_iter_credentials_follows_pages_and_limit(credentials, fb_client):
    fb_client.get_admin.side_effect = [
        {"users": [{"localId": "u1"}, {"localId": "u2"}], "nextPageToken": "p2"},
        {"users": [{"localId": "u3"}, {"localId": "u4"}], "nextPageToken": "p3"},
    ]

    ids = [c["external_id"] for c in credentials.iter_credentials(limit=3)]

    assert ids == ["u1", "u2", "u3"]
    second_call = fb_client.get_admin.call_args_list[1]
    assert second_call.kwargs["params"]["nextPageToken"] == "p2"
    assert second_call.kwargs["params"]["maxResults"] == 1


# ─────────────────────────────────────────────────────────────────────────────
# ID token verification
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture()
def serve_jwks(monkeypatch, rsa_key_pair):
    monkeypatch.setattr(PyJWKClient, "fetch_data", lambda self: jwks_for(rsa_key_pair))


def test_verify_session_accepts_valid_token(credentials, rsa_key_pair, serve_jwks):
    token = create_firebase_id_token(rsa_key_pair, sub="uid-7", email="alice@school.test")

    identity = credentials.verify_session(token)

    assert identity == {"external_id": "uid-7", "email": "alice@school.test", "email_verified": True}


def test_verify_session_rejects_expired_token(credentials, rsa_key_pair, serve_jwks):
    token = create_firebase_id_token(rsa_key_pair, exp_offset=-3600)

    with pytest.raises(InvalidSession) as exc_info:
        credentials.verify_session(token)
    assert "expired" in exc_info.value.message


def test_verify_session_rejects_other_project(credentials, rsa_key_pair, serve_jwks):
    token = create_firebase_id_token(rsa_key_pair, project_id="someone-else")

    with pytest.raises(InvalidSession):
        credentials.verify_session(token)


def test_verify_session_rejects_unknown_key(credentials, rsa_key_pair, serve_jwks):
    token = create_firebase_id_token(rsa_key_pair, kid="rotated-away")

    with pytest.raises(InvalidSession):
        credentials.verify_session(token)


def test_verify_session_rejects_garbage(credentials, serve_jwks):
    with pytest.raises(InvalidSession):
        credentials.verify_session("not-a-jwt")


def test_verify_session_keys_unreachable(monkeypatch, credentials, rsa_key_pair):
    def _unreachable(self):
        raise PyJWKClientConnectionError("Fail to fetch data from the url")

    monkeypatch.setattr(PyJWKClient, "fetch_data", _unreachable)
    token = create_firebase_id_token(rsa_key_pair)

    with pytest.raises(ProviderUnavailable):
        credentials.verify_session(token)
