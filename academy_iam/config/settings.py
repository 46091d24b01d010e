"""Settings loader with environment variable and Docker secrets integration."""
from __future__ import annotations
import json
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import quote


def _load_secret_from_file(secret_name: str, env_var: str | None = None) -> str | None:
    """
    Load secret from /run/secrets (Docker secrets pattern).

    Priority:
    1. /run/secrets/{secret_name} (Docker secrets mount)
    2. Environment variable (fallback)

    Args:
        secret_name: Name of the secret file in /run/secrets
        env_var: Optional environment variable name to check as fallback

    Returns:
        Secret value or None if not found
    """
    secret_file = Path("/run/secrets") / secret_name

    # Priority 1: Read from /run/secrets
    if secret_file.exists() and secret_file.is_file():
        try:
            secret_value = secret_file.read_text().strip()
            if secret_value:
                print(f"[settings] ✓ Loaded {secret_name} from /run/secrets")
                return secret_value
        except OSError as e:
            print(f"[settings] ✗ Failed to read /run/secrets/{secret_name}: {e}")

    # Priority 2: Fallback to environment variable
    if env_var:
        secret_value = os.getenv(env_var)
        if secret_value:
            return secret_value

    return None


@dataclass
class AppConfig:
    """Application configuration container."""
    # Mode
    demo_mode: bool

    # Flask
    secret_key: str
    max_content_length: int = 65536

    # Firebase project / public REST channel
    firebase_project_id: str = ""
    firebase_api_key: str = ""

    # Firebase administrative channel (service account)
    firebase_client_email: str = ""
    firebase_private_key: str = ""
    firebase_token_uri: str = "https://oauth2.googleapis.com/token"
    provider_timeout: float = 5.0

    # Record store
    identity_store_backend: str = "db"
    database_url: str = ""
    db_connect_timeout: int = 5
    db_statement_timeout_ms: int = 5000
    users_table: str = "public.userstbl"

    # Roles
    default_self_service_role: str = "Student"

    # Audit
    audit_log_signing_key: str = ""

    @property
    def has_admin_credentials(self) -> bool:
        """True when the service account needed for delete/lookup/list is configured."""
        return bool(self.firebase_client_email and self.firebase_private_key)

    @property
    def uses_memory_store(self) -> bool:
        return self.identity_store_backend == "memory"


def _get_or_generate(var_name: str, demo_default: Optional[str] = None, required: bool = True, demo_mode: bool = False) -> str:
    """Get environment variable or use demo default."""
    value = os.environ.get(var_name)
    if value:
        return value

    if demo_mode and demo_default is not None:
        print(f"[demo-mode] Using default for {var_name}")
        os.environ[var_name] = demo_default
        return demo_default

    if not required:
        return ""

    raise RuntimeError(f"Environment variable {var_name} is required in production mode.")


def _load_service_account(path_value: str) -> dict:
    """Read a Firebase Admin SDK JSON key file.

    The path is tried as given, relative to the working directory, and
    relative to the project root, in that order.
    """
    project_root = Path(__file__).resolve().parents[2]
    candidates = [Path(path_value), Path.cwd() / path_value, project_root / path_value]
    for candidate in candidates:
        if candidate.is_file():
            print(f"[settings] ✓ Loaded Firebase service account from {candidate}")
            return json.loads(candidate.read_text(encoding="utf-8"))

    print(f"[settings] ⚠️ FIREBASE_ADMIN_SDK_PATH is set but file not found: {path_value}")
    for candidate in candidates:
        print(f"[settings]    tried {candidate}")
    return {}


def _database_url_from_parts() -> str:
    """Build a libpq URL from DB_HOST/DB_PORT/DB_NAME/DB_USER/DB_PASSWORD.

    SSL is required for any non-local host unless DB_SSL says otherwise.
    """
    host = os.environ.get("DB_HOST", "localhost")
    port = os.environ.get("DB_PORT", "5432")
    name = os.environ.get("DB_NAME", "psms_db")
    user = os.environ.get("DB_USER", "postgres")
    password = _load_secret_from_file("db_password", "DB_PASSWORD") or ""

    ssl_flag = os.environ.get("DB_SSL")
    use_ssl = ssl_flag.lower() == "true" if ssl_flag is not None else host not in {"localhost", "127.0.0.1"}

    auth = quote(user, safe="")
    if password:
        auth += ":" + quote(password, safe="")
    url = f"postgresql://{auth}@{host}:{port}/{name}"
    if use_ssl:
        url += "?sslmode=require"
    return url


def load_settings() -> AppConfig:
    """Load application settings from environment and /run/secrets."""
    demo_mode = os.environ.get("DEMO_MODE", "false").lower() == "true"

    # Flask secret key
    secret_key = _load_secret_from_file("flask_secret_key", "FLASK_SECRET_KEY")
    if not secret_key:
        if demo_mode:
            secret_key = secrets.token_urlsafe(48)
            os.environ["FLASK_SECRET_KEY"] = secret_key
            print("[demo-mode] Generated temporary FLASK_SECRET_KEY")
        else:
            raise RuntimeError("FLASK_SECRET_KEY not found in /run/secrets or environment")

    # ─────────────────────────────────────────────────────────────────────────
    # Firebase
    # Priority: FIREBASE_ADMIN_SDK_PATH JSON file > individual variables
    # ─────────────────────────────────────────────────────────────────────────
    service_account: dict = {}
    sdk_path = os.environ.get("FIREBASE_ADMIN_SDK_PATH")
    if sdk_path:
        service_account = _load_service_account(sdk_path)

    firebase_project_id = service_account.get("project_id") or _get_or_generate(
        "FIREBASE_PROJECT_ID",
        demo_default="academy-demo",
        demo_mode=demo_mode,
    )
    firebase_api_key = _load_secret_from_file("firebase_api_key", "FIREBASE_API_KEY") or ""
    if not firebase_api_key and not demo_mode:
        print("[settings] ⚠️ FIREBASE_API_KEY not set; credential create/update calls will fail")

    firebase_client_email = service_account.get("client_email") or os.environ.get("FIREBASE_CLIENT_EMAIL", "")
    firebase_private_key = service_account.get("private_key") or _load_secret_from_file(
        "firebase_private_key", "FIREBASE_PRIVATE_KEY"
    ) or ""
    # Keys pasted into .env files carry literal "\n" sequences
    firebase_private_key = firebase_private_key.replace("\\n", "\n")
    firebase_token_uri = service_account.get("token_uri") or os.environ.get(
        "FIREBASE_TOKEN_URI", "https://oauth2.googleapis.com/token"
    )
    provider_timeout = float(os.environ.get("PROVIDER_TIMEOUT_SECONDS", "5"))

    # ─────────────────────────────────────────────────────────────────────────
    # Record store
    # ─────────────────────────────────────────────────────────────────────────
    identity_store_backend = os.environ.get(
        "IDENTITY_STORE_BACKEND", "memory" if demo_mode else "db"
    ).strip().lower()
    if identity_store_backend not in {"db", "memory"}:
        raise RuntimeError(f"IDENTITY_STORE_BACKEND must be 'db' or 'memory', got '{identity_store_backend}'")

    database_url = ""
    if identity_store_backend == "db":
        database_url = _load_secret_from_file("database_url", "DATABASE_URL") or _database_url_from_parts()

    db_connect_timeout = int(os.environ.get("DB_CONNECT_TIMEOUT", "5"))
    db_statement_timeout_ms = int(os.environ.get("DB_STATEMENT_TIMEOUT_MS", "5000"))
    users_table = os.environ.get("USERS_TABLE", "public.userstbl")

    default_self_service_role = os.environ.get("DEFAULT_SELF_SERVICE_ROLE", "Student")

    # Audit log signing key
    audit_log_signing_key = _load_secret_from_file("audit_log_signing_key", "AUDIT_LOG_SIGNING_KEY")
    if audit_log_signing_key:
        os.environ["AUDIT_LOG_SIGNING_KEY"] = audit_log_signing_key
    elif demo_mode:
        demo_key = os.environ.get("AUDIT_LOG_SIGNING_KEY_DEMO", "demo-audit-signing-key-change-in-production")
        os.environ["AUDIT_LOG_SIGNING_KEY"] = demo_key
        audit_log_signing_key = demo_key
        print(f"[demo-mode] Using demo AUDIT_LOG_SIGNING_KEY: {demo_key[:20]}...")

    max_content_length = int(os.environ.get("MAX_CONTENT_LENGTH", "65536"))

    mode_label = "DEMO" if demo_mode else "PRODUCTION"
    print(f"[settings] Mode={mode_label}; project={firebase_project_id}; store={identity_store_backend}")

    if demo_mode:
        print("[settings] WARNING: Demo defaults in use. Do not deploy with these settings.")

    return AppConfig(
        demo_mode=demo_mode,
        secret_key=secret_key,
        max_content_length=max_content_length,
        firebase_project_id=firebase_project_id,
        firebase_api_key=firebase_api_key,
        firebase_client_email=firebase_client_email,
        firebase_private_key=firebase_private_key,
        firebase_token_uri=firebase_token_uri,
        provider_timeout=provider_timeout,
        identity_store_backend=identity_store_backend,
        database_url=database_url,
        db_connect_timeout=db_connect_timeout,
        db_statement_timeout_ms=db_statement_timeout_ms,
        users_table=users_table,
        default_self_service_role=default_self_service_role,
        audit_log_signing_key=audit_log_signing_key or "",
    )
