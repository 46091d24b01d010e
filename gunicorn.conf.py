"""Gunicorn configuration file with secret loading.

Secret Loading Priority (post_fork hook):
1. /run/secrets (Docker secrets) - read directly by academy_iam.config.settings
2. <NAME>_FILE environment variables (Kubernetes / Compose file mounts)
   -> the file content is exported as <NAME> for the worker

Run with:
    gunicorn -c gunicorn.conf.py academy_iam.flask_app:app
"""
import os
from pathlib import Path

bind = os.environ.get("GUNICORN_BIND", "0.0.0.0:8000")
workers = int(os.environ.get("GUNICORN_WORKERS", "2"))
# Provider and database calls are bounded well below this
timeout = int(os.environ.get("GUNICORN_TIMEOUT", "30"))

# Environment variables that may be provided through <NAME>_FILE
SECRET_ENV_VARS = (
    "FLASK_SECRET_KEY",
    "FIREBASE_API_KEY",
    "FIREBASE_PRIVATE_KEY",
    "DATABASE_URL",
    "DB_PASSWORD",
    "AUDIT_LOG_SIGNING_KEY",
)


def post_fork(server, worker):
    """
    Called just after a worker has been forked.

    Exports <NAME>_FILE secrets into the worker environment before the
    application loads its settings. Values already set are left alone.
    """
    demo_mode = os.environ.get("DEMO_MODE", "false").lower() == "true"
    if demo_mode and os.environ.get("IDENTITY_STORE_BACKEND", "memory").lower() == "db":
        worker.log.warning("DEMO_MODE=true with IDENTITY_STORE_BACKEND=db: demo defaults against a real database")

    secrets_dir = Path("/run/secrets")
    if secrets_dir.is_dir():
        secret_files = list(secrets_dir.glob("*"))
        if secret_files:
            worker.log.info(f"Found {len(secret_files)} secrets in /run/secrets (read by settings)")

    for env_name in SECRET_ENV_VARS:
        if os.environ.get(env_name):  # Skip if already set
            continue
        file_path = os.environ.get(f"{env_name}_FILE", "").strip()
        if not file_path:
            continue
        try:
            os.environ[env_name] = Path(file_path).read_text(encoding="utf-8").strip()
            worker.log.info(f"Loaded {env_name} from {file_path}")
        except OSError as exc:
            worker.log.error(f"Failed to read {env_name}_FILE ({file_path}): {exc}")
