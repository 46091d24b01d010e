"""Flask application factory and bootstrap.

This module provides the create_app() factory function for initializing
the Flask application with its services, blueprints and error handlers.
Services are constructed once here and handed to the routes through
``app.config``; tests pass fakes instead.
"""
from __future__ import annotations

from flask import Flask
from werkzeug.middleware.proxy_fix import ProxyFix

from academy_iam.bootstrap import build_provider, build_store, build_synchronizer
from academy_iam.config import AppConfig, load_settings
from academy_iam.core.access import AccessControlGate


# ─────────────────────────────────────────────────────────────────────────────
# Application Factory
# ─────────────────────────────────────────────────────────────────────────────
def create_app(cfg: AppConfig | None = None, *, provider=None, store=None) -> Flask:
    """Create and configure Flask application."""
    cfg = cfg or load_settings()

    app = Flask(__name__)

    # Store config for easy access in routes
    app.config["APP_CONFIG"] = cfg
    app.config["SECRET_KEY"] = cfg.secret_key
    app.config["MAX_CONTENT_LENGTH"] = cfg.max_content_length
    app.config["DEMO_MODE"] = cfg.demo_mode

    # Trust X-Forwarded-* headers from proxy (nginx)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)  # type: ignore

    if provider is None:
        provider = build_provider(cfg)
    if store is None:
        store = build_store(cfg)

    app.config["CREDENTIAL_PROVIDER"] = provider
    app.config["IDENTITY_STORE"] = store
    app.config["SYNCHRONIZER"] = build_synchronizer(cfg, provider, store)
    app.config["ACCESS_GATE"] = AccessControlGate(provider, store)

    # Register blueprints
    from academy_iam.api import auth, errors, health, users

    app.register_blueprint(health.bp)
    app.register_blueprint(auth.bp)
    app.register_blueprint(users.bp)

    # Register error handlers
    errors.register_error_handlers(app)

    # Log startup info
    mode_label = "DEMO" if cfg.demo_mode else "PRODUCTION"
    print(f"[flask_app] Mode={mode_label}")
    print(f"[flask_app] Identity API registered at /api/v1/auth and /api/sms/users")

    if cfg.demo_mode:
        print("[flask_app] WARNING: Demo mode active - do not deploy with demo credentials")

    return app


# ─────────────────────────────────────────────────────────────────────────────
# Application Instance (for Gunicorn)
# ─────────────────────────────────────────────────────────────────────────────
app = create_app()


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5000, debug=True)
