"""Construction of the long-lived services from settings.

Used by the Flask app factory and the reconciliation CLI, so both run
against identically configured provider and store instances.
"""
from __future__ import annotations

from academy_iam.config import AppConfig
from academy_iam.core.firebase import CredentialProvider, FirebaseClient


def build_provider(cfg: AppConfig) -> CredentialProvider:
    """Credential provider for the configured Firebase project."""
    client = FirebaseClient(
        cfg.firebase_project_id,
        cfg.firebase_api_key,
        client_email=cfg.firebase_client_email,
        private_key=cfg.firebase_private_key,
        token_uri=cfg.firebase_token_uri,
        timeout=cfg.provider_timeout,
    )
    if not client.has_admin_credentials:
        print("[bootstrap] WARNING: No Firebase service account; delete/lookup/list will fail")
    return CredentialProvider(client)


def build_store(cfg: AppConfig):
    """Identity record store for the configured backend."""
    if cfg.uses_memory_store:
        from academy_iam.core.stores import InMemoryIdentityStore
        print("[bootstrap] Using in-memory identity store (data is lost on restart)")
        return InMemoryIdentityStore()

    from academy_iam.core.stores_db import PostgresIdentityStore
    return PostgresIdentityStore(
        cfg.database_url,
        cfg.users_table,
        connect_timeout=cfg.db_connect_timeout,
        statement_timeout_ms=cfg.db_statement_timeout_ms,
    )


def build_synchronizer(cfg: AppConfig, provider, store):
    """Identity synchronizer using the configured self-service role."""
    from academy_iam.core.models import Role
    from academy_iam.core.synchronizer import IdentitySynchronizer
    return IdentitySynchronizer(provider, store, default_role=Role.parse(cfg.default_self_service_role))
