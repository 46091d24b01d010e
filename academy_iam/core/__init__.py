"""Core Business Logic Module

This module provides the identity logic for the academy backend,
independent of the HTTP framework.

Module Structure:
    - firebase/         : Credential provider client (Identity Toolkit API)
    - stores.py         : In-memory identity record store
    - stores_db.py      : PostgreSQL identity record store (psycopg 3)
    - synchronizer.py   : Cross-system create/delete/sync with compensation
    - access.py         : Bearer verification and policy-table authorization
    - errors.py         : Error taxonomy and SyncState
    - models.py         : Role, Identity, Principal
    - validators.py     : Input validation

Usage Pattern:
    These modules are NOT auto-imported; import explicitly when needed:
        from academy_iam.core.synchronizer import IdentitySynchronizer
        from academy_iam.core.access import AccessControlGate
        from academy_iam.core.errors import IdentityError, SyncState
"""
