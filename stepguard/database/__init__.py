"""
Storage for StepGuard.

This package provides:
- auth_db: connection, sessions and schema (PostgreSQL or SQLite)
- two_factor_store: enabled/secret state over the primary table and legacy user columns
- challenge_store: emailed one-time codes
- recovery_vault: bcrypt-hashed recovery codes
- passkey_registry: passkey presence lookups
"""
