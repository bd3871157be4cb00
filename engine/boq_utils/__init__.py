"""
BOQ Ledger Utils - shared infrastructure.

Submodules:
- core: Logging, errors, and warning filters
- db: PostgreSQL/mock persistence, job queue and worker
- vault: Settings and secrets from HashiCorp Vault
"""
