"""
Authorization and credential-issuance core for AuthHub.

Provides:
- Per-service signing secrets, encrypted at rest (secret_vault)
- RBAC models, bindings and role assignments (rbac_store)
- Login strategies and per-service login page configuration
  (strategies, auth_methods, handler)
- Service-scoped JWT issuance and verification (token_issuer, authorization)
- FastAPI dependencies for hub administration
"""
