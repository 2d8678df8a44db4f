"""
RBAC (Role-Based Access Control) application.

Provides multi-tenant access control with:
- Global user identity and per-tenant memberships
- Per-tenant roles with module/action grants
- Per-member overrides that beat the role
- Cached access checks for UI rendering, fresh checks for guards
- Append-only audit trail of every authorization change
"""
