"""
OSS Manager - Access & Authority Module

Components:
- rbac.py: Resources, actions, claims and permission evaluation
- guards.py: Auth/Admin/Permission/Ownership guards and decorators
- routes.py: Route-prefix table and gating middleware
- ratelimit.py: Failed-login throttling over a shared counter
- audit.py: Best-effort audit trail

Usage:
    from ossmanager.api.access.rbac import Resource, Action, has_permission
    from ossmanager.api.access.audit import AuditEmitter, audited
"""
