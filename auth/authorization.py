"""
auth/authorization.py -- Role and permission policies for protected routes.

Each protected route names a policy in ROUTE_POLICIES. A policy is plain data:
the roles that may call the route and the (resource, action) permissions that
also grant access. is_authorized() is the single place that interprets it.

Semantics:
  - An empty policy admits any authenticated user.
  - Holding ANY listed role admits the user.
  - Holding ANY listed permission admits the user.
  - SUPER_ADMIN is admitted wherever ADMIN is.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from auth.models import Role, User


@dataclass(frozen=True)
class AccessPolicy:
    roles: frozenset[str] = field(default_factory=frozenset)
    permissions: frozenset[tuple[str, str]] = field(default_factory=frozenset)


_ADMINS = frozenset({Role.ADMIN.value, Role.SUPER_ADMIN.value})

ROUTE_POLICIES: dict[str, AccessPolicy] = {
    "admin.users.update": AccessPolicy(roles=_ADMINS),
    "admin.users.audit_logs": AccessPolicy(
        roles=_ADMINS | {Role.MODERATOR.value},
        permissions=frozenset({("audit", "read")}),
    ),
    "admin.users.permissions.grant": AccessPolicy(roles=_ADMINS),
    "admin.users.permissions.revoke": AccessPolicy(roles=_ADMINS),
}


def is_authorized(user: User, policy: AccessPolicy, granted: set[tuple[str, str]]) -> bool:
    """Return True if user satisfies policy.

    granted is the user's (resource, action) set, loaded by the caller only
    when the policy lists permissions.
    """
    if not policy.roles and not policy.permissions:
        return True
    roles = set(user.roles)
    if Role.SUPER_ADMIN.value in roles:
        roles.add(Role.ADMIN.value)
    if roles & policy.roles:
        return True
    return bool(policy.permissions & granted)
