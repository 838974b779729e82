"""
api/routes/admin.py -- User administration endpoints.

Routes:
  PATCH  /admin/users/{id}              -- update roles / is_active
  GET    /admin/users/{id}/audit-logs   -- a user's audit trail
  POST   /admin/users/{id}/permissions  -- grant a (resource, action) permission
  DELETE /admin/users/{id}/permissions  -- revoke it

Access is decided by the named policies in auth/authorization.py, so the
roles allowed on each route live in one table rather than in the handlers.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from api.models import AuditEntryResponse, MeResponse, PermissionRequest, PermissionResponse, UserPatch
from api.routes.auth import audit_to_response, user_to_me
from auth.dependencies import require_policy
from auth.models import User

router = APIRouter()


@router.patch("/admin/users/{user_id}", response_model=MeResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    actor: User = Depends(require_policy("admin.users.update")),
) -> MeResponse:
    """Update a user's roles or active status.

    [M4] Self-deactivation and deactivating the last active admin are refused.
    Deactivating a user also revokes all of their refresh tokens.
    """
    roles = [r.value for r in body.roles] if body.roles is not None else None
    updated = request.app.state.auth_service.update_user(actor, user_id, roles=roles, is_active=body.is_active)
    return user_to_me(updated)


@router.get("/admin/users/{user_id}/audit-logs", response_model=list[AuditEntryResponse])
def user_audit_logs(
    request: Request,
    user_id: int,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    actor: User = Depends(require_policy("admin.users.audit_logs")),
) -> list[AuditEntryResponse]:
    request.app.state.auth_service.get_user(user_id)
    entries = request.app.state.audit.for_user(user_id, limit=limit, offset=offset)
    return [audit_to_response(e) for e in entries]


@router.post("/admin/users/{user_id}/permissions", response_model=PermissionResponse)
def grant_permission(
    request: Request,
    user_id: int,
    body: PermissionRequest,
    actor: User = Depends(require_policy("admin.users.permissions.grant")),
) -> PermissionResponse:
    """Grant a permission. changed=false means the user already held it."""
    changed = request.app.state.auth_service.grant_permission(actor, user_id, body.resource, body.action)
    return PermissionResponse(resource=body.resource, action=body.action, changed=changed)


@router.delete("/admin/users/{user_id}/permissions", response_model=PermissionResponse)
def revoke_permission(
    request: Request,
    user_id: int,
    body: PermissionRequest,
    actor: User = Depends(require_policy("admin.users.permissions.revoke")),
) -> PermissionResponse:
    changed = request.app.state.auth_service.revoke_permission(actor, user_id, body.resource, body.action)
    return PermissionResponse(resource=body.resource, action=body.action, changed=changed)
