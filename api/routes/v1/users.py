"""
api/routes/v1/users.py -- Role-scoped user administration endpoints.

Routes:
  GET   /api/v1/users        -- list users visible to the caller (auth)
  PATCH /api/v1/users/{id}   -- change role / is_active (admin only)

Visibility comes from scope_for(): admins see every account, every other
role sees only its own.

Security:
  [M4] PATCH /users/{id} blocks self-deactivation and last-admin removal,
       both for deactivation and for demoting the last active admin.
  Deactivating a user revokes all of their refresh tokens, so the change
  takes effect at the next refresh instead of up to a week later.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import UserPatch, UserResponse
from auth.dependencies import get_current_principal, require_admin
from auth.models import Principal, Role, scope_for
from auth.store import UserStore

logger = logging.getLogger("folio.api.users")

# Auth policy:
# - GET   /api/v1/users:       requires auth (get_current_principal), scoped by role
# - PATCH /api/v1/users/{id}:  requires admin (require_admin)
router = APIRouter()


@router.get("/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> list[UserResponse]:
    user_store: UserStore = request.app.state.user_store
    users = user_store.list_users(scope_for(principal.role, principal.id))
    return [UserResponse.from_user(u) for u in users]


@router.patch("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    principal: Principal = Depends(require_admin),
) -> UserResponse:
    """Update a user's role or active status. Admin only.

    [M4] Prevents:
      - Self-deactivation (admin accidentally locking themselves out).
      - Deactivating or demoting the last active admin (no recovery path
        without DB access).
    """
    user_store: UserStore = request.app.state.user_store

    target = user_store.get_by_id(user_id)
    if target is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )

    removes_admin = target.role is Role.ADMIN and target.is_active and (
        body.is_active is False or (body.role is not None and body.role is not Role.ADMIN)
    )
    # [M4] Block self-deactivation
    if body.is_active is False and target.id == principal.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
        )
    # [M4] Block removing the last admin
    if removes_admin and user_store.count_active_admins() <= 1:
        raise HTTPException(
            status_code=400,
            detail={"code": "last_admin", "message": "Cannot remove the last active admin account."},
        )

    updates: dict = {}
    if body.role is not None:
        updates["role"] = body.role
    if body.is_active is not None:
        updates["is_active"] = body.is_active
    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    user_store.update_user(user_id, **updates)
    if body.is_active is False:
        user_store.revoke_all_refresh_tokens(user_id)
    logger.info("User %s updated by admin %s: %s", user_id, principal.id, sorted(updates))

    updated = user_store.get_by_id(user_id)
    if updated is None:
        raise HTTPException(
            status_code=500,
            detail={"code": "internal_error", "message": "User not found after write."},
        )
    return UserResponse.from_user(updated)
