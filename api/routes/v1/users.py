"""
api/routes/v1/users.py -- Profile and password updates for signed-in users.

Routes:
  PUT /api/v1/users/{user_id}           -- replace profile fields and tag set
  PUT /api/v1/users/{user_id}/password  -- change password

Both require authentication. The workflow enforces that the caller is the
account owner or an admin (not_authorized otherwise); admin flags in the body
are ignored.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import PasswordChange, ProfileUpdate, SuccessResponse, UserResponse
from auth.accounts import AccountService
from auth.dependencies import get_current_user
from auth.models import User

router = APIRouter()


@router.put("/users/{user_id}", response_model=UserResponse)
def update_profile(
    request: Request,
    user_id: int,
    body: ProfileUpdate,
    current_user: User = Depends(get_current_user),
) -> UserResponse:
    accounts: AccountService = request.app.state.accounts
    updated = accounts.update_profile(user_id, body.model_dump(), actor=current_user)
    return user_to_response(updated)


@router.put("/users/{user_id}/password", response_model=SuccessResponse)
def change_password(
    request: Request,
    user_id: int,
    body: PasswordChange,
    current_user: User = Depends(get_current_user),
) -> SuccessResponse:
    accounts: AccountService = request.app.state.accounts
    accounts.change_password(user_id, body.password, actor=current_user)
    return SuccessResponse()


def user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        name=user.name,
        title=user.title,
        tags=user.tags,
        is_admin=user.is_admin,
        is_agency_admin=user.is_agency_admin,
        federated=user.federated_subject is not None,
        created_at=user.created_at or "",
    )
