# routers/auth.py - Login, session info and permission reload
from fastapi import APIRouter, Depends, HTTPException, Request

from auth import (
    AuthService, UserLogin, TokenResponse, CurrentUser,
    ACCESS_TOKEN_EXPIRE_MINUTES, get_current_user,
)
from dependencies import get_resolver, get_store
from permissions import PermissionResolver
from store import RecordStore

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


def _session_payload(user: CurrentUser) -> dict:
    payload = user.model_dump()
    payload["is_admin"] = user.is_admin
    payload["categories"] = user.grants.categories()
    return payload


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: UserLogin,
    request: Request,
    store: RecordStore = Depends(get_store),
    resolver: PermissionResolver = Depends(get_resolver),
):
    """Authenticate and receive a bearer token for the session"""
    user_obj = await AuthService.authenticate_user(
        credentials.email, credentials.password, store,
        request_id=getattr(request.state, "request_id", None),
    )
    if not user_obj:
        raise HTTPException(status_code=401, detail="Invalid credentials")

    # Recompute from the stored record so the session starts from fresh grants
    record, grants = await resolver.reload(user_obj.id)
    user = CurrentUser.build(record, grants)

    access_token = AuthService.create_access_token({"sub": user.id, "email": user.email, "role": user.role})
    return TokenResponse(
        access_token=access_token,
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=_session_payload(user),
    )


@router.get("/me")
async def get_current_user_info(user: CurrentUser = Depends(get_current_user)):
    """Current user with the resolved permission set"""
    return _session_payload(user)


@router.post("/reload-permissions")
async def reload_permissions(
    user: CurrentUser = Depends(get_current_user),
    resolver: PermissionResolver = Depends(get_resolver),
):
    """Drop the cached permission set and recompute it from the stored user"""
    record, grants = await resolver.reload(user.id)
    return _session_payload(CurrentUser.build(record, grants))
