# routers/users.py - User administration: accounts, roles, custom grants, activation, bundles
import uuid
from typing import Iterable, Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, EmailStr, Field, field_validator

from auth import (
    AuthService, require_permission, require_any_permission, validate_password_policy, CurrentUser,
)
from dependencies import get_resolver, get_store
from errors import AuthorizationError, NotFoundError, ValidationError
from models import Branch, User, PermissionBundle, AuditLog, AuditEventType, UserRole
from permissions import (
    BUNDLE_PREFIX, PERMISSION_CATALOGUE, PermissionCode, PermissionResolver, catalogue_by_category,
)
from store import RecordStore

router = APIRouter(prefix="/api/v1/users", tags=["Users"])

# Grants that open user administration; only admins hand these out
ADMIN_ONLY_GRANTS = frozenset({"create:users", "edit:users", "delete:users"})


# --- Schemas ---

class UserOut(BaseModel):
    id: str
    email: str
    full_name: str
    role: str
    branch_id: Optional[str] = None
    permissions: List[str] = []
    is_active: bool
    last_login_at: Optional[str] = None
    created_at: str


class UserCreate(BaseModel):
    email: EmailStr
    password: str
    full_name: str = Field(..., min_length=1, max_length=200)
    role: str = "user"
    branch_id: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)
    is_active: bool = True

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return validate_password_policy(v)


class PasswordReset(BaseModel):
    new_password: str

    @field_validator("new_password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return validate_password_policy(v)


class RoleUpdate(BaseModel):
    role: str = Field(..., description="One of: admin, user")


class PermissionsUpdate(BaseModel):
    permissions: List[str] = Field(default_factory=list)


class ActiveUpdate(BaseModel):
    is_active: bool


class BundleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, pattern=r"^[a-z0-9_\-]+$")
    description: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)


class BundleOut(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    permissions: List[str] = []


# --- Helpers ---

def _user_to_out(u: User) -> UserOut:
    return UserOut(
        id=u.id,
        email=u.email,
        full_name=u.full_name or "",
        role=u.role.value if isinstance(u.role, UserRole) else u.role,
        branch_id=u.branch_id,
        permissions=list(u.permissions or []),
        is_active=u.is_active,
        last_login_at=u.last_login_at.isoformat() if u.last_login_at else None,
        created_at=u.created_at.isoformat() if u.created_at else "",
    )


def _bundle_to_out(b: PermissionBundle) -> BundleOut:
    return BundleOut(id=b.id, name=b.name, description=b.description, permissions=list(b.permissions or []))


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


async def _get_user(store: RecordStore, user_id: str) -> User:
    target = await store.get(User, user_id)
    if not target:
        raise NotFoundError("User not found")
    return target


def _normalize_codes(codes: List[str], allow_bundles: bool) -> List[str]:
    """Parse grants and keep them to catalogue codes (and bundle references)"""
    normalized = []
    for code in codes:
        if allow_bundles and code.startswith(BUNDLE_PREFIX):
            normalized.append(code)
            continue
        try:
            parsed = str(PermissionCode.parse(code))
        except ValueError:
            raise ValidationError(f"Invalid permission code: {code}", details={"field": "permissions"})
        if parsed not in PERMISSION_CATALOGUE:
            raise ValidationError(f"Unknown permission code: {parsed}", details={"field": "permissions"})
        normalized.append(parsed)
    return sorted(set(normalized))


async def _require_bundles(store: RecordStore, grants: List[str]) -> None:
    bundle_names = [g[len(BUNDLE_PREFIX):] for g in grants if g.startswith(BUNDLE_PREFIX)]
    if not bundle_names:
        return
    found = {b.name for b in await store.fetch_permission_bundles(bundle_names)}
    missing = sorted(set(bundle_names) - found)
    if missing:
        raise ValidationError(f"Unknown permission bundles: {', '.join(missing)}", details={"field": "permissions"})


async def _ensure_grantable(
    current_user: CurrentUser,
    store: RecordStore,
    grants: List[str],
    already_held: Iterable[str] = (),
) -> None:
    """Non-admins may only hand out codes they hold, and never user administration.

    Grants the target already has are left alone; bundle references are
    checked code by code.
    """
    if current_user.is_admin:
        return
    kept = set(already_held)
    added = [g for g in grants if g not in kept]
    codes = {g for g in added if not g.startswith(BUNDLE_PREFIX)}
    bundle_names = [g[len(BUNDLE_PREFIX):] for g in added if g.startswith(BUNDLE_PREFIX)]
    if bundle_names:
        for bundle in await store.fetch_permission_bundles(bundle_names):
            codes.update(c for c in bundle.permissions or [] if not c.startswith(BUNDLE_PREFIX))

    for code in sorted(codes):
        if code in ADMIN_ONLY_GRANTS or not current_user.grants.has(code):
            raise AuthorizationError(f"You cannot grant permission: {code}")


def _ensure_can_manage(current_user: CurrentUser, target: User) -> None:
    if target.role == UserRole.ADMIN and not current_user.is_admin:
        raise AuthorizationError("Only admins can change an admin account")


# --- Endpoints ---

@router.get("", response_model=List[UserOut])
async def list_users(
    user: CurrentUser = Depends(require_permission("view:users")),
    store: RecordStore = Depends(get_store),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    role: Optional[str] = None,
    branch_id: Optional[str] = None,
    active_only: bool = False,
):
    """List users"""
    criteria = []
    if active_only:
        criteria.append(User.is_active.is_(True))
    if branch_id:
        criteria.append(User.branch_id == branch_id)
    if role:
        try:
            criteria.append(User.role == UserRole(role))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid role: {role}")

    users = await store.select(
        User, *criteria, order_by=(User.created_at.desc(),), limit=limit, offset=offset,
    )
    return [_user_to_out(u) for u in users]


@router.post("", response_model=UserOut, status_code=201)
async def create_user(
    data: UserCreate,
    request: Request,
    current_user: CurrentUser = Depends(require_permission("create:users")),
    store: RecordStore = Depends(get_store),
):
    """Create a user account with an initial password"""
    try:
        role = UserRole(data.role)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid role: {data.role}")
    if role == UserRole.ADMIN and not current_user.is_admin:
        raise AuthorizationError("Only admins can create admin accounts")

    grants = _normalize_codes(data.permissions, allow_bundles=True)
    await _require_bundles(store, grants)
    await _ensure_grantable(current_user, store, grants)

    if await store.select(User, User.email == data.email):
        raise HTTPException(status_code=409, detail="User with this email already exists")
    if data.branch_id and await store.get(Branch, data.branch_id) is None:
        raise ValidationError("Branch not found", details={"field": "branch_id"})

    new_user = User(
        id=str(uuid.uuid4()),
        email=data.email,
        full_name=data.full_name.strip(),
        password_hash=AuthService.hash_password(data.password),
        role=role,
        branch_id=data.branch_id,
        permissions=grants,
        is_active=data.is_active,
    )
    await store.insert(new_user, commit=False)
    await store.insert(AuditLog(
        event_type=AuditEventType.USER_CREATED,
        user_id=current_user.id,
        resource_type="user",
        resource_id=new_user.id,
        details={"email": data.email, "role": role.value, "permissions": grants},
        request_id=_request_id(request),
    ))
    return _user_to_out(new_user)


@router.get("/permissions/catalogue")
async def permission_catalogue(
    user: CurrentUser = Depends(require_any_permission("view:users", "view:permissions")),
):
    """Grantable permission codes grouped by category"""
    return {"categories": catalogue_by_category()}


@router.get("/bundles", response_model=List[BundleOut])
async def list_bundles(
    user: CurrentUser = Depends(require_any_permission("view:users", "view:permissions")),
    store: RecordStore = Depends(get_store),
):
    """List permission bundles that grants can reference as role:<name>"""
    bundles = await store.select(PermissionBundle, order_by=(PermissionBundle.name,))
    return [_bundle_to_out(b) for b in bundles]


@router.post("/bundles", response_model=BundleOut, status_code=201)
async def create_bundle(
    data: BundleCreate,
    request: Request,
    current_user: CurrentUser = Depends(require_permission("edit:users")),
    store: RecordStore = Depends(get_store),
    resolver: PermissionResolver = Depends(get_resolver),
):
    """Create a permission bundle"""
    existing = await store.select(PermissionBundle, PermissionBundle.name == data.name)
    if existing:
        raise HTTPException(status_code=409, detail=f"Bundle already exists: {data.name}")
    codes = _normalize_codes(data.permissions, allow_bundles=False)
    await _ensure_grantable(current_user, store, codes)

    bundle = PermissionBundle(
        id=str(uuid.uuid4()),
        name=data.name,
        description=data.description,
        permissions=codes,
    )
    await store.insert(bundle, commit=False)
    await store.insert(AuditLog(
        event_type=AuditEventType.BUNDLE_CREATED,
        user_id=current_user.id,
        resource_type="user_role",
        resource_id=bundle.id,
        details={"name": bundle.name, "permissions": bundle.permissions},
        request_id=_request_id(request),
    ))
    # A user may already reference the bundle name
    resolver.invalidate()
    return _bundle_to_out(bundle)


@router.get("/{user_id}", response_model=UserOut)
async def get_user(
    user_id: str,
    current_user: CurrentUser = Depends(require_permission("view:users")),
    store: RecordStore = Depends(get_store),
):
    """Get a specific user"""
    return _user_to_out(await _get_user(store, user_id))


@router.patch("/{user_id}/role")
async def update_user_role(
    user_id: str,
    role_update: RoleUpdate,
    request: Request,
    current_user: CurrentUser = Depends(require_permission("edit:users")),
    store: RecordStore = Depends(get_store),
    resolver: PermissionResolver = Depends(get_resolver),
):
    """Change a user's role"""
    try:
        new_role = UserRole(role_update.role)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid role: {role_update.role}")

    if new_role == UserRole.ADMIN and not current_user.is_admin:
        raise AuthorizationError("Only admins can grant the admin role")

    target = await _get_user(store, user_id)
    _ensure_can_manage(current_user, target)
    old_role = target.role.value if isinstance(target.role, UserRole) else target.role
    target.role = new_role
    await store.save(target, commit=False)
    await store.insert(AuditLog(
        event_type=AuditEventType.USER_ROLE_CHANGED,
        user_id=current_user.id,
        resource_type="user",
        resource_id=user_id,
        details={"old_role": old_role, "new_role": new_role.value},
        request_id=_request_id(request),
    ))
    resolver.invalidate(user_id)

    return {"user_id": user_id, "old_role": old_role, "new_role": new_role.value}


@router.put("/{user_id}/permissions", response_model=UserOut)
async def replace_user_permissions(
    user_id: str,
    update: PermissionsUpdate,
    request: Request,
    current_user: CurrentUser = Depends(require_permission("edit:users")),
    store: RecordStore = Depends(get_store),
    resolver: PermissionResolver = Depends(get_resolver),
):
    """Replace a user's custom grants (codes or role:<bundle> references)"""
    grants = _normalize_codes(update.permissions, allow_bundles=True)
    await _require_bundles(store, grants)

    target = await _get_user(store, user_id)
    _ensure_can_manage(current_user, target)
    old_grants = list(target.permissions or [])
    await _ensure_grantable(current_user, store, grants, already_held=old_grants)
    target.permissions = grants
    await store.save(target, commit=False)
    await store.insert(AuditLog(
        event_type=AuditEventType.USER_PERMISSIONS_CHANGED,
        user_id=current_user.id,
        resource_type="user",
        resource_id=user_id,
        details={"old_permissions": old_grants, "new_permissions": grants},
        request_id=_request_id(request),
    ))
    resolver.invalidate(user_id)
    return _user_to_out(target)


@router.patch("/{user_id}/active", response_model=UserOut)
async def set_user_active(
    user_id: str,
    update: ActiveUpdate,
    request: Request,
    current_user: CurrentUser = Depends(require_permission("edit:users")),
    store: RecordStore = Depends(get_store),
    resolver: PermissionResolver = Depends(get_resolver),
):
    """Activate or deactivate a user"""
    if user_id == current_user.id and not update.is_active:
        raise HTTPException(status_code=400, detail="Cannot deactivate yourself")

    target = await _get_user(store, user_id)
    _ensure_can_manage(current_user, target)
    target.is_active = update.is_active
    await store.save(target, commit=False)
    await store.insert(AuditLog(
        event_type=AuditEventType.USER_ACTIVATED if update.is_active else AuditEventType.USER_DEACTIVATED,
        user_id=current_user.id,
        resource_type="user",
        resource_id=user_id,
        request_id=_request_id(request),
    ))
    resolver.invalidate(user_id)
    return _user_to_out(target)


@router.put("/{user_id}/password")
async def reset_user_password(
    user_id: str,
    data: PasswordReset,
    request: Request,
    current_user: CurrentUser = Depends(require_permission("edit:users")),
    store: RecordStore = Depends(get_store),
):
    """Set a new password for a user (admin reset, no current password needed)"""
    target = await _get_user(store, user_id)
    _ensure_can_manage(current_user, target)

    target.password_hash = AuthService.hash_password(data.new_password)
    await store.save(target, commit=False)
    await store.insert(AuditLog(
        event_type=AuditEventType.USER_PASSWORD_RESET,
        user_id=current_user.id,
        resource_type="user",
        resource_id=user_id,
        request_id=_request_id(request),
    ))
    return {"user_id": user_id, "status": "password_reset"}
