# auth.py - Authentication for LetterDesk
# Features:
# - JWT bearer tokens (HS256) issued once per session at login
# - bcrypt password hashing
# - Brute force protection on login
# - Current-user dependency that resolves the effective permission set
# - Permission-gated dependencies for routers

import os
import uuid
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List
from collections import defaultdict

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, ConfigDict, EmailStr, Field

from dependencies import get_resolver, get_store
from errors import AuthorizationError
from models import User, AuditLog, AuditEventType, UserRole, utcnow
from permissions import PermissionResolver, PermissionSet, Requester
from store import RecordStore, UserRecord

logger = logging.getLogger("letterdesk.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY or SECRET_KEY == "change-this-to-a-secure-random-key-in-production":
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "JWT_SECRET_KEY not set or insecure. Generated ephemeral key. "
        "Set JWT_SECRET_KEY in production!"
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "480"))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))
MIN_PASSWORD_LENGTH = 12
MAX_LOGIN_ATTEMPTS = 5
LOGIN_LOCKOUT_MINUTES = 15

security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)

# In-memory brute force tracker, per process
_login_attempts: Dict[str, list] = defaultdict(list)


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

def validate_password_policy(password: str) -> str:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if not any(c.isupper() for c in password):
        raise ValueError("Password must contain at least one uppercase letter")
    if not any(c.isdigit() for c in password):
        raise ValueError("Password must contain at least one digit")
    return password


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]


class CurrentUser(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    email: str
    full_name: str
    role: str
    branch_id: Optional[str] = None
    branch_name: Optional[str] = None
    is_active: bool
    permissions: List[str] = []
    grants: PermissionSet = Field(exclude=True)

    @property
    def is_admin(self) -> bool:
        return self.grants.is_admin

    @property
    def requester(self) -> Requester:
        return Requester(
            id=self.id,
            grants=self.grants,
            branch_id=self.branch_id,
            display_name=self.full_name,
        )

    @classmethod
    def build(cls, record: UserRecord, grants: PermissionSet) -> "CurrentUser":
        return cls(
            id=record.id,
            email=record.email,
            full_name=record.full_name,
            role=record.role,
            branch_id=record.branch_id,
            branch_name=record.branch_name,
            is_active=record.is_active,
            permissions=sorted(grants.codes),
            grants=grants,
        )


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Password checks, token issuing and login bookkeeping"""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)),
            "iat": now,
            "type": "access",
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise HTTPException(status_code=401, detail="Token expired")
        except JWTError:
            raise HTTPException(status_code=401, detail="Invalid token")

    @staticmethod
    def _check_brute_force(email: str) -> None:
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=LOGIN_LOCKOUT_MINUTES)
        _login_attempts[email] = [t for t in _login_attempts[email] if t > cutoff]
        if len(_login_attempts[email]) >= MAX_LOGIN_ATTEMPTS:
            raise HTTPException(
                status_code=429,
                detail=f"Too many login attempts. Try again in {LOGIN_LOCKOUT_MINUTES} minutes.",
            )

    @staticmethod
    def _record_failed_attempt(email: str) -> None:
        _login_attempts[email].append(datetime.now(timezone.utc))

    @staticmethod
    def _clear_attempts(email: str) -> None:
        _login_attempts.pop(email, None)

    @staticmethod
    async def authenticate_user(email: str, password: str, store: RecordStore, request_id: Optional[str] = None) -> Optional[User]:
        AuthService._check_brute_force(email)

        users = await store.select(User, User.email == email)
        user = users[0] if users else None

        if not user or not AuthService.verify_password(password, user.password_hash):
            AuthService._record_failed_attempt(email)
            return None

        if not user.is_active and user.role != UserRole.ADMIN:
            return None

        AuthService._clear_attempts(email)

        user.last_login_at = utcnow()
        await store.save(user, commit=False)
        await store.insert(AuditLog(
            event_type=AuditEventType.USER_LOGIN,
            user_id=user.id,
            resource_type="user",
            resource_id=user.id,
            request_id=request_id or str(uuid.uuid4()),
        ))
        return user


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def _load_current_user(token: str, store: RecordStore, resolver: PermissionResolver) -> CurrentUser:
    payload = AuthService.verify_token(token)
    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid token type")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    record = await store.fetch_user_with_branch(user_id)
    # Inactive non-admins are denied everything, including read-only routes
    if record is None or (not record.is_active and not record.is_admin):
        raise HTTPException(status_code=401, detail="User not found or inactive")

    grants = await resolver.resolve(record)
    return CurrentUser.build(record, grants)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    store: RecordStore = Depends(get_store),
    resolver: PermissionResolver = Depends(get_resolver),
) -> CurrentUser:
    return await _load_current_user(credentials.credentials, store, resolver)


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security),
    store: RecordStore = Depends(get_store),
    resolver: PermissionResolver = Depends(get_resolver),
) -> Optional[CurrentUser]:
    """Like get_current_user, but an absent or rejected token means "no session" """
    if credentials is None:
        return None
    try:
        return await _load_current_user(credentials.credentials, store, resolver)
    except HTTPException as exc:
        logger.info(f"Ignoring unusable bearer token: {exc.detail}")
        return None


def require_permission(*codes: str):
    """Dependency factory: require every listed permission code"""
    async def _check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        for code in codes:
            if not user.grants.has(code):
                raise AuthorizationError(f"Missing required permission: {code}")
        return user
    return _check


def require_any_permission(*codes: str):
    """Dependency factory: require at least one of the listed codes"""
    async def _check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if not user.grants.has_any(codes):
            raise AuthorizationError(f"Requires one of: {', '.join(codes)}")
        return user
    return _check
