# permissions.py - Permission codes, role defaults and permission resolution
#
# Codes look like "<action>:<resource>[:<scope>]", e.g. "edit:tasks:own".
# Admins resolve to a universal set. Everyone else gets the fixed defaults for
# their role plus their custom grants (explicit codes or "role:<bundle>"
# references to a PermissionBundle).

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from errors import NotFoundError
from models import UserRole

logger = logging.getLogger("letterdesk.permissions")

OWN_SCOPE = "own"
BUNDLE_PREFIX = "role:"
VIEW_ALL_TASKS = "view:tasks:all"

_CODE_PATTERN = re.compile(r"^[a-z_]+:[a-z_]+(?::[a-z_]+)?$")


# ============================================================
# PERMISSION CODES
# ============================================================

@dataclass(frozen=True)
class PermissionCode:
    action: str
    resource: str
    scope: Optional[str] = None

    @classmethod
    def parse(cls, code: str) -> "PermissionCode":
        if not isinstance(code, str) or not _CODE_PATTERN.match(code):
            raise ValueError(f"Invalid permission code: {code!r}")
        parts = code.split(":")
        return cls(parts[0], parts[1], parts[2] if len(parts) == 3 else None)

    @property
    def category(self) -> str:
        return self.resource

    @property
    def is_own(self) -> bool:
        return self.scope == OWN_SCOPE

    def base(self) -> "PermissionCode":
        return PermissionCode(self.action, self.resource)

    def __str__(self) -> str:
        if self.scope:
            return f"{self.action}:{self.resource}:{self.scope}"
        return f"{self.action}:{self.resource}"


# ============================================================
# ROLE DEFAULTS (the only place these tables are defined)
# ============================================================

DEFAULT_PERMISSIONS: Dict[UserRole, Tuple[str, ...]] = {
    # Admins bypass every check; the list is what /auth/me reports for them.
    UserRole.ADMIN: (
        "view:letters", "create:letters", "edit:letters", "delete:letters", "export:letters",
        "view:templates", "create:templates", "edit:templates", "delete:templates",
        "view:users", "create:users", "edit:users", "delete:users",
        "view:branches", "create:branches", "edit:branches", "delete:branches",
        "view:settings", "edit:settings",
        "view:audit_logs",
        "view:approvals", "approve:letters", "reject:letters", "request:approval",
        "view:tasks", "create:tasks", "edit:tasks", "delete:tasks",
        "assign:tasks", "complete:tasks", VIEW_ALL_TASKS,
    ),
    UserRole.USER: (
        "view:letters", "create:letters", "edit:letters:own", "delete:letters:own",
        "view:templates",
        "request:approval", "view:approvals:own",
        "view:tasks:own", "create:tasks:own", "edit:tasks:own", "delete:tasks:own",
        "view:tasks:assigned",
    ),
}

# Grantable codes shown on the permission editor, grouped by category
PERMISSION_CATALOGUE: Dict[str, str] = {
    "view:letters": "View letters",
    "create:letters": "Create letters",
    "edit:letters": "Edit all letters",
    "edit:letters:own": "Edit own letters",
    "delete:letters": "Delete all letters",
    "delete:letters:own": "Delete own letters",
    "export:letters": "Export letters",
    "view:templates": "View letter templates",
    "view:approvals": "View approval requests",
    "view:approvals:own": "View own approval requests",
    "approve:letters": "Approve letters",
    "reject:letters": "Reject letters",
    "request:approval": "Request letter approval",
    "view:tasks": "View tasks",
    "view:tasks:all": "View every task",
    "view:tasks:assigned": "View tasks assigned to me",
    "view:tasks:own": "View tasks I created",
    "create:tasks": "Create tasks",
    "create:tasks:own": "Create own tasks",
    "edit:tasks": "Edit tasks",
    "edit:tasks:own": "Edit tasks I created",
    "delete:tasks": "Delete tasks",
    "delete:tasks:own": "Delete tasks I created",
    "assign:tasks": "Assign tasks to other users",
    "complete:tasks": "Complete tasks",
    "complete:tasks:own": "Change status of tasks assigned to me",
    "view:users": "View users",
    "create:users": "Create users",
    "edit:users": "Edit users, roles and grants",
    "view:branches": "View branches",
    "view:permissions": "View permissions",
    "view:audit_logs": "View audit logs",
}


def catalogue_by_category() -> Dict[str, List[Dict[str, str]]]:
    grouped: Dict[str, List[Dict[str, str]]] = {}
    for code, name in PERMISSION_CATALOGUE.items():
        grouped.setdefault(PermissionCode.parse(code).category, []).append({"id": code, "name": name})
    return grouped


# ============================================================
# PERMISSION SETS
# ============================================================

class PermissionSet:
    """Immutable effective permission set"""

    is_admin = False

    def __init__(self, codes: Iterable[str] = ()):
        self._codes: FrozenSet[str] = frozenset(codes)

    @property
    def codes(self) -> FrozenSet[str]:
        return self._codes

    def has(self, code: str) -> bool:
        if code in self._codes:
            return True
        # Capability only: "x:y:own" is satisfied by "x:y". Ownership is checked by can_perform.
        suffix = ":" + OWN_SCOPE
        if code.endswith(suffix):
            return code[: -len(suffix)] in self._codes
        return False

    def has_any(self, codes: Iterable[str]) -> bool:
        codes = list(codes)
        if not codes:
            return True
        return any(self.has(c) for c in codes)

    def has_all(self, codes: Iterable[str]) -> bool:
        return all(self.has(c) for c in codes)

    def categories(self) -> Dict[str, List[str]]:
        grouped: Dict[str, List[str]] = {}
        for code in sorted(self.codes):
            try:
                category = PermissionCode.parse(code).category
            except ValueError:
                continue
            grouped.setdefault(category, []).append(code)
        return grouped

    def __contains__(self, code: str) -> bool:
        return self.has(code)

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, PermissionSet):
            return NotImplemented
        return self.is_admin == other.is_admin and self.codes == other.codes

    def __hash__(self) -> int:
        return hash((self.is_admin, self._codes))

    def __repr__(self) -> str:
        return f"<PermissionSet {sorted(self._codes)}>"


class UniversalPermissionSet(PermissionSet):
    """Admin set: every code is granted"""

    is_admin = True

    def __init__(self):
        super().__init__(DEFAULT_PERMISSIONS[UserRole.ADMIN])

    def has(self, code: str) -> bool:
        return True

    def __repr__(self) -> str:
        return "<UniversalPermissionSet>"


ANONYMOUS = PermissionSet()


@dataclass(frozen=True)
class Requester:
    """The acting user as seen by the core services"""
    id: str
    grants: PermissionSet
    branch_id: Optional[str] = None
    display_name: str = ""

    @property
    def is_admin(self) -> bool:
        return self.grants.is_admin


# ============================================================
# OWNERSHIP-AWARE AUTHORIZATION
# ============================================================

class Relation(str, Enum):
    ANY = "any"
    CREATOR = "creator"
    ASSIGNEE = "assignee"


OWNERSHIP_RULES: Dict[Tuple[str, str], Tuple[Tuple[str, Relation], ...]] = {
    ("view", "tasks"): (
        (VIEW_ALL_TASKS, Relation.ANY),
        ("view:tasks:own", Relation.CREATOR),
        ("view:tasks:assigned", Relation.ASSIGNEE),
    ),
    ("change_status", "tasks"): (
        ("complete:tasks:own", Relation.ASSIGNEE),
        ("edit:tasks:own", Relation.CREATOR),
    ),
    ("delete", "tasks"): (
        ("delete:tasks", Relation.ANY),
        ("delete:tasks:own", Relation.CREATOR),
    ),
    ("create", "tasks"): (
        ("create:tasks", Relation.ANY),
        ("create:tasks:own", Relation.ANY),
    ),
}


def _generic_rules(action: str, resource: str) -> Tuple[Tuple[str, Relation], ...]:
    return (
        (f"{action}:{resource}", Relation.ANY),
        (f"{action}:{resource}:{OWN_SCOPE}", Relation.CREATOR),
    )


def _relation_holds(relation: Relation, requester_id: str, record: Any) -> bool:
    if relation is Relation.ANY:
        return True
    if record is None or not requester_id:
        return False
    if relation is Relation.CREATOR:
        return getattr(record, "created_by", None) == requester_id
    return getattr(record, "assigned_to", None) == requester_id


def can_perform(action: str, resource: str, requester: Requester, record: Any = None) -> bool:
    """Resolve capability and ownership in one place.

    ``record`` is anything exposing ``created_by`` / ``assigned_to``; rules
    with an ownership relation never match without one.
    """
    if requester.grants.is_admin:
        return True
    rules = OWNERSHIP_RULES.get((action, resource)) or _generic_rules(action, resource)
    return any(
        requester.grants.has(code) and _relation_holds(relation, requester.id, record)
        for code, relation in rules
    )


# ============================================================
# RESOLVER
# ============================================================

def _role_of(user: Any) -> UserRole:
    try:
        return UserRole(user.role)
    except ValueError:
        logger.warning(f"Unknown role {user.role!r} for user {user.id}; treating as '{UserRole.USER.value}'")
        return UserRole.USER


def _fingerprint(user: Any) -> Tuple:
    grants = tuple(sorted(str(g) for g in (user.permissions or [])))
    return (_role_of(user), grants, bool(user.is_active), getattr(user, "updated_at", None))


@dataclass
class PermissionCache:
    """Resolved sets keyed by user id, valid while the user's fingerprint matches"""
    _entries: Dict[str, Tuple[Tuple, PermissionSet]] = field(default_factory=dict)

    def get(self, user_id: str, fingerprint: Tuple) -> Optional[PermissionSet]:
        entry = self._entries.get(user_id)
        if entry is None or entry[0] != fingerprint:
            return None
        return entry[1]

    def put(self, user_id: str, fingerprint: Tuple, permission_set: PermissionSet) -> None:
        self._entries[user_id] = (fingerprint, permission_set)

    def invalidate(self, user_id: Optional[str] = None) -> None:
        if user_id is None:
            self._entries.clear()
        else:
            self._entries.pop(user_id, None)

    def __len__(self) -> int:
        return len(self._entries)


class PermissionResolver:
    """Computes effective permission sets from role defaults plus custom grants"""

    def __init__(
        self,
        store,
        cache: Optional[PermissionCache] = None,
        role_defaults: Optional[Dict[UserRole, Sequence[str]]] = None,
    ):
        self._store = store
        self._cache = cache if cache is not None else PermissionCache()
        self._role_defaults = role_defaults if role_defaults is not None else DEFAULT_PERMISSIONS

    async def resolve(self, user: Any) -> PermissionSet:
        role = _role_of(user)
        if role is UserRole.ADMIN:
            return UniversalPermissionSet()
        if not user.is_active:
            return PermissionSet()

        fingerprint = _fingerprint(user)
        cached = self._cache.get(user.id, fingerprint)
        if cached is not None:
            return cached

        codes: Set[str] = set(self._role_defaults.get(role, ()))
        codes |= await self._expand_grants(user.permissions or [])
        resolved = PermissionSet(codes)
        self._cache.put(user.id, fingerprint, resolved)
        return resolved

    async def _expand_grants(self, grants: Iterable[str]) -> Set[str]:
        codes: Set[str] = set()
        bundle_names: List[str] = []
        for grant in grants:
            if isinstance(grant, str) and grant.startswith(BUNDLE_PREFIX):
                bundle_names.append(grant[len(BUNDLE_PREFIX):])
                continue
            try:
                codes.add(str(PermissionCode.parse(grant)))
            except ValueError:
                logger.warning(f"Skipping malformed permission grant {grant!r}")

        if bundle_names:
            bundles = await self._store.fetch_permission_bundles(bundle_names)
            found = {b.name for b in bundles}
            for missing in sorted(set(bundle_names) - found):
                logger.warning(f"Permission bundle '{missing}' not found; grant ignored")
            for bundle in bundles:
                for code in bundle.permissions or []:
                    if isinstance(code, str) and code.startswith(BUNDLE_PREFIX):
                        logger.warning(f"Nested bundle reference {code!r} in '{bundle.name}' ignored")
                        continue
                    try:
                        codes.add(str(PermissionCode.parse(code)))
                    except ValueError:
                        logger.warning(f"Skipping malformed code {code!r} in bundle '{bundle.name}'")
        return codes

    def invalidate(self, user_id: Optional[str] = None) -> None:
        """Drop cached sets for one user, or for everyone (bundle edits)"""
        self._cache.invalidate(user_id)

    async def reload(self, user_id: str):
        """Re-read the user record and recompute; returns (user, permissions)"""
        self.invalidate(user_id)
        user = await self._store.fetch_user_with_branch(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user, await self.resolve(user)
