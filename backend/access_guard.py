# access_guard.py - Route and inline gating over resolved permission sets
#
# RouteGuard protects whole pages: no session -> login, missing permission ->
# fallback view or redirect, never the protected content.
# InlineGuard protects fragments: content when has_any(required), otherwise
# the fallback, with at most one warning per failed state.
# An empty required list is always visible for both.

import logging
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Hashable, List, Optional, Sequence, Tuple

from fastapi import Depends

from auth import CurrentUser, get_optional_user
from permissions import ANONYMOUS, PermissionSet

logger = logging.getLogger("letterdesk.guard")

LOGIN_PATH = "/login"
DEFAULT_ROUTE = "/admin"
MAX_TRACKED_VIEWERS = 1024


# ============================================================
# ROUTE GUARD
# ============================================================

class GuardOutcome(str, Enum):
    ALLOW = "allow"
    LOGIN = "login"
    FALLBACK = "fallback"
    REDIRECT = "redirect"


@dataclass(frozen=True)
class GuardDecision:
    outcome: GuardOutcome
    location: Optional[str] = None
    fallback: Optional[Dict[str, Any]] = None

    @property
    def allowed(self) -> bool:
        return self.outcome is GuardOutcome.ALLOW


class RouteDenied(Exception):
    """Raised by RouteGuard; main.py turns it into a login/redirect/fallback response"""

    def __init__(self, decision: GuardDecision, required: Sequence[str]):
        super().__init__(f"Route denied ({decision.outcome.value})")
        self.decision = decision
        self.required = list(required)


class RouteGuard:
    """FastAPI dependency guarding a page-level route"""

    def __init__(
        self,
        required: Sequence[str] = (),
        fallback_view: Optional[Dict[str, Any]] = None,
        redirect_to: str = DEFAULT_ROUTE,
        login_path: str = LOGIN_PATH,
    ):
        self.required = tuple(required)
        self.fallback_view = fallback_view
        self.redirect_to = redirect_to
        self.login_path = login_path

    def decide(self, permissions: Optional[PermissionSet]) -> GuardDecision:
        """``permissions`` is None when there is no session"""
        if not self.required:
            return GuardDecision(GuardOutcome.ALLOW)
        if permissions is None:
            return GuardDecision(GuardOutcome.LOGIN, location=self.login_path)
        if permissions.has_any(self.required):
            return GuardDecision(GuardOutcome.ALLOW)
        if self.fallback_view is not None:
            return GuardDecision(GuardOutcome.FALLBACK, fallback=self.fallback_view)
        return GuardDecision(GuardOutcome.REDIRECT, location=self.redirect_to)

    async def __call__(self, user: Optional[CurrentUser] = Depends(get_optional_user)) -> Optional[CurrentUser]:
        decision = self.decide(user.grants if user else None)
        if not decision.allowed:
            logger.info(
                f"Route guard {decision.outcome.value} for "
                f"{user.id if user else 'anonymous'} (requires any of {list(self.required)})"
            )
            raise RouteDenied(decision, self.required)
        return user


# ============================================================
# INLINE GUARD
# ============================================================

class Notifier:
    def warn(self, message: str, **context: Any) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    def warn(self, message: str, **context: Any) -> None:
        logger.warning(f"{message} {context}" if context else message)


class InlineGuard:
    """Renders content only if the set holds any required code"""

    def __init__(
        self,
        required: Sequence[str] = (),
        fallback: Any = None,
        notifier: Optional[Notifier] = None,
        message: str = "Permission required",
        max_viewers: int = MAX_TRACKED_VIEWERS,
    ):
        self.required = tuple(required)
        self.fallback = fallback
        self.notifier = notifier
        self.message = message
        self.max_viewers = max_viewers
        # Last failed permission state per viewer, least recently seen first;
        # cleared when the guard passes
        self._failed: "OrderedDict[Hashable, PermissionSet]" = OrderedDict()

    def allows(self, permissions: Optional[PermissionSet]) -> bool:
        return (permissions or ANONYMOUS).has_any(self.required)

    def render(self, permissions: Optional[PermissionSet], content: Any, viewer: Hashable = None) -> Any:
        permissions = permissions or ANONYMOUS
        if self.allows(permissions):
            self._failed.pop(viewer, None)
            return content

        if self.notifier is not None and self._failed.get(viewer) != permissions:
            self.notifier.warn(self.message, viewer=viewer, required=list(self.required))
        self._failed[viewer] = permissions
        self._failed.move_to_end(viewer)
        while len(self._failed) > self.max_viewers:
            self._failed.popitem(last=False)
        return self.fallback

    @property
    def tracked_viewers(self) -> int:
        return len(self._failed)


# ============================================================
# NAVIGATION
# ============================================================

@dataclass(frozen=True)
class NavigationEntry:
    key: str
    title: str
    href: str
    permissions: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "title": self.title, "href": self.href, "permissions": list(self.permissions)}


NAVIGATION: Tuple[NavigationEntry, ...] = (
    NavigationEntry("home", "Home", "/admin"),
    NavigationEntry("letters", "Letters", "/admin/letters", ("view:letters", "create:letters")),
    NavigationEntry("approvals", "Approvals", "/admin/approvals", ("view:approvals", "view:approvals:own")),
    NavigationEntry("tasks", "Tasks", "/admin/tasks", ("view:tasks", "view:tasks:assigned", "view:tasks:own")),
    NavigationEntry("users", "Users", "/admin/users", ("view:users",)),
    NavigationEntry("branches", "Branches", "/admin/branches", ("view:branches",)),
    NavigationEntry("permissions", "Permissions", "/admin/permissions", ("view:permissions",)),
    NavigationEntry("audit_logs", "Audit logs", "/admin/audit-logs", ("view:audit_logs",)),
    NavigationEntry("settings", "Settings", "/admin/settings"),
)


class NavigationMenu:
    """One InlineGuard per navigation entry"""

    def __init__(self, entries: Sequence[NavigationEntry] = NAVIGATION):
        self._guards = [(entry, InlineGuard(entry.permissions)) for entry in entries]

    def visible(self, permissions: Optional[PermissionSet], viewer: Hashable = None) -> List[NavigationEntry]:
        rendered = (guard.render(permissions, entry, viewer=viewer) for entry, guard in self._guards)
        return [entry for entry in rendered if entry is not None]
