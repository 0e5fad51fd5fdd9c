"""
kosthub/navigation.py

Route Authorization Decision + Shell Selector.

decide(area, snapshot) answers ACCESS:
    Pending                 while identity is unknown
    RedirectTo(login)       when signed out (requested path kept as return_to)
    RedirectTo(home)        when the role is not allowed for the area
    Allow                   otherwise

select_shell(path, role) answers PRESENTATION, after access is settled.

Both are pure functions over their inputs. The effective role is consumed,
never re-derived here (see roles.py for the only producer).

Role homes are always inside an area the role is allowed to enter, so a
denied navigation can never bounce back into the same denial.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, FrozenSet, List, Optional
from urllib.parse import urlencode

from kosthub.config import IS_DEV
from kosthub.errors import RoleDataIntegrityError
from kosthub.models import Role
from kosthub.session import IdentitySnapshot


# ============================================================================
# Entry points and role homes
# ============================================================================

LOGIN_PATH = "/login"
MARKETPLACE_LOGIN_PATH = "/marketplace/auth"
MARKETPLACE_ROOT = "/marketplace"
BACKOFFICE_ROOT = "/backoffice"
OWNER_HOME = "/properties"

ROLE_HOMES = {
    Role.superadmin: BACKOFFICE_ROOT,
    Role.admin: OWNER_HOME,
    Role.tenant: MARKETPLACE_ROOT,
}


def home_for(role: Role) -> str:
    """The role's own legal landing path."""
    return ROLE_HOMES[role]


# ============================================================================
# Areas
# ============================================================================

@dataclass(frozen=True)
class Area:
    """A navigational region with a static allowed-role set."""
    name: str
    prefix: str
    allowed_roles: FrozenSet[Role] = field(default_factory=frozenset)
    public: bool = False
    marketplace: bool = False

    def matches(self, path: str) -> bool:
        return path == self.prefix or path.startswith(self.prefix + "/")


_ADMIN = frozenset({Role.admin})
_SUPERADMIN = frozenset({Role.superadmin})
_TENANT = frozenset({Role.tenant})

OWNER_CONSOLE_PAGES = [
    "dashboard",
    "tenants",
    "rooms",
    "payments",
    "maintenance",
    "reports",
    "notifications",
    "settings",
    "properties",
    "marketplace-settings",
]

# Most specific prefixes first: the first match wins.
AREAS: List[Area] = [
    Area("login", LOGIN_PATH, public=True),
    Area("marketplace/auth", MARKETPLACE_LOGIN_PATH, public=True, marketplace=True),
    Area("marketplace", MARKETPLACE_ROOT, _TENANT, marketplace=True),
    Area("backoffice", BACKOFFICE_ROOT, _SUPERADMIN),
] + [Area(page, f"/{page}", _ADMIN) for page in OWNER_CONSOLE_PAGES]

# Paths outside every registered area: nobody is allowed, so signed-in users
# land on their own home and signed-out visitors go to the general sign-in.
UNKNOWN_AREA = Area("unknown", "", frozenset())


def normalize_path(path: Optional[str]) -> str:
    """Strip query/fragment and trailing slash; '' and '/' map to the dashboard."""
    if not path:
        return "/dashboard"
    path = path.split("?", 1)[0].split("#", 1)[0]
    if not path.startswith("/"):
        path = "/" + path
    if len(path) > 1:
        path = path.rstrip("/")
    if path == "/":
        return "/dashboard"
    return path


def area_for_path(path: Optional[str]) -> Area:
    normalized = normalize_path(path)
    for area in AREAS:
        if area.matches(normalized):
            return area
    return UNKNOWN_AREA


def login_path_for(area: Area) -> str:
    """Marketplace areas sign in through the marketplace entry point."""
    return MARKETPLACE_LOGIN_PATH if area.marketplace else LOGIN_PATH


# ============================================================================
# Decisions
# ============================================================================

class Outcome(str, Enum):
    ALLOW = "allow"
    REDIRECT = "redirect"
    PENDING = "pending"
    CONTACT_SUPPORT = "contact_support"


@dataclass(frozen=True)
class Decision:
    outcome: Outcome
    target: Optional[str] = None
    return_to: Optional[str] = None

    @classmethod
    def allow(cls) -> "Decision":
        return cls(Outcome.ALLOW)

    @classmethod
    def pending(cls) -> "Decision":
        return cls(Outcome.PENDING)

    @classmethod
    def redirect(cls, target: str, return_to: Optional[str] = None) -> "Decision":
        return cls(Outcome.REDIRECT, target=target, return_to=return_to)

    @classmethod
    def contact_support(cls) -> "Decision":
        return cls(Outcome.CONTACT_SUPPORT)

    @property
    def location(self) -> Optional[str]:
        """Redirect target with the return_to parameter attached."""
        if self.outcome != Outcome.REDIRECT or self.target is None:
            return None
        if not self.return_to:
            return self.target
        return f"{self.target}?{urlencode({'return_to': self.return_to})}"


def decide(area: Area, snapshot: IdentitySnapshot, requested_path: Optional[str] = None) -> Decision:
    """
    Route authorization for one navigation.

    Args:
        area: target area (allowed roles are static)
        snapshot: resolved identity; its effective_role is used as-is
        requested_path: original path, carried as return_to on sign-in redirects

    Returns:
        Decision (allow / redirect / pending). Idempotent for an unchanged snapshot.
    """
    if area.public:
        return Decision.allow()

    if snapshot.is_pending:
        return Decision.pending()

    if not snapshot.is_authenticated:
        return Decision.redirect(
            login_path_for(area),
            return_to=normalize_path(requested_path) if requested_path else area.prefix or None,
        )

    role = snapshot.effective_role
    if role not in area.allowed_roles:
        if IS_DEV:
            print(f"[NAV] Role denied: user_id={snapshot.user_id}, role={role.value}, "
                  f"area={area.name} -> {home_for(role)}")
        return Decision.redirect(home_for(role))

    return Decision.allow()


def decide_path(path: Optional[str], snapshot: IdentitySnapshot) -> Decision:
    return decide(area_for_path(path), snapshot, requested_path=path)


# ============================================================================
# Shell Selector
# ============================================================================

class Shell(str, Enum):
    OWNER_CONSOLE = "owner_console"
    BACKOFFICE = "backoffice"
    MARKETPLACE = "marketplace"


def select_shell(path: Optional[str], effective_role: Optional[Role] = None) -> Shell:
    """
    Pick the UI shell that owns `path`.

    Presentation only: access has already been decided. The role is accepted
    for call-site symmetry with decide() but never changes the shell.
    """
    normalized = normalize_path(path)
    if normalized == BACKOFFICE_ROOT or normalized.startswith(BACKOFFICE_ROOT + "/"):
        return Shell.BACKOFFICE
    if normalized == MARKETPLACE_ROOT or normalized.startswith(MARKETPLACE_ROOT + "/"):
        return Shell.MARKETPLACE
    return Shell.OWNER_CONSOLE


# ============================================================================
# Full navigation step
# ============================================================================

@dataclass(frozen=True)
class NavigationResult:
    path: str
    decision: Decision
    shell: Optional[Shell]
    snapshot: Optional[IdentitySnapshot]


def navigate(path: Optional[str], resolve: Callable[[], IdentitySnapshot]) -> NavigationResult:
    """
    Resolve identity, decide access and select the shell to render.

    A role integrity error becomes CONTACT_SUPPORT instead of an exception
    reaching the renderer. The shell follows the path that will actually be
    shown: the requested one on allow, the redirect target on redirect.
    """
    normalized = normalize_path(path)
    try:
        snapshot = resolve()
    except RoleDataIntegrityError as e:
        print(f"[NAV] Contact support: user_id={e.user_id}, path={normalized}")
        return NavigationResult(normalized, Decision.contact_support(), None, None)

    decision = decide_path(normalized, snapshot)
    if decision.outcome == Outcome.ALLOW:
        shell = select_shell(normalized, snapshot.effective_role)
    elif decision.outcome == Outcome.REDIRECT:
        shell = select_shell(decision.target, snapshot.effective_role)
    else:
        shell = None
    return NavigationResult(normalized, decision, shell, snapshot)
