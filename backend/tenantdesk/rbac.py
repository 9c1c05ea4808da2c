"""
Permission levels, verticals and the enumerations of the permission workflow.

Permission levels are ordered capability tiers.  A user's role is one of
these levels; templates and tools reference them too.  Verticals are the
tenant "industry modes" that swap terminology without changing data.
"""
from __future__ import annotations

# ---------------------------------------------------------------------------
# Permission levels (least -> most privileged)
# ---------------------------------------------------------------------------

PERMISSION_HIERARCHY: dict[str, int] = {
    "viewer": 0,
    "employee": 1,
    "manager": 2,
    "admin": 3,
    "master_admin": 4,
}

PERMISSION_LEVELS: list[str] = sorted(PERMISSION_HIERARCHY, key=PERMISSION_HIERARCHY.get)

# Roles that carry their own level regardless of any assigned template
SELF_LEVEL_ROLES: set[str] = {"admin", "master_admin"}

REVIEWER_LEVEL = "admin"


# ---------------------------------------------------------------------------
# Verticals
# ---------------------------------------------------------------------------

VALID_VERTICALS: list[str] = ["business", "church", "estate"]


# ---------------------------------------------------------------------------
# Access requests & audit trail
# ---------------------------------------------------------------------------

REQUEST_STATUSES: list[str] = ["pending", "approved", "denied", "expired", "cancelled"]

REVIEW_DECISIONS: list[str] = ["approved", "denied"]

# Ordered most urgent first; used to sort the review queue
REQUEST_PRIORITIES: list[str] = ["urgent", "high", "normal", "low"]

AUDIT_ACTIONS: list[str] = [
    "grant",
    "revoke",
    "request",
    "approve",
    "deny",
    "expire",
    "check_denied",
    "check_allowed",
]

DENIAL_ACTIONS: tuple[str, ...] = ("check_denied", "deny", "revoke")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def level_rank(level: str) -> int:
    """Return the rank of a level; unknown levels rank below ``viewer``."""
    return PERMISSION_HIERARCHY.get(level, -1)


def level_at_least(level: str, required: str) -> bool:
    return level_rank(level) >= level_rank(required)


def format_action_type(action_type: str) -> str:
    """Return a human-readable label for an audit action."""
    _LABELS: dict[str, str] = {
        "grant": "Permission Granted",
        "revoke": "Permission Revoked",
        "request": "Access Requested",
        "approve": "Request Approved",
        "deny": "Request Denied",
        "expire": "Permission Expired",
        "check_denied": "Access Denied",
        "check_allowed": "Access Allowed",
    }
    return _LABELS.get(action_type, action_type)
