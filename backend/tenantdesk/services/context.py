"""Explicit caller context passed into every service call."""
from __future__ import annotations

import dataclasses
import uuid

from tenantdesk.rbac import level_at_least


@dataclasses.dataclass(frozen=True)
class ActorContext:
    """Who is acting, for which tenant and vertical, and from where."""

    user_id: uuid.UUID
    organization_id: uuid.UUID
    vertical_id: str
    role: str
    permission_level: str
    email: str | None = None
    full_name: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    def has_level(self, required: str) -> bool:
        return level_at_least(self.permission_level, required)

    def to_dict(self) -> dict:
        return {
            "user_id": str(self.user_id),
            "organization_id": str(self.organization_id),
            "vertical_id": self.vertical_id,
            "role": self.role,
            "permission_level": self.permission_level,
            "email": self.email,
            "full_name": self.full_name,
        }


@dataclasses.dataclass(frozen=True)
class OperationResult:
    """Outcome of a business operation that reports rule violations
    instead of raising."""

    success: bool
    error: str | None = None
    data: dict | None = None
    # not_found | conflict | forbidden | invalid
    code: str | None = None

    @classmethod
    def ok(cls, **data) -> OperationResult:
        return cls(success=True, data=data or None)

    @classmethod
    def fail(cls, error: str, code: str = "invalid") -> OperationResult:
        return cls(success=False, error=error, code=code)
