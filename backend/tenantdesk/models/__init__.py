from tenantdesk.models.customization import CustomizationHistory, OrganizationCustomization
from tenantdesk.models.department import DepartmentFeature, DepartmentTool, StatCard
from tenantdesk.models.permission import (
    PermissionAuditEntry,
    PermissionTemplate,
    Tool,
    ToolAccessRequest,
    UserPermission,
)
from tenantdesk.models.user import Organization, User

__all__ = [
    # Tenancy
    "Organization",
    "User",
    # Permission system
    "Tool",
    "PermissionTemplate",
    "UserPermission",
    "ToolAccessRequest",
    "PermissionAuditEntry",
    # Department landing pages
    "StatCard",
    "DepartmentFeature",
    "DepartmentTool",
    # UI customization
    "OrganizationCustomization",
    "CustomizationHistory",
]
