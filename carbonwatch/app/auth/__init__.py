from .principal import Principal, Role, require_request_principal
from .rbac import require_admin_role, require_operator_role, require_viewer_role

__all__ = [
    "Principal",
    "Role",
    "require_request_principal",
    "require_viewer_role",
    "require_operator_role",
    "require_admin_role",
]
