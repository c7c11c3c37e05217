from __future__ import annotations

from typing import Callable

from fastapi import Depends, HTTPException, status

from ..config import settings
from .principal import Principal, Role, require_request_principal


ROLE_RANK: dict[Role, int] = {"viewer": 0, "operator": 1, "admin": 2}


def has_role(principal: Principal, min_role: Role) -> bool:
    return ROLE_RANK[principal.role] >= ROLE_RANK[min_role]


def _role_guard(min_role: Role) -> Callable[[Principal], Principal]:
    def guard(principal: Principal = Depends(require_request_principal)) -> Principal:
        if settings.authz_enabled and not has_role(principal, min_role):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"{min_role} role required")
        return principal

    guard.__name__ = f"require_{min_role}_role"
    return guard


# Reads need viewer; alert transitions and rule edits need operator.
require_viewer_role = _role_guard("viewer")
require_operator_role = _role_guard("operator")
require_admin_role = _role_guard("admin")
