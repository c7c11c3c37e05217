from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from fastapi import Header, HTTPException, status

from ..config import settings


Role = Literal["viewer", "operator", "admin"]


@dataclass(frozen=True)
class Principal:
    """Request identity. `email` doubles as the operator user id."""

    email: str
    role: Role
    source: str


_VALID_ROLES: set[str] = {"viewer", "operator", "admin"}


def _normalize_email(raw: object) -> str | None:
    if raw is None or not isinstance(raw, str):
        return None
    value = raw.strip()
    if not value:
        return None
    # Identity-aware proxies prefix the address with the provider ("idp:user@x").
    if ":" in value:
        _, value = value.split(":", 1)
    email = value.strip().lower()
    if "@" not in email:
        return None
    return email


def _normalize_role(raw: object, default: Role) -> Role:
    if raw is None or not isinstance(raw, str):
        return default
    value = raw.strip().lower() or default
    if value not in _VALID_ROLES:
        return default
    return value  # type: ignore[return-value]


def _principal_role_for_email(email: str) -> Role:
    if email in set(settings.authz_admin_emails):
        return "admin"
    if email in set(settings.authz_operator_emails):
        return "operator"
    if email in set(settings.authz_viewer_emails):
        return "viewer"
    return settings.authz_default_role


def _principal_from_proxy(*, x_authenticated_user_email: object) -> Principal | None:
    email = _normalize_email(x_authenticated_user_email)
    if not email:
        return None
    return Principal(email=email, role=_principal_role_for_email(email), source="proxy")


def _principal_from_dev(
    *,
    x_carbonwatch_dev_principal_email: object,
    x_carbonwatch_dev_principal_role: object,
) -> Principal | None:
    if settings.app_env != "dev" or not settings.authz_dev_principal_enabled:
        return None

    header_email = (
        x_carbonwatch_dev_principal_email.strip().lower()
        if isinstance(x_carbonwatch_dev_principal_email, str)
        else ""
    )
    email = header_email or settings.authz_dev_principal_email
    if not email:
        return None
    role = _normalize_role(x_carbonwatch_dev_principal_role, settings.authz_dev_principal_role)
    return Principal(email=email, role=role, source="dev-principal")


def require_request_principal(
    x_authenticated_user_email: str | None = Header(default=None, alias="X-Authenticated-User-Email"),
    x_carbonwatch_dev_principal_email: str | None = Header(
        default=None, alias="X-CarbonWatch-Dev-Principal-Email"
    ),
    x_carbonwatch_dev_principal_role: str | None = Header(
        default=None, alias="X-CarbonWatch-Dev-Principal-Role"
    ),
) -> Principal:
    if not settings.authz_enabled:
        # Still honour a forwarded identity so operator actions are attributed.
        email = _normalize_email(x_authenticated_user_email) or _normalize_email(
            x_carbonwatch_dev_principal_email
        )
        return Principal(email=email or "anonymous", role="admin", source="authz-disabled")

    proxy_principal = _principal_from_proxy(x_authenticated_user_email=x_authenticated_user_email)
    if proxy_principal is not None:
        return proxy_principal

    dev_principal = _principal_from_dev(
        x_carbonwatch_dev_principal_email=x_carbonwatch_dev_principal_email,
        x_carbonwatch_dev_principal_role=x_carbonwatch_dev_principal_role,
    )
    if dev_principal is not None:
        return dev_principal

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Missing authenticated principal",
    )
