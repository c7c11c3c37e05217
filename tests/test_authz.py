from __future__ import annotations

from types import SimpleNamespace

from fastapi import HTTPException
import pytest

from carbonwatch.app.auth.principal import Principal, require_request_principal
from carbonwatch.app.auth.rbac import require_admin_role, require_operator_role, require_viewer_role


def _set_authz_settings(monkeypatch, **overrides) -> None:
    state = {
        "app_env": "dev",
        "authz_enabled": True,
        "authz_default_role": "viewer",
        "authz_viewer_emails": [],
        "authz_operator_emails": ["ops@example.com"],
        "authz_admin_emails": ["admin@example.com"],
        "authz_dev_principal_enabled": True,
        "authz_dev_principal_email": "dev-operator@local.carbonwatch",
        "authz_dev_principal_role": "admin",
    }
    state.update(overrides)
    monkeypatch.setattr("carbonwatch.app.auth.principal.settings", SimpleNamespace(**state))
    monkeypatch.setattr("carbonwatch.app.auth.rbac.settings", SimpleNamespace(**state))


def test_proxy_identity_maps_to_configured_role(monkeypatch) -> None:
    _set_authz_settings(monkeypatch)

    principal = require_request_principal(x_authenticated_user_email="accounts.example:Ops@Example.com")
    assert principal.email == "ops@example.com"
    assert principal.role == "operator"
    assert principal.source == "proxy"


def test_unknown_proxy_identity_gets_default_role(monkeypatch) -> None:
    _set_authz_settings(monkeypatch, authz_default_role="viewer")

    principal = require_request_principal(x_authenticated_user_email="someone@example.com")
    assert principal.role == "viewer"


def test_dev_principal_headers_override_defaults(monkeypatch) -> None:
    _set_authz_settings(monkeypatch)

    principal = require_request_principal(
        x_carbonwatch_dev_principal_email="Tester@Example.com",
        x_carbonwatch_dev_principal_role="operator",
    )
    assert principal.email == "tester@example.com"
    assert principal.role == "operator"
    assert principal.source == "dev-principal"


def test_dev_principal_is_ignored_outside_dev(monkeypatch) -> None:
    _set_authz_settings(monkeypatch, app_env="prod")

    with pytest.raises(HTTPException) as err:
        require_request_principal()
    assert err.value.status_code == 401
    assert err.value.detail == "Missing authenticated principal"


def test_authz_disabled_still_attributes_forwarded_identity(monkeypatch) -> None:
    _set_authz_settings(monkeypatch, authz_enabled=False)

    principal = require_request_principal(x_authenticated_user_email="ops@example.com")
    assert principal.email == "ops@example.com"
    assert principal.source == "authz-disabled"
    assert require_request_principal().email == "anonymous"


def test_role_ladder(monkeypatch) -> None:
    _set_authz_settings(monkeypatch)
    viewer = Principal(email="viewer@example.com", role="viewer", source="proxy")
    operator = Principal(email="ops@example.com", role="operator", source="proxy")

    assert require_viewer_role(viewer) is viewer
    assert require_operator_role(operator) is operator

    with pytest.raises(HTTPException) as err:
        require_operator_role(viewer)
    assert err.value.status_code == 403
    assert err.value.detail == "operator role required"

    with pytest.raises(HTTPException) as err:
        require_admin_role(operator)
    assert err.value.detail == "admin role required"
