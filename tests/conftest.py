"""Shared fixtures: fake Graph client/session and sample service-principal records."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import pytest

from appregkit.context import CatalogContext
from appregkit.storage import CatalogStorage


class FakeSession:
    def __init__(self, connected: bool = True) -> None:
        self.connected = connected
        self.checks = 0

    def is_connected(self) -> bool:
        self.checks += 1
        return self.connected


class FakeDirectoryClient:
    """Serves pre-built pages of service-principal records and counts upstream calls."""

    def __init__(self, pages: list[list[dict[str, Any]]], fail_on_page: Optional[int] = None) -> None:
        self.pages = pages
        self.fail_on_page = fail_on_page
        self.calls = 0
        self.lookups: list[str] = []
        self.page_calls: list[tuple] = []

    def iter_pages(self, filter, select, page_size=999):
        for i, page in enumerate(self.pages):
            self.calls += 1
            if self.fail_on_page == i:
                from appregkit.errors import GraphError

                raise GraphError("Graph request failed (503): unavailable", status_code=503)
            yield list(page), i == len(self.pages) - 1

    def page(self, filter, select, page_size=999, cursor=None):
        self.calls += 1
        self.page_calls.append((filter, select, page_size))
        records = [r for p in self.pages for r in p]
        return records[:page_size], None

    def lookup_by_app_id(self, app_id: str):
        self.calls += 1
        self.lookups.append(app_id)
        for page in self.pages:
            for r in page:
                if r.get("appId") == app_id:
                    return dict(r)
        return None


def app_role(value: str, role_id: str, enabled: bool = True, display: str = "") -> dict[str, Any]:
    return {
        "id": role_id,
        "value": value,
        "isEnabled": enabled,
        "displayName": display or value,
        "description": f"Allows {value}",
        "allowedMemberTypes": ["Application"],
    }


def scope(value: str, scope_id: str, enabled: bool = True, kind: str = "User") -> dict[str, Any]:
    return {
        "id": scope_id,
        "value": value,
        "isEnabled": enabled,
        "type": kind,
        "adminConsentDisplayName": f"Admin {value}",
        "adminConsentDescription": f"Admin consent for {value}",
        "userConsentDisplayName": f"User {value}",
        "userConsentDescription": f"User consent for {value}",
    }


def service_principal(
    display_name: str,
    app_id: str,
    object_id: str,
    *,
    roles: Optional[list[dict]] = None,
    scopes: Optional[list[dict]] = None,
    publisher: str = "Microsoft Services",
) -> dict[str, Any]:
    return {
        "id": object_id,
        "appId": app_id,
        "displayName": display_name,
        "description": f"{display_name} API",
        "publisherName": publisher,
        "appOwnerOrganizationId": None,
        "appRoles": roles or [],
        "oauth2PermissionScopes": scopes or [],
    }


@pytest.fixture
def service_a() -> dict[str, Any]:
    return service_principal(
        "A",
        "00000001-0000-0000-c000-000000000000",
        "11111111-1111-1111-1111-111111111111",
        roles=[app_role("Read.All", "r-read"), app_role("Write.All", "r-write", enabled=False)],
    )


@pytest.fixture
def service_b() -> dict[str, Any]:
    return service_principal(
        "B",
        "00000002-0000-0000-c000-000000000000",
        "22222222-2222-2222-2222-222222222222",
        roles=[app_role("Read.All", "r-read")],
        scopes=[scope("User.Read", "s-user-read")],
    )


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    return tmp_path / "Config"


@pytest.fixture
def storage(config_dir: Path) -> CatalogStorage:
    return CatalogStorage(config_dir)


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def make_context(config_dir: Path, session: FakeSession):
    def _make(pages: Optional[list[list[dict]]] = None, environ: Optional[dict] = None, **client_kwargs) -> CatalogContext:
        client = FakeDirectoryClient(pages or [], **client_kwargs)
        return CatalogContext(config_dir, environ=environ or {}, client=client, session=session)

    return _make
