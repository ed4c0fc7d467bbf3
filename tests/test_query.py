"""Tests for service and permission lookups over both catalog formats."""

from __future__ import annotations

import pytest

from appregkit.errors import NotConnectedError
from appregkit.models import (
    APPLICATION,
    DELEGATED,
    ApplicationPermission,
    DelegatedPermission,
    LegacyCatalogDocument,
    NormalizedCatalog,
    ServicePermissionMapping,
    ServicePrincipalRecord,
)
from appregkit.query import matches

NORMALIZED = {"APPREGKIT_USE_NORMALIZED_STORAGE": "true"}
LEGACY = {"APPREGKIT_USE_NORMALIZED_STORAGE": "false"}

GRAPH_APP_ID = "00000003-0000-0000-c000-000000000000"


def _catalog() -> NormalizedCatalog:
    catalog = NormalizedCatalog()
    catalog.service_principals["MicrosoftGraph"] = ServicePrincipalRecord(
        "MicrosoftGraph", GRAPH_APP_ID, "Microsoft Graph", "", "Microsoft Services", "sp-graph"
    )
    catalog.service_principals["Exchange"] = ServicePrincipalRecord("Exchange", "00000002-0000-0ff1-ce00-000000000000", "Exchange")
    catalog.definitions.upsert(ApplicationPermission(name="User.Read.All", id="r1", display_name="Read all users"))
    catalog.definitions.upsert(DelegatedPermission(name="User.Read", id="s1", type="User"))
    catalog.definitions.upsert(ApplicationPermission(name="Mail.Send", id="r2"))
    catalog.set_mapping("MicrosoftGraph", ServicePermissionMapping(application=["User.Read.All"], delegated=["User.Read"]))
    catalog.set_mapping("Exchange", ServicePermissionMapping(application=["Mail.Send", "User.Read.All"]))
    return catalog


@pytest.fixture
def normalized_ctx(make_context):
    ctx = make_context(environ=NORMALIZED)
    ctx.storage.write_normalized(_catalog())
    return ctx


@pytest.fixture
def legacy_ctx(make_context):
    ctx = make_context(environ=LEGACY)
    ctx.storage.write_legacy(_catalog().to_legacy())
    return ctx


class TestMatching:
    record = ServicePrincipalRecord("MicrosoftGraph", GRAPH_APP_ID, "Microsoft Graph")

    @pytest.mark.parametrize("pattern", ["Graph", "MicrosoftGraph", "Microsoft Graph", GRAPH_APP_ID.upper(), "Microsoft-Graph"])
    def test_matches(self, pattern: str) -> None:
        assert matches(pattern, self.record)

    @pytest.mark.parametrize("pattern", ["Teams", "00000003", "..."])
    def test_does_not_match(self, pattern: str) -> None:
        assert not matches(pattern, self.record)

    def test_no_pattern_matches_everything(self) -> None:
        assert matches(None, self.record)


class TestFindServicesNormalized:
    def test_by_display_name(self, normalized_ctx) -> None:
        results = normalized_ctx.query.find_services("Graph")
        assert [s.service_key for s in results] == ["MicrosoftGraph"]
        assert results[0].application_permissions is None

    def test_no_match_is_empty_list(self, normalized_ctx) -> None:
        assert normalized_ctx.query.find_services("Nothing Like It") == []

    def test_no_pattern_returns_all(self, normalized_ctx) -> None:
        assert {s.service_key for s in normalized_ctx.query.find_services()} == {"MicrosoftGraph", "Exchange"}

    def test_permissions_are_joined_with_definitions(self, normalized_ctx) -> None:
        (graph,) = normalized_ctx.query.find_services("Graph", include_permissions=True)
        assert [p.display_name for p in graph.application_permissions] == ["Read all users"]
        assert [p.type for p in graph.delegated_permissions] == ["User"]
        assert set(graph.to_dict()["ApplicationPermissions"]) == {"User.Read.All"}

    def test_missing_definition_yields_name_only_entry(self, normalized_ctx, config_dir) -> None:
        (config_dir / "PermissionDefinitions.json").unlink()
        normalized_ctx.cache.invalidate()
        (graph,) = normalized_ctx.query.find_services("Graph", include_permissions=True)
        assert graph.application_permissions == [ApplicationPermission(name="User.Read.All")]

    def test_no_catalog_is_none(self, make_context) -> None:
        assert make_context(environ=NORMALIZED).query.find_services("Graph") is None


class TestFindServicesLegacy:
    def test_nested_permissions(self, legacy_ctx) -> None:
        (graph,) = legacy_ctx.query.find_services(GRAPH_APP_ID, include_permissions=True)
        assert [p.name for p in graph.delegated_permissions] == ["User.Read"]
        assert graph.application_permissions[0].display_name == "Read all users"

    def test_flat_document_falls_back_to_names(self, make_context) -> None:
        ctx = make_context(environ=LEGACY)
        doc = LegacyCatalogDocument(
            service_principals={"Svc": ServicePrincipalRecord("Svc", "0000aaaa", "Svc")},
            common_permissions={"Svc": ["Read.All"]},
        )
        ctx.storage.write_legacy(doc)

        (svc,) = ctx.query.find_services("Svc", include_permissions=True)
        assert svc.application_permissions == [ApplicationPermission(name="Read.All")]
        assert svc.delegated_permissions == []

    def test_no_legacy_file_is_none(self, make_context) -> None:
        assert make_context(environ=LEGACY).query.find_services() is None


class TestLiveLookup:
    def test_requires_session(self, normalized_ctx) -> None:
        normalized_ctx.session.connected = False
        with pytest.raises(NotConnectedError):
            normalized_ctx.query.find_services("Graph", include_live_service_principal=True)
        assert normalized_ctx.client.calls == 0

    def test_attaches_live_record(self, make_context, service_b) -> None:
        ctx = make_context([[service_b]], environ=NORMALIZED)
        catalog = NormalizedCatalog()
        catalog.service_principals["B"] = ServicePrincipalRecord("B", service_b["appId"], "B")
        ctx.storage.write_normalized(catalog)

        (b,) = ctx.query.find_services("B", include_live_service_principal=True)
        assert b.live_service_principal["id"] == service_b["id"]
        assert ctx.client.lookups == [service_b["appId"]]
        assert b.to_dict()["LiveServicePrincipal"]["displayName"] == "B"

    def test_find_live_services_uses_prefix_filter(self, make_context, service_a, service_b) -> None:
        ctx = make_context([[service_a, service_b]])
        records = ctx.query.find_live_services("Micro", limit=1)
        assert len(records) == 1
        flt, _, size = ctx.client.page_calls[0]
        assert flt == "startswith(displayName,'Micro')"
        assert size == 1


class TestFindPermissions:
    def test_lists_referencing_services(self, normalized_ctx) -> None:
        found = normalized_ctx.query.find_permissions("user.read")
        summary = [(m.kind, m.definition.name, m.services) for m in found]
        assert summary == [
            (APPLICATION, "User.Read.All", ["Exchange", "MicrosoftGraph"]),
            (DELEGATED, "User.Read", ["MicrosoftGraph"]),
        ]

    def test_kind_filter(self, normalized_ctx) -> None:
        found = normalized_ctx.query.find_permissions("User", kind=DELEGATED)
        assert [m.definition.name for m in found] == ["User.Read"]

    def test_legacy_format(self, legacy_ctx) -> None:
        found = legacy_ctx.query.find_permissions("Mail")
        assert [(m.definition.name, m.services) for m in found] == [("Mail.Send", ["Exchange"])]

    def test_no_catalog_is_none(self, make_context) -> None:
        assert make_context(environ=NORMALIZED).query.find_permissions("x") is None
