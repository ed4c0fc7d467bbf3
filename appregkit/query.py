from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from appregkit import cache as c
from appregkit.errors import NotConnectedError
from appregkit.graph import SERVICE_PRINCIPAL_SELECT, starts_with_filter
from appregkit.models import (
    APPLICATION,
    DELEGATED,
    ApplicationPermission,
    DelegatedPermission,
    LegacyCatalogDocument,
    NormalizedCatalog,
    PermissionDefinition,
    PermissionDefinitions,
    ServicePermissionMapping,
    ServicePrincipalRecord,
    normalize_alnum,
)
from appregkit.preference import StoragePreferenceResolver


@dataclass
class ServiceInfo:
    service_key: str
    app_id: str
    display_name: str
    description: str = ""
    publisher: str = ""
    service_principal_id: Optional[str] = None
    application_permissions: Optional[list[ApplicationPermission]] = None
    delegated_permissions: Optional[list[DelegatedPermission]] = None
    live_service_principal: Optional[dict[str, Any]] = None

    @classmethod
    def from_record(cls, record: ServicePrincipalRecord) -> "ServiceInfo":
        return cls(
            service_key=record.service_key,
            app_id=record.app_id,
            display_name=record.display_name,
            description=record.description,
            publisher=record.publisher,
            service_principal_id=record.service_principal_id,
        )

    def to_dict(self) -> dict:
        out: dict[str, Any] = {
            "ServiceKey": self.service_key,
            "AppId": self.app_id,
            "DisplayName": self.display_name,
            "Description": self.description,
            "Publisher": self.publisher,
            "ServicePrincipalId": self.service_principal_id,
        }
        if self.application_permissions is not None:
            out["ApplicationPermissions"] = {p.name: p.to_dict() for p in self.application_permissions}
        if self.delegated_permissions is not None:
            out["DelegatedPermissions"] = {p.name: p.to_dict() for p in self.delegated_permissions}
        if self.live_service_principal is not None:
            out["LiveServicePrincipal"] = self.live_service_principal
        return out


@dataclass
class PermissionMatch:
    kind: str
    definition: PermissionDefinition
    services: list[str] = field(default_factory=list)


def matches(pattern: Optional[str], record: ServicePrincipalRecord) -> bool:
    """
    Substring on display name or key, exact appId, or substring after stripping punctuation
    from both sides ("Microsoft Graph" finds "MicrosoftGraph" and the other way round).
    """
    if pattern is None:
        return True
    candidates = (record.display_name, record.service_key)
    if any(pattern in cand for cand in candidates):
        return True
    if record.app_id and pattern.strip().lower() == record.app_id.lower():
        return True
    needle = normalize_alnum(pattern)
    return bool(needle) and any(needle in normalize_alnum(cand) for cand in candidates)


class CatalogQuery:
    """Service lookups over whichever catalog format the preference resolver selects."""

    def __init__(
        self,
        *,
        cache: c.CatalogCache,
        preference: StoragePreferenceResolver,
        client: Any = None,
        session: Any = None,
    ) -> None:
        self.cache = cache
        self.preference = preference
        self.client = client
        self.session = session

    def _use_normalized(self) -> bool:
        return self.preference.resolve().use_normalized_storage

    def _require_session(self, action: str) -> None:
        if self.session is None or self.client is None or not self.session.is_connected():
            raise NotConnectedError(action)

    def find_services(
        self,
        pattern: Optional[str] = None,
        *,
        include_permissions: bool = False,
        include_live_service_principal: bool = False,
    ) -> Optional[list[ServiceInfo]]:
        """Matching services, [] when nothing matches, None when no catalog could be loaded at all."""
        if include_live_service_principal:
            self._require_session("a live service principal lookup")

        if self._use_normalized():
            if self.cache.get(c.INDEX) is None:
                return None
            records = self.cache.get(c.SERVICE_PRINCIPALS) or {}
            legacy = None
        else:
            legacy = self.cache.get(c.LEGACY_FORMAT)
            if legacy is None:
                return None
            records = legacy.service_principals

        results: list[ServiceInfo] = []
        for record in records.values():
            if not matches(pattern, record):
                continue
            service = ServiceInfo.from_record(record)
            if include_permissions:
                if legacy is None:
                    self._join_normalized(service)
                else:
                    self._join_legacy(service, legacy)
            if include_live_service_principal and record.app_id:
                service.live_service_principal = self.client.lookup_by_app_id(record.app_id)
            results.append(service)
        return results

    def _join_normalized(self, service: ServiceInfo) -> None:
        mappings: dict[str, ServicePermissionMapping] = self.cache.get(c.SERVICE_PERMISSION_MAPPINGS) or {}
        mapping = mappings.get(service.service_key) or ServicePermissionMapping()
        definitions: PermissionDefinitions = self.cache.get(c.PERMISSION_DEFINITIONS) or PermissionDefinitions()
        service.application_permissions = [
            definitions.application.get(n) or ApplicationPermission(name=n) for n in mapping.application
        ]
        service.delegated_permissions = [
            definitions.delegated.get(n) or DelegatedPermission(name=n) for n in mapping.delegated
        ]

    def _join_legacy(self, service: ServiceInfo, doc: LegacyCatalogDocument) -> None:
        inline = doc.permissions.get(service.service_key)
        if inline is not None:
            service.application_permissions = list(inline.application.values())
            service.delegated_permissions = list(inline.delegated.values())
            return
        # Flat 1.x view: application names only, no definitions.
        service.application_permissions = [
            ApplicationPermission(name=n) for n in doc.common_permissions.get(service.service_key, [])
        ]
        service.delegated_permissions = []

    def find_permissions(self, name_pattern: str, kind: Optional[str] = None) -> Optional[list[PermissionMatch]]:
        """Permission definitions whose name contains name_pattern (case-insensitive), with referencing services."""
        kinds = (kind,) if kind else (APPLICATION, DELEGATED)
        needle = name_pattern.lower()

        if self._use_normalized():
            if self.cache.get(c.INDEX) is None:
                return None
            definitions: PermissionDefinitions = self.cache.get(c.PERMISSION_DEFINITIONS) or PermissionDefinitions()
            mappings: dict[str, ServicePermissionMapping] = self.cache.get(c.SERVICE_PERMISSION_MAPPINGS) or {}
        else:
            legacy = self.cache.get(c.LEGACY_FORMAT)
            if legacy is None:
                return None
            converted = NormalizedCatalog.from_legacy(legacy)
            definitions, mappings = converted.definitions, converted.mappings

        results: list[PermissionMatch] = []
        for k in kinds:
            for name, definition in sorted(definitions.by_kind(k).items()):
                if needle not in name.lower():
                    continue
                services = sorted(key for key, m in mappings.items() if name in m.names(k))
                results.append(PermissionMatch(kind=k, definition=definition, services=services))
        return results

    def find_live_services(self, display_name_prefix: str, limit: int = 50) -> list[dict[str, Any]]:
        """Upstream service principals whose display name starts with the prefix (first page only)."""
        self._require_session("a live service principal search")
        records, _ = self.client.page(
            starts_with_filter("displayName", display_name_prefix),
            SERVICE_PRINCIPAL_SELECT,
            page_size=limit,
        )
        return records
