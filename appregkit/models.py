from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from appregkit.errors import CatalogFormatError
from appregkit.report import fmt_utc_z, parse_iso_dt


APPLICATION = "Application"
DELEGATED = "Delegated"
PERMISSION_KINDS = (APPLICATION, DELEGATED)

INDEX_VERSION = "3.0"
LEGACY_SCHEMA_VERSION = "2.0"
DEFAULT_REFRESH_INTERVAL_DAYS = 30

# Logical component name -> filename, as stored in the index "Files" map.
DEFAULT_FILES = {
    "ServicePrincipals": "ServicePrincipals.json",
    "PermissionDefinitions": "PermissionDefinitions.json",
    "ServicePermissionMappings": "ServicePermissionMappings.json",
    "LegacyCommonPermissions": "CommonPermissions.json",
}

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


def normalize_alnum(s: str) -> str:
    return _NON_ALNUM.sub("", s or "")


def derive_service_key(display_name: Optional[str], object_id: Optional[str]) -> str:
    """
    Catalog key for a service principal.

    Non-alphanumerics are stripped from the display name ("Microsoft Graph" -> "MicrosoftGraph").
    Names with nothing left fall back to "SP_<object id>", so the key is never empty.
    """
    key = normalize_alnum(display_name or "")
    if key:
        return key
    object_id = (object_id or "").strip()
    return f"SP_{object_id or 'unknown'}"


def permission_name(value: Optional[str], kind: str, permission_id: Optional[str]) -> str:
    value = (value or "").strip()
    if value:
        return value
    prefix = "role" if kind == APPLICATION else "scope"
    return f"{prefix}_{permission_id or ''}"


def _str(d: dict, key: str) -> str:
    v = d.get(key)
    return v if isinstance(v, str) else ""


def _opt_str(d: dict, key: str) -> Optional[str]:
    v = d.get(key)
    return v if isinstance(v, str) and v else None


def _mapping(d: Any, where: str) -> dict:
    if d is None:
        return {}
    if not isinstance(d, dict):
        raise CatalogFormatError(f"Expected an object for '{where}', got {type(d).__name__}")
    return d


def _names(items: Any) -> list[str]:
    if not isinstance(items, list):
        return []
    return list(dict.fromkeys(x for x in items if isinstance(x, str) and x))


def _flag(d: dict, key: str, default: bool) -> bool:
    value = d.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise CatalogFormatError(f"{key} must be true or false, got {value!r}")
    return value


@dataclass
class ServicePrincipalRecord:
    service_key: str
    app_id: str
    display_name: str = ""
    description: str = ""
    publisher: str = ""
    service_principal_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "AppId": self.app_id,
            "DisplayName": self.display_name,
            "Description": self.description,
            "Publisher": self.publisher,
            "ServicePrincipalId": self.service_principal_id,
        }

    @classmethod
    def from_dict(cls, service_key: str, d: dict) -> "ServicePrincipalRecord":
        d = _mapping(d, f"ServicePrincipals.{service_key}")
        return cls(
            service_key=service_key,
            app_id=_str(d, "AppId"),
            display_name=_str(d, "DisplayName"),
            description=_str(d, "Description"),
            publisher=_str(d, "Publisher"),
            service_principal_id=_opt_str(d, "ServicePrincipalId"),
        )


@dataclass
class ApplicationPermission:
    name: str
    id: str = ""
    display_name: str = ""
    description: str = ""
    allowed_member_types: list[str] = field(default_factory=list)

    kind = APPLICATION

    def to_dict(self) -> dict:
        return {
            "Id": self.id,
            "DisplayName": self.display_name,
            "Description": self.description,
            "AllowedMemberTypes": sorted(set(self.allowed_member_types)),
        }

    @classmethod
    def from_dict(cls, name: str, d: dict) -> "ApplicationPermission":
        d = _mapping(d, f"Application.{name}")
        return cls(
            name=name,
            id=_str(d, "Id"),
            display_name=_str(d, "DisplayName"),
            description=_str(d, "Description"),
            allowed_member_types=sorted(set(_names(d.get("AllowedMemberTypes")))),
        )


@dataclass
class DelegatedPermission:
    name: str
    id: str = ""
    display_name: str = ""
    description: str = ""
    user_consent_display_name: str = ""
    user_consent_description: str = ""
    type: str = ""

    kind = DELEGATED

    def to_dict(self) -> dict:
        return {
            "Id": self.id,
            "DisplayName": self.display_name,
            "Description": self.description,
            "UserConsentDisplayName": self.user_consent_display_name,
            "UserConsentDescription": self.user_consent_description,
            "Type": self.type,
        }

    @classmethod
    def from_dict(cls, name: str, d: dict) -> "DelegatedPermission":
        d = _mapping(d, f"Delegated.{name}")
        return cls(
            name=name,
            id=_str(d, "Id"),
            display_name=_str(d, "DisplayName"),
            description=_str(d, "Description"),
            user_consent_display_name=_str(d, "UserConsentDisplayName"),
            user_consent_description=_str(d, "UserConsentDescription"),
            type=_str(d, "Type"),
        )


PermissionDefinition = Union[ApplicationPermission, DelegatedPermission]


@dataclass
class PermissionDefinitions:
    """Definitions keyed by (kind, name); each pair is stored once however many services reference it."""

    application: dict[str, ApplicationPermission] = field(default_factory=dict)
    delegated: dict[str, DelegatedPermission] = field(default_factory=dict)

    def upsert(self, definition: PermissionDefinition) -> None:
        # Last write wins; differing metadata for the same name is not diffed.
        if definition.kind == APPLICATION:
            self.application[definition.name] = definition
        else:
            self.delegated[definition.name] = definition

    def get(self, kind: str, name: str) -> Optional[PermissionDefinition]:
        return (self.application if kind == APPLICATION else self.delegated).get(name)

    def by_kind(self, kind: str) -> dict:
        return self.application if kind == APPLICATION else self.delegated

    def __len__(self) -> int:
        return len(self.application) + len(self.delegated)

    def to_dict(self) -> dict:
        return {
            APPLICATION: {n: p.to_dict() for n, p in self.application.items()},
            DELEGATED: {n: p.to_dict() for n, p in self.delegated.items()},
        }

    @classmethod
    def from_dict(cls, d: Any) -> "PermissionDefinitions":
        d = _mapping(d, "PermissionDefinitions")
        app = _mapping(d.get(APPLICATION), APPLICATION)
        dlg = _mapping(d.get(DELEGATED), DELEGATED)
        return cls(
            application={n: ApplicationPermission.from_dict(n, v) for n, v in app.items()},
            delegated={n: DelegatedPermission.from_dict(n, v) for n, v in dlg.items()},
        )


@dataclass
class ServicePermissionMapping:
    application: list[str] = field(default_factory=list)
    delegated: list[str] = field(default_factory=list)

    def add(self, kind: str, name: str) -> None:
        names = self.application if kind == APPLICATION else self.delegated
        if name not in names:
            names.append(name)

    def names(self, kind: str) -> list[str]:
        return self.application if kind == APPLICATION else self.delegated

    def is_empty(self) -> bool:
        return not self.application and not self.delegated

    def to_dict(self) -> dict:
        return {APPLICATION: list(self.application), DELEGATED: list(self.delegated)}

    @classmethod
    def from_dict(cls, d: Any) -> "ServicePermissionMapping":
        d = _mapping(d, "ServicePermissionMappings entry")
        return cls(application=_names(d.get(APPLICATION)), delegated=_names(d.get(DELEGATED)))


@dataclass
class CatalogMetadata:
    last_updated: Optional[datetime] = None
    refresh_interval_days: int = DEFAULT_REFRESH_INTERVAL_DAYS
    auto_refresh_enabled: bool = True
    version: str = INDEX_VERSION

    def __post_init__(self) -> None:
        if not isinstance(self.refresh_interval_days, int) or self.refresh_interval_days <= 0:
            raise CatalogFormatError(f"RefreshIntervalDays must be a positive integer, got {self.refresh_interval_days!r}")

    def is_fresh(self, now: datetime) -> bool:
        if self.last_updated is None:
            return False
        return now - self.last_updated < timedelta(days=self.refresh_interval_days)

    def to_dict(self) -> dict:
        return {
            "LastUpdated": fmt_utc_z(self.last_updated) if self.last_updated else None,
            "RefreshIntervalDays": self.refresh_interval_days,
            "AutoRefreshEnabled": self.auto_refresh_enabled,
            "Version": self.version,
        }

    @classmethod
    def from_dict(cls, d: Any, *, default_version: str = INDEX_VERSION) -> "CatalogMetadata":
        d = _mapping(d, "Metadata")
        interval = d.get("RefreshIntervalDays", DEFAULT_REFRESH_INTERVAL_DAYS)
        if isinstance(interval, bool) or not isinstance(interval, int):
            raise CatalogFormatError(f"RefreshIntervalDays must be an integer, got {interval!r}")
        version = d.get("Version")
        return cls(
            last_updated=parse_iso_dt(d.get("LastUpdated")),
            refresh_interval_days=interval,
            auto_refresh_enabled=_flag(d, "AutoRefreshEnabled", True),
            version=str(version) if version is not None else default_version,
        )


@dataclass
class CatalogConfiguration:
    """Scope of the last refresh. Descriptive only, never applied as a live filter."""

    include_builtin_service: bool = False
    include_custom_apis: bool = False

    def to_dict(self) -> dict:
        return {
            "IncludeMicrosoftGraph": self.include_builtin_service,
            "IncludeCustomApis": self.include_custom_apis,
        }

    @classmethod
    def from_dict(cls, d: Any) -> "CatalogConfiguration":
        d = _mapping(d, "Configuration")
        return cls(
            include_builtin_service=_flag(d, "IncludeMicrosoftGraph", False),
            include_custom_apis=_flag(d, "IncludeCustomApis", False),
        )


@dataclass
class CatalogIndex:
    metadata: CatalogMetadata = field(default_factory=CatalogMetadata)
    configuration: CatalogConfiguration = field(default_factory=CatalogConfiguration)
    files: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_FILES))

    def to_dict(self) -> dict:
        return {
            "Metadata": self.metadata.to_dict(),
            "Configuration": self.configuration.to_dict(),
            "Files": dict(self.files),
        }

    @classmethod
    def from_dict(cls, d: Any) -> "CatalogIndex":
        d = _mapping(d, "KnownServicesIndex")
        files = {k: v for k, v in _mapping(d.get("Files"), "Files").items() if isinstance(v, str) and v}
        return cls(
            metadata=CatalogMetadata.from_dict(d.get("Metadata")),
            configuration=CatalogConfiguration.from_dict(d.get("Configuration")),
            files=files,
        )


@dataclass
class ServicePermissions:
    """Inline definitions for one service, as nested in the legacy document."""

    application: dict[str, ApplicationPermission] = field(default_factory=dict)
    delegated: dict[str, DelegatedPermission] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            APPLICATION: {n: p.to_dict() for n, p in self.application.items()},
            DELEGATED: {n: p.to_dict() for n, p in self.delegated.items()},
        }

    @classmethod
    def from_dict(cls, d: Any) -> "ServicePermissions":
        defs = PermissionDefinitions.from_dict(d)
        return cls(application=defs.application, delegated=defs.delegated)


def legacy_schema_major(version: str) -> int:
    try:
        return int(str(version).split(".", 1)[0])
    except ValueError:
        raise CatalogFormatError(f"Unrecognized legacy catalog version: {version!r}") from None


@dataclass
class LegacyCatalogDocument:
    service_principals: dict[str, ServicePrincipalRecord] = field(default_factory=dict)
    permissions: dict[str, ServicePermissions] = field(default_factory=dict)
    common_permissions: dict[str, list[str]] = field(default_factory=dict)
    metadata: CatalogMetadata = field(default_factory=lambda: CatalogMetadata(version=LEGACY_SCHEMA_VERSION))
    configuration: CatalogConfiguration = field(default_factory=CatalogConfiguration)

    def to_dict(self) -> dict:
        return {
            "Metadata": self.metadata.to_dict(),
            "Configuration": self.configuration.to_dict(),
            "ServicePrincipals": {k: sp.to_dict() for k, sp in self.service_principals.items()},
            "Permissions": {k: p.to_dict() for k, p in self.permissions.items()},
            "CommonPermissions": {k: list(v) for k, v in self.common_permissions.items()},
        }

    @classmethod
    def from_dict(cls, d: Any) -> "LegacyCatalogDocument":
        d = _mapping(d, "KnownServices")
        metadata = CatalogMetadata.from_dict(d.get("Metadata"), default_version="1.0")
        doc = cls(
            service_principals={
                k: ServicePrincipalRecord.from_dict(k, v)
                for k, v in _mapping(d.get("ServicePrincipals"), "ServicePrincipals").items()
            },
            common_permissions={
                k: _names(v) for k, v in _mapping(d.get("CommonPermissions"), "CommonPermissions").items()
            },
            metadata=metadata,
            configuration=CatalogConfiguration.from_dict(d.get("Configuration")),
        )
        # 1.x documents only carry the flat CommonPermissions view.
        if legacy_schema_major(metadata.version) >= 2:
            doc.permissions = {
                k: ServicePermissions.from_dict(v)
                for k, v in _mapping(d.get("Permissions"), "Permissions").items()
            }
        return doc


@dataclass
class NormalizedCatalog:
    index: CatalogIndex = field(default_factory=CatalogIndex)
    service_principals: dict[str, ServicePrincipalRecord] = field(default_factory=dict)
    definitions: PermissionDefinitions = field(default_factory=PermissionDefinitions)
    mappings: dict[str, ServicePermissionMapping] = field(default_factory=dict)
    common_permissions: dict[str, list[str]] = field(default_factory=dict)

    def set_mapping(self, service_key: str, mapping: ServicePermissionMapping) -> None:
        """Store a service's mapping, dropping empty shells instead of persisting them."""
        self.mappings.pop(service_key, None)
        self.common_permissions.pop(service_key, None)
        if mapping.is_empty():
            return
        self.mappings[service_key] = mapping
        if mapping.application:
            self.common_permissions[service_key] = list(mapping.application)

    def prune_definitions(self) -> int:
        """Drop definitions no mapping references any more. Returns how many were removed."""
        removed = 0
        for kind in PERMISSION_KINDS:
            referenced = {name for m in self.mappings.values() for name in m.names(kind)}
            defs = self.definitions.by_kind(kind)
            for name in [n for n in defs if n not in referenced]:
                del defs[name]
                removed += 1
        return removed

    def to_legacy(self) -> LegacyCatalogDocument:
        metadata = CatalogMetadata(
            last_updated=self.index.metadata.last_updated,
            refresh_interval_days=self.index.metadata.refresh_interval_days,
            auto_refresh_enabled=self.index.metadata.auto_refresh_enabled,
            version=LEGACY_SCHEMA_VERSION,
        )
        permissions: dict[str, ServicePermissions] = {}
        for key, mapping in self.mappings.items():
            inline = ServicePermissions()
            for name in mapping.application:
                inline.application[name] = self.definitions.application.get(name) or ApplicationPermission(name=name)
            for name in mapping.delegated:
                inline.delegated[name] = self.definitions.delegated.get(name) or DelegatedPermission(name=name)
            permissions[key] = inline
        return LegacyCatalogDocument(
            service_principals=dict(self.service_principals),
            permissions=permissions,
            common_permissions={k: list(v) for k, v in self.common_permissions.items()},
            metadata=metadata,
            configuration=CatalogConfiguration(
                include_builtin_service=self.index.configuration.include_builtin_service,
                include_custom_apis=self.index.configuration.include_custom_apis,
            ),
        )

    @classmethod
    def from_legacy(cls, doc: LegacyCatalogDocument) -> "NormalizedCatalog":
        catalog = cls(
            index=CatalogIndex(
                metadata=CatalogMetadata(
                    last_updated=doc.metadata.last_updated,
                    refresh_interval_days=doc.metadata.refresh_interval_days,
                    auto_refresh_enabled=doc.metadata.auto_refresh_enabled,
                ),
                configuration=CatalogConfiguration(
                    include_builtin_service=doc.configuration.include_builtin_service,
                    include_custom_apis=doc.configuration.include_custom_apis,
                ),
            ),
            service_principals=dict(doc.service_principals),
        )
        for key in list(doc.service_principals) + [k for k in doc.common_permissions if k not in doc.service_principals]:
            mapping = ServicePermissionMapping()
            inline = doc.permissions.get(key)
            if inline is not None:
                for perm in list(inline.application.values()) + list(inline.delegated.values()):
                    catalog.definitions.upsert(perm)
                    mapping.add(perm.kind, perm.name)
            else:
                for name in doc.common_permissions.get(key, []):
                    if catalog.definitions.get(APPLICATION, name) is None:
                        catalog.definitions.upsert(ApplicationPermission(name=name))
                    mapping.add(APPLICATION, name)
            catalog.set_mapping(key, mapping)
        return catalog
