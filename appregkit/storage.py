from __future__ import annotations

import contextlib
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional

from packaging.version import InvalidVersion, Version

from appregkit.console import warn
from appregkit.errors import CatalogFormatError, CatalogPathError
from appregkit.models import (
    DEFAULT_FILES,
    DEFAULT_REFRESH_INTERVAL_DAYS,
    INDEX_VERSION,
    CatalogIndex,
    CatalogMetadata,
    LegacyCatalogDocument,
    NormalizedCatalog,
    PermissionDefinitions,
    ServicePermissionMapping,
    ServicePrincipalRecord,
)
from appregkit.paths import INDEX_FILENAME, LEGACY_FILENAME, ensure_directory


MIN_SUPPORTED_VERSION = "3.0"
REFRESH_MARKER = ".refresh-in-progress"

# Satellite component names, as keyed in the index "Files" map.
SERVICE_PRINCIPALS = "ServicePrincipals"
PERMISSION_DEFINITIONS = "PermissionDefinitions"
SERVICE_PERMISSION_MAPPINGS = "ServicePermissionMappings"
COMMON_PERMISSIONS = "LegacyCommonPermissions"
SATELLITES = (SERVICE_PRINCIPALS, PERMISSION_DEFINITIONS, SERVICE_PERMISSION_MAPPINGS, COMMON_PERMISSIONS)


def read_json(path: Path) -> Optional[Any]:
    if not path.is_file():
        return None
    try:
        with open(path, "r", encoding="utf-8-sig") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise CatalogFormatError(f"Invalid JSON in {path}: {e}") from e


def atomic_write_json(path: Path, obj: Any) -> None:
    tmp_path = path.with_name(f"{path.name}.tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(obj, f, indent=2, sort_keys=False, default=str)
            f.write("\n")
        os.replace(tmp_path, path)
    except OSError as e:
        with contextlib.suppress(OSError):
            tmp_path.unlink()
        raise CatalogPathError(f"Cannot write {path}: {e}") from e


def is_supported_version(version: str, minimum: str = MIN_SUPPORTED_VERSION) -> bool:
    try:
        return Version(version) >= Version(minimum)
    except InvalidVersion:
        return False


def _parse_service_principals(data: Any) -> dict[str, ServicePrincipalRecord]:
    if not isinstance(data, dict):
        raise CatalogFormatError("ServicePrincipals must be an object")
    return {k: ServicePrincipalRecord.from_dict(k, v) for k, v in data.items()}


def _parse_mappings(data: Any) -> dict[str, ServicePermissionMapping]:
    if not isinstance(data, dict):
        raise CatalogFormatError("ServicePermissionMappings must be an object")
    return {k: ServicePermissionMapping.from_dict(v) for k, v in data.items()}


def _parse_common(data: Any) -> dict[str, list[str]]:
    if not isinstance(data, dict):
        raise CatalogFormatError("CommonPermissions must be an object")
    return {k: [n for n in v if isinstance(n, str)] for k, v in data.items() if isinstance(v, list)}


_PARSERS = {
    SERVICE_PRINCIPALS: _parse_service_principals,
    PERMISSION_DEFINITIONS: PermissionDefinitions.from_dict,
    SERVICE_PERMISSION_MAPPINGS: _parse_mappings,
    COMMON_PERMISSIONS: _parse_common,
}

_EMPTY = {
    SERVICE_PRINCIPALS: dict,
    PERMISSION_DEFINITIONS: PermissionDefinitions,
    SERVICE_PERMISSION_MAPPINGS: dict,
    COMMON_PERMISSIONS: dict,
}


def _serialize_component(catalog: NormalizedCatalog, component: str) -> Any:
    if component == SERVICE_PRINCIPALS:
        return {k: sp.to_dict() for k, sp in catalog.service_principals.items()}
    if component == PERMISSION_DEFINITIONS:
        return catalog.definitions.to_dict()
    if component == SERVICE_PERMISSION_MAPPINGS:
        return {k: m.to_dict() for k, m in catalog.mappings.items()}
    return {k: list(v) for k, v in catalog.common_permissions.items()}


@dataclass
class StructureInitResult:
    created: bool
    created_files: list[str] = field(default_factory=list)
    existing_files: list[str] = field(default_factory=list)


class CatalogStorage:
    """Readers and writers for the legacy document and the normalized index + satellites in one directory."""

    def __init__(self, config_dir: Path) -> None:
        self.config_dir = Path(config_dir)

    @property
    def index_path(self) -> Path:
        return self.config_dir / INDEX_FILENAME

    @property
    def legacy_path(self) -> Path:
        return self.config_dir / LEGACY_FILENAME

    @property
    def marker_path(self) -> Path:
        return self.config_dir / REFRESH_MARKER

    def legacy_exists(self) -> bool:
        return self.legacy_path.is_file()

    def normalized_exists(self) -> bool:
        return self.index_path.is_file()

    def refresh_interrupted(self) -> bool:
        return self.marker_path.exists()

    # Legacy format

    def read_legacy(self) -> Optional[LegacyCatalogDocument]:
        data = read_json(self.legacy_path)
        if data is None:
            return None
        return LegacyCatalogDocument.from_dict(data)

    def write_legacy(self, doc: LegacyCatalogDocument) -> Path:
        ensure_directory(self.config_dir)
        atomic_write_json(self.legacy_path, doc.to_dict())
        return self.legacy_path

    # Normalized format

    def read_index(self) -> Optional[CatalogIndex]:
        """Load the index; None means normalized storage is not available (absent or too old)."""
        data = read_json(self.index_path)
        if data is None:
            return None
        index = CatalogIndex.from_dict(data)
        if not is_supported_version(index.metadata.version):
            warn(
                f"Normalized catalog version {index.metadata.version!r} in {self.index_path} is below the "
                f"minimum supported {MIN_SUPPORTED_VERSION}; ignoring it. Re-run `init --force` or `refresh --force`."
            )
            return None
        if self.refresh_interrupted():
            warn(f"A previous refresh did not complete in {self.config_dir}; catalog files may be inconsistent. Run `refresh --force`.")
        return index

    def read_component(self, index: CatalogIndex, component: str) -> Any:
        """Load one satellite. A missing file is a warning and yields that component's empty value."""
        if component not in _PARSERS:
            raise ValueError(f"Unknown catalog component: {component!r}")
        filename = index.files.get(component) or DEFAULT_FILES[component]
        data = read_json(self.config_dir / filename)
        if data is None:
            warn(f"Catalog component {component} ({filename}) is missing in {self.config_dir}; treating it as empty.")
            return _EMPTY[component]()
        return _PARSERS[component](data)

    def read_normalized(self, components: Iterable[str] = SATELLITES) -> Optional[NormalizedCatalog]:
        index = self.read_index()
        if index is None:
            return None
        catalog = NormalizedCatalog(index=index)
        for component in components:
            value = self.read_component(index, component)
            if component == SERVICE_PRINCIPALS:
                catalog.service_principals = value
            elif component == PERMISSION_DEFINITIONS:
                catalog.definitions = value
            elif component == SERVICE_PERMISSION_MAPPINGS:
                catalog.mappings = value
            else:
                catalog.common_permissions = value
        return catalog

    def write_normalized(self, catalog: NormalizedCatalog) -> list[Path]:
        """
        Write the index, then each satellite, each through a temp file + rename.

        The refresh marker exists for the whole sequence and is removed only after the last file is
        in place, so an interrupted write stays detectable.
        """
        ensure_directory(self.config_dir)
        try:
            self.marker_path.touch()
        except OSError as e:
            raise CatalogPathError(f"Cannot write to {self.config_dir}: {e}") from e
        written = [self.index_path]
        atomic_write_json(self.index_path, catalog.index.to_dict())
        for component in SATELLITES:
            path = self.config_dir / (catalog.index.files.get(component) or DEFAULT_FILES[component])
            atomic_write_json(path, _serialize_component(catalog, component))
            written.append(path)
        try:
            self.marker_path.unlink()
        except OSError as e:
            raise CatalogPathError(f"Cannot remove refresh marker {self.marker_path}: {e}") from e
        return written

    def initialize_structure(
        self,
        *,
        force: bool = False,
        refresh_interval_days: int = DEFAULT_REFRESH_INTERVAL_DAYS,
        auto_refresh_enabled: bool = True,
    ) -> StructureInitResult:
        names = [INDEX_FILENAME, *DEFAULT_FILES.values()]
        existing = [n for n in names if (self.config_dir / n).exists()]
        if existing and not force:
            return StructureInitResult(created=False, existing_files=existing)

        catalog = NormalizedCatalog(
            index=CatalogIndex(
                metadata=CatalogMetadata(
                    refresh_interval_days=refresh_interval_days,
                    auto_refresh_enabled=auto_refresh_enabled,
                    version=INDEX_VERSION,
                )
            )
        )
        self.write_normalized(catalog)
        return StructureInitResult(created=True, created_files=names, existing_files=existing)

    def convert_legacy_to_normalized(self, *, force: bool = False) -> Optional[NormalizedCatalog]:
        doc = self.read_legacy()
        if doc is None:
            return None
        if self.normalized_exists() and not force:
            raise CatalogPathError(f"Normalized catalog already exists in {self.config_dir}; use --force to overwrite it.")
        catalog = NormalizedCatalog.from_legacy(doc)
        self.write_normalized(catalog)
        return catalog
