from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from appregkit import storage as st


INDEX = "Index"
SERVICE_PRINCIPALS = "ServicePrincipals"
PERMISSION_DEFINITIONS = "PermissionDefinitions"
SERVICE_PERMISSION_MAPPINGS = "ServicePermissionMappings"
COMMON_PERMISSIONS = "CommonPermissions"
LEGACY_FORMAT = "LegacyFormat"

COMPONENTS = (INDEX, SERVICE_PRINCIPALS, PERMISSION_DEFINITIONS, SERVICE_PERMISSION_MAPPINGS, COMMON_PERMISSIONS, LEGACY_FORMAT)

# Cache component -> storage satellite name in the index "Files" map.
_SATELLITE = {
    SERVICE_PRINCIPALS: st.SERVICE_PRINCIPALS,
    PERMISSION_DEFINITIONS: st.PERMISSION_DEFINITIONS,
    SERVICE_PERMISSION_MAPPINGS: st.SERVICE_PERMISSION_MAPPINGS,
    COMMON_PERMISSIONS: st.COMMON_PERMISSIONS,
}


class CatalogCache:
    """
    Process-local memo of loaded catalog components.

    Every component is read from disk at most once until invalidate() (or force_reload). Misses are
    remembered too. Satellites need the index for their filenames, so when the index is unavailable
    they come back as None without touching disk. Staleness is not judged here.
    """

    def __init__(self, storage: st.CatalogStorage) -> None:
        self.storage = storage
        self._slots: dict[str, Any] = {}
        self.last_refresh: Optional[datetime] = None
        self.loads = 0

    def get(self, component: str, *, force_reload: bool = False) -> Any:
        if component not in COMPONENTS:
            raise ValueError(f"Unknown cache component: {component!r}")
        if not force_reload and component in self._slots:
            return self._slots[component]
        self._slots[component] = self._load(component, force_reload=force_reload)
        return self._slots[component]

    def _load(self, component: str, *, force_reload: bool) -> Any:
        if component == LEGACY_FORMAT:
            self.loads += 1
            return self.storage.read_legacy()
        if component == INDEX:
            self.loads += 1
            return self.storage.read_index()
        index = self.get(INDEX, force_reload=force_reload)
        if index is None:
            return None
        self.loads += 1
        return self.storage.read_component(index, _SATELLITE[component])

    def is_loaded(self, component: str) -> bool:
        return component in self._slots

    def invalidate(self) -> None:
        self._slots.clear()
        self.last_refresh = None

    def record_refresh(self, when: datetime) -> None:
        self.last_refresh = when
