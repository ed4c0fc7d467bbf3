from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from tqdm import tqdm

from appregkit.cache import INDEX, CatalogCache
from appregkit.console import info, warn
from appregkit.errors import AppRegKitError, CatalogFormatError, NotConnectedError, RefreshError
from appregkit.graph import APPLICATION_FILTER, MAX_PAGE_SIZE, SERVICE_PRINCIPAL_SELECT
from appregkit.models import (
    APPLICATION,
    DELEGATED,
    ApplicationPermission,
    CatalogConfiguration,
    CatalogIndex,
    CatalogMetadata,
    DelegatedPermission,
    NormalizedCatalog,
    ServicePermissionMapping,
    ServicePrincipalRecord,
    derive_service_key,
    permission_name,
)
from appregkit.preference import StoragePreferenceResolver
from appregkit.progress import PageProgress, ProgressCallback
from appregkit.report import RefreshSummary, print_refresh_summary, utc_now
from appregkit.storage import CatalogStorage


BUILTIN_GRAPH_APP_ID = "00000003-0000-0000-c000-000000000000"
MICROSOFT_TENANT_IDS = {
    "f8cdef31-a31e-4b4a-93e4-5f571e91255a",  # Microsoft Services
    "72f988bf-86f1-41af-91ab-2d7cd011db47",  # Microsoft corp
}


@dataclass
class RefreshResult:
    refreshed: bool
    reason: str
    summary: Optional[RefreshSummary] = None
    wrote_legacy: bool = False


def is_microsoft_published(record: dict[str, Any]) -> bool:
    app_id = (record.get("appId") or "").lower()
    if app_id.startswith("0000"):
        return True
    if (record.get("appOwnerOrganizationId") or "").lower() in MICROSOFT_TENANT_IDS:
        return True
    return "microsoft" in (record.get("publisherName") or "").lower()


def should_include(record: dict[str, Any], *, include_builtin_service: bool, include_custom_apis: bool) -> bool:
    app_id = (record.get("appId") or "").lower()
    if app_id == BUILTIN_GRAPH_APP_ID:
        return include_builtin_service
    if not include_custom_apis and not is_microsoft_published(record):
        return False
    return True


def _application_permission(role: dict[str, Any]) -> ApplicationPermission:
    members = role.get("allowedMemberTypes")
    return ApplicationPermission(
        name=permission_name(role.get("value"), APPLICATION, role.get("id")),
        id=role.get("id") or "",
        display_name=role.get("displayName") or "",
        description=role.get("description") or "",
        allowed_member_types=sorted({m for m in members if isinstance(m, str)}) if isinstance(members, list) else [],
    )


def _delegated_permission(scope: dict[str, Any]) -> DelegatedPermission:
    return DelegatedPermission(
        name=permission_name(scope.get("value"), DELEGATED, scope.get("id")),
        id=scope.get("id") or "",
        display_name=scope.get("adminConsentDisplayName") or "",
        description=scope.get("adminConsentDescription") or "",
        user_consent_display_name=scope.get("userConsentDisplayName") or "",
        user_consent_description=scope.get("userConsentDescription") or "",
        type=scope.get("type") or "",
    )


def _enabled(items: Any) -> list[dict[str, Any]]:
    if not isinstance(items, list):
        return []
    return [x for x in items if isinstance(x, dict) and x.get("isEnabled", True) is not False]


def build_catalog(
    records: Iterable[dict[str, Any]],
    *,
    include_builtin_service: bool,
    include_custom_apis: bool,
    summary: Optional[RefreshSummary] = None,
) -> NormalizedCatalog:
    """
    Merge raw service-principal records into a normalized catalog.

    Records whose derived keys collide overwrite each other in full (last write wins), and so do
    definitions arriving twice under the same (kind, name). Services left without any enabled
    permission get no mapping or CommonPermissions entry, and definitions only an overwritten record
    referenced are dropped.
    """
    summary = summary if summary is not None else RefreshSummary()
    catalog = NormalizedCatalog()
    for record in records:
        if not should_include(record, include_builtin_service=include_builtin_service, include_custom_apis=include_custom_apis):
            summary.skipped_services += 1
            continue

        key = derive_service_key(record.get("displayName"), record.get("id"))
        catalog.service_principals[key] = ServicePrincipalRecord(
            service_key=key,
            app_id=record.get("appId") or "",
            display_name=record.get("displayName") or "",
            description=record.get("description") or "",
            publisher=record.get("publisherName") or "",
            service_principal_id=record.get("id") or None,
        )

        mapping = ServicePermissionMapping()
        for role in _enabled(record.get("appRoles")):
            perm = _application_permission(role)
            catalog.definitions.upsert(perm)
            mapping.add(APPLICATION, perm.name)
        for scope in _enabled(record.get("oauth2PermissionScopes")):
            perm = _delegated_permission(scope)
            catalog.definitions.upsert(perm)
            mapping.add(DELEGATED, perm.name)
        catalog.set_mapping(key, mapping)

    catalog.prune_definitions()
    summary.services = len(catalog.service_principals)
    summary.application_mappings = sum(len(m.application) for m in catalog.mappings.values())
    summary.delegated_mappings = sum(len(m.delegated) for m in catalog.mappings.values())
    summary.unique_application_definitions = len(catalog.definitions.application)
    summary.unique_delegated_definitions = len(catalog.definitions.delegated)
    return catalog


class RefreshEngine:
    def __init__(
        self,
        *,
        storage: CatalogStorage,
        cache: CatalogCache,
        client: Any,
        session: Any,
        preference: Optional[StoragePreferenceResolver] = None,
        clock: Callable[[], datetime] = utc_now,
        tqdm_factory: Optional[Callable] = tqdm,
        progress_callback: Optional[ProgressCallback] = None,
        verbose: bool = True,
    ) -> None:
        self.storage = storage
        self.cache = cache
        self.client = client
        self.session = session
        self.preference = preference
        self.clock = clock
        self.tqdm_factory = tqdm_factory
        self.progress_callback = progress_callback
        self.verbose = verbose

    def _should_write_legacy(self, write_legacy: Optional[bool]) -> bool:
        if write_legacy is not None:
            return write_legacy
        if self.storage.legacy_exists():
            return True
        return self.preference is not None and not self.preference.resolve().use_normalized_storage

    def _fetch_all(self, summary: RefreshSummary) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        with PageProgress(
            desc="Fetching service principals",
            unit="sp",
            tqdm_factory=self.tqdm_factory,
            callback=self.progress_callback,
        ) as progress:
            for page, last in self.client.iter_pages(APPLICATION_FILTER, SERVICE_PRINCIPAL_SELECT, MAX_PAGE_SIZE):
                records.extend(page)
                progress.page_done(len(page), last=last)
            summary.pages = progress.pages
        return records

    def refresh(
        self,
        *,
        include_builtin_service: bool = False,
        include_custom_apis: bool = False,
        force: bool = False,
        write_legacy: Optional[bool] = None,
    ) -> RefreshResult:
        if not self.session.is_connected():
            raise NotConnectedError("a catalog refresh")

        try:
            previous: Optional[CatalogIndex] = self.cache.get(INDEX)
        except CatalogFormatError as e:
            if not force:
                raise
            warn(f"Existing catalog index is unreadable ({e}); rebuilding it with default settings.")
            previous = None
        now = self.clock()
        if not force and previous is not None:
            meta = previous.metadata
            if not meta.auto_refresh_enabled:
                return RefreshResult(False, "auto refresh disabled; use --force to refresh manually")
            if meta.is_fresh(now):
                return RefreshResult(False, f"catalog is newer than {meta.refresh_interval_days} days")

        summary = RefreshSummary()
        try:
            records = self._fetch_all(summary)
            catalog = build_catalog(
                records,
                include_builtin_service=include_builtin_service,
                include_custom_apis=include_custom_apis,
                summary=summary,
            )
            prev_meta = previous.metadata if previous is not None else CatalogMetadata()
            catalog.index = CatalogIndex(
                metadata=CatalogMetadata(
                    last_updated=now,
                    refresh_interval_days=prev_meta.refresh_interval_days,
                    auto_refresh_enabled=prev_meta.auto_refresh_enabled,
                ),
                configuration=CatalogConfiguration(
                    include_builtin_service=include_builtin_service,
                    include_custom_apis=include_custom_apis,
                ),
            )
            wrote_legacy = self._should_write_legacy(write_legacy)
            self.storage.write_normalized(catalog)
            if wrote_legacy:
                self.storage.write_legacy(catalog.to_legacy())
        except AppRegKitError as e:
            raise RefreshError(f"Catalog refresh failed: {e}") from e
        except OSError as e:
            raise RefreshError(f"Catalog refresh failed writing to {self.storage.config_dir}: {e}") from e
        finally:
            self.cache.invalidate()

        self.cache.record_refresh(now)
        if self.verbose:
            if wrote_legacy:
                info(f"Legacy catalog written to {self.storage.legacy_path}")
            print_refresh_summary(summary)
        return RefreshResult(True, "refreshed", summary=summary, wrote_legacy=wrote_legacy)

