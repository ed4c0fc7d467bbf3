from __future__ import annotations

from typing import Any, Iterator, Optional

import requests
from azure.core.exceptions import ClientAuthenticationError

from appregkit.auth import GraphSession
from appregkit.errors import GraphError


GRAPH_BASE = "https://graph.microsoft.com/v1.0"
APPLICATION_FILTER = "servicePrincipalType eq 'Application'"
SERVICE_PRINCIPAL_SELECT = (
    "id,appId,displayName,description,publisherName,appOwnerOrganizationId,appRoles,oauth2PermissionScopes"
)
MAX_PAGE_SIZE = 999
LIVE_LOOKUP_SELECT = SERVICE_PRINCIPAL_SELECT + ",servicePrincipalType,accountEnabled,servicePrincipalNames"


def starts_with_filter(field: str, prefix: str) -> str:
    escaped = prefix.replace("'", "''")
    return f"startswith({field},'{escaped}')"


def and_filters(*filters: Optional[str]) -> Optional[str]:
    parts = [f for f in filters if f]
    if not parts:
        return None
    if len(parts) == 1:
        return parts[0]
    return " and ".join(f"({f})" for f in parts)


class GraphDirectoryClient:
    """Minimal Microsoft Graph reader for service principals (cursor paging + lookup by appId)."""

    def __init__(
        self,
        session: GraphSession,
        *,
        base_url: str = GRAPH_BASE,
        timeout: int = 30,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = http or requests.Session()

    def _get(self, url: str, params: Optional[dict[str, str]]) -> dict[str, Any]:
        try:
            token = self.session.token()
        except ClientAuthenticationError as e:
            raise GraphError(f"Could not acquire a Microsoft Graph token: {e}") from e
        try:
            r = self.http.get(
                url,
                headers={"Authorization": f"Bearer {token}", "ConsistencyLevel": "eventual"},
                params=params,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise GraphError(f"Graph request to {url} failed: {e}") from e
        if r.status_code >= 400:
            raise GraphError(f"Graph request failed ({r.status_code}): {r.text[:200]}", status_code=r.status_code)
        try:
            data = r.json()
        except ValueError as e:
            raise GraphError(
                f"Graph returned a non-JSON response ({r.status_code}): {r.text[:200]}", status_code=r.status_code
            ) from e
        return data if isinstance(data, dict) else {}

    def page(
        self,
        filter: Optional[str],
        select: str,
        page_size: int = MAX_PAGE_SIZE,
        cursor: Optional[str] = None,
    ) -> tuple[list[dict[str, Any]], Optional[str]]:
        """Fetch one page of /servicePrincipals. Returns (records, next cursor or None)."""
        if cursor:
            # nextLink already carries the query.
            data = self._get(cursor, None)
        else:
            params = {"$select": select, "$top": str(min(max(1, page_size), MAX_PAGE_SIZE))}
            if filter:
                params["$filter"] = filter
            data = self._get(f"{self.base_url}/servicePrincipals", params)
        values = data.get("value") or []
        records = [v for v in values if isinstance(v, dict)] if isinstance(values, list) else []
        return records, data.get("@odata.nextLink")

    def iter_pages(
        self,
        filter: Optional[str],
        select: str,
        page_size: int = MAX_PAGE_SIZE,
    ) -> Iterator[tuple[list[dict[str, Any]], bool]]:
        """Yield (records, is_last_page) until the upstream cursor runs out."""
        cursor: Optional[str] = None
        while True:
            records, cursor = self.page(filter, select, page_size, cursor)
            yield records, not cursor
            if not cursor:
                return

    def lookup_by_app_id(self, app_id: str) -> Optional[dict[str, Any]]:
        escaped = app_id.replace("'", "''")
        records, _ = self.page(f"appId eq '{escaped}'", LIVE_LOOKUP_SELECT, page_size=1)
        return records[0] if records else None
