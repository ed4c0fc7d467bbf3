from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping, Optional

from appregkit.cache import CatalogCache
from appregkit.paths import CatalogPaths
from appregkit.preference import PREFERENCE_FILENAME, PreferenceStore, StoragePreferenceResolver
from appregkit.query import CatalogQuery
from appregkit.refresh import RefreshEngine
from appregkit.storage import CatalogStorage


class CatalogContext:
    """
    Owns one storage/cache/preference set for a catalog directory.

    Built once at startup and handed to whatever needs it; separate contexts never share cached data.
    """

    def __init__(
        self,
        config_dir: Path,
        *,
        preference_path: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
        client: Any = None,
        session: Any = None,
    ) -> None:
        self.config_dir = Path(config_dir)
        self.storage = CatalogStorage(self.config_dir)
        self.cache = CatalogCache(self.storage)
        self.preference_store = PreferenceStore(preference_path or self.config_dir / PREFERENCE_FILENAME)
        self.preference = StoragePreferenceResolver(
            self.storage,
            preference_store=self.preference_store,
            environ=environ,
        )
        self.client = client
        self.session = session

    @classmethod
    def from_paths(cls, paths: CatalogPaths, **kwargs: Any) -> "CatalogContext":
        kwargs.setdefault("preference_path", paths.user_dir / PREFERENCE_FILENAME)
        return cls(paths.active_dir, **kwargs)

    def attach_upstream(self, client: Any, session: Any) -> None:
        self.client = client
        self.session = session

    @property
    def query(self) -> CatalogQuery:
        return CatalogQuery(cache=self.cache, preference=self.preference, client=self.client, session=self.session)

    def refresh_engine(self, **kwargs: Any) -> RefreshEngine:
        return RefreshEngine(
            storage=self.storage,
            cache=self.cache,
            client=self.client,
            session=self.session,
            preference=self.preference,
            **kwargs,
        )
