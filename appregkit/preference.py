from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

import yaml

from appregkit.console import info, warn
from appregkit.errors import AppRegKitError, CatalogPathError
from appregkit.paths import ensure_directory
from appregkit.storage import CatalogStorage


NORMALIZED_STORAGE_ENV = "APPREGKIT_USE_NORMALIZED_STORAGE"
PREFERENCE_FILENAME = "preferences.yaml"
PREFERENCE_KEY = "use_normalized_storage"

TRUTHY = {"1", "true", "yes", "y"}
FALSY = {"0", "false", "no", "n"}

REASON_ENV = "environment override"
REASON_USER = "user preference"
REASON_ONLY_NORMALIZED = "only normalized available"
REASON_DEFAULT = "transition default"


@dataclass(frozen=True)
class StoragePreference:
    use_normalized_storage: bool
    reason: str


def parse_flag(value: Optional[str]) -> Optional[bool]:
    v = (value or "").strip().lower()
    if v in TRUTHY:
        return True
    if v in FALSY:
        return False
    return None


class PreferenceStore:
    """Cross-session storage preference kept as a small YAML file in the user config directory."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> Optional[bool]:
        if not self.path.is_file():
            return None
        with open(self.path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Invalid preference file structure: {self.path}")
        value = data.get(PREFERENCE_KEY)
        if value is None:
            return None
        if not isinstance(value, bool):
            raise ValueError(f"'{PREFERENCE_KEY}' in {self.path} must be true or false")
        return value

    def save(self, use_normalized: bool) -> None:
        ensure_directory(self.path.parent)
        try:
            with open(self.path, "w", encoding="utf-8") as f:
                yaml.safe_dump({PREFERENCE_KEY: bool(use_normalized)}, f, default_flow_style=False, sort_keys=False)
        except OSError as e:
            raise CatalogPathError(f"Cannot save storage preference to {self.path}: {e}") from e

    def clear(self) -> bool:
        if not self.path.is_file():
            return False
        try:
            self.path.unlink()
        except OSError as e:
            raise CatalogPathError(f"Cannot remove storage preference {self.path}: {e}") from e
        return True


class StoragePreferenceResolver:
    """
    Decides whether catalog reads and writes use the normalized or the legacy format.

    First match wins: cached decision, environment override, persisted user preference, normalized
    being the only format on disk, then the legacy transition default.
    """

    def __init__(
        self,
        storage: CatalogStorage,
        *,
        preference_store: Optional[PreferenceStore] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.storage = storage
        self.preference_store = preference_store
        self._environ = environ
        self._cached: Optional[StoragePreference] = None
        self._advised = False

    @property
    def environ(self) -> Mapping[str, str]:
        return os.environ if self._environ is None else self._environ

    def resolve(self, force_recheck: bool = False) -> StoragePreference:
        if self._cached is not None and not force_recheck:
            return self._cached
        try:
            pref = self._detect()
        except (OSError, ValueError, yaml.YAMLError, AppRegKitError) as e:
            warn(f"Could not determine catalog storage preference ({e}); using the legacy format.")
            pref = StoragePreference(False, f"detection failed: {e}")
        self._cached = pref
        return pref

    def _detect(self) -> StoragePreference:
        raw = self.environ.get(NORMALIZED_STORAGE_ENV)
        if raw is not None and raw.strip():
            flag = parse_flag(raw)
            if flag is not None:
                return StoragePreference(flag, REASON_ENV)
            warn(f"Ignoring unrecognized {NORMALIZED_STORAGE_ENV}={raw!r} (use true/false, yes/no, 1/0).")

        if self.preference_store is not None:
            stored = self.preference_store.load()
            if stored is not None:
                return StoragePreference(stored, REASON_USER)

        normalized = self.storage.read_index() is not None
        legacy = self.storage.legacy_exists()
        if normalized and not legacy:
            return StoragePreference(True, REASON_ONLY_NORMALIZED)

        if normalized and not self._advised:
            self._advised = True
            info(
                "Normalized catalog storage is available and will become the default in a future release. "
                f"Opt in now with `appregkit prefer normalized` or {NORMALIZED_STORAGE_ENV}=true."
            )
        return StoragePreference(False, REASON_DEFAULT)
