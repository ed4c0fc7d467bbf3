"""
Resolution of the writable catalog directory.

The package ships a Config directory next to its modules, but a pip/pipx install puts that under
site-packages where it is often read-only. The per-user config directory is preferred, and any
catalog shipped with the package is copied there on first use.
"""

from __future__ import annotations

import os
import shutil
import sys
from pathlib import Path
from typing import Optional

from platformdirs import user_config_dir

from appregkit.console import info
from appregkit.errors import CatalogPathError, RootNotFoundError
from appregkit.models import DEFAULT_FILES


PRODUCT_NAME = "AppRegKit"
CONFIG_FOLDER = "Config"
CONFIG_DIR_ENV = "APPREGKIT_CONFIG_DIR"

INDEX_FILENAME = "KnownServicesIndex.json"
LEGACY_FILENAME = "KnownServices.json"
CATALOG_FILENAMES = (LEGACY_FILENAME, INDEX_FILENAME, *DEFAULT_FILES.values())

_PACKAGE_DIR_NAMES = {"site-packages", "dist-packages"}


class PathKind:
    INSTALL_DEFAULT = "InstallDefault"
    USER_DEFAULT = "UserDefault"
    CUSTOM = "Custom"


def ensure_directory(path: Path) -> Path:
    if path.exists() and not path.is_dir():
        raise CatalogPathError(f"Config path exists but is not a directory: {path}")
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise CatalogPathError(f"Cannot create config directory {path}: {e}") from e
    return path


def _has_catalog(path: Path) -> bool:
    return any((path / name).is_file() for name in (LEGACY_FILENAME, INDEX_FILENAME))


def install_root(
    module_file: Optional[str] = __file__,
    script: Optional[str] = None,
    cwd: Optional[Path] = None,
) -> Path:
    """
    Directory holding the installed package (or frozen executable).

    Strategies, first hit wins: frozen executable, this module's file, the invoked script's
    directory (when it has a Config folder), the current directory (when its Config folder holds a
    catalog). Nothing else is tried.
    """
    if getattr(sys, "frozen", False):  # pragma: no cover - exercised in bundle
        return Path(sys.executable).resolve().parent

    if module_file:
        return Path(module_file).resolve().parent

    if script is None:
        script = sys.argv[0] if sys.argv else ""
    if script:
        script_dir = Path(script).resolve().parent
        if (script_dir / CONFIG_FOLDER).is_dir():
            return script_dir

    cwd = Path.cwd() if cwd is None else cwd
    if _has_catalog(cwd / CONFIG_FOLDER):
        return cwd

    raise RootNotFoundError(
        "Cannot determine the AppRegKit root directory (no module path, script path or current-directory match). "
        f"Set {CONFIG_DIR_ENV} to choose a config directory explicitly."
    )


def user_root() -> Path:
    return Path(user_config_dir(PRODUCT_NAME, appauthor=False, roaming=True))


def resolve_path(kind: str, custom: Optional[os.PathLike] = None, create_if_missing: bool = False) -> Path:
    if kind == PathKind.INSTALL_DEFAULT:
        path = install_root() / CONFIG_FOLDER
    elif kind == PathKind.USER_DEFAULT:
        path = user_root() / CONFIG_FOLDER
    elif kind == PathKind.CUSTOM:
        if not custom:
            raise ValueError("A custom path kind requires a path")
        path = Path(custom).expanduser()
    else:
        raise ValueError(f"Unknown path kind: {kind!r}")
    if create_if_missing:
        ensure_directory(path)
    return path


def looks_like_package_install(path: Path) -> bool:
    return any(part in _PACKAGE_DIR_NAMES for part in path.resolve().parts)


def migrate_catalog(source: Path, dest: Path) -> list[str]:
    """Copy every catalog file present in source into dest. Returns the copied filenames."""
    ensure_directory(dest)
    copied: list[str] = []
    for name in CATALOG_FILENAMES:
        src = source / name
        if src.is_file() and not (dest / name).exists():
            try:
                shutil.copy2(src, dest / name)
            except OSError as e:
                raise CatalogPathError(f"Cannot copy {src} to {dest}: {e}") from e
            copied.append(name)
    return copied


class CatalogPaths:
    """Install/user/active directory triple, with the active one determined once."""

    def __init__(
        self,
        *,
        install_dir: Optional[Path] = None,
        user_dir: Optional[Path] = None,
        custom_dir: Optional[Path] = None,
        environ: Optional[dict] = None,
    ) -> None:
        env = os.environ if environ is None else environ
        self._install_dir = install_dir
        self._user_dir = user_dir
        if custom_dir is None and env.get(CONFIG_DIR_ENV):
            custom_dir = Path(env[CONFIG_DIR_ENV])
        self._custom_dir = custom_dir
        self._active: Optional[Path] = None

    @property
    def install_dir(self) -> Path:
        if self._install_dir is None:
            self._install_dir = resolve_path(PathKind.INSTALL_DEFAULT)
        return self._install_dir

    @property
    def user_dir(self) -> Path:
        if self._user_dir is None:
            self._user_dir = resolve_path(PathKind.USER_DEFAULT)
        return self._user_dir

    @property
    def active_dir(self) -> Path:
        if self._active is None:
            self._active = self._determine_active()
        return self._active

    def _determine_active(self) -> Path:
        if self._custom_dir is not None:
            return resolve_path(PathKind.CUSTOM, self._custom_dir)

        user = self.user_dir
        if _has_catalog(user):
            return user

        install = self.install_dir
        if _has_catalog(install):
            if not looks_like_package_install(install):
                return install
            copied = migrate_catalog(install, user)
            if copied:
                info(f"Copied packaged catalog ({', '.join(copied)}) from {install} to {user}")
        return user
