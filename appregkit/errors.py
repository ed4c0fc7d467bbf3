from __future__ import annotations


class AppRegKitError(RuntimeError):
    """Base class for every failure the CLI turns into a user-facing message."""


class RootNotFoundError(AppRegKitError):
    pass


class CatalogPathError(AppRegKitError):
    pass


class CatalogFormatError(AppRegKitError):
    pass


class NotConnectedError(AppRegKitError):
    def __init__(self, action: str = "this operation") -> None:
        super().__init__(
            f"Not connected to Microsoft Graph; authenticate first (e.g. --tenant-id/--client-id/--client-secret, "
            f"--graph-token or `az login`) before running {action}."
        )


class GraphError(AppRegKitError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RefreshError(AppRegKitError):
    pass
