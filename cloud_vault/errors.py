"""Exception hierarchy shared by the integrity and export engines."""

from __future__ import annotations


class CloudVaultError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ResourceNotFound(CloudVaultError):
    status_code = 404


class ExportResolutionError(ResourceNotFound):
    """Export scope resolved to nothing the caller may read."""


class DownloadLimitExceeded(CloudVaultError):
    status_code = 429


class TreeStoreUnavailable(CloudVaultError):
    """The backing tree datastore could not be read or written."""

    status_code = 503


class IntegrityVerificationFailed(CloudVaultError):
    status_code = 500


class StorageGatewayError(CloudVaultError):
    """A Storage Gateway call failed for a single object."""

    status_code = 502

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key
