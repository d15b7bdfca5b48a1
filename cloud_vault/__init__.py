"""Folder integrity verification and bulk archive export over a folder tree."""

from .config import CloudVaultConfig  # noqa: F401
from .runtime import CloudVaultRuntime  # noqa: F401
