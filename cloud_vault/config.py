"""Configuration primitives for the Cloud Vault integrity and export engines."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class TreeStoreConfig:
    state_path: Optional[str] = None


@dataclass
class MessageBusConfig:
    backend: str = "in-memory"
    topics: List[str] = field(default_factory=lambda: [
        "integrity.events",
        "export.events",
    ])


@dataclass
class StorageGatewayConfig:
    backend: str = "memory"
    base_path: Optional[str] = None
    read_chunk_size: int = 64 * 1024


@dataclass
class IntegrityPolicyConfig:
    retention_seconds: int = 2 * 60 * 60
    sweep_interval_seconds: int = 60 * 60
    storage_check_concurrency: int = 8
    deep_scan_concurrency: int = 2
    checksum_algorithm: str = "md5"
    severity_penalties: Dict[str, float] = field(default_factory=lambda: {
        "critical": 25.0,
        "high": 10.0,
        "medium": 5.0,
        "low": 2.0,
    })


@dataclass
class ExportPolicyConfig:
    max_active_downloads_per_user: int = 10
    fetch_concurrency: int = 10
    fetch_timeout_seconds: float = 30.0
    retention_seconds: int = 60 * 60
    sweep_interval_seconds: int = 30 * 60
    compression_level: int = 6
    max_filename_length: int = 255
    replacement_char: str = "_"
    compression_ratio_estimate: float = 0.8
    spool_max_memory_bytes: int = 8 * 1024 * 1024
    chunk_size: int = 64 * 1024


@dataclass
class ObservabilityConfig:
    log_level: str = "INFO"


@dataclass
class CloudVaultConfig:
    tree_store: TreeStoreConfig
    message_bus: MessageBusConfig
    storage: StorageGatewayConfig
    integrity: IntegrityPolicyConfig
    export: ExportPolicyConfig
    observability: ObservabilityConfig

    @staticmethod
    def default() -> "CloudVaultConfig":
        return CloudVaultConfig(
            tree_store=TreeStoreConfig(),
            message_bus=MessageBusConfig(),
            storage=StorageGatewayConfig(),
            integrity=IntegrityPolicyConfig(),
            export=ExportPolicyConfig(),
            observability=ObservabilityConfig(),
        )

    @staticmethod
    def from_env(environ: Optional[Dict[str, str]] = None) -> "CloudVaultConfig":
        """Build the default config and apply ``CLOUD_VAULT_*`` overrides."""
        env = os.environ if environ is None else environ
        cfg = CloudVaultConfig.default()
        cfg.tree_store.state_path = env.get("CLOUD_VAULT_STATE_PATH") or None
        cfg.storage.backend = env.get("CLOUD_VAULT_STORAGE_BACKEND", cfg.storage.backend)
        cfg.storage.base_path = env.get("CLOUD_VAULT_STORAGE_DIR") or cfg.storage.base_path
        cfg.observability.log_level = env.get("CLOUD_VAULT_LOG_LEVEL", cfg.observability.log_level)
        cfg.export.max_active_downloads_per_user = _int_env(
            env, "CLOUD_VAULT_MAX_ACTIVE_DOWNLOADS", cfg.export.max_active_downloads_per_user
        )
        cfg.export.fetch_concurrency = _int_env(env, "CLOUD_VAULT_FETCH_CONCURRENCY", cfg.export.fetch_concurrency)
        cfg.integrity.deep_scan_concurrency = _int_env(
            env, "CLOUD_VAULT_DEEP_SCAN_CONCURRENCY", cfg.integrity.deep_scan_concurrency
        )
        return cfg


def _int_env(env: Dict[str, str], name: str, fallback: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return fallback
    try:
        value = int(raw)
    except ValueError:
        return fallback
    return value if value > 0 else fallback
