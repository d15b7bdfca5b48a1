"""Runtime wiring for the integrity and export engines."""

from __future__ import annotations

import logging
from concurrent import futures
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .config import CloudVaultConfig
from .messaging import InMemoryBus, build_bus
from .services.api_gateway import APIGateway
from .services.export_service import BulkExportService
from .services.integrity_service import FolderIntegrityService
from .services.metadata_service import MetadataService
from .services.registry import PeriodicSweeper
from .storage.gateway import StorageGateway
from .storage.memory_store import InMemoryObjectStore
from .storage.real_file_store import RealFileStore
from .telemetry import TelemetryCollector

logger = logging.getLogger(__name__)


def build_storage(cfg: CloudVaultConfig) -> StorageGateway:
    backend = cfg.storage.backend
    if backend == "memory":
        return InMemoryObjectStore()
    if backend == "disk":
        if not cfg.storage.base_path:
            raise ValueError("Disk storage backend requires storage.base_path")
        return RealFileStore(cfg.storage.base_path, chunk_size=cfg.storage.read_chunk_size)
    raise ValueError(f"Unknown storage backend {backend!r}")


@dataclass
class CloudVaultRuntime:
    config: CloudVaultConfig
    bus: InMemoryBus
    telemetry: TelemetryCollector
    storage: StorageGateway
    metadata_service: MetadataService
    integrity_service: FolderIntegrityService
    export_service: BulkExportService
    api_gateway: APIGateway
    verification_executor: futures.ThreadPoolExecutor
    sweepers: List[PeriodicSweeper] = field(default_factory=list)

    @classmethod
    def bootstrap(
        cls,
        config: Optional[CloudVaultConfig] = None,
        *,
        storage: Optional[StorageGateway] = None,
    ) -> "CloudVaultRuntime":
        cfg = config or CloudVaultConfig.default()
        bus = build_bus(cfg.message_bus.backend)
        telemetry = TelemetryCollector(cfg.observability)
        storage = storage or build_storage(cfg)

        metadata_service = MetadataService(config=cfg, telemetry=telemetry, state_path=cfg.tree_store.state_path)
        verification_executor = futures.ThreadPoolExecutor(max_workers=4, thread_name_prefix="verification")
        integrity_service = FolderIntegrityService(
            config=cfg,
            telemetry=telemetry,
            metadata_service=metadata_service,
            storage=storage,
            bus=bus,
            executor=verification_executor,
        )
        export_service = BulkExportService(
            config=cfg,
            telemetry=telemetry,
            metadata_service=metadata_service,
            storage=storage,
            bus=bus,
        )
        api_gateway = APIGateway(
            metadata_service=metadata_service,
            integrity_service=integrity_service,
            export_service=export_service,
            object_writer=getattr(storage, "put_object", None),
        )
        runtime = cls(
            config=cfg,
            bus=bus,
            telemetry=telemetry,
            storage=storage,
            metadata_service=metadata_service,
            integrity_service=integrity_service,
            export_service=export_service,
            api_gateway=api_gateway,
            verification_executor=verification_executor,
        )
        runtime.sweepers = [
            PeriodicSweeper(
                "verifications",
                integrity_service.cleanup_old_verifications,
                cfg.integrity.sweep_interval_seconds,
            ),
            PeriodicSweeper(
                "downloads",
                export_service.cleanup_old_downloads,
                cfg.export.sweep_interval_seconds,
            ),
        ]
        logger.info("Cloud Vault runtime ready (storage=%s)", cfg.storage.backend)
        return runtime

    def start_sweepers(self) -> None:
        for sweeper in self.sweepers:
            sweeper.start()

    def stop_sweepers(self) -> None:
        for sweeper in self.sweepers:
            sweeper.stop()

    def run_background_jobs(self) -> Dict[str, int]:
        expired_verifications = self.integrity_service.cleanup_old_verifications()
        expired_downloads = self.export_service.cleanup_old_downloads()
        return {
            "verifications": len(expired_verifications),
            "downloads": len(expired_downloads),
        }

    def shutdown(self) -> None:
        self.stop_sweepers()
        self.verification_executor.shutdown(wait=False, cancel_futures=True)
