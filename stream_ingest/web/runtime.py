"""Process-wide ingestion collaborators shared by concurrent requests."""

from __future__ import annotations

import logging
from typing import Optional

from ..quarantine import HoldingArea, QuarantineCoordinator
from ..scanning import HttpScanProvider, ScanVerdictProvider, StubScanProvider
from ..session import IngestionSession
from ..storage import (
    KeyValueStore,
    LocalFileStorageAdapter,
    SQLiteBlobStorageAdapter,
    SQLiteKeyValueStore,
    StorageAdapter,
)
from .settings import IngestSettings

logger = logging.getLogger("stream_ingest.web.api")


class IngestionRuntime:
    """Owns the holding area, storage backend and scan provider for the app."""

    def __init__(
        self,
        settings: IngestSettings,
        storage: Optional[StorageAdapter] = None,
        scan_provider: Optional[ScanVerdictProvider] = None,
    ) -> None:
        problems = settings.problems()
        if problems:
            raise ValueError("Invalid ingestion settings: " + "; ".join(problems))
        self.settings = settings
        self.policy = settings.policy
        self.holding_area = HoldingArea(settings.holding_root)
        self.metadata_store: Optional[KeyValueStore] = None
        self._blob_storage: Optional[SQLiteBlobStorageAdapter] = None

        if storage is None:
            if settings.storage_backend == "sqlite":
                self._blob_storage = SQLiteBlobStorageAdapter(settings.sqlite_path)
                storage = self._blob_storage
            else:
                self.metadata_store = SQLiteKeyValueStore(settings.sqlite_path)
                storage = LocalFileStorageAdapter(settings.storage_root, metadata_store=self.metadata_store)
        self.storage = storage

        if scan_provider is None:
            if settings.scan_mode == "stub":
                scan_provider = StubScanProvider()
            elif settings.scan_mode == "http":
                scan_provider = HttpScanProvider(settings.scan_url, api_key=settings.scan_api_key)
        self.scan_provider = scan_provider
        self.coordinator = QuarantineCoordinator(self.holding_area, self.storage, self.scan_provider)

    async def start(self) -> None:
        if isinstance(self.metadata_store, SQLiteKeyValueStore):
            await self.metadata_store.start()
        if self._blob_storage is not None:
            await self._blob_storage.start()
        logger.info(
            "ingestion runtime started storage=%s scan=%s holding=%s",
            self.settings.storage_backend,
            self.settings.scan_mode,
            self.holding_area.root_dir,
        )

    async def stop(self) -> None:
        if self.scan_provider is not None:
            await self.scan_provider.aclose()
        if isinstance(self.metadata_store, SQLiteKeyValueStore):
            await self.metadata_store.stop()
        if self._blob_storage is not None:
            await self._blob_storage.stop()

    def new_session(self) -> IngestionSession:
        return IngestionSession(policy=self.policy, coordinator=self.coordinator)
