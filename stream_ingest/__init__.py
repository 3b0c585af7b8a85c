"""Streaming multipart upload ingestion: validation, quarantine and storage."""

from .errors import (
    IngestionError,
    MalformedMultipart,
    ScanError,
    SessionTooLarge,
    SizeLimitExceeded,
    StorageError,
    Unauthorized,
)
from .multipart import BoundaryScanner, Section, parse_boundary
from .policy import Policy, load_policy
from .quarantine import HoldingArea, QuarantineCoordinator
from .records import IngestionManifest, ManifestEntry, SectionOutcome, StorageReceipt
from .scanning import HttpScanProvider, ScanVerdictProvider, StubScanProvider
from .section_reader import ByteBudget, SectionReader
from .session import IngestionRequest, IngestionSession
from .storage import LocalFileStorageAdapter, SQLiteBlobStorageAdapter, StorageAdapter
from .validation import ValidationPipeline, sanitize_filename

__all__ = [
    "BoundaryScanner",
    "ByteBudget",
    "HoldingArea",
    "HttpScanProvider",
    "IngestionError",
    "IngestionManifest",
    "IngestionRequest",
    "IngestionSession",
    "LocalFileStorageAdapter",
    "MalformedMultipart",
    "ManifestEntry",
    "Policy",
    "QuarantineCoordinator",
    "SQLiteBlobStorageAdapter",
    "ScanError",
    "ScanVerdictProvider",
    "Section",
    "SectionOutcome",
    "SectionReader",
    "SessionTooLarge",
    "SizeLimitExceeded",
    "StorageAdapter",
    "StorageError",
    "StorageReceipt",
    "StubScanProvider",
    "Unauthorized",
    "ValidationPipeline",
    "load_policy",
    "parse_boundary",
    "sanitize_filename",
]
