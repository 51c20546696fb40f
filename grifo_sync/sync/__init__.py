"""Sync module - offline inspection queue and upload to the Grifo API."""

from .models import Inspection, InspectionStatus, Photo, SyncStatusSnapshot
from .queue import InspectionQueue, StorageError
from .grifo_client import GrifoClient
from .http_client import GrifoClientError, GrifoAuthError, GrifoPayloadError, GrifoTransientError
from .sync_engine import SyncOrchestrator, SyncOptions, SyncResult, SyncState, SyncInProgressError
from .retry import RetryConfig, with_retry
from .batcher import run_batches
from .protocols import GrifoClientProtocol, InspectionQueueProtocol
from .validation import InspectionValidationError, validate_inspection
from .endpoint import SyncEndpoint

__all__ = [
    "Inspection",
    "InspectionStatus",
    "Photo",
    "SyncStatusSnapshot",
    "InspectionQueue",
    "StorageError",
    "GrifoClient",
    "GrifoClientError",
    "GrifoAuthError",
    "GrifoPayloadError",
    "GrifoTransientError",
    "SyncOrchestrator",
    "SyncOptions",
    "SyncResult",
    "SyncState",
    "SyncInProgressError",
    "RetryConfig",
    "with_retry",
    "run_batches",
    "GrifoClientProtocol",
    "InspectionQueueProtocol",
    "InspectionValidationError",
    "validate_inspection",
    "SyncEndpoint",
]
