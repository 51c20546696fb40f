"""Protocol types for SyncOrchestrator dependencies.

Defines the interfaces that SyncOrchestrator requires from its collaborators,
so tests can hand it fakes and several instances can coexist in one process.
"""

from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

from .grifo_client import BatchSyncResponse
from .models import Inspection, InspectionStatus, Photo
from .queue import RunStats, SyncRun


@runtime_checkable
class GrifoClientProtocol(Protocol):
    """Interface for sending inspections to the Grifo API."""

    def is_reachable(self) -> bool: ...

    def sync_inspections(
        self, inspections: list[dict], vistoriador_id: str, empresa_id: str
    ) -> BatchSyncResponse: ...

    def upload_photo(
        self, inspection_id: str, empresa_id: str, index: int, photo: Photo
    ) -> str: ...

    def get_sync_status(
        self, empresa_id: str, vistoriador_id: Optional[str] = None
    ) -> dict: ...


@runtime_checkable
class InspectionQueueProtocol(Protocol):
    """Interface for offline inspection storage."""

    def enqueue(self, inspection: Inspection) -> None: ...

    def get(self, inspection_id: str) -> Optional[Inspection]: ...

    def get_pending(self) -> list[Inspection]: ...

    def get_by_status(self, *statuses: InspectionStatus) -> list[Inspection]: ...

    def mark_synced(
        self,
        inspection_id: str,
        cloud_id: str,
        synced_at: Optional[datetime] = None,
        photo_urls: Optional[list[str]] = None,
    ) -> bool: ...

    def mark_error(self, inspection_id: str, error_message: str) -> bool: ...

    def reset_to_pending(self, inspection_ids: list[str]) -> int: ...

    def counts(self) -> dict[InspectionStatus, int]: ...

    def clear_all(self) -> int: ...

    def get_last_sync_at(self) -> Optional[datetime]: ...

    def set_last_sync_at(self, timestamp: datetime) -> None: ...

    def record_run(self, run: SyncRun) -> None: ...

    def get_run_stats(self) -> RunStats: ...
