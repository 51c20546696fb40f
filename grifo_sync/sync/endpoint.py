"""In-process implementation of the Grifo sync backend contract.

Serves the same request and response shapes as the real API
(``POST sync``, ``POST uploads/photo``, ``GET sync/status``, ``GET health``)
so the client and the orchestrator can be exercised end to end without a
network.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from .batcher import ItemResult, run_batches
from .models import LOCAL_URI_PREFIXES, format_timestamp
from .retry import RetryConfig, with_retry
from .validation import InspectionValidationError, SyncInspection, validate_sync_request

__all__ = [
    "SyncEndpoint",
    "StoredInspection",
    "StoreUnavailableError",
    "PHOTO_URL_TEMPLATE",
    "STAGED_PHOTO_URL_TEMPLATE",
]

logger = logging.getLogger(__name__)

PHOTO_URL_TEMPLATE = (
    "https://storage.googleapis.com/grifo-vistorias/"
    "{empresa_id}/{inspection_id}/photo_{index}.jpg"
)
STAGING_PREFIX_TEMPLATE = (
    "https://storage.googleapis.com/grifo-vistorias/staging/{empresa_id}/{inspection_id}/"
)
STAGED_PHOTO_URL_TEMPLATE = STAGING_PREFIX_TEMPLATE + "photo_{index}.jpg"

SERVER_BATCH_SIZE = 5
SERVER_RETRY = RetryConfig(max_retries=3, initial_delay=0.1, max_delay=1.0, factor=2.0)


class StoreUnavailableError(Exception):
    """Temporary failure of the document store. Retried by the endpoint."""

    pass


class InspectionRejectedError(Exception):
    """An inspection the endpoint will never accept as sent."""

    pass


@dataclass
class StoredInspection:
    """A committed inspection document."""

    cloud_id: str
    local_id: str
    empresa_id: str
    vistoriador_id: str
    data: dict
    photo_urls: list[str]
    synced_at: datetime


@dataclass
class _RequestRecord:
    empresa_id: str
    vistoriador_id: str
    synced: int
    failed: int
    duration_ms: int
    device_info: Optional[dict] = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SyncEndpoint:
    """Reference backend for the sync protocol.

    Inspections are keyed by their device-generated id, so a repeated
    submission returns the first commit instead of creating a copy. Promoting
    staged photos and inserting the document happen together under one lock.

    Args:
        before_commit: Hook called with the inspection id right before the
            document is written; raising ``StoreUnavailableError`` there
            simulates a flaky store
        sleep: Sleep function used between store retries
    """

    def __init__(
        self,
        before_commit: Optional[Callable[[str], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
        retry_config: RetryConfig = SERVER_RETRY,
    ):
        self.before_commit = before_commit
        self._sleep = sleep
        self._retry_config = retry_config
        self._lock = threading.Lock()
        self._documents: dict[str, StoredInspection] = {}
        self._staged: dict[str, bytes] = {}
        self._photos: dict[str, bytes] = {}
        self._failed_ids: dict[str, set[str]] = {}
        self._requests: list[_RequestRecord] = []

    # -- handlers ---------------------------------------------------------

    def handle_health(self) -> tuple[int, dict]:
        return 200, {"status": "ok"}

    def handle_sync(self, body: dict) -> tuple[int, dict]:
        """Commit a batch of inspections.

        Returns:
            (status_code, response) where a 200 response may mix committed
            inspections and per-item errors
        """
        started = time.monotonic()
        try:
            request = validate_sync_request(body)
        except InspectionValidationError as e:
            logger.warning(f"Rejected sync request: {e}")
            return 400, {"success": False, "message": "Dados inválidos", "errors": e.errors}

        empresa_id = request.empresaId
        vistoriador_id = request.vistoriadorId
        logger.info(
            f"Sync request received: {len(request.pendingInspections)} inspections "
            f"from {vistoriador_id} ({empresa_id})"
        )

        def per_item(inspection: SyncInspection) -> ItemResult:
            try:
                document, created = with_retry(
                    lambda: self._commit(inspection, empresa_id, vistoriador_id),
                    self._retry_config,
                    retryable_exceptions=(StoreUnavailableError,),
                    sleep=self._sleep,
                    label=f"save {inspection.id}",
                )
            except (InspectionRejectedError, StoreUnavailableError) as e:
                logger.error(f"Error syncing inspection {inspection.id}: {e}")
                return ItemResult(item=inspection, success=False, error=str(e), exception=e)
            return ItemResult(item=inspection, success=True, value=(document, created))

        summary = run_batches(request.pendingInspections, SERVER_BATCH_SIZE, per_item)

        sync_results = []
        errors = []
        for result in summary.results:
            if result.success:
                document, created = result.value
                sync_results.append(
                    {
                        "localId": document.local_id,
                        "cloudId": document.cloud_id,
                        "status": "success" if created else "already_synced",
                        "syncedAt": format_timestamp(document.synced_at),
                        "photoUrls": list(document.photo_urls),
                    }
                )
            else:
                errors.append({"inspectionId": result.item.id, "error": result.error})

        duration_ms = int((time.monotonic() - started) * 1000)
        with self._lock:
            failed_ids = self._failed_ids.setdefault(empresa_id, set())
            failed_ids.difference_update(r["localId"] for r in sync_results)
            failed_ids.update(e["inspectionId"] for e in errors)
            self._requests.append(
                _RequestRecord(
                    empresa_id=empresa_id,
                    vistoriador_id=vistoriador_id,
                    synced=len(sync_results),
                    failed=len(errors),
                    duration_ms=duration_ms,
                    device_info=request.deviceInfo,
                )
            )

        logger.info(
            f"Sync completed in {duration_ms}ms: "
            f"{len(sync_results)} synced, {len(errors)} errors"
        )
        return 200, {
            "success": True,
            "message": "Sincronização concluída",
            "data": {"syncResults": sync_results, "errors": errors, "durationMs": duration_ms},
        }

    def handle_photo_upload(
        self, inspection_id: str, empresa_id: str, index: int, content: bytes
    ) -> tuple[int, dict]:
        """Stage a photo until its inspection is committed.

        Uploading the same index again replaces the staged bytes.
        """
        if not inspection_id or not empresa_id or index < 0:
            return 400, {"success": False, "message": "inspectionId, empresaId e index são obrigatórios"}
        if not content:
            return 400, {"success": False, "message": "Arquivo de foto vazio"}

        url = STAGED_PHOTO_URL_TEMPLATE.format(
            empresa_id=empresa_id, inspection_id=inspection_id, index=index
        )
        with self._lock:
            self._staged[url] = content
        logger.debug(f"Staged photo {index} for {inspection_id}")
        return 200, {"success": True, "data": {"url": url}}

    def handle_status(
        self, empresa_id: str, vistoriador_id: Optional[str] = None
    ) -> tuple[int, dict]:
        """Sync metrics for a company, optionally narrowed to one inspector.

        The server only knows inspections a device has sent. ``pendingCount`` is
        the number of those still not stored (they failed and await a resend),
        ``errorCount`` the number of failed item attempts across requests.
        """
        if not empresa_id:
            return 400, {"success": False, "message": "empresaId é obrigatório"}

        with self._lock:
            documents = [
                d
                for d in self._documents.values()
                if d.empresa_id == empresa_id
                and (vistoriador_id is None or d.vistoriador_id == vistoriador_id)
            ]
            requests_ = [
                r
                for r in self._requests
                if r.empresa_id == empresa_id
                and (vistoriador_id is None or r.vistoriador_id == vistoriador_id)
            ]
            unresolved = len(self._failed_ids.get(empresa_id, set()))

        attempted = sum(r.synced + r.failed for r in requests_)
        synced = sum(r.synced for r in requests_)
        failed = sum(r.failed for r in requests_)
        last_sync = max((d.synced_at for d in documents), default=None)
        device_info = next(
            (r.device_info for r in reversed(requests_) if r.device_info), None
        )

        stats = {
            "lastSyncTimestamp": format_timestamp(last_sync) if last_sync else None,
            "pendingCount": unresolved,
            "syncedCount": len(documents),
            "errorCount": failed,
            "syncSuccessRate": round(100.0 * synced / attempted, 1) if attempted else 0.0,
            "averageSyncTimeMs": (
                round(sum(r.duration_ms for r in requests_) / len(requests_), 1)
                if requests_
                else 0.0
            ),
            "deviceInfo": device_info,
        }
        return 200, {
            "success": True,
            "data": stats,
            "timestamp": format_timestamp(datetime.now(timezone.utc)),
        }

    # -- storage ----------------------------------------------------------

    def get_document(self, local_id: str) -> Optional[StoredInspection]:
        with self._lock:
            return self._documents.get(local_id)

    def documents(self) -> list[StoredInspection]:
        with self._lock:
            return list(self._documents.values())

    def has_photo(self, url: str) -> bool:
        with self._lock:
            return url in self._photos

    def staged_count(self) -> int:
        with self._lock:
            return len(self._staged)

    def _commit(
        self, inspection: SyncInspection, empresa_id: str, vistoriador_id: str
    ) -> tuple[StoredInspection, bool]:
        """Insert one inspection, or return the existing document.

        Returns:
            (document, created)
        """
        with self._lock:
            existing = self._documents.get(inspection.id)
            if existing is not None:
                logger.info(f"Inspection {inspection.id} already synced as {existing.cloud_id}")
                return existing, False

            if inspection.empresaId != empresa_id:
                raise InspectionRejectedError(
                    f"Inspection {inspection.id} belongs to another company"
                )

            promotions, photo_urls = self._plan_photos(inspection, empresa_id)

            if self.before_commit:
                self.before_commit(inspection.id)

            for staged_url, permanent_url in promotions:
                self._photos[permanent_url] = self._staged.pop(staged_url)

            document = StoredInspection(
                cloud_id=f"cloud_{uuid.uuid4().hex}",
                local_id=inspection.id,
                empresa_id=empresa_id,
                vistoriador_id=vistoriador_id,
                data=inspection.model_dump(exclude={"fotos", "status"}),
                photo_urls=photo_urls,
                synced_at=datetime.now(timezone.utc),
            )
            self._documents[inspection.id] = document

        logger.info(f"Inspection {inspection.id} saved as {document.cloud_id}")
        return document, True

    def _plan_photos(
        self, inspection: SyncInspection, empresa_id: str
    ) -> tuple[list[tuple[str, str]], list[str]]:
        """Work out photo promotions without touching storage.

        Must be called with the lock held.
        """
        staged_prefix = STAGING_PREFIX_TEMPLATE.format(
            empresa_id=empresa_id, inspection_id=inspection.id
        )
        promotions = []
        photo_urls = []
        for index, uri in enumerate(inspection.fotos):
            if uri.startswith(LOCAL_URI_PREFIXES):
                raise InspectionRejectedError(
                    f"Photo {index} of {inspection.id} was not uploaded"
                )
            if uri.startswith(staged_prefix):
                if uri not in self._staged:
                    raise InspectionRejectedError(
                        f"Staged photo {index} of {inspection.id} not found"
                    )
                permanent_url = PHOTO_URL_TEMPLATE.format(
                    empresa_id=empresa_id, inspection_id=inspection.id, index=index
                )
                promotions.append((uri, permanent_url))
                photo_urls.append(permanent_url)
            else:
                photo_urls.append(uri)
        return promotions, photo_urls
