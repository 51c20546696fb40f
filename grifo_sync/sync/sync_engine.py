"""Sync orchestrator - moves queued inspections from the device to Grifo."""

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from ..config import SyncSettings
from .batcher import ItemResult, run_batches
from .grifo_client import ItemSyncResult
from .http_client import GrifoClientError, GrifoTransientError
from .models import Inspection, InspectionStatus, SyncStatusSnapshot
from .protocols import GrifoClientProtocol, InspectionQueueProtocol
from .queue import StorageError, SyncRun
from .retry import RetryConfig, with_retry
from .validation import InspectionValidationError, validate_inspection

__all__ = [
    "SyncOrchestrator",
    "SyncOptions",
    "SyncResult",
    "SyncState",
    "SyncInProgressError",
    "ProgressCallback",
    "AlertCallback",
]

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]
AlertCallback = Callable[[str, str], None]

CONNECTION_GOOD = "good"
CONNECTION_POOR = "poor"
CONNECTION_NONE = "none"

MSG_ALREADY_RUNNING = "Sincronização já em andamento. Nova solicitação ignorada."
MSG_OFFLINE = (
    "Sem conexão com a internet ou servidor indisponível. Sincronização cancelada."
)
MSG_FORCED_OFFLINE = "Tentando sincronizar mesmo com conexão instável..."


class SyncState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncInProgressError(Exception):
    """Raised when an operation needs the queue while a pass is running."""

    pass


@dataclass
class SyncOptions:
    """Per-call options; ``None`` falls back to the configured SyncSettings."""

    show_alerts: bool = True
    force_sync: bool = False
    max_retries: Optional[int] = None
    batch_size: Optional[int] = None


@dataclass
class SyncResult:
    """Outcome of one sync pass.

    ``success`` says whether the pass ran; inspections that failed to upload
    are counted in ``failed`` and do not make the pass unsuccessful.
    """

    success: bool
    synced: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    connection_quality: Optional[str] = None
    skipped: bool = False
    retried_ids: list[str] = field(default_factory=list)
    duration: float = 0.0  # seconds

    @property
    def partial_success(self) -> bool:
        return self.success and self.failed > 0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "synced": self.synced,
            "failed": self.failed,
            "errors": list(self.errors),
            "connectionQuality": self.connection_quality,
            "partialSuccess": self.partial_success,
            "skipped": self.skipped,
            "retriedIds": list(self.retried_ids),
            "durationMs": int(self.duration * 1000),
        }


class SyncOrchestrator:
    """Runs sync passes over the offline inspection queue.

    At most one pass runs at a time per orchestrator; a trigger that arrives
    while a pass is running is ignored. Uploads go through the batcher in
    sequential batches, and each inspection gets its own retry budget.
    """

    def __init__(
        self,
        queue: InspectionQueueProtocol,
        client: GrifoClientProtocol,
        settings: Optional[SyncSettings] = None,
        on_alert: Optional[AlertCallback] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.queue = queue
        self.client = client
        self.settings = settings or SyncSettings()
        self._on_alert = on_alert
        self._sleep = sleep
        self._lock = threading.Lock()
        self._state = SyncState.IDLE
        self._last_online: Optional[bool] = None
        self.last_result: Optional[SyncResult] = None

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == SyncState.RUNNING

    # -- public API -------------------------------------------------------

    def auto_sync(
        self,
        vistoriador_id: str,
        empresa_id: str,
        options: Optional[SyncOptions] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SyncResult:
        """Sync every inspection that is pending or in error.

        1. Load unsynced inspections (nothing to do -> return, no network)
        2. Skip if a sync happened within ``min_interval_seconds``
        3. Check connectivity (abort when offline unless ``force_sync``)
        4. Upload in batches, each inspection retried with backoff
        5. Record each outcome in the queue as it settles
        """
        options = options or SyncOptions()
        return self._run_pass(
            lambda report: self._sync_pending(vistoriador_id, empresa_id, options, report),
            options,
            on_progress,
        )

    def retry_failed_inspections(
        self,
        vistoriador_id: str,
        empresa_id: str,
        on_progress: Optional[ProgressCallback] = None,
        options: Optional[SyncOptions] = None,
    ) -> SyncResult:
        """Retry only the inspections currently in error."""
        options = options or SyncOptions()
        return self._run_pass(
            lambda report: self._retry_failed(vistoriador_id, empresa_id, options, report),
            options,
            on_progress,
        )

    def get_sync_status(
        self,
        include_server: bool = False,
        check_online: bool = False,
        empresa_id: Optional[str] = None,
        vistoriador_id: Optional[str] = None,
    ) -> SyncStatusSnapshot:
        """Build a status snapshot from the queue.

        By default this performs no network calls and ``is_online`` is the
        connectivity observed by the last check. ``check_online`` probes the
        server; ``include_server`` also attaches the server-side metrics.
        """
        counts = self.queue.counts()
        run_stats = self.queue.get_run_stats()

        is_online = bool(self._last_online)
        if check_online or include_server:
            is_online = self.client.is_reachable()
            self._last_online = is_online

        snapshot = SyncStatusSnapshot(
            pending_count=counts[InspectionStatus.PENDING],
            error_count=counts[InspectionStatus.ERROR],
            synced_count=counts[InspectionStatus.SYNCED],
            last_sync_at=self.queue.get_last_sync_at(),
            is_online=is_online,
            sync_success_rate=run_stats.success_rate,
            average_sync_time_ms=run_stats.average_duration_ms,
        )

        if include_server and is_online and empresa_id:
            try:
                snapshot.server = self.client.get_sync_status(empresa_id, vistoriador_id)
            except GrifoClientError as e:
                logger.warning(f"Failed to fetch server sync status: {e}")

        return snapshot

    def clear_queue(self) -> int:
        """Delete all local sync data. Refused while a pass is running."""
        if not self._lock.acquire(blocking=False):
            raise SyncInProgressError("Cannot clear the queue while a sync is running")
        try:
            return self.queue.clear_all()
        finally:
            self._lock.release()

    # -- pass control -----------------------------------------------------

    def _run_pass(
        self,
        body: Callable[[ProgressCallback], SyncResult],
        options: SyncOptions,
        on_progress: Optional[ProgressCallback],
    ) -> SyncResult:
        report = self._progress_reporter(on_progress)

        if not self._lock.acquire(blocking=False):
            logger.info("Sync trigger ignored: a pass is already running")
            report(MSG_ALREADY_RUNNING)
            return SyncResult(success=False, skipped=True, errors=[MSG_ALREADY_RUNNING])

        started = time.monotonic()
        try:
            self._state = SyncState.RUNNING
            result = body(report)
            result.duration = time.monotonic() - started
            self._state = SyncState.COMPLETED if result.success else SyncState.FAILED
        except Exception:
            self._state = SyncState.FAILED
            logger.exception("Sync pass aborted by an unexpected error")
            raise
        finally:
            self._lock.release()

        self.last_result = result
        self._report_outcome(result, report)
        self._alert(options, result)
        return result

    def _sync_pending(
        self,
        vistoriador_id: str,
        empresa_id: str,
        options: SyncOptions,
        report: ProgressCallback,
    ) -> SyncResult:
        report("Verificando vistorias pendentes...")
        inspections = self.queue.get_pending()

        if not inspections and not options.force_sync:
            report("Nenhuma vistoria pendente ou com erro para sincronizar.")
            return SyncResult(success=True)

        if not options.force_sync and self._recently_synced():
            report("Sincronização recente encontrada. Aguardando o próximo ciclo.")
            return SyncResult(success=True, skipped=True)

        pending = sum(1 for i in inspections if i.status == InspectionStatus.PENDING)
        errored = len(inspections) - pending
        if pending:
            report(f"Encontradas {pending} vistorias pendentes para sincronizar.")
        if errored:
            report(f"Encontradas {errored} vistorias com erro que serão reenviadas.")

        quality = self._check_connection(report)
        if quality == CONNECTION_NONE:
            if not options.force_sync:
                report(MSG_OFFLINE)
                return SyncResult(success=False, errors=[MSG_OFFLINE], connection_quality=quality)
            report(MSG_FORCED_OFFLINE)

        return self._upload(inspections, vistoriador_id, empresa_id, options, report, quality)

    def _retry_failed(
        self,
        vistoriador_id: str,
        empresa_id: str,
        options: SyncOptions,
        report: ProgressCallback,
    ) -> SyncResult:
        report("Verificando vistorias com erro...")
        failed = self.queue.get_by_status(InspectionStatus.ERROR)
        if not failed:
            report("Nenhuma vistoria com erro encontrada.")
            return SyncResult(success=True)

        quality = self._check_connection(report)
        if quality == CONNECTION_NONE:
            if not options.force_sync:
                report(MSG_OFFLINE)
                return SyncResult(success=False, errors=[MSG_OFFLINE], connection_quality=quality)
            report(MSG_FORCED_OFFLINE)

        report(f"Preparando para retentar {len(failed)} vistorias...")
        ready: list[Inspection] = []
        missing_errors: list[str] = []
        for inspection in failed:
            missing = self._missing_photo_files(inspection)
            if missing:
                message = (
                    f"Vistoria {inspection.id}: fotos não encontradas no dispositivo "
                    f"({', '.join(missing)})"
                )
                logger.error(message)
                report(message)
                missing_errors.append(message)
                continue
            ready.append(inspection)

        self.queue.reset_to_pending([i.id for i in ready])
        for inspection in ready:
            inspection.status = InspectionStatus.PENDING

        result = self._upload(ready, vistoriador_id, empresa_id, options, report, quality)
        result.retried_ids = [i.id for i in ready]
        result.failed += len(missing_errors)
        result.errors.extend(missing_errors)
        return result

    # -- uploading --------------------------------------------------------

    def _upload(
        self,
        inspections: list[Inspection],
        vistoriador_id: str,
        empresa_id: str,
        options: SyncOptions,
        report: ProgressCallback,
        quality: str,
    ) -> SyncResult:
        result = SyncResult(success=True, connection_quality=quality)
        if not inspections:
            return result

        batch_size = options.batch_size or self.settings.batch_size
        retry_config = RetryConfig(
            max_retries=(
                options.max_retries
                if options.max_retries is not None
                else self.settings.max_retries
            ),
            initial_delay=self.settings.initial_delay,
            max_delay=self.settings.max_delay,
            factor=self.settings.factor,
        )
        total = len(inspections)
        settled = 0
        started_at = datetime.now(timezone.utc)
        started = time.monotonic()

        report(f"Iniciando sincronização de {total} vistorias...")

        def on_batch_start(index: int, count: int, batch: list[Inspection]) -> None:
            report(f"Enviando lote {index + 1} de {count} ({len(batch)} vistorias)...")

        def on_result(item: ItemResult) -> None:
            nonlocal settled
            settled += 1
            inspection: Inspection = item.item
            if item.success:
                outcome: ItemSyncResult = item.value
                try:
                    self.queue.mark_synced(
                        inspection.id,
                        outcome.cloud_id,
                        outcome.synced_at_datetime,
                        photo_urls=outcome.photo_urls,
                    )
                except StorageError as e:
                    # The server has it; the next pass gets the same cloud id back.
                    logger.error(f"Failed to record sync of {inspection.id}: {e}")
                    result.failed += 1
                    result.errors.append(f"Vistoria {inspection.id}: erro ao salvar localmente: {e}")
                    report(f"Falha ao registrar vistoria {settled} de {total}.")
                    return
                result.synced += 1
                report(f"Vistoria {settled} de {total} sincronizada.")
            else:
                try:
                    self.queue.mark_error(inspection.id, item.error or "Erro desconhecido")
                except StorageError as e:
                    logger.error(f"Failed to record error for {inspection.id}: {e}")
                result.failed += 1
                result.errors.append(f"Vistoria {inspection.id}: {item.error}")
                report(f"Falha na vistoria {settled} de {total}: {item.error}")

        run_batches(
            inspections,
            batch_size,
            lambda inspection: self._sync_item(
                inspection, vistoriador_id, empresa_id, retry_config
            ),
            on_batch_start=on_batch_start,
            on_result=on_result,
        )

        self._record_pass(result, started_at, started)
        return result

    def _sync_item(
        self,
        inspection: Inspection,
        vistoriador_id: str,
        empresa_id: str,
        retry_config: RetryConfig,
    ) -> ItemResult:
        """Upload one inspection (photos, then data), all or nothing."""
        try:
            validate_inspection(inspection.to_payload())
        except InspectionValidationError as e:
            logger.warning(f"Inspection {inspection.id} failed validation: {e}")
            return ItemResult(item=inspection, success=False, error=str(e), exception=e)

        def attempt() -> ItemSyncResult:
            photo_urls = self._upload_photos(inspection)
            response = self.client.sync_inspections(
                [inspection.to_payload(photo_urls=photo_urls)],
                vistoriador_id,
                empresa_id,
            )
            outcome = response.result_for(inspection.id)
            if outcome is not None:
                if outcome.photo_urls is None:
                    outcome.photo_urls = photo_urls
                return outcome
            error = response.error_for(inspection.id)
            raise GrifoTransientError(
                error.error if error else "Server returned no result for the inspection"
            )

        try:
            outcome = with_retry(
                attempt,
                retry_config,
                sleep=self._sleep,
                label=f"sync {inspection.id}",
            )
        except GrifoClientError as e:
            return ItemResult(item=inspection, success=False, error=str(e), exception=e)

        logger.info(f"Inspection {inspection.id} synced as {outcome.cloud_id}")
        return ItemResult(item=inspection, success=True, value=outcome)

    def _upload_photos(self, inspection: Inspection) -> list[str]:
        """Upload local photos; remote photos keep their URL."""
        urls = []
        for index, photo in enumerate(inspection.fotos):
            if photo.is_local:
                urls.append(
                    self.client.upload_photo(inspection.id, inspection.empresa_id, index, photo)
                )
            else:
                urls.append(photo.uri)
        return urls

    # -- helpers ----------------------------------------------------------

    def _check_connection(self, report: ProgressCallback) -> str:
        """Probe the server, returning good, poor or none."""
        attempts = max(1, self.settings.connection_attempts)
        for attempt in range(1, attempts + 1):
            report(f"Verificando conexão com o servidor (tentativa {attempt}/{attempts})...")
            if self.client.is_reachable():
                self._last_online = True
                return CONNECTION_GOOD if attempt == 1 else CONNECTION_POOR
            if attempt < attempts:
                self._sleep(self.settings.connection_retry_delay)
        self._last_online = False
        return CONNECTION_NONE

    def _recently_synced(self) -> bool:
        if self.settings.min_interval_seconds <= 0:
            return False
        last_sync = self.queue.get_last_sync_at()
        if last_sync is None:
            return False
        elapsed = datetime.now(timezone.utc) - last_sync
        return elapsed < timedelta(seconds=self.settings.min_interval_seconds)

    @staticmethod
    def _missing_photo_files(inspection: Inspection) -> list[str]:
        return [
            photo.uri
            for photo in inspection.local_photos
            if photo.local_path and not os.path.exists(photo.local_path)
        ]

    def _record_pass(self, result: SyncResult, started_at: datetime, started: float) -> None:
        """Persist pass metrics; failures here never fail the pass."""
        try:
            if result.synced > 0:
                self.queue.set_last_sync_at(datetime.now(timezone.utc))
            self.queue.record_run(
                SyncRun(
                    started_at=started_at,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    synced=result.synced,
                    failed=result.failed,
                )
            )
        except StorageError as e:
            logger.warning(f"Failed to record sync metrics: {e}")

    def _report_outcome(self, result: SyncResult, report: ProgressCallback) -> None:
        if result.skipped:
            return
        if result.success:
            if result.synced > 0:
                report(
                    f"Sincronização concluída: {result.synced} vistorias sincronizadas com sucesso."
                )
            else:
                report("Sincronização concluída. Nenhuma vistoria foi sincronizada.")
            if result.failed > 0:
                report(f"Atenção: {result.failed} vistorias não puderam ser sincronizadas.")
        elif result.errors:
            report(f"Erro na sincronização: {result.errors[0]}")

        logger.info(
            f"Sync pass finished: {result.synced} synced, {result.failed} failed "
            f"in {result.duration:.1f}s"
        )

    def _alert(self, options: SyncOptions, result: SyncResult) -> None:
        """Send a user-facing alert when enabled and a channel is wired."""
        if not options.show_alerts or self._on_alert is None or result.skipped:
            return

        alerts = []
        if result.success:
            if result.synced > 0:
                alerts.append(
                    (
                        "Sincronização Concluída",
                        f"{result.synced} vistorias sincronizadas com sucesso.",
                    )
                )
            if result.failed > 0:
                alerts.append(("Atenção", f"{result.failed} vistorias pendentes"))
        else:
            alerts.append(
                (
                    "Erro na Sincronização",
                    result.errors[0] if result.errors else "Tente novamente mais tarde.",
                )
            )

        for title, message in alerts:
            try:
                self._on_alert(title, message)
            except Exception as e:
                logger.warning(f"Alert callback failed: {e}")

    @staticmethod
    def _progress_reporter(on_progress: Optional[ProgressCallback]) -> ProgressCallback:
        """Wrap a UI progress callback so it can never break a pass."""

        def report(message: str) -> None:
            logger.debug(f"progress: {message}")
            if on_progress is None:
                return
            try:
                on_progress(message)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

        return report
