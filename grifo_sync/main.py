"""Grifo Sync - Main entry point."""

import argparse
import json
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from . import __version__
from .config import Config, setup_logging
from .notifications import send_notification
from .sync import (
    GrifoClient,
    GrifoClientError,
    InspectionQueue,
    SyncInProgressError,
    SyncOptions,
    SyncOrchestrator,
    SyncResult,
    SyncStatusSnapshot,
)

logger = logging.getLogger(__name__)


class SyncCoordinator:
    """Owns the sync scheduler and the triggers that start sync passes.

    Passes themselves are run by the orchestrator, which ignores a trigger
    while another pass is in flight.
    """

    def __init__(
        self,
        config: Config,
        client: GrifoClient,
        queue: InspectionQueue,
        orchestrator: SyncOrchestrator,
        on_progress: Optional[Callable[[str], None]] = None,
        config_path: Optional[Path] = None,
    ) -> None:
        self.config = config
        self.config_path = config_path
        self.client = client
        self.queue = queue
        self.orchestrator = orchestrator
        self.on_progress = on_progress

        self.scheduler = BackgroundScheduler()
        self.paused_by_network = False
        self.last_result: Optional[SyncResult] = None

    def start(self) -> None:
        """Run the initial sync and start the periodic scheduler."""
        self._do_sync()

        self.scheduler.add_job(
            self._do_sync,
            trigger=IntervalTrigger(seconds=self.config.sync.interval_seconds),
            id="sync_job",
            replace_existing=True,
        )
        # Pick up server-side sync settings every 6 hours
        self.scheduler.add_job(
            self.fetch_server_config,
            trigger=IntervalTrigger(hours=6),
            id="config_refresh_job",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(
            f"Sync loop started (interval: {self.config.sync.interval_seconds}s)"
        )

    def stop(self) -> None:
        """Shut down the scheduler if running."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def reschedule(self, interval_seconds: int) -> None:
        """Change the sync interval on the fly."""
        if self.scheduler.running:
            self.scheduler.reschedule_job(
                "sync_job",
                trigger=IntervalTrigger(seconds=interval_seconds),
            )

    def trigger_sync(
        self, options: Optional[SyncOptions] = None, job_id: str = "immediate_sync"
    ) -> bool:
        """Schedule a one-off sync (e.g. user tap or network change).

        Returns:
            True if the job was scheduled
        """
        if not self.scheduler.running:
            return False
        self.scheduler.add_job(
            self._do_sync, args=[options], id=job_id, replace_existing=True
        )
        return True

    def on_network_change(self, is_online: bool) -> None:
        """Handle network connectivity change."""
        if is_online:
            logger.info("Network back online, triggering sync to flush queue")
            self.paused_by_network = False
            self.trigger_sync(job_id="network_sync")
        else:
            logger.info("Network offline, pausing scheduled syncs")
            self.paused_by_network = True

    def sync_now(
        self,
        options: Optional[SyncOptions] = None,
        on_progress: Optional[Callable[[str], None]] = None,
    ) -> SyncResult:
        """Run a sync pass in the calling thread."""
        return self.orchestrator.auto_sync(
            self.config.vistoriador_id,
            self.config.empresa_id,
            options or self._default_options(),
            on_progress=on_progress or self.on_progress,
        )

    def retry_failed(
        self,
        options: Optional[SyncOptions] = None,
        on_progress: Optional[Callable[[str], None]] = None,
    ) -> SyncResult:
        """Retry the inspections currently in error."""
        return self.orchestrator.retry_failed_inspections(
            self.config.vistoriador_id,
            self.config.empresa_id,
            on_progress=on_progress or self.on_progress,
            options=options or self._default_options(),
        )

    def get_status(
        self, include_server: bool = False, check_online: bool = False
    ) -> SyncStatusSnapshot:
        return self.orchestrator.get_sync_status(
            include_server=include_server,
            check_online=check_online,
            empresa_id=self.config.empresa_id,
            vistoriador_id=self.config.vistoriador_id,
        )

    def clear_queue(self) -> int:
        """Delete all local sync data (explicit user action)."""
        return self.orchestrator.clear_queue()

    def fetch_server_config(self) -> None:
        """Fetch sync settings from the server and apply them."""
        try:
            server_config = self.client.get_config()
        except GrifoClientError as e:
            logger.warning(f"Failed to fetch server config: {e}")
            return

        old_interval = self.config.sync.interval_seconds
        self.config.update_from_server(server_config)
        self.orchestrator.settings = self.config.sync
        if self.config.sync.interval_seconds != old_interval:
            logger.info(
                f"Sync interval changed: {old_interval}s -> "
                f"{self.config.sync.interval_seconds}s"
            )
            self.reschedule(self.config.sync.interval_seconds)
        try:
            self.config.save(self.config_path)
        except OSError as e:
            logger.warning(f"Failed to save config: {e}")

    # -- internal ---------------------------------------------------------

    def _default_options(self) -> SyncOptions:
        return SyncOptions(show_alerts=self.config.show_alerts)

    def _do_sync(self, options: Optional[SyncOptions] = None) -> Optional[SyncResult]:
        """Perform a scheduled sync cycle."""
        if self.paused_by_network and not (options and options.force_sync):
            logger.debug("Offline, skipping scheduled sync")
            return None

        try:
            result = self.sync_now(options)
        except Exception as e:
            logger.exception(f"Sync error: {e}")
            return None

        self.last_result = result
        if result.synced > 0 or result.failed > 0:
            logger.info(
                f"Sync complete: {result.synced} synced, {result.failed} failed"
            )
        return result


class GrifoSyncApp:
    """Main application object.

    Wires the queue, client, orchestrator and scheduler together and
    handles lifecycle (start / shutdown).
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        queue: Optional[InspectionQueue] = None,
        client: Optional[GrifoClient] = None,
        on_progress: Optional[Callable[[str], None]] = None,
        config_path: Optional[Path] = None,
    ):
        self.config = config or Config.load(config_path)

        logger.info(f"Grifo Sync {__version__} starting...")
        logger.info(f"Using API URL: {self.config.api_url}")

        self.client = client or GrifoClient(
            api_url=self.config.api_url,
            token=self.config.token,
            empresa_id=self.config.empresa_id,
            compress=self.config.sync.compress,
            timeout=self.config.sync.request_timeout,
        )
        self.queue = queue or InspectionQueue(max_size=self.config.sync.max_queue_size)
        self.orchestrator = SyncOrchestrator(
            queue=self.queue,
            client=self.client,
            settings=self.config.sync,
            on_alert=send_notification if self.config.show_alerts else None,
        )
        self.coordinator = SyncCoordinator(
            config=self.config,
            client=self.client,
            queue=self.queue,
            orchestrator=self.orchestrator,
            on_progress=on_progress,
            config_path=config_path,
        )

        self._shutdown_done = False
        self._shutdown_event = threading.Event()

    def run(self) -> None:
        """Run the scheduler loop until a shutdown signal arrives."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        self.coordinator.fetch_server_config()
        self.coordinator.start()

        while not self._shutdown_event.wait(1.0):
            pass

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _signal_handler(self, signum, frame) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}")
        self._shutdown_event.set()

    def _shutdown(self) -> None:
        """Shutdown the application. Safe to call multiple times."""
        if self._shutdown_done:
            return
        self._shutdown_done = True
        logger.info("Shutting down...")

        self.coordinator.stop()
        self.client.close()
        self.queue.close()

        logger.info("Shutdown complete")

    def __enter__(self) -> "GrifoSyncApp":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self._shutdown()


class SingleInstanceLock:
    """File-based lock keeping one sync process per queue database."""

    def __init__(self, path: Optional[Path] = None):
        self._file = None
        self._path = str(path or Config.get_data_dir() / ".grifo-sync.lock")

    def acquire(self) -> bool:
        """Try to acquire the lock. Returns True on success."""
        os.makedirs(os.path.dirname(self._path), exist_ok=True)
        self._file = open(self._path, "a+")  # noqa: SIM115
        try:
            if sys.platform == "win32":
                import msvcrt
                msvcrt.locking(self._file.fileno(), msvcrt.LK_NBLCK, 1)
            else:
                import fcntl
                fcntl.flock(self._file, fcntl.LOCK_EX | fcntl.LOCK_NB)
            self._file.seek(0)
            self._file.truncate(0)
            self._file.write(str(os.getpid()))
            self._file.flush()
            return True
        except OSError:
            self._file.close()
            self._file = None
            return False

    def release(self) -> None:
        """Release the lock and remove the lock file."""
        if self._file is None:
            return
        try:
            if sys.platform == "win32":
                import msvcrt
                msvcrt.locking(self._file.fileno(), msvcrt.LK_UNLCK, 1)
            else:
                import fcntl
                fcntl.flock(self._file, fcntl.LOCK_UN)
            self._file.close()
            os.unlink(self._path)
        except OSError as e:
            logger.debug(f"Failed to release instance lock: {e}")
        self._file = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="grifo-sync", description="Sincronização offline de vistorias Grifo"
    )
    parser.add_argument("--config", type=Path, help="Caminho do arquivo de configuração")
    parser.add_argument("--debug", action="store_true", help="Ativa logs de depuração")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("run", help="Sincroniza periodicamente até ser interrompido")

    sync_parser = commands.add_parser("sync", help="Sincroniza as vistorias pendentes")
    sync_parser.add_argument("--force", action="store_true", help="Ignora a verificação de conexão")
    sync_parser.add_argument("--batch-size", type=int, help="Vistorias por lote")
    sync_parser.add_argument("--max-retries", type=int, help="Tentativas extras por vistoria")
    sync_parser.add_argument("--no-alerts", action="store_true", help="Não exibe notificações")

    retry_parser = commands.add_parser("retry", help="Reenvia as vistorias com erro")
    retry_parser.add_argument("--force", action="store_true", help="Ignora a verificação de conexão")
    retry_parser.add_argument("--no-alerts", action="store_true", help="Não exibe notificações")

    status_parser = commands.add_parser("status", help="Mostra o estado da fila local")
    status_parser.add_argument("--check-online", action="store_true", help="Testa a conexão com o servidor")
    status_parser.add_argument("--server", action="store_true", help="Inclui métricas do servidor")

    clear_parser = commands.add_parser("clear", help="Apaga todos os dados de sincronização")
    clear_parser.add_argument("--yes", action="store_true", help="Confirma a remoção")
    return parser


def _print_json(data: dict) -> None:
    sys.stdout.write(json.dumps(data, ensure_ascii=False, indent=2) + "\n")


def _print_progress(message: str) -> None:
    sys.stderr.write(message + "\n")


def _run_command(app: GrifoSyncApp, args: argparse.Namespace) -> int:
    coordinator = app.coordinator

    if args.command == "run":
        app.run()
        return 0

    if args.command == "sync":
        result = coordinator.sync_now(
            SyncOptions(
                show_alerts=app.config.show_alerts and not args.no_alerts,
                force_sync=args.force,
                max_retries=args.max_retries,
                batch_size=args.batch_size,
            )
        )
        _print_json(result.to_dict())
        return 0 if result.success else 1

    if args.command == "retry":
        result = coordinator.retry_failed(
            SyncOptions(
                show_alerts=app.config.show_alerts and not args.no_alerts,
                force_sync=args.force,
            )
        )
        _print_json(result.to_dict())
        return 0 if result.success else 1

    if args.command == "status":
        snapshot = coordinator.get_status(
            include_server=args.server, check_online=args.check_online
        )
        _print_json(snapshot.to_dict())
        return 0

    if args.command == "clear":
        if not args.yes:
            _print_progress("Use --yes para confirmar a remoção de todos os dados locais.")
            return 2
        try:
            count = coordinator.clear_queue()
        except SyncInProgressError as e:
            _print_progress(str(e))
            return 1
        _print_json({"cleared": count})
        return 0

    return 2


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = _build_parser().parse_args(argv)
    config = Config.load(args.config)
    setup_logging(args.debug or config.debug_mode)

    if args.command in ("run", "sync", "retry") and not (
        config.empresa_id and config.vistoriador_id
    ):
        _print_progress(
            "Configure empresa_id e vistoriador_id antes de sincronizar "
            f"({args.config or Config.get_config_file()})."
        )
        return 2

    instance_lock = SingleInstanceLock()
    if args.command != "status" and not instance_lock.acquire():
        _print_progress("Grifo Sync já está em execução.")
        return 1

    try:
        with GrifoSyncApp(config, on_progress=_print_progress, config_path=args.config) as app:
            return _run_command(app, args)
    finally:
        instance_lock.release()


if __name__ == "__main__":
    sys.exit(main())
