"""
Log shipping monitor.

Watches a backup directory and keeps one database restoring as new log
backups arrive. Each round re-reads the catalog, asks the server how far the
restore has got, resolves a "latest" continuation, and applies the new logs.
A round is bounded by a wall-clock cutoff so a fast-changing directory
cannot keep it running forever.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from ..exceptions import HeaderReadError
from ..models import (
    BackupHeaderRecord,
    ChainResult,
    EndState,
    PlanAction,
    PlanExecutionReport,
    RecoveryMode,
    RestoreTarget,
)
from .catalog import normalize_headers
from .executor import RestoreOptions
from .header_reader import HeaderReader, find_backup_files
from .inspector import InstanceInspector
from .planner import resolve
from .runner import PlanRunner
from .validator import disk_file_checker

logger = logging.getLogger(__name__)

TEMPORARY_MARKERS = (".lock", ".tmp", ".part")


class BackupArrivalHandler(FileSystemEventHandler):
    """Flags the monitor when a new backup file shows up."""

    def __init__(self, monitor: "LogShippingMonitor"):
        super().__init__()
        self.monitor = monitor

    def on_created(self, event) -> None:
        if event.is_directory:
            return
        self._consider(event.src_path)

    def on_moved(self, event) -> None:
        if event.is_directory:
            return
        self._consider(event.dest_path)

    def _consider(self, file_path: str) -> None:
        if any(marker in file_path for marker in TEMPORARY_MARKERS):
            logger.debug(f"Skipping temporary file: {file_path}")
            return
        if not file_path.lower().endswith(tuple(self.monitor.file_patterns)):
            logger.debug(f"Skipping file with unsupported extension: {file_path}")
            return
        logger.info(f"New backup file detected: {file_path}")
        self.monitor.request_round()


class LogShippingMonitor:
    """Keeps a database restoring from a watched backup directory.

    Attributes:
        database_name: Database kept in sync
        watch_directory: Directory where backups arrive
        reader: Header reader used for new files
        inspector: Instance inspector for the restore state
        runner: Plan runner applying new steps
        end_state: State to leave the database in after each round
        restore_options: Options passed to the executor
        file_patterns: Backup file extensions
        polling_interval: Seconds between rounds without file events
        cutoff_seconds: Wall-clock limit of one round
    """

    def __init__(
        self,
        database_name: str,
        watch_directory: str,
        reader: HeaderReader,
        inspector: InstanceInspector,
        runner: PlanRunner,
        end_state: Optional[EndState] = None,
        restore_options: Optional[RestoreOptions] = None,
        file_patterns: Optional[List[str]] = None,
        polling_interval: float = 5.0,
        cutoff_seconds: float = 600.0,
        verify_files: bool = True,
    ):
        self.database_name = database_name
        self.watch_directory = watch_directory
        self.reader = reader
        self.inspector = inspector
        self.runner = runner
        self.end_state = end_state or EndState(mode=RecoveryMode.NORECOVERY)
        self.restore_options = restore_options or RestoreOptions()
        self.file_patterns = [p.lower() for p in (file_patterns or [".bak", ".trn", ".dif"])]
        self.polling_interval = polling_interval
        self.cutoff_seconds = cutoff_seconds
        self.file_checker = disk_file_checker if verify_files else None
        self.observer = None
        self.running = False
        self._stop_event = threading.Event()
        self._round_requested = threading.Event()
        self._headers: Dict[str, List[BackupHeaderRecord]] = {}
        self._current_cancel: Optional[threading.Event] = None

        Path(watch_directory).mkdir(parents=True, exist_ok=True)

    def request_round(self) -> None:
        self._round_requested.set()

    def _refresh_headers(self, deadline: float) -> bool:
        """Read headers of files not seen before. Returns False if the cutoff hit."""
        paths = find_backup_files(self.watch_directory, self.file_patterns)
        for gone in set(self._headers) - set(paths):
            del self._headers[gone]

        for path in paths:
            if path in self._headers:
                continue
            if time.monotonic() > deadline:
                logger.warning("Round cutoff reached while reading headers")
                return False
            try:
                self._headers[path] = self.reader.read(path)
            except HeaderReadError as e:
                # Possibly still being copied; try again next round
                logger.warning(f"Could not read {path}: {e}")
        return True

    def run_round(self) -> Optional[PlanExecutionReport]:
        """
        Resolve and apply whatever the directory now allows.

        Returns:
            Optional[PlanExecutionReport]: Execution report, or None when
            there was nothing to apply or no verified chain
        """
        deadline = time.monotonic() + self.cutoff_seconds
        if not self._refresh_headers(deadline):
            return None

        catalog = normalize_headers(r for records in self._headers.values() for r in records)
        state = self.inspector.get_continuation_state(self.database_name)
        if state is None and self.inspector.get_database_state(self.database_name) is not None:
            logger.info(f"Database {self.database_name} is not restoring, nothing to continue")
            return None

        result: ChainResult = resolve(
            catalog.for_database(self.database_name),
            RestoreTarget.latest(self.database_name),
            continuation=state,
            end_state=self.end_state,
            incomplete_stripes=catalog.incomplete_for(self.database_name),
            file_checker=self.file_checker,
        )
        if not result.is_verified:
            logger.warning(
                f"No restorable chain for {self.database_name}: {result.reject_reason.message}"
            )
            return None
        if not any(step.action == PlanAction.RESTORE for step in result.plan):
            logger.debug(f"Database {self.database_name} is up to date")
            return None

        round_cancel = threading.Event()
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.warning("Round cutoff reached before applying new backups")
            return None
        timer = threading.Timer(remaining, round_cancel.set)
        timer.daemon = True
        timer.start()
        self._current_cancel = round_cancel
        try:
            if self._stop_event.is_set():
                round_cancel.set()
            return self.runner.run_plan(
                self.database_name, result.plan, self.restore_options, round_cancel
            )
        finally:
            timer.cancel()
            self._current_cancel = None

    def start(self) -> None:
        """Start monitoring; blocks until stop() is called."""
        if self.running:
            logger.warning("Log shipping monitor is already running")
            return

        self.running = True
        self._stop_event.clear()

        logger.info(f"Starting file system observer for {self.watch_directory}")
        self.observer = Observer()
        self.observer.schedule(BackupArrivalHandler(self), self.watch_directory, recursive=False)
        self.observer.start()

        self.request_round()
        logger.info("Log shipping monitor running, press Ctrl+C to stop")
        try:
            while not self._stop_event.is_set():
                self._round_requested.wait(self.polling_interval)
                if self._stop_event.is_set():
                    break
                self._round_requested.clear()
                try:
                    report = self.run_round()
                    if report is not None and not report.succeeded:
                        logger.error(f"Round for {self.database_name} did not complete: {report}")
                except Exception as e:
                    logger.exception(f"Round for {self.database_name} failed: {str(e)}")
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received")
        finally:
            if self.observer and self.observer.is_alive():
                self.observer.stop()
                self.observer.join()
            self.running = False

    def stop(self) -> None:
        """Stop the monitor; a running plan stops after its current step."""
        if not self.running:
            return

        logger.info("Stopping log shipping monitor...")
        self._stop_event.set()
        self._round_requested.set()
        cancel = self._current_cancel
        if cancel is not None:
            cancel.set()
        logger.info("Log shipping monitor stopped")
