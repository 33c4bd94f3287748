"""
Main entry point for the restore chain resolver.

By default runs the command tool (one JSON command on STDIN). Set
``TOOL_MODE=monitor`` to run the log shipping monitor instead.
"""

import logging.config
import os
import signal
import sys
from typing import Optional

from . import __version__
from .cli import main as cli_main
from .config import get_settings
from .core.connection import connection_factory
from .core.executor import RestoreExecutor, RestoreOptions
from .core.header_reader import HeaderReader
from .core.inspector import InstanceInspector
from .core.monitor import LogShippingMonitor
from .core.runner import PlanRunner
from .models import EndState

# Global variable to hold the monitor instance for graceful shutdown
monitor: Optional[LogShippingMonitor] = None


def signal_handler(sig, frame):
    """Handle termination signals for graceful shutdown."""
    logger = logging.getLogger(__name__)
    logger.info(f"Received signal {sig}, shutting down gracefully...")
    if monitor:
        monitor.stop()


def monitor_end_state(settings) -> EndState:
    """End state applied after each monitor round.

    A recovered database accepts no further log restores, so RECOVERY is
    downgraded to NORECOVERY (with a warning). STANDBY writes its undo file
    to ``<standby_directory>/<database>_undo.bak``.
    """
    mode = settings.restore.end_state
    if mode == "RECOVERY":
        logging.getLogger(__name__).warning(
            "RESTORE_END_STATE=RECOVERY would stop further log restores, keeping the database in NORECOVERY"
        )
        mode = "NORECOVERY"
    standby_file = None
    if mode == "STANDBY":
        standby_file = os.path.join(settings.restore.standby_directory, f"{settings.monitor.database}_undo.bak")
    return EndState.parse(mode, standby_file)


def monitor_main() -> int:
    """Run the log shipping monitor for the configured database."""
    global monitor

    settings = get_settings()
    os.makedirs(settings.logging.directory, exist_ok=True)
    logging.config.dictConfig(settings.get_logging_config(filename="restore_chain_monitor.log"))
    logger = logging.getLogger(__name__)

    if not settings.monitor.database:
        logger.error("MONITOR_DATABASE must name the database to keep restoring")
        return 1

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info("-" * 50)
    logger.info("Log Shipping Monitor Starting")
    logger.info("-" * 50)
    logger.info(f"Version: {__version__}")
    logger.info(f"Database: {settings.monitor.database}")
    logger.info(f"Watch directory: {settings.scan.backup_dir}")
    logger.info(f"MSSQL server: {settings.mssql.server}:{settings.mssql.port}")

    connect = connection_factory(settings.mssql)
    end_state = monitor_end_state(settings)

    try:
        monitor = LogShippingMonitor(
            database_name=settings.monitor.database,
            watch_directory=settings.scan.backup_dir,
            reader=HeaderReader(connect, settings.scan.read_marks, settings.scan.check_version),
            inspector=InstanceInspector(connect),
            runner=PlanRunner(RestoreExecutor(connect), max_workers=1),
            end_state=end_state,
            restore_options=RestoreOptions(
                replace=settings.restore.replace,
                data_directory=settings.restore.data_directory,
                log_directory=settings.restore.log_directory,
                stats_percent=settings.restore.stats_percent,
                online_timeout=settings.restore.online_timeout,
            ),
            file_patterns=settings.scan.file_patterns,
            polling_interval=settings.monitor.polling_interval,
            cutoff_seconds=settings.monitor.cutoff_seconds,
            verify_files=settings.scan.verify_files,
        )
        monitor.start()
        return 0
    except Exception as e:
        logger.exception(f"Unhandled exception: {str(e)}")
        return 1


def main() -> int:
    """
    Main entry point when running ``python -m restore_chain``.

    Runs the command tool unless TOOL_MODE=monitor.
    """
    mode = os.environ.get("TOOL_MODE", "cli").lower()
    if mode == "monitor":
        return monitor_main()
    return cli_main()


if __name__ == "__main__":
    sys.exit(main())
