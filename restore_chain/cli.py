"""
Restore chain command tool.

Accepts one JSON command on STDIN and writes structured JSON lines to STDOUT,
so it composes with other tools. Commands:

- ``plan``: resolve chains and report them
- ``script``: resolve chains and render them as T-SQL without executing
- ``restore``: resolve chains and execute the verified plans

Backup sets come either from inline header ``records`` or from scanning
``paths`` / ``directory`` through SQL Server.
"""

import json
import logging
import logging.config
import os
import sys
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from .config import AppSettings, get_settings
from .core.catalog import BackupCatalog, normalize_headers
from .core.connection import connection_factory
from .core.executor import RestoreExecutor, RestoreOptions
from .core.header_reader import HeaderReader, find_backup_files, scan_backup_files
from .core.inspector import InstanceInspector
from .core.planner import render_script, resolve_batch
from .core.runner import PlanRunner
from .core.validator import disk_file_checker
from .exceptions import CatalogError, RestoreChainError
from .models import BackupHeaderRecord, ChainResult, EndState, RecoveryMode, RestoreTarget

logger = logging.getLogger(__name__)


def output_message(
    msg_type: str, status: str, message: str, data: Optional[Dict[str, Any]] = None
) -> None:
    """
    Output a structured message to STDOUT.

    Args:
        msg_type: Message type (progress, result, error)
        status: Status (processing, success, failed)
        message: Human-readable message
        data: Optional data payload
    """
    output = {
        "type": msg_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "status": status,
        "message": message,
    }

    if data:
        output["data"] = data

    # Write to STDOUT as a single line
    sys.stdout.write(json.dumps(output, default=str) + "\n")
    sys.stdout.flush()


def _progress(status: str, message: str, data: Dict[str, Any]) -> None:
    output_message("progress", status, message, data)


def summarize(result: ChainResult) -> Dict[str, Any]:
    """JSON-friendly view of a chain result."""
    summary: Dict[str, Any] = {
        "database_name": result.database_name,
        "is_verified": result.is_verified,
        "target_lsn": result.target_lsn,
        "warnings": list(result.warnings),
        "steps": [
            {
                "index": step.index,
                "action": step.action.value,
                "backup_set_id": step.backup_set.backup_set_id if step.backup_set else None,
                "backup_type": step.backup_set.backup_type.value if step.backup_set else None,
                "files": [f.path for f in step.backup_set.files] if step.backup_set else [],
                "recovery_mode": step.recovery_mode.value,
                "stop_at": step.stop_at.isoformat() if step.stop_at else None,
                "stop_at_mark": step.stop_at_mark.name if step.stop_at_mark else None,
            }
            for step in result.plan
        ],
    }
    if result.reject_reason is not None:
        summary["reject_reason"] = result.reject_reason.model_dump(mode="json")
    return summary


def load_catalog(command: Dict[str, Any], settings: AppSettings) -> Tuple[BackupCatalog, Dict[str, str]]:
    """
    Build the catalog for a command.

    Inline ``records`` are validated directly; otherwise ``paths`` (or the
    files found in ``directory``) are read through SQL Server.

    Returns:
        Tuple[BackupCatalog, Dict[str, str]]: Catalog and per-file read errors

    Raises:
        CatalogError: If inline records are invalid
    """
    if "records" in command:
        try:
            records = [BackupHeaderRecord.model_validate(r) for r in command["records"]]
        except ValidationError as e:
            raise CatalogError(f"Invalid header record: {e}")
        return normalize_headers(records), {}

    paths: List[str] = command.get("paths") or find_backup_files(
        command.get("directory") or settings.scan.backup_dir, settings.scan.file_patterns
    )
    output_message("progress", "processing", f"Reading headers of {len(paths)} file(s)")

    reader = HeaderReader(
        connection_factory(settings.mssql),
        read_marks=settings.scan.read_marks,
        check_version=settings.scan.check_version,
    )
    scan = scan_backup_files(paths, reader, settings.scan.max_workers, progress_callback=_progress)
    errors = {path: str(error) for path, error in scan.errors.items()}
    return normalize_headers(scan.records), errors


def _end_state(options: Dict[str, Any], settings: AppSettings) -> Callable[[str], EndState]:
    """Per-database end state; each STANDBY database gets its own undo file."""
    mode = (options.get("end_state") or settings.restore.end_state).upper()
    standby_file = options.get("standby_file")
    # Fail on a bad mode before any header is read
    EndState.parse(mode, standby_file or ("undo.bak" if mode == RecoveryMode.STANDBY.value else None))

    def _for(database_name: str) -> EndState:
        if mode == RecoveryMode.STANDBY.value and not standby_file:
            return EndState.parse(
                mode, os.path.join(settings.restore.standby_directory, f"{database_name}_undo.bak")
            )
        return EndState.parse(mode, standby_file)

    return _for


def _restore_options(options: Dict[str, Any], settings: AppSettings) -> RestoreOptions:
    return RestoreOptions(
        replace=options.get("replace", settings.restore.replace),
        data_directory=options.get("data_directory", settings.restore.data_directory),
        log_directory=options.get("log_directory", settings.restore.log_directory),
        file_moves=options.get("file_moves", {}),
        stats_percent=settings.restore.stats_percent,
        online_timeout=settings.restore.online_timeout,
    )


def process_command(command: Dict[str, Any], settings: Optional[AppSettings] = None) -> int:
    """
    Process a plan, script or restore command.

    Args:
        command: Command dictionary from STDIN
        settings: Application settings (loaded from the environment if omitted)

    Returns:
        int: Exit code (0 when every database got a verified plan and,
        for restore, every plan completed)
    """
    settings = settings or get_settings()
    command_type = command.get("command", "").lower()
    if command_type not in ("plan", "script", "restore"):
        output_message(
            "error", "failed", f"Unknown command: {command_type}", {"code": "UNKNOWN_COMMAND"}
        )
        return 1

    options = command.get("options", {})
    try:
        target = RestoreTarget.from_options(command.get("target", {}))
        end_state = _end_state(options, settings)
        catalog, scan_errors = load_catalog(command, settings)
        for path, error in scan_errors.items():
            output_message("progress", "failed", f"Skipped unreadable file {path}", {"error": error})

        continuations = None
        if command_type == "restore" and options.get("continue", False):
            continuations = InstanceInspector(connection_factory(settings.mssql)).get_continuation_state

        verify = options.get("verify_files", settings.scan.verify_files)
        batch = resolve_batch(
            catalog,
            target,
            continuations=continuations,
            end_state=end_state,
            file_checker=disk_file_checker if verify and command_type == "restore" else None,
            max_workers=settings.restore.max_parallel_databases,
        )

        for name, result in sorted(batch.results.items()):
            status = "success" if result.is_verified else "failed"
            message = "Verified restore chain" if result.is_verified else result.reject_reason.message
            output_message("progress", status, f"{name}: {message}", summarize(result))
        for name, error in sorted(batch.errors.items()):
            output_message("error", "failed", f"{name}: {error}", {"code": "RESOLUTION_ERROR"})

        restore_options = _restore_options(options, settings)
        data: Dict[str, Any] = {
            "verified": sorted(batch.verified),
            "unverified": sorted(batch.unverified),
            "errors": sorted(batch.errors),
        }
        exit_code = 0 if not batch.unverified and not batch.errors else 1

        if command_type == "script":
            executor = RestoreExecutor()
            data["script"] = "\n".join(
                render_script(result.plan, executor, restore_options)
                for _, result in sorted(batch.verified.items())
            )

        if command_type == "restore" and batch.verified:
            executor = RestoreExecutor(connection_factory(settings.mssql), progress_callback=_progress)
            runner = PlanRunner(
                executor,
                max_workers=settings.restore.max_parallel_databases,
                progress_callback=_progress,
            )
            reports = runner.run_all(
                {name: result.plan for name, result in batch.verified.items()},
                restore_options,
                threading.Event(),
            )
            data["executions"] = {name: report.model_dump(mode="json") for name, report in reports.items()}
            if not all(report.succeeded for report in reports.values()):
                exit_code = 1

        output_message(
            "result",
            "success" if exit_code == 0 else "failed",
            f"{command_type} finished for {len(batch.results) + len(batch.errors)} database(s)",
            data,
        )
        return exit_code

    except (RestoreChainError, ConnectionError, ValueError) as e:
        logger.exception(f"Error processing {command_type} command")
        output_message(
            "error",
            "failed",
            str(e),
            {"code": type(e).__name__},
        )
        return 1


def main() -> int:
    """
    Main entry point for the command tool.

    Reads a command from STDIN, processes it, and outputs result to STDOUT.

    Returns:
        int: Exit code
    """
    settings = get_settings()
    os.makedirs(settings.logging.directory, exist_ok=True)
    # Log to file only, stdout carries the JSON protocol
    logging.config.dictConfig(settings.get_logging_config(console=False, filename="restore_chain_cli.log"))

    try:
        command_str = sys.stdin.read().strip()
        if not command_str:
            output_message(
                "error",
                "failed",
                "Empty command received on STDIN",
                {"code": "EMPTY_COMMAND"},
            )
            return 1

        try:
            command = json.loads(command_str)
        except json.JSONDecodeError:
            output_message(
                "error", "failed", "Invalid JSON command", {"code": "INVALID_JSON"}
            )
            return 1

        return process_command(command, settings)

    except KeyboardInterrupt:
        output_message(
            "error", "failed", "Operation interrupted", {"code": "INTERRUPTED"}
        )
        return 130
    except Exception as e:
        logger.exception("Unhandled exception")
        output_message(
            "error", "failed", f"Unhandled error: {str(e)}", {"code": "UNHANDLED_ERROR"}
        )
        return 1


if __name__ == "__main__":
    sys.exit(main())
