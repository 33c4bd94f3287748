"""
Restore executor.

Turns plan steps into RESTORE statements. ``render`` produces the T-SQL text
for script-only use; ``execute`` runs the same statement against SQL Server.
Both accept exactly the ``RestorePlanStep`` the plan builder emits.
"""

import logging
import ntpath
import posixpath
import time
from typing import Any, Callable, Dict, List, Optional

import pymssql
from pydantic import BaseModel, Field

from ..exceptions import RestoreExecutionError
from ..models import (
    BackupSetDescriptor,
    BackupType,
    PlanAction,
    RecoveryMode,
    RestorePlanStep,
    StepOutcome,
)

logger = logging.getLogger(__name__)


class RestoreOptions(BaseModel):
    """Options applied to every step of a plan.

    Attributes:
        replace: Overwrite an existing database when restoring the full
        data_directory: Move data files here (live execution reads the file list)
        log_directory: Move log files here (defaults to ``data_directory``)
        file_moves: Explicit logical name to physical path moves
        stats_percent: RESTORE progress interval, 0 disables it
        online_timeout: Seconds to wait for a recovered database to come online
    """

    replace: bool = False
    data_directory: Optional[str] = None
    log_directory: Optional[str] = None
    file_moves: Dict[str, str] = Field(default_factory=dict)
    stats_percent: int = 10
    online_timeout: int = 300


def quote_name(name: str) -> str:
    return "[" + name.replace("]", "]]") + "]"


def quote_string(value: str) -> str:
    return "N'" + value.replace("'", "''") + "'"


def _join(directory: str, filename: str) -> str:
    if "\\" in directory:
        return ntpath.join(directory, filename)
    return posixpath.join(directory, filename)


def _physical_filename(physical_name: str) -> str:
    return ntpath.basename(physical_name) if "\\" in physical_name else posixpath.basename(physical_name)


class RestoreExecutor:
    """Executes or renders restore plan steps.

    Attributes:
        connection_factory: Zero-argument callable returning a pymssql connection
        progress_callback: Callback for progress updates
    """

    def __init__(
        self,
        connection_factory: Optional[Callable] = None,
        progress_callback: Optional[Callable[[str, str, Dict[str, Any]], None]] = None,
    ):
        self.connection_factory = connection_factory
        self.progress_callback = progress_callback or (lambda *args: None)

    def render(self, step: RestorePlanStep, options: Optional[RestoreOptions] = None) -> str:
        """
        Render one plan step as T-SQL.

        Args:
            step: Plan step
            options: Restore options

        Returns:
            str: Statement text
        """
        options = options or RestoreOptions()
        database = quote_name(step.database_name)

        if step.action == PlanAction.LEAVE_STANDBY:
            return (
                "DECLARE @kill NVARCHAR(MAX) = N'';\n"
                "SELECT @kill += N'KILL ' + CAST(session_id AS NVARCHAR(10)) + N';'\n"
                "FROM sys.dm_exec_sessions\n"
                f"WHERE database_id = DB_ID({quote_string(step.database_name)}) AND session_id <> @@SPID;\n"
                "EXEC sys.sp_executesql @kill;"
            )

        if step.action == PlanAction.FINALIZE:
            return f"RESTORE DATABASE {database}\nWITH {self._recovery_clause(step)}"

        backup_set = step.backup_set
        verb = "RESTORE LOG" if backup_set.backup_type == BackupType.LOG else "RESTORE DATABASE"
        sources = ",\n     ".join(
            f"{ref.device_type.value} = {quote_string(ref.path)}" for ref in backup_set.files
        )

        clauses = [f"FILE = {backup_set.files[0].position}", self._recovery_clause(step)]
        if backup_set.backup_type == BackupType.FULL:
            if options.replace:
                clauses.append("REPLACE")
            for logical, physical in sorted(options.file_moves.items()):
                clauses.append(f"MOVE {quote_string(logical)} TO {quote_string(physical)}")
        if step.stop_at is not None:
            clauses.append(f"STOPAT = {quote_string(step.stop_at.isoformat(sep='T', timespec='milliseconds'))}")
        if step.stop_at_mark is not None:
            mark = step.stop_at_mark
            keyword = "STOPBEFOREMARK" if mark.stop_before else "STOPATMARK"
            clause = f"{keyword} = {quote_string(mark.name)}"
            if mark.after is not None:
                clause += f" AFTER {quote_string(mark.after.isoformat(sep='T', timespec='milliseconds'))}"
            clauses.append(clause)
        if options.stats_percent:
            clauses.append(f"STATS = {options.stats_percent}")

        return f"{verb} {database}\nFROM {sources}\nWITH " + ",\n     ".join(clauses)

    def _recovery_clause(self, step: RestorePlanStep) -> str:
        if step.recovery_mode == RecoveryMode.STANDBY:
            return f"STANDBY = {quote_string(step.standby_file)}"
        return step.recovery_mode.value

    def execute(self, step: RestorePlanStep, options: Optional[RestoreOptions] = None) -> StepOutcome:
        """
        Run one plan step against SQL Server.

        A full backup restored with a data or log directory gets MOVE clauses
        built from ``RESTORE FILELISTONLY``. A step that recovers the database
        waits for it to come online.

        Args:
            step: Plan step
            options: Restore options

        Returns:
            StepOutcome: Success, or failure with SQL Server's error text
        """
        if self.connection_factory is None:
            raise RestoreExecutionError(
                "RestoreExecutor needs a connection factory to execute steps",
                database_name=step.database_name,
            )

        options = options or RestoreOptions()
        conn = None
        cursor = None
        try:
            conn = self.connection_factory()
            cursor = conn.cursor(as_dict=True)

            if (
                step.backup_set is not None
                and step.backup_set.backup_type == BackupType.FULL
                and not options.file_moves
                and (options.data_directory or options.log_directory)
            ):
                moves = self._relocations(cursor, step.backup_set, options)
                options = options.model_copy(update={"file_moves": moves})

            sql = self.render(step, options)
            self.progress_callback(
                "processing",
                f"Executing {step.action.value} step {step.index} for {step.database_name}",
                {"step": step.index, "database": step.database_name, "recovery": step.recovery_mode.value},
            )
            logger.info(f"Executing step {step.index} for {step.database_name}:\n{sql}")
            cursor.execute(sql)
            # RESTORE reports progress as result sets; drain them so errors surface
            while cursor.nextset():
                pass

            if step.recovery_mode == RecoveryMode.RECOVERY:
                self._wait_for_db_online(cursor, step.database_name, timeout=options.online_timeout)

            return StepOutcome(success=True)

        except (pymssql.Error, TimeoutError) as e:
            logger.error(f"Step {step.index} for {step.database_name} failed: {str(e)}")
            return StepOutcome(success=False, error=str(e))
        finally:
            if cursor:
                cursor.close()
            if conn:
                conn.close()

    def _relocations(self, cursor, backup_set: BackupSetDescriptor, options: RestoreOptions) -> Dict[str, str]:
        """Build MOVE targets from the backup's file list."""
        first = backup_set.files[0]
        cursor.execute(
            f"RESTORE FILELISTONLY FROM {first.device_type.value} = %s WITH FILE = %s",
            (first.path, first.position),
        )
        file_info: List[dict] = cursor.fetchall()
        if not file_info:
            raise pymssql.OperationalError("No file information found in backup")

        moves = {}
        for file in file_info:
            logical_name = file.get("LogicalName")
            filename = _physical_filename(file.get("PhysicalName") or logical_name)
            if file.get("Type") == "L":
                directory = options.log_directory or options.data_directory
            else:
                directory = options.data_directory or options.log_directory
            moves[logical_name] = _join(directory, filename)
        return moves

    def _wait_for_db_online(
        self, cursor, db_name: str, timeout: int = 300, check_interval: int = 5
    ) -> None:
        """Wait for a database to come online after recovery.

        Raises:
            TimeoutError: If the database doesn't come online within timeout
        """
        start_time = time.time()
        while time.time() - start_time < timeout:
            cursor.execute("SELECT state_desc FROM sys.databases WHERE name = %s", (db_name,))
            result = cursor.fetchone()
            state = result.get("state_desc") if result else None
            if state == "ONLINE":
                logger.info(f"Database {db_name} is now ONLINE")
                return
            logger.info(f"Database {db_name} state: {state}")
            time.sleep(check_interval)

        raise TimeoutError(f"Timeout waiting for database {db_name} to come online")
