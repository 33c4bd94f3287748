"""
Instance inspector.

Tells whether a database on the target server is part way through a restore
and, if so, which LSN the restore has reached.
"""

import logging
from typing import Callable, Optional

from ..exceptions import RestoreChainError
from ..models import ContinuationState, RestoreMode

logger = logging.getLogger(__name__)

STATE_QUERY = "SELECT state_desc, is_in_standby FROM sys.databases WHERE name = %s"

LAST_RESTORED_QUERY = """
SELECT TOP 1 bs.last_lsn
FROM msdb.dbo.restorehistory AS rh
JOIN msdb.dbo.backupset AS bs ON bs.backup_set_id = rh.backup_set_id
WHERE rh.destination_database_name = %s
ORDER BY rh.restore_date DESC, rh.restore_history_id DESC
"""

REDO_START_QUERY = """
SELECT redo_start_lsn
FROM sys.master_files
WHERE database_id = DB_ID(%s) AND file_id = 1
"""


class InstanceInspector:
    """Reads restore state from a SQL Server instance."""

    def __init__(self, connection_factory: Callable):
        self.connection_factory = connection_factory

    def get_database_state(self, database_name: str) -> Optional[str]:
        """Return ``state_desc`` of a database, or None if it does not exist."""
        conn = self.connection_factory()
        cursor = conn.cursor(as_dict=True)
        try:
            cursor.execute(STATE_QUERY, (database_name,))
            row = cursor.fetchone()
            return row.get("state_desc") if row else None
        finally:
            cursor.close()
            conn.close()

    def get_continuation_state(self, database_name: str) -> Optional[ContinuationState]:
        """
        Describe a restore in progress on the server.

        Args:
            database_name: Database to inspect

        Returns:
            Optional[ContinuationState]: None when the database does not
            exist or is not RESTORING / in STANDBY

        Raises:
            RestoreChainError: If the database is mid-restore but the applied
                LSN cannot be determined
        """
        conn = self.connection_factory()
        cursor = conn.cursor(as_dict=True)
        try:
            cursor.execute(STATE_QUERY, (database_name,))
            row = cursor.fetchone()
            if not row:
                logger.debug(f"Database {database_name} does not exist on the target server")
                return None

            if row.get("is_in_standby"):
                mode = RestoreMode.STANDBY
            elif row.get("state_desc") == "RESTORING":
                mode = RestoreMode.RESTORING
            else:
                logger.debug(f"Database {database_name} is {row.get('state_desc')}, not mid-restore")
                return None

            cursor.execute(LAST_RESTORED_QUERY, (database_name,))
            history = cursor.fetchone()
            last_lsn = history.get("last_lsn") if history else None

            if last_lsn is None:
                cursor.execute(REDO_START_QUERY, (database_name,))
                redo = cursor.fetchone()
                last_lsn = redo.get("redo_start_lsn") if redo else None

            if last_lsn is None:
                raise RestoreChainError(
                    "Database is mid-restore but the applied LSN is unknown",
                    database_name=database_name,
                    context={"mode": mode.value},
                )

            state = ContinuationState(
                database_name=database_name,
                already_applied_last_lsn=int(last_lsn),
                current_mode=mode,
            )
            logger.info(
                f"Database {database_name} is {mode.value}, restored up to LSN {state.already_applied_last_lsn}"
            )
            return state
        finally:
            cursor.close()
            conn.close()
