"""
Continuation adjuster.

Extends a database that is already mid-restore (RESTORING or STANDBY) on the
target server. A continuation never re-applies a base, so every full and
differential is discarded and the log walk starts from the last LSN already
applied.
"""

import logging
from dataclasses import dataclass
from typing import Sequence, Tuple

from ..models import BackupSetDescriptor, BackupType, ContinuationState, RestoreMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContinuationAdjustment:
    """Candidates left for a continuation.

    Attributes:
        start_lsn: LSN already applied on the server
        logs: Logs ending after ``start_lsn``
        applied_logs: Logs already covered by the restore so far
        requires_standby_exit: The database must leave read-only standby first
    """

    start_lsn: int
    logs: Tuple[BackupSetDescriptor, ...]
    applied_logs: Tuple[BackupSetDescriptor, ...] = ()
    requires_standby_exit: bool = False


def adjust_for_continuation(
    backup_sets: Sequence[BackupSetDescriptor], state: ContinuationState
) -> ContinuationAdjustment:
    """
    Trim already-applied ranges from the candidates of a continuation.

    Args:
        backup_sets: Normalized backup sets of the database
        state: Restore state reported by the instance inspector

    Returns:
        ContinuationAdjustment: Remaining logs and the LSN to start from
    """
    applied = state.already_applied_last_lsn
    logs = [s for s in backup_sets if s.backup_type == BackupType.LOG]
    dropped_bases = len(backup_sets) - len(logs)

    remaining = tuple(s for s in logs if s.last_lsn > applied)
    already = tuple(s for s in logs if s.last_lsn <= applied)

    logger.info(
        f"Continuing restore of {state.database_name} from LSN {applied} "
        f"({state.current_mode.value}): {len(remaining)} candidate log(s), "
        f"{len(already)} already applied, {dropped_bases} base backup(s) ignored"
    )
    return ContinuationAdjustment(
        start_lsn=applied,
        logs=remaining,
        applied_logs=already,
        requires_standby_exit=state.current_mode == RestoreMode.STANDBY,
    )
