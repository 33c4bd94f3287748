"""
Base selector.

Chooses the full backup a chain is anchored on and, optionally, the newest
differential taken against that full.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from ..models import (
    BackupSetDescriptor,
    BackupType,
    RejectCode,
    RejectReason,
    RestoreTarget,
    TargetKind,
)
from .catalog import find_marks

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BaseSelection:
    full: Optional[BackupSetDescriptor] = None
    differential: Optional[BackupSetDescriptor] = None
    reject_reason: Optional[RejectReason] = None

    @property
    def last_lsn(self) -> Optional[int]:
        base = self.differential or self.full
        return base.last_lsn if base else None


def newest(candidates: Iterable[BackupSetDescriptor]) -> Optional[BackupSetDescriptor]:
    """Greatest finish time, then greatest last LSN, then smallest backup set id."""
    ordered = sorted(candidates, key=lambda s: s.backup_set_id)
    if not ordered:
        return None
    return max(ordered, key=lambda s: (s.finish_time, s.last_lsn))


def time_bound(backup_sets: Sequence[BackupSetDescriptor], target: RestoreTarget) -> Optional[datetime]:
    """Latest finish time a base may have for ``target``, or None when unrestricted.

    A named mark is unrestricted unless the mark can be located in the
    catalog, in which case the base must finish no later than the mark.
    """
    if target.kind == TargetKind.POINT_IN_TIME:
        return target.point_in_time
    if target.kind == TargetKind.NAMED_MARK and not target.ignore_logs:
        logs = [s for s in backup_sets if s.backup_type == BackupType.LOG]
        occurrences = find_marks(logs, target.mark.name, target.mark.after)
        if occurrences:
            return occurrences[0][1].mark_time
    return None


def select_base(backup_sets: Sequence[BackupSetDescriptor], target: RestoreTarget) -> BaseSelection:
    """
    Pick the anchor full backup and the newest compatible differential.

    Args:
        backup_sets: Normalized backup sets of a single database
        target: Recovery goal

    Returns:
        BaseSelection: The chosen base, or a NoUsableFull / TargetUnreachable rejection
    """
    fulls = [s for s in backup_sets if s.backup_type == BackupType.FULL]
    if not fulls:
        return BaseSelection(
            reject_reason=RejectReason(
                code=RejectCode.NO_USABLE_FULL,
                message="No full backup found in the catalog",
            )
        )

    bound = time_bound(backup_sets, target)
    eligible: List[BackupSetDescriptor] = [
        s for s in fulls if bound is None or s.finish_time <= bound
    ]
    if not eligible:
        earliest = min(s.finish_time for s in fulls)
        return BaseSelection(
            reject_reason=RejectReason(
                code=RejectCode.TARGET_UNREACHABLE,
                message=(
                    f"Earliest full backup finished at {earliest.isoformat()}, "
                    f"after the requested point {bound.isoformat()}"
                ),
            )
        )

    full = newest(eligible)
    logger.debug(f"Selected base full {full.label}")

    differential = None
    if not target.ignore_differentials:
        differential = newest(
            s
            for s in backup_sets
            if s.backup_type == BackupType.DIFFERENTIAL
            and s.database_backup_lsn == full.checkpoint_lsn
            and s.last_lsn >= full.last_lsn
            and (bound is None or s.finish_time <= bound)
        )
        if differential:
            logger.debug(f"Selected differential {differential.label}")

    return BaseSelection(full=full, differential=differential)
