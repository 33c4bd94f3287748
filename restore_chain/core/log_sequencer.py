"""
Log sequencer.

Starting from the LSN where the base (or an in-progress restore) ends, walks
the log backups in LSN order and selects a gap-free run that reaches the
requested target. A chain that cannot reach its target is rejected with the
LSN where it breaks; it is never silently shortened.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple

from ..models import (
    BackupSetDescriptor,
    BackupType,
    LogMark,
    RejectCode,
    RejectReason,
    RestoreTarget,
    TargetKind,
)
from .catalog import find_marks

logger = logging.getLogger(__name__)

LogPredicate = Callable[[BackupSetDescriptor], bool]


@dataclass(frozen=True)
class LogSequence:
    """Logs selected by the sequencer.

    Attributes:
        logs: Selected log backups in apply order
        target_lsn: LSN the chain has to reach for the target to be met
        stop_at: Point in time the final log stops at, when that log contains it
        stop_mark: Mark the final step stops at, for named-mark targets
        reject_reason: Why the target cannot be reached, if it cannot
        warnings: Non-fatal findings, such as a mark name used more than once
    """

    logs: Tuple[BackupSetDescriptor, ...] = ()
    target_lsn: Optional[int] = None
    stop_at: Optional[datetime] = None
    stop_mark: Optional[LogMark] = None
    reject_reason: Optional[RejectReason] = None
    warnings: Tuple[str, ...] = ()


def order_logs(backup_sets: Sequence[BackupSetDescriptor]) -> List[BackupSetDescriptor]:
    return sorted(
        (s for s in backup_sets if s.backup_type == BackupType.LOG),
        key=lambda s: (s.first_lsn, s.last_lsn, s.backup_set_id),
    )


def sequence_logs(
    start_lsn: int,
    backup_sets: Sequence[BackupSetDescriptor],
    target: RestoreTarget,
    base_finish_time: Optional[datetime] = None,
) -> LogSequence:
    """
    Select an ordered, gap-free run of log backups reaching ``target``.

    A log is accepted when it starts no later than ``current + 1`` and ends
    after ``current``. Logs ending at or before ``current`` are redundant and
    skipped; a log starting after ``current + 1`` is a gap.

    For a point in time ``t`` the walk stops at the first accepted log
    finishing at or after ``t``; a contiguous log that only starts after
    ``t`` is left out and the chain ends with the log before it.

    Args:
        start_lsn: LSN the chain has reached before any log is applied
        backup_sets: Candidate backup sets; only logs are considered
        target: Recovery goal
        base_finish_time: Finish time of the base, if there is one

    Returns:
        LogSequence: Selected logs, or a rejection naming where the chain breaks
    """
    if target.ignore_logs:
        logger.debug("Logs ignored, chain ends with its base")
        return LogSequence(target_lsn=start_lsn)

    candidates = order_logs(backup_sets)

    if target.kind == TargetKind.POINT_IN_TIME:
        point = target.point_in_time
        if base_finish_time is not None and base_finish_time >= point:
            return LogSequence(target_lsn=start_lsn)
        result = _walk(
            start_lsn,
            candidates,
            reached=lambda log: log.finish_time >= point,
            beyond=lambda log: log.start_time > point,
            missing=f"no log backup reaches {point.isoformat()}",
        )
        if result.reject_reason is None and result.logs and result.logs[-1].finish_time >= point:
            return LogSequence(logs=result.logs, target_lsn=result.target_lsn, stop_at=point)
        return result

    if target.kind == TargetKind.NAMED_MARK:
        return _sequence_to_mark(start_lsn, candidates, target)

    return _walk(start_lsn, candidates)


def _gap(current_lsn: int, reason: str, logs: List[BackupSetDescriptor]) -> LogSequence:
    logger.warning(f"Log chain broken at LSN {current_lsn}: {reason}")
    return LogSequence(
        logs=tuple(logs),
        reject_reason=RejectReason(
            code=RejectCode.CHAIN_GAP,
            message=f"Log chain broken at LSN {current_lsn}: {reason}",
            at_lsn=current_lsn,
        ),
    )


def _walk(
    start_lsn: int,
    candidates: List[BackupSetDescriptor],
    reached: Optional[LogPredicate] = None,
    beyond: Optional[LogPredicate] = None,
    missing: str = "",
) -> LogSequence:
    """Accept logs in order until the target is met.

    ``reached`` tells whether an accepted log satisfies the target;
    ``beyond`` tells whether a contiguous log lies entirely past it. With
    neither, every reachable log is taken and any gap is fatal.
    """
    current = start_lsn
    accepted: List[BackupSetDescriptor] = []

    for log in candidates:
        if log.last_lsn <= current:
            logger.debug(f"Skipping redundant log {log.label}")
            continue
        if log.first_lsn > current + 1:
            return _gap(current, f"next log {log.backup_set_id} starts at LSN {log.first_lsn}", accepted)
        if beyond is not None and beyond(log):
            logger.debug(f"Log {log.label} lies past the target, chain ends at LSN {current}")
            return LogSequence(logs=tuple(accepted), target_lsn=current)

        accepted.append(log)
        current = log.last_lsn

        if reached is not None and reached(log):
            logger.debug(f"Target reached by log {log.label}")
            return LogSequence(logs=tuple(accepted), target_lsn=current)

    if reached is not None:
        return _gap(current, missing, accepted)

    logger.debug(f"Selected {len(accepted)} log(s), chain ends at LSN {current}")
    return LogSequence(logs=tuple(accepted), target_lsn=current)


def _sequence_to_mark(
    start_lsn: int, candidates: List[BackupSetDescriptor], target: RestoreTarget
) -> LogSequence:
    mark_target = target.mark
    occurrences = find_marks(candidates, mark_target.name, mark_target.after)

    if not occurrences:
        suffix = f" after {mark_target.after.isoformat()}" if mark_target.after else ""
        return LogSequence(
            reject_reason=RejectReason(
                code=RejectCode.MARK_NOT_FOUND,
                message=f"No log backup contains mark '{mark_target.name}'{suffix}",
            )
        )

    reachable = [mark for _, mark in occurrences if mark.lsn > start_lsn]
    if not reachable:
        return LogSequence(
            reject_reason=RejectReason(
                code=RejectCode.TARGET_UNREACHABLE,
                message=f"Mark '{mark_target.name}' precedes LSN {start_lsn} where the chain starts",
                at_lsn=start_lsn,
            )
        )

    wanted = reachable[0]
    warnings: Tuple[str, ...] = ()
    if len(reachable) > 1:
        message = (
            f"Mark '{mark_target.name}' occurs {len(reachable)} times; "
            f"using the first at LSN {wanted.lsn} ({wanted.mark_time.isoformat()})"
        )
        logger.warning(message)
        warnings = (message,)

    result = _walk(
        start_lsn,
        candidates,
        reached=lambda log: log.first_lsn <= wanted.lsn < log.last_lsn,
        missing=f"no log backup reaches mark '{mark_target.name}'",
    )
    if result.reject_reason is not None:
        return result
    return LogSequence(
        logs=result.logs,
        target_lsn=wanted.lsn,
        stop_mark=wanted,
        warnings=warnings,
    )
