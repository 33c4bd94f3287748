"""
Chain validator.

Re-walks an assembled chain end to end and proves it can be restored: the
differential belongs to the full, log coverage never regresses or leaves a
gap, no backup set is used twice, every file is still there, and the chain
reaches the LSN its target needs. Pure and single threaded: the same chain
always yields the same verdict.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from ..models import (
    BackupFileRef,
    BackupSetDescriptor,
    DeviceType,
    RejectCode,
    RejectReason,
)

logger = logging.getLogger(__name__)

FileChecker = Callable[[BackupFileRef], bool]


@dataclass(frozen=True)
class CandidateChain:
    """Backup sets assembled for one database, in apply order.

    ``start_lsn`` is only used for continuations, where there is no base and
    the chain picks up from the LSN already applied on the server.
    """

    full: Optional[BackupSetDescriptor] = None
    differential: Optional[BackupSetDescriptor] = None
    logs: Tuple[BackupSetDescriptor, ...] = ()
    start_lsn: Optional[int] = None
    target_lsn: Optional[int] = None

    @property
    def backup_sets(self) -> List[BackupSetDescriptor]:
        chain = [s for s in (self.full, self.differential) if s is not None]
        chain.extend(self.logs)
        return chain


@dataclass(frozen=True)
class ChainValidation:
    is_verified: bool
    reject_reason: Optional[RejectReason] = None
    final_lsn: Optional[int] = None
    backup_sets: Tuple[BackupSetDescriptor, ...] = field(default=())


def disk_file_checker(file_ref: BackupFileRef) -> bool:
    """Check DISK devices on the local filesystem; URL devices are trusted."""
    if file_ref.device_type == DeviceType.URL:
        return True
    return os.path.exists(file_ref.path)


def _reject(code: RejectCode, message: str, **kwargs) -> ChainValidation:
    logger.warning(f"Chain rejected ({code.value}): {message}")
    return ChainValidation(
        is_verified=False,
        reject_reason=RejectReason(code=code, message=message, **kwargs),
    )


def validate_chain(chain: CandidateChain, file_checker: Optional[FileChecker] = None) -> ChainValidation:
    """
    Verify a candidate chain end to end.

    Args:
        chain: Backup sets assembled by the selector and sequencer
        file_checker: Callable telling whether a file is still present;
            presence is not checked when omitted

    Returns:
        ChainValidation: Verdict with the reason for a rejection
    """
    backup_sets = chain.backup_sets

    if chain.full is None and chain.start_lsn is None:
        return _reject(RejectCode.NO_USABLE_FULL, "Chain has neither a full backup nor a starting LSN")

    seen = set()
    for backup_set in backup_sets:
        if backup_set.backup_set_id in seen:
            return _reject(
                RejectCode.DUPLICATE_BACKUP_SET,
                f"Backup set {backup_set.backup_set_id} appears twice in the chain",
                backup_set_id=backup_set.backup_set_id,
            )
        seen.add(backup_set.backup_set_id)

    if file_checker is not None:
        for backup_set in backup_sets:
            for file_ref in backup_set.files:
                if not file_checker(file_ref):
                    return _reject(
                        RejectCode.MISSING_BACKUP_FILE,
                        f"File {file_ref.path} of backup set {backup_set.backup_set_id} is no longer available",
                        backup_set_id=backup_set.backup_set_id,
                        path=file_ref.path,
                    )

    if chain.full is not None:
        current = chain.full.last_lsn
        if chain.differential is not None:
            diff = chain.differential
            if diff.database_backup_lsn != chain.full.checkpoint_lsn:
                return _reject(
                    RejectCode.LSN_REGRESSION,
                    f"Differential {diff.backup_set_id} was taken against LSN {diff.database_backup_lsn}, "
                    f"not the full's checkpoint LSN {chain.full.checkpoint_lsn}",
                    backup_set_id=diff.backup_set_id,
                    at_lsn=diff.database_backup_lsn,
                )
            if diff.last_lsn < current:
                return _reject(
                    RejectCode.LSN_REGRESSION,
                    f"Differential {diff.backup_set_id} ends at LSN {diff.last_lsn}, before its full",
                    backup_set_id=diff.backup_set_id,
                    at_lsn=diff.last_lsn,
                )
            current = diff.last_lsn
    else:
        current = chain.start_lsn

    for log in chain.logs:
        if log.first_lsn > current + 1:
            return _reject(
                RejectCode.CHAIN_GAP,
                f"Log {log.backup_set_id} starts at LSN {log.first_lsn}, chain is at LSN {current}",
                at_lsn=current,
                backup_set_id=log.backup_set_id,
            )
        if log.last_lsn <= current:
            return _reject(
                RejectCode.LSN_REGRESSION,
                f"Log {log.backup_set_id} ends at LSN {log.last_lsn} and does not advance past {current}",
                at_lsn=current,
                backup_set_id=log.backup_set_id,
            )
        current = log.last_lsn

    if chain.target_lsn is not None and current < chain.target_lsn:
        return _reject(
            RejectCode.CHAIN_GAP,
            f"Chain ends at LSN {current}, target needs LSN {chain.target_lsn}",
            at_lsn=current,
        )

    return ChainValidation(is_verified=True, final_lsn=current, backup_sets=tuple(backup_sets))
