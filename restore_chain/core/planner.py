"""
Restore plan builder and chain resolver.

``resolve`` runs the whole pipeline for one database: continuation
adjustment or base selection, log sequencing, validation, and plan building.
``resolve_batch`` does the same for every database of a catalog, collecting
one result per database so one failure never hides the others.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ..exceptions import TargetError
from ..models import (
    BackupSetDescriptor,
    BackupType,
    ChainResult,
    ContinuationState,
    EndState,
    IncompleteStripe,
    MarkTarget,
    PlanAction,
    PlanExecutionReport,
    RecoveryMode,
    RejectCode,
    RejectReason,
    RestorePlanStep,
    RestoreTarget,
    TargetKind,
)
from .base_selector import select_base
from .catalog import BackupCatalog
from .continuation import adjust_for_continuation
from .log_sequencer import sequence_logs
from .runner import PlanRunner
from .validator import CandidateChain, FileChecker, validate_chain

logger = logging.getLogger(__name__)

ContinuationLookup = Union[
    Mapping[str, ContinuationState], Callable[[str], Optional[ContinuationState]]
]


def build_plan(
    database_name: str,
    backup_sets: Sequence[BackupSetDescriptor],
    end_state: Optional[EndState] = None,
    stop_at=None,
    stop_at_mark: Optional[MarkTarget] = None,
    requires_standby_exit: bool = False,
) -> Tuple[RestorePlanStep, ...]:
    """
    Turn an ordered chain into restore steps.

    Every step restores WITH NORECOVERY except the last, which takes the end
    state. Stop options only ever go on a final log step. A standby
    continuation starts with a LEAVE_STANDBY transition; a continuation with
    nothing new to apply ends with a FINALIZE step unless the database should
    stay restoring.

    Args:
        database_name: Database being restored
        backup_sets: Validated chain in apply order
        end_state: State to leave the database in (default RECOVERY)
        stop_at: Point in time for the final log step
        stop_at_mark: Mark for the final log step
        requires_standby_exit: Database is currently in read-only standby

    Returns:
        Tuple[RestorePlanStep, ...]: Ordered plan steps
    """
    end_state = end_state or EndState()
    actions: List[Tuple[PlanAction, Optional[BackupSetDescriptor]]] = []

    if backup_sets:
        if requires_standby_exit:
            actions.append((PlanAction.LEAVE_STANDBY, None))
        actions.extend((PlanAction.RESTORE, s) for s in backup_sets)
    elif end_state.mode != RecoveryMode.NORECOVERY:
        actions.append((PlanAction.FINALIZE, None))

    steps = []
    last = len(actions) - 1
    for index, (action, backup_set) in enumerate(actions):
        values = {
            "index": index,
            "database_name": database_name,
            "action": action,
            "backup_set": backup_set,
        }
        if index == last:
            values["recovery_mode"] = end_state.mode
            values["standby_file"] = end_state.standby_file
            if backup_set is not None and backup_set.backup_type == BackupType.LOG:
                values["stop_at"] = stop_at
                values["stop_at_mark"] = stop_at_mark
        steps.append(RestorePlanStep(**values))
    return tuple(steps)


def _explain(reason: RejectReason, incomplete: Sequence[IncompleteStripe]) -> RejectReason:
    """Attribute a gap or a missing full to a dropped incomplete stripe when one explains it."""
    for stripe in incomplete:
        if reason.code == RejectCode.CHAIN_GAP and reason.at_lsn is not None:
            fills_gap = (
                stripe.backup_type == BackupType.LOG
                and stripe.first_lsn <= reason.at_lsn + 1
                and stripe.last_lsn > reason.at_lsn
            )
        else:
            fills_gap = reason.code == RejectCode.NO_USABLE_FULL and stripe.backup_type == BackupType.FULL
        if fills_gap:
            return RejectReason(
                code=RejectCode.INCOMPLETE_STRIPE,
                message=(
                    f"Backup set {stripe.backup_set_id} would be needed but only "
                    f"{stripe.found_files} of {stripe.expected_files} files were found"
                ),
                at_lsn=reason.at_lsn,
                backup_set_id=stripe.backup_set_id,
            )
    return reason


def _rejected(
    database_name: Optional[str], reason: RejectReason, warnings: Sequence[str] = ()
) -> ChainResult:
    logger.warning(f"No verified chain for {database_name}: [{reason.code.value}] {reason.message}")
    return ChainResult(
        database_name=database_name,
        is_verified=False,
        reject_reason=reason,
        warnings=tuple(warnings),
    )


def resolve(
    backup_sets: Sequence[BackupSetDescriptor],
    target: RestoreTarget,
    continuation: Optional[ContinuationState] = None,
    end_state: Optional[EndState] = None,
    incomplete_stripes: Sequence[IncompleteStripe] = (),
    file_checker: Optional[FileChecker] = None,
) -> ChainResult:
    """
    Resolve the restore chain and plan for one database.

    Args:
        backup_sets: Normalized backup sets; may span several databases when
            ``target.database_name`` picks one of them
        target: Recovery goal
        continuation: State of a restore already in progress on the server
        end_state: State to leave the database in (default RECOVERY)
        incomplete_stripes: Sets dropped by the normalizer, used to explain rejections
        file_checker: Callable used to confirm files still exist

    Returns:
        ChainResult: Verified plan, or the reason no plan could be built

    Raises:
        TargetError: If ``continuation`` belongs to another database
    """
    databases = sorted(
        {s.database_name for s in backup_sets} | {s.database_name for s in incomplete_stripes}
    )
    database_name = target.database_name
    if database_name is None:
        if len(databases) > 1:
            return _rejected(
                None,
                RejectReason(
                    code=RejectCode.AMBIGUOUS_MULTI_DATABASE,
                    message=f"Catalog spans {len(databases)} databases ({', '.join(databases)}) "
                    "but the target names none",
                ),
            )
        if databases:
            database_name = databases[0]
        elif continuation is not None:
            database_name = continuation.database_name

    if continuation is not None and continuation.database_name != database_name:
        raise TargetError(
            f"Continuation state belongs to {continuation.database_name}",
            database_name=database_name,
        )

    sets = [s for s in backup_sets if s.database_name == database_name]
    incomplete = [s for s in incomplete_stripes if s.database_name == database_name]
    warnings = [
        f"Ignored backup set {s.backup_set_id}: {s.found_files} of {s.expected_files} files found"
        for s in incomplete
    ]

    requires_standby_exit = False
    if continuation is not None:
        adjustment = adjust_for_continuation(sets, continuation)
        requires_standby_exit = adjustment.requires_standby_exit
        if target.kind == TargetKind.POINT_IN_TIME and any(
            log.finish_time > target.point_in_time for log in adjustment.applied_logs
        ):
            return _rejected(
                database_name,
                RejectReason(
                    code=RejectCode.TARGET_UNREACHABLE,
                    message=f"Database is already restored past {target.point_in_time.isoformat()}",
                    at_lsn=adjustment.start_lsn,
                ),
                warnings,
            )
        sequence = sequence_logs(adjustment.start_lsn, adjustment.logs, target)
        chain = CandidateChain(
            logs=sequence.logs, start_lsn=adjustment.start_lsn, target_lsn=sequence.target_lsn
        )
    else:
        base = select_base(sets, target)
        if base.reject_reason is not None:
            return _rejected(database_name, _explain(base.reject_reason, incomplete), warnings)
        anchor = base.differential or base.full
        sequence = sequence_logs(base.last_lsn, sets, target, base_finish_time=anchor.finish_time)
        chain = CandidateChain(
            full=base.full,
            differential=base.differential,
            logs=sequence.logs,
            target_lsn=sequence.target_lsn,
        )

    warnings.extend(sequence.warnings)
    if sequence.reject_reason is not None:
        return _rejected(database_name, _explain(sequence.reject_reason, incomplete), warnings)

    validation = validate_chain(chain, file_checker)
    if not validation.is_verified:
        return _rejected(database_name, validation.reject_reason, warnings)

    plan = build_plan(
        database_name,
        validation.backup_sets,
        end_state,
        stop_at=sequence.stop_at,
        stop_at_mark=target.mark if sequence.stop_mark is not None else None,
        requires_standby_exit=requires_standby_exit,
    )
    logger.info(
        f"Verified chain for {database_name}: {len(validation.backup_sets)} backup set(s), "
        f"ends at LSN {validation.final_lsn}"
    )
    return ChainResult(
        database_name=database_name,
        is_verified=True,
        plan=plan,
        warnings=tuple(warnings),
        target_lsn=sequence.target_lsn,
    )


@dataclass
class BatchResolution:
    """Per-database outcome of ``resolve_batch``.

    ``errors`` holds databases whose resolution raised instead of producing
    a result; they are reported, not retried.
    """

    results: Dict[str, ChainResult] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def verified(self) -> Dict[str, ChainResult]:
        return {name: r for name, r in self.results.items() if r.is_verified}

    @property
    def unverified(self) -> Dict[str, ChainResult]:
        return {name: r for name, r in self.results.items() if not r.is_verified}


def resolve_batch(
    catalog: BackupCatalog,
    target: RestoreTarget,
    continuations: Optional[ContinuationLookup] = None,
    end_state: Optional[Union[EndState, Callable[[str], EndState]]] = None,
    file_checker: Optional[FileChecker] = None,
    max_workers: int = 1,
) -> BatchResolution:
    """
    Resolve every database in ``catalog`` (or only the one ``target`` names).

    Databases share no state, so with ``max_workers > 1`` they resolve on a
    bounded thread pool. Each database's resolution itself stays single
    threaded.

    Args:
        catalog: Normalized catalog
        target: Recovery goal applied to each database
        continuations: Mapping or callable giving a database's continuation state
        end_state: State to leave each database in, or a callable giving it
            per database (a STANDBY undo file cannot be shared)
        file_checker: Callable used to confirm files still exist
        max_workers: Databases resolved at the same time

    Returns:
        BatchResolution: One result (or error) per database
    """
    if isinstance(continuations, Mapping):
        lookup = continuations.get
    else:
        lookup = continuations

    names = [target.database_name] if target.database_name else catalog.databases()

    def _one(name: str) -> ChainResult:
        return resolve(
            catalog.for_database(name),
            target.model_copy(update={"database_name": name}),
            continuation=lookup(name) if lookup else None,
            end_state=end_state(name) if callable(end_state) else end_state,
            incomplete_stripes=catalog.incomplete_for(name),
            file_checker=file_checker,
        )

    batch = BatchResolution()
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(names) or 1))) as pool:
        futures = [(name, pool.submit(_one, name)) for name in names]
        for name, future in futures:
            try:
                batch.results[name] = future.result()
            except Exception as e:
                logger.exception(f"Resolution failed for {name}")
                batch.errors[name] = f"{type(e).__name__}: {e}"

    logger.info(
        f"Resolved {len(names)} database(s): {len(batch.verified)} verified, "
        f"{len(batch.unverified)} unverified, {len(batch.errors)} error(s)"
    )
    return batch


@dataclass(frozen=True)
class PlanEmission:
    plan: Tuple[RestorePlanStep, ...]
    script: Optional[str] = None
    report: Optional[PlanExecutionReport] = None


def render_script(plan: Sequence[RestorePlanStep], executor, options=None) -> str:
    """Render a plan as one T-SQL script, one statement batch per step."""
    return "\n".join(f"{executor.render(step, options)}\nGO\n" for step in plan)


def emit_plan(
    result: ChainResult,
    executor=None,
    options=None,
    plan_only: bool = False,
    runner: Optional[PlanRunner] = None,
    cancel_event: Optional[threading.Event] = None,
    raise_on_failure: bool = False,
) -> PlanEmission:
    """
    Hand a verified plan to the restore executor.

    In plan-only mode nothing is executed: the plan is returned, rendered as
    a script when an executor is given. Otherwise the plan is executed step
    by step and the execution report is returned with it.

    Raises:
        TargetError: If the result is not verified, or no executor is given
            for live execution
        PlanExecutionError: With ``raise_on_failure``, if a step failed or
            the run was cancelled
    """
    if not result.is_verified:
        raise TargetError(
            f"Cannot emit an unverified plan: {result.reject_reason.message}",
            database_name=result.database_name,
        )

    if plan_only:
        script = render_script(result.plan, executor, options) if executor is not None else None
        return PlanEmission(plan=result.plan, script=script)

    if runner is None:
        if executor is None:
            raise TargetError("Live execution needs a restore executor", database_name=result.database_name)
        runner = PlanRunner(executor, max_workers=1)
    report = runner.run_plan(result.database_name, result.plan, options, cancel_event)
    if raise_on_failure:
        report.raise_for_failure()
    return PlanEmission(plan=result.plan, report=report)
