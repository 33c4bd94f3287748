import random
from unittest.mock import Mock

import pytest

from restore_chain.core.catalog import BackupCatalog
from restore_chain.core.executor import RestoreExecutor
from restore_chain.core.planner import build_plan, emit_plan, resolve, resolve_batch
from restore_chain.exceptions import PlanExecutionError, TargetError
from restore_chain.models import (
    BackupType,
    ContinuationState,
    EndState,
    IncompleteStripe,
    PlanAction,
    RecoveryMode,
    RejectCode,
    RestoreMode,
    RestoreTarget,
    StepOutcome,
)

from factories import at, diff, full, log, mark, sample_chain


def _plan_summary(result):
    return [
        (step.backup_set.backup_set_id if step.backup_set else step.action.value, step.recovery_mode)
        for step in result.plan
    ]


def test_point_in_time_plan_excludes_later_log() -> None:
    result = resolve(list(sample_chain().values()), RestoreTarget.at_time(at(8, 20)))

    assert result.is_verified
    assert _plan_summary(result) == [
        ("full", RecoveryMode.NORECOVERY),
        ("log1", RecoveryMode.NORECOVERY),
        ("log2", RecoveryMode.RECOVERY),
    ]


def test_latest_plan_includes_every_log() -> None:
    result = resolve(list(sample_chain().values()), RestoreTarget.latest())

    assert result.is_verified
    assert _plan_summary(result) == [
        ("full", RecoveryMode.NORECOVERY),
        ("log1", RecoveryMode.NORECOVERY),
        ("log2", RecoveryMode.NORECOVERY),
        ("log3", RecoveryMode.RECOVERY),
    ]
    assert result.target_lsn == 250


def test_missing_log_yields_chain_gap() -> None:
    chain = sample_chain()
    del chain["log2"]

    result = resolve(list(chain.values()), RestoreTarget.at_time(at(8, 20)))

    assert not result.is_verified
    assert result.plan == ()
    assert result.reject_reason.code == RejectCode.CHAIN_GAP
    assert result.reject_reason.at_lsn == 210


def test_resolution_is_deterministic() -> None:
    base = full("f1", 100, 200, at(8))
    sets = list(sample_chain().values()) + [
        full("f0", 100, 200, at(8)),
        diff("d1", base, 205, at(8, 3)),
        log("overlap", 205, 220, at(8, 10)),
    ]
    expected = resolve(sets, RestoreTarget.latest())

    shuffler = random.Random(7)
    for _ in range(5):
        shuffled = list(sets)
        shuffler.shuffle(shuffled)
        assert resolve(shuffled, RestoreTarget.latest()) == expected


def test_chain_coverage_is_contiguous() -> None:
    base = full("f1", 100, 200, at(8))
    sets = [
        base,
        diff("d1", base, 215, at(8, 8)),
        log("l1", 200, 210, at(8, 5)),
        log("l2", 210, 230, at(8, 15)),
        log("l3", 225, 260, at(8, 25)),
        log("l4", 260, 300, at(8, 40)),
    ]

    result = resolve(sets, RestoreTarget.latest())

    backup_sets = [step.backup_set for step in result.plan]
    current = backup_sets[0].last_lsn
    for backup_set in backup_sets[1:]:
        if backup_set.backup_type == BackupType.LOG:
            assert backup_set.first_lsn <= current + 1
            assert backup_set.last_lsn > current
        current = backup_set.last_lsn
    assert current == result.target_lsn == 300
    assert [s.backup_set_id for s in backup_sets] == ["f1", "d1", "l2", "l3", "l4"]


def test_ignore_differentials_uses_full_and_logs() -> None:
    chain = sample_chain()
    sets = list(chain.values()) + [diff("d1", chain["full"], 230, at(8, 16))]

    with_diff = resolve(sets, RestoreTarget.latest())
    without = resolve(sets, RestoreTarget.latest(ignore_differentials=True))

    assert with_diff.backup_set_ids == ["full", "d1", "log3"]
    assert without.backup_set_ids == ["full", "log1", "log2", "log3"]


def test_mark_target_puts_stop_on_final_log() -> None:
    chain = sample_chain()
    chain["log2"] = log("log2", 210, 230, at(8, 15), marks=[mark("release", 220, at(8, 12))])

    result = resolve(list(chain.values()), RestoreTarget.at_mark("release", stop_before=True))

    assert result.backup_set_ids == ["full", "log1", "log2"]
    final = result.plan[-1]
    assert final.stop_at_mark.name == "release"
    assert final.stop_at_mark.stop_before
    assert all(step.stop_at_mark is None for step in result.plan[:-1])


def test_continuation_never_reapplies_base() -> None:
    state = ContinuationState(database_name="Sales", already_applied_last_lsn=210)

    result = resolve(list(sample_chain().values()), RestoreTarget.latest(), continuation=state)

    assert result.is_verified
    assert result.backup_set_ids == ["log2", "log3"]
    assert all(step.backup_set.last_lsn > 210 for step in result.plan)
    assert all(step.backup_set.backup_type == BackupType.LOG for step in result.plan)


def test_standby_continuation_starts_with_leave_standby() -> None:
    state = ContinuationState(
        database_name="Sales", already_applied_last_lsn=230, current_mode=RestoreMode.STANDBY
    )

    result = resolve(list(sample_chain().values()), RestoreTarget.latest(), continuation=state)

    assert [step.action for step in result.plan] == [PlanAction.LEAVE_STANDBY, PlanAction.RESTORE]
    assert [step.index for step in result.plan] == [0, 1]
    assert result.plan[0].recovery_mode == RecoveryMode.NORECOVERY


def test_up_to_date_continuation_finalizes_or_does_nothing() -> None:
    state = ContinuationState(database_name="Sales", already_applied_last_lsn=250)
    sets = list(sample_chain().values())

    recover = resolve(sets, RestoreTarget.latest(), continuation=state)
    keep = resolve(
        sets, RestoreTarget.latest(), continuation=state, end_state=EndState(mode=RecoveryMode.NORECOVERY)
    )

    assert [step.action for step in recover.plan] == [PlanAction.FINALIZE]
    assert keep.is_verified
    assert keep.plan == ()


def test_continuation_past_point_in_time_is_unreachable() -> None:
    state = ContinuationState(database_name="Sales", already_applied_last_lsn=230)

    result = resolve(list(sample_chain().values()), RestoreTarget.at_time(at(8, 10)), continuation=state)

    assert result.reject_reason.code == RejectCode.TARGET_UNREACHABLE


def test_continuation_for_other_database_raises() -> None:
    state = ContinuationState(database_name="Billing", already_applied_last_lsn=210)

    with pytest.raises(TargetError):
        resolve(list(sample_chain().values()), RestoreTarget.latest("Sales"), continuation=state)


def test_unnamed_target_over_several_databases_is_ambiguous() -> None:
    sets = list(sample_chain().values()) + [full("b1", 10, 20, at(7), database_name="Billing")]

    result = resolve(sets, RestoreTarget.latest())

    assert result.reject_reason.code == RejectCode.AMBIGUOUS_MULTI_DATABASE
    assert resolve(sets, RestoreTarget.latest("Billing")).backup_set_ids == ["b1"]


def test_gap_explained_by_incomplete_stripe() -> None:
    chain = sample_chain()
    del chain["log2"]
    stripe = IncompleteStripe(
        database_name="Sales",
        backup_set_id="log2",
        backup_type=BackupType.LOG,
        first_lsn=210,
        last_lsn=230,
        expected_files=2,
        found_files=1,
    )

    result = resolve(list(chain.values()), RestoreTarget.latest(), incomplete_stripes=[stripe])

    assert result.reject_reason.code == RejectCode.INCOMPLETE_STRIPE
    assert result.reject_reason.backup_set_id == "log2"
    assert any("log2" in warning for warning in result.warnings)


def test_build_plan_leaves_last_step_in_standby() -> None:
    chain = sample_chain()
    end_state = EndState(mode=RecoveryMode.STANDBY, standby_file="/standby/sales.tuf")

    steps = build_plan("Sales", [chain["full"], chain["log1"]], end_state, stop_at=at(8, 4))

    assert steps[0].recovery_mode == RecoveryMode.NORECOVERY
    assert steps[0].stop_at is None
    assert steps[-1].recovery_mode == RecoveryMode.STANDBY
    assert steps[-1].standby_file == "/standby/sales.tuf"
    assert steps[-1].stop_at == at(8, 4)


def test_resolve_batch_collects_partial_failures() -> None:
    catalog = BackupCatalog(
        list(sample_chain().values())
        + [full("b1", 10, 20, at(7), database_name="Billing")]
        + [log("h1", 5, 9, at(7), database_name="Hr")]
    )

    def continuations(name):
        if name == "Billing":
            raise ConnectionError("server unreachable")
        return None

    batch = resolve_batch(catalog, RestoreTarget.latest(), continuations=continuations, max_workers=3)

    assert sorted(batch.verified) == ["Sales"]
    assert sorted(batch.unverified) == ["Hr"]
    assert batch.unverified["Hr"].reject_reason.code == RejectCode.NO_USABLE_FULL
    assert "server unreachable" in batch.errors["Billing"]


def test_resolve_batch_uses_mapping_continuations() -> None:
    catalog = BackupCatalog(list(sample_chain().values()))
    state = ContinuationState(database_name="Sales", already_applied_last_lsn=230)

    batch = resolve_batch(catalog, RestoreTarget.latest(), continuations={"Sales": state})

    assert batch.results["Sales"].backup_set_ids == ["log3"]


def test_emit_plan_only_renders_without_executing() -> None:
    result = resolve(list(sample_chain().values()), RestoreTarget.latest())

    emission = emit_plan(result, RestoreExecutor(), plan_only=True)

    assert emission.report is None
    assert emission.script.count("GO\n") == 4
    assert emission.script.startswith("RESTORE DATABASE [Sales]")


def test_emit_plan_rejects_unverified_result() -> None:
    chain = sample_chain()
    del chain["full"]
    result = resolve(list(chain.values()), RestoreTarget.latest())

    with pytest.raises(TargetError):
        emit_plan(result, RestoreExecutor(), plan_only=True)


def test_emit_plan_reports_failed_step() -> None:
    result = resolve(list(sample_chain().values()), RestoreTarget.latest())
    executor = Mock()
    executor.execute.side_effect = [StepOutcome(success=True), StepOutcome(success=False, error="disk full")]

    emission = emit_plan(result, executor)
    assert emission.report.failure.step_index == 1

    executor.execute.side_effect = [StepOutcome(success=False, error="disk full")]
    with pytest.raises(PlanExecutionError) as excinfo:
        emit_plan(result, executor, raise_on_failure=True)
    assert excinfo.value.step_index == 0


def test_continuation_with_missing_next_log_yields_chain_gap() -> None:
    chain = sample_chain()
    sets = [chain["full"], chain["log3"]]
    state = ContinuationState(database_name="Sales", already_applied_last_lsn=210)

    result = resolve(sets, RestoreTarget.latest(), continuation=state)

    assert not result.is_verified
    assert result.plan == ()
    assert result.reject_reason.code == RejectCode.CHAIN_GAP
    assert result.reject_reason.at_lsn == 210
