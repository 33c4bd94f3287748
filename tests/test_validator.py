from pathlib import Path

from restore_chain.core.validator import CandidateChain, disk_file_checker, validate_chain
from restore_chain.models import BackupFileRef, DeviceType, RejectCode

from factories import at, diff, full, log, sample_chain


def test_valid_chain_is_verified() -> None:
    chain = sample_chain()
    candidate = CandidateChain(
        full=chain["full"], logs=(chain["log1"], chain["log2"]), target_lsn=230
    )

    result = validate_chain(candidate)

    assert result.is_verified
    assert result.final_lsn == 230
    assert [s.backup_set_id for s in result.backup_sets] == ["full", "log1", "log2"]


def test_chain_without_full_or_start_is_rejected() -> None:
    result = validate_chain(CandidateChain(logs=(sample_chain()["log1"],)))

    assert result.reject_reason.code == RejectCode.NO_USABLE_FULL


def test_duplicate_backup_set_is_rejected() -> None:
    chain = sample_chain()

    result = validate_chain(CandidateChain(full=chain["full"], logs=(chain["log1"], chain["log1"])))

    assert result.reject_reason.code == RejectCode.DUPLICATE_BACKUP_SET
    assert result.reject_reason.backup_set_id == "log1"


def test_missing_file_is_rejected() -> None:
    chain = sample_chain()
    gone = chain["log1"].files[0].path

    result = validate_chain(
        CandidateChain(full=chain["full"], logs=(chain["log1"],)),
        file_checker=lambda ref: ref.path != gone,
    )

    assert result.reject_reason.code == RejectCode.MISSING_BACKUP_FILE
    assert result.reject_reason.path == gone


def test_differential_from_another_full_is_rejected() -> None:
    base = full("f1", 100, 200, at(8))
    stray = diff("d1", base, 260, at(9), database_backup_lsn=999)

    result = validate_chain(CandidateChain(full=base, differential=stray))

    assert result.reject_reason.code == RejectCode.LSN_REGRESSION


def test_log_gap_is_rejected_with_lsn() -> None:
    chain = sample_chain()

    result = validate_chain(CandidateChain(full=chain["full"], logs=(chain["log1"], chain["log3"])))

    assert result.reject_reason.code == RejectCode.CHAIN_GAP
    assert result.reject_reason.at_lsn == 210


def test_log_that_does_not_advance_is_rejected() -> None:
    chain = sample_chain()
    stale = log("stale", 150, 200, at(7, 55))

    result = validate_chain(CandidateChain(full=chain["full"], logs=(stale,)))

    assert result.reject_reason.code == RejectCode.LSN_REGRESSION


def test_chain_short_of_target_is_rejected() -> None:
    chain = sample_chain()

    result = validate_chain(CandidateChain(full=chain["full"], logs=(chain["log1"],), target_lsn=250))

    assert result.reject_reason.code == RejectCode.CHAIN_GAP
    assert result.reject_reason.at_lsn == 210


def test_continuation_chain_starts_from_lsn() -> None:
    chain = sample_chain()

    result = validate_chain(CandidateChain(logs=(chain["log2"], chain["log3"]), start_lsn=210))

    assert result.is_verified
    assert result.final_lsn == 250


def test_disk_file_checker(tmp_path: Path) -> None:
    present = tmp_path / "full.bak"
    present.write_bytes(b"")

    assert disk_file_checker(BackupFileRef(path=str(present)))
    assert not disk_file_checker(BackupFileRef(path=str(tmp_path / "gone.bak")))
    assert disk_file_checker(
        BackupFileRef(path="https://store/c/full.bak", device_type=DeviceType.URL)
    )
