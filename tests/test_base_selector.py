from restore_chain.core.base_selector import newest, select_base
from restore_chain.models import RejectCode, RestoreTarget

from factories import at, diff, full, log, mark


def test_select_base_picks_newest_full() -> None:
    old = full("f-old", 50, 90, at(6))
    new = full("f-new", 100, 200, at(8))

    selection = select_base([new, old], RestoreTarget.latest())

    assert selection.full == new
    assert selection.differential is None
    assert selection.last_lsn == 200


def test_newest_breaks_ties_on_smallest_id() -> None:
    a = full("b-set", 100, 200, at(8))
    b = full("a-set", 100, 200, at(8))

    assert newest([a, b]) == b
    assert newest([]) is None


def test_select_base_takes_matching_differential() -> None:
    base = full("f1", 100, 200, at(8))
    good = diff("d1", base, 260, at(10))
    foreign = diff("d2", base, 300, at(11), database_backup_lsn=42)

    selection = select_base([base, good, foreign], RestoreTarget.latest())

    assert selection.differential == good
    assert selection.last_lsn == 260


def test_ignore_differentials_never_selects_one() -> None:
    base = full("f1", 100, 200, at(8))
    newer = diff("d1", base, 260, at(10))

    selection = select_base([base, newer], RestoreTarget.latest(ignore_differentials=True))

    assert selection.full == base
    assert selection.differential is None


def test_no_full_is_rejected() -> None:
    selection = select_base([log("l1", 200, 210, at(8))], RestoreTarget.latest())

    assert selection.full is None
    assert selection.reject_reason.code == RejectCode.NO_USABLE_FULL


def test_point_in_time_before_every_full_is_unreachable() -> None:
    selection = select_base([full("f1", 100, 200, at(8))], RestoreTarget.at_time(at(7)))

    assert selection.reject_reason.code == RejectCode.TARGET_UNREACHABLE


def test_point_in_time_bounds_full_and_differential() -> None:
    early = full("f1", 100, 200, at(8))
    late = full("f2", 300, 400, at(12))
    early_diff = diff("d1", early, 250, at(9))
    late_diff = diff("d2", early, 280, at(11))

    selection = select_base([early, late, early_diff, late_diff], RestoreTarget.at_time(at(10)))

    assert selection.full == early
    assert selection.differential == early_diff


def test_mark_target_bounds_base_by_mark_time() -> None:
    early = full("f1", 100, 200, at(8))
    late = full("f2", 300, 400, at(12))
    marked = log("l1", 200, 300, at(11), marks=[mark("release", 250, at(10))])

    selection = select_base([early, late, marked], RestoreTarget.at_mark("release"))

    assert selection.full == early
