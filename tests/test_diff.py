"""Tests for phatnguoi.diff: identity keys and snapshot differences."""

from __future__ import annotations

import pytest

from phatnguoi.diff import diff_violations, violation_key


@pytest.mark.unit
def test_violation_key_strips_whitespace(make_violation):
    v = make_violation(time=" 10:15, 01/03/2025 ", location="Quốc lộ 1A ", behaviour=" Quá tốc độ")
    assert violation_key(v) == "10:15, 01/03/2025|Quốc lộ 1A|Quá tốc độ"


@pytest.mark.unit
def test_violation_key_ignores_status_and_fine(make_violation):
    a = make_violation(status="Chưa xử phạt", fine="800.000đ")
    b = make_violation(status="Đã xử phạt", fine=None)
    assert violation_key(a) == violation_key(b)


@pytest.mark.unit
def test_first_run_adds_everything(make_violation):
    current = [make_violation(), make_violation(time="08:00, 12/02/2025")]
    diff = diff_violations(None, current)

    assert diff.first_run is True
    assert list(diff.added) == current
    assert diff.removed == ()
    assert diff.has_changes is True


@pytest.mark.unit
def test_first_run_with_no_violations_has_no_changes():
    diff = diff_violations(None, [])
    assert diff.first_run is True
    assert diff.has_changes is False


@pytest.mark.unit
def test_added_and_removed_by_key(make_violation):
    kept = make_violation(time="t1")
    gone = make_violation(time="t2")
    new = make_violation(time="t3")

    diff = diff_violations([kept, gone], [kept, new])

    assert diff.first_run is False
    assert diff.added == (new,)
    assert diff.removed == (gone,)
    assert diff.unchanged == (kept,)
    assert diff.has_changes is True


@pytest.mark.unit
def test_identical_snapshots_have_no_changes(make_violation):
    snapshot = [make_violation(time="t1"), make_violation(time="t2")]
    diff = diff_violations(list(snapshot), list(snapshot))

    assert diff.added == ()
    assert diff.removed == ()
    assert diff.has_changes is False


@pytest.mark.unit
def test_status_change_is_not_a_change(make_violation):
    before = [make_violation(status="Chưa xử phạt")]
    after = [make_violation(status="Đã xử phạt")]
    assert diff_violations(before, after).has_changes is False


@pytest.mark.unit
def test_empty_previous_snapshot_is_not_first_run(make_violation):
    diff = diff_violations([], [make_violation()])
    assert diff.first_run is False
    assert len(diff.added) == 1
