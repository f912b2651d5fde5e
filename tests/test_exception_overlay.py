"""
Tests for choosing and applying shift exceptions.
"""

import pytest
import sys
from pathlib import Path
from dataclasses import replace
from datetime import date, time

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from shift_cycle.exception_overlay import ExceptionOverlay
from shift_cycle.models import (
    AnomalyType, ApprovalStatus, ExceptionType, ShiftException,
    STANDARD_SHIFTS, STANDARD_TEAMS
)
from shift_cycle.sources import Standard42Source


DAY = date(2024, 1, 1)
SHIFTS = {shift.id: shift for shift in STANDARD_SHIFTS}


def exception(exception_id, exception_type, status=ApprovalStatus.APPROVED, **kwargs):
    return ShiftException(id=exception_id, user_id="u1", target_date=DAY,
                          exception_type=exception_type, status=status, **kwargs)


@pytest.fixture
def user_day():
    """Day 0 of the rotation with u1 placed in team A's morning shift"""
    source = Standard42Source(DAY, SHIFTS, STANDARD_TEAMS)
    base = source.base_day(DAY)
    shifts = tuple(ws.with_user("u1") if "A" in ws.teams else ws for ws in base.shifts)
    return replace(base, shifts=shifts, user_id="u1", team=STANDARD_TEAMS[0])


@pytest.mark.parametrize("status, requires_approval, effective", [
    (ApprovalStatus.APPROVED, True, True),
    (ApprovalStatus.PENDING, True, False),
    (ApprovalStatus.PENDING, False, False),
    (ApprovalStatus.DRAFT, False, True),
    (ApprovalStatus.DRAFT, True, False),
    (ApprovalStatus.REJECTED, False, False),
    (ApprovalStatus.CANCELLED, False, False),
    (ApprovalStatus.EXPIRED, False, False),
])
def test_effectiveness(status, requires_approval, effective):
    item = exception("e1", ExceptionType.ABSENCE_VACATION, status=status,
                     requires_approval=requires_approval)
    assert item.is_effective is effective


def test_submitted_vacation_waits_for_decision():
    """
    Why this is important: a vacation request that has been submitted for a
    decision must not take the user off the schedule until it is approved.
    Only drafts of types outside the approval workflow apply straight away.
    """
    submitted = exception("e1", ExceptionType.ABSENCE_VACATION, status=ApprovalStatus.PENDING)
    assert not submitted.is_effective
    assert ExceptionOverlay([submitted]).effective_exceptions_for("u1", DAY) == []

    draft = ShiftException(id="e2", user_id="u1", target_date=DAY,
                           exception_type=ExceptionType.ABSENCE_SICK)
    assert draft.status == ApprovalStatus.DRAFT
    assert draft.is_effective


def test_inactive_exception_is_never_effective():
    item = exception("e1", ExceptionType.ABSENCE_VACATION, active=False)
    assert not item.is_effective


def test_type_default_approval_flag():
    assert not exception("e1", ExceptionType.ABSENCE_SICK, status=ApprovalStatus.PENDING).needs_approval
    assert exception("e2", ExceptionType.CHANGE_SWAP, status=ApprovalStatus.PENDING).needs_approval


def test_priority_order_and_multiple_exception_anomaly():
    """
    Why this is important: when a user has both an approved vacation and a
    time reduction on the same day, the vacation must win every time and the
    duplicate must be reported rather than silently dropped.
    """
    overlay = ExceptionOverlay([
        exception("reduction", ExceptionType.REDUCTION_ROL, new_end_time=time(11, 0), created_at=9.0),
        exception("vacation", ExceptionType.ABSENCE_VACATION, created_at=1.0),
    ])
    chosen, anomalies = overlay.resolve("u1", DAY)
    assert chosen.id == "vacation"
    assert len(anomalies) == 1
    assert anomalies[0].kind == AnomalyType.MULTIPLE_EFFECTIVE_EXCEPTIONS
    assert anomalies[0].discarded_ids == ("reduction",)


def test_same_priority_prefers_latest_then_id():
    overlay = ExceptionOverlay([
        exception("b", ExceptionType.ABSENCE_SICK, created_at=1.0),
        exception("a", ExceptionType.ABSENCE_VACATION, created_at=1.0),
        exception("c", ExceptionType.ABSENCE_SPECIAL, created_at=0.5),
    ])
    assert [e.id for e in overlay.effective_exceptions_for("u1", DAY)] == ["a", "b", "c"]


def test_configured_priorities_override_defaults():
    overlay = ExceptionOverlay([
        exception("vacation", ExceptionType.ABSENCE_VACATION),
        exception("change", ExceptionType.CHANGE_COMPANY, new_shift_id="night"),
    ], priorities={ExceptionType.CHANGE_COMPANY: 20})
    chosen, _ = overlay.resolve("u1", DAY)
    assert chosen.id == "change"


def test_absence_removes_user_but_not_team(user_day):
    overlay = ExceptionOverlay([])
    item = exception("e1", ExceptionType.ABSENCE_VACATION)
    result = overlay.apply(user_day, item, "u1", SHIFTS)
    assert not result.is_user_working
    assert result.is_team_working("A")
    assert result.applied_exception == item


def test_company_change_moves_user_to_new_shift(user_day):
    overlay = ExceptionOverlay([])
    item = exception("e1", ExceptionType.CHANGE_COMPANY, new_shift_id="night")
    result = overlay.apply(user_day, item, "u1", SHIFTS)
    assert [ws.shift.id for ws in result.user_shifts] == ["night"]
    assert result.teams_for_shift("night") == ("E", "F")


def test_retimed_change_gets_personal_entry(user_day):
    overlay = ExceptionOverlay([])
    item = exception("e1", ExceptionType.CHANGE_SPECIAL, new_shift_id="afternoon",
                     new_start_time=time(14, 0), new_end_time=time(20, 0))
    result = overlay.apply(user_day, item, "u1", SHIFTS)
    user_shifts = result.user_shifts
    assert len(user_shifts) == 1
    assert user_shifts[0].teams == ()
    assert user_shifts[0].effective_start == time(14, 0)
    assert user_shifts[0].effective_end == time(20, 0)


def test_unknown_shift_leaves_day_unchanged(user_day):
    overlay = ExceptionOverlay([])
    item = exception("e1", ExceptionType.CHANGE_COMPANY, new_shift_id="bogus")
    result = overlay.apply(user_day, item, "u1", SHIFTS)
    assert result == user_day
    assert result.applied_exception is None


def test_swap_takes_partner_shift(user_day):
    overlay = ExceptionOverlay([])
    item = exception("e1", ExceptionType.CHANGE_SWAP, swap_with_user_id="u2")
    result = overlay.apply(user_day, item, "u1", SHIFTS, partner_shifts=(SHIFTS["afternoon"],))
    assert [ws.shift.id for ws in result.user_shifts] == ["afternoon"]

    unresolved = overlay.apply(user_day, item, "u1", SHIFTS, partner_shifts=None)
    assert unresolved == user_day


def test_reduction_with_new_end_time(user_day):
    overlay = ExceptionOverlay([])
    item = exception("e1", ExceptionType.REDUCTION_PERSONAL, new_end_time=time(11, 0))
    result = overlay.apply(user_day, item, "u1", SHIFTS)
    (entry,) = result.user_shifts
    assert entry.shift.id == "morning"
    assert entry.effective_start == time(5, 0)
    assert entry.effective_end == time(11, 0)
    assert result.teams_for_shift("morning") == ("A", "B")


def test_reduction_with_duration(user_day):
    overlay = ExceptionOverlay([])
    item = exception("e1", ExceptionType.REDUCTION_UNION, duration_minutes=120)
    (entry,) = overlay.apply(user_day, item, "u1", SHIFTS).user_shifts
    assert entry.effective_end == time(7, 0)


def test_custom_extra_shift_adds_to_existing(user_day):
    overlay = ExceptionOverlay([])
    item = exception("e1", ExceptionType.CUSTOM, new_shift_id="afternoon",
                     metadata=(("custom_type", "extra_shift"),))
    result = overlay.apply(user_day, item, "u1", SHIFTS)
    assert [ws.shift.id for ws in result.user_shifts] == ["morning", "afternoon"]


def test_custom_override_acts_as_change(user_day):
    overlay = ExceptionOverlay([])
    item = exception("e1", ExceptionType.CUSTOM, new_shift_id="night",
                     metadata=(("custom_type", "override"),))
    result = overlay.apply(user_day, item, "u1", SHIFTS)
    assert [ws.shift.id for ws in result.user_shifts] == ["night"]


def test_unknown_custom_type_is_ignored(user_day):
    overlay = ExceptionOverlay([])
    item = exception("e1", ExceptionType.CUSTOM, metadata=(("custom_type", "mystery"),))
    assert overlay.apply(user_day, item, "u1", SHIFTS) == user_day


def test_detect_conflicts():
    overlay = ExceptionOverlay([
        exception("vacation", ExceptionType.ABSENCE_VACATION),
        exception("change", ExceptionType.CHANGE_COMPANY, new_shift_id="night"),
        exception("sick", ExceptionType.ABSENCE_SICK),
    ])
    conflicts = overlay.detect_conflicts("u1", DAY)
    pairs = {frozenset((c.first.id, c.second.id)) for c in conflicts}
    assert pairs == {frozenset(("vacation", "change")), frozenset(("sick", "change"))}


def test_approval_workflow():
    item = exception("e1", ExceptionType.ABSENCE_SPECIAL, status=ApprovalStatus.PENDING)
    assert not item.is_effective
    approved = item.approve("boss", "The Boss", date(2024, 1, 1))
    assert approved.is_effective
    assert approved.approved_by_user_id == "boss"
    rejected = approved.reject("no cover")
    assert not rejected.is_effective
    assert rejected.rejection_reason == "no cover"
