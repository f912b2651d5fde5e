"""
Exception Overlay

Selects the effective shift exception for a user on a date and applies it
to that user's placement in a computed schedule day. Exceptions never change
the team-level base pattern: a team keeps working its shift even when one of
its members is absent.
"""

import logging
from dataclasses import dataclass, replace
from datetime import date, time
from typing import Dict, Iterable, List, Optional, Tuple

from .models import (
    AnomalyType, DEFAULT_EXCEPTION_PRIORITIES, ExceptionType, ScheduleAnomaly, Shift,
    ShiftException, WorkScheduleDay, WorkScheduleShift
)

logger = logging.getLogger(__name__)


CUSTOM_TYPE_KEY = "custom_type"
CUSTOM_EXTRA_SHIFT = "extra_shift"
CUSTOM_OVERRIDE = "override"


@dataclass(frozen=True)
class ExceptionConflict:
    """Two exceptions for the same user and date that cannot both hold"""
    first: ShiftException
    second: ShiftException
    description: str


def _add_minutes(value: time, minutes: int) -> time:
    total = (value.hour * 60 + value.minute + minutes) % (24 * 60)
    return time(total // 60, total % 60)


def are_conflicting(first: ShiftException, second: ShiftException) -> bool:
    """Absences conflict with any working exception; two reductions conflict"""
    first_type, second_type = first.exception_type, second.exception_type
    if first_type.is_absence != second_type.is_absence:
        return True
    return first_type.is_reduction and second_type.is_reduction


class ExceptionOverlay:
    """Index of shift exceptions by user and date, plus the rules for applying them"""

    def __init__(self, exceptions: Iterable[ShiftException],
                 priorities: Optional[Dict[ExceptionType, int]] = None):
        self.priorities = dict(DEFAULT_EXCEPTION_PRIORITIES)
        if priorities:
            self.priorities.update(priorities)

        self._index: Dict[Tuple[str, date], List[ShiftException]] = {}
        for exception in exceptions:
            self._index.setdefault((exception.user_id, exception.target_date), []).append(exception)

    def priority_of(self, exception: ShiftException) -> int:
        return self.priorities.get(exception.exception_type, 0)

    def _order(self, exception: ShiftException):
        return (-self.priority_of(exception), -exception.created_at, exception.id)

    def exceptions_for(self, user_id: str, target: date) -> List[ShiftException]:
        """Every stored exception for user on target, effective or not"""
        return list(self._index.get((user_id, target), []))

    def effective_exceptions_for(self, user_id: str, target: date) -> List[ShiftException]:
        """Effective exceptions for user on target, highest precedence first"""
        effective = [e for e in self._index.get((user_id, target), []) if e.is_effective]
        return sorted(effective, key=self._order)

    def resolve(self, user_id: str, target: date
                ) -> Tuple[Optional[ShiftException], Tuple[ScheduleAnomaly, ...]]:
        effective = self.effective_exceptions_for(user_id, target)
        if not effective:
            return None, ()

        chosen = effective[0]
        if len(effective) == 1:
            return chosen, ()

        discarded = tuple(e.id for e in effective[1:])
        message = (f"User {user_id} has {len(effective)} effective exceptions on {target}; "
                   f"applying '{chosen.id}' ({chosen.exception_type.key}), ignoring {', '.join(discarded)}")
        logger.warning(message)
        anomaly = ScheduleAnomaly(
            kind=AnomalyType.MULTIPLE_EFFECTIVE_EXCEPTIONS,
            date=target,
            user_id=user_id,
            chosen_id=chosen.id,
            discarded_ids=discarded,
            message=message
        )
        return chosen, (anomaly,)

    def detect_conflicts(self, user_id: str, target: date) -> List[ExceptionConflict]:
        """Pairs of effective exceptions for the same user and date that contradict each other"""
        effective = self.effective_exceptions_for(user_id, target)
        conflicts = []
        for i, first in enumerate(effective):
            for second in effective[i + 1:]:
                if are_conflicting(first, second):
                    conflicts.append(ExceptionConflict(
                        first, second,
                        f"{first.exception_type.key} conflicts with {second.exception_type.key} "
                        f"for user {user_id} on {target}"
                    ))
        return conflicts

    # ==================== APPLYING ====================

    def apply(self, day: WorkScheduleDay, exception: ShiftException, user_id: str,
              shifts: Dict[str, Shift],
              partner_shifts: Optional[Tuple[Shift, ...]] = None) -> WorkScheduleDay:
        """
        Apply one exception to the user's placement in day.

        Args:
            day: Day with the user already placed in their team's shift
            exception: Exception to apply
            user_id: User the exception belongs to
            shifts: Shift catalog used to look up ``new_shift_id``
            partner_shifts: Shifts the swap partner works on this date, None when
                the partner could not be resolved

        Returns:
            New day with ``applied_exception`` set, or the unchanged day when the
            exception cannot be applied
        """
        exception_type = exception.exception_type

        if exception_type.is_absence:
            updated = self._apply_absence(day, user_id)
        elif exception_type in (ExceptionType.CHANGE_COMPANY, ExceptionType.CHANGE_SPECIAL):
            updated = self._apply_shift_change(day, exception, user_id, shifts)
        elif exception_type == ExceptionType.CHANGE_SWAP:
            updated = self._apply_swap(day, exception, user_id, partner_shifts)
        elif exception_type.is_reduction:
            updated = self._apply_time_reduction(day, exception, user_id)
        else:
            updated = self._apply_custom(day, exception, user_id, shifts)

        if updated is None:
            return day
        logger.debug(f"Applied {exception_type.key} exception '{exception.id}' for user {user_id} on {day.date}")
        return replace(updated, applied_exception=exception)

    def _apply_absence(self, day: WorkScheduleDay, user_id: str) -> WorkScheduleDay:
        return replace(day, shifts=tuple(ws.without_user(user_id) for ws in day.shifts))

    def _place_user(self, day: WorkScheduleDay, user_id: str, shift: Shift,
                    start_time: Optional[time] = None,
                    end_time: Optional[time] = None) -> WorkScheduleDay:
        """Add the user to an existing entry of shift, or to a personal entry"""
        retimed = start_time is not None or end_time is not None
        entries = list(day.shifts)
        if not retimed:
            for i, ws in enumerate(entries):
                if ws.shift.id == shift.id and not ws.is_retimed:
                    entries[i] = ws.with_user(user_id)
                    return replace(day, shifts=tuple(entries))
        entries.append(WorkScheduleShift(shift=shift, user_ids=(user_id,),
                                         start_time=start_time, end_time=end_time))
        return replace(day, shifts=tuple(entries))

    def _apply_shift_change(self, day: WorkScheduleDay, exception: ShiftException,
                            user_id: str, shifts: Dict[str, Shift]) -> Optional[WorkScheduleDay]:
        new_shift = shifts.get(exception.new_shift_id) if exception.new_shift_id else None
        if new_shift is None:
            logger.warning(f"Exception '{exception.id}' references unknown shift "
                           f"'{exception.new_shift_id}'; schedule left unchanged")
            return None
        cleared = self._apply_absence(day, user_id)
        return self._place_user(cleared, user_id, new_shift,
                                exception.new_start_time, exception.new_end_time)

    def _apply_swap(self, day: WorkScheduleDay, exception: ShiftException, user_id: str,
                    partner_shifts: Optional[Tuple[Shift, ...]]) -> Optional[WorkScheduleDay]:
        if not exception.swap_with_user_id or partner_shifts is None:
            logger.warning(f"Swap exception '{exception.id}' has no resolvable partner; "
                           f"schedule left unchanged")
            return None
        swapped = self._apply_absence(day, user_id)
        for shift in partner_shifts:
            swapped = self._place_user(swapped, user_id, shift)
        return swapped

    def _apply_time_reduction(self, day: WorkScheduleDay, exception: ShiftException,
                              user_id: str) -> Optional[WorkScheduleDay]:
        if (exception.new_start_time is None and exception.new_end_time is None
                and not exception.duration_minutes):
            logger.warning(f"Reduction exception '{exception.id}' carries no new times; "
                           f"schedule left unchanged")
            return None
        if exception.duration_minutes is not None and not 0 < exception.duration_minutes < 24 * 60:
            logger.warning(f"Reduction exception '{exception.id}' has an invalid duration "
                           f"of {exception.duration_minutes} minutes; schedule left unchanged")
            return None

        user_entries = day.shifts_for_user(user_id)
        if not user_entries:
            logger.warning(f"Reduction exception '{exception.id}' targets user {user_id} "
                           f"who is not working on {day.date}")
            return None

        reduced = self._apply_absence(day, user_id)
        for ws in user_entries:
            start = exception.new_start_time or ws.effective_start
            if exception.new_end_time is not None:
                end = exception.new_end_time
            elif exception.duration_minutes:
                end = _add_minutes(start, exception.duration_minutes)
            else:
                end = ws.effective_end
            reduced = self._place_user(reduced, user_id, ws.shift, start, end)
        return reduced

    def _apply_custom(self, day: WorkScheduleDay, exception: ShiftException, user_id: str,
                      shifts: Dict[str, Shift]) -> Optional[WorkScheduleDay]:
        custom_type = exception.get_metadata(CUSTOM_TYPE_KEY)

        if custom_type == CUSTOM_OVERRIDE:
            return self._apply_shift_change(day, exception, user_id, shifts)

        if custom_type == CUSTOM_EXTRA_SHIFT:
            extra = shifts.get(exception.new_shift_id) if exception.new_shift_id else None
            if (extra is None and exception.new_start_time and exception.new_end_time
                    and exception.new_start_time != exception.new_end_time):
                extra = Shift(
                    id=exception.new_shift_id or f"extra_{exception.id}",
                    name="Extra shift",
                    start_time=exception.new_start_time,
                    end_time=exception.new_end_time
                )
                return self._place_user(day, user_id, extra,
                                        exception.new_start_time, exception.new_end_time)
            if extra is None:
                logger.warning(f"Extra shift exception '{exception.id}' has neither a known shift "
                               f"nor times; schedule left unchanged")
                return None
            return self._place_user(day, user_id, extra)

        logger.warning(f"Unknown custom exception type '{custom_type}' on '{exception.id}'")
        return None
