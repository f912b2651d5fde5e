"""
Recurrence Pattern Evaluation

Decides whether a recurrence rule is active on a given date and searches
forward or backward for the next active date. Results depend only on the
rule and the dates passed in.
"""

import calendar
import logging
from datetime import date, timedelta
from typing import List, Optional

from .models import EndType, Frequency, NoActiveDateInRange, RecurrenceRule
from .rotation import day_in_cycle

logger = logging.getLogger(__name__)


def _resolve_month_day(day: int, year: int, month: int) -> int:
    """Clamp a (possibly negative) month day to the actual month length"""
    month_length = calendar.monthrange(year, month)[1]
    if day > 0:
        return min(day, month_length)
    return max(month_length + day + 1, 1)


def _matches_month_day(rule: RecurrenceRule, target: date) -> bool:
    days = rule.by_month_day or (rule.start_date.day,)
    return any(_resolve_month_day(day, target.year, target.month) == target.day for day in days)


def _week_start(value: date, week_start: int) -> date:
    return value - timedelta(days=(value.weekday() - week_start) % 7)


def _matches_pattern(rule: RecurrenceRule, target: date) -> bool:
    """Pattern test ignoring start/end bounds and occurrence counts"""
    start = rule.start_date
    frequency = rule.frequency

    if frequency == Frequency.DAILY:
        return (target - start).days % rule.interval == 0

    if frequency == Frequency.WEEKLY:
        if target.weekday() not in rule.by_day:
            return False
        weeks = (_week_start(target, rule.week_start) - _week_start(start, rule.week_start)).days // 7
        return weeks % rule.interval == 0

    if frequency == Frequency.MONTHLY:
        months = (target.year - start.year) * 12 + target.month - start.month
        if months % rule.interval != 0:
            return False
        if rule.by_month and target.month not in rule.by_month:
            return False
        return _matches_month_day(rule, target)

    if frequency == Frequency.YEARLY:
        if (target.year - start.year) % rule.interval != 0:
            return False
        if target.month not in (rule.by_month or (start.month,)):
            return False
        return _matches_month_day(rule, target)

    if frequency == Frequency.CUSTOM_CYCLE:
        position = day_in_cycle(target, start, rule.cycle_length)
        if rule.shift_sequence:
            return rule.shift_sequence[position] is not None
        work = rule.work_days if rule.work_days is not None else rule.cycle_length
        rest = rule.rest_days if rule.rest_days is not None else rule.cycle_length - work
        period = work + rest
        if period <= 0:
            return False
        return position % period < work

    raise ValueError(f"Unsupported frequency: {frequency}")


def scan_horizon(rule: RecurrenceRule) -> int:
    """Number of days after which the pattern is guaranteed to repeat"""
    frequency = rule.frequency
    if frequency == Frequency.DAILY:
        return rule.interval
    if frequency == Frequency.WEEKLY:
        return 7 * rule.interval + 7
    if frequency == Frequency.MONTHLY:
        return 31 * 12 * rule.interval + 31
    if frequency == Frequency.YEARLY:
        return 366 * 4 * rule.interval
    return rule.cycle_length or 1


def last_occurrence(rule: RecurrenceRule) -> Optional[date]:
    """
    Last date on which a bounded rule is active.

    Returns None for rules that never end, or for bounded rules that never
    produce a single occurrence.
    """
    if rule.end_type == EndType.NEVER:
        return None

    horizon = scan_horizon(rule)
    current = rule.start_date
    last_found = None
    found = 0
    gap = 0
    while True:
        if rule.end_type == EndType.UNTIL_DATE and current > rule.end_date:
            return last_found
        if _matches_pattern(rule, current):
            found += 1
            last_found = current
            gap = 0
            if rule.end_type == EndType.COUNT and found >= rule.count:
                return last_found
        else:
            gap += 1
            if gap > horizon:
                # Pattern can no longer fire
                return last_found
        current += timedelta(days=1)


class RuleEvaluator:
    """
    Evaluates one recurrence rule.

    The last occurrence of a COUNT-bounded rule is found once, when the
    evaluator is built, and kept for its lifetime. Schedule sources hold one
    evaluator per rule; the module-level functions build a throwaway one.
    """

    def __init__(self, rule: RecurrenceRule):
        self.rule = rule
        self.horizon = scan_horizon(rule)
        self._count_limit = last_occurrence(rule) if rule.end_type == EndType.COUNT else None

    @property
    def upper_bound(self) -> Optional[date]:
        if self.rule.end_type == EndType.UNTIL_DATE:
            return self.rule.end_date
        return self._count_limit

    def is_active_on(self, target: date) -> bool:
        rule = self.rule
        if target < rule.start_date:
            return False
        if rule.end_type == EndType.UNTIL_DATE and target > rule.end_date:
            return False
        if not _matches_pattern(rule, target):
            return False
        if rule.end_type == EndType.COUNT:
            return self._count_limit is not None and target <= self._count_limit
        return True

    def next_active_date(self, from_date: date, inclusive: bool = True) -> date:
        rule = self.rule
        current = from_date if inclusive else from_date + timedelta(days=1)
        if current < rule.start_date:
            current = rule.start_date

        bound = self.upper_bound
        if rule.is_bounded and (bound is None or current > bound):
            raise NoActiveDateInRange(f"Rule '{rule.id}' has no occurrence on or after {current}")

        for _ in range(self.horizon + 1):
            if bound is not None and current > bound:
                break
            if self.is_active_on(current):
                return current
            current += timedelta(days=1)

        raise NoActiveDateInRange(f"Rule '{rule.id}' never fires after {from_date}")

    def previous_active_date(self, from_date: date, inclusive: bool = True) -> date:
        rule = self.rule
        current = from_date if inclusive else from_date - timedelta(days=1)
        bound = self.upper_bound
        if bound is not None and current > bound:
            current = bound
        elif rule.is_bounded and bound is None:
            raise NoActiveDateInRange(f"Rule '{rule.id}' has no occurrences")

        for _ in range(self.horizon + 1):
            if current < rule.start_date:
                break
            if self.is_active_on(current):
                return current
            current -= timedelta(days=1)

        raise NoActiveDateInRange(f"Rule '{rule.id}' has no occurrence on or before {from_date}")

    def occurrences_between(self, start: date, end: date) -> List[date]:
        if end < start:
            raise ValueError(f"End date {end} is before start date {start}")

        current = max(start, self.rule.start_date)
        if self.rule.is_bounded:
            bound = self.upper_bound
            if bound is None:
                return []
            end = min(end, bound)

        occurrences = []
        while current <= end:
            if self.is_active_on(current):
                occurrences.append(current)
            current += timedelta(days=1)
        return occurrences


def is_active_on(rule: RecurrenceRule, target: date) -> bool:
    """True if the rule produces an occurrence on target"""
    return RuleEvaluator(rule).is_active_on(target)


def next_active_date(rule: RecurrenceRule, from_date: date, inclusive: bool = True) -> date:
    """
    First active date on or after from_date (strictly after when not inclusive).

    Raises:
        NoActiveDateInRange: when the rule has ended or never fires again
    """
    return RuleEvaluator(rule).next_active_date(from_date, inclusive)


def previous_active_date(rule: RecurrenceRule, from_date: date, inclusive: bool = True) -> date:
    """
    Last active date on or before from_date (strictly before when not inclusive).

    Raises:
        NoActiveDateInRange: when no occurrence exists before from_date
    """
    return RuleEvaluator(rule).previous_active_date(from_date, inclusive)


def occurrences_between(rule: RecurrenceRule, start: date, end: date) -> List[date]:
    """All active dates in [start, end], in order"""
    return RuleEvaluator(rule).occurrences_between(start, end)


def shift_id_on(rule: RecurrenceRule, target: date) -> Optional[str]:
    """Shift id the rule's shift sequence assigns to target, None on rest days or without a sequence"""
    if not rule.shift_sequence:
        return None
    return rule.shift_sequence[day_in_cycle(target, rule.start_date, rule.cycle_length)]
