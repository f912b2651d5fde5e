"""
Schedule Sources

A schedule source produces the base (team-level) pattern for a date before
any user assignment or exception is considered. Two variants exist: the
standard 4-2 rotation over nine teams, and a generic recurrence rule that
puts teams on one shift, or on a per-cycle-day shift sequence, whenever the
rule is active.
"""

import logging
from abc import ABC, abstractmethod
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from .models import (
    InvalidConfiguration, NoActiveDateInRange, RecurrenceRule, Shift, Team,
    WorkScheduleDay, WorkScheduleShift, Frequency, STANDARD_TEAMS
)
from .recurrence import RuleEvaluator
from .rotation import (
    RotationTable, STANDARD_ROTATION, SLOT_SHIFT_IDS, WORKING_SLOTS, day_in_cycle
)
from .rules import STANDARD_RULE_ID

logger = logging.getLogger(__name__)


# Team-level day produced by a source, before per-user resolution
BaseDay = WorkScheduleDay


class ScheduleSource(ABC):
    """Common interface of the schedule source variants"""

    rule_id: str = ""

    def __init__(self, teams: Iterable[Team]):
        self.teams: Tuple[Team, ...] = tuple(sorted(teams, key=lambda team: team.id))
        self.team_ids: Tuple[str, ...] = tuple(team.id for team in self.teams)

    def _check_team(self, team_id: str):
        if team_id not in self.team_ids:
            raise ValueError(f"Unknown team '{team_id}' for source '{self.rule_id}'")

    @abstractmethod
    def day_in_cycle(self, target: date) -> Optional[int]:
        pass

    @abstractmethod
    def base_day(self, target: date) -> BaseDay:
        pass

    @abstractmethod
    def is_team_working(self, team_id: str, target: date) -> bool:
        pass

    @abstractmethod
    def next_working_day(self, team_id: str, from_date: date) -> date:
        """First working day of team_id strictly after from_date"""
        pass

    @abstractmethod
    def previous_working_day(self, team_id: str, from_date: date) -> date:
        """Last working day of team_id strictly before from_date"""
        pass


class Standard42Source(ScheduleSource):
    """Standard nine-team rotation anchored on the scheme start date"""

    rule_id = STANDARD_RULE_ID

    def __init__(self, scheme_start_date: Optional[date], shifts: Dict[str, Shift],
                 teams: Iterable[Team] = STANDARD_TEAMS,
                 table: RotationTable = STANDARD_ROTATION):
        super().__init__(teams)
        if scheme_start_date is None:
            raise InvalidConfiguration("Scheme start date is not set")

        table.verify(self.team_ids)
        missing = [shift_id for shift_id in SLOT_SHIFT_IDS.values() if shift_id not in shifts]
        if missing:
            raise InvalidConfiguration(f"Shift catalog is missing standard shifts: {', '.join(missing)}")

        self.scheme_start_date = scheme_start_date
        self.table = table
        self.slot_shifts = {slot: shifts[shift_id] for slot, shift_id in SLOT_SHIFT_IDS.items()}

    def day_in_cycle(self, target: date) -> int:
        return day_in_cycle(target, self.scheme_start_date, self.table.cycle_length)

    def base_day(self, target: date) -> BaseDay:
        cycle_day = self.day_in_cycle(target)
        shifts = tuple(
            WorkScheduleShift(shift=self.slot_shifts[slot],
                              teams=self.table.teams_for_slot(cycle_day, slot))
            for slot in WORKING_SLOTS
        )
        return BaseDay(
            date=target,
            shifts=shifts,
            off_teams=self.table.resting_teams(cycle_day),
            day_in_cycle=cycle_day,
            rule_id=self.rule_id
        )

    def is_team_working(self, team_id: str, target: date) -> bool:
        self._check_team(team_id)
        return not self.table.state_for(team_id, self.day_in_cycle(target)).is_rest

    def _scan(self, team_id: str, from_date: date, step: int) -> date:
        self._check_team(team_id)
        current = from_date
        for _ in range(self.table.cycle_length):
            current += timedelta(days=step)
            if self.is_team_working(team_id, current):
                return current
        raise NoActiveDateInRange(f"Team '{team_id}' never works in the rotation")

    def next_working_day(self, team_id: str, from_date: date) -> date:
        return self._scan(team_id, from_date, 1)

    def previous_working_day(self, team_id: str, from_date: date) -> date:
        return self._scan(team_id, from_date, -1)


class GenericRecurrenceSource(ScheduleSource):
    """
    Teams work on every date the recurrence rule is active.

    Without a shift sequence every active date is worked on ``shift``. A
    CUSTOM_CYCLE rule with a shift sequence picks the shift by cycle position,
    so one rule can rotate teams through several shifts. Per-team offsets
    shift each team's phase in days.
    """

    def __init__(self, rule: RecurrenceRule, shift: Shift,
                 teams: Iterable[Team] = STANDARD_TEAMS,
                 team_offsets: Optional[Dict[str, int]] = None,
                 shifts: Optional[Dict[str, Shift]] = None):
        super().__init__(teams)
        self.rule = rule.validate()
        self.rule_id = rule.id
        self.shift = shift
        self.evaluator = RuleEvaluator(self.rule)

        self.catalog: Dict[str, Shift] = dict(shifts or {})
        self.catalog.setdefault(shift.id, shift)
        unknown = sorted({s for s in rule.shift_sequence if s is not None} - set(self.catalog))
        if unknown:
            raise InvalidConfiguration(
                f"Rule '{rule.id}' shift sequence uses unknown shifts: {', '.join(unknown)}"
            )

        self.team_offsets = {team_id: 0 for team_id in self.team_ids}
        if team_offsets:
            unknown_teams = set(team_offsets) - set(self.team_ids)
            if unknown_teams:
                raise InvalidConfiguration(f"Offsets given for unknown teams: {sorted(unknown_teams)}")
            self.team_offsets.update(team_offsets)

    def day_in_cycle(self, target: date) -> Optional[int]:
        if self.rule.frequency != Frequency.CUSTOM_CYCLE:
            return None
        return day_in_cycle(target, self.rule.start_date, self.rule.cycle_length)

    def _shifted(self, team_id: str, target: date) -> date:
        return target - timedelta(days=self.team_offsets[team_id])

    def shift_for(self, team_id: str, target: date) -> Optional[Shift]:
        """Shift team_id works on target, None when it is off"""
        self._check_team(team_id)
        shifted = self._shifted(team_id, target)
        if not self.evaluator.is_active_on(shifted):
            return None
        if not self.rule.shift_sequence:
            return self.shift
        position = day_in_cycle(shifted, self.rule.start_date, self.rule.cycle_length)
        return self.catalog[self.rule.shift_sequence[position]]

    def base_day(self, target: date) -> BaseDay:
        by_shift: Dict[str, List[str]] = {}
        off = []
        for team_id in self.team_ids:
            shift = self.shift_for(team_id, target)
            if shift is None:
                off.append(team_id)
            else:
                by_shift.setdefault(shift.id, []).append(team_id)

        # Catalog order keeps the shift entries stable across days
        shifts = tuple(
            WorkScheduleShift(shift=self.catalog[shift_id], teams=tuple(by_shift[shift_id]))
            for shift_id in self.catalog if shift_id in by_shift
        )
        return BaseDay(
            date=target,
            shifts=shifts,
            off_teams=tuple(off),
            day_in_cycle=self.day_in_cycle(target),
            rule_id=self.rule_id
        )

    def is_team_working(self, team_id: str, target: date) -> bool:
        self._check_team(team_id)
        return self.evaluator.is_active_on(self._shifted(team_id, target))

    def next_working_day(self, team_id: str, from_date: date) -> date:
        self._check_team(team_id)
        offset = timedelta(days=self.team_offsets[team_id])
        return self.evaluator.next_active_date(from_date - offset, inclusive=False) + offset

    def previous_working_day(self, team_id: str, from_date: date) -> date:
        self._check_team(team_id)
        offset = timedelta(days=self.team_offsets[team_id])
        return self.evaluator.previous_active_date(from_date - offset, inclusive=False) + offset
