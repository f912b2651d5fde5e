"""
Rotation Table for the 4-2 Shift Cycle

Maps calendar dates onto a position inside the cycle and, for the standard
nine-team scheme, each cycle day onto the teams working morning, afternoon
and night shifts and the teams resting.
"""

import logging
from datetime import date
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple

from .models import InvalidConfiguration, STANDARD_TEAM_IDS

logger = logging.getLogger(__name__)


STANDARD_CYCLE_LENGTH = 18


def day_index(target: date, scheme_start_date: Optional[date]) -> int:
    """Whole days from the scheme start to target (negative before the start)"""
    if scheme_start_date is None:
        raise InvalidConfiguration("Scheme start date is not set")
    return (target - scheme_start_date).days


def day_in_cycle(target: date, scheme_start_date: Optional[date], cycle_length: int) -> int:
    """Position of target inside the cycle, always in [0, cycle_length)"""
    if cycle_length is None or cycle_length <= 0:
        raise InvalidConfiguration(f"Cycle length must be positive, got {cycle_length}")
    index = day_index(target, scheme_start_date)
    return ((index % cycle_length) + cycle_length) % cycle_length


class RotationSlot(Enum):
    MORNING = "M"
    AFTERNOON = "A"
    NIGHT = "N"
    REST = "R"

    @property
    def is_rest(self) -> bool:
        return self is RotationSlot.REST


WORKING_SLOTS = (RotationSlot.MORNING, RotationSlot.AFTERNOON, RotationSlot.NIGHT)

# Slot -> shift id in the standard shift catalog
SLOT_SHIFT_IDS: Dict[RotationSlot, str] = {
    RotationSlot.MORNING: "morning",
    RotationSlot.AFTERNOON: "afternoon",
    RotationSlot.NIGHT: "night",
}

# Four mornings, two off, four nights, two off, four afternoons, two off
STANDARD_BASE_SEQUENCE = "MMMMRRNNNNRRAAAARR"

# Each team runs the base sequence shifted back by its offset
STANDARD_TEAM_OFFSETS: Dict[str, int] = {
    "A": 0, "H": 2, "C": 4, "D": 6, "I": 8,
    "E": 10, "F": 12, "G": 14, "B": 16,
}


def rotate_pattern(pattern: str, offset: int) -> str:
    """Rotate a pattern string so that position 0 reads pattern[-offset]"""
    if not pattern:
        return pattern
    offset = offset % len(pattern)
    return pattern[-offset:] + pattern[:-offset] if offset else pattern


class RotationTable:
    """Team x cycle-day grid of rotation slots, built once and read-only"""

    def __init__(self, base_sequence: str = STANDARD_BASE_SEQUENCE,
                 team_offsets: Optional[Dict[str, int]] = None,
                 teams_per_shift: int = 2):
        if not base_sequence:
            raise InvalidConfiguration("Rotation base sequence is empty")
        if team_offsets is None:
            team_offsets = STANDARD_TEAM_OFFSETS

        try:
            base = tuple(RotationSlot(code) for code in base_sequence)
        except ValueError as e:
            raise InvalidConfiguration(f"Invalid rotation code in '{base_sequence}': {e}")

        self.cycle_length = len(base)
        self.teams_per_shift = teams_per_shift
        self.team_ids: Tuple[str, ...] = tuple(sorted(team_offsets))
        self._rows: Dict[str, Tuple[RotationSlot, ...]] = {}
        for team_id in self.team_ids:
            row = rotate_pattern(base_sequence, team_offsets[team_id])
            self._rows[team_id] = tuple(RotationSlot(code) for code in row)

        # Precompute per-day lookups; team ids stay sorted within each slot
        self._by_day: Tuple[Dict[RotationSlot, Tuple[str, ...]], ...] = tuple(
            {
                slot: tuple(t for t in self.team_ids if self._rows[t][day] is slot)
                for slot in RotationSlot
            }
            for day in range(self.cycle_length)
        )
        logger.debug(f"Rotation table built: {len(self.team_ids)} teams x {self.cycle_length} days")

    def _check_day(self, cycle_day: int):
        if not 0 <= cycle_day < self.cycle_length:
            raise ValueError(f"Cycle day {cycle_day} outside [0, {self.cycle_length})")

    def state_for(self, team_id: str, cycle_day: int) -> RotationSlot:
        """Slot of one team on one cycle day"""
        self._check_day(cycle_day)
        if team_id not in self._rows:
            raise ValueError(f"Unknown team '{team_id}'")
        return self._rows[team_id][cycle_day]

    def teams_for_day(self, cycle_day: int) -> Dict[RotationSlot, Tuple[str, ...]]:
        """Working teams per shift slot on a cycle day"""
        self._check_day(cycle_day)
        day = self._by_day[cycle_day]
        return {slot: day[slot] for slot in WORKING_SLOTS}

    def teams_for_slot(self, cycle_day: int, slot: RotationSlot) -> Tuple[str, ...]:
        self._check_day(cycle_day)
        return self._by_day[cycle_day][slot]

    def resting_teams(self, cycle_day: int) -> Tuple[str, ...]:
        self._check_day(cycle_day)
        return self._by_day[cycle_day][RotationSlot.REST]

    def row(self, team_id: str) -> Tuple[RotationSlot, ...]:
        return self._rows[team_id]

    def verify(self, expected_teams: Iterable[str] = STANDARD_TEAM_IDS) -> bool:
        """
        Check the coverage invariant on every cycle day.

        Each working slot must hold exactly ``teams_per_shift`` teams, the
        remaining teams rest, and slots are pairwise disjoint.

        Raises:
            InvalidConfiguration: on the first day that breaks the invariant
        """
        expected = set(expected_teams)
        if set(self.team_ids) != expected:
            raise InvalidConfiguration(
                f"Rotation teams {sorted(self.team_ids)} do not match {sorted(expected)}"
            )
        expected_rest = len(expected) - self.teams_per_shift * len(WORKING_SLOTS)

        for cycle_day in range(self.cycle_length):
            seen = set()
            for slot in RotationSlot:
                teams = self._by_day[cycle_day][slot]
                wanted = expected_rest if slot.is_rest else self.teams_per_shift
                if len(teams) != wanted:
                    raise InvalidConfiguration(
                        f"Cycle day {cycle_day}: {slot.name} has {len(teams)} teams, expected {wanted}"
                    )
                if seen.intersection(teams):
                    raise InvalidConfiguration(f"Cycle day {cycle_day}: team in more than one slot")
                seen.update(teams)
            if seen != expected:
                raise InvalidConfiguration(f"Cycle day {cycle_day}: teams missing from rotation")
        return True

    def as_grid(self) -> Dict[str, str]:
        """Rows as code strings, e.g. {'A': 'MMMMRRNNNNRRAAAARR', ...}"""
        return {team_id: "".join(slot.value for slot in self._rows[team_id])
                for team_id in self.team_ids}


STANDARD_ROTATION = RotationTable()
