"""
Shift Cycle Engine

Public entry point of the package. Holds an immutable configuration
snapshot and a schedule cache, and answers schedule queries for dates,
teams and users. All methods are safe to call from several threads.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from .assignment_resolver import AssignmentResolver
from .cache import ScheduleCache
from .day_builder import ScheduleDayBuilder
from .exception_overlay import ExceptionOverlay
from .models import (
    DayResult, ExceptionType, InvalidConfiguration, ProtectedRuleError, RecurrenceRule, Shift,
    ShiftException, Team, UserTeamAssignment, WorkScheduleDay, STANDARD_SHIFTS, STANDARD_TEAMS
)
from .rotation import day_index
from .rules import STANDARD_RULE_ID, index_rules, reanchor_standard_rules
from .sources import GenericRecurrenceSource, ScheduleSource, Standard42Source

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduleConfig:
    """Engine configuration; changed only by building a new instance"""
    scheme_start_date: Optional[date]
    teams: Tuple[Team, ...] = STANDARD_TEAMS
    shifts: Tuple[Shift, ...] = STANDARD_SHIFTS
    rules: Tuple[RecurrenceRule, ...] = ()
    rule_shift_ids: Dict[str, str] = field(default_factory=dict)  # {rule_id: shift_id}
    default_shift_id: str = "morning"
    team_offsets: Dict[str, int] = field(default_factory=dict)  # {team_id: days} for generic rules
    include_pending_assignments: bool = False
    include_expired_assignments: bool = True
    exception_priorities: Dict[ExceptionType, int] = field(default_factory=dict)
    cache_max_entries: Optional[int] = None

    @property
    def shift_catalog(self) -> Dict[str, Shift]:
        return {shift.id: shift for shift in self.shifts}


POLICY_FIELDS = (
    "include_pending_assignments", "include_expired_assignments", "exception_priorities",
    "cache_max_entries", "rule_shift_ids", "default_shift_id", "team_offsets",
)


@dataclass(frozen=True)
class EngineState:
    """Validated snapshot shared by readers; replaced as a whole on every change"""
    config: ScheduleConfig
    assignments: Tuple[UserTeamAssignment, ...]
    exceptions: Tuple[ShiftException, ...]
    standard_source: Standard42Source
    builder: ScheduleDayBuilder

    @property
    def resolver(self) -> AssignmentResolver:
        return self.builder.resolver


def build_state(config: ScheduleConfig, assignments: Iterable[UserTeamAssignment] = (),
                exceptions: Iterable[ShiftException] = ()) -> EngineState:
    """
    Validate a configuration and wire the engine components for it.

    Raises:
        InvalidConfiguration: if anything in the configuration is inconsistent
    """
    if config.scheme_start_date is None:
        raise InvalidConfiguration("Scheme start date is not set")

    shifts = config.shift_catalog
    if len(shifts) != len(config.shifts):
        raise InvalidConfiguration("Duplicate shift ids in shift catalog")
    team_ids = [team.id for team in config.teams]
    if len(set(team_ids)) != len(team_ids):
        raise InvalidConfiguration("Duplicate team ids")

    rules = index_rules(config.rules)
    standard_source = Standard42Source(config.scheme_start_date, shifts, config.teams)

    sources: Dict[str, ScheduleSource] = {}
    for rule_id, rule in rules.items():
        if rule_id == STANDARD_RULE_ID:
            continue
        shift_id = config.rule_shift_ids.get(rule_id, config.default_shift_id)
        if shift_id not in shifts:
            raise InvalidConfiguration(f"Rule '{rule_id}' is mapped to unknown shift '{shift_id}'")
        sources[rule_id] = GenericRecurrenceSource(rule, shifts[shift_id], config.teams,
                                                   config.team_offsets, shifts)

    assignments = tuple(assignments)
    for assignment in assignments:
        rule_id = assignment.recurrence_rule_id
        if rule_id is not None and rule_id != STANDARD_RULE_ID and rule_id not in sources:
            raise InvalidConfiguration(
                f"Assignment '{assignment.id}' references unknown rule '{rule_id}'"
            )

    exceptions = tuple(exceptions)
    resolver = AssignmentResolver(
        assignments, config.teams,
        include_pending=config.include_pending_assignments,
        include_expired=config.include_expired_assignments
    )
    overlay = ExceptionOverlay(exceptions, config.exception_priorities)
    builder = ScheduleDayBuilder(standard_source, sources, resolver, overlay, shifts)

    return EngineState(
        config=config,
        assignments=assignments,
        exceptions=exceptions,
        standard_source=standard_source,
        builder=builder
    )


class ShiftCycleEngine:
    """Thread-safe facade over the schedule computation"""

    def __init__(self, config: ScheduleConfig,
                 assignments: Iterable[UserTeamAssignment] = (),
                 exceptions: Iterable[ShiftException] = ()):
        self._lock = threading.Lock()
        self._state = build_state(config, assignments, exceptions)
        self.cache = ScheduleCache(config.cache_max_entries)
        logger.info(f"Shift cycle engine ready: scheme start {config.scheme_start_date}, "
                    f"{len(self._state.assignments)} assignments, {len(self._state.exceptions)} exceptions")

    # ==================== SNAPSHOT ACCESS ====================

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def config(self) -> ScheduleConfig:
        return self._state.config

    @property
    def teams(self) -> Tuple[Team, ...]:
        return self._state.standard_source.teams

    @property
    def user_ids(self) -> List[str]:
        return self._state.resolver.user_ids

    def _snapshot(self) -> Tuple[EngineState, ScheduleCache, int]:
        with self._lock:
            return self._state, self.cache, self.cache.generation

    def _team_id(self, team: Union[Team, str], state: EngineState) -> str:
        team_id = team.id if isinstance(team, Team) else team
        if team_id not in state.standard_source.team_ids:
            raise ValueError(f"Unknown team '{team_id}'")
        return team_id

    # ==================== SCHEDULE QUERIES ====================

    def _compute(self, target: date, user_id: Optional[str]) -> DayResult:
        state, cache, generation = self._snapshot()
        cached = cache.get(target, user_id)
        if cached is not None:
            return cached
        result = state.builder.build(target, user_id)
        cache.put(target, user_id, result, generation)
        return result

    def compute_day(self, target: date) -> WorkScheduleDay:
        """Team-level schedule of the standard rotation on target"""
        return self._compute(target, None)

    def compute_day_for_user(self, target: date, user_id: str) -> DayResult:
        """Schedule of target seen from user_id, or Unassigned"""
        return self._compute(target, str(user_id))

    def compute_range(self, start: date, end: date,
                      user_id: Optional[str] = None) -> Dict[date, DayResult]:
        """
        Schedules for every date in [start, end], in date order.

        Raises:
            ValueError: if end is before start
        """
        if end < start:
            raise ValueError(f"End date {end} is before start date {start}")
        days: Dict[date, DayResult] = {}
        current = start
        while current <= end:
            if user_id is None:
                days[current] = self.compute_day(current)
            else:
                days[current] = self.compute_day_for_user(current, user_id)
            current += timedelta(days=1)
        return days

    def day_in_cycle(self, target: date) -> int:
        return self._state.standard_source.day_in_cycle(target)

    def days_from_scheme_start(self, target: date) -> int:
        return day_index(target, self._state.config.scheme_start_date)

    def is_working_day(self, target: date, team: Union[Team, str, None] = None) -> bool:
        """With a team: whether it works on target. Without: whether any team works"""
        state = self._state
        if team is None:
            return bool(state.standard_source.base_day(target).working_teams)
        return state.standard_source.is_team_working(self._team_id(team, state), target)

    def is_rest_day(self, target: date, team: Union[Team, str]) -> bool:
        state = self._state
        return not state.standard_source.is_team_working(self._team_id(team, state), target)

    def next_working_day(self, team: Union[Team, str], from_date: date) -> date:
        """First working day of team strictly after from_date"""
        state = self._state
        return state.standard_source.next_working_day(self._team_id(team, state), from_date)

    def previous_working_day(self, team: Union[Team, str], from_date: date) -> date:
        """Last working day of team strictly before from_date"""
        state = self._state
        return state.standard_source.previous_working_day(self._team_id(team, state), from_date)

    def team_for(self, user_id: str, target: date) -> Optional[Team]:
        return self._state.resolver.team_for(str(user_id), target)

    # ==================== ADMINISTRATION ====================

    def _swap(self, update_config: Optional[Callable[[ScheduleConfig], ScheduleConfig]] = None,
              assignments: Optional[Iterable[UserTeamAssignment]] = None,
              exceptions: Optional[Iterable[ShiftException]] = None,
              reason: str = "configuration changed"):
        """
        Build and publish a new state from the current one.

        update_config runs under the writer lock against the config in force at
        that moment, so concurrent administrative changes compose instead of
        overwriting each other.
        """
        with self._lock:
            current = self._state
            config = current.config
            if update_config is not None:
                config = update_config(config)
            new_state = build_state(
                config,
                assignments if assignments is not None else current.assignments,
                exceptions if exceptions is not None else current.exceptions
            )
            self._state = new_state
            # Readers holding the old cache see its generation bumped
            self.cache.invalidate()
            if new_state.config.cache_max_entries != self.cache.max_entries:
                self.cache = ScheduleCache(new_state.config.cache_max_entries)
        logger.info(f"Engine state replaced: {reason}")

    def update_scheme_start_date(self, new_date: Optional[date]):
        """Re-anchor the rotation; protected rules move with it"""
        if new_date is None:
            raise InvalidConfiguration("Scheme start date cannot be cleared")

        def reanchor(config: ScheduleConfig) -> ScheduleConfig:
            return replace(
                config,
                scheme_start_date=new_date,
                rules=reanchor_standard_rules(config.rules, new_date)
            )

        self._swap(update_config=reanchor, reason=f"scheme start date set to {new_date}")

    def update_rules(self, rules: Iterable[RecurrenceRule]):
        """
        Replace the recurrence rule set.

        Raises:
            ProtectedRuleError: if a protected rule of the current set is missing;
                protected rules can only be deactivated
        """
        rules = tuple(rules)
        new_ids = {rule.id for rule in rules}

        def with_rules(config: ScheduleConfig) -> ScheduleConfig:
            dropped = sorted(rule.id for rule in config.rules
                             if rule.protected and rule.id not in new_ids)
            if dropped:
                raise ProtectedRuleError(
                    f"Protected rules cannot be removed, only deactivated: {', '.join(dropped)}"
                )
            return replace(config, rules=rules)

        self._swap(update_config=with_rules, reason=f"{len(rules)} recurrence rules loaded")

    def replace_assignments(self, assignments: Iterable[UserTeamAssignment]):
        assignments = tuple(assignments)
        self._swap(assignments=assignments, reason=f"{len(assignments)} assignments loaded")

    def replace_exceptions(self, exceptions: Iterable[ShiftException]):
        exceptions = tuple(exceptions)
        self._swap(exceptions=exceptions, reason=f"{len(exceptions)} exceptions loaded")

    def update_policy(self, **changes: Any):
        """Change policy flags such as include_pending_assignments"""
        unknown = set(changes) - set(POLICY_FIELDS)
        if unknown:
            raise ValueError(f"Unknown policy settings: {', '.join(sorted(unknown))}")
        self._swap(update_config=lambda config: replace(config, **changes),
                   reason=f"policy updated ({', '.join(sorted(changes))})")

    def invalidate_cache(self, start: Optional[date] = None, end: Optional[date] = None) -> int:
        return self.cache.invalidate(start, end)

    def cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats()
