"""
Schedule Day Builder

Composes the schedule sources, the assignment resolver and the exception
overlay into the computed schedule of one date, either team-level or seen
from one user.
"""

import logging
from dataclasses import replace
from datetime import date
from typing import Dict, Optional, Tuple

from .assignment_resolver import AssignmentResolver
from .exception_overlay import ExceptionOverlay
from .models import (
    DayResult, ExceptionType, InvalidConfiguration, Shift, ShiftException, Unassigned,
    UserTeamAssignment, WorkScheduleDay
)
from .sources import ScheduleSource

logger = logging.getLogger(__name__)


class ScheduleDayBuilder:
    """Stateless per call; holds only read-only collaborators"""

    def __init__(self, standard_source: ScheduleSource, sources: Dict[str, ScheduleSource],
                 resolver: AssignmentResolver, overlay: ExceptionOverlay,
                 shifts: Dict[str, Shift]):
        self.standard_source = standard_source
        self.sources = dict(sources)
        self.sources.setdefault(standard_source.rule_id, standard_source)
        self.resolver = resolver
        self.overlay = overlay
        self.shifts = shifts

    def source_for(self, assignment: Optional[UserTeamAssignment]) -> ScheduleSource:
        """Source selected by the assignment's recurrence rule (standard when unset)"""
        if assignment is None or assignment.recurrence_rule_id is None:
            return self.standard_source
        source = self.sources.get(assignment.recurrence_rule_id)
        if source is None:
            raise InvalidConfiguration(
                f"Assignment '{assignment.id}' references unknown rule '{assignment.recurrence_rule_id}'"
            )
        return source

    def build(self, target: date, user_id: Optional[str] = None) -> DayResult:
        if user_id is None:
            return self.standard_source.base_day(target)

        resolution = self.resolver.resolve(user_id, target)
        if not resolution.is_assigned:
            logger.debug(f"User {user_id} has no team on {target}")
            return Unassigned(date=target, user_id=user_id, anomalies=resolution.anomalies)

        team = resolution.team
        base = self.source_for(resolution.assignment).base_day(target)
        placed = tuple(ws.with_user(user_id) if team.id in ws.teams else ws for ws in base.shifts)
        day = replace(base, shifts=placed, user_id=user_id, team=team)

        exception, exception_anomalies = self.overlay.resolve(user_id, target)
        if exception is not None:
            partner_shifts = None
            if exception.exception_type == ExceptionType.CHANGE_SWAP:
                partner_shifts = self._partner_shifts(exception, target)
            day = self.overlay.apply(day, exception, user_id, self.shifts, partner_shifts)

        anomalies = resolution.anomalies + exception_anomalies
        if anomalies:
            day = replace(day, anomalies=anomalies)
        logger.debug(f"Built schedule for user {user_id} on {target}: team {team.id}, "
                     f"{len(day.user_shifts)} shift(s)")
        return day

    def _partner_shifts(self, exception: ShiftException, target: date) -> Optional[Tuple[Shift, ...]]:
        """Base shifts of the swap partner's team, None when the partner has no team"""
        partner_id = exception.swap_with_user_id
        if not partner_id:
            return None
        resolution = self.resolver.resolve(partner_id, target)
        if not resolution.is_assigned:
            return None
        base = self.source_for(resolution.assignment).base_day(target)
        return tuple(ws.shift for ws in base.shifts if resolution.team.id in ws.teams)
