"""
Assignment Resolver

Finds the team a user belongs to on a given date from the user's
time-bounded team assignments.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from .models import (
    AnomalyType, AssignmentStatus, InvalidConfiguration, ScheduleAnomaly, Team,
    UserTeamAssignment
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssignmentResolution:
    """Outcome of resolving a user's team on one date"""
    user_id: str
    date: date
    assignment: Optional[UserTeamAssignment] = None
    team: Optional[Team] = None
    anomalies: Tuple[ScheduleAnomaly, ...] = ()

    @property
    def is_assigned(self) -> bool:
        return self.team is not None


def _precedence(assignment: UserTeamAssignment):
    # Highest priority first, then most recently created, then id
    return (-assignment.priority.value, -assignment.created_at, assignment.id)


def find_overlapping(assignments: Iterable[UserTeamAssignment],
                     candidate: UserTeamAssignment) -> List[UserTeamAssignment]:
    """Existing non-cancelled assignments of the same user whose range meets candidate's"""
    return [
        existing for existing in assignments
        if existing.user_id == candidate.user_id
        and existing.id != candidate.id
        and existing.status != AssignmentStatus.CANCELLED
        and existing.overlaps(candidate)
    ]


class AssignmentResolver:
    """Read-only index of assignments by user"""

    def __init__(self, assignments: Iterable[UserTeamAssignment], teams: Iterable[Team],
                 include_pending: bool = False, include_expired: bool = True):
        self.teams: Dict[str, Team] = {team.id: team for team in teams}
        self.include_pending = include_pending
        self.include_expired = include_expired
        self._by_user: Dict[str, Tuple[UserTeamAssignment, ...]] = {}

        grouped: Dict[str, List[UserTeamAssignment]] = {}
        for assignment in assignments:
            if assignment.team_id not in self.teams:
                raise InvalidConfiguration(
                    f"Assignment '{assignment.id}' references unknown team '{assignment.team_id}'"
                )
            grouped.setdefault(assignment.user_id, []).append(assignment)
        for user_id, user_assignments in grouped.items():
            self._by_user[user_id] = tuple(sorted(user_assignments, key=lambda a: (a.start_date, a.id)))

    @property
    def user_ids(self) -> List[str]:
        return sorted(self._by_user)

    def assignments_for(self, user_id: str) -> Tuple[UserTeamAssignment, ...]:
        return self._by_user.get(user_id, ())

    def _is_candidate_status(self, status: AssignmentStatus) -> bool:
        if status == AssignmentStatus.ACTIVE:
            return True
        if status == AssignmentStatus.EXPIRED:
            return self.include_expired
        if status == AssignmentStatus.PENDING:
            return self.include_pending
        return False

    def candidates(self, user_id: str, target: date) -> List[UserTeamAssignment]:
        """Assignments that count for user on target, best first"""
        found = [
            assignment for assignment in self.assignments_for(user_id)
            if assignment.covers(target) and self._is_candidate_status(assignment.status)
        ]
        return sorted(found, key=_precedence)

    def resolve(self, user_id: str, target: date) -> AssignmentResolution:
        candidates = self.candidates(user_id, target)
        if not candidates:
            return AssignmentResolution(user_id=user_id, date=target)

        chosen = candidates[0]
        anomalies = ()
        if len(candidates) > 1:
            discarded = tuple(a.id for a in candidates[1:])
            message = (f"User {user_id} has {len(candidates)} overlapping assignments on {target}; "
                       f"using '{chosen.id}' (team {chosen.team_id}), ignoring {', '.join(discarded)}")
            logger.warning(message)
            anomalies = (ScheduleAnomaly(
                kind=AnomalyType.ASSIGNMENT_OVERLAP,
                date=target,
                user_id=user_id,
                chosen_id=chosen.id,
                discarded_ids=discarded,
                message=message
            ),)

        return AssignmentResolution(
            user_id=user_id,
            date=target,
            assignment=chosen,
            team=self.teams[chosen.team_id],
            anomalies=anomalies
        )

    def team_for(self, user_id: str, target: date) -> Optional[Team]:
        return self.resolve(user_id, target).team

    def users_in_team(self, team_id: str, target: date) -> List[str]:
        """Users whose resolved team on target is team_id"""
        users = []
        for user_id in self.user_ids:
            team = self.team_for(user_id, target)
            if team is not None and team.id == team_id:
                users.append(user_id)
        return users

    def find_overlaps(self, user_id: str) -> List[Tuple[UserTeamAssignment, UserTeamAssignment]]:
        """Pairs of non-cancelled assignments of a user with intersecting ranges"""
        live = [a for a in self.assignments_for(user_id) if a.status != AssignmentStatus.CANCELLED]
        overlaps = []
        for i, first in enumerate(live):
            for second in live[i + 1:]:
                if first.overlaps(second):
                    overlaps.append((first, second))
        return overlaps
