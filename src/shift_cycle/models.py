"""
Domain Models for the Shift Cycle Engine

Immutable records for teams, shifts, recurrence rules, shift exceptions,
user-to-team assignments and computed schedule days, together with the
error taxonomy shared by every engine component.
"""

from dataclasses import dataclass, replace
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


class ScheduleEngineError(Exception):
    """Base exception for shift cycle engine operations"""
    pass


class InvalidConfiguration(ScheduleEngineError):
    """Raised when the engine configuration cannot produce a schedule"""
    pass


class ProtectedRuleError(InvalidConfiguration):
    """Raised when a seeded standard rule would be removed"""
    pass


class NoActiveDateInRange(ScheduleEngineError):
    """Raised when a recurrence has no further occurrence after the query date"""
    pass


class AssignmentOverlap(ScheduleEngineError):
    """Raised on request when a user has overlapping team assignments"""
    pass


class MultipleEffectiveExceptions(ScheduleEngineError):
    """Raised on request when a user has several effective exceptions on one date"""
    pass


def parse_date(value: Union[str, date, None]) -> Optional[date]:
    """Parse an ISO date string (or pass a date through)"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


def parse_time(value: Union[str, time, None]) -> Optional[time]:
    """Parse an HH:MM[:SS] string (or pass a time through)"""
    if value is None or value == "":
        return None
    if isinstance(value, time):
        return value
    return time.fromisoformat(value)


def _iso(value: Union[date, time, None]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _minutes(value: time) -> int:
    return value.hour * 60 + value.minute


def span_minutes(start: time, end: time) -> int:
    """Minutes from start to end, wrapping past midnight when end <= start"""
    minutes = _minutes(end) - _minutes(start)
    if minutes <= 0:
        minutes += 24 * 60
    return minutes


# ==================== TEAMS & SHIFTS ====================

@dataclass(frozen=True)
class Team:
    """Rotation group (half-team) identified by a short code"""
    id: str
    name: str = ""
    active: bool = True

    @property
    def display_name(self) -> str:
        return self.name or f"Team {self.id}"

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "active": self.active}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Team':
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            active=data.get("active", True)
        )


STANDARD_TEAM_IDS = ("A", "B", "C", "D", "E", "F", "G", "H", "I")
STANDARD_TEAMS = tuple(Team(team_id, f"Team {team_id}") for team_id in STANDARD_TEAM_IDS)


class ShiftType(Enum):
    DAILY = "daily"
    CYCLE_42 = "cycle_42"


@dataclass(frozen=True)
class Shift:
    """Work shift template; end time may be on the following day"""
    id: str
    name: str
    start_time: time
    end_time: time
    break_minutes: Optional[int] = None
    color_hex: str = ""  # presentation only
    shift_type: ShiftType = ShiftType.DAILY

    def __post_init__(self):
        if self.start_time == self.end_time:
            raise InvalidConfiguration(f"Shift '{self.id}' start time equals end time")
        if self.break_minutes is not None:
            if self.break_minutes < 0:
                raise InvalidConfiguration(f"Shift '{self.id}' has a negative break")
            if self.break_minutes >= self.total_minutes:
                raise InvalidConfiguration(
                    f"Shift '{self.id}' break of {self.break_minutes} min is not shorter "
                    f"than the {self.total_minutes} min shift"
                )

    @property
    def crosses_midnight(self) -> bool:
        return self.end_time <= self.start_time

    @property
    def total_minutes(self) -> int:
        return span_minutes(self.start_time, self.end_time)

    @property
    def work_minutes(self) -> int:
        return self.total_minutes - (self.break_minutes or 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "startTime": _iso(self.start_time),
            "endTime": _iso(self.end_time),
            "breakMinutes": self.break_minutes,
            "colorHex": self.color_hex,
            "shiftType": self.shift_type.value
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Shift':
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            start_time=parse_time(data["startTime"]),
            end_time=parse_time(data["endTime"]),
            break_minutes=data.get("breakMinutes"),
            color_hex=data.get("colorHex", ""),
            shift_type=ShiftType(data.get("shiftType", ShiftType.DAILY.value))
        )


MORNING_SHIFT = Shift("morning", "Morning", time(5, 0), time(13, 0),
                      color_hex="#4CAF50", shift_type=ShiftType.CYCLE_42)
AFTERNOON_SHIFT = Shift("afternoon", "Afternoon", time(13, 0), time(21, 0),
                        color_hex="#FF9800", shift_type=ShiftType.CYCLE_42)
NIGHT_SHIFT = Shift("night", "Night", time(21, 0), time(5, 0),
                    color_hex="#3F51B5", shift_type=ShiftType.CYCLE_42)
STANDARD_SHIFTS = (MORNING_SHIFT, AFTERNOON_SHIFT, NIGHT_SHIFT)


# ==================== RECURRENCE RULES ====================

class Frequency(Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"
    CUSTOM_CYCLE = "CUSTOM_CYCLE"


class EndType(Enum):
    NEVER = "NEVER"
    UNTIL_DATE = "UNTIL_DATE"
    COUNT = "COUNT"


@dataclass(frozen=True)
class RecurrenceRule:
    """Named recurrence pattern referenced by schedule assignments"""
    id: str
    frequency: Frequency
    start_date: date
    name: str = ""
    description: str = ""
    interval: int = 1
    end_type: EndType = EndType.NEVER
    end_date: Optional[date] = None
    count: Optional[int] = None
    by_day: Tuple[int, ...] = ()  # weekday numbers, Monday == 0
    week_start: int = 0
    by_month_day: Tuple[int, ...] = ()
    by_month: Tuple[int, ...] = ()
    cycle_length: Optional[int] = None
    work_days: Optional[int] = None
    rest_days: Optional[int] = None
    shift_sequence: Tuple[Optional[str], ...] = ()  # shift id per cycle day, None for rest
    active: bool = True
    protected: bool = False
    created_at: float = 0.0

    def validate(self) -> 'RecurrenceRule':
        """Check rule consistency, raising InvalidConfiguration on the first problem"""
        if self.start_date is None:
            raise InvalidConfiguration(f"Rule '{self.id}' has no start date")
        if self.interval < 1:
            raise InvalidConfiguration(f"Rule '{self.id}' interval must be at least 1")

        if self.frequency == Frequency.CUSTOM_CYCLE:
            if self.cycle_length is None or self.cycle_length <= 0:
                raise InvalidConfiguration(f"Rule '{self.id}' requires a positive cycle length")
            work, rest = self.work_days, self.rest_days
            if (work is not None and work < 0) or (rest is not None and rest < 0):
                raise InvalidConfiguration(f"Rule '{self.id}' has negative work or rest days")
            if (work or 0) + (rest or 0) > self.cycle_length:
                raise InvalidConfiguration(
                    f"Rule '{self.id}': work days ({work}) + rest days ({rest}) "
                    f"exceed cycle length {self.cycle_length}"
                )
            if self.shift_sequence and len(self.shift_sequence) != self.cycle_length:
                raise InvalidConfiguration(
                    f"Rule '{self.id}': shift sequence has {len(self.shift_sequence)} entries "
                    f"for a cycle of {self.cycle_length} days"
                )
        elif self.shift_sequence:
            raise InvalidConfiguration(f"Rule '{self.id}': a shift sequence needs a CUSTOM_CYCLE rule")
        elif self.frequency == Frequency.WEEKLY:
            if not self.by_day:
                raise InvalidConfiguration(f"Rule '{self.id}': WEEKLY requires at least one weekday")
            if any(day < 0 or day > 6 for day in self.by_day):
                raise InvalidConfiguration(f"Rule '{self.id}': weekdays must be in 0..6")

        if any(day == 0 or abs(day) > 31 for day in self.by_month_day):
            raise InvalidConfiguration(f"Rule '{self.id}': month days must be in 1..31 or -31..-1")
        if any(month < 1 or month > 12 for month in self.by_month):
            raise InvalidConfiguration(f"Rule '{self.id}': months must be in 1..12")

        if self.end_type == EndType.UNTIL_DATE and self.end_date is None:
            raise InvalidConfiguration(f"Rule '{self.id}': UNTIL_DATE requires an end date")
        if self.end_type == EndType.COUNT and (self.count is None or self.count <= 0):
            raise InvalidConfiguration(f"Rule '{self.id}': COUNT requires a positive count")
        if self.end_date is not None and self.end_date < self.start_date:
            raise InvalidConfiguration(f"Rule '{self.id}': end date is before start date")
        return self

    @property
    def is_bounded(self) -> bool:
        return self.end_type != EndType.NEVER

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "frequency": self.frequency.value,
            "interval": self.interval,
            "startDate": _iso(self.start_date),
            "endType": self.end_type.value,
            "endDate": _iso(self.end_date),
            "count": self.count,
            "byDay": list(self.by_day),
            "weekStart": self.week_start,
            "byMonthDay": list(self.by_month_day),
            "byMonth": list(self.by_month),
            "cycleLength": self.cycle_length,
            "workDays": self.work_days,
            "restDays": self.rest_days,
            "shiftSequence": list(self.shift_sequence),
            "active": self.active,
            "protected": self.protected,
            "createdAt": self.created_at
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RecurrenceRule':
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            description=data.get("description", ""),
            frequency=Frequency(data["frequency"]),
            interval=data.get("interval", 1),
            start_date=parse_date(data.get("startDate")),
            end_type=EndType(data.get("endType", EndType.NEVER.value)),
            end_date=parse_date(data.get("endDate")),
            count=data.get("count"),
            by_day=tuple(data.get("byDay", [])),
            week_start=data.get("weekStart", 0),
            by_month_day=tuple(data.get("byMonthDay", [])),
            by_month=tuple(data.get("byMonth", [])),
            cycle_length=data.get("cycleLength"),
            work_days=data.get("workDays"),
            rest_days=data.get("restDays"),
            shift_sequence=tuple(data.get("shiftSequence", [])),
            active=data.get("active", True),
            protected=data.get("protected", False),
            created_at=data.get("createdAt", 0.0)
        )


# ==================== SHIFT EXCEPTIONS ====================

class ExceptionType(Enum):
    """Exception kinds; the flag is whether approval is required by default"""
    ABSENCE_VACATION = ("vacation", False)
    ABSENCE_SICK = ("sick_leave", False)
    ABSENCE_SPECIAL = ("special_leave", True)
    CHANGE_COMPANY = ("company_change", True)
    CHANGE_SWAP = ("shift_swap", True)
    CHANGE_SPECIAL = ("special_coverage", True)
    REDUCTION_PERSONAL = ("personal_reduction", True)
    REDUCTION_ROL = ("rol_reduction", False)
    REDUCTION_UNION = ("union_time", False)
    CUSTOM = ("custom_exception", True)

    def __init__(self, key: str, requires_approval: bool):
        self.key = key
        self.requires_approval_default = requires_approval

    @property
    def is_absence(self) -> bool:
        return self.name.startswith("ABSENCE_")

    @property
    def is_change(self) -> bool:
        return self.name.startswith("CHANGE_")

    @property
    def is_reduction(self) -> bool:
        return self.name.startswith("REDUCTION_")


class ApprovalStatus(Enum):
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


# Higher number wins when several exceptions hit the same user and date
DEFAULT_EXCEPTION_PRIORITIES: Dict[ExceptionType, int] = {
    ExceptionType.ABSENCE_VACATION: 10,
    ExceptionType.ABSENCE_SICK: 10,
    ExceptionType.ABSENCE_SPECIAL: 10,
    ExceptionType.CHANGE_COMPANY: 8,
    ExceptionType.CHANGE_SPECIAL: 7,
    ExceptionType.CHANGE_SWAP: 6,
    ExceptionType.REDUCTION_PERSONAL: 5,
    ExceptionType.REDUCTION_ROL: 5,
    ExceptionType.REDUCTION_UNION: 5,
    ExceptionType.CUSTOM: 4,
}


@dataclass(frozen=True)
class ShiftException:
    """Deviation from the computed base schedule for one user on one date"""
    id: str
    user_id: str
    target_date: date
    exception_type: ExceptionType
    status: ApprovalStatus = ApprovalStatus.DRAFT
    requires_approval: Optional[bool] = None
    approved_by_user_id: Optional[str] = None
    approved_by_user_name: Optional[str] = None
    approved_date: Optional[date] = None
    rejection_reason: Optional[str] = None
    new_shift_id: Optional[str] = None
    new_start_time: Optional[time] = None
    new_end_time: Optional[time] = None
    duration_minutes: Optional[int] = None
    swap_with_user_id: Optional[str] = None
    metadata: Tuple[Tuple[str, str], ...] = ()
    active: bool = True
    created_at: float = 0.0

    @property
    def needs_approval(self) -> bool:
        if self.requires_approval is None:
            return self.exception_type.requires_approval_default
        return self.requires_approval

    @property
    def is_effective(self) -> bool:
        """Approved, or a draft of a type that needs no approval"""
        if not self.active:
            return False
        if self.status == ApprovalStatus.APPROVED:
            return True
        return not self.needs_approval and self.status == ApprovalStatus.DRAFT

    def applies_to(self, user_id: str, target: date) -> bool:
        return self.user_id == user_id and self.target_date == target and self.is_effective

    def get_metadata(self, key: str, default: Optional[str] = None) -> Optional[str]:
        for meta_key, value in self.metadata:
            if meta_key == key:
                return value
        return default

    def approve(self, approver_id: str, approver_name: str = "",
                approved_on: Optional[date] = None) -> 'ShiftException':
        return replace(
            self,
            status=ApprovalStatus.APPROVED,
            approved_by_user_id=approver_id,
            approved_by_user_name=approver_name or None,
            approved_date=approved_on or date.today(),
            rejection_reason=None
        )

    def reject(self, reason: str) -> 'ShiftException':
        return replace(self, status=ApprovalStatus.REJECTED, rejection_reason=reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "targetDate": _iso(self.target_date),
            "type": self.exception_type.name,
            "status": self.status.value,
            "requiresApproval": self.requires_approval,
            "approvedByUserId": self.approved_by_user_id,
            "approvedByUserName": self.approved_by_user_name,
            "approvedDate": _iso(self.approved_date),
            "rejectionReason": self.rejection_reason,
            "newShiftId": self.new_shift_id,
            "newStartTime": _iso(self.new_start_time),
            "newEndTime": _iso(self.new_end_time),
            "durationMinutes": self.duration_minutes,
            "swapWithUserId": self.swap_with_user_id,
            "metadata": dict(self.metadata),
            "active": self.active,
            "createdAt": self.created_at
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ShiftException':
        return cls(
            id=data["id"],
            user_id=str(data["userId"]),
            target_date=parse_date(data["targetDate"]),
            exception_type=ExceptionType[data["type"]],
            status=ApprovalStatus(data.get("status", ApprovalStatus.DRAFT.value)),
            requires_approval=data.get("requiresApproval"),
            approved_by_user_id=data.get("approvedByUserId"),
            approved_by_user_name=data.get("approvedByUserName"),
            approved_date=parse_date(data.get("approvedDate")),
            rejection_reason=data.get("rejectionReason"),
            new_shift_id=data.get("newShiftId"),
            new_start_time=parse_time(data.get("newStartTime")),
            new_end_time=parse_time(data.get("newEndTime")),
            duration_minutes=data.get("durationMinutes"),
            swap_with_user_id=data.get("swapWithUserId"),
            metadata=tuple(sorted(data.get("metadata", {}).items())),
            active=data.get("active", True),
            created_at=data.get("createdAt", 0.0)
        )


# ==================== ASSIGNMENTS ====================

class AssignmentStatus(Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class AssignmentPriority(Enum):
    LOW = 1
    NORMAL = 5
    HIGH = 8
    OVERRIDE = 10


@dataclass(frozen=True)
class UserTeamAssignment:
    """Time-bounded membership of a user in a team; no end date means permanent"""
    id: str
    user_id: str
    team_id: str
    start_date: date
    end_date: Optional[date] = None
    status: AssignmentStatus = AssignmentStatus.ACTIVE
    recurrence_rule_id: Optional[str] = None
    priority: AssignmentPriority = AssignmentPriority.NORMAL
    created_at: float = 0.0

    def __post_init__(self):
        if self.start_date is None:
            raise InvalidConfiguration(f"Assignment '{self.id}' has no start date")
        if self.end_date is not None and self.end_date < self.start_date:
            raise InvalidConfiguration(
                f"Assignment '{self.id}' ends ({self.end_date}) before it starts ({self.start_date})"
            )

    @property
    def is_permanent(self) -> bool:
        return self.end_date is None

    def covers(self, target: date) -> bool:
        if target < self.start_date:
            return False
        return self.end_date is None or target <= self.end_date

    def overlaps(self, other: 'UserTeamAssignment') -> bool:
        if self.end_date is not None and self.end_date < other.start_date:
            return False
        if other.end_date is not None and other.end_date < self.start_date:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "teamId": self.team_id,
            "startDate": _iso(self.start_date),
            "endDate": _iso(self.end_date),
            "status": self.status.value,
            "recurrenceRuleId": self.recurrence_rule_id,
            "priority": self.priority.name,
            "createdAt": self.created_at
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UserTeamAssignment':
        return cls(
            id=data["id"],
            user_id=str(data["userId"]),
            team_id=data["teamId"],
            start_date=parse_date(data["startDate"]),
            end_date=parse_date(data.get("endDate")),
            status=AssignmentStatus(data.get("status", AssignmentStatus.ACTIVE.value)),
            recurrence_rule_id=data.get("recurrenceRuleId"),
            priority=AssignmentPriority[data.get("priority", AssignmentPriority.NORMAL.name)],
            created_at=data.get("createdAt", 0.0)
        )


UserScheduleAssignment = UserTeamAssignment


# ==================== COMPUTED RESULTS ====================

class AnomalyType(Enum):
    ASSIGNMENT_OVERLAP = "assignment_overlap"
    MULTIPLE_EFFECTIVE_EXCEPTIONS = "multiple_effective_exceptions"


@dataclass(frozen=True)
class ScheduleAnomaly:
    """Data-integrity problem found while computing a day; never fatal"""
    kind: AnomalyType
    date: date
    user_id: str
    chosen_id: Optional[str]
    discarded_ids: Tuple[str, ...]
    message: str

    def to_error(self) -> ScheduleEngineError:
        if self.kind == AnomalyType.ASSIGNMENT_OVERLAP:
            return AssignmentOverlap(self.message)
        return MultipleEffectiveExceptions(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "date": _iso(self.date),
            "userId": self.user_id,
            "chosenId": self.chosen_id,
            "discardedIds": list(self.discarded_ids),
            "message": self.message
        }


@dataclass(frozen=True)
class WorkScheduleShift:
    """A shift occurrence on one day with the teams (and users) working it"""
    shift: Shift
    teams: Tuple[str, ...] = ()
    user_ids: Tuple[str, ...] = ()
    start_time: Optional[time] = None
    end_time: Optional[time] = None

    @property
    def effective_start(self) -> time:
        return self.start_time or self.shift.start_time

    @property
    def effective_end(self) -> time:
        return self.end_time or self.shift.end_time

    @property
    def is_retimed(self) -> bool:
        return self.start_time is not None or self.end_time is not None

    def with_user(self, user_id: str) -> 'WorkScheduleShift':
        if user_id in self.user_ids:
            return self
        return replace(self, user_ids=tuple(sorted(self.user_ids + (user_id,))))

    def without_user(self, user_id: str) -> 'WorkScheduleShift':
        return replace(self, user_ids=tuple(uid for uid in self.user_ids if uid != user_id))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shiftId": self.shift.id,
            "teams": list(self.teams),
            "userIds": list(self.user_ids),
            "startTime": _iso(self.effective_start),
            "endTime": _iso(self.effective_end)
        }


@dataclass(frozen=True)
class WorkScheduleDay:
    """Immutable schedule for one date, optionally seen from one user"""
    date: date
    shifts: Tuple[WorkScheduleShift, ...] = ()
    off_teams: Tuple[str, ...] = ()
    day_in_cycle: Optional[int] = None
    rule_id: Optional[str] = None
    user_id: Optional[str] = None
    team: Optional[Team] = None
    applied_exception: Optional[ShiftException] = None
    anomalies: Tuple[ScheduleAnomaly, ...] = ()

    is_assigned = True

    @property
    def working_teams(self) -> Tuple[str, ...]:
        teams = {team_id for ws in self.shifts for team_id in ws.teams}
        return tuple(sorted(teams))

    def teams_for_shift(self, shift_id: str) -> Tuple[str, ...]:
        for ws in self.shifts:
            if ws.shift.id == shift_id and ws.teams:
                return ws.teams
        return ()

    def shift_for_team(self, team_id: str) -> Optional[WorkScheduleShift]:
        for ws in self.shifts:
            if team_id in ws.teams:
                return ws
        return None

    def is_team_working(self, team_id: str) -> bool:
        return self.shift_for_team(team_id) is not None

    def is_team_off(self, team_id: str) -> bool:
        return team_id in self.off_teams

    def shifts_for_user(self, user_id: str) -> List[WorkScheduleShift]:
        return [ws for ws in self.shifts if user_id in ws.user_ids]

    @property
    def user_shifts(self) -> List[WorkScheduleShift]:
        if self.user_id is None:
            return []
        return self.shifts_for_user(self.user_id)

    @property
    def is_user_working(self) -> bool:
        return bool(self.user_shifts)

    @property
    def has_anomalies(self) -> bool:
        return bool(self.anomalies)

    def raise_for_anomalies(self):
        """Raise the first reported anomaly for callers that block on bad data"""
        if self.anomalies:
            raise self.anomalies[0].to_error()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": _iso(self.date),
            "dayInCycle": self.day_in_cycle,
            "ruleId": self.rule_id,
            "shifts": [ws.to_dict() for ws in self.shifts],
            "offTeams": list(self.off_teams),
            "userId": self.user_id,
            "teamId": self.team.id if self.team else None,
            "appliedExceptionId": self.applied_exception.id if self.applied_exception else None,
            "anomalies": [anomaly.to_dict() for anomaly in self.anomalies]
        }


@dataclass(frozen=True)
class Unassigned:
    """No team could be resolved for the user on this date"""
    date: date
    user_id: str
    anomalies: Tuple[ScheduleAnomaly, ...] = ()

    is_assigned = False

    @property
    def has_anomalies(self) -> bool:
        return bool(self.anomalies)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": _iso(self.date),
            "userId": self.user_id,
            "unassigned": True,
            "anomalies": [anomaly.to_dict() for anomaly in self.anomalies]
        }


DayResult = Union[WorkScheduleDay, Unassigned]
