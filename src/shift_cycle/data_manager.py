"""
Data Manager for the Shift Cycle Engine

Handles JSON persistence of engine settings, recurrence rules, user-team
assignments and shift exceptions, and builds engine configurations from
the stored data.
"""

import json
import logging
from dataclasses import replace
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, Dict, List, Optional

from .engine import ScheduleConfig, ShiftCycleEngine
from .models import (
    ApprovalStatus, AssignmentPriority, AssignmentStatus, ExceptionType, InvalidConfiguration,
    RecurrenceRule, Shift, ShiftException, Team, UserTeamAssignment, parse_date,
    STANDARD_SHIFTS, STANDARD_TEAMS
)
from .assignment_resolver import find_overlapping
from . import rules as rule_registry

logger = logging.getLogger(__name__)


APP_VERSION = "1.0.0"


class DataManagerError(Exception):
    """Base exception for DataManager operations"""
    pass


class DataFileCorruptedError(DataManagerError):
    """Raised when the data file is corrupted"""
    pass


class DataFileNotFoundError(DataManagerError):
    """Raised when the data file is not found"""
    pass


class DataSaveError(DataManagerError):
    """Raised when saving data fails"""
    pass


class DataValidationError(DataManagerError):
    """Raised when data validation fails"""
    pass


class DataManager:
    """Persists engine inputs and exposes the write-path operations on them"""

    REQUIRED_SECTIONS = ("settings", "teams", "shifts", "rules", "assignments", "exceptions")

    def __init__(self, data_file: str = "data/shift_cycle_data.json"):
        self.data_file = Path(data_file)
        self.data = self._load_or_create_data()

    # ==================== LOADING & SAVING ====================

    def _read_json(self, path: Path) -> Dict[str, Any]:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)

    def _recover_from_backup(self) -> Optional[Dict[str, Any]]:
        """Load the .bak copy and put it back in place; None if it is unusable"""
        backup_file = self.data_file.with_suffix('.bak')
        if not backup_file.exists():
            return None
        try:
            logger.info(f"Attempting recovery from backup file {backup_file}")
            data = self._read_json(backup_file)
            backup_file.replace(self.data_file)
            logger.info("Successfully recovered data from backup")
            return data
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"Backup file corrupted: {e}")
            return None

    def _load_or_create_data(self) -> Dict[str, Any]:
        """Load existing data, falling back to the backup, or create defaults"""
        backup_exists = self.data_file.with_suffix('.bak').exists()

        if self.data_file.exists():
            try:
                return self._validate_and_migrate_data(self._read_json(self.data_file))
            except (json.JSONDecodeError, IOError) as e:
                logger.error(f"Error loading data file {self.data_file}: {e}")
                if not backup_exists:
                    raise DataFileCorruptedError(f"Data file corrupted and no backup available: {e}")
                recovered = self._recover_from_backup()
                if recovered is None:
                    logger.info("Creating default data due to corrupted files")
                    return self._create_default_data()
                return self._validate_and_migrate_data(recovered)

        if backup_exists:
            logger.info(f"Data file {self.data_file} missing")
            recovered = self._recover_from_backup()
            if recovered is not None:
                return self._validate_and_migrate_data(recovered)
            logger.info("Creating default data due to corrupted backup")
            return self._create_default_data()

        logger.info("No data file found, creating default data")
        return self._create_default_data()

    def _create_default_data(self) -> Dict[str, Any]:
        return {
            "settings": {
                "appVersion": APP_VERSION,
                "schemeStartDate": None,
                "includePendingAssignments": False,
                "includeExpiredAssignments": True,
                "exceptionPriorities": {},  # {ExceptionType name: priority}
                "ruleShiftIds": {},  # {rule_id: shift_id}
                "defaultShiftId": "morning",
                "cacheMaxEntries": None,
                "dataFile": str(self.data_file)
            },
            "teams": [team.to_dict() for team in STANDARD_TEAMS],
            "shifts": [shift.to_dict() for shift in STANDARD_SHIFTS],
            "rules": [],
            "assignments": [],
            "exceptions": []
        }

    def _validate_and_migrate_data(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Fill in missing sections and settings, and seed the standard rules"""
        default_data = self._create_default_data()
        for key in default_data:
            if key not in data:
                data[key] = default_data[key]
        for key, value in default_data["settings"].items():
            data["settings"].setdefault(key, value)
        if not data["teams"]:
            data["teams"] = default_data["teams"]
        if not data["shifts"]:
            data["shifts"] = default_data["shifts"]

        start = parse_date(data["settings"].get("schemeStartDate"))
        if start is not None:
            rules = [RecurrenceRule.from_dict(r) for r in data["rules"]]
            seeded = rule_registry.seed_standard_rules(rules, start)
            data["rules"] = [rule.to_dict() for rule in seeded]
        return data

    def _validate_saved_data(self) -> bool:
        """Re-read the saved file and check its structure"""
        try:
            if not self.data_file.exists():
                raise DataFileNotFoundError(f"Saved data file {self.data_file} does not exist")
            saved_data = self._read_json(self.data_file)

            for key in self.REQUIRED_SECTIONS:
                if key not in saved_data:
                    raise DataValidationError(f"Required section '{key}' missing from saved data")
            if saved_data["settings"].get("appVersion") != self.data["settings"].get("appVersion"):
                raise DataValidationError("App version mismatch in saved data")
            return True

        except (json.JSONDecodeError, IOError) as e:
            raise DataValidationError(f"Failed to validate saved data: {e}")

    def save_data(self) -> bool:
        """Save current data atomically: backup, temp file, rename, validate"""
        temp_file = self.data_file.with_suffix('.tmp')
        backup_file = self.data_file.with_suffix('.bak')
        self.data_file.parent.mkdir(parents=True, exist_ok=True)

        try:
            if self.data_file.exists():
                self.data_file.replace(backup_file)

            with open(temp_file, 'w', encoding='utf-8') as f:
                json.dump(self.data, f, indent=2, ensure_ascii=False)
            temp_file.replace(self.data_file)

            self._validate_saved_data()
            logger.info(f"Data saved to {self.data_file}")
            return True

        except (DataValidationError, DataFileNotFoundError) as e:
            logger.error(f"Data validation failed after save: {e}", exc_info=True)
            if backup_file.exists():
                try:
                    backup_file.replace(self.data_file)
                except OSError as restore_e:
                    logger.error(f"Failed to restore from backup: {restore_e}", exc_info=True)
            raise DataSaveError(f"Save operation failed validation: {e}")

        except (IOError, OSError, TypeError) as e:
            logger.error(f"Error during save operation: {e}", exc_info=True)
            raise DataSaveError(f"Failed to save data: {e}")

        finally:
            if temp_file.exists():
                try:
                    temp_file.unlink()
                except OSError as cleanup_e:
                    logger.error(f"Failed to clean up temporary file {temp_file}: {cleanup_e}")

    # ==================== SETTINGS ====================

    def get_scheme_start_date(self) -> Optional[date]:
        return parse_date(self.data["settings"].get("schemeStartDate"))

    def set_scheme_start_date(self, start: date):
        """Set the rotation anchor; standard rules are seeded or moved with it"""
        if start is None:
            raise DataValidationError("Scheme start date cannot be cleared")
        self.data["settings"]["schemeStartDate"] = start.isoformat()
        rules = rule_registry.reanchor_standard_rules(self.get_rules(), start)
        rules = rule_registry.seed_standard_rules(rules, start)
        self._store_rules(rules)
        logger.info(f"Scheme start date set to {start}")

    def set_policy(self, include_pending_assignments: Optional[bool] = None,
                   include_expired_assignments: Optional[bool] = None,
                   cache_max_entries: Optional[int] = None):
        settings = self.data["settings"]
        if include_pending_assignments is not None:
            settings["includePendingAssignments"] = include_pending_assignments
        if include_expired_assignments is not None:
            settings["includeExpiredAssignments"] = include_expired_assignments
        if cache_max_entries is not None:
            settings["cacheMaxEntries"] = cache_max_entries

    def set_exception_priority(self, exception_type: ExceptionType, priority: int):
        self.data["settings"]["exceptionPriorities"][exception_type.name] = priority

    def set_rule_shift(self, rule_id: str, shift_id: str):
        """Choose the shift worked on the active dates of a non-standard rule"""
        if self.get_shift(shift_id) is None:
            raise DataValidationError(f"Unknown shift '{shift_id}'")
        self.data["settings"]["ruleShiftIds"][rule_id] = shift_id

    # ==================== TEAMS & SHIFTS ====================

    def get_teams(self, active_only: bool = False) -> List[Team]:
        teams = [Team.from_dict(t) for t in self.data["teams"]]
        return [t for t in teams if t.active or not active_only]

    def get_shifts(self) -> List[Shift]:
        return [Shift.from_dict(s) for s in self.data["shifts"]]

    def get_shift(self, shift_id: str) -> Optional[Shift]:
        for shift in self.get_shifts():
            if shift.id == shift_id:
                return shift
        return None

    def add_shift(self, shift: Shift) -> Shift:
        if self.get_shift(shift.id) is not None:
            raise DataValidationError(f"Shift '{shift.id}' already exists")
        self.data["shifts"].append(shift.to_dict())
        return shift

    # ==================== RECURRENCE RULES ====================

    def _store_rules(self, rules):
        self.data["rules"] = [rule.to_dict() for rule in rules]

    def get_rules(self, active_only: bool = False) -> List[RecurrenceRule]:
        rules = [RecurrenceRule.from_dict(r) for r in self.data["rules"]]
        return [r for r in rules if r.active or not active_only]

    def get_rule(self, rule_id: str) -> Optional[RecurrenceRule]:
        return rule_registry.find_rule(self.get_rules(), rule_id)

    def add_rule(self, rule: RecurrenceRule) -> RecurrenceRule:
        if not rule.created_at:
            rule = replace(rule, created_at=datetime.now().timestamp())
        try:
            self._store_rules(rule_registry.add_rule(self.get_rules(), replace(rule, protected=False)))
        except InvalidConfiguration as e:
            raise DataValidationError(str(e))
        return self.get_rule(rule.id)

    def deactivate_rule(self, rule_id: str) -> bool:
        """Deactivated rules are kept for existing assignments but refused for new ones"""
        try:
            self._store_rules(rule_registry.set_rule_active(self.get_rules(), rule_id, False))
        except InvalidConfiguration:
            return False
        return True

    def activate_rule(self, rule_id: str) -> bool:
        try:
            self._store_rules(rule_registry.set_rule_active(self.get_rules(), rule_id, True))
        except InvalidConfiguration:
            return False
        return True

    def delete_rule(self, rule_id: str) -> bool:
        """
        Remove a rule that no assignment references.

        Raises:
            ProtectedRuleError: for standard rules
            DataValidationError: if assignments still use the rule
        """
        in_use = [a.id for a in self.get_assignments() if a.recurrence_rule_id == rule_id]
        if in_use:
            raise DataValidationError(f"Rule '{rule_id}' is used by assignments {', '.join(in_use)}")
        if self.get_rule(rule_id) is None:
            return False
        self._store_rules(rule_registry.remove_rule(self.get_rules(), rule_id))
        return True

    # ==================== ASSIGNMENTS ====================

    def _next_id(self, section: str, prefix: str) -> str:
        numbers = []
        for item in self.data[section]:
            suffix = str(item["id"]).rsplit("-", 1)[-1]
            if suffix.isdigit():
                numbers.append(int(suffix))
        return f"{prefix}-{max(numbers, default=0) + 1}"

    def get_assignments(self, user_id: Optional[str] = None) -> List[UserTeamAssignment]:
        assignments = [UserTeamAssignment.from_dict(a) for a in self.data["assignments"]]
        if user_id is None:
            return assignments
        return [a for a in assignments if a.user_id == str(user_id)]

    def get_assignment(self, assignment_id: str) -> Optional[UserTeamAssignment]:
        for assignment in self.get_assignments():
            if assignment.id == assignment_id:
                return assignment
        return None

    def add_assignment(self, user_id: str, team_id: str, start_date: date,
                       end_date: Optional[date] = None,
                       recurrence_rule_id: Optional[str] = None,
                       priority: AssignmentPriority = AssignmentPriority.NORMAL,
                       status: AssignmentStatus = AssignmentStatus.ACTIVE) -> UserTeamAssignment:
        """
        Assign a user to a team for a date range.

        Raises:
            DataValidationError: for unknown teams or rules, inactive rules, bad
                ranges, or a range overlapping another assignment of the user
        """
        if team_id not in {team.id for team in self.get_teams()}:
            raise DataValidationError(f"Unknown team '{team_id}'")
        if recurrence_rule_id is not None:
            rule = self.get_rule(recurrence_rule_id)
            if rule is None:
                raise DataValidationError(f"Unknown recurrence rule '{recurrence_rule_id}'")
            if not rule.active:
                raise DataValidationError(f"Recurrence rule '{recurrence_rule_id}' is not active")

        try:
            assignment = UserTeamAssignment(
                id=self._next_id("assignments", "asg"),
                user_id=str(user_id),
                team_id=team_id,
                start_date=start_date,
                end_date=end_date,
                status=status,
                recurrence_rule_id=recurrence_rule_id,
                priority=priority,
                created_at=datetime.now().timestamp()
            )
        except InvalidConfiguration as e:
            raise DataValidationError(str(e))

        overlapping = find_overlapping(self.get_assignments(user_id), assignment)
        if overlapping:
            raise DataValidationError(
                f"Assignment for user {user_id} overlaps {', '.join(a.id for a in overlapping)}"
            )

        self.data["assignments"].append(assignment.to_dict())
        logger.info(f"User {user_id} assigned to team {team_id} from {start_date}"
                    f"{f' to {end_date}' if end_date else ''}")
        return assignment

    def _update_assignment(self, assignment_id: str, **changes) -> Optional[UserTeamAssignment]:
        for i, data in enumerate(self.data["assignments"]):
            if data["id"] == assignment_id:
                try:
                    updated = replace(UserTeamAssignment.from_dict(data), **changes)
                except InvalidConfiguration as e:
                    raise DataValidationError(str(e))
                self.data["assignments"][i] = updated.to_dict()
                return updated
        return None

    def end_assignment(self, assignment_id: str, end_date: date) -> Optional[UserTeamAssignment]:
        return self._update_assignment(assignment_id, end_date=end_date)

    def cancel_assignment(self, assignment_id: str) -> Optional[UserTeamAssignment]:
        return self._update_assignment(assignment_id, status=AssignmentStatus.CANCELLED)

    def activate_assignment(self, assignment_id: str) -> Optional[UserTeamAssignment]:
        return self._update_assignment(assignment_id, status=AssignmentStatus.ACTIVE)

    # ==================== SHIFT EXCEPTIONS ====================

    def get_exceptions(self, user_id: Optional[str] = None,
                       target_date: Optional[date] = None) -> List[ShiftException]:
        exceptions = [ShiftException.from_dict(e) for e in self.data["exceptions"]]
        if user_id is not None:
            exceptions = [e for e in exceptions if e.user_id == str(user_id)]
        if target_date is not None:
            exceptions = [e for e in exceptions if e.target_date == target_date]
        return exceptions

    def get_exception(self, exception_id: str) -> Optional[ShiftException]:
        for exception in self.get_exceptions():
            if exception.id == exception_id:
                return exception
        return None

    def add_exception(self, user_id: str, target_date: date, exception_type: ExceptionType,
                      status: Optional[ApprovalStatus] = None,
                      new_shift_id: Optional[str] = None,
                      new_start_time: Optional[time] = None,
                      new_end_time: Optional[time] = None,
                      duration_minutes: Optional[int] = None,
                      swap_with_user_id: Optional[str] = None,
                      metadata: Optional[Dict[str, str]] = None,
                      requires_approval: Optional[bool] = None) -> ShiftException:
        if new_shift_id is not None and self.get_shift(new_shift_id) is None:
            raise DataValidationError(f"Unknown shift '{new_shift_id}'")
        if exception_type == ExceptionType.CHANGE_SWAP and not swap_with_user_id:
            raise DataValidationError("A shift swap needs a partner user")

        # Types outside the approval workflow start as drafts, the rest wait for approval
        if status is None:
            needs_approval = (exception_type.requires_approval_default
                              if requires_approval is None else requires_approval)
            status = ApprovalStatus.PENDING if needs_approval else ApprovalStatus.DRAFT

        exception = ShiftException(
            id=self._next_id("exceptions", "exc"),
            user_id=str(user_id),
            target_date=target_date,
            exception_type=exception_type,
            status=status,
            requires_approval=requires_approval,
            new_shift_id=new_shift_id,
            new_start_time=new_start_time,
            new_end_time=new_end_time,
            duration_minutes=duration_minutes,
            swap_with_user_id=str(swap_with_user_id) if swap_with_user_id else None,
            metadata=tuple(sorted((metadata or {}).items())),
            created_at=datetime.now().timestamp()
        )
        self.data["exceptions"].append(exception.to_dict())
        return exception

    def _store_exception(self, exception: ShiftException) -> ShiftException:
        for i, data in enumerate(self.data["exceptions"]):
            if data["id"] == exception.id:
                self.data["exceptions"][i] = exception.to_dict()
                return exception
        raise DataValidationError(f"Unknown exception '{exception.id}'")

    def approve_exception(self, exception_id: str, approver_id: str,
                          approver_name: str = "") -> ShiftException:
        exception = self.get_exception(exception_id)
        if exception is None:
            raise DataValidationError(f"Unknown exception '{exception_id}'")
        return self._store_exception(exception.approve(approver_id, approver_name))

    def reject_exception(self, exception_id: str, reason: str) -> ShiftException:
        exception = self.get_exception(exception_id)
        if exception is None:
            raise DataValidationError(f"Unknown exception '{exception_id}'")
        return self._store_exception(exception.reject(reason))

    def cancel_exception(self, exception_id: str) -> ShiftException:
        exception = self.get_exception(exception_id)
        if exception is None:
            raise DataValidationError(f"Unknown exception '{exception_id}'")
        return self._store_exception(replace(exception, status=ApprovalStatus.CANCELLED))

    # ==================== ENGINE WIRING ====================

    def build_config(self) -> ScheduleConfig:
        """
        Build an engine configuration from the stored settings.

        Raises:
            InvalidConfiguration: if the scheme start date has not been set
        """
        settings = self.data["settings"]
        start = self.get_scheme_start_date()
        if start is None:
            raise InvalidConfiguration("Scheme start date is not set; call set_scheme_start_date first")

        priorities = {
            ExceptionType[name]: value
            for name, value in settings.get("exceptionPriorities", {}).items()
        }
        return ScheduleConfig(
            scheme_start_date=start,
            teams=tuple(self.get_teams()),
            shifts=tuple(self.get_shifts()),
            rules=tuple(self.get_rules()),
            rule_shift_ids=dict(settings.get("ruleShiftIds", {})),
            default_shift_id=settings.get("defaultShiftId", "morning"),
            include_pending_assignments=settings.get("includePendingAssignments", False),
            include_expired_assignments=settings.get("includeExpiredAssignments", True),
            exception_priorities=priorities,
            cache_max_entries=settings.get("cacheMaxEntries")
        )

    def build_engine(self) -> ShiftCycleEngine:
        return ShiftCycleEngine(self.build_config(), self.get_assignments(), self.get_exceptions())
