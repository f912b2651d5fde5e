"""
Recurrence Rule Registry

Seeds the protected standard rules and provides the add / deactivate /
remove operations on rule collections. Collections are tuples; every
operation returns a new tuple and never mutates its input.
"""

import logging
from dataclasses import replace
from datetime import date
from typing import Dict, Iterable, Optional, Tuple

from .models import (
    EndType, Frequency, InvalidConfiguration, ProtectedRuleError, RecurrenceRule
)
from .rotation import STANDARD_CYCLE_LENGTH

logger = logging.getLogger(__name__)


STANDARD_RULE_ID = "quattrodue_standard_cycle"
WEEKDAYS_RULE_ID = "standard_weekdays"


def standard_rules(scheme_start_date: date) -> Tuple[RecurrenceRule, ...]:
    """The built-in patterns, anchored on the scheme start date"""
    return (
        RecurrenceRule(
            id=STANDARD_RULE_ID,
            name="4-2 Standard Cycle",
            description="Four working days followed by two rest days over an 18-day rotation",
            frequency=Frequency.CUSTOM_CYCLE,
            start_date=scheme_start_date,
            cycle_length=STANDARD_CYCLE_LENGTH,
            work_days=4,
            rest_days=2,
            end_type=EndType.NEVER,
            protected=True
        ),
        RecurrenceRule(
            id=WEEKDAYS_RULE_ID,
            name="Weekdays",
            description="Monday to Friday",
            frequency=Frequency.WEEKLY,
            start_date=scheme_start_date,
            by_day=(0, 1, 2, 3, 4),
            end_type=EndType.NEVER,
            protected=True
        ),
    )


def index_rules(rules: Iterable[RecurrenceRule]) -> Dict[str, RecurrenceRule]:
    """Validate rules and index them by id; duplicate ids are rejected"""
    indexed: Dict[str, RecurrenceRule] = {}
    for rule in rules:
        if rule.id in indexed:
            raise InvalidConfiguration(f"Duplicate recurrence rule id '{rule.id}'")
        indexed[rule.id] = rule.validate()
    return indexed


def seed_standard_rules(rules: Iterable[RecurrenceRule],
                        scheme_start_date: date) -> Tuple[RecurrenceRule, ...]:
    """Add any missing standard rule; existing ones (even deactivated) are kept as is"""
    rules = tuple(rules)
    existing = {rule.id for rule in rules}
    seeded = [rule for rule in standard_rules(scheme_start_date) if rule.id not in existing]
    if seeded:
        logger.info(f"Seeding standard rules: {', '.join(rule.id for rule in seeded)}")
    return rules + tuple(seeded)


def reanchor_standard_rules(rules: Iterable[RecurrenceRule],
                            scheme_start_date: date) -> Tuple[RecurrenceRule, ...]:
    """Move protected rules onto a new scheme start date"""
    return tuple(
        replace(rule, start_date=scheme_start_date) if rule.protected else rule
        for rule in rules
    )


def add_rule(rules: Iterable[RecurrenceRule], rule: RecurrenceRule) -> Tuple[RecurrenceRule, ...]:
    rules = tuple(rules)
    if any(existing.id == rule.id for existing in rules):
        raise InvalidConfiguration(f"Recurrence rule '{rule.id}' already exists")
    rule.validate()
    return rules + (rule,)


def set_rule_active(rules: Iterable[RecurrenceRule], rule_id: str,
                    active: bool) -> Tuple[RecurrenceRule, ...]:
    rules = tuple(rules)
    if find_rule(rules, rule_id) is None:
        raise InvalidConfiguration(f"Unknown recurrence rule '{rule_id}'")
    return tuple(replace(rule, active=active) if rule.id == rule_id else rule for rule in rules)


def remove_rule(rules: Iterable[RecurrenceRule], rule_id: str) -> Tuple[RecurrenceRule, ...]:
    """
    Remove a rule by id.

    Raises:
        ProtectedRuleError: for seeded standard rules (deactivate them instead)
        InvalidConfiguration: if the rule does not exist
    """
    rules = tuple(rules)
    rule = find_rule(rules, rule_id)
    if rule is None:
        raise InvalidConfiguration(f"Unknown recurrence rule '{rule_id}'")
    if rule.protected:
        raise ProtectedRuleError(f"Rule '{rule_id}' is a standard rule and cannot be removed")
    return tuple(existing for existing in rules if existing.id != rule_id)


def find_rule(rules: Iterable[RecurrenceRule], rule_id: str) -> Optional[RecurrenceRule]:
    for rule in rules:
        if rule.id == rule_id:
            return rule
    return None
