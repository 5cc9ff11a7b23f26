"""
policy.py - Write-off policy evaluator

A pool's write-off policy is an ordered sequence of rules. Each rule has
a set of triggers and the write-off status (percentage, penalty) it applies.

Triggers:
    PrincipalOverdue(seconds): the loan is past maturity by at least `seconds`
    PriceOutdated(seconds):    the loan's external price is at least `seconds` old

Rule selection:
    A rule applies when any of its triggers is satisfied. Among applicable
    rules, the one whose largest satisfied threshold is greatest wins. Rules
    with equal thresholds resolve to the later one in the policy, so the
    administrator's ordering breaks ties.

Example:
    policy = (
        WriteOffRule.new([PrincipalOverdue.days(1)], "0.1", "0.01"),
        WriteOffRule.new([PrincipalOverdue.days(30)], "1", "0.05"),
    )
    find_rule(policy, overdue_seconds=40 * SECONDS_PER_DAY).status
    # WriteOffStatus(percentage=Decimal('1'), penalty=Decimal('0.05'))
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional, Sequence, Tuple, Union

from .core import SECONDS_PER_DAY, ZERO, InvalidWriteOffPolicy, to_decimal, to_rate


# ============================================================================
# TRIGGERS
# ============================================================================

@dataclass(frozen=True, slots=True)
class PrincipalOverdue:
    """Satisfied once the loan is `seconds` past its maturity date."""
    seconds: int

    def __post_init__(self):
        if self.seconds < 0:
            raise ValueError(f"seconds must be non-negative, got {self.seconds}")

    @classmethod
    def days(cls, days: int) -> PrincipalOverdue:
        return cls(days * SECONDS_PER_DAY)


@dataclass(frozen=True, slots=True)
class PriceOutdated:
    """Satisfied once the latest external price is `seconds` old."""
    seconds: int

    def __post_init__(self):
        if self.seconds < 0:
            raise ValueError(f"seconds must be non-negative, got {self.seconds}")


WriteOffTrigger = Union[PrincipalOverdue, PriceOutdated]


def trigger_satisfied(
    trigger: WriteOffTrigger,
    overdue_seconds: Optional[int],
    price_age_seconds: Optional[int],
) -> bool:
    """
    Evaluate one trigger.

    overdue_seconds is None while the loan is not yet due (or has no
    maturity). price_age_seconds is None for loans without an external price.
    """
    if isinstance(trigger, PrincipalOverdue):
        return overdue_seconds is not None and overdue_seconds >= trigger.seconds
    if isinstance(trigger, PriceOutdated):
        return price_age_seconds is not None and price_age_seconds >= trigger.seconds
    raise TypeError(f"Unknown write-off trigger: {trigger!r}")


# ============================================================================
# STATUS AND RULES
# ============================================================================

class WriteOffKind(str, Enum):
    """Origin of a loan's write-off status."""
    NONE = "none"
    POLICY = "policy"
    ADMIN = "admin"


@dataclass(frozen=True, slots=True)
class WriteOffStatus:
    """
    Write-off terms of a loan.

    percentage: fraction of present value written off, in [0, 1]
    penalty: annual rate added on top of the loan's interest rate
    """
    percentage: Decimal = ZERO
    penalty: Decimal = ZERO

    def __post_init__(self):
        object.__setattr__(self, 'percentage', to_rate(self.percentage, "percentage"))
        penalty = to_decimal(self.penalty, "penalty")
        if penalty < ZERO:
            raise ValueError(f"penalty must be non-negative, got {penalty}")
        object.__setattr__(self, 'penalty', penalty)

    @property
    def is_written_off(self) -> bool:
        return self.percentage > ZERO or self.penalty > ZERO

    def compose_max(self, other: WriteOffStatus) -> WriteOffStatus:
        """Field-wise maximum of two statuses."""
        return WriteOffStatus(
            max(self.percentage, other.percentage),
            max(self.penalty, other.penalty),
        )


@dataclass(frozen=True, slots=True)
class WriteOffRule:
    triggers: Tuple[WriteOffTrigger, ...]
    status: WriteOffStatus

    @classmethod
    def new(cls, triggers: Iterable[WriteOffTrigger], percentage, penalty) -> WriteOffRule:
        return cls(tuple(triggers), WriteOffStatus(percentage, penalty))

    def satisfied_threshold(
        self,
        overdue_seconds: Optional[int],
        price_age_seconds: Optional[int],
    ) -> Optional[int]:
        """Largest threshold among satisfied triggers, or None if none is satisfied."""
        satisfied = [
            t.seconds for t in self.triggers
            if trigger_satisfied(t, overdue_seconds, price_age_seconds)
        ]
        return max(satisfied) if satisfied else None


WriteOffPolicy = Tuple[WriteOffRule, ...]


def validate_policy(
    policy: Sequence[WriteOffRule],
    max_rules: int,
    max_triggers: int,
) -> WriteOffPolicy:
    """
    Check a policy against the configured bounds and return it as a tuple.

    Raises:
        InvalidWriteOffPolicy: too many rules, a rule without triggers, too
            many triggers, or a trigger repeated within a rule
    """
    policy = tuple(policy)
    if len(policy) > max_rules:
        raise InvalidWriteOffPolicy(f"Policy has {len(policy)} rules, maximum is {max_rules}")
    for index, rule in enumerate(policy):
        if not isinstance(rule, WriteOffRule):
            raise InvalidWriteOffPolicy(f"Rule {index} is not a WriteOffRule: {rule!r}")
        if not rule.triggers:
            raise InvalidWriteOffPolicy(f"Rule {index} has no triggers")
        if len(rule.triggers) > max_triggers:
            raise InvalidWriteOffPolicy(
                f"Rule {index} has {len(rule.triggers)} triggers, maximum is {max_triggers}"
            )
        if len(set(rule.triggers)) != len(rule.triggers):
            raise InvalidWriteOffPolicy(f"Rule {index} repeats a trigger")
    return policy


def find_rule(
    policy: Sequence[WriteOffRule],
    overdue_seconds: Optional[int] = None,
    price_age_seconds: Optional[int] = None,
) -> Optional[WriteOffRule]:
    """
    Select the applicable rule with the greatest satisfied threshold.

    PURE FUNCTION - the policy and the loan's measurements are passed in.

    Returns:
        The winning rule, or None if no rule applies.
    """
    best_rule = None
    best_threshold = -1
    for rule in policy:
        threshold = rule.satisfied_threshold(overdue_seconds, price_age_seconds)
        # >= lets later rules win ties
        if threshold is not None and threshold >= best_threshold:
            best_rule = rule
            best_threshold = threshold
    return best_rule
