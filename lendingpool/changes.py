"""
changes.py - Governed changes: loan mutations, policy replacement, debt transfer

Changes go through three phases:

    propose  -> the engine validates the change and notes it with the guard
    wait     -> the guard holds it until its minimum delay has elapsed
    apply    -> anyone presents the ChangeId; the guard releases the payload,
                the engine re-validates it against current state and applies it

A change is content-addressed. What the engine notes is a NotedChange: the
change plus its revision, the number of times identical content has already
been applied in the pool. Re-proposing identical content before it is
applied yields the same ChangeId; once applied, a new proposal gets a new id.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Protocol, Tuple, Union, runtime_checkable

from .cashflow import InterestPayments, Maturity, PayDownSchedule
from .core import (
    ChangeId, LoanId, PoolId, InvalidMutation,
    content_hash, to_decimal, to_rate,
)
from .interest import InterestRate
from .loans import LoanInfo, RepaidInput
from .policy import WriteOffRule
from .pricing import DiscountedCashFlow, InternalPricing, ValuationMethod, validate_pricing


# ============================================================================
# LOAN MUTATIONS
# ============================================================================

@dataclass(frozen=True, slots=True)
class MaturityMutation:
    maturity: Maturity


@dataclass(frozen=True, slots=True)
class MaturityExtensionMutation:
    """Move the maturity forward by `seconds`, within the allowed extension."""
    seconds: int


@dataclass(frozen=True, slots=True)
class InterestRateMutation:
    interest_rate: InterestRate


@dataclass(frozen=True, slots=True)
class InterestPaymentsMutation:
    interest_payments: InterestPayments


@dataclass(frozen=True, slots=True)
class PayDownScheduleMutation:
    pay_down_schedule: PayDownSchedule


@dataclass(frozen=True, slots=True)
class ValuationMethodMutation:
    valuation_method: ValuationMethod


@dataclass(frozen=True, slots=True)
class ProbabilityOfDefaultMutation:
    probability_of_default: Decimal

    def __post_init__(self):
        object.__setattr__(self, 'probability_of_default',
                           to_rate(self.probability_of_default, "probability_of_default"))


@dataclass(frozen=True, slots=True)
class LossGivenDefaultMutation:
    loss_given_default: Decimal

    def __post_init__(self):
        object.__setattr__(self, 'loss_given_default',
                           to_rate(self.loss_given_default, "loss_given_default"))


@dataclass(frozen=True, slots=True)
class DiscountRateMutation:
    discount_rate: Decimal

    def __post_init__(self):
        object.__setattr__(self, 'discount_rate', to_decimal(self.discount_rate, "discount_rate"))


LoanMutation = Union[
    MaturityMutation,
    MaturityExtensionMutation,
    InterestRateMutation,
    InterestPaymentsMutation,
    PayDownScheduleMutation,
    ValuationMethodMutation,
    ProbabilityOfDefaultMutation,
    LossGivenDefaultMutation,
    DiscountRateMutation,
]


def _internal_pricing(info: LoanInfo, mutation) -> InternalPricing:
    if not isinstance(info.pricing, InternalPricing):
        raise InvalidMutation(f"{type(mutation).__name__} only applies to internally priced loans")
    return info.pricing


def _dcf(info: LoanInfo, mutation) -> DiscountedCashFlow:
    method = _internal_pricing(info, mutation).valuation_method
    if not isinstance(method, DiscountedCashFlow):
        raise InvalidMutation(
            f"{type(mutation).__name__} only applies to discounted cash flow valuation"
        )
    return method


def apply_mutation(info: LoanInfo, mutation: LoanMutation, now: datetime) -> LoanInfo:
    """
    Return the loan info with a mutation applied.

    PURE FUNCTION - only a new maturity is checked against now; every
    mutation must leave a usable schedule and pricing (no DCF or monthly
    payments without a fixed maturity).

    Raises:
        InvalidMutation: mutation does not fit the loan's pricing, or an
            extension beyond the allowed one
        InvalidMaturity / InvalidPricing: resulting info is invalid
    """
    schedule = info.schedule
    if isinstance(mutation, MaturityMutation):
        new_info = replace(info, schedule=schedule.with_maturity(mutation.maturity))
    elif isinstance(mutation, MaturityExtensionMutation):
        new_info = replace(info, schedule=schedule.with_maturity(schedule.maturity.extend(mutation.seconds)))
    elif isinstance(mutation, InterestRateMutation):
        _internal_pricing(info, mutation)
        new_info = replace(info, interest_rate=mutation.interest_rate)
    elif isinstance(mutation, InterestPaymentsMutation):
        new_info = replace(info, schedule=replace(schedule, interest_payments=mutation.interest_payments))
    elif isinstance(mutation, PayDownScheduleMutation):
        new_info = replace(info, schedule=replace(schedule, pay_down_schedule=mutation.pay_down_schedule))
    elif isinstance(mutation, ValuationMethodMutation):
        pricing = _internal_pricing(info, mutation)
        new_info = replace(info, pricing=replace(pricing, valuation_method=mutation.valuation_method))
    elif isinstance(mutation, ProbabilityOfDefaultMutation):
        method = replace(_dcf(info, mutation), probability_of_default=mutation.probability_of_default)
        new_info = replace(info, pricing=replace(info.pricing, valuation_method=method))
    elif isinstance(mutation, LossGivenDefaultMutation):
        method = replace(_dcf(info, mutation), loss_given_default=mutation.loss_given_default)
        new_info = replace(info, pricing=replace(info.pricing, valuation_method=method))
    elif isinstance(mutation, DiscountRateMutation):
        method = replace(_dcf(info, mutation), discount_rate=mutation.discount_rate)
        new_info = replace(info, pricing=replace(info.pricing, valuation_method=method))
    else:
        raise InvalidMutation(f"Unknown loan mutation: {mutation!r}")

    if isinstance(mutation, MaturityMutation):
        new_info.schedule.validate(now)
    else:
        new_info.schedule.validate_shape()
    validate_pricing(new_info.pricing, new_info.schedule)
    return new_info


# ============================================================================
# CHANGES
# ============================================================================

@dataclass(frozen=True, slots=True)
class LoanChange:
    loan_id: LoanId
    mutation: LoanMutation


@dataclass(frozen=True, slots=True)
class PolicyChange:
    policy: Tuple[WriteOffRule, ...]

    def __post_init__(self):
        object.__setattr__(self, 'policy', tuple(self.policy))


@dataclass(frozen=True, slots=True)
class TransferDebtChange:
    """
    Repay `repaid` on from_loan and borrow `borrow_amount` on to_loan, as one unit.

    The currency repaid on the source must equal the currency borrowed on
    the target.
    """
    from_loan: LoanId
    to_loan: LoanId
    repaid: RepaidInput
    borrow_amount: Decimal

    def __post_init__(self):
        object.__setattr__(self, 'borrow_amount', to_decimal(self.borrow_amount, "borrow_amount"))


Change = Union[LoanChange, PolicyChange, TransferDebtChange]


@dataclass(frozen=True, slots=True)
class NotedChange:
    """A change as noted with the guard: payload plus revision."""
    change: Change
    revision: int = 0


def change_id_for(noted: NotedChange) -> ChangeId:
    """Content address of a noted change."""
    return content_hash(noted)


class ChangeStatus(str, Enum):
    PROPOSED = "proposed"
    RELEASED = "released"
    APPLIED = "applied"


@dataclass(frozen=True, slots=True)
class ChangeRecord:
    change_id: ChangeId
    noted: NotedChange
    status: ChangeStatus = ChangeStatus.PROPOSED

    @property
    def change(self) -> Change:
        return self.noted.change


@runtime_checkable
class ChangeGuard(Protocol):
    """
    Governance tracking consumed by the engine.

    note() must be idempotent for identical content. released() raises
    ChangeNotReady before the delay has elapsed and ChangeNotFound for ids
    it never noted.
    """

    def note(self, pool_id: PoolId, change: NotedChange) -> ChangeId:
        ...

    def released(self, pool_id: PoolId, change_id: ChangeId) -> NotedChange:
        ...
