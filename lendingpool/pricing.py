"""
pricing.py - Pricing models for internally and externally valued loans

This module defines how a loan's debt, borrowing capacity and present value
are computed, using a pure function architecture with explicit inputs.

ARCHITECTURE (Pure Function Pattern):
=====================================

1. FROZEN DESCRIPTORS (set at creation, changed only by governed mutations):
   - InternalPricing: collateral value, max-borrow policy, valuation method
   - ExternalPricing: price id, max borrowable quantity, max-borrow policy

2. FROZEN LEDGERS (mutable state of an active loan, replaced on each change):
   - InternalLedger: normalized debt, effective rate, outstanding principal
   - ExternalLedger: outstanding quantity, cumulative borrowed quantity

3. PURE CALCULATION FUNCTIONS (calculate_*):
   - Take accumulators, prices and instants as parameters
   - Never call a collaborator

Key Formulas:
    internal debt     = normalized_debt * accumulator(rate, now)
    external debt     = outstanding_quantity * price
    UpToTotalBorrowed   available = advance_rate * limit - total_borrowed
    UpToOutstandingDebt available = advance_rate * limit - outstanding
        limit is collateral_value (internal) or max_borrow_quantity (external)
    DCF present value = sum(discount(flow * (1 - PD * LGD), discount_rate))
    written-off PV    = PV * (1 - write_off_percentage)
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Union

from .cashflow import RepaymentSchedule, expected_cashflows
from .core import (
    BALANCE_DECIMAL_PLACES, ONE, ZERO,
    InvalidPricing, PriceId,
    ensure_div, ensure_mul, ensure_sub, quantize_balance, to_decimal, to_rate,
)
from .interest import InterestRate, discount
from .policy import WriteOffStatus


# ============================================================================
# MAX BORROW POLICIES
# ============================================================================

@dataclass(frozen=True, slots=True)
class UpToTotalBorrowed:
    """Cumulative borrowed amount may not exceed advance_rate * limit."""
    advance_rate: Decimal

    def __post_init__(self):
        object.__setattr__(self, 'advance_rate', to_rate(self.advance_rate, "advance_rate"))


@dataclass(frozen=True, slots=True)
class UpToOutstandingDebt:
    """Current outstanding debt may not exceed advance_rate * limit."""
    advance_rate: Decimal

    def __post_init__(self):
        object.__setattr__(self, 'advance_rate', to_rate(self.advance_rate, "advance_rate"))


MaxBorrowAmount = Union[UpToTotalBorrowed, UpToOutstandingDebt]


# ============================================================================
# VALUATION METHODS
# ============================================================================

@dataclass(frozen=True, slots=True)
class OutstandingDebt:
    """Present value equals the outstanding debt."""
    pass


@dataclass(frozen=True, slots=True)
class DiscountedCashFlow:
    """
    Present value of the expected repayments.

    probability_of_default and loss_given_default are fractions in [0, 1];
    discount_rate is an annual rate, compounded every second.
    """
    probability_of_default: Decimal
    loss_given_default: Decimal
    discount_rate: Decimal

    def __post_init__(self):
        object.__setattr__(self, 'probability_of_default',
                           to_rate(self.probability_of_default, "probability_of_default"))
        object.__setattr__(self, 'loss_given_default',
                           to_rate(self.loss_given_default, "loss_given_default"))
        rate = to_decimal(self.discount_rate, "discount_rate")
        if rate < ZERO:
            raise ValueError(f"discount_rate must be non-negative, got {rate}")
        object.__setattr__(self, 'discount_rate', rate)

    @property
    def expected_loss(self) -> Decimal:
        return self.probability_of_default * self.loss_given_default


ValuationMethod = Union[OutstandingDebt, DiscountedCashFlow]


# ============================================================================
# PRICING DESCRIPTORS
# ============================================================================

@dataclass(frozen=True, slots=True)
class InternalPricing:
    """Loan valued from an externally appraised collateral value."""
    collateral_value: Decimal
    max_borrow_amount: MaxBorrowAmount
    valuation_method: ValuationMethod = OutstandingDebt()

    def __post_init__(self):
        value = to_decimal(self.collateral_value, "collateral_value")
        if value < ZERO:
            raise ValueError(f"collateral_value must be non-negative, got {value}")
        object.__setattr__(self, 'collateral_value', value)


@dataclass(frozen=True, slots=True)
class ExternalPricing:
    """Loan on a quantity of an asset priced by the price feed."""
    price_id: PriceId
    max_borrow_quantity: Decimal
    max_borrow_amount: MaxBorrowAmount = UpToTotalBorrowed(ONE)

    def __post_init__(self):
        quantity = to_decimal(self.max_borrow_quantity, "max_borrow_quantity")
        if quantity <= ZERO:
            raise ValueError(f"max_borrow_quantity must be positive, got {quantity}")
        object.__setattr__(self, 'max_borrow_quantity', quantity)


Pricing = Union[InternalPricing, ExternalPricing]


def validate_pricing(pricing: Pricing, schedule: RepaymentSchedule) -> None:
    """
    Check a pricing descriptor is usable with a repayment schedule.

    Raises:
        InvalidPricing: unknown pricing or policy type, or a discounted cash
            flow valuation without a fixed maturity to discount from
    """
    if isinstance(pricing, InternalPricing):
        if not isinstance(pricing.max_borrow_amount, (UpToTotalBorrowed, UpToOutstandingDebt)):
            raise InvalidPricing(f"Unknown max borrow policy: {pricing.max_borrow_amount!r}")
        if isinstance(pricing.valuation_method, DiscountedCashFlow):
            if not schedule.maturity.is_fixed:
                raise InvalidPricing("Discounted cash flow valuation requires a fixed maturity")
        elif not isinstance(pricing.valuation_method, OutstandingDebt):
            raise InvalidPricing(f"Unknown valuation method: {pricing.valuation_method!r}")
    elif isinstance(pricing, ExternalPricing):
        if not isinstance(pricing.max_borrow_amount, (UpToTotalBorrowed, UpToOutstandingDebt)):
            raise InvalidPricing(f"Unknown max borrow policy: {pricing.max_borrow_amount!r}")
    else:
        raise InvalidPricing(f"Unknown pricing: {pricing!r}")


# ============================================================================
# ACTIVE LEDGERS
# ============================================================================

@dataclass(frozen=True, slots=True)
class InternalLedger:
    """
    Balance state of an internally priced loan.

    interest_rate is the effective rate, write-off penalty included.
    """
    normalized_debt: Decimal = ZERO
    interest_rate: InterestRate = InterestRate(ZERO)
    outstanding_principal: Decimal = ZERO


@dataclass(frozen=True, slots=True)
class ExternalLedger:
    """Balance state of an externally priced loan, in asset quantity."""
    outstanding_quantity: Decimal = ZERO
    total_borrowed_quantity: Decimal = ZERO


ActiveLedger = Union[InternalLedger, ExternalLedger]


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def calculate_internal_debt(
    normalized_debt: Decimal,
    accumulator: Decimal,
    places: int = BALANCE_DECIMAL_PLACES,
) -> Decimal:
    """Current debt of a normalized balance."""
    return quantize_balance(ensure_mul(normalized_debt, accumulator), places)


def calculate_normalized_debt(debt: Decimal, accumulator: Decimal) -> Decimal:
    """
    Inverse of calculate_internal_debt() at the same accumulator.

    Kept at full context precision; only the debt it maps back to is rounded.
    """
    if debt == ZERO:
        return ZERO
    return ensure_div(debt, accumulator)


def calculate_external_debt(
    quantity: Decimal,
    price: Decimal,
    places: int = BALANCE_DECIMAL_PLACES,
) -> Decimal:
    return quantize_balance(ensure_mul(quantity, price), places)


def calculate_available_borrow(
    policy: MaxBorrowAmount,
    limit: Decimal,
    total_borrowed: Decimal,
    outstanding: Decimal,
) -> Decimal:
    """
    Amount still borrowable under a max-borrow policy.

    PURE FUNCTION - All inputs explicit.

    Args:
        policy: UpToTotalBorrowed or UpToOutstandingDebt
        limit: collateral value (internal) or max borrow quantity (external)
        total_borrowed: cumulative amount borrowed so far
        outstanding: current outstanding debt (or quantity)

    Returns:
        Non-negative amount; zero once the cap is reached.
    """
    cap = policy.advance_rate * limit
    if isinstance(policy, UpToTotalBorrowed):
        used = total_borrowed
    elif isinstance(policy, UpToOutstandingDebt):
        used = outstanding
    else:
        raise InvalidPricing(f"Unknown max borrow policy: {policy!r}")
    return max(cap - used, ZERO)


def calculate_present_value(
    pricing: InternalPricing,
    schedule: RepaymentSchedule,
    origination: datetime,
    now: datetime,
    principal: Decimal,
    debt: Decimal,
    rate_per_year: Decimal,
    places: int = BALANCE_DECIMAL_PLACES,
) -> Decimal:
    """
    Present value of an internally priced loan, before write-off.

    PURE FUNCTION - All inputs explicit.

    OutstandingDebt: the debt itself.

    DiscountedCashFlow: every expected payment is reduced by the expected loss
    (PD * LGD) and discounted from its payment date to now at discount_rate.
    Once maturity has passed there is nothing left to discount and the
    present value is the debt.
    """
    method = pricing.valuation_method
    if isinstance(method, OutstandingDebt):
        return debt
    maturity = schedule.maturity.date
    if maturity is None or now >= maturity:
        return debt

    interest = max(debt - principal, ZERO)
    flows = expected_cashflows(schedule, origination, now, principal, interest, rate_per_year)
    recovery = ONE - method.expected_loss
    total = ZERO
    for date, amount in flows:
        total += discount(amount * recovery, method.discount_rate, now, date)
    return quantize_balance(total, places)


def calculate_written_off_value(
    present_value: Decimal,
    status: WriteOffStatus,
    places: int = BALANCE_DECIMAL_PLACES,
) -> Decimal:
    """Present value after removing the written-off percentage."""
    return quantize_balance(
        ensure_mul(present_value, ensure_sub(ONE, status.percentage)), places
    )
