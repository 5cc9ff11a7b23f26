"""
loans.py - Loan lifecycle state machine

A loan moves through:

    Created ──borrow──> Active ──close──> Closed
       │                  │ ▲
       │                  └─┘ borrow / repay / write off / mutate
       └──────────close (never borrowed)──────────> Closed

Written-off is a sub-state of Active: the write-off status is set, the loan
keeps accruing (at its rate plus the penalty) and can still be repaid.

ActiveLoan is a frozen snapshot. Every transition returns a NEW instance;
the engine swaps it into pool storage only when the whole operation
succeeds. Transitions never call collaborators: the engine reads the
current instant, the rate accumulator and the external price once into a
MarketSnapshot and passes it in.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple

from .cashflow import RepaymentSchedule
from .core import (
    BALANCE_DECIMAL_PLACES, ZERO,
    AccountId, CollateralRef, LoanId, PoolId,
    BorrowLimitExceeded, BorrowRestricted, LoanNotFullyRepaid, LoanWrittenOff,
    MaturityDatePassed, PriceNotFound, RepayAmountTooHigh, RepayRestricted,
    ensure_add, ensure_sub, quantize_balance, seconds_between, to_decimal,
)
from .interest import InterestRate
from .policy import WriteOffKind, WriteOffStatus
from .pricing import (
    ActiveLedger, ExternalLedger, InternalLedger, InternalPricing, Pricing,
    calculate_available_borrow, calculate_external_debt, calculate_internal_debt,
    calculate_normalized_debt, calculate_present_value, calculate_written_off_value,
    validate_pricing,
)


# ============================================================================
# RESTRICTIONS AND INFO
# ============================================================================

class BorrowRestrictions(str, Enum):
    NOT_WRITTEN_OFF = "not_written_off"
    FULL_ONCE = "full_once"


class RepayRestrictions(str, Enum):
    NONE = "none"
    FULL = "full"


@dataclass(frozen=True, slots=True)
class LoanRestrictions:
    borrows: BorrowRestrictions = BorrowRestrictions.NOT_WRITTEN_OFF
    repayments: RepayRestrictions = RepayRestrictions.NONE


@dataclass(frozen=True, slots=True)
class LoanInfo:
    """
    Everything fixed when a loan is created.

    collateral is a (collection id, item id) reference to an asset owned
    outside the engine; interest_rate is the base rate, without any
    write-off penalty.
    """
    schedule: RepaymentSchedule
    collateral: CollateralRef
    interest_rate: InterestRate
    pricing: Pricing
    restrictions: LoanRestrictions = LoanRestrictions()

    def __post_init__(self):
        object.__setattr__(self, 'collateral', tuple(self.collateral))

    def validate(self, now: datetime) -> None:
        """Raise InvalidMaturity / InvalidPricing if the loan cannot exist at now."""
        self.schedule.validate(now)
        validate_pricing(self.pricing, self.schedule)

    @property
    def is_internal(self) -> bool:
        return isinstance(self.pricing, InternalPricing)


# ============================================================================
# REPAYMENTS AND MARKET INPUTS
# ============================================================================

@dataclass(frozen=True, slots=True)
class RepaidInput:
    """
    Repayment request.

    principal is a currency amount for internal loans and an asset quantity
    for external ones; interest and unscheduled are always currency.
    """
    principal: Decimal = ZERO
    interest: Decimal = ZERO
    unscheduled: Decimal = ZERO

    def __post_init__(self):
        for name in ('principal', 'interest', 'unscheduled'):
            value = to_decimal(getattr(self, name), name)
            if value < ZERO:
                raise ValueError(f"{name} must be non-negative, got {value}")
            object.__setattr__(self, name, value)


@dataclass(frozen=True, slots=True)
class RepaidAmount:
    """Currency actually collected by a repayment."""
    principal: Decimal = ZERO
    interest: Decimal = ZERO
    unscheduled: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return ensure_add(ensure_add(self.principal, self.interest), self.unscheduled)


@dataclass(frozen=True, slots=True)
class MarketSnapshot:
    """
    Collaborator readings for one loan at one instant.

    accumulator is set for internal loans (at the loan's effective rate),
    price and price_timestamp for external ones.
    """
    now: datetime
    accumulator: Optional[Decimal] = None
    price: Optional[Decimal] = None
    price_timestamp: Optional[datetime] = None
    places: int = BALANCE_DECIMAL_PLACES

    def require_price(self) -> Decimal:
        if self.price is None:
            raise PriceNotFound("No price available for an externally priced loan")
        return self.price


# ============================================================================
# LOAN STATES
# ============================================================================

@dataclass(frozen=True, slots=True)
class CreatedLoan:
    loan_id: LoanId
    pool_id: PoolId
    borrower: AccountId
    info: LoanInfo
    created_at: datetime

    def activate(self, now: datetime) -> ActiveLoan:
        """Wrap the info into an empty active ledger."""
        if self.info.is_internal:
            ledger: ActiveLedger = InternalLedger(interest_rate=self.info.interest_rate)
        else:
            ledger = ExternalLedger()
        return ActiveLoan(
            loan_id=self.loan_id,
            pool_id=self.pool_id,
            borrower=self.borrower,
            info=self.info,
            origination_date=now,
            ledger=ledger,
        )

    def close(self, now: datetime) -> ClosedLoan:
        return ClosedLoan(
            loan_id=self.loan_id,
            pool_id=self.pool_id,
            borrower=self.borrower,
            info=self.info,
            closed_at=now,
        )


@dataclass(frozen=True, slots=True)
class ClosedLoan:
    loan_id: LoanId
    pool_id: PoolId
    borrower: AccountId
    info: LoanInfo
    closed_at: datetime
    total_borrowed: Decimal = ZERO
    total_repaid: Decimal = ZERO


@dataclass(frozen=True, slots=True)
class ActiveLoan:
    """
    Immutable snapshot of an active loan.

    Totals are cumulative currency amounts. Outstanding balances live in the
    pricing-specific ledger.
    """
    loan_id: LoanId
    pool_id: PoolId
    borrower: AccountId
    info: LoanInfo
    origination_date: datetime
    ledger: ActiveLedger
    write_off_kind: WriteOffKind = WriteOffKind.NONE
    write_off_status: WriteOffStatus = field(default_factory=WriteOffStatus)
    total_borrowed: Decimal = ZERO
    total_repaid_principal: Decimal = ZERO
    total_repaid_interest: Decimal = ZERO
    total_repaid_unscheduled: Decimal = ZERO

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def is_internal(self) -> bool:
        return isinstance(self.ledger, InternalLedger)

    @property
    def is_written_off(self) -> bool:
        return self.write_off_kind is not WriteOffKind.NONE and self.write_off_status.is_written_off

    @property
    def total_repaid(self) -> Decimal:
        return self.total_repaid_principal + self.total_repaid_interest + self.total_repaid_unscheduled

    @property
    def rate(self) -> Optional[InterestRate]:
        """Effective accrual rate of an internal loan, None for external loans."""
        return self.ledger.interest_rate if self.is_internal else None

    def debt(self, market: MarketSnapshot) -> Decimal:
        if self.is_internal:
            return calculate_internal_debt(self.ledger.normalized_debt, market.accumulator, market.places)
        return calculate_external_debt(self.ledger.outstanding_quantity, market.require_price(), market.places)

    def outstanding_principal(self, market: MarketSnapshot) -> Decimal:
        if self.is_internal:
            return self.ledger.outstanding_principal
        return self.debt(market)

    def outstanding_interest(self, market: MarketSnapshot) -> Decimal:
        if not self.is_internal:
            return ZERO
        return max(self.debt(market) - self.ledger.outstanding_principal, ZERO)

    def present_value(self, market: MarketSnapshot) -> Decimal:
        """Current value of the loan, write-off percentage applied."""
        debt = self.debt(market)
        if self.is_internal:
            value = calculate_present_value(
                self.info.pricing,
                self.info.schedule,
                self.origination_date,
                market.now,
                self.ledger.outstanding_principal,
                debt,
                self.ledger.interest_rate.rate_per_year,
                market.places,
            )
        else:
            value = debt
        return calculate_written_off_value(value, self.write_off_status, market.places)

    def available_borrow(self, market: MarketSnapshot) -> Decimal:
        """
        Amount still borrowable now.

        Currency for internal loans, asset quantity for external ones.
        """
        pricing = self.info.pricing
        if isinstance(pricing, InternalPricing):
            return calculate_available_borrow(
                pricing.max_borrow_amount,
                pricing.collateral_value,
                self.total_borrowed,
                self.debt(market),
            )
        return calculate_available_borrow(
            pricing.max_borrow_amount,
            pricing.max_borrow_quantity,
            self.ledger.total_borrowed_quantity,
            self.ledger.outstanding_quantity,
        )

    def overdue_seconds(self, now: datetime) -> Optional[int]:
        """Seconds past maturity, None while the principal is not yet due."""
        maturity = self.info.schedule.maturity.date
        if maturity is None or now < maturity:
            return None
        return seconds_between(maturity, now)

    def price_age_seconds(self, market: MarketSnapshot) -> Optional[int]:
        if self.is_internal or market.price_timestamp is None:
            return None
        return seconds_between(market.price_timestamp, market.now)

    def is_fully_repaid(self, market: MarketSnapshot) -> bool:
        if self.is_internal:
            return self.ledger.outstanding_principal == ZERO and self.debt(market) == ZERO
        return self.ledger.outstanding_quantity == ZERO

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def borrow(self, amount: Decimal, market: MarketSnapshot) -> Tuple[ActiveLoan, Decimal]:
        """
        Borrow against the loan.

        Returns:
            (new loan, currency amount to withdraw from the pool)

        Raises:
            LoanWrittenOff: written off and restricted to NOT_WRITTEN_OFF
            BorrowRestricted: FULL_ONCE loan already borrowed against
            MaturityDatePassed: maturity already reached
            BorrowLimitExceeded: amount above the max-borrow evaluation
        """
        amount = quantize_balance(_non_negative(amount, "amount"), market.places)
        restriction = self.info.restrictions.borrows
        if restriction is BorrowRestrictions.NOT_WRITTEN_OFF and self.is_written_off:
            raise LoanWrittenOff(f"Loan {self.loan_id} is written off")
        if restriction is BorrowRestrictions.FULL_ONCE and self.total_borrowed > ZERO:
            raise BorrowRestricted(f"Loan {self.loan_id} can only be borrowed against once")
        maturity = self.info.schedule.maturity.date
        if maturity is not None and market.now >= maturity:
            raise MaturityDatePassed(f"Loan {self.loan_id} matured at {maturity}")

        available = self.available_borrow(market)
        if amount > available:
            raise BorrowLimitExceeded(
                f"Borrow of {amount} exceeds the available {available} on loan {self.loan_id}"
            )
        return self._add_principal(amount, market)

    def increase_debt(self, amount: Decimal, market: MarketSnapshot) -> Tuple[ActiveLoan, Decimal]:
        """Add principal without restriction or limit checks."""
        return self._add_principal(quantize_balance(_non_negative(amount, "amount"), market.places), market)

    def _add_principal(self, amount: Decimal, market: MarketSnapshot) -> Tuple[ActiveLoan, Decimal]:
        if self.is_internal:
            ledger = self.ledger
            debt = ensure_add(self.debt(market), amount)
            new_ledger = replace(
                ledger,
                normalized_debt=calculate_normalized_debt(debt, market.accumulator),
                outstanding_principal=ensure_add(ledger.outstanding_principal, amount),
            )
            currency = amount
        else:
            ledger = self.ledger
            new_ledger = replace(
                ledger,
                outstanding_quantity=ensure_add(ledger.outstanding_quantity, amount),
                total_borrowed_quantity=ensure_add(ledger.total_borrowed_quantity, amount),
            )
            currency = calculate_external_debt(amount, market.require_price(), market.places)
        return (
            replace(self, ledger=new_ledger, total_borrowed=ensure_add(self.total_borrowed, currency)),
            currency,
        )

    def repay(self, repaid: RepaidInput, market: MarketSnapshot) -> Tuple[ActiveLoan, RepaidAmount]:
        """
        Repay principal and interest.

        Interest beyond what is outstanding is not collected. Principal beyond
        what is outstanding is rejected.

        Returns:
            (new loan, currency collected)

        Raises:
            RepayAmountTooHigh: principal above the outstanding principal
            RepayRestricted: FULL restriction and a partial repayment
        """
        return self._reduce(repaid, market, enforce_restrictions=True)

    def decrease_debt(self, repaid: RepaidInput, market: MarketSnapshot) -> Tuple[ActiveLoan, RepaidAmount]:
        """Remove principal and interest without repay restrictions."""
        return self._reduce(repaid, market, enforce_restrictions=False)

    def _reduce(
        self,
        repaid: RepaidInput,
        market: MarketSnapshot,
        enforce_restrictions: bool,
    ) -> Tuple[ActiveLoan, RepaidAmount]:
        repaid = RepaidInput(
            quantize_balance(repaid.principal, market.places),
            quantize_balance(repaid.interest, market.places),
            quantize_balance(repaid.unscheduled, market.places),
        )
        full_only = (
            enforce_restrictions
            and self.info.restrictions.repayments is RepayRestrictions.FULL
        )
        if self.is_internal:
            ledger = self.ledger
            principal_out = ledger.outstanding_principal
            debt = self.debt(market)
            interest_out = max(debt - principal_out, ZERO)
            if repaid.principal > principal_out:
                raise RepayAmountTooHigh(
                    f"Principal {repaid.principal} exceeds the outstanding {principal_out} "
                    f"on loan {self.loan_id}"
                )
            interest = min(repaid.interest, interest_out)
            if full_only and (repaid.principal != principal_out or interest != interest_out):
                raise RepayRestricted(f"Loan {self.loan_id} only accepts full repayment")

            new_debt = ensure_sub(debt, ensure_add(repaid.principal, interest))
            new_ledger = replace(
                ledger,
                normalized_debt=calculate_normalized_debt(new_debt, market.accumulator),
                outstanding_principal=ensure_sub(principal_out, repaid.principal),
            )
            principal_currency = repaid.principal
        else:
            ledger = self.ledger
            if repaid.principal > ledger.outstanding_quantity:
                raise RepayAmountTooHigh(
                    f"Quantity {repaid.principal} exceeds the outstanding "
                    f"{ledger.outstanding_quantity} on loan {self.loan_id}"
                )
            if full_only and repaid.principal != ledger.outstanding_quantity:
                raise RepayRestricted(f"Loan {self.loan_id} only accepts full repayment")
            interest = ZERO
            new_ledger = replace(
                ledger,
                outstanding_quantity=ensure_sub(ledger.outstanding_quantity, repaid.principal),
            )
            principal_currency = calculate_external_debt(
                repaid.principal, market.require_price(), market.places
            )

        amount = RepaidAmount(principal_currency, interest, repaid.unscheduled)
        new_loan = replace(
            self,
            ledger=new_ledger,
            total_repaid_principal=ensure_add(self.total_repaid_principal, amount.principal),
            total_repaid_interest=ensure_add(self.total_repaid_interest, amount.interest),
            total_repaid_unscheduled=ensure_add(self.total_repaid_unscheduled, amount.unscheduled),
        )
        return new_loan, amount

    def with_write_off(
        self,
        status: WriteOffStatus,
        kind: WriteOffKind,
        market: MarketSnapshot,
        new_accumulator: Optional[Decimal] = None,
    ) -> ActiveLoan:
        """
        Apply a write-off status.

        Internal loans move onto base rate + penalty. The debt at market.now
        is preserved; new_accumulator is the accumulator of the new rate at
        the same instant.
        """
        loan = replace(self, write_off_status=status, write_off_kind=kind)
        if not self.is_internal:
            return loan
        rate = effective_rate(self.info, status)
        return loan._renormalized(rate, market, new_accumulator)

    def with_info(
        self,
        info: LoanInfo,
        market: MarketSnapshot,
        new_accumulator: Optional[Decimal] = None,
    ) -> ActiveLoan:
        """Replace the loan info, renormalizing if the base rate changed."""
        loan = replace(self, info=info)
        if not self.is_internal:
            return loan
        rate = effective_rate(info, self.write_off_status)
        return loan._renormalized(rate, market, new_accumulator)

    def _renormalized(
        self,
        rate: InterestRate,
        market: MarketSnapshot,
        new_accumulator: Optional[Decimal],
    ) -> ActiveLoan:
        if rate == self.ledger.interest_rate:
            return self
        debt = self.debt(market)
        ledger = replace(
            self.ledger,
            interest_rate=rate,
            normalized_debt=calculate_normalized_debt(debt, new_accumulator),
        )
        return replace(self, ledger=ledger)

    def close(self, market: MarketSnapshot) -> ClosedLoan:
        """
        Raises:
            LoanNotFullyRepaid: principal or interest still outstanding
        """
        if not self.is_fully_repaid(market):
            raise LoanNotFullyRepaid(
                f"Loan {self.loan_id} still owes {self.debt(market)}"
            )
        return ClosedLoan(
            loan_id=self.loan_id,
            pool_id=self.pool_id,
            borrower=self.borrower,
            info=self.info,
            closed_at=market.now,
            total_borrowed=self.total_borrowed,
            total_repaid=self.total_repaid,
        )


def _non_negative(value, name: str) -> Decimal:
    value = to_decimal(value, name)
    if value < ZERO:
        raise ValueError(f"{name} must be non-negative, got {value}")
    return value


def effective_rate(info: LoanInfo, status: WriteOffStatus) -> InterestRate:
    """Rate an internal loan accrues at under a write-off status."""
    return info.interest_rate.with_penalty(status.penalty)
