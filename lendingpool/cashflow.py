"""
cashflow.py - Repayment schedules and expected cash flows

A loan's repayment schedule fixes when the borrower is expected to pay:
- Maturity: the date the principal is due (or none, for open-ended loans)
- InterestPayments: when interest is due (never, once at maturity, monthly)
- PayDownSchedule: how principal is paid down before maturity

expected_cashflows() turns a schedule plus the loan's current balances into
the list of (payment_date, amount) pairs a discounted cash flow valuation
discounts back to today.
"""

from __future__ import annotations
import calendar
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple

from .core import ONE, ZERO, InvalidMaturity, InvalidMutation
from .interest import compound


CashFlows = List[Tuple[datetime, Decimal]]


class InterestPayments(str, Enum):
    NONE = "none"
    ONCE_AT_MATURITY = "once_at_maturity"
    MONTHLY = "monthly"


class PayDownSchedule(str, Enum):
    NONE = "none"


@dataclass(frozen=True, slots=True)
class Maturity:
    """
    Maturity of a loan.

    A fixed maturity carries a date and the number of seconds it may still be
    extended by. Maturity.none() describes an open-ended loan.
    """
    date: Optional[datetime] = None
    extension: int = 0

    def __post_init__(self):
        if self.extension < 0:
            raise ValueError(f"extension must be non-negative, got {self.extension}")
        if self.date is None and self.extension:
            raise ValueError("An open-ended maturity cannot carry an extension")

    @classmethod
    def fixed(cls, date: datetime, extension: int = 0) -> Maturity:
        return cls(date=date, extension=extension)

    @classmethod
    def none(cls) -> Maturity:
        return cls()

    @property
    def is_fixed(self) -> bool:
        return self.date is not None

    def is_valid(self, now: datetime) -> bool:
        """A fixed maturity must lie strictly after now."""
        return self.date is None or self.date > now

    def extend(self, seconds: int) -> Maturity:
        """
        Move the maturity date forward, consuming part of the allowed extension.

        Raises:
            InvalidMutation: open-ended maturity, or seconds beyond the remaining extension
        """
        if self.date is None:
            raise InvalidMutation("An open-ended maturity cannot be extended")
        if seconds < 0 or seconds > self.extension:
            raise InvalidMutation(
                f"Extension of {seconds}s exceeds the remaining {self.extension}s"
            )
        return Maturity(self.date + timedelta(seconds=seconds), self.extension - seconds)


@dataclass(frozen=True, slots=True)
class RepaymentSchedule:
    maturity: Maturity
    interest_payments: InterestPayments = InterestPayments.NONE
    pay_down_schedule: PayDownSchedule = PayDownSchedule.NONE

    def validate(self, now: datetime) -> None:
        """
        Check the schedule can be used for a loan created at now.

        Raises:
            InvalidMaturity: maturity not strictly in the future, or periodic
                interest payments without a fixed maturity
        """
        if not self.maturity.is_valid(now):
            raise InvalidMaturity(f"Maturity {self.maturity.date} is not after {now}")
        self.validate_shape()

    def validate_shape(self) -> None:
        """Checks that do not depend on the current instant."""
        if self.interest_payments is InterestPayments.MONTHLY and not self.maturity.is_fixed:
            raise InvalidMaturity("Monthly interest payments require a fixed maturity")

    def with_maturity(self, maturity: Maturity) -> RepaymentSchedule:
        return replace(self, maturity=maturity)


def add_months(start: datetime, months: int) -> datetime:
    """
    Shift a date by whole calendar months.

    Days past the end of the target month clamp to its last day
    (Jan 31 + 1 month = Feb 28/29). Time of day is preserved.
    """
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def payment_dates(schedule: RepaymentSchedule, origination: datetime) -> List[datetime]:
    """
    All scheduled payment dates of a loan, in order, ending at maturity.

    Monthly dates are counted from the origination date so that short months
    do not drift later dates. Open-ended loans have no scheduled dates.
    """
    maturity = schedule.maturity.date
    if maturity is None:
        return []
    if schedule.interest_payments is not InterestPayments.MONTHLY:
        return [maturity]

    dates = []
    k = 1
    while True:
        date = add_months(origination, k)
        if date >= maturity:
            break
        dates.append(date)
        k += 1
    dates.append(maturity)
    return dates


def expected_cashflows(
    schedule: RepaymentSchedule,
    origination: datetime,
    now: datetime,
    principal: Decimal,
    outstanding_interest: Decimal,
    rate_per_year: Decimal,
) -> CashFlows:
    """
    Future payments the borrower is expected to make, assuming no default.

    PURE FUNCTION - All inputs explicit.

    Bullet schedules (no interest payments, or once at maturity):
        one payment at maturity = (principal + outstanding_interest)
        compounded from now to maturity.

    Monthly interest payments:
        each future payment date receives the interest that principal accrues
        over its period; the first one also collects the interest already
        outstanding, and the last one repays the principal.

    Args:
        schedule: Loan repayment schedule
        origination: Date the loan was first borrowed against
        now: Valuation instant
        principal: Outstanding principal
        outstanding_interest: Interest accrued and not yet paid
        rate_per_year: Rate the loan accrues at

    Returns:
        List of (payment_date, amount) strictly after now. Empty if the loan
        is open-ended or already past maturity.
    """
    maturity = schedule.maturity.date
    if maturity is None or maturity <= now:
        return []

    if schedule.interest_payments is not InterestPayments.MONTHLY:
        return [(maturity, compound(principal + outstanding_interest, rate_per_year, now, maturity))]

    flows: CashFlows = []
    period_start = now
    carried = outstanding_interest
    for date in payment_dates(schedule, origination):
        if date <= now:
            continue
        interest = principal * (compound(ONE, rate_per_year, period_start, date) - ONE)
        amount = interest + carried
        carried = ZERO
        if date == maturity:
            amount += principal
        flows.append((date, amount))
        period_start = date
    return flows
