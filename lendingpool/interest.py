"""
interest.py - Rate basis registry and compounding helpers

Loans do not accrue interest individually. Each loan stores a normalized
debt, and a shared accumulator per interest rate turns it back into the
current debt:

    debt(t) = normalized_debt * accumulator(rate, t)
    accumulator(rate, t) = (1 + rate_per_year / SECONDS_PER_YEAR) ** seconds(EPOCH, t)

Changing the rate of a loan means renormalizing it at the current instant:
the debt is preserved and only the normalized figure changes.

Classes:
- CompoundingSchedule: how often interest compounds
- InterestRate: fixed annual rate plus compounding schedule
- InterestAccrual: protocol the engine consumes
- RateRegistry: in-memory reference-counted implementation
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
import decimal
import logging
from typing import Dict, Protocol, Tuple, runtime_checkable

from .core import (
    ACCRUAL_EPOCH, ONE, SECONDS_PER_YEAR, ZERO,
    ArithmeticOverflow, RateNotReferenced,
    seconds_between, to_decimal,
)

log = logging.getLogger(__name__)


class CompoundingSchedule(str, Enum):
    SECONDLY = "secondly"


@dataclass(frozen=True, slots=True)
class InterestRate:
    """Fixed annual interest rate (0.05 means 5% per year)."""
    rate_per_year: Decimal
    compounding: CompoundingSchedule = CompoundingSchedule.SECONDLY

    def __post_init__(self):
        rate = to_decimal(self.rate_per_year, "rate_per_year")
        if rate < ZERO:
            raise ValueError(f"rate_per_year must be non-negative, got {rate}")
        object.__setattr__(self, 'rate_per_year', rate.normalize())

    def with_penalty(self, penalty: Decimal) -> InterestRate:
        """Return the rate increased by a write-off penalty."""
        return InterestRate(self.rate_per_year + to_decimal(penalty, "penalty"), self.compounding)


def rate_per_second(rate_per_year: Decimal) -> Decimal:
    """Per-second growth factor of an annual rate compounded every second."""
    return ONE + rate_per_year / SECONDS_PER_YEAR


def compound(amount: Decimal, rate_per_year: Decimal, start: datetime, end: datetime) -> Decimal:
    """
    Grow an amount from start to end at a secondly-compounded annual rate.

    Returns amount unchanged if end is not after start.
    """
    seconds = seconds_between(start, end)
    if seconds == 0:
        return amount
    return amount * rate_per_second(rate_per_year) ** seconds


def discount(amount: Decimal, rate_per_year: Decimal, start: datetime, end: datetime) -> Decimal:
    """Present value at start of an amount due at end."""
    seconds = seconds_between(start, end)
    if seconds == 0:
        return amount
    return amount / rate_per_second(rate_per_year) ** seconds


@runtime_checkable
class InterestAccrual(Protocol):
    """Rate basis registry consumed by the engine."""

    def reference_rate(self, rate: InterestRate) -> None:
        """Register one more loan accruing at this rate."""
        ...

    def unreference_rate(self, rate: InterestRate) -> None:
        """Release one reference taken by reference_rate()."""
        ...

    def accumulator(self, rate: InterestRate, when: datetime) -> Decimal:
        """Accumulated growth factor of the rate from the epoch until when."""
        ...


class RateRegistry:
    """
    In-memory InterestAccrual with reference counting.

    A rate is only known while at least one loan references it. Asking for
    the accumulator of an unreferenced rate raises RateNotReferenced.
    Only the latest accumulator of each rate is cached.
    """

    def __init__(self):
        self.references: Dict[InterestRate, int] = {}
        # rate -> (instant, accumulator) of the latest read
        self._cache: Dict[InterestRate, Tuple[datetime, Decimal]] = {}

    def reference_rate(self, rate: InterestRate) -> None:
        count = self.references.get(rate, 0)
        self.references[rate] = count + 1
        if count == 0:
            log.debug("rate %s referenced", rate.rate_per_year)

    def unreference_rate(self, rate: InterestRate) -> None:
        count = self.references.get(rate, 0)
        if count == 0:
            raise RateNotReferenced(f"Rate {rate.rate_per_year} is not referenced")
        if count == 1:
            del self.references[rate]
            self._cache.pop(rate, None)
            log.debug("rate %s released", rate.rate_per_year)
        else:
            self.references[rate] = count - 1

    def accumulator(self, rate: InterestRate, when: datetime) -> Decimal:
        if rate not in self.references:
            raise RateNotReferenced(f"Rate {rate.rate_per_year} is not referenced")
        cached = self._cache.get(rate)
        if cached is not None and cached[0] == when:
            return cached[1]
        try:
            value = compound(ONE, rate.rate_per_year, ACCRUAL_EPOCH, when)
        except decimal.Overflow as exc:
            raise ArithmeticOverflow(f"Accumulator of rate {rate.rate_per_year} overflows") from exc
        self._cache[rate] = (when, value)
        return value

    def __repr__(self):
        return f"RateRegistry({len(self.references)} rates)"
