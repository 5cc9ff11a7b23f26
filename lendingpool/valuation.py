"""
valuation.py - Portfolio valuation aggregator

The pool's portfolio value is the sum of the present values of its active
loans. It is pull-based: balance-affecting operations only mark the cached
value dirty, and update_portfolio_valuation() recomputes it.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, Mapping, Optional

from .core import ZERO, LoanId, ensure_add


@dataclass(frozen=True, slots=True)
class PortfolioValuation:
    """
    Cached valuation of a pool.

    values holds the present value of each active loan at last_updated.
    dirty is set whenever a loan's balances changed since then.
    """
    value: Decimal = ZERO
    values: Mapping[LoanId, Decimal] = field(default_factory=dict)
    last_updated: Optional[datetime] = None
    dirty: bool = False

    def mark_dirty(self) -> PortfolioValuation:
        if self.dirty:
            return self
        return replace(self, dirty=True)


def aggregate(values: Dict[LoanId, Decimal], now: datetime) -> PortfolioValuation:
    """Build a fresh valuation from per-loan present values."""
    total = ZERO
    for value in values.values():
        total = ensure_add(total, value)
    return PortfolioValuation(value=total, values=dict(values), last_updated=now, dirty=False)
