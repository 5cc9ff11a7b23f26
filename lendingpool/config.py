"""
config.py - Engine bounds and numeric settings.
"""

from __future__ import annotations
from dataclasses import dataclass

from .core import BALANCE_DECIMAL_PLACES


@dataclass(frozen=True, slots=True)
class LoansConfig:
    """
    Immutable configuration for a Loans engine.

    Bounds are per pool. Changing them requires constructing a new engine.
    """
    max_active_loans_per_pool: int = 1000
    max_write_off_policy_size: int = 10
    max_triggers_per_rule: int = 5
    balance_decimal_places: int = BALANCE_DECIMAL_PLACES

    def __post_init__(self):
        for name in (
            'max_active_loans_per_pool',
            'max_write_off_policy_size',
            'max_triggers_per_rule',
            'balance_decimal_places',
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")
