"""
Core types and pure functions for the lending pool loan engine.

This module provides the foundations every other module builds on:
1. Decimal context and fixed-point constants
2. Identifier aliases and the Role enum
3. Protocols for the collaborators the engine consumes (permissions,
   pool balances, clock)
4. Exceptions: LoansError and the domain-specific error taxonomy
5. Checked arithmetic: helpers that fail instead of wrapping or saturating
6. Canonical serialization and content hashing

All functions in this module are pure. Nothing here holds or mutates engine state.
"""

from __future__ import annotations
from dataclasses import fields, is_dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN, getcontext
from enum import Enum
import hashlib
from typing import Any, Hashable, Protocol, runtime_checkable


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Debt accounting requires deterministic Decimal arithmetic. The global
# context is configured once at import time.
#
# PRECONDITION: No other code should modify the global Decimal context.
#
#   - prec=60: a MAX_BALANCE value still quantizes to 12 places, with headroom
#     for compounding accumulators over decades
#   - rounding=ROUND_HALF_EVEN: banker's rounding (unbiased)
#
_LOANS_DECIMAL_CONTEXT = getcontext()
_LOANS_DECIMAL_CONTEXT.prec = 60
_LOANS_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Upper bound of a balance (unsigned 128-bit, as in the pool currency ledger).
MAX_BALANCE = Decimal(2 ** 128 - 1)

# Fixed-point scale of stored balances.
BALANCE_DECIMAL_PLACES = 12

SECONDS_PER_DAY = 24 * 3600
SECONDS_PER_YEAR = 365 * SECONDS_PER_DAY

# Reference instant for rate accumulators.
ACCRUAL_EPOCH = datetime(1970, 1, 1)

ZERO = Decimal("0")
ONE = Decimal("1")


# ============================================================================
# TYPE ALIASES
# ============================================================================

PoolId = Hashable
LoanId = int
AccountId = str
ChangeId = str
PriceId = Hashable
# (collection id, item id) of the non-fungible collateral.
CollateralRef = tuple


# ============================================================================
# ENUMS
# ============================================================================

class Role(str, Enum):
    """Pool-scoped roles checked through the Permissions collaborator."""
    BORROWER = "borrower"
    LOAN_ADMIN = "loan_admin"
    POOL_ADMIN = "pool_admin"


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class Permissions(Protocol):
    """Role registry of the enclosing system."""

    def has(self, pool_id: PoolId, account: AccountId, role: Role) -> bool:
        """Return True if the account holds the role in the pool."""
        ...

    def add(self, pool_id: PoolId, account: AccountId, role: Role) -> None:
        """Grant a role in the pool."""
        ...


@runtime_checkable
class PoolSupport(Protocol):
    """
    Pool currency ledger.

    withdraw() moves currency from the pool reserve to an account (borrow),
    deposit() moves it back (repay). Both raise on failure; the engine does
    not catch their errors.
    """

    def pool_exists(self, pool_id: PoolId) -> bool:
        ...

    def account_for(self, pool_id: PoolId) -> AccountId:
        ...

    def withdraw(self, pool_id: PoolId, to: AccountId, amount: Decimal) -> None:
        ...

    def deposit(self, pool_id: PoolId, source: AccountId, amount: Decimal) -> None:
        ...


@runtime_checkable
class Clock(Protocol):
    """Source of the current instant."""

    def now(self) -> datetime:
        ...


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LoansError(Exception):
    """Base exception for all loan engine errors."""
    pass


# --- Validation -------------------------------------------------------------

class ValidationError(LoansError):
    """An operation was rejected by a state or input check."""
    pass


class InvalidMaturity(ValidationError):
    """Raised when a repayment schedule's maturity is not strictly in the future."""
    pass


class CollateralAlreadyUsed(ValidationError):
    """Raised when the collateral is already attached to another loan of the pool."""
    pass


class BorrowLimitExceeded(ValidationError):
    """Raised when a borrow would exceed the pricing model's max-borrow amount."""
    pass


class BorrowRestricted(ValidationError):
    """Raised when the loan's borrow restriction forbids another borrow."""
    pass


class LoanWrittenOff(ValidationError):
    """Raised when borrowing on a written-off loan is forbidden by its restrictions."""
    pass


class MaturityDatePassed(ValidationError):
    """Raised when borrowing after the loan's maturity date."""
    pass


class RepayAmountTooHigh(ValidationError):
    """Raised when a repayment exceeds the outstanding principal."""
    pass


class RepayRestricted(ValidationError):
    """Raised when the loan's repay restriction forbids a partial repayment."""
    pass


class NoWriteOffRuleApplies(ValidationError):
    """Raised when no rule of the pool's write-off policy applies to the loan."""
    pass


class AdminWriteOffLessThanPolicy(ValidationError):
    """Raised when an admin write-off is less punitive than the policy."""
    pass


class LoanNotFullyRepaid(ValidationError):
    """Raised when closing a loan that still carries principal or interest."""
    pass


class InvalidPricing(ValidationError):
    """Raised when a pricing descriptor or an amount does not fit the loan's pricing."""
    pass


class InvalidMutation(ValidationError):
    """Raised when a loan mutation cannot be applied to the loan."""
    pass


class InvalidWriteOffPolicy(ValidationError):
    """Raised when a write-off policy breaks the configured bounds."""
    pass


class MaxActiveLoansReached(ValidationError):
    """Raised when activating a loan would exceed the pool's active-loan bound."""
    pass


class TransferDebtToSameLoan(ValidationError):
    """Raised when a debt transfer names the same loan as source and target."""
    pass


class TransferDebtAmountMismatched(ValidationError):
    """Raised when the repaid and borrowed legs of a debt transfer differ in value."""
    pass


class NotLoanBorrower(ValidationError):
    """Raised when the caller is not the borrower of the loan."""
    pass


class PoolHasNoActiveLoans(ValidationError):
    """Raised when a non-trivial valuation is required but the pool has no active loans."""
    pass


class PoolNotEmpty(ValidationError):
    """Raised when removing a pool that still holds loans."""
    pass


# --- Not found --------------------------------------------------------------

class NotFoundError(LoansError):
    """A referenced entity does not exist."""
    pass


class LoanNotFound(NotFoundError):
    """Raised when a loan id is unknown, or the loan is no longer open."""
    pass


class LoanNotFoundInPool(LoanNotFound):
    """Raised when a loan id belongs to a different pool."""
    pass


class PoolNotFound(NotFoundError):
    """Raised when the pool is unknown to the pool ledger or the engine."""
    pass


class ChangeNotFound(NotFoundError):
    """Raised when a change id was never noted."""
    pass


class PriceNotFound(NotFoundError):
    """Raised when the price feed has no value for a price id."""
    pass


class RateNotReferenced(NotFoundError):
    """Raised when accruing against a rate that was never referenced."""
    pass


# --- Arithmetic -------------------------------------------------------------

class ArithmeticOverflow(LoansError):
    """Raised when a fixed-point computation leaves the representable range."""
    pass


# --- Governance timing ------------------------------------------------------

class GovernanceError(LoansError):
    """A change proposal cannot be applied at this time."""
    pass


class ChangeNotReady(GovernanceError):
    """Raised when a change is applied before the governance delay elapsed."""
    pass


class ChangeAlreadyApplied(GovernanceError):
    """Raised when a change id is applied a second time."""
    pass


class UnrelatedChange(GovernanceError):
    """Raised when a change id refers to a different kind of change."""
    pass


# --- Collaborators ----------------------------------------------------------

class CollaboratorError(LoansError):
    """Failure reported by an external collaborator."""
    pass


class PermissionDenied(CollaboratorError):
    """Raised when the caller lacks the role required by the operation."""
    pass


class InsufficientPoolBalance(CollaboratorError):
    """Raised when the pool reserve cannot cover a withdrawal."""
    pass


# ============================================================================
# CHECKED FIXED-POINT ARITHMETIC
# ============================================================================

def to_decimal(value: Any, name: str = "value") -> Decimal:
    """
    Convert int/float/str/Decimal to a finite Decimal.

    Floats go through str() so that 0.1 becomes Decimal("0.1").
    """
    if isinstance(value, bool):
        raise ValueError(f"{name} must be numeric, got {value!r}")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    if value.is_nan() or value.is_infinite():
        raise ValueError(f"{name} must be finite, got {value}")
    return value


def to_rate(value: Any, name: str = "rate") -> Decimal:
    """Convert to Decimal and require the value to lie in [0, 1]."""
    rate = to_decimal(value, name)
    if rate < ZERO or rate > ONE:
        raise ValueError(f"{name} must be in [0, 1], got {rate}")
    return rate


def quantize_balance(value: Decimal, places: int = BALANCE_DECIMAL_PLACES) -> Decimal:
    """Round a value to the fixed-point balance scale."""
    if abs(value) > MAX_BALANCE:
        raise ArithmeticOverflow(f"{value} exceeds the balance bound")
    return value.quantize(Decimal(10) ** -places, rounding=ROUND_HALF_EVEN)


def _checked(value: Decimal, op: str) -> Decimal:
    if value < ZERO:
        raise ArithmeticOverflow(f"{op} underflows: {value}")
    if value > MAX_BALANCE:
        raise ArithmeticOverflow(f"{op} overflows: {value}")
    return value


def ensure_add(a: Decimal, b: Decimal) -> Decimal:
    return _checked(a + b, "addition")


def ensure_sub(a: Decimal, b: Decimal) -> Decimal:
    return _checked(a - b, "subtraction")


def ensure_mul(a: Decimal, b: Decimal) -> Decimal:
    return _checked(a * b, "multiplication")


def ensure_div(a: Decimal, b: Decimal) -> Decimal:
    if b == ZERO:
        raise ArithmeticOverflow("division by zero")
    return _checked(a / b, "division")


def seconds_between(start: datetime, end: datetime) -> int:
    """Whole seconds from start to end, zero if end is not after start."""
    if end <= start:
        return 0
    return int((end - start).total_seconds())


# ============================================================================
# CANONICAL SERIALIZATION
# ============================================================================

def _normalize_decimal(d: Decimal) -> str:
    """
    Normalize a Decimal to a canonical string.

    Decimal("1.0") and Decimal("1.00") both become "1".
    """
    normalized = d.normalize()
    if normalized == normalized.to_integral_value():
        return str(int(normalized))
    return format(normalized, 'f')


def canonicalize(value: Any) -> str:
    """
    Produce a canonical string representation of a value for hashing.

    Deterministic regardless of dict insertion order or Decimal exponent.
    Dataclasses serialize as their type name plus fields in declaration
    order, so two different change variants never collide.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return f"E:{type(value).__name__}.{value.name}"
    if isinstance(value, Decimal):
        return f"D:{_normalize_decimal(value)}"
    if isinstance(value, (int, float)):
        return f"N:{value}"
    if isinstance(value, str):
        return f"S:{value}"
    if isinstance(value, datetime):
        return f"T:{value.isoformat()}"
    if is_dataclass(value) and not isinstance(value, type):
        parts = ",".join(
            f"{f.name}={canonicalize(getattr(value, f.name))}" for f in fields(value)
        )
        return f"{type(value).__name__}({parts})"
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        serialized = ",".join(f"{canonicalize(k)}:{canonicalize(v)}" for k, v in items)
        return f"{{{serialized}}}"
    if isinstance(value, (list, tuple)):
        serialized = ",".join(canonicalize(item) for item in value)
        return f"[{serialized}]"
    if isinstance(value, (set, frozenset)):
        serialized = ",".join(sorted(canonicalize(item) for item in value))
        return f"<{serialized}>"
    return f"R:{repr(value)}"


def content_hash(value: Any) -> str:
    """SHA-256 hex digest of the canonical form of a value."""
    return hashlib.sha256(canonicalize(value).encode()).hexdigest()
