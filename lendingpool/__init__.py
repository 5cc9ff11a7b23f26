"""
lendingpool - Loan accounting and write-off engine for lending pools

Manages collateralized loans inside a lending pool: origination, borrowing,
repayment, interest accrual, write-off on default, governed changes and
portfolio valuation. Permissions, pool currency, prices, rate accumulators
and governance delays are collaborators passed to the engine.

Usage:
    from lendingpool import (
        Loans, LoanInfo, RepaymentSchedule, Maturity, InterestRate,
        InternalPricing, UpToOutstandingDebt, RateRegistry, StaticPriceFeed,
    )

    engine = Loans(permissions, pools, StaticPriceFeed(), RateRegistry(), guard, clock)
    engine.register_pool("pool-1")

    info = LoanInfo(
        schedule=RepaymentSchedule(Maturity.fixed(datetime(2030, 1, 1))),
        collateral=("collection-1", 42),
        interest_rate=InterestRate("0.05"),
        pricing=InternalPricing(1_000_000, UpToOutstandingDebt("0.8")),
    )
    loan_id = engine.create("alice", "pool-1", info)
    engine.borrow("alice", "pool-1", loan_id, 500_000)
    engine.update_portfolio_valuation("pool-1")
"""

import logging

# Core types
from .core import (
    Role,
    Permissions,
    PoolSupport,
    Clock,
    LoansError,
    ValidationError,
    InvalidMaturity,
    CollateralAlreadyUsed,
    BorrowLimitExceeded,
    BorrowRestricted,
    LoanWrittenOff,
    MaturityDatePassed,
    RepayAmountTooHigh,
    RepayRestricted,
    NoWriteOffRuleApplies,
    AdminWriteOffLessThanPolicy,
    LoanNotFullyRepaid,
    InvalidPricing,
    InvalidMutation,
    InvalidWriteOffPolicy,
    MaxActiveLoansReached,
    TransferDebtToSameLoan,
    TransferDebtAmountMismatched,
    NotLoanBorrower,
    PoolHasNoActiveLoans,
    PoolNotEmpty,
    NotFoundError,
    LoanNotFound,
    LoanNotFoundInPool,
    PoolNotFound,
    ChangeNotFound,
    PriceNotFound,
    RateNotReferenced,
    ArithmeticOverflow,
    GovernanceError,
    ChangeNotReady,
    ChangeAlreadyApplied,
    UnrelatedChange,
    CollaboratorError,
    PermissionDenied,
    InsufficientPoolBalance,
    MAX_BALANCE,
    BALANCE_DECIMAL_PLACES,
    SECONDS_PER_DAY,
    SECONDS_PER_YEAR,
    ACCRUAL_EPOCH,
    canonicalize,
    content_hash,
)

from .config import LoansConfig

# Interest
from .interest import (
    CompoundingSchedule,
    InterestRate,
    InterestAccrual,
    RateRegistry,
    compound,
    discount,
)

# Prices
from .price_feed import PriceFeed, StaticPriceFeed, TimeSeriesPriceFeed

# Schedules
from .cashflow import (
    Maturity,
    InterestPayments,
    PayDownSchedule,
    RepaymentSchedule,
    add_months,
    expected_cashflows,
)

# Write-off policy
from .policy import (
    PrincipalOverdue,
    PriceOutdated,
    WriteOffKind,
    WriteOffStatus,
    WriteOffRule,
    find_rule,
    validate_policy,
)

# Pricing
from .pricing import (
    UpToTotalBorrowed,
    UpToOutstandingDebt,
    OutstandingDebt,
    DiscountedCashFlow,
    InternalPricing,
    ExternalPricing,
    InternalLedger,
    ExternalLedger,
)

# Loans
from .loans import (
    BorrowRestrictions,
    RepayRestrictions,
    LoanRestrictions,
    LoanInfo,
    CreatedLoan,
    ActiveLoan,
    ClosedLoan,
    RepaidInput,
    RepaidAmount,
    MarketSnapshot,
)

# Changes
from .changes import (
    MaturityMutation,
    MaturityExtensionMutation,
    InterestRateMutation,
    InterestPaymentsMutation,
    PayDownScheduleMutation,
    ValuationMethodMutation,
    ProbabilityOfDefaultMutation,
    LossGivenDefaultMutation,
    DiscountRateMutation,
    LoanChange,
    PolicyChange,
    TransferDebtChange,
    NotedChange,
    ChangeStatus,
    ChangeRecord,
    ChangeGuard,
    apply_mutation,
    change_id_for,
)

from .valuation import PortfolioValuation
from .pool import PoolLoans
from .engine import Loans, LoanEvent, EventKind

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    # Core
    'Role', 'Permissions', 'PoolSupport', 'Clock',
    'LoansError', 'ValidationError', 'InvalidMaturity', 'CollateralAlreadyUsed',
    'BorrowLimitExceeded', 'BorrowRestricted', 'LoanWrittenOff', 'MaturityDatePassed',
    'RepayAmountTooHigh', 'RepayRestricted', 'NoWriteOffRuleApplies',
    'AdminWriteOffLessThanPolicy', 'LoanNotFullyRepaid', 'InvalidPricing',
    'InvalidMutation', 'InvalidWriteOffPolicy', 'MaxActiveLoansReached',
    'TransferDebtToSameLoan', 'TransferDebtAmountMismatched', 'NotLoanBorrower',
    'PoolHasNoActiveLoans', 'PoolNotEmpty',
    'NotFoundError', 'LoanNotFound', 'LoanNotFoundInPool', 'PoolNotFound',
    'ChangeNotFound', 'PriceNotFound', 'RateNotReferenced',
    'ArithmeticOverflow',
    'GovernanceError', 'ChangeNotReady', 'ChangeAlreadyApplied', 'UnrelatedChange',
    'CollaboratorError', 'PermissionDenied', 'InsufficientPoolBalance',
    'MAX_BALANCE', 'BALANCE_DECIMAL_PLACES', 'SECONDS_PER_DAY', 'SECONDS_PER_YEAR',
    'ACCRUAL_EPOCH', 'canonicalize', 'content_hash',

    'LoansConfig',

    # Interest
    'CompoundingSchedule', 'InterestRate', 'InterestAccrual', 'RateRegistry',
    'compound', 'discount',

    # Prices
    'PriceFeed', 'StaticPriceFeed', 'TimeSeriesPriceFeed',

    # Schedules
    'Maturity', 'InterestPayments', 'PayDownSchedule', 'RepaymentSchedule',
    'add_months', 'expected_cashflows',

    # Write-off policy
    'PrincipalOverdue', 'PriceOutdated', 'WriteOffKind', 'WriteOffStatus',
    'WriteOffRule', 'find_rule', 'validate_policy',

    # Pricing
    'UpToTotalBorrowed', 'UpToOutstandingDebt', 'OutstandingDebt', 'DiscountedCashFlow',
    'InternalPricing', 'ExternalPricing', 'InternalLedger', 'ExternalLedger',

    # Loans
    'BorrowRestrictions', 'RepayRestrictions', 'LoanRestrictions', 'LoanInfo',
    'CreatedLoan', 'ActiveLoan', 'ClosedLoan', 'RepaidInput', 'RepaidAmount',
    'MarketSnapshot',

    # Changes
    'MaturityMutation', 'MaturityExtensionMutation', 'InterestRateMutation',
    'InterestPaymentsMutation', 'PayDownScheduleMutation', 'ValuationMethodMutation',
    'ProbabilityOfDefaultMutation', 'LossGivenDefaultMutation', 'DiscountRateMutation',
    'LoanChange', 'PolicyChange', 'TransferDebtChange', 'NotedChange', 'ChangeStatus',
    'ChangeRecord', 'ChangeGuard', 'apply_mutation', 'change_id_for',

    # Engine
    'PortfolioValuation', 'PoolLoans', 'Loans', 'LoanEvent', 'EventKind',
]

__version__ = '1.0.0'
