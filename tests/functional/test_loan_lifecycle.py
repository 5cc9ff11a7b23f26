"""
test_loan_lifecycle.py - End-to-end loan lifecycle tests through the engine

Tests complete loan lifecycles:
- Pool registration and removal
- Create, borrow, repay, close
- Permission and borrower checks
- Not-found handling across pools
- Rollback when a collaborator fails
- Administrative debt corrections
- Event log
"""

import logging
import pytest
from datetime import timedelta
from decimal import Decimal

from lendingpool import (
    BorrowLimitExceeded, ClosedLoan, CollateralAlreadyUsed, CreatedLoan, ActiveLoan, DiscountedCashFlow,
    EventKind, InsufficientPoolBalance, InterestPayments, InvalidMaturity, LoanNotFound, LoanNotFoundInPool,
    LoanNotFullyRepaid, Loans, LoansConfig, MAX_BALANCE, MaxActiveLoansReached, NotLoanBorrower,
    PermissionDenied, PoolNotEmpty, PoolNotFound, RepayAmountTooHigh, compound,
)

from tests.builders import (
    ANYONE, BORROWER, LOAN_ADMIN, NOW, OTHER_BORROWER, POOL_A, POOL_B, YEAR,
    internal_info, outstanding_debt_rate, pool_state,
)


class TestPoolRegistration:

    def test_unknown_pool_rejected(self, engine):
        with pytest.raises(PoolNotFound):
            engine.register_pool("no-such-pool")

    def test_register_is_idempotent(self, engine):
        pool = engine.pool(POOL_A)
        assert engine.register_pool(POOL_A) is pool

    def test_operations_on_unregistered_pool(self, engine):
        engine.remove_pool(POOL_B)
        with pytest.raises(PoolNotFound):
            engine.create(BORROWER, POOL_B, internal_info())

    def test_remove_pool_with_loans(self, engine):
        engine.create(BORROWER, POOL_A, internal_info())
        with pytest.raises(PoolNotEmpty):
            engine.remove_pool(POOL_A)

    def test_remove_pool_after_close(self, engine):
        loan_id = engine.create(BORROWER, POOL_A, internal_info())
        engine.close(BORROWER, POOL_A, loan_id)
        engine.remove_pool(POOL_A)
        with pytest.raises(PoolNotFound):
            engine.pool(POOL_A)


class TestCreate:

    def test_ids_are_engine_wide(self, engine):
        assert engine.create(BORROWER, POOL_A, internal_info(item=1)) == 1
        assert engine.create(BORROWER, POOL_B, internal_info(item=1)) == 2
        assert engine.create(BORROWER, POOL_A, internal_info(item=2)) == 3

    def test_created_loan_stored(self, engine):
        loan_id = engine.create(BORROWER, POOL_A, internal_info())
        loan = engine.loan(POOL_A, loan_id)
        assert isinstance(loan, CreatedLoan)
        assert loan.borrower == BORROWER
        assert engine.loan_debt(POOL_A, loan_id) == Decimal("0")

    def test_maturity_must_be_future(self, engine):
        with pytest.raises(InvalidMaturity):
            engine.create(BORROWER, POOL_A, internal_info(maturity=NOW))
        assert engine.last_loan_id == 0

    def test_collateral_used_once_per_pool(self, engine):
        engine.create(BORROWER, POOL_A, internal_info(item=7))
        with pytest.raises(CollateralAlreadyUsed):
            engine.create(OTHER_BORROWER, POOL_A, internal_info(item=7))

    def test_requires_borrower_role(self, engine):
        with pytest.raises(PermissionDenied):
            engine.create(ANYONE, POOL_A, internal_info())

    def test_failed_create_leaves_no_trace(self, engine):
        engine.create(BORROWER, POOL_A, internal_info(item=7))
        before = pool_state(engine)
        with pytest.raises(CollateralAlreadyUsed):
            engine.create(BORROWER, POOL_A, internal_info(item=7))
        assert pool_state(engine) == before


class TestBorrow:

    def test_first_borrow_activates(self, engine, pools, rates):
        loan_id = engine.create(BORROWER, POOL_A, internal_info())
        assert engine.borrow(BORROWER, POOL_A, loan_id, Decimal("1000")) == Decimal("1000")
        assert isinstance(engine.loan(POOL_A, loan_id), ActiveLoan)
        assert pools.transfers == [("withdraw", POOL_A, BORROWER, Decimal("1000"))]
        assert len(rates.references) == 1

    def test_only_borrower_may_borrow(self, engine):
        loan_id = engine.create(BORROWER, POOL_A, internal_info())
        with pytest.raises(NotLoanBorrower):
            engine.borrow(OTHER_BORROWER, POOL_A, loan_id, Decimal("1"))

    def test_outstanding_debt_boundary(self, engine):
        """advance_rate 1.0 on 1,000,000: exactly the value succeeds, one more fails."""
        over = engine.create(BORROWER, POOL_A, internal_info(item=1, max_borrow=outstanding_debt_rate(1)))
        with pytest.raises(BorrowLimitExceeded):
            engine.borrow(BORROWER, POOL_A, over, Decimal("1000001"))

        exact = engine.create(BORROWER, POOL_A, internal_info(item=2, max_borrow=outstanding_debt_rate(1)))
        engine.borrow(BORROWER, POOL_A, exact, Decimal("1000000"))
        assert engine.loan_debt(POOL_A, exact) == Decimal("1000000")

    def test_reborrow_after_repay_under_outstanding_policy(self, engine):
        loan_id = engine.create(BORROWER, POOL_A, internal_info(max_borrow=outstanding_debt_rate(1)))
        engine.borrow(BORROWER, POOL_A, loan_id, Decimal("1000000"))
        engine.repay(BORROWER, POOL_A, loan_id, principal=Decimal("500000"))
        engine.borrow(BORROWER, POOL_A, loan_id, Decimal("500000"))
        assert engine.loan(POOL_A, loan_id).total_borrowed == Decimal("1500000")

    def test_debt_accrues(self, engine, clock):
        loan_id = engine.create(BORROWER, POOL_A, internal_info(maturity=NOW + 2 * YEAR))
        engine.borrow(BORROWER, POOL_A, loan_id, Decimal("1000"))
        clock.advance(days=365)
        expected = compound(Decimal("1000"), Decimal("0.5"), NOW, NOW + YEAR)
        assert abs(engine.loan_debt(POOL_A, loan_id) - expected) < Decimal("1e-9")

    def test_insufficient_pool_balance_rolls_back(self, engine, pools, rates):
        """The pool withdrawal fails last; the activation is undone with it."""
        loan_id = engine.create(BORROWER, POOL_A, internal_info())
        before = pool_state(engine)
        pools.reserves[POOL_A] = Decimal("10")

        with pytest.raises(InsufficientPoolBalance):
            engine.borrow(BORROWER, POOL_A, loan_id, Decimal("1000"))

        assert pool_state(engine) == before
        assert isinstance(engine.loan(POOL_A, loan_id), CreatedLoan)
        assert rates.references == {}
        assert pools.transfers == []

    def test_max_active_loans(self, permissions, pools, prices, rates, guard, clock):
        engine = Loans(permissions, pools, prices, rates, guard, clock,
                       LoansConfig(max_active_loans_per_pool=1))
        engine.register_pool(POOL_A)
        first = engine.create(BORROWER, POOL_A, internal_info(item=1))
        second = engine.create(BORROWER, POOL_A, internal_info(item=2))
        engine.borrow(BORROWER, POOL_A, first, Decimal("1"))
        with pytest.raises(MaxActiveLoansReached):
            engine.borrow(BORROWER, POOL_A, second, Decimal("1"))


class TestRepay:

    def borrowed(self, engine, amount="1000"):
        loan_id = engine.create(BORROWER, POOL_A, internal_info())
        engine.borrow(BORROWER, POOL_A, loan_id, Decimal(amount))
        return loan_id

    def test_round_trip_same_instant(self, engine, pools):
        loan_id = self.borrowed(engine)
        amount = engine.repay(BORROWER, POOL_A, loan_id, principal=Decimal("1000"))
        assert amount.interest == Decimal("0")
        assert engine.loan(POOL_A, loan_id).ledger.outstanding_principal == Decimal("0")
        assert engine.loan_debt(POOL_A, loan_id) == Decimal("0")
        assert pools.transfers[-1] == ("deposit", POOL_A, BORROWER, Decimal("1000"))

    def test_interest_clamped(self, engine, clock, pools):
        loan_id = self.borrowed(engine)
        clock.advance(days=30)
        owed = engine.loan_debt(POOL_A, loan_id) - Decimal("1000")
        amount = engine.repay(BORROWER, POOL_A, loan_id, principal=Decimal("1000"), interest=Decimal("1000"))
        assert amount.interest == owed
        assert pools.transfers[-1][3] == Decimal("1000") + owed
        assert engine.loan_debt(POOL_A, loan_id) == Decimal("0")

    def test_principal_too_high_leaves_state(self, engine):
        loan_id = self.borrowed(engine)
        before = pool_state(engine)
        with pytest.raises(RepayAmountTooHigh):
            engine.repay(BORROWER, POOL_A, loan_id, principal=Decimal("1000.5"))
        assert pool_state(engine) == before

    def test_repay_created_loan(self, engine):
        loan_id = engine.create(BORROWER, POOL_A, internal_info())
        with pytest.raises(LoanNotFound):
            engine.repay(BORROWER, POOL_A, loan_id, principal=Decimal("1"))

    def test_only_borrower_repays(self, engine):
        loan_id = self.borrowed(engine)
        with pytest.raises(NotLoanBorrower):
            engine.repay(OTHER_BORROWER, POOL_A, loan_id, principal=Decimal("1"))


class TestClose:

    def test_outstanding_debt_blocks_close(self, engine):
        loan_id = engine.create(BORROWER, POOL_A, internal_info())
        engine.borrow(BORROWER, POOL_A, loan_id, Decimal("10"))
        with pytest.raises(LoanNotFullyRepaid):
            engine.close(BORROWER, POOL_A, loan_id)

    def test_accrued_interest_blocks_close(self, engine, clock):
        loan_id = engine.create(BORROWER, POOL_A, internal_info())
        engine.borrow(BORROWER, POOL_A, loan_id, Decimal("10"))
        clock.advance(days=1)
        engine.repay(BORROWER, POOL_A, loan_id, principal=Decimal("10"))
        with pytest.raises(LoanNotFullyRepaid):
            engine.close(BORROWER, POOL_A, loan_id)

    def test_close_after_full_repayment(self, engine, clock, rates):
        loan_id = engine.create(BORROWER, POOL_A, internal_info(item=7))
        engine.borrow(BORROWER, POOL_A, loan_id, Decimal("10"))
        clock.advance(days=10)
        engine.repay(BORROWER, POOL_A, loan_id, principal=Decimal("10"), interest=Decimal("10"))

        closed = engine.close(BORROWER, POOL_A, loan_id)
        assert isinstance(closed, ClosedLoan)
        assert closed.total_borrowed == Decimal("10")
        assert closed.total_repaid > Decimal("10")
        assert engine.closed_loan(POOL_A, loan_id) == closed
        assert rates.references == {}

        with pytest.raises(LoanNotFound):
            engine.loan(POOL_A, loan_id)
        engine.create(BORROWER, POOL_A, internal_info(item=7))

    def test_forty_year_loan_fully_repaid_with_max_interest(self, engine, clock, pools, rates):
        """A long dated DCF loan repaid with an unbounded interest allowance closes cleanly."""
        info = internal_info(
            maturity=NOW + timedelta(days=40 * 365),
            collateral_value=Decimal("1000000"),
            max_borrow=outstanding_debt_rate(1),
            valuation=DiscountedCashFlow("0", "0", "0.0002"),
            rate="0.0002",
            interest_payments=InterestPayments.ONCE_AT_MATURITY,
        )
        loan_id = engine.create(BORROWER, POOL_A, info)
        engine.borrow(BORROWER, POOL_A, loan_id, Decimal("10"))
        clock.advance(days=30)
        owed = engine.loan_debt(POOL_A, loan_id)

        amount = engine.repay(BORROWER, POOL_A, loan_id, principal=Decimal("10"), interest=MAX_BALANCE)
        assert amount.principal == Decimal("10")
        assert amount.interest == owed - Decimal("10")
        assert pools.transfers[-1] == ("deposit", POOL_A, BORROWER, owed)

        closed = engine.close(BORROWER, POOL_A, loan_id)
        assert closed.total_repaid == owed
        assert rates.references == {}

    def test_close_never_borrowed(self, engine):
        loan_id = engine.create(BORROWER, POOL_A, internal_info(item=7))
        engine.close(BORROWER, POOL_A, loan_id)
        assert engine.closed_loan(POOL_A, loan_id).total_borrowed == Decimal("0")
        engine.create(BORROWER, POOL_A, internal_info(item=7))

    def test_only_borrower_closes(self, engine):
        loan_id = engine.create(BORROWER, POOL_A, internal_info())
        with pytest.raises(NotLoanBorrower):
            engine.close(OTHER_BORROWER, POOL_A, loan_id)


class TestNotFound:

    def test_unknown_id(self, engine):
        with pytest.raises(LoanNotFound) as excinfo:
            engine.borrow(BORROWER, POOL_A, 99, Decimal("1"))
        assert not isinstance(excinfo.value, LoanNotFoundInPool)

    def test_id_of_other_pool(self, engine):
        loan_id = engine.create(BORROWER, POOL_B, internal_info())
        with pytest.raises(LoanNotFoundInPool):
            engine.borrow(BORROWER, POOL_A, loan_id, Decimal("1"))
        with pytest.raises(LoanNotFoundInPool):
            engine.loan(POOL_A, loan_id)

    def test_closed_id(self, engine):
        loan_id = engine.create(BORROWER, POOL_A, internal_info())
        engine.close(BORROWER, POOL_A, loan_id)
        with pytest.raises(LoanNotFound):
            engine.close(BORROWER, POOL_A, loan_id)

    def test_closed_loan_query(self, engine):
        with pytest.raises(LoanNotFound):
            engine.closed_loan(POOL_A, 1)


class TestDebtCorrections:

    def test_increase_requires_loan_admin(self, engine):
        loan_id = engine.create(BORROWER, POOL_A, internal_info())
        with pytest.raises(PermissionDenied):
            engine.increase_debt(BORROWER, POOL_A, loan_id, Decimal("1"))

    def test_increase_activates_without_withdraw(self, engine, pools):
        loan_id = engine.create(BORROWER, POOL_A, internal_info())
        engine.increase_debt(LOAN_ADMIN, POOL_A, loan_id, Decimal("2000000"))
        assert engine.loan_debt(POOL_A, loan_id) == Decimal("2000000")
        assert pools.transfers == []

    def test_decrease_without_deposit(self, engine, pools):
        loan_id = engine.create(BORROWER, POOL_A, internal_info())
        engine.borrow(BORROWER, POOL_A, loan_id, Decimal("100"))
        amount = engine.decrease_debt(LOAN_ADMIN, POOL_A, loan_id, principal=Decimal("40"))
        assert amount.principal == Decimal("40")
        assert engine.loan_debt(POOL_A, loan_id) == Decimal("60")
        assert [t[0] for t in pools.transfers] == ["withdraw"]


class TestEventLog:

    def test_lifecycle_events(self, engine):
        loan_id = engine.create(BORROWER, POOL_A, internal_info())
        engine.borrow(BORROWER, POOL_A, loan_id, Decimal("10"))
        engine.repay(BORROWER, POOL_A, loan_id, principal=Decimal("10"))
        engine.close(BORROWER, POOL_A, loan_id)
        kinds = [e.kind for e in engine.events_for(POOL_A, loan_id)]
        assert kinds == [EventKind.CREATED, EventKind.BORROWED, EventKind.REPAID, EventKind.CLOSED]

    def test_failed_operation_emits_nothing(self, engine):
        loan_id = engine.create(BORROWER, POOL_A, internal_info())
        count = len(engine.events)
        with pytest.raises(BorrowLimitExceeded):
            engine.borrow(BORROWER, POOL_A, loan_id, Decimal("2000000"))
        assert len(engine.events) == count

    def test_events_carry_timestamp(self, engine, clock):
        clock.advance(hours=3)
        loan_id = engine.create(BORROWER, POOL_A, internal_info())
        assert engine.events_for(POOL_A, loan_id)[0].timestamp == NOW + timedelta(hours=3)


class TestLogging:

    def test_success_logged_at_info(self, engine, caplog):
        with caplog.at_level(logging.INFO, logger="lendingpool"):
            loan_id = engine.create(BORROWER, POOL_A, internal_info())
        assert f"loan {loan_id} created in pool 'pool-a'" in caplog.text

    def test_rejection_logged_at_debug(self, engine, caplog):
        loan_id = engine.create(BORROWER, POOL_A, internal_info())
        with caplog.at_level(logging.DEBUG, logger="lendingpool"):
            with pytest.raises(BorrowLimitExceeded):
                engine.borrow(BORROWER, POOL_A, loan_id, Decimal("2000000"))
        record = caplog.records[-1]
        assert record.levelno == logging.DEBUG
        assert "borrow rejected in pool 'pool-a': BorrowLimitExceeded" in record.getMessage()
