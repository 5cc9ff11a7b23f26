"""
engine.py - The loan engine: the only mutator of loan state

Loans is the entry point for every operation the enclosing system calls.
It owns one PoolLoans per registered pool and talks to the collaborators:

    permissions       role checks
    pools             pool currency ledger (withdraw on borrow, deposit on repay)
    prices            external price feed
    interest_accrual  rate basis registry
    change_guard      governance delay tracking
    clock             current instant

Execution model:
    Every operation runs as one transaction against a working copy of the
    pool's storage. Collaborator registrations taken along the way are undone
    if the operation fails. Pool currency moves and the release of rate or
    price registrations happen last. Only when everything succeeded is the
    working copy swapped in, so a failed operation leaves no trace.

Loan ids come from one engine-wide counter: an id names exactly one loan in
exactly one pool and is never reused.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
import logging
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Union

from .changes import (
    Change, ChangeGuard, ChangeRecord, ChangeStatus, LoanChange, LoanMutation,
    NotedChange, PolicyChange, TransferDebtChange, apply_mutation,
)
from .config import LoansConfig
from .core import (
    AccountId, ChangeId, Clock, LoanId, Permissions, PoolId, PoolSupport, Role, ONE, ZERO,
    AdminWriteOffLessThanPolicy, ChangeAlreadyApplied, ChangeNotFound, ChangeNotReady,
    LoanNotFound, LoanNotFoundInPool, NoWriteOffRuleApplies, NotLoanBorrower,
    PermissionDenied, PoolHasNoActiveLoans, PoolNotEmpty, PoolNotFound,
    TransferDebtAmountMismatched, TransferDebtToSameLoan, UnrelatedChange,
    ensure_mul, ensure_sub, to_decimal,
)
from .interest import InterestAccrual, InterestRate
from .loans import (
    ActiveLoan, ClosedLoan, CreatedLoan, LoanInfo, MarketSnapshot, RepaidAmount, RepaidInput,
    effective_rate,
)
from .policy import WriteOffKind, WriteOffPolicy, WriteOffStatus, find_rule, validate_policy
from .pool import OpenLoan, PoolLoans
from .price_feed import PriceFeed
from .pricing import ExternalPricing
from .valuation import PortfolioValuation, aggregate

log = logging.getLogger(__name__)


class EventKind(str, Enum):
    POOL_REGISTERED = "pool_registered"
    POOL_REMOVED = "pool_removed"
    CREATED = "created"
    BORROWED = "borrowed"
    REPAID = "repaid"
    WRITTEN_OFF = "written_off"
    ADMIN_WRITTEN_OFF = "admin_written_off"
    CLOSED = "closed"
    DEBT_INCREASED = "debt_increased"
    DEBT_DECREASED = "debt_decreased"
    DEBT_TRANSFERRED = "debt_transferred"
    LOAN_MUTATED = "loan_mutated"
    POLICY_UPDATED = "policy_updated"
    CHANGE_PROPOSED = "change_proposed"
    CHANGE_APPLIED = "change_applied"
    PORTFOLIO_VALUATION_UPDATED = "portfolio_valuation_updated"


@dataclass(frozen=True, slots=True)
class LoanEvent:
    """Audit record of a successful operation."""
    kind: EventKind
    pool_id: PoolId
    loan_id: Optional[LoanId]
    timestamp: datetime
    details: Mapping[str, Any] = field(default_factory=dict)


class _Transaction:
    """Working state of one operation."""

    def __init__(self, pool: PoolLoans, last_loan_id: LoanId, now: datetime):
        self.pool = pool
        self.last_loan_id = last_loan_id
        self.now = now
        self.new_owners: Dict[LoanId, PoolId] = {}
        self.events: List[LoanEvent] = []
        self._undo: List[Callable[[], None]] = []
        self._releases: List[Callable[[], None]] = []

    def acquire(self, do: Callable[[], None], undo: Callable[[], None]) -> None:
        """Take a collaborator registration now, undo it if the operation fails."""
        do()
        self._undo.append(undo)

    def release(self, fn: Callable[[], None]) -> None:
        """Drop a collaborator registration once the operation has succeeded."""
        self._releases.append(fn)

    def run_releases(self) -> None:
        for fn in self._releases:
            fn()

    def rollback(self) -> None:
        while self._undo:
            self._undo.pop()()

    def emit(self, kind: EventKind, loan_id: Optional[LoanId] = None, **details) -> None:
        self.events.append(LoanEvent(kind, self.pool.pool_id, loan_id, self.now, details))


class Loans:
    """
    Loan accounting and write-off engine.

    Usage:
        engine = Loans(permissions, pools, prices, RateRegistry(), guard, clock)
        engine.register_pool("pool-1")
        loan_id = engine.create("alice", "pool-1", info)
        engine.borrow("alice", "pool-1", loan_id, Decimal("1000"))
    """

    def __init__(
        self,
        permissions: Permissions,
        pools: PoolSupport,
        prices: PriceFeed,
        interest_accrual: InterestAccrual,
        change_guard: ChangeGuard,
        clock: Clock,
        config: Optional[LoansConfig] = None,
    ):
        self.permissions = permissions
        self.pools = pools
        self.prices = prices
        self.interest_accrual = interest_accrual
        self.change_guard = change_guard
        self.clock = clock
        self.config = config or LoansConfig()

        self.pool_loans: Dict[PoolId, PoolLoans] = {}
        self.loan_owners: Dict[LoanId, PoolId] = {}
        self.last_loan_id: LoanId = 0
        self.events: List[LoanEvent] = []

    # ========================================================================
    # POOLS
    # ========================================================================

    def register_pool(self, pool_id: PoolId) -> PoolLoans:
        """
        Start tracking loans for a pool known to the pool ledger.

        Registering an already registered pool returns its existing storage.
        """
        if pool_id in self.pool_loans:
            return self.pool_loans[pool_id]
        if not self.pools.pool_exists(pool_id):
            raise PoolNotFound(f"Pool {pool_id!r} does not exist")
        pool = PoolLoans(pool_id)
        self.pool_loans[pool_id] = pool
        self.events.append(LoanEvent(EventKind.POOL_REGISTERED, pool_id, None, self.clock.now()))
        log.info("pool %r registered", pool_id)
        return pool

    def remove_pool(self, pool_id: PoolId) -> None:
        pool = self.pool(pool_id)
        if pool.has_loans:
            raise PoolNotEmpty(f"Pool {pool_id!r} still has open loans")
        del self.pool_loans[pool_id]
        self.events.append(LoanEvent(EventKind.POOL_REMOVED, pool_id, None, self.clock.now()))
        log.info("pool %r removed", pool_id)

    def pool(self, pool_id: PoolId) -> PoolLoans:
        try:
            return self.pool_loans[pool_id]
        except KeyError:
            raise PoolNotFound(f"Pool {pool_id!r} is not registered") from None

    # ========================================================================
    # TRANSACTIONS
    # ========================================================================

    @contextmanager
    def _transaction(self, operation: str, pool_id: PoolId) -> Iterator[_Transaction]:
        tx = _Transaction(self.pool(pool_id).clone(), self.last_loan_id, self.clock.now())
        try:
            yield tx
            tx.run_releases()
        except Exception as exc:
            tx.rollback()
            log.debug("%s rejected in pool %r: %s: %s", operation, pool_id, type(exc).__name__, exc)
            raise

        self.pool_loans[pool_id] = tx.pool
        self.last_loan_id = tx.last_loan_id
        self.loan_owners.update(tx.new_owners)
        self.events.extend(tx.events)

    def _ensure_role(self, pool_id: PoolId, who: AccountId, role: Role) -> None:
        if not self.permissions.has(pool_id, who, role):
            raise PermissionDenied(f"{who!r} lacks role {role.value} in pool {pool_id!r}")

    @staticmethod
    def _ensure_borrower(loan: OpenLoan, who: AccountId) -> None:
        if loan.borrower != who:
            raise NotLoanBorrower(f"{who!r} is not the borrower of loan {loan.loan_id}")

    def _open_loan(self, tx: _Transaction, loan_id: LoanId) -> OpenLoan:
        owner = self.loan_owners.get(loan_id, tx.new_owners.get(loan_id))
        if owner is not None and owner != tx.pool.pool_id:
            raise LoanNotFoundInPool(f"Loan {loan_id} does not belong to pool {tx.pool.pool_id!r}")
        loan = tx.pool.get(loan_id)
        if loan is None:
            raise LoanNotFound(f"Loan {loan_id} not found")
        return loan

    def _active_loan(self, tx: _Transaction, loan_id: LoanId) -> ActiveLoan:
        loan = self._open_loan(tx, loan_id)
        if not isinstance(loan, ActiveLoan):
            raise LoanNotFound(f"Loan {loan_id} has not been borrowed against")
        return loan

    def _market(self, loan: ActiveLoan, now: datetime) -> MarketSnapshot:
        """Read the collaborators once for a loan."""
        places = self.config.balance_decimal_places
        if loan.is_internal:
            accumulator = self.interest_accrual.accumulator(loan.rate, now)
            return MarketSnapshot(now, accumulator=accumulator, places=places)
        price, timestamp = self.prices.get(loan.info.pricing.price_id)
        return MarketSnapshot(now, price=to_decimal(price, "price"), price_timestamp=timestamp, places=places)

    def _activate(self, tx: _Transaction, loan: CreatedLoan) -> ActiveLoan:
        active = loan.activate(tx.now)
        tx.pool.activate(active, self.config.max_active_loans_per_pool)
        if active.is_internal:
            rate = active.rate
            tx.acquire(
                lambda: self.interest_accrual.reference_rate(rate),
                lambda: self.interest_accrual.unreference_rate(rate),
            )
        else:
            price_id = active.info.pricing.price_id
            pool_id = tx.pool.pool_id
            tx.acquire(
                lambda: self.prices.register_id(price_id, pool_id),
                lambda: self.prices.unregister_id(price_id, pool_id),
            )
        return active

    def _open_for_borrow(self, tx: _Transaction, loan_id: LoanId) -> ActiveLoan:
        loan = self._open_loan(tx, loan_id)
        if isinstance(loan, CreatedLoan):
            loan = self._activate(tx, loan)
        return loan

    def _switch_rate(self, tx: _Transaction, loan: ActiveLoan, rate: Optional[InterestRate]) -> Optional[Decimal]:
        """
        Move an internal loan's rate registration to `rate`.

        Returns the accumulator of the new rate at tx.now, or None when the
        rate does not change.
        """
        if not loan.is_internal or rate == loan.rate:
            return None
        accrual = self.interest_accrual
        old_rate = loan.rate
        tx.acquire(lambda: accrual.reference_rate(rate), lambda: accrual.unreference_rate(rate))
        tx.release(lambda: accrual.unreference_rate(old_rate))
        return accrual.accumulator(rate, tx.now)

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def create(self, who: AccountId, pool_id: PoolId, info: LoanInfo) -> LoanId:
        """
        Create a loan on a collateral.

        Raises:
            PermissionDenied: caller is not a borrower of the pool
            InvalidMaturity: maturity not strictly in the future
            InvalidPricing: pricing unusable with the schedule
            PriceNotFound: external price id unknown to the feed
            CollateralAlreadyUsed: collateral attached to another loan of the pool
        """
        with self._transaction("create", pool_id) as tx:
            self._ensure_role(pool_id, who, Role.BORROWER)
            info.validate(tx.now)
            if isinstance(info.pricing, ExternalPricing):
                self.prices.get(info.pricing.price_id)

            loan_id = tx.last_loan_id + 1
            tx.pool.add_created(CreatedLoan(loan_id, pool_id, who, info, tx.now))
            tx.last_loan_id = loan_id
            tx.new_owners[loan_id] = pool_id
            tx.emit(EventKind.CREATED, loan_id, borrower=who, collateral=info.collateral)

        log.info("loan %s created in pool %r by %r", loan_id, pool_id, who)
        return loan_id

    def borrow(self, who: AccountId, pool_id: PoolId, loan_id: LoanId, amount) -> Decimal:
        """
        Borrow against a loan; the first borrow activates it.

        amount is currency for internal loans and asset quantity for external
        loans. Returns the currency withdrawn from the pool to the borrower.
        """
        with self._transaction("borrow", pool_id) as tx:
            loan = self._open_loan(tx, loan_id)
            self._ensure_borrower(loan, who)
            active = self._open_for_borrow(tx, loan_id)

            updated, currency = active.borrow(amount, self._market(active, tx.now))
            tx.pool.update(updated)
            tx.emit(EventKind.BORROWED, loan_id, amount=currency)
            self.pools.withdraw(pool_id, who, currency)

        log.info("loan %s borrowed %s in pool %r", loan_id, currency, pool_id)
        return currency

    def repay(
        self,
        who: AccountId,
        pool_id: PoolId,
        loan_id: LoanId,
        principal=ZERO,
        interest=ZERO,
        unscheduled=ZERO,
    ) -> RepaidAmount:
        """
        Repay principal, interest and unscheduled amounts.

        Interest above the outstanding interest is not collected; principal
        above the outstanding principal is rejected with RepayAmountTooHigh.
        """
        with self._transaction("repay", pool_id) as tx:
            loan = self._active_loan(tx, loan_id)
            self._ensure_borrower(loan, who)

            updated, amount = loan.repay(
                RepaidInput(principal, interest, unscheduled), self._market(loan, tx.now)
            )
            tx.pool.update(updated)
            tx.emit(EventKind.REPAID, loan_id, principal=amount.principal,
                    interest=amount.interest, unscheduled=amount.unscheduled)
            self.pools.deposit(pool_id, who, amount.total)

        log.info("loan %s repaid %s in pool %r", loan_id, amount.total, pool_id)
        return amount

    def _evaluate_policy(self, tx: _Transaction, loan: ActiveLoan, market: MarketSnapshot):
        return find_rule(
            tx.pool.write_off_policy,
            loan.overdue_seconds(market.now),
            loan.price_age_seconds(market),
        )

    def _apply_write_off(
        self,
        tx: _Transaction,
        loan: ActiveLoan,
        status: WriteOffStatus,
        kind: WriteOffKind,
        market: MarketSnapshot,
    ) -> ActiveLoan:
        new_accumulator = self._switch_rate(tx, loan, effective_rate(loan.info, status))
        updated = loan.with_write_off(status, kind, market, new_accumulator)
        tx.pool.update(updated)
        return updated

    def write_off(self, who: AccountId, pool_id: PoolId, loan_id: LoanId) -> WriteOffStatus:
        """
        Write a loan off according to the pool's policy. Anyone may call it.

        The applied status never lowers the loan's current one.

        Raises:
            NoWriteOffRuleApplies: no rule of the policy is satisfied
        """
        with self._transaction("write_off", pool_id) as tx:
            loan = self._active_loan(tx, loan_id)
            market = self._market(loan, tx.now)
            rule = self._evaluate_policy(tx, loan, market)
            if rule is None:
                raise NoWriteOffRuleApplies(f"No write-off rule applies to loan {loan_id}")

            status = rule.status.compose_max(loan.write_off_status)
            kind = WriteOffKind.POLICY
            if loan.write_off_kind is WriteOffKind.ADMIN and status == loan.write_off_status:
                kind = WriteOffKind.ADMIN
            self._apply_write_off(tx, loan, status, kind, market)
            tx.emit(EventKind.WRITTEN_OFF, loan_id, caller=who,
                    percentage=status.percentage, penalty=status.penalty)

        log.info("loan %s written off in pool %r: %s / %s",
                 loan_id, pool_id, status.percentage, status.penalty)
        return status

    def admin_write_off(
        self,
        who: AccountId,
        pool_id: PoolId,
        loan_id: LoanId,
        percentage,
        penalty,
    ) -> WriteOffStatus:
        """
        Write a loan off with explicit terms.

        The terms may not be less punitive than the policy currently computes
        (or, when no rule applies, than the loan's current status): the
        resulting present value may not be higher, and neither the percentage
        nor the penalty lower.

        Raises:
            PermissionDenied: caller is not a loan admin
            AdminWriteOffLessThanPolicy: terms below the floor
        """
        status = WriteOffStatus(percentage, penalty)
        with self._transaction("admin_write_off", pool_id) as tx:
            self._ensure_role(pool_id, who, Role.LOAN_ADMIN)
            loan = self._active_loan(tx, loan_id)
            market = self._market(loan, tx.now)

            rule = self._evaluate_policy(tx, loan, market)
            floor = rule.status if rule is not None else loan.write_off_status
            present_value = replace(loan, write_off_status=WriteOffStatus()).present_value(market)
            admin_value = ensure_mul(present_value, ensure_sub(ONE, status.percentage))
            floor_value = ensure_mul(present_value, ensure_sub(ONE, floor.percentage))
            # a zero present value makes the values equal, so percentages are compared too
            if (admin_value > floor_value or status.percentage < floor.percentage
                    or status.penalty < floor.penalty):
                raise AdminWriteOffLessThanPolicy(
                    f"Write-off {status.percentage}/{status.penalty} is below "
                    f"{floor.percentage}/{floor.penalty} for loan {loan_id}"
                )

            self._apply_write_off(tx, loan, status, WriteOffKind.ADMIN, market)
            tx.emit(EventKind.ADMIN_WRITTEN_OFF, loan_id, caller=who,
                    percentage=status.percentage, penalty=status.penalty)

        log.info("loan %s written off by admin %r in pool %r: %s / %s",
                 loan_id, who, pool_id, status.percentage, status.penalty)
        return status

    def close(self, who: AccountId, pool_id: PoolId, loan_id: LoanId) -> ClosedLoan:
        """
        Close a loan and release its collateral.

        A never-borrowed loan closes directly. An active loan must be fully
        repaid (LoanNotFullyRepaid otherwise).
        """
        with self._transaction("close", pool_id) as tx:
            loan = self._open_loan(tx, loan_id)
            self._ensure_borrower(loan, who)

            if isinstance(loan, CreatedLoan):
                closed = loan.close(tx.now)
            else:
                closed = loan.close(self._market(loan, tx.now))
                if loan.is_internal:
                    rate = loan.rate
                    tx.release(lambda: self.interest_accrual.unreference_rate(rate))
                else:
                    price_id = loan.info.pricing.price_id
                    tx.release(lambda: self.prices.unregister_id(price_id, pool_id))
            tx.pool.close(closed)
            tx.emit(EventKind.CLOSED, loan_id, total_borrowed=closed.total_borrowed,
                    total_repaid=closed.total_repaid)

        log.info("loan %s closed in pool %r", loan_id, pool_id)
        return closed

    def increase_debt(self, who: AccountId, pool_id: PoolId, loan_id: LoanId, amount) -> Decimal:
        """
        Add principal to a loan without limit or restriction checks.

        Used for corrections; no currency leaves the pool.
        """
        with self._transaction("increase_debt", pool_id) as tx:
            self._ensure_role(pool_id, who, Role.LOAN_ADMIN)
            loan = self._open_for_borrow(tx, loan_id)
            updated, currency = loan.increase_debt(amount, self._market(loan, tx.now))
            tx.pool.update(updated)
            tx.emit(EventKind.DEBT_INCREASED, loan_id, caller=who, amount=currency)

        log.info("loan %s debt increased by %s in pool %r", loan_id, currency, pool_id)
        return currency

    def decrease_debt(
        self,
        who: AccountId,
        pool_id: PoolId,
        loan_id: LoanId,
        principal=ZERO,
        interest=ZERO,
        unscheduled=ZERO,
    ) -> RepaidAmount:
        """Remove principal and interest from a loan; no currency enters the pool."""
        with self._transaction("decrease_debt", pool_id) as tx:
            self._ensure_role(pool_id, who, Role.LOAN_ADMIN)
            loan = self._active_loan(tx, loan_id)
            updated, amount = loan.decrease_debt(
                RepaidInput(principal, interest, unscheduled), self._market(loan, tx.now)
            )
            tx.pool.update(updated)
            tx.emit(EventKind.DEBT_DECREASED, loan_id, caller=who,
                    principal=amount.principal, interest=amount.interest)

        log.info("loan %s debt decreased by %s in pool %r", loan_id, amount.total, pool_id)
        return amount

    # ========================================================================
    # GOVERNED CHANGES
    # ========================================================================

    def _note(self, tx: _Transaction, change: Change) -> ChangeId:
        noted = NotedChange(change, tx.pool.revision_of(change))
        change_id = self.change_guard.note(tx.pool.pool_id, noted)
        if change_id not in tx.pool.changes:
            tx.pool.record_change(ChangeRecord(change_id, noted))
        tx.emit(EventKind.CHANGE_PROPOSED, getattr(change, 'loan_id', None),
                change_id=change_id, change=type(change).__name__)
        log.info("change %s noted in pool %r", change_id, tx.pool.pool_id)
        return change_id

    def _released(self, tx: _Transaction, change_id: ChangeId, expected: type) -> ChangeRecord:
        record = tx.pool.changes.get(change_id)
        if record is not None and record.status is ChangeStatus.APPLIED:
            raise ChangeAlreadyApplied(f"Change {change_id} was already applied")
        noted = self.change_guard.released(tx.pool.pool_id, change_id)
        if not isinstance(noted.change, expected):
            raise UnrelatedChange(
                f"Change {change_id} is a {type(noted.change).__name__}, not a {expected.__name__}"
            )
        record = ChangeRecord(change_id, noted, ChangeStatus.RELEASED)
        tx.pool.record_change(record)
        return record

    def _applied(self, tx: _Transaction, record: ChangeRecord) -> None:
        tx.pool.mark_applied(record)
        tx.emit(EventKind.CHANGE_APPLIED, getattr(record.change, 'loan_id', None),
                change_id=record.change_id, change=type(record.change).__name__)

    def change_record(self, pool_id: PoolId, change_id: ChangeId) -> ChangeRecord:
        """
        Current record of a proposed change.

        A proposed change is promoted to RELEASED once the guard releases it.
        """
        pool = self.pool(pool_id)
        record = pool.changes.get(change_id)
        if record is None:
            raise ChangeNotFound(f"Change {change_id} was not proposed in pool {pool_id!r}")
        if record.status is ChangeStatus.PROPOSED:
            try:
                self.change_guard.released(pool_id, change_id)
            except ChangeNotReady:
                return record
            record = ChangeRecord(change_id, record.noted, ChangeStatus.RELEASED)
            pool.record_change(record)
        return record

    # --- Loan mutations -------------------------------------------------

    def propose_loan_mutation(
        self,
        who: AccountId,
        pool_id: PoolId,
        loan_id: LoanId,
        mutation: LoanMutation,
    ) -> ChangeId:
        """Validate a mutation against the active loan and note it."""
        with self._transaction("propose_loan_mutation", pool_id) as tx:
            self._ensure_role(pool_id, who, Role.LOAN_ADMIN)
            loan = self._active_loan(tx, loan_id)
            apply_mutation(loan.info, mutation, tx.now)
            change_id = self._note(tx, LoanChange(loan_id, mutation))
        return change_id

    def apply_loan_mutation(self, who: AccountId, pool_id: PoolId, change_id: ChangeId) -> None:
        with self._transaction("apply_loan_mutation", pool_id) as tx:
            record = self._released(tx, change_id, LoanChange)
            change: LoanChange = record.change
            loan = self._active_loan(tx, change.loan_id)
            info = apply_mutation(loan.info, change.mutation, tx.now)

            market = self._market(loan, tx.now)
            new_accumulator = self._switch_rate(tx, loan, effective_rate(info, loan.write_off_status))
            tx.pool.update(loan.with_info(info, market, new_accumulator))
            tx.emit(EventKind.LOAN_MUTATED, change.loan_id, caller=who,
                    mutation=type(change.mutation).__name__)
            self._applied(tx, record)

        log.info("change %s applied to loan %s in pool %r", change_id, change.loan_id, pool_id)

    # --- Write-off policy ------------------------------------------------

    def propose_write_off_policy(
        self,
        who: AccountId,
        pool_id: PoolId,
        policy: WriteOffPolicy,
    ) -> ChangeId:
        with self._transaction("propose_write_off_policy", pool_id) as tx:
            self._ensure_role(pool_id, who, Role.POOL_ADMIN)
            policy = validate_policy(
                policy,
                self.config.max_write_off_policy_size,
                self.config.max_triggers_per_rule,
            )
            change_id = self._note(tx, PolicyChange(policy))
        return change_id

    def apply_write_off_policy(self, who: AccountId, pool_id: PoolId, change_id: ChangeId) -> None:
        with self._transaction("apply_write_off_policy", pool_id) as tx:
            record = self._released(tx, change_id, PolicyChange)
            tx.pool.write_off_policy = validate_policy(
                record.change.policy,
                self.config.max_write_off_policy_size,
                self.config.max_triggers_per_rule,
            )
            tx.emit(EventKind.POLICY_UPDATED, None, caller=who, rules=len(tx.pool.write_off_policy))
            self._applied(tx, record)

        log.info("write-off policy %s applied in pool %r", change_id, pool_id)

    # --- Debt transfer ---------------------------------------------------

    def _transfer_debt(
        self,
        tx: _Transaction,
        change: TransferDebtChange,
        borrower: Optional[AccountId] = None,
    ) -> RepaidAmount:
        """
        Repay on the source and borrow on the target inside tx.

        Both legs are validated before either is stored. Any failure aborts
        the enclosing transaction, so the source is never repaid on its own.
        """
        if change.from_loan == change.to_loan:
            raise TransferDebtToSameLoan(f"Cannot transfer debt of loan {change.from_loan} to itself")

        source = self._active_loan(tx, change.from_loan)
        target = self._open_loan(tx, change.to_loan)
        if borrower is not None:
            self._ensure_borrower(source, borrower)
            self._ensure_borrower(target, borrower)

        new_source, repaid = source.repay(change.repaid, self._market(source, tx.now))
        if isinstance(target, CreatedLoan):
            target = self._activate(tx, target)
        new_target, borrowed = target.borrow(change.borrow_amount, self._market(target, tx.now))

        if repaid.total != borrowed:
            raise TransferDebtAmountMismatched(
                f"Repaid {repaid.total} on loan {change.from_loan} but borrowed "
                f"{borrowed} on loan {change.to_loan}"
            )
        tx.pool.update(new_source)
        tx.pool.update(new_target)
        return repaid

    @staticmethod
    def _transfer_change(from_loan, to_loan, repaid, borrow_amount) -> TransferDebtChange:
        if not isinstance(repaid, RepaidInput):
            repaid = RepaidInput(principal=repaid)
        return TransferDebtChange(from_loan, to_loan, repaid, borrow_amount)

    def propose_transfer_debt(
        self,
        who: AccountId,
        pool_id: PoolId,
        from_loan: LoanId,
        to_loan: LoanId,
        repaid: Union[RepaidInput, Decimal],
        borrow_amount,
    ) -> ChangeId:
        """
        Validate a debt transfer by running it on a scratch copy, then note it.

        repaid may be a RepaidInput or a principal amount.
        """
        change = self._transfer_change(from_loan, to_loan, repaid, borrow_amount)
        with self._transaction("propose_transfer_debt", pool_id) as tx:
            scratch = _Transaction(tx.pool.clone(), tx.last_loan_id, tx.now)
            try:
                self._transfer_debt(scratch, change, borrower=who)
            finally:
                scratch.rollback()
            change_id = self._note(tx, change)
        return change_id

    def apply_transfer_debt(self, who: AccountId, pool_id: PoolId, change_id: ChangeId) -> None:
        with self._transaction("apply_transfer_debt", pool_id) as tx:
            record = self._released(tx, change_id, TransferDebtChange)
            change: TransferDebtChange = record.change
            repaid = self._transfer_debt(tx, change)
            tx.emit(EventKind.DEBT_TRANSFERRED, change.from_loan, caller=who,
                    to_loan=change.to_loan, amount=repaid.total)
            self._applied(tx, record)

        log.info("debt %s transferred from loan %s to loan %s in pool %r",
                 repaid.total, change.from_loan, change.to_loan, pool_id)

    # ========================================================================
    # VALUATION
    # ========================================================================

    def update_portfolio_valuation(self, pool_id: PoolId, require_active: bool = False) -> PortfolioValuation:
        """
        Recompute the pool's portfolio value from every active loan.

        Raises:
            PoolHasNoActiveLoans: require_active and the pool has no active loans
        """
        with self._transaction("update_portfolio_valuation", pool_id) as tx:
            if require_active and not tx.pool.active:
                raise PoolHasNoActiveLoans(f"Pool {pool_id!r} has no active loans")
            values = {
                loan_id: loan.present_value(self._market(loan, tx.now))
                for loan_id, loan in tx.pool.iter_active()
            }
            valuation = aggregate(values, tx.now)
            tx.pool.valuation = valuation
            tx.emit(EventKind.PORTFOLIO_VALUATION_UPDATED, None, value=valuation.value,
                    loans=len(values))

        log.info("portfolio of pool %r valued at %s (%d loans)", pool_id, valuation.value, len(values))
        return valuation

    # ========================================================================
    # QUERIES
    # ========================================================================

    def _query(self, pool_id: PoolId) -> _Transaction:
        return _Transaction(self.pool(pool_id), self.last_loan_id, self.clock.now())

    def loan(self, pool_id: PoolId, loan_id: LoanId) -> OpenLoan:
        return self._open_loan(self._query(pool_id), loan_id)

    def closed_loan(self, pool_id: PoolId, loan_id: LoanId) -> ClosedLoan:
        try:
            return self.pool(pool_id).closed[loan_id]
        except KeyError:
            raise LoanNotFound(f"Loan {loan_id} is not closed in pool {pool_id!r}") from None

    def loan_debt(self, pool_id: PoolId, loan_id: LoanId) -> Decimal:
        """Outstanding debt now; zero for a loan never borrowed against."""
        tx = self._query(pool_id)
        loan = self._open_loan(tx, loan_id)
        if isinstance(loan, CreatedLoan):
            return ZERO
        return loan.debt(self._market(loan, tx.now))

    def loan_present_value(self, pool_id: PoolId, loan_id: LoanId) -> Decimal:
        tx = self._query(pool_id)
        loan = self._open_loan(tx, loan_id)
        if isinstance(loan, CreatedLoan):
            return ZERO
        return loan.present_value(self._market(loan, tx.now))

    def portfolio_valuation(self, pool_id: PoolId) -> PortfolioValuation:
        return self.pool(pool_id).valuation

    def write_off_policy(self, pool_id: PoolId) -> WriteOffPolicy:
        return self.pool(pool_id).write_off_policy

    def events_for(self, pool_id: PoolId, loan_id: Optional[LoanId] = None) -> Sequence[LoanEvent]:
        return [
            e for e in self.events
            if e.pool_id == pool_id and (loan_id is None or e.loan_id == loan_id)
        ]
