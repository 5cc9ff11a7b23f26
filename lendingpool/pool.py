"""
pool.py - Pool-scoped loan storage

PoolLoans owns everything the engine knows about one pool:
- created loans (not yet borrowed against)
- active loans, in activation order
- closed loan records
- collateral locks (each collateral reference attached to at most one loan)
- the active write-off policy
- the cached portfolio valuation
- governed change records

It holds no collaborators and performs no validation beyond its own
storage invariants; the engine decides what may happen, PoolLoans records it.
"""

from __future__ import annotations
import copy
import logging
from typing import Dict, Iterator, Optional, Tuple, Union

from .changes import Change, ChangeRecord, ChangeStatus
from .core import (
    ChangeId, CollateralRef, LoanId, PoolId,
    CollateralAlreadyUsed, MaxActiveLoansReached,
    content_hash,
)
from .loans import ActiveLoan, ClosedLoan, CreatedLoan
from .policy import WriteOffPolicy
from .valuation import PortfolioValuation

log = logging.getLogger(__name__)

OpenLoan = Union[CreatedLoan, ActiveLoan]


class PoolLoans:
    """Loan storage of a single pool."""

    def __init__(self, pool_id: PoolId):
        self.pool_id = pool_id
        self.created: Dict[LoanId, CreatedLoan] = {}
        self.active: Dict[LoanId, ActiveLoan] = {}
        self.closed: Dict[LoanId, ClosedLoan] = {}
        self.collateral: Dict[CollateralRef, LoanId] = {}
        self.write_off_policy: WriteOffPolicy = ()
        self.valuation = PortfolioValuation()
        self.changes: Dict[ChangeId, ChangeRecord] = {}
        # content hash of a change -> number of times it was applied
        self.applied_revisions: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Loans
    # ------------------------------------------------------------------

    def get(self, loan_id: LoanId) -> Optional[OpenLoan]:
        """Created or active loan with this id, None otherwise."""
        loan = self.active.get(loan_id)
        if loan is None:
            loan = self.created.get(loan_id)
        return loan

    def iter_active(self) -> Iterator[Tuple[LoanId, ActiveLoan]]:
        return iter(self.active.items())

    @property
    def has_loans(self) -> bool:
        return bool(self.created or self.active)

    def add_created(self, loan: CreatedLoan) -> None:
        """
        Store a new loan and lock its collateral.

        Raises:
            CollateralAlreadyUsed: collateral attached to another open loan
        """
        collateral = loan.info.collateral
        holder = self.collateral.get(collateral)
        if holder is not None:
            raise CollateralAlreadyUsed(
                f"Collateral {collateral!r} is already used by loan {holder} in pool {self.pool_id!r}"
            )
        self.collateral[collateral] = loan.loan_id
        self.created[loan.loan_id] = loan

    def activate(self, loan: ActiveLoan, max_active: int) -> None:
        """
        Move a created loan into the active set.

        Raises:
            MaxActiveLoansReached: the pool already holds max_active active loans
        """
        if len(self.active) >= max_active:
            raise MaxActiveLoansReached(
                f"Pool {self.pool_id!r} already has {len(self.active)} active loans"
            )
        del self.created[loan.loan_id]
        self.active[loan.loan_id] = loan
        self.valuation = self.valuation.mark_dirty()

    def update(self, loan: ActiveLoan) -> None:
        """Replace an active loan after a balance-affecting transition."""
        self.active[loan.loan_id] = loan
        self.valuation = self.valuation.mark_dirty()

    def close(self, closed: ClosedLoan) -> None:
        """Remove an open loan, release its collateral and keep the closed record."""
        loan_id = closed.loan_id
        was_active = self.active.pop(loan_id, None) is not None
        if not was_active:
            del self.created[loan_id]
        del self.collateral[closed.info.collateral]
        self.closed[loan_id] = closed
        if was_active:
            self.valuation = self.valuation.mark_dirty()
        log.debug("collateral %r released in pool %r", closed.info.collateral, self.pool_id)

    # ------------------------------------------------------------------
    # Changes
    # ------------------------------------------------------------------

    def revision_of(self, change: Change) -> int:
        """Number of times identical content was already applied."""
        return self.applied_revisions.get(content_hash(change), 0)

    def record_change(self, record: ChangeRecord) -> None:
        self.changes[record.change_id] = record

    def mark_applied(self, record: ChangeRecord) -> ChangeRecord:
        applied = ChangeRecord(record.change_id, record.noted, ChangeStatus.APPLIED)
        self.changes[record.change_id] = applied
        key = content_hash(record.change)
        self.applied_revisions[key] = self.applied_revisions.get(key, 0) + 1
        return applied

    def clone(self) -> PoolLoans:
        """
        Working copy used as the state of a transaction.

        Stored records are immutable, so copying the maps is enough: changes to
        the copy never reach this instance.
        """
        twin = copy.copy(self)
        twin.created = dict(self.created)
        twin.active = dict(self.active)
        twin.closed = dict(self.closed)
        twin.collateral = dict(self.collateral)
        twin.changes = dict(self.changes)
        twin.applied_revisions = dict(self.applied_revisions)
        return twin

    def __repr__(self):
        return (
            f"PoolLoans({self.pool_id!r}, created={len(self.created)}, "
            f"active={len(self.active)}, closed={len(self.closed)})"
        )
