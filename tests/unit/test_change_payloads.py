"""
test_change_payloads.py - Unit tests for loan mutations and change identifiers
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from lendingpool import (
    DiscountedCashFlow, DiscountRateMutation, InterestPayments, InterestPaymentsMutation,
    InterestRate, InterestRateMutation, InvalidMaturity, InvalidMutation, InvalidPricing,
    LoanChange, LossGivenDefaultMutation, Maturity, MaturityExtensionMutation,
    MaturityMutation, NotedChange, OutstandingDebt, PolicyChange,
    ProbabilityOfDefaultMutation, PrincipalOverdue, RepaidInput, TransferDebtChange,
    ValuationMethodMutation, WriteOffRule, apply_mutation, change_id_for,
)

from tests.builders import NOW, YEAR, external_info, internal_info


def dcf_info(**kwargs):
    return internal_info(valuation=DiscountedCashFlow("0.1", "0.5", "0.05"), **kwargs)


class TestApplyMutation:

    def test_new_maturity(self):
        info = apply_mutation(internal_info(), MaturityMutation(Maturity.fixed(NOW + 2 * YEAR)), NOW)
        assert info.schedule.maturity.date == NOW + 2 * YEAR

    def test_new_maturity_must_be_future(self):
        with pytest.raises(InvalidMaturity):
            apply_mutation(internal_info(), MaturityMutation(Maturity.fixed(NOW)), NOW)

    def test_extension_within_allowance(self):
        info = apply_mutation(internal_info(extension=3600), MaturityExtensionMutation(600), NOW)
        assert info.schedule.maturity == Maturity(NOW + YEAR + timedelta(seconds=600), 3000)

    def test_extension_allowed_after_maturity(self):
        """An overdue loan can still use its extension."""
        info = apply_mutation(
            internal_info(extension=86400), MaturityExtensionMutation(86400), NOW + YEAR + timedelta(hours=1),
        )
        assert info.schedule.maturity.date == NOW + YEAR + timedelta(days=1)

    def test_extension_beyond_allowance(self):
        with pytest.raises(InvalidMutation):
            apply_mutation(internal_info(extension=10), MaturityExtensionMutation(11), NOW)

    def test_interest_rate(self):
        info = apply_mutation(internal_info(), InterestRateMutation(InterestRate("0.07")), NOW)
        assert info.interest_rate == InterestRate("0.07")

    def test_interest_rate_on_external_loan(self):
        with pytest.raises(InvalidMutation, match="internally priced"):
            apply_mutation(external_info(), InterestRateMutation(InterestRate("0.07")), NOW)

    def test_interest_payments(self):
        info = apply_mutation(internal_info(), InterestPaymentsMutation(InterestPayments.MONTHLY), NOW)
        assert info.schedule.interest_payments is InterestPayments.MONTHLY

    def test_monthly_on_open_ended_rejected(self):
        base = apply_mutation(internal_info(), MaturityMutation(Maturity.none()), NOW)
        with pytest.raises(InvalidMaturity):
            apply_mutation(base, InterestPaymentsMutation(InterestPayments.MONTHLY), NOW)

    def test_valuation_method(self):
        method = DiscountedCashFlow("0", "0", "0.1")
        info = apply_mutation(internal_info(), ValuationMethodMutation(method), NOW)
        assert info.pricing.valuation_method == method

    def test_dcf_fields(self):
        info = dcf_info()
        info = apply_mutation(info, ProbabilityOfDefaultMutation("0.2"), NOW)
        info = apply_mutation(info, LossGivenDefaultMutation("0.4"), NOW)
        info = apply_mutation(info, DiscountRateMutation("0.08"), NOW)
        assert info.pricing.valuation_method == DiscountedCashFlow("0.2", "0.4", "0.08")

    def test_dcf_field_without_dcf(self):
        with pytest.raises(InvalidMutation, match="discounted cash flow"):
            apply_mutation(internal_info(), DiscountRateMutation("0.08"), NOW)

    def test_open_ended_maturity_with_dcf_rejected(self):
        with pytest.raises(InvalidPricing):
            apply_mutation(dcf_info(), MaturityMutation(Maturity.none()), NOW)

    def test_back_to_outstanding_debt(self):
        info = apply_mutation(dcf_info(), ValuationMethodMutation(OutstandingDebt()), NOW)
        assert info.pricing.valuation_method == OutstandingDebt()

    def test_unknown_mutation(self):
        with pytest.raises(InvalidMutation, match="Unknown"):
            apply_mutation(internal_info(), "double the rate", NOW)

    def test_source_info_untouched(self):
        info = internal_info()
        apply_mutation(info, InterestRateMutation(InterestRate("0.07")), NOW)
        assert info.interest_rate == InterestRate("0.5")


class TestChangeIds:

    def test_identical_content_same_id(self):
        a = NotedChange(LoanChange(1, InterestRateMutation(InterestRate("0.07"))))
        b = NotedChange(LoanChange(1, InterestRateMutation(InterestRate("0.070"))))
        assert change_id_for(a) == change_id_for(b)

    def test_revision_changes_id(self):
        change = LoanChange(1, MaturityExtensionMutation(60))
        assert change_id_for(NotedChange(change, 0)) != change_id_for(NotedChange(change, 1))

    def test_loan_id_changes_id(self):
        mutation = MaturityExtensionMutation(60)
        assert change_id_for(NotedChange(LoanChange(1, mutation))) != change_id_for(
            NotedChange(LoanChange(2, mutation))
        )

    def test_mutation_kind_distinguishes(self):
        """Different mutation kinds with the same value never collide."""
        a = NotedChange(LoanChange(1, ProbabilityOfDefaultMutation("0.1")))
        b = NotedChange(LoanChange(1, LossGivenDefaultMutation("0.1")))
        assert change_id_for(a) != change_id_for(b)

    def test_policy_change_list_or_tuple(self):
        rules = [WriteOffRule.new([PrincipalOverdue.days(1)], "0.1", "0")]
        assert change_id_for(NotedChange(PolicyChange(rules))) == change_id_for(
            NotedChange(PolicyChange(tuple(rules)))
        )

    def test_transfer_change(self):
        a = TransferDebtChange(1, 2, RepaidInput(principal=10), 10)
        b = TransferDebtChange(1, 2, RepaidInput(principal=Decimal("10.0")), Decimal("10"))
        assert change_id_for(NotedChange(a)) == change_id_for(NotedChange(b))
