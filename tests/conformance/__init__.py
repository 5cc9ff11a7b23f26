"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the loan engine.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. conservation.py - Currency leaving the pool is exactly what loans record
2. atomicity.py - Failed operations leave no trace
3. idempotency.py - Governed changes are noted and applied once
4. determinism.py - Reproducible behavior
5. canonicalization.py - Content-addressable change identity
6. temporal.py - Accrual over time and write-off monotonicity

These tests use hypothesis for property-based testing.
"""
