"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the loan ledger.
Any compliant record store or engine change MUST pass these tests.

The tests are organized by invariant:
1. conservation.py - Wallet balances reconcile to the transaction log
2. atomicity.py - All-or-nothing settlement operations
3. idempotency.py - Keyed retries replay the first outcome
4. concurrency.py - Funding cap and single payoff under parallel callers

These tests use hypothesis for property-based testing.
"""
