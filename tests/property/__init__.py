"""Property-based tests using Hypothesis.

These tests use generative testing to explore edge cases:
- Diff partitions over arbitrary local/remote snapshots
- Conflict classification and strategy determinism
- Backoff growth and rate-limit quota accounting

To run property tests:
    pytest tests/property/ -v --hypothesis-show-statistics

Requires:
    hypothesis>=6.100.0
"""
