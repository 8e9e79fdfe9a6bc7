"""
Test suite for pgshift.

This package contains tests for all pgshift components:
- Unit tests for descriptors, synthesis and the ledger
- Workflow tests run against an in-memory catalog
- CLI tests driven through click's test runner
"""
