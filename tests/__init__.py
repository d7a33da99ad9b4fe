"""Test suite for CellType-Refinery.

Test organization:
- fixtures/: Mock data generators and test utilities
- unit/: Unit tests for individual modules
- integration/: Integration tests for stage transitions
- equivalence/: Tests comparing CellType-Refinery vs ft/ outputs

Run tests with:
    pytest tests/
    pytest tests/unit/
    pytest tests/ -v --tb=short
"""
