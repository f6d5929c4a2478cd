"""End-to-end workflow tests for branchflow.

The manager is driven against in-memory git and code-hosting fakes (see
``tests/conftest.py``), so no external service is needed.

Run with: pytest tests/integration/ -v
"""
