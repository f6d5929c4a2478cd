"""Utility modules for the orchestration engine.

Key Utilities:
    - retry: retry_call helper with per-attempt timeout and an optional per-attempt guard
    - logging_config: structlog configuration and workflow context binding
    - async_subprocess: Non-blocking subprocess execution for git commands
"""
