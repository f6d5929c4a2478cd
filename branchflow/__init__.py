"""Policy-driven branch, pull request and merge orchestration for automated tasks."""

__version__ = "0.1.0"
