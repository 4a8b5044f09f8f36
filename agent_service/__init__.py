"""LLM-driven request router with a plan-based CRUD workflow executor."""

__version__ = "0.1.0"
