"""Expenseflow: multi-level expense approval workflow."""

__version__ = "1.0.0"
