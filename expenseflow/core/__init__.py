"""Approval core: models, state machine, fan-out, budgets, storage."""
