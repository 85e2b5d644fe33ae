"""Pydantic request models."""
