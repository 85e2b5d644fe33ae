"""Shared model config and base types."""
from pydantic import BaseModel, ConfigDict


class EFBaseModel(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True, populate_by_name=True)
