"""API request models.

Clients send loosely typed fields (``level`` as ``"L2"`` or ``2``,
``modifiedAmount`` as a string or number, roles in any casing). They are
normalized here, at the boundary, before reaching the approval core.
"""
from decimal import Decimal
from typing import Dict, Optional, Union

from pydantic import Field, field_validator

from expenseflow.core.models import MAX_AMOUNT, parse_amount, parse_level
from expenseflow.models.base import EFBaseModel

Number = Union[int, float, str]


class ApprovalActionRequest(EFBaseModel):
    level: Union[int, str]
    action: str = "approve"
    comments: str = ""
    modified_amount: Optional[Number] = Field(default=None, alias="modifiedAmount")
    modification_reason: Optional[str] = Field(default=None, alias="modificationReason")

    def parsed_level(self) -> int:
        return parse_level(self.level)

    def parsed_modified_amount(self) -> Optional[Decimal]:
        return parse_amount(self.modified_amount)


class CreateExpenseRequest(EFBaseModel):
    title: str = ""
    amount: Decimal = Field(gt=0, le=MAX_AMOUNT)
    category: str = "Miscellaneous"
    site_id: str = Field(alias="siteId")
    currency: Optional[str] = None
    expense_number: Optional[str] = Field(default=None, alias="expenseNumber")


class CreateSiteRequest(EFBaseModel):
    name: str
    code: Optional[str] = None
    monthly_limit: Decimal = Field(default=Decimal("0"), ge=0, le=MAX_AMOUNT, alias="monthlyLimit")
    yearly_limit: Decimal = Field(default=Decimal("0"), ge=0, le=MAX_AMOUNT, alias="yearlyLimit")
    category_limits: Dict[str, Decimal] = Field(default_factory=dict, alias="categoryLimits")
    alert_threshold: Optional[int] = Field(default=None, ge=0, le=100, alias="alertThreshold")

    @field_validator("category_limits")
    @classmethod
    def limits_in_range(cls, value: Dict[str, Decimal]) -> Dict[str, Decimal]:
        for category, limit in value.items():
            if limit < 0:
                raise ValueError(f"Budget for '{category}' cannot be negative")
            if limit > MAX_AMOUNT:
                raise ValueError(f"Budget for '{category}' is too large")
        return value
