"""
Expenseflow Core Data Models

The expense record, its append-only approval history, and the values the
approval core hands back to callers (transition results and notification
directives). Everything here is immutable: a transition produces a new
record rather than editing the old one.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional, Tuple
import uuid

from expenseflow.services.errors import ValidationError


CENTS = Decimal("0.01")

# Largest amount accepted anywhere in the workflow.
MAX_AMOUNT = Decimal("999999999999.99")


class ExpenseStatus(str, Enum):
    """Position of an expense in the approval sequence."""
    SUBMITTED = "submitted"
    APPROVED_L1 = "approved_l1"
    APPROVED_L2 = "approved_l2"
    APPROVED_L3 = "approved_l3"
    PAID = "payment_processed"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (ExpenseStatus.PAID, ExpenseStatus.REJECTED)


class ApproverRole(str, Enum):
    """The closed set of approval roles."""
    L1 = "l1_approver"
    L2 = "l2_approver"
    L3 = "l3_approver"
    FINANCE = "finance"

    @property
    def room(self) -> str:
        return f"role-{self.value}"


class ApprovalAction(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


# Stage sequence: status -> (level, role allowed to act, status after approval)
STAGES: Dict[ExpenseStatus, Tuple[int, ApproverRole, ExpenseStatus]] = {
    ExpenseStatus.SUBMITTED: (1, ApproverRole.L1, ExpenseStatus.APPROVED_L1),
    ExpenseStatus.APPROVED_L1: (2, ApproverRole.L2, ExpenseStatus.APPROVED_L2),
    ExpenseStatus.APPROVED_L2: (3, ApproverRole.L3, ExpenseStatus.APPROVED_L3),
    ExpenseStatus.APPROVED_L3: (4, ApproverRole.FINANCE, ExpenseStatus.PAID),
}

STATUS_ORDER = (
    ExpenseStatus.SUBMITTED,
    ExpenseStatus.APPROVED_L1,
    ExpenseStatus.APPROVED_L2,
    ExpenseStatus.APPROVED_L3,
    ExpenseStatus.PAID,
)

_ROLE_ALIASES = {
    "l1": ApproverRole.L1,
    "l1approver": ApproverRole.L1,
    "l2": ApproverRole.L2,
    "l2approver": ApproverRole.L2,
    "l3": ApproverRole.L3,
    "l3approver": ApproverRole.L3,
    "superadmin": ApproverRole.L3,
    "finance": ApproverRole.FINANCE,
    "financeapprover": ApproverRole.FINANCE,
    "l4": ApproverRole.FINANCE,
}


def normalize_role(value: Any) -> ApproverRole:
    """Map any casing/separator variant of a role name onto ``ApproverRole``."""
    if isinstance(value, ApproverRole):
        return value
    key = "".join(ch for ch in str(value or "").lower() if ch.isalnum())
    role = _ROLE_ALIASES.get(key)
    if role is None:
        raise ValidationError("Unknown approver role", detail=f"Got {value!r}", role=str(value))
    return role


def parse_level(value: Any) -> int:
    """Accept 2, "2", "L2" or "l2"; return the stage level 1..4."""
    if isinstance(value, bool):
        raise ValidationError("Invalid approval level", detail=f"Got {value!r}")
    if isinstance(value, int):
        level = value
    else:
        text = str(value or "").strip().upper().lstrip("L")
        if not text.isdecimal():
            raise ValidationError("Invalid approval level", detail=f"Got {value!r}")
        level = int(text)
    if level not in (1, 2, 3, 4):
        raise ValidationError("Approval level must be between 1 and 4", detail=f"Got {value!r}")
    return level


def parse_amount(value: Any) -> Optional[Decimal]:
    """Numbers or numeric strings to a 2-place Decimal; blank means absent."""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip().replace(",", "")
        if not value:
            return None
    if isinstance(value, bool):
        raise ValidationError("Invalid amount", detail=f"Got {value!r}")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError("Invalid amount", detail=f"Got {value!r}")
    if not amount.is_finite():
        raise ValidationError("Invalid amount", detail=f"Got {value!r}")
    if abs(amount) > MAX_AMOUNT:
        raise ValidationError("Amount too large", detail=f"Got {value!r}, limit is {MAX_AMOUNT}")
    return to_money(amount)


def positive_amount(value: Any) -> Decimal:
    """Like ``parse_amount`` but the amount is required and must be above zero."""
    amount = parse_amount(value)
    if amount is None or amount <= 0:
        raise ValidationError("Expense amount must be positive", detail=f"Got {value!r}")
    return amount


def to_money(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENTS, rounding=ROUND_HALF_UP)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ApprovalEvent:
    """One entry of the approval history. Never edited after creation."""
    level: int
    approver_id: str
    action: ApprovalAction
    comment: str = ""
    amount_modified: bool = False
    original_amount: Optional[Decimal] = None
    modified_amount: Optional[Decimal] = None
    modification_reason: Optional[str] = None
    event_id: str = field(default_factory=lambda: f"AE-{uuid.uuid4().hex}")
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "event_id": self.event_id,
            "level": self.level,
            "approver_id": self.approver_id,
            "action": self.action.value,
            "comment": self.comment,
            "amount_modified": self.amount_modified,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.amount_modified:
            data["original_amount"] = str(self.original_amount)
            data["modified_amount"] = str(self.modified_amount)
            data["modification_reason"] = self.modification_reason
        return data


@dataclass(frozen=True)
class ExpenseRecord:
    """An expense moving through the approval sequence."""
    id: str
    status: ExpenseStatus
    original_amount: Decimal
    site_id: str
    category: str
    submitter_id: str
    current_amount: Optional[Decimal] = None
    approval_history: Tuple[ApprovalEvent, ...] = ()
    site_name: str = ""
    expense_number: str = ""
    title: str = ""
    currency: str = "INR"
    created_at: datetime = field(default_factory=utc_now)
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        object.__setattr__(self, "original_amount", positive_amount(self.original_amount))
        current = self.original_amount if self.current_amount is None else positive_amount(self.current_amount)
        object.__setattr__(self, "current_amount", current)
        object.__setattr__(self, "approval_history", tuple(self.approval_history))

    def with_transition(
        self,
        status: ExpenseStatus,
        event: ApprovalEvent,
        current_amount: Decimal,
    ) -> "ExpenseRecord":
        return replace(
            self,
            status=status,
            current_amount=current_amount,
            approval_history=self.approval_history + (event,),
            updated_at=event.timestamp,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "expense_number": self.expense_number,
            "title": self.title,
            "status": self.status.value,
            "original_amount": str(self.original_amount),
            "amount": str(self.current_amount),
            "currency": self.currency,
            "site": {"id": self.site_id, "name": self.site_name},
            "category": self.category,
            "submitter_id": self.submitter_id,
            "approval_history": [e.to_dict() for e in self.approval_history],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class TransitionResult:
    """What a single approval action did to an expense."""
    expense_id: str
    previous_status: ExpenseStatus
    new_status: ExpenseStatus
    event: ApprovalEvent
    amount: Decimal
    record: ExpenseRecord

    @property
    def is_final_approval(self) -> bool:
        return self.new_status == ExpenseStatus.PAID

    @property
    def is_rejection(self) -> bool:
        return self.new_status == ExpenseStatus.REJECTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "expense_id": self.expense_id,
            "previous_status": self.previous_status.value,
            "new_status": self.new_status.value,
            "is_final_approval": self.is_final_approval,
            "is_rejection": self.is_rejection,
            "amount": str(self.amount),
            "event": self.event.to_dict(),
        }


@dataclass(frozen=True)
class NotificationDirective:
    """Instruction for the transport: tell ``audience`` about ``event_type``."""
    audience: str
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "audience": self.audience,
            "event_type": self.event_type,
            "payload": self.payload,
        }
