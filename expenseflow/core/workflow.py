"""
Expense Approval State Machine

Pure decision logic for one approval action:

    submitted -> approved_l1 -> approved_l2 -> approved_l3 -> payment_processed
        \\___________\\____________\\____________\\-> rejected

Each pending stage is owned by exactly one role (L1, L2, L3, Finance).
Nothing here touches storage; the engine persists the returned record with a
compare-and-swap on the previous status.
"""

import logging
from decimal import Decimal
from typing import Any, Optional, Tuple

from expenseflow.core.models import (
    ApprovalAction,
    ApprovalEvent,
    ApproverRole,
    ExpenseRecord,
    ExpenseStatus,
    STAGES,
    TransitionResult,
    normalize_role,
    parse_amount,
    parse_level,
)
from expenseflow.services.errors import InvalidStateError, UnauthorizedError, ValidationError

logger = logging.getLogger(__name__)


def required_role(status: ExpenseStatus) -> Optional[ApproverRole]:
    """Role that may act on an expense in ``status`` (None when terminal)."""
    stage = STAGES.get(status)
    return stage[1] if stage else None


def stage_level(status: ExpenseStatus) -> Optional[int]:
    stage = STAGES.get(status)
    return stage[0] if stage else None


def pending_status_for(role: ApproverRole) -> ExpenseStatus:
    """The status whose expenses are waiting on ``role``."""
    for status, (_, owner, _) in STAGES.items():
        if owner == role:
            return status
    raise ValidationError("Unknown approver role", role=str(role))


def parse_action(value: Any) -> ApprovalAction:
    text = str(getattr(value, "value", value) or "").strip().lower()
    if text in ("approve", "approved", "payment"):
        return ApprovalAction.APPROVED
    if text in ("reject", "rejected"):
        return ApprovalAction.REJECTED
    raise ValidationError("Action must be 'approve' or 'reject'", detail=f"Got {value!r}")


def _validate_modification(
    record: ExpenseRecord,
    action: ApprovalAction,
    modified_amount: Optional[Decimal],
    modification_reason: Optional[str],
) -> Optional[Decimal]:
    """Return the new amount if this action changes it, else None."""
    if modified_amount is None:
        return None
    amount = parse_amount(modified_amount)
    if amount is None:
        return None
    if amount <= 0:
        raise ValidationError("Modified amount must be positive", detail=f"Got {modified_amount}")
    if amount == record.current_amount:
        return None
    if action != ApprovalAction.APPROVED:
        raise ValidationError("Amount can only be modified when approving")
    if not (modification_reason or "").strip():
        raise ValidationError("modification reason required")
    return amount


def submit_approval_action(
    record: ExpenseRecord,
    actor_role: Any,
    action: Any,
    level: Any,
    approver_id: str,
    comment: str = "",
    modified_amount: Optional[Decimal] = None,
    modification_reason: Optional[str] = None,
) -> Tuple[ExpenseRecord, TransitionResult]:
    """
    Decide one approval action against ``record``.

    Returns the updated record and a ``TransitionResult``. The input record is
    never modified; on any failure nothing is returned and nothing changes.

    Raises:
        InvalidStateError: record is already paid or rejected.
        UnauthorizedError: ``actor_role`` does not own the record's current stage.
        ValidationError: bad level/action, or an amount change without a reason.
    """
    if record.status.is_terminal:
        raise InvalidStateError(record.id, record.status.value)

    owner = required_role(record.status)
    try:
        role = normalize_role(actor_role)
    except ValidationError:
        raise UnauthorizedError(str(actor_role), owner.value, record.status.value)
    if role != owner:
        raise UnauthorizedError(role.value, owner.value if owner else None, record.status.value)

    expected_level = stage_level(record.status)
    requested_level = parse_level(level)
    if requested_level != expected_level:
        raise ValidationError(
            "Approval level does not match the expense's current stage",
            detail=f"Expected L{expected_level}, got L{requested_level}",
            expected_level=expected_level,
            level=requested_level,
        )

    if not approver_id:
        raise ValidationError("Approver ID is required for approval")

    decision = parse_action(action)
    new_amount = _validate_modification(record, decision, modified_amount, modification_reason)

    if new_amount is not None:
        event = ApprovalEvent(
            level=requested_level,
            approver_id=approver_id,
            action=decision,
            comment=comment or "",
            amount_modified=True,
            original_amount=record.current_amount,
            modified_amount=new_amount,
            modification_reason=modification_reason.strip(),
        )
    else:
        event = ApprovalEvent(
            level=requested_level,
            approver_id=approver_id,
            action=decision,
            comment=comment or "",
        )

    if decision == ApprovalAction.REJECTED:
        next_status = ExpenseStatus.REJECTED
    else:
        next_status = STAGES[record.status][2]

    amount = new_amount if new_amount is not None else record.current_amount
    updated = record.with_transition(next_status, event, amount)

    logger.debug(
        "Decided %s on %s at L%s: %s -> %s",
        decision.value, record.id, requested_level, record.status.value, next_status.value,
    )

    result = TransitionResult(
        expense_id=record.id,
        previous_status=record.status,
        new_status=next_status,
        event=event,
        amount=amount,
        record=updated,
    )
    return updated, result
