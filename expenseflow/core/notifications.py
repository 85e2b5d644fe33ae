"""
Notification Fan-out

Turns a committed transition into the list of notification directives the
real-time transport must deliver. Pure function of its inputs; no I/O.

Rooms follow the names existing clients join:
- ``user-<id>``              one user
- ``role-<role>``            everyone holding an approver role
- ``finance-audit``          payment/audit listeners
- ``budget-alerts``          budget watchers
- ``broadcast``              every connected dashboard
"""

from typing import Any, Dict, List, Optional

from expenseflow.core.budget import BudgetScope, SpendRecordResult
from expenseflow.core.models import (
    ExpenseRecord,
    ExpenseStatus,
    NotificationDirective,
    STAGES,
    TransitionResult,
)

EXPENSE_UPDATED = "expense-updated"
NEW_EXPENSE_SUBMITTED = "new_expense_submitted"
EXPENSE_REJECTED = "expense_rejected"
EXPENSE_PAYMENT_PROCESSED = "expense_payment_processed"
BUDGET_EXCEEDED_ALERT = "budget_exceeded_alert"
EXPENSE_APPROVED_FINAL = "expense_approved_final"
DASHBOARD_UPDATE = "dashboard-update"
BUDGET_UPDATED = "budget-updated"
SITE_BUDGET_CHANGED = "site-budget-changed"

FINANCE_AUDIT_ROOM = "finance-audit"
BUDGET_ALERTS_ROOM = "budget-alerts"
BROADCAST = "broadcast"


def user_room(user_id: str) -> str:
    return f"user-{user_id}"


def approved_event_type(level: int) -> str:
    return f"expense_approved_l{level}"


def _expense_payload(record: ExpenseRecord, **extra: Any) -> Dict[str, Any]:
    payload = {
        "expenseId": record.id,
        "expenseNumber": record.expense_number,
        "title": record.title,
        "status": record.status.value,
        "amount": str(record.current_amount),
        "category": record.category,
        "siteId": record.site_id,
        "siteName": record.site_name,
        "submitter": record.submitter_id,
    }
    payload.update(extra)
    return payload


def submission_directives(record: ExpenseRecord) -> List[NotificationDirective]:
    """Directives for a freshly submitted expense (first approver pool)."""
    _, role, _ = STAGES[ExpenseStatus.SUBMITTED]
    return [NotificationDirective(role.room, NEW_EXPENSE_SUBMITTED, _expense_payload(record))]


def budget_alert_directives(spend: Optional[SpendRecordResult]) -> List[NotificationDirective]:
    if spend is None:
        return []
    return [
        NotificationDirective(
            BUDGET_ALERTS_ROOM,
            BUDGET_EXCEEDED_ALERT,
            {
                "siteId": spend.site_id,
                "siteName": spend.site_name,
                "category": spend.category,
                "scope": breach.scope.value,
                "period": breach.period_key,
                "utilizationPercent": breach.utilization_percent,
                "threshold": breach.threshold_percent,
                "limit": str(breach.limit),
                "total": str(breach.total),
            },
        )
        for breach in spend.breaches
    ]


def budget_update_directives(spend: Optional[SpendRecordResult]) -> List[NotificationDirective]:
    """Running-total updates for budget dashboards, sent whenever spend was added."""
    if spend is None or not spend.applied:
        return []
    monthly = next(c for c in spend.checks if c.scope == BudgetScope.SITE_MONTHLY)
    payload = {
        "siteId": spend.site_id,
        "siteName": spend.site_name,
        "category": spend.category,
        "period": spend.period_key,
        "amount": str(spend.amount),
        "budgetUtilization": monthly.utilization_percent,
        "monthlySpend": str(monthly.total),
        "remainingBudget": str(monthly.remaining),
    }
    return [
        NotificationDirective(BUDGET_ALERTS_ROOM, BUDGET_UPDATED, payload),
        NotificationDirective(BUDGET_ALERTS_ROOM, SITE_BUDGET_CHANGED, payload),
    ]


def _unique(directives: List[NotificationDirective]) -> List[NotificationDirective]:
    seen = set()
    out = []
    for directive in directives:
        key = (directive.audience, directive.event_type)
        if key not in seen:
            seen.add(key)
            out.append(directive)
    return out


def build_notification_directives(
    result: TransitionResult,
    spend: Optional[SpendRecordResult] = None,
) -> List[NotificationDirective]:
    """
    Directives for one transition.

    - rejection: submitter only (``expense_rejected``), chain ends
    - any approval: submitter (``expense-updated``), plus an ``expense-updated``
      confirmation to the acting approver and their role room, and a
      ``dashboard-update`` broadcast
    - L1/L2/L3 approval: the next stage's role room (``expense_approved_l<N>``);
      L3 also tells the submitter ``expense_approved_final``
    - payment: submitter and the finance/audit room get
      ``expense_payment_processed`` instead of the submitter update
    - spend recorded: ``budget-updated`` and ``site-budget-changed`` to the
      budget room, plus one ``budget_exceeded_alert`` per breached scope
    """
    record = result.record
    event = result.event
    payload = _expense_payload(
        record,
        previousStatus=result.previous_status.value,
        level=event.level,
        action=event.action.value,
        approverId=event.approver_id,
        comment=event.comment,
        amountModified=event.amount_modified,
        timestamp=event.timestamp.isoformat(),
    )
    submitter = user_room(record.submitter_id)

    if result.is_rejection:
        return [NotificationDirective(submitter, EXPENSE_REJECTED, payload)]

    _, acting_role, _ = STAGES[result.previous_status]
    directives: List[NotificationDirective] = []
    if result.is_final_approval:
        directives.append(NotificationDirective(submitter, EXPENSE_PAYMENT_PROCESSED, payload))
    else:
        directives.append(NotificationDirective(submitter, EXPENSE_UPDATED, payload))
    directives.append(NotificationDirective(user_room(event.approver_id), EXPENSE_UPDATED, payload))
    directives.append(NotificationDirective(acting_role.room, EXPENSE_UPDATED, payload))

    if result.is_final_approval:
        directives.append(NotificationDirective(FINANCE_AUDIT_ROOM, EXPENSE_PAYMENT_PROCESSED, payload))
    else:
        _, next_role, _ = STAGES[result.new_status]
        directives.append(NotificationDirective(next_role.room, approved_event_type(event.level), payload))
        if result.new_status == ExpenseStatus.APPROVED_L3:
            directives.append(NotificationDirective(submitter, EXPENSE_APPROVED_FINAL, payload))

    directives.append(NotificationDirective(BROADCAST, DASHBOARD_UPDATE, payload))
    directives.extend(budget_update_directives(spend))
    directives.extend(budget_alert_directives(spend))
    return _unique(directives)
