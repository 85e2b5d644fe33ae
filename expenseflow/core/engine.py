"""
Expenseflow Engine

Runs one approval request end to end:

    load -> decide (pure) -> compare-and-swap -> budget (on payment) -> directives

The HTTP layer and any script call this; it is the single point where the
pure state machine meets storage.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from expenseflow.core.budget import BudgetAccumulator, BudgetLedger, SpendRecordResult, period_key_for
from expenseflow.core.database import ExpenseDB, get_db
from expenseflow.core.models import (
    ExpenseRecord,
    ExpenseStatus,
    NotificationDirective,
    TransitionResult,
    normalize_role,
)
from expenseflow.core.notifications import build_notification_directives, submission_directives
from expenseflow.core.workflow import pending_status_for, submit_approval_action
from expenseflow.services.errors import InvalidStateError
from expenseflow.services.logging import log_error, log_transition

logger = logging.getLogger(__name__)


@dataclass
class ApprovalOutcome:
    """Everything a caller needs after a committed transition."""
    record: ExpenseRecord
    transition: TransitionResult
    directives: List[NotificationDirective] = field(default_factory=list)
    budget: Optional[SpendRecordResult] = None

    @property
    def message(self) -> str:
        if self.transition.is_rejection:
            return "Expense rejected"
        if self.transition.is_final_approval:
            return "Payment processed successfully"
        return f"Expense approved at level {self.transition.event.level}"

    def to_response(self) -> Dict[str, Any]:
        """``{success, data, message}`` shape expected by existing clients."""
        data = self.record.to_dict()
        data["transition"] = self.transition.to_dict()
        if self.budget is not None:
            data["budget"] = self.budget.to_dict()
        return {"success": True, "data": data, "message": self.message}


class ApprovalEngine:
    """
    Central approval engine.

    Usage:
        engine = ApprovalEngine()
        outcome = engine.process_action(
            "EXP-1", actor_role="l2_approver", approver_id="u-7",
            action="approve", level=2, comment="ok",
        )
        await bus.publish_all(outcome.directives)
    """

    def __init__(self, db: Optional[ExpenseDB] = None, ledger: Optional[BudgetLedger] = None):
        self.db = db or get_db()
        self.db.initialize()
        self.budget = BudgetAccumulator(ledger or self.db, self.db.get_budget_config)

    # ==================== SUBMISSION ====================

    def submit_expense(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Create a submitted expense and the directives announcing it."""
        record = self.db.create_expense(payload)
        return {"record": record, "directives": submission_directives(record)}

    # ==================== APPROVAL ====================

    def process_action(
        self,
        expense_id: str,
        actor_role: Any,
        approver_id: str,
        action: Any,
        level: Any,
        comment: str = "",
        modified_amount: Optional[Decimal] = None,
        modification_reason: Optional[str] = None,
    ) -> ApprovalOutcome:
        """
        Apply one approval action.

        Raises NotFoundError, ValidationError, UnauthorizedError or
        InvalidStateError; nothing is written when any of them is raised.
        """
        record = self.db.load_expense(expense_id)
        updated, transition = submit_approval_action(
            record,
            actor_role=actor_role,
            action=action,
            level=level,
            approver_id=approver_id,
            comment=comment,
            modified_amount=modified_amount,
            modification_reason=modification_reason,
        )

        if not self.db.compare_and_swap_status(expense_id, record.status, updated):
            logger.warning(
                "Lost race on %s: expected %s, another action committed first",
                expense_id, record.status.value,
            )
            raise InvalidStateError(
                expense_id,
                record.status.value,
                detail="Expense was updated by another action; refresh and retry",
            )

        log_transition(
            expense_id,
            transition.previous_status.value,
            transition.new_status.value,
            approver_id=approver_id,
            level=transition.event.level,
            amount=str(transition.amount),
        )

        spend = None
        if transition.new_status == ExpenseStatus.PAID:
            spend = self._record_spend(transition)

        directives = build_notification_directives(transition, spend)
        return ApprovalOutcome(record=updated, transition=transition, directives=directives, budget=spend)

    def _apply_payment_spend(self, record: ExpenseRecord) -> SpendRecordResult:
        payment = record.approval_history[-1]
        return self.budget.record_approved_spend(
            site_id=record.site_id,
            category=record.category,
            amount=record.current_amount,
            period_key=period_key_for(payment.timestamp),
            event_id=payment.event_id,
        )

    def _record_spend(self, transition: TransitionResult) -> Optional[SpendRecordResult]:
        """Count paid spend once. Failures are logged and retried once; the transition stands."""
        record = transition.record
        try:
            return self._apply_payment_spend(record)
        except Exception as exc:
            log_error(
                "budget_accumulation_failed",
                f"Could not record spend for {record.id}: {exc}",
                {"expense_id": record.id, "event_id": transition.event.event_id},
                exception=exc,
            )
        replayed = self.reconcile_spend(expense_id=record.id)
        return replayed[0] if replayed else None

    def reconcile_spend(self, expense_id: Optional[str] = None) -> List[SpendRecordResult]:
        """
        Replay spend for paid expenses whose payment event is not in the ledger yet.

        Safe to run at any time: each payment event is applied at most once,
        so already-counted expenses come back as not applied and are dropped.
        Returns the results that actually added spend.
        """
        applied: List[SpendRecordResult] = []
        for record in self.db.unapplied_payments(expense_id=expense_id):
            try:
                result = self._apply_payment_spend(record)
            except Exception as exc:
                log_error(
                    "budget_reconcile_failed",
                    f"Could not replay spend for {record.id}: {exc}",
                    {"expense_id": record.id, "event_id": record.approval_history[-1].event_id},
                    exception=exc,
                )
                continue
            if result.applied:
                logger.info("Replayed spend for %s (event %s)", record.id, result.event_id)
                applied.append(result)
        return applied

    # ==================== QUERIES ====================

    def get_expense(self, expense_id: str) -> ExpenseRecord:
        return self.db.load_expense(expense_id)

    def pending_for_role(self, role: Any, site_id: Optional[str] = None) -> List[ExpenseRecord]:
        status = pending_status_for(normalize_role(role))
        return self.db.list_expenses(status=status.value, site_id=site_id)

    def get_budget_status(self, site_id: str, period_key: str) -> Dict[str, Any]:
        return self.budget.get_budget_status(site_id, period_key)


_ENGINE: Optional[ApprovalEngine] = None


def get_engine() -> ApprovalEngine:
    global _ENGINE
    if _ENGINE is None:
        _ENGINE = ApprovalEngine()
    return _ENGINE


def reset_engine() -> None:
    global _ENGINE
    _ENGINE = None
