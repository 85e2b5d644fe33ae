"""
Expense Approval API Endpoints

Thin HTTP wrapper around the approval engine:
- Submit an expense
- Approve / reject at the current stage
- Look up expenses and each role's pending queue
"""

from typing import Optional
from fastapi import APIRouter, BackgroundTasks, Depends, Query
import logging

from expenseflow.core.engine import get_engine
from expenseflow.core.event_bus import get_notification_bus
from expenseflow.models.requests import ApprovalActionRequest, CreateExpenseRequest
from expenseflow.services.auth import Actor, get_current_actor, verify_api_key

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/expenses", tags=["expenses"], dependencies=[Depends(verify_api_key)])


@router.post("")
def create_expense(
    request: CreateExpenseRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_current_actor),
):
    """Submit a new expense; it enters the L1 queue."""
    engine = get_engine()
    created = engine.submit_expense({
        "title": request.title,
        "amount": request.amount,
        "category": request.category,
        "site_id": request.site_id,
        "currency": request.currency,
        "expense_number": request.expense_number,
        "submitter_id": actor.user_id,
    })
    background_tasks.add_task(get_notification_bus().publish_all, created["directives"])
    return {
        "success": True,
        "data": created["record"].to_dict(),
        "message": "Expense submitted successfully",
    }


@router.get("")
def list_expenses(
    status: Optional[str] = Query(default=None),
    site_id: Optional[str] = Query(default=None),
    submitter_id: Optional[str] = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
):
    records = get_engine().db.list_expenses(
        status=status, site_id=site_id, submitter_id=submitter_id, limit=limit,
    )
    return {"success": True, "data": [r.to_dict() for r in records], "count": len(records)}


@router.get("/pending")
def pending_expenses(
    site_id: Optional[str] = Query(default=None),
    actor: Actor = Depends(get_current_actor),
):
    """Expenses waiting on the caller's approval role."""
    records = get_engine().pending_for_role(actor.role, site_id=site_id)
    return {"success": True, "data": [r.to_dict() for r in records], "count": len(records)}


@router.get("/{expense_id}")
def get_expense(expense_id: str):
    return {"success": True, "data": get_engine().get_expense(expense_id).to_dict()}


@router.put("/{expense_id}/approve")
def approve_expense(
    expense_id: str,
    request: ApprovalActionRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_current_actor),
):
    """Approve or reject ``expense_id`` at its current stage."""
    logger.info(
        "Approval request: expense=%s action=%s level=%s user=%s role=%s",
        expense_id, request.action, request.level, actor.user_id, actor.raw_role,
    )
    outcome = get_engine().process_action(
        expense_id,
        actor_role=actor.raw_role,
        approver_id=actor.user_id,
        action=request.action,
        level=request.parsed_level(),
        comment=request.comments,
        modified_amount=request.parsed_modified_amount(),
        modification_reason=request.modification_reason,
    )
    background_tasks.add_task(get_notification_bus().publish_all, outcome.directives)
    return outcome.to_response()
