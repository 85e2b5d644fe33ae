"""
Tests for the expense approval state machine.

The state machine is pure: every test builds a record in memory, applies an
action and inspects the returned record/result.
"""

from decimal import Decimal

import pytest

from expenseflow.core.models import (
    ApprovalAction,
    ApproverRole,
    ExpenseRecord,
    ExpenseStatus,
    STAGES,
    STATUS_ORDER,
)
from expenseflow.core.workflow import (
    parse_action,
    pending_status_for,
    required_role,
    submit_approval_action,
)
from expenseflow.services.errors import InvalidStateError, UnauthorizedError, ValidationError

NON_TERMINAL = [s for s in ExpenseStatus if not s.is_terminal]
TERMINAL = [ExpenseStatus.PAID, ExpenseStatus.REJECTED]


def make_record(status=ExpenseStatus.SUBMITTED, amount="5000", **kwargs) -> ExpenseRecord:
    return ExpenseRecord(
        id=kwargs.pop("id", "EXP-1"),
        status=status,
        original_amount=Decimal(amount),
        site_id="site-1",
        category="Travel",
        submitter_id="submitter-1",
        site_name="Rohini",
        **kwargs,
    )


def act(record, role, action="approve", **kwargs):
    level = kwargs.pop("level", STAGES[record.status][0] if record.status in STAGES else 1)
    return submit_approval_action(
        record,
        actor_role=role,
        action=action,
        level=level,
        approver_id=kwargs.pop("approver_id", f"{getattr(role, 'value', role)}-user"),
        **kwargs,
    )


class TestHappyPath:

    def test_l1_approval_without_modification(self):
        record = make_record(ExpenseStatus.SUBMITTED, "5000")

        updated, result = act(record, ApproverRole.L1)

        assert updated.status == ExpenseStatus.APPROVED_L1
        assert updated.current_amount == Decimal("5000.00")
        assert len(updated.approval_history) == 1
        assert result.previous_status == ExpenseStatus.SUBMITTED
        assert result.new_status == ExpenseStatus.APPROVED_L1
        assert not result.is_final_approval
        assert not result.is_rejection
        assert result.amount == Decimal("5000.00")

    def test_l3_approval_with_modified_amount(self):
        record = make_record(ExpenseStatus.APPROVED_L2, "20000")

        updated, result = act(
            record,
            ApproverRole.L3,
            modified_amount=Decimal("18000"),
            modification_reason="duplicate line item removed",
        )

        assert updated.status == ExpenseStatus.APPROVED_L3
        assert updated.current_amount == Decimal("18000.00")
        assert updated.original_amount == Decimal("20000.00")
        event = updated.approval_history[-1]
        assert event.amount_modified is True
        assert event.original_amount == Decimal("20000.00")
        assert event.modified_amount == Decimal("18000.00")
        assert event.modification_reason == "duplicate line item removed"
        assert result.amount == Decimal("18000.00")

    def test_finance_approval_pays(self):
        record = make_record(ExpenseStatus.APPROVED_L3, "18000")

        updated, result = act(record, ApproverRole.FINANCE)

        assert updated.status == ExpenseStatus.PAID
        assert result.is_final_approval
        assert result.event.level == 4

    def test_legacy_payment_action_is_an_approval(self):
        record = make_record(ExpenseStatus.APPROVED_L3)

        updated, _ = act(record, ApproverRole.FINANCE, action="payment")

        assert updated.status == ExpenseStatus.PAID

    def test_full_chain_is_monotonic(self):
        record = make_record()
        seen = [STATUS_ORDER.index(record.status)]
        for role in (ApproverRole.L1, ApproverRole.L2, ApproverRole.L3, ApproverRole.FINANCE):
            record, _ = act(record, role)
            seen.append(STATUS_ORDER.index(record.status))

        assert seen == sorted(seen)
        assert record.status == ExpenseStatus.PAID
        assert [e.level for e in record.approval_history] == [1, 2, 3, 4]

    def test_input_record_is_not_modified(self):
        record = make_record()
        snapshot = make_record()

        act(record, ApproverRole.L1)

        assert record == snapshot
        assert record.approval_history == ()

    def test_role_casing_is_normalized(self):
        record = make_record(ExpenseStatus.APPROVED_L1)

        updated, _ = act(record, "L2_APPROVER")

        assert updated.status == ExpenseStatus.APPROVED_L2


class TestRejection:

    @pytest.mark.parametrize("status", NON_TERMINAL)
    def test_reject_reachable_from_every_pending_stage(self, status):
        record = make_record(status)
        role = required_role(status)

        updated, result = act(record, role, action="reject", comment="missing receipt")

        assert updated.status == ExpenseStatus.REJECTED
        assert result.is_rejection
        assert updated.approval_history[-1].action == ApprovalAction.REJECTED
        assert updated.approval_history[-1].comment == "missing receipt"

    def test_reject_cannot_change_amount(self):
        record = make_record()

        with pytest.raises(ValidationError):
            act(record, ApproverRole.L1, action="reject",
                modified_amount=Decimal("10"), modification_reason="why not")


class TestAuthorization:

    @pytest.mark.parametrize("status", NON_TERMINAL)
    @pytest.mark.parametrize("role", list(ApproverRole))
    def test_only_the_stage_owner_may_act(self, status, role):
        if required_role(status) == role:
            return
        record = make_record(status)

        for action in ("approve", "reject"):
            with pytest.raises(UnauthorizedError):
                act(record, role, action=action)

    def test_l2_cannot_approve_submitted_expense(self):
        record = make_record(ExpenseStatus.SUBMITTED)

        with pytest.raises(UnauthorizedError) as exc_info:
            act(record, ApproverRole.L2, level=2)

        assert exc_info.value.context["required_role"] == "l1_approver"
        assert record.status == ExpenseStatus.SUBMITTED
        assert record.approval_history == ()

    def test_submitter_role_is_unauthorized(self):
        with pytest.raises(UnauthorizedError):
            act(make_record(), "submitter", level=1)

    def test_level_must_match_current_stage(self):
        with pytest.raises(ValidationError):
            act(make_record(), ApproverRole.L1, level=2)

    def test_approver_id_required(self):
        with pytest.raises(ValidationError):
            act(make_record(), ApproverRole.L1, approver_id="")


class TestTerminalStates:

    @pytest.mark.parametrize("status", TERMINAL)
    @pytest.mark.parametrize("role", list(ApproverRole))
    def test_terminal_records_refuse_every_action(self, status, role):
        record = make_record(status, "18000")

        with pytest.raises(InvalidStateError):
            act(record, role, level=1)

    def test_paid_record_keeps_history_and_amount(self):
        record = make_record(ExpenseStatus.APPROVED_L3, "18000")
        paid, _ = act(record, ApproverRole.FINANCE)

        with pytest.raises(InvalidStateError):
            act(paid, ApproverRole.FINANCE, level=4,
                modified_amount=Decimal("1"), modification_reason="late change")

        assert len(paid.approval_history) == 1
        assert paid.current_amount == Decimal("18000.00")


class TestAmountModification:

    def test_reason_required_when_amount_changes(self):
        record = make_record(ExpenseStatus.SUBMITTED, "5000")

        with pytest.raises(ValidationError, match="modification reason required"):
            act(record, ApproverRole.L1, modified_amount=Decimal("4500"))

        with pytest.raises(ValidationError, match="modification reason required"):
            act(record, ApproverRole.L1, modified_amount=Decimal("4500"), modification_reason="   ")

    @pytest.mark.parametrize("amount", ["0", "-10"])
    def test_modified_amount_must_be_positive(self, amount):
        with pytest.raises(ValidationError):
            act(make_record(), ApproverRole.L1,
                modified_amount=Decimal(amount), modification_reason="typo")

    def test_same_amount_is_not_a_modification(self):
        updated, _ = act(make_record(amount="5000"), ApproverRole.L1, modified_amount=Decimal("5000.00"))

        assert updated.approval_history[-1].amount_modified is False
        assert updated.approval_history[-1].modification_reason is None

    def test_modification_compares_against_current_amount(self):
        record = make_record(ExpenseStatus.SUBMITTED, "5000")
        record, _ = act(record, ApproverRole.L1,
                        modified_amount=Decimal("4000"), modification_reason="capped")

        updated, _ = act(record, ApproverRole.L2, modified_amount=Decimal("4000"))

        assert updated.current_amount == Decimal("4000.00")
        assert updated.approval_history[-1].amount_modified is False


class TestHistory:

    def test_history_grows_by_one_and_earlier_entries_are_untouched(self):
        record = make_record()
        record, _ = act(record, ApproverRole.L1, comment="first")
        first = record.approval_history[0]
        first_dict = first.to_dict()

        record, _ = act(record, ApproverRole.L2, comment="second")
        record, _ = act(record, ApproverRole.L3, comment="third")

        assert len(record.approval_history) == 3
        assert record.approval_history[0] is first
        assert record.approval_history[0].to_dict() == first_dict
        assert [e.comment for e in record.approval_history] == ["first", "second", "third"]

    def test_events_are_immutable(self):
        record, _ = act(make_record(), ApproverRole.L1)

        with pytest.raises(AttributeError):
            record.approval_history[0].comment = "edited"


class TestHelpers:

    def test_pending_status_for_each_role(self):
        assert pending_status_for(ApproverRole.L1) == ExpenseStatus.SUBMITTED
        assert pending_status_for(ApproverRole.L2) == ExpenseStatus.APPROVED_L1
        assert pending_status_for(ApproverRole.L3) == ExpenseStatus.APPROVED_L2
        assert pending_status_for(ApproverRole.FINANCE) == ExpenseStatus.APPROVED_L3

    def test_parse_action(self):
        assert parse_action("Approve") == ApprovalAction.APPROVED
        assert parse_action("rejected") == ApprovalAction.REJECTED
        with pytest.raises(ValidationError):
            parse_action("escalate")

    def test_required_role_for_terminal_is_none(self):
        assert required_role(ExpenseStatus.PAID) is None
        assert required_role(ExpenseStatus.REJECTED) is None
