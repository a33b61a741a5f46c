"""Tests for the expense request lifecycle (expense_kernel/domain/workflow.py)."""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from expense_kernel.domain.values import ExpenseStatus
from expense_kernel.domain.workflow import (
    EXPENSE_REQUEST_WORKFLOW,
    Transition,
    Workflow,
    can_transition,
    is_terminal,
    transition_for,
)


class TestExpenseRequestWorkflow:
    def test_initial_state_is_pending(self):
        assert EXPENSE_REQUEST_WORKFLOW.initial_state == "Pending"

    @pytest.mark.parametrize("target", [ExpenseStatus.APPROVED, ExpenseStatus.REJECTED])
    def test_pending_can_be_decided(self, target):
        assert can_transition(ExpenseStatus.PENDING, target)

    @pytest.mark.parametrize("current", [ExpenseStatus.APPROVED, ExpenseStatus.REJECTED])
    @pytest.mark.parametrize("target", list(ExpenseStatus))
    def test_terminal_states_have_no_exit(self, current, target):
        assert not can_transition(current, target)

    def test_pending_to_pending_is_not_a_transition(self):
        assert not can_transition(ExpenseStatus.PENDING, ExpenseStatus.PENDING)

    def test_terminal_flags(self):
        assert not is_terminal(ExpenseStatus.PENDING)
        assert is_terminal(ExpenseStatus.APPROVED)
        assert is_terminal(ExpenseStatus.REJECTED)

    def test_both_decisions_record_to_the_ledger(self):
        for target in ("Approved", "Rejected"):
            transition = EXPENSE_REQUEST_WORKFLOW.find_transition("Pending", target)
            assert transition.records_ledger

    def test_transition_for_names_the_action(self):
        assert transition_for(ExpenseStatus.PENDING, ExpenseStatus.APPROVED).action == "approve"
        assert transition_for(ExpenseStatus.PENDING, ExpenseStatus.REJECTED).action == "reject"
        assert transition_for(ExpenseStatus.APPROVED, ExpenseStatus.REJECTED) is None


class TestWorkflowDefinition:
    def test_undeclared_initial_state_is_rejected(self):
        with pytest.raises(ValueError, match="initial state"):
            Workflow(
                name="broken",
                description="",
                initial_state="Draft",
                states=("Pending",),
                transitions=(),
            )

    def test_transition_to_undeclared_state_is_rejected(self):
        with pytest.raises(ValueError, match="undeclared state"):
            Workflow(
                name="broken",
                description="",
                initial_state="Pending",
                states=("Pending",),
                transitions=(Transition("Pending", "Paid", action="pay"),),
            )

    def test_terminal_state_with_exit_is_rejected(self):
        with pytest.raises(ValueError, match="terminal state"):
            Workflow(
                name="broken",
                description="",
                initial_state="Pending",
                states=("Pending", "Approved"),
                transitions=(Transition("Approved", "Pending", action="reopen"),),
                terminal_states=("Approved",),
            )


class TestLifecycleProperties:
    @given(
        decisions=st.lists(
            st.sampled_from([ExpenseStatus.APPROVED, ExpenseStatus.REJECTED]),
            min_size=1,
            max_size=10,
        )
    )
    def test_only_the_first_decision_takes_effect(self, decisions):
        status = ExpenseStatus.PENDING
        applied = 0
        for target in decisions:
            if can_transition(status, target):
                status = target
                applied += 1

        assert applied == 1
        assert status is decisions[0]
        assert is_terminal(status)
