"""
Canonical workflow types (``expense_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for workflow state machines, and the expense request
lifecycle built from them.  The repository and the workflow service both
consult ``EXPENSE_REQUEST_WORKFLOW`` so the transition table is defined
once.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* Transitions reference only states in ``Workflow.states``.
* ``initial_state`` is a member of ``states``.
* Terminal states have no outgoing transitions.
"""

from __future__ import annotations

from dataclasses import dataclass

from expense_kernel.domain.values import ExpenseStatus


@dataclass(frozen=True)
class Transition:
    """A valid state transition in a workflow.

    ``records_ledger`` marks transitions that append a LedgerRecord once
    the new status is committed.
    """
    from_state: str
    to_state: str
    action: str
    records_ledger: bool = False


@dataclass(frozen=True)
class Workflow:
    """A state machine definition for a document lifecycle.

    Contract: frozen; ``transitions`` reference only states in ``states``.
    """
    name: str
    description: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.initial_state not in self.states:
            raise ValueError(
                f"Workflow {self.name}: initial state {self.initial_state!r} "
                "is not a declared state"
            )
        for t in self.transitions:
            if t.from_state not in self.states or t.to_state not in self.states:
                raise ValueError(
                    f"Workflow {self.name}: transition {t.action!r} references "
                    "an undeclared state"
                )
            if t.from_state in self.terminal_states:
                raise ValueError(
                    f"Workflow {self.name}: terminal state {t.from_state!r} "
                    "has an outgoing transition"
                )

    def find_transition(self, from_state: str, to_state: str) -> Transition | None:
        for t in self.transitions:
            if t.from_state == from_state and t.to_state == to_state:
                return t
        return None

    def is_terminal(self, state: str) -> bool:
        return state in self.terminal_states


EXPENSE_REQUEST_WORKFLOW = Workflow(
    name="expense_request",
    description="Employee expense reimbursement approval",
    initial_state=ExpenseStatus.PENDING.value,
    states=tuple(s.value for s in ExpenseStatus),
    transitions=(
        Transition(
            ExpenseStatus.PENDING.value,
            ExpenseStatus.APPROVED.value,
            action="approve",
            records_ledger=True,
        ),
        Transition(
            ExpenseStatus.PENDING.value,
            ExpenseStatus.REJECTED.value,
            action="reject",
            records_ledger=True,
        ),
    ),
    terminal_states=(
        ExpenseStatus.APPROVED.value,
        ExpenseStatus.REJECTED.value,
    ),
)


def transition_for(current: ExpenseStatus, target: ExpenseStatus) -> Transition | None:
    return EXPENSE_REQUEST_WORKFLOW.find_transition(current.value, target.value)


def can_transition(current: ExpenseStatus, target: ExpenseStatus) -> bool:
    """True when the expense lifecycle allows ``current -> target``."""
    return transition_for(current, target) is not None


def is_terminal(status: ExpenseStatus) -> bool:
    return EXPENSE_REQUEST_WORKFLOW.is_terminal(status.value)
