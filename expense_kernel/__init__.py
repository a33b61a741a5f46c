"""
Expense Kernel - reimbursement workflow engine

Turns an employee's expense submission into a durable, auditable record:
- Field validation with a bill-date recency gate
- Pending -> Approved/Rejected lifecycle with terminal states
- Append-only decision ledger (spreadsheet or SQL)
- Independent, time-bounded notifications
"""

__version__ = "0.1.0"
