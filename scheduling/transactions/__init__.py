"""
Transaction handlers for the lesson lifecycle.

Transaction handlers encapsulate multi-step operations that must commit
atomically in the database before any external side effect runs:
1. SERIALIZABLE isolation for booking transactions (PostgreSQL)
2. Conflict re-check inside the transaction, under an in-process lock
3. Calendar of record updated after commit; failures never roll back
4. Descriptive error codes (scheduling.errors)

Transaction handlers:
- BookingTransaction: book, cancel, reschedule, complete, apply external changes
"""

from scheduling.transactions.booking_transaction import BookingTransaction

__all__ = ["BookingTransaction"]
