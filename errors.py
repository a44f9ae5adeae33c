"""Error taxonomy for the budget ledger.

Callers catch by type. ``ValidationError`` and ``NotFoundError`` also derive
from ``ValueError`` so code that only distinguishes "bad input" keeps working.
None of these is ever raised after a partial write: every raise inside a
reconciliation happens before commit, and the surrounding transaction is
rolled back.
"""


class BudgetError(Exception):
    """Base class for every error raised by the ledger core."""


class ValidationError(BudgetError, ValueError):
    """A required field is missing or invalid. No state was changed."""


class NotFoundError(BudgetError, ValueError):
    """The addressed expense, plan, cash book or group does not exist."""

    def __init__(self, entity: str, entity_id: object) -> None:
        super().__init__(f"{entity} not found")
        self.entity = entity
        self.entity_id = entity_id


class ReconciliationConflictError(BudgetError):
    """The transaction aborted because of a concurrent conflicting write.

    Transient: the whole operation may be retried.
    """


class StorageError(BudgetError):
    """The durability layer is unavailable or failed the request."""
