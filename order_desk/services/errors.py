"""
Order Desk error taxonomy

Every failure that can reach a user derives from OrderDeskError and carries a
message suitable for display. Schema-drift errors (MissingRelationError,
MissingColumnError) are raised by the store and recovered by the schema
resolver; they should never reach the HTTP layer.
"""
from typing import Optional


class OrderDeskError(Exception):
    """Base class for user-facing errors"""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class StoreError(OrderDeskError):
    """Remote store failure, with a Postgres-style error code when known"""

    status_code = 502

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class MissingRelationError(StoreError):
    """relation does not exist"""

    def __init__(self, table: str):
        super().__init__(f'relation "{table}" does not exist', code="42P01")
        self.table = table


class MissingColumnError(StoreError):
    """column does not exist"""

    def __init__(self, table: str, column: str):
        super().__init__(f'column "{column}" of relation "{table}" does not exist', code="42703")
        self.table = table
        self.column = column


class NoCandidateTableError(OrderDeskError):
    """None of the candidate tables accepted the operation"""

    status_code = 502

    def __init__(self, kind: str, candidates, last_error: Optional[Exception] = None):
        tried = ", ".join(candidates)
        message = f"No {kind} table accepted the operation (tried: {tried})"
        if last_error is not None:
            message += f": {last_error}"
        super().__init__(message)
        self.kind = kind
        self.candidates = list(candidates)
        self.last_error = last_error


class WriteFailedError(OrderDeskError):
    """A single-row mutation failed; local state was kept as edited"""

    status_code = 502

    def __init__(self, operation: str, cause: Optional[Exception] = None):
        message = f"Could not save {operation}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)
        self.operation = operation
        self.cause = cause


class BulkOperationError(OrderDeskError):
    """A chunked bulk operation stopped early; applied chunks stay applied"""

    status_code = 502

    def __init__(self, operation: str, applied: int, total: int, cause: Optional[Exception] = None):
        message = f"{operation} failed after {applied} of {total} rows"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)
        self.operation = operation
        self.applied = applied
        self.total = total
        self.cause = cause


class WorkbookFormatError(OrderDeskError):
    """Unreadable workbook or no usable rows"""

    EXPECTED_SHAPE = "Expected columns: Group | Product | Qty | Price"

    def __init__(self, detail: str):
        super().__init__(f"{detail}. {self.EXPECTED_SHAPE}")
        self.detail = detail


class BackupFormatError(OrderDeskError):
    """Invalid JSON backup file"""


class MissingScopeError(OrderDeskError):
    """No tenant/branch could be resolved for this provider"""

    def __init__(self, provider_id: str):
        super().__init__(
            f"Provider {provider_id} has no tenant/branch scope; items cannot be modified"
        )
        self.provider_id = provider_id


class OrderNotLoadedError(OrderDeskError):
    """An item operation ran before the order was resolved"""

    status_code = 409

    def __init__(self):
        super().__init__("Order is not loaded yet")


class NotFoundError(OrderDeskError):
    """Unknown item or snapshot id"""

    status_code = 404
