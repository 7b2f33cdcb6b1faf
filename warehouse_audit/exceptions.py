"""Domain errors raised by the audit and consistency services."""


class WarehouseAuditError(Exception):
    """Base exception for the audit subsystem."""

    def __init__(self, message: str = 'An error occurred'):
        self.message = message
        super().__init__(self.message)


class ResourceNotFoundError(WarehouseAuditError):
    """Raised when a record referenced by a request no longer exists."""


class StockConflictError(WarehouseAuditError):
    """Raised when a correction cannot be applied to the current stock state."""


class InsufficientStockError(StockConflictError):
    """Raised when a decrement would take a stock level below zero."""


class ConsistencyAnalysisError(WarehouseAuditError):
    """Raised when the ledgers could not be read for analysis."""
