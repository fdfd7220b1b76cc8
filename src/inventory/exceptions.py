from django.core.exceptions import PermissionDenied


class StockError(Exception):
    """Base class for stock ledger failures surfaced to callers."""

    status_code = 400


class InvalidInput(StockError, ValueError):
    status_code = 400

    def __init__(self, message, errors=None):
        self.errors = errors or {}
        super().__init__(message)


class NotFound(StockError):
    status_code = 404


class Forbidden(StockError, PermissionDenied):
    status_code = 403


class DuplicateStockError(StockError):
    status_code = 409

    def __init__(self, product_id, branch_id):
        self.product_id = product_id
        self.branch_id = branch_id
        super().__init__(f"Stock already exists for product {product_id} in branch {branch_id}.")


class ReferenceCollision(StockError):
    """A generated reference number already exists; the write can be retried."""

    status_code = 409

    def __init__(self, reference_number):
        self.reference_number = reference_number
        super().__init__(f"Reference number {reference_number} is already in use.")


class StorageError(StockError):
    status_code = 503
