class QRGateError(Exception):
    """Base class for errors raised by the access-control core."""


class InputError(QRGateError, ValueError):
    """400-level input problem. `details` maps field names to messages."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class MalformedPayload(InputError):
    """QR data is not base64, not JSON, or lacks a required field."""


class SchemaViolation(InputError):
    """Fields are present but have the wrong type or range."""


class InvalidQuery(InputError):
    """Bad filter or pagination values for the access log."""


class NotFound(QRGateError):
    pass


class DuplicateId(QRGateError):
    def __init__(self, transaction_id: str):
        super().__init__(f"transaction {transaction_id} already exists")
        self.transaction_id = transaction_id


class AlreadyUsed(QRGateError):
    """Lost the first-scan-wins race, or the QR was redeemed earlier."""

    def __init__(self, transaction):
        super().__init__(f"transaction {transaction.id} already used")
        self.transaction = transaction


class TransactionInvalidated(QRGateError):
    def __init__(self, transaction):
        super().__init__(f"transaction {transaction.id} is invalidated")
        self.transaction = transaction


class StorageUnavailable(QRGateError):
    pass


class ReturnError(QRGateError):
    """Raised for return operation errors."""

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.status = status
