"""Custom exceptions for ReceiptSplit."""


class ReceiptSplitError(Exception):
    """Base exception for all ReceiptSplit errors."""

    pass


class ValidationError(ReceiptSplitError):
    """Raised when an engine call is rejected before any state is touched."""

    pass


class InvalidRateError(ValidationError):
    """Raised when a manual exchange rate is not a positive number."""

    def __init__(self, rate: object, message: str | None = None):
        self.rate = rate
        super().__init__(
            message or f"Invalid exchange rate {rate!r}: must be a number > 0"
        )


class NoActiveParticipantsError(ValidationError):
    """Raised when a settlement is requested for a group with nobody active."""

    pass


class NotFoundError(ReceiptSplitError):
    """Base class for lookups of records that do not exist."""

    pass


class UserNotFoundError(NotFoundError):
    """Raised when no ledger document exists for a username."""

    def __init__(self, username: str):
        self.username = username
        super().__init__(f"No ledger found for user '{username}'")


class GroupNotFoundError(NotFoundError):
    """Raised when a group id is not present in a user's ledger."""

    def __init__(self, group_id: str):
        self.group_id = group_id
        super().__init__(f"Group '{group_id}' not found")


class TransactionNotFoundError(NotFoundError):
    """Raised when a transaction id is not present in a group."""

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction '{transaction_id}' not found")


class APIError(ReceiptSplitError):
    """Base class for API-related errors."""

    pass


class RateLookupError(APIError):
    """Raised when the live exchange rate source fails or returns garbage."""

    pass
