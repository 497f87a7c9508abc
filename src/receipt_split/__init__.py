"""ReceiptSplit - Split shared receipts, settle balances, merge collaborator edits."""

__version__ = "0.1.0"

from .config import Settings, load_settings
from .currency import CurrencyNormalizer, round_currency
from .db import Database
from .models import (
    Group,
    LineItem,
    Participant,
    PendingDelta,
    PendingDeltaEntry,
    Settlement,
    Transaction,
    UserDocument,
)
from .service import LedgerService
from .settlement import compute_settlement, settle, settle_group

__all__ = [
    "Settings",
    "load_settings",
    "CurrencyNormalizer",
    "round_currency",
    "Database",
    "Group",
    "LineItem",
    "Participant",
    "PendingDelta",
    "PendingDeltaEntry",
    "Settlement",
    "Transaction",
    "UserDocument",
    "LedgerService",
    "compute_settlement",
    "settle",
    "settle_group",
]
