"""Pydantic domain models for ReceiptSplit."""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

DEFAULT_BASE_CURRENCY = "EUR"
SNAPSHOT_VERSION = 2
GROUP_SHARE_MARKER = "folder"  # transaction id used by legacy links for a whole group


def new_id() -> str:
    """Generate a stable identifier for a transaction or extra column."""
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(UTC)


class CamelModel(BaseModel):
    """Base for persisted and wire records.

    Serialized with camelCase keys. Records written by older versions of the
    app used different key names; ``legacy_keys`` maps those to the current
    ones before validation so old documents and share links still load.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    legacy_keys: ClassVar[dict[str, str]] = {}

    @model_validator(mode="before")
    @classmethod
    def _upgrade_legacy_record(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = cls.upgrade_legacy(dict(data))
        return data

    @classmethod
    def upgrade_legacy(cls, data: dict[str, Any]) -> dict[str, Any]:
        """Rename legacy keys in a raw record. Subclasses may extend this."""
        for old, new in cls.legacy_keys.items():
            if old in data and new not in data:
                data[new] = data.pop(old)
        return data

    def to_document(self) -> dict[str, Any]:
        """Dump to a JSON-compatible dict using the camelCase wire names."""
        return self.model_dump(mode="json", by_alias=True)


# ============================================================================
# Participants
# ============================================================================


class DietaryPref(str, Enum):
    """Dietary preference flags a participant can hold."""

    VEGAN = "vegan"
    NO_ALCOHOL = "noAlcohol"
    NO_OLIVES = "noOlives"
    NO_NUTS = "noNuts"


def prefs_to_mapping(prefs: set[DietaryPref]) -> dict[str, bool]:
    """Expand a preference set to the ``{flag: bool}`` form used in share links."""
    return {pref.value: pref in prefs for pref in DietaryPref}


def prefs_from_mapping(mapping: dict[str, Any]) -> set[DietaryPref]:
    """Collapse a ``{flag: bool}`` mapping, ignoring unknown flags."""
    known = {pref.value: pref for pref in DietaryPref}
    return {known[key] for key, value in mapping.items() if value and key in known}


class Participant(CamelModel):
    """A person in a group.

    The participant's index is its position in ``Group.participants``.
    Excluded participants keep their assignments but are skipped when
    splitting and settling.
    """

    legacy_keys: ClassVar[dict[str, str]] = {"prefs": "dietaryPrefs"}

    name: str
    excluded: bool = False
    dietary_prefs: set[DietaryPref] = Field(default_factory=set)

    @model_validator(mode="before")
    @classmethod
    def _from_bare_name(cls, data: Any) -> Any:
        # Very old documents stored people as plain strings
        if isinstance(data, str):
            return {"name": data}
        return data

    @field_validator("dietary_prefs", mode="before")
    @classmethod
    def _prefs_from_mapping(cls, value: Any) -> Any:
        if value is None:
            return set()
        if isinstance(value, dict):
            return prefs_from_mapping(value)
        return value

    @field_serializer("dietary_prefs")
    def _serialize_prefs(self, prefs: set[DietaryPref]) -> list[str]:
        return sorted(pref.value for pref in prefs)


# ============================================================================
# Transactions and line items
# ============================================================================


class ExtraColumn(CamelModel):
    """A user-defined free-text column on a transaction."""

    id: str = Field(default_factory=new_id)
    name: str


class ItemFields(CamelModel):
    """Fields shared by live line items and their share-link copies."""

    legacy_keys: ClassVar[dict[str, str]] = {"qty": "quantity"}

    name: str = ""
    quantity: int = Field(default=1, ge=0)
    unit_price: float | None = None  # display currency
    total: float | None = None  # display currency
    extras: dict[str, str] = Field(default_factory=dict)
    assigned: dict[int, bool] = Field(default_factory=dict)

    @field_validator("quantity", mode="before")
    @classmethod
    def _whole_quantity(cls, value: Any) -> Any:
        if value is None:
            return 0
        if isinstance(value, float):
            return int(round(value))
        return value

    @field_validator("assigned", mode="before")
    @classmethod
    def _normalize_assigned(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, list):
            return {
                idx: bool(flag) for idx, flag in enumerate(value) if flag is not None
            }
        return value

    @field_validator("extras", mode="before")
    @classmethod
    def _normalize_extras(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(k): "" if v is None else str(v) for k, v in value.items()}
        return value

    @model_validator(mode="after")
    def _derive_unit_price(self):
        # Older records only carried the line total
        if self.unit_price is None and self.total is not None and self.quantity:
            self.unit_price = self.total / self.quantity
        return self

    def is_assigned(self, participant_index: int) -> bool:
        """Whether the assignment cell for ``participant_index`` is checked."""
        return bool(self.assigned.get(participant_index, False))


class LineItem(ItemFields):
    """A line on a transaction.

    ``total_base`` (base currency) is the authoritative value; ``unit_price``
    and ``total`` are display-currency values derived from it.
    """

    total_base: float | None = None


class TransactionHeader(CamelModel):
    """Fields shared by live transactions and their share-link copies."""

    legacy_keys: ClassVar[dict[str, str]] = {
        "payer": "payerIndex",
        "currency": "currencyCode",
        "rate": "exchangeRate",
        "rateDate": "rateTimestamp",
    }

    id: str = Field(default_factory=new_id)
    name: str = ""
    payer_index: int | None = None
    currency_code: str = DEFAULT_BASE_CURRENCY
    exchange_rate: float = Field(default=1.0, gt=0)  # display units per base unit
    rate_timestamp: datetime = Field(default_factory=_now)
    extra_columns: list[ExtraColumn] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _ensure_id(cls, value: Any) -> Any:
        if not value:
            return new_id()
        return str(value)

    @field_validator("payer_index", mode="before")
    @classmethod
    def _no_payer(cls, value: Any) -> Any:
        # -1 was used to mean "nobody paid"
        if isinstance(value, int | float) and value < 0:
            return None
        return value

    @field_validator("exchange_rate", mode="before")
    @classmethod
    def _default_rate(cls, value: Any) -> Any:
        if not value:
            return 1.0
        return value

    @field_validator("currency_code", mode="after")
    @classmethod
    def _upper_code(cls, value: str) -> str:
        return value.upper()


class Transaction(TransactionHeader):
    """A shared purchase (one receipt) with its line items."""

    rate_is_manual_override: bool = False
    manual_override_reason: str | None = None
    hidden: bool = False
    items: list[LineItem] = Field(default_factory=list)

    @classmethod
    def upgrade_legacy(cls, data: dict[str, Any]) -> dict[str, Any]:
        if "manualReason" in data:
            data.setdefault("rateIsManualOverride", True)
            data.setdefault("manualOverrideReason", data.pop("manualReason") or None)
        return super().upgrade_legacy(data)


# ============================================================================
# Groups and user documents
# ============================================================================


class Group(CamelModel):
    """A folder of participants and transactions (a trip, a flat, a project)."""

    legacy_keys: ClassVar[dict[str, str]] = {
        "people": "participants",
        "receipts": "transactions",
        "sharedWith": "sharedWithUserIds",
    }

    name: str = ""
    participants: list[Participant] = Field(default_factory=list)
    transactions: list[Transaction] = Field(default_factory=list)
    shared_with_user_ids: list[str] = Field(default_factory=list)
    order: int = 0

    def active_indices(self) -> list[int]:
        """Original indices of all non-excluded participants, in order."""
        return [idx for idx, p in enumerate(self.participants) if not p.excluded]

    def find_transaction(self, transaction_id: str) -> Transaction | None:
        """Look up a transaction by id."""
        for transaction in self.transactions:
            if transaction.id == transaction_id:
                return transaction
        return None


class UserSettings(CamelModel):
    """Per-user preferences that affect the engine."""

    base_currency: str = DEFAULT_BASE_CURRENCY

    @field_validator("base_currency", mode="before")
    @classmethod
    def _default_currency(cls, value: Any) -> Any:
        return str(value).upper() if value else DEFAULT_BASE_CURRENCY


class UserDocument(CamelModel):
    """The whole persisted ledger of one user, keyed by username."""

    legacy_keys: ClassVar[dict[str, str]] = {"folders": "groups"}

    username: str
    settings: UserSettings = Field(default_factory=UserSettings)
    groups: dict[str, Group] = Field(default_factory=dict)

    @classmethod
    def upgrade_legacy(cls, data: dict[str, Any]) -> dict[str, Any]:
        data = super().upgrade_legacy(data)
        settings = data.get("settings")
        if isinstance(settings, UserSettings):
            base = settings.base_currency
        elif isinstance(settings, dict):
            base = (
                settings.get("baseCurrency")
                or settings.get("base_currency")
                or DEFAULT_BASE_CURRENCY
            )
        else:
            base = DEFAULT_BASE_CURRENCY
        groups = data.get("groups")
        if isinstance(groups, dict):
            data["groups"] = {
                group_id: _default_group_currency(group, base)
                for group_id, group in groups.items()
            }
        return data

    def ordered_groups(self) -> list[tuple[str, Group]]:
        """Groups sorted by their ``order`` field."""
        return sorted(self.groups.items(), key=lambda pair: pair[1].order)


def _default_group_currency(group: Any, base_currency: str) -> Any:
    """Give transactions without a currency the user's base currency."""
    if not isinstance(group, dict):
        return group
    group = dict(group)
    for key in ("transactions", "receipts"):
        transactions = group.get(key)
        if not isinstance(transactions, list):
            continue
        upgraded = []
        for transaction in transactions:
            if isinstance(transaction, dict) and not any(
                transaction.get(field)
                for field in ("currency", "currencyCode", "currency_code")
            ):
                transaction = {**transaction, "currencyCode": base_currency}
            upgraded.append(transaction)
        group[key] = upgraded
    return group


# ============================================================================
# Pending deltas (collaborator proposals)
# ============================================================================


class PendingDeltaEntry(CamelModel):
    """One proposed assignment cell value."""

    legacy_keys: ClassVar[dict[str, str]] = {
        "personIndex": "participantIndex",
        "assigned": "assignedValue",
    }

    item_index: int = Field(ge=0)
    participant_index: int = Field(ge=0)
    assigned_value: bool
    item_name: str | None = None  # name in the snapshot, to detect moved items


class PendingDelta(CamelModel):
    """A staged set of proposals for one transaction of one owner."""

    owner_id: str
    transaction_id: str
    entries: list[PendingDeltaEntry]
    created_at: datetime = Field(default_factory=_now)


# ============================================================================
# Share-link snapshots
# ============================================================================


class SnapshotPerson(CamelModel):
    """A participant as seen by a collaborator: name and preferences only."""

    name: str
    prefs: dict[str, bool] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _from_bare_name(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"name": data}
        return data

    @field_validator("prefs", mode="before")
    @classmethod
    def _prefs_or_empty(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, list | set | tuple):
            return prefs_to_mapping(prefs_from_mapping({v: True for v in value}))
        return value


class SnapshotItem(ItemFields):
    """A line item inside a share link (no base-currency value)."""

    pass


class SnapshotTransaction(TransactionHeader):
    """A transaction inside a share link."""

    items: list[SnapshotItem] = Field(default_factory=list)


class SnapshotEnvelope(CamelModel):
    """Common header of all structured share tokens.

    Tokens created before the envelope was versioned carry no ``version``
    and are read as version 1.
    """

    legacy_keys: ClassVar[dict[str, str]] = {
        "folderId": "groupId",
        "receiptId": "transactionId",
        "folderName": "groupName",
        "receipt": "transaction",
        "receipts": "transactions",
    }

    version: int = 1
    owner: str
    group_id: str
    people: list[SnapshotPerson] = Field(default_factory=list)


class TransactionSnapshot(SnapshotEnvelope):
    """Share token payload for a single transaction."""

    type: Literal["receipt"] = "receipt"
    transaction_id: str
    transaction: SnapshotTransaction

    def snapshot_transactions(self) -> list[SnapshotTransaction]:
        return [self.transaction]


class GroupSnapshot(SnapshotEnvelope):
    """Share token payload for every transaction of a group."""

    type: Literal["folder"] = "folder"
    group_name: str = ""
    transactions: list[SnapshotTransaction] = Field(default_factory=list)

    def snapshot_transactions(self) -> list[SnapshotTransaction]:
        return list(self.transactions)


Snapshot = Annotated[TransactionSnapshot | GroupSnapshot, Field(discriminator="type")]


class LegacyShareReference(BaseModel):
    """An old-style ``owner|groupId|transactionId`` link with no embedded data."""

    owner: str
    group_id: str
    transaction_id: str

    @property
    def is_group(self) -> bool:
        return self.transaction_id == GROUP_SHARE_MARKER


# ============================================================================
# Derived results (never persisted)
# ============================================================================


class DebtEdge(BaseModel):
    """A suggested transfer between two active participants (active indices)."""

    from_participant: int
    to_participant: int
    amount: float = Field(gt=0)


class Settlement(BaseModel):
    """Result of aggregating every transaction of a group.

    All per-person lists are in the dense active-index space;
    ``participant_indices[i]`` maps active index ``i`` back to the
    participant's position in the group.
    """

    participant_indices: list[int]
    names: list[str]
    net_balance: list[float]
    consumption: list[float]
    debt_matrix: list[list[float]]
    transfers: list[DebtEdge] = Field(default_factory=list)
