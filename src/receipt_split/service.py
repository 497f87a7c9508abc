"""Service layer that composes persistence, currency, settlement and sharing.

Every public method loads the documents it needs, mutates them in memory,
and writes them back as a whole in one call, so callers never observe a
half-updated ledger.
"""

import logging
from collections.abc import Mapping
from typing import Any

from .clients.rates import RateClient
from .config import Settings
from .currency import CurrencyNormalizer
from .db import Database
from .exceptions import (
    GroupNotFoundError,
    TransactionNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from .ledger import (
    add_extra_column,
    add_item,
    remove_extra_column,
    remove_item,
    set_assignment,
    set_quantity,
    set_unit_price,
)
from .models import (
    ExtraColumn,
    Group,
    GroupSnapshot,
    LegacyShareReference,
    LineItem,
    PendingDelta,
    PendingDeltaEntry,
    Settlement,
    Transaction,
    TransactionSnapshot,
    UserDocument,
    UserSettings,
)
from .parser import parse_receipt_text
from .settlement import settle_group
from .sharing import (
    apply_entries,
    build_share_url,
    build_snapshot,
    compute_delta,
    compute_group_deltas,
    decode_snapshot,
    encode_snapshot,
    extract_token,
    pending_flags,
)

logger = logging.getLogger(__name__)


class LedgerService:
    """Service for settling groups and handling collaborator proposals."""

    def __init__(self, settings: Settings, database: Database):
        """Initialize the ledger service."""
        self.settings = settings
        self.db = database

    # ========================================================================
    # Documents
    # ========================================================================

    def load_user(self, username: str) -> UserDocument:
        """Load a user's ledger or raise UserNotFoundError."""
        document = self.db.get_user_document(username)
        if document is None:
            raise UserNotFoundError(username)
        return document

    def save_user(self, document: UserDocument):
        """Persist a user's whole ledger."""
        self.db.save_user_document(document)

    def create_user(
        self, username: str, base_currency: str | None = None
    ) -> UserDocument:
        """Create an empty ledger for a new user."""
        document = UserDocument(
            username=username,
            settings=UserSettings(
                base_currency=base_currency or self.settings.base_currency
            ),
        )
        self.save_user(document)
        logger.info(f"Created ledger for {username}")
        return document

    def import_document(self, username: str, raw: dict[str, Any]) -> UserDocument:
        """
        Import a ledger exported by this or an older version of the app.

        Legacy layouts (people as strings, missing currencies, old key names)
        are upgraded during validation.
        """
        document = UserDocument.model_validate({**raw, "username": username})
        self.save_user(document)
        logger.info(
            f"Imported ledger for {username}: {len(document.groups)} groups, "
            f"{sum(len(g.transactions) for g in document.groups.values())} transactions"
        )
        return document

    @staticmethod
    def get_group(document: UserDocument, group_id: str) -> Group:
        """Look up a group or raise GroupNotFoundError."""
        group = document.groups.get(group_id)
        if group is None:
            raise GroupNotFoundError(group_id)
        return group

    @staticmethod
    def get_transaction(group: Group, transaction_id: str) -> Transaction:
        """Look up a transaction or raise TransactionNotFoundError."""
        transaction = group.find_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)
        return transaction

    def _rate_client(self) -> RateClient:
        return RateClient(self.settings.rate_api_url, self.settings.rate_timeout)

    # ========================================================================
    # Settlement and currency
    # ========================================================================

    def compute_settlement(self, username: str, group_id: str) -> Settlement:
        """Compute balances, debt matrix and suggested transfers for a group."""
        document = self.load_user(username)
        group = self.get_group(document, group_id)
        return settle_group(group)

    def change_currency(
        self,
        username: str,
        group_id: str,
        transaction_id: str,
        currency_code: str,
        rescale_existing: bool,
    ) -> Transaction:
        """Switch a transaction's display currency and persist the result."""
        document = self.load_user(username)
        transaction = self.get_transaction(
            self.get_group(document, group_id), transaction_id
        )

        with self._rate_client() as client:
            normalizer = CurrencyNormalizer(client, document.settings.base_currency)
            normalizer.retarget(transaction, currency_code, rescale_existing)

        self.save_user(document)
        return transaction

    def override_rate(
        self,
        username: str,
        group_id: str,
        transaction_id: str,
        rate: object,
        reason: str | None = None,
    ) -> Transaction:
        """Set a manual exchange rate; an invalid rate changes nothing."""
        document = self.load_user(username)
        transaction = self.get_transaction(
            self.get_group(document, group_id), transaction_id
        )

        normalizer = CurrencyNormalizer(None, document.settings.base_currency)
        normalizer.apply_manual_override(transaction, rate, reason)

        self.save_user(document)
        return transaction

    def import_receipt_text(
        self,
        username: str,
        group_id: str,
        name: str,
        text: str,
        payer_index: int | None = None,
        currency_code: str | None = None,
    ) -> Transaction:
        """Create a transaction from receipt text lines (e.g. OCR output)."""
        document = self.load_user(username)
        group = self.get_group(document, group_id)

        code = (currency_code or document.settings.base_currency).upper()
        with self._rate_client() as client:
            normalizer = CurrencyNormalizer(client, document.settings.base_currency)
            rate = normalizer.rate_for(code)

        if payer_index is None and group.participants:
            payer_index = 0

        transaction = Transaction(
            name=name,
            payer_index=payer_index,
            currency_code=code,
            exchange_rate=rate,
            items=parse_receipt_text(text, rate),
        )
        group.transactions.append(transaction)

        self.save_user(document)
        logger.info(
            f"Added '{name}' with {len(transaction.items)} items to group {group_id}"
        )
        return transaction

    # ========================================================================
    # Item editing
    # ========================================================================

    def _load_transaction(
        self, username: str, group_id: str, transaction_id: str
    ) -> tuple[UserDocument, Group, Transaction]:
        document = self.load_user(username)
        group = self.get_group(document, group_id)
        return document, group, self.get_transaction(group, transaction_id)

    @staticmethod
    def _get_item(transaction: Transaction, item_index: int) -> LineItem:
        if not 0 <= item_index < len(transaction.items):
            raise ValidationError(f"No item at position {item_index}")
        return transaction.items[item_index]

    def assign(
        self,
        username: str,
        group_id: str,
        transaction_id: str,
        item_index: int,
        participant_index: int,
        value: bool = True,
    ) -> LineItem:
        """Check or uncheck one assignment cell and persist it."""
        document, group, transaction = self._load_transaction(
            username, group_id, transaction_id
        )
        item = self._get_item(transaction, item_index)
        set_assignment(item, participant_index, value, group.participants)
        self.save_user(document)
        return item

    def add_item(
        self,
        username: str,
        group_id: str,
        transaction_id: str,
        name: str,
        quantity: int = 1,
        unit_price: float | None = None,
    ) -> LineItem:
        """Append a line item priced in the transaction's display currency."""
        document, _, transaction = self._load_transaction(
            username, group_id, transaction_id
        )
        item = add_item(transaction, name, quantity, unit_price)
        self.save_user(document)
        logger.info(f"Added item '{name}' to '{transaction.name}'")
        return item

    def edit_item(
        self,
        username: str,
        group_id: str,
        transaction_id: str,
        item_index: int,
        quantity: int | None = None,
        unit_price: float | None = None,
    ) -> LineItem:
        """Change an item's quantity and/or display unit price."""
        document, _, transaction = self._load_transaction(
            username, group_id, transaction_id
        )
        item = self._get_item(transaction, item_index)
        if quantity is not None:
            set_quantity(item, quantity, transaction.exchange_rate)
        if unit_price is not None:
            set_unit_price(item, unit_price, transaction.exchange_rate)
        self.save_user(document)
        return item

    def remove_item(
        self, username: str, group_id: str, transaction_id: str, item_index: int
    ) -> LineItem:
        """Delete a line item by position."""
        document, _, transaction = self._load_transaction(
            username, group_id, transaction_id
        )
        item = remove_item(transaction, item_index)
        self.save_user(document)
        logger.info(f"Removed item '{item.name}' from '{transaction.name}'")
        return item

    def add_extra_column(
        self, username: str, group_id: str, transaction_id: str, name: str
    ) -> ExtraColumn:
        """Add a free-text column to a transaction."""
        document, _, transaction = self._load_transaction(
            username, group_id, transaction_id
        )
        column = add_extra_column(transaction, name)
        self.save_user(document)
        return column

    def remove_extra_column(
        self, username: str, group_id: str, transaction_id: str, column_id: str
    ) -> bool:
        """Remove a free-text column. Returns False if it did not exist."""
        document, _, transaction = self._load_transaction(
            username, group_id, transaction_id
        )
        removed = remove_extra_column(transaction, column_id)
        if removed:
            self.save_user(document)
        return removed

    # ========================================================================
    # Sharing
    # ========================================================================

    def create_share_token(
        self, username: str, group_id: str, transaction_id: str | None = None
    ) -> str:
        """Snapshot a group (or one transaction) into a share token."""
        document = self.load_user(username)
        group = self.get_group(document, group_id)
        token = encode_snapshot(username, group_id, group, transaction_id)
        logger.info(
            f"Created share token for {username}/{group_id}"
            + (f"/{transaction_id}" if transaction_id else " (whole group)")
        )
        return token

    def create_share_url(
        self, username: str, group_id: str, transaction_id: str | None = None
    ) -> str:
        """Like create_share_token, but as a link on the share page."""
        token = self.create_share_token(username, group_id, transaction_id)
        return build_share_url(self.settings.share_base_url, token)

    def open_share(
        self, link_or_token: str
    ) -> TransactionSnapshot | GroupSnapshot | None:
        """
        Resolve a share link for a collaborator.

        Legacy links carry no data and are resolved against the owner's
        local ledger, which must still exist.

        Returns:
            The snapshot, or None if the link is invalid or cannot be resolved
        """
        decoded = decode_snapshot(extract_token(link_or_token))
        if decoded is None:
            logger.info("Share link could not be decoded")
            return None
        if not isinstance(decoded, LegacyShareReference):
            return decoded
        return self._resolve_legacy_reference(decoded)

    def _resolve_legacy_reference(
        self, reference: LegacyShareReference
    ) -> TransactionSnapshot | GroupSnapshot | None:
        document = self.db.get_user_document(reference.owner)
        if document is None:
            logger.info(f"Owner '{reference.owner}' of legacy link not found")
            return None
        group = document.groups.get(reference.group_id)
        if group is None:
            logger.info(f"Group '{reference.group_id}' of legacy link not found")
            return None
        transaction_id = None if reference.is_group else reference.transaction_id
        try:
            return build_snapshot(
                reference.owner, reference.group_id, group, transaction_id
            )
        except TransactionNotFoundError:
            logger.info(f"Transaction '{transaction_id}' of legacy link not found")
            return None

    # ========================================================================
    # Pending deltas
    # ========================================================================

    def submit_delta(
        self, owner_id: str, transaction_id: str, entries: list[PendingDeltaEntry]
    ) -> PendingDelta | None:
        """
        Stage a collaborator's proposal, replacing any earlier one.

        An empty proposal is not stored and leaves any earlier one in place.
        """
        if not entries:
            logger.info(f"No changes proposed for {owner_id}/{transaction_id}")
            return None
        delta = PendingDelta(
            owner_id=owner_id, transaction_id=transaction_id, entries=entries
        )
        self.db.save_pending_delta(delta)
        logger.info(
            f"Staged {len(entries)} proposed changes for {owner_id}/{transaction_id}"
        )
        return delta

    def submit_collaborator_changes(
        self,
        snapshot: TransactionSnapshot | GroupSnapshot,
        participant_index: int,
        checked: Mapping[str, Mapping[int, bool]],
    ) -> list[PendingDelta]:
        """
        Turn a collaborator's ticks into proposals and stage them.

        Args:
            snapshot: The snapshot the collaborator worked on
            participant_index: The identity they chose
            checked: transaction id -> (item index -> ticked)

        Returns:
            The staged proposals, one per transaction with changes
        """
        if isinstance(snapshot, GroupSnapshot):
            per_transaction = compute_group_deltas(snapshot, participant_index, checked)
        else:
            entries = compute_delta(
                snapshot.transaction,
                participant_index,
                checked.get(snapshot.transaction_id, {}),
            )
            per_transaction = {snapshot.transaction_id: entries} if entries else {}

        staged = []
        for transaction_id, entries in per_transaction.items():
            delta = self.submit_delta(snapshot.owner, transaction_id, entries)
            if delta is not None:
                staged.append(delta)
        return staged

    def get_pending_delta(
        self, owner_id: str, transaction_id: str
    ) -> PendingDelta | None:
        """Get the staged proposal for a transaction, if any."""
        return self.db.get_pending_delta(owner_id, transaction_id)

    def list_pending(self, owner_id: str) -> dict[str, list[PendingDeltaEntry]]:
        """All staged proposals for one owner, keyed by transaction id."""
        return self.db.get_pending_map().get(owner_id, {})

    def pending_changes(
        self, owner_id: str, group_id: str, transaction_id: str
    ) -> set[tuple[int, int]]:
        """Cells (item, participant) the staged proposal would change."""
        delta = self.db.get_pending_delta(owner_id, transaction_id)
        if delta is None:
            return set()
        document = self.load_user(owner_id)
        transaction = self.get_transaction(
            self.get_group(document, group_id), transaction_id
        )
        return pending_flags(transaction, delta.entries)

    def _locate_transaction(
        self, document: UserDocument, group_id: str, transaction_id: str
    ) -> tuple[Group, Transaction] | tuple[None, None]:
        """Find a transaction, preferring the named group over the others."""
        group = self.get_group(document, group_id)
        transaction = group.find_transaction(transaction_id)
        if transaction is not None:
            return group, transaction
        for other_id, other in document.ordered_groups():
            transaction = other.find_transaction(transaction_id)
            if transaction is not None:
                logger.info(
                    f"Transaction {transaction_id} is not in group {group_id}; "
                    f"found it in {other_id}"
                )
                return other, transaction
        return None, None

    def apply_delta(self, owner_id: str, group_id: str, transaction_id: str) -> int:
        """
        Apply a staged proposal to the owner's ledger and clear it.

        The transaction is looked up in ``group_id`` first and then in the
        owner's other groups, so a receipt moved to another group still
        receives its proposal. Entries for items deleted or reordered since
        the snapshot are skipped. If the transaction no longer exists in any
        group, every entry is stale and the proposal is simply cleared.
        Applying when nothing is staged does nothing.

        Returns:
            Number of cells written
        """
        delta = self.db.get_pending_delta(owner_id, transaction_id)
        if delta is None:
            logger.debug(f"Nothing staged for {owner_id}/{transaction_id}")
            return 0

        document = self.load_user(owner_id)
        group, transaction = self._locate_transaction(
            document, group_id, transaction_id
        )
        if transaction is None:
            logger.warning(
                f"Transaction {transaction_id} no longer exists; "
                f"dropping {len(delta.entries)} proposed changes"
            )
            self.db.delete_pending_delta(owner_id, transaction_id)
            return 0

        applied, skipped = apply_entries(
            transaction, delta.entries, len(group.participants)
        )
        self.db.apply_pending_delta(document, owner_id, transaction_id)

        logger.info(
            f"Applied {applied} proposed changes to '{transaction.name}'"
            + (f" ({skipped} stale skipped)" if skipped else "")
        )
        return applied

    def discard_delta(self, owner_id: str, transaction_id: str) -> bool:
        """Drop a staged proposal without touching the ledger."""
        removed = self.db.delete_pending_delta(owner_id, transaction_id)
        if removed:
            logger.info(f"Discarded proposed changes for {owner_id}/{transaction_id}")
        return removed
