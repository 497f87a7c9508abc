"""Share-link snapshots and the collaborator proposal (pending delta) protocol.

A share token is a base64-encoded, self-contained copy of one transaction or
a whole group. A collaborator without an account opens it, picks who they
are, ticks the items they consumed, and submits only the cells that differ
from the snapshot. The owner later applies or discards that proposal.
"""

import base64
import json
import logging
from collections.abc import Mapping
from urllib.parse import parse_qs, quote, urlparse

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .exceptions import TransactionNotFoundError
from .models import (
    SNAPSHOT_VERSION,
    Group,
    GroupSnapshot,
    LegacyShareReference,
    PendingDeltaEntry,
    Snapshot,
    SnapshotItem,
    SnapshotPerson,
    SnapshotTransaction,
    Transaction,
    TransactionSnapshot,
    prefs_to_mapping,
)

logger = logging.getLogger(__name__)

_SNAPSHOT_ADAPTER: TypeAdapter[TransactionSnapshot | GroupSnapshot] = TypeAdapter(
    Snapshot
)

DecodedShare = TransactionSnapshot | GroupSnapshot | LegacyShareReference


# ============================================================================
# Token codec
# ============================================================================


def _to_token(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def _from_token(token: str) -> str:
    """Decode URL-safe or standard base64, with or without padding."""
    token = token.strip().replace("-", "+").replace("_", "/")
    token += "=" * (-len(token) % 4)
    return base64.b64decode(token, validate=True).decode("utf-8")


def _snapshot_transaction(transaction: Transaction) -> SnapshotTransaction:
    return SnapshotTransaction(
        id=transaction.id,
        name=transaction.name,
        payer_index=transaction.payer_index,
        currency_code=transaction.currency_code,
        exchange_rate=transaction.exchange_rate,
        rate_timestamp=transaction.rate_timestamp,
        extra_columns=[column.model_copy() for column in transaction.extra_columns],
        items=[
            SnapshotItem(
                name=item.name,
                quantity=item.quantity,
                unit_price=item.unit_price,
                total=item.total,
                extras=dict(item.extras),
                assigned=dict(item.assigned),
            )
            for item in transaction.items
        ],
    )


def build_snapshot(
    owner: str,
    group_id: str,
    group: Group,
    transaction_id: str | None = None,
) -> TransactionSnapshot | GroupSnapshot:
    """
    Copy a group (or one of its transactions) into a share snapshot.

    Raises:
        TransactionNotFoundError: If ``transaction_id`` is not in the group
    """
    people = [
        SnapshotPerson(name=p.name, prefs=prefs_to_mapping(p.dietary_prefs))
        for p in group.participants
    ]

    if transaction_id is None:
        return GroupSnapshot(
            version=SNAPSHOT_VERSION,
            owner=owner,
            group_id=group_id,
            group_name=group.name,
            people=people,
            transactions=[_snapshot_transaction(t) for t in group.transactions],
        )

    transaction = group.find_transaction(transaction_id)
    if transaction is None:
        raise TransactionNotFoundError(transaction_id)

    return TransactionSnapshot(
        version=SNAPSHOT_VERSION,
        owner=owner,
        group_id=group_id,
        transaction_id=transaction_id,
        transaction=_snapshot_transaction(transaction),
        people=people,
    )


def encode_snapshot(
    owner: str,
    group_id: str,
    group: Group,
    transaction_id: str | None = None,
) -> str:
    """
    Encode a point-in-time copy of a group or transaction as a share token.

    Args:
        owner: Username of the ledger owner
        group_id: Id of the group in the owner's ledger
        group: The group itself
        transaction_id: Share only this transaction; None shares the group

    Returns:
        URL-safe token
    """
    snapshot = build_snapshot(owner, group_id, group, transaction_id)
    return _to_token(snapshot.model_dump_json(by_alias=True))


def encode_legacy_reference(owner: str, group_id: str, transaction_id: str) -> str:
    """Encode an old-style reference token with no embedded data."""
    return _to_token(f"{owner}|{group_id}|{transaction_id}")


def decode_snapshot(token: str) -> DecodedShare | None:
    """
    Decode a share token. Never raises.

    Structured tokens are validated through the ``type`` discriminant;
    anything that is not JSON is tried as a legacy
    ``owner|groupId|transactionId`` reference.

    Returns:
        A snapshot, a legacy reference, or None for malformed input
    """
    try:
        text = _from_token(token).strip()
    except (ValueError, AttributeError) as e:
        logger.debug(f"Share token is not valid base64: {e}")
        return None

    try:
        payload = json.loads(text)
    except (ValueError, RecursionError):
        payload = None

    if payload is not None:
        try:
            snapshot = _SNAPSHOT_ADAPTER.validate_python(payload)
        except PydanticValidationError as e:
            logger.debug(f"Share token has an unrecognised structure: {e}")
            return None
        if snapshot.version > SNAPSHOT_VERSION:
            logger.debug(
                f"Share token version {snapshot.version} is newer than supported"
            )
            return None
        return snapshot

    parts = text.split("|")
    if len(parts) == 3 and all(parts):
        owner, group_id, transaction_id = parts
        return LegacyShareReference(
            owner=owner, group_id=group_id, transaction_id=transaction_id
        )
    return None


def build_share_url(base_url: str, token: str) -> str:
    """Append a token to the share page URL as ``?share=<token>``."""
    base = base_url.split("?")[0]
    return f"{base}?share={quote(token, safe='')}"


def extract_token(link_or_token: str) -> str:
    """Pull the token out of a share URL; plain tokens are returned unchanged."""
    parsed = urlparse(link_or_token.strip())
    values = parse_qs(parsed.query).get("share")
    if values:
        return values[0]
    return link_or_token.strip()


# ============================================================================
# Proposals
# ============================================================================


def compute_delta(
    transaction: SnapshotTransaction,
    participant_index: int,
    checked: Mapping[int, bool],
) -> list[PendingDeltaEntry]:
    """
    Compare a collaborator's ticks against the snapshot for one identity.

    Args:
        transaction: The transaction as it was in the snapshot
        participant_index: The identity the collaborator chose
        checked: item index -> ticked; items not present count as unchanged

    Returns:
        One entry per item whose value differs from the snapshot
    """
    entries = []
    for item_index, item in enumerate(transaction.items):
        original = item.is_assigned(participant_index)
        current = bool(checked.get(item_index, original))
        if current != original:
            entries.append(
                PendingDeltaEntry(
                    item_index=item_index,
                    participant_index=participant_index,
                    assigned_value=current,
                    item_name=item.name,
                )
            )
    return entries


def compute_group_deltas(
    snapshot: GroupSnapshot,
    participant_index: int,
    checked: Mapping[str, Mapping[int, bool]],
) -> dict[str, list[PendingDeltaEntry]]:
    """
    Compute proposals for every transaction of a group snapshot.

    Returns:
        transaction id -> entries, only for transactions with changes
    """
    deltas: dict[str, list[PendingDeltaEntry]] = {}
    for transaction in snapshot.transactions:
        entries = compute_delta(
            transaction, participant_index, checked.get(transaction.id, {})
        )
        if entries:
            deltas[transaction.id] = entries
    return deltas


def _targets_live_item(transaction: Transaction, entry: PendingDeltaEntry) -> bool:
    """Whether the entry's item still sits at the position it was proposed for."""
    if entry.item_index >= len(transaction.items):
        return False
    # Entries without a name predate item tracking and are positional only
    if entry.item_name is None:
        return True
    return transaction.items[entry.item_index].name == entry.item_name


def pending_flags(
    transaction: Transaction, entries: list[PendingDeltaEntry]
) -> set[tuple[int, int]]:
    """
    Cells a proposal would actually change in the live transaction.

    Returns:
        Set of (item_index, participant_index)
    """
    flags = set()
    for entry in entries:
        if not _targets_live_item(transaction, entry):
            continue
        item = transaction.items[entry.item_index]
        if item.is_assigned(entry.participant_index) != entry.assigned_value:
            flags.add((entry.item_index, entry.participant_index))
    return flags


def apply_entries(
    transaction: Transaction,
    entries: list[PendingDeltaEntry],
    participant_count: int,
) -> tuple[int, int]:
    """
    Write proposal entries into a live transaction.

    Entries pointing at items or participants that no longer exist are
    skipped, as are entries whose item was deleted or reordered since the
    snapshot so that a different item now sits at that position.

    Returns:
        Tuple of (applied, skipped)
    """
    applied = skipped = 0
    for entry in entries:
        if (
            not _targets_live_item(transaction, entry)
            or entry.participant_index >= participant_count
        ):
            logger.warning(
                f"Skipping stale proposal for item {entry.item_index}, "
                f"participant {entry.participant_index} on '{transaction.name}'"
            )
            skipped += 1
            continue
        item = transaction.items[entry.item_index]
        item.assigned[entry.participant_index] = entry.assigned_value
        applied += 1
    return applied, skipped
