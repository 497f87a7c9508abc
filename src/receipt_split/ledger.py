"""Assignment ledger: who consumes which line item, and what each share costs."""

import logging
import math
import re

from .exceptions import ValidationError
from .models import DietaryPref, ExtraColumn, LineItem, Participant, Transaction

logger = logging.getLogger(__name__)

# Item-name keywords (German and English) that clash with a preference
PREFERENCE_KEYWORDS: dict[DietaryPref, re.Pattern[str]] = {
    DietaryPref.VEGAN: re.compile(r"käse|cheese|milch|fleisch|wurst|meat|egg"),
    DietaryPref.NO_ALCOHOL: re.compile(r"bier|wine|wein|vodka|whisky|gin"),
    DietaryPref.NO_OLIVES: re.compile(r"olive|oliven"),
    DietaryPref.NO_NUTS: re.compile(r"nuss|nuts|almond|mandel"),
}


# ============================================================================
# Assignments and shares
# ============================================================================


def set_assignment(
    item: LineItem,
    participant_index: int,
    value: bool,
    participants: list[Participant],
) -> None:
    """
    Check or uncheck one assignment cell. Idempotent.

    Raises:
        ValidationError: If ``participant_index`` is not a position in
            ``participants``
    """
    if not 0 <= participant_index < len(participants):
        raise ValidationError(
            f"Participant index {participant_index} out of range "
            f"(group has {len(participants)} participants)"
        )
    item.assigned[participant_index] = bool(value)


def active_assignees(item: LineItem, participants: list[Participant]) -> list[int]:
    """Indices of checked, non-excluded participants, in ascending order."""
    return [
        idx
        for idx in sorted(item.assigned)
        if item.assigned[idx]
        and 0 <= idx < len(participants)
        and not participants[idx].excluded
    ]


def base_value(item: LineItem, rate: float | None = None) -> float | None:
    """
    The item's value in the base currency.

    Prefers ``total_base``; otherwise converts ``total`` with ``rate``, or
    takes ``total`` verbatim when there is no rate. Returns None when the
    item has no usable (finite, non-zero) value.
    """
    if item.total_base is not None:
        value = item.total_base
    elif item.total is not None and rate:
        value = item.total / rate
    elif item.total is not None:
        value = item.total
    else:
        return None

    if not math.isfinite(value) or value == 0:
        return None
    return value


def per_person_share(
    item: LineItem, participants: list[Participant], rate: float | None = None
) -> float:
    """Equal share of the item's base value per active assignee (0.0 if none)."""
    assignees = active_assignees(item, participants)
    value = base_value(item, rate)
    if not assignees or value is None:
        return 0.0
    return value / len(assignees)


def transaction_shares(
    transaction: Transaction, participants: list[Participant]
) -> dict[int, float]:
    """
    Sum each participant's consumption on one transaction.

    Returns:
        Mapping of participant index -> base-currency amount consumed. Only
        active participants with at least one share appear.
    """
    sums: dict[int, float] = {}
    for item in transaction.items:
        value = base_value(item, transaction.exchange_rate)
        if value is None:
            continue
        assignees = active_assignees(item, participants)
        if not assignees:
            continue
        share = value / len(assignees)
        for idx in assignees:
            sums[idx] = sums.get(idx, 0.0) + share
    return sums


def display_total(transaction: Transaction) -> float:
    """Sum of all items in the transaction's display currency."""
    total = 0.0
    for item in transaction.items:
        if item.total_base is not None:
            total += item.total_base * transaction.exchange_rate
        elif item.unit_price is not None:
            total += item.unit_price * item.quantity
    return total


# ============================================================================
# Item editing
# ============================================================================


def _recompute_from_display(item: LineItem, rate: float) -> None:
    """Re-derive ``total`` and ``total_base`` after a display field edit."""
    if item.unit_price is None:
        item.total = None
        item.total_base = None
        return
    item.total = item.unit_price * item.quantity
    item.total_base = item.total / rate


def set_quantity(item: LineItem, quantity: int, rate: float) -> None:
    """Edit an item's quantity; ``total_base`` follows immediately."""
    if quantity < 0:
        raise ValidationError(f"Quantity must be >= 0, got {quantity}")
    item.quantity = quantity
    _recompute_from_display(item, rate)


def set_unit_price(item: LineItem, unit_price: float | None, rate: float) -> None:
    """Edit (or clear, with None) an item's display unit price."""
    if unit_price is not None and not math.isfinite(unit_price):
        unit_price = None
    item.unit_price = unit_price
    _recompute_from_display(item, rate)


def add_item(
    transaction: Transaction,
    name: str = "",
    quantity: int = 1,
    unit_price: float | None = None,
) -> LineItem:
    """Append a new line item with an empty cell for every extra column."""
    item = LineItem(
        name=name,
        quantity=quantity,
        extras={column.id: "" for column in transaction.extra_columns},
    )
    set_unit_price(item, unit_price, transaction.exchange_rate)
    transaction.items.append(item)
    return item


def remove_item(transaction: Transaction, item_index: int) -> LineItem:
    """Delete a line item by position."""
    if not 0 <= item_index < len(transaction.items):
        raise ValidationError(f"No item at position {item_index}")
    item = transaction.items.pop(item_index)
    logger.debug(f"Removed item '{item.name}' from '{transaction.name}'")
    return item


def add_extra_column(transaction: Transaction, name: str) -> ExtraColumn:
    """Add a free-text column and initialise its cell on every item."""
    column = ExtraColumn(name=name)
    transaction.extra_columns.append(column)
    for item in transaction.items:
        item.extras[column.id] = ""
    return column


def remove_extra_column(transaction: Transaction, column_id: str) -> bool:
    """Remove a column and its values. Returns False if no such column."""
    for idx, column in enumerate(transaction.extra_columns):
        if column.id == column_id:
            del transaction.extra_columns[idx]
            for item in transaction.items:
                item.extras.pop(column_id, None)
            return True
    return False


# ============================================================================
# Dietary preferences
# ============================================================================


def preference_conflicts(item: LineItem, participant: Participant) -> list[DietaryPref]:
    """Preferences of ``participant`` that the item's name appears to violate."""
    name = item.name.lower()
    return [
        pref
        for pref in sorted(participant.dietary_prefs, key=lambda p: p.value)
        if PREFERENCE_KEYWORDS[pref].search(name)
    ]


def preference_warnings(
    transaction: Transaction, participants: list[Participant]
) -> dict[tuple[int, int], list[DietaryPref]]:
    """
    Find every (item, active participant) cell whose item clashes with the
    participant's preferences.

    Returns:
        Mapping of (item_index, participant_index) -> violated preferences
    """
    warnings: dict[tuple[int, int], list[DietaryPref]] = {}
    for item_index, item in enumerate(transaction.items):
        for participant_index, participant in enumerate(participants):
            if participant.excluded or not participant.dietary_prefs:
                continue
            conflicts = preference_conflicts(item, participant)
            if conflicts:
                warnings[(item_index, participant_index)] = conflicts
    return warnings
