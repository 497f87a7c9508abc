"""Parse receipt text lines (e.g. OCR output) into line items."""

import logging
import re

from .models import LineItem

logger = logging.getLogger(__name__)

_NUMBER = r"(\d+(?:\.\d+)?)"

# name qty x unit total   e.g. "Milch 2 x 1.50 3.00"
_QTY_X_UNIT_TOTAL = re.compile(
    rf"^(.+?)\s+{_NUMBER}\s*[x×]\s*{_NUMBER}\s+{_NUMBER}$", re.IGNORECASE
)
# name qty total          e.g. "Milch 2 3.50"
_QTY_TOTAL = re.compile(rf"^(.+?)\s+{_NUMBER}\s+{_NUMBER}")
# name x qty total        e.g. "Milch x 2 3.00"
_X_QTY_TOTAL = re.compile(rf"^(.+?)\s+[x×]\s*{_NUMBER}\s+{_NUMBER}", re.IGNORECASE)
# name price              e.g. "Milch 1.50"
_PRICE_ONLY = re.compile(rf"^(.+?)\s+{_NUMBER}")

# A dot followed by exactly three digits is a thousands separator
_THOUSANDS_DOT = re.compile(r"\.(?=\d{3}(\D|$))")
_TRAILING_X = re.compile(r"\s+[x×]$", re.IGNORECASE)


def normalize_line(line: str) -> str:
    """Strip currency signs and thousands separators; use '.' as decimal point."""
    normalized = line.replace("€", "")
    normalized = _THOUSANDS_DOT.sub("", normalized)
    normalized = normalized.replace(",", ".")
    return re.sub(r"\s+", " ", normalized).strip()


def _make_item(name: str, quantity: float, total: float, rate: float) -> LineItem:
    # Weighed goods ("0.5 x 2.00") cannot be split into whole units
    if quantity != int(quantity):
        quantity = 1
    quantity = int(quantity)
    # "Milch x 2 3.00" is matched as name "Milch x", quantity 2
    name = _TRAILING_X.sub("", name.strip())
    return LineItem(
        name=name,
        quantity=quantity,
        unit_price=total / quantity,
        total=total,
        total_base=total / rate,
    )


def parse_line(line: str, rate: float = 1.0) -> LineItem | None:
    """
    Parse one receipt line.

    Args:
        line: Raw text of the line
        rate: Exchange rate of the receipt's currency, used to fill ``total_base``

    Returns:
        The parsed item, or None if the line has no recognisable price
    """
    normalized = normalize_line(line)

    m = _QTY_X_UNIT_TOTAL.match(normalized)
    if m and float(m.group(2)) > 0:
        return _make_item(m.group(1), float(m.group(2)), float(m.group(4)), rate)

    m = _QTY_TOTAL.match(normalized)
    if m and float(m.group(2)) > 0:
        return _make_item(m.group(1), float(m.group(2)), float(m.group(3)), rate)

    m = _X_QTY_TOTAL.match(normalized)
    if m and float(m.group(2)) > 0:
        return _make_item(m.group(1), float(m.group(2)), float(m.group(3)), rate)

    m = _PRICE_ONLY.match(normalized)
    if m:
        return _make_item(m.group(1), 1, float(m.group(2)), rate)

    return None


def parse_receipt_text(text: str, rate: float = 1.0) -> list[LineItem]:
    """Parse every recognisable line of a receipt text."""
    items = []
    for line in text.splitlines():
        if not line.strip():
            continue
        item = parse_line(line, rate)
        if item is None:
            logger.debug(f"Ignoring unparseable line: {line!r}")
            continue
        items.append(item)
    logger.info(f"Parsed {len(items)} items from receipt text")
    return items
