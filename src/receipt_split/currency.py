"""Currency normalization between display currencies and the base currency.

Every line item keeps its authoritative value in the base currency
(``total_base``). A transaction's ``exchange_rate`` says how many units of
its display currency one base unit is worth, so display values are always
``total_base * exchange_rate``.
"""

import logging
import math
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal

from .clients.rates import RateClient
from .exceptions import InvalidRateError, RateLookupError
from .models import DEFAULT_BASE_CURRENCY, LineItem, Transaction

logger = logging.getLogger(__name__)

# Fallback rates per 1 EUR, used whenever the live source is unavailable
DEFAULT_RATES: dict[str, float] = {
    "EUR": 1.0,
    "USD": 1.1,
    "GBP": 0.85,
    "CHF": 0.95,
    "SEK": 11.0,
    "JPY": 165.0,
    "ALL": 110.0,
}

CURRENCY_SYMBOLS: dict[str, str] = {
    "EUR": "€",
    "USD": "$",
    "GBP": "£",
    "CHF": "CHF",
    "SEK": "SEK",
    "JPY": "¥",
    "ALL": "Lek",
}


def currency_symbol(code: str) -> str:
    """Display symbol for a currency code, or the code itself."""
    return CURRENCY_SYMBOLS.get(code.upper(), code.upper())


def round_currency(amount: float) -> float:
    """
    Round an amount to cents for presentation.

    Uses ROUND_HALF_UP so 0.125 becomes 0.13 rather than banker's 0.12.
    """
    return float(Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def fallback_rate(code: str, base: str = DEFAULT_BASE_CURRENCY) -> float:
    """
    Look up ``code`` per 1 ``base`` in the built-in table.

    Unknown currencies resolve to 1.0.
    """
    code, base = code.upper(), base.upper()
    if code == base:
        return 1.0
    code_rate = DEFAULT_RATES.get(code)
    base_rate = DEFAULT_RATES.get(base)
    if code_rate is None or base_rate is None:
        return 1.0
    return code_rate / base_rate


def validate_rate(rate: object) -> float:
    """
    Coerce a user-entered exchange rate to a positive float.

    Raises:
        InvalidRateError: If the rate is non-numeric, not finite, or <= 0
    """
    if isinstance(rate, bool):
        raise InvalidRateError(rate)
    try:
        value = float(rate)  # type: ignore[arg-type]
    except (TypeError, ValueError) as e:
        raise InvalidRateError(rate) from e
    if not math.isfinite(value) or value <= 0:
        raise InvalidRateError(rate)
    return value


# ============================================================================
# Item display derivation
# ============================================================================


def ensure_base_value(item: LineItem, rate: float) -> None:
    """Derive ``total_base`` from the display fields at ``rate`` if it is missing."""
    if item.total_base is not None:
        return
    if item.unit_price is not None:
        item.total_base = item.unit_price * item.quantity / rate
    elif item.total is not None:
        item.total_base = item.total / rate


def refresh_display_values(item: LineItem, rate: float) -> None:
    """Recompute ``unit_price`` and ``total`` from ``total_base`` at ``rate``."""
    if item.total_base is None:
        return
    if item.quantity:
        item.unit_price = item.total_base * rate / item.quantity
        item.total = item.unit_price * item.quantity
    else:
        item.total = item.total_base * rate


def rescale_items(transaction: Transaction, old_rate: float, new_rate: float) -> None:
    """Re-derive every item's display values for a new rate.

    Items that only carry display values get their base value from
    ``old_rate`` first so nothing is lost.
    """
    for item in transaction.items:
        ensure_base_value(item, old_rate)
        refresh_display_values(item, new_rate)


class CurrencyNormalizer:
    """Converts between transaction display currencies and a base currency."""

    def __init__(
        self,
        rate_client: RateClient | None = None,
        base_currency: str = DEFAULT_BASE_CURRENCY,
    ):
        """
        Initialize the normalizer.

        Args:
            rate_client: Live rate source; when None only the built-in table is used
            base_currency: Code every ``total_base`` is expressed in
        """
        self.rate_client = rate_client
        self.base_currency = base_currency.upper()

    def rate_for(self, code: str) -> float:
        """
        Get the exchange rate for ``code`` relative to the base currency.

        Tries the live source first and falls back to the built-in table on
        any failure. Never raises.
        """
        code = code.upper()
        if code == self.base_currency:
            return 1.0

        if self.rate_client is not None:
            try:
                return self.rate_client.get_rate(self.base_currency, code)
            except RateLookupError as e:
                logger.warning(f"Using fallback rate for {code}: {e}")

        return fallback_rate(code, self.base_currency)

    def current_rate(self, transaction: Transaction) -> float:
        """The transaction's stored rate, or the table rate if it has none."""
        return transaction.exchange_rate or fallback_rate(
            transaction.currency_code, self.base_currency
        )

    def retarget(
        self, transaction: Transaction, new_code: str, rescale_existing: bool
    ) -> Transaction:
        """
        Switch a transaction to a new display currency.

        Args:
            transaction: The transaction to modify in place
            new_code: 3-letter code of the new display currency
            rescale_existing: If True, re-derive every item's display values
                from its base value at the new rate. If False, existing
                display values are left as they are and only later edits
                use the new currency.

        Returns:
            The same transaction
        """
        new_code = new_code.upper()
        old_rate = self.current_rate(transaction)
        new_rate = self.rate_for(new_code)

        if rescale_existing:
            rescale_items(transaction, old_rate, new_rate)

        old_code = transaction.currency_code
        transaction.currency_code = new_code
        transaction.exchange_rate = new_rate
        transaction.rate_timestamp = datetime.now(UTC)
        transaction.rate_is_manual_override = False
        transaction.manual_override_reason = None

        logger.info(
            f"Retargeted '{transaction.name}' {old_code}->{new_code} "
            f"at {new_rate:.4f} (rescaled: {rescale_existing})"
        )
        return transaction

    def apply_manual_override(
        self, transaction: Transaction, rate: object, reason: str | None = None
    ) -> Transaction:
        """
        Set a user-supplied exchange rate, bypassing the live lookup.

        Display values of every item are recomputed from their base values.

        Raises:
            InvalidRateError: If ``rate`` is not a positive number. The
                transaction is left untouched.
        """
        new_rate = validate_rate(rate)
        old_rate = self.current_rate(transaction)

        rescale_items(transaction, old_rate, new_rate)

        transaction.exchange_rate = new_rate
        transaction.rate_timestamp = datetime.now(UTC)
        transaction.rate_is_manual_override = True
        transaction.manual_override_reason = reason or None

        logger.info(
            f"Manual rate for '{transaction.name}': 1 {self.base_currency} = "
            f"{new_rate} {transaction.currency_code}"
            + (f" ({reason})" if reason else "")
        )
        return transaction
