"""Exchange rate API client."""

import logging
import math

import httpx

from ..exceptions import RateLookupError

logger = logging.getLogger(__name__)


class RateClient:
    """Client for an exchangerate.host style ``/latest`` endpoint."""

    def __init__(self, base_url: str, timeout: float = 10.0):
        """Initialize the rate client."""
        self.base_url = base_url
        self.client = httpx.Client(
            base_url=base_url,
            headers={"Accept": "application/json"},
            timeout=timeout,
        )

    def close(self):
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    def get_rate(self, base: str, code: str) -> float:
        """
        Get the number of ``code`` units worth one ``base`` unit.

        Args:
            base: 3-letter code of the reference currency
            code: 3-letter code of the currency to quote

        Returns:
            A finite, positive multiplier

        Raises:
            RateLookupError: On network errors, timeouts, HTTP errors or a
                response without a usable rate
        """
        try:
            response = self.client.get(
                "/latest", params={"base": base, "symbols": code}
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise RateLookupError(f"Rate lookup for {base}->{code} failed: {e}") from e

        try:
            value = float(data["rates"][code])
        except (KeyError, TypeError, ValueError) as e:
            raise RateLookupError(
                f"Malformed rate response for {base}->{code}: {data!r}"
            ) from e

        if not math.isfinite(value) or value <= 0:
            raise RateLookupError(f"Unusable rate for {base}->{code}: {value}")

        logger.debug(f"Live rate {base}->{code}: {value}")
        return value
