# SPDX-License-Identifier: MPL-2.0
"""
Electricity Price Feed Client Module

This module handles querying the day's hourly electricity prices from a
price-feed service. The feed answers a GET request with a JSON object keyed
by slot label (e.g. "14-15"), one entry per hour of the day.
"""

import requests
from typing import Dict, Any, Optional
import logging

logger = logging.getLogger(__name__)


class FetchError(Exception):
    """Raised when prices cannot be fetched or parsed."""
    pass


class PriceEntry:
    """
    Represents one priced time slot from the price feed.

    Attributes:
        slot_label (str): Sub-day interval label, e.g. "14-15"
        price (float): Cost of the interval in the feed's units
        date (str|None): Calendar date reported by the feed
        market (str|None): Market the price comes from
        units (str|None): Price units, e.g. "€/MWh"
        is_cheap (bool): Feed's own "cheap hour" flag
        is_under_avg (bool): Feed's own "under daily average" flag
    """

    def __init__(self, data: Dict[str, Any], slot_label: Optional[str] = None):
        """
        Initialize from API response data.

        Args:
            data: One value of the feed's JSON object
            slot_label: Key the value was found under, used when the entry
                        carries no 'hour' field of its own
        """
        label = data.get('hour', slot_label)
        if label is None:
            raise KeyError('hour')
        self.slot_label = str(label)
        self.price = float(data['price'])
        self.date = data.get('date')
        self.market = data.get('market')
        self.units = data.get('units')
        self.is_cheap = bool(data.get('is-cheap', False))
        self.is_under_avg = bool(data.get('is-under-avg', False))

    def __repr__(self) -> str:
        return f"PriceEntry({self.slot_label}: {self.price})"


# Mapping of slot label to entry for a single calendar day
PriceTable = Dict[str, PriceEntry]


class PriceFeedClient:
    """
    Client for the hourly electricity price feed.

    Attributes:
        url (str): Full URL of the price feed endpoint
        timeout (int): Request timeout in seconds
        session (requests.Session): HTTP session for connection pooling
    """

    def __init__(self, url: str, timeout: int = 30):
        """
        Initialize the price feed client.

        Args:
            url: Price feed endpoint (absolute http/https URL)
            timeout: Request timeout in seconds (default: 30)
        """
        self.url = url
        self.timeout = timeout
        self.session = requests.Session()

    def get_prices(self) -> PriceTable:
        """
        Fetch today's prices.

        Returns:
            PriceTable mapping slot label to PriceEntry

        Raises:
            FetchError: If the request fails, returns an error status or the
                        body is not a JSON object of price entries
                        with distinct slot labels
        """
        try:
            logger.debug(f"Fetching prices from {self.url}")
            response = self.session.get(self.url, timeout=self.timeout)
            response.raise_for_status()

            data = response.json()
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")

            prices: PriceTable = {}
            for key, value in data.items():
                entry = PriceEntry(value, slot_label=key)
                if entry.slot_label in prices:
                    raise ValueError(f"duplicate slot label '{entry.slot_label}' (key '{key}')")
                prices[entry.slot_label] = entry

            logger.info(f"Fetched {len(prices)} price entries")
            return prices

        except requests.exceptions.Timeout:
            error_msg = f"Request to {self.url} timed out after {self.timeout} seconds"
            logger.error(error_msg)
            raise FetchError(error_msg)

        except requests.exceptions.HTTPError as e:
            error_msg = f"HTTP error occurred: {e.response.status_code} - {e.response.text}"
            logger.error(error_msg)
            raise FetchError(error_msg)

        except requests.exceptions.RequestException as e:
            error_msg = f"Request failed: {str(e)}"
            logger.error(error_msg)
            raise FetchError(error_msg)

        except (ValueError, KeyError, TypeError, AttributeError) as e:
            error_msg = f"Invalid JSON response or missing data: {str(e)}"
            logger.error(error_msg)
            raise FetchError(error_msg)

    def close(self) -> None:
        """Close the HTTP session."""
        self.session.close()
        logger.debug("Price feed client session closed")

    def __enter__(self) -> 'PriceFeedClient':
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Context manager exit."""
        self.close()
