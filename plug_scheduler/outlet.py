# SPDX-License-Identifier: MPL-2.0
"""
Smart Outlet Client

API client for a WiFi power outlet exposing two HTTP endpoints, one to
switch the relay on and one to switch it off.
"""

import logging
from typing import Any

import requests

logger = logging.getLogger(__name__)


class OutletError(Exception):
    """Base exception for outlet errors."""
    pass


class ActivationFailure(OutletError):
    """Switching the outlet on failed."""
    pass


class DeactivationFailure(OutletError):
    """Switching the outlet off failed."""
    pass


class OutletClient:
    """
    Client for the smart outlet HTTP API.

    Each operation is a single POST with no body; anything other than a
    200 response counts as a failure.
    """

    ON_PATH = "/encender"
    OFF_PATH = "/apagar"

    def __init__(
        self,
        base_url: str,
        on_path: str = ON_PATH,
        off_path: str = OFF_PATH,
        timeout: int = 30
    ):
        """
        Initialize the outlet client.

        Args:
            base_url: Base URL of the outlet API (absolute http/https URL)
            on_path: Path of the power-on endpoint
            off_path: Path of the power-off endpoint
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.on_path = on_path
        self.off_path = off_path
        self.timeout = timeout
        self._session = requests.Session()

    def __enter__(self) -> "OutletClient":
        """Context manager entry."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Context manager exit."""
        self.close()

    def close(self) -> None:
        """Close the HTTP session."""
        self._session.close()

    def _post(self, path: str) -> int:
        url = f"{self.base_url}{path}"
        logger.debug(f"POST {url}")
        response = self._session.post(url, timeout=self.timeout)
        return response.status_code

    def power_on(self) -> None:
        """
        Switch the outlet on.

        Raises:
            ActivationFailure: If the request fails or is not acknowledged
        """
        try:
            status = self._post(self.on_path)
        except requests.RequestException as e:
            raise ActivationFailure(f"Failed to switch outlet on: {e}")

        if status != 200:
            raise ActivationFailure(f"Failed to switch outlet on: status code {status}")

        logger.info("Outlet switched on")

    def power_off(self) -> None:
        """
        Switch the outlet off.

        Raises:
            DeactivationFailure: If the request fails or is not acknowledged
        """
        try:
            status = self._post(self.off_path)
        except requests.RequestException as e:
            raise DeactivationFailure(f"Failed to switch outlet off: {e}")

        if status != 200:
            raise DeactivationFailure(f"Failed to switch outlet off: status code {status}")

        logger.info("Outlet switched off")

    def __repr__(self) -> str:
        return f"OutletClient(base_url={self.base_url!r})"
