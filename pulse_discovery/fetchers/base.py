"""Base class for all discovery fetchers."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Per-resource request timeout in seconds
RESOURCE_TIMEOUT = 8


class BaseFetcher(ABC):
    """Base class for fetchers that collect one slice of the discovery data."""

    @abstractmethod
    def collect(self, *args, **kwargs) -> Any:
        """Collect data from the API.

        Must be implemented by subclasses.

        Returns:
            The fetched data, or None if nothing usable was found
        """
        pass

    def describe(self, *args, **kwargs) -> str:
        """Short label used in log lines."""
        return self.__class__.__name__

    def run(self, *args, **kwargs) -> Optional[Any]:
        """Run ``collect`` and contain any unexpected failure.

        Fetch failures are expected and handled inside ``collect``; this only
        guards against bugs or malformed data so that one slice never brings
        down the whole discovery cycle.

        Returns:
            Collected data, or None if collection failed
        """
        label = self.describe(*args, **kwargs)
        try:
            logger.debug(f"Running {label}...")
            data = self.collect(*args, **kwargs)
            if data is None:
                logger.warning(f"No data collected by {label}")
            return data

        except Exception as e:
            logger.error(f"✗ {label} failed: {e}", exc_info=True)
            return None

    @staticmethod
    def fetch_resource(
        client,
        endpoint: str,
        what: str,
        default: Any,
        params: Optional[Dict[str, Any]] = None,
        timeout: float = RESOURCE_TIMEOUT
    ) -> Any:
        """GET a resource, logging failures and substituting ``default``.

        Args:
            client: API client with a ``fetch`` method
            endpoint: API path
            what: Description for log messages (e.g., 'storage of pve1')
            default: Value used when the fetch fails or returns nothing
            params: Optional query parameters
            timeout: Request timeout in seconds

        Returns:
            The fetched data or ``default``
        """
        result = client.fetch(endpoint, params=params, timeout=timeout)
        if not result.ok:
            logger.warning(f"Failed to fetch {what}: {result.error}")
            return default
        if isinstance(default, list):
            return result.list_or_empty()
        return result.value_or(default)
