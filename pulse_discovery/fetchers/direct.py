"""Direct connections to individual cluster nodes.

Storage marked ``shared = 0`` is node-local and may be reported incompletely
when read through another cluster member, so it is re-read over a short-lived
connection to the node's own address.
"""

import logging
from typing import Optional

from ..cache import TTLCache
from ..config import PveEndpointConfig

logger = logging.getLogger(__name__)

DIRECT_REQUEST_TIMEOUT = 3
DIRECT_TEST_TIMEOUT = 1.5
DIRECT_MAX_RETRIES = 1
DIRECT_RETRY_DELAY = 0.5


class DirectConnectionManager:
    """Builds, tests and memoizes direct per-node API clients."""

    def __init__(self, cache: TTLCache):
        """Initialize manager.

        Args:
            cache: Direct connection cache keyed by '{config id}:{node}'
        """
        self.cache = cache

    @staticmethod
    def cache_key(config: PveEndpointConfig, node: str) -> str:
        return f"{config.id}:{node}"

    def get_direct_connection(self, node: str, node_ip: Optional[str], config: PveEndpointConfig, client):
        """Return a tested client talking to ``node_ip`` directly.

        Args:
            node: Node name
            node_ip: Node address from cluster status
            config: Configuration of the endpoint the node was discovered through
            client: Cluster-wide client whose credentials are reused

        Returns:
            A client, or None if the IP is unknown or the node is unreachable
        """
        if not node_ip:
            return None

        key = self.cache_key(config, node)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        direct = client.clone_for_host(
            node_ip,
            timeout=DIRECT_REQUEST_TIMEOUT,
            max_retries=DIRECT_MAX_RETRIES,
            retry_delay=DIRECT_RETRY_DELAY,
        )
        # Single attempt; retries apply to real requests only
        version = direct.get_version(timeout=DIRECT_TEST_TIMEOUT, retry=False)
        if not version.ok:
            logger.debug(f"✗ Direct connection to {node} ({node_ip}) failed, not caching: {version.error}")
            return None

        logger.debug(f"✓ Direct connection to {node} ({node_ip}) established")
        self.cache.set(key, direct)
        return direct
