"""Proxmox VE / Backup Server API clients and the endpoint client registry."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

import requests
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)
from urllib3.exceptions import InsecureRequestWarning

from .config import PbsEndpointConfig, PveEndpointConfig
from .outcome import FetchResult

# Suppress SSL warnings for self-signed certificates
requests.packages.urllib3.disable_warnings(category=InsecureRequestWarning)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30

# PVE answers 596 when the proxied node connection breaks
PVE_CONNECTION_ERROR_STATUS = 596


class APIRequestError(Exception):
    """Raised when a GET against the Proxmox API fails."""

    def __init__(
        self,
        endpoint: str,
        message: str,
        status_code: Optional[int] = None,
        transient: bool = False
    ):
        """Initialize API request error.

        Args:
            endpoint: API path that failed (e.g., '/nodes')
            message: Human readable failure reason
            status_code: HTTP status code, if a response was received
            transient: Whether the failure is a timeout, connection error or 5xx
        """
        self.endpoint = endpoint
        self.message = message
        self.status_code = status_code
        self.transient = transient
        super().__init__(message)

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"{self.endpoint}: {self.message} (Status: {self.status_code})"
        return f"{self.endpoint}: {self.message}"


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, APIRequestError) and error.transient


class ProxmoxAPIClient:
    """Read-only client for the Proxmox VE and Proxmox Backup Server APIs."""

    def __init__(
        self,
        host: str,
        token_id: str,
        token_secret: str,
        port: Union[int, str] = 8006,
        product: str = 'pve',
        verify_ssl: bool = False,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = 0,
        retry_delay: float = 0.5
    ):
        """Initialize Proxmox API client.

        Args:
            host: Proxmox host (e.g., 'proxmox.example.com', '192.168.1.100'
                or a full URL such as 'https://pve.lan:8006')
            token_id: API token id in format 'USER@REALM!TOKENID'
            token_secret: API token secret
            port: API port (8006 for PVE, 8007 for PBS)
            product: 'pve' or 'pbs', selects the token header format
            verify_ssl: Whether to verify SSL certificates
            timeout: Default request timeout in seconds
            max_retries: Retries on transient failures (0 disables retrying)
            retry_delay: Fixed delay between retries in seconds
        """
        if not token_id or not token_secret:
            raise ValueError(f"Missing API token credentials for {host}")

        self.host = host
        self.port = port
        self.product = product
        self.token_id = token_id
        self.token_secret = token_secret
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        if '://' in host:
            self.base_url = f"{host.rstrip('/')}/api2/json"
        else:
            self.base_url = f"https://{host}:{port}/api2/json"

        if product == 'pbs':
            auth_header = f'PBSAPIToken={token_id}:{token_secret}'
        else:
            auth_header = f'PVEAPIToken={token_id}={token_secret}'

        self.session = requests.Session()
        self.session.verify = verify_ssl
        self.session.headers.update({
            'Authorization': auth_header,
            'Content-Type': 'application/json',
        })

        self._retryer: Optional[Retrying] = None
        if max_retries > 0:
            self._retryer = Retrying(
                stop=stop_after_attempt(max_retries + 1),
                wait=wait_fixed(retry_delay),
                retry=retry_if_exception(_is_transient),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            )

    def clone_for_host(
        self,
        host: str,
        timeout: float,
        max_retries: int = 0,
        retry_delay: float = 0.5
    ) -> 'ProxmoxAPIClient':
        """Build a client for another host that authenticates identically.

        Args:
            host: Host name or IP of the new target
            timeout: Default request timeout for the new client
            max_retries: Retries on transient failures
            retry_delay: Fixed delay between retries

        Returns:
            New ProxmoxAPIClient instance
        """
        return ProxmoxAPIClient(
            host=host,
            token_id=self.token_id,
            token_secret=self.token_secret,
            port=self.port,
            product=self.product,
            verify_ssl=self.verify_ssl,
            timeout=timeout,
            max_retries=max_retries,
            retry_delay=retry_delay,
        )

    def _request(self, endpoint: str, params: Optional[Dict[str, Any]], timeout: float) -> Any:
        url = f"{self.base_url}{endpoint}"
        try:
            response = self.session.get(url, params=params, timeout=timeout)
        except requests.exceptions.Timeout as e:
            raise APIRequestError(endpoint, f"timeout after {timeout}s: {e}", transient=True) from e
        except requests.exceptions.ConnectionError as e:
            raise APIRequestError(endpoint, f"connection failed: {e}", transient=True) from e
        except requests.exceptions.RequestException as e:
            raise APIRequestError(endpoint, str(e)) from e

        if response.status_code >= 400:
            transient = response.status_code >= 500
            if response.status_code == PVE_CONNECTION_ERROR_STATUS:
                logger.debug(f"{endpoint}: proxied node connection broken (Status: 596)")
            raise APIRequestError(
                endpoint,
                response.reason or f"HTTP {response.status_code}",
                status_code=response.status_code,
                transient=transient,
            )

        try:
            return response.json().get('data')
        except ValueError as e:
            raise APIRequestError(endpoint, f"invalid JSON response: {e}") from e

    def get(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        retry: bool = True
    ) -> Any:
        """Make authenticated GET request to the API.

        Args:
            endpoint: API endpoint path (e.g., '/nodes')
            params: Optional query parameters
            timeout: Request timeout in seconds (defaults to the client timeout)
            retry: Whether transient failures are retried (when retries are configured)

        Returns:
            The ``data`` member of the response body

        Raises:
            APIRequestError: If the request fails or returns an error status
        """
        request_timeout = timeout if timeout is not None else self.timeout
        if retry and self._retryer is not None:
            return self._retryer(self._request, endpoint, params, request_timeout)
        return self._request(endpoint, params, request_timeout)

    def fetch(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        retry: bool = True
    ) -> FetchResult:
        """GET an endpoint and return a tagged outcome instead of raising.

        Args:
            endpoint: API endpoint path
            params: Optional query parameters
            timeout: Request timeout in seconds
            retry: Whether transient failures are retried

        Returns:
            FetchResult holding the response data or the failure reason
        """
        try:
            return FetchResult.success(self.get(endpoint, params=params, timeout=timeout, retry=retry))
        except APIRequestError as e:
            return FetchResult.failure(str(e), status_code=e.status_code)

    def get_cluster_status(self, timeout: Optional[float] = None) -> FetchResult:
        """Get cluster status information."""
        return self.fetch('/cluster/status', timeout=timeout)

    def get_nodes(self, timeout: Optional[float] = None) -> FetchResult:
        """Get list of all nodes."""
        return self.fetch('/nodes', timeout=timeout)

    def get_version(self, timeout: Optional[float] = None, retry: bool = True) -> FetchResult:
        """Get product version information."""
        return self.fetch('/version', timeout=timeout, retry=retry)

    def __repr__(self) -> str:
        return f"ProxmoxAPIClient({self.product}, {self.base_url})"


@dataclass(frozen=True)
class EndpointClient:
    """An authenticated client paired with the static config it was built from."""
    client: Any
    config: Union[PveEndpointConfig, PbsEndpointConfig]


def create_client(config: Union[PveEndpointConfig, PbsEndpointConfig]) -> ProxmoxAPIClient:
    """Build an API client for a configured endpoint."""
    product = 'pbs' if isinstance(config, PbsEndpointConfig) else 'pve'
    return ProxmoxAPIClient(
        host=config.host,
        token_id=config.token_id,
        token_secret=config.token_secret,
        port=config.port,
        product=product,
        verify_ssl=not config.allow_self_signed_certs,
    )


def initialize_api_clients(
    pve_configs: List[PveEndpointConfig],
    pbs_configs: List[PbsEndpointConfig]
) -> Tuple[Dict[str, EndpointClient], Dict[str, EndpointClient]]:
    """Initialize clients for every enabled PVE endpoint and PBS instance.

    Args:
        pve_configs: PVE endpoint configurations
        pbs_configs: PBS instance configurations

    Returns:
        Tuple of (pve_clients, pbs_clients), each keyed by endpoint id
    """
    pve_clients: Dict[str, EndpointClient] = {}
    pbs_clients: Dict[str, EndpointClient] = {}

    logger.info(f"Initializing API clients for {len(pve_configs)} PVE endpoint(s)...")
    for config in pve_configs:
        if not config.enabled:
            logger.info(f"Skipping disabled PVE endpoint: {config.name} ({config.host})")
            continue
        try:
            pve_clients[config.id] = EndpointClient(create_client(config), config)
            logger.info(f"✓ Initialized PVE client for {config.name} ({config.host})")
        except ValueError as e:
            logger.error(f"✗ Could not initialize PVE client for {config.name}: {e}")

    if pbs_configs:
        logger.info(f"Initializing API clients for {len(pbs_configs)} PBS instance(s)...")
    for config in pbs_configs:
        if not config.enabled:
            logger.info(f"Skipping disabled PBS endpoint: {config.name} ({config.host})")
            continue
        try:
            pbs_clients[config.id] = EndpointClient(create_client(config), config)
            logger.info(f"✓ Initialized PBS client for {config.name} ({config.host})")
        except ValueError as e:
            logger.error(f"✗ Could not initialize PBS client for {config.name}: {e}")

    return pve_clients, pbs_clients
