"""Inventory and backup-health discovery for Proxmox VE clusters and Proxmox Backup Server."""

from .api_client import APIRequestError, EndpointClient, ProxmoxAPIClient, initialize_api_clients
from .config import ConfigurationError, DiscoveryConfig
from .orchestrator import DiscoveryOrchestrator, fetch_discovery_data, fetch_metrics_data

__version__ = '0.1.0'

__all__ = [
    'APIRequestError',
    'ConfigurationError',
    'DiscoveryConfig',
    'DiscoveryOrchestrator',
    'EndpointClient',
    'ProxmoxAPIClient',
    'fetch_discovery_data',
    'fetch_metrics_data',
    'initialize_api_clients',
]
