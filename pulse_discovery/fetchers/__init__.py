"""Fetchers for Proxmox VE and Proxmox Backup Server data."""

from .base import BaseFetcher
from .direct import DirectConnectionManager
from .merge import NodeMerger, merge_guests
from .metrics import MetricsFetcher
from .pbs import PbsFetcher
from .pve import DiscoveryResult, EndpointGroupFetcher, PveDiscoveryFetcher
from .pve_backups import PveBackupFetcher

__all__ = [
    'BaseFetcher',
    'DirectConnectionManager',
    'DiscoveryResult',
    'EndpointGroupFetcher',
    'MetricsFetcher',
    'NodeMerger',
    'PbsFetcher',
    'PveBackupFetcher',
    'PveDiscoveryFetcher',
    'merge_guests',
]
