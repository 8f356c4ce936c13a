"""Configuration management for the Proxmox discovery engine."""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Values shipped in the install template; endpoints still carrying them are skipped
PLACEHOLDER_VALUES = (
    'https://proxmox_host:8006',
    'user@pam!tokenid',
    'YOUR_API_SECRET_HERE',
)

DEFAULT_PVE_PORT = 8006
DEFAULT_PBS_PORT = 8007
DEFAULT_BACKUP_HISTORY_DAYS = 365


class ConfigurationError(ValueError):
    """Raised when the environment does not describe a usable setup."""


def _parse_int(name: str, value: Optional[str], default: int) -> int:
    if value in (None, ''):
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Invalid integer for {name}: {value!r}, using {default}")
        return default


def get_backup_history_days(environ: Optional[Mapping[str, str]] = None) -> int:
    """Days of snapshots and backup tasks to scan, from BACKUP_HISTORY_DAYS."""
    env = environ if environ is not None else os.environ
    return _parse_int('BACKUP_HISTORY_DAYS', env.get('BACKUP_HISTORY_DAYS'), DEFAULT_BACKUP_HISTORY_DAYS)


@dataclass(frozen=True)
class PveEndpointConfig:
    """Static configuration of one Proxmox VE endpoint."""
    id: str
    name: str
    host: str
    token_id: str
    token_secret: str
    port: int = DEFAULT_PVE_PORT
    allow_self_signed_certs: bool = True
    enabled: bool = True


@dataclass(frozen=True)
class PbsEndpointConfig:
    """Static configuration of one Proxmox Backup Server instance."""
    id: str
    name: str
    host: str
    token_id: str
    token_secret: str
    port: int = DEFAULT_PBS_PORT
    allow_self_signed_certs: bool = True
    enabled: bool = True
    node_name: Optional[str] = None
    namespace_auto: bool = True
    namespace: Optional[str] = None
    namespace_include: str = ''
    namespace_exclude: str = ''


def _has_placeholder(*values: Optional[str]) -> bool:
    return any(
        placeholder in value
        for value in values if value
        for placeholder in PLACEHOLDER_VALUES
    )


def _hostname(host: str) -> str:
    """Strip scheme, port and path from a host setting for display purposes."""
    name = host.split('://', 1)[-1]
    name = name.split('/', 1)[0]
    return name.rsplit(':', 1)[0] if name.count(':') == 1 else name


class DiscoveryConfig:
    """Configuration for the discovery engine, read from environment variables."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None, load_env_file: bool = True):
        """Initialize configuration from environment variables.

        Args:
            environ: Mapping to read settings from (defaults to os.environ)
            load_env_file: Whether to load a .env file into os.environ first
        """
        if load_env_file and environ is None:
            load_dotenv()
        self._env: Mapping[str, str] = environ if environ is not None else os.environ

        # Endpoints
        self.is_placeholder_config = False
        self.pve_endpoints: List[PveEndpointConfig] = self._load_pve_endpoints()
        self.pbs_endpoints: List[PbsEndpointConfig] = self._load_pbs_endpoints()

        # Cycle settings
        self.backup_history_days: int = get_backup_history_days(self._env)
        self.discovery_interval: float = self._get_int('PULSE_DISCOVERY_INTERVAL_MS', 30000) / 1000.0
        self.metric_interval: float = self._get_int('PULSE_METRIC_INTERVAL_MS', 2000) / 1000.0
        self.run_once: bool = self._get_bool('PULSE_RUN_ONCE', False)

        # Output settings
        self.snapshot_file: Path = Path(self._get('SNAPSHOT_FILE', 'output/snapshot.json'))
        self.log_level: str = self._get('LOG_LEVEL', 'INFO').upper()

        self._validate()

    def _get(self, name: str, default: str = '') -> str:
        value = self._env.get(name)
        return value if value not in (None, '') else default

    def _get_bool(self, name: str, default: bool) -> bool:
        value = self._env.get(name)
        if value in (None, ''):
            return default
        return value.strip().lower() in ('1', 'true', 'yes', 'on')

    def _get_int(self, name: str, default: int) -> int:
        return _parse_int(name, self._env.get(name), default)

    def _load_pve_endpoint(self, suffix: str, endpoint_id: str) -> Optional[PveEndpointConfig]:
        host = self._get(f'PROXMOX_HOST{suffix}')
        token_id = self._get(f'PROXMOX_TOKEN_ID{suffix}')
        token_secret = self._get(f'PROXMOX_TOKEN_SECRET{suffix}')

        if not token_id or not token_secret:
            if not suffix:
                raise ConfigurationError(
                    "PROXMOX_HOST is set but PROXMOX_TOKEN_ID and PROXMOX_TOKEN_SECRET "
                    "are required for the primary endpoint"
                )
            logger.warning(
                f"Skipping endpoint {endpoint_id} (Host: {host}). "
                f"Missing PROXMOX_TOKEN_ID{suffix} or PROXMOX_TOKEN_SECRET{suffix}."
            )
            return None

        if _has_placeholder(host, token_id, token_secret):
            self.is_placeholder_config = True
            logger.warning(f"Skipping endpoint {endpoint_id} (Host: {host}). Placeholder values detected.")
            return None

        return PveEndpointConfig(
            id=endpoint_id,
            name=self._get(f'PROXMOX_NODE_NAME{suffix}', _hostname(host)),
            host=host,
            token_id=token_id,
            token_secret=token_secret,
            port=self._get_int(f'PROXMOX_PORT{suffix}', DEFAULT_PVE_PORT),
            allow_self_signed_certs=self._get_bool(f'PROXMOX_ALLOW_SELF_SIGNED_CERTS{suffix}', True),
            enabled=self._get_bool(f'PROXMOX_ENABLED{suffix}', True),
        )

    def _load_pve_endpoints(self) -> List[PveEndpointConfig]:
        endpoints = []
        if self._get('PROXMOX_HOST'):
            primary = self._load_pve_endpoint('', 'primary')
            if primary:
                endpoints.append(primary)

        index = 2
        while self._get(f'PROXMOX_HOST_{index}'):
            endpoint = self._load_pve_endpoint(f'_{index}', f'endpoint_{index}')
            if endpoint:
                endpoints.append(endpoint)
            index += 1

        if len(endpoints) > 1:
            logger.info(f"Loaded configuration for {len(endpoints)} Proxmox endpoints.")
        return endpoints

    def _load_pbs_endpoint(self, suffix: str, endpoint_id: str) -> Optional[PbsEndpointConfig]:
        host = self._get(f'PBS_HOST{suffix}')
        token_id = self._get(f'PBS_TOKEN_ID{suffix}')
        token_secret = self._get(f'PBS_TOKEN_SECRET{suffix}')

        if not token_id or not token_secret:
            logger.warning(
                f"Partial PBS configuration found for PBS_HOST{suffix}. Please set "
                f"PBS_TOKEN_ID{suffix} + PBS_TOKEN_SECRET{suffix} along with PBS_HOST{suffix}."
            )
            return None

        if _has_placeholder(host, token_id, token_secret):
            self.is_placeholder_config = True
            logger.warning(f"Skipping PBS configuration {endpoint_id}. Placeholder values detected.")
            return None

        node_name = self._get(f'PBS_NODE_NAME{suffix}') or None
        namespace = self._get(f'PBS_NAMESPACE{suffix}') or None
        return PbsEndpointConfig(
            id=endpoint_id,
            name=node_name or _hostname(host),
            host=host,
            token_id=token_id,
            token_secret=token_secret,
            port=self._get_int(f'PBS_PORT{suffix}', DEFAULT_PBS_PORT),
            allow_self_signed_certs=self._get_bool(f'PBS_ALLOW_SELF_SIGNED_CERTS{suffix}', True),
            enabled=self._get_bool(f'PBS_ENABLED{suffix}', True),
            node_name=node_name,
            namespace_auto=self._get_bool(f'PBS_NAMESPACE_AUTO{suffix}', namespace is None),
            namespace=namespace,
            namespace_include=self._get(f'PBS_NAMESPACE_INCLUDE{suffix}'),
            namespace_exclude=self._get(f'PBS_NAMESPACE_EXCLUDE{suffix}'),
        )

    def _load_pbs_endpoints(self) -> List[PbsEndpointConfig]:
        endpoints = []
        if self._get('PBS_HOST'):
            primary = self._load_pbs_endpoint('', 'pbs_primary')
            if primary:
                endpoints.append(primary)

        index = 2
        while self._get(f'PBS_HOST_{index}'):
            endpoint = self._load_pbs_endpoint(f'_{index}', f'pbs_endpoint_{index}')
            if endpoint:
                endpoints.append(endpoint)
            index += 1

        if endpoints:
            logger.info(f"Loaded configuration for {len(endpoints)} PBS instance(s).")
        else:
            logger.info("No PBS instances configured.")
        return endpoints

    def _validate(self) -> None:
        """Validate that at least one endpoint is usable."""
        enabled = [e for e in self.pve_endpoints if e.enabled] + [e for e in self.pbs_endpoints if e.enabled]
        if not enabled and self.is_placeholder_config:
            raise ConfigurationError(
                "Only placeholder endpoint values were found. "
                "Replace them with real hosts and API tokens in the environment or .env file."
            )
        if not enabled:
            raise ConfigurationError(
                "No enabled Proxmox VE or PBS endpoints could be configured. "
                "Set PROXMOX_HOST/PROXMOX_TOKEN_ID/PROXMOX_TOKEN_SECRET or the PBS_* equivalents."
            )
        if self.backup_history_days <= 0:
            raise ConfigurationError("BACKUP_HISTORY_DAYS must be a positive number of days")
