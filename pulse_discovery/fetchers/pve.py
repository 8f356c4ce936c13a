"""Proxmox VE inventory discovery: nodes, VMs and containers."""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..config import PveEndpointConfig
from ..models import ClusterMembership, EndpointGroup, Guest, Node
from ..outcome import FetchResult, settle_all
from ..utils import parse_tags, to_int
from .base import RESOURCE_TIMEOUT, BaseFetcher
from .direct import DirectConnectionManager

logger = logging.getLogger(__name__)

DISCOVERY_TIMEOUT = 5
MAX_CONCURRENT_NODE_FETCHES = 5

# Shared by every endpoint so a large cluster cannot starve the others
NODE_FETCH_LIMITER = threading.BoundedSemaphore(MAX_CONCURRENT_NODE_FETCHES)

GUEST_USAGE_FIELDS = ('cpu', 'cpus', 'mem', 'maxmem', 'disk', 'maxdisk',
                      'netin', 'netout', 'diskread', 'diskwrite')


@dataclass
class DiscoveryResult:
    """Nodes and guests seen through one endpoint (or merged across several)."""
    nodes: List[Node] = field(default_factory=list)
    vms: List[Guest] = field(default_factory=list)
    containers: List[Guest] = field(default_factory=list)
    source_endpoint: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.nodes or self.vms or self.containers)


def parse_cluster_status(entries) -> Tuple[Optional[str], Dict[str, str], Dict[str, bool]]:
    """Extract cluster name, node IPs and node online flags from ``/cluster/status``."""
    cluster_name = None
    node_ips: Dict[str, str] = {}
    online: Dict[str, bool] = {}

    for entry in entries or []:
        if not isinstance(entry, dict):
            continue
        if entry.get('type') == 'cluster':
            cluster_name = entry.get('name')
        elif entry.get('type') == 'node' and entry.get('name'):
            name = entry['name']
            if entry.get('ip'):
                node_ips[name] = entry['ip']
            if 'online' in entry:
                online[name] = bool(entry['online'])

    return cluster_name, node_ips, online


def build_guest(raw: Dict[str, Any], node: str, guest_type: str, endpoint_id: str, cluster_identifier: str) -> Guest:
    vmid = to_int(raw.get('vmid'))
    usage = {name: raw.get(name) for name in GUEST_USAGE_FIELDS}
    return Guest(
        id=f"{endpoint_id}-{node}-{vmid}",
        vmid=vmid,
        name=raw.get('name') or f"{guest_type}-{vmid}",
        node=node,
        type=guest_type,
        endpoint_id=endpoint_id,
        cluster_identifier=cluster_identifier,
        status=raw.get('status') or 'unknown',
        uptime=to_int(raw.get('uptime')),
        template=bool(raw.get('template')),
        tags=parse_tags(raw.get('tags')),
        **usage,
    )


class PveDiscoveryFetcher(BaseFetcher):
    """Fetches the node and guest inventory of one PVE endpoint."""

    def __init__(
        self,
        direct_connections: Optional[DirectConnectionManager] = None,
        limiter: threading.BoundedSemaphore = NODE_FETCH_LIMITER
    ):
        """Initialize fetcher.

        Args:
            direct_connections: Manager used to re-read node-local storage
            limiter: Semaphore bounding concurrent node fetches
        """
        self.direct_connections = direct_connections
        self.limiter = limiter

    def describe(self, endpoint_id: str, *args, **kwargs) -> str:
        return f"PVE discovery for {endpoint_id}"

    def fetch_endpoint(
        self,
        endpoint_id: str,
        client,
        config: PveEndpointConfig,
        membership: Optional[ClusterMembership] = None
    ) -> Optional[DiscoveryResult]:
        """Discover nodes, VMs and containers through one endpoint.

        Returns:
            DiscoveryResult (empty if the node list was unavailable), or None
            if discovery failed unexpectedly
        """
        return self.run(endpoint_id, client, config, membership)

    def collect(
        self,
        endpoint_id: str,
        client,
        config: PveEndpointConfig,
        membership: Optional[ClusterMembership] = None
    ) -> DiscoveryResult:
        outcomes = settle_all({
            'cluster_status': lambda: client.get_cluster_status(timeout=DISCOVERY_TIMEOUT),
            'nodes': lambda: client.get_nodes(timeout=DISCOVERY_TIMEOUT),
        })
        status_result = outcomes['cluster_status']
        nodes_result = outcomes['nodes']

        if not status_result.ok:
            logger.warning(f"[{config.name}] Could not read cluster status: {status_result.error}")
        if not nodes_result.ok:
            logger.error(f"[{config.name}] Error fetching node list: {nodes_result.error}")
            return DiscoveryResult()

        node_entries = [n for n in nodes_result.list_or_empty() if isinstance(n, dict) and n.get('node')]
        if not node_entries:
            logger.warning(f"[{config.name}] No nodes found or unexpected format.")
            return DiscoveryResult()

        cluster_name, node_ips, online_map = parse_cluster_status(status_result.list_or_empty())
        is_cluster = membership.type == 'cluster' if membership else len(node_entries) > 1 and bool(cluster_name)
        if membership and membership.cluster_id:
            cluster_name = membership.cluster_id
        cluster_identifier = cluster_name if is_cluster and cluster_name else endpoint_id
        endpoint_type = 'cluster' if is_cluster else 'standalone'

        def display_name(node_name: str) -> str:
            if is_cluster and cluster_name:
                return f"{cluster_name} - {node_name}"
            return config.name

        result = DiscoveryResult(source_endpoint=endpoint_id)
        online_entries = []
        for entry in node_entries:
            name = entry['node']
            if online_map.get(name) is False or entry.get('status') == 'offline':
                result.nodes.append(Node(
                    node=name,
                    id=f"{endpoint_id}-{name}",
                    endpoint_id=endpoint_id,
                    display_name=display_name(name),
                    cluster_identifier=cluster_identifier,
                    cluster_name=cluster_name if is_cluster else None,
                    endpoint_type=endpoint_type,
                    status='offline',
                    cpu=0, maxcpu=0, mem=0, maxmem=0, disk=0, maxdisk=0,
                    uptime=0,
                    ip=node_ips.get(name),
                ))
            else:
                online_entries.append(entry)

        node_outcomes = settle_all({
            entry['node']: (lambda e=entry: self._fetch_node_resources(client, e['node']))
            for entry in online_entries
        })

        for entry in online_entries:
            name = entry['node']
            outcome = node_outcomes.get(name)
            resources: Mapping[str, FetchResult] = outcome.value if outcome and outcome.ok else {}
            if outcome and not outcome.ok:
                logger.error(f"[{config.name}] Error processing node {name}: {outcome.error}")

            node = self._build_node(entry, resources, endpoint_id, config)
            node.display_name = display_name(name)
            node.cluster_identifier = cluster_identifier
            node.cluster_name = cluster_name if is_cluster else None
            node.endpoint_type = endpoint_type
            node.ip = node_ips.get(name)

            if is_cluster and self.direct_connections is not None:
                node.storage = self._refresh_local_storage(node, client, config)

            result.nodes.append(node)
            for raw in self._resource_list(resources, 'qemu', name, config):
                result.vms.append(build_guest(raw, name, 'qemu', endpoint_id, cluster_identifier))
            for raw in self._resource_list(resources, 'lxc', name, config):
                result.containers.append(build_guest(raw, name, 'lxc', endpoint_id, cluster_identifier))

        logger.info(
            f"[{config.name}] Discovered {len(result.nodes)} node(s), "
            f"{len(result.vms)} VM(s), {len(result.containers)} container(s)"
        )
        return result

    def _fetch_node_resources(self, client, node_name: str) -> Dict[str, FetchResult]:
        with self.limiter:
            return settle_all({
                'status': lambda: client.fetch(f'/nodes/{node_name}/status', timeout=RESOURCE_TIMEOUT),
                'storage': lambda: client.fetch(f'/nodes/{node_name}/storage', timeout=RESOURCE_TIMEOUT),
                'qemu': lambda: client.fetch(f'/nodes/{node_name}/qemu', timeout=RESOURCE_TIMEOUT),
                'lxc': lambda: client.fetch(f'/nodes/{node_name}/lxc', timeout=RESOURCE_TIMEOUT),
            })

    @staticmethod
    def _resource_list(resources: Mapping[str, FetchResult], kind: str, node_name: str, config) -> List[dict]:
        result = resources.get(kind)
        if result is None:
            return []
        if not result.ok:
            logger.error(f"[{config.name}] Error fetching {kind} of node {node_name}: {result.error}")
            return []
        return [item for item in result.list_or_empty() if isinstance(item, dict)]

    def _build_node(self, entry: Dict[str, Any], resources: Mapping[str, FetchResult], endpoint_id: str, config) -> Node:
        name = entry['node']
        node = Node(
            node=name,
            id=f"{endpoint_id}-{name}",
            endpoint_id=endpoint_id,
            display_name=config.name,
            cluster_identifier=endpoint_id,
            status=entry.get('status') or 'unknown',
            maxcpu=entry.get('maxcpu'),
            maxmem=entry.get('maxmem'),
        )

        status_result = resources.get('status')
        status = status_result.value_or({}) if status_result is not None else {}
        if status_result is not None and not status_result.ok:
            logger.error(f"[{config.name}] Error fetching status of node {name}: {status_result.error}")

        if isinstance(status, dict) and status:
            memory = status.get('memory') or {}
            rootfs = status.get('rootfs') or {}
            cpuinfo = status.get('cpuinfo') or {}
            node.cpu = status.get('cpu')
            node.mem = memory.get('used') or status.get('mem')
            node.maxmem = node.maxmem or memory.get('total')
            node.maxcpu = node.maxcpu or cpuinfo.get('cpus')
            node.disk = rootfs.get('used') or status.get('disk')
            node.maxdisk = rootfs.get('total') or status.get('maxdisk')
            node.uptime = to_int(status.get('uptime'))
            node.loadavg = status.get('loadavg')
            if node.uptime > 0:
                node.status = 'online'

        node.storage = self._resource_list(resources, 'storage', name, config)
        return node

    def _refresh_local_storage(self, node: Node, client, config: PveEndpointConfig) -> List[Dict[str, Any]]:
        """Re-read non-shared storage over a direct connection to the node."""
        local = [s for s in node.storage if str(s.get('shared', 1)) == '0']
        if not local or not node.ip:
            return node.storage

        direct = self.direct_connections.get_direct_connection(node.node, node.ip, config, client)
        if direct is None:
            return node.storage

        result = direct.fetch(f'/nodes/{node.node}/storage')
        if not result.ok:
            logger.debug(f"[{config.name}] Direct storage read of {node.node} failed: {result.error}")
            return node.storage

        fresh = {s.get('storage'): s for s in result.list_or_empty() if isinstance(s, dict)}
        return [
            fresh.get(s.get('storage'), s) if str(s.get('shared', 1)) == '0' else s
            for s in node.storage
        ]


class EndpointGroupFetcher:
    """Fetches a group of redundant endpoints with sequential failover."""

    def __init__(self, discovery_fetcher: PveDiscoveryFetcher):
        self.discovery_fetcher = discovery_fetcher

    def fetch_group(
        self,
        group: EndpointGroup,
        endpoint_clients: Mapping,
        memberships: Optional[Mapping[str, ClusterMembership]] = None
    ) -> Optional[DiscoveryResult]:
        """Try the primary, then each backup, until one returns any data.

        Args:
            group: Endpoint group to fetch
            endpoint_clients: Mapping of endpoint id to EndpointClient
            memberships: Cluster membership per endpoint id

        Returns:
            The first non-empty DiscoveryResult, or None if every endpoint failed
        """
        memberships = memberships or {}
        for endpoint_id in group.endpoint_ids:
            endpoint_client = endpoint_clients.get(endpoint_id)
            if endpoint_client is None:
                continue

            result = self.discovery_fetcher.fetch_endpoint(
                endpoint_id,
                endpoint_client.client,
                endpoint_client.config,
                memberships.get(endpoint_id),
            )
            if result is not None and not result.is_empty:
                if endpoint_id != group.primary_endpoint_id:
                    logger.warning(
                        f"Primary endpoint {group.primary_endpoint_id} unavailable, "
                        f"using {endpoint_id} for {group.cluster_id or endpoint_id}"
                    )
                result.source_endpoint = endpoint_id
                return result

            logger.warning(f"Endpoint {endpoint_id} returned no data")

        logger.error(
            f"✗ All endpoints failed for {group.type} group "
            f"{group.cluster_id or group.primary_endpoint_id}: {', '.join(group.endpoint_ids)}"
        )
        return None
