"""Top-level discovery and metrics cycles."""

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from .cache import DiscoveryCaches
from .cluster import ClusterMembershipDetector
from .config import get_backup_history_days
from .fetchers import (
    DirectConnectionManager,
    DiscoveryResult,
    EndpointGroupFetcher,
    MetricsFetcher,
    NodeMerger,
    PbsFetcher,
    PveBackupFetcher,
    PveDiscoveryFetcher,
)
from .models import AggregateSnapshot, Guest, PbsInstance
from .outcome import settle_all
from .pbs.namespaces import NamespaceDiscovery
from .pbs.tasks import summarize_processed_tasks

logger = logging.getLogger(__name__)


class DiscoveryOrchestrator:
    """Runs discovery cycles against all configured endpoints.

    One orchestrator owns the caches shared between cycles; create it once
    per process (see ``get_default_orchestrator``).
    """

    def __init__(self, caches: Optional[DiscoveryCaches] = None, backup_history_days: int = 365):
        """Initialize orchestrator.

        Args:
            caches: Shared TTL caches (a fresh set is created if omitted)
            backup_history_days: Cutoff for snapshot and backup task scans
        """
        self.caches = caches or DiscoveryCaches()
        self.membership_detector = ClusterMembershipDetector(self.caches.cluster_membership)
        self.direct_connections = DirectConnectionManager(self.caches.direct_connections)
        self.pve_fetcher = PveDiscoveryFetcher(self.direct_connections)
        self.group_fetcher = EndpointGroupFetcher(self.pve_fetcher)
        self.merger = NodeMerger(self.caches.last_known_nodes)
        self.namespace_discovery = NamespaceDiscovery(self.caches.namespaces)
        self.pbs_fetcher = PbsFetcher(self.namespace_discovery, backup_history_days)
        self.pve_backup_fetcher = PveBackupFetcher(backup_history_days)
        self.metrics_fetcher = MetricsFetcher()

    @staticmethod
    def _stage(name: str, func: Callable[[], Any], default: Any) -> Any:
        try:
            return func()
        except Exception as e:
            logger.error(f"✗ {name} failed: {e}", exc_info=True)
            return default

    def discover_pve(self, pve_clients: Mapping) -> DiscoveryResult:
        """Discover and deduplicate nodes and guests across all PVE endpoints."""
        if not pve_clients:
            logger.info("No PVE endpoints configured or initialized.")
            return DiscoveryResult()

        memberships = self.membership_detector.get_memberships(pve_clients)
        groups = self.membership_detector.group(memberships)
        logger.info(f"Fetching PVE discovery data for {len(pve_clients)} endpoint(s) in {len(groups)} group(s)...")

        outcomes = settle_all({
            group.primary_endpoint_id: (lambda g=group: self.group_fetcher.fetch_group(g, pve_clients, memberships))
            for group in groups
        })

        nodes, vms, containers = [], [], []
        for group in groups:
            outcome = outcomes[group.primary_endpoint_id]
            if not outcome.ok:
                logger.error(f"Group {group.cluster_id or group.primary_endpoint_id} failed: {outcome.error}")
                continue
            if outcome.value is None:
                continue
            nodes.extend(outcome.value.nodes)
            vms.extend(outcome.value.vms)
            containers.extend(outcome.value.containers)

        return DiscoveryResult(
            nodes=self.merger.merge_nodes(nodes),
            vms=self.merger.merge_guests(vms),
            containers=self.merger.merge_guests(containers),
        )

    def discover_pbs(self, pbs_clients: Mapping) -> List[PbsInstance]:
        """Fetch every PBS instance concurrently; each instance yields one entry."""
        if not pbs_clients:
            logger.info("No PBS instances configured or initialized.")
            return []

        logger.info(f"Fetching discovery data for {len(pbs_clients)} PBS instance(s)...")
        outcomes = settle_all({
            endpoint_id: (lambda eid=endpoint_id, ec=endpoint_client: self.pbs_fetcher.fetch_instance(eid, ec))
            for endpoint_id, endpoint_client in pbs_clients.items()
        })

        instances = []
        for endpoint_id, endpoint_client in pbs_clients.items():
            outcome = outcomes[endpoint_id]
            if outcome.ok:
                instances.append(outcome.value)
            else:
                instances.append(PbsInstance(
                    pbs_endpoint_id=endpoint_id,
                    pbs_instance_name=endpoint_client.config.name,
                    status='offline',
                    message=outcome.error,
                ))
        return instances

    def fetch_discovery_data(self, pve_clients: Mapping, pbs_clients: Mapping) -> AggregateSnapshot:
        """Run one discovery cycle.

        PVE inventory is discovered first; PBS discovery and PVE backup
        discovery then run concurrently. Never raises: failures produce a
        partial aggregate.

        Args:
            pve_clients: Mapping of PVE endpoint id to EndpointClient
            pbs_clients: Mapping of PBS endpoint id to EndpointClient

        Returns:
            AggregateSnapshot for this cycle
        """
        logger.info("Starting full discovery cycle...")
        pve = self._stage('PVE discovery', lambda: self.discover_pve(pve_clients), DiscoveryResult())

        outcomes = settle_all({
            'pbs': lambda: self.discover_pbs(pbs_clients),
            'pve_backups': lambda: self.pve_backup_fetcher.fetch_backups(
                pve.nodes, pve.vms, pve.containers, pve_clients
            ),
        })
        pbs_instances = outcomes['pbs'].value_or([])
        if not outcomes['pbs'].ok:
            logger.error(f"✗ PBS discovery failed: {outcomes['pbs'].error}")
        pve_backups = outcomes['pve_backups'].value_or(None)
        if not outcomes['pve_backups'].ok:
            logger.error(f"✗ PVE backup discovery failed: {outcomes['pve_backups'].error}")

        snapshot = AggregateSnapshot(
            nodes=pve.nodes,
            vms=pve.vms,
            containers=pve.containers,
            pbs=pbs_instances,
        )
        if pve_backups is not None:
            snapshot.pve_backups = pve_backups

        for instance in pbs_instances:
            snapshot.all_pbs_tasks.extend(instance.all_tasks)
            for field_name, count in summarize_processed_tasks(instance.task_data).items():
                snapshot.aggregated_pbs_task_summary[field_name] += count

        logger.info(
            f"Discovery cycle completed. Found: {len(snapshot.nodes)} PVE nodes, {len(snapshot.vms)} VMs, "
            f"{len(snapshot.containers)} CTs, {len(snapshot.pbs)} PBS instances."
        )
        return snapshot

    def fetch_metrics_data(
        self,
        running_vms: List[Guest],
        running_containers: List[Guest],
        pve_clients: Mapping
    ) -> List[Dict[str, Any]]:
        """Run one metrics cycle for the given running guests."""
        return self._stage(
            'Metrics cycle',
            lambda: self.metrics_fetcher.fetch_metrics(running_vms, running_containers, pve_clients),
            [],
        )


_default_orchestrator: Optional[DiscoveryOrchestrator] = None


def get_default_orchestrator() -> DiscoveryOrchestrator:
    """Process-wide orchestrator, created on first use.

    The history window is read from BACKUP_HISTORY_DAYS when the orchestrator
    is created; build a DiscoveryOrchestrator directly for other settings.
    """
    global _default_orchestrator
    if _default_orchestrator is None:
        _default_orchestrator = DiscoveryOrchestrator(backup_history_days=get_backup_history_days())
    return _default_orchestrator


def fetch_discovery_data(pve_clients: Mapping, pbs_clients: Mapping) -> AggregateSnapshot:
    return get_default_orchestrator().fetch_discovery_data(pve_clients, pbs_clients)


def fetch_metrics_data(running_vms: List[Guest], running_containers: List[Guest], pve_clients: Mapping) -> List[Dict[str, Any]]:
    return get_default_orchestrator().fetch_metrics_data(running_vms, running_containers, pve_clients)
