"""Proxmox Backup Server instance discovery."""

import logging
import time
from typing import Any, Dict, List, Optional

from ..config import PbsEndpointConfig
from ..models import ROOT_NAMESPACE, Datastore, PbsInstance, Snapshot
from ..outcome import settle_all
from ..pbs.backup_runs import synthesize_backup_runs
from ..pbs.namespaces import NamespaceDiscovery
from ..pbs.tasks import process_pbs_tasks
from ..pbs.verification import analyze_verification, normalize_verification_jobs
from ..utils import cutoff_epoch
from .base import RESOURCE_TIMEOUT, BaseFetcher

logger = logging.getLogger(__name__)

TASK_LIMIT = 1000


def deduplication_factor(gc_status: Optional[Dict[str, Any]]) -> Optional[float]:
    """Ratio of logical index data to bytes on disk from a datastore's gc-status."""
    if not isinstance(gc_status, dict):
        return None
    index_bytes = gc_status.get('index-data-bytes')
    disk_bytes = gc_status.get('disk-bytes')
    if not index_bytes or not disk_bytes:
        return None
    return round(index_bytes / disk_bytes, 2)


class PbsFetcher(BaseFetcher):
    """Fetches datastores, snapshots, tasks and verification state of one PBS instance."""

    def __init__(self, namespace_discovery: NamespaceDiscovery, backup_history_days: int = 365):
        """Initialize PBS fetcher.

        Args:
            namespace_discovery: Namespace discovery shared across cycles
            backup_history_days: How far back snapshots and tasks are scanned
        """
        self.namespace_discovery = namespace_discovery
        self.backup_history_days = backup_history_days

    def describe(self, endpoint_id: str, *args, **kwargs) -> str:
        return f"PBS discovery for {endpoint_id}"

    def fetch_instance(self, endpoint_id: str, endpoint_client, now: Optional[float] = None) -> PbsInstance:
        """Fetch everything about one PBS instance.

        Args:
            endpoint_id: PBS endpoint id
            endpoint_client: EndpointClient for the instance
            now: Reference time in epoch seconds (defaults to the current time)

        Returns:
            PbsInstance; unreachable instances come back with status 'offline'
        """
        instance = self.run(endpoint_id, endpoint_client, now)
        if instance is None:
            instance = PbsInstance(
                pbs_endpoint_id=endpoint_id,
                pbs_instance_name=endpoint_client.config.name,
                status='error',
                message='PBS discovery failed unexpectedly; see logs for details',
            )
        return instance

    def collect(self, endpoint_id: str, endpoint_client, now: Optional[float] = None) -> PbsInstance:
        client = endpoint_client.client
        config: PbsEndpointConfig = endpoint_client.config
        now = time.time() if now is None else now
        since = cutoff_epoch(self.backup_history_days, now)

        instance = PbsInstance(pbs_endpoint_id=endpoint_id, pbs_instance_name=config.name)

        node_name = config.node_name
        if not node_name:
            nodes_result = client.get_nodes(timeout=RESOURCE_TIMEOUT)
            if not nodes_result.ok:
                logger.error(f"✗ PBS instance {config.name} unreachable: {nodes_result.error}")
                instance.status = 'offline'
                instance.message = f"Could not connect to PBS instance: {nodes_result.error}"
                return instance
            nodes = nodes_result.list_or_empty()
            node_name = nodes[0].get('node') if nodes and isinstance(nodes[0], dict) else None
            if not node_name:
                instance.status = 'error'
                instance.message = f"Could not determine node name for PBS instance {config.name}"
                logger.error(instance.message)
                return instance
            logger.info(f"Detected PBS node name: {node_name} for {config.name}")
        instance.node_name = node_name

        info = settle_all({
            'version': lambda: client.get_version(timeout=RESOURCE_TIMEOUT),
            'subscription': lambda: client.fetch('/subscription', timeout=RESOURCE_TIMEOUT),
            'tasks': lambda: client.fetch(
                f'/nodes/{node_name}/tasks',
                params={'since': since, 'limit': TASK_LIMIT, 'errors': 1},
                timeout=RESOURCE_TIMEOUT,
            ),
            'verify_jobs': lambda: client.fetch('/config/verify', timeout=RESOURCE_TIMEOUT),
        })
        instance.version = (info['version'].value_or({}) or {}).get('version')
        instance.subscription_status = (info['subscription'].value_or({}) or {}).get('status')

        admin_tasks: List[Dict[str, Any]] = []
        if info['tasks'].ok:
            admin_tasks = [t for t in info['tasks'].list_or_empty() if isinstance(t, dict)]
            logger.info(f"Fetched {len(admin_tasks)} tasks from PBS node {node_name}.")
        else:
            logger.error(f"Failed to fetch PBS task list for node {node_name} ({config.name}): {info['tasks'].error}")

        if info['verify_jobs'].ok:
            instance.verification_jobs = normalize_verification_jobs(info['verify_jobs'].list_or_empty())
        else:
            logger.warning(f"Failed to get verification jobs for {config.name}: {info['verify_jobs'].error}")

        instance.datastores = self._fetch_datastores(client, config)
        snapshot_outcomes = settle_all({
            ds.name: (lambda d=ds: self._fetch_datastore_snapshots(client, d, config, since))
            for ds in instance.datastores
        })
        for ds in instance.datastores:
            outcome = snapshot_outcomes[ds.name]
            if not outcome.ok:
                logger.error(f"Snapshot scan of datastore {ds.name} on {config.name} failed: {outcome.error}")
            ds.verification = analyze_verification(ds.snapshots, instance.verification_jobs, now, ds.name)

        all_snapshots: List[Snapshot] = [s for ds in instance.datastores for s in ds.snapshots]
        instance.backup_runs = synthesize_backup_runs(all_snapshots, admin_tasks, since, node=node_name)

        # Real backup tasks are folded into the runs; everything else is processed as-is
        tasks = [run.to_task() for run in instance.backup_runs]
        tasks.extend(t for t in admin_tasks if (t.get('worker_type') or t.get('type')) != 'backup')
        instance.task_data = process_pbs_tasks(tasks, now)

        instance.status = 'ok'
        logger.info(
            f"✓ PBS {config.name}: {len(instance.datastores)} datastore(s), "
            f"{len(all_snapshots)} snapshot(s), {len(instance.backup_runs)} backup run(s)"
        )
        return instance

    def _fetch_datastores(self, client, config: PbsEndpointConfig) -> List[Datastore]:
        usage = client.fetch('/status/datastore-usage', timeout=RESOURCE_TIMEOUT)
        entries = usage.list_or_empty()
        if entries:
            return [
                Datastore(
                    name=ds.get('store'),
                    path=ds.get('path'),
                    total=ds.get('total'),
                    used=ds.get('used'),
                    available=ds.get('avail'),
                    gc_status=ds.get('garbage-collection-status') or ('ok' if ds.get('gc-status') else 'unknown'),
                    deduplication_factor=deduplication_factor(ds.get('gc-status')),
                )
                for ds in entries
                if isinstance(ds, dict) and ds.get('store')
            ]

        reason = usage.error or 'empty response'
        logger.warning(f"Failed to get datastore usage for {config.name}, falling back to /config/datastore: {reason}")
        configured = client.fetch('/config/datastore', timeout=RESOURCE_TIMEOUT)
        if not configured.ok:
            logger.error(f"Fallback fetch of PBS datastore config failed for {config.name}: {configured.error}")
            return []
        return [
            Datastore(name=ds.get('name'), path=ds.get('path'), gc_status='unknown (config only)')
            for ds in configured.list_or_empty()
            if isinstance(ds, dict) and ds.get('name')
        ]

    def _fetch_datastore_snapshots(self, client, datastore: Datastore, config: PbsEndpointConfig, since: int) -> int:
        namespaces = self.namespace_discovery.get_namespaces_to_query(client, datastore.name, config)
        datastore.namespaces = [ns or ROOT_NAMESPACE for ns in namespaces]

        for namespace in namespaces:
            params = {'ns': namespace} if namespace else None
            result = client.fetch(f'/admin/datastore/{datastore.name}/snapshots', params=params, timeout=RESOURCE_TIMEOUT)
            if not result.ok:
                if result.status_code == 404:
                    logger.debug(f"Namespace '{namespace}' not found on {datastore.name}")
                else:
                    logger.error(
                        f"Failed to fetch snapshots for datastore {datastore.name} "
                        f"namespace '{namespace or ROOT_NAMESPACE}' on {config.name}: {result.error}"
                    )
                continue

            for raw in result.list_or_empty():
                if not isinstance(raw, dict):
                    continue
                snapshot = Snapshot.from_api(raw, datastore.name, namespace or ROOT_NAMESPACE)
                if snapshot.backup_time >= since:
                    datastore.snapshots.append(snapshot)

        return len(datastore.snapshots)
