"""PVE-side backup data: vzdump tasks, backup files on storage and guest snapshots."""

import logging
from typing import Any, Dict, List, Mapping

from ..models import Guest, Node
from ..outcome import settle_all
from ..utils import cutoff_epoch, to_int
from .base import BaseFetcher

logger = logging.getLogger(__name__)

MAX_WORKERS = 10
TASK_LIMIT = 1000


def _empty_backup_data() -> Dict[str, List[Dict[str, Any]]]:
    return {'backupTasks': [], 'storageBackups': [], 'guestSnapshots': []}


class PveBackupFetcher(BaseFetcher):
    """Collects backup information exposed by PVE nodes themselves."""

    def __init__(self, backup_history_days: int = 365):
        self.backup_history_days = backup_history_days

    def fetch_backups(
        self,
        nodes: List[Node],
        vms: List[Guest],
        containers: List[Guest],
        pve_clients: Mapping
    ) -> Dict[str, List[Dict[str, Any]]]:
        """Fetch backup tasks, storage backups and guest snapshots.

        Args:
            nodes: Merged node list from PVE discovery
            vms: Merged VM list
            containers: Merged container list
            pve_clients: Mapping of endpoint id to EndpointClient

        Returns:
            Dictionary with backupTasks, storageBackups and guestSnapshots
        """
        data = self.run(nodes, vms, containers, pve_clients)
        return data if data is not None else _empty_backup_data()

    def collect(self, nodes, vms, containers, pve_clients) -> Dict[str, List[Dict[str, Any]]]:
        since = cutoff_epoch(self.backup_history_days)
        online_nodes = [n for n in nodes if n.status == 'online' and n.endpoint_id in pve_clients]

        calls = {}
        for node in online_nodes:
            client = pve_clients[node.endpoint_id].client
            calls[('tasks', node.endpoint_id, node.node)] = (
                lambda c=client, n=node: self._fetch_backup_tasks(c, n, since)
            )

        seen_shared = set()
        for node in online_nodes:
            client = pve_clients[node.endpoint_id].client
            for storage in node.storage:
                if not self._holds_backups(storage):
                    continue
                storage_id = storage.get('storage')
                is_shared = str(storage.get('shared', 0)) == '1'
                if is_shared:
                    shared_key = (node.cluster_identifier, storage_id)
                    if shared_key in seen_shared:
                        continue
                    seen_shared.add(shared_key)
                calls[('storage', node.endpoint_id, node.node, storage_id)] = (
                    lambda c=client, n=node, s=storage_id, sh=is_shared: self._fetch_storage_backups(c, n, s, sh)
                )

        online_names = {(n.endpoint_id, n.node) for n in online_nodes}
        for guest in list(vms) + list(containers):
            if guest.template or (guest.endpoint_id, guest.node) not in online_names:
                continue
            client = pve_clients[guest.endpoint_id].client
            calls[('snapshots', guest.endpoint_id, guest.node, guest.vmid)] = (
                lambda c=client, g=guest: self._fetch_guest_snapshots(c, g)
            )

        data = _empty_backup_data()
        outputs = {'tasks': 'backupTasks', 'storage': 'storageBackups', 'snapshots': 'guestSnapshots'}
        for key, outcome in settle_all(calls, max_workers=MAX_WORKERS).items():
            if not outcome.ok:
                logger.error(f"PVE backup fetch {key} failed: {outcome.error}")
                continue
            data[outputs[key[0]]].extend(outcome.value or [])

        logger.info(
            f"PVE backup data: {len(data['backupTasks'])} task(s), "
            f"{len(data['storageBackups'])} backup file(s), {len(data['guestSnapshots'])} snapshot(s)"
        )
        return data

    @staticmethod
    def _holds_backups(storage: Dict[str, Any]) -> bool:
        content = storage.get('content') or ''
        if storage.get('type') == 'pbs' or 'backup' not in content.split(','):
            return False
        return storage.get('active', 1) not in (0, '0')

    def _fetch_backup_tasks(self, client, node: Node, since: int) -> List[Dict[str, Any]]:
        tasks = self.fetch_resource(
            client,
            f'/nodes/{node.node}/tasks',
            f"backup tasks of {node.node}",
            default=[],
            params={'typefilter': 'vzdump', 'since': since, 'limit': TASK_LIMIT},
        )
        return [
            {
                'upid': task.get('upid'),
                'node': node.node,
                'endpointId': node.endpoint_id,
                'type': task.get('type'),
                'status': task.get('status'),
                'startTime': task.get('starttime'),
                'endTime': task.get('endtime'),
                'user': task.get('user'),
                'guestId': to_int(task.get('id')) or None,
            }
            for task in tasks
            if isinstance(task, dict)
        ]

    def _fetch_storage_backups(self, client, node: Node, storage_id: str, is_shared: bool) -> List[Dict[str, Any]]:
        files = self.fetch_resource(
            client,
            f'/nodes/{node.node}/storage/{storage_id}/content',
            f"backups on {storage_id}@{node.node}",
            default=[],
            params={'content': 'backup'},
        )
        return [
            {
                'volid': item.get('volid'),
                'storage': storage_id,
                'node': node.node,
                'endpointId': node.endpoint_id,
                'isShared': is_shared,
                'vmid': to_int(item.get('vmid')) or None,
                'size': item.get('size'),
                'ctime': item.get('ctime'),
                'format': item.get('format'),
                'notes': item.get('notes'),
                'protected': bool(item.get('protected')),
            }
            for item in files
            if isinstance(item, dict) and item.get('content', 'backup') == 'backup'
        ]

    def _fetch_guest_snapshots(self, client, guest: Guest) -> List[Dict[str, Any]]:
        snapshots = self.fetch_resource(
            client,
            f'/nodes/{guest.node}/{guest.type}/{guest.vmid}/snapshot',
            f"snapshots of {guest.type} {guest.vmid}",
            default=[],
        )
        return [
            {
                'name': snap.get('name'),
                'description': snap.get('description'),
                'snaptime': snap.get('snaptime'),
                'vmstate': bool(snap.get('vmstate')),
                'parent': snap.get('parent'),
                'vmid': guest.vmid,
                'node': guest.node,
                'type': guest.type,
                'endpointId': guest.endpoint_id,
            }
            for snap in snapshots
            if isinstance(snap, dict) and snap.get('name') != 'current'
        ]
