"""Reconstruction of backup job runs from PBS snapshot listings.

Snapshots are the ground truth for whether a backup exists; admin tasks are
the ground truth for exact timing and outcome. Runs are synthesized from the
former and enhanced with the latter when a matching task is available.
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from ..models import ROOT_NAMESPACE, BackupRun, Snapshot
from ..utils import to_int, utc_day

logger = logging.getLogger(__name__)

BACKUP_WORKER_TYPE = 'backup'

RunKey = str


def run_key(day: str, datastore: str, namespace: str, backup_type: str, backup_id: str) -> RunKey:
    return f"{day}:{datastore}:{namespace or ROOT_NAMESPACE}:{backup_type}:{backup_id}"


def parse_backup_worker_id(worker_id: Optional[str]) -> Optional[Tuple[str, str, str, str]]:
    """Split a backup task worker id into (datastore, namespace, type, id).

    Accepts 'store:vm/100' and 'store:ns=prod:vm/100'. Returns None when the
    id does not name a guest.
    """
    if not worker_id or ':' not in worker_id:
        return None

    segments = worker_id.split(':')
    datastore = segments[0]
    guest = segments[-1]
    if '/' not in guest:
        return None

    namespace = ROOT_NAMESPACE
    for segment in segments[1:-1]:
        if segment.startswith('ns='):
            namespace = segment[3:] or ROOT_NAMESPACE

    backup_type, _, backup_id = guest.partition('/')
    if not backup_type or not backup_id:
        return None
    return datastore, namespace, backup_type, backup_id


def _task_key(task: Mapping[str, Any]) -> Optional[RunKey]:
    parsed = parse_backup_worker_id(task.get('worker_id'))
    starttime = to_int(task.get('starttime'), default=-1)
    if parsed is None or starttime < 0:
        return None
    datastore, namespace, backup_type, backup_id = parsed
    return run_key(utc_day(starttime), datastore, namespace, backup_type, backup_id)


def _is_backup_task(task: Mapping[str, Any]) -> bool:
    return (task.get('worker_type') or task.get('type')) == BACKUP_WORKER_TYPE


def _iter_snapshots(snapshots_by_namespace) -> Iterable[Snapshot]:
    if isinstance(snapshots_by_namespace, Mapping):
        for snapshots in snapshots_by_namespace.values():
            yield from snapshots
    else:
        yield from snapshots_by_namespace


def _runs_from_snapshots(snapshots: Iterable[Snapshot], cutoff_epoch: int, node: Optional[str]) -> List[BackupRun]:
    latest: Dict[RunKey, Snapshot] = {}
    counts: Dict[RunKey, int] = {}
    order: List[RunKey] = []

    for snapshot in snapshots:
        if snapshot.backup_time < cutoff_epoch:
            continue
        key = run_key(
            utc_day(snapshot.backup_time),
            snapshot.datastore,
            snapshot.namespace,
            snapshot.backup_type,
            snapshot.backup_id,
        )
        if key not in latest:
            order.append(key)
            latest[key] = snapshot
            counts[key] = 1
            continue
        counts[key] += 1
        if snapshot.backup_time > latest[key].backup_time:
            latest[key] = snapshot

    runs = []
    for key in order:
        snapshot = latest[key]
        runs.append(BackupRun(
            key=key,
            datastore=snapshot.datastore,
            namespace=snapshot.namespace,
            guest_type=snapshot.backup_type,
            guest_id=snapshot.backup_id,
            start_time=snapshot.backup_time,
            end_time=snapshot.backup_time,
            status='OK',
            exitcode='OK',
            user=snapshot.owner,
            node=node,
            size=snapshot.size,
            snapshot_count=counts[key],
        ))
    return runs


def _failure_run(task: Mapping[str, Any], key: RunKey) -> BackupRun:
    datastore, namespace, backup_type, backup_id = parse_backup_worker_id(task.get('worker_id'))
    return BackupRun(
        key=key,
        datastore=datastore,
        namespace=namespace,
        guest_type=backup_type,
        guest_id=backup_id,
        start_time=to_int(task.get('starttime')),
        end_time=task.get('endtime'),
        status=task.get('status'),
        exitcode=task.get('exitcode', task.get('status')),
        user=task.get('user'),
        node=task.get('node'),
        upid=task.get('upid'),
        is_failed_task=True,
    )


def synthesize_backup_runs(
    snapshots_by_namespace,
    admin_tasks: Optional[List[Dict[str, Any]]],
    cutoff_epoch: int,
    node: Optional[str] = None
) -> List[BackupRun]:
    """Build one BackupRun per guest per UTC day from snapshots and admin tasks.

    Args:
        snapshots_by_namespace: Mapping of namespace to snapshots, or a flat
            iterable of snapshots (each snapshot carries its datastore and namespace)
        admin_tasks: Raw task entries from ``/nodes/{node}/tasks``
        cutoff_epoch: Snapshots and tasks started before this are ignored
        node: PBS node name recorded on synthetic runs

    Returns:
        Runs sorted newest first, unique by run key
    """
    runs = _runs_from_snapshots(_iter_snapshots(snapshots_by_namespace), cutoff_epoch, node)
    runs_by_key = {run.key: run for run in runs}

    # Real backup tasks, newest first per key
    tasks_by_key: Dict[RunKey, List[Mapping[str, Any]]] = {}
    backup_tasks = [
        t for t in (admin_tasks or [])
        if _is_backup_task(t) and to_int(t.get('starttime'), default=-1) >= cutoff_epoch
    ]
    for task in sorted(backup_tasks, key=lambda t: to_int(t.get('starttime')), reverse=True):
        key = _task_key(task)
        if key is not None:
            tasks_by_key.setdefault(key, []).append(task)

    used_upids = set()

    # Enhancement pass: an OK task wins, then the task started closest to the snapshot
    enhanced = 0
    for run in runs:
        candidates = [
            t for t in tasks_by_key.get(run.key, [])
            if t.get('upid') and t.get('upid') not in used_upids and t.get('status')
        ]
        if not candidates:
            continue
        snapshot_time = run.start_time
        task = min(
            candidates,
            key=lambda t: (t.get('status') != 'OK', abs(to_int(t.get('starttime')) - snapshot_time))
        )
        run.start_time = to_int(task.get('starttime'), run.start_time)
        run.end_time = task.get('endtime', run.end_time)
        run.status = task.get('status')
        run.exitcode = task.get('exitcode', task.get('status'))
        run.user = task.get('user', run.user)
        run.node = task.get('node', run.node)
        run.upid = task['upid']
        run.enhanced_with_real_task = True
        used_upids.add(task['upid'])
        enhanced += 1

    # Residual pass: failed attempts that left no snapshot
    failures = 0
    for key, tasks in tasks_by_key.items():
        for task in tasks:
            upid = task.get('upid')
            status = task.get('status')
            if not status or status == 'OK' or (upid and upid in used_upids):
                continue
            if key in runs_by_key:
                continue
            failure = _failure_run(task, key)
            runs.append(failure)
            runs_by_key[key] = failure
            if upid:
                used_upids.add(upid)
            failures += 1

    # Final dedup by UPID, or type-node-starttime-guest for runs without one
    unique: Dict[str, BackupRun] = {}
    for run in runs:
        unique.setdefault(run.dedup_key, run)

    result = sorted(unique.values(), key=lambda r: r.start_time, reverse=True)
    logger.debug(
        f"Synthesized {len(result)} backup runs "
        f"({enhanced} enhanced with real tasks, {failures} failed attempts)"
    )
    return result
