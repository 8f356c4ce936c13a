"""Categorisation and summarisation of PBS tasks."""

import logging
import re
import time
from typing import Any, Dict, List, Mapping, Optional

from ..models import ROOT_NAMESPACE
from ..utils import SECONDS_PER_DAY

logger = logging.getLogger(__name__)

TASK_TYPE_MAP = {
    'backup': 'backup',
    'verify': 'verify',
    'verificationjob': 'verify',
    'verify_group': 'verify',
    'verify-group': 'verify',
    'verification': 'verify',
    'sync': 'sync',
    'syncjob': 'sync',
    'sync-job': 'sync',
    'garbage_collection': 'pruneGc',
    'garbage-collection': 'pruneGc',
    'prune': 'pruneGc',
    'prunejob': 'pruneGc',
    'prune-job': 'pruneGc',
    'gc': 'pruneGc',
}

# Category name in the task map -> key in the processed output
CATEGORY_OUTPUT_KEYS = {
    'backup': 'backupTasks',
    'verify': 'verificationTasks',
    'sync': 'syncTasks',
    'pruneGc': 'pruneTasks',
}

RECENT_TASK_WINDOW = 30 * SECONDS_PER_DAY
RECENT_TASK_LIMIT = 50
STALE_VERIFICATION_AGE = 14 * SECONDS_PER_DAY
STALE_GC_WARNING_AGE = 30 * SECONDS_PER_DAY

STALE_VERIFICATION_SIGNATURES = (
    'verification failed',
    'backup not found',
    'group not found',
    'missing chunks',
)

_NAMESPACE_IN_WORKER_ID = re.compile(r'ns=([^:]+)')


def _task_type(task: Mapping[str, Any]) -> Optional[str]:
    return task.get('worker_type') or task.get('type')


def is_stale_task_failure(task: Mapping[str, Any], now: Optional[float] = None) -> bool:
    """Whether a failed task is old noise that should not count or be listed.

    Verification failures older than 14 days whose status points at data
    that has since been pruned, and GC warnings older than 30 days.
    """
    now = time.time() if now is None else now
    task_type = _task_type(task)
    status = task.get('status') or ''
    end_time = task.get('endtime') or task.get('endTime') or 0

    if task_type == 'verificationjob' and status != 'OK':
        if 'ERROR' not in status and 'verification failed' not in status:
            return False
        is_old = bool(end_time) and end_time < now - STALE_VERIFICATION_AGE
        return is_old and any(sig in status for sig in STALE_VERIFICATION_SIGNATURES)

    if task_type == 'garbage_collection' and 'WARNINGS' in status:
        return bool(end_time) and end_time < now - STALE_GC_WARNING_AGE

    return False


def extract_namespace(task: Mapping[str, Any]) -> str:
    """Namespace of a task: explicit field first, then ``ns=`` in the worker id."""
    if task.get('namespace') is not None:
        return task['namespace']

    worker_id = task.get('worker_id') or task.get('id') or ''
    match = _NAMESPACE_IN_WORKER_ID.search(str(worker_id))
    if match:
        return match.group(1)
    return ROOT_NAMESPACE


def detailed_task(task: Mapping[str, Any]) -> Dict[str, Any]:
    start = task.get('starttime')
    end = task.get('endtime')
    return {
        'upid': task.get('upid'),
        'node': task.get('node'),
        'type': _task_type(task),
        'id': task.get('worker_id') or task.get('id') or task.get('guest'),
        'status': task.get('status'),
        'startTime': start,
        'endTime': end,
        'duration': end - start if end and start else None,
        'user': task.get('user'),
        'exitCode': task.get('exitcode'),
        'exitStatus': task.get('exitstatus'),
        'guest': task.get('guest') or task.get('worker_id'),
        'pbsBackupRun': task.get('pbsBackupRun', False),
        'enhancedWithRealTask': task.get('enhancedWithRealTask', False),
        'guestId': task.get('guestId'),
        'guestType': task.get('guestType'),
        'namespace': extract_namespace(task),
    }


def _empty_category() -> Dict[str, Any]:
    return {'list': [], 'ok': 0, 'failed': 0, 'lastOk': 0, 'lastFailed': 0}


def categorize_and_count_tasks(tasks: List[Mapping[str, Any]], now: Optional[float] = None) -> Dict[str, Dict[str, Any]]:
    """Sort tasks into categories and count finished outcomes.

    Unfinished tasks are listed but not counted; any finished status other
    than 'OK' (warnings included) counts as failed.
    """
    results = {category: _empty_category() for category in CATEGORY_OUTPUT_KEYS}
    unmapped = set()

    for task in tasks:
        category_key = TASK_TYPE_MAP.get(_task_type(task))
        if category_key is None:
            unmapped.add(_task_type(task))
            continue

        category = results[category_key]
        category['list'].append(task)

        if is_stale_task_failure(task, now):
            continue

        # Tasks still in progress have no status yet
        status = task.get('status')
        if not status or 'running' in status or 'queued' in status:
            continue

        end_time = task.get('endtime') or 0
        if status == 'OK':
            category['ok'] += 1
            category['lastOk'] = max(category['lastOk'], end_time)
        else:
            category['failed'] += 1
            category['lastFailed'] = max(category['lastFailed'], end_time)

    if unmapped:
        logger.debug(f"Unmapped PBS task types: {sorted(str(t) for t in unmapped)}")
    return results


def _recent_tasks(tasks: List[Mapping[str, Any]], now: float) -> List[Dict[str, Any]]:
    recent = [
        task for task in tasks
        if not is_stale_task_failure(task, now)
        and (task.get('starttime') is None or now - task['starttime'] <= RECENT_TASK_WINDOW)
    ]
    detailed = [detailed_task(task) for task in recent]
    detailed.sort(key=lambda t: t['startTime'] or 0, reverse=True)
    return detailed[:RECENT_TASK_LIMIT]


def process_pbs_tasks(tasks: Optional[List[Mapping[str, Any]]], now: Optional[float] = None) -> Dict[str, Any]:
    """Turn raw PBS tasks into per-category recent lists and summaries.

    Args:
        tasks: Raw PBS task entries and/or synthetic backup runs as task dicts
        now: Reference time in epoch seconds (defaults to the current time)

    Returns:
        Dictionary with backupTasks, verificationTasks, syncTasks and
        pruneTasks, each holding ``recentTasks`` and ``summary``
    """
    now = time.time() if now is None else now
    if not isinstance(tasks, list):
        if tasks is not None:
            logger.warning(f"Expected a list of PBS tasks, got {type(tasks).__name__}")
        tasks = []

    categories = categorize_and_count_tasks(tasks, now)

    processed = {}
    for category_key, output_key in CATEGORY_OUTPUT_KEYS.items():
        category = categories[category_key]
        processed[output_key] = {
            'recentTasks': _recent_tasks(category['list'], now),
            'summary': {
                'ok': category['ok'],
                'failed': category['failed'],
                'total': category['ok'] + category['failed'],
                'lastOk': category['lastOk'] or None,
                'lastFailed': category['lastFailed'] or None,
            },
        }
    return processed


def summarize_processed_tasks(processed: Mapping[str, Any]) -> Dict[str, int]:
    """Sum the per-category summaries of one instance into total/ok/failed."""
    totals = {'total': 0, 'ok': 0, 'failed': 0}
    for output_key in CATEGORY_OUTPUT_KEYS.values():
        summary = processed.get(output_key, {}).get('summary', {})
        for field in totals:
            totals[field] += summary.get(field, 0) or 0
    return totals
