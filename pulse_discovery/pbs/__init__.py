"""Proxmox Backup Server analysis: namespaces, backup runs, tasks and verification."""

from .backup_runs import synthesize_backup_runs
from .namespaces import NamespaceDiscovery, filter_namespaces
from .tasks import is_stale_task_failure, process_pbs_tasks
from .upid import parse_upid
from .verification import analyze_verification, check_verification_job_status

__all__ = [
    'NamespaceDiscovery',
    'analyze_verification',
    'check_verification_job_status',
    'filter_namespaces',
    'is_stale_task_failure',
    'parse_upid',
    'process_pbs_tasks',
    'synthesize_backup_runs',
]
