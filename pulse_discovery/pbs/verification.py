"""PBS verification health diagnostics.

Scores a datastore by how many of its snapshots were verified and how many
of those verifications failed, finds references to verification jobs that
no longer exist, and turns the findings into recommendations.
"""

import logging
import time
from collections import Counter
from typing import Any, Dict, Iterable, List, Mapping, Optional
from urllib.parse import quote

from ..models import Snapshot, VerificationDiagnostics, VerificationRecommendations
from ..utils import SECONDS_PER_DAY
from .upid import verification_job_id

logger = logging.getLogger(__name__)

RECENT_FAILURE_WINDOW = 7 * SECONDS_PER_DAY
MANY_RECENT_FAILURES = 5

# (minimum verification rate, maximum failure rate, score), checked in order
HEALTH_THRESHOLDS = (
    (0.95, 0.01, 'excellent'),
    (0.8, 0.05, 'good'),
    (0.6, 0.1, 'fair'),
)

FAILURE_CATEGORIES = (
    ('missing', ('missing', 'not found')),
    ('corruption', ('corrupt', 'checksum')),
    ('timeout', ('timeout', 'connection')),
    ('permission', ('permission', 'access')),
    ('space', ('space', 'disk')),
)

_PRIORITY_RANK = {'low': 0, 'medium': 1, 'high': 2}


def health_score(total: int, verified: int, failed: int) -> str:
    """Score verification health from snapshot counts.

    Example:
        health_score(100, 96, 0)  # 'excellent'
        health_score(100, 70, 5)  # 'fair'
    """
    verification_rate = verified / total if total > 0 else 0
    failure_rate = failed / verified if verified > 0 else 0

    for min_rate, max_failure_rate, score in HEALTH_THRESHOLDS:
        if verification_rate >= min_rate and failure_rate <= max_failure_rate:
            return score
    return 'poor'


def categorize_failure(state: Optional[str]) -> str:
    """Classify a failed verification state string."""
    text = (state or '').lower()
    for category, patterns in FAILURE_CATEGORIES:
        if any(pattern in text for pattern in patterns):
            return category
    return 'unknown'


def normalize_verification_jobs(raw_jobs: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Reduce ``/config/verify`` entries to id, datastore, schedule, enabled and comment."""
    return [
        {
            'id': job.get('id'),
            'datastore': job.get('store'),
            'schedule': job.get('schedule') or 'manual',
            'enabled': not job.get('disable', False),
            'comment': job.get('comment'),
        }
        for job in raw_jobs
        if job.get('id')
    ]


def _raise_priority(recommendations: VerificationRecommendations, priority: str) -> None:
    if _PRIORITY_RANK[priority] > _PRIORITY_RANK[recommendations.priority]:
        recommendations.priority = priority


def _build_recommendations(
    diagnostics: VerificationDiagnostics,
    jobs: List[Dict[str, Any]],
    job_history: Counter
) -> VerificationRecommendations:
    recommendations = VerificationRecommendations()

    for job in jobs:
        if not job['enabled'] and job_history.get(job['id']):
            _raise_priority(recommendations, 'high')
            recommendations.actions.append(
                f"Verification job {job['id']} is disabled but has verified "
                f"{job_history[job['id']]} snapshot(s); re-enable it or remove it"
            )

    if diagnostics.health_score == 'poor':
        _raise_priority(recommendations, 'high')
        recommendations.actions.append('Investigate verification failures immediately')
        recommendations.actions.append('Check PBS datastore health and available space')

    failure_count = len(diagnostics.recent_failures)
    if failure_count > MANY_RECENT_FAILURES:
        _raise_priority(recommendations, 'high')
    elif failure_count:
        _raise_priority(recommendations, 'medium')
    if failure_count:
        recommendations.actions.append(f"Address {failure_count} recent verification failures")

    if diagnostics.stale_references:
        recommendations.insights.append(
            f"Found {len(diagnostics.stale_references)} verification job references in snapshots "
            f"for jobs that no longer exist"
        )
        recommendations.insights.append(
            'This is normal after verification jobs are deleted - references will disappear '
            'as old snapshots are pruned'
        )

    if not jobs:
        _raise_priority(recommendations, 'medium')
        recommendations.actions.append('Consider creating verification jobs to ensure backup integrity')

    disabled = [job for job in jobs if not job['enabled']]
    if disabled:
        recommendations.insights.append(f"{len(disabled)} verification jobs are disabled")

    if diagnostics.unverified_snapshots and diagnostics.total_snapshots:
        percent = diagnostics.unverified_snapshots / diagnostics.total_snapshots * 100
        recommendations.insights.append(
            f"{percent:.1f}% of snapshots ({diagnostics.unverified_snapshots}) have no verification data"
        )

    if not recommendations.actions and recommendations.priority == 'low':
        recommendations.insights.append('Verification system is operating normally')

    return recommendations


def analyze_verification(
    snapshots: Iterable[Snapshot],
    configured_jobs: Iterable[Mapping[str, Any]],
    now: Optional[float] = None,
    datastore: str = ''
) -> VerificationDiagnostics:
    """Analyze the verification state of one datastore.

    Args:
        snapshots: All snapshots of the datastore, across namespaces
        configured_jobs: Verification jobs, raw from ``/config/verify`` or normalized
        now: Reference time in epoch seconds (defaults to the current time)
        datastore: Datastore name, used to select the jobs that cover it

    Returns:
        VerificationDiagnostics; ``health_score`` is 'error' if analysis failed
    """
    now = time.time() if now is None else now
    try:
        jobs = [
            job if 'enabled' in job else normalize_verification_jobs([job])[0]
            for job in configured_jobs if job.get('id')
        ]
        configured_ids = {job['id'] for job in jobs}
        datastore_jobs = [job for job in jobs if not datastore or job.get('datastore') in (None, datastore)]

        diagnostics = VerificationDiagnostics(datastore=datastore)
        job_history: Counter = Counter()
        recent_cutoff = now - RECENT_FAILURE_WINDOW

        for snapshot in snapshots:
            diagnostics.total_snapshots += 1
            if not snapshot.is_verified:
                diagnostics.unverified_snapshots += 1
                continue

            diagnostics.verified_snapshots += 1
            job_id = verification_job_id(snapshot.verification_upid)
            if job_id:
                job_history[job_id] += 1

            if snapshot.verification_state != 'ok':
                diagnostics.failed_verifications += 1
                if snapshot.backup_time >= recent_cutoff:
                    diagnostics.recent_failures.append({
                        'backup_type': snapshot.backup_type,
                        'backup_id': snapshot.backup_id,
                        'backup_time': snapshot.backup_time,
                        'namespace': snapshot.namespace,
                        'verification_state': snapshot.verification_state,
                        'category': categorize_failure(snapshot.verification_state),
                    })

        diagnostics.health_score = health_score(
            diagnostics.total_snapshots,
            diagnostics.verified_snapshots,
            diagnostics.failed_verifications,
        )
        diagnostics.verification_jobs = list(job_history)
        diagnostics.stale_references = [
            {
                'job_id': job_id,
                'severity': 'low',
                'snapshot_count': count,
                'message': (
                    f"Verification job {job_id} no longer exists; the reference will "
                    f"disappear once old snapshots are pruned"
                ),
            }
            for job_id, count in job_history.items()
            if job_id not in configured_ids
        ]
        diagnostics.recommendations = _build_recommendations(diagnostics, datastore_jobs, job_history)
        return diagnostics

    except Exception as e:
        logger.error(f"Failed to analyze verification health for {datastore or 'datastore'}: {e}", exc_info=True)
        return VerificationDiagnostics(
            datastore=datastore,
            health_score='error',
            error=str(e),
            recommendations=VerificationRecommendations(
                priority='high',
                actions=['Failed to analyze verification system'],
                insights=[f"Error: {e}"],
            ),
        )


def check_verification_job_status(client, job_id: str) -> Dict[str, Any]:
    """Look up one verification job's configuration.

    Args:
        client: PBS API client
        job_id: Verification job id (e.g., 'v-3fb332a6-ba43')

    Returns:
        Dictionary with ``exists`` and, for existing jobs, its settings
    """
    result = client.fetch(f'/config/verify/{quote(job_id, safe="")}')
    if not result.ok:
        if result.status_code == 404:
            return {'exists': False, 'error': 'Verification job not found'}
        return {'exists': False, 'error': result.error}

    job = result.value
    if not job:
        return {'exists': False, 'error': 'Job configuration not found'}

    return {
        'exists': True,
        'config': job,
        'enabled': not job.get('disable', False),
        'schedule': job.get('schedule') or 'manual',
        'datastore': job.get('store'),
        'ignore_verified': job.get('ignore-verified', False),
        'outdated_after': job.get('outdated-after'),
    }
