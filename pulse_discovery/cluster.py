"""Cluster membership detection and endpoint grouping."""

import logging
from typing import Dict, List, Mapping

from .cache import TTLCache
from .models import ClusterMembership, EndpointGroup
from .outcome import settle_all

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 5


def classify_cluster_status(endpoint_id: str, entries) -> ClusterMembership:
    """Classify an endpoint from its ``/cluster/status`` entries.

    A ``cluster`` entry with more than one node makes the endpoint a cluster
    member; anything else is standalone.
    """
    cluster_entry = next(
        (e for e in entries or [] if isinstance(e, dict) and e.get('type') == 'cluster'),
        None
    )
    if cluster_entry is None:
        return ClusterMembership(endpoint_id=endpoint_id, type='standalone')

    node_count = int(cluster_entry.get('nodes') or 1)
    quorate = bool(cluster_entry.get('quorate')) if 'quorate' in cluster_entry else None
    if node_count > 1 and cluster_entry.get('name'):
        return ClusterMembership(
            endpoint_id=endpoint_id,
            type='cluster',
            cluster_id=cluster_entry['name'],
            node_count=node_count,
            quorate=quorate,
        )
    return ClusterMembership(endpoint_id=endpoint_id, type='standalone', node_count=node_count, quorate=quorate)


class ClusterMembershipDetector:
    """Classifies PVE endpoints and groups those that reach the same cluster."""

    def __init__(self, cache: TTLCache):
        """Initialize detector.

        Args:
            cache: Cluster membership cache keyed by endpoint id
        """
        self.cache = cache

    def _probe(self, endpoint_id: str, client) -> ClusterMembership:
        result = client.get_cluster_status(timeout=PROBE_TIMEOUT)
        if not result.ok:
            logger.warning(f"Cluster status probe failed for {endpoint_id}, treating as standalone: {result.error}")
            return ClusterMembership(endpoint_id=endpoint_id, type='standalone', error=result.error)
        return classify_cluster_status(endpoint_id, result.list_or_empty())

    def get_memberships(self, endpoint_clients: Mapping) -> Dict[str, ClusterMembership]:
        """Classify every endpoint, probing only those without a fresh cache entry.

        Args:
            endpoint_clients: Mapping of endpoint id to EndpointClient

        Returns:
            Mapping of endpoint id to ClusterMembership
        """
        memberships: Dict[str, ClusterMembership] = {}
        to_probe = {}
        for endpoint_id, endpoint_client in endpoint_clients.items():
            cached = self.cache.get(endpoint_id)
            if cached is not None:
                memberships[endpoint_id] = cached
            else:
                to_probe[endpoint_id] = (
                    lambda eid=endpoint_id, c=endpoint_client.client: self._probe(eid, c)
                )

        for endpoint_id, outcome in settle_all(to_probe).items():
            if outcome.ok:
                membership = outcome.value
            else:
                membership = ClusterMembership(endpoint_id=endpoint_id, type='standalone', error=outcome.error)

            # Failed probes fall back to standalone for this cycle only
            if membership.error is None:
                self.cache.set(endpoint_id, membership)
                logger.info(
                    f"Endpoint {endpoint_id}: {membership.type}"
                    + (f" (cluster {membership.cluster_id}, {membership.node_count} nodes)"
                       if membership.type == 'cluster' else '')
                )
            memberships[endpoint_id] = membership

        return memberships

    def detect(self, endpoint_clients: Mapping) -> List[EndpointGroup]:
        """Classify endpoints and build one group per physical cluster."""
        return self.group(self.get_memberships(endpoint_clients))

    @staticmethod
    def group(memberships: Mapping[str, ClusterMembership]) -> List[EndpointGroup]:
        """Group endpoints by cluster id; the first member after ordering is primary.

        Members are ordered by (probe succeeded first, endpoint id ascending).
        Standalone endpoints each form their own group.
        """
        by_cluster: Dict[str, List[ClusterMembership]] = {}
        groups: List[EndpointGroup] = []

        for membership in memberships.values():
            if membership.type == 'cluster' and membership.cluster_id:
                by_cluster.setdefault(membership.cluster_id, []).append(membership)
            else:
                groups.append(EndpointGroup(type='standalone', primary_endpoint_id=membership.endpoint_id))

        for cluster_id, members in by_cluster.items():
            ordered = sorted(members, key=lambda m: (m.error is not None, m.endpoint_id))
            groups.append(EndpointGroup(
                type='cluster',
                cluster_id=cluster_id,
                primary_endpoint_id=ordered[0].endpoint_id,
                backup_endpoint_ids=[m.endpoint_id for m in ordered[1:]],
            ))
            if len(ordered) > 1:
                logger.debug(
                    f"Cluster {cluster_id}: primary {ordered[0].endpoint_id}, "
                    f"backups {', '.join(m.endpoint_id for m in ordered[1:])}"
                )

        groups.sort(key=lambda g: g.primary_endpoint_id)
        return groups
