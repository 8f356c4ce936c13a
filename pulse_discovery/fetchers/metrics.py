"""Live metrics for running guests."""

import logging
from typing import Any, Dict, List, Mapping, Optional

from ..models import Guest
from ..outcome import settle_all
from .base import RESOURCE_TIMEOUT, BaseFetcher

logger = logging.getLogger(__name__)

MAX_WORKERS = 10

# PVE answers 400 for a guest that stopped between discovery and metrics
GUEST_STOPPED_STATUS = 400


class MetricsFetcher(BaseFetcher):
    """Fetches RRD history and current status for running guests."""

    def fetch_metrics(
        self,
        running_vms: List[Guest],
        running_containers: List[Guest],
        pve_clients: Mapping
    ) -> List[Dict[str, Any]]:
        """Fetch metrics for every running guest.

        Args:
            running_vms: Running VMs from the last discovery cycle
            running_containers: Running containers from the last discovery cycle
            pve_clients: Mapping of endpoint id to EndpointClient

        Returns:
            One metric dict per guest that answered
        """
        metrics = self.run(running_vms, running_containers, pve_clients)
        return metrics if metrics is not None else []

    def collect(self, running_vms, running_containers, pve_clients) -> List[Dict[str, Any]]:
        guests = list(running_vms) + list(running_containers)
        logger.debug(f"Fetching metrics for {len(running_vms)} VM(s), {len(running_containers)} container(s)")

        calls = {}
        missing_endpoints = set()
        for guest in guests:
            endpoint_client = pve_clients.get(guest.endpoint_id)
            if endpoint_client is None:
                missing_endpoints.add(guest.endpoint_id)
                continue
            calls[guest.id] = lambda g=guest, ec=endpoint_client: self._fetch_guest_metrics(g, ec)

        for endpoint_id in sorted(missing_endpoints):
            logger.warning(f"No API client found for endpoint: {endpoint_id}")

        metrics = []
        for guest_id, outcome in settle_all(calls, max_workers=MAX_WORKERS).items():
            if not outcome.ok:
                logger.error(f"Failed to get metrics for {guest_id}: {outcome.error}")
            elif outcome.value is not None:
                metrics.append(outcome.value)

        logger.debug(f"Completed metrics fetch. Got data for {len(metrics)} guests.")
        return metrics

    def _fetch_guest_metrics(self, guest: Guest, endpoint_client) -> Optional[Dict[str, Any]]:
        client = endpoint_client.client
        endpoint_name = endpoint_client.config.name or guest.endpoint_id
        base = f'/nodes/{guest.node}/{guest.type}/{guest.vmid}'

        outcomes = settle_all({
            'rrd': lambda: client.fetch(
                f'{base}/rrddata',
                params={'timeframe': 'hour', 'cf': 'AVERAGE'},
                timeout=RESOURCE_TIMEOUT,
            ),
            'current': lambda: client.fetch(f'{base}/status/current', timeout=RESOURCE_TIMEOUT),
        })

        for outcome in outcomes.values():
            if outcome.ok:
                continue
            if outcome.status_code == GUEST_STOPPED_STATUS:
                logger.warning(
                    f"[{endpoint_name}] Guest {guest.type} {guest.vmid} ({guest.name}) on node {guest.node} "
                    f"might be stopped or inaccessible (Status: 400). Skipping metrics."
                )
            else:
                logger.error(
                    f"[{endpoint_name}] Failed to get metrics for {guest.type} {guest.vmid} "
                    f"({guest.name}) on node {guest.node}: {outcome.error}"
                )
            return None

        return {
            'id': guest.vmid,
            'guestName': guest.name,
            'node': guest.node,
            'type': guest.type,
            'endpointId': guest.endpoint_id,
            'endpointName': endpoint_name,
            'data': outcomes['rrd'].list_or_empty(),
            'current': outcomes['current'].value_or(None),
        }
