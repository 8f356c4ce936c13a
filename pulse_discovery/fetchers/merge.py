"""Deduplication of nodes and guests observed through several endpoints."""

import logging
from dataclasses import replace
from typing import Dict, Iterable, List, Tuple

from ..cache import TTLCache
from ..models import Guest, Node

logger = logging.getLogger(__name__)


def _should_replace(kept: Node, incoming: Node) -> bool:
    if incoming.status == 'online' and kept.status != 'online':
        return True
    if incoming.status == kept.status and (incoming.uptime or 0) > (kept.uptime or 0):
        return True
    if incoming.cpu is not None and kept.cpu is None:
        return True
    return False


def merge_guests(all_guests: Iterable[Guest]) -> List[Guest]:
    """Collapse guests seen more than once; a running copy wins, else the first seen.

    Guests are keyed by (node, vmid). Applying the merge
    to its own output returns the same list.
    """
    merged: Dict[Tuple[str, int], Guest] = {}
    for guest in all_guests:
        key = (guest.node, guest.vmid)
        kept = merged.get(key)
        if kept is None:
            merged[key] = guest
        elif guest.status == 'running' and kept.status != 'running':
            merged[key] = guest
    return list(merged.values())


class NodeMerger:
    """Merges node observations and bridges full outages from a last-known-good cache."""

    def __init__(self, last_known_nodes: TTLCache):
        """Initialize merger.

        Args:
            last_known_nodes: Cache of recently online nodes keyed by node name
        """
        self.last_known_nodes = last_known_nodes

    def merge_nodes(self, all_nodes: Iterable[Node]) -> List[Node]:
        """Keep exactly one node per node name.

        When no node at all is online afterwards, nodes seen online within
        the cache TTL are added back as offline entries flagged ``from_cache``.
        """
        merged: Dict[str, Node] = {}
        for node in all_nodes:
            key = node.node
            kept = merged.get(key)
            if kept is None:
                merged[key] = node
            elif kept.status == 'online' and node.status == 'offline':
                logger.debug(f"Node {node.node} reported offline by {node.endpoint_id} but online elsewhere")
                merged[key] = replace(kept, possible_transition=True)
            elif _should_replace(kept, node):
                merged[key] = node

        online = [key for key, node in merged.items() if node.status == 'online']
        if online:
            for key in online:
                self.last_known_nodes.set(key, merged[key])
        else:
            backfilled = 0
            for key, cached in self.last_known_nodes.items():
                if key not in merged:
                    merged[key] = replace(cached, status='offline', from_cache=True)
                    backfilled += 1
            if backfilled:
                logger.warning(f"No nodes online; restored {backfilled} node(s) from last-known-good cache")

        self.last_known_nodes.cleanup_expired()
        return list(merged.values())

    @staticmethod
    def merge_guests(all_guests: Iterable[Guest]) -> List[Guest]:
        return merge_guests(all_guests)
