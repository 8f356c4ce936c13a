"""PBS namespace discovery.

PBS offers no single call that lists every namespace of a datastore, so the
tree is walked breadth-first through the backup-group listings, plus a few
speculative probes for commonly used namespace names.
"""

import logging
from collections import deque
from typing import Iterable, List, Optional, Sequence, Union

from ..cache import TTLCache
from ..config import PbsEndpointConfig
from ..models import ROOT_NAMESPACE
from ..utils import matches_any, split_patterns

logger = logging.getLogger(__name__)

COMMON_NAMESPACE_NAMES = ('archive', 'backup', 'daily', 'weekly', 'monthly', 'prod', 'dev', 'test')
MAX_NAMESPACES = 1000
PROBE_TIMEOUT = 5

# A probe answered with one of these means "namespace does not exist"
MISSING_NAMESPACE_STATUSES = (403, 404)


def _is_root(namespace: str) -> bool:
    return namespace in ('', ROOT_NAMESPACE)


def filter_namespaces(
    namespaces: Iterable[str],
    include: Union[str, Sequence[str], None] = None,
    exclude: Union[str, Sequence[str], None] = None
) -> List[str]:
    """Apply include/exclude glob filters to a namespace list.

    Patterns may be given as a comma-separated string or a sequence. Exclude
    wins over include; an empty include list keeps everything not excluded.
    The root namespace matches as both '' and 'root'.

    Example:
        filter_namespaces(['root', 'archive', 'prod-archive'], 'archive', '')
        # ['archive']
    """
    include_patterns = split_patterns(include) if isinstance(include, str) or include is None else list(include)
    exclude_patterns = split_patterns(exclude) if isinstance(exclude, str) or exclude is None else list(exclude)

    result = []
    for namespace in namespaces:
        names = ['', ROOT_NAMESPACE] if _is_root(namespace) else [namespace]
        if exclude_patterns and any(matches_any(name, exclude_patterns) for name in names):
            continue
        if include_patterns and not any(matches_any(name, include_patterns) for name in names):
            continue
        result.append(namespace)
    return result


class NamespaceDiscovery:
    """Finds the namespaces to query for snapshots on a PBS datastore."""

    def __init__(self, cache: TTLCache):
        """Initialize namespace discovery.

        Args:
            cache: Namespace cache keyed by (endpoint id, datastore)
        """
        self.cache = cache

    def get_namespaces_to_query(self, client, datastore: str, config: PbsEndpointConfig) -> List[str]:
        """Namespaces of ``datastore`` that should be scanned for snapshots.

        Args:
            client: PBS API client
            datastore: Datastore name
            config: PBS endpoint configuration

        Returns:
            Namespace paths, '' standing for the root namespace
        """
        if not config.namespace_auto:
            return [config.namespace or '']

        cache_key = (config.id, datastore)
        namespaces = self.cache.get(cache_key)
        if namespaces is None:
            namespaces = self.discover(client, datastore)
            if namespaces is not None:
                self.cache.set(cache_key, namespaces)
                logger.info(
                    f"Discovered namespaces for {config.name}/{datastore}: "
                    f"{', '.join(n or ROOT_NAMESPACE for n in namespaces)}"
                )
            else:
                namespaces = ['']
        else:
            logger.debug(f"Using cached namespaces for {config.name}/{datastore}")

        filtered = filter_namespaces(namespaces, config.namespace_include, config.namespace_exclude)
        if len(filtered) != len(namespaces):
            logger.debug(f"Namespace filters kept {len(filtered)} of {len(namespaces)} for {datastore}")
        return filtered

    def discover(self, client, datastore: str) -> Optional[List[str]]:
        """Breadth-first walk of the namespace tree.

        Returns:
            Discovered namespaces (root first), or None if the root listing failed
        """
        discovered: List[str] = ['']
        seen = {''}
        frontier = deque([''])

        def add(namespace: str) -> bool:
            if namespace in seen or len(discovered) >= MAX_NAMESPACES:
                return False
            seen.add(namespace)
            discovered.append(namespace)
            frontier.append(namespace)
            return True

        while frontier:
            namespace = frontier.popleft()
            groups = self._list_groups(client, datastore, namespace)
            if groups is None:
                if namespace == '':
                    return None
                continue

            for group in groups:
                group_ns = group.get('ns') if isinstance(group, dict) else None
                if group_ns and not _is_root(group_ns):
                    add(group_ns)

            if namespace == '':
                for name in COMMON_NAMESPACE_NAMES:
                    if name in seen:
                        continue
                    if self._list_groups(client, datastore, name, probe=True) is not None:
                        add(name)

            if len(discovered) >= MAX_NAMESPACES:
                logger.warning(f"Stopped namespace discovery for {datastore} at {MAX_NAMESPACES} namespaces")
                break

        return discovered

    def _list_groups(self, client, datastore: str, namespace: str, probe: bool = False) -> Optional[list]:
        params = {'ns': namespace} if namespace else None
        result = client.fetch(f'/admin/datastore/{datastore}/groups', params=params, timeout=PROBE_TIMEOUT)
        if result.ok:
            return result.list_or_empty()

        if probe and result.status_code in MISSING_NAMESPACE_STATUSES:
            return None
        if probe:
            logger.debug(f"Probe of namespace '{namespace}' on {datastore} failed: {result.error}")
        else:
            logger.warning(f"Failed to list groups of namespace '{namespace or ROOT_NAMESPACE}' on {datastore}: {result.error}")
        return None

    def clear(self, endpoint_id: Optional[str] = None) -> None:
        """Forget cached namespaces for one PBS instance, or all of them."""
        if endpoint_id is None:
            self.cache.clear()
            return
        for key, _ in self.cache.items():
            if key[0] == endpoint_id:
                self.cache.delete(key)
