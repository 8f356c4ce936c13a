from conftest import FakeClient, endpoint, pve_config

from pulse_discovery.cluster import ClusterMembershipDetector, classify_cluster_status
from pulse_discovery.models import ClusterMembership

PROD_STATUS = [
    {'type': 'cluster', 'name': 'prod', 'nodes': 3, 'quorate': 1},
    {'type': 'node', 'name': 'pve1', 'ip': '10.0.0.1', 'online': 1},
    {'type': 'node', 'name': 'pve2', 'ip': '10.0.0.2', 'online': 1},
    {'type': 'node', 'name': 'pve3', 'ip': '10.0.0.3', 'online': 1},
]


def test_multi_node_cluster_entry_classifies_as_cluster():
    membership = classify_cluster_status('primary', PROD_STATUS)
    assert membership.type == 'cluster'
    assert membership.cluster_id == 'prod'
    assert membership.node_count == 3
    assert membership.quorate is True


def test_single_node_or_missing_cluster_entry_is_standalone():
    assert classify_cluster_status('a', [{'type': 'cluster', 'name': 'solo', 'nodes': 1}]).type == 'standalone'
    assert classify_cluster_status('a', [{'type': 'node', 'name': 'pve'}]).type == 'standalone'


def test_probe_error_falls_back_to_standalone(caches):
    detector = ClusterMembershipDetector(caches.cluster_membership)
    client = FakeClient(errors={'/cluster/status': 500})

    memberships = detector.get_memberships({'primary': endpoint(client, pve_config())})

    assert memberships['primary'].type == 'standalone'
    assert memberships['primary'].error


def test_membership_cached_until_ttl_expires(caches, clock):
    detector = ClusterMembershipDetector(caches.cluster_membership)
    client = FakeClient({'/cluster/status': PROD_STATUS})
    clients = {'primary': endpoint(client, pve_config())}

    detector.get_memberships(clients)
    clock.advance(299)
    detector.get_memberships(clients)
    assert client.paths().count('/cluster/status') == 1

    clock.advance(2)
    detector.get_memberships(clients)
    assert client.paths().count('/cluster/status') == 2


def test_grouping_orders_healthy_members_first():
    memberships = {
        'a': ClusterMembership('a', 'cluster', cluster_id='prod', node_count=3, error='flaky'),
        'b': ClusterMembership('b', 'cluster', cluster_id='prod', node_count=3),
        'c': ClusterMembership('c', 'cluster', cluster_id='prod', node_count=3),
        'solo': ClusterMembership('solo', 'standalone'),
    }

    groups = ClusterMembershipDetector.group(memberships)

    assert len(groups) == 2
    prod = next(g for g in groups if g.cluster_id == 'prod')
    assert prod.primary_endpoint_id == 'b'
    assert prod.backup_endpoint_ids == ['c', 'a']
    solo = next(g for g in groups if g.type == 'standalone')
    assert solo.endpoint_ids == ['solo']
