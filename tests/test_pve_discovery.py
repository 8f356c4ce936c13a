import threading
import time

import pytest

from conftest import FakeClient, endpoint, pve_config

from pulse_discovery.fetchers.direct import DirectConnectionManager
from pulse_discovery.fetchers.pve import (
    MAX_CONCURRENT_NODE_FETCHES,
    NODE_FETCH_LIMITER,
    EndpointGroupFetcher,
    PveDiscoveryFetcher,
    parse_cluster_status,
)
from pulse_discovery.models import ClusterMembership, EndpointGroup
from pulse_discovery.outcome import settle_all

PROD = ClusterMembership('primary', 'cluster', cluster_id='prod', node_count=2)


def node_responses(name, vms=(), containers=(), storage=None, uptime=1000):
    return {
        f'/nodes/{name}/status': {
            'uptime': uptime,
            'cpu': 0.12,
            'memory': {'used': 2048, 'total': 8192},
            'rootfs': {'used': 10, 'total': 100},
            'cpuinfo': {'cpus': 8},
            'loadavg': ['0.10', '0.20', '0.30'],
        },
        f'/nodes/{name}/storage': storage if storage is not None else [{'storage': 'local', 'shared': 0, 'used': 1}],
        f'/nodes/{name}/qemu': list(vms),
        f'/nodes/{name}/lxc': list(containers),
    }


def standalone_client():
    responses = {
        '/cluster/status': [{'type': 'node', 'name': 'pve1', 'ip': '10.0.0.1', 'online': 1}],
        '/nodes': [{'node': 'pve1', 'status': 'online', 'maxcpu': 8, 'maxmem': 8192}],
    }
    responses.update(node_responses(
        'pve1',
        vms=[{'vmid': 100, 'name': 'web', 'status': 'running', 'cpu': 0.5}],
        containers=[{'vmid': 200, 'name': 'dns', 'status': 'stopped', 'tags': 'infra;dns'}],
    ))
    return FakeClient(responses)


def cluster_client(direct=None, storage=None):
    responses = {
        '/cluster/status': [
            {'type': 'cluster', 'name': 'prod', 'nodes': 2, 'quorate': 1},
            {'type': 'node', 'name': 'pve1', 'ip': '10.0.0.1', 'online': 1},
            {'type': 'node', 'name': 'pve2', 'ip': '10.0.0.2', 'online': 0},
        ],
        '/nodes': [{'node': 'pve1', 'status': 'online'}, {'node': 'pve2', 'status': 'offline'}],
    }
    responses.update(node_responses('pve1', vms=[{'vmid': 100, 'name': 'web', 'status': 'running'}], storage=storage))
    return FakeClient(responses, direct=direct)


def test_parse_cluster_status():
    name, ips, online = parse_cluster_status(cluster_client().responses['/cluster/status'])

    assert name == 'prod'
    assert ips == {'pve1': '10.0.0.1', 'pve2': '10.0.0.2'}
    assert online == {'pve1': True, 'pve2': False}


def test_standalone_endpoint_inventory():
    config = pve_config(name='homelab')

    result = PveDiscoveryFetcher().fetch_endpoint('primary', standalone_client(), config)

    node = result.nodes[0]
    assert node.display_name == 'homelab'
    assert node.cluster_identifier == 'primary'
    assert node.endpoint_type == 'standalone'
    assert node.status == 'online'
    assert node.mem == 2048
    assert node.disk == 10
    assert node.maxcpu == 8
    assert node.ip == '10.0.0.1'

    assert [vm.id for vm in result.vms] == ['primary-pve1-100']
    assert result.vms[0].status == 'running'
    container = result.containers[0]
    assert container.type == 'lxc'
    assert container.tags == ['infra', 'dns']
    assert container.cluster_identifier == 'primary'


def test_cluster_nodes_use_cluster_display_names_and_offline_stubs():
    client = cluster_client()

    result = PveDiscoveryFetcher().fetch_endpoint('primary', client, pve_config(), PROD)

    by_name = {n.node: n for n in result.nodes}
    assert by_name['pve1'].display_name == 'prod - pve1'
    assert by_name['pve1'].cluster_identifier == 'prod'
    offline = by_name['pve2']
    assert offline.status == 'offline'
    assert offline.cpu == 0 and offline.mem == 0 and offline.uptime == 0
    assert offline.cluster_identifier == 'prod'
    assert '/nodes/pve2/qemu' not in client.paths()
    assert [vm.cluster_identifier for vm in result.vms] == ['prod']


def test_node_list_failure_returns_empty_result():
    client = FakeClient(errors={'/nodes': 500, '/cluster/status': 500})

    result = PveDiscoveryFetcher().fetch_endpoint('primary', client, pve_config())

    assert result.is_empty


def test_failed_guest_listing_keeps_the_node():
    client = standalone_client()
    client.errors['/nodes/pve1/qemu'] = 500

    result = PveDiscoveryFetcher().fetch_endpoint('primary', client, pve_config())

    assert len(result.nodes) == 1
    assert result.vms == []
    assert len(result.containers) == 1


def test_local_storage_is_reread_over_direct_connection(caches):
    storage = [{'storage': 'local', 'shared': 0, 'used': 1}, {'storage': 'ceph', 'shared': 1, 'used': 9}]
    direct = FakeClient({
        '/version': {'version': '8.2.4'},
        '/nodes/pve1/storage': [{'storage': 'local', 'shared': 0, 'used': 42}],
    })
    client = cluster_client(direct=direct, storage=storage)
    fetcher = PveDiscoveryFetcher(DirectConnectionManager(caches.direct_connections))

    result = fetcher.fetch_endpoint('primary', client, pve_config(), PROD)
    fetcher.fetch_endpoint('primary', client, pve_config(), PROD)

    pve1 = next(n for n in result.nodes if n.node == 'pve1')
    assert {s['storage']: s['used'] for s in pve1.storage} == {'local': 42, 'ceph': 9}
    assert client.clones == [('10.0.0.1', 3, 1, 0.5)]


def test_unreachable_direct_connection_keeps_cluster_view(caches):
    client = cluster_client(direct=FakeClient())
    manager = DirectConnectionManager(caches.direct_connections)

    result = PveDiscoveryFetcher(manager).fetch_endpoint('primary', client, pve_config(), PROD)

    pve1 = next(n for n in result.nodes if n.node == 'pve1')
    assert pve1.storage == [{'storage': 'local', 'shared': 0, 'used': 1}]
    assert len(caches.direct_connections) == 0


@pytest.fixture
def group():
    return EndpointGroup(type='cluster', cluster_id='prod', primary_endpoint_id='a', backup_endpoint_ids=['b'])


def test_group_fails_over_to_backup_endpoint(group):
    clients = {
        'a': endpoint(FakeClient(errors={'/nodes': 500}), pve_config('a', 'pve-a')),
        'b': endpoint(cluster_client(), pve_config('b', 'pve-b')),
    }

    result = EndpointGroupFetcher(PveDiscoveryFetcher()).fetch_group(group, clients)

    assert result.source_endpoint == 'b'
    assert len(result.nodes) == 2


def test_group_returns_none_when_every_endpoint_fails(group):
    clients = {
        'a': endpoint(FakeClient(errors={'/nodes': 500}), pve_config('a', 'pve-a')),
        'b': endpoint(FakeClient(errors={'/nodes': 500}), pve_config('b', 'pve-b')),
    }

    assert EndpointGroupFetcher(PveDiscoveryFetcher()).fetch_group(group, clients) is None


def test_node_fetches_share_one_process_wide_cap():
    lock = threading.Lock()
    state = {'active': 0, 'peak': 0}

    def slow_status(params):
        with lock:
            state['active'] += 1
            state['peak'] = max(state['peak'], state['active'])
        time.sleep(0.05)
        with lock:
            state['active'] -= 1
        return {'uptime': 1, 'cpu': 0.1}

    def busy_client(prefix):
        names = [f'{prefix}-node{i}' for i in range(6)]
        responses = {'/cluster/status': [], '/nodes': [{'node': n, 'status': 'online'} for n in names]}
        for name in names:
            responses.update(node_responses(name))
            responses[f'/nodes/{name}/status'] = slow_status
        return FakeClient(responses)

    fetchers = {'a': PveDiscoveryFetcher(), 'b': PveDiscoveryFetcher()}
    assert fetchers['a'].limiter is fetchers['b'].limiter is NODE_FETCH_LIMITER

    outcomes = settle_all({
        endpoint_id: (lambda e=endpoint_id: fetchers[e].fetch_endpoint(e, busy_client(e), pve_config(e, e)))
        for endpoint_id in fetchers
    })

    assert [len(outcomes[e].value.nodes) for e in ('a', 'b')] == [6, 6]
    assert 1 <= state['peak'] <= MAX_CONCURRENT_NODE_FETCHES
