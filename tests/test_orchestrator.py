import time

import pytest

from conftest import FakeClient, endpoint, pbs_config, pbs_responses, pve_config

from pulse_discovery import orchestrator as orchestrator_module
from pulse_discovery.orchestrator import DiscoveryOrchestrator, get_default_orchestrator

PROD_STATUS = [
    {'type': 'cluster', 'name': 'prod', 'nodes': 3, 'quorate': 1},
    {'type': 'node', 'name': 'pve1', 'ip': '10.0.0.1', 'online': 1},
    {'type': 'node', 'name': 'pve2', 'ip': '10.0.0.2', 'online': 1},
    {'type': 'node', 'name': 'pve3', 'ip': '10.0.0.3', 'online': 1},
]


def prod_client(nodes_error=None, status_error=None):
    responses = {
        '/cluster/status': PROD_STATUS,
        '/nodes': [{'node': name, 'status': 'online'} for name in ('pve1', 'pve2', 'pve3')],
    }
    for index, name in enumerate(('pve1', 'pve2', 'pve3')):
        responses[f'/nodes/{name}/status'] = {'uptime': 1000 + index, 'cpu': 0.1, 'memory': {'used': 1, 'total': 2}}
        responses[f'/nodes/{name}/storage'] = []
        responses[f'/nodes/{name}/qemu'] = [{'vmid': 100 + index, 'name': f'vm-{index}', 'status': 'running'}]
        responses[f'/nodes/{name}/lxc'] = []
    errors = {}
    if nodes_error:
        errors['/nodes'] = nodes_error
    if status_error:
        errors['/cluster/status'] = status_error
    return FakeClient(responses, errors=errors)


@pytest.fixture
def orchestrator(caches):
    return DiscoveryOrchestrator(caches=caches)


@pytest.fixture
def pve_clients():
    return {
        'endpoint_a': endpoint(prod_client(nodes_error=500), pve_config('endpoint_a', 'pve-a')),
        'endpoint_b': endpoint(prod_client(), pve_config('endpoint_b', 'pve-b')),
    }


def test_cluster_seen_through_two_endpoints_yields_each_node_once(orchestrator, pve_clients):
    snapshot = orchestrator.fetch_discovery_data(pve_clients, {})

    assert sorted(n.node for n in snapshot.nodes) == ['pve1', 'pve2', 'pve3']
    assert all(n.endpoint_id == 'endpoint_b' for n in snapshot.nodes)
    assert all(n.cluster_identifier == 'prod' for n in snapshot.nodes)
    assert sorted(vm.vmid for vm in snapshot.vms) == [100, 101, 102]
    assert snapshot.pbs == []


def test_healthy_endpoints_are_not_queried_twice(orchestrator):
    clients = {
        'endpoint_a': endpoint(prod_client(), pve_config('endpoint_a', 'pve-a')),
        'endpoint_b': endpoint(prod_client(), pve_config('endpoint_b', 'pve-b')),
    }

    snapshot = orchestrator.fetch_discovery_data(clients, {})

    assert len(snapshot.nodes) == 3
    assert '/nodes' not in clients['endpoint_b'].client.paths()


def test_member_with_failed_cluster_status_is_not_double_counted(orchestrator):
    clients = {
        'endpoint_a': endpoint(prod_client(), pve_config('endpoint_a', 'pve-a')),
        'endpoint_b': endpoint(prod_client(status_error=500), pve_config('endpoint_b', 'pve-b')),
    }

    snapshot = orchestrator.fetch_discovery_data(clients, {})

    assert sorted(n.node for n in snapshot.nodes) == ['pve1', 'pve2', 'pve3']
    assert sorted((vm.node, vm.vmid) for vm in snapshot.vms) == [('pve1', 100), ('pve2', 101), ('pve3', 102)]


def test_aggregate_includes_pbs_and_task_summary(orchestrator, pve_clients):
    pbs_client = FakeClient(pbs_responses(int(time.time())))
    pbs_clients = {'pbs_primary': endpoint(pbs_client, pbs_config())}

    snapshot = orchestrator.fetch_discovery_data(pve_clients, pbs_clients)

    assert len(snapshot.pbs) == 1
    assert snapshot.pbs[0].status == 'ok'
    assert snapshot.aggregated_pbs_task_summary == {'total': 5, 'ok': 5, 'failed': 0}
    assert len(snapshot.all_pbs_tasks) == 5

    data = snapshot.to_dict()
    assert set(data) == {'nodes', 'vms', 'containers', 'pbs', 'pveBackups', 'allPbsTasks', 'aggregatedPbsTaskSummary'}
    assert set(data['pveBackups']) == {'backupTasks', 'storageBackups', 'guestSnapshots'}
    assert data['pbs'][0]['backupTasks']['summary']['ok'] == 3


def test_unexpected_pbs_failure_is_reported_offline(orchestrator, monkeypatch):
    def explode(endpoint_id, endpoint_client, now=None):
        raise RuntimeError('boom')

    monkeypatch.setattr(orchestrator.pbs_fetcher, 'fetch_instance', explode)
    pbs_clients = {'pbs_primary': endpoint(FakeClient(), pbs_config())}

    instances = orchestrator.discover_pbs(pbs_clients)

    assert len(instances) == 1
    assert instances[0].status == 'offline'
    assert 'boom' in instances[0].message


def test_cycle_without_endpoints_is_empty(orchestrator):
    snapshot = orchestrator.fetch_discovery_data({}, {})

    assert snapshot.nodes == [] and snapshot.pbs == []
    assert snapshot.aggregated_pbs_task_summary == {'total': 0, 'ok': 0, 'failed': 0}


def test_metrics_cycle_never_raises(orchestrator, pve_clients, monkeypatch):
    def explode(*args):
        raise RuntimeError('boom')

    monkeypatch.setattr(orchestrator.metrics_fetcher, 'fetch_metrics', explode)

    assert orchestrator.fetch_metrics_data([], [], pve_clients) == []


def test_default_orchestrator_is_shared():
    assert get_default_orchestrator() is get_default_orchestrator()


def test_default_orchestrator_uses_configured_history_window(monkeypatch):
    monkeypatch.setattr(orchestrator_module, '_default_orchestrator', None)
    monkeypatch.setenv('BACKUP_HISTORY_DAYS', '30')

    default = get_default_orchestrator()

    assert default.pbs_fetcher.backup_history_days == 30
    assert default.pve_backup_fetcher.backup_history_days == 30
