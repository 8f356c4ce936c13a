import json
from types import SimpleNamespace

from run_discovery import DiscoveryRunner

from pulse_discovery.models import AggregateSnapshot, Guest


class StubOrchestrator:
    def __init__(self, snapshot):
        self.snapshot = snapshot
        self.metrics_requests = []

    def fetch_discovery_data(self, pve_clients, pbs_clients):
        return self.snapshot

    def fetch_metrics_data(self, running_vms, running_containers, pve_clients):
        self.metrics_requests.append(([g.vmid for g in running_vms], [g.vmid for g in running_containers]))
        return [{'id': g.vmid} for g in running_vms + running_containers]


def guest(vmid, status, guest_type='qemu'):
    return Guest(id=f'primary-pve1-{vmid}', vmid=vmid, name=f'guest-{vmid}', node='pve1',
                 type=guest_type, endpoint_id='primary', status=status)


def make_runner(tmp_path, snapshot):
    config = SimpleNamespace(snapshot_file=tmp_path / 'output' / 'snapshot.json', backup_history_days=365)
    return DiscoveryRunner(config, {}, {}, orchestrator=StubOrchestrator(snapshot))


def test_discovery_cycle_writes_snapshot(tmp_path):
    runner = make_runner(tmp_path, AggregateSnapshot(vms=[guest(100, 'running')]))

    runner.run_discovery_cycle()

    data = json.loads(runner.config.snapshot_file.read_text())
    assert data['vms'][0]['vmid'] == 100
    assert data['metrics'] == []
    assert data['generated'].endswith('Z')


def test_metrics_cycle_only_covers_running_guests(tmp_path):
    snapshot = AggregateSnapshot(
        vms=[guest(100, 'running'), guest(101, 'stopped')],
        containers=[guest(200, 'running', 'lxc')],
    )
    runner = make_runner(tmp_path, snapshot)
    runner.run_discovery_cycle()

    metrics = runner.run_metrics_cycle()

    assert runner.orchestrator.metrics_requests == [([100], [200])]
    assert metrics == [{'id': 100}, {'id': 200}]
    data = json.loads(runner.config.snapshot_file.read_text())
    assert data['metrics'] == metrics


def test_metrics_cycle_waits_for_first_discovery(tmp_path):
    runner = make_runner(tmp_path, AggregateSnapshot())

    assert runner.run_metrics_cycle() == []
    assert runner.write_snapshot() is None
