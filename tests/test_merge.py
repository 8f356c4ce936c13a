import pytest

from pulse_discovery.fetchers.merge import NodeMerger, merge_guests
from pulse_discovery.models import Guest, Node


def make_node(name, endpoint_id='a', status='online', cluster='prod', uptime=100, cpu=0.1):
    return Node(
        node=name,
        id=f'{endpoint_id}-{name}',
        endpoint_id=endpoint_id,
        display_name=f'{cluster} - {name}',
        cluster_identifier=cluster,
        status=status,
        uptime=uptime,
        cpu=cpu,
    )


def make_guest(vmid, endpoint_id='a', node='pve1', status='running', cluster='prod'):
    return Guest(
        id=f'{endpoint_id}-{node}-{vmid}',
        vmid=vmid,
        name=f'guest-{vmid}',
        node=node,
        type='qemu',
        endpoint_id=endpoint_id,
        cluster_identifier=cluster,
        status=status,
    )


@pytest.fixture
def merger(caches):
    return NodeMerger(caches.last_known_nodes)


def test_guest_merge_prefers_running_copy():
    stopped = make_guest(100, endpoint_id='a', status='stopped')
    running = make_guest(100, endpoint_id='b', status='running')

    merged = merge_guests([stopped, running])

    assert merged == [running]


def test_guest_merge_keeps_first_when_equal():
    first = make_guest(100, endpoint_id='a')
    second = make_guest(100, endpoint_id='b')

    assert merge_guests([first, second]) == [first]


def test_guest_merge_keys_by_node_and_vmid():
    guests = [make_guest(100, cluster='prod'), make_guest(100, 'b', cluster='b'), make_guest(100, node='pve2')]
    assert [(g.node, g.vmid) for g in merge_guests(guests)] == [('pve1', 100), ('pve2', 100)]


def test_guest_merge_is_idempotent():
    guests = [make_guest(100, 'a', status='stopped'), make_guest(100, 'b'), make_guest(101, 'a')]

    once = merge_guests(guests)

    assert merge_guests(once) == once


def test_one_node_per_name(merger):
    nodes = [make_node('pve1', 'a'), make_node('pve1', 'b'), make_node('pve2', 'a')]

    merged = merger.merge_nodes(nodes)

    assert sorted(n.node for n in merged) == ['pve1', 'pve2']


def test_online_observation_wins_and_flags_transition(merger):
    online = make_node('pve1', 'a', status='online')
    offline = make_node('pve1', 'b', status='offline', uptime=0, cpu=0)

    merged = merger.merge_nodes([online, offline])

    assert len(merged) == 1
    assert merged[0].status == 'online'
    assert merged[0].possible_transition is True
    assert online.possible_transition is False


def test_longer_uptime_wins_between_equal_status(merger):
    short = make_node('pve1', 'a', uptime=10)
    long = make_node('pve1', 'b', uptime=1000)

    assert merger.merge_nodes([short, long])[0].endpoint_id == 'b'


def test_node_merge_is_idempotent(merger):
    nodes = [make_node('pve1', 'a'), make_node('pve1', 'b', status='offline'), make_node('pve2', 'b')]

    once = merger.merge_nodes(nodes)

    assert merger.merge_nodes(once) == once


def test_last_known_nodes_backfill_full_outage(merger, clock):
    merger.merge_nodes([make_node('pve1'), make_node('pve2')])

    clock.advance(30)
    restored = merger.merge_nodes([])

    assert sorted(n.node for n in restored) == ['pve1', 'pve2']
    assert all(n.status == 'offline' and n.from_cache for n in restored)


def test_backfill_expires_after_ttl(merger, clock):
    merger.merge_nodes([make_node('pve1')])

    clock.advance(61)

    assert merger.merge_nodes([]) == []


def test_no_backfill_while_any_node_is_online(merger):
    merger.merge_nodes([make_node('pve1'), make_node('pve2')])

    merged = merger.merge_nodes([make_node('pve1')])

    assert [n.node for n in merged] == ['pve1']


def test_same_node_under_two_identities_survives_once(merger):
    nodes = [make_node('pve1', 'a', cluster='prod'), make_node('pve1', 'b', cluster='b', uptime=5)]

    merged = merger.merge_nodes(nodes)

    assert [(n.endpoint_id, n.node) for n in merged] == [('a', 'pve1')]
