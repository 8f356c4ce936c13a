"""Shared fixtures: in-memory API clients and endpoint configs."""

import pytest

from pulse_discovery.api_client import APIRequestError, EndpointClient
from pulse_discovery.cache import DiscoveryCaches
from pulse_discovery.config import PbsEndpointConfig, PveEndpointConfig
from pulse_discovery.outcome import FetchResult


class FakeClient:
    """Stands in for ProxmoxAPIClient; answers from dictionaries.

    ``responses`` maps a path (optionally suffixed with '?ns=<namespace>') to
    the response data, or to a callable receiving the query params. Either
    may be a ``FetchResult`` to answer with a specific failure.
    ``errors`` maps a path to an HTTP status code (or None for a connection
    failure). Unknown paths answer 404.
    """

    def __init__(self, responses=None, errors=None, direct=None):
        self.responses = dict(responses or {})
        self.errors = dict(errors or {})
        self.direct = direct
        self.calls = []
        self.clones = []

    def _key(self, endpoint, params):
        if params and 'ns' in params:
            return f"{endpoint}?ns={params['ns']}"
        return endpoint

    def fetch(self, endpoint, params=None, timeout=None, retry=True):
        self.calls.append((endpoint, dict(params or {})))
        for key in (self._key(endpoint, params), endpoint):
            if key in self.errors:
                status = self.errors[key]
                return FetchResult.failure(f"{endpoint}: HTTP {status}", status_code=status)
            if key in self.responses:
                value = self.responses[key]
                if callable(value):
                    value = value(params)
                return value if isinstance(value, FetchResult) else FetchResult.success(value)
        return FetchResult.failure(f"{endpoint}: Not Found", status_code=404)

    def get(self, endpoint, params=None, timeout=None, retry=True):
        result = self.fetch(endpoint, params=params, timeout=timeout)
        if not result.ok:
            raise APIRequestError(endpoint, result.error, status_code=result.status_code)
        return result.value

    def get_cluster_status(self, timeout=None):
        return self.fetch('/cluster/status', timeout=timeout)

    def get_nodes(self, timeout=None):
        return self.fetch('/nodes', timeout=timeout)

    def get_version(self, timeout=None, retry=True):
        return self.fetch('/version', timeout=timeout)

    def clone_for_host(self, host, timeout, max_retries=0, retry_delay=0.5):
        self.clones.append((host, timeout, max_retries, retry_delay))
        return self.direct if self.direct is not None else FakeClient()

    def paths(self):
        return [path for path, _ in self.calls]


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start=0.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def pve_config(endpoint_id='primary', name='pve1', **overrides):
    values = dict(id=endpoint_id, name=name, host=f'{name}.lan', token_id='root@pam!pulse', token_secret='secret')
    values.update(overrides)
    return PveEndpointConfig(**values)


def pbs_config(endpoint_id='pbs_primary', name='pbs1', **overrides):
    values = dict(id=endpoint_id, name=name, host=f'{name}.lan', token_id='root@pam!pulse', token_secret='secret')
    values.update(overrides)
    return PbsEndpointConfig(**values)


def endpoint(client, config):
    return EndpointClient(client=client, config=config)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def caches(clock):
    return DiscoveryCaches(clock=clock)


DAY = 86400
VERIFY_UPID = r'UPID:pbs1:000004D2:0000162E:00000003:6650A1B0:verificationjob:store1\x3av\x2ddaily:root@pam:'


def pbs_responses(now, days=3):
    """A single-datastore PBS with one guest backed up daily for ``days`` days."""
    snapshots = [
        {
            'backup-type': 'vm',
            'backup-id': '100',
            'backup-time': now - d * DAY + 3600,
            'size': 1024,
            'owner': 'root@pam!pulse',
            'verification': {'state': 'ok', 'upid': VERIFY_UPID},
        }
        for d in range(1, days + 1)
    ]
    snapshots.append({'backup-type': 'vm', 'backup-id': '100', 'backup-time': now - 400 * DAY})

    def groups(params):
        if (params or {}).get('ns'):
            return FetchResult.failure('namespace not found', status_code=404)
        return [{'backup-type': 'vm', 'backup-id': '100', 'backup-count': days}]

    return {
        '/nodes': [{'node': 'pbs1'}],
        '/version': {'version': '3.2', 'release': '3'},
        '/subscription': {'status': 'active'},
        '/nodes/pbs1/tasks': [
            {
                'upid': 'UPID:pbs1:00000001:00000001:00000001:00000001:backup:store1\\x3avm\\x2f100:root@pam:',
                'node': 'pbs1',
                'worker_type': 'backup',
                'worker_id': 'store1:vm/100',
                'starttime': now - DAY + 3600 - 5,
                'endtime': now - DAY + 3600 + 120,
                'status': 'OK',
                'exitcode': 0,
                'user': 'root@pam',
            },
            {
                'upid': 'UPID:pbs1:00000002:00000002:00000002:00000002:garbage_collection:store1:root@pam:',
                'node': 'pbs1',
                'worker_type': 'garbage_collection',
                'worker_id': 'store1',
                'starttime': now - 2 * DAY,
                'endtime': now - 2 * DAY + 600,
                'status': 'OK',
                'user': 'root@pam',
            },
            {
                'upid': VERIFY_UPID,
                'node': 'pbs1',
                'worker_type': 'verificationjob',
                'worker_id': 'store1:v-daily',
                'starttime': now - DAY,
                'endtime': now - DAY + 300,
                'status': 'OK',
                'user': 'root@pam',
            },
        ],
        '/config/verify': [{'id': 'v-daily', 'store': 'store1', 'schedule': 'daily'}],
        '/status/datastore-usage': [{
            'store': 'store1',
            'total': 1000,
            'used': 400,
            'avail': 600,
            'gc-status': {'index-data-bytes': 3000, 'disk-bytes': 1000},
        }],
        '/admin/datastore/store1/groups': groups,
        '/admin/datastore/store1/snapshots': snapshots,
    }
