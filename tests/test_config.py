import pytest

from pulse_discovery.config import ConfigurationError, DiscoveryConfig

BASE_ENV = {
    'PROXMOX_HOST': 'https://pve1.lan:8006',
    'PROXMOX_TOKEN_ID': 'root@pam!pulse',
    'PROXMOX_TOKEN_SECRET': 'secret',
}


def make_config(**extra):
    env = dict(BASE_ENV)
    env.update(extra)
    return DiscoveryConfig(environ=env)


def test_primary_endpoint_defaults():
    config = make_config()

    assert len(config.pve_endpoints) == 1
    primary = config.pve_endpoints[0]
    assert primary.id == 'primary'
    assert primary.name == 'pve1.lan'
    assert primary.port == 8006
    assert primary.allow_self_signed_certs is True
    assert config.backup_history_days == 365
    assert config.discovery_interval == 30.0
    assert config.metric_interval == 2.0
    assert config.pbs_endpoints == []


def test_numbered_endpoints_stop_at_first_gap():
    config = make_config(
        PROXMOX_HOST_2='pve2.lan',
        PROXMOX_TOKEN_ID_2='root@pam!pulse',
        PROXMOX_TOKEN_SECRET_2='secret',
        PROXMOX_HOST_4='pve4.lan',
        PROXMOX_TOKEN_ID_4='root@pam!pulse',
        PROXMOX_TOKEN_SECRET_4='secret',
    )

    assert [e.id for e in config.pve_endpoints] == ['primary', 'endpoint_2']


def test_secondary_endpoint_without_credentials_is_skipped():
    config = make_config(PROXMOX_HOST_2='pve2.lan')
    assert [e.id for e in config.pve_endpoints] == ['primary']


def test_primary_without_credentials_is_an_error():
    with pytest.raises(ConfigurationError):
        DiscoveryConfig(environ={'PROXMOX_HOST': 'pve1.lan'})


def test_placeholder_values_are_skipped():
    with pytest.raises(ConfigurationError, match='placeholder'):
        DiscoveryConfig(environ={
            'PROXMOX_HOST': 'https://proxmox_host:8006',
            'PROXMOX_TOKEN_ID': 'user@pam!tokenid',
            'PROXMOX_TOKEN_SECRET': 'YOUR_API_SECRET_HERE',
        })


def test_no_endpoints_is_an_error():
    with pytest.raises(ConfigurationError):
        DiscoveryConfig(environ={})


def test_pbs_namespace_settings():
    config = make_config(
        PBS_HOST='pbs1.lan',
        PBS_TOKEN_ID='root@pam!pulse',
        PBS_TOKEN_SECRET='secret',
        PBS_NAMESPACE_INCLUDE='prod*, archive',
        PBS_HOST_2='pbs2.lan',
        PBS_TOKEN_ID_2='root@pam!pulse',
        PBS_TOKEN_SECRET_2='secret',
        PBS_NAMESPACE_2='tenant-a',
    )

    first, second = config.pbs_endpoints
    assert first.id == 'pbs_primary'
    assert first.port == 8007
    assert first.namespace_auto is True
    assert first.namespace_include == 'prod*, archive'
    assert second.id == 'pbs_endpoint_2'
    assert second.namespace == 'tenant-a'
    assert second.namespace_auto is False


def test_invalid_integer_falls_back_to_default():
    config = make_config(BACKUP_HISTORY_DAYS='lots')
    assert config.backup_history_days == 365


def test_non_positive_history_is_an_error():
    with pytest.raises(ConfigurationError):
        make_config(BACKUP_HISTORY_DAYS='0')
