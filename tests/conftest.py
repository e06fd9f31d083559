import copy

import pytest

from frameworks_automation.inventory import ManifestLoader

CLUSTER = {
    "version": "1",
    "type": "cluster",
    "cluster_id": "central-1",
    "hosts": {
        "core-1": {"address": "10.0.0.1", "roles": ["database"]},
        "core-2": {"address": "10.0.0.2", "roles": ["apps"]},
    },
    "infrastructure": {
        "postgres": {
            "enabled": True,
            "host": "core-1",
            "databases": ["commodore", {"name": "purser", "owner": "billing"}],
        },
        "redis": {"enabled": True, "instances": [{"name": "platform", "host": "core-1"}]},
        "zookeeper": {"enabled": True, "ensemble": [{"id": 1, "host": "core-1"}]},
        "kafka": {"enabled": True, "brokers": [{"id": 1, "host": "core-1"}], "topics": ["analytics_events"]},
        "clickhouse": {"enabled": True, "host": "core-2"},
    },
    "services": {
        "quartermaster": {"host": "core-1"},
        "privateer": {"host": "core-1", "mode": "native", "binary_url": "https://downloads.example.com/privateer"},
        "commodore": {"host": "core-2"},
        "foghorn": {"hosts": ["core-1", "core-2"]},
    },
    "interfaces": {"chartroom": {"host": "core-2"}},
}


@pytest.fixture
def cluster_data():
    return copy.deepcopy(CLUSTER)


@pytest.fixture
def cluster(cluster_data):
    return ManifestLoader().parse(cluster_data)
