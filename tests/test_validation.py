import dataclasses

import pytest

from frameworks_automation.errors import ValidationError
from frameworks_automation.inventory import ManifestLoader
from frameworks_automation.validation import resolve_zookeeper_connect, validate, validate_edge


def _parse(data):
    return ManifestLoader().parse(data)


def test_valid_cluster_passes_and_is_not_modified(cluster):
    before = dataclasses.asdict(cluster)
    assert validate(cluster) is None
    assert validate(cluster) is None
    assert dataclasses.asdict(cluster) == before


def test_invalid_cluster_reports_the_same_error_every_time(cluster_data):
    cluster_data["services"]["bridge"] = {"host": "core-1", "port": 5432}
    manifest = _parse(cluster_data)
    before = dataclasses.asdict(manifest)
    errors = []
    for _ in range(2):
        with pytest.raises(ValidationError) as excinfo:
            validate(manifest)
        errors.append((str(excinfo.value), excinfo.value.field))
    assert errors[0] == errors[1]
    assert dataclasses.asdict(manifest) == before


def test_missing_version_is_rejected(cluster_data):
    del cluster_data["version"]
    with pytest.raises(ValidationError) as excinfo:
        validate(_parse(cluster_data))
    assert excinfo.value.field == "version"


def test_unknown_type_is_rejected(cluster_data):
    cluster_data["type"] = "galaxy"
    with pytest.raises(ValidationError, match="type must be one of"):
        validate(_parse(cluster_data))


def test_service_on_unknown_host_is_rejected(cluster_data):
    cluster_data["services"]["commodore"]["host"] = "core-9"
    with pytest.raises(ValidationError, match="unknown host 'core-9'") as excinfo:
        validate(_parse(cluster_data))
    assert excinfo.value.field == "services.commodore.host"


def test_disabled_entries_are_not_checked(cluster_data):
    cluster_data["services"]["signalman"] = {"enabled": False, "host": "nowhere", "mode": "podman"}
    validate(_parse(cluster_data))


def test_postgres_must_be_native(cluster_data):
    cluster_data["infrastructure"]["postgres"]["mode"] = "docker"
    with pytest.raises(ValidationError, match="unsupported mode 'docker'"):
        validate(_parse(cluster_data))


def test_redis_accepts_docker_and_native(cluster_data):
    for mode in ("docker", "native"):
        cluster_data["infrastructure"]["redis"]["mode"] = mode
        validate(_parse(cluster_data))


def test_kafka_without_zookeeper_connect_fails(cluster_data):
    del cluster_data["infrastructure"]["zookeeper"]
    with pytest.raises(ValidationError, match="zookeeper_connect") as excinfo:
        validate(_parse(cluster_data))
    assert excinfo.value.field == "infrastructure.kafka.zookeeper_connect"


def test_kafka_with_explicit_zookeeper_connect_passes(cluster_data):
    del cluster_data["infrastructure"]["zookeeper"]
    cluster_data["infrastructure"]["kafka"]["zookeeper_connect"] = " zk.internal:2181 "
    manifest = _parse(cluster_data)
    validate(manifest)
    assert resolve_zookeeper_connect(manifest) == "zk.internal:2181"


def test_zookeeper_connect_derived_from_ensemble_in_id_order(cluster_data):
    cluster_data["infrastructure"]["zookeeper"]["ensemble"] = [
        {"id": 2, "host": "core-2"},
        {"id": 1, "host": "core-1", "port": 2182},
    ]
    manifest = _parse(cluster_data)
    validate(manifest)
    assert resolve_zookeeper_connect(manifest) == "10.0.0.1:2182,10.0.0.2:2181"


def test_enabled_zookeeper_needs_an_ensemble(cluster_data):
    cluster_data["infrastructure"]["zookeeper"]["ensemble"] = []
    with pytest.raises(ValidationError, match="ensemble is empty"):
        validate(_parse(cluster_data))


def test_duplicate_broker_ids_are_rejected(cluster_data):
    cluster_data["infrastructure"]["kafka"]["brokers"].append({"id": 1, "host": "core-2"})
    with pytest.raises(ValidationError, match="duplicate id 1"):
        validate(_parse(cluster_data))


def test_port_collision_names_both_owners(cluster_data):
    cluster_data["services"]["bridge"] = {"host": "core-1", "port": 5432}
    with pytest.raises(ValidationError) as excinfo:
        validate(_parse(cluster_data))
    message = str(excinfo.value)
    assert "port 5432" in message
    assert message == "port 5432 on host core-1 is claimed by both postgres and service:bridge"
    assert excinfo.value.field == "hosts.core-1"


def test_default_ports_collide_on_shared_host(cluster_data):
    cluster_data["interfaces"]["foredeck"] = {"host": "core-2", "port": 18001}
    with pytest.raises(ValidationError, match="service:commodore and interface:foredeck"):
        validate(_parse(cluster_data))


def test_grpc_port_collision_is_labelled(cluster_data):
    cluster_data["interfaces"]["foredeck"] = {"host": "core-2", "port": 19001}
    with pytest.raises(ValidationError) as excinfo:
        validate(_parse(cluster_data))
    assert str(excinfo.value) == (
        "port 19001 on host core-2 is claimed by both service:commodore-grpc and interface:foredeck"
    )


def test_grpc_port_equal_to_http_port_is_claimed_once(cluster_data):
    cluster_data["services"]["decklog"] = {"host": "core-1"}
    validate(_parse(cluster_data))


def test_same_port_on_different_hosts_is_fine(cluster_data):
    cluster_data["services"]["bridge"] = {"hosts": ["core-1", "core-2"]}
    validate(_parse(cluster_data))


def _edge(**overrides):
    data = {
        "version": "1",
        "email": "ops@example.com",
        "nodes": [{"name": "edge-1", "ssh": "ubuntu@203.0.113.10"}],
    }
    data.update(overrides)
    return ManifestLoader().parse_edge(data)


def test_edge_manifest_passes():
    validate_edge(_edge())


def test_edge_manifest_requires_email():
    with pytest.raises(ValidationError, match="email"):
        validate_edge(_edge(email="not-an-address"))


def test_edge_manifest_rejects_duplicate_nodes():
    nodes = [{"name": "edge-1", "ssh": "a@h1"}, {"name": "edge-1", "ssh": "a@h2"}]
    with pytest.raises(ValidationError, match="duplicate node name"):
        validate_edge(_edge(nodes=nodes))


def test_edge_node_requires_ssh_target():
    with pytest.raises(ValidationError, match="ssh target"):
        validate_edge(_edge(nodes=[{"name": "edge-1"}]))
