import re
from pathlib import Path
import textwrap

import pytest

from frameworks_automation.errors import ManifestError
from frameworks_automation.inventory import ManifestLoader


def test_loads_cluster_manifest(tmp_path: Path) -> None:
    path = tmp_path / "cluster.yaml"
    path.write_text(
        textwrap.dedent(
            """
            version: "1"
            type: cluster
            cluster_id: central-1
            hosts:
              core-1:
                address: 10.0.0.1
                roles: database
            infrastructure:
              postgres:
                enabled: true
                engine: yugabyte
                host: core-1
                port: 5433
                databases:
                  - commodore
                  - name: purser
                    owner: billing
            services:
              foghorn:
                hosts: [core-1]
                depends_on: commodore
                cluster: media-1
            """
        ).strip()
    )

    manifest = ManifestLoader().load(path)

    assert manifest.type == "cluster"
    assert manifest.hosts["core-1"].roles == ["database"]
    assert manifest.hosts["core-1"].user == "root"
    pg = manifest.infrastructure.postgres
    assert (pg.engine, pg.port) == ("yugabyte", 5433)
    assert [(db.name, db.owner) for db in pg.databases] == [("commodore", None), ("purser", "billing")]
    foghorn = manifest.services["foghorn"]
    assert foghorn.depends_on == ["commodore"]
    assert foghorn.all_hosts() == ["core-1"]
    assert manifest.resolve_cluster("foghorn") == "media-1"
    assert manifest.resolve_cluster("commodore") == "central-1"


def test_yaml_syntax_error_reports_position(tmp_path: Path) -> None:
    path = tmp_path / "broken.yaml"
    path.write_text("version: 1\nhosts:\n  core-1: [unterminated\n")
    with pytest.raises(ManifestError) as excinfo:
        ManifestLoader().load(path)
    assert excinfo.value.line is not None
    assert excinfo.value.column is not None
    assert str(excinfo.value).startswith(f"{path}:")


def test_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(ManifestError, match="missing.yaml"):
        ManifestLoader().load(tmp_path / "missing.yaml")


@pytest.mark.parametrize(
    "data,message",
    [
        (["not", "a", "mapping"], "manifest must be a mapping"),
        ({"hosts": ["core-1"]}, "hosts must be a mapping"),
        ({"services": {"commodore": "core-1"}}, "services.commodore must be a mapping"),
        ({"infrastructure": {"kafka": {"brokers": [{"id": "one"}]}}}, "brokers\\[1\\].id must be an integer"),
        (
            {"infrastructure": {"kafka": {"brokers": [{"id": 1}, {"host": "core-2"}]}}},
            "infrastructure.kafka.brokers\\[2\\].id is required",
        ),
        (
            {"infrastructure": {"zookeeper": {"ensemble": [{"host": "core-1", "id": ""}]}}},
            "infrastructure.zookeeper.ensemble\\[1\\].id is required",
        ),
        ({"services": {"commodore": {"port": True}}}, "services.commodore.port must be an integer"),
    ],
)
def test_shape_errors(data, message) -> None:
    with pytest.raises(ManifestError, match=message):
        ManifestLoader().parse(data)


def test_shape_error_names_file(tmp_path: Path) -> None:
    path = tmp_path / "cluster.yaml"
    path.write_text("hosts: [core-1]\n")
    with pytest.raises(ManifestError, match=f"^{re.escape(str(path))}: hosts must be a mapping"):
        ManifestLoader().load(path)


def test_loads_edge_manifest(tmp_path: Path) -> None:
    path = tmp_path / "edge.yaml"
    path.write_text(
        textwrap.dedent(
            """
            version: "1"
            email: ops@example.com
            root_domain: example.com
            nodes:
              - name: edge-1
                ssh: ubuntu@203.0.113.5
                subdomain: edge-1
                apply_tune: true
            """
        ).strip()
    )

    edge = ManifestLoader().load_edge(path)

    assert edge.email == "ops@example.com"
    assert edge.nodes[0].ssh == "ubuntu@203.0.113.5"
    assert edge.nodes[0].apply_tune
    assert edge.primary_domain(edge.nodes[0]) == "edge-1.example.com"


def test_edge_manifest_binaries() -> None:
    edge = ManifestLoader().parse_edge(
        {
            "version": "1",
            "email": "ops@example.com",
            "mode": "native",
            "binaries": {"caddy": "https://downloads.example.com/caddy"},
            "nodes": [{"name": "edge-1", "ssh": "root@203.0.113.5", "mode": "docker"}],
        }
    )
    assert edge.binaries == {"caddy": "https://downloads.example.com/caddy"}
    assert edge.nodes[0].resolved_mode(edge.mode) == "docker"
    assert ManifestLoader().parse_edge({"version": "1", "email": "a@b", "nodes": []}).binaries == {}
