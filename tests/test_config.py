from pathlib import Path

import pytest

from frameworks_automation.config import DEFAULT_MANIFEST, DEFAULT_STATE_FILE, ProvisionerConfig, load_config


def test_load_config_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "missing.conf")
    assert isinstance(config, ProvisionerConfig)
    assert config.manifest == DEFAULT_MANIFEST
    assert config.state_file == DEFAULT_STATE_FILE
    assert config.parallel_cap == 8
    assert config.health_timeout == 5.0


def test_load_config_overrides(tmp_path: Path) -> None:
    cfg_path = tmp_path / "provision.conf"
    cfg_path.write_text(
        """
        [defaults]
        manifest = "/opt/frameworks/cluster.yaml"
        state_file = "/var/lib/frameworks/state.json"
        plan_dir = "/opt/frameworks/compose"
        ssh_key = "/root/.ssh/frameworks"
        ssh_timeout = 20
        ansible_timeout = 900
        health_timeout = 2.5
        parallel_cap = 4
        become = false
        aws_region = "eu-west-1"
        aws_profile = "ops"
        """
    )

    config = load_config(cfg_path)
    assert config.manifest == Path("/opt/frameworks/cluster.yaml")
    assert config.state_file == Path("/var/lib/frameworks/state.json")
    assert config.plan_dir == Path("/opt/frameworks/compose")
    assert config.ssh_key == Path("/root/.ssh/frameworks")
    assert config.ssh_timeout == 20
    assert config.ansible_timeout == 900.0
    assert config.health_timeout == 2.5
    assert config.parallel_cap == 4
    assert config.become is False
    assert config.aws_region == "eu-west-1"
    assert config.aws_profile == "ops"


def test_empty_state_file_disables_state(tmp_path: Path) -> None:
    cfg_path = tmp_path / "provision.conf"
    cfg_path.write_text('[defaults]\nstate_file = ""\n')
    assert load_config(cfg_path).state_file is None


def test_parallel_cap_must_be_positive(tmp_path: Path) -> None:
    cfg_path = tmp_path / "provision.conf"
    cfg_path.write_text("[defaults]\nparallel_cap = 0\n")
    with pytest.raises(ValueError, match="parallel_cap"):
        load_config(cfg_path)


def test_load_config_endpoints(tmp_path: Path) -> None:
    cfg_path = tmp_path / "provision.conf"
    cfg_path.write_text(
        """
        [endpoints]
        quartermaster_url = "https://quartermaster.example.com"
        navigator_url = "https://navigator.example.com"
        service_token = "svc-token"
        """
    )
    config = load_config(cfg_path)
    assert config.quartermaster_url == "https://quartermaster.example.com"
    assert config.navigator_url == "https://navigator.example.com"
    assert config.service_token == "svc-token"
    assert load_config(tmp_path / "missing.conf").quartermaster_url is None
