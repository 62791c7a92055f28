"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from backendctl.config import (
    DEFAULT_IMAGE_REPO,
    AppConfig,
    ConfigError,
    load_config,
    normalize_repo,
)


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "absent.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.image_repo == DEFAULT_IMAGE_REPO
    assert config.release_repo == DEFAULT_IMAGE_REPO
    assert config.state_dir == Path("~/.local/share/backendctl").expanduser()
    assert config.logs_dir == config.state_dir / "logs"
    assert config.ports.ui == 8880
    assert config.ports.ssh == 55022
    assert config.registry.base_url == "https://registry-1.docker.io"
    assert config.health.timeout == 60.0
    assert config.progress.freeze_delay == 1.5
    assert config.runtime.docker_host is None
    assert config.runtime.stop_timeout == 10


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "config.yml"
    cfg.write_text(
        "image_repo: acme/backend\n"
        "state_dir: {state}\n"
        "ports:\n"
        "  ui: 9000\n"
        "  ssh: 9022\n"
        "registry:\n"
        "  base_url: https://registry.example.test/\n"
        "health:\n"
        "  timeout: 15\n".format(state=tmp_path / "state")
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.image_repo == "acme/backend"
    assert config.release_repo == DEFAULT_IMAGE_REPO
    assert config.state_dir == tmp_path / "state"
    assert config.logs_dir == tmp_path / "state" / "logs"
    assert config.ports.ui == 9000
    assert config.ports.ssh == 9022
    assert config.registry.base_url == "https://registry.example.test"
    assert config.health.timeout == 15.0


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("image_repo: acme/from-file\nports:\n  ui: 9000\n")
    env = {
        "BACKENDCTL_IMAGE_REPO": "acme/from-env",
        "BACKENDCTL_PORTS__UI": "9100",
        "BACKENDCTL_STATE_DIR": str(tmp_path / "state"),
        "BACKENDCTL_HEALTH__INTERVAL": "0.25",
        "BACKENDCTL_RUNTIME__STOP_TIMEOUT": "30",
    }

    config = load_config(config_file=cfg, env=env)

    assert config.image_repo == "acme/from-env"
    assert config.ports.ui == 9100
    assert config.state_dir == tmp_path / "state"
    assert config.health.interval == 0.25
    assert config.runtime.stop_timeout == 30


def test_config_file_env_var_selects_file(tmp_path: Path) -> None:
    """BACKENDCTL_CONFIG_FILE points at an alternative config file."""
    cfg = tmp_path / "alt.yml"
    cfg.write_text("release_repo: acme/releases\n")

    config = load_config(env={"BACKENDCTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.release_repo == "acme/releases"


def test_overrides_beat_environment(tmp_path: Path) -> None:
    """Programmatic overrides win over environment variables."""
    config = load_config(
        config_file=tmp_path / "absent.yml",
        env={"BACKENDCTL_IMAGE_REPO": "acme/from-env"},
        overrides={"image_repo": "acme/override"},
    )
    assert config.image_repo == "acme/override"


def test_docker_host_falls_back_to_environment(tmp_path: Path) -> None:
    """DOCKER_HOST is used when the runtime section leaves it unset."""
    config = load_config(
        config_file=tmp_path / "absent.yml",
        env={"DOCKER_HOST": "unix:///run/user/1000/docker.sock"},
    )
    assert config.runtime.docker_host == "unix:///run/user/1000/docker.sock"


def test_invalid_repo_falls_back_to_default(tmp_path: Path) -> None:
    """Malformed repositories are replaced with the default."""
    config = load_config(
        config_file=tmp_path / "absent.yml",
        env={},
        overrides={"image_repo": "not a repo"},
    )
    assert config.image_repo == DEFAULT_IMAGE_REPO
    assert normalize_repo("  acme/backend ", DEFAULT_IMAGE_REPO) == "acme/backend"
    assert normalize_repo(None, DEFAULT_IMAGE_REPO) == DEFAULT_IMAGE_REPO


def test_unknown_top_level_key_raises(tmp_path: Path) -> None:
    """Unknown configuration keys are rejected."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("unexpected: true\n")

    with pytest.raises(ConfigError) as excinfo:
        load_config(config_file=cfg, env={})

    assert "Unknown configuration keys" in str(excinfo.value)


def test_unknown_section_key_raises(tmp_path: Path) -> None:
    """Unknown keys inside a section are rejected."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("health:\n  retries: 3\n")

    with pytest.raises(ConfigError) as excinfo:
        load_config(config_file=cfg, env={})

    assert "Unknown health configuration keys" in str(excinfo.value)


def test_top_level_must_be_mapping(tmp_path: Path) -> None:
    """A YAML list at the top level is rejected."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("- a\n- b\n")

    with pytest.raises(ConfigError):
        load_config(config_file=cfg, env={})


@pytest.mark.parametrize(
    ("env", "message"),
    [
        ({"BACKENDCTL_PORTS__UI": "55022"}, "must be different"),
        ({"BACKENDCTL_PORTS__SSH": "70000"}, "between 1 and 65535"),
        ({"BACKENDCTL_REGISTRY__PAGE_SIZE": "0"}, "page_size"),
        ({"BACKENDCTL_HEALTH__TIMEOUT": "-1"}, "greater than zero"),
        ({"BACKENDCTL_PROGRESS__FREEZE_DELAY": "soon"}, "Invalid number"),
        ({"BACKENDCTL_RUNTIME__STOP_TIMEOUT": "true"}, "boolean"),
    ],
)
def test_invalid_values_raise(tmp_path: Path, env: dict[str, str], message: str) -> None:
    """Out-of-range and mistyped values produce a ConfigError."""
    with pytest.raises(ConfigError) as excinfo:
        load_config(config_file=tmp_path / "absent.yml", env=env)
    assert message in str(excinfo.value)


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """to_dict renders paths as strings."""
    config = load_config(
        config_file=tmp_path / "absent.yml",
        env={},
        overrides={"state_dir": str(tmp_path / "state")},
    )
    data = config.to_dict()
    assert data["state_dir"] == str(tmp_path / "state")
    assert data["ports"] == {"ui": 8880, "ssh": 55022}
    assert data["runtime"] == {"docker_host": None, "stop_timeout": 10}
