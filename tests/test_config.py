"""Tests for configuration models and the YAML loader."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from mcp_switchboard.config import (
    BackendConfig,
    ProxySettings,
    SwitchboardConfig,
    TimeoutConfig,
    TimeoutSettings,
    expand_env_vars,
    load_switchboard_config,
    parse_switchboard_config,
)
from mcp_switchboard.errors import ConfigurationError

SAMPLE_YAML = """\
version: "1"
settings:
  timeouts:
    call: 20
  health:
    interval: 15
    unhealthy_threshold: 2
  reconnect:
    base_delay: 0.5
    max_delay: 30
    max_attempts: 4
backends:
  - name: files
    command: npx
    args: ["-y", "@modelcontextprotocol/server-filesystem", "/tmp"]
    env:
      API_TOKEN: ${SWITCHBOARD_TEST_TOKEN}
      UNSET_ME: null
    timeouts:
      call: 5
  - name: echo
    command: python
    args: ["mods/echo_server.py"]
    description: Echo test server
"""


class TestBackendConfig:
    def test_minimal(self) -> None:
        cfg = BackendConfig(name="alpha", command="  python  ")
        assert cfg.command == "python"
        assert cfg.args == []
        assert cfg.env == {}

    @pytest.mark.parametrize("name", ["my-server", "a", "server_2", "-dash-"])
    def test_valid_names(self, name: str) -> None:
        assert BackendConfig(name=name, command="x").name == name

    @pytest.mark.parametrize("name", ["", "has__sep", "_leading", "trailing_", "sp ace", "dot.ted"])
    def test_invalid_names(self, name: str) -> None:
        with pytest.raises(ValidationError):
            BackendConfig(name=name, command="x")

    def test_blank_command_rejected(self) -> None:
        with pytest.raises(ValidationError):
            BackendConfig(name="alpha", command="   ")

    def test_frozen(self) -> None:
        cfg = BackendConfig(name="alpha", command="x")
        with pytest.raises(ValidationError):
            cfg.name = "beta"  # type: ignore[misc]

    def test_timeout_overrides(self) -> None:
        base = TimeoutSettings()
        assert TimeoutConfig().apply(base) is base
        merged = TimeoutConfig(call=5).apply(base)
        assert merged.call == 5
        assert merged.connect == base.connect


class TestSwitchboardConfig:
    def test_defaults(self) -> None:
        cfg = SwitchboardConfig()
        assert cfg.backends == []
        assert isinstance(cfg.settings, ProxySettings)
        assert cfg.settings.health.unhealthy_threshold == 3
        assert cfg.settings.reconnect.max_delay == 60.0

    def test_duplicate_names_rejected(self) -> None:
        with pytest.raises(ValidationError, match="duplicate backend name"):
            SwitchboardConfig(
                backends=[
                    BackendConfig(name="alpha", command="x"),
                    BackendConfig(name="alpha", command="y"),
                ]
            )


class TestLoader:
    def test_load_yaml(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SWITCHBOARD_TEST_TOKEN", "s3cret")
        path = tmp_path / "switchboard.yaml"
        path.write_text(SAMPLE_YAML, encoding="utf-8")

        cfg = load_switchboard_config(str(path))
        assert [b.name for b in cfg.backends] == ["files", "echo"]
        files = cfg.backends[0]
        assert files.env == {"API_TOKEN": "s3cret", "UNSET_ME": None}
        assert files.timeouts.call == 5
        assert cfg.settings.timeouts.call == 20
        assert cfg.settings.health.interval == 15
        assert cfg.settings.reconnect.max_attempts == 4
        assert cfg.backends[1].description == "Echo test server"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="does not exist"):
            load_switchboard_config(str(tmp_path / "nope.yaml"))

    def test_unsupported_extension(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text("{}", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="Unsupported"):
            load_switchboard_config(str(path))

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yml"
        path.write_text("", encoding="utf-8")
        assert load_switchboard_config(str(path)).backends == []

    def test_non_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="mapping"):
            load_switchboard_config(str(path))

    def test_validation_errors_are_summarised(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            parse_switchboard_config(
                {"backends": [{"name": "bad__name", "command": "x"}, {"name": "ok"}]}
            )
        message = str(exc_info.value)
        assert "2 error(s)" in message
        assert "backends → 0 → name" in message


class TestExpandEnvVars:
    def test_nested(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SB_HOME", "/home/sb")
        data = {"a": "${SB_HOME}/x", "b": ["${SB_HOME}", 3], "c": {"d": None}}
        assert expand_env_vars(data) == {"a": "/home/sb/x", "b": ["/home/sb", 3], "c": {"d": None}}

    def test_unset_is_left_alone(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("SB_DEFINITELY_UNSET", raising=False)
        assert expand_env_vars("${SB_DEFINITELY_UNSET}") == "${SB_DEFINITELY_UNSET}"
