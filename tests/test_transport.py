"""Tests for stdio launch parameter building."""

import os
import sys

from mcp_switchboard.bridge.transport import (
    build_child_env,
    build_server_params,
    resolve_args,
    resolve_command,
)
from mcp_switchboard.config.schema import BackendConfig


class TestChildEnv:
    def test_overrides_and_drops_none(self) -> None:
        base = {"PATH": "/usr/bin", "HOME": "/root", "SECRET": "x"}
        env = build_child_env({"HOME": "/home/sb", "SECRET": None, "NEW": "1"}, base)
        assert env == {"PATH": "/usr/bin", "HOME": "/home/sb", "NEW": "1"}
        assert base["SECRET"] == "x"

    def test_defaults_to_process_environment(self, monkeypatch) -> None:
        monkeypatch.setenv("SB_INHERITED", "yes")
        assert build_child_env({})["SB_INHERITED"] == "yes"


class TestCommandResolution:
    def test_python_maps_to_interpreter(self) -> None:
        assert resolve_command("python") == sys.executable
        assert resolve_command("Python") == sys.executable

    def test_other_commands_untouched(self) -> None:
        assert resolve_command("npx") == "npx"

    def test_relative_scripts_become_absolute(self, tmp_path) -> None:
        args = ["server.py", "-m", "--flag.py", "dist/index.js", "/abs/x.py", "plain"]
        resolved = resolve_args("alpha", args, str(tmp_path))
        assert resolved == [
            os.path.join(str(tmp_path), "server.py"),
            "-m",
            "--flag.py",
            os.path.join(str(tmp_path), "dist", "index.js"),
            "/abs/x.py",
            "plain",
        ]

    def test_relative_to_process_cwd(self, tmp_path, monkeypatch) -> None:
        monkeypatch.chdir(tmp_path)
        assert resolve_args("alpha", ["run.mjs"]) == [os.path.join(os.getcwd(), "run.mjs")]


class TestServerParams:
    def test_from_config(self, tmp_path) -> None:
        cfg = BackendConfig(
            name="alpha",
            command="python",
            args=["mods/echo_server.py"],
            env={"ECHO_SERVER_NAME": "Alpha", "DROPPED": None},
            cwd=str(tmp_path),
        )
        params = build_server_params(cfg)
        assert params.command == sys.executable
        assert params.args == [os.path.join(str(tmp_path), "mods", "echo_server.py")]
        assert params.env["ECHO_SERVER_NAME"] == "Alpha"
        assert "DROPPED" not in params.env
        assert str(params.cwd) == str(tmp_path)
