# noqa: D401
"""Unit tests for the udocker adapter and the collaborator process runner."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from docker_service_manager.engine import UdockerEngine, detect_internal_port, exposed_ports
from docker_service_manager.errors import CollaboratorError, CollaboratorTimeout
from docker_service_manager.shell import missing_binaries, run_command


def _completed(stdout: str = "", returncode: int = 0, stderr: str = "") -> MagicMock:
    result = MagicMock()
    result.stdout = stdout
    result.stderr = stderr
    result.returncode = returncode
    return result


class TestRunCommand:
    """Test bounded subprocess invocation."""

    @patch("docker_service_manager.shell.subprocess.run")
    def test_success(self, mock_run: MagicMock) -> None:
        mock_run.return_value = _completed("ok")
        result = run_command(["udocker", "version"], timeout=5)

        assert result.stdout == "ok"
        kwargs = mock_run.call_args.kwargs
        assert kwargs["timeout"] == 5
        assert kwargs["capture_output"] is True

    @patch("docker_service_manager.shell.subprocess.run")
    def test_nonzero_exit(self, mock_run: MagicMock) -> None:
        mock_run.return_value = _completed(returncode=1, stderr="no such image")
        with pytest.raises(CollaboratorError) as exc_info:
            run_command(["udocker", "pull", "ghost"], timeout=5, action="udocker pull ghost")
        assert exc_info.value.returncode == 1
        assert "no such image" in str(exc_info.value)

    @patch("docker_service_manager.shell.subprocess.run")
    def test_nonzero_exit_unchecked(self, mock_run: MagicMock) -> None:
        mock_run.return_value = _completed(returncode=1)
        assert run_command(["tmux", "has-session"], timeout=5, check=False).returncode == 1

    @patch("docker_service_manager.shell.subprocess.run")
    def test_timeout(self, mock_run: MagicMock) -> None:
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="udocker", timeout=5)
        with pytest.raises(CollaboratorTimeout):
            run_command(["udocker", "pull", "nginx"], timeout=5)

    @patch("docker_service_manager.shell.subprocess.run")
    def test_missing_binary(self, mock_run: MagicMock) -> None:
        mock_run.side_effect = FileNotFoundError()
        with pytest.raises(CollaboratorError, match="binary not found"):
            run_command(["udocker", "pull", "nginx"], timeout=5)

    @patch("docker_service_manager.shell.subprocess.run")
    def test_env_is_layered(self, mock_run: MagicMock, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HOME", "/home/test")
        mock_run.return_value = _completed()
        run_command(["udocker", "ps"], timeout=5, env={"UDOCKER_LOGLEVEL": "3"})

        env = mock_run.call_args.kwargs["env"]
        assert env["UDOCKER_LOGLEVEL"] == "3"
        assert env["HOME"] == "/home/test"

    def test_missing_binaries(self) -> None:
        with patch("docker_service_manager.shell.shutil.which", side_effect=lambda b: None if b == "udocker" else "/usr/bin/" + b):
            assert missing_binaries(["udocker", "tmux"]) == ["udocker"]


class TestExposedPorts:
    """Test port detection from inspect output."""

    def test_exposed_ports_mapping(self) -> None:
        metadata = {"config": {"ExposedPorts": {"6379/tcp": {}, "80/tcp": {}}}}
        assert exposed_ports(metadata) == [6379, 80]

    def test_nested_container_config(self) -> None:
        metadata = {"container_config": {"ExposedPorts": {"5432/tcp": {}}}}
        assert exposed_ports(metadata) == [5432]

    def test_raw_text_fallback(self) -> None:
        assert exposed_ports({"raw": "EXPOSE 8080/tcp\nsomething"}) == [8080]

    def test_no_ports(self) -> None:
        assert exposed_ports({"config": {}}) == []
        assert exposed_ports({}) == []


class TestUdockerEngine:
    """Test udocker command construction."""

    @patch("docker_service_manager.shell.subprocess.run")
    def test_pull_uses_pull_timeout(self, mock_run: MagicMock) -> None:
        mock_run.return_value = _completed()
        engine = UdockerEngine(pull_timeout=900)
        engine.pull("nginx:latest")

        args = mock_run.call_args.args[0]
        assert args == ["udocker", "pull", "nginx:latest"]
        assert mock_run.call_args.kwargs["timeout"] == 900
        assert mock_run.call_args.kwargs["env"]["UDOCKER_LOGLEVEL"] == "3"

    @patch("docker_service_manager.shell.subprocess.run")
    def test_create_returns_container_id(self, mock_run: MagicMock) -> None:
        mock_run.return_value = _completed("Info: creating\n4f1b1bbd-7c4c-3c1a-9c0e-4b1fd1c8a2de\n")
        ref = UdockerEngine().create("nginx_container", "nginx:latest")

        assert ref == "4f1b1bbd-7c4c-3c1a-9c0e-4b1fd1c8a2de"
        assert mock_run.call_args.args[0] == [
            "udocker",
            "create",
            "--name=nginx_container",
            "nginx:latest",
        ]

    @patch("docker_service_manager.shell.subprocess.run")
    def test_create_falls_back_to_name(self, mock_run: MagicMock) -> None:
        mock_run.return_value = _completed("")
        assert UdockerEngine().create("nginx_container", "nginx:latest") == "nginx_container"

    @patch("docker_service_manager.shell.subprocess.run")
    def test_setup_execmode(self, mock_run: MagicMock) -> None:
        mock_run.return_value = _completed()
        UdockerEngine().setup("nginx_container", "P1")
        assert mock_run.call_args.args[0] == ["udocker", "setup", "--execmode=P1", "nginx_container"]

    @patch("docker_service_manager.shell.subprocess.run")
    def test_inspect_parses_json_list(self, mock_run: MagicMock) -> None:
        mock_run.return_value = _completed('[{"config": {"ExposedPorts": {"80/tcp": {}}}}]')
        metadata = UdockerEngine().inspect("nginx:latest")
        assert exposed_ports(metadata) == [80]

    @patch("docker_service_manager.shell.subprocess.run")
    def test_inspect_non_json(self, mock_run: MagicMock) -> None:
        mock_run.return_value = _completed("ExposedPorts: 3306/tcp")
        assert UdockerEngine().inspect("mysql:8") == {"raw": "ExposedPorts: 3306/tcp"}

    @patch("docker_service_manager.shell.subprocess.run")
    def test_detect_internal_port_on_failure(self, mock_run: MagicMock) -> None:
        mock_run.return_value = _completed(returncode=1, stderr="error")
        assert detect_internal_port(UdockerEngine(), "ghost:latest") == []

    @patch("docker_service_manager.shell.subprocess.run")
    def test_remove_and_rmi(self, mock_run: MagicMock) -> None:
        mock_run.return_value = _completed()
        engine = UdockerEngine()
        engine.remove("nginx_container")
        engine.remove_image("nginx:latest")

        calls = [c.args[0] for c in mock_run.call_args_list]
        assert calls == [["udocker", "rm", "nginx_container"], ["udocker", "rmi", "nginx:latest"]]

    def test_run_command(self) -> None:
        engine = UdockerEngine(loglevel=3)
        command = engine.run_command("nginx_container", (3000, 80), (Path("/data/nginx"), "/app/.sessions"))
        assert command == (
            "UDOCKER_LOGLEVEL=3 udocker run -p 3000:80 "
            "-v /data/nginx:/app/.sessions nginx_container"
        )

    def test_run_command_quotes_and_workdir(self) -> None:
        engine = UdockerEngine(workdir=Path("/home/u/Termux-Udocker"))
        command = engine.run_command("web", (3000, 80), (Path("/data/my app"), "/app/.sessions"))
        assert command.startswith("cd /home/u/Termux-Udocker && UDOCKER_LOGLEVEL=3 ")
        assert "-v '/data/my app':/app/.sessions" in command
