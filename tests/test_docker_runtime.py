"""Tests for the docker CLI runtime with subprocess stubbed out."""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import Any

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from issue_resolver import docker_runtime
from issue_resolver.docker_runtime import DockerCLIRuntime, ExecResult
from issue_resolver.errors import ContainerRuntimeError
from issue_resolver.models import ContainerHandle


class _Recorder:
    def __init__(self, responses: dict[str, subprocess.CompletedProcess]):
        self.responses = responses
        self.calls: list[list[str]] = []

    def __call__(self, command: list[str], **kwargs: Any) -> subprocess.CompletedProcess:
        self.calls.append(list(command))
        return self.responses.get(command[1], subprocess.CompletedProcess(command, 0, stdout="", stderr=""))


def _done(stdout: str = "", returncode: int = 0, stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess([], returncode, stdout=stdout, stderr=stderr)


def test_create_container_pulls_missing_image(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    recorder = _Recorder({"images": _done("ubuntu:22.04\n"), "run": _done("abc123def456\n")})
    monkeypatch.setattr(docker_runtime.subprocess, "run", recorder)

    handle = DockerCLIRuntime().create_container(
        image="node:18", workdir=tmp_path, name="issue-resolver-x", env={"GITHUB_TOKEN": "t"}
    )

    assert handle == ContainerHandle(id="abc123def456", name="issue-resolver-x", image="node:18")
    verbs = [call[1] for call in recorder.calls]
    assert verbs == ["images", "pull", "run"]
    run = recorder.calls[2]
    assert ["-v", f"{tmp_path}:{tmp_path}"] == run[run.index("-v"):run.index("-v") + 2]
    assert ["-e", "GITHUB_TOKEN=t"] == run[run.index("-e"):run.index("-e") + 2]
    assert run[-1] == "node:18"


def test_existing_image_is_not_pulled(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    recorder = _Recorder({"images": _done("node:18\n"), "run": _done("cid\n")})
    monkeypatch.setattr(docker_runtime.subprocess, "run", recorder)
    DockerCLIRuntime().create_container(image="node:18", workdir=tmp_path, name="n")
    assert [call[1] for call in recorder.calls] == ["images", "run"]


def test_exec_returns_exit_code_without_raising(monkeypatch: pytest.MonkeyPatch) -> None:
    recorder = _Recorder({"exec": _done("out", returncode=3, stderr="err")})
    monkeypatch.setattr(docker_runtime.subprocess, "run", recorder)
    result = DockerCLIRuntime().exec(ContainerHandle(id="cid", name="n", image="i"), ["npm", "test"])
    assert result == ExecResult(stdout="out", stderr="err", exit_code=3)
    assert result.output == "out\nerr"
    assert recorder.calls[0] == ["docker", "exec", "cid", "npm", "test"]


def test_failed_command_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    recorder = _Recorder({"rm": _done(returncode=1, stderr="no such container")})
    monkeypatch.setattr(docker_runtime.subprocess, "run", recorder)
    with pytest.raises(ContainerRuntimeError, match="no such container"):
        DockerCLIRuntime().remove(ContainerHandle(id="cid", name="n", image="i"))


def test_missing_binary_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    def _missing(command, **kwargs):
        raise FileNotFoundError(command[0])

    monkeypatch.setattr(docker_runtime.subprocess, "run", _missing)
    with pytest.raises(ContainerRuntimeError, match="docker binary not found"):
        DockerCLIRuntime().image_exists("node:18")


def test_is_running(monkeypatch: pytest.MonkeyPatch) -> None:
    handle = ContainerHandle(id="cid", name="n", image="i")
    monkeypatch.setattr(docker_runtime.subprocess, "run", _Recorder({"inspect": _done("true\n")}))
    assert DockerCLIRuntime().is_running(handle) is True
    monkeypatch.setattr(docker_runtime.subprocess, "run", _Recorder({"inspect": _done(returncode=1)}))
    assert DockerCLIRuntime().is_running(handle) is False
