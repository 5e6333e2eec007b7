"""Container-runtime collaborator driven through the ``docker`` CLI."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from loguru import logger

from .errors import ContainerRuntimeError
from .models import ContainerHandle


@dataclass
class ExecResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}".strip("\n")


class ContainerRuntime(Protocol):
    def image_exists(self, image: str) -> bool:
        ...

    def pull_image(self, image: str) -> None:
        ...

    def create_container(
        self,
        *,
        image: str,
        workdir: Path,
        name: str,
        env: Optional[dict[str, str]] = None,
    ) -> ContainerHandle:
        ...

    def exec(
        self,
        container: ContainerHandle,
        command: list[str],
        *,
        timeout_seconds: Optional[int] = None,
    ) -> ExecResult:
        ...

    def is_running(self, container: ContainerHandle) -> bool:
        ...

    def stop(self, container: ContainerHandle) -> None:
        ...

    def remove(self, container: ContainerHandle) -> None:
        ...


class DockerCLIRuntime:
    """Run containers with the local ``docker`` binary."""

    def __init__(self, docker_bin: str = "docker"):
        self.docker_bin = docker_bin

    def _docker(
        self,
        args: list[str],
        *,
        timeout_seconds: Optional[int] = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        command = [self.docker_bin, *args]
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout_seconds,
            )
        except FileNotFoundError as exc:
            raise ContainerRuntimeError(f"docker binary not found: {self.docker_bin}") from exc
        except subprocess.TimeoutExpired as exc:
            raise ContainerRuntimeError(
                f"docker {args[0]} timed out after {timeout_seconds}s"
            ) from exc
        if check and result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()[:400]
            raise ContainerRuntimeError(f"docker {args[0]} failed ({result.returncode}): {detail}")
        return result

    def image_exists(self, image: str) -> bool:
        result = self._docker(["images", "--format", "{{.Repository}}:{{.Tag}}"])
        tags = {line.strip() for line in result.stdout.splitlines() if line.strip()}
        return image in tags

    def ensure_image(self, image: str) -> None:
        if self.image_exists(image):
            logger.info("Image {} already exists locally", image)
            return
        self.pull_image(image)

    def pull_image(self, image: str) -> None:
        logger.info("Pulling Docker image: {}", image)
        self._docker(["pull", image])
        logger.info("Successfully pulled image {}", image)

    def create_container(
        self,
        *,
        image: str,
        workdir: Path,
        name: str,
        env: Optional[dict[str, str]] = None,
    ) -> ContainerHandle:
        self.ensure_image(image)
        workdir_str = str(workdir)
        args = [
            "run",
            "-d",
            "-t",
            "-i",
            "--name",
            name,
            "--network",
            "bridge",
            "-w",
            workdir_str,
            "-v",
            f"{workdir_str}:{workdir_str}",
        ]
        for key, value in (env or {}).items():
            args.extend(["-e", f"{key}={value}"])
        args.append(image)
        logger.info("Creating Docker container: image={} workdir={}", image, workdir_str)
        result = self._docker(args)
        container_id = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else name
        logger.info("Container started: {}", container_id[:12])
        return ContainerHandle(id=container_id, name=name, image=image)

    def exec(
        self,
        container: ContainerHandle,
        command: list[str],
        *,
        timeout_seconds: Optional[int] = None,
    ) -> ExecResult:
        logger.info("Executing command in container {}: {}", container.name, " ".join(command)[:200])
        result = self._docker(
            ["exec", container.id, *command],
            timeout_seconds=timeout_seconds,
            check=False,
        )
        logger.info("Command execution completed in {}: exit_code={}", container.name, result.returncode)
        return ExecResult(stdout=result.stdout or "", stderr=result.stderr or "", exit_code=result.returncode)

    def is_running(self, container: ContainerHandle) -> bool:
        result = self._docker(
            ["inspect", "--format", "{{.State.Running}}", container.id],
            check=False,
        )
        if result.returncode != 0:
            return False
        return result.stdout.strip().lower() == "true"

    def stop(self, container: ContainerHandle) -> None:
        logger.info("Stopping container {}", container.name)
        self._docker(["stop", container.id])

    def remove(self, container: ContainerHandle) -> None:
        logger.info("Removing container {}", container.name)
        self._docker(["rm", "-f", container.id])
