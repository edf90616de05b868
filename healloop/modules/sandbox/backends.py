"""
Sandbox backends.

SandboxBackend is the seam between the lifecycle manager and whatever actually
runs the project. DockerSandboxBackend runs one long-lived Node container per
project session and executes every step inside it with `docker exec`.
"""

import asyncio
import io
import shlex
import tarfile
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional

import docker
from docker.errors import APIError, DockerException, NotFound

from healloop.core.config import settings
from healloop.core.exceptions import (
    SandboxBootError,
    SandboxCommandError,
    SandboxError,
    SandboxOwnershipError,
)
from healloop.core.logging_config import logger


@dataclass
class SandboxHandle:
    sandbox_id: str
    runtime_version: str


@dataclass
class CommandResult:
    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class SandboxProcess(ABC):
    """A long-running process (the dev server) inside a sandbox"""

    @abstractmethod
    def lines(self) -> AsyncIterator[str]:
        """Yield output lines (stdout and stderr interleaved) until the process ends"""

    @abstractmethod
    async def wait(self) -> Optional[int]:
        """Wait for the process to exit and return its exit code"""

    @abstractmethod
    async def kill(self) -> None:
        pass


class SandboxBackend(ABC):
    """Operations the lifecycle manager needs from an execution sandbox"""

    @abstractmethod
    async def create(self, project_id: str) -> SandboxHandle:
        pass

    @abstractmethod
    async def make_dir(self, sandbox_id: str, path: str) -> None:
        pass

    @abstractmethod
    async def write_file(self, sandbox_id: str, path: str, content: str) -> None:
        pass

    @abstractmethod
    async def run_command(self, sandbox_id: str, command: str) -> CommandResult:
        """Run a command to completion. Timeouts are enforced by the caller."""

    @abstractmethod
    async def terminate_command(self, sandbox_id: str, command: str) -> None:
        """Force-kill every process started with this command line"""

    @abstractmethod
    async def start_process(self, sandbox_id: str, command: str) -> SandboxProcess:
        pass

    @abstractmethod
    async def get_host(self, sandbox_id: str, port: int) -> Optional[str]:
        """Externally reachable URL for a port inside the sandbox, if exposed"""

    @abstractmethod
    async def destroy(self, sandbox_id: str) -> None:
        pass


# =============================================================================
# DOCKER BACKEND
# =============================================================================

class DockerExecProcess(SandboxProcess):
    """
    Dev server started through `docker exec`.

    The Docker SDK streams synchronously, so a worker thread pushes decoded
    lines into an asyncio.Queue that lines() drains. None marks end of stream.
    """

    def __init__(self, backend: "DockerSandboxBackend", sandbox_id: str, command: str, exec_id: str):
        self._backend = backend
        self._sandbox_id = sandbox_id
        self._command = command
        self._exec_id = exec_id
        self._queue: asyncio.Queue = asyncio.Queue()
        self._finished = asyncio.Event()
        self._exit_code: Optional[int] = None

    def start_streaming(self) -> None:
        loop = asyncio.get_running_loop()
        api = self._backend.client.api

        def stream_sync():
            pending = ""
            try:
                for chunk in api.exec_start(self._exec_id, stream=True):
                    pending += chunk.decode("utf-8", errors="ignore")
                    *complete, pending = pending.split("\n")
                    for line in complete:
                        line = line.rstrip("\r")
                        if line.strip():
                            asyncio.run_coroutine_threadsafe(self._queue.put(line), loop)
                if pending.strip():
                    asyncio.run_coroutine_threadsafe(self._queue.put(pending), loop)
            except (APIError, DockerException) as e:
                logger.error(f"[DockerSandbox:{self._sandbox_id}] Exec stream error: {e}")
            finally:
                asyncio.run_coroutine_threadsafe(self._queue.put(None), loop)

        loop.run_in_executor(None, stream_sync)

    async def lines(self) -> AsyncIterator[str]:
        while True:
            line = await self._queue.get()
            if line is None:
                await self._mark_finished()
                return
            yield line

    async def _mark_finished(self) -> None:
        if self._finished.is_set():
            return
        try:
            info = await asyncio.to_thread(self._backend.client.api.exec_inspect, self._exec_id)
            self._exit_code = info.get("ExitCode")
        except (APIError, DockerException) as e:
            logger.warning(f"[DockerSandbox:{self._sandbox_id}] Could not inspect exec: {e}")
        self._finished.set()

    async def wait(self) -> Optional[int]:
        await self._finished.wait()
        return self._exit_code

    async def kill(self) -> None:
        await self._backend.terminate_command(self._sandbox_id, self._command)


class DockerSandboxBackend(SandboxBackend):
    """One detached Node container per project; files arrive via put_archive"""

    EXPOSED_PORTS = (3000, 5173)

    def __init__(self, client: Optional[docker.DockerClient] = None):
        self._client = client
        self._owners: Dict[str, str] = {}

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            if settings.SANDBOX_DOCKER_HOST:
                self._client = docker.DockerClient(base_url=settings.SANDBOX_DOCKER_HOST)
            else:
                self._client = docker.from_env()
        return self._client

    async def _get_container(self, sandbox_id: str):
        """Fetch the container and verify it still belongs to the session that created it"""
        try:
            container = await asyncio.to_thread(self.client.containers.get, sandbox_id)
        except NotFound:
            raise SandboxOwnershipError(sandbox_id)
        except APIError as e:
            raise SandboxError(f"Docker API error: {e}")

        owner = self._owners.get(sandbox_id)
        if owner is None or container.labels.get(settings.SANDBOX_LABEL) != owner:
            raise SandboxOwnershipError(sandbox_id)
        return container

    async def create(self, project_id: str) -> SandboxHandle:
        name = f"healloop-{project_id[:24]}-{uuid.uuid4().hex[:6]}"

        def run():
            return self.client.containers.run(
                image=settings.SANDBOX_IMAGE,
                name=name,
                command=["sleep", "infinity"],
                detach=True,
                working_dir=settings.SANDBOX_WORKDIR,
                ports={f"{port}/tcp": None for port in self.EXPOSED_PORTS},
                network=settings.SANDBOX_NETWORK,
                mem_limit=settings.SANDBOX_MEMORY_LIMIT,
                cpu_period=100000,
                cpu_quota=int(settings.SANDBOX_CPU_LIMIT * 100000),
                environment={"NODE_ENV": "development", "NEXT_TELEMETRY_DISABLED": "1"},
                labels={settings.SANDBOX_LABEL: project_id},
            )

        try:
            container = await asyncio.to_thread(run)
        except (APIError, DockerException) as e:
            raise SandboxBootError(f"Docker API error: {e}")

        self._owners[container.id] = project_id
        logger.info(f"[DockerSandbox:{project_id}] Container {name} started ({container.short_id})")
        return SandboxHandle(sandbox_id=container.id, runtime_version=settings.SANDBOX_IMAGE)

    async def make_dir(self, sandbox_id: str, path: str) -> None:
        result = await self.run_command(sandbox_id, f"mkdir -p {shlex.quote(path)}")
        if not result.ok:
            raise SandboxCommandError(f"mkdir -p {path}", result.output.strip())

    async def write_file(self, sandbox_id: str, path: str, content: str) -> None:
        container = await self._get_container(sandbox_id)
        data = content.encode("utf-8")

        tar_buffer = io.BytesIO()
        with tarfile.open(fileobj=tar_buffer, mode="w") as tar:
            info = tarfile.TarInfo(name=path)
            info.size = len(data)
            info.mtime = int(time.time())
            tar.addfile(info, io.BytesIO(data))
        tar_buffer.seek(0)

        try:
            await asyncio.to_thread(container.put_archive, settings.SANDBOX_WORKDIR, tar_buffer.read())
        except (APIError, DockerException) as e:
            raise SandboxError(f"Docker API error: failed to write {path}: {e}")

    async def run_command(self, sandbox_id: str, command: str) -> CommandResult:
        container = await self._get_container(sandbox_id)
        try:
            exit_code, output = await asyncio.to_thread(
                container.exec_run,
                ["sh", "-c", command],
                workdir=settings.SANDBOX_WORKDIR,
            )
        except (APIError, DockerException) as e:
            raise SandboxCommandError(command, str(e))

        text = output.decode("utf-8", errors="ignore") if output else ""
        return CommandResult(exit_code=exit_code if exit_code is not None else -1, output=text)

    async def terminate_command(self, sandbox_id: str, command: str) -> None:
        container = await self._get_container(sandbox_id)
        try:
            await asyncio.to_thread(
                container.exec_run,
                ["sh", "-c", f"pkill -9 -f {shlex.quote(command)} || true"],
                detach=True,
            )
        except (APIError, DockerException) as e:
            logger.warning(f"[DockerSandbox] Failed to kill '{command}': {e}")

    async def start_process(self, sandbox_id: str, command: str) -> SandboxProcess:
        container = await self._get_container(sandbox_id)
        try:
            exec_info = await asyncio.to_thread(
                self.client.api.exec_create,
                container.id,
                ["sh", "-c", command],
                workdir=settings.SANDBOX_WORKDIR,
                stdout=True,
                stderr=True,
            )
        except (APIError, DockerException) as e:
            raise SandboxCommandError(command, str(e))

        process = DockerExecProcess(self, sandbox_id, command, exec_info["Id"])
        process.start_streaming()
        return process

    async def get_host(self, sandbox_id: str, port: int) -> Optional[str]:
        container = await self._get_container(sandbox_id)
        try:
            await asyncio.to_thread(container.reload)
        except (APIError, DockerException) as e:
            raise SandboxError(f"Docker API error: {e}")

        bindings = (container.ports or {}).get(f"{port}/tcp") or []
        if not bindings:
            return None
        host_port = bindings[0].get("HostPort")
        if not host_port:
            return None

        base = settings.SANDBOX_PUBLIC_URL.rstrip("/") if settings.SANDBOX_PUBLIC_URL else "http://localhost"
        return f"{base}:{host_port}"

    async def destroy(self, sandbox_id: str) -> None:
        self._owners.pop(sandbox_id, None)
        try:
            container = await asyncio.to_thread(self.client.containers.get, sandbox_id)
            await asyncio.to_thread(container.remove, force=True)
            logger.info(f"[DockerSandbox] Removed container {sandbox_id[:12]}")
        except NotFound:
            return
        except APIError as e:
            logger.warning(f"[DockerSandbox] Failed to remove container {sandbox_id[:12]}: {e}")
