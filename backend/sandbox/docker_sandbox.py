"""Docker-based sandbox provisioning for isolated code execution.

This module provides the SandboxProvisioner, which starts one container per
job from a template image, and the SandboxHandle, a live reference to such a
container offering command execution, a file store and the preview endpoint.

Sandboxes are time-boxed: each container carries its deadline as a label.
``resolve`` refuses containers past their deadline and ``reap_expired``
removes them, so a job never has to destroy its own sandbox. Reaping runs
before every ``acquire`` and, in a long-lived worker, on the interval of
``start_reap_loop``; an expired container keeps running until one of the two
happens.
"""

import asyncio
import posixpath
import tarfile
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from io import BytesIO

import docker
import structlog
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from config import settings
from sandbox.security import sanitize_output, validate_command, validate_path

logger = structlog.get_logger()

SANDBOX_LABEL = "worker.sandbox"
DEADLINE_LABEL = "worker.sandbox.deadline"

# Container security configuration
CONTAINER_CONFIG: dict[str, object] = {
    "mem_limit": "2048m",
    "cpu_period": 100000,
    "cpu_quota": 100000,  # one CPU core
    "network_mode": "bridge",  # npm install needs the network
    "security_opt": ["no-new-privileges"],
}


class SandboxError(RuntimeError):
    """Base class for sandbox failures."""


class SandboxProvisionError(SandboxError):
    """Raised when a sandbox container cannot be created."""


class SandboxUnavailableError(SandboxError):
    """Raised when a sandbox is missing, stopped, or past its deadline."""


class CommandExitError(SandboxError):
    """Raised when a command exits with a non-zero status."""

    def __init__(self, command: str, exit_code: int, stdout: str, stderr: str) -> None:
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(f"Command exited with code {exit_code}: {command}")


class CommandTimeoutError(SandboxError):
    """Raised when a command does not finish within its timeout."""


@dataclass
class CommandResult:
    """Result of executing a command in the sandbox."""

    stdout: str
    stderr: str
    exit_code: int


OutputCallback = Callable[[str], None]


class SandboxHandle:
    """Live reference to a provisioned sandbox container.

    Attributes:
        sandbox_id: The opaque sandbox identifier (the container name).
        deadline: Unix timestamp after which the sandbox is considered expired.
        workdir: Working directory inside the container.
    """

    def __init__(
        self,
        client: docker.DockerClient,
        container: docker.models.containers.Container,
        sandbox_id: str,
        deadline: float,
        workdir: str,
        public_host: str,
    ) -> None:
        self._client = client
        self._container = container
        self.sandbox_id = sandbox_id
        self.deadline = deadline
        self.workdir = workdir
        self.public_host = public_host

    async def execute(
        self,
        command: str,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
        timeout: int | None = None,
    ) -> CommandResult:
        """Run a shell command to completion, streaming its output.

        Args:
            command: The shell command to run in the working directory.
            on_stdout: Called with each decoded stdout chunk as it arrives.
            on_stderr: Called with each decoded stderr chunk as it arrives.
            timeout: Seconds before giving up (defaults to config).

        Returns:
            CommandResult with the full stdout, stderr and exit code.

        Raises:
            ValueError: If the command is malformed.
            CommandExitError: If the command exits non-zero.
            CommandTimeoutError: If the command outlives the timeout.
        """
        is_valid, error_msg = validate_command(command)
        if not is_valid:
            raise ValueError(error_msg)

        timeout = timeout or settings.command_timeout_seconds
        try:
            result = await asyncio.wait_for(
                asyncio.get_running_loop().run_in_executor(
                    None,
                    self._execute_streaming,
                    command,
                    on_stdout,
                    on_stderr,
                ),
                timeout=timeout,
            )
        except TimeoutError as e:
            logger.warning(
                "command_timeout",
                sandbox_id=self.sandbox_id,
                command=command[:50],
                timeout=timeout,
            )
            raise CommandTimeoutError(
                f"Command timed out after {timeout} seconds: {command}"
            ) from e

        logger.debug(
            "command_executed",
            sandbox_id=self.sandbox_id,
            command=command[:50],
            exit_code=result.exit_code,
        )

        if result.exit_code != 0:
            raise CommandExitError(command, result.exit_code, result.stdout, result.stderr)
        return result

    def _execute_streaming(
        self,
        command: str,
        on_stdout: OutputCallback | None,
        on_stderr: OutputCallback | None,
    ) -> CommandResult:
        """Execute command in container (blocking operation)."""
        api = self._client.api
        exec_id = api.exec_create(
            self._container.id,
            ["/bin/bash", "-lc", command],
            workdir=self.workdir,
        )["Id"]

        stdout_parts: list[str] = []
        stderr_parts: list[str] = []
        for stdout_chunk, stderr_chunk in api.exec_start(exec_id, stream=True, demux=True):
            if stdout_chunk:
                text = stdout_chunk.decode("utf-8", errors="replace")
                stdout_parts.append(text)
                if on_stdout is not None:
                    on_stdout(text)
            if stderr_chunk:
                text = stderr_chunk.decode("utf-8", errors="replace")
                stderr_parts.append(text)
                if on_stderr is not None:
                    on_stderr(text)

        exit_code = api.exec_inspect(exec_id).get("ExitCode")
        return CommandResult(
            stdout=sanitize_output("".join(stdout_parts)),
            stderr=sanitize_output("".join(stderr_parts)),
            exit_code=exit_code if exit_code is not None else -1,
        )

    async def write_file(self, path: str, content: str) -> None:
        """Write a file, creating parent directories as needed.

        Raises:
            ValueError: If the path escapes the working directory.
        """
        is_valid, error_msg, resolved = validate_path(self.workdir, path)
        if not is_valid:
            raise ValueError(error_msg)

        await asyncio.wait_for(
            asyncio.get_running_loop().run_in_executor(
                None,
                self._write_file_to_container,
                resolved,
                content,
            ),
            timeout=30,
        )
        logger.debug("file_written", sandbox_id=self.sandbox_id, path=resolved)

    def _write_file_to_container(self, resolved_path: str, content: str) -> None:
        """Write file to container using tar archive (blocking operation)."""
        parent_dir, file_name = posixpath.split(resolved_path)
        # List form avoids shell injection
        self._container.exec_run(["mkdir", "-p", parent_dir])

        tar_stream = BytesIO()
        with tarfile.open(fileobj=tar_stream, mode="w") as tar:
            file_data = content.encode("utf-8")
            tarinfo = tarfile.TarInfo(name=file_name)
            tarinfo.size = len(file_data)
            tarinfo.mode = 0o644
            tarinfo.mtime = int(time.time())
            tar.addfile(tarinfo, BytesIO(file_data))

        tar_stream.seek(0)
        self._container.put_archive(parent_dir, tar_stream)

    async def read_file(self, path: str) -> str:
        """Read a file as UTF-8 text.

        Raises:
            ValueError: If the path escapes the working directory.
            FileNotFoundError: If the file doesn't exist.
        """
        is_valid, error_msg, resolved = validate_path(self.workdir, path)
        if not is_valid:
            raise ValueError(error_msg)

        return await asyncio.wait_for(
            asyncio.get_running_loop().run_in_executor(
                None,
                self._read_file_from_container,
                resolved,
            ),
            timeout=30,
        )

    def _read_file_from_container(self, resolved_path: str) -> str:
        """Read file from container using tar archive (blocking operation)."""
        try:
            bits, _ = self._container.get_archive(resolved_path)
        except NotFound as err:
            raise FileNotFoundError(f"File not found: {resolved_path}") from err

        tar_stream = BytesIO()
        for chunk in bits:
            tar_stream.write(chunk)
        tar_stream.seek(0)

        with tarfile.open(fileobj=tar_stream, mode="r") as tar:
            member = tar.getmembers()[0]
            extracted = tar.extractfile(member)
            if extracted is None:
                raise FileNotFoundError(f"Not a regular file: {resolved_path}")
            return extracted.read().decode("utf-8")

    async def exposed_endpoint(self, port: int) -> str:
        """Return the URL under which a container port is reachable.

        Raises:
            SandboxError: If the port is not published.
        """
        host_port = await asyncio.get_running_loop().run_in_executor(
            None, self._lookup_host_port, port
        )
        if host_port is None:
            raise SandboxError(
                f"Port {port} is not exposed by sandbox '{self.sandbox_id}'"
            )
        return f"http://{self.public_host}:{host_port}"

    def _lookup_host_port(self, port: int) -> str | None:
        self._container.reload()
        ports = self._container.attrs.get("NetworkSettings", {}).get("Ports") or {}
        bindings = ports.get(f"{port}/tcp") or []
        for binding in bindings:
            if binding.get("HostPort"):
                return binding["HostPort"]
        return None


class SandboxProvisioner:
    """Creates sandboxes and resolves them by id.

    No in-process registry is kept: the container name is the sandbox id and
    the deadline lives in a container label, so ``resolve`` works from any
    process and after any number of steps.

    Attributes:
        workdir: Working directory inside sandbox containers.
        preview_port: Container port published for the preview server.
        public_host: Host name used when building preview URLs.
    """

    def __init__(
        self,
        client: docker.DockerClient | None = None,
        workdir: str | None = None,
        preview_port: int | None = None,
        public_host: str | None = None,
    ) -> None:
        self._client = client
        self.workdir = workdir or settings.sandbox_workdir
        self.preview_port = preview_port or settings.sandbox_preview_port
        self.public_host = public_host or settings.sandbox_public_host

    @property
    def client(self) -> docker.DockerClient:
        """Lazy initialization of Docker client."""
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    async def acquire(
        self,
        template_id: str,
        timeout_seconds: int | None = None,
    ) -> str:
        """Provision a fresh sandbox from a template image.

        Args:
            template_id: Docker image to start the sandbox from.
            timeout_seconds: Sandbox lifetime (defaults to config).

        Returns:
            The new sandbox id.

        Raises:
            SandboxProvisionError: If the container cannot be started.
        """
        timeout_seconds = timeout_seconds or settings.sandbox_timeout_seconds
        sandbox_id = f"sbx-{uuid.uuid4().hex[:12]}"
        deadline = time.time() + timeout_seconds

        try:
            await self.reap_expired()
        except (APIError, DockerException) as e:
            # Cleanup of old sandboxes must not block provisioning
            logger.warning("sandbox_reap_failed", error=str(e))

        try:
            container = await asyncio.wait_for(
                asyncio.get_running_loop().run_in_executor(
                    None,
                    self._create_container,
                    template_id,
                    sandbox_id,
                    deadline,
                ),
                timeout=60,
            )
        except (APIError, ImageNotFound, DockerException, TimeoutError) as e:
            logger.error(
                "sandbox_creation_failed",
                sandbox_id=sandbox_id,
                template=template_id,
                error=str(e),
            )
            raise SandboxProvisionError(f"Failed to create sandbox: {e}") from e

        logger.info(
            "sandbox_created",
            sandbox_id=sandbox_id,
            container_id=container.id[:12],
            template=template_id,
            timeout_seconds=timeout_seconds,
        )
        return sandbox_id

    def _create_container(
        self,
        template_id: str,
        sandbox_id: str,
        deadline: float,
    ) -> docker.models.containers.Container:
        """Create the Docker container (blocking operation)."""
        return self.client.containers.run(
            template_id,
            name=sandbox_id,
            detach=True,
            # None lets Docker pick a free host port
            ports={f"{self.preview_port}/tcp": None},
            labels={SANDBOX_LABEL: "1", DEADLINE_LABEL: f"{deadline:.3f}"},
            working_dir=self.workdir,
            mem_limit=CONTAINER_CONFIG["mem_limit"],
            cpu_period=CONTAINER_CONFIG["cpu_period"],
            cpu_quota=CONTAINER_CONFIG["cpu_quota"],
            network_mode=CONTAINER_CONFIG["network_mode"],
            security_opt=CONTAINER_CONFIG["security_opt"],
        )

    async def resolve(self, sandbox_id: str) -> SandboxHandle:
        """Re-obtain a live handle to a provisioned sandbox.

        Raises:
            SandboxUnavailableError: If the sandbox is gone, stopped or expired.
        """
        try:
            container = await asyncio.get_running_loop().run_in_executor(
                None, self.client.containers.get, sandbox_id
            )
        except NotFound as e:
            raise SandboxUnavailableError(f"Sandbox '{sandbox_id}' not found") from e
        except (APIError, DockerException) as e:
            raise SandboxUnavailableError(
                f"Sandbox '{sandbox_id}' could not be resolved: {e}"
            ) from e

        deadline = self._deadline_of(container)
        if deadline is not None and time.time() >= deadline:
            logger.warning("sandbox_expired", sandbox_id=sandbox_id)
            raise SandboxUnavailableError(f"Sandbox '{sandbox_id}' has expired")

        if container.status != "running":
            raise SandboxUnavailableError(
                f"Sandbox '{sandbox_id}' is not running (status: {container.status})"
            )

        return SandboxHandle(
            client=self.client,
            container=container,
            sandbox_id=sandbox_id,
            deadline=deadline if deadline is not None else float("inf"),
            workdir=self.workdir,
            public_host=self.public_host,
        )

    async def start_reap_loop(
        self, interval_seconds: float | None = None
    ) -> asyncio.Task[None]:
        """Start a background task that periodically removes expired sandboxes.

        The task runs until cancelled (typically at worker shutdown).

        Args:
            interval_seconds: Seconds between reap rounds (defaults to config).

        Returns:
            The background asyncio.Task that can be cancelled on shutdown.
        """
        interval_seconds = interval_seconds or settings.sandbox_reap_interval_seconds

        async def _loop() -> None:
            logger.info("reap_loop_started", interval_seconds=interval_seconds)
            try:
                while True:
                    try:
                        await self.reap_expired()
                    except (APIError, DockerException) as e:
                        logger.error("reap_loop_error", error=str(e))
                    await asyncio.sleep(interval_seconds)
            except asyncio.CancelledError:
                logger.info("reap_loop_stopped")

        return asyncio.create_task(_loop(), name="sandbox_reaper")

    async def reap_expired(self) -> int:
        """Remove sandbox containers whose deadline has passed.

        Returns:
            Number of containers removed.
        """
        return await asyncio.get_running_loop().run_in_executor(
            None, self._reap_expired_blocking
        )

    def _reap_expired_blocking(self) -> int:
        removed = 0
        now = time.time()
        containers = self.client.containers.list(
            all=True, filters={"label": SANDBOX_LABEL}
        )
        for container in containers:
            deadline = self._deadline_of(container)
            if deadline is None or now < deadline:
                continue
            try:
                container.remove(force=True)
                removed += 1
                logger.info("sandbox_reaped", sandbox_id=container.name)
            except NotFound:
                pass  # Already removed
            except APIError as e:
                logger.warning(
                    "sandbox_reap_failed",
                    sandbox_id=container.name,
                    error=str(e),
                )
        return removed

    @staticmethod
    def _deadline_of(container: docker.models.containers.Container) -> float | None:
        raw = (container.labels or {}).get(DEADLINE_LABEL)
        if raw is None:
            return None
        try:
            return float(raw)
        except ValueError:
            return None
