"""Docker and psql interface for image tests.

Provides:
- Container lifecycle (run, inspect, logs, remove)
- Command and SQL execution inside containers
- Readiness polling with pg_isready
"""

import shutil
import time
from dataclasses import dataclass
from typing import Optional

from pgimg.core.context import ExecutionContext
from pgimg.core.exceptions import ExecutionError, PrerequisiteError
from pgimg.core.executor import CommandExecutor, CommandResult


DEFAULT_USER = "postgres"
DEFAULT_DATABASE = "postgres"
POSTGRES_PORT = 5432


@dataclass
class ContainerState:
    """Runtime state reported by docker inspect."""
    status: str
    exit_code: int

    @property
    def running(self) -> bool:
        return self.status in ("running", "restarting")

    @property
    def exited(self) -> bool:
        return self.status in ("exited", "dead")


class DockerService:
    """Thin wrapper over the docker CLI.

    All commands go through the CommandExecutor, so they respect dry-run
    mode and show up in debug output.
    """

    def __init__(self, ctx: ExecutionContext, executor: CommandExecutor) -> None:
        self.ctx = ctx
        self.executor = executor

    # =========================================================================
    # Prerequisites
    # =========================================================================

    def check_available(self) -> None:
        """Ensure the docker CLI exists and the daemon answers.

        Raises:
            PrerequisiteError: If docker is missing or the daemon is down
        """
        if shutil.which("docker") is None:
            raise PrerequisiteError(
                "Docker not found",
                hint="Install Docker: https://docs.docker.com/get-docker/",
            )
        if not self.daemon_available():
            raise PrerequisiteError(
                "Docker daemon not running",
                hint="Start Docker: sudo systemctl start docker (Linux) or open Docker Desktop",
            )

    def daemon_available(self) -> bool:
        result = self.executor.run(["docker", "info"], check=False)
        return result.success

    def image_exists(self, image: str) -> bool:
        result = self.executor.run(["docker", "image", "inspect", image], check=False)
        return result.success

    def require_image(self, image: str) -> None:
        """Raise PrerequisiteError when an image is not available locally."""
        if not self.image_exists(image):
            raise PrerequisiteError(
                f"Docker image not found: {image}",
                hint="Build the image first, or pass a different tag with --image",
            )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def run(
        self,
        image: str,
        name: str,
        *,
        env: Optional[dict[str, str]] = None,
        docker_args: Optional[list[str]] = None,
        command: Optional[list[str]] = None,
    ) -> str:
        """Start a detached container.

        Args:
            image: Image tag
            name: Container name
            env: Environment variables passed with -e
            docker_args: Extra docker run flags (--memory=2g, --cpus=2, ...)
            command: Container command arguments

        Returns:
            Container ID

        Raises:
            ExecutionError: If docker run fails
        """
        cmd = ["docker", "run", "-d", "--name", name]
        cmd.extend(docker_args or [])
        for key, value in (env or {}).items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.append(image)
        cmd.extend(command or [])

        result = self.executor.run(
            cmd,
            description=f"Start container {name}",
            sensitive=bool(env),
        )
        return result.stdout.strip()

    def remove(self, container: str) -> bool:
        """Force-remove a container, ignoring errors."""
        try:
            result = self.executor.run(
                ["docker", "rm", "-f", container],
                check=False,
                timeout=60,
            )
        except ExecutionError as e:
            self.ctx.console.debug(f"Cleanup of {container} failed: {e}")
            return False
        return result.success

    def inspect_state(self, container: str) -> Optional[ContainerState]:
        """Current container state, or None when it does not exist."""
        result = self.executor.run(
            ["docker", "inspect", "-f", "{{.State.Status}} {{.State.ExitCode}}", container],
            check=False,
        )
        if not result.success or not result.stdout.strip():
            return None
        parts = result.stdout.split()
        try:
            exit_code = int(parts[1]) if len(parts) > 1 else 0
        except ValueError:
            exit_code = 0
        return ContainerState(status=parts[0], exit_code=exit_code)

    def logs(self, container: str) -> str:
        """Container stdout and stderr combined."""
        result = self.executor.run(["docker", "logs", container], check=False)
        return result.output

    def port(self, container: str, port: int = POSTGRES_PORT) -> Optional[int]:
        """Host port mapped to a container port."""
        result = self.executor.run(
            ["docker", "port", container, f"{port}/tcp"],
            check=False,
        )
        if not result.success:
            return None
        for line in result.stdout.splitlines():
            _, _, host_port = line.rpartition(":")
            if host_port.strip().isdigit():
                return int(host_port)
        return None

    # =========================================================================
    # Execution
    # =========================================================================

    def exec(
        self,
        container: str,
        command: list[str],
        *,
        check: bool = True,
        input: Optional[str] = None,
        timeout: Optional[int] = None,
    ) -> CommandResult:
        """Run a command inside a container."""
        cmd = ["docker", "exec"]
        if input is not None:
            cmd.append("-i")
        cmd.append(container)
        cmd.extend(command)
        return self.executor.run(cmd, check=check, input=input, timeout=timeout)

    def pg_isready(self, container: str, user: str = DEFAULT_USER) -> bool:
        result = self.exec(container, ["pg_isready", "-U", user], check=False)
        return result.success

    def psql(
        self,
        container: str,
        sql: str,
        *,
        database: str = DEFAULT_DATABASE,
        user: str = DEFAULT_USER,
        tuples_only: bool = True,
        check: bool = True,
        timeout: Optional[int] = 120,
    ) -> CommandResult:
        """Run SQL through psql inside the container.

        Args:
            container: Container name
            sql: SQL statement(s)
            database: Database to connect to
            user: PostgreSQL role
            tuples_only: Unaligned, tuples-only output (-t -A)
            check: Raise ExecutionError on psql failure
            timeout: Command timeout in seconds

        Returns:
            CommandResult with psql output
        """
        cmd = ["psql", "-X", "-v", "ON_ERROR_STOP=1", "-U", user, "-d", database]
        if tuples_only:
            cmd.extend(["-t", "-A"])
        cmd.extend(["-c", sql])
        return self.exec(container, cmd, check=check, timeout=timeout)

    def psql_script(
        self,
        container: str,
        script: str,
        *,
        database: str = DEFAULT_DATABASE,
        user: str = DEFAULT_USER,
        timeout: Optional[int] = 300,
    ) -> CommandResult:
        """Feed a SQL script to psql on stdin, echoing queries like pg_regress.

        stderr is merged into stdout so errors appear next to the statement
        that raised them.
        """
        cmd = [
            "sh", "-c",
            'exec psql -X -a -q -v HIDE_TABLEAM=on -U "$1" -d "$2" 2>&1',
            "psql", user, database,
        ]
        return self.exec(container, cmd, check=False, input=script, timeout=timeout)

    # =========================================================================
    # Readiness
    # =========================================================================

    def wait_for_postgres(
        self,
        container: str,
        *,
        timeout: int = 60,
        interval: float = 2.0,
        user: str = DEFAULT_USER,
    ) -> bool:
        """Poll pg_isready until PostgreSQL accepts connections.

        Stops early if the container exits.

        Returns:
            True when ready, False on timeout or container exit
        """
        if self.ctx.dry_run:
            return True

        self.ctx.console.verbose(
            f"Waiting for PostgreSQL in {container} (user: {user}, timeout: {timeout}s)..."
        )
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.pg_isready(container, user):
                return True
            state = self.inspect_state(container)
            if state is not None and state.exited:
                self.ctx.console.debug(
                    f"Container {container} exited with code {state.exit_code}"
                )
                return False
            time.sleep(interval)

        return False

    def wait_for_exit(
        self,
        container: str,
        *,
        timeout: int = 15,
        interval: float = 1.0,
    ) -> Optional[ContainerState]:
        """Wait for a container to stop; returns its final state or None on timeout."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            state = self.inspect_state(container)
            if state is None or state.exited:
                return state
            time.sleep(interval)
        return None

    def wait_for_host(
        self,
        host: str = "localhost",
        port: int = POSTGRES_PORT,
        *,
        user: str = DEFAULT_USER,
        timeout: int = 60,
        interval: float = 2.0,
    ) -> bool:
        """Poll a PostgreSQL server from the host with pg_isready."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            result = self.executor.run(
                ["pg_isready", "-h", host, "-p", str(port), "-U", user],
                check=False,
            )
            if result.success:
                return True
            time.sleep(interval)
        return False
