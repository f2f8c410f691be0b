"""Container-scoped test harness.

Provides:
- ContainerScope: start a container and always remove it on exit
- TestHarness: tracks scopes, cleans up on SIGINT/SIGTERM, records cases
- Retry of psql calls on transient startup errors
- Log, setting and SQL assertions with expected/actual reporting
"""

import os
import re
import secrets
import signal
import time
from types import FrameType
from typing import Any, Callable, Optional, TypeVar

from pgimg.core.config import HarnessConfig
from pgimg.core.context import ExecutionContext
from pgimg.core.exceptions import (
    ContainerError,
    ExecutionError,
    HarnessAssertionError,
    PgImgError,
)
from pgimg.core.output import console
from pgimg.core.results import ResultRecorder
from pgimg.core.validation import validate_identifier
from pgimg.services.docker import DockerService


T = TypeVar("T")

# psql errors seen while the server is still starting or restarting
TRANSIENT_MARKERS = (
    "shutting down",
    "starting up",
    "No such file or directory",
    "Connection refused",
)

# Keep failure output readable when logs are long
MAX_ACTUAL_CHARS = 4000


def is_transient(text: str) -> bool:
    return any(marker in text for marker in TRANSIENT_MARKERS)


def retry_transient(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    base_delay: float = 2.0,
    ctx: Optional[ExecutionContext] = None,
) -> T:
    """Call fn, retrying transient psql failures with exponential backoff.

    Args:
        fn: Operation to run; signals failure with ExecutionError
        attempts: Maximum number of calls
        base_delay: Delay before the second call, doubled each retry
        ctx: Context for debug output

    Returns:
        Whatever fn returns

    Raises:
        ExecutionError: Non-transient failure, or the last transient one
    """
    attempt = 1
    while True:
        try:
            return fn()
        except ExecutionError as e:
            text = f"{e.message}\n{e.stderr or ''}"
            if attempt >= attempts or not is_transient(text):
                raise
            delay = base_delay * (2 ** (attempt - 1))
            if ctx is not None:
                ctx.console.debug(
                    f"Transient error (attempt {attempt}/{attempts}), retrying in {delay:.0f}s"
                )
            time.sleep(delay)
            attempt += 1


def _truncate(text: str) -> str:
    if len(text) <= MAX_ACTUAL_CHARS:
        return text
    return "..." + text[-MAX_ACTUAL_CHARS:]


# =============================================================================
# Assertions
# =============================================================================

def assert_log_contains(logs: str, pattern: str, message: str) -> None:
    """Assert a regex matches somewhere in container logs.

    Raises:
        HarnessAssertionError: If the pattern is not found
    """
    if not re.search(pattern, logs):
        raise HarnessAssertionError(
            message,
            expected=f"pattern '{pattern}' in logs",
            actual=_truncate(logs.strip()) or "(empty logs)",
        )
    console.passed(message)


def assert_setting(
    docker: DockerService,
    container: str,
    name: str,
    pattern: str,
    message: str,
) -> str:
    """Assert ``SHOW <name>`` matches a regex.

    Returns:
        The value PostgreSQL reported
    """
    validate_identifier(name, "setting")
    result = docker.psql(container, f"SHOW {name};", check=False)
    actual = result.stdout.strip()
    if not result.success:
        raise HarnessAssertionError(
            message,
            expected=f"SHOW {name} to succeed",
            actual=result.stderr.strip() or f"exit code {result.return_code}",
        )
    if not re.search(pattern, actual):
        raise HarnessAssertionError(message, expected=pattern, actual=actual)
    console.passed(f"{message} (actual: {actual})")
    return actual


def _sql_output(
    docker: DockerService,
    container: str,
    sql: str,
    message: str,
    database: str,
) -> str:
    result = docker.psql(container, sql, database=database, check=False)
    if not result.success:
        raise HarnessAssertionError(
            message,
            expected="statement to succeed",
            actual=result.stderr.strip() or f"exit code {result.return_code}",
        )
    return result.stdout.strip()


def assert_sql_succeeds(
    docker: DockerService,
    container: str,
    sql: str,
    message: str,
    *,
    database: str = "postgres",
) -> str:
    """Assert SQL runs without error; returns its output."""
    output = _sql_output(docker, container, sql, message, database)
    console.passed(message)
    return output


def assert_sql_fails(
    docker: DockerService,
    container: str,
    sql: str,
    message: str,
    *,
    expected_error: Optional[str] = None,
    database: str = "postgres",
) -> str:
    """Assert SQL fails, optionally with an error matching a regex; returns the error."""
    result = docker.psql(container, sql, database=database, check=False)
    error = result.stderr.strip()
    if result.success:
        raise HarnessAssertionError(
            message,
            expected=f"error{f' matching {expected_error!r}' if expected_error else ''}",
            actual=f"statement succeeded: {result.stdout.strip()}",
        )
    if expected_error and not re.search(expected_error, error):
        raise HarnessAssertionError(message, expected=expected_error, actual=error)
    console.passed(message)
    return error


def assert_sql_contains(
    docker: DockerService,
    container: str,
    sql: str,
    pattern: str,
    message: str,
    *,
    database: str = "postgres",
) -> str:
    """Assert SQL output matches a regex; returns the output."""
    output = _sql_output(docker, container, sql, message, database)
    if not re.search(pattern, output):
        raise HarnessAssertionError(message, expected=pattern, actual=output or "(no rows)")
    console.passed(message)
    return output


# =============================================================================
# Container scope
# =============================================================================

def unique_container_name(prefix: str) -> str:
    return f"{prefix}-{secrets.token_hex(4)}-{os.getpid()}"


class ContainerScope:
    """A container that exists for the duration of a ``with`` block.

    A new container is removed on every exit path. With ``reuse`` the scope
    attaches to an existing container and never removes it.

    Usage:
        with ContainerScope(docker, image, env={...}) as scope:
            scope.wait_ready()
            scope.psql("SELECT 1")
    """

    def __init__(
        self,
        docker: DockerService,
        image: str,
        *,
        name: Optional[str] = None,
        prefix: str = "pgimg-test",
        env: Optional[dict[str, str]] = None,
        docker_args: Optional[list[str]] = None,
        command: Optional[list[str]] = None,
        reuse: Optional[str] = None,
        on_close: Optional[Callable[["ContainerScope"], None]] = None,
    ) -> None:
        self.docker = docker
        self.image = image
        self.name = reuse or name or unique_container_name(prefix)
        self.env = env or {}
        self.docker_args = docker_args or []
        self.command = command or []
        self.owned = reuse is None
        self.started = False
        self._on_close = on_close

    def __enter__(self) -> "ContainerScope":
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()

    def start(self) -> None:
        """Start the container (no-op for reused containers).

        Raises:
            ContainerError: If docker run fails
        """
        if not self.owned:
            self.started = True
            return
        try:
            self.docker.run(
                self.image,
                self.name,
                env=self.env,
                docker_args=self.docker_args,
                command=self.command,
            )
        except ExecutionError as e:
            self.docker.remove(self.name)
            raise ContainerError(
                f"Failed to start container {self.name}",
                container=self.name,
                details=e.details,
                hint=f"Check that image {self.image} exists and the docker arguments are valid",
            ) from e
        self.started = True

    def close(self) -> None:
        """Remove the container if this scope created it."""
        if self.owned and self.started:
            self.docker.remove(self.name)
            self.started = False
        if self._on_close is not None:
            self._on_close(self)

    def wait_ready(self, timeout: int = 60, interval: float = 2.0) -> None:
        """Wait for pg_isready.

        Raises:
            ContainerError: If PostgreSQL is not ready in time (logs attached)
        """
        if self.docker.wait_for_postgres(self.name, timeout=timeout, interval=interval):
            return
        logs = self.logs()
        raise ContainerError(
            f"PostgreSQL not ready after {timeout} seconds in {self.name}",
            container=self.name,
            logs=logs,
            details=[line for line in logs.splitlines()[-20:]],
        )

    def logs(self) -> str:
        return self.docker.logs(self.name)

    def psql(self, sql: str, **kwargs: Any):
        return self.docker.psql(self.name, sql, **kwargs)


# =============================================================================
# Harness
# =============================================================================

class TestHarness:
    """Runs test cases against containers of one image.

    Every container started through the harness is removed when the
    harness exits, including on SIGINT/SIGTERM.
    """

    __test__ = False

    def __init__(
        self,
        ctx: ExecutionContext,
        docker: DockerService,
        image: str,
        *,
        config: Optional[HarnessConfig] = None,
        recorder: Optional[ResultRecorder] = None,
        reuse_container: Optional[str] = None,
        prefix: str = "pgimg-test",
    ) -> None:
        self.ctx = ctx
        self.docker = docker
        self.image = image
        self.config = config or HarnessConfig()
        self.recorder = recorder or ResultRecorder("adhoc")
        self.reuse_container = reuse_container
        self.prefix = prefix
        self._scopes: list[ContainerScope] = []
        self._previous_handlers: dict[int, Any] = {}

    def __enter__(self) -> "TestHarness":
        self.install_signal_handlers()
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        try:
            self.cleanup_all()
        finally:
            self.restore_signal_handlers()

    # Signals
    def install_signal_handlers(self) -> None:
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

    def restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def _handle_signal(self, signum: int, frame: Optional[FrameType]) -> None:
        self.ctx.console.warn(f"Received {signal.Signals(signum).name}, removing test containers...")
        self.cleanup_all()
        raise SystemExit(128 + signum)

    # Containers
    def container(
        self,
        suffix: str = "pg",
        *,
        env: Optional[dict[str, str]] = None,
        docker_args: Optional[list[str]] = None,
        command: Optional[list[str]] = None,
        reuse: bool = True,
    ) -> ContainerScope:
        """Create a tracked container scope.

        When the harness was given ``--container`` and ``reuse`` is True the
        scope attaches to that container instead of starting a new one.
        """
        scope = ContainerScope(
            self.docker,
            self.image,
            prefix=f"{self.prefix}-{suffix}",
            env=env,
            docker_args=docker_args,
            command=command,
            reuse=self.reuse_container if reuse else None,
            on_close=self._forget,
        )
        self._scopes.append(scope)
        return scope

    def _forget(self, scope: ContainerScope) -> None:
        if scope in self._scopes:
            self._scopes.remove(scope)

    def cleanup_all(self) -> None:
        """Remove every container this harness started."""
        for scope in list(self._scopes):
            scope.close()
        self._scopes.clear()

    # Cases
    def run_case(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
        """Run one test case and record the outcome.

        Harness errors (assertions, container and execution failures) fail
        the case; anything else propagates.

        Returns:
            True if the case passed
        """
        self.ctx.console.rule(name)
        start = time.monotonic()
        error: Optional[PgImgError] = None
        try:
            fn(*args, **kwargs)
        except PgImgError as e:
            error = e
        duration_ms = int((time.monotonic() - start) * 1000)

        if error is None:
            self.ctx.console.passed(name)
            self.recorder.record(name, True, duration_ms)
            return True

        self.ctx.console.failed(f"{name}: {error.message}", error.details)
        if error.hint:
            self.ctx.console.hint(error.hint)
        detail = "; ".join([error.message, *error.details])
        self.recorder.record(name, False, duration_ms, error=detail)
        return False

    # Convenience wrappers bound to this harness's retry settings
    def retry(self, fn: Callable[[], T]) -> T:
        return retry_transient(
            fn,
            attempts=self.config.retry_attempts,
            base_delay=self.config.backoff_seconds,
            ctx=self.ctx,
        )

    def wait_ready(self, scope: ContainerScope) -> None:
        """Wait for pg_isready, then for a query to go through.

        pg_isready also answers for the temporary server the upstream
        entrypoint runs during initdb, so a query is retried until the
        final server is up.
        """
        scope.wait_ready(timeout=self.config.ready_timeout, interval=self.config.poll_interval)
        self.retry(lambda: scope.psql("SELECT 1"))
