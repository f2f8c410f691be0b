"""Custom exceptions for the pgimg CLI.

All exceptions provide:
- Clear error messages
- Optional hints for resolution
- Optional details for debugging
- Exit codes for proper shell integration
"""

from typing import Optional


class PgImgError(Exception):
    """Base exception for all pgimg errors.

    Attributes:
        message: Human-readable error description
        hint: Suggested action to resolve the error
        details: Additional context for debugging
        exit_code: Shell exit code (1-127)
    """

    exit_code: int = 1

    def __init__(
        self,
        message: str,
        *,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.details = details or []

    def __str__(self) -> str:
        return self.message


class ConfigurationError(PgImgError):
    """Configuration file or settings errors.

    Raised when:
    - Config file not found or unreadable
    - Invalid YAML syntax
    - Invalid configuration values
    """
    exit_code = 2


class ValidationError(PgImgError):
    """Input validation errors.

    Raised when:
    - Invalid memory override or memory size string
    - Invalid bind address
    - Invalid container or extension names
    """
    exit_code = 3


class ExecutionError(PgImgError):
    """Command execution failures.

    Raised when:
    - docker / psql returns non-zero exit code
    - A command times out
    """
    exit_code = 5

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        return_code: Optional[int] = None,
        stderr: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        if not details:
            details = []
        if return_code is not None:
            details.append(f"Exit code: {return_code}")
        if stderr:
            details.append(f"Error output: {stderr.strip()}")
        super().__init__(message, hint=hint, details=details)
        self.command = command
        self.return_code = return_code
        self.stderr = stderr


class PrerequisiteError(PgImgError):
    """Missing prerequisites.

    Raised when:
    - docker or psql binary not found
    - Docker daemon not running
    - Docker image not present locally
    """
    exit_code = 6


# Domain-specific exceptions

class ManifestError(PgImgError):
    """Extension manifest errors.

    Raised when:
    - Manifest file missing or not valid JSON
    - Entries fail schema validation
    - Dependency graph contains a cycle
    """
    exit_code = 8


class AutoConfigError(PgImgError):
    """Fatal auto-configuration errors at container startup.

    Raised when:
    - Required password is missing
    - Bind address is invalid
    """
    exit_code = 9


class MinimumMemoryError(AutoConfigError):
    """Detected memory is below the supported minimum."""

    def __init__(self, ram_mb: int, minimum_mb: int) -> None:
        super().__init__(
            f"FATAL: Detected {ram_mb}MB RAM - minimum {minimum_mb}MB REQUIRED",
            hint=f"Set memory limit: docker run -m {minimum_mb}m OR compose mem_limit: {minimum_mb}m",
        )
        self.ram_mb = ram_mb
        self.minimum_mb = minimum_mb


class ContainerError(PgImgError):
    """Container lifecycle errors.

    Raised when:
    - Container fails to start
    - PostgreSQL does not become ready in time
    """
    exit_code = 10

    def __init__(
        self,
        message: str,
        *,
        container: Optional[str] = None,
        logs: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.container = container
        self.logs = logs


class HarnessAssertionError(PgImgError):
    """A test harness assertion did not hold."""
    exit_code = 11

    def __init__(
        self,
        message: str,
        *,
        expected: Optional[str] = None,
        actual: Optional[str] = None,
        hint: Optional[str] = None,
    ) -> None:
        details = []
        if expected is not None:
            details.append(f"Expected: {expected}")
        if actual is not None:
            details.append(f"Actual: {actual}")
        super().__init__(message, hint=hint, details=details)
        self.expected = expected
        self.actual = actual
