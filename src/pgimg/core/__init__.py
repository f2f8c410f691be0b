"""Core framework components for pgimg."""

from pgimg.core.exceptions import (
    PgImgError,
    ConfigurationError,
    ValidationError,
    ExecutionError,
    PrerequisiteError,
    ManifestError,
    AutoConfigError,
    MinimumMemoryError,
    ContainerError,
    HarnessAssertionError,
)

from pgimg.core.context import ExecutionContext, create_context
from pgimg.core.output import console, Console, Verbosity
from pgimg.core.config import AppConfig, AutoConfigEnv, HarnessConfig, ToolConfig
from pgimg.core.executor import CommandExecutor, CommandResult
from pgimg.core.results import ResultRecorder, CaseResult

__all__ = [
    # Exceptions
    "PgImgError",
    "ConfigurationError",
    "ValidationError",
    "ExecutionError",
    "PrerequisiteError",
    "ManifestError",
    "AutoConfigError",
    "MinimumMemoryError",
    "ContainerError",
    "HarnessAssertionError",
    # Context
    "ExecutionContext",
    "create_context",
    # Output
    "console",
    "Console",
    "Verbosity",
    # Config
    "AppConfig",
    "AutoConfigEnv",
    "HarnessConfig",
    "ToolConfig",
    # Executor
    "CommandExecutor",
    "CommandResult",
    # Results
    "ResultRecorder",
    "CaseResult",
]
