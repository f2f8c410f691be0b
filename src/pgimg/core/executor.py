"""Command execution for docker and psql.

Provides:
- Command execution with output capture and optional stdin
- Dry-run mode support
- Atomic file writes and timestamped backups
"""

import glob
import os
import secrets
import shlex
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pgimg.core.context import ExecutionContext
from pgimg.core.exceptions import ExecutionError


@dataclass
class CommandResult:
    """Result of a command execution."""
    command: list[str]
    return_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        """Check if command succeeded."""
        return self.return_code == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, the way a terminal would show it."""
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr


class CommandExecutor:
    """Command execution with dry-run support and output capture.

    Features:
    - Dry-run mode shows what would happen
    - Output capture for processing
    - Timeout support
    - Sensitive command masking
    """

    def __init__(self, ctx: ExecutionContext) -> None:
        self.ctx = ctx

    def run(
        self,
        command: list[str],
        *,
        description: Optional[str] = None,
        check: bool = True,
        capture: bool = True,
        sensitive: bool = False,
        timeout: Optional[int] = None,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Path] = None,
        input: Optional[str] = None,
    ) -> CommandResult:
        """Execute a command.

        Args:
            command: Command as list of strings
            description: Human-readable description for logging
            check: Raise exception on non-zero exit
            capture: Capture stdout/stderr
            sensitive: Don't log the actual command
            timeout: Command timeout in seconds
            env: Additional environment variables
            cwd: Working directory
            input: Text fed to the command's stdin

        Returns:
            CommandResult with output

        Raises:
            ExecutionError: If command fails and check=True, or times out
        """
        if description:
            self.ctx.console.step(description)

        cmd_display = "<sensitive command>" if sensitive else shlex.join(command)
        self.ctx.console.debug(f"Running: {cmd_display}")

        if self.ctx.dry_run:
            self.ctx.console.dry_run_msg(f"Run: {cmd_display}")
            return CommandResult(
                command=command,
                return_code=0,
                stdout="",
                stderr="",
            )

        run_env = None
        if env:
            run_env = os.environ.copy()
            run_env.update(env)

        try:
            result = subprocess.run(
                command,
                capture_output=capture,
                text=True,
                timeout=timeout,
                env=run_env,
                cwd=cwd,
                input=input,
            )
        except subprocess.TimeoutExpired:
            raise ExecutionError(
                f"Command timed out after {timeout}s: {description or cmd_display}",
                command=cmd_display,
            )
        except FileNotFoundError:
            raise ExecutionError(
                f"Command not found: {command[0]}",
                command=cmd_display,
                hint=f"Install {command[0]} and make sure it is on PATH",
            )

        cmd_result = CommandResult(
            command=command,
            return_code=result.returncode,
            stdout=result.stdout if capture else "",
            stderr=result.stderr if capture else "",
        )

        if check and result.returncode != 0:
            raise ExecutionError(
                f"Command failed: {description or cmd_display}",
                command=cmd_display,
                return_code=result.returncode,
                stderr=result.stderr if capture else None,
            )

        return cmd_result

    def write_file(
        self,
        path: Path,
        content: str,
        *,
        description: Optional[str] = None,
        permissions: int = 0o644,
    ) -> None:
        """Write content to a file atomically.

        The content goes to a temp file in the same directory which is then
        renamed over the destination, so readers never see a partial file.
        """
        desc = description or f"Write {path}"
        self.ctx.console.step(desc)

        if self.ctx.dry_run:
            self.ctx.console.dry_run_msg(f"Write {len(content)} bytes to {path}")
            if self.ctx.is_verbose:
                preview = content[:500] + "..." if len(content) > 500 else content
                self.ctx.console.print(f"[dim]{preview}[/dim]", markup=False)
            return

        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.tmp_{secrets.token_hex(8)}")

        success = False
        try:
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, permissions)
            with os.fdopen(fd, "w") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
            success = True
        finally:
            if not success and tmp_path.exists():
                tmp_path.unlink()

    def backup_file(
        self,
        path: Path,
        *,
        suffix: str = ".bak",
        keep: Optional[int] = None,
    ) -> Optional[Path]:
        """Create a timestamped backup of a file.

        Args:
            path: File to back up
            suffix: Backup file suffix
            keep: Number of backups of this file to retain (at least 1)

        Returns:
            Path to backup file, or None if original doesn't exist
        """
        if not path.exists():
            return None

        timestamp = time.strftime("%Y%m%d_%H%M%S")
        backup_path = path.with_suffix(f"{path.suffix}.{timestamp}{suffix}")

        if self.ctx.dry_run:
            self.ctx.console.dry_run_msg(f"Backup {path} to {backup_path}")
            return backup_path

        shutil.copy2(path, backup_path)
        self.ctx.console.debug(f"Backed up {path} to {backup_path}")

        if keep:
            # Timestamped names sort oldest first
            backups = sorted(path.parent.glob(f"{glob.escape(path.name)}.*{suffix}"))
            for old in backups[:-keep]:
                old.unlink(missing_ok=True)
                self.ctx.console.debug(f"Removed old backup {old}")
        return backup_path

        shutil.copy2(path, backup_path)
        self.ctx.console.debug(f"Backed up {path} to {backup_path}")
        return backup_path
