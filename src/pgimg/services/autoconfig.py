"""PostgreSQL auto-configuration service.

Provides:
- Resource detection (manual override, cgroup v2 limits, host fallback)
- Memory/CPU based sizing of PostgreSQL settings
- Rendering of the decision as ``-c`` arguments or a config file
- Entrypoint planning for the container wrapper
"""

import math
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from jinja2 import Environment, PackageLoader

from pgimg.core.config import AutoConfigEnv, UPSTREAM_ENTRYPOINT
from pgimg.core.context import ExecutionContext
from pgimg.core.exceptions import AutoConfigError, MinimumMemoryError, ValidationError
from pgimg.core.executor import CommandExecutor
from pgimg.core.validation import validate_bind_ip, validate_memory_override


LOG_TAG = "AUTO-CONFIG"

MINIMUM_RAM_MB = 512
DEFAULT_RAM_MB = 1024
DEFAULT_BIND_IP = "127.0.0.1"

SHARED_BUFFERS_FLOOR_MB = 64
SHARED_BUFFERS_CAP_MB = 32768
MAINTENANCE_WORK_MEM_FLOOR_MB = 32
MAINTENANCE_WORK_MEM_CAP_MB = 2048
WORK_MEM_FLOOR_MB = 1
WORK_MEM_CAP_MB = 32
MAX_CONNECTIONS_CAP = 200

DEFAULT_CGROUP_ROOT = Path("/sys/fs/cgroup")
DEFAULT_MEMINFO_PATH = Path("/proc/meminfo")


class MemorySource(str, Enum):
    """Where the RAM figure came from."""

    MANUAL = "manual"
    CGROUP_V2 = "cgroup-v2"
    MEMINFO = "meminfo"
    DEFAULT = "default"


class CpuSource(str, Enum):
    """Where the CPU count came from."""

    MANUAL = "manual"
    CGROUP_V2 = "cgroup-v2"
    NPROC = "nproc"


@dataclass
class DetectedResources:
    """Memory and CPU available to PostgreSQL."""

    ram_mb: int
    ram_source: MemorySource
    cpu_cores: int
    cpu_source: CpuSource


class ResourceDetector:
    """Detects container memory and CPU limits.

    Memory precedence: POSTGRES_MEMORY > cgroup v2 memory.max > /proc/meminfo
    > 1024MB default. CPU: cgroup v2 cpu.max quota > os.cpu_count().

    The cgroup root, meminfo path and CPU counter are injectable so the
    detector can be pointed at fixture files.
    """

    def __init__(
        self,
        cgroup_root: Path = DEFAULT_CGROUP_ROOT,
        meminfo_path: Path = DEFAULT_MEMINFO_PATH,
        cpu_count: Callable[[], Optional[int]] = os.cpu_count,
        log: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.cgroup_root = cgroup_root
        self.meminfo_path = meminfo_path
        self._cpu_count = cpu_count
        self._log = log

    def detect(
        self,
        memory_override: Optional[str] = None,
        cpu_override: Optional[int] = None,
    ) -> DetectedResources:
        """Detect memory and CPU.

        Args:
            memory_override: Raw POSTGRES_MEMORY value (MB), if set
            cpu_override: Explicit core count, bypassing detection

        Returns:
            DetectedResources with values and their sources
        """
        ram_mb, ram_source = self.detect_memory(memory_override)
        if cpu_override is not None:
            cpu_cores, cpu_source = max(1, cpu_override), CpuSource.MANUAL
        else:
            cpu_cores, cpu_source = self.detect_cpu()
        return DetectedResources(
            ram_mb=ram_mb,
            ram_source=ram_source,
            cpu_cores=cpu_cores,
            cpu_source=cpu_source,
        )

    def detect_memory(self, override: Optional[str] = None) -> tuple[int, MemorySource]:
        """Detect available memory in MB.

        An invalid override is reported and detection falls through to the
        next source.
        """
        if override is not None and override.strip():
            try:
                return validate_memory_override(override), MemorySource.MANUAL
            except ValidationError as e:
                if self._log:
                    self._log(f"ERROR: {e.message} (got {override!r}), falling back to detection")

        limit_mb = self._read_cgroup_memory()
        if limit_mb is not None:
            return limit_mb, MemorySource.CGROUP_V2

        total_mb = self._read_meminfo()
        if total_mb is not None:
            return total_mb, MemorySource.MEMINFO

        return DEFAULT_RAM_MB, MemorySource.DEFAULT

    def detect_cpu(self) -> tuple[int, CpuSource]:
        """Detect CPU cores, rounding a fractional cgroup quota up."""
        cores = self._read_cgroup_cpu()
        if cores is not None:
            return cores, CpuSource.CGROUP_V2

        count = self._cpu_count()
        return (count if count and count > 0 else 1), CpuSource.NPROC

    def _read_cgroup_memory(self) -> Optional[int]:
        """Read memory.max; None when unlimited or unavailable."""
        try:
            limit = (self.cgroup_root / "memory.max").read_text().strip()
        except OSError:
            return None
        if not limit or limit == "max":
            return None
        try:
            return int(limit) // 1024 // 1024
        except ValueError:
            return None

    def _read_meminfo(self) -> Optional[int]:
        """Read MemTotal from /proc/meminfo."""
        try:
            with open(self.meminfo_path) as f:
                for line in f:
                    if line.startswith("MemTotal:"):
                        # Format: "MemTotal:     16384000 kB"
                        total_kb = int(line.split()[1])
                        return total_kb // 1024 if total_kb > 0 else None
        except (OSError, ValueError, IndexError):
            pass
        return None

    def _read_cgroup_cpu(self) -> Optional[int]:
        """Read cpu.max ("<quota> <period>"); None when unlimited."""
        try:
            parts = (self.cgroup_root / "cpu.max").read_text().split()
        except OSError:
            return None
        if not parts or parts[0] in ("max", "0"):
            return None
        try:
            quota = int(parts[0])
            period = int(parts[1]) if len(parts) > 1 else 100000
        except ValueError:
            return None
        if quota <= 0 or period <= 0:
            return None
        return max(1, math.ceil(quota / period))


# =============================================================================
# Sizing rules
# =============================================================================

def format_memory_setting(value_mb: int) -> str:
    """Format MB the way SHOW reports it (whole gigabytes use GB)."""
    if value_mb >= 1024 and value_mb % 1024 == 0:
        return f"{value_mb // 1024}GB"
    return f"{value_mb}MB"


def calculate_max_connections(ram_mb: int) -> int:
    """80 below 1GB, 120 below 4GB, 200 otherwise."""
    if ram_mb < 1024:
        return 80
    if ram_mb < 4096:
        return 120
    return MAX_CONNECTIONS_CAP


def shared_buffers_ratio(ram_mb: int) -> int:
    """Percentage of RAM given to shared_buffers (25, 20 or 15)."""
    if ram_mb <= 8192:
        return 25
    if ram_mb <= 32768:
        return 20
    return 15


def calculate_shared_buffers(ram_mb: int) -> int:
    value = ram_mb * shared_buffers_ratio(ram_mb) // 100
    return max(SHARED_BUFFERS_FLOOR_MB, min(value, SHARED_BUFFERS_CAP_MB))


def calculate_effective_cache_size(ram_mb: int, shared_buffers_mb: int) -> int:
    return max(ram_mb - shared_buffers_mb, shared_buffers_mb * 2, 0)


def calculate_maintenance_work_mem(ram_mb: int) -> int:
    value = ram_mb // 32
    return max(MAINTENANCE_WORK_MEM_FLOOR_MB, min(value, MAINTENANCE_WORK_MEM_CAP_MB))


def calculate_work_mem(ram_mb: int, max_connections: int) -> int:
    """Split RAM across connections, assuming four sort/hash nodes each."""
    divisor = max(1, max_connections * 4)
    value = ram_mb // divisor
    return max(WORK_MEM_FLOOR_MB, min(value, WORK_MEM_CAP_MB))


@dataclass
class AutoConfigDecision:
    """Computed PostgreSQL settings for one container start."""

    ram_mb: int
    ram_source: MemorySource
    cpu_cores: int
    cpu_source: CpuSource
    shared_buffers_mb: int
    effective_cache_size_mb: int
    maintenance_work_mem_mb: int
    work_mem_mb: int
    max_connections: int
    max_worker_processes: int
    max_parallel_workers: int
    max_parallel_workers_per_gather: int
    shared_preload_libraries: str
    listen_addresses: str = DEFAULT_BIND_IP
    extra_settings: dict[str, str] = field(default_factory=dict)

    def settings(self) -> dict[str, str]:
        """Settings as PostgreSQL reports them through SHOW.

        Passing these exact strings with ``-c`` makes SHOW return them
        unchanged.
        """
        settings = {
            "shared_buffers": format_memory_setting(self.shared_buffers_mb),
            "effective_cache_size": format_memory_setting(self.effective_cache_size_mb),
            "maintenance_work_mem": format_memory_setting(self.maintenance_work_mem_mb),
            "work_mem": format_memory_setting(self.work_mem_mb),
            "max_worker_processes": str(self.max_worker_processes),
            "max_parallel_workers": str(self.max_parallel_workers),
            "max_parallel_workers_per_gather": str(self.max_parallel_workers_per_gather),
            "max_connections": str(self.max_connections),
            "shared_preload_libraries": self.shared_preload_libraries,
            "listen_addresses": self.listen_addresses,
        }
        settings.update(self.extra_settings)
        return settings

    def postgres_args(self) -> list[str]:
        """``-c name=value`` pairs for the postgres command line."""
        args: list[str] = []
        for name, value in self.settings().items():
            args.extend(["-c", f"{name}={value}"])
        return args

    def summary_line(self) -> str:
        """One-line description logged at container start."""
        return (
            f"RAM: {self.ram_mb}MB ({self.ram_source.value}), "
            f"CPU: {self.cpu_cores} cores ({self.cpu_source.value}) -> "
            f"shared_buffers={self.shared_buffers_mb}MB, "
            f"effective_cache_size={self.effective_cache_size_mb}MB, "
            f"maintenance_work_mem={self.maintenance_work_mem_mb}MB, "
            f"work_mem={self.work_mem_mb}MB, "
            f"max_connections={self.max_connections}, "
            f"max_worker_processes={self.max_worker_processes}, "
            f"max_parallel_workers={self.max_parallel_workers}"
        )


def calculate_decision(
    resources: DetectedResources,
    shared_preload_libraries: str,
    listen_addresses: str = DEFAULT_BIND_IP,
) -> AutoConfigDecision:
    """Size PostgreSQL for the detected resources.

    Args:
        resources: Detected memory and CPU
        shared_preload_libraries: Comma-separated preload list
        listen_addresses: Value for listen_addresses

    Returns:
        AutoConfigDecision with every computed setting

    Raises:
        MinimumMemoryError: If less than 512MB of RAM is available
    """
    ram_mb = resources.ram_mb
    if ram_mb < MINIMUM_RAM_MB:
        raise MinimumMemoryError(ram_mb, MINIMUM_RAM_MB)

    cpu = max(1, resources.cpu_cores)
    max_connections = calculate_max_connections(ram_mb)
    shared_buffers = calculate_shared_buffers(ram_mb)

    return AutoConfigDecision(
        ram_mb=ram_mb,
        ram_source=resources.ram_source,
        cpu_cores=cpu,
        cpu_source=resources.cpu_source,
        shared_buffers_mb=shared_buffers,
        effective_cache_size_mb=calculate_effective_cache_size(ram_mb, shared_buffers),
        maintenance_work_mem_mb=calculate_maintenance_work_mem(ram_mb),
        work_mem_mb=calculate_work_mem(ram_mb, max_connections),
        max_connections=max_connections,
        max_worker_processes=cpu * 2,
        max_parallel_workers=cpu,
        max_parallel_workers_per_gather=max(1, cpu // 2),
        shared_preload_libraries=shared_preload_libraries,
        listen_addresses=listen_addresses,
    )


# =============================================================================
# Entrypoint
# =============================================================================

def normalize_server_args(args: list[str]) -> tuple[bool, list[str]]:
    """Apply the docker-entrypoint argument conventions.

    No arguments means ``postgres``; a leading option is treated as a
    postgres flag. Anything else is some other command.

    Returns:
        (is_postgres, normalized args)
    """
    if not args:
        return True, ["postgres"]
    if args[0].startswith("-"):
        return True, ["postgres", *args]
    return args[0] == "postgres", list(args)


@dataclass
class EntrypointPlan:
    """What the wrapper will exec."""

    argv: list[str]
    env: dict[str, str] = field(default_factory=dict)
    decision: Optional[AutoConfigDecision] = None
    skipped: bool = False


class AutoConfigService:
    """Auto-configuration for the PostgreSQL container entrypoint."""

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        detector: Optional[ResourceDetector] = None,
        upstream_entrypoint: str = UPSTREAM_ENTRYPOINT,
    ) -> None:
        self.ctx = ctx
        self.executor = executor
        self.detector = detector or ResourceDetector(log=self.log)
        self.upstream_entrypoint = upstream_entrypoint
        self._jinja_env = Environment(
            loader=PackageLoader("pgimg", "templates"),
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )

    def log(self, message: str) -> None:
        """Print an ``[AUTO-CONFIG]`` line."""
        self.ctx.console.tagged(LOG_TAG, message)

    def decide(
        self,
        env: AutoConfigEnv,
        cpu_override: Optional[int] = None,
    ) -> AutoConfigDecision:
        """Detect resources and size PostgreSQL.

        Raises:
            MinimumMemoryError: If detected RAM is below 512MB
            AutoConfigError: If POSTGRES_BIND_IP is invalid
        """
        try:
            listen_addresses = validate_bind_ip(env.postgres_bind_ip or DEFAULT_BIND_IP)
        except ValidationError as e:
            raise AutoConfigError(e.message, hint=e.hint) from e

        resources = self.detector.detect(env.postgres_memory, cpu_override=cpu_override)
        return calculate_decision(
            resources,
            shared_preload_libraries=env.shared_preload_libraries,
            listen_addresses=listen_addresses,
        )

    def render_config(self, decision: AutoConfigDecision) -> str:
        """Render the decision as a postgresql.conf fragment."""
        template = self._jinja_env.get_template("autoconfig.conf.j2")
        return template.render(decision=decision, settings=decision.settings())

    def write_config(self, decision: AutoConfigDecision, path: Path) -> None:
        """Write the rendered config atomically.

        An unchanged file is left alone; otherwise only the latest backup of
        the previous content is kept.
        """
        content = self.render_config(decision)
        if path.is_file() and path.read_text() == content:
            self.ctx.console.debug(f"{path} is up to date")
            return
        self.executor.backup_file(path, keep=1)
        self.executor.write_file(
            path,
            content,
            description=f"Write auto-config settings to {path}",
        )

    def plan(
        self,
        args: list[str],
        env: AutoConfigEnv,
        config_file: Optional[Path] = None,
    ) -> EntrypointPlan:
        """Work out the command to exec for the given container arguments.

        Args:
            args: Container command arguments
            env: Container environment
            config_file: Optional path to persist the rendered settings

        Returns:
            EntrypointPlan with the upstream entrypoint argv

        Raises:
            AutoConfigError: On missing password or invalid bind address
            MinimumMemoryError: If detected RAM is below 512MB
        """
        is_postgres, args = normalize_server_args(args)
        upstream = [self.upstream_entrypoint]

        if not is_postgres:
            return EntrypointPlan(argv=upstream + args)

        extra_env: dict[str, str] = {}
        if env.data_checksums_disabled:
            initdb_args = f"{env.postgres_initdb_args or ''} --no-data-checksums".strip()
            extra_env["POSTGRES_INITDB_ARGS"] = initdb_args

        if env.skip_autoconfig:
            self.log("Skipped (POSTGRES_SKIP_AUTOCONFIG=true)")
            return EntrypointPlan(argv=upstream + args, env=extra_env, skipped=True)

        if not env.has_password:
            raise AutoConfigError(
                "FATAL: POSTGRES_PASSWORD is required",
                hint="Set POSTGRES_PASSWORD or POSTGRES_PASSWORD_FILE",
            )

        decision = self.decide(env)
        self.log(decision.summary_line())

        if config_file is not None:
            self.write_config(decision, config_file)

        return EntrypointPlan(
            argv=upstream + args + decision.postgres_args(),
            env=extra_env,
            decision=decision,
        )
