"""Configuration management using Pydantic.

Provides:
- Container environment (POSTGRES_*) read through pydantic-settings
- Typed harness configuration loaded from YAML with defaults
- Environment overrides for the test password and image
- Configuration initialization and display
"""

import os
import time
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from pgimg.core.exceptions import ConfigurationError


# Default configuration paths
DEFAULT_CONFIG_PATH = Path("pgimg.yaml")
DEFAULT_MANIFEST_PATH = Path("docker/postgres/extensions.manifest.json")
DEFAULT_IMAGE = "aza-pg:pg18"
DEFAULT_SHARED_PRELOAD_LIBRARIES = "pg_stat_statements,auto_explain,pg_cron,pgaudit"
UPSTREAM_ENTRYPOINT = "/usr/local/bin/docker-entrypoint.sh"


class AutoConfigEnv(BaseSettings):
    """Container environment consumed by the auto-config entrypoint.

    POSTGRES_MEMORY is kept as a raw string so an invalid override can be
    reported and skipped instead of failing settings parsing.
    """

    postgres_memory: Optional[str] = Field(None, alias="POSTGRES_MEMORY")
    postgres_skip_autoconfig: Optional[str] = Field(None, alias="POSTGRES_SKIP_AUTOCONFIG")
    postgres_shared_preload_libraries: Optional[str] = Field(
        None, alias="POSTGRES_SHARED_PRELOAD_LIBRARIES"
    )
    postgres_bind_ip: Optional[str] = Field(None, alias="POSTGRES_BIND_IP")
    postgres_db: Optional[str] = Field(None, alias="POSTGRES_DB")
    postgres_password: Optional[str] = Field(None, alias="POSTGRES_PASSWORD")
    postgres_password_file: Optional[str] = Field(None, alias="POSTGRES_PASSWORD_FILE")
    postgres_host_auth_method: Optional[str] = Field(None, alias="POSTGRES_HOST_AUTH_METHOD")
    postgres_initdb_args: Optional[str] = Field(None, alias="POSTGRES_INITDB_ARGS")
    disable_data_checksums: Optional[str] = Field(None, alias="DISABLE_DATA_CHECKSUMS")

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    @property
    def skip_autoconfig(self) -> bool:
        """True when POSTGRES_SKIP_AUTOCONFIG=true."""
        return (self.postgres_skip_autoconfig or "").strip().lower() == "true"

    @property
    def shared_preload_libraries(self) -> str:
        """Preload override, or the image default."""
        return self.postgres_shared_preload_libraries or DEFAULT_SHARED_PRELOAD_LIBRARIES

    @property
    def data_checksums_disabled(self) -> bool:
        return (self.disable_data_checksums or "").strip().lower() == "true"

    @property
    def has_password(self) -> bool:
        """Check whether the upstream entrypoint will be able to set a password."""
        if self.postgres_password or self.postgres_password_file:
            return True
        return (self.postgres_host_auth_method or "").strip().lower() == "trust"


class HarnessConfig(BaseModel):
    """Test harness configuration."""

    image: str = DEFAULT_IMAGE
    ready_timeout: int = 60
    poll_interval: float = 2.0
    retry_attempts: int = 3
    backoff_seconds: float = 2.0
    fatal_exit_timeout: int = 15
    manifest_path: Path = DEFAULT_MANIFEST_PATH
    regression_dir: Path = Path("tests/regression/extensions")
    results_dir: Path = Path("test-results")

    @field_validator("ready_timeout", "fatal_exit_timeout")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        if v < 1:
            raise ValueError("timeouts must be at least 1 second")
        return v

    @field_validator("retry_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if not 1 <= v <= 10:
            raise ValueError("retry_attempts must be between 1 and 10")
        return v

    @field_validator("poll_interval", "backoff_seconds")
    @classmethod
    def validate_interval(cls, v: float) -> float:
        if v < 0:
            raise ValueError("intervals cannot be negative")
        return v


class ToolConfig(BaseModel):
    """Root configuration model loaded from pgimg.yaml."""

    harness: HarnessConfig = Field(default_factory=HarnessConfig)

    @classmethod
    def load(cls, path: Path) -> "ToolConfig":
        """Load configuration from YAML file.

        Raises:
            ConfigurationError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}",
                hint="Create it with: pgimg config init",
            )

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file: {path}",
                details=[str(e)],
            ) from e
        except PermissionError:
            raise ConfigurationError(
                f"Cannot read configuration file: {path}",
                hint="Check file permissions",
            )

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Configuration file must contain a mapping: {path}",
            )

        try:
            return cls(**data)
        except Exception as e:
            raise ConfigurationError(
                f"Invalid configuration: {path}",
                details=[str(e)],
            ) from e

    @classmethod
    def load_or_default(cls, path: Optional[Path] = None) -> "ToolConfig":
        """Load configuration, falling back to defaults if file doesn't exist."""
        if path is None:
            path = DEFAULT_CONFIG_PATH

        if path.exists():
            return cls.load(path)
        return cls()

    def to_yaml(self) -> str:
        """Convert configuration to YAML string."""
        data = self.model_dump(mode="json", exclude_none=True)
        return yaml.dump(data, default_flow_style=False, sort_keys=False)


class HarnessSecrets(BaseSettings):
    """Harness overrides loaded from environment variables."""

    test_postgres_password: Optional[str] = Field(None, alias="TEST_POSTGRES_PASSWORD")
    postgres_image: Optional[str] = Field(None, alias="POSTGRES_IMAGE")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


class AppConfig:
    """Application configuration combining config file and environment."""

    def __init__(
        self,
        config_path: Optional[Path] = None,
        config: Optional[ToolConfig] = None,
    ) -> None:
        self.config_path = config_path or DEFAULT_CONFIG_PATH
        self._config = config or ToolConfig.load_or_default(self.config_path)
        self._secrets = HarnessSecrets()

    @property
    def config(self) -> ToolConfig:
        return self._config

    @property
    def secrets(self) -> HarnessSecrets:
        return self._secrets

    @property
    def harness(self) -> HarnessConfig:
        """Shortcut to harness config."""
        return self._config.harness

    def resolve_image(self, image: Optional[str] = None) -> str:
        """Pick the image tag: CLI argument > POSTGRES_IMAGE > config file."""
        return image or self._secrets.postgres_image or self.harness.image

    def test_password(self) -> str:
        """Password for test containers, generated per run unless overridden."""
        if self._secrets.test_postgres_password:
            return self._secrets.test_postgres_password
        return f"test_postgres_{int(time.time())}_{os.getpid()}"


def get_example_config() -> str:
    """Generate example configuration file content."""
    return """# pgimg configuration
# Environment overrides: POSTGRES_IMAGE, TEST_POSTGRES_PASSWORD

harness:
  image: aza-pg:pg18
  ready_timeout: 60        # seconds to wait for pg_isready
  poll_interval: 2.0       # seconds between readiness checks
  retry_attempts: 3        # attempts for transient psql errors
  backoff_seconds: 2.0     # base delay, doubled per attempt
  fatal_exit_timeout: 15   # seconds a misconfigured container has to exit
  manifest_path: docker/postgres/extensions.manifest.json
  regression_dir: tests/regression/extensions
  results_dir: test-results
"""


def init_config(path: Path, force: bool = False) -> None:
    """Initialize a new configuration file.

    Raises:
        ConfigurationError: If file exists and force is False
    """
    if path.exists() and not force:
        raise ConfigurationError(
            f"Configuration file already exists: {path}",
            hint="Use --force to overwrite",
        )

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(get_example_config())
