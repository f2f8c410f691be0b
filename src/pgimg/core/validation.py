"""Input validation for environment overrides and CLI arguments.

Provides validators for:
- Memory overrides (POSTGRES_MEMORY) and docker-style memory sizes
- Bind addresses (POSTGRES_BIND_IP)
- Extension and container names
"""

import ipaddress
import re

from pgimg.core.exceptions import ValidationError


# PostgreSQL identifier: letter or underscore first, then letters/digits/underscores
IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
MAX_IDENTIFIER_LENGTH = 63

# Docker container names: [a-zA-Z0-9][a-zA-Z0-9_.-]+
CONTAINER_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]+$")

# POSTGRES_MEMORY: plain MB, ASCII digits only
_MEMORY_OVERRIDE_PATTERN = re.compile(r"[0-9]+")

# docker run --memory style sizes: 512m, 2g, 2048, 1.5g
_MEMORY_SIZE_PATTERN = re.compile(r"([0-9]+(?:\.[0-9]+)?)\s*([bkmgt]?)b?", re.IGNORECASE)

_UNIT_TO_MB = {
    "b": 1 / (1024 * 1024),
    "k": 1 / 1024,
    "m": 1,
    "": 1,
    "g": 1024,
    "t": 1024 * 1024,
}


def validate_memory_override(value: str) -> int:
    """Validate a POSTGRES_MEMORY override.

    The override is an integer number of megabytes.

    Args:
        value: Raw environment value

    Returns:
        Memory in MB

    Raises:
        ValidationError: If value is not a positive integer
    """
    value = value.strip()
    if not _MEMORY_OVERRIDE_PATTERN.fullmatch(value):
        raise ValidationError(
            "POSTGRES_MEMORY must be an integer value in MB",
            details=[f"Got: {value!r}"],
            hint="Example: POSTGRES_MEMORY=2048",
        )
    ram_mb = int(value)
    if ram_mb < 1:
        raise ValidationError(
            "POSTGRES_MEMORY must be a positive integer (MB)",
            details=[f"Got: {value!r}"],
        )
    return ram_mb


def parse_memory_size(value: str) -> int:
    """Parse a docker-style memory size into megabytes.

    Examples: "512m" -> 512, "2g" -> 2048, "1536" -> 1536.

    Raises:
        ValidationError: If the size cannot be parsed
    """
    match = _MEMORY_SIZE_PATTERN.fullmatch(value.strip())
    if not match:
        raise ValidationError(
            f"Invalid memory size: {value}",
            hint="Use a number with an optional unit, e.g. 512m, 2g",
        )
    number = float(match.group(1))
    unit = match.group(2).lower()
    return int(number * _UNIT_TO_MB[unit])


def validate_bind_ip(value: str) -> str:
    """Validate a bind address and return the listen_addresses value.

    ``0.0.0.0`` means all interfaces and maps to ``*``.

    Raises:
        ValidationError: If the address is not a valid IPv4/IPv6 address
    """
    value = value.strip()
    if value in ("*", "localhost"):
        return value
    try:
        address = ipaddress.ip_address(value)
    except ValueError:
        raise ValidationError(
            f"Invalid POSTGRES_BIND_IP: {value}",
            hint="Use an IP address such as 127.0.0.1 or 0.0.0.0",
        ) from None
    if address.is_unspecified:
        return "*"
    return str(address)


def validate_identifier(value: str, identifier_type: str = "identifier") -> str:
    """Validate a PostgreSQL identifier (extension names, databases).

    Raises:
        ValidationError: If identifier is invalid
    """
    if not value:
        raise ValidationError(f"{identifier_type.capitalize()} name cannot be empty")

    if len(value) > MAX_IDENTIFIER_LENGTH:
        raise ValidationError(
            f"{identifier_type.capitalize()} name too long: {len(value)} characters",
            details=[f"Maximum length is {MAX_IDENTIFIER_LENGTH} characters"],
        )

    if not IDENTIFIER_PATTERN.match(value):
        raise ValidationError(
            f"Invalid {identifier_type} name: {value}",
            hint="Use letters, digits and underscores; start with a letter or underscore",
        )

    return value


def validate_container_name(value: str) -> str:
    """Validate a docker container name.

    Raises:
        ValidationError: If the name is not accepted by docker
    """
    if not CONTAINER_NAME_PATTERN.match(value):
        raise ValidationError(
            f"Invalid container name: {value}",
            hint="Container names match [a-zA-Z0-9][a-zA-Z0-9_.-]+",
        )
    return value
