"""
Configuration module for loading and validating environment variables.
"""

import os
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Preview runtime configuration loaded from environment variables."""

    def __init__(self, env_file: Optional[Path] = None):
        # Load .env file from project root
        env_path = env_file or Path(__file__).parent.parent / ".env"
        load_dotenv(dotenv_path=env_path)

        # Host port pool for preview containers (inclusive)
        self.port_range_start = _int_env("PREVIEW_PORT_RANGE_START", 10000)
        self.port_range_end = _int_env("PREVIEW_PORT_RANGE_END", 20000)
        self.host = os.getenv("PREVIEW_HOST", "localhost")

        # Sandbox settings
        self.docker_image = os.getenv("PREVIEW_DOCKER_IMAGE", "node:18.19.0-alpine")
        self.container_port = _int_env("PREVIEW_CONTAINER_PORT", 3000)
        self.container_user = os.getenv("PREVIEW_CONTAINER_USER", "node")

        # Lifecycle commands, one attempt each
        self.install_command = os.getenv(
            "PREVIEW_INSTALL_COMMAND",
            "npm install --ignore-scripts --omit=dev --loglevel=error",
        )
        self.build_command = os.getenv("PREVIEW_BUILD_COMMAND", "npm run build")
        self.start_command = os.getenv("PREVIEW_START_COMMAND", "npm run start")

        # Hard ceilings (seconds)
        self.install_timeout = _float_env("PREVIEW_INSTALL_TIMEOUT", 120)
        self.build_timeout = _float_env("PREVIEW_BUILD_TIMEOUT", 300)
        self.start_timeout = _float_env("PREVIEW_START_TIMEOUT", 60)
        self.session_ttl = _float_env("PREVIEW_SESSION_TTL", 30 * 60)
        self.readiness_interval = _float_env("PREVIEW_READINESS_INTERVAL", 1.0)

        self.max_output_lines = _int_env("PREVIEW_MAX_OUTPUT_LINES", 10000)

        # Logging
        self.log_level = os.getenv("PREVIEW_LOG_LEVEL", "INFO").upper()
        self.log_json = _bool_env("PREVIEW_LOG_JSON", False)

        # Validate settings
        self._validate()

    def _validate(self):
        """Validate ranges and limits."""
        problems = []

        if not (1 <= self.port_range_start <= self.port_range_end <= 65535):
            problems.append(
                "PREVIEW_PORT_RANGE_START/END must satisfy 1 <= start <= end <= 65535 "
                f"(got {self.port_range_start}-{self.port_range_end})"
            )
        for name, value in (
            ("PREVIEW_INSTALL_TIMEOUT", self.install_timeout),
            ("PREVIEW_BUILD_TIMEOUT", self.build_timeout),
            ("PREVIEW_START_TIMEOUT", self.start_timeout),
            ("PREVIEW_SESSION_TTL", self.session_ttl),
            ("PREVIEW_READINESS_INTERVAL", self.readiness_interval),
            ("PREVIEW_MAX_OUTPUT_LINES", self.max_output_lines),
        ):
            if value <= 0:
                problems.append(f"{name} must be positive (got {value})")
        if not self.docker_image:
            problems.append("PREVIEW_DOCKER_IMAGE must not be empty")

        if problems:
            raise ConfigError(
                "Invalid preview runtime configuration:\n"
                + "\n".join(f"  - {p}" for p in problems)
            )


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config
