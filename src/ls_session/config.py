"""Session settings loader and validation.

Settings are read from a YAML file, validated against a JSON Schema, and
turned into immutable-by-convention dataclasses. String values may reference
environment variables with ${VAR_NAME}.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator

from ls_session.exceptions import ConfigurationError
from ls_session.protocol.jsonrpc import MAX_MESSAGE_SIZE

DEFAULT_SERVER_COMMAND = ["ansible-language-server", "--stdio"]
DEFAULT_DEBUG_PORT = 6010

_POSITIVE_NUMBER = {"type": "number", "exclusiveMinimum": 0}
_NON_NEGATIVE_NUMBER = {"type": "number", "minimum": 0}
_STRING_MAP = {"type": "object", "additionalProperties": {"type": "string"}}

SETTINGS_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "version": {"type": "string"},
        "name": {"type": "string", "minLength": 1},
        "label": {"type": "string", "minLength": 1},
        "server": {
            "type": "object",
            "properties": {
                "command": {
                    "type": "array",
                    "items": {"type": "string", "minLength": 1},
                    "minItems": 1,
                },
                "cwd": {"type": ["string", "null"]},
                "env": _STRING_MAP,
                "root_uri": {"type": ["string", "null"]},
                "initialization_options": {"type": "object"},
            },
            "additionalProperties": False,
        },
        "debug": {
            "type": "object",
            "properties": {
                "enabled": {"type": "boolean"},
                "host": {"type": "string", "minLength": 1},
                "port": {"type": "integer", "minimum": 1, "maximum": 65535},
                "connect_timeout": _POSITIVE_NUMBER,
            },
            "additionalProperties": False,
        },
        "requests": {
            "type": "object",
            "properties": {
                "timeout": {"anyOf": [_POSITIVE_NUMBER, {"type": "null"}]},
                "initialize_timeout": _POSITIVE_NUMBER,
                "shutdown_timeout": _POSITIVE_NUMBER,
                "max_message_size": {"type": "integer", "minimum": 1},
            },
            "additionalProperties": False,
        },
        "restart": {
            "type": "object",
            "properties": {
                "max_consecutive_failures": {"type": "integer", "minimum": 0},
                "backoff_initial": _NON_NEGATIVE_NUMBER,
                "backoff_max": _NON_NEGATIVE_NUMBER,
                "backoff_factor": {"type": "number", "minimum": 1},
            },
            "additionalProperties": False,
        },
        "telemetry": {
            "type": "object",
            "properties": {
                "enabled": {"type": "boolean"},
                "log_file": {"type": "string"},
                "endpoint": {"type": "string"},
                "batch_size": {"type": "integer", "minimum": 1},
                "timeout": _POSITIVE_NUMBER,
                "headers": _STRING_MAP,
            },
            "additionalProperties": False,
        },
        "logging": {
            "type": "object",
            "properties": {
                "level": {"enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]},
                "json": {"type": "boolean"},
            },
            "additionalProperties": False,
        },
        "conflicts": {
            "type": "object",
            "properties": {
                "component_id": {"type": "string", "minLength": 1},
                "capability": {"type": "string", "minLength": 1},
            },
            "additionalProperties": False,
        },
    },
    "additionalProperties": False,
}

_VALIDATOR = Draft202012Validator(SETTINGS_SCHEMA)
_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def expand_env_vars(value: str) -> str:
    """Expand environment variables in a string.

    Supports ${VAR_NAME} syntax. Unknown variables are left unchanged.

    Args:
        value: String potentially containing environment variable references.

    Returns:
        String with known environment variables expanded.
    """

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is not None:
            return env_value
        # Special handling for HOME
        if var_name == "HOME":
            return os.path.expanduser("~")
        return match.group(0)

    return _ENV_PATTERN.sub(replacer, value)


def _expand_all(value: Any) -> Any:
    if isinstance(value, str):
        return expand_env_vars(value)
    if isinstance(value, list):
        return [_expand_all(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_all(v) for k, v in value.items()}
    return value


@dataclass
class ServerSettings:
    """How to launch the language server."""

    command: list[str] = field(default_factory=lambda: list(DEFAULT_SERVER_COMMAND))
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    root_uri: str | None = None
    initialization_options: dict[str, Any] = field(default_factory=dict)


@dataclass
class DebugSettings:
    """Alternate connection to a server listening on a local port."""

    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = DEFAULT_DEBUG_PORT
    connect_timeout: float = 5.0


@dataclass
class RequestSettings:
    """Request timeouts in seconds and the message size limit in bytes.

    timeout=None waits indefinitely.
    """

    timeout: float | None = None
    initialize_timeout: float = 30.0
    shutdown_timeout: float = 5.0
    max_message_size: int = MAX_MESSAGE_SIZE


@dataclass
class RestartSettings:
    """Automatic restart after transport failures."""

    max_consecutive_failures: int = 4
    backoff_initial: float = 1.0
    backoff_max: float = 30.0
    backoff_factor: float = 2.0


@dataclass
class TelemetrySettings:
    """Telemetry backends."""

    enabled: bool = True
    log_file: str = ""
    endpoint: str = ""
    batch_size: int = 20
    timeout: float = 10.0
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class LoggingSettings:
    """Log level and format."""

    level: str = "INFO"
    json: bool = False


@dataclass
class ConflictSettings:
    """Identity and capability used for conflict detection."""

    component_id: str = "ls-session"
    capability: str = "ansible"


@dataclass
class SessionSettings:
    """Complete session configuration."""

    version: str = "1.0"
    name: str = "ansibleServer"
    label: str = "Ansible Server"
    server: ServerSettings = field(default_factory=ServerSettings)
    debug: DebugSettings = field(default_factory=DebugSettings)
    requests: RequestSettings = field(default_factory=RequestSettings)
    restart: RestartSettings = field(default_factory=RestartSettings)
    telemetry: TelemetrySettings = field(default_factory=TelemetrySettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    conflicts: ConflictSettings = field(default_factory=ConflictSettings)

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> SessionSettings:
        """Create settings from a configuration dictionary.

        Args:
            config: Dictionary parsed from YAML configuration.

        Returns:
            SessionSettings with defaults for every missing value.

        Raises:
            ConfigurationError: If the dictionary does not match the schema.
        """
        validate_settings(config)
        config = _expand_all(config)

        return cls(
            version=config.get("version", "1.0"),
            name=config.get("name", "ansibleServer"),
            label=config.get("label", "Ansible Server"),
            server=ServerSettings(**config.get("server", {})),
            debug=DebugSettings(**config.get("debug", {})),
            requests=RequestSettings(**config.get("requests", {})),
            restart=RestartSettings(**config.get("restart", {})),
            telemetry=TelemetrySettings(**config.get("telemetry", {})),
            logging=LoggingSettings(**config.get("logging", {})),
            conflicts=ConflictSettings(**config.get("conflicts", {})),
        )


def validate_settings(config: Any) -> None:
    """Validate raw settings against SETTINGS_SCHEMA.

    Raises:
        ConfigurationError: Listing every schema violation.
    """
    errors = sorted(
        _VALIDATOR.iter_errors(config), key=lambda e: [str(p) for p in e.absolute_path]
    )
    if not errors:
        return
    messages = []
    for error in errors:
        location = ".".join(str(p) for p in error.absolute_path) or "<root>"
        messages.append(f"{location}: {error.message}")
    raise ConfigurationError(
        "Invalid settings: " + "; ".join(messages), details={"errors": messages}
    )


def load_settings(path: Path) -> SessionSettings:
    """Load session settings from a YAML file.

    Args:
        path: Path to the settings YAML file.

    Returns:
        SessionSettings instance.

    Raises:
        ConfigurationError: If the file cannot be found, parsed, or validated.
    """
    if not path.exists():
        raise ConfigurationError(f"Settings file not found: {path}")

    try:
        with open(path) as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse settings YAML: {e}") from e

    if config is None:
        return SessionSettings()
    if not isinstance(config, dict):
        raise ConfigurationError("Settings must be a YAML mapping")

    return SessionSettings.from_dict(config)
