"""Configuration management system for CosmosDB MCP.

Connection definitions come from exactly one of three sources, tried in
priority order:

1. ``COSMOS_CONNECTIONS_FILE``: a JSON (or YAML) file holding an array of
   connection objects, with ``${VAR}`` environment substitution.
2. ``COSMOS_CONNECTIONS``: the same array inline as JSON.
3. Legacy single-connection variables (``OCONNSTRING``, ``COSMOS_DATABASE_ID``),
   collapsed into one connection named ``default``.

Process-wide settings (modification fallback, client retry options, logging)
are read from environment variables, with ``.env`` support through python-dotenv.
"""

import json
import logging
import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .error_handler import ConfigError

logger = logging.getLogger(__name__)

CONNECTIONS_FILE_VAR = "COSMOS_CONNECTIONS_FILE"
CONNECTIONS_INLINE_VAR = "COSMOS_CONNECTIONS"
LEGACY_CONNECTION_STRING_VAR = "OCONNSTRING"
LEGACY_DATABASE_ID_VAR = "COSMOS_DATABASE_ID"
ALLOW_MODIFICATIONS_VAR = "COSMOS_ALLOW_MODIFICATIONS"

LEGACY_CONNECTION_ID = "default"
LEGACY_DEFAULT_DATABASE_ID = "defaultdb"

TRUE_VALUES = ('true', 'yes', '1', 'on')


def parse_bool(value: Optional[str], default: bool = False) -> bool:
    """Parse an environment flag; unset or empty means ``default``."""
    if not value:
        return default
    return value.strip().lower() in TRUE_VALUES


def parse_int(name: str, value: Optional[str], default: int) -> int:
    """Parse an integer setting, falling back to ``default`` on bad input."""
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Invalid integer value for {name}: {value!r}, using {default}")
        return default


class LogLevel(str, Enum):
    """Supported logging levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ConnectionConfig:
    """One named backend: a Cosmos account connection string and a database.

    ``allow_modifications`` of None means "not set", which defers to the
    process-wide default.
    """
    id: str
    connection_string: str
    database_id: str
    allow_modifications: Optional[bool] = None
    description: Optional[str] = None

    def __repr__(self) -> str:
        return (f"ConnectionConfig(id={self.id!r}, database_id={self.database_id!r}, "
                f"allow_modifications={self.allow_modifications!r}, "
                f"description={self.description!r})")


@dataclass
class ClientOptions:
    """Options passed to the Cosmos client of every connection."""
    enable_endpoint_discovery: bool = True
    max_retry_attempts: int = 9
    max_retry_wait_time_ms: int = 30000
    user_agent_suffix: str = "MCP-CosmosDB-Server"

    def __post_init__(self):
        """Validate client options."""
        if self.max_retry_attempts < 0:
            raise ValueError(f"max_retry_attempts must be non-negative, got {self.max_retry_attempts}")
        if self.max_retry_wait_time_ms < 0:
            raise ValueError(f"max_retry_wait_time_ms must be non-negative, got {self.max_retry_wait_time_ms}")


@dataclass
class ServerConfig:
    """Process-wide behaviour of the tool layer."""
    allow_modifications: bool = False
    lazy_connect: bool = True
    default_stats_sample_size: int = 1000
    default_schema_sample_size: int = 100
    default_max_items: int = 100

    def __post_init__(self):
        """Validate server configuration."""
        for name in ('default_stats_sample_size', 'default_schema_sample_size', 'default_max_items'):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: LogLevel = LogLevel.INFO
    file_path: Optional[str] = None
    max_file_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5
    console_output: bool = True

    def __post_init__(self):
        """Validate logging configuration."""
        if self.max_file_size <= 0:
            raise ValueError(f"max_file_size must be positive, got {self.max_file_size}")
        if self.backup_count < 0:
            raise ValueError(f"backup_count must be non-negative, got {self.backup_count}")


class ConnectionEntry(BaseModel):
    """Shape of one entry in a connections file or inline blob.

    Only the shape is checked here; empty values are rejected when the entry
    is registered.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Optional[str] = None
    connection_string: Optional[str] = Field(default=None, alias="connectionString")
    database_id: Optional[str] = Field(default=None, alias="databaseId")
    allow_modifications: Optional[bool] = Field(default=None, alias="allowModifications")
    description: Optional[str] = None

    @field_validator('id', 'connection_string', 'database_id', mode='before')
    @classmethod
    def coerce_scalar_to_str(cls, v):
        """Accept numeric ids and database names."""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    def to_connection_config(self) -> ConnectionConfig:
        return ConnectionConfig(
            id=(self.id or "").strip(),
            connection_string=self.connection_string or "",
            database_id=(self.database_id or "").strip(),
            allow_modifications=self.allow_modifications,
            description=self.description
        )


def substitute_env_vars(content: str, environ: Mapping[str, str]) -> str:
    """Substitute environment variables using ${VAR} or ${VAR:default} syntax."""
    pattern = re.compile(r'\$\{([^}]+)\}')

    def replace_var(match):
        var_name = match.group(1)
        if ':' in var_name:
            var_name, default = var_name.split(':', 1)
            return environ.get(var_name, default)
        return environ.get(var_name, match.group(0))

    return pattern.sub(replace_var, content)


def parse_connection_entries(data: Any, source: str) -> List[ConnectionConfig]:
    """Validate the parsed array shape and build ConnectionConfig objects."""
    if isinstance(data, dict) and 'connections' in data:
        data = data['connections']
    if not isinstance(data, list):
        raise ConfigError(
            f"{source} must contain an array of connection objects, got {type(data).__name__}",
            source=source
        )

    configs = []
    for index, item in enumerate(data):
        if not isinstance(item, dict):
            raise ConfigError(f"{source}: entry {index} is not an object", source=source)
        try:
            entry = ConnectionEntry.model_validate(item)
        except PydanticValidationError as e:
            raise ConfigError(f"{source}: entry {index} is invalid: {e}", source=source, cause=e)
        configs.append(entry.to_connection_config())
    return configs


def load_connections_file(path: str, environ: Mapping[str, str]) -> List[ConnectionConfig]:
    """Load connection definitions from a JSON or YAML file."""
    file_path = Path(path).expanduser()
    try:
        content = file_path.read_text(encoding='utf-8')
    except OSError as e:
        raise ConfigError(f"Could not read connections file {path}: {e}", source=path, cause=e)

    content = substitute_env_vars(content, environ)

    try:
        if file_path.suffix.lower() in ('.yaml', '.yml'):
            data = yaml.safe_load(content)
        else:
            data = json.loads(content)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not parse connections file {path}: {e}", source=path, cause=e)

    return parse_connection_entries(data, source=path)


def load_connection_configs(environ: Optional[Mapping[str, str]] = None) -> List[ConnectionConfig]:
    """Produce the ordered list of connection configs from the first present source.

    Args:
        environ: Environment mapping to read. Defaults to ``os.environ``.

    Returns:
        List[ConnectionConfig]: Possibly empty; no source at all is not an error.

    Raises:
        ConfigError: If the designated source is unreadable or malformed.
    """
    environ = os.environ if environ is None else environ

    file_path = environ.get(CONNECTIONS_FILE_VAR)
    if file_path:
        configs = load_connections_file(file_path, environ)
        logger.info(f"Loaded {len(configs)} connection(s) from {file_path}")
        return configs

    inline = environ.get(CONNECTIONS_INLINE_VAR)
    if inline:
        try:
            data = json.loads(inline)
        except ValueError as e:
            raise ConfigError(f"{CONNECTIONS_INLINE_VAR} is not valid JSON: {e}",
                              source=CONNECTIONS_INLINE_VAR, cause=e)
        configs = parse_connection_entries(data, source=CONNECTIONS_INLINE_VAR)
        logger.info(f"Loaded {len(configs)} connection(s) from {CONNECTIONS_INLINE_VAR}")
        return configs

    connection_string = environ.get(LEGACY_CONNECTION_STRING_VAR)
    if connection_string:
        allow_value = environ.get(ALLOW_MODIFICATIONS_VAR)
        return [ConnectionConfig(
            id=LEGACY_CONNECTION_ID,
            connection_string=connection_string,
            database_id=environ.get(LEGACY_DATABASE_ID_VAR) or LEGACY_DEFAULT_DATABASE_ID,
            allow_modifications=parse_bool(allow_value) if allow_value else None,
            description="Configured from OCONNSTRING"
        )]

    return []


class ConfigManager:
    """Centralized configuration manager reading the environment and .env files."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None, load_env_file: bool = True):
        """Initialize configuration manager.

        Args:
            environ: Environment mapping. If None, ``os.environ`` after loading ``.env``.
            load_env_file: Load a ``.env`` file into the process environment first.
        """
        if environ is None:
            if load_env_file:
                load_dotenv()
            environ = os.environ
        self._environ = environ

    def get_connection_configs(self) -> List[ConnectionConfig]:
        """Get all connection configurations from the first present source."""
        return load_connection_configs(self._environ)

    def get_server_config(self) -> ServerConfig:
        """Get tool layer configuration."""
        env = self._environ
        return ServerConfig(
            allow_modifications=parse_bool(env.get(ALLOW_MODIFICATIONS_VAR), False),
            lazy_connect=parse_bool(env.get('COSMOS_LAZY_CONNECT'), True)
        )

    def get_client_options(self) -> ClientOptions:
        """Get Cosmos client options."""
        env = self._environ
        return ClientOptions(
            enable_endpoint_discovery=parse_bool(env.get('COSMOS_ENABLE_ENDPOINT_DISCOVERY'), True),
            max_retry_attempts=parse_int('COSMOS_MAX_RETRY_ATTEMPTS',
                                         env.get('COSMOS_MAX_RETRY_ATTEMPTS'), 9),
            max_retry_wait_time_ms=parse_int('COSMOS_MAX_RETRY_WAIT_TIME',
                                             env.get('COSMOS_MAX_RETRY_WAIT_TIME'), 30000)
        )

    def get_logging_config(self) -> LoggingConfig:
        """Get logging configuration."""
        env = self._environ
        level_value = (env.get('COSMOSDB_MCP_LOG_LEVEL') or LogLevel.INFO.value).lower()
        try:
            level = LogLevel(level_value)
        except ValueError:
            logger.warning(f"Invalid log level {level_value!r}, using info")
            level = LogLevel.INFO
        return LoggingConfig(
            level=level,
            file_path=env.get('COSMOSDB_MCP_LOG_FILE') or None
        )


# Global configuration manager instance
_config_manager: Optional[ConfigManager] = None


def get_config_manager() -> ConfigManager:
    """Get or create global configuration manager instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager
