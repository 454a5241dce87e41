"""Tests for the configuration management system.

Covers connection source priority, file formats, environment substitution,
error reporting and the process-wide settings.
"""

import dataclasses
import json

import pytest

from cosmosdb_mcp.config_manager import (
    ClientOptions,
    ConfigManager,
    ConnectionConfig,
    LogLevel,
    ServerConfig,
    load_connection_configs,
    parse_bool,
    parse_int,
    substitute_env_vars,
)
from cosmosdb_mcp.error_handler import ConfigError

CONN_A = "AccountEndpoint=https://a.documents.azure.com:443/;AccountKey=a-key;"
CONN_B = "AccountEndpoint=https://b.documents.azure.com:443/;AccountKey=b-key;"


class TestParsing:
    """Test scalar environment parsing helpers."""

    @pytest.mark.parametrize("value", ["true", "TRUE", "yes", "1", "on", " True "])
    def test_parse_bool_true_values(self, value):
        assert parse_bool(value) is True

    @pytest.mark.parametrize("value", ["false", "no", "0", "off", "maybe"])
    def test_parse_bool_false_values(self, value):
        assert parse_bool(value, default=True) is False

    def test_parse_bool_unset_uses_default(self):
        assert parse_bool(None, default=True) is True
        assert parse_bool("", default=False) is False

    def test_parse_int_falls_back_on_bad_input(self):
        assert parse_int("X", "12", 9) == 12
        assert parse_int("X", "twelve", 9) == 9
        assert parse_int("X", None, 9) == 9

    def test_substitute_env_vars(self):
        environ = {"KEY": "secret"}
        assert substitute_env_vars("${KEY}", environ) == "secret"
        assert substitute_env_vars("${MISSING:fallback}", environ) == "fallback"
        assert substitute_env_vars("${MISSING}", environ) == "${MISSING}"


class TestConnectionSources:
    """Test loading connection configurations from each source."""

    def test_no_source_returns_empty_list(self):
        assert load_connection_configs({}) == []

    def test_inline_json(self):
        inline = json.dumps([
            {"id": "a", "connectionString": CONN_A, "databaseId": "d1", "allowModifications": True},
            {"id": "b", "connectionString": CONN_B, "databaseId": "d2", "description": "reporting"},
        ])

        configs = load_connection_configs({"COSMOS_CONNECTIONS": inline})

        assert [c.id for c in configs] == ["a", "b"]
        assert configs[0].database_id == "d1"
        assert configs[0].allow_modifications is True
        assert configs[1].allow_modifications is None
        assert configs[1].description == "reporting"

    def test_snake_case_keys_accepted(self):
        inline = json.dumps([{"id": "a", "connection_string": CONN_A, "database_id": "d1",
                               "allow_modifications": False}])

        config = load_connection_configs({"COSMOS_CONNECTIONS": inline})[0]

        assert config.connection_string == CONN_A
        assert config.database_id == "d1"
        assert config.allow_modifications is False

    def test_json_file(self, tmp_path):
        path = tmp_path / "connections.json"
        path.write_text(json.dumps([{"id": "a", "connectionString": CONN_A, "databaseId": "d1"}]))

        configs = load_connection_configs({"COSMOS_CONNECTIONS_FILE": str(path)})

        assert len(configs) == 1
        assert configs[0].connection_string == CONN_A

    def test_yaml_file_with_connections_key_and_substitution(self, tmp_path):
        path = tmp_path / "connections.yaml"
        path.write_text(
            "connections:\n"
            "  - id: a\n"
            "    connectionString: \"AccountEndpoint=https://a.documents.azure.com:443/;AccountKey=${A_KEY};\"\n"
            "    databaseId: ${A_DB:d1}\n"
        )

        configs = load_connection_configs({"COSMOS_CONNECTIONS_FILE": str(path), "A_KEY": "k1"})

        assert configs[0].connection_string.endswith("AccountKey=k1;")
        assert configs[0].database_id == "d1"

    def test_file_takes_priority_over_inline_and_legacy(self, tmp_path):
        path = tmp_path / "connections.json"
        path.write_text(json.dumps([{"id": "from-file", "connectionString": CONN_A, "databaseId": "d1"}]))
        environ = {
            "COSMOS_CONNECTIONS_FILE": str(path),
            "COSMOS_CONNECTIONS": json.dumps([{"id": "inline", "connectionString": CONN_B, "databaseId": "d2"}]),
            "OCONNSTRING": CONN_B,
        }

        assert [c.id for c in load_connection_configs(environ)] == ["from-file"]

    def test_inline_takes_priority_over_legacy(self):
        environ = {
            "COSMOS_CONNECTIONS": json.dumps([{"id": "inline", "connectionString": CONN_B, "databaseId": "d2"}]),
            "OCONNSTRING": CONN_A,
        }

        assert [c.id for c in load_connection_configs(environ)] == ["inline"]

    def test_legacy_variables(self):
        configs = load_connection_configs({
            "OCONNSTRING": CONN_A,
            "COSMOS_DATABASE_ID": "legacydb",
            "COSMOS_ALLOW_MODIFICATIONS": "true",
        })

        assert len(configs) == 1
        assert configs[0].id == "default"
        assert configs[0].database_id == "legacydb"
        assert configs[0].allow_modifications is True

    def test_legacy_defaults(self):
        config = load_connection_configs({"OCONNSTRING": CONN_A})[0]

        assert config.database_id == "defaultdb"
        assert config.allow_modifications is None

    def test_empty_fields_are_left_for_registration(self):
        inline = json.dumps([{"id": "a", "databaseId": ""}])

        config = load_connection_configs({"COSMOS_CONNECTIONS": inline})[0]

        assert config.connection_string == ""
        assert config.database_id == ""


class TestConnectionSourceErrors:
    """Test ConfigError reporting for malformed sources."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError) as exc_info:
            load_connection_configs({"COSMOS_CONNECTIONS_FILE": str(tmp_path / "nope.json")})
        assert "Could not read connections file" in exc_info.value.message

    def test_unparseable_file(self, tmp_path):
        path = tmp_path / "connections.json"
        path.write_text("[{not json")

        with pytest.raises(ConfigError, match="Could not parse"):
            load_connection_configs({"COSMOS_CONNECTIONS_FILE": str(path)})

    def test_malformed_inline_blob(self):
        with pytest.raises(ConfigError, match="not valid JSON"):
            load_connection_configs({"COSMOS_CONNECTIONS": "{broken"})

    def test_inline_blob_must_be_array(self):
        with pytest.raises(ConfigError, match="array of connection objects"):
            load_connection_configs({"COSMOS_CONNECTIONS": json.dumps({"id": "a"})})

    def test_entries_must_be_objects(self):
        with pytest.raises(ConfigError, match="entry 1 is not an object"):
            load_connection_configs({"COSMOS_CONNECTIONS": json.dumps([{"id": "a"}, "b"])})


class TestConnectionConfig:
    """Test the ConnectionConfig value object."""

    def test_repr_hides_connection_string(self):
        config = ConnectionConfig(id="a", connection_string=CONN_A, database_id="d1")
        assert "a-key" not in repr(config)
        assert "d1" in repr(config)

    def test_is_immutable(self):
        config = ConnectionConfig(id="a", connection_string=CONN_A, database_id="d1")
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.id = "b"


class TestConfigManager:
    """Test ConfigManager settings accessors."""

    def test_defaults(self):
        manager = ConfigManager(environ={})

        server = manager.get_server_config()
        assert server.allow_modifications is False
        assert server.lazy_connect is True
        assert server.default_stats_sample_size == 1000
        assert server.default_schema_sample_size == 100

        options = manager.get_client_options()
        assert options.enable_endpoint_discovery is True
        assert options.max_retry_attempts == 9
        assert options.max_retry_wait_time_ms == 30000
        assert options.user_agent_suffix == "MCP-CosmosDB-Server"
        assert {f.name for f in dataclasses.fields(options)} == {
            'enable_endpoint_discovery', 'max_retry_attempts',
            'max_retry_wait_time_ms', 'user_agent_suffix'}

        logging_config = manager.get_logging_config()
        assert logging_config.level == LogLevel.INFO
        assert logging_config.file_path is None

    def test_environment_overrides(self):
        manager = ConfigManager(environ={
            "COSMOS_ALLOW_MODIFICATIONS": "yes",
            "COSMOS_LAZY_CONNECT": "false",
            "COSMOS_MAX_RETRY_ATTEMPTS": "3",
            "COSMOS_MAX_RETRY_WAIT_TIME": "5000",
            "COSMOS_ENABLE_ENDPOINT_DISCOVERY": "off",
            "COSMOSDB_MCP_LOG_LEVEL": "DEBUG",
            "COSMOSDB_MCP_LOG_FILE": "/tmp/cosmosdb-mcp.log",
        })

        assert manager.get_server_config().allow_modifications is True
        assert manager.get_server_config().lazy_connect is False
        options = manager.get_client_options()
        assert options.max_retry_attempts == 3
        assert options.max_retry_wait_time_ms == 5000
        assert options.enable_endpoint_discovery is False
        assert manager.get_logging_config().level == LogLevel.DEBUG
        assert manager.get_logging_config().file_path == "/tmp/cosmosdb-mcp.log"

    def test_invalid_log_level_falls_back_to_info(self):
        manager = ConfigManager(environ={"COSMOSDB_MCP_LOG_LEVEL": "verbose"})
        assert manager.get_logging_config().level == LogLevel.INFO

    def test_connection_configs_use_manager_environment(self):
        manager = ConfigManager(environ={"OCONNSTRING": CONN_A})
        assert [c.id for c in manager.get_connection_configs()] == ["default"]

    def test_invalid_values_rejected_by_dataclasses(self):
        with pytest.raises(ValueError):
            ClientOptions(max_retry_attempts=-1)
        with pytest.raises(ValueError):
            ServerConfig(default_max_items=0)
