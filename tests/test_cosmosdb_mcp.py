"""Tests for server assembly, serialization and the startup/shutdown lifecycle."""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from cosmosdb_mcp import cosmosdb_mcp as server
from cosmosdb_mcp.config_manager import ConfigManager
from cosmosdb_mcp.error_handler import BackendError, ConfigError

CONN = "AccountEndpoint=https://a.documents.azure.com:443/;AccountKey=k;"


def manager_for(connections):
    return ConfigManager(environ={'COSMOS_CONNECTIONS': json.dumps(connections)})


class TestToJson:
    """Test tool result serialization."""

    def test_dates_become_iso_strings(self):
        result = {'success': True, 'data': {'timestamp': datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)}}

        assert json.loads(server.to_json(result)) == {
            'success': True, 'data': {'timestamp': '2024-01-02T03:04:05+00:00'}}

    def test_failure_result(self):
        assert json.loads(server.to_json({'success': False, 'error': 'boom'})) == {
            'success': False, 'error': 'boom'}


class TestBuildService:
    """Test assembling the registry, guard and service from configuration."""

    def test_invalid_entries_are_skipped(self, driver):
        service = server.build_service(manager_for([
            {'id': 'bad', 'connectionString': '', 'databaseId': 'd1'},
            {'id': 'good', 'connectionString': CONN, 'databaseId': 'd1'},
        ]), driver)

        assert service.registry.registered_ids() == ['good']
        assert service.registry.default_id == 'good'

    def test_global_allow_flag_reaches_guard(self, driver):
        manager = ConfigManager(environ={
            'COSMOS_CONNECTIONS': json.dumps([{'id': 'a', 'connectionString': CONN, 'databaseId': 'd1'}]),
            'COSMOS_ALLOW_MODIFICATIONS': 'true',
        })

        service = server.build_service(manager, driver)

        assert service.guard.is_allowed('a') is True
        assert service.server_config.allow_modifications is True

    def test_config_error_propagates(self, driver):
        with pytest.raises(ConfigError):
            server.build_service(ConfigManager(environ={'COSMOS_CONNECTIONS': '['}), driver)


class TestServe:
    """Test the startup and shutdown sequence."""

    @pytest.mark.asyncio
    async def test_connects_serves_and_closes(self, driver):
        driver.probe_errors['b'] = BackendError("unreachable")
        manager = manager_for([
            {'id': 'a', 'connectionString': CONN, 'databaseId': 'd1'},
            {'id': 'b', 'connectionString': CONN, 'databaseId': 'd2'},
        ])

        with patch.object(server.mcp, 'run_async', new=AsyncMock()) as run_async:
            await server.serve(manager, driver)

        run_async.assert_awaited_once_with(transport="stdio")
        assert driver.probe_calls['a'] == 1
        assert driver.probe_calls['b'] == 1
        assert driver.closed == ['b', 'a']

    @pytest.mark.asyncio
    async def test_closes_connections_when_transport_fails(self, driver):
        manager = manager_for([{'id': 'a', 'connectionString': CONN, 'databaseId': 'd1'}])

        with patch.object(server.mcp, 'run_async', new=AsyncMock(side_effect=RuntimeError("stdin closed"))):
            with pytest.raises(RuntimeError):
                await server.serve(manager, driver)

        assert driver.closed == ['a']

    @pytest.mark.asyncio
    async def test_service_is_available_while_serving(self, driver):
        manager = manager_for([{'id': 'a', 'connectionString': CONN, 'databaseId': 'd1'}])
        seen = {}

        async def fake_run(transport):
            seen['result'] = await server.get_service().list_connections()

        with patch.object(server.mcp, 'run_async', new=fake_run):
            await server.serve(manager, driver)

        connections = seen['result']['data']['connections']
        assert connections[0]['id'] == 'a'
        assert connections[0]['connected'] is True
