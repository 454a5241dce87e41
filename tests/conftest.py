"""Shared fixtures for CosmosDB MCP tests."""

import pytest

from cosmosdb_mcp.config_manager import ServerConfig
from cosmosdb_mcp.connection_manager import ConnectionRegistry
from cosmosdb_mcp.security_manager import ModificationGuard
from cosmosdb_mcp.tools import CosmosToolService

from fakes import FakeContainer, FakeDriver, make_config


@pytest.fixture
def driver():
    """Fake driver with one populated container in database d1."""
    fake = FakeDriver()
    fake.add_container('d1', FakeContainer(
        'orders',
        documents=[
            {'id': '1', 'customerId': 'c1', 'total': 10.5, 'status': 'open'},
            {'id': '2', 'customerId': 'c1', 'total': 20, 'status': 'closed'},
            {'id': '3', 'customerId': 'c2', 'total': 7, 'status': 'open'},
        ],
        partition_key_paths=['/customerId'],
        throughput={'throughput': 400, 'autoscaleMaxThroughput': None, 'properties': {}}
    ))
    return fake


@pytest.fixture
def registry(driver):
    return ConnectionRegistry(driver)


@pytest.fixture
def make_service(driver):
    """Factory building a tool service over the fake driver."""
    def factory(*configs, allow_modifications=False, lazy_connect=True):
        registry = ConnectionRegistry(driver)
        for config in configs or (make_config('a'),):
            registry.register(config)
        guard = ModificationGuard(registry, default_allow=allow_modifications)
        server_config = ServerConfig(allow_modifications=allow_modifications,
                                     lazy_connect=lazy_connect)
        return CosmosToolService(registry, guard, server_config)
    return factory
