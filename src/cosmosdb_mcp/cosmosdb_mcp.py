"""CosmosDB MCP - Azure Cosmos DB tools for MCP clients over stdio."""

import asyncio
import json
from datetime import date, datetime
from typing import Any, Dict, Optional

from fastmcp import FastMCP

from .config_manager import ConfigManager, get_config_manager
from .connection_manager import ConnectionRegistry
from .cosmos_driver import CosmosDriver
from .driver import Driver
from .error_handler import ValidationError
from .logging_manager import get_logger, get_logging_manager
from .security_manager import ModificationGuard
from .tools import CosmosToolService

VERSION = "1.1.0"

# Create FastMCP instance
mcp = FastMCP("CosmosDB MCP - Azure Cosmos DB inspection and document tools")

logger = get_logger(__name__)

_service: Optional[CosmosToolService] = None


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def to_json(result: Dict[str, Any]) -> str:
    """Serialize a tool result; dates become ISO strings."""
    return json.dumps(result, indent=2, default=_json_default)


def build_service(config_manager: ConfigManager, driver: Optional[Driver] = None) -> CosmosToolService:
    """Build the registry, the guard and the tool service from configuration.

    Entries the registry rejects are logged and skipped.
    """
    server_config = config_manager.get_server_config()
    registry = ConnectionRegistry(driver or CosmosDriver(), config_manager.get_client_options())

    for config in config_manager.get_connection_configs():
        try:
            registry.register(config)
        except ValidationError as e:
            logger.warning("Skipping invalid connection configuration",
                           connection_id=config.id or None, error=e.message)

    guard = ModificationGuard(registry, default_allow=server_config.allow_modifications)
    return CosmosToolService(registry, guard, server_config)


def get_service() -> CosmosToolService:
    global _service
    if _service is None:
        _service = build_service(get_config_manager())
    return _service


def set_service(service: Optional[CosmosToolService]) -> None:
    global _service
    _service = service


# Connection tools

@mcp.tool
async def mcp_list_connections() -> str:
    """List all configured Cosmos DB connections.

    Use this to discover which connection_id values can be passed to the other
    tools. Each connection points to one account and database. Connection
    strings are never returned.
    """
    return to_json(await get_service().list_connections())


@mcp.tool
async def mcp_list_databases(connection_id: Optional[str] = None) -> str:
    """List all databases in the Cosmos DB account with their ids, ETags and timestamps.

    Args:
        connection_id: Connection to use (default connection when omitted)
    """
    return to_json(await get_service().list_databases(connection_id))


@mcp.tool
async def mcp_list_containers(connection_id: Optional[str] = None) -> str:
    """List all containers in the connected database with partition keys and indexing policies.

    Args:
        connection_id: Connection to use (default connection when omitted)
    """
    return to_json(await get_service().list_containers(connection_id))


@mcp.tool
async def mcp_get_container_definition(container_id: str, connection_id: Optional[str] = None) -> str:
    """Get the definition of a container: partition key, indexing policy and throughput.

    Containers on shared database throughput report no throughputInfo.

    Args:
        container_id: The ID of the container
        connection_id: Connection to use (default connection when omitted)
    """
    return to_json(await get_service().get_container_definition(container_id, connection_id))


@mcp.tool
async def mcp_get_container_stats(container_id: str, sample_size: int = 1000,
                                  connection_id: Optional[str] = None) -> str:
    """Get document count, estimated size and partition key distribution of a container.

    The document count is exact. Sizes and the partition distribution are
    estimated from a sample; a larger sample is more accurate but slower.

    Args:
        container_id: The ID of the container to analyze
        sample_size: Number of documents to sample (default: 1000)
        connection_id: Connection to use (default connection when omitted)
    """
    return to_json(await get_service().get_container_stats(container_id, sample_size, connection_id))


# Query tools

@mcp.tool
async def mcp_cosmos_query(container_id: str, query: str,
                           parameters: Optional[Dict[str, Any]] = None,
                           max_items: int = 100,
                           enable_cross_partition: bool = True,
                           connection_id: Optional[str] = None) -> str:
    """Execute a Cosmos DB SQL query against a container.

    Use 'c' as the container alias and prefer TOP N with explicit fields.
    Parameters are passed without the @ prefix, for example
    query="SELECT TOP 10 c.id FROM c WHERE c.type = @type", parameters={"type": "order"}.

    Args:
        container_id: The ID of the container to query
        query: Cosmos DB SQL query text
        parameters: Query parameters as name/value pairs
        max_items: Maximum number of items to return (default: 100)
        enable_cross_partition: Allow queries spanning partitions (default: true)
        connection_id: Connection to use (default connection when omitted)
    """
    return to_json(await get_service().cosmos_query(
        container_id, query, parameters, max_items, enable_cross_partition, connection_id))


@mcp.tool
async def mcp_get_documents(container_id: str, limit: int = 100,
                            partition_key: Optional[Any] = None,
                            filter_conditions: Optional[Dict[str, Any]] = None,
                            order_by: Optional[str] = None,
                            order_direction: str = "ASC",
                            connection_id: Optional[str] = None) -> str:
    """Get documents from a container with simple equality filters and ordering.

    Args:
        container_id: The ID of the container to query
        limit: Maximum number of documents to return (default: 100)
        partition_key: Partition key value to restrict the read to one partition
        filter_conditions: Equality filters, for example {"status": "active"}
        order_by: Field to order by, for example "_ts"
        order_direction: ASC or DESC (default: ASC)
        connection_id: Connection to use (default connection when omitted)
    """
    return to_json(await get_service().get_documents(
        container_id, limit, partition_key, filter_conditions, order_by, order_direction,
        connection_id))


@mcp.tool
async def mcp_get_document_by_id(container_id: str, document_id: str, partition_key: Any,
                                 connection_id: Optional[str] = None) -> str:
    """Get a single document by id and partition key (point read).

    Args:
        container_id: The ID of the container
        document_id: The document's 'id' value
        partition_key: The document's partition key value
        connection_id: Connection to use (default connection when omitted)
    """
    return to_json(await get_service().get_document_by_id(
        container_id, document_id, partition_key, connection_id))


@mcp.tool
async def mcp_analyze_schema(container_id: str, sample_size: int = 100,
                             connection_id: Optional[str] = None) -> str:
    """Analyze the structure of sampled documents: field paths, types and frequencies.

    Args:
        container_id: The ID of the container to analyze
        sample_size: Number of documents to sample (default: 100)
        connection_id: Connection to use (default connection when omitted)
    """
    return to_json(await get_service().analyze_schema(container_id, sample_size, connection_id))


# Document tools; each requires modifications to be allowed on the connection

@mcp.tool
async def mcp_create_document(container_id: str, document: Dict[str, Any],
                              connection_id: Optional[str] = None) -> str:
    """Create a new document. The document must include 'id' and the partition key field.

    Args:
        container_id: The ID of the container
        document: The document to create
        connection_id: Connection to use (default connection when omitted)
    """
    return to_json(await get_service().create_document(container_id, document, connection_id))


@mcp.tool
async def mcp_update_document(container_id: str, document_id: str, document: Dict[str, Any],
                              connection_id: Optional[str] = None) -> str:
    """Replace an existing document. Include ALL fields to keep; this is not a partial update.

    Args:
        container_id: The ID of the container
        document_id: The ID of the document to replace
        document: The complete new document
        connection_id: Connection to use (default connection when omitted)
    """
    return to_json(await get_service().update_document(
        container_id, document_id, document, connection_id))


@mcp.tool
async def mcp_delete_document(container_id: str, document_id: str, partition_key: Any,
                              connection_id: Optional[str] = None) -> str:
    """Permanently delete a document by id and partition key.

    Args:
        container_id: The ID of the container
        document_id: The ID of the document to delete
        partition_key: The document's partition key value
        connection_id: Connection to use (default connection when omitted)
    """
    return to_json(await get_service().delete_document(
        container_id, document_id, partition_key, connection_id))


@mcp.tool
async def mcp_upsert_document(container_id: str, document: Dict[str, Any],
                              connection_id: Optional[str] = None) -> str:
    """Create a document, or replace it when one with the same id and partition key exists.

    Args:
        container_id: The ID of the container
        document: The document to create or replace
        connection_id: Connection to use (default connection when omitted)
    """
    return to_json(await get_service().upsert_document(container_id, document, connection_id))


async def serve(config_manager: ConfigManager, driver: Optional[Driver] = None) -> None:
    """Connect every registered connection, serve stdio, then close everything."""
    service = build_service(config_manager, driver)
    set_service(service)

    try:
        result = await service.registry.connect_all()
        logger.info("CosmosDB MCP ready to accept requests",
                    transport="stdio",
                    connected=result.connected,
                    failed=result.failed,
                    default_connection=service.registry.default_id)

        await mcp.run_async(transport="stdio")
    finally:
        await service.registry.close_all()
        set_service(None)


def main():
    """Main entry point."""
    config_manager = get_config_manager()
    logging_manager = get_logging_manager(config_manager.get_logging_config())

    try:
        with logging_manager.context(operation="system_startup", component="cosmosdb_mcp"):
            logger.info("CosmosDB MCP starting up", version=VERSION)

        asyncio.run(serve(config_manager))

    except KeyboardInterrupt:
        logger.info("CosmosDB MCP interrupted")
    except Exception:
        logger.exception("CosmosDB MCP terminated with an error")
        raise


if __name__ == "__main__":
    main()
