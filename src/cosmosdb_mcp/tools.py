"""Tool implementations for CosmosDB MCP.

``CosmosToolService`` holds one coroutine per MCP tool. Every coroutine
returns either ``{'success': True, 'data': ...}`` or
``{'success': False, 'error': message}``; no exception escapes to the
transport layer.
"""

import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from .config_manager import ServerConfig
from .connection_manager import ActiveConnection, ConnectionRegistry
from .error_handler import ErrorHandler, ValidationError, get_error_handler
from .logging_manager import get_logger, get_logging_manager
from .query_builder import build_documents_query, to_query_parameters, validate_positive_int
from .schema_analyzer import SchemaAnalyzer
from .security_manager import (
    CREATE_DOCUMENT,
    DELETE_DOCUMENT,
    UPDATE_DOCUMENT,
    UPSERT_DOCUMENT,
    ModificationGuard,
)
from .stats_sampler import StatsSampler

logger = get_logger(__name__)

ToolResult = Dict[str, Any]
Handler = Callable[[Optional[ActiveConnection]], Awaitable[Any]]


def timestamp_from_ts(ts: Any) -> Optional[datetime]:
    """Convert a ``_ts`` epoch-seconds value to an aware datetime."""
    if not isinstance(ts, (int, float)) or isinstance(ts, bool):
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def container_info(definition: Dict[str, Any]) -> Dict[str, Any]:
    partition_key = definition.get('partitionKey')
    return {
        'id': definition.get('id'),
        'partitionKey': {
            'paths': partition_key.get('paths') or [],
            'kind': partition_key.get('kind')
        } if partition_key else None,
        'indexingPolicy': definition.get('indexingPolicy'),
        'etag': definition.get('_etag'),
        'timestamp': timestamp_from_ts(definition.get('_ts'))
    }


def require_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required and must be a non-empty string",
                              field_name=field_name)
    return value


def validate_document(document: Any, document_id: Optional[str] = None) -> Dict[str, Any]:
    """Validate a write payload, returning the document to send.

    With ``document_id`` the body id defaults to it and must match it when
    present.

    Raises:
        ValidationError: If the payload is not an object or has no usable id
    """
    if not isinstance(document, dict):
        raise ValidationError("document must be a JSON object", field_name='document')

    body_id = document.get('id')
    if document_id is not None:
        if body_id is None:
            return {**document, 'id': document_id}
        if body_id != document_id:
            raise ValidationError(
                f"Document id '{body_id}' does not match document_id '{document_id}'",
                field_name='id'
            )
        return document

    if not isinstance(body_id, str) or not body_id.strip():
        raise ValidationError("document must include a non-empty string 'id' field", field_name='id')
    return document


class CosmosToolService:
    """Backs the MCP tools with the registry, the guard and the analysis engines."""

    def __init__(self, registry: ConnectionRegistry, guard: ModificationGuard,
                 server_config: Optional[ServerConfig] = None,
                 error_handler: Optional[ErrorHandler] = None):
        self.registry = registry
        self.guard = guard
        self.server_config = server_config or ServerConfig()
        self.error_handler = error_handler or get_error_handler()

        self.stats_sampler = StatsSampler(self.server_config.default_stats_sample_size)
        self.schema_analyzer = SchemaAnalyzer(self.server_config.default_schema_sample_size)

    async def _connection(self, connection_id: Optional[str]) -> ActiveConnection:
        if self.server_config.lazy_connect:
            return await self.registry.acquire(connection_id)
        return self.registry.get(connection_id)

    async def _execute(self, tool: str, connection_id: Optional[str], handler: Handler,
                       container_id: Optional[str] = None,
                       operation: Optional[str] = None,
                       needs_connection: bool = True) -> ToolResult:
        """Run a tool body and convert its outcome to a tool result.

        ``operation`` names a mutating operation; the guard runs before any
        connection is acquired.
        """
        logging_manager = get_logging_manager()
        start_time = time.time()
        resolved_id = connection_id
        success = False

        with logging_manager.context(operation=tool, component="tools",
                                     connection_id=connection_id, container_id=container_id):
            try:
                if operation is not None:
                    self.guard.validate(operation, connection_id)

                connection = None
                if needs_connection:
                    connection = await self._connection(connection_id)
                    resolved_id = connection.id

                data = await handler(connection)
                success = True
                return {'success': True, 'data': data}

            except Exception as e:
                return self.error_handler.to_result(e, {
                    'tool': tool,
                    'connection_id': resolved_id,
                    'container_id': container_id
                })
            finally:
                logging_manager.log_tool_call(tool, time.time() - start_time, success, resolved_id)

    # Connections and metadata

    async def list_connections(self) -> ToolResult:
        async def handler(_):
            return {
                'connections': self.registry.list_connections(self.guard.is_allowed),
                'defaultConnectionId': self.registry.default_id
            }

        return await self._execute('mcp_list_connections', None, handler, needs_connection=False)

    async def list_databases(self, connection_id: Optional[str] = None) -> ToolResult:
        async def handler(connection):
            databases = await connection.client.list_databases()
            return [
                {
                    'id': database.get('id'),
                    'etag': database.get('_etag'),
                    'timestamp': timestamp_from_ts(database.get('_ts'))
                }
                for database in databases
            ]

        return await self._execute('mcp_list_databases', connection_id, handler)

    async def list_containers(self, connection_id: Optional[str] = None) -> ToolResult:
        async def handler(connection):
            containers = await connection.database.list_containers()
            return [container_info(definition) for definition in containers]

        return await self._execute('mcp_list_containers', connection_id, handler)

    async def get_container_definition(self, container_id: str,
                                       connection_id: Optional[str] = None) -> ToolResult:
        async def handler(connection):
            require_text(container_id, 'container_id')
            container = connection.database.container(container_id)

            info = container_info(await container.read_definition())
            throughput = await container.read_throughput()
            if throughput is not None:
                info['throughputInfo'] = throughput
            return info

        return await self._execute('mcp_get_container_definition', connection_id, handler,
                                   container_id=container_id)

    async def get_container_stats(self, container_id: str, sample_size: Optional[int] = None,
                                  connection_id: Optional[str] = None) -> ToolResult:
        async def handler(connection):
            require_text(container_id, 'container_id')
            container = connection.database.container(container_id)
            stats = await self.stats_sampler.sample_stats(container, sample_size)
            return stats.to_dict()

        return await self._execute('mcp_get_container_stats', connection_id, handler,
                                   container_id=container_id)

    # Reads

    async def cosmos_query(self, container_id: str, query: str,
                           parameters: Optional[Dict[str, Any]] = None,
                           max_items: Optional[int] = None,
                           enable_cross_partition: bool = True,
                           connection_id: Optional[str] = None) -> ToolResult:
        """Run query text verbatim.

        ``enable_cross_partition`` is accepted for compatibility; the async
        SDK always fans out queries without a partition key.
        """
        async def handler(connection):
            require_text(container_id, 'container_id')
            require_text(query, 'query')
            if max_items is not None:
                validate_positive_int(max_items, 'max_items')
            container = connection.database.container(container_id)

            start_time = time.time()
            result = await container.query(
                query,
                parameters=to_query_parameters(parameters),
                max_items=max_items or self.server_config.default_max_items
            )
            execution_time_ms = int((time.time() - start_time) * 1000)

            return {
                'documents': result.documents,
                'stats': {
                    'requestCharge': result.request_charge,
                    'executionTimeMs': execution_time_ms,
                    'documentCount': len(result.documents)
                }
            }

        return await self._execute('mcp_cosmos_query', connection_id, handler,
                                   container_id=container_id)

    async def get_documents(self, container_id: str, limit: Optional[int] = None,
                            partition_key: Any = None,
                            filter_conditions: Optional[Dict[str, Any]] = None,
                            order_by: Optional[str] = None,
                            order_direction: str = 'ASC',
                            connection_id: Optional[str] = None) -> ToolResult:
        async def handler(connection):
            require_text(container_id, 'container_id')
            max_items = self.server_config.default_max_items if limit is None else limit
            query, query_parameters = build_documents_query(
                max_items, filter_conditions, order_by, order_direction)

            container = connection.database.container(container_id)
            result = await container.query(query, parameters=query_parameters,
                                           max_items=max_items, partition_key=partition_key)
            return result.documents

        return await self._execute('mcp_get_documents', connection_id, handler,
                                   container_id=container_id)

    async def get_document_by_id(self, container_id: str, document_id: str, partition_key: Any,
                                 connection_id: Optional[str] = None) -> ToolResult:
        async def handler(connection):
            require_text(container_id, 'container_id')
            require_text(document_id, 'document_id')
            container = connection.database.container(container_id)
            return await container.point_read(document_id, partition_key)

        return await self._execute('mcp_get_document_by_id', connection_id, handler,
                                   container_id=container_id)

    async def analyze_schema(self, container_id: str, sample_size: Optional[int] = None,
                             connection_id: Optional[str] = None) -> ToolResult:
        async def handler(connection):
            require_text(container_id, 'container_id')
            container = connection.database.container(container_id)
            analysis = await self.schema_analyzer.analyze_container(container, sample_size)
            return analysis.to_dict()

        return await self._execute('mcp_analyze_schema', connection_id, handler,
                                   container_id=container_id)

    # Writes

    async def create_document(self, container_id: str, document: Dict[str, Any],
                              connection_id: Optional[str] = None) -> ToolResult:
        async def handler(connection):
            require_text(container_id, 'container_id')
            body = validate_document(document)
            created = await connection.database.container(container_id).create(body)
            logger.info("Document created", container_id=container_id, document_id=body['id'])
            return created

        return await self._execute('mcp_create_document', connection_id, handler,
                                   container_id=container_id, operation=CREATE_DOCUMENT)

    async def update_document(self, container_id: str, document_id: str,
                              document: Dict[str, Any],
                              connection_id: Optional[str] = None) -> ToolResult:
        async def handler(connection):
            require_text(container_id, 'container_id')
            require_text(document_id, 'document_id')
            body = validate_document(document, document_id)
            replaced = await connection.database.container(container_id).replace(document_id, body)
            logger.info("Document replaced", container_id=container_id, document_id=document_id)
            return replaced

        return await self._execute('mcp_update_document', connection_id, handler,
                                   container_id=container_id, operation=UPDATE_DOCUMENT)

    async def delete_document(self, container_id: str, document_id: str, partition_key: Any,
                              connection_id: Optional[str] = None) -> ToolResult:
        async def handler(connection):
            require_text(container_id, 'container_id')
            require_text(document_id, 'document_id')
            await connection.database.container(container_id).delete(document_id, partition_key)
            logger.info("Document deleted", container_id=container_id, document_id=document_id)
            return {'id': document_id, 'deleted': True}

        return await self._execute('mcp_delete_document', connection_id, handler,
                                   container_id=container_id, operation=DELETE_DOCUMENT)

    async def upsert_document(self, container_id: str, document: Dict[str, Any],
                              connection_id: Optional[str] = None) -> ToolResult:
        async def handler(connection):
            require_text(container_id, 'container_id')
            body = validate_document(document)
            upserted = await connection.database.container(container_id).upsert(body)
            logger.info("Document upserted", container_id=container_id, document_id=body['id'])
            return upserted

        return await self._execute('mcp_upsert_document', connection_id, handler,
                                   container_id=container_id, operation=UPSERT_DOCUMENT)

