"""Azure Cosmos DB implementation of the driver capability interface.

Wraps ``azure.cosmos.aio`` proxies and translates SDK exceptions into the
project error hierarchy so the tool layer never sees an SDK type.
"""

import re
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Tuple

from azure.core.exceptions import AzureError
from azure.cosmos import exceptions
from azure.cosmos.aio import CosmosClient

from .config_manager import ClientOptions, ConnectionConfig
from .driver import (
    AccountClient,
    ContainerHandle,
    DatabaseHandle,
    Document,
    Driver,
    PartitionKeyValue,
    QueryResult,
)
from .error_handler import BackendError, NotFoundError, ValidationError
from .logging_manager import get_logger

logger = get_logger(__name__)

REQUEST_CHARGE_HEADER = 'x-ms-request-charge'
COUNT_QUERY = 'SELECT VALUE COUNT(1) FROM c'


def parse_connection_string(connection_string: str) -> Tuple[str, str]:
    """Extract (endpoint, key) from an ``AccountEndpoint=...;AccountKey=...;`` string."""
    endpoint_match = re.search(r'AccountEndpoint=([^;]+)', connection_string or '')
    key_match = re.search(r'AccountKey=([^;]+)', connection_string or '')

    if not endpoint_match or not key_match:
        raise ValidationError(
            "Invalid connection string format. Expected AccountEndpoint and AccountKey",
            field_name='connectionString'
        )
    return endpoint_match.group(1).strip(), key_match.group(1).strip()


def _error_message(error: Exception) -> str:
    message = getattr(error, 'message', None) or str(error)
    return message.splitlines()[0] if message else type(error).__name__


@contextmanager
def cosmos_errors(container_id: Optional[str] = None,
                  document_id: Optional[str] = None,
                  database_id: Optional[str] = None):
    """Translate SDK exceptions raised inside the block."""
    try:
        yield
    except exceptions.CosmosHttpResponseError as e:
        status_code = e.status_code
        if status_code == 404:
            if document_id is not None:
                raise NotFoundError(
                    f"Document '{document_id}' not found in container '{container_id}'",
                    cause=e
                ) from e
            if container_id is not None:
                raise NotFoundError(
                    f"Container '{container_id}' not found in database '{database_id}'",
                    cause=e
                ) from e
            raise NotFoundError(f"Database '{database_id}' not found", cause=e) from e
        if status_code == 409:
            raise BackendError(
                f"Document with id '{document_id}' already exists in container '{container_id}'",
                status_code=409,
                cause=e
            ) from e
        raise BackendError(
            f"Cosmos DB request failed ({status_code}): {_error_message(e)}",
            status_code=status_code,
            cause=e
        ) from e
    except AzureError as e:
        raise BackendError(f"Cosmos DB request failed: {_error_message(e)}", cause=e) from e


class CosmosContainer(ContainerHandle):
    """Container handle over an async ``ContainerProxy``."""

    def __init__(self, proxy, database_id: str):
        self._proxy = proxy
        self._database_id = database_id

    @property
    def id(self) -> str:
        return self._proxy.id

    def _errors(self, document_id: Optional[str] = None):
        return cosmos_errors(container_id=self.id, document_id=document_id,
                             database_id=self._database_id)

    def _last_request_charge(self) -> float:
        headers = getattr(self._proxy.client_connection, 'last_response_headers', None) or {}
        try:
            return float(headers.get(REQUEST_CHARGE_HEADER, 0) or 0)
        except (TypeError, ValueError):
            return 0.0

    async def read_definition(self) -> Dict[str, Any]:
        with self._errors():
            return await self._proxy.read()

    async def read_throughput(self) -> Optional[Dict[str, Any]]:
        try:
            throughput = await self._proxy.get_throughput()
        except exceptions.CosmosHttpResponseError as e:
            # Containers on shared database throughput have no offer of their own
            logger.debug("Container throughput not readable",
                         container_id=self.id, status_code=e.status_code)
            return None
        return {
            'throughput': throughput.offer_throughput,
            'autoscaleMaxThroughput': getattr(throughput, 'auto_scale_max_throughput', None),
            'properties': throughput.properties
        }

    async def count(self) -> int:
        result = await self.query(COUNT_QUERY)
        return int(sum(value for value in result.documents if isinstance(value, (int, float))))

    async def sample(self, n: int) -> List[Document]:
        result = await self.query(f'SELECT TOP {int(n)} * FROM c')
        return result.documents

    async def query(self, query: str,
                    parameters: Optional[List[Dict[str, Any]]] = None,
                    max_items: Optional[int] = None,
                    partition_key: Optional[PartitionKeyValue] = None) -> QueryResult:
        kwargs: Dict[str, Any] = {'query': query, 'parameters': parameters or None}
        if max_items:
            kwargs['max_item_count'] = max_items
        if partition_key is not None:
            kwargs['partition_key'] = partition_key

        result = QueryResult()
        with self._errors():
            pager = self._proxy.query_items(**kwargs)
            async for page in pager.by_page():
                async for item in page:
                    result.documents.append(item)
                    if max_items and len(result.documents) >= max_items:
                        break
                result.request_charge += self._last_request_charge()
                if max_items and len(result.documents) >= max_items:
                    break
        return result

    async def point_read(self, document_id: str, partition_key: PartitionKeyValue) -> Document:
        with self._errors(document_id=document_id):
            return await self._proxy.read_item(item=document_id, partition_key=partition_key)

    async def create(self, document: Document) -> Document:
        with self._errors(document_id=document.get('id')):
            return await self._proxy.create_item(body=document)

    async def replace(self, document_id: str, document: Document) -> Document:
        with self._errors(document_id=document_id):
            return await self._proxy.replace_item(item=document_id, body=document)

    async def delete(self, document_id: str, partition_key: PartitionKeyValue) -> None:
        with self._errors(document_id=document_id):
            await self._proxy.delete_item(item=document_id, partition_key=partition_key)

    async def upsert(self, document: Document) -> Document:
        with self._errors(document_id=document.get('id')):
            return await self._proxy.upsert_item(body=document)


class CosmosDatabase(DatabaseHandle):
    """Database handle over an async ``DatabaseProxy``."""

    def __init__(self, proxy):
        self._proxy = proxy

    @property
    def id(self) -> str:
        return self._proxy.id

    async def probe(self) -> Dict[str, Any]:
        with cosmos_errors(database_id=self.id):
            return await self._proxy.read()

    async def list_containers(self) -> List[Dict[str, Any]]:
        with cosmos_errors(database_id=self.id):
            return [container async for container in self._proxy.list_containers()]

    def container(self, container_id: str) -> ContainerHandle:
        return CosmosContainer(self._proxy.get_container_client(container_id), self.id)


class CosmosAccount(AccountClient):
    """Account client over an async ``CosmosClient``."""

    def __init__(self, client: CosmosClient):
        self._client = client

    async def list_databases(self) -> List[Dict[str, Any]]:
        with cosmos_errors():
            return [database async for database in self._client.list_databases()]

    async def close(self) -> None:
        await self._client.close()


class CosmosDriver(Driver):
    """Creates ``azure.cosmos.aio`` clients from connection configs."""

    async def open(self, config: ConnectionConfig,
                   options: ClientOptions) -> Tuple[AccountClient, DatabaseHandle]:
        endpoint, key = parse_connection_string(config.connection_string)

        client = CosmosClient(
            endpoint,
            credential=key,
            enable_endpoint_discovery=options.enable_endpoint_discovery,
            retry_total=options.max_retry_attempts,
            retry_backoff_max=max(1, options.max_retry_wait_time_ms // 1000),
            user_agent=options.user_agent_suffix
        )
        logger.debug("Created Cosmos client", connection_id=config.id, endpoint=endpoint)

        database = client.get_database_client(config.database_id)
        return CosmosAccount(client), CosmosDatabase(database)
