"""Document database capability interface.

The registry, the analysis routines and the tool layer depend only on these
abstract handles. ``cosmos_driver.CosmosDriver`` implements them on top of
the Azure Cosmos DB SDK; tests use an in-memory implementation.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .config_manager import ClientOptions, ConnectionConfig

Document = Dict[str, Any]
PartitionKeyValue = Any


@dataclass
class QueryResult:
    """Documents returned by a query plus the request charge it cost."""
    documents: List[Any] = field(default_factory=list)
    request_charge: float = 0.0


class ContainerHandle(ABC):
    """Operations against one container."""

    @property
    @abstractmethod
    def id(self) -> str:
        ...

    @abstractmethod
    async def read_definition(self) -> Dict[str, Any]:
        """Container properties: partitionKey, indexingPolicy, _etag, _ts."""

    @abstractmethod
    async def read_throughput(self) -> Optional[Dict[str, Any]]:
        """Dedicated throughput settings, or None for shared throughput."""

    @abstractmethod
    async def count(self) -> int:
        """Exact number of documents in the container."""

    @abstractmethod
    async def sample(self, n: int) -> List[Document]:
        """Up to ``n`` documents, in no particular order."""

    @abstractmethod
    async def query(self, query: str,
                    parameters: Optional[List[Dict[str, Any]]] = None,
                    max_items: Optional[int] = None,
                    partition_key: Optional[PartitionKeyValue] = None) -> QueryResult:
        """Run query text verbatim, returning at most ``max_items`` results."""

    @abstractmethod
    async def point_read(self, document_id: str, partition_key: PartitionKeyValue) -> Document:
        ...

    @abstractmethod
    async def create(self, document: Document) -> Document:
        ...

    @abstractmethod
    async def replace(self, document_id: str, document: Document) -> Document:
        ...

    @abstractmethod
    async def delete(self, document_id: str, partition_key: PartitionKeyValue) -> None:
        ...

    @abstractmethod
    async def upsert(self, document: Document) -> Document:
        ...


class DatabaseHandle(ABC):
    """One database inside an account."""

    @property
    @abstractmethod
    def id(self) -> str:
        ...

    @abstractmethod
    async def probe(self) -> Dict[str, Any]:
        """Lightweight metadata read proving the database is reachable."""

    @abstractmethod
    async def list_containers(self) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def container(self, container_id: str) -> ContainerHandle:
        ...


class AccountClient(ABC):
    """Account-level client owning the network resources of a connection."""

    @abstractmethod
    async def list_databases(self) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class Driver(ABC):
    """Factory of account clients."""

    @abstractmethod
    async def open(self, config: ConnectionConfig,
                   options: ClientOptions) -> Tuple[AccountClient, DatabaseHandle]:
        """Create the client and database handles for a connection.

        No network round trip is required here; the registry probes the
        returned database handle.
        """
