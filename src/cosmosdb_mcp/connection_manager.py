"""Connection registry for CosmosDB MCP.

Keeps the set of registered connection configurations apart from the set of
live connections, so many backends can be declared up front and connected
lazily or eagerly. A backend that fails its probe stays registered but
inactive, and never prevents the other connections from serving.

Connects are serialized per connection id: concurrent ``connect`` calls for
the same id share a lock, so the probe runs once and the second caller
finds the connection already active.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .config_manager import ClientOptions, ConnectionConfig
from .driver import AccountClient, DatabaseHandle, Driver
from .error_handler import NoDefaultError, NotActiveError, NotFoundError, ValidationError
from .logging_manager import get_logger, get_logging_manager

logger = get_logger(__name__)


@dataclass
class ActiveConnection:
    """A registered connection whose probe succeeded."""
    config: ConnectionConfig
    client: AccountClient
    database: DatabaseHandle

    @property
    def id(self) -> str:
        return self.config.id


@dataclass
class ConnectAllResult:
    """Outcome of connecting every registered id."""
    connected: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'connected': list(self.connected), 'failed': dict(self.failed)}


class ConnectionRegistry:
    """Maps connection ids to configurations and to live connections."""

    def __init__(self, driver: Driver, client_options: Optional[ClientOptions] = None):
        """Initialize an empty registry.

        Args:
            driver: Creates client and database handles for a configuration
            client_options: Options for every client the driver creates
        """
        self._driver = driver
        self._client_options = client_options or ClientOptions()

        self._registered: Dict[str, ConnectionConfig] = {}
        self._active: Dict[str, ActiveConnection] = {}
        self._default_id: Optional[str] = None

        self._connect_locks: Dict[str, asyncio.Lock] = {}

    @property
    def default_id(self) -> Optional[str]:
        return self._default_id

    def registered_ids(self) -> List[str]:
        return list(self._registered)

    def active_ids(self) -> List[str]:
        return list(self._active)

    def is_active(self, connection_id: str) -> bool:
        return connection_id in self._active

    def get_config(self, connection_id: str) -> ConnectionConfig:
        """Get the registered configuration for an id.

        Raises:
            NotFoundError: If the id is not registered
        """
        config = self._registered.get(connection_id)
        if config is None:
            raise NotFoundError(self._unknown_id_message(connection_id))
        return config

    def register(self, config: ConnectionConfig) -> None:
        """Register (or re-register) a connection configuration.

        The first id ever registered becomes the default. Re-registering an id
        replaces its configuration but leaves a live connection untouched.

        Raises:
            ValidationError: If id, connection string or database id is empty
        """
        for field_name, value in (('id', config.id),
                                  ('connectionString', config.connection_string),
                                  ('databaseId', config.database_id)):
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(
                    f"Connection '{config.id or '<unnamed>'}' is missing required field '{field_name}'",
                    field_name=field_name
                )

        replaced = config.id in self._registered
        self._registered[config.id] = config
        if self._default_id is None:
            self._default_id = config.id

        logger.info("Registered connection",
                    connection_id=config.id,
                    database_id=config.database_id,
                    replaced=replaced,
                    is_default=self._default_id == config.id)

    def resolve(self, connection_id: Optional[str] = None) -> str:
        """Return the given id, or the default id when none is given.

        Raises:
            NoDefaultError: If no id is given and no default exists
        """
        if connection_id:
            return connection_id
        if self._default_id is None:
            raise NoDefaultError()
        return self._default_id

    def get(self, connection_id: Optional[str] = None) -> ActiveConnection:
        """Get the live connection for an id (or the default).

        Raises:
            NoDefaultError: If no id is given and no default exists
            NotActiveError: If the resolved id has no live connection
        """
        resolved = self.resolve(connection_id)
        active = self._active.get(resolved)
        if active is None:
            raise NotActiveError(resolved, self.active_ids())
        return active

    async def connect(self, connection_id: str) -> ActiveConnection:
        """Connect a registered id and probe it; no-op if already active.

        Raises:
            NotFoundError: If the id is not registered
            CosmosMCPError: Whatever the driver raised while opening or probing
        """
        if connection_id in self._active:
            return self._active[connection_id]

        config = self.get_config(connection_id)
        lock = self._connect_locks.setdefault(connection_id, asyncio.Lock())

        async with lock:
            if connection_id in self._active:
                return self._active[connection_id]

            metrics = get_logging_manager().metrics
            try:
                client, database = await self._driver.open(config, self._client_options)
            except Exception:
                metrics.record_connection_attempt(connection_id, "failed")
                raise

            try:
                await database.probe()
            except BaseException:
                metrics.record_connection_attempt(connection_id, "failed")
                await self._dispose(connection_id, client)
                raise

            active = ActiveConnection(config=config, client=client, database=database)
            self._active[connection_id] = active
            metrics.record_connection_attempt(connection_id, "connected")
            metrics.set_active_connections(len(self._active))

            logger.info("Connected to Cosmos DB database",
                        connection_id=connection_id,
                        database_id=config.database_id)
            return active

    async def acquire(self, connection_id: Optional[str] = None) -> ActiveConnection:
        """Resolve an id, connecting it first if it is not live yet."""
        resolved = self.resolve(connection_id)
        if resolved not in self._active:
            await self.connect(resolved)
        return self.get(resolved)

    async def connect_all(self) -> ConnectAllResult:
        """Attempt to connect every registered id.

        A failure for one id is logged and collected; the remaining ids are
        still attempted.
        """
        result = ConnectAllResult()
        for connection_id in list(self._registered):
            try:
                await self.connect(connection_id)
            except Exception as e:
                message = getattr(e, 'message', None) or str(e)
                result.failed[connection_id] = message
                logger.warning("Failed to connect", connection_id=connection_id, error=message)
            else:
                result.connected.append(connection_id)

        logger.info("Connection startup finished",
                    connected=result.connected,
                    failed=sorted(result.failed))
        return result

    async def close(self, connection_id: str) -> None:
        """Dispose a live connection; closing an inactive id is a no-op."""
        active = self._active.pop(connection_id, None)
        if active is None:
            return
        await self._dispose(connection_id, active.client)
        get_logging_manager().metrics.set_active_connections(len(self._active))
        logger.info("Closed connection", connection_id=connection_id)

    async def close_all(self) -> None:
        """Dispose every live connection."""
        for connection_id in list(self._active):
            await self.close(connection_id)
        logger.info("All connections closed")

    def list_connections(self,
                         effective_allow: Optional[Callable[[str], bool]] = None) -> List[Dict[str, Any]]:
        """Snapshot of registered connections without secret material.

        Args:
            effective_allow: Computes the effective modification flag for an id
        """
        connections = []
        for connection_id, config in self._registered.items():
            entry = {
                'id': connection_id,
                'databaseId': config.database_id,
                'description': config.description,
                'isDefault': connection_id == self._default_id,
                'connected': connection_id in self._active,
                'allowModifications': (effective_allow(connection_id) if effective_allow
                                       else bool(config.allow_modifications))
            }
            connections.append(entry)
        return connections

    async def _dispose(self, connection_id: str, client: AccountClient) -> None:
        try:
            await client.close()
        except Exception as e:
            logger.warning("Error closing client", connection_id=connection_id, error=str(e))

    def _unknown_id_message(self, connection_id: str) -> str:
        known = ", ".join(self._registered) if self._registered else "none"
        return f"Unknown connection '{connection_id}'. Available connections: {known}"
