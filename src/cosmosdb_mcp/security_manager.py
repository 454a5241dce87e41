"""Write protection for CosmosDB MCP.

Every mutating tool must pass ``ModificationGuard.validate`` before it touches
the backend. The policy fails closed: a connection may write only when its
own ``allowModifications`` flag is true, or when the flag is unset and the
process-wide default (``COSMOS_ALLOW_MODIFICATIONS``, false unless set) is true.
"""

from typing import Optional

from .connection_manager import ConnectionRegistry
from .error_handler import ModificationsDisabledError
from .logging_manager import get_logger, get_logging_manager

logger = get_logger(__name__)

CREATE_DOCUMENT = "create_document"
UPDATE_DOCUMENT = "update_document"
DELETE_DOCUMENT = "delete_document"
UPSERT_DOCUMENT = "upsert_document"

MUTATING_OPERATIONS = frozenset({
    CREATE_DOCUMENT,
    UPDATE_DOCUMENT,
    DELETE_DOCUMENT,
    UPSERT_DOCUMENT,
})


class ModificationGuard:
    """Per-connection policy deciding whether mutating operations are permitted."""

    def __init__(self, registry: ConnectionRegistry, default_allow: bool = False):
        """Initialize the guard.

        Args:
            registry: Registry used to resolve ids and read connection configs
            default_allow: Fallback when a connection does not set the flag itself
        """
        self._registry = registry
        self._default_allow = default_allow

    @property
    def default_allow(self) -> bool:
        return self._default_allow

    def is_allowed(self, connection_id: Optional[str] = None) -> bool:
        """Effective modification flag of a connection (or the default connection).

        Raises:
            NoDefaultError: If no id is given and no default exists
            NotFoundError: If the resolved id is not registered
        """
        resolved = self._registry.resolve(connection_id)
        config = self._registry.get_config(resolved)
        if config.allow_modifications is not None:
            return config.allow_modifications
        return self._default_allow

    def validate(self, operation: str, connection_id: Optional[str] = None) -> None:
        """Raise unless the operation may modify data on the connection.

        Raises:
            ModificationsDisabledError: If modifications are not allowed
        """
        resolved = self._registry.resolve(connection_id)
        if self.is_allowed(resolved):
            logger.debug("Modification allowed", connection_id=resolved, operation=operation)
            return

        logging_manager = get_logging_manager()
        logging_manager.log_security_event(
            event_type="modification_blocked",
            severity="medium",
            description=f"{operation} blocked on connection '{resolved}'",
            connection_id=resolved,
            operation=operation
        )
        logging_manager.metrics.record_blocked_modification(resolved, operation)
        raise ModificationsDisabledError(resolved, operation)
