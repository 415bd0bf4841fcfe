"""
Connection lookup for a single environment.
"""
import logging
from typing import Dict, Iterable, Iterator, Optional

from .models import Connection

logger = logging.getLogger(__name__)


def short_name(connection_id: Optional[str]) -> str:
    """
    Derive the short connection name from a fully-qualified connection id.

    Example: /providers/Microsoft.PowerApps/apis/shared_sql/connections/shared-sql-abc123
          -> shared-sql-abc123

    Values without a '/' are already short names and are returned as is.
    """
    if not connection_id:
        return ""
    return connection_id.rstrip("/").rsplit("/", 1)[-1]


class ConnectionIndex:
    """
    Flat view of an environment's connections keyed by short name.

    Short names are unique per environment in practice; when two connections
    share one, the last registered wins.
    """

    def __init__(self, connections: Iterable[Connection] = ()):
        self._by_name: Dict[str, Connection] = {}
        for connection in connections:
            self.add(connection)

    @classmethod
    def build(cls, connections: Iterable[Connection]) -> "ConnectionIndex":
        return cls(connections)

    def add(self, connection: Connection) -> None:
        if connection.short_name in self._by_name:
            logger.debug(f"Duplicate connection name {connection.short_name}, keeping the latest")
        self._by_name[connection.short_name] = connection

    def lookup(self, name: Optional[str]) -> Optional[Connection]:
        """Return the connection for a short name or full connection id."""
        key = short_name(name)
        if not key:
            return None
        return self._by_name.get(key)

    def __len__(self) -> int:
        return len(self._by_name)

    def __iter__(self) -> Iterator[Connection]:
        return iter(self._by_name.values())

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and short_name(name) in self._by_name
