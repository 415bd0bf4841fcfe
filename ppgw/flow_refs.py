"""
Connection reference extraction from flow definitions.

A flow definition can expose the connections it uses in two shapes:

1. Declared connections - `parameters.$connections.value`, a map of logical
   reference names to objects carrying a full `connectionId`.
2. Action-embedded - actions whose `inputs.host.connectionName` names the
   connection directly.

Each shape is handled by an independent strategy function taking
(definition, index) and returning resolved connections. The extractor runs
every registered strategy and unions the results, so adding a new definition
shape means appending one function to EXTRACTION_STRATEGIES.
"""
import logging
from typing import Any, Callable, Dict, Iterator, List, Optional

from .connections import ConnectionIndex
from .models import Connection
from .utils import get_nested

logger = logging.getLogger(__name__)

Strategy = Callable[[Dict[str, Any], ConnectionIndex], List[Connection]]

# Keys under which container actions (scope, foreach, until, condition, switch)
# nest further action maps
_NESTED_ACTION_PATHS = ("actions", "else.actions", "default.actions")


def _resolve(index: ConnectionIndex, reference: Any, source: str) -> Optional[Connection]:
    if not isinstance(reference, str) or not reference:
        return None
    connection = index.lookup(reference)
    if connection is None:
        logger.debug(f"Connection reference {reference} ({source}) not found in environment")
    return connection


def declared_connections(definition: Dict[str, Any], index: ConnectionIndex) -> List[Connection]:
    """Resolve the connections declared in `parameters.$connections.value`."""
    declared = get_nested(definition, "parameters.$connections.value")
    if not isinstance(declared, dict):
        return []

    resolved = []
    for reference_name, reference in declared.items():
        connection_id = reference.get("connectionId") if isinstance(reference, dict) else None
        connection = _resolve(index, connection_id, f"$connections.{reference_name}")
        if connection is not None:
            resolved.append(connection)
    return resolved


def iter_actions(actions: Any) -> Iterator[Dict[str, Any]]:
    """Yield every action object in an action map, including nested ones."""
    if not isinstance(actions, dict):
        return
    for action in actions.values():
        if not isinstance(action, dict):
            continue
        yield action
        for path in _NESTED_ACTION_PATHS:
            yield from iter_actions(get_nested(action, path))
        cases = action.get("cases")
        if isinstance(cases, dict):
            for case in cases.values():
                yield from iter_actions(get_nested(case, "actions"))


def action_connections(definition: Dict[str, Any], index: ConnectionIndex) -> List[Connection]:
    """Resolve the connections named by `inputs.host.connectionName` on actions."""
    resolved = []
    for action in iter_actions(get_nested(definition, "actions")):
        connection_name = get_nested(action, "inputs.host.connectionName")
        connection = _resolve(index, connection_name, "inputs.host.connectionName")
        if connection is not None:
            resolved.append(connection)
    return resolved


EXTRACTION_STRATEGIES: List[Strategy] = [declared_connections, action_connections]


class FlowReferenceExtractor:
    """
    Resolve the set of connections a flow definition depends on.

    Results of all strategies are unioned; a connection found by several
    strategies (or several actions) appears once, in first-found order.
    """

    def __init__(self, strategies: Optional[List[Strategy]] = None):
        self.strategies = list(strategies) if strategies is not None else list(EXTRACTION_STRATEGIES)

    def extract(self, definition: Optional[Dict[str, Any]], index: ConnectionIndex) -> List[Connection]:
        if not isinstance(definition, dict):
            return []

        seen = set()
        connections: List[Connection] = []
        for strategy in self.strategies:
            for connection in strategy(definition, index):
                if connection.short_name in seen:
                    continue
                seen.add(connection.short_name)
                connections.append(connection)
        return connections
