"""
Deduplicating store of discovered gateways.
"""
import logging
from typing import Dict, Iterable, List, Optional, Set

from .models import GatewayRecord, GatewayRef

logger = logging.getLogger(__name__)


class GatewayRegistry:
    """
    Gateways keyed by gateway id, kept in first-registration order.

    Registration is idempotent: the first attributes seen for an id win for
    the lifetime of the registry. Every upstream name seen for an id is also
    kept as an alias, so a gateway first seen without a name can still be
    found by the name other connections give it.
    """

    def __init__(self):
        self._gateways: Dict[str, GatewayRecord] = {}
        self._aliases: Dict[str, List[str]] = {}

    def register(self, gateway_id: str, name: Optional[str] = None, type: Optional[str] = None) -> GatewayRecord:
        """Register a gateway if unseen and return the stored record."""
        if name:
            self._add_alias(gateway_id, name)
        existing = self._gateways.get(gateway_id)
        if existing is not None:
            return existing
        record = GatewayRecord.from_ref(GatewayRef(gateway_id, name, type))
        self._gateways[gateway_id] = record
        logger.debug(f"Discovered gateway {record.name} ({gateway_id})")
        return record

    def register_ref(self, ref: GatewayRef) -> GatewayRecord:
        return self.register(ref.gateway_id, ref.gateway_name, ref.gateway_type)

    def _add_alias(self, gateway_id: str, name: str) -> None:
        names = self._aliases.setdefault(gateway_id, [])
        if name not in names:
            names.append(name)

    def merge(self, records: Iterable[GatewayRecord], aliases: Optional[Dict[str, List[str]]] = None) -> None:
        """Fold in records (and aliases) from another registry, keeping first-seen entries."""
        for record in records:
            self._gateways.setdefault(record.gateway_id, record)
        for gateway_id, names in (aliases or {}).items():
            for name in names:
                self._add_alias(gateway_id, name)

    def get(self, gateway_id: str) -> Optional[GatewayRecord]:
        return self._gateways.get(gateway_id)

    def aliases(self, gateway_id: str) -> List[str]:
        """Upstream names seen for a gateway id, in first-seen order."""
        return list(self._aliases.get(gateway_id, []))

    def all_aliases(self) -> Dict[str, List[str]]:
        return {gateway_id: list(names) for gateway_id, names in self._aliases.items()}

    def matching_ids(self, values: Iterable[str]) -> Set[str]:
        """Gateway ids whose id, registered name or any alias matches a value (case-insensitive)."""
        wanted = {v.strip().lower() for v in values if v and v.strip()}
        matched = set()
        for gateway_id, record in self._gateways.items():
            names = [gateway_id, record.name, *self._aliases.get(gateway_id, [])]
            if any(n.lower() in wanted for n in names):
                matched.add(gateway_id)
        return matched

    def all(self) -> List[GatewayRecord]:
        return list(self._gateways.values())

    def __len__(self) -> int:
        return len(self._gateways)

    def __contains__(self, gateway_id: object) -> bool:
        return gateway_id in self._gateways
