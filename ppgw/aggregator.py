"""
Accumulation and grouping of usage records for reporting.
"""
from typing import Dict, Iterable, List, Optional

from .constants import RESOURCE_TYPE_APP, RESOURCE_TYPE_FLOW
from .models import UsageRecord
from .registry import GatewayRegistry


class UsageAggregator:
    """
    Ordered ledger of usage records.

    Owned by the run and written from a single thread; groups keep insertion
    order and members keep discovery order.
    """

    def __init__(self, records: Iterable[UsageRecord] = ()):
        self._records: List[UsageRecord] = []
        self.extend(records)

    def add(self, record: UsageRecord) -> None:
        self._records.append(record)

    def extend(self, records: Iterable[UsageRecord]) -> None:
        for record in records:
            self.add(record)

    @property
    def records(self) -> List[UsageRecord]:
        return list(self._records)

    def by_type(self, resource_type: str) -> List[UsageRecord]:
        return [r for r in self._records if r.resource_type == resource_type]

    def total_by_type(self, resource_type: str) -> int:
        return sum(1 for r in self._records if r.resource_type == resource_type)

    def group_by_gateway(self) -> Dict[str, List[UsageRecord]]:
        groups: Dict[str, List[UsageRecord]] = {}
        for record in self._records:
            groups.setdefault(record.gateway_name, []).append(record)
        return groups

    def gateway_breakdown(self) -> List[Dict]:
        """
        Per-gateway counts in first-seen order.

        Keyed by gateway id so that two gateways sharing a display name are
        still reported separately.
        """
        breakdown: Dict[str, Dict] = {}
        for r in self._records:
            entry = breakdown.setdefault(r.gateway_id, {
                'gateway_id': r.gateway_id,
                'gateway_name': r.gateway_name,
                'gateway_type': r.gateway_type,
                'app_count': 0,
                'flow_count': 0,
                'total': 0,
                'environments': [],
            })
            if r.resource_type == RESOURCE_TYPE_APP:
                entry['app_count'] += 1
            elif r.resource_type == RESOURCE_TYPE_FLOW:
                entry['flow_count'] += 1
            entry['total'] += 1
            if r.environment_name not in entry['environments']:
                entry['environments'].append(r.environment_name)
        return list(breakdown.values())

    def filter_gateways(self, gateways: Iterable[str], registry: Optional[GatewayRegistry] = None) -> "UsageAggregator":
        """
        Return a new aggregator keeping the records of the requested gateways.

        Requested values (id or name, case-insensitive) are first turned into
        gateway ids, through the registry when given (names and aliases) and
        through the records themselves, so a gateway is kept whole even when
        its records carry a placeholder name.
        """
        wanted = {g.strip().lower() for g in gateways if g and g.strip()}
        if not wanted:
            return UsageAggregator(self._records)

        gateway_ids = {
            r.gateway_id for r in self._records
            if r.gateway_id.lower() in wanted or r.gateway_name.lower() in wanted
        }
        if registry is not None:
            gateway_ids.update(registry.matching_ids(wanted))
        return UsageAggregator(r for r in self._records if r.gateway_id in gateway_ids)

    def __len__(self) -> int:
        return len(self._records)
