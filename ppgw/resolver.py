"""
Turn resolved connections into gateway usage records.
"""
import dataclasses
import logging
from typing import Iterable, List, Optional

from .constants import RESOURCE_TYPE_APP, RESOURCE_TYPE_FLOW
from .models import App, Connection, Environment, Flow, UsageRecord
from .registry import GatewayRegistry

logger = logging.getLogger(__name__)


class GatewayUsageResolver:
    """
    Emits one UsageRecord per gateway-backed connection of an app or flow and
    registers every gateway it sees in the shared registry.
    """

    def __init__(self, registry: GatewayRegistry, environment: Environment):
        self.registry = registry
        self.environment = environment

    def resolve_app(self, app: App, connections: Iterable[Connection]) -> List[UsageRecord]:
        return self._resolve(
            resource_type=RESOURCE_TYPE_APP,
            resource_name=app.display_name,
            resource_id=app.id,
            owner=app.owner,
            created_time=app.created_time,
            last_modified_time=app.last_modified_time,
            connections=connections,
        )

    def resolve_flow(self, flow: Flow, connections: Iterable[Connection]) -> List[UsageRecord]:
        return self._resolve(
            resource_type=RESOURCE_TYPE_FLOW,
            resource_name=flow.display_name,
            resource_id=flow.id,
            owner=flow.owner,
            created_time=flow.created_time,
            last_modified_time=flow.last_modified_time,
            connections=connections,
        )

    def _resolve(
        self,
        resource_type: str,
        resource_name: str,
        resource_id: str,
        owner: str,
        created_time: Optional[str],
        last_modified_time: Optional[str],
        connections: Iterable[Connection],
    ) -> List[UsageRecord]:
        records = []
        seen = set()
        for connection in connections:
            ref = connection.gateway
            if ref is None or not ref.gateway_id:
                continue
            if connection.short_name in seen:
                continue
            seen.add(connection.short_name)

            gateway = self.registry.register_ref(ref)
            records.append(UsageRecord(
                resource_type=resource_type,
                resource_name=resource_name,
                resource_id=resource_id,
                environment_name=self.environment.display_name,
                environment_id=self.environment.id,
                connection_display_name=connection.display_name,
                connection_target=connection.target,
                gateway_id=ref.gateway_id,
                gateway_name=gateway.name,
                gateway_type=gateway.type,
                owner=owner,
                created_time=created_time,
                last_modified_time=last_modified_time,
            ))

        if records:
            logger.debug(f"{resource_type} {resource_name} uses {len(records)} gateway connection(s)")
        return records


def relabel_gateways(records: Iterable[UsageRecord], registry: GatewayRegistry) -> List[UsageRecord]:
    """
    Align gateway name and type on each record with the registry entry for its id.

    Records built against a per-environment registry may carry attributes that
    a run-wide registry (merged in listing order) resolved differently.
    """
    relabelled = []
    for record in records:
        gateway = registry.get(record.gateway_id)
        if gateway is not None and (gateway.name, gateway.type) != (record.gateway_name, record.gateway_type):
            record = dataclasses.replace(record, gateway_name=gateway.name, gateway_type=gateway.type)
        relabelled.append(record)
    return relabelled
