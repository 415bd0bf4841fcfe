"""
Data models for the Power Platform gateway usage collector.
"""
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from .constants import GATEWAY_NAME_PLACEHOLDER, UNKNOWN_GATEWAY_TYPE


@dataclass(frozen=True)
class Environment:
    """Power Platform environment snapshot."""
    id: str
    display_name: str = ""


@dataclass(frozen=True)
class App:
    """Canvas or model-driven app snapshot."""
    id: str
    display_name: str = ""
    owner: str = ""  # owner e-mail
    created_time: Optional[str] = None
    last_modified_time: Optional[str] = None
    environment_id: str = ""


@dataclass
class Flow:
    """
    Cloud flow snapshot.

    `definition` is the raw workflow document (parameters, triggers, actions).
    Listings don't carry it, so it stays None until fetched separately.
    """
    id: str
    display_name: str = ""
    creator_email: Optional[str] = None
    creator_name: Optional[str] = None
    created_time: Optional[str] = None
    last_modified_time: Optional[str] = None
    environment_id: str = ""
    definition: Optional[Dict[str, Any]] = None

    @property
    def owner(self) -> str:
        """Creator e-mail, falling back to the creator display name."""
        return self.creator_email or self.creator_name or ""


@dataclass(frozen=True)
class GatewayRef:
    """Gateway binding carried by a connection."""
    gateway_id: str
    gateway_name: Optional[str] = None
    gateway_type: Optional[str] = None


@dataclass(frozen=True)
class Connection:
    """
    Connection snapshot.

    short_name is the last path segment of the full connection id and is the
    join key between flow references and the environment connection list.
    """
    short_name: str
    display_name: str = ""
    api_id: Optional[str] = None
    server_address: Optional[str] = None
    gateway: Optional[GatewayRef] = None

    @property
    def target(self) -> str:
        """Data source the connection points at (server address, else API id)."""
        return self.server_address or self.api_id or ""


@dataclass(frozen=True)
class GatewayRecord:
    """Registry entry for one discovered gateway."""
    gateway_id: str
    name: str
    type: str

    @classmethod
    def from_ref(cls, ref: GatewayRef) -> "GatewayRecord":
        """Build a record, filling placeholders for missing name/type."""
        return cls(
            gateway_id=ref.gateway_id,
            name=ref.gateway_name or GATEWAY_NAME_PLACEHOLDER.format(gateway_id=ref.gateway_id),
            type=ref.gateway_type or UNKNOWN_GATEWAY_TYPE,
        )

    def to_dict(self) -> Dict:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


@dataclass(frozen=True)
class UsageRecord:
    """
    One (resource, gateway-backed connection) pair.
    """
    resource_type: str  # "App" or "Flow"
    resource_name: str
    resource_id: str
    environment_name: str
    environment_id: str
    connection_display_name: str
    connection_target: str
    gateway_id: str
    gateway_name: str
    gateway_type: str
    owner: str = ""
    created_time: Optional[str] = None
    last_modified_time: Optional[str] = None

    def to_dict(self) -> Dict:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    def to_row(self) -> Dict[str, Any]:
        """Convert to a CSV row keyed by the exported column names."""
        return {
            "resourceType": self.resource_type,
            "resourceName": self.resource_name,
            "resourceId": self.resource_id,
            "environmentName": self.environment_name,
            "environmentId": self.environment_id,
            "connectionDisplayName": self.connection_display_name,
            "connectionTarget": self.connection_target,
            "gatewayId": self.gateway_id,
            "gatewayName": self.gateway_name,
            "gatewayType": self.gateway_type,
            "owner": self.owner,
            "createdTime": self.created_time or "",
            "lastModifiedTime": self.last_modified_time or "",
        }


@dataclass
class EnvironmentResult:
    """Everything collected from a single environment."""
    environment: Environment
    records: List[UsageRecord] = field(default_factory=list)
    apps_scanned: int = 0
    flows_scanned: int = 0
    gateways: List[GatewayRecord] = field(default_factory=list)
    gateway_aliases: Dict[str, List[str]] = field(default_factory=dict)
    failed_resources: List[Dict[str, str]] = field(default_factory=list)
