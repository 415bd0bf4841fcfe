"""
PP Gateway Audit shared library.
"""
from . import constants
from .aggregator import UsageAggregator
from .api import ApiError, PowerPlatformClient
from .connections import ConnectionIndex, short_name
from .flow_refs import (
    EXTRACTION_STRATEGIES,
    FlowReferenceExtractor,
    action_connections,
    declared_connections,
)
from .models import (
    App,
    Connection,
    Environment,
    EnvironmentResult,
    Flow,
    GatewayRecord,
    GatewayRef,
    UsageRecord,
)
from .registry import GatewayRegistry
from .resolver import GatewayUsageResolver, relabel_gateways
from .utils import (
    AuthError,
    ProgressTracker,
    generate_run_id,
    get_nested,
    get_timestamp,
    setup_logging,
    write_csv,
    write_json,
)

__version__ = "1.0.0"

__all__ = [
    'constants',
    # Models
    'App',
    'Connection',
    'Environment',
    'EnvironmentResult',
    'Flow',
    'GatewayRecord',
    'GatewayRef',
    'UsageRecord',
    # Core
    'ConnectionIndex',
    'short_name',
    'GatewayRegistry',
    'FlowReferenceExtractor',
    'EXTRACTION_STRATEGIES',
    'declared_connections',
    'action_connections',
    'GatewayUsageResolver',
    'relabel_gateways',
    'UsageAggregator',
    # API
    'ApiError',
    'PowerPlatformClient',
    # Utils
    'AuthError',
    'ProgressTracker',
    'generate_run_id',
    'get_nested',
    'get_timestamp',
    'setup_logging',
    'write_csv',
    'write_json',
]
