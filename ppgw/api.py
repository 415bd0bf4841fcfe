"""
Power Platform admin API client.

Thin wrapper over the BAP, PowerApps and Flow admin REST endpoints that returns
the collector's data model. Only read (GET) calls are made.

Authentication uses an azure-identity credential; tokens are requested per
API audience and cached until shortly before they expire.
"""
import logging
import threading
import time
from typing import Any, Dict, List, Optional

import requests

from .constants import (
    API_VERSION,
    APP_CONNECTIONS_URL,
    APPS_URL,
    CONNECTIONS_URL,
    DEFAULT_HTTP_TIMEOUT,
    ENVIRONMENTS_URL,
    FLOW_SCOPE,
    FLOW_URL,
    FLOWS_URL,
    POWERAPPS_SCOPE,
    TOKEN_REFRESH_MARGIN_SECONDS,
)
from .connections import short_name
from .models import App, Connection, Environment, Flow, GatewayRef
from .utils import get_nested

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Non-success response from the admin API."""
    def __init__(self, message: str, status_code: Optional[int] = None, url: str = ""):
        self.status_code = status_code
        self.url = url
        super().__init__(message)


# =============================================================================
# Payload parsing
# =============================================================================

def parse_environment(item: Dict[str, Any]) -> Environment:
    return Environment(
        id=item.get('name') or short_name(item.get('id')),
        display_name=get_nested(item, 'properties.displayName', ''),
    )


def parse_app(item: Dict[str, Any], environment_id: str) -> App:
    return App(
        id=item.get('name') or short_name(item.get('id')),
        display_name=get_nested(item, 'properties.displayName', ''),
        owner=get_nested(item, 'properties.owner.email', ''),
        created_time=get_nested(item, 'properties.createdTime'),
        last_modified_time=get_nested(item, 'properties.lastModifiedTime'),
        environment_id=get_nested(item, 'properties.environment.name', environment_id),
    )


def parse_flow(item: Dict[str, Any], environment_id: str) -> Flow:
    return Flow(
        id=item.get('name') or short_name(item.get('id')),
        display_name=get_nested(item, 'properties.displayName', ''),
        creator_email=get_nested(item, 'properties.creator.email')
        or get_nested(item, 'properties.creator.userPrincipalName'),
        creator_name=get_nested(item, 'properties.creator.displayName'),
        created_time=get_nested(item, 'properties.createdTime'),
        last_modified_time=get_nested(item, 'properties.lastModifiedTime'),
        environment_id=get_nested(item, 'properties.environment.name', environment_id),
        definition=get_nested(item, 'properties.definition'),
    )


def _connection_parameter(properties: Dict[str, Any], name: str) -> Any:
    """Read a connection parameter from either parameter layout."""
    value = get_nested(properties, f'connectionParameters.{name}')
    if value is None:
        value = get_nested(properties, f'connectionParametersSet.values.{name}.value')
    return value


def parse_gateway_ref(properties: Dict[str, Any]) -> Optional[GatewayRef]:
    """Extract the gateway binding of a connection, if any."""
    gateway = _connection_parameter(properties, 'gateway')
    if not isinstance(gateway, dict):
        return None
    gateway_id = gateway.get('id')
    if not gateway_id:
        return None
    return GatewayRef(
        gateway_id=gateway_id,
        gateway_name=gateway.get('name') or gateway.get('displayName'),
        gateway_type=gateway.get('gatewayType') or gateway.get('type'),
    )


def parse_connection(item: Dict[str, Any]) -> Connection:
    properties = item.get('properties') or {}
    server = _connection_parameter(properties, 'server') or _connection_parameter(properties, 'serverAddress')
    return Connection(
        short_name=short_name(item.get('name') or item.get('id')),
        display_name=properties.get('displayName') or '',
        api_id=properties.get('apiId'),
        server_address=server if isinstance(server, str) else None,
        gateway=parse_gateway_ref(properties),
    )


# =============================================================================
# Client
# =============================================================================

class PowerPlatformClient:
    """
    Read-only admin API client.

    Usage:
        client = PowerPlatformClient(DefaultAzureCredential())
        for env in client.list_environments():
            apps = client.list_apps(env.id)

    One client may be shared by worker threads: the token cache and request
    counter are locked, and each thread uses its own requests session unless
    a session is passed in.
    """

    def __init__(self, credential, session: Optional[requests.Session] = None, timeout: int = DEFAULT_HTTP_TIMEOUT):
        self.credential = credential
        self.timeout = timeout
        self.request_count = 0
        self._tokens: Dict[str, Any] = {}
        self._lock = threading.Lock()
        # An injected session is shared; otherwise each thread gets its own
        self._shared_session = session
        self._local = threading.local()

    @property
    def session(self) -> requests.Session:
        if self._shared_session is not None:
            return self._shared_session
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            self._local.session = session
        return session

    def _get_token(self, scope: str) -> str:
        with self._lock:
            token = self._tokens.get(scope)
            if token is None or token.expires_on - TOKEN_REFRESH_MARGIN_SECONDS <= time.time():
                logger.debug(f"Requesting access token for {scope}")
                token = self.credential.get_token(scope)
                self._tokens[scope] = token
        return token.token

    def _get(self, url: str, scope: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        headers = {
            'Authorization': f'Bearer {self._get_token(scope)}',
            'Accept': 'application/json',
        }
        with self._lock:
            self.request_count += 1
        response = self.session.get(url, headers=headers, params=params, timeout=self.timeout)
        if not response.ok:
            raise ApiError(
                f"GET {url} failed with {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
                url=url,
            )
        return response.json() or {}

    def _get_all_pages(self, url: str, scope: str, params: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        """
        Collect all items from a paginated listing.

        Admin listings return at most one page of `value` items and a
        `nextLink` URL (with the query string already applied) for the rest.
        """
        items: List[Dict[str, Any]] = []
        page = self._get(url, scope, params={'api-version': API_VERSION, **(params or {})})
        while True:
            items.extend(item for item in page.get('value') or [] if isinstance(item, dict))
            next_link = page.get('nextLink') or page.get('@odata.nextLink')
            if not next_link:
                break
            page = self._get(next_link, scope)
        return items

    def list_environments(self) -> List[Environment]:
        items = self._get_all_pages(ENVIRONMENTS_URL, POWERAPPS_SCOPE)
        return [parse_environment(item) for item in items]

    def list_apps(self, environment_id: str) -> List[App]:
        items = self._get_all_pages(APPS_URL.format(environment_id=environment_id), POWERAPPS_SCOPE)
        return [parse_app(item, environment_id) for item in items]

    def list_connections(self, environment_id: str, app_id: Optional[str] = None) -> List[Connection]:
        """List connections in an environment, or only those used by one app."""
        if app_id:
            url = APP_CONNECTIONS_URL.format(environment_id=environment_id, app_id=app_id)
        else:
            url = CONNECTIONS_URL.format(environment_id=environment_id)
        items = self._get_all_pages(url, POWERAPPS_SCOPE)
        return [parse_connection(item) for item in items]

    def list_flows(self, environment_id: str) -> List[Flow]:
        """List flows; definitions are not part of the listing (see get_flow_definition)."""
        items = self._get_all_pages(FLOWS_URL.format(environment_id=environment_id), FLOW_SCOPE)
        return [parse_flow(item, environment_id) for item in items]

    def get_flow_definition(self, environment_id: str, flow_id: str) -> Dict[str, Any]:
        url = FLOW_URL.format(environment_id=environment_id, flow_id=flow_id)
        payload = self._get(url, FLOW_SCOPE, params={'api-version': API_VERSION})
        definition = get_nested(payload, 'properties.definition')
        if not isinstance(definition, dict):
            raise ApiError(f"Flow {flow_id} returned no definition", url=url)
        return definition
