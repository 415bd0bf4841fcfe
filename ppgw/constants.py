"""
Constants for the Power Platform gateway usage collector.

This module defines the magic strings and numbers used across the codebase
(API endpoints, token audiences, output column names) so they stay consistent.
"""

# =============================================================================
# Time Constants
# =============================================================================

SECONDS_PER_MINUTE = 60
TOKEN_REFRESH_MARGIN_SECONDS = 5 * SECONDS_PER_MINUTE

# =============================================================================
# Default Configuration Values
# =============================================================================

DEFAULT_OUTPUT_DIR = "./ppgw_output"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_PARALLEL_ENVIRONMENTS = 1
DEFAULT_HTTP_TIMEOUT = 60  # seconds, per request

# =============================================================================
# Admin API Endpoints
# =============================================================================

API_VERSION = "2016-11-01"

BAP_BASE_URL = "https://api.bap.microsoft.com/providers/Microsoft.BusinessAppPlatform"
POWERAPPS_BASE_URL = "https://api.powerapps.com/providers/Microsoft.PowerApps"
FLOW_BASE_URL = "https://api.flow.microsoft.com/providers/Microsoft.ProcessSimple"

ENVIRONMENTS_URL = f"{BAP_BASE_URL}/scopes/admin/environments"
APPS_URL = f"{POWERAPPS_BASE_URL}/scopes/admin/environments/{{environment_id}}/apps"
CONNECTIONS_URL = f"{POWERAPPS_BASE_URL}/scopes/admin/environments/{{environment_id}}/connections"
APP_CONNECTIONS_URL = (
    f"{POWERAPPS_BASE_URL}/scopes/admin/environments/{{environment_id}}/apps/{{app_id}}/connections"
)
FLOWS_URL = f"{FLOW_BASE_URL}/scopes/admin/environments/{{environment_id}}/v2/flows"
FLOW_URL = f"{FLOW_BASE_URL}/scopes/admin/environments/{{environment_id}}/flows/{{flow_id}}"

# Token audiences (azure-identity scopes)
POWERAPPS_SCOPE = "https://service.powerapps.com/.default"
FLOW_SCOPE = "https://service.flow.microsoft.com/.default"

# =============================================================================
# Resource Types
# =============================================================================

RESOURCE_TYPE_APP = "App"
RESOURCE_TYPE_FLOW = "Flow"
RESOURCE_TYPES = (RESOURCE_TYPE_APP, RESOURCE_TYPE_FLOW)

# =============================================================================
# Gateway Placeholders
# =============================================================================

UNKNOWN_GATEWAY_TYPE = "Unknown"
GATEWAY_NAME_PLACEHOLDER = "Gateway ID: {gateway_id}"

# =============================================================================
# Output
# =============================================================================

# Column order of every usage CSV
USAGE_COLUMNS = [
    "resourceType",
    "resourceName",
    "resourceId",
    "environmentName",
    "environmentId",
    "connectionDisplayName",
    "connectionTarget",
    "gatewayId",
    "gatewayName",
    "gatewayType",
    "owner",
    "createdTime",
    "lastModifiedTime",
]

ALL_USAGE_FILE = "gateway_usage_all_{timestamp}.csv"
APP_USAGE_FILE = "gateway_usage_apps_{timestamp}.csv"
FLOW_USAGE_FILE = "gateway_usage_flows_{timestamp}.csv"
SUMMARY_FILE = "gateway_summary_{timestamp}.json"
WORKBOOK_FILE = "gateway_usage_{timestamp}.xlsx"

FILE_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
