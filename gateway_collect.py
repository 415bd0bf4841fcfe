#!/usr/bin/env python3
"""
PP Gateway Audit - Power Platform On-Premises Gateway Usage Collector

Finds every Power App and Power Automate flow that reaches data through an
on-premises data gateway and reports the usage grouped by gateway.

Apps are matched through the connections they use directly. Flows are matched
through the connection references in their definitions, resolved against the
environment's connection list.

Requirements:
- Power Platform administrator (or Dynamics 365 / Global administrator) role
- Either an Azure CLI login (az login) / managed identity, or a service
  principal registered as a Power Platform management application

Usage:
    # Interactive admin session (DefaultAzureCredential)
    az login
    python gateway_collect.py

    # Service principal (client secret MUST be an env var)
    export PPGW_TENANT_ID="your-tenant-id"
    export PPGW_CLIENT_ID="your-client-id"
    export PPGW_CLIENT_SECRET="your-client-secret"
    python gateway_collect.py

    # One gateway, selected environments, with an Excel workbook
    python gateway_collect.py --gateway OnPremGW --environment "Finance (Prod)" --xlsx

Outputs (written only when they have rows):
    gateway_usage_all_<ts>.csv     apps + flows
    gateway_usage_apps_<ts>.csv    apps only
    gateway_usage_flows_<ts>.csv   flows only
    gateway_summary_<ts>.json      per-gateway counts and failed environments
    gateway_usage_<ts>.xlsx        with --xlsx

If the environment listing itself fails the run stops with exit code 1 and
nothing is exported. Failures of a single environment, app or flow are logged
and skipped.
"""
import argparse
import logging
import sys
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Optional, Tuple

from azure.identity import ClientSecretCredential, DefaultAzureCredential

from ppgw.aggregator import UsageAggregator
from ppgw.api import PowerPlatformClient
from ppgw.config import generate_sample_config, get_client_secret, load_config
from ppgw.connections import ConnectionIndex
from ppgw.constants import (
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_LOG_LEVEL,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_PARALLEL_ENVIRONMENTS,
    SUMMARY_FILE,
)
from ppgw.flow_refs import FlowReferenceExtractor
from ppgw.models import Environment, EnvironmentResult
from ppgw.registry import GatewayRegistry
from ppgw.report import build_gateway_summary, export_usage, print_usage_summary, write_workbook
from ppgw.resolver import GatewayUsageResolver, relabel_gateways
from ppgw.utils import (
    AuthError,
    ProgressTracker,
    check_and_raise_auth_error,
    generate_run_id,
    get_file_timestamp,
    get_timestamp,
    is_blob_url,
    join_output_path,
    setup_logging,
    write_json,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Authentication
# =============================================================================

def get_credential(tenant_id: Optional[str] = None, client_id: Optional[str] = None,
                   client_secret: Optional[str] = None):
    """
    Get an azure-identity credential.

    Uses a service principal when tenant id, client id and secret are all
    set, otherwise DefaultAzureCredential (Azure CLI, managed identity, ...).
    """
    if tenant_id and client_id and client_secret:
        logger.info("Using service principal credentials")
        return ClientSecretCredential(
            tenant_id=tenant_id,
            client_id=client_id,
            client_secret=client_secret
        )
    logger.info("Using DefaultAzureCredential")
    return DefaultAzureCredential()


# =============================================================================
# Environment Selection
# =============================================================================

def select_environments(environments: List[Environment], filters: Optional[Iterable[str]]) -> List[Environment]:
    """Keep environments whose id or display name matches a filter (case-insensitive)."""
    wanted = {f.strip().lower() for f in (filters or []) if f and f.strip()}
    if not wanted:
        return list(environments)
    return [
        env for env in environments
        if env.id.lower() in wanted or env.display_name.lower() in wanted
    ]


# =============================================================================
# Collection
# =============================================================================

def collect_environment(
    client: PowerPlatformClient,
    environment: Environment,
    registry: GatewayRegistry,
    extractor: Optional[FlowReferenceExtractor] = None,
) -> EnvironmentResult:
    """
    Collect gateway usage for every app and flow in one environment.

    A failing app or flow is logged and skipped. Auth errors and failures of
    the environment-level listings propagate to the caller.
    """
    extractor = extractor or FlowReferenceExtractor()
    resolver = GatewayUsageResolver(registry, environment)
    result = EnvironmentResult(environment=environment)
    label = f"{environment.display_name} ({environment.id})"

    apps = client.list_apps(environment.id)
    index = ConnectionIndex.build(client.list_connections(environment.id))
    logger.info(f"Found {len(apps)} apps and {len(index)} connections in environment {label}")

    for app in apps:
        result.apps_scanned += 1
        try:
            # Prefer the environment's copy of a connection, it carries full parameters
            app_connections = [
                index.lookup(c.short_name) or c
                for c in client.list_connections(environment.id, app.id)
            ]
            result.records.extend(resolver.resolve_app(app, app_connections))
        except Exception as e:
            check_and_raise_auth_error(e, f"list connections for app {app.display_name}")
            logger.warning(f"Failed to resolve connections for app {app.display_name} ({app.id}): {e}")
            result.failed_resources.append({'type': 'App', 'id': app.id, 'name': app.display_name, 'error': str(e)})

    flows = client.list_flows(environment.id)
    logger.info(f"Found {len(flows)} flows in environment {label}")

    for flow in flows:
        result.flows_scanned += 1
        try:
            definition = flow.definition
            if definition is None:
                definition = client.get_flow_definition(environment.id, flow.id)
            connections = extractor.extract(definition, index)
            result.records.extend(resolver.resolve_flow(flow, connections))
        except Exception as e:
            check_and_raise_auth_error(e, f"read definition of flow {flow.display_name}")
            logger.warning(f"Failed to resolve connections for flow {flow.display_name} ({flow.id}): {e}")
            result.failed_resources.append({'type': 'Flow', 'id': flow.id, 'name': flow.display_name, 'error': str(e)})

    result.gateways = registry.all()
    result.gateway_aliases = registry.all_aliases()
    logger.info(f"Environment {label}: {len(result.records)} gateway usages, {len(result.gateways)} gateways")
    return result


def _collect_isolated(
    client: PowerPlatformClient,
    environment: Environment,
) -> Tuple[Environment, Optional[EnvironmentResult], Optional[Exception]]:
    """Run collect_environment with its own registry, capturing any failure."""
    try:
        return environment, collect_environment(client, environment, GatewayRegistry()), None
    except Exception as e:
        return environment, None, e


def _merge_outcome(
    environment: Environment,
    result: Optional[EnvironmentResult],
    error: Optional[Exception],
    aggregator: UsageAggregator,
    registry: GatewayRegistry,
    failed_environments: List[Dict[str, str]],
    tracker: Optional[ProgressTracker] = None,
) -> None:
    """Fold one environment's outcome into the run's aggregator and registry."""
    if error is not None:
        label = f"{environment.display_name} ({environment.id})"
        if isinstance(error, AuthError):
            logger.error(f"Authentication/authorization error for environment {label}: {error}")
        else:
            logger.error(f"Failed to collect environment {label}: {error}")
        failed_environments.append({'id': environment.id, 'name': environment.display_name, 'error': str(error)})
        if tracker:
            tracker.complete_environment(failed=True)
        return

    registry.merge(result.gateways, result.gateway_aliases)
    aggregator.extend(relabel_gateways(result.records, registry))
    if tracker:
        tracker.add_records(len(result.records), apps=result.apps_scanned, flows=result.flows_scanned)
        tracker.complete_environment()


def run_collection(
    client: PowerPlatformClient,
    environments: List[Environment],
    parallel_environments: int = 1,
    tracker: Optional[ProgressTracker] = None,
) -> Tuple[UsageAggregator, GatewayRegistry, List[Dict[str, str]]]:
    """
    Collect all environments and merge their results.

    Each environment gets its own gateway registry; results are merged into
    the run's aggregator and registry on the calling thread, in listing
    order, so parallel and serial runs produce identical output. Merged
    records carry the gateway name and type held by the run registry.
    """
    aggregator = UsageAggregator()
    registry = GatewayRegistry()
    failed_environments: List[Dict[str, str]] = []

    if parallel_environments > 1 and len(environments) > 1:
        logger.info(f"Using parallel collection with {parallel_environments} threads")
        with ThreadPoolExecutor(max_workers=parallel_environments) as executor:
            outcomes = executor.map(lambda env: _collect_isolated(client, env), environments)
            for environment, result, error in outcomes:
                if tracker:
                    tracker.start_environment(environment.id, environment.display_name)
                _merge_outcome(environment, result, error, aggregator, registry, failed_environments, tracker)
    else:
        for environment in environments:
            if tracker:
                tracker.start_environment(environment.id, environment.display_name)
            _, result, error = _collect_isolated(client, environment)
            _merge_outcome(environment, result, error, aggregator, registry, failed_environments, tracker)

    if failed_environments:
        logger.warning(f"Collection failed for {len(failed_environments)} environment(s)")

    return aggregator, registry, failed_environments


# =============================================================================
# Main Entry Point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='PP Gateway Audit - Power Platform on-premises gateway usage collector',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Admin session from the Azure CLI
    az login
    python gateway_collect.py

    # Service principal (client secret MUST be an env var)
    export PPGW_TENANT_ID="your-tenant-id"
    export PPGW_CLIENT_ID="your-client-id"
    export PPGW_CLIENT_SECRET="your-client-secret"
    python gateway_collect.py

    # Decommissioning check for one gateway
    python gateway_collect.py --gateway OnPremGW --xlsx

Security Note:
    Client secrets must be provided via the PPGW_CLIENT_SECRET environment
    variable to avoid exposing secrets in shell history or process listings.
        """
    )
    # Defaults are applied after config merging so config files and env
    # vars are not shadowed by argparse defaults
    parser.add_argument('--config', help='YAML config file (default: ./ppgw-config.yaml if present)')
    parser.add_argument('--generate-config', action='store_true',
                        help='Print a sample config file and exit')
    parser.add_argument('--output', '-o',
                        help=f'Output directory or blob container URL (default: {DEFAULT_OUTPUT_DIR})')
    parser.add_argument('--log-level', dest='log_level',
                        help=f'Logging level (default: {DEFAULT_LOG_LEVEL})')
    parser.add_argument('--tenant-id', dest='tenant_id',
                        help='Entra ID tenant ID for service principal auth (or PPGW_TENANT_ID)')
    parser.add_argument('--client-id', dest='client_id',
                        help='Application (client) ID for service principal auth (or PPGW_CLIENT_ID)')
    parser.add_argument('--environment', dest='environments', action='append',
                        help='Environment id or display name to scan (repeatable or comma-separated)')
    parser.add_argument('--gateway', dest='gateways', action='append',
                        help='Only report usage of this gateway id or name (repeatable or comma-separated)')
    parser.add_argument('--parallel-environments', dest='parallel_environments', type=int,
                        help=f'Environments to collect in parallel (default: {DEFAULT_PARALLEL_ENVIRONMENTS})')
    parser.add_argument('--timeout', type=int,
                        help=f'Per-request HTTP timeout in seconds (default: {DEFAULT_HTTP_TIMEOUT})')
    parser.add_argument('--xlsx', action='store_true',
                        help='Also write an Excel workbook')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Enable verbose logging')
    return parser


def apply_defaults(args) -> None:
    if not getattr(args, 'output', None):
        args.output = DEFAULT_OUTPUT_DIR
    if not getattr(args, 'log_level', None):
        args.log_level = DEFAULT_LOG_LEVEL
    if getattr(args, 'verbose', False):
        args.log_level = 'DEBUG'
    if not getattr(args, 'parallel_environments', None):
        args.parallel_environments = DEFAULT_PARALLEL_ENVIRONMENTS
    if not getattr(args, 'timeout', None):
        args.timeout = DEFAULT_HTTP_TIMEOUT


def write_outputs(args, aggregator, registry, environments, failed_environments, credential) -> None:
    """Export CSVs, the JSON summary and (optionally) the workbook."""
    run_id = generate_run_id()
    file_ts = get_file_timestamp()
    output_base = args.output.rstrip('/')

    written = export_usage(aggregator, output_base, file_ts, credential=credential)

    summary = build_gateway_summary(
        aggregator,
        registry,
        run_id=run_id,
        timestamp=get_timestamp(),
        environments=[{'id': e.id, 'name': e.display_name} for e in environments],
        failed_environments=failed_environments,
    )
    write_json(summary, join_output_path(output_base, SUMMARY_FILE.format(timestamp=file_ts)), credential=credential)

    if args.xlsx:
        write_workbook(aggregator, output_base, file_ts, credential=credential)

    print(f"\nRun ID: {run_id}")
    print(f"CSV files written: {len(written)}")
    print(f"Output: {output_base}/")


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.generate_config:
        print(generate_sample_config())
        return

    try:
        load_config(args)
    except (FileNotFoundError, ValueError) as e:
        print(f"ERROR: {e}")
        sys.exit(1)
    apply_defaults(args)

    local_output = not is_blob_url(args.output)
    setup_logging(args.log_level, output_dir=args.output if local_output else None)

    try:
        credential = get_credential(args.tenant_id, args.client_id, get_client_secret())
        client = PowerPlatformClient(credential, timeout=args.timeout)

        logger.info("Listing Power Platform environments...")
        all_environments = client.list_environments()
        environments = select_environments(all_environments, args.environments)
        if not environments:
            logger.error("No matching environments found. Check --environment filters and admin permissions.")
            sys.exit(1)
        logger.info(f"Found {len(environments)} environment(s) to scan (of {len(all_environments)})")

        with ProgressTracker("Power Platform", total_environments=len(environments)) as tracker:
            aggregator, registry, failed_environments = run_collection(
                client, environments,
                parallel_environments=args.parallel_environments,
                tracker=tracker,
            )
    except Exception as e:
        # Fatal: nothing has been exported, and nothing will be
        logger.exception(f"Gateway usage collection failed: {e}")
        sys.exit(1)

    if args.gateways:
        aggregator = aggregator.filter_gateways(args.gateways, registry)
        logger.info(f"Filtered to {len(aggregator)} usages of gateway(s): {', '.join(args.gateways)}")

    print_usage_summary(aggregator)

    if not len(aggregator):
        if failed_environments:
            print(f"{len(failed_environments)} environment(s) could not be scanned; see the log for details.")
        return

    write_outputs(args, aggregator, registry, environments, failed_environments, credential)


if __name__ == '__main__':
    main()
