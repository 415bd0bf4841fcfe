"""
Tests for gateway_collect.py.

Covers:
- Per-environment collection of app and flow gateway usage
- Failure isolation per app, per flow and per environment
- Auth errors aborting an environment
- Serial and parallel runs producing identical results
- Environment selection and credential choice
- main(): exports on success, nothing exported on fatal failure
"""
import csv
import glob
import os
import sys
from unittest.mock import Mock, patch

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import gateway_collect
from gateway_collect import (
    collect_environment,
    get_credential,
    run_collection,
    select_environments,
)
from ppgw.api import ApiError
from ppgw.constants import USAGE_COLUMNS
from ppgw.models import App, Connection, Environment, Flow, GatewayRef
from ppgw.registry import GatewayRegistry
from ppgw.utils import AuthError


# =============================================================================
# Fake Client
# =============================================================================

class FakeClient:
    """In-memory stand-in for PowerPlatformClient."""

    def __init__(self):
        self.environments = []
        self.apps = {}               # env id -> [App]
        self.connections = {}        # env id -> [Connection]
        self.app_connections = {}    # (env id, app id) -> [Connection] or Exception
        self.flows = {}              # env id -> [Flow]
        self.definitions = {}        # (env id, flow id) -> dict or Exception
        self.fail_listing = {}       # env id -> Exception raised by list_apps

    def list_environments(self):
        return list(self.environments)

    def list_apps(self, environment_id):
        if environment_id in self.fail_listing:
            raise self.fail_listing[environment_id]
        return list(self.apps.get(environment_id, []))

    def list_connections(self, environment_id, app_id=None):
        if app_id is None:
            return list(self.connections.get(environment_id, []))
        value = self.app_connections.get((environment_id, app_id), [])
        if isinstance(value, Exception):
            raise value
        return list(value)

    def list_flows(self, environment_id):
        return list(self.flows.get(environment_id, []))

    def get_flow_definition(self, environment_id, flow_id):
        value = self.definitions[(environment_id, flow_id)]
        if isinstance(value, Exception):
            raise value
        return value


def gateway_connection(name: str, gateway_id: str = "gw1", gateway_name: str = "OnPremGW") -> Connection:
    return Connection(
        short_name=name,
        display_name=f"{name} display",
        api_id="/providers/Microsoft.PowerApps/apis/shared_sql",
        server_address="sqlprod01.contoso.local",
        gateway=GatewayRef(gateway_id, gateway_name, "Standard"),
    )


def cloud_connection(name: str) -> Connection:
    return Connection(short_name=name, display_name=name, api_id="/providers/Microsoft.PowerApps/apis/shared_office365")


def flow_definition(declared=(), actions=()) -> dict:
    return {
        "parameters": {"$connections": {"value": {
            f"ref_{i}": {"connectionId": f"/providers/Microsoft.PowerApps/apis/shared_sql/connections/{name}"}
            for i, name in enumerate(declared)
        }}},
        "actions": {
            f"Action_{i}": {"type": "OpenApiConnection", "inputs": {"host": {"connectionName": name}}}
            for i, name in enumerate(actions)
        },
    }


def create_flow(flow_id: str, env_id: str, definition=None) -> Flow:
    return Flow(
        id=flow_id,
        display_name=f"Flow {flow_id}",
        creator_email="bob@contoso.com",
        environment_id=env_id,
        definition=definition,
    )


def create_app(app_id: str, env_id: str) -> App:
    return App(id=app_id, display_name=f"App {app_id}", owner="alice@contoso.com", environment_id=env_id)


@pytest.fixture
def env():
    return Environment(id="env-1", display_name="Prod")


@pytest.fixture
def client(env):
    """Client with one gateway-backed app and one gateway-backed flow."""
    c = FakeClient()
    c.environments = [env]
    c.connections["env-1"] = [gateway_connection("sql-1"), cloud_connection("o365-1")]
    c.apps["env-1"] = [create_app("app-1", "env-1")]
    c.app_connections[("env-1", "app-1")] = [gateway_connection("sql-1"), cloud_connection("o365-1")]
    c.flows["env-1"] = [create_flow("flow-1", "env-1")]
    c.definitions[("env-1", "flow-1")] = flow_definition(declared=["sql-1"], actions=["sql-1"])
    return c


# =============================================================================
# collect_environment Tests
# =============================================================================

class TestCollectEnvironment:
    """Tests for collect_environment."""

    def test_app_and_flow_usage(self, client, env):
        """Test one record each for the app and the flow."""
        registry = GatewayRegistry()

        result = collect_environment(client, env, registry)

        assert [(r.resource_type, r.resource_id) for r in result.records] == [("App", "app-1"), ("Flow", "flow-1")]
        assert result.apps_scanned == 1
        assert result.flows_scanned == 1
        assert result.failed_resources == []
        assert [g.gateway_id for g in result.gateways] == ["gw1"]
        assert len(registry) == 1

    def test_flow_referencing_both_ways_reported_once(self, client, env):
        """Test a connection declared and used by an action gives one record."""
        result = collect_environment(client, env, GatewayRegistry())
        flows = [r for r in result.records if r.resource_type == "Flow"]
        assert len(flows) == 1
        assert flows[0].connection_target == "sqlprod01.contoso.local"

    def test_two_flows_same_gateway(self, client, env):
        """Test two flows on the same gateway give two records under one gateway."""
        client.apps["env-1"] = []
        client.flows["env-1"].append(create_flow("flow-2", "env-1"))
        client.definitions[("env-1", "flow-2")] = flow_definition(actions=["sql-1"])

        registry = GatewayRegistry()
        result = collect_environment(client, env, registry)

        assert [r.resource_id for r in result.records] == ["flow-1", "flow-2"]
        assert {r.gateway_name for r in result.records} == {"OnPremGW"}
        assert len(registry) == 1

    def test_inline_definition_used(self, client, env):
        """Test a definition already on the flow listing is not fetched again."""
        client.flows["env-1"] = [create_flow("flow-9", "env-1", definition=flow_definition(declared=["sql-1"]))]

        result = collect_environment(client, env, GatewayRegistry())

        assert [r.resource_id for r in result.records if r.resource_type == "Flow"] == ["flow-9"]

    def test_app_uses_environment_copy_of_connection(self, client, env):
        """Test app connections are completed from the environment connection list."""
        client.app_connections[("env-1", "app-1")] = [Connection(short_name="sql-1", display_name="bare")]

        result = collect_environment(client, env, GatewayRegistry())

        app_record = result.records[0]
        assert app_record.gateway_id == "gw1"
        assert app_record.connection_display_name == "sql-1 display"

    def test_failing_app_skipped(self, client, env):
        """Test an app whose connections cannot be listed is recorded as failed."""
        client.apps["env-1"].append(create_app("app-2", "env-1"))
        client.app_connections[("env-1", "app-2")] = ApiError("server error", status_code=500)

        result = collect_environment(client, env, GatewayRegistry())

        assert result.apps_scanned == 2
        assert [f['id'] for f in result.failed_resources] == ["app-2"]
        assert len(result.records) == 2

    def test_failing_flow_skipped(self, client, env):
        """Test a flow whose definition cannot be read is recorded as failed."""
        client.flows["env-1"].insert(0, create_flow("flow-0", "env-1"))
        client.definitions[("env-1", "flow-0")] = ApiError("not found", status_code=404)

        result = collect_environment(client, env, GatewayRegistry())

        assert result.flows_scanned == 2
        assert result.failed_resources == [
            {'type': 'Flow', 'id': 'flow-0', 'name': 'Flow flow-0', 'error': 'not found'}
        ]
        assert [r.resource_id for r in result.records] == ["app-1", "flow-1"]

    def test_auth_error_propagates(self, client, env):
        """Test a 401 on a single resource aborts the environment."""
        client.definitions[("env-1", "flow-1")] = ApiError("unauthorized", status_code=401)

        with pytest.raises(AuthError):
            collect_environment(client, env, GatewayRegistry())

    def test_empty_environment(self, env):
        client = FakeClient()
        result = collect_environment(client, env, GatewayRegistry())
        assert result.records == []
        assert result.gateways == []


# =============================================================================
# run_collection Tests
# =============================================================================

def multi_environment_client():
    c = FakeClient()
    for i in range(1, 5):
        env_id = f"env-{i}"
        c.environments.append(Environment(id=env_id, display_name=f"Env {i}"))
        conn = gateway_connection(f"sql-{i}", gateway_id=f"gw{i % 2}", gateway_name=f"GW{i % 2}")
        c.connections[env_id] = [conn]
        c.apps[env_id] = [create_app(f"app-{i}", env_id)]
        c.app_connections[(env_id, f"app-{i}")] = [conn]
        c.flows[env_id] = [create_flow(f"flow-{i}", env_id)]
        c.definitions[(env_id, f"flow-{i}")] = flow_definition(actions=[f"sql-{i}"])
    return c


class TestRunCollection:
    """Tests for run_collection."""

    def test_merges_all_environments(self):
        client = multi_environment_client()

        aggregator, registry, failed = run_collection(client, client.environments)

        assert len(aggregator) == 8
        assert [g.gateway_id for g in registry.all()] == ["gw1", "gw0"]
        assert failed == []

    def test_parallel_matches_serial(self):
        """Test parallel collection yields the same records in the same order."""
        client = multi_environment_client()

        serial, serial_registry, _ = run_collection(client, client.environments, parallel_environments=1)
        parallel, parallel_registry, _ = run_collection(client, client.environments, parallel_environments=4)

        assert parallel.records == serial.records
        assert parallel_registry.all() == serial_registry.all()

    def test_failed_environment_skipped(self):
        """Test one failing environment does not stop the others."""
        client = multi_environment_client()
        client.fail_listing["env-2"] = ApiError("server error", status_code=500)

        aggregator, _, failed = run_collection(client, client.environments)

        assert [f['id'] for f in failed] == ["env-2"]
        assert "env-2" not in {r.environment_id for r in aggregator.records}
        assert len(aggregator) == 6

    def test_auth_failure_fails_environment_only(self):
        """Test an auth error is contained to its environment."""
        client = multi_environment_client()
        client.definitions[("env-3", "flow-3")] = ApiError("forbidden", status_code=403)

        aggregator, _, failed = run_collection(client, client.environments, parallel_environments=2)

        assert [f['id'] for f in failed] == ["env-3"]
        assert "Authentication/authorization error" in failed[0]['error']
        assert len(aggregator) == 6

    def test_tracker_updated(self):
        client = multi_environment_client()
        client.fail_listing["env-4"] = ApiError("boom", status_code=500)

        tracker = gateway_collect.ProgressTracker("Power Platform", total_environments=4, show_progress=False)
        with tracker:
            run_collection(client, client.environments, tracker=tracker)

        assert tracker.completed_environments == 4
        assert tracker.failed_environments == 1
        assert tracker.total_records == 6
        assert tracker.apps_scanned == 3


# =============================================================================
# Environment Selection / Credential Tests
# =============================================================================

class TestSelectEnvironments:
    """Tests for select_environments."""

    def test_no_filter_keeps_all(self):
        envs = [Environment("env-1", "Prod"), Environment("env-2", "Dev")]
        assert select_environments(envs, None) == envs
        assert select_environments(envs, []) == envs

    def test_filter_by_id_or_name(self):
        envs = [Environment("env-1", "Prod"), Environment("env-2", "Dev"), Environment("env-3", "Test")]
        assert select_environments(envs, ["ENV-1", "dev"]) == envs[:2]

    def test_filter_without_match(self):
        assert select_environments([Environment("env-1", "Prod")], ["nope"]) == []


class TestGetCredential:
    """Tests for get_credential."""

    @patch('gateway_collect.ClientSecretCredential')
    def test_service_principal(self, mock_sp):
        get_credential("tenant", "client", "secret")
        mock_sp.assert_called_once_with(tenant_id="tenant", client_id="client", client_secret="secret")

    @patch('gateway_collect.DefaultAzureCredential')
    def test_default_without_secret(self, mock_default):
        get_credential("tenant", "client", None)
        mock_default.assert_called_once_with()


# =============================================================================
# main() Tests
# =============================================================================

class TestMain:
    """End-to-end tests for main()."""

    def run_main(self, tmp_path, monkeypatch, client, *extra_args):
        monkeypatch.chdir(tmp_path)
        for var in ('PPGW_OUTPUT', 'PPGW_LOG_LEVEL', 'PPGW_ENVIRONMENTS', 'PPGW_GATEWAYS',
                    'PPGW_PARALLEL_ENVIRONMENTS', 'PPGW_TIMEOUT', 'PPGW_XLSX'):
            monkeypatch.delenv(var, raising=False)
        out = tmp_path / "out"
        argv = ['gateway_collect.py', '--output', str(out), *extra_args]
        with patch.object(sys, 'argv', argv), \
                patch('gateway_collect.get_credential'), \
                patch('gateway_collect.PowerPlatformClient', return_value=client):
            gateway_collect.main()
        return out

    def test_writes_csv_exports(self, tmp_path, monkeypatch, client):
        out = self.run_main(tmp_path, monkeypatch, client)

        all_files = glob.glob(str(out / "gateway_usage_all_*.csv"))
        assert len(all_files) == 1
        assert len(glob.glob(str(out / "gateway_usage_apps_*.csv"))) == 1
        assert len(glob.glob(str(out / "gateway_usage_flows_*.csv"))) == 1
        assert len(glob.glob(str(out / "gateway_summary_*.json"))) == 1

        with open(all_files[0], newline='', encoding='utf-8') as f:
            reader = csv.DictReader(f)
            rows = list(reader)
        assert reader.fieldnames == USAGE_COLUMNS
        assert [r['resourceType'] for r in rows] == ["App", "Flow"]
        assert rows[0]['gatewayName'] == "OnPremGW"

    def test_flow_only_usage_skips_app_file(self, tmp_path, monkeypatch, client):
        """Test a kind with no rows produces no file."""
        client.app_connections[("env-1", "app-1")] = [cloud_connection("o365-1")]

        out = self.run_main(tmp_path, monkeypatch, client)

        assert glob.glob(str(out / "gateway_usage_apps_*.csv")) == []
        assert len(glob.glob(str(out / "gateway_usage_flows_*.csv"))) == 1

    def test_gateway_filter(self, tmp_path, monkeypatch, client):
        """Test --gateway limits exports to matching gateways."""
        out = self.run_main(tmp_path, monkeypatch, client, '--gateway', 'SomeOtherGW')
        assert glob.glob(str(out / "*.csv")) == []

    def test_gateway_filter_by_name_keeps_unnamed_rows(self, tmp_path, monkeypatch, client):
        """Test --gateway by name keeps rows whose connection did not carry the name."""
        unnamed = Connection(short_name="sql-app", display_name="SQL app", gateway=GatewayRef("gw1"))
        client.app_connections[("env-1", "app-1")] = [unnamed]

        out = self.run_main(tmp_path, monkeypatch, client, '--gateway', 'OnPremGW')

        with open(glob.glob(str(out / "gateway_usage_all_*.csv"))[0], newline='', encoding='utf-8') as f:
            rows = list(csv.DictReader(f))
        assert [r['resourceType'] for r in rows] == ["App", "Flow"]
        assert {r['gatewayId'] for r in rows} == {"gw1"}

    def test_listing_failure_is_fatal(self, tmp_path, monkeypatch, client):
        """Test a failing environment listing exits 1 with nothing exported."""
        def fail():
            raise ApiError("service unavailable", status_code=503)
        client.list_environments = fail

        with pytest.raises(SystemExit) as exc_info:
            self.run_main(tmp_path, monkeypatch, client)

        assert exc_info.value.code == 1
        out = tmp_path / "out"
        assert glob.glob(str(out / "*.csv")) == []
        assert glob.glob(str(out / "*.json")) == []

    def test_no_matching_environment(self, tmp_path, monkeypatch, client):
        with pytest.raises(SystemExit) as exc_info:
            self.run_main(tmp_path, monkeypatch, client, '--environment', 'missing')
        assert exc_info.value.code == 1

    def test_xlsx_written(self, tmp_path, monkeypatch, client):
        out = self.run_main(tmp_path, monkeypatch, client, '--xlsx')
        assert len(glob.glob(str(out / "gateway_usage_*.xlsx"))) == 1


# =============================================================================
# Shared Gateway Naming Tests
# =============================================================================

def shared_gateway_client():
    """Two environments using gateway gw1; only the second names it."""
    c = FakeClient()
    bindings = [("env-1", GatewayRef("gw1")), ("env-2", GatewayRef("gw1", "OnPremGW", "Standard"))]
    for env_id, ref in bindings:
        c.environments.append(Environment(id=env_id, display_name=env_id.upper()))
        conn = Connection(short_name=f"sql-{env_id}", display_name="SQL", api_id="shared_sql", gateway=ref)
        c.connections[env_id] = [conn]
        c.flows[env_id] = [create_flow(f"flow-{env_id}", env_id)]
        c.definitions[(env_id, f"flow-{env_id}")] = flow_definition(actions=[conn.short_name])
    return c


class TestSharedGatewayNaming:
    """Records of one gateway id agree on its name across environments."""

    @pytest.mark.parametrize("parallel", [1, 2])
    def test_rows_use_run_registry(self, parallel):
        """Test rows from every environment carry the run registry's attributes."""
        client = shared_gateway_client()

        aggregator, registry, _ = run_collection(client, client.environments, parallel_environments=parallel)

        gateway = registry.get("gw1")
        assert {(r.gateway_name, r.gateway_type) for r in aggregator.records} == {(gateway.name, gateway.type)}
        assert list(aggregator.group_by_gateway()) == [gateway.name]

    def test_same_environment_named_and_unnamed(self, env):
        """Test one environment with a named and an unnamed connection to one gateway."""
        client = FakeClient()
        named = gateway_connection("sql-1")
        unnamed = Connection(short_name="sql-2", display_name="SQL 2", gateway=GatewayRef("gw1"))
        client.connections["env-1"] = [named, unnamed]
        client.flows["env-1"] = [create_flow("flow-1", "env-1"), create_flow("flow-2", "env-1")]
        client.definitions[("env-1", "flow-1")] = flow_definition(actions=["sql-1"])
        client.definitions[("env-1", "flow-2")] = flow_definition(actions=["sql-2"])

        aggregator, _, _ = run_collection(client, [env])

        groups = aggregator.group_by_gateway()
        assert {name: len(rs) for name, rs in groups.items()} == {"OnPremGW": 2}
        assert len(aggregator.filter_gateways(["OnPremGW"])) == 2

    def test_filter_by_later_name(self):
        """Test a gateway first seen unnamed is still selected by its later name."""
        client = shared_gateway_client()

        aggregator, registry, _ = run_collection(client, client.environments)

        assert {r.gateway_name for r in aggregator.records} == {"Gateway ID: gw1"}
        assert len(aggregator.filter_gateways(["OnPremGW"], registry)) == 2


class TestRunCollectionOrdering:
    """Tests for progress reporting order."""

    def test_serial_start_precedes_collection(self):
        """Test each environment is announced before it is collected."""
        client = multi_environment_client()
        calls = []
        list_apps = client.list_apps

        def logged_list_apps(environment_id):
            calls.append(('collect', environment_id))
            return list_apps(environment_id)

        client.list_apps = logged_list_apps
        tracker = Mock()
        tracker.start_environment.side_effect = lambda env_id, name: calls.append(('start', env_id))

        run_collection(client, client.environments[:2], tracker=tracker)

        assert calls == [('start', 'env-1'), ('collect', 'env-1'), ('start', 'env-2'), ('collect', 'env-2')]
        assert tracker.complete_environment.call_count == 2
