"""
Export and console reporting for gateway usage.

Three CSV files are produced from the usage ledger (all usage, apps only,
flows only); each is written only when it has rows. A JSON summary and an
optional Excel workbook are produced alongside.
"""
import io
import logging
import os
from typing import Any, Dict, List, Optional

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from rich.console import Console
from rich.table import Table

from .aggregator import UsageAggregator
from .constants import (
    ALL_USAGE_FILE,
    APP_USAGE_FILE,
    FLOW_USAGE_FILE,
    RESOURCE_TYPE_APP,
    RESOURCE_TYPE_FLOW,
    USAGE_COLUMNS,
    WORKBOOK_FILE,
)
from .registry import GatewayRegistry
from .utils import is_blob_url, join_output_path, write_csv, write_to_blob

logger = logging.getLogger(__name__)

HEADER_FONT = Font(bold=True, color="FFFFFF")
HEADER_FILL = PatternFill(start_color="305496", end_color="305496", fill_type="solid")


def export_usage(
    aggregator: UsageAggregator,
    output_base: str,
    timestamp: str,
    credential=None,
) -> Dict[str, str]:
    """
    Write the combined, app-only and flow-only usage CSVs.

    Returns a mapping of file kind ('all', 'apps', 'flows') to the path of
    every file actually written.
    """
    exports = [
        ('all', ALL_USAGE_FILE, aggregator.records),
        ('apps', APP_USAGE_FILE, aggregator.by_type(RESOURCE_TYPE_APP)),
        ('flows', FLOW_USAGE_FILE, aggregator.by_type(RESOURCE_TYPE_FLOW)),
    ]

    written: Dict[str, str] = {}
    for kind, template, records in exports:
        if not records:
            logger.info(f"No {kind} gateway usage to export")
            continue
        path = join_output_path(output_base, template.format(timestamp=timestamp))
        if write_csv([r.to_row() for r in records], path, fieldnames=USAGE_COLUMNS, credential=credential):
            written[kind] = path
    return written


def build_gateway_summary(
    aggregator: UsageAggregator,
    registry: GatewayRegistry,
    run_id: str,
    timestamp: str,
    environments: List[Dict[str, str]],
    failed_environments: List[Dict[str, str]],
) -> Dict[str, Any]:
    """Build the JSON summary: totals, gateways and their usage counts."""
    usage_by_id = {entry['gateway_id']: entry for entry in aggregator.gateway_breakdown()}

    gateways = []
    for gateway in registry.all():
        usage = usage_by_id.get(gateway.gateway_id)
        if usage is None:
            # Registered but filtered out of the report (--gateway)
            continue
        gateways.append({
            **gateway.to_dict(),
            'app_count': usage['app_count'],
            'flow_count': usage['flow_count'],
            'total_usages': usage['total'],
            'environments': usage['environments'],
            'names_seen': registry.aliases(gateway.gateway_id),
        })

    return {
        'run_id': run_id,
        'timestamp': timestamp,
        'environments_scanned': environments,
        'failed_environments': failed_environments,
        'total_usages': len(aggregator),
        'app_usages': aggregator.total_by_type(RESOURCE_TYPE_APP),
        'flow_usages': aggregator.total_by_type(RESOURCE_TYPE_FLOW),
        'gateway_count': len(gateways),
        'gateways': gateways,
    }


def _write_header(ws, columns: List[str]) -> None:
    ws.append(columns)
    for cell in ws[1]:
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.alignment = Alignment(horizontal="center")
    ws.freeze_panes = "A2"


def _autosize(ws) -> None:
    for column in ws.columns:
        width = max(len(str(cell.value)) if cell.value is not None else 0 for cell in column)
        ws.column_dimensions[column[0].column_letter].width = min(max(width + 2, 10), 60)


def build_workbook(aggregator: UsageAggregator) -> Workbook:
    """
    Build the usage workbook.

    - Summary sheet: one row per gateway with app/flow counts
    - All Usage sheet: every usage record with the CSV columns
    """
    wb = Workbook()

    ws = wb.active
    ws.title = "Summary"
    _write_header(ws, ["Gateway Name", "Gateway ID", "Gateway Type", "Apps", "Flows", "Total", "Environments"])
    for entry in aggregator.gateway_breakdown():
        ws.append([
            entry['gateway_name'],
            entry['gateway_id'],
            entry['gateway_type'],
            entry['app_count'],
            entry['flow_count'],
            entry['total'],
            ", ".join(entry['environments']),
        ])
    _autosize(ws)

    ws = wb.create_sheet("All Usage")
    _write_header(ws, USAGE_COLUMNS)
    for record in aggregator.records:
        row = record.to_row()
        ws.append([row[c] for c in USAGE_COLUMNS])
    _autosize(ws)

    return wb


def write_workbook(aggregator: UsageAggregator, output_base: str, timestamp: str, credential=None) -> Optional[str]:
    """Write the Excel workbook; returns its path, or None when there is no usage."""
    if not len(aggregator):
        return None

    wb = build_workbook(aggregator)
    path = join_output_path(output_base, WORKBOOK_FILE.format(timestamp=timestamp))

    if is_blob_url(path):
        buffer = io.BytesIO()
        wb.save(buffer)
        write_to_blob(buffer.getvalue(), path, credential=credential)
    else:
        wb.save(path)
        os.chmod(path, 0o600)
        print(f"Wrote {path}")
    return path


def print_usage_summary(aggregator: UsageAggregator, console: Optional[Console] = None) -> None:
    """Print totals and the per-gateway breakdown to the console."""
    console = console or Console()

    if not len(aggregator):
        console.print("No gateway usage found.")
        return

    totals = Table(title="Gateway Usage Totals", show_header=False)
    totals.add_column("Metric", style="cyan")
    totals.add_column("Value", style="green", justify="right")
    totals.add_row("Apps using gateways", f"{aggregator.total_by_type(RESOURCE_TYPE_APP):,}")
    totals.add_row("Flows using gateways", f"{aggregator.total_by_type(RESOURCE_TYPE_FLOW):,}")
    totals.add_row("Total usages", f"{len(aggregator):,}")
    console.print(totals)

    by_gateway = Table(title="Usage by Gateway")
    by_gateway.add_column("Gateway", style="cyan")
    by_gateway.add_column("Type")
    by_gateway.add_column("Apps", justify="right")
    by_gateway.add_column("Flows", justify="right")
    by_gateway.add_column("Total", justify="right", style="green")
    by_gateway.add_column("Environments")
    for entry in aggregator.gateway_breakdown():
        by_gateway.add_row(
            entry['gateway_name'],
            entry['gateway_type'],
            str(entry['app_count']),
            str(entry['flow_count']),
            str(entry['total']),
            ", ".join(entry['environments']),
        )
    console.print(by_gateway)
