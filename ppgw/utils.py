"""
Utility functions for the Power Platform gateway usage collector.

Logging Level Standards:
------------------------
- ERROR: Failures that stop an entire environment or abort the run
         "Failed to collect environment Contoso (Default): {e}"
- WARNING: Per-resource failures (one app or flow), optional features unavailable
           "Failed to resolve connections for app Expenses ({id}): {e}"
- INFO: Progress messages, resource counts
        "Found 42 flows in environment Contoso (Default)"
- DEBUG: Per-item misses that don't affect overall collection
         "Connection reference shared-sql-abc123 not found in environment"
"""
import csv
import io
import json
import logging
import os
import re
import sys
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from .constants import FILE_TIMESTAMP_FORMAT

if TYPE_CHECKING:
    from rich.progress import TaskID

logger = logging.getLogger(__name__)


# =============================================================================
# Progress Tracking
# =============================================================================

class ProgressTracker:
    """
    Progress tracker for collection runs with rich display.

    Falls back to simple print statements if stdout is not a TTY
    (e.g., when piping output or running from a scheduler).

    Usage:
        with ProgressTracker("Power Platform", total_environments=5) as tracker:
            for env in environments:
                tracker.start_environment(env.id, env.display_name)
                tracker.update_task("Resolving flows...")
                tracker.add_records(len(records), apps=3, flows=7)
                tracker.complete_environment()
    """

    def __init__(self, label: str, total_environments: int = 0, show_progress: bool = True):
        self.label = label
        self.total_environments = total_environments
        self.show_progress = show_progress and sys.stdout.isatty()

        # Counters
        self.completed_environments = 0
        self.failed_environments = 0
        self.total_records = 0
        self.apps_scanned = 0
        self.flows_scanned = 0
        self.current_environment = ""
        self.current_task = ""

        self._console: Optional[Console] = None
        self._progress: Optional[Progress] = None
        self._main_task: Optional["TaskID"] = None

    def __enter__(self):
        if self.show_progress:
            self._console = Console()
            self._progress = Progress(
                SpinnerColumn(),
                TextColumn("[bold blue]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                console=self._console,
                transient=False,
            )
            self._main_task = self._progress.add_task(
                f"{self.label} Collection", total=self.total_environments or 1
            )
            self._progress.start()
        else:
            print(f"\n{'='*60}")
            print(f"{self.label} Collection Starting")
            print(f"{'='*60}")
            if self.total_environments:
                print(f"Environments: {self.total_environments}")
            print()

        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.show_progress:
            assert self._progress is not None
            assert self._console is not None
            self._progress.stop()
            self._console.print()
            self._print_summary_rich()
        else:
            self._print_summary_plain()
        return False

    def start_environment(self, environment_id: str, environment_name: str = ""):
        """Mark the start of processing an environment."""
        self.current_environment = environment_name or environment_id
        display = f"{environment_name} ({environment_id})" if environment_name else environment_id
        if self.show_progress:
            assert self._progress is not None
            assert self._main_task is not None
            self._progress.update(self._main_task, description=f"{self.label} [{display}]")
        else:
            print(f"\nEnvironment: {display}")

    def update_task(self, task_description: str):
        """Update the current task being performed."""
        self.current_task = task_description
        if self.show_progress:
            assert self._progress is not None
            assert self._main_task is not None
            env_info = f"[{self.current_environment}] " if self.current_environment else ""
            self._progress.update(self._main_task, description=f"{self.label} {env_info}{task_description}")

    def add_records(self, count: int, apps: int = 0, flows: int = 0):
        """Add usage records and scanned resources to the running totals."""
        self.total_records += count
        self.apps_scanned += apps
        self.flows_scanned += flows

    def complete_environment(self, failed: bool = False):
        """Mark an environment as complete."""
        self.completed_environments += 1
        if failed:
            self.failed_environments += 1
        if self.show_progress:
            assert self._progress is not None
            assert self._main_task is not None
            self._progress.update(self._main_task, advance=1)
        else:
            status = "Failed" if failed else "Complete"
            print(f"  [{self.current_environment}] {status} - Running total: {self.total_records:,} gateway usages")

    def _print_summary_rich(self):
        """Print a formatted summary using rich."""
        table = Table(title=f"{self.label} Collection Summary", show_header=False)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")

        table.add_row("Environments", str(self.completed_environments))
        if self.failed_environments:
            table.add_row("Failed Environments", str(self.failed_environments))
        table.add_row("Apps Scanned", f"{self.apps_scanned:,}")
        table.add_row("Flows Scanned", f"{self.flows_scanned:,}")
        table.add_row("Gateway Usages", f"{self.total_records:,}")

        assert self._console is not None
        self._console.print(Panel(table))

    def _print_summary_plain(self):
        """Print a plain text summary."""
        print(f"\n{'='*60}")
        print(f"{self.label} Collection Complete")
        print(f"{'='*60}")
        print(f"  Environments:    {self.completed_environments}")
        if self.failed_environments:
            print(f"  Failed:          {self.failed_environments}")
        print(f"  Apps Scanned:    {self.apps_scanned:,}")
        print(f"  Flows Scanned:   {self.flows_scanned:,}")
        print(f"  Gateway Usages:  {self.total_records:,}")
        print()


def generate_run_id() -> str:
    """Generate a unique run ID."""
    return f"{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{str(uuid.uuid4())[:8]}"


def get_timestamp() -> str:
    """Get current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def get_file_timestamp() -> str:
    """Get the local run timestamp used in output filenames (YYYYmmdd_HHMMSS)."""
    return datetime.now().strftime(FILE_TIMESTAMP_FORMAT)


def get_nested(data: Any, key_path: str, default: Any = None) -> Any:
    """
    Get a nested value from a document using dot notation.

    Returns `default` instead of raising when any step is missing or is not
    a mapping, since flow definitions are only partially typed.
    """
    value = data
    for key in key_path.split('.'):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value if value is not None else default


# =============================================================================
# Errors
# =============================================================================

class AuthError(Exception):
    """Custom exception for authentication/authorization failures.

    Raised when the admin API rejects the caller, which should stop collection
    rather than being silently caught and logged per resource.
    """
    def __init__(self, message: str, provider: str = "powerplatform", original_error: Optional[Exception] = None):
        self.provider = provider
        self.original_error = original_error
        super().__init__(message)


# HTTP status codes that indicate auth/permission issues
AUTH_STATUS_CODES = {401, 403}

# azure-identity exception types raised when no token can be obtained
CREDENTIAL_EXCEPTION_NAMES = {'ClientAuthenticationError', 'CredentialUnavailableError'}


def is_auth_error(exc: Exception) -> bool:
    """
    Check if an exception represents an authentication/authorization error.

    Detects:
    - azure-identity: ClientAuthenticationError, CredentialUnavailableError
    - Admin API: ApiError / requests HTTPError with 401/403 status

    Args:
        exc: The exception to check

    Returns:
        True if the exception is an authentication/authorization error
    """
    exc_type_name = type(exc).__name__

    if exc_type_name in CREDENTIAL_EXCEPTION_NAMES:
        return True

    status_code = getattr(exc, 'status_code', None)
    if status_code is None:
        response = getattr(exc, 'response', None)
        status_code = getattr(response, 'status_code', None)

    return status_code in AUTH_STATUS_CODES


def check_and_raise_auth_error(exc: Exception, context: str) -> None:
    """
    Check if exception is an auth error and raise AuthError if so.

    Call this in exception handlers before logging and continuing.
    Otherwise returns normally so the caller can log and continue.

    Raises:
        AuthError: If exc is an authentication/authorization error
    """
    if isinstance(exc, AuthError):
        raise exc
    if is_auth_error(exc):
        raise AuthError(
            f"Authentication/authorization error while trying to {context}: {exc}",
            original_error=exc
        ) from exc


# =============================================================================
# Redaction (log files)
# =============================================================================

def hash_sensitive_id(value: str, prefix: str = "") -> str:
    """
    Hash a sensitive ID using consistent hashing.

    Uses first 8 chars of SHA256 so the same value always maps to the same
    token within and across runs.

    Example: 6f1c2e4a-0000-4000-8000-1234567890ab -> id-a3f8b2c1
    """
    import hashlib
    if not value:
        return value
    hash_val = hashlib.sha256(value.encode()).hexdigest()[:8]
    return f"{prefix}{hash_val}" if prefix else hash_val


_LOG_REDACT_PATTERNS = [
    # E-mail addresses (owners, creators) - keep the domain
    (re.compile(r'\b([A-Za-z0-9._%+-]+)@([A-Za-z0-9.-]+\.[A-Za-z]{2,})\b'),
     lambda m: f"user-{hash_sensitive_id(m.group(1).lower())}@{m.group(2)}"),
    # GUIDs (environment, app, flow, gateway and tenant ids)
    (re.compile(r'\b([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})\b', re.IGNORECASE),
     lambda m: f"id-{hash_sensitive_id(m.group(1).lower())}"),
]


def redact_log_message(message: str) -> str:
    """Redact GUIDs and e-mail addresses from a log message."""
    if not message:
        return message

    for pattern, replacer in _LOG_REDACT_PATTERNS:
        message = pattern.sub(replacer, message)

    return message


class RedactingFilter(logging.Filter):
    """
    Logging filter that redacts sensitive data from log messages.

    Uses consistent hashing so the same ID produces the same hash,
    allowing correlation between log lines.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        """Redact sensitive data from the log record message."""
        if record.msg:
            record.msg = redact_log_message(str(record.msg))
        if record.args:
            record.args = tuple(
                redact_log_message(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True


def setup_logging(level: str = "INFO", output_dir: Optional[str] = None) -> logging.Logger:
    """
    Setup logging configuration with console and optional file output.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        output_dir: If provided, also write logs to a file in this directory

    Returns:
        Logger instance
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Clear existing handlers to avoid duplicates
    root_logger.handlers.clear()

    # Console handler (stderr)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
        timestamp = datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')
        log_file = os.path.join(output_dir, f"ppgw_log_{timestamp}.log")

        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        # Persisted logs never carry raw ids or e-mail addresses
        file_handler.addFilter(RedactingFilter())
        root_logger.addHandler(file_handler)

        root_logger.info(f"Logging to: {log_file}")

    return logging.getLogger(__name__)


# =============================================================================
# Output
# =============================================================================

def is_blob_url(path: str) -> bool:
    """True for Azure Blob Storage URLs."""
    return path.startswith("https://") and ".blob.core.windows.net" in path


def join_output_path(output_base: str, filename: str) -> str:
    """Join an output directory or blob container URL with a filename."""
    if is_blob_url(output_base):
        return f"{output_base.rstrip('/')}/{filename}"
    return os.path.join(output_base, filename)


def write_json(data: Any, filepath: str, credential=None) -> None:
    """Write data to JSON file with secure permissions."""
    if is_blob_url(filepath):
        write_to_blob(json.dumps(data, indent=2, default=str), filepath, credential=credential)
        return

    # Local file - owner read/write only, outputs carry owner e-mails
    fd = os.open(filepath, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w') as f:
        json.dump(data, f, indent=2, default=str)
    print(f"Wrote {filepath}")


def write_csv(data: List[Dict], filepath: str, fieldnames: Optional[List[str]] = None, credential=None) -> bool:
    """
    Write rows to a CSV file.

    Returns False without writing anything when `data` is empty.
    """
    if not data:
        return False

    if not fieldnames:
        fieldnames = list(data[0].keys())

    if is_blob_url(filepath):
        output = io.StringIO()
        writer = csv.DictWriter(output, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(data)
        write_to_blob(output.getvalue(), filepath, credential=credential)
        return True

    with open(filepath, 'w', newline='', encoding='utf-8') as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(data)
    print(f"Wrote {filepath}")
    return True


def write_to_blob(body: Any, blob_url: str, credential=None) -> None:
    """Upload a string or bytes payload to Azure Blob Storage."""
    from azure.identity import DefaultAzureCredential
    from azure.storage.blob import BlobClient

    try:
        blob_client = BlobClient.from_blob_url(blob_url, credential=credential or DefaultAzureCredential())
        blob_client.upload_blob(body, overwrite=True)
        print(f"Wrote {blob_url}")
    except Exception as e:
        print(f"ERROR: Failed to write to Azure Blob ({blob_url}): {e}")
        raise
