"""
Shared plumbing for the collector: retries, auth error detection, the
subscription worker pool, console progress, logging setup and output files.

Log levels used across the collector:
  ERROR    a resource kind (or a whole subscription) could not be collected
  WARNING  a nested listing failed (one account, one server, one vault)
  INFO     resource counts and per-subscription progress
  DEBUG    individual capacity lookups and skipped records
"""
import csv
import hashlib
import json
import logging
import os
import re
import sys
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple, TypeVar

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
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .constants import AZURE_AUTH_STATUS_CODES, BYTES_PER_TIB

if TYPE_CHECKING:
    from rich.progress import TaskID

logger = logging.getLogger(__name__)

F = TypeVar('F', bound=Callable[..., Any])

# Azure SDK exception classes that can carry an auth failure
_AUTH_EXCEPTION_NAMES = frozenset({'HttpResponseError', 'ClientAuthenticationError'})


def retry_with_backoff(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 60,
    exceptions: tuple = (Exception,)
) -> Callable[[F], F]:
    """
    Retry a call on the given exception types, backing off exponentially
    between min_wait and max_wait seconds. The last error is re-raised.
    """
    def decorator(func: F) -> F:
        return retry(  # type: ignore[return-value]
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
            retry=retry_if_exception_type(exceptions),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )(func)
    return decorator


# =============================================================================
# Authentication Errors
# =============================================================================

class AuthError(Exception):
    """A 401/403 from the provider. Collection of the subscription stops."""

    def __init__(self, message: str, provider: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.provider = provider
        self.original_error = original_error


def is_auth_error(exc: Exception) -> bool:
    """True for Azure SDK errors with an auth status code or an auth message."""
    if type(exc).__name__ not in _AUTH_EXCEPTION_NAMES:
        return False
    if getattr(exc, 'status_code', None) in AZURE_AUTH_STATUS_CODES:
        return True
    text = str(exc).lower()
    return any(word in text for word in ('authentication', 'authorization'))


def check_and_raise_auth_error(exc: Exception, context: str, provider: str) -> None:
    """Re-raise exc as AuthError when it is one; otherwise return so the caller can log and go on."""
    if not is_auth_error(exc):
        return
    raise AuthError(
        f"Authentication/authorization error while trying to {context}: {exc}",
        provider=provider,
        original_error=exc
    ) from exc


# =============================================================================
# Worker Pool
# =============================================================================

def parallel_collect(
    collection_tasks: List[Tuple[str, Callable, tuple]],
    parallel_workers: int = 1,
    logger: Optional[logging.Logger] = None
) -> List[Any]:
    """
    Run (name, fn, args) tasks and concatenate the lists they return.

    With one worker the tasks run in order on the calling thread. A task
    that raises AuthError stops the run; any other exception is logged and
    that task contributes nothing.
    """
    log = logger or logging.getLogger(__name__)
    collected: List[Any] = []

    def _gather(name: str, outcome: Optional[List[Any]]) -> None:
        if outcome:
            collected.extend(outcome)
            log.debug(f"{name}: {len(outcome)} result(s)")

    if parallel_workers <= 1:
        for name, fn, args in collection_tasks:
            try:
                _gather(name, fn(*args))
            except AuthError:
                raise
            except Exception as e:
                log.warning(f"Task {name} failed: {e}")
        return collected

    log.info(f"Collecting with {parallel_workers} worker threads")
    with ThreadPoolExecutor(max_workers=parallel_workers) as pool:
        pending = {pool.submit(fn, *args): name for name, fn, args in collection_tasks}
        for future in as_completed(pending):
            name = pending[future]
            try:
                _gather(name, future.result())
            except AuthError:
                raise
            except Exception as e:
                log.warning(f"Task {name} failed: {e}")
    return collected


# =============================================================================
# Progress Display
# =============================================================================

class ProgressTracker:
    """
    Per-subscription progress for a collection run.

    Draws a rich progress bar on a terminal and prints plain lines when
    output is redirected. The closing summary comes from the same rows in
    both cases.
    """

    def __init__(self, provider: str, total_accounts: int = 0, show_progress: bool = True):
        self.provider = provider
        self.total_accounts = total_accounts
        self.completed_accounts = 0
        self.total_resources = 0
        self.total_capacity_bytes = 0

        self._use_rich = show_progress and sys.stdout.isatty()
        self._console: Optional[Console] = None
        self._progress: Optional[Progress] = None
        self._task: Optional["TaskID"] = None

    def __enter__(self):
        if not self._use_rich:
            print(f"\n{self.provider} collection: {self.total_accounts or 'unknown'} subscription(s)")
            return self

        self._console = Console()
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            console=self._console,
        )
        self._task = self._progress.add_task(self.provider, total=self.total_accounts or 1)
        self._progress.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        rows = self.summary_rows()
        if self._progress is not None and self._console is not None:
            self._progress.stop()
            table = Table(title=f"{self.provider} collection", show_header=False)
            table.add_column("Item", style="cyan")
            table.add_column("Value", style="green")
            for label, value in rows:
                table.add_row(label, value)
            self._console.print(Panel(table))
        else:
            print(f"\n{self.provider} collection finished")
            for label, value in rows:
                print(f"  {label + ':':<20}{value}")
        return False

    def summary_rows(self) -> List[Tuple[str, str]]:
        rows = []
        if self.total_accounts:
            rows.append(("Subscriptions", f"{self.completed_accounts}/{self.total_accounts}"))
        rows.append(("Resources", f"{self.total_resources:,}"))
        rows.append(("Capacity", f"{self.total_capacity_bytes / BYTES_PER_TIB:,.3f} TiB"))
        return rows

    def start_account(self, account_id: str, account_name: str = ""):
        label = f"{account_id} ({account_name})" if account_name else account_id
        if self._progress is not None and self._task is not None:
            self._progress.update(self._task, description=f"{self.provider} {label}")
        else:
            print(f"Subscription: {label}")

    def add_resources(self, count: int, capacity_bytes: int = 0):
        self.total_resources += count
        self.total_capacity_bytes += capacity_bytes

    def complete_account(self):
        self.completed_accounts += 1
        if self._progress is not None and self._task is not None:
            self._progress.advance(self._task)


def generate_run_id() -> str:
    """UTC timestamp plus a short random suffix, e.g. 20240101-120000-1a2b3c4d."""
    return f"{datetime.now(timezone.utc):%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:8]}"


def get_timestamp() -> str:
    """Current UTC time as ISO 8601 with a Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec='seconds').replace('+00:00', 'Z')


# =============================================================================
# Logging
# =============================================================================

def hash_sensitive_id(value: str, prefix: str = "") -> str:
    """Short unsalted sha256 digest for log lines; empty values pass through."""
    if not value:
        return value
    return prefix + hashlib.sha256(value.encode()).hexdigest()[:8]


# Group names first, then any GUID (subscription and tenant IDs)
_LOG_REDACTIONS = (
    (re.compile(r'(/resourceGroups/)([^/\s]+)', re.IGNORECASE),
     lambda m: m.group(1) + hash_sensitive_id(m.group(2).lower(), "rg-")),
    (re.compile(r'\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b', re.IGNORECASE),
     lambda m: hash_sensitive_id(m.group(0).lower(), "id-")),
)


def redact_log_message(message: str) -> str:
    """Hash subscription IDs and resource group names; provider paths are kept."""
    if not message:
        return message
    for pattern, replace in _LOG_REDACTIONS:
        message = pattern.sub(replace, message)
    return message


class RedactingFilter(logging.Filter):
    """Applies redact_log_message to a record's message and string args."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg:
            record.msg = redact_log_message(str(record.msg))
        if record.args:
            record.args = tuple(redact_log_message(a) if isinstance(a, str) else a for a in record.args)
        return True


def setup_logging(level: str = "INFO", output_dir: Optional[str] = None) -> logging.Logger:
    """
    Send logs to stderr and, when output_dir is given, to a redacted log file
    next to the reports. Unknown level names fall back to INFO.
    """
    numeric_level = getattr(logging, str(level).upper(), None)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO
    formatter = logging.Formatter('%(asctime)s %(levelname)-7s %(name)s: %(message)s', '%Y-%m-%d %H:%M:%S')

    root = logging.getLogger()
    root.setLevel(numeric_level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    log_file = None
    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
        log_file = os.path.join(output_dir, f"cca_capacity_log_{datetime.now(timezone.utc):%Y%m%d_%H%M%S}.log")
        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.addFilter(RedactingFilter())
        handlers.append(file_handler)

    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    if log_file:
        root.info(f"Logging to: {log_file}")
    return logging.getLogger(__name__)


# =============================================================================
# Output Writers
# =============================================================================

def write_json(data: Any, filepath: str) -> None:
    """Write data to JSON file with secure permissions."""
    # Owner read/write only: reports may contain resource names
    fd = os.open(filepath, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        f = os.fdopen(fd, 'w')
    except Exception:
        os.close(fd)
        raise
    with f:
        json.dump(data, f, indent=2, default=str)
    print(f"Wrote {filepath}")


def write_csv(data: List[Dict], filepath: str, fieldnames: Optional[List[str]] = None) -> None:
    """Write data to CSV file. Writes a header-only file when fieldnames are given and data is empty."""
    if not data and not fieldnames:
        return

    if not fieldnames:
        fieldnames = list(data[0].keys())

    with open(filepath, 'w', newline='') as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames, extrasaction='ignore')
        writer.writeheader()
        writer.writerows(data)
    print(f"Wrote {filepath}")


def print_summary_table(totals: List[Dict]) -> None:
    """Print a workload totals table to console."""
    if not totals:
        print("No resources found.")
        return

    headers = ["Workload", "Count", "Size (GiB)", "Size (TiB)"]
    rows = [
        [
            str(t.get("workload", "")),
            str(t.get("count", 0)),
            f"{t.get('size_gib', 0):,.2f}",
            f"{t.get('size_tib', 0):,.3f}",
        ]
        for t in totals
    ]

    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))

    header_line = " | ".join(h.ljust(widths[i]) for i, h in enumerate(headers))
    separator = "-+-".join("-" * w for w in widths)

    print("\n" + header_line)
    print(separator)
    for row in rows:
        print(" | ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)))

    total_count = sum(t.get("count", 0) for t in totals)
    total_gib = sum(t.get("size_gib", 0) for t in totals)
    total_tib = sum(t.get("size_tib", 0) for t in totals)
    print(separator)
    print(" | ".join([
        "TOTAL".ljust(widths[0]),
        str(total_count).ljust(widths[1]),
        f"{total_gib:,.2f}".ljust(widths[2]),
        f"{total_tib:,.3f}".ljust(widths[3]),
    ]))
    print()
