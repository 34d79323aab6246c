"""
Utility functions for Mailbox Delegation Sync.

Logging Level Standards:
------------------------
- ERROR: Failures that abort the run
         "Directory unavailable while listing grants: {e}"
- WARNING: Per-principal failures and soft failures
           "Failed to grant FullAccess to {principal}: {e}"
           "Could not reset send-on-behalf: {e}"
- INFO: Each applied change and progress messages
        "Granted FullAccess on {mailbox} to {principal}"
        "Group has 12 members"
- DEBUG: PowerShell scripts, raw outputs, per-item parsing details
"""
import json
import logging
import os
import re
import sys
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .constants import LOG_FILE_PREFIX

if TYPE_CHECKING:
    from .models import ReconcileResult

logger = logging.getLogger(__name__)


# =============================================================================
# Error Taxonomy
# =============================================================================

class MailboxSyncError(Exception):
    """Base class for all errors raised by mailbox sync."""

    # Partial ReconcileResult, attached when a run aborts midway
    result: Optional["ReconcileResult"] = None


class PreconditionError(MailboxSyncError):
    """The group or mailbox does not resolve. Raised before any work is done."""

    def __init__(self, message: str, identity: str = ""):
        self.identity = identity
        super().__init__(message)


class GroupNotFound(PreconditionError):
    """Group does not exist or is not a security group."""


class MailboxNotFound(PreconditionError):
    """Mailbox does not exist or is not a mailbox recipient."""


class DirectoryUnavailable(MailboxSyncError):
    """
    The directory or mailbox store could not be reached.

    Aborts the remaining steps of a run. Work already applied is not rolled
    back; the partial result is attached as `result` when available.
    """

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.original_error = original_error
        super().__init__(message)


class PrincipalOperationError(MailboxSyncError):
    """A single principal's grant or revoke was rejected by the store."""

    def __init__(self, message: str, principal: str):
        self.principal = principal
        super().__init__(message)


class GrantRejected(PrincipalOperationError):
    """Grant call rejected for one principal."""


class RevokeRejected(PrincipalOperationError):
    """Revoke call rejected for one principal."""


class ConversionRejected(MailboxSyncError):
    """The store refused to convert the mailbox to a shared mailbox."""


class ConfigError(MailboxSyncError):
    """Configuration is missing required values."""


# =============================================================================
# Run Metadata
# =============================================================================

def generate_run_id() -> str:
    """Generate a unique run ID."""
    return f"{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{str(uuid.uuid4())[:8]}"


def get_timestamp() -> str:
    """Get current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def escape_ps_string(value: str) -> str:
    """Escape a value for use inside a single-quoted PowerShell string."""
    return (value or "").replace("'", "''")


def mask_identifier(value: str) -> str:
    """Mask the middle of an identifier for console display (tenant IDs, app IDs)."""
    if not value or len(value) <= 12:
        return value
    return f"{value[:8]}...{value[-4:]}"


# =============================================================================
# Log Redaction
# =============================================================================

# Patterns for redacting sensitive data in log messages (compiled once)
_LOG_REDACT_PATTERNS = [
    # -CertificatePassword (ConvertTo-SecureString -String '...' ...)
    (re.compile(r"(-String\s+')((?:[^']|'')*)(')", re.IGNORECASE),
     lambda m: f"{m.group(1)}***SECRET-MASKED***{m.group(3)}"),
    # JWTs / bearer tokens
    (re.compile(r'\beyJ[a-zA-Z0-9_-]{5,}\.[a-zA-Z0-9_-]{5,}\.[a-zA-Z0-9_-]*'),
     lambda m: "***TOKEN-MASKED***"),
    (re.compile(r'(Bearer\s+)([^\s"\']+)', re.IGNORECASE),
     lambda m: f"{m.group(1)}***TOKEN-MASKED***"),
    # GUIDs (tenant IDs, app IDs, object IDs)
    (re.compile(r'\b([0-9a-f]{8})-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b', re.IGNORECASE),
     lambda m: f"{m.group(1)}-****"),
]


def redact_log_message(message: str) -> str:
    """Redact secrets and tenant identifiers from a log message."""
    if not message:
        return message

    for pattern, replacer in _LOG_REDACT_PATTERNS:
        message = pattern.sub(replacer, message)

    return message


class RedactingFilter(logging.Filter):
    """
    Logging filter that redacts sensitive data from log messages.

    Attached to the file handler so persisted logs never carry certificate
    passwords or tokens.
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
    numeric_level = getattr(logging, (level or "INFO").upper(), logging.INFO)

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
        log_file = os.path.join(output_dir, f"{LOG_FILE_PREFIX}_{timestamp}.log")

        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(RedactingFilter())
        root_logger.addHandler(file_handler)

        root_logger.info(f"Logging to: {log_file}")

    return logging.getLogger(__name__)


# =============================================================================
# Change Reporting
# =============================================================================

class ChangeReporter:
    """
    Reports each state change as it is applied and prints a final summary.

    Uses rich when stdout is a TTY, plain print statements otherwise
    (e.g., when piping output or running from a scheduler).

    Usage:
        with ChangeReporter(group, mailbox) as reporter:
            reconciler = PermissionReconciler(source, store, reporter=reporter)
            result = reconciler.reconcile(group, mailbox)
            reporter.set_result(result)
    """

    def __init__(self, group: str, mailbox: str, show_progress: bool = True):
        self.group = group
        self.mailbox = mailbox
        self.show_progress = show_progress and sys.stdout.isatty()
        self.changes: List[tuple] = []
        self.result: Optional["ReconcileResult"] = None
        self._console: Optional[Console] = Console() if self.show_progress else None

    def __enter__(self):
        if self._console is not None:
            self._console.rule(f"[bold blue]Mailbox sync: {self.group} -> {self.mailbox}")
        else:
            print(f"\n{'='*60}")
            print(f"Mailbox sync: {self.group} -> {self.mailbox}")
            print(f"{'='*60}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.result is not None:
            if self._console is not None:
                self._print_summary_rich()
            else:
                self._print_summary_plain()
        return False

    def change(self, action: str, target: str, detail: str = "") -> None:
        """Report one applied (or, in dry-run, planned) change."""
        self.changes.append((action, target, detail))
        suffix = f" ({detail})" if detail else ""
        if self._console is not None:
            style = "red" if action.startswith("revoke") else "green"
            self._console.print(f"  [{style}]{action}[/{style}] {target}{suffix}")
        else:
            print(f"  {action}: {target}{suffix}")

    def warn(self, message: str) -> None:
        if self._console is not None:
            self._console.print(f"  [yellow]warning[/yellow] {message}")
        else:
            print(f"  warning: {message}")

    def set_result(self, result: "ReconcileResult") -> None:
        self.result = result

    def _summary_rows(self) -> List[tuple]:
        result = self.result
        assert result is not None
        rows = [
            ("Mode", "dry run" if result.dry_run else ("update only" if result.update_only else "full")),
            ("FullAccess revoked", str(len(result.revoked))),
            ("FullAccess granted", str(len(result.granted))),
            ("Already converged", str(len(result.unchanged))),
            ("SendAs granted", "yes" if result.send_as_granted else "no"),
            ("Send on behalf set", "yes" if result.send_on_behalf_set else "no"),
            ("Converted to shared", "yes" if result.converted_to_shared else "no"),
            ("Failures", str(len(result.failures))),
        ]
        if result.aborted:
            rows.append(("Aborted", result.abort_reason or "yes"))
        return rows

    def _print_summary_rich(self):
        """Print a formatted summary using rich."""
        assert self._console is not None and self.result is not None

        table = Table(title="Mailbox Sync Summary", show_header=False)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")
        for name, value in self._summary_rows():
            table.add_row(name, value)
        self._console.print(Panel(table))

        if self.result.failures:
            failures = Table(title="Per-principal failures")
            failures.add_column("Principal", style="cyan")
            failures.add_column("Operation")
            failures.add_column("Error", style="red")
            for failure in self.result.failures:
                failures.add_row(failure.principal, failure.operation, failure.message)
            self._console.print(failures)

        for message in self.result.soft_failures:
            self._console.print(f"[yellow]Soft failure:[/yellow] {message}")

    def _print_summary_plain(self):
        """Print a plain text summary."""
        assert self.result is not None

        print(f"\n{'='*60}")
        print("Mailbox Sync Summary")
        print(f"{'='*60}")
        for name, value in self._summary_rows():
            print(f"  {name + ':':<22}{value}")

        if self.result.failures:
            print("\n  Per-principal failures:")
            for failure in self.result.failures:
                print(f"    {failure.principal} [{failure.operation}]: {failure.message}")

        for message in self.result.soft_failures:
            print(f"  Soft failure: {message}")
        print()


# =============================================================================
# Output
# =============================================================================

def write_json(data: Any, filepath: str) -> None:
    """Write data to JSON file with secure permissions."""
    # Owner read/write only: the report names every delegate of the mailbox
    fd = os.open(filepath, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w') as f:
        json.dump(data, f, indent=2, default=str)
    print(f"Wrote {filepath}")
