"""Command-line interface for dockship."""

from __future__ import annotations

import argparse
import json
import signal
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import AppConfig, load_config
from .descriptor import load_descriptor
from .errors import DeployError, DeploymentCancelled
from .orchestrator import DeploymentOrchestrator
from .secrets import build_resolver
from .state import DeploymentLedger, DeploymentRecord, FileLedger, Outcome
from .utils.logging import configure_logging, get_logger

logger = get_logger(__name__)

_OUTCOME_STYLE = {
    Outcome.SUCCESS: "green",
    Outcome.ROLLED_BACK: "yellow",
    Outcome.IN_PROGRESS: "cyan",
    Outcome.FAILED: "red",
    Outcome.CANCELLED: "magenta",
    Outcome.ABANDONED: "dim",
}


@dataclass
class CLIContext:
    """Context captured from CLI arguments."""

    config: AppConfig
    ledger: DeploymentLedger
    console: Console


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dockship",
        description="Deploy container images to a host over SSH, with health checks and rollback.",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a JSON config file overriding defaults.",
    )
    parser.add_argument(
        "--ledger",
        type=str,
        default=None,
        help="Path to the deployment ledger (default: .dockship/ledger.jsonl).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")

    subparsers = parser.add_subparsers(dest="command", required=True)

    deploy_parser = subparsers.add_parser("deploy", help="Deploy the service a descriptor describes")
    deploy_parser.add_argument("descriptor", help="Path to the deployment descriptor (JSON)")
    deploy_parser.add_argument(
        "--force",
        action="store_true",
        help="Abandon a stale in-progress attempt for the same service",
    )

    rollback_parser = subparsers.add_parser(
        "rollback", help="Return a service to its previous known-good image"
    )
    rollback_parser.add_argument("service", help="Service identifier")
    rollback_parser.add_argument(
        "--descriptor",
        default=None,
        help="Descriptor to use instead of the one recorded in the ledger",
    )

    status_parser = subparsers.add_parser("status", help="Show the recorded state of a service")
    status_parser.add_argument("service", help="Service identifier")

    history_parser = subparsers.add_parser("history", help="List deploy attempts of a service")
    history_parser.add_argument("service", help="Service identifier")
    history_parser.add_argument("--limit", "-n", type=int, default=20, help="Rows to show")

    validate_parser = subparsers.add_parser(
        "validate", help="Load a descriptor, validate it and print it normalised"
    )
    validate_parser.add_argument("descriptor", help="Path to the deployment descriptor (JSON)")
    validate_parser.add_argument(
        "--no-resolve",
        action="store_true",
        help="Skip checking that the target host resolves",
    )

    return parser


def _build_context(args: argparse.Namespace, console: Optional[Console] = None) -> CLIContext:
    config = load_config(args.config)
    ledger_path = args.ledger or config.state.ledger_path
    return CLIContext(
        config=config,
        ledger=FileLedger(Path(ledger_path), lock_timeout=config.state.lock_timeout),
        console=console or Console(),
    )


@contextmanager
def _cancel_on_signals(event: threading.Event) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into a cancel request; a second signal interrupts."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum, frame) -> None:
        if event.is_set():
            raise KeyboardInterrupt
        logger.warning("Cancel requested; waiting for the current remote command to finish")
        event.set()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def _orchestrator(context: CLIContext, cancel_event: threading.Event) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(
        context.config,
        context.ledger,
        build_resolver(context.config),
        cancel_event=cancel_event,
    )


def _short(digest: Optional[str]) -> str:
    if not digest:
        return "-"
    return digest.split(":", 1)[-1][:12]


def _outcome_text(record: DeploymentRecord) -> str:
    style = _OUTCOME_STYLE.get(record.outcome, "white")
    return f"[{style}]{record.outcome.value}[/{style}]"


def print_failure(console: Console, command: str, exc: DeployError) -> None:
    console.print(f"[bold red]✗ {command} failed:[/bold red] {escape(exc.message)}")
    console.print(f"  service:   {exc.service or '-'}")
    console.print(f"  last step: {exc.step or '-'}")
    console.print(f"  hint:      {escape(exc.hint)}")


def handle_deploy_command(args: argparse.Namespace, context: CLIContext) -> int:
    descriptor = load_descriptor(args.descriptor, health_defaults=context.config.health)
    cancel_event = threading.Event()
    orchestrator = _orchestrator(context, cancel_event)
    with _cancel_on_signals(cancel_event):
        record = orchestrator.deploy(descriptor, force=args.force)
    context.console.print(
        f"[green]✓[/green] {record.service} deployed {record.image} "
        f"(digest {_short(record.digest)}, attempt {record.deploy_id}, retries {record.retry_count})"
    )
    return 0


def handle_rollback_command(args: argparse.Namespace, context: CLIContext) -> int:
    descriptor = (
        load_descriptor(args.descriptor, health_defaults=context.config.health)
        if args.descriptor
        else None
    )
    cancel_event = threading.Event()
    orchestrator = _orchestrator(context, cancel_event)
    with _cancel_on_signals(cancel_event):
        record = orchestrator.rollback(args.service, descriptor=descriptor)
    context.console.print(
        f"[yellow]↩[/yellow] {record.service} rolled back to {record.image} "
        f"(digest {_short(record.digest)})"
    )
    return 0


def handle_status_command(args: argparse.Namespace, context: CLIContext) -> int:
    status = context.ledger.status(args.service)
    if status.current is None:
        context.console.print(f"No deployments recorded for {args.service}")
        return 0

    current = status.current
    table = Table(title=f"{status.service}", show_header=False)
    table.add_column("field", style="bold")
    table.add_column("value")
    table.add_row("state", _outcome_text(current))
    table.add_row("attempt", current.deploy_id)
    table.add_row("image", current.image)
    table.add_row("digest", current.digest or "-")
    table.add_row("started", current.started_at)
    table.add_row("finished", current.finished_at or "-")
    if current.step and current.outcome is not Outcome.SUCCESS:
        table.add_row("last step", current.step)
    if current.error:
        table.add_row("error", escape(current.error))
    if current.retries:
        table.add_row("retries", ", ".join(f"{k}={v}" for k, v in current.retries.items()))
    if status.last_success is not None:
        table.add_row(
            "last success",
            f"{status.last_success.image} ({_short(status.last_success.digest)}, "
            f"{status.last_success.finished_at})",
        )
    table.add_row("attempts", str(status.attempts))
    context.console.print(table)
    return 0


def handle_history_command(args: argparse.Namespace, context: CLIContext) -> int:
    records = context.ledger.history(args.service, limit=args.limit)
    if not records:
        context.console.print(f"No deployments recorded for {args.service}")
        return 0
    table = Table(title=f"{args.service} history")
    for column in ("attempt", "outcome", "image", "digest", "started", "step", "retries"):
        table.add_column(column)
    for record in records:
        table.add_row(
            record.deploy_id,
            _outcome_text(record),
            record.image,
            _short(record.digest),
            record.started_at,
            record.step or "-",
            str(record.retry_count),
        )
    context.console.print(table)
    return 0


def handle_validate_command(args: argparse.Namespace, context: CLIContext) -> int:
    descriptor = load_descriptor(
        args.descriptor,
        resolve_host=not args.no_resolve,
        health_defaults=context.config.health,
    )
    context.console.print_json(json.dumps(descriptor.to_dict()))
    return 0


_HANDLERS = {
    "deploy": handle_deploy_command,
    "rollback": handle_rollback_command,
    "status": handle_status_command,
    "history": handle_history_command,
    "validate": handle_validate_command,
}


def dispatch_command(args: argparse.Namespace, console: Optional[Console] = None) -> int:
    err_console = console or Console(stderr=True)
    try:
        context = _build_context(args, console)
        handler = _HANDLERS.get(args.command)
        if handler is None:
            raise ValueError(f"Unsupported command: {args.command}")
        return handler(args, context)
    except DeployError as exc:
        logger.debug("%s failed", args.command, exc_info=True)
        print_failure(err_console, args.command, exc)
        return exc.exit_code
    except KeyboardInterrupt:
        err_console.print(f"[bold red]✗ {args.command} interrupted[/bold red]")
        return DeploymentCancelled.exit_code


def run_cli(argv: Optional[list[str]] = None, console: Optional[Console] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(verbose=args.verbose)
    return dispatch_command(args, console)
