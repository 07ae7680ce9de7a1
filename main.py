"""
Workflow Engine: Main CLI Entrypoint.

Wires the execution controller with its stores and collaborators and
exposes run/status/serve commands.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from rich import box
from rich.console import Console
from rich.table import Table

from execution.engine import WorkflowExecutor
from execution.execution_store import ExecutionStore
from integrations.notifications import (
    HttpNotificationDispatcher,
    InMemoryNotificationDispatcher,
    NotificationDispatcher,
)
from integrations.task_store import SQLiteTaskStore
from shared.config import EngineSettings, load_settings
from shared.errors import WorkflowEngineError
from shared.models import ExecutionStatusView
from shared.workflow_contracts import WorkflowTemplate

# ─── Configuration ──────────────────────────────────────────────

logger = logging.getLogger(__name__)

# Ensure local .env is loaded before reading runtime configuration.
load_dotenv(override=False)

LOG_LEVEL = getattr(logging, os.getenv("LOG_LEVEL", "INFO").strip().upper(), logging.INFO)
NOTIFICATION_SERVICE_TOKEN = os.getenv("NOTIFICATION_SERVICE_TOKEN", "").strip() or None

# ─── Rich Console ───────────────────────────────────────────────

console = Console()

_STATUS_STYLES = {
    "pending": "yellow",
    "running": "cyan",
    "paused": "magenta",
    "completed": "green",
    "failed": "red",
    "cancelled": "dim",
    "waiting_approval": "magenta",
}


def setup_logging() -> None:
    """Configure logging."""
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def build_notifier(settings: EngineSettings) -> NotificationDispatcher:
    if settings.notification_service_url:
        return HttpNotificationDispatcher(
            settings.notification_service_url,
            auth_token=NOTIFICATION_SERVICE_TOKEN,
            timeout=settings.http_timeout_seconds,
        )
    logger.info("NOTIFICATION_SERVICE_URL not set; notifications are kept in memory")
    return InMemoryNotificationDispatcher()


def build_executor(settings: EngineSettings | None = None) -> WorkflowExecutor:
    """Wire stores and collaborators into one executor."""
    settings = settings or load_settings()
    return WorkflowExecutor(
        ExecutionStore(db_path=settings.db_path),
        settings=settings,
        task_store=SQLiteTaskStore(db_path=settings.db_path),
        notifier=build_notifier(settings),
    )


def close_executor(executor: WorkflowExecutor) -> None:
    executor.close()
    task_store = executor.task_store
    if hasattr(task_store, "close"):
        task_store.close()


def _parse_assignments(pairs: list[str] | None) -> dict[str, Any]:
    """Parse ``key=value`` pairs; values are JSON when they parse as JSON."""
    parsed: dict[str, Any] = {}
    for raw in pairs or []:
        key, sep, value = raw.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ValueError(f"Expected key=value, got '{raw}'")
        try:
            parsed[key] = json.loads(value)
        except json.JSONDecodeError:
            parsed[key] = value
    return parsed


# ─── Rendering ──────────────────────────────────────────────────

def render_status(view: ExecutionStatusView) -> None:
    style = _STATUS_STYLES.get(view.status, "white")
    summary = Table(box=box.SIMPLE, show_header=False, padding=(0, 1))
    summary.add_column("Field", style="bold")
    summary.add_column("Value")
    summary.add_row("Execution", view.execution_id)
    summary.add_row("Template", view.template_id)
    summary.add_row("Status", f"[{style}]{view.status}[/]" + (" (queued)" if view.queued else ""))
    summary.add_row("Progress", f"{view.progress}%")
    summary.add_row("Current step", view.current_step or "-")
    summary.add_row("Steps", f"{view.completed_steps}/{view.total_steps} completed, {view.failed_steps} failed")
    if view.duration is not None:
        summary.add_row("Duration", f"{view.duration}ms")
    console.print(summary)

    if view.steps:
        table = Table(title="Steps", box=box.MINIMAL)
        table.add_column("Node", style="cyan")
        table.add_column("Type", style="magenta")
        table.add_column("Status")
        table.add_column("Retries", justify="right")
        table.add_column("Output / Error", style="dim")
        for step in view.steps:
            step_style = _STATUS_STYLES.get(step.status, "white")
            detail = step.error.message if step.error else json.dumps(step.output, ensure_ascii=False, default=str)
            table.add_row(
                step.node_id,
                step.node_type,
                f"[{step_style}]{step.status}[/]",
                str(step.retry_count),
                detail[:120],
            )
        console.print(table)

    for error in view.errors:
        console.print(f"[bold red]Error[/] [{error.code or '-'}] {error.node_id or '-'}: {error.message}")


# ─── Commands ───────────────────────────────────────────────────

async def run_template(
    template_path: str,
    actor: str,
    variables: dict[str, Any],
    context: dict[str, Any],
) -> int:
    template = WorkflowTemplate.model_validate(json.loads(Path(template_path).read_text(encoding="utf-8")))
    executor = build_executor()
    try:
        executor.register_template(template)
        execution = executor.create_execution(template.id, actor, variables=variables, context=context)
        result = await executor.start_execution(execution.id)
        console.print(f"[bold cyan]{result.status}:[/] {execution.id}")
        await executor.wait_until_idle(execution.id)

        view = executor.get_execution_status(execution.id)
        render_status(view)
        if view.status == "running" and any(step.status == "waiting_approval" for step in view.steps):
            console.print("[bold yellow]Waiting for approval.[/] Respond through the HTTP API.")

        notifier = executor.notifier
        if isinstance(notifier, HttpNotificationDispatcher):
            await notifier.flush()
        return 0 if view.status in ("completed", "running") else 1
    finally:
        await executor.shutdown()
        close_executor(executor)


def show_status(execution_id: str) -> int:
    settings = load_settings()
    store = ExecutionStore(db_path=settings.db_path)
    executor = WorkflowExecutor(store, settings=settings)
    try:
        render_status(executor.get_execution_status(execution_id))
        return 0
    except WorkflowEngineError as exc:
        console.print(f"[bold red]Error:[/] {exc}")
        return 1
    finally:
        executor.close()


def serve(host: str, port: int) -> None:
    import uvicorn

    from api.server import create_app

    uvicorn.run(create_app(), host=host, port=port)


def main() -> None:
    """Entrypoint with CLI args."""
    setup_logging()

    parser = argparse.ArgumentParser(description="Workflow Engine")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    run_parser = subparsers.add_parser("run", help="Instantiate and run a workflow template")
    run_parser.add_argument("template", help="Path to a template JSON file")
    run_parser.add_argument("--var", action="append", default=[], help="Template variable (key=value)")
    run_parser.add_argument("--context", action="append", default=[], help="Context entry (key=value)")
    run_parser.add_argument("--actor", default=os.getenv("USER", "cli"), help="Triggering actor id")

    status_parser = subparsers.add_parser("status", help="Show an execution")
    status_parser.add_argument("execution_id", help="Execution id")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind host")
    serve_parser.add_argument("--port", type=int, default=8010, help="Bind port")

    args = parser.parse_args()

    if args.command == "run":
        try:
            variables = _parse_assignments(args.var)
            context = _parse_assignments(args.context)
        except ValueError as exc:
            console.print(f"[bold red]Error:[/] {exc}")
            sys.exit(2)
        try:
            code = asyncio.run(run_template(args.template, args.actor, variables, context))
        except (WorkflowEngineError, ValueError, OSError) as exc:
            console.print(f"[bold red]Error:[/] {exc}")
            code = 1
        except KeyboardInterrupt:
            code = 130
        sys.exit(code)
    elif args.command == "status":
        sys.exit(show_status(args.execution_id))
    elif args.command == "serve":
        serve(args.host, args.port)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
