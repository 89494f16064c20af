"""Command-line interface for the graph rule classifier.

Provides commands for configuration validation, rule management,
classification of thread files, and the API server.

Usage:
    python -m graphclassifier validate-config
    python -m graphclassifier rules add rules/escalation.yaml
    python -m graphclassifier rules list
    python -m graphclassifier classify threads.json --concurrency 4
    python -m graphclassifier serve
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
import yaml
from rich.console import Console
from rich.table import Table

from graphclassifier.config import validate_config_file
from graphclassifier.core.logging import configure_logging

if TYPE_CHECKING:
    from graphclassifier.config_schema import AppConfig
    from graphclassifier.db.store import RuleStore

console = Console()


async def _open_store() -> tuple[AppConfig, RuleStore]:
    """Load config and open the Rule Store.

    Prints an actionable error and calls sys.exit(1) on failure.
    """
    from graphclassifier.config import get_config
    from graphclassifier.core.errors import ConfigLoadError, ConfigValidationError, DatabaseError
    from graphclassifier.db.store import RuleStore

    try:
        config = get_config(missing_ok=True)
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(f"[red]Config error:[/red] {e}")
        sys.exit(1)

    store = RuleStore(config.rule_store.db_path)
    try:
        await store.initialize()
    except DatabaseError as e:
        console.print(f"[red]Database error:[/red] {e}")
        sys.exit(1)
    return config, store


def _read_document(path: Path) -> Any:
    """Parse a YAML or JSON file (JSON is valid YAML)."""
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise click.ClickException(f"Could not parse {path}: {e}") from e


def _run(coro) -> None:
    """Run an async command body with the shared error policy."""
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """Graph Rule Classifier - graph-based rule classification for email threads."""
    log_level = "DEBUG" if debug else "WARNING"
    # Use human-readable output for CLI, JSON for server
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    console.print(f"Validating config: [cyan]{config_path or 'config/config.yaml'}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@cli.group("rules")
def rules() -> None:
    """Manage classification rules."""


@rules.command("list")
@click.option("--active-only", is_flag=True, help="Hide inactive rules")
def list_rules(active_only: bool) -> None:
    """List stored rules."""
    _run(_list_rules(active_only))


async def _list_rules(active_only: bool) -> None:
    _, store = await _open_store()
    stored = await store.list_rules(active_only=active_only)
    if not stored:
        console.print("[dim]No rules stored.[/dim]")
        return

    table = Table(box=None, padding=(0, 2))
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Active")
    table.add_column("Labels")
    table.add_column("Version", justify="right")
    for rule in stored:
        table.add_row(
            rule.id,
            rule.name,
            "yes" if rule.is_active else "no",
            ", ".join(label.name for label in rule.labels),
            str(rule.version),
        )
    console.print(table)


@rules.command("add")
@click.argument("rule_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def add_rules(rule_file: Path) -> None:
    """Add the rule (or list of rules) defined in a YAML/JSON file.

    Rules are validated one by one; an invalid rule is reported and skipped.
    """
    _run(_add_rules(rule_file))


async def _add_rules(rule_file: Path) -> None:
    from graphclassifier.core.errors import InvalidRuleError

    document = _read_document(rule_file)
    drafts = document if isinstance(document, list) else [document]
    _, store = await _open_store()

    failed = 0
    for i, draft in enumerate(drafts):
        if not isinstance(draft, dict):
            console.print(f"[red]✗[/red] Entry {i}: expected a mapping")
            failed += 1
            continue
        data = dict(draft)
        rule_id = data.pop("id", None)
        try:
            rule = await store.create_rule(data, rule_id=str(rule_id) if rule_id else None)
        except InvalidRuleError as e:
            console.print(f"[red]✗[/red] {data.get('name', f'entry {i}')}: {e}")
            failed += 1
            continue
        console.print(f"[green]✓[/green] Created [cyan]{rule.name}[/cyan] ({rule.id})")

    if failed:
        sys.exit(1)


@rules.command("delete")
@click.argument("rule_id")
def delete_rule(rule_id: str) -> None:
    """Soft-delete a rule by id."""
    _run(_delete_rule(rule_id))


async def _delete_rule(rule_id: str) -> None:
    from graphclassifier.core.errors import RuleNotFoundError

    _, store = await _open_store()
    try:
        await store.delete_rule(rule_id)
    except RuleNotFoundError as e:
        console.print(f"[red]✗[/red] {e}")
        sys.exit(1)
    console.print(f"[green]✓[/green] Deleted rule {rule_id}")


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


@cli.command("classify")
@click.argument("thread_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--concurrency", type=click.IntRange(1, 64), default=None, help="Worker count")
@click.option("--json", "as_json", is_flag=True, help="Print results as JSON")
def classify(thread_file: Path, concurrency: int | None, as_json: bool) -> None:
    """Classify the thread (or list of threads) in a YAML/JSON file.

    Labels are only reported, never applied to any mailbox.
    """
    _run(_classify(thread_file, concurrency, as_json))


async def _classify(thread_file: Path, concurrency: int | None, as_json: bool) -> None:
    from graphclassifier.classifier.models import ClassificationResult
    from graphclassifier.core.errors import EngineUnavailableError
    from graphclassifier.engine.orchestrator import ClassificationEngine

    document = _read_document(thread_file)
    threads = document if isinstance(document, list) else [document]
    config, store = await _open_store()
    engine = ClassificationEngine(store, config=config)

    try:
        batch = await engine.classify_bulk(threads, concurrency=concurrency)
    except EngineUnavailableError as e:
        console.print(f"[red]Engine unavailable:[/red] {e}")
        sys.exit(1)

    if as_json:
        payload = [
            item.model_dump(mode="json")
            if isinstance(item, ClassificationResult)
            else {"error": item.to_dict()}
            for item in batch.items
        ]
        click.echo(json.dumps(payload, indent=2))
    else:
        table = Table(box=None, padding=(0, 2))
        table.add_column("Thread", style="cyan")
        table.add_column("Labels")
        table.add_column("Confidence", justify="right")
        table.add_column("Reasoning")
        for item in batch.items:
            if isinstance(item, ClassificationResult):
                table.add_row(
                    item.thread_id,
                    ", ".join(label.name for label in item.labels) or "-",
                    f"{item.confidence:.0%}",
                    item.reasoning,
                )
            else:
                table.add_row(
                    item.thread_id or "?",
                    f"[red]{item.kind.value}[/red]",
                    "-",
                    str(item),
                )
        console.print(table)

    if batch.errors:
        sys.exit(1)


@cli.command("serve")
@click.option(
    "--host",
    default="127.0.0.1",
    help="Host to bind to (default: localhost only for security)",
)
@click.option(
    "--port",
    default=8000,
    type=int,
    help="Port to bind to",
)
def serve(host: str, port: int) -> None:
    """Start the classification API server."""
    import uvicorn

    from graphclassifier.web.app import create_app

    if host == "0.0.0.0":  # noqa: S104
        console.print(
            "[yellow]Warning:[/yellow] Binding to 0.0.0.0 exposes the server to the network.\n"
            "This app has no authentication. Use 127.0.0.1 for local-only access."
        )

    app = create_app()
    console.print(f"Starting server on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(app, host=host, port=port, log_level="info")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
