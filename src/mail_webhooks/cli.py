"""Command-line interface for mail-webhooks.

Developer tooling around webhook payloads: signing and verifying deliveries,
rendering templates, validating filter and template configurations, and
sending a test delivery to an endpoint.

Usage:
    mail-webhooks sign --secret whsec_... --timestamp 1700000000 body.json
    mail-webhooks verify --secret whsec_... --timestamp 1700000000 --signature sha256=... body.json
    mail-webhooks render event.json --template slack
    mail-webhooks validate-filter filter.json
    mail-webhooks validate-template template.json
    mail-webhooks test https://example.com/hook --secret whsec_... --template simple
    mail-webhooks config --config /etc/mail-webhooks/config.ini

Example:
    $ mail-webhooks render event.json --custom template.json
    {"s":"Hi"}
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from dataclasses import asdict
from pathlib import Path
from typing import Any, Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from .config_loader import load_settings
from .delivery import WebhookDelivery
from .events import ALL_WEBHOOK_EVENTS
from .filter import validate_filter
from .ids import generate_webhook_id, generate_webhook_secret
from .logger import configure_logging
from .models import CustomTemplate, ValidationResult, Webhook, WebhookEvent
from .signing import sign, verify_signature
from .template import WebhookTemplates

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _load_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise click.ClickException(f"{path} is not valid JSON: {exc}") from exc


def _report_validation(result: ValidationResult, label: str) -> None:
    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")
    if not result.valid:
        for error in result.errors:
            print_error(error)
        raise SystemExit(1)
    print_success(f"{label} is valid")


@click.group()
@click.version_option(package_name="mail-webhooks")
def main() -> None:
    """mail-webhooks - Outbound webhook tooling for the mail sandbox."""
    configure_logging(os.getenv("MWH_LOG_LEVEL", "WARNING"))


@main.command("sign")
@click.argument("body_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--secret", required=True, help="Webhook signing secret.")
@click.option("--timestamp", type=int, default=None, help="Unix timestamp (default: now).")
def sign_cmd(body_file: Path, secret: str, timestamp: Optional[int]) -> None:
    """Print the X-Timestamp and X-Signature headers for a raw body."""
    ts = timestamp if timestamp is not None else int(time.time())
    body = body_file.read_text(encoding="utf-8")
    click.echo(f"X-Timestamp: {ts}")
    click.echo(f"X-Signature: {sign(ts, body, secret)}")


@main.command("verify")
@click.argument("body_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--secret", required=True, help="Webhook signing secret.")
@click.option("--timestamp", required=True, help="Value of the X-Timestamp header.")
@click.option("--signature", required=True, help="Value of the X-Signature header.")
def verify_cmd(body_file: Path, secret: str, timestamp: str, signature: str) -> None:
    """Check a received signature against a raw body."""
    body = body_file.read_text(encoding="utf-8")
    if not verify_signature(secret, timestamp, body, signature):
        print_error("Signature does not match")
        raise SystemExit(1)
    print_success("Signature is valid")


@main.command("render")
@click.argument("event_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--template", "-t", "template_name", default="default", help="Built-in template name.")
@click.option(
    "--custom",
    "custom_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON file with a custom template ({\"type\": \"custom\", \"body\": ...}).",
)
def render_cmd(event_file: Path, template_name: str, custom_file: Optional[Path]) -> None:
    """Render an event envelope through a template."""
    try:
        event = WebhookEvent.model_validate(_load_json(event_file))
        template = CustomTemplate.model_validate(_load_json(custom_file)) if custom_file else template_name
    except ValidationError as exc:
        print_error(str(exc))
        raise SystemExit(1)
    try:
        payload = WebhookTemplates().transform(event, template)
    except ValueError as exc:
        print_error(str(exc))
        raise SystemExit(1)
    click.echo(payload)


@main.command("validate-filter")
@click.argument("filter_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate_filter_cmd(filter_file: Path) -> None:
    """Validate a filter configuration file."""
    data = _load_json(filter_file)
    if not isinstance(data, dict):
        print_error("Filter configuration must be a JSON object")
        raise SystemExit(1)
    try:
        result = validate_filter(data)
    except ValidationError as exc:
        print_error(str(exc))
        raise SystemExit(1)
    _report_validation(result, "Filter")


@main.command("validate-template")
@click.argument("template_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate_template_cmd(template_file: Path) -> None:
    """Validate a template configuration (a JSON string name or custom object)."""
    _report_validation(WebhookTemplates().validate_template(_load_json(template_file)), "Template")


@main.command("templates")
def templates_cmd() -> None:
    """List built-in templates."""
    table = Table(title="Built-in Templates")
    table.add_column("Name", style="cyan")
    table.add_column("Label")
    for option in WebhookTemplates.built_in_options():
        table.add_row(option["value"], option["label"])
    console.print(table)


@main.command("test")
@click.argument("url")
@click.option("--secret", default=None, help="Signing secret (default: a fresh one).")
@click.option(
    "--event",
    "event_type",
    type=click.Choice(ALL_WEBHOOK_EVENTS),
    default="email.received",
    show_default=True,
    help="Event type of the sample event.",
)
@click.option("--template", "-t", "template_name", default=None, help="Built-in template name.")
@click.option("--timeout", type=float, default=10.0, show_default=True, help="Request timeout in seconds.")
def test_cmd(url: str, secret: Optional[str], event_type: str, template_name: Optional[str], timeout: float) -> None:
    """Send a signed sample event to URL and show the outcome."""
    webhook = Webhook(
        id=generate_webhook_id(),
        url=url,
        events=[event_type],
        secret=secret or generate_webhook_secret(),
        template=template_name,
    )
    engine = WebhookDelivery(storage=None, delivery_timeout=timeout)
    result = run_async(engine.test_webhook(webhook))

    table = Table(title=f"Test delivery to {url}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Success", "[green]yes[/green]" if result.success else "[red]no[/red]")
    table.add_row("Status", str(result.status_code) if result.status_code is not None else "-")
    table.add_row("Response time", f"{result.response_time_ms}ms")
    if result.error:
        table.add_row("Error", result.error)
    if result.response_body:
        table.add_row("Response", result.response_body)
    console.print(table)
    if not result.success:
        raise SystemExit(1)


@main.command("config")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="INI file (default: $MWH_CONFIG or config.ini).",
)
def config_cmd(config_path: Optional[Path]) -> None:
    """Show the effective configuration."""
    try:
        settings, email_auth = load_settings(config_path)
    except ValueError as exc:
        print_error(str(exc))
        raise SystemExit(1)
    print_json({"webhook": asdict(settings), "email_auth": asdict(email_auth)})


if __name__ == "__main__":
    main()
