"""
FinSync CLI — command-line interface.

Usage:
    finsync import-amazon orders.csv --refunds refunds.csv
    finsync import-paypal-text activity.txt
    finsync connect sparkasse --type fints --user 12345678 --bank-code 10050000
    finsync connectors --config finsync.yaml
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from finsync import __version__

app = typer.Typer(
    name="finsync",
    help="FinSync — one transaction stream from banks, cards and wallets",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"[bold]FinSync[/bold] v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        help="Show version",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log connector activity",
    ),
) -> None:
    """FinSync — Connect. Verify. Fetch."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def _parse_day(value: str | None, option: str) -> date | None:
    if value is None:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        console.print(f"[red]Error: {option} must be YYYY-MM-DD, got {value!r}[/red]")
        raise typer.Exit(code=2)


def _date_range(start: str | None, end: str | None):
    from finsync.models.transaction import DateRange

    start_day = _parse_day(start, "--from")
    end_day = _parse_day(end, "--to")
    if start_day is None and end_day is None:
        return None
    if start_day is None:
        start_day = DateRange.last_days(30, today=end_day).start
    return DateRange(start=start_day, end=end_day or date.today())


def _load_config(config: str):
    from finsync.config import FinSyncConfig

    return FinSyncConfig.load(config if Path(config).exists() else None)


@app.command("import-amazon")
def import_amazon(
    orders: Path = typer.Argument(..., exists=True, dir_okay=False, help="Order history CSV"),
    refunds: Path = typer.Option(None, "--refunds", exists=True, dir_okay=False, help="Refund details CSV"),
    start: str = typer.Option(None, "--from", help="First day to keep (YYYY-MM-DD)"),
    end: str = typer.Option(None, "--to", help="Last day to keep (YYYY-MM-DD)"),
    config: str = typer.Option("finsync.yaml", "--config", "-c", help="Path to config file"),
) -> None:
    """Import an Amazon order history export."""
    from finsync.dedup import dedupe
    from finsync.parsers.amazon import AmazonCsvParser

    cfg = _load_config(config)
    date_range = _date_range(start, end)
    parser = AmazonCsvParser(
        default_currency=cfg.imports.default_currency,
        max_reported_errors=cfg.imports.max_reported_errors,
    )

    result = parser.parse_orders(orders, date_range)
    if refunds is not None:
        refund_result = parser.parse_refunds(refunds, date_range)
        result.transactions.extend(refund_result.transactions)
        result.stats.total_rows += refund_result.stats.total_rows
        result.stats.imported += refund_result.stats.imported
        result.stats.skipped += refund_result.stats.skipped
        result.stats.errors += refund_result.stats.errors
        result.errors.extend(refund_result.errors)

    transactions, duplicates = dedupe(result.transactions)
    result.stats.duplicates += duplicates
    _display_transactions(transactions, title=f"Amazon ({result.format or 'unknown format'})")
    _display_import_summary(result.stats, result.errors)
    if not result.success:
        raise typer.Exit(code=1)


@app.command("import-paypal-text")
def import_paypal_text(
    source: Path = typer.Argument(..., exists=True, dir_okay=False, help="Text copied from PayPal activity"),
    start: str = typer.Option(None, "--from", help="First day to keep (YYYY-MM-DD)"),
    end: str = typer.Option(None, "--to", help="Last day to keep (YYYY-MM-DD)"),
) -> None:
    """Import PayPal activity pasted from the app or website."""
    from finsync.parsers.paypal_text import PayPalTextParser

    result = PayPalTextParser().parse(source.read_text(encoding="utf-8"), _date_range(start, end))
    _display_transactions(result.transactions, title="PayPal activity")
    _display_import_summary(result.stats, result.errors)
    if not result.success:
        raise typer.Exit(code=1)


@app.command()
def connect(
    connector_id: str = typer.Argument(..., help="Connector id (from the config, or new with --type)"),
    connector_type: str = typer.Option(None, "--type", "-t", help="fints, n26, paypal, gebuhrenfrei, amazon"),
    user: str = typer.Option(None, "--user", "-u", help="Login name, e-mail or account id"),
    bank_code: str = typer.Option(None, "--bank-code", help="Bank code (BLZ) for FinTS"),
    days: int = typer.Option(30, "--days", "-d", help="Fetch this many days back"),
    config: str = typer.Option("finsync.yaml", "--config", "-c", help="Path to config file"),
) -> None:
    """Log in to a source, answer any challenge and fetch recent transactions."""
    from finsync.connectors.registry import ConnectorRegistry
    from finsync.errors import UnknownConnectorError

    registry = ConnectorRegistry(_load_config(config))
    registry.auto_discover()
    if connector_id not in registry:
        if connector_type is None:
            console.print(f"[red]Error: {connector_id} is not configured; pass --type[/red]")
            raise typer.Exit(code=2)
        try:
            registry.create(connector_id, connector_type)
        except UnknownConnectorError as e:
            console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(code=2)

    known = registry.credentials_for(connector_id)
    user = user or (known.user_id if known else None) or typer.prompt("User")
    bank_code = bank_code or (known.bank_code if known else None)
    pin = typer.prompt("PIN / password", hide_input=True)

    console.print(Panel.fit(f"[bold blue]FinSync[/bold blue] — {connector_id}", subtitle=f"v{__version__}"))
    ok = asyncio.run(_connect_and_fetch(registry, connector_id, user, pin, bank_code, days))
    if not ok:
        raise typer.Exit(code=1)


async def _connect_and_fetch(registry, connector_id: str, user: str, pin: str, bank_code: str | None, days: int) -> bool:
    from finsync.models.connector import ConnectorCredentials
    from finsync.models.transaction import DateRange

    try:
        credentials = ConnectorCredentials(user_id=user, pin=pin, bank_code=bank_code)
        with console.status("[bold green]Connecting...[/bold green]"):
            result = await registry.connect(connector_id, credentials)
        result = await _answer_challenges(registry, connector_id, result)
        if not result.success:
            console.print(f"[red]Connection failed:[/red] {result.error}")
            return False
        console.print(f"[green]✓[/green] Connected, {len(result.accounts)} account(s)")

        with console.status("[bold green]Fetching transactions...[/bold green]"):
            fetched = await registry.fetch_transactions(connector_id, DateRange.last_days(days))
        fetched = await _answer_challenges(registry, connector_id, fetched)
        if not fetched.success:
            console.print(f"[red]Fetch failed:[/red] {'; '.join(fetched.errors)}")
            return False
        _display_transactions(fetched.transactions, title=f"{connector_id}: last {days} days")
        _display_import_summary(fetched.stats, fetched.errors)
        return True
    finally:
        await registry.shutdown()


async def _answer_challenges(registry, connector_id: str, result):
    while result.requires_mfa and result.mfa_challenge is not None:
        challenge = result.mfa_challenge
        console.print(f"[yellow]Verification required ({challenge.type.value}):[/yellow] {challenge.message}")
        if challenge.decoupled:
            with console.status("[bold green]Waiting for approval in your app...[/bold green]"):
                result = await registry.poll_decoupled(connector_id)
        else:
            if challenge.image:
                console.print("[dim]The challenge includes an image; open it in your banking app.[/dim]")
            code = typer.prompt("Code")
            result = await registry.submit_mfa(connector_id, code, challenge.reference)
    return result


@app.command()
def connectors(
    config: str = typer.Option("finsync.yaml", "--config", "-c", help="Path to config file"),
) -> None:
    """List available connector types and configured instances."""
    from finsync.connectors.registry import ConnectorRegistry

    cfg = _load_config(config)

    table = Table(title="Available Connectors")
    table.add_column("Type", style="bold cyan")
    table.add_column("Description")
    for ctype, factory in ConnectorRegistry.available().items():
        table.add_row(ctype.value, getattr(factory, "description", ""))
    console.print(table)

    if not cfg.connectors:
        console.print("[dim]No connectors configured.[/dim]")
        return
    configured = Table(title="Configured Connectors")
    configured.add_column("Id", style="bold")
    configured.add_column("Type")
    configured.add_column("User")
    configured.add_column("Enabled")
    for conn in cfg.connectors:
        configured.add_row(
            conn.id,
            conn.type.value,
            conn.user_id or "—",
            "[green]yes[/green]" if conn.enabled else "[dim]no[/dim]",
        )
    console.print(configured)


def _display_transactions(transactions, title: str) -> None:
    console.print()
    table = Table(title=title)
    table.add_column("Date", style="dim")
    table.add_column("Description")
    table.add_column("Amount", justify="right")
    table.add_column("Currency")
    for tx in sorted(transactions, key=lambda t: t.date):
        style = "red" if tx.is_debit else "green"
        table.add_row(tx.date.isoformat(), tx.description, f"[{style}]{tx.amount:,.2f}[/{style}]", tx.currency)
    console.print(table)


def _display_import_summary(stats, errors: list[str]) -> None:
    console.print(
        f"[bold]{stats.imported}[/bold] imported, {stats.skipped} skipped, "
        f"{stats.duplicates} duplicate(s), {stats.errors} error(s)"
    )
    for error in errors[:10]:
        console.print(f"  [red]•[/red] {error}")
    if len(errors) > 10:
        console.print(f"  [dim]... and {len(errors) - 10} more[/dim]")


if __name__ == "__main__":
    app()
