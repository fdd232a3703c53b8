"""wachat-batch - process exported webhook payload files."""

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from wachat.config import settings
from wachat.ingest import BatchReport, ingest_directory
from wachat.logging_utils import setup_logging
from wachat.storage import SessionLocal, StoreUnavailable, get_stats, init_db, list_messages

app = typer.Typer(
    name="wachat-batch",
    help="Ingest WhatsApp Business API payload files into the message store",
    add_completion=False,
)
console = Console()


def _print_report(report: BatchReport) -> None:
    for result in report.files:
        if result.error:
            console.print(f"[red]✗[/red] {result.filename}: {result.error}")
        elif result.report.failed:
            console.print(
                f"[red]✗[/red] {result.filename}: {result.report.applied} applied, "
                f"{result.report.failed} failed"
            )
        elif result.report.applied:
            console.print(
                f"[green]✓[/green] {result.filename}: {result.report.applied} applied, "
                f"{result.report.skipped} skipped [dim]({result.report.shape})[/dim]"
            )
        else:
            console.print(f"[yellow]•[/yellow] {result.filename}: no items processed")

    console.print(f"\n[bold]Total items processed:[/bold] {report.applied}")


def _print_summary() -> None:
    with SessionLocal() as db:
        stats = get_stats(db)
        recent = list_messages(db, limit=5, newest_first=True)

        table = Table(title="Processing Summary")
        table.add_column("Metric", style="cyan")
        table.add_column("Count", justify="right", style="green")
        table.add_row("Messages", str(stats["total_messages"]))
        table.add_row("Contacts", str(stats["total_contacts"]))
        for direction, count in sorted(stats["messages_by_direction"].items()):
            table.add_row(f"  {direction}", str(count))
        for state, count in sorted(stats["messages_by_state"].items()):
            table.add_row(f"  {state}", str(count))
        console.print(table)

        if recent:
            console.print("\n[bold]Recent Messages:[/bold]")
            for message in recent:
                console.print(
                    f"  {message.display_name}: \"{message.body[:50]}\" "
                    f"[dim][{message.direction}/{message.delivery_state}] {message.created_at:%Y-%m-%d %H:%M}[/dim]"
                )


@app.command()
def process(
    directory: Optional[Path] = typer.Argument(None, help="Directory of JSON payload files (default: PAYLOADS_DIR)"),
    summary: bool = typer.Option(True, "--summary/--no-summary", help="Print store summary afterwards"),
):
    """
    Ingest every *.json file in DIRECTORY, in filename order.

    Examples:
        wachat-batch process "whatsapp sample payloads"
        wachat-batch process --no-summary
    """
    setup_logging(settings.LOG_LEVEL)
    directory = directory or Path(settings.PAYLOADS_DIR)

    try:
        init_db()
    except Exception as e:
        console.print(f"[red]Error:[/red] cannot reach the database: {e}")
        raise typer.Exit(1)

    try:
        report = ingest_directory(directory)
    except FileNotFoundError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if not report.files:
        console.print(f"[red]Error:[/red] no JSON payload files found in {directory}")
        raise typer.Exit(1)

    _print_report(report)

    if summary:
        try:
            _print_summary()
        except StoreUnavailable as e:
            console.print(f"[red]Error:[/red] could not build summary: {e}")

    if report.failed_files:
        raise typer.Exit(2)


@app.command("summary")
def summary_command():
    """Show message/contact totals and the most recent messages."""
    setup_logging(settings.LOG_LEVEL)
    try:
        init_db()
        _print_summary()
    except StoreUnavailable as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
