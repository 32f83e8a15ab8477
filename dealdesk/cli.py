from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from sqlalchemy import select

from dealdesk import services
from dealdesk.alerts import collect_alerts
from dealdesk.backtest import format_currency, format_roi
from dealdesk.config import get_settings
from dealdesk.db import current_db_path, init_db, session_scope
from dealdesk.importer import export_deals_csv, import_deals, import_linkedin
from dealdesk.models import Deal, PortfolioPosition
from dealdesk.velocity import analyze_velocity

app = typer.Typer(help="DealDesk: venture-capital CRM and AI deal evaluation")
console = Console()


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=True)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    project_root: str | None = typer.Option(
        None, "--project-root", help="Directory holding config/ and data/.",
    ),
    db_path: str | None = typer.Option(None, "--db", help="SQLite database file (overrides DEALDESK_DB)."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    if project_root:
        os.environ["DEALDESK_HOME"] = str(Path(project_root).expanduser().resolve())
    if db_path:
        os.environ["DEALDESK_DB"] = str(Path(db_path).expanduser().resolve())
    if project_root or db_path:
        get_settings.cache_clear()
    ctx.obj = {"json_output": json_output, "verbose": verbose}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _open_db() -> None:
    init_db()


def _format_scalar(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.2f}"
    if value is None:
        return "-"
    return str(value)


def _render_table(title: str, rows: list[tuple[str, str]], *, border_style: str = "cyan") -> None:
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    for metric, value in rows:
        table.add_row(metric, value)
    console.print(Panel(table, title=title, border_style=border_style))


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))
        return

    scalar_rows = [(k, _format_scalar(v)) for k, v in payload.items()
                   if isinstance(v, (str, int, float, bool)) or v is None]
    if scalar_rows:
        _render_table(title, scalar_rows)
    for key, value in payload.items():
        if isinstance(value, dict):
            _render_table(f"{title} · {key}",
                          [(k, _format_scalar(v)) for k, v in value.items()], border_style="magenta")
        elif isinstance(value, list):
            _render_table(f"{title} · {key}",
                          [("items", str(len(value))),
                           ("preview", json.dumps(value[:3], ensure_ascii=False, default=str))],
                          border_style="yellow")


def _print_rows(title: str, rows: list[dict[str, Any]], columns: list[str], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(rows, indent=2, ensure_ascii=False, default=str))
        return
    table = Table(title=title, show_header=True, header_style="bold cyan", box=ROUNDED)
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*[_format_scalar(row.get(col)) for col in columns])
    console.print(table)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db_command(ctx: typer.Context) -> None:
    """Create the database and apply column migrations."""
    get_settings().ensure_directories()
    _open_db()
    _print("init-db", {"status": "ok", "database": str(current_db_path())}, ctx)


@app.command("serve")
def serve_command(
    host: str | None = typer.Option(None, help="Bind host."),
    port: int | None = typer.Option(None, help="Bind port."),
    reload: bool = typer.Option(False, help="Auto-reload on code changes."),
) -> None:
    """Run the HTTP API."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("dealdesk.app:app", host=host or settings.api_host, port=port or settings.api_port,
                reload=reload)


@app.command("import-deals")
def import_deals_command(
    ctx: typer.Context,
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="CSV or XLSX file."),
) -> None:
    """Import deals; column headers are mapped automatically."""
    _open_db()
    with session_scope() as session:
        try:
            result = import_deals(path, session)
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc
    _print("import-deals", result.model_dump(), ctx)


@app.command("import-linkedin")
def import_linkedin_command(
    ctx: typer.Context,
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="LinkedIn Connections.csv"),
    categorize: bool = typer.Option(False, help="Assign tiers via the LLM in batches of 20."),
) -> None:
    """Import LinkedIn connections as contacts."""
    _open_db()
    with session_scope() as session:
        result = asyncio.run(import_linkedin(path, session, categorize=categorize))
    _print("import-linkedin", result.model_dump(), ctx)


@app.command("export-deals")
def export_deals_command(
    ctx: typer.Context,
    out: Path | None = typer.Option(None, help="Output file (default data/exports/deals.csv)."),
) -> None:
    """Export all deals as CSV."""
    _open_db()
    settings = get_settings()
    target = out or settings.exports_dir / "deals.csv"
    target.parent.mkdir(parents=True, exist_ok=True)
    with session_scope() as session:
        text = export_deals_csv(session)
    target.write_text(text, encoding="utf-8")
    _print("export-deals", {"path": str(target), "rows": max(text.count("\n") - 1, 0)}, ctx)


@app.command("alerts")
def alerts_command(ctx: typer.Context) -> None:
    """Show what needs attention, red first."""
    _open_db()
    with session_scope() as session:
        rows = [a.to_dict() for a in collect_alerts(session)]
    _print_rows("Alerts", rows, ["severity", "type", "title", "description"], ctx)


@app.command("stats")
def stats_command(ctx: typer.Context) -> None:
    _open_db()
    with session_scope() as session:
        payload = services.compute_stats(session)
    _print("stats", payload, ctx)


@app.command("dashboard")
def dashboard_command(ctx: typer.Context) -> None:
    _open_db()
    with session_scope() as session:
        payload = services.compute_dashboard(session)
    _print("dashboard", {**{k: v for k, v in payload.items() if k != "deal_flow"},
                         **payload["deal_flow"]}, ctx)


@app.command("recompute-warmth")
def recompute_warmth_command(ctx: typer.Context) -> None:
    """Recompute every contact's warmth from its touchpoints."""
    _open_db()
    with session_scope() as session:
        updated = services.recompute_all_warmth(session)
        session.commit()
    _print("recompute-warmth", {"updated": updated}, ctx)


@app.command("access-path")
def access_path_command(
    ctx: typer.Context,
    target_name: str = typer.Option("", "--name", help="Target founder name."),
    target_company: str = typer.Option("", "--company", help="Target company."),
) -> None:
    """Suggest a warm introduction route to a founder or company."""
    _open_db()
    with session_scope() as session:
        try:
            result = services.access_path_for(session, target_name, target_company)
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc
    if _wants_json(ctx):
        typer.echo(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
        return
    if not result.found:
        console.print(f"[yellow]No access path found to {target_name or target_company}[/yellow]")
        return
    _print_rows(f"Access path ({result.kind}, {result.degrees} degrees)",
                [vars(n) for n in result.path], ["name", "organization", "relationship", "warmth"], ctx)


@app.command("velocity")
def velocity_command(ctx: typer.Context) -> None:
    """Days in stage for active deals, slowest first."""
    _open_db()
    with session_scope() as session:
        report = analyze_velocity(session.execute(select(Deal)).scalars().all())
    if _wants_json(ctx):
        typer.echo(json.dumps(report.to_dict(), indent=2))
        return
    _print_rows("Deal velocity", [vars(v) for v in report.deal_velocities],
                ["company_name", "stage", "days_in_current_stage", "avg_for_stage", "status"], ctx)


@app.command("past-passes")
def past_passes_command(ctx: typer.Context, company_name: str = typer.Argument(...)) -> None:
    """Check whether a company was passed on before."""
    _open_db()
    with session_scope() as session:
        rows = services.find_past_passes(session, company_name)
    _print_rows("Past passes", rows, ["id", "company_name", "stage", "pass_date", "pass_reason"], ctx)


@app.command("scenarios")
def scenarios_command(
    ctx: typer.Context,
    position_id: int = typer.Argument(...),
    investment: float | None = typer.Option(None, help="Amount invested (default 50,000)."),
) -> None:
    """Exit scenarios for a portfolio position."""
    _open_db()
    with session_scope() as session:
        pos = session.get(PortfolioPosition, position_id)
        if pos is None:
            raise typer.BadParameter(f"Position {position_id} not found")
        payload = services.position_scenarios(pos, investment)
    rows = [
        {"label": s["label"], "multiplier": f"{s['multiplier']:g}x",
         "exit_valuation": format_currency(s["exit_valuation"]),
         "your_share": format_currency(s["your_share"]), "roi": format_roi(s["roi"])}
        for s in payload["scenarios"]
    ]
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2))
        return
    _print_rows(f"Exit scenarios: {payload['company_name']}", rows,
                ["label", "multiplier", "exit_valuation", "your_share", "roi"], ctx)


@app.command("score")
def score_command(ctx: typer.Context, deal_id: int = typer.Argument(...)) -> None:
    """Score a deal with the LLM evaluator."""
    _open_db()
    with session_scope() as session:
        deal = session.get(Deal, deal_id)
        if deal is None:
            raise typer.BadParameter(f"Deal {deal_id} not found")
        result = asyncio.run(services.run_score(session, deal))
        session.commit()
    _print(f"score · deal {deal_id}", result, ctx)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
