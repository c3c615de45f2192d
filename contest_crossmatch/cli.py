"""Command-line interface for Contest Crossmatch.

Commands cover initializing the database, creating/looking up a contest,
running the cross match, restarting or deleting a contest's results, and
printing the match-type distribution.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from contest_crossmatch.adjudication import ConsoleDecider
from contest_crossmatch.config import APP_NAME
from contest_crossmatch.context import MatchContext
from contest_crossmatch.crossmatch import CrossMatch, run_crossmatch
from contest_crossmatch.models import MatchType
from contest_crossmatch.storage import (
    add_or_lookup_contest,
    clean_dirty_logs,
    create_db_and_tables,
    get_db_path,
    logs_for_contest,
    match_type_counts,
    remove_contest_qsos,
    remove_whole_contest,
    session_scope,
)

app = typer.Typer(add_completion=False, help=f"{APP_NAME} - contest log cross checking")
console = Console()


# Utilities

def _parse_when(when: Optional[str]) -> Optional[datetime]:
    """Parse a UTC time given as YYYY-MM-DD, YYYY-MM-DD HH:MM[:SS], or ISO.

    Raises typer.BadParameter for invalid datetime formats.
    """
    if not when:
        return None
    s = when.replace("T", " ").replace("Z", "")
    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M", "%Y-%m-%d"):
        try:
            return datetime.strptime(s, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(when)
    except (ValueError, TypeError) as e:
        raise typer.BadParameter(f"Unrecognized datetime format: {when}") from e


def _ensure_db():
    """Ensure the SQLite database and tables exist (idempotent).

    Raises typer.Exit on database creation failure.
    """
    try:
        return create_db_and_tables()
    except Exception as e:
        console.print(f"[red]Error creating database: {e}[/red]")
        raise typer.Exit(1) from e


def _contest_id(engine, name: str, year: int) -> int:
    with session_scope(engine) as session:
        contest_id = add_or_lookup_contest(session, name, year)
    if contest_id is None:
        raise LookupError(f"no contest {name} {year}")
    return contest_id


def _confirm(action: str, name: str, year: int) -> None:
    """Require the operator to type YES; exit with status 2 otherwise."""
    answer = typer.prompt(f"Type YES to {action} {name} {year}", default="", show_default=False)
    if answer.strip().upper() != "YES":
        console.print("Aborted.")
        raise typer.Exit(2)


def _distribution_table(title: str, counts) -> Table:
    table = Table(title=title)
    table.add_column("Match type")
    table.add_column("QSOs", justify="right")
    for mt in MatchType:
        if counts.get(mt):
            table.add_row(mt.value, str(counts[mt]))
    table.add_row("Total", str(sum(counts.values())))
    return table


@app.command()
def init() -> None:
    """Create the database in your user data directory (or CROSSMATCH_DB_PATH)."""
    try:
        create_db_and_tables()
        console.print(f"Database ready at: [bold]{get_db_path()}[/bold]")
    except Exception as e:
        console.print(f"[red]Error initializing database: {e}[/red]")
        raise typer.Exit(1) from e


@app.command()
def contest(
    name: str = typer.Argument(..., help="Contest name, e.g. CQP"),
    year: int = typer.Argument(..., help="Contest year"),
    new: bool = typer.Option(False, "--new", help="Create the contest if it does not exist"),
    start: Optional[str] = typer.Option(None, help="UTC start, 'YYYY-MM-DD HH:MM'"),
    end: Optional[str] = typer.Option(None, help="UTC end, 'YYYY-MM-DD HH:MM'"),
) -> None:
    """Look up a contest, or create it with --new."""
    try:
        engine = _ensure_db()
        with session_scope(engine) as session:
            contest_id = add_or_lookup_contest(
                session, name, year, create=new, start=_parse_when(start), end=_parse_when(end)
            )
        if contest_id is None:
            console.print(f"No contest {name} {year}; use --new to create it.")
            raise typer.Exit(1)
        console.print(f"Contest {name} {year} has id={contest_id}")
    except (typer.Exit, typer.BadParameter):
        raise
    except Exception as e:
        console.print(f"[red]Error looking up contest: {e}[/red]")
        raise typer.Exit(1) from e


@app.command()
def match(
    name: str = typer.Argument(..., help="Contest name"),
    year: int = typer.Argument(..., help="Contest year"),
    probabilistic: bool = typer.Option(False, help="Run the fuzzy-matching fallback"),
    interactive: bool = typer.Option(False, help="Ask about ambiguous fuzzy matches"),
    log_file: Optional[Path] = typer.Option(
        None, dir_okay=False, writable=True, help="Write a DEBUG log of every decision"
    ),
) -> None:
    """Cross match every log of a contest and print the outcome."""
    sink = None
    try:
        if log_file is not None:
            sink = logger.add(log_file, level="DEBUG")
        engine = _ensure_db()
        ctx = MatchContext.for_contest(engine, _contest_id(engine, name, year))
        decider = ConsoleDecider(console) if interactive else None
        report = run_crossmatch(ctx, probabilistic=probabilistic, decider=decider)

        phases = Table(title=f"{name} {year} cross match")
        phases.add_column("Phase")
        phases.add_column("Count", justify="right")
        for phase, count in report.phases.items():
            phases.add_row(phase, str(count))
        for mt, count in report.singletons.items():
            phases.add_row(f"singleton {mt.value}", str(count))
        phases.add_row("final dupes", str(report.final_dupes))
        console.print(phases)
        console.print(_distribution_table("Match types", report.distribution))
        with session_scope(engine) as session:
            clean, dirty = clean_dirty_logs(session, ctx.log_ids)
        console.print(f"{clean} clean logs, {dirty} dirty logs")
    except Exception as e:
        console.print(f"[red]Error matching contest: {e}[/red]")
        raise typer.Exit(1) from e
    finally:
        if sink is not None:
            logger.remove(sink)


@app.command()
def restart(
    name: str = typer.Argument(..., help="Contest name"),
    year: int = typer.Argument(..., help="Contest year"),
) -> None:
    """Rewind a contest to unmatched, clearing clock adjustments and totals."""
    _confirm("restart matching for", name, year)
    try:
        engine = _ensure_db()
        ctx = MatchContext.for_contest(engine, _contest_id(engine, name, year))
        count = CrossMatch(ctx).restart_match()
        console.print(f"Reset {count} QSOs")
    except Exception as e:
        console.print(f"[red]Error restarting contest: {e}[/red]")
        raise typer.Exit(1) from e


@app.command("remove-qsos")
def remove_qsos(
    name: str = typer.Argument(..., help="Contest name"),
    year: int = typer.Argument(..., help="Contest year"),
) -> None:
    """Delete every log and QSO of a contest, keeping the contest itself."""
    _confirm("delete all logs of", name, year)
    try:
        engine = _ensure_db()
        contest_id = _contest_id(engine, name, year)
        with session_scope(engine) as session:
            count = remove_contest_qsos(session, contest_id)
        console.print(f"Removed {count} QSOs")
    except Exception as e:
        console.print(f"[red]Error removing QSOs: {e}[/red]")
        raise typer.Exit(1) from e


@app.command()
def destroy(
    name: str = typer.Argument(..., help="Contest name"),
    year: int = typer.Argument(..., help="Contest year"),
) -> None:
    """Delete a contest with its logs, QSOs and recorded pair decisions."""
    _confirm("destroy", name, year)
    try:
        engine = _ensure_db()
        contest_id = _contest_id(engine, name, year)
        with session_scope(engine) as session:
            count = remove_whole_contest(session, contest_id)
        console.print(f"Destroyed {name} {year} ({count} QSOs)")
    except Exception as e:
        console.print(f"[red]Error destroying contest: {e}[/red]")
        raise typer.Exit(1) from e


@app.command()
def summary(
    name: str = typer.Argument(..., help="Contest name"),
    year: int = typer.Argument(..., help="Contest year"),
    json_out: bool = typer.Option(False, help="Output JSON"),
) -> None:
    """Show how many QSOs of a contest are in each match state."""
    try:
        engine = _ensure_db()
        contest_id = _contest_id(engine, name, year)
        with session_scope(engine) as session:
            log_ids = logs_for_contest(session, contest_id)
            counts = match_type_counts(session, log_ids) if log_ids else {}
            clean, dirty = clean_dirty_logs(session, log_ids)
        if json_out:
            data = {
                "contest": name,
                "year": year,
                "logs": len(log_ids),
                "clean_logs": clean,
                "dirty_logs": dirty,
                "match_types": {mt.value: n for mt, n in counts.items()},
            }
            console.print_json(data=data)
            return
        console.print(_distribution_table(f"{name} {year}: {len(log_ids)} logs", counts))
        console.print(f"{clean} clean logs, {dirty} dirty logs")
    except Exception as e:
        console.print(f"[red]Error summarizing contest: {e}[/red]")
        raise typer.Exit(1) from e


def main() -> None:  # pragma: no cover - exercised via CLI
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
