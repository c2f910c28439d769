"""
CLI interface for the meal log.

Usage:
    openmeal add ~/Pictures/lunch.jpg
    openmeal add --comment "two eggs and toast"
    openmeal list
    openmeal today
"""

import asyncio
import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import MealTracker
from .errors import NotFoundError, OpenMealError
from .logging_config import configure_quiet_mode, enable_debug_mode
from .types import NUTRIENT_FIELDS, MealRecord, MealState, TimeRange
from .views import format_day_header, group_by_day, series_average


# Set OPENMEAL_VERBOSE=1 to enable debug mode via environment
if os.environ.get("OPENMEAL_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"openmeal {version('openmeal')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    _store_override = value


def _get_store_override() -> Optional[Path]:
    return _store_override


app = typer.Typer(
    name="openmeal",
    help="Meal log with AI nutrition analysis.",
    no_args_is_help=False,
    invoke_without_command=True,
    rich_markup_mode=None,
)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="OPENMEAL_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Meal log with AI nutrition analysis."""
    # If no subcommand provided, show today's totals
    if ctx.invoked_subcommand is None:
        today()


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _get_tracker() -> MealTracker:
    """Open the store, handling errors gracefully."""
    import atexit

    try:
        mt = MealTracker(_get_store_override())
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    # Ensure close() runs before interpreter shutdown to release the ops log
    atexit.register(mt.close)
    return mt


def _run(mt: MealTracker, coro):
    """Run a tracker coroutine, closing network clients afterwards."""
    async def _main():
        try:
            return await coro
        finally:
            await mt.aclose()
    return asyncio.run(_main())


def _fail(message: str) -> None:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(1)


def _status(record: MealRecord) -> str:
    if record.state is MealState.ERROR:
        return f"[error: {record.error}]" if record.error else "[error]"
    if record.is_loading:
        return f"[{record.state.value}]"
    return ""


def _local_time(record: MealRecord) -> str:
    try:
        return record.timestamp_dt.astimezone().strftime("%H:%M")
    except ValueError:
        return "--:--"


def _format_meal_line(record: MealRecord) -> str:
    """One line per meal: id, time, title, calories, status."""
    if record.analysis is not None:
        title = record.analysis.title or "Meal"
        kcal = f"{record.analysis.totals.total_calories:.0f} kcal"
    else:
        title = record.comment.strip().splitlines()[0] if record.has_comment else "(photo)"
        kcal = ""
    parts = [record.id, _local_time(record), title]
    if kcal:
        parts.append(kcal)
    status = _status(record)
    if status:
        parts.append(status)
    return "  ".join(parts)


def _format_meal_detail(record: MealRecord) -> str:
    lines = [
        f"id: {record.id}",
        f"timestamp: {record.timestamp}",
        f"state: {record.state.value}" + (f" ({record.error})" if record.error else ""),
    ]
    if record.image_uri:
        lines.append(f"image: {record.image_uri}")
    if record.after_image_uri:
        lines.append(f"after_image: {record.after_image_uri}")
    if record.has_comment:
        lines.append(f"comment: {record.comment}")
    analysis = record.analysis
    if analysis is not None:
        t = analysis.totals
        lines.append(f"title: {analysis.title or 'Meal'}")
        lines.append(
            f"totals: {t.total_calories:.0f} kcal, protein {t.total_protein_g:.0f} g, "
            f"carbs {t.total_total_carbohydrate_g:.0f} g, fat {t.total_total_fat_g:.0f} g"
        )
        for item in analysis.meal_items:
            serving = f" ({item.estimated_serving_size})" if item.estimated_serving_size else ""
            lines.append(f"  - {item.item_name}{serving}: {item.calories:.0f} kcal")
        for benefit in analysis.insights.health_benefits:
            lines.append(f"  + {benefit}")
        for concern in analysis.insights.health_concerns:
            lines.append(f"  ! {concern}")
    return "\n".join(lines)


def _echo_record(record: Optional[MealRecord]) -> None:
    if record is None:
        return
    if _get_json_output():
        typer.echo(json.dumps(record.to_dict(), indent=2))
    else:
        typer.echo(_format_meal_detail(record))


def _path_arg(value: Optional[str]) -> Optional[str]:
    return str(Path(value).expanduser().resolve()) if value else None


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def add(
    image: Annotated[Optional[str], typer.Argument(help="Photo of the meal (omit for text-only)")] = None,
    after: Annotated[Optional[str], typer.Option(
        "--after", "-a", help="Photo of what was left after eating",
    )] = None,
    comment: Annotated[str, typer.Option(
        "--comment", "-c", help="Description of the meal or a note for the analysis",
    )] = "",
    at: Annotated[Optional[str], typer.Option(
        "--at", help="When the meal was eaten (ISO-8601, default: now)",
    )] = None,
    no_analyze: Annotated[bool, typer.Option(
        "--no-analyze", help="Save as pending without analyzing",
    )] = False,
):
    """
    Log a meal and analyze it.

    \b
    Examples:
        openmeal add lunch.jpg
        openmeal add before.jpg --after after.jpg
        openmeal add -c "bowl of oatmeal with blueberries"
    """
    if after and not image:
        _fail("--after needs a before photo")
    mt = _get_tracker()
    try:
        record = _run(mt, mt.add_meal(
            _path_arg(image),
            after_image=_path_arg(after),
            comment=comment,
            timestamp=at,
            analyze=not no_analyze,
        ))
    except OpenMealError as e:
        _fail(str(e))
    _echo_record(record)
    if record.has_error:
        raise typer.Exit(1)


@app.command("list")
def list_meals(
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum meals to show")] = 50,
):
    """List logged meals, newest first, grouped by day."""
    mt = _get_tracker()
    meals = mt.store.list_chronological()[:limit]
    if _get_json_output():
        typer.echo(json.dumps([m.to_dict() for m in meals], indent=2))
        return
    if not meals:
        typer.echo("No meals logged yet.")
        return
    today_date = datetime.now(timezone.utc).astimezone().date()
    first = True
    for day, day_meals in group_by_day(meals).items():
        if not first:
            typer.echo()
        first = False
        typer.echo(format_day_header(day, today_date))
        for meal in day_meals:
            typer.echo(f"  {_format_meal_line(meal)}")


@app.command()
def get(
    id: Annotated[str, typer.Argument(help="Meal ID")],
):
    """Show one meal with its full analysis."""
    mt = _get_tracker()
    record = mt.store.get(id)
    if record is None:
        _fail(f"Not found: {id}")
    _echo_record(record)


@app.command()
def retry(
    id: Annotated[str, typer.Argument(help="Meal ID")],
):
    """Analyze a meal again."""
    mt = _get_tracker()
    try:
        record = _run(mt, mt.pipeline.retry(id))
    except NotFoundError:
        _fail(f"Not found: {id}")
    _echo_record(record)
    if record is None or record.has_error:
        raise typer.Exit(1)


@app.command("pending")
def pending_cmd():
    """Analyze every pending or failed meal."""
    mt = _get_tracker()
    result = _run(mt, mt.pipeline.resume_pending())
    if _get_json_output():
        typer.echo(json.dumps({
            "processed": result.processed,
            "completed": result.completed,
            "failed": result.failed,
        }))
    elif result.processed == 0:
        typer.echo("Nothing pending.")
    else:
        typer.echo(f"Processed {result.processed}: {result.completed} complete, {result.failed} failed")
    if result.failed:
        raise typer.Exit(1)


@app.command()
def edit(
    id: Annotated[str, typer.Argument(help="Meal ID")],
    title: Annotated[Optional[str], typer.Option("--title", help="Meal title")] = None,
    calories: Annotated[Optional[float], typer.Option("--calories", help="Total kcal")] = None,
    protein: Annotated[Optional[float], typer.Option("--protein", help="Total protein (g)")] = None,
    fats: Annotated[Optional[float], typer.Option("--fats", help="Total fat (g)")] = None,
    carbs: Annotated[Optional[float], typer.Option("--carbs", help="Total carbohydrate (g)")] = None,
    at: Annotated[Optional[str], typer.Option("--at", help="New meal time (ISO-8601)")] = None,
    comment: Annotated[Optional[str], typer.Option("--comment", "-c", help="Replace the comment")] = None,
):
    """
    Edit a meal's title, totals, time or comment.

    Nutrient edits change the meal totals only; the per-item breakdown is
    kept as analyzed.
    """
    totals = {
        name: value
        for name, value in (("calories", calories), ("protein", protein), ("fats", fats), ("carbs", carbs))
        if value is not None
    }
    if title is None and not totals and at is None and comment is None:
        _fail("Nothing to change")
    mt = _get_tracker()
    try:
        record = _run(mt, mt.edit(id, title=title, totals=totals, timestamp=at, comment=comment))
    except OpenMealError as e:
        _fail(str(e))
    if record is None:
        _fail(f"Not found: {id}")
    _echo_record(record)


@app.command()
def fix(
    id: Annotated[str, typer.Argument(help="Meal ID")],
    comment: Annotated[str, typer.Argument(help="What is wrong with the analysis")] = "",
    after: Annotated[Optional[str], typer.Option(
        "--after", "-a", help="Photo of what was left after eating",
    )] = None,
):
    """
    Correct a meal's analysis from a comment or an after photo.

    \b
    Examples:
        openmeal fix meal_1718000000000 "that's tofu, not chicken"
        openmeal fix meal_1718000000000 --after leftovers.jpg
    """
    mt = _get_tracker()
    try:
        record = _run(mt, mt.pipeline.correct(id, comment, _path_arg(after)))
    except OpenMealError as e:
        _fail(str(e))
    if record is None:
        _fail(f"Not found: {id}")
    _echo_record(record)


@app.command()
def relog(
    id: Annotated[str, typer.Argument(help="Meal ID to log again")],
):
    """Log an earlier meal again, now."""
    mt = _get_tracker()
    try:
        record = _run(mt, mt.relog(id))
    except OpenMealError as e:
        _fail(str(e))
    _echo_record(record)


@app.command("del")
def del_cmd(
    id: Annotated[list[str], typer.Argument(help="ID(s) of meal(s) to delete")],
):
    """Delete meal(s). Photos are kept on disk."""
    mt = _get_tracker()
    had_errors = False
    for one_id in id:
        if mt.store.delete(one_id):
            typer.echo(f"Deleted {one_id}")
        else:
            typer.echo(f"Not found: {one_id}", err=True)
            had_errors = True
    if had_errors:
        raise typer.Exit(1)


@app.command()
def clear(
    range_name: Annotated[str, typer.Option(
        "--range", "-r",
        help="Delete meals from the last: hour, day, month, year, or all",
    )],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Don't ask for confirmation")] = False,
):
    """Delete recent meals (everything logged within the range)."""
    try:
        time_range = TimeRange.parse(range_name)
    except OpenMealError as e:
        _fail(str(e))
    if not yes:
        what = "ALL meals" if time_range is TimeRange.ALL else f"meals from the last {time_range.value}"
        typer.confirm(f"Delete {what}?", abort=True)
    mt = _get_tracker()
    count = mt.store.clear_by_time_range(time_range)
    typer.echo(f"Deleted {count} meal{'s' if count != 1 else ''}")


@app.command()
def today():
    """Today's nutrition totals against your daily goals."""
    mt = _get_tracker()
    totals = mt.today()
    progress = mt.progress()
    goals = mt.goals
    if _get_json_output():
        typer.echo(json.dumps({
            "totals": totals.to_dict(),
            "goals": goals.to_dict(),
            "progress": progress,
        }, indent=2))
        return
    units = {"calories": "kcal", "protein": "g", "fats": "g", "carbs": "g"}
    for nutrient in NUTRIENT_FIELDS:
        value = totals.value(nutrient)
        typer.echo(
            f"{nutrient:<9}{value:>7.0f} / {goals.goal(nutrient):.0f} {units[nutrient]}"
            f"  ({progress[nutrient] * 100:.0f}%)"
        )


@app.command()
def week(
    nutrient: Annotated[str, typer.Argument(help="calories, protein, fats or carbs")] = "calories",
):
    """Daily values of one nutrient over the last 7 days."""
    if nutrient not in NUTRIENT_FIELDS:
        _fail(f"Unknown nutrient {nutrient!r}; expected one of {', '.join(NUTRIENT_FIELDS)}")
    mt = _get_tracker()
    series = mt.week(nutrient)
    average = series_average(series)
    if _get_json_output():
        typer.echo(json.dumps({
            "nutrient": nutrient,
            "days": [{"date": p.date.isoformat(), "value": p.value, "day": p.day_label} for p in series],
            "average": average,
            "goal": mt.goals.goal(nutrient),
        }, indent=2))
        return
    for point in series:
        typer.echo(f"{point.day_label} {point.date.isoformat()}  {point.value}")
    typer.echo(f"Last 7 days average: {average}")


@app.command("health-sync")
def health_sync(
    request: Annotated[bool, typer.Option(
        "--request", help="Ask for write permission first (syncs all meals on grant)",
    )] = False,
):
    """Write all analyzed meals to the health datastore."""
    mt = _get_tracker()
    bridge = mt.health_sync
    if not bridge.available:
        _fail("No health datastore configured. Set [health] in openmeal.toml.")

    async def _sync():
        if request:
            # A grant triggers a full sync inside request_permission()
            return await bridge.request_permission(), None
        if not await bridge.has_permission():
            return False, None
        return True, await bridge.sync_all(mt.store.list())

    granted, result = _run(mt, _sync())
    if not granted:
        _fail("Permission not granted" + ("" if request else ". Run: openmeal health-sync --request"))
    if result is None:
        typer.echo("Permission granted; existing meals synced.")
        return
    typer.echo(f"Synced {result.synced} meal{'s' if result.synced != 1 else ''}"
               + (f", {result.failed} failed" if result.failed else ""))
    if result.failed:
        raise typer.Exit(1)


@app.command()
def config():
    """Show the store configuration."""
    mt = _get_tracker()
    cfg = mt.config
    data = {
        "store": str(cfg.path),
        "config_file": str(cfg.config_path),
        "retention_cap": cfg.retention_cap,
        "expiry_hours": cfg.expiry_hours,
        "inference": cfg.inference.name,
        "health": cfg.health.name,
        "goals": cfg.goals.to_dict(),
        "meals": mt.store.count(),
    }
    if _get_json_output():
        typer.echo(json.dumps(data, indent=2))
        return
    for key, value in data.items():
        if isinstance(value, dict):
            value = ", ".join(f"{k}={v:g}" for k, v in value.items())
        typer.echo(f"{key}: {value}")


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="openmeal CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
