"""CLI entrypoint for brand-monitor."""

import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import rich_click as click

from brand_monitor import __version__
from brand_monitor.controllers import (
    BrandMonitorCliController,
    ContentAddCommand,
    FeedShowCommand,
    IncidentsEvaluateCommand,
    IncidentsListCommand,
    IncidentsPatchCommand,
    RunApproveCommand,
    RunCreateCommand,
    RunListCommand,
    RunShowCommand,
    ScheduleAddCommand,
    ScheduleTickCommand,
    SnapshotComputeCommand,
    TermAddCommand,
    WeightSetCommand,
    WorkerReapCommand,
    WorkerRunCommand,
)
from brand_monitor.errors import BrandMonitorError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = BrandMonitorCliController()

RUN_KINDS = ("analysis", "report", "export", "incident-evaluation")
RUN_STATUSES = ("pending", "running", "pending_review", "completed", "failed")
INCIDENT_STATUSES = ("open", "acknowledged", "resolved")


@click.group()
@click.version_option(version=__version__, prog_name="brand-monitor")
def brand_monitor() -> None:
    """Brand monitoring run orchestrator CLI."""


@brand_monitor.group()
def runs() -> None:
    """Run lifecycle commands."""


@runs.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--kind", type=click.Choice(RUN_KINDS), required=True, help="Run kind.")
@click.option(
    "--payload",
    "payload_json",
    default="{}",
    show_default=True,
    help="Request body as a JSON object.",
)
@click.option(
    "--idempotency-key",
    default=None,
    help="Client idempotency key. Repeating it returns the existing run.",
)
def runs_create(
    db_path: Path | None,
    kind: str,
    payload_json: str,
    idempotency_key: str | None,
) -> None:
    """Accept a run; a worker executes it later."""

    _emit(
        lambda: CONTROLLER.create_run(
            RunCreateCommand(
                db_path=db_path,
                kind=kind,
                payload_json=payload_json,
                idempotency_key=idempotency_key,
            ),
        ),
    )


@runs.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--run-id", required=True, help="Run id.")
@click.option("--events/--no-events", "show_events", default=False, help="Print the event log.")
def runs_show(db_path: Path | None, run_id: str, show_events: bool) -> None:
    """Show run status and output."""

    _emit(
        lambda: CONTROLLER.show_run(
            RunShowCommand(db_path=db_path, run_id=run_id, show_events=show_events),
        ),
    )


@runs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--kind", type=click.Choice(RUN_KINDS), default=None, help="Optional kind filter.")
@click.option(
    "--status",
    type=click.Choice(RUN_STATUSES),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=200),
    default=20,
    show_default=True,
    help="Max number of runs to print.",
)
def runs_list(db_path: Path | None, kind: str | None, status: str | None, limit: int) -> None:
    """List recent runs."""

    _emit(
        lambda: CONTROLLER.list_runs(
            RunListCommand(db_path=db_path, kind=kind, status=status, limit=limit),
        ),
    )


@runs.command("approve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--run-id", required=True, help="Report run id.")
@click.option("--actor", "actor_user_id", required=True, help="Approving user id.")
def runs_approve(db_path: Path | None, run_id: str, actor_user_id: str) -> None:
    """Approve a report parked in pending_review."""

    _emit(
        lambda: CONTROLLER.approve_run(
            RunApproveCommand(db_path=db_path, run_id=run_id, actor_user_id=actor_user_id),
        ),
    )


@brand_monitor.group()
def worker() -> None:
    """Dispatcher commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-runs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed runs in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before the loop exits.",
)
@click.option(
    "--pool-size",
    type=click.IntRange(min=1, max=32),
    default=None,
    help="Dispatcher threads in loop mode (default from BRAND_MONITOR_WORKER_POOL_SIZE).",
)
@click.option(
    "--log-level",
    type=click.Choice(("DEBUG", "INFO", "WARNING", "ERROR"), case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Log level for worker output on stderr.",
)
def worker_run(  # noqa: PLR0913
    db_path: Path | None,
    once: bool,
    max_runs: int | None,
    max_idle_polls: int,
    pool_size: int | None,
    log_level: str,
) -> None:
    """Run the dispatcher: reap expired runs, claim and execute pending ones."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
    )
    _emit(
        lambda: CONTROLLER.run_worker(
            WorkerRunCommand(
                db_path=db_path,
                once=once,
                max_runs=max_runs,
                max_idle_polls=max_idle_polls,
                pool_size=pool_size,
            ),
        ),
    )


@worker.command("reap")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def worker_reap(db_path: Path | None) -> None:
    """Fail running runs whose deadline has passed."""

    _emit(lambda: CONTROLLER.reap(WorkerReapCommand(db_path=db_path)))


@brand_monitor.group()
def schedules() -> None:
    """Report schedule commands."""


@schedules.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--template-id", required=True, help="Report template id.")
@click.option("--name", required=True, help="Schedule name.")
@click.option(
    "--frequency",
    type=click.Choice(("daily", "weekly")),
    default="daily",
    show_default=True,
    help="Recurrence.",
)
@click.option("--time", "time_local", required=True, help="Local time, HH:MM.")
@click.option(
    "--timezone",
    default="America/Bogota",
    show_default=True,
    help="IANA timezone name.",
)
@click.option(
    "--day-of-week",
    type=click.IntRange(min=0, max=6),
    default=None,
    help="Weekly schedules only; 0 is Sunday.",
)
@click.option(
    "--recipient",
    "recipients",
    multiple=True,
    help="Recipient email. Can be repeated.",
)
@click.option(
    "--source-type",
    type=click.Choice(("news", "social")),
    default="news",
    show_default=True,
    help="Content source type for generated reports.",
)
def schedules_add(  # noqa: PLR0913
    db_path: Path | None,
    template_id: str,
    name: str,
    frequency: str,
    time_local: str,
    timezone: str,
    day_of_week: int | None,
    recipients: tuple[str, ...],
    source_type: str,
) -> None:
    """Register a recurring report schedule."""

    _emit(
        lambda: CONTROLLER.add_schedule(
            ScheduleAddCommand(
                db_path=db_path,
                template_id=template_id,
                name=name,
                frequency=frequency,
                time_local=time_local,
                timezone=timezone,
                day_of_week=day_of_week,
                recipients=recipients,
                source_type=source_type,
            ),
        ),
    )


@schedules.command("tick")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def schedules_tick(db_path: Path | None) -> None:
    """Create report runs for every due schedule slot."""

    _emit(lambda: CONTROLLER.tick_schedules(ScheduleTickCommand(db_path=db_path)))


@brand_monitor.group()
def incidents() -> None:
    """Incident commands."""


@incidents.command("evaluate")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--source-type",
    type=click.Choice(("news", "social")),
    default="news",
    show_default=True,
    help="Content source type.",
)
@click.option(
    "--window-days",
    type=click.IntRange(min=1, max=366),
    default=None,
    help="Window length ending now (default from settings).",
)
def incidents_evaluate(db_path: Path | None, source_type: str, window_days: int | None) -> None:
    """Accept an incident-evaluation run."""

    _emit(
        lambda: CONTROLLER.evaluate_incidents(
            IncidentsEvaluateCommand(
                db_path=db_path,
                source_type=source_type,
                window_days=window_days,
            ),
        ),
    )


@incidents.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(INCIDENT_STATUSES),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=200),
    default=50,
    show_default=True,
    help="Max number of incidents to print.",
)
def incidents_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List incidents, newest first."""

    _emit(
        lambda: CONTROLLER.list_incidents(
            IncidentsListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@incidents.command("patch")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--incident-id", required=True, help="Incident id.")
@click.option("--actor", "actor_user_id", required=True, help="Acting user id.")
@click.option("--reason", required=True, help="Mandatory reason, stored as a note.")
@click.option(
    "--status",
    type=click.Choice(INCIDENT_STATUSES),
    default=None,
    help="New status.",
)
@click.option("--owner", "owner_user_id", default=None, help="New owner user id.")
def incidents_patch(  # noqa: PLR0913
    db_path: Path | None,
    incident_id: str,
    actor_user_id: str,
    reason: str,
    status: str | None,
    owner_user_id: str | None,
) -> None:
    """Change incident status or owner."""

    _emit(
        lambda: CONTROLLER.patch_incident(
            IncidentsPatchCommand(
                db_path=db_path,
                incident_id=incident_id,
                actor_user_id=actor_user_id,
                reason=reason,
                status=status,
                owner_user_id=owner_user_id,
            ),
        ),
    )


@brand_monitor.group()
def terms() -> None:
    """Tracked term commands."""


@terms.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", required=True, help="Term name.")
@click.option(
    "--scope",
    type=click.Choice(("brand", "competitor")),
    default=None,
    help="Term scope; unscoped terms count as 'claro'.",
)
@click.option(
    "--max-articles",
    "max_articles_per_run",
    type=click.IntRange(min=1, max=500),
    default=2,
    show_default=True,
    help="Feed page cap for this term.",
)
def terms_add(
    db_path: Path | None,
    name: str,
    scope: str | None,
    max_articles_per_run: int,
) -> None:
    """Register a tracked term."""

    _emit(
        lambda: CONTROLLER.add_term(
            TermAddCommand(
                db_path=db_path,
                name=name,
                scope=scope,
                max_articles_per_run=max_articles_per_run,
            ),
        ),
    )


@brand_monitor.group()
def content() -> None:
    """Content commands."""


@content.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--source-type",
    type=click.Choice(("news", "social")),
    default="news",
    show_default=True,
    help="Content source type.",
)
@click.option("--provider", required=True, help="Content provider.")
@click.option("--title", required=True, help="Title.")
@click.option("--url", "canonical_url", required=True, help="Canonical URL.")
@click.option("--term-id", default=None, help="Tracked term id.")
@click.option("--source-name", default=None, help="Publisher or account name.")
@click.option(
    "--published-at",
    type=click.DateTime(formats=["%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%dT%H:%M:%S"]),
    default=None,
    help="Publication timestamp (UTC when no offset is given).",
)
@click.option(
    "--sentimiento",
    type=click.Choice(("positivo", "negativo", "neutro")),
    default=None,
    help="Store a manual classification along with the record.",
)
@click.option("--categoria", default=None, help="Category for the manual classification.")
def content_add(  # noqa: PLR0913
    db_path: Path | None,
    source_type: str,
    provider: str,
    title: str,
    canonical_url: str,
    term_id: str | None,
    source_name: str | None,
    published_at: datetime | None,
    sentimiento: str | None,
    categoria: str | None,
) -> None:
    """Store one content record."""

    _emit(
        lambda: CONTROLLER.add_content(
            ContentAddCommand(
                db_path=db_path,
                source_type=source_type,
                provider=provider,
                title=title,
                canonical_url=canonical_url,
                term_id=term_id,
                source_name=source_name,
                published_at=published_at,
                sentimiento=sentimiento,
                categoria=categoria,
            ),
        ),
    )


@brand_monitor.group()
def weights() -> None:
    """Source weight commands."""


@weights.command("set")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--provider", required=True, help="Provider name.")
@click.option(
    "--source-name",
    default=None,
    help="Source name; omit to set the provider-wide default.",
)
@click.option(
    "--weight",
    type=click.FloatRange(min=0.0, max=1.0),
    required=True,
    help="Quality weight in [0, 1].",
)
@click.option("--active/--inactive", "is_active", default=True, show_default=True)
def weights_set(
    db_path: Path | None,
    provider: str,
    source_name: str | None,
    weight: float,
    is_active: bool,
) -> None:
    """Set a source quality weight; applies to the next computation."""

    _emit(
        lambda: CONTROLLER.set_weight(
            WeightSetCommand(
                db_path=db_path,
                provider=provider,
                source_name=source_name,
                weight=weight,
                is_active=is_active,
            ),
        ),
    )


@brand_monitor.group()
def feed() -> None:
    """Feed commands."""


@feed.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--term-id", required=True, help="Tracked term id.")
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=10,
    show_default=True,
    help="Requested page size (capped per term).",
)
def feed_show(db_path: Path | None, term_id: str, limit: int) -> None:
    """Show the most recent records for a term."""

    _emit(
        lambda: CONTROLLER.show_feed(
            FeedShowCommand(db_path=db_path, term_id=term_id, limit=limit),
        ),
    )


@brand_monitor.group()
def snapshots() -> None:
    """KPI snapshot commands."""


@snapshots.command("compute")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--source-type",
    type=click.Choice(("news", "social")),
    default="news",
    show_default=True,
    help="Content source type.",
)
@click.option(
    "--window-days",
    type=click.IntRange(min=1, max=366),
    default=None,
    help="Window length ending now (default from settings).",
)
@click.option("--formula-version", default=None, help="Formula version (default from settings).")
def snapshots_compute(
    db_path: Path | None,
    source_type: str,
    window_days: int | None,
    formula_version: str | None,
) -> None:
    """Compute and store a KPI snapshot synchronously."""

    _emit(
        lambda: CONTROLLER.compute_snapshot(
            SnapshotComputeCommand(
                db_path=db_path,
                source_type=source_type,
                window_days=window_days,
                formula_version=formula_version,
            ),
        ),
    )


def _emit(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except BrandMonitorError as error:
        raise click.ClickException(f"{error.kind.value}: {error.message}") from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    brand_monitor()
