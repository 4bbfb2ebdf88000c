"""CLI entrypoint for content-refresh."""

import logging
import os
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from content_refresh import __version__
from content_refresh.controllers import (
    ContentRefreshCliController,
    ItemCommand,
    ItemExcludeCommand,
    ItemsImportCommand,
    ItemsListCommand,
    PotentialCommand,
    PrioritizeCommand,
    ReconcileCommand,
    WorkerCommand,
)
from content_refresh.errors import ContentRefreshError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = ContentRefreshCliController()

_DB_PATH_HELP = "SQLite DB path."
_METRICS_FILE_HELP = "Metrics export JSON keyed by item URL."


@click.group()
@click.version_option(version=__version__, prog_name="content-refresh")
def content_refresh() -> None:
    """Content refresh CLI: prioritize items, then analyze and draft rewrites."""

    logging.basicConfig(
        level=os.getenv("CONTENT_REFRESH_LOG_LEVEL", "WARNING").strip().upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@content_refresh.group()
def items() -> None:
    """Content item commands."""


@items.command("import")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("input_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def items_import(db_path: Path | None, input_path: Path) -> None:
    """Import or update content items from a JSON file."""

    _run(
        lambda: CONTROLLER.import_items(
            ItemsImportCommand(db_path=db_path, input_path=input_path),
        ),
    )


@items.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of items to print.",
)
@click.option(
    "--analysis-status",
    type=click.Choice(["pending", "analyzing", "completed", "error"], case_sensitive=False),
    default=None,
    help="Optional analysis status filter.",
)
@click.option(
    "--draft-status",
    type=click.Choice(["pending", "creating", "completed", "error"], case_sensitive=False),
    default=None,
    help="Optional draft status filter.",
)
def items_list(
    db_path: Path | None,
    limit: int,
    analysis_status: str | None,
    draft_status: str | None,
) -> None:
    """List tracked items in display order."""

    _run(
        lambda: CONTROLLER.list_items(
            ItemsListCommand(
                db_path=db_path,
                limit=limit,
                analysis_status=analysis_status.lower() if analysis_status else None,
                draft_status=draft_status.lower() if draft_status else None,
            ),
        ),
    )


@items.command("exclude")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--include",
    is_flag=True,
    default=False,
    help="Put a previously excluded item back into display ordering.",
)
@click.argument("item_id", type=int)
def items_exclude(db_path: Path | None, include: bool, item_id: int) -> None:
    """Exclude an item from display ordering."""

    _run(
        lambda: CONTROLLER.set_excluded(
            ItemExcludeCommand(db_path=db_path, item_id=item_id, excluded=not include),
        ),
    )


@items.command("remove")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("item_id", type=int)
def items_remove(db_path: Path | None, item_id: int) -> None:
    """Remove an item and every record derived from it."""

    _run(lambda: CONTROLLER.remove_item(ItemCommand(db_path=db_path, item_id=item_id)))


@content_refresh.group()
def prioritize() -> None:
    """Batched prioritization job commands."""


@prioritize.command("start")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--metrics-file",
    type=click.Path(path_type=Path),
    default=None,
    help=_METRICS_FILE_HELP,
)
def prioritize_start(db_path: Path | None, metrics_file: Path | None) -> None:
    """Start a prioritization job over all published items."""

    _run(
        lambda: CONTROLLER.start_prioritization(
            PrioritizeCommand(db_path=db_path, metrics_file=metrics_file),
        ),
    )


@prioritize.command("progress")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
def prioritize_progress(db_path: Path | None) -> None:
    """Show the current job snapshot."""

    _run(lambda: CONTROLLER.progress(PrioritizeCommand(db_path=db_path)))


@prioritize.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
def prioritize_cancel(db_path: Path | None) -> None:
    """Cancel the running job and drop its queued batches."""

    _run(lambda: CONTROLLER.cancel(PrioritizeCommand(db_path=db_path)))


@prioritize.command("sweep")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
def prioritize_sweep(db_path: Path | None) -> None:
    """Time out a job that has been running for too long."""

    _run(lambda: CONTROLLER.sweep(PrioritizeCommand(db_path=db_path)))


@content_refresh.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--metrics-file",
    type=click.Path(path_type=Path),
    default=None,
    help=_METRICS_FILE_HELP,
)
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed tasks in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before the loop exits.",
)
def worker(
    db_path: Path | None,
    metrics_file: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int,
) -> None:
    """Run the queue worker that processes prioritization batches."""

    _run(
        lambda: CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
                metrics_file=metrics_file,
            ),
        ),
    )


@content_refresh.command("reconcile")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--prune-orphans",
    is_flag=True,
    default=False,
    help="Also delete records whose content item no longer exists.",
)
def reconcile(db_path: Path | None, prune_orphans: bool) -> None:
    """Reset analyses and drafts left in progress by crashed operations."""

    _run(
        lambda: CONTROLLER.reconcile(
            ReconcileCommand(db_path=db_path, prune_orphans=prune_orphans),
        ),
    )


@content_refresh.command("analyze")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("item_id", type=int)
def analyze(db_path: Path | None, item_id: int) -> None:
    """Analyze one item for refresh opportunities."""

    _run(lambda: CONTROLLER.analyze(ItemCommand(db_path=db_path, item_id=item_id)))


@content_refresh.group()
def draft() -> None:
    """Rewrite draft commands."""


@draft.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("item_id", type=int)
def draft_create(db_path: Path | None, item_id: int) -> None:
    """Generate a rewrite draft for an analyzed item."""

    _run(lambda: CONTROLLER.create_draft(ItemCommand(db_path=db_path, item_id=item_id)))


@draft.command("approve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("item_id", type=int)
def draft_approve(db_path: Path | None, item_id: int) -> None:
    """Apply the draft to the item and reset its workflow."""

    _run(lambda: CONTROLLER.approve_draft(ItemCommand(db_path=db_path, item_id=item_id)))


@draft.command("reject")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("item_id", type=int)
def draft_reject(db_path: Path | None, item_id: int) -> None:
    """Discard the draft and analysis of an item."""

    _run(lambda: CONTROLLER.reject_draft(ItemCommand(db_path=db_path, item_id=item_id)))


@content_refresh.command("potential")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max number of items to print.",
)
def potential(db_path: Path | None, limit: int) -> None:
    """Estimate extra clicks a refresh could bring per item."""

    _run(lambda: CONTROLLER.potential(PotentialCommand(db_path=db_path, limit=limit)))


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except ContentRefreshError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    content_refresh()
