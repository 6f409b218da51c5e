"""Command line interface for reelcache."""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .cache import CacheIndex, format_timestamp, load_index, save_index, utc_now
from .config import (
    DEFAULT_FFPROBE,
    PROJECT_CONFIG_FILENAME,
    Config,
    ProjectPaths,
    load_config,
    resolve_project_paths,
)
from .errors import IndexIOError, ValidationError
from .logs import configure_logging
from .output import format_size, format_status_icon, format_verify_status
from .render_state import load_render_state
from .services.change_service import Segment, detect_changes, prune
from .services.fetch_service import FetchEngine
from .services.library_service import parse_age, prune_library, verify_library
from .services.migrate_service import migrate_project_cache
from .services.resolve_service import ResolveOptions, ResolveOrchestrator, lookup
from .services.source_service import Row
from .services.system_service import find_command_on_path, run_all_doctor_checks
from .text import Messages, Styles
from .utils import format_path, resolve_directory

console = Console()

app = typer.Typer(
    help=Messages.APP_HELP,
    no_args_is_help=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)


@dataclass
class CliState:
    project: Path
    verbose: bool = False


def _styled(text: str, style: str) -> str:
    return f"[{style}]{text}[/{style}]"


def _fail(message: str) -> NoReturn:
    console.print(_styled(escape(message), Styles.ERROR))
    raise typer.Exit(code=1)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"reelcache v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    project: Path = typer.Option(
        Path("."),
        "--project",
        "-C",
        help=Messages.HELP_PROJECT,
    ),
    verbose: bool = typer.Option(False, "--verbose", help=Messages.HELP_VERBOSE),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Global Typer callback for shared options."""
    ctx.obj = CliState(project=project, verbose=verbose)


def _load_project(ctx: typer.Context) -> tuple[Config, ProjectPaths]:
    state: CliState = ctx.obj
    try:
        root = resolve_directory(state.project)
    except (FileNotFoundError, NotADirectoryError) as exc:
        _fail(str(exc))
    config_file = root / PROJECT_CONFIG_FILENAME
    try:
        config = load_config(config_file)
    except ValidationError as exc:
        _fail(Messages.ERROR_CONFIG_INVALID.format(path=config_file, reason=exc))
    paths = resolve_project_paths(root, config)
    configure_logging(verbose=state.verbose, log_dir=paths.logs_dir)
    return config, paths


def _load_index(path: Path) -> CacheIndex:
    try:
        return load_index(path)
    except IndexIOError as exc:
        _fail(Messages.ERROR_INDEX_IO.format(reason=exc))


def _save_index(path: Path, index: CacheIndex) -> None:
    try:
        save_index(path, index)
    except IndexIOError as exc:
        _fail(Messages.ERROR_INDEX_IO.format(reason=exc))


def _read_reference_file(path: Path) -> list[str]:
    if not path.is_file():
        _fail(Messages.ERROR_FROM_FILE_MISSING.format(path=path))
    links: list[str] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        text = line.strip()
        if text and not text.startswith("#"):
            links.append(text)
    return links


@app.command()
def fetch(
    ctx: typer.Context,
    links: list[str] | None = typer.Argument(None, help=Messages.HELP_FETCH_LINKS),
    from_file: Path | None = typer.Option(
        None,
        "--from-file",
        "-f",
        help=Messages.HELP_FETCH_FROM_FILE,
    ),
    force: bool = typer.Option(False, "--force", help=Messages.HELP_FETCH_FORCE),
    reprobe: bool = typer.Option(False, "--reprobe", help=Messages.HELP_FETCH_REPROBE),
) -> None:
    """Resolve source references into the cache, downloading or copying as needed."""
    references = list(links or [])
    if from_file is not None:
        references.extend(_read_reference_file(from_file))
    if not references:
        _fail(Messages.ERROR_NO_LINKS)

    config, paths = _load_project(ctx)
    paths.ensure_meta_dirs()
    index = _load_index(paths.index_file)
    engine = FetchEngine.from_config(paths, config)
    orchestrator = ResolveOrchestrator(engine, paths.root)
    rows = [Row(index=position, link=link) for position, link in enumerate(references, start=1)]

    ok = failed = 0
    dirty = touched = False
    used_at = utc_now()
    for outcome in orchestrator.resolve_all(
        index, rows, ResolveOptions(force=force, reprobe=reprobe)
    ):
        if outcome.result is None:
            failed += 1
            console.print(
                _styled(
                    escape(
                        Messages.ERROR_ROW_FAILED.format(
                            index=outcome.row.index,
                            link=outcome.row.link,
                            reason=outcome.error,
                        )
                    ),
                    Styles.ERROR,
                )
            )
            continue
        ok += 1
        result = outcome.result
        if result.updated:
            dirty = True
        elif index.mark_used(result.identifier, used_at):
            touched = True
        line = Messages.INFO_ROW_RESOLVED.format(
            index=outcome.row.index,
            status=result.status.value,
            path=format_path(Path(result.entry.cached_path), paths.root),
        )
        if result.probed and result.entry.probe is not None:
            line += Messages.INFO_ROW_PROBED.format(
                duration=result.entry.probe.duration_seconds
            )
        console.print(escape(line))

    if dirty:
        _save_index(paths.index_file, index)
        summary = Messages.INFO_FETCH_SUMMARY.format(
            ok=ok, failed=failed, path=format_path(paths.index_file, paths.root)
        )
    elif touched:
        _save_index(paths.index_file, index)
        summary = Messages.INFO_FETCH_USAGE.format(
            ok=ok, failed=failed, path=format_path(paths.index_file, paths.root)
        )
    else:
        summary = Messages.INFO_FETCH_UNCHANGED.format(ok=ok, failed=failed)
    console.print(_styled(escape(summary), Styles.WARNING if failed else Styles.SUCCESS))
    if failed:
        raise typer.Exit(code=1)


@app.command("lookup")
def lookup_command(
    ctx: typer.Context,
    link: str = typer.Argument(..., help=Messages.HELP_LOOKUP_LINK),
) -> None:
    """Show the cached entry for a source reference without fetching it."""
    _, paths = _load_project(ctx)
    index = _load_index(paths.index_file)
    entry = lookup(index, Row(index=0, link=link), paths.root)
    if entry is None:
        console.print(_styled(escape(Messages.INFO_LOOKUP_MISS.format(link=link)), Styles.WARNING))
        raise typer.Exit(code=1)
    duration = "-"
    if entry.probe is not None and entry.probe.duration_seconds:
        duration = f"{entry.probe.duration_seconds:.1f}s"
    console.print(
        escape(
            Messages.INFO_LOOKUP_HIT.format(
                identifier=entry.identifier,
                source_type=entry.source_type.value,
                path=entry.cached_path or "-",
                size=format_size(entry.size_bytes),
                retrieved=format_timestamp(entry.retrieved_at) or "-",
                duration=duration,
            )
        )
    )


@app.command(help=Messages.HELP_MIGRATE)
def migrate(
    ctx: typer.Context,
    dry_run: bool = typer.Option(False, "--dry-run", help=Messages.HELP_MIGRATE_DRY_RUN),
) -> None:
    _, paths = _load_project(ctx)
    try:
        report = migrate_project_cache(paths, dry_run=dry_run)
    except IndexIOError as exc:
        _fail(Messages.ERROR_INDEX_IO.format(reason=exc))
    if not report.source_entries:
        console.print(_styled(Messages.INFO_MIGRATE_NOTHING, Styles.INFO))
        return
    for item in report.items:
        for line in item.lines():
            console.print(escape(line))
    console.print()
    console.print(_styled(escape(report.summary()), Styles.SUCCESS))
    if report.source_dir_empty:
        console.print(
            _styled(
                escape(Messages.INFO_MIGRATE_EMPTY_DIR.format(path=paths.local_cache_dir)),
                Styles.INFO,
            )
        )
    if report.stats.failed:
        raise typer.Exit(code=1)


def _maintenance_index_file(paths: ProjectPaths, use_library: bool) -> Path:
    return paths.library_index_file if use_library else paths.index_file


@app.command("prune")
def prune_command(
    ctx: typer.Context,
    older_than: str = typer.Option("90d", "--older-than", help=Messages.HELP_PRUNE_OLDER_THAN),
    dry_run: bool = typer.Option(False, "--dry-run", help=Messages.HELP_PRUNE_DRY_RUN),
    library: bool = typer.Option(False, "--library", help=Messages.HELP_USE_LIBRARY),
) -> None:
    """Remove cached sources retrieved before a cutoff."""
    try:
        age = parse_age(older_than)
    except ValidationError as exc:
        _fail(Messages.ERROR_AGE_INVALID.format(reason=exc))
    _, paths = _load_project(ctx)
    index_file = _maintenance_index_file(paths, library)
    index = _load_index(index_file)
    report = prune_library(index, age, dry_run=dry_run)
    for item in report.items:
        if item.error:
            console.print(_styled(escape(f"error removing {item.path}: {item.error}"), Styles.ERROR))
            continue
        verb = "would prune" if dry_run else "pruned"
        console.print(escape(f"{verb} {item.identifier} ({format_size(item.size_bytes)})"))
    if not dry_run and report.pruned:
        _save_index(index_file, index)
    console.print(
        _styled(
            escape(
                Messages.INFO_PRUNE_SUMMARY.format(
                    label=report.label,
                    pruned=report.pruned,
                    freed=format_size(report.freed_bytes),
                    kept=report.kept,
                )
            ),
            Styles.SUCCESS,
        )
    )


@app.command()
def verify(
    ctx: typer.Context,
    fix: bool = typer.Option(False, "--fix", help=Messages.HELP_VERIFY_FIX),
    library: bool = typer.Option(False, "--library", help=Messages.HELP_USE_LIBRARY),
) -> None:
    """Check cached sources with ffprobe."""
    config, paths = _load_project(ctx)
    ffprobe = config.tool_path(DEFAULT_FFPROBE)
    if find_command_on_path(ffprobe) is None:
        _fail(Messages.ERROR_TOOL_MISSING.format(tool=DEFAULT_FFPROBE))
    index_file = _maintenance_index_file(paths, library)
    index = _load_index(index_file)
    engine = FetchEngine.from_config(paths, config)
    report = verify_library(index, engine, fix=fix)
    for item in report.items:
        suffix = f" ({item.error or item.path})" if item.error or item.path else ""
        console.print(f"{format_verify_status(item.status.value)} {escape(item.identifier + suffix)}")
    if report.modified:
        _save_index(index_file, index)
    console.print(
        escape(
            Messages.INFO_VERIFY_SUMMARY.format(
                valid=report.valid,
                missing=report.missing,
                corrupt=report.corrupt,
                fixed=report.fixed,
            )
        )
    )
    if report.corrupt > report.fixed:
        raise typer.Exit(code=1)


def _read_segments(path: Path, default_template: str, root: Path) -> list[Segment]:
    """Load segment descriptors, anchoring relative output paths at *root*."""
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        _fail(Messages.ERROR_SEGMENTS_INVALID.format(path=path, reason=exc))
    if not isinstance(raw, list):
        _fail(Messages.ERROR_SEGMENTS_INVALID.format(path=path, reason="expected a JSON list"))
    segments: list[Segment] = []
    for item in raw:
        if not isinstance(item, dict):
            _fail(Messages.ERROR_SEGMENTS_INVALID.format(path=path, reason="expected objects"))
        try:
            segment = Segment.from_dict(item)
        except ValidationError as exc:
            _fail(Messages.ERROR_SEGMENTS_INVALID.format(path=path, reason=exc))
        if not segment.filename_template:
            segment.filename_template = default_template
        if segment.output_path and not Path(segment.output_path).is_absolute():
            segment.output_path = str(root / segment.output_path)
        segments.append(segment)
    return segments


@app.command()
def plan(
    ctx: typer.Context,
    segments_file: Path = typer.Argument(..., help=Messages.HELP_PLAN_SEGMENTS),
    force: bool = typer.Option(False, "--force", help=Messages.HELP_PLAN_FORCE),
    prune_state: bool = typer.Option(False, "--prune", help=Messages.HELP_PLAN_PRUNE),
) -> None:
    """Show which segments need rendering."""
    config, paths = _load_project(ctx)
    segments = _read_segments(segments_file, config.segment_template, paths.root)
    try:
        state = load_render_state(paths.render_state_file)
    except IndexIOError as exc:
        _fail(Messages.ERROR_STATE_IO.format(reason=exc))
    actions = detect_changes(state, segments, config, force=force)

    table = Table(title=Messages.TABLE_PLAN_TITLE, header_style=Styles.TABLE_HEADER)
    table.add_column(Messages.TABLE_HEADER_INDEX, justify="right")
    table.add_column(Messages.TABLE_HEADER_ACTION)
    table.add_column(Messages.TABLE_HEADER_REASON)
    table.add_column(Messages.TABLE_HEADER_OUTPUT, overflow="fold")
    render_count = 0
    for action in sorted(actions, key=lambda item: item.segment.index):
        if action.needs_render:
            render_count += 1
        style = Styles.WARNING if action.needs_render else Styles.INFO
        table.add_row(
            f"{action.segment.index:03d}",
            _styled(action.action.value, style),
            action.reason.value,
            escape(format_path(Path(action.segment.output_path), paths.root)),
        )
    console.print(table)
    console.print(
        Messages.INFO_PLAN_SUMMARY.format(
            render=render_count, skip=len(actions) - render_count
        )
    )

    if prune_state:
        removed = prune(state, [segment.output_path for segment in segments])
        if removed:
            try:
                state.save(paths.render_state_file)
            except IndexIOError as exc:
                _fail(Messages.ERROR_STATE_IO.format(reason=exc))
        console.print(
            _styled(
                Messages.INFO_PLAN_PRUNED.format(
                    count=removed, plural="y" if removed == 1 else "ies"
                ),
                Styles.INFO,
            )
        )


@app.command(help=Messages.HELP_DOCTOR)
def doctor(ctx: typer.Context) -> None:
    config, paths = _load_project(ctx)
    results = run_all_doctor_checks(paths, config)
    failures = 0
    for result in results:
        icon = format_status_icon(result.passed, console=console)
        if not result.passed:
            failures += 1
        console.print(f"  {icon} [bold]{escape(result.name)}:[/bold] {escape(result.message)}")
        if result.detail:
            console.print(f"      [dim]{escape(result.detail)}[/dim]")
    console.print()
    if failures:
        console.print(_styled(Messages.INFO_DOCTOR_FAILED.format(count=failures), Styles.WARNING))
        raise typer.Exit(code=1)
    console.print(_styled(Messages.INFO_DOCTOR_ALL_PASSED, Styles.SUCCESS))


def run(argv: list[str] | None = None) -> None:
    """Entry point wrapper allowing optional argument override."""
    args = list(argv) if argv is not None else sys.argv[1:]
    if argv is None:
        app()
    else:
        app(args=args)
