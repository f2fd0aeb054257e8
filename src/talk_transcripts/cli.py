from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path

import click
from click_default_group import DefaultGroup
import questionary

from talk_transcripts import logging_setup
from talk_transcripts.sessions import (
    ParseStats,
    SessionParseError,
    SessionMeta,
    SessionRow,
    calculate_resume_style_metrics,
    format_resume_style_header,
    format_resume_style_row,
    get_session_id_from_filename,
    list_session_rows,
)
from talk_transcripts.transcript import (
    as_meta_dict,
    default_output_dir,
    generate_html_from_session,
    generate_json_from_session,
    generate_markdown_from_session,
    generate_text_from_session,
    open_output,
    output_auto_dir,
)
from talk_transcripts.tui import run_tui
from talk_transcripts.usage import GROUPINGS, fetch_usage, format_usage_table


logger = logging.getLogger(__name__)

NO_SESSIONS_MESSAGE = "No Claude Code sessions found under ~/.claude/projects (or CLAUDE_CONFIG_DIR)."


def _print_stats(stats: ParseStats) -> None:
    click.echo(
        f"Parsed: {stats.total_lines} lines, {stats.raw_entries} raw entries, "
        f"{stats.clean_entries} clean entries; skipped: {stats.skipped_lines}"
    )
    if stats.unknown_types:
        click.echo(f"Unrecognised record types (rendered as events): {stats.unknown_types}", err=True)


def _ensure_output_dir(
    output: str | None,
    *,
    output_auto: bool,
    session_path: Path,
) -> tuple[Path, bool]:
    if output is None:
        return default_output_dir(), True

    parent = Path(output).expanduser()
    if output_auto:
        session_id = get_session_id_from_filename(session_path)
        out_dir = output_auto_dir(parent, session_id=session_id, filename=session_path.stem)
    else:
        out_dir = parent
    out_dir.mkdir(parents=True, exist_ok=True)
    return out_dir, False


def _write_meta(out_dir: Path, meta: SessionMeta | None) -> None:
    if meta is None:
        return
    (out_dir / "session_meta.json").write_text(
        json.dumps(as_meta_dict(meta), indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
    )


def _export_one(
    session_path: Path,
    out_dir: Path,
    *,
    output_format: str,
    view: str,
    include_source: bool,
    include_metadata: bool,
) -> Path:
    try:
        if output_format == "json":
            out_path, meta, stats = generate_json_from_session(
                session_path, out_dir, include_source=include_source
            )
        elif output_format == "simple":
            out_path, meta, stats = generate_text_from_session(
                session_path, out_dir, include_source=include_source
            )
        elif output_format == "markdown":
            out_path, meta, stats = generate_markdown_from_session(
                session_path,
                out_dir,
                view=view,
                include_metadata=include_metadata,
                include_source=include_source,
            )
        else:
            out_path, meta, stats = generate_html_from_session(
                session_path, out_dir, view=view, include_source=include_source
            )
    except SessionParseError as e:
        raise click.ClickException(str(e)) from e
    _print_stats(stats)
    _write_meta(out_dir, meta)
    return out_path


def _list_rows(
    *,
    claude_home: Path | None,
    limit: int,
    cwd_only: bool,
    query: str | None,
    session: str | None = None,
    project: str | None = None,
) -> list[SessionRow]:
    if cwd_only and project:
        raise click.UsageError("Use either --cwd or --project, not both.")
    filter_cwd: Path | None = None
    if project:
        filter_cwd = Path(project).expanduser()
    elif cwd_only:
        filter_cwd = Path.cwd()

    rows = list_session_rows(
        claude_home=claude_home,
        limit=limit,
        query=query,
        filter_cwd=filter_cwd,
        session_id=session,
    )
    if not rows:
        if session:
            raise click.ClickException(f"No session matching '{session}'.")
        raise click.ClickException(NO_SESSIONS_MESSAGE)
    return rows


def _choices(rows: list[SessionRow], *, cwd_only: bool) -> list[questionary.Choice]:
    metrics = calculate_resume_style_metrics(rows, show_cwd=not cwd_only)
    click.echo(format_resume_style_header(metrics))
    return [questionary.Choice(title=format_resume_style_row(r, metrics=metrics), value=r.path) for r in rows]


_format_option = click.option(
    "--format",
    "output_format",
    type=click.Choice(["html", "markdown", "json", "simple"], case_sensitive=False),
    default="html",
    show_default=True,
    help="Output format.",
)
_session_option = click.option(
    "-s", "--session", help="Select the session whose id starts with this prefix (skips the picker)."
)
_project_option = click.option(
    "-p", "--project", help="Only sessions recorded in this project directory."
)
_view_option = click.option(
    "--view",
    type=click.Choice(["clean", "raw"], case_sensitive=False),
    default="clean",
    show_default=True,
    help="Clean (prompts and replies) or raw (every record) transcript.",
)


@click.group(cls=DefaultGroup, default="local", default_if_no_args=True)
@click.version_option(None, "-v", "--version", package_name="talk-transcripts")
def cli() -> None:
    """Browse and export Claude Code conversation logs.

\b
Examples:
  talk-transcripts
  talk-transcripts local --latest --open
  talk-transcripts local --latest --format markdown -o ./out
  talk-transcripts local --session 1a2b3c --format simple -o ./out
  talk-transcripts export ~/.claude/projects/-home-me-app/<uuid>.jsonl -o ./out
  talk-transcripts tui --latest
  talk-transcripts cost daily --since 20260101
    """


@cli.command("local")
@click.option("--claude-home", type=click.Path(path_type=Path), help="Override CLAUDE_CONFIG_DIR.")
@click.option("--limit", type=int, default=10, show_default=True, help="How many recent sessions to show.")
@click.option("--cwd", "cwd_only", is_flag=True, help="Only sessions recorded in the current working directory.")
@click.option("--query", help="Filter sessions by substring match (preview/cwd/branch/id/path).")
@_session_option
@_project_option
@click.option("--latest", is_flag=True, help="Use the most recent session (no interactive picker).")
@click.option("-o", "--output", type=click.Path(), help="Output directory (default: temp dir + open browser).")
@click.option(
    "-a",
    "--output-auto",
    is_flag=True,
    help="Auto-name output subdirectory based on session id / filename (uses -o as parent).",
)
@click.option("--open", "open_browser", is_flag=True, help="Open generated index.html in your browser.")
@click.option("--include-source", is_flag=True, help="Copy the source session file into the output directory.")
@click.option("--metadata/--no-metadata", "include_metadata", default=True, show_default=True)
@_format_option
@_view_option
def local_cmd(
    claude_home: Path | None,
    limit: int,
    cwd_only: bool,
    query: str | None,
    session: str | None,
    project: str | None,
    latest: bool,
    output: str | None,
    output_auto: bool,
    open_browser: bool,
    include_source: bool,
    include_metadata: bool,
    output_format: str,
    view: str,
) -> None:
    """Pick recent sessions and export them."""
    output_format = output_format.lower()
    if output_format != "html" and open_browser:
        raise click.ClickException("--open is only supported for HTML output.")

    rows = _list_rows(
        claude_home=claude_home,
        limit=limit,
        cwd_only=cwd_only,
        query=query,
        session=session,
        project=project,
    )

    selected_paths: list[Path]
    if latest or session:
        selected_paths = [rows[0].path]
    else:
        selected_paths = questionary.checkbox(
            "Select Claude Code sessions (space to toggle, enter to confirm):",
            choices=_choices(rows, cwd_only=cwd_only),
            validate=lambda a: True if a else "Select at least one session.",
        ).ask()
    if not selected_paths:
        raise click.ClickException("No session selected.")

    if len(selected_paths) == 1:
        selected = selected_paths[0]
        out_dir, open_by_default = _ensure_output_dir(output, output_auto=output_auto, session_path=selected)
        out_path = _export_one(
            selected,
            out_dir,
            output_format=output_format,
            view=view,
            include_source=include_source,
            include_metadata=include_metadata,
        )
        if output_format == "html" and (open_browser or open_by_default):
            open_output(out_path)
        click.echo(f"Output: {out_path}")
        return

    # Several sessions: one auto-named subdirectory each under the output root.
    root, _ = _ensure_output_dir(output, output_auto=False, session_path=selected_paths[0])
    for p in selected_paths:
        subdir = output_auto_dir(root, session_id=get_session_id_from_filename(p), filename=p.stem)
        out_path = _export_one(
            p,
            subdir,
            output_format=output_format,
            view=view,
            include_source=include_source,
            include_metadata=include_metadata,
        )
        click.echo(f"Output: {out_path}")
    click.echo(f"Output root: {root}")


@cli.command("export")
@click.argument("path", type=click.Path(path_type=Path))
@click.option("-o", "--output", type=click.Path(), help="Output directory (default: temp dir + open browser).")
@click.option(
    "-a",
    "--output-auto",
    is_flag=True,
    help="Auto-name output subdirectory based on session id / filename (uses -o as parent).",
)
@click.option("--open", "open_browser", is_flag=True, help="Open generated index.html in your browser.")
@click.option("--include-source", is_flag=True, help="Copy the source session file into the output directory.")
@click.option("--metadata/--no-metadata", "include_metadata", default=True, show_default=True)
@_format_option
@_view_option
def export_cmd(
    path: Path,
    output: str | None,
    output_auto: bool,
    open_browser: bool,
    include_source: bool,
    include_metadata: bool,
    output_format: str,
    view: str,
) -> None:
    """Export a session file given by PATH."""
    if not path.exists():
        raise click.ClickException(f"File not found: {path}")
    output_format = output_format.lower()
    if output_format != "html" and open_browser:
        raise click.ClickException("--open is only supported for HTML output.")

    out_dir, open_by_default = _ensure_output_dir(output, output_auto=output_auto, session_path=path)
    out_path = _export_one(
        path,
        out_dir,
        output_format=output_format,
        view=view,
        include_source=include_source,
        include_metadata=include_metadata,
    )
    if output_format == "html" and (open_browser or open_by_default):
        open_output(out_path)
    click.echo(f"Output: {out_path}")


@cli.command("tui")
@click.argument("path", required=False, type=click.Path(path_type=Path))
@click.option("--claude-home", type=click.Path(path_type=Path), help="Override CLAUDE_CONFIG_DIR (when PATH is omitted).")
@click.option("--limit", type=int, default=50, show_default=True, help="How many recent sessions to show (when PATH is omitted).")
@click.option("--cwd", "cwd_only", is_flag=True, help="Only sessions recorded in the current working directory.")
@click.option("--query", help="Filter sessions by substring match (when PATH is omitted).")
@_session_option
@_project_option
@click.option("--latest", is_flag=True, help="Use the most recent session (no interactive picker).")
@click.option(
    "--export-dir",
    type=click.Path(path_type=Path),
    help="Where stage exports are written (default: ./exports).",
)
@click.option("--metadata/--no-metadata", "include_metadata", default=False, show_default=True)
def tui_cmd(
    path: Path | None,
    claude_home: Path | None,
    limit: int,
    cwd_only: bool,
    query: str | None,
    session: str | None,
    project: str | None,
    latest: bool,
    export_dir: Path | None,
    include_metadata: bool,
) -> None:
    """Keyboard navigator with a timeline minimap and checkpoint stages."""
    session_path: Path
    if path is not None:
        session_path = path
    else:
        rows = _list_rows(
            claude_home=claude_home,
            limit=limit,
            cwd_only=cwd_only,
            query=query,
            session=session,
            project=project,
        )
        if latest or session:
            session_path = rows[0].path
        else:
            selected: Path | None = questionary.select(
                "Select a Claude Code session to view:",
                choices=_choices(rows, cwd_only=cwd_only),
                use_shortcuts=len(rows) <= 36,
            ).ask()
            if selected is None:
                raise click.ClickException("No session selected.")
            session_path = selected

    if not session_path.exists():
        raise click.ClickException(f"File not found: {session_path}")

    logger.info("opening navigator on %s", session_path)
    run_tui(session_path=session_path, export_dir=export_dir, include_metadata=include_metadata)


@cli.command("cost")
@click.argument("grouping", type=click.Choice(GROUPINGS), default="daily")
@click.option("--since", help="Start date (YYYYMMDD), passed through to ccusage.")
@click.option("--until", help="End date (YYYYMMDD), passed through to ccusage.")
@click.option("--breakdown", is_flag=True, help="Ask ccusage for a per-model breakdown.")
@click.option("--json", "as_json", is_flag=True, help="Print normalised rows as JSON instead of a table.")
def cost_cmd(grouping: str, since: str | None, until: str | None, breakdown: bool, as_json: bool) -> None:
    """Token usage and cost report via the external ccusage tool."""
    report = fetch_usage(grouping, since=since, until=until, breakdown=breakdown)
    if as_json:
        payload = {
            "format": "talk-transcripts.usage.v1",
            "grouping": report.grouping,
            "rows": [asdict(row) for row in report.rows],
            "totals": asdict(report.totals),
        }
        click.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return
    if not report.rows:
        click.echo("No usage data.")
        return
    click.echo(format_usage_table(report))


def main() -> None:
    logging_setup.configure()
    cli()


if __name__ == "__main__":
    main()
