from __future__ import annotations

import json
import logging
import tempfile
import webbrowser
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Sequence

from .classify import classify_entry
from .entries import (
    Entry,
    EntryKind,
    ViewMode,
    entry_label,
    entry_metadata_lines,
    format_iso,
)
from .navigation import TimelineView
from .render import (
    CSS,
    JS,
    analyze_entries,
    format_tool_stats,
    get_template,
    render_entry_html,
    render_entry_markdown,
    render_markdown_text,
)
from .sessions import (
    ConversationEntries,
    ParseStats,
    SessionMeta,
    looks_like_wrapper,
    parse_session_file,
)
from .thread import Section


logger = logging.getLogger(__name__)

JSON_FORMAT = "talk-transcripts.session.v1"


def _format_duration_ms(ms: int | None) -> str:
    if ms is None or ms < 0:
        return "-"
    secs = ms // 1000
    if secs < 60:
        return f"{secs}s"
    mins = secs // 60
    rem = secs % 60
    if mins < 60:
        return f"{mins}m {rem:02d}s"
    hours = mins // 60
    mins_rem = mins % 60
    return f"{hours}h {mins_rem:02d}m"


def _is_prompt(entry: Entry) -> bool:
    return entry.kind is EntryKind.USER and bool(entry.body.strip()) and not looks_like_wrapper(entry.body)


def _split_on_prompts(entries: Sequence[Entry]) -> list[list[Entry]]:
    # Leading non-prompt entries form their own "session start" group.
    groups: list[list[Entry]] = []
    current: list[Entry] = []
    for entry in entries:
        if _is_prompt(entry) and current:
            groups.append(current)
            current = []
        current.append(entry)
    if current:
        groups.append(current)
    return groups


def _build_conversation_groups(entries: Sequence[Entry]) -> tuple[list[dict[str, Any]], str]:
    rendered_groups: list[dict[str, Any]] = []
    prompt_num = 0
    start = 0
    for group_idx, group in enumerate(_split_on_prompts(entries)):
        end = start + len(group) - 1
        first, last = group[0], group[-1]
        duration_ms: int | None = None
        if first.timestamp is not None and last.timestamp is not None:
            duration_ms = int((last.timestamp - first.timestamp).total_seconds() * 1000)

        stats = analyze_entries(group)
        prompt_raw = first.body.strip() if _is_prompt(first) else None
        if prompt_raw is not None:
            prompt_num += 1
            prompt_html = render_markdown_text(prompt_raw)
        else:
            prompt_html = "<em>(session start)</em>"

        prompt_plain = (prompt_raw or "(session start)").replace("\n", " ").strip()
        if len(prompt_plain) > 160:
            prompt_plain = prompt_plain[:160] + "…"

        rendered_groups.append(
            {
                "group_index": group_idx,
                "display_label": f"#{prompt_num}" if prompt_raw is not None else "Start",
                "start": start,
                "end": end,
                "duration_ms": duration_ms,
                "duration_label": _format_duration_ms(duration_ms),
                "message_count": len(group),
                "tool_calls": sum(stats.tool_counts.values()),
                "tool_stats": format_tool_stats(stats.tool_counts),
                "error_count": stats.error_count,
                "prompt_html": prompt_html,
                "prompt_plain": prompt_plain,
                "prompt_raw": prompt_raw,
                "entries": group,
            }
        )
        start = end + 1

    durations = [
        int(g["duration_ms"])
        for g in rendered_groups
        if g["prompt_raw"] is not None and isinstance(g["duration_ms"], int)
    ]
    task_time_summary = ""
    if durations:
        avg_ms = int(sum(durations) / len(durations))
        task_time_summary = (
            f"task time avg {_format_duration_ms(avg_ms)} · min {_format_duration_ms(min(durations))} · "
            f"max {_format_duration_ms(max(durations))}"
        )
    return rendered_groups, task_time_summary


def _classified(entries: Sequence[Entry]):
    seen_prompt = False
    for entry in entries:
        follow_up = seen_prompt and entry.kind is EntryKind.USER
        yield entry, classify_entry(entry, follow_up=follow_up)
        if _is_prompt(entry):
            seen_prompt = True


def _copy_source(session_path: str | Path, out_dir: Path) -> None:
    src = Path(session_path)
    dst = out_dir / src.name
    if src.resolve() != dst.resolve():
        dst.write_bytes(src.read_bytes())


def _entries_for(conversation: ConversationEntries, view: str | ViewMode) -> Sequence[Entry]:
    return conversation.get_active_entries(ViewMode(view))


def generate_html_from_session(
    session_path: str | Path,
    output_dir: str | Path,
    *,
    view: str | ViewMode = ViewMode.CLEAN,
    include_source: bool = False,
) -> tuple[Path, SessionMeta | None, ParseStats]:
    conversation, meta, stats = parse_session_file(session_path)
    entries = _entries_for(conversation, view)

    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    if include_source:
        _copy_source(session_path, out_dir)

    classifications = dict((entry.id, c) for entry, c in _classified(entries))
    rendered_groups, task_time_summary = _build_conversation_groups(entries)
    total_messages = 0
    for group in rendered_groups:
        messages_html = [
            html
            for html in (
                render_entry_html(entry, classification=classifications.get(entry.id))
                for entry in group.pop("entries")
            )
            if html
        ]
        total_messages += len(messages_html)
        group["messages_html"] = messages_html

    index_html = get_template("index.html").render(
        css=CSS,
        js=JS,
        title=conversation.title,
        session_id=conversation.session_id,
        view=ViewMode(view).value,
        tool_stats=format_tool_stats(analyze_entries(entries).tool_counts),
        groups=rendered_groups,
        total_messages=total_messages,
        total_groups=len(rendered_groups),
        task_time_summary=task_time_summary,
    )
    (out_dir / "index.html").write_text(index_html, encoding="utf-8")
    logger.info("wrote %d messages to %s", total_messages, out_dir / "index.html")
    return out_dir, meta, stats


def generate_markdown_from_session(
    session_path: str | Path,
    output_dir: str | Path,
    *,
    view: str | ViewMode = ViewMode.CLEAN,
    include_metadata: bool = True,
    include_source: bool = False,
) -> tuple[Path, SessionMeta | None, ParseStats]:
    conversation, meta, stats = parse_session_file(session_path)
    entries = _entries_for(conversation, view)

    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    if include_source:
        _copy_source(session_path, out_dir)

    lines = [f"# {conversation.title}", ""]
    if conversation.session_id:
        lines.append(f"Session: {conversation.session_id}")
    if meta is not None and meta.cwd:
        lines.append(f"Project: {meta.cwd}")
    lines.append(f"View: {ViewMode(view).value} · {len(entries)} entries")
    lines.append("")

    rendered_groups, task_time_summary = _build_conversation_groups(entries)
    if task_time_summary:
        lines.extend([task_time_summary, ""])

    classifications = dict((entry.id, c) for entry, c in _classified(entries))
    for group in rendered_groups:
        heading = f"## {group['display_label']} {group['prompt_plain']}"
        lines.extend([heading, ""])
        for entry in group["entries"]:
            lines.append(
                render_entry_markdown(
                    entry,
                    include_metadata=include_metadata,
                    classification=classifications.get(entry.id),
                )
            )

    out_path = out_dir / "transcript.md"
    out_path.write_text("\n".join(lines).rstrip() + "\n", encoding="utf-8")
    logger.info("wrote markdown transcript to %s", out_path)
    return out_path, meta, stats


def question_answer_pairs(entries: Sequence[Entry]) -> list[tuple[str, str]]:
    """Pair each prompt with the assistant text that followed it.

    Tool traffic is left out; prompts that got no textual reply are dropped.
    """
    pairs: list[tuple[str, str]] = []
    for group in _split_on_prompts(entries):
        if not _is_prompt(group[0]):
            continue
        answers = [e.body.strip() for e in group[1:] if e.kind is EntryKind.ASSISTANT and e.body.strip()]
        if answers:
            pairs.append((group[0].body.strip(), "\n\n".join(answers)))
    return pairs


def generate_text_from_session(
    session_path: str | Path,
    output_dir: str | Path,
    *,
    include_source: bool = False,
) -> tuple[Path, SessionMeta | None, ParseStats]:
    conversation, meta, stats = parse_session_file(session_path)

    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    if include_source:
        _copy_source(session_path, out_dir)

    lines = [conversation.title]
    if conversation.session_id:
        lines.append(f"Session: {conversation.session_id}")
    if meta is not None and meta.cwd:
        lines.append(f"Project: {meta.cwd}")
    lines.append("")

    pairs = question_answer_pairs(conversation.clean)
    for question, answer in pairs:
        lines.extend([f"Q: {question}", "", f"A: {answer}", "", "---", ""])

    out_path = out_dir / "transcript.txt"
    out_path.write_text("\n".join(lines).rstrip() + "\n", encoding="utf-8")
    logger.info("wrote %d exchanges to %s", len(pairs), out_path)
    return out_path, meta, stats


def entry_to_dict(entry: Entry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "kind": entry.kind.value,
        "timestamp": entry.timestamp.isoformat() if entry.timestamp is not None else None,
        "body": entry.body,
        "metadata": dict(entry.metadata),
    }


def generate_json_from_session(
    session_path: str | Path,
    output_dir: str | Path,
    *,
    include_source: bool = False,
) -> tuple[Path, SessionMeta | None, ParseStats]:
    conversation, meta, stats = parse_session_file(session_path)

    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    if include_source:
        _copy_source(session_path, out_dir)

    out_path = out_dir / "transcript.json"
    payload = {
        "format": JSON_FORMAT,
        "source_path": str(Path(session_path).expanduser()),
        "title": conversation.title,
        "session_id": conversation.session_id,
        "meta": as_meta_dict(meta),
        "stats": asdict(stats),
        "clean": [entry_to_dict(e) for e in conversation.clean],
        "raw": [entry_to_dict(e) for e in conversation.raw],
    }
    out_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False, default=str) + "\n", encoding="utf-8")
    return out_path, meta, stats


def format_stage_markdown(view: TimelineView, section: Section, *, include_metadata: bool = False) -> str:
    lines = [f"## Stage {section.id + 1}: {section.title}", ""]
    for entry in view.get_entries_in_range(section.start_index, section.end_index):
        lines.append(f"- {entry_label(entry)} ({format_iso(entry)})")
        if entry.body:
            lines.extend(f"  {line}" for line in entry.body.split("\n"))
        if include_metadata:
            lines.extend(f"  ↳ {meta}" for meta in entry_metadata_lines(entry))
        lines.append("")
    lines.append("")
    return "\n".join(lines)


@dataclass
class StageExporter:
    """Writes stages of the navigator's timeline as Markdown files."""

    output_dir: Path = field(default_factory=lambda: Path.cwd() / "exports")
    include_metadata: bool = False

    def _ensure_dir(self) -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        return self.output_dir

    @staticmethod
    def _base_id(view: TimelineView) -> str:
        return view.session_id[:8] if view.session_id else "session"

    def _header(self, view: TimelineView, last_line: str) -> list[str]:
        return [
            f"# {view.title or 'Conversation'}",
            f"Session: {view.session_id or 'unknown'}",
            last_line,
            "",
        ]

    def export_section(self, view: TimelineView, section: Section) -> Path:
        sections = view.get_sections()
        path = self._ensure_dir() / f"section-{self._base_id(view)}-{section.id + 1}.md"
        content = self._header(view, f"Stage {section.id + 1}/{len(sections)}: {section.title}")
        content.append(format_stage_markdown(view, section, include_metadata=self.include_metadata))
        path.write_text("\n".join(content), encoding="utf-8")
        logger.info("exported stage %d to %s", section.id + 1, path)
        return path

    def export_all(self, view: TimelineView) -> Path:
        sections = view.get_sections()
        path = self._ensure_dir() / f"sections-{self._base_id(view)}.md"
        content = self._header(view, f"Stages: {len(sections)}")
        content.extend(
            format_stage_markdown(view, section, include_metadata=self.include_metadata) for section in sections
        )
        path.write_text("\n".join(content), encoding="utf-8")
        logger.info("exported %d stages to %s", len(sections), path)
        return path


def open_output(output_dir: str | Path) -> None:
    target = Path(output_dir)
    if target.is_dir():
        target = target / "index.html"
    webbrowser.open(target.resolve().as_uri())


def default_output_dir() -> Path:
    return Path(tempfile.mkdtemp(prefix="talk-transcripts-"))


def output_auto_dir(parent: str | Path, *, session_id: str | None, filename: str) -> Path:
    parent = Path(parent)
    if session_id:
        return parent / f"session_{session_id}"
    safe = filename.replace(":", "-")
    return parent / safe


def as_meta_dict(meta: SessionMeta | None) -> dict[str, Any] | None:
    if meta is None:
        return None
    return asdict(meta)
