from __future__ import annotations

import html
import json
import re
from dataclasses import dataclass
from typing import Any, Sequence

from jinja2 import Environment, PackageLoader
import markdown

from .classify import Classification
from .entries import (
    Entry,
    EntryKind,
    entry_label,
    entry_metadata_lines,
    format_iso,
    snapshot_files,
    tool_uses,
)


_jinja_env = Environment(
    loader=PackageLoader("talk_transcripts", "templates"),
    autoescape=True,
)

_macros = _jinja_env.get_template("macros.html").module


def get_template(name: str):
    return _jinja_env.get_template(name)


LONG_TEXT_THRESHOLD = 300

_ROLE_CLASSES: dict[EntryKind, str] = {
    EntryKind.USER: "user",
    EntryKind.ASSISTANT: "assistant",
    EntryKind.TOOL_CALL: "assistant",
    EntryKind.TOOL_RESULT: "tool-reply",
    EntryKind.SYSTEM: "system",
    EntryKind.FILE_SNAPSHOT: "checkpoint",
    EntryKind.SUMMARY: "checkpoint",
    EntryKind.QUEUE: "system",
    EntryKind.UNKNOWN: "system",
}

_ID_SAFE_RE = re.compile(r"[^A-Za-z0-9_-]")


def format_json(obj: Any) -> str:
    try:
        if isinstance(obj, str):
            obj = json.loads(obj)
        formatted = json.dumps(obj, indent=2, ensure_ascii=False)
        return f'<pre class="json">{html.escape(formatted)}</pre>'
    except (json.JSONDecodeError, TypeError):
        return f"<pre>{html.escape(str(obj))}</pre>"


def render_markdown_text(text: str | None) -> str:
    if not text:
        return ""
    return markdown.markdown(text, extensions=["fenced_code", "tables"])


def is_json_like(text: Any) -> bool:
    if not text or not isinstance(text, str):
        return False
    text = text.strip()
    return (text.startswith("{") and text.endswith("}")) or (text.startswith("[") and text.endswith("]"))


def make_msg_id(entry: Entry) -> str:
    return "msg-" + _ID_SAFE_RE.sub("-", entry.id)


def render_tool_use(tool: dict[str, Any]) -> str:
    name = str(tool.get("name") or "Unknown tool")
    tool_input = tool.get("input") if isinstance(tool.get("input"), dict) else {}
    tool_id = str(tool.get("id") or "")

    if name == "Bash":
        return _macros.bash_tool(tool_input.get("command", ""), tool_input.get("description", ""), tool_id)
    if name == "Write":
        return _macros.write_tool(tool_input.get("file_path", "Unknown file"), tool_input.get("content", ""), tool_id)
    if name in ("Edit", "MultiEdit"):
        edits = tool_input.get("edits")
        if not isinstance(edits, list):
            edits = [tool_input]
        return "".join(
            _macros.edit_tool(
                tool_input.get("file_path", "Unknown file"),
                edit.get("old_string", ""),
                edit.get("new_string", ""),
                bool(edit.get("replace_all")),
                tool_id,
            )
            for edit in edits
            if isinstance(edit, dict)
        )
    if name == "TodoWrite":
        todos = tool_input.get("todos") or []
        if todos:
            return _macros.todo_list(todos, tool_id)

    description = tool_input.get("description", "")
    display_input = {k: v for k, v in tool_input.items() if k != "description"}
    return _macros.tool_use(name, description, json.dumps(display_input, indent=2, ensure_ascii=False), tool_id)


def _render_body(entry: Entry) -> str:
    if entry.kind is EntryKind.TOOL_RESULT:
        content_html = format_json(entry.body) if is_json_like(entry.body) else f"<pre>{html.escape(entry.body)}</pre>"
        return _macros.tool_result(content_html, bool(entry.metadata.get("is_error")))

    if entry.kind is EntryKind.FILE_SNAPSHOT:
        return _macros.snapshot(snapshot_files(entry))

    if entry.kind in (EntryKind.SYSTEM, EntryKind.QUEUE, EntryKind.UNKNOWN):
        return _macros.system_note(entry.body, entry_metadata_lines(entry))

    if entry.kind is EntryKind.USER:
        if is_json_like(entry.body):
            return _macros.user_content(format_json(entry.body))
        return _macros.user_content(render_markdown_text(entry.body))

    parts = [_macros.assistant_text(render_markdown_text(entry.body))] if entry.body.strip() else []
    parts.extend(render_tool_use(tool) for tool in tool_uses(entry))
    return "".join(parts)


def render_entry_html(entry: Entry, *, classification: Classification | None = None) -> str:
    content_html = _render_body(entry)
    if not content_html.strip():
        return ""
    badge = f"{classification.indicator} {classification.label}" if classification else ""
    return _macros.message(
        _ROLE_CLASSES[entry.kind],
        entry_label(entry),
        make_msg_id(entry),
        format_iso(entry),
        content_html,
        badge,
    )


def render_entry_markdown(
    entry: Entry,
    *,
    include_metadata: bool = True,
    classification: Classification | None = None,
) -> str:
    heading = f"### {entry_label(entry)} · {format_iso(entry)}"
    if classification is not None:
        heading += f" · {classification.indicator} {classification.label}"
    lines = [heading, ""]

    body = entry.body.strip()
    if body:
        if entry.kind in (EntryKind.TOOL_RESULT, EntryKind.SYSTEM, EntryKind.UNKNOWN):
            lines.extend(["```", body, "```"])
        else:
            lines.append(body)
        lines.append("")

    if include_metadata:
        meta = entry_metadata_lines(entry)
        if meta:
            lines.extend(f"- {line}" for line in meta)
            lines.append("")
    return "\n".join(lines)


@dataclass(frozen=True)
class ConversationStats:
    tool_counts: dict[str, int]
    long_texts: list[str]
    error_count: int


def analyze_entries(entries: Sequence[Entry]) -> ConversationStats:
    tool_counts: dict[str, int] = {}
    long_texts: list[str] = []
    error_count = 0

    for entry in entries:
        for tool in tool_uses(entry):
            name = tool.get("name")
            name = name if isinstance(name, str) and name else "Unknown"
            tool_counts[name] = tool_counts.get(name, 0) + 1
        if entry.kind is EntryKind.TOOL_RESULT and entry.metadata.get("is_error"):
            error_count += 1
        if entry.kind is EntryKind.ASSISTANT and len(entry.body) >= LONG_TEXT_THRESHOLD:
            long_texts.append(entry.body)

    return ConversationStats(tool_counts=tool_counts, long_texts=long_texts, error_count=error_count)


def format_tool_stats(tool_counts: dict[str, int]) -> str:
    if not tool_counts:
        return ""
    parts = [f"{count} {name}" for name, count in sorted(tool_counts.items(), key=lambda x: -x[1])]
    return " · ".join(parts)


CSS = """
:root {
  color-scheme: light dark;
  --bg: #f5f5f5;
  --card: #ffffff;
  --text: #212121;
  --muted: #757575;
  --user: #1976d2;
  --assistant: #9e9e9e;
  --tool: #9c27b0;
  --tool-result: #e8f5e9;
  --tool-error: #ffebee;
  --system: #f97316;
  --checkpoint: #0891b2;
  --code-bg: #263238;
  --code-text: #aed581;
}
@media (prefers-color-scheme: dark) {
  :root {
    --bg: #0b0f14;
    --card: #111827;
    --text: #e5e7eb;
    --muted: #a1a1aa;
    --tool-result: #0f2418;
    --tool-error: #2b1215;
    --code-bg: #0b1020;
    --code-text: #a7f3d0;
  }
}
* { box-sizing: border-box; }
body { margin: 0; background: var(--bg); color: var(--text); font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", sans-serif; line-height: 1.5; }
.container { max-width: 960px; margin: 0 auto; padding: 16px; }
header.page-header h1 { font-size: 1.4rem; margin: 8px 0; }
.page-meta { color: var(--muted); font-size: 0.9rem; }
.group { margin: 24px 0; }
.group-header { display: flex; gap: 12px; align-items: baseline; border-bottom: 1px solid var(--muted); padding-bottom: 4px; }
.group-label { font-weight: 600; }
.group-stats { color: var(--muted); font-size: 0.85rem; }
.message { background: var(--card); border-left: 4px solid var(--assistant); border-radius: 6px; margin: 12px 0; padding: 8px 12px; }
.message.user { border-left-color: var(--user); }
.message.tool-reply { border-left-color: var(--tool); }
.message.system { border-left-color: var(--system); }
.message.checkpoint { border-left-color: var(--checkpoint); }
.message-header { display: flex; justify-content: space-between; gap: 8px; font-size: 0.85rem; color: var(--muted); }
.message-role { font-weight: 600; color: var(--text); }
.badge { font-size: 0.75rem; padding: 0 6px; border-radius: 8px; border: 1px solid var(--muted); }
pre { background: var(--code-bg); color: var(--code-text); padding: 8px; border-radius: 4px; overflow-x: auto; white-space: pre-wrap; word-break: break-word; }
.tool-result { background: var(--tool-result); padding: 4px 8px; border-radius: 4px; }
.tool-result.error { background: var(--tool-error); }
.tool-use, .bash-tool, .write-tool, .edit-tool, .todo-list { border: 1px solid var(--tool); border-radius: 4px; margin: 8px 0; padding: 4px 8px; }
.tool-header { font-weight: 600; font-size: 0.85rem; }
.tool-description { color: var(--muted); font-size: 0.85rem; }
.edit-old pre { opacity: 0.7; }
.todo-item.completed { text-decoration: line-through; color: var(--muted); }
.snapshot-files { margin: 4px 0; padding-left: 20px; font-family: monospace; font-size: 0.85rem; }
.system-note .meta { color: var(--muted); font-size: 0.85rem; }
.long-text { max-height: 240px; overflow: hidden; }
"""


JS = """
(function() {
  function formatTimestamp(ts) {
    var d = new Date(ts);
    return isNaN(d.getTime()) ? ts : d.toLocaleString();
  }
  document.querySelectorAll('time[data-timestamp]').forEach(function(t) {
    t.textContent = formatTimestamp(t.getAttribute('data-timestamp'));
  });
})();
"""
