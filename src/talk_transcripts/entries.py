from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping


class EntryKind(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    SYSTEM = "system"
    FILE_SNAPSHOT = "file_snapshot"
    SUMMARY = "summary"
    QUEUE = "queue"
    UNKNOWN = "unknown"


class ViewMode(str, Enum):
    CLEAN = "clean"
    RAW = "raw"


COMPACTION_SUBTYPE = "compact_boundary"


@dataclass(frozen=True)
class Entry:
    id: str
    kind: EntryKind
    timestamp: datetime | None
    body: str = ""
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def message_id(self) -> str | None:
        value = self.metadata.get("message_id")
        return value if isinstance(value, str) and value else None

    @property
    def aliases(self) -> frozenset[str]:
        """Ids this entry answers to: its own, its cross-reference id and any merged ids."""
        ids = {self.id}
        if self.message_id:
            ids.add(self.message_id)
        merged = self.metadata.get("merged_ids")
        if isinstance(merged, (list, tuple)):
            ids.update(str(m) for m in merged if m)
        return frozenset(ids)


_KIND_LABELS: dict[EntryKind, str] = {
    EntryKind.USER: "👤 User",
    EntryKind.ASSISTANT: "🤖 Assistant",
    EntryKind.TOOL_CALL: "🔧 Tool Call",
    EntryKind.TOOL_RESULT: "🧰 Tool Result",
    EntryKind.SYSTEM: "⚙️ System",
    EntryKind.FILE_SNAPSHOT: "📂 File Snapshot",
    EntryKind.SUMMARY: "📝 Summary",
    EntryKind.QUEUE: "⏱ Queue",
    EntryKind.UNKNOWN: "❓ Event",
}

# Colour names understood by Rich/Textual styles.
KIND_COLORS: dict[EntryKind, str] = {
    EntryKind.USER: "green",
    EntryKind.ASSISTANT: "blue",
    EntryKind.TOOL_CALL: "blue",
    EntryKind.TOOL_RESULT: "magenta",
    EntryKind.SYSTEM: "yellow",
    EntryKind.FILE_SNAPSHOT: "cyan",
    EntryKind.SUMMARY: "blue",
    EntryKind.QUEUE: "grey50",
    EntryKind.UNKNOWN: "white",
}


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Epoch milliseconds, as written by some Claude Code records.
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not value or not isinstance(value, str):
        return None
    s = value.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(s)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def entry_time(entry: Entry) -> datetime:
    """Timestamp used for ordering; entries without one sort as "now"."""
    if entry.timestamp is not None:
        return entry.timestamp
    return datetime.now(timezone.utc)


def format_clock(entry: Entry) -> str:
    if entry.timestamp is None:
        return "--:--:--"
    return entry.timestamp.astimezone().strftime("%H:%M:%S")


def format_iso(entry: Entry) -> str:
    return entry_time(entry).astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return ""


def truncate(text: str, max_len: int) -> str:
    if max_len <= 0:
        return ""
    if len(text) <= max_len:
        return text
    if max_len <= 3:
        return text[:max_len]
    return text[: max_len - 3] + "..."


def is_checkpoint(entry: Entry) -> bool:
    if entry.kind in (EntryKind.FILE_SNAPSHOT, EntryKind.SUMMARY):
        return True
    if entry.kind is EntryKind.SYSTEM:
        return entry.metadata.get("subtype") == COMPACTION_SUBTYPE
    return False


def snapshot_files(entry: Entry) -> list[str]:
    files = entry.metadata.get("files")
    if not isinstance(files, (list, tuple)):
        return []
    return [str(f) for f in files]


def snapshot_file_count(entry: Entry) -> int:
    """Files tracked by a snapshot entry; a snapshot without a file list counts once."""
    if entry.kind is not EntryKind.FILE_SNAPSHOT:
        return 0
    return len(snapshot_files(entry)) or 1


def checkpoint_title(entry: Entry) -> str:
    if entry.kind is EntryKind.SUMMARY:
        return first_line(entry.body) or "Summary"
    if entry.kind is EntryKind.FILE_SNAPSHOT:
        files = entry.metadata.get("files")
        if isinstance(files, (list, tuple)):
            return f"Snapshot ({len(files)} files)"
        return "File snapshot"
    if entry.kind is EntryKind.SYSTEM and entry.metadata.get("subtype") == COMPACTION_SUBTYPE:
        return "Compaction"
    return "Checkpoint"


def tool_uses(entry: Entry) -> list[dict[str, Any]]:
    tools = entry.metadata.get("tool_uses")
    if not isinstance(tools, (list, tuple)):
        return []
    return [t for t in tools if isinstance(t, dict)]


def entry_label(entry: Entry) -> str:
    label = _KIND_LABELS[entry.kind]
    if entry.kind is EntryKind.ASSISTANT and tool_uses(entry):
        return f"{label} 🔧"
    if entry.kind is EntryKind.TOOL_RESULT and entry.metadata.get("is_error"):
        return f"{label} ⚠️"
    return label


def format_tool_summary(tool: Mapping[str, Any], *, max_len: int = 80) -> str:
    name = tool.get("name") or "Tool"
    tool_input = tool.get("input")
    if not tool_input:
        return str(name)
    try:
        preview = json.dumps(tool_input, ensure_ascii=False)
    except TypeError:
        preview = str(tool_input)
    return f"{name} ({truncate(preview, max_len)})"


def entry_metadata_lines(entry: Entry) -> list[str]:
    metadata = entry.metadata
    lines: list[str] = []

    if entry.kind in (EntryKind.ASSISTANT, EntryKind.TOOL_CALL):
        model = metadata.get("model")
        if model:
            lines.append(f"Model: {model}")
        for tool in tool_uses(entry):
            lines.append(f"Tool call: {format_tool_summary(tool)}")
        usage = metadata.get("usage")
        if isinstance(usage, dict):
            lines.append(
                f"Tokens: {usage.get('input_tokens', 0)} in, {usage.get('output_tokens', 0)} out"
            )

    elif entry.kind is EntryKind.TOOL_RESULT:
        if metadata.get("tool_use_id"):
            lines.append(f"Tool result: {metadata['tool_use_id']}")
        if metadata.get("is_error"):
            lines.append("Error: true")

    elif entry.kind is EntryKind.FILE_SNAPSHOT:
        files = snapshot_files(entry)
        if files:
            more = "…" if len(files) > 5 else ""
            lines.append(f"Files ({len(files)}): {', '.join(files[:5])}{more}")

    elif entry.kind is EntryKind.SYSTEM:
        if metadata.get("subtype"):
            lines.append(f"Subtype: {metadata['subtype']}")
        if metadata.get("level"):
            lines.append(f"Level: {metadata['level']}")

    elif entry.kind is EntryKind.QUEUE:
        if metadata.get("operation"):
            lines.append(f"Operation: {metadata['operation']}")

    elif entry.kind is EntryKind.SUMMARY:
        if metadata.get("leaf_uuid"):
            lines.append(f"Leaf: {metadata['leaf_uuid']}")

    return lines


def entry_preview(entry: Entry) -> str:
    label = entry_label(entry)
    if entry.kind is EntryKind.FILE_SNAPSHOT:
        files = snapshot_files(entry)
        more = "…" if len(files) > 3 else ""
        return f"{label}: {', '.join(files[:3])}{more}"
    text = first_line(entry.body)
    if text:
        return f"{label}: {text}"
    metadata = entry_metadata_lines(entry)
    if metadata:
        return f"{label}: {metadata[0]}"
    return label
