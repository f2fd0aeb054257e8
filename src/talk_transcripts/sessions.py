from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Sequence

from .entries import Entry, EntryKind, ViewMode, first_line, parse_timestamp, truncate


logger = logging.getLogger(__name__)

CLAUDE_PROJECTS_SUBDIR = "projects"

SESSION_FILENAME_RE = re.compile(
    r"^(?P<uuid>[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12})\.jsonl$"
)

# Prompts Claude Code injects on the user's behalf (slash commands, local output).
_WRAPPER_PREFIXES = (
    "<command-name>",
    "<command-message>",
    "<command-args>",
    "<local-command-stdout>",
    "<local-command-stderr>",
    "<system-reminder>",
    "Caveat:",
)


class SessionParseError(RuntimeError):
    pass


@dataclass(frozen=True)
class SessionMeta:
    session_id: str | None
    timestamp: str | None
    cwd: str | None
    git_branch: str | None
    version: str | None
    project: str | None


@dataclass
class ParseStats:
    total_lines: int = 0
    parsed_lines: int = 0
    skipped_lines: int = 0
    raw_entries: int = 0
    clean_entries: int = 0
    line_types: dict[str, int] = field(default_factory=dict)
    unknown_types: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ConversationEntries:
    clean: tuple[Entry, ...]
    raw: tuple[Entry, ...]
    session_id: str | None = None
    title: str = "Conversation"

    def get_active_entries(self, view_mode: ViewMode) -> Sequence[Entry]:
        return self.raw if view_mode is ViewMode.RAW else self.clean

    def get_raw_entries(self) -> Sequence[Entry]:
        return self.raw


@dataclass(frozen=True)
class SessionRow:
    path: Path
    session_id: str | None
    preview: str
    created_at: datetime | None
    updated_at: datetime | None
    cwd: str | None
    git_branch: str | None
    project: str | None


@dataclass(frozen=True)
class ResumeStyleMetrics:
    max_updated_width: int
    max_branch_width: int
    max_cwd_width: int
    show_cwd: bool


def human_time_ago(ts: datetime) -> str:
    now = datetime.now(timezone.utc)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    secs = int((now - ts).total_seconds())
    if secs < 60:
        n = max(secs, 0)
        return f"{n} second ago" if n == 1 else f"{n} seconds ago"
    if secs < 60 * 60:
        m = secs // 60
        return f"{m} minute ago" if m == 1 else f"{m} minutes ago"
    if secs < 60 * 60 * 24:
        h = secs // 3600
        return f"{h} hour ago" if h == 1 else f"{h} hours ago"
    d = secs // (60 * 60 * 24)
    return f"{d} day ago" if d == 1 else f"{d} days ago"


def _right_elide(s: str, max_len: int) -> str:
    if max_len <= 0:
        return ""
    if len(s) <= max_len:
        return s
    if max_len == 1:
        return "…"
    return "…" + s[-(max_len - 1) :]


def _normalize_for_path_comparison(path: Path) -> Path:
    try:
        return path.expanduser().resolve()
    except OSError:
        return path


def paths_match(a: str | Path, b: str | Path) -> bool:
    return _normalize_for_path_comparison(Path(a)) == _normalize_for_path_comparison(Path(b))


def decode_project_dir(name: str) -> str:
    """Best-effort reverse of Claude Code's project directory naming ("/" becomes "-")."""
    if name.startswith("-"):
        return "/" + name[1:].replace("-", "/")
    return name


def get_claude_home(claude_home: str | Path | None = None) -> Path:
    raw = str(claude_home) if claude_home is not None else os.environ.get("CLAUDE_CONFIG_DIR", "~/.claude")
    return Path(raw).expanduser().resolve()


def iter_session_files(*, claude_home: str | Path | None = None) -> Iterator[Path]:
    projects = get_claude_home(claude_home) / CLAUDE_PROJECTS_SUBDIR
    if not projects.exists():
        return
    for path in projects.glob("*/*.jsonl"):
        # Sub-agent sidechains are stored next to their parent session.
        if path.name.startswith("agent-"):
            continue
        yield path


def get_session_id_from_filename(path: Path) -> str | None:
    match = SESSION_FILENAME_RE.match(path.name)
    if not match:
        return None
    return match.group("uuid")


def _iter_session_objects(path: Path, stats: ParseStats | None = None) -> Iterable[dict[str, Any]]:
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            if stats is not None:
                stats.total_lines += 1
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                if stats is not None:
                    stats.skipped_lines += 1
                continue
            if not isinstance(obj, dict):
                if stats is not None:
                    stats.skipped_lines += 1
                continue
            yield obj


def read_session_head(path: Path, *, max_records: int = 50) -> list[dict[str, Any]]:
    head: list[dict[str, Any]] = []
    try:
        for obj in _iter_session_objects(path):
            if len(head) >= max_records:
                break
            head.append(obj)
    except (OSError, UnicodeDecodeError):
        return []
    return head


def looks_like_wrapper(text: str) -> bool:
    return text.lstrip().startswith(_WRAPPER_PREFIXES)


def _user_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts: list[str] = []
    for item in content:
        if not isinstance(item, dict):
            continue
        item_type = item.get("type")
        if item_type in ("text", "input_text"):
            parts.append(str(item.get("text") or ""))
        elif item_type in ("image", "image_url"):
            parts.append("[Image attached]")
    return "\n".join(parts)


def _is_tool_result_only(content: Any) -> bool:
    if not isinstance(content, list) or not content:
        return False
    return all(isinstance(item, dict) and item.get("type") == "tool_result" for item in content)


def is_real_prompt(obj: dict[str, Any]) -> bool:
    if obj.get("type") != "user" or obj.get("isMeta"):
        return False
    message = obj.get("message")
    if not isinstance(message, dict):
        return False
    content = message.get("content")
    if _is_tool_result_only(content):
        return False
    text = _user_text(content).strip()
    return bool(text) and not looks_like_wrapper(text)


def extract_preview_from_head(head: list[dict[str, Any]]) -> str | None:
    for obj in head:
        if is_real_prompt(obj):
            return _user_text(obj["message"].get("content")).strip()
    return None


def extract_session_meta_from_head(head: list[dict[str, Any]], *, path: Path | None = None) -> SessionMeta | None:
    for obj in head:
        if obj.get("type") not in ("user", "assistant", "system"):
            continue
        return SessionMeta(
            session_id=str(obj["sessionId"]) if obj.get("sessionId") else None,
            timestamp=obj.get("timestamp") if isinstance(obj.get("timestamp"), str) else None,
            cwd=str(obj["cwd"]) if obj.get("cwd") else None,
            git_branch=obj.get("gitBranch") if isinstance(obj.get("gitBranch"), str) else None,
            version=obj.get("version") if isinstance(obj.get("version"), str) else None,
            project=decode_project_dir(path.parent.name) if path is not None else None,
        )
    return None


def list_session_rows(
    *,
    claude_home: str | Path | None = None,
    limit: int = 50,
    query: str | None = None,
    filter_cwd: Path | None = None,
    session_id: str | None = None,
) -> list[SessionRow]:
    """Most recently modified sessions first.

    `session_id` keeps only sessions whose id starts with the given prefix.
    """
    wanted_id = session_id.strip().lower() if session_id and session_id.strip() else None
    q = query.strip().lower() if query and query.strip() else None
    candidates = list(iter_session_files(claude_home=claude_home))
    candidates.sort(key=lambda p: p.stat().st_mtime if p.exists() else 0, reverse=True)

    rows: list[SessionRow] = []
    for path in candidates:
        if len(rows) >= limit:
            break
        try:
            mtime = path.stat().st_mtime
        except OSError:
            continue

        head = read_session_head(path)
        meta = extract_session_meta_from_head(head, path=path)
        preview = extract_preview_from_head(head) or "(no message yet)"
        cwd = meta.cwd if meta else None
        git_branch = meta.git_branch if meta else None
        row_id = get_session_id_from_filename(path) or (meta.session_id if meta else None)

        if wanted_id is not None:
            if row_id is None or not row_id.lower().startswith(wanted_id):
                continue

        if filter_cwd is not None:
            if cwd is None or not paths_match(cwd, filter_cwd):
                continue

        if q is not None:
            haystacks = [preview, str(path)]
            haystacks.extend(h for h in (cwd, git_branch, row_id) if h)
            if not any(q in h.lower() for h in haystacks):
                continue

        rows.append(
            SessionRow(
                path=path,
                session_id=row_id,
                preview=preview,
                created_at=parse_timestamp(meta.timestamp) if meta else None,
                updated_at=datetime.fromtimestamp(mtime, tz=timezone.utc),
                cwd=cwd,
                git_branch=git_branch,
                project=meta.project if meta else decode_project_dir(path.parent.name),
            )
        )

    return rows


def format_updated_label(row: SessionRow) -> str:
    if row.updated_at is not None:
        return human_time_ago(row.updated_at)
    if row.created_at is not None:
        return human_time_ago(row.created_at)
    return "-"


def calculate_resume_style_metrics(rows: Sequence[SessionRow], *, show_cwd: bool) -> ResumeStyleMetrics:
    max_updated_width = len("Updated")
    max_branch_width = len("Branch")
    max_cwd_width = len("CWD") if show_cwd else 0

    for row in rows:
        max_updated_width = max(max_updated_width, len(format_updated_label(row)))
        max_branch_width = max(max_branch_width, len(_right_elide(row.git_branch or "", 24)))
        if show_cwd:
            max_cwd_width = max(max_cwd_width, len(_right_elide(row.cwd or "", 24)))

    return ResumeStyleMetrics(
        max_updated_width=max_updated_width,
        max_branch_width=max_branch_width,
        max_cwd_width=max_cwd_width,
        show_cwd=show_cwd,
    )


def format_resume_style_header(metrics: ResumeStyleMetrics) -> str:
    parts = [
        f"{'Updated':<{metrics.max_updated_width}}",
        f"{'Branch':<{metrics.max_branch_width}}",
    ]
    if metrics.show_cwd:
        parts.append(f"{'CWD':<{metrics.max_cwd_width}}")
    parts.append("Conversation")
    return "  ".join(parts)


def format_resume_style_row(row: SessionRow, *, metrics: ResumeStyleMetrics) -> str:
    updated = f"{format_updated_label(row):<{metrics.max_updated_width}}"
    branch = f"{_right_elide(row.git_branch or '', 24) or '-':<{metrics.max_branch_width}}"

    preview = row.preview.replace("\n", " ").strip()
    preview = preview[:160] + ("…" if len(preview) > 160 else "")

    if metrics.show_cwd:
        cwd = f"{_right_elide(row.cwd or '', 24) or '-':<{metrics.max_cwd_width}}"
        return f"{updated}  {branch}  {cwd}  {preview}"
    return f"{updated}  {branch}  {preview}"


def _bump(counter: dict[str, int], key: str) -> None:
    counter[key] = counter.get(key, 0) + 1


def _record_timestamp(obj: dict[str, Any]) -> datetime | None:
    snapshot = obj.get("snapshot")
    message = obj.get("message")
    for candidate in (
        obj.get("timestamp"),
        snapshot.get("timestamp") if isinstance(snapshot, dict) else None,
        message.get("timestamp") if isinstance(message, dict) else None,
    ):
        parsed = parse_timestamp(candidate)
        if parsed is not None:
            return parsed
    return None


def _record_id(obj: dict[str, Any], line_no: int) -> str:
    message = obj.get("message")
    for candidate in (
        obj.get("uuid"),
        obj.get("messageId"),
        obj.get("id"),
        message.get("id") if isinstance(message, dict) else None,
    ):
        if isinstance(candidate, str) and candidate:
            return candidate
    return f"{obj.get('type') or 'entry'}-{line_no}"


def _tool_result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [
            str(item.get("text"))
            for item in content
            if isinstance(item, dict) and item.get("type") == "text" and item.get("text")
        ]
        if texts and len(texts) == len(content):
            return "\n".join(texts)
    return json.dumps(content, ensure_ascii=False)


def _usage_dict(usage: Any) -> dict[str, int] | None:
    if not isinstance(usage, dict):
        return None
    return {
        "input_tokens": int(usage.get("input_tokens") or 0),
        "output_tokens": int(usage.get("output_tokens") or 0),
        "cache_creation_input_tokens": int(usage.get("cache_creation_input_tokens") or 0),
        "cache_read_input_tokens": int(usage.get("cache_read_input_tokens") or 0),
    }


def _assistant_parts(message: dict[str, Any]) -> tuple[list[str], list[dict[str, Any]]]:
    texts: list[str] = []
    tools: list[dict[str, Any]] = []
    content = message.get("content")
    if isinstance(content, str):
        return ([content] if content else []), tools
    if not isinstance(content, list):
        return texts, tools
    for item in content:
        if not isinstance(item, dict):
            continue
        item_type = item.get("type")
        if item_type == "text":
            if item.get("text"):
                texts.append(str(item["text"]))
        elif item_type == "tool_use":
            tools.append({"id": item.get("id"), "name": item.get("name"), "input": item.get("input") or {}})
        elif item.get("text"):
            texts.append(f"[{item_type}: {item['text']}]")
    return texts, tools


def raw_entries_from_record(obj: dict[str, Any], *, line_no: int = 0) -> list[Entry]:
    """Expand one JSONL record into raw-view entries."""
    record_type = obj.get("type")
    timestamp = _record_timestamp(obj)
    base_id = _record_id(obj, line_no)
    parent_id = obj.get("parentUuid") or obj.get("logicalParentUuid")
    base_meta: dict[str, Any] = {"message_id": base_id, "parent_id": parent_id}

    if record_type == "user":
        message = obj.get("message") if isinstance(obj.get("message"), dict) else {}
        content = message.get("content")
        if isinstance(content, str):
            return [Entry(id=base_id, kind=EntryKind.USER, timestamp=timestamp, body=content, metadata=base_meta)]

        entries: list[Entry] = []
        text_parts: list[str] = []
        text_index = 0

        def flush() -> None:
            nonlocal text_index
            if not text_parts:
                return
            entries.append(
                Entry(
                    id=f"{base_id}:text:{text_index}",
                    kind=EntryKind.USER,
                    timestamp=timestamp,
                    body="\n".join(text_parts),
                    metadata=base_meta,
                )
            )
            text_index += 1
            text_parts.clear()

        for index, item in enumerate(content if isinstance(content, list) else []):
            if not isinstance(item, dict):
                continue
            item_type = item.get("type")
            if item_type == "tool_result":
                flush()
                entries.append(
                    Entry(
                        id=f"{base_id}:tool:{index}",
                        kind=EntryKind.TOOL_RESULT,
                        timestamp=timestamp,
                        body=_tool_result_text(item.get("content", "")),
                        metadata={
                            **base_meta,
                            "tool_use_id": item.get("tool_use_id"),
                            "is_error": bool(item.get("is_error")),
                        },
                    )
                )
            elif item_type in ("text", "input_text"):
                text_parts.append(str(item.get("text") or ""))
            elif item_type in ("image", "image_url"):
                text_parts.append("[Image attached]")
            elif item.get("text"):
                text_parts.append(f"[{item_type}: {item['text']}]")
        flush()
        return entries

    if record_type == "assistant":
        message = obj.get("message") if isinstance(obj.get("message"), dict) else {}
        texts, tools = _assistant_parts(message)
        usage = _usage_dict(message.get("usage"))
        if not texts and not tools and not message.get("model") and usage is None:
            return []
        kind = EntryKind.TOOL_CALL if tools and not texts else EntryKind.ASSISTANT
        return [
            Entry(
                id=base_id,
                kind=kind,
                timestamp=timestamp,
                body="\n".join(texts),
                metadata={
                    **base_meta,
                    "model": message.get("model"),
                    "api_message_id": message.get("id"),
                    "tool_uses": tools,
                    "usage": usage,
                },
            )
        ]

    if record_type == "file-history-snapshot":
        snapshot = obj.get("snapshot") if isinstance(obj.get("snapshot"), dict) else {}
        backups = snapshot.get("trackedFileBackups")
        files = list(backups.keys()) if isinstance(backups, dict) else []
        # messageId names the user turn the snapshot belongs to; keep it as the cross-reference only.
        return [
            Entry(
                id=f"snapshot:{base_id}",
                kind=EntryKind.FILE_SNAPSHOT,
                timestamp=timestamp,
                body=f"File snapshot: {len(files)} file{'' if len(files) == 1 else 's'}",
                metadata={
                    **base_meta,
                    "files": files,
                    "is_snapshot_update": bool(obj.get("isSnapshotUpdate")),
                    "snapshot_message_id": obj.get("messageId"),
                },
            )
        ]

    if record_type == "summary":
        return [
            Entry(
                id=base_id,
                kind=EntryKind.SUMMARY,
                timestamp=timestamp,
                body=str(obj.get("summary") or ""),
                metadata={**base_meta, "leaf_uuid": obj.get("leafUuid")},
            )
        ]

    if record_type == "queue-operation":
        operation = obj.get("operation") or "queue"
        content = obj.get("content") or ""
        return [
            Entry(
                id=base_id,
                kind=EntryKind.QUEUE,
                timestamp=timestamp,
                body=f"{operation}: {content}".strip(),
                metadata={**base_meta, "operation": operation},
            )
        ]

    if record_type == "system":
        return [
            Entry(
                id=base_id,
                kind=EntryKind.SYSTEM,
                timestamp=timestamp,
                body=str(obj.get("content") or obj.get("subtype") or "system event"),
                metadata={
                    **base_meta,
                    "subtype": obj.get("subtype"),
                    "level": obj.get("level"),
                    "is_meta": obj.get("isMeta"),
                    "compact_metadata": obj.get("compactMetadata"),
                },
            )
        ]

    body = str(obj["content"]) if obj.get("content") else json.dumps(obj, ensure_ascii=False)
    return [Entry(id=base_id, kind=EntryKind.UNKNOWN, timestamp=timestamp, body=body, metadata=base_meta)]


def clean_entry_from_record(obj: dict[str, Any]) -> Entry | None:
    """User prompt or assistant turn for the clean view, or None when the record is neither."""
    uuid = obj.get("uuid")
    timestamp = parse_timestamp(obj.get("timestamp"))
    if not isinstance(uuid, str) or not uuid or timestamp is None:
        return None
    message = obj.get("message")
    if not isinstance(message, dict):
        return None
    meta: dict[str, Any] = {"message_id": uuid, "parent_id": obj.get("parentUuid")}

    if obj.get("type") == "user":
        content = message.get("content")
        if _is_tool_result_only(content):
            return None
        return Entry(id=uuid, kind=EntryKind.USER, timestamp=timestamp, body=_user_text(content), metadata=meta)

    if obj.get("type") == "assistant":
        texts, tools = _assistant_parts(message)
        return Entry(
            id=uuid,
            kind=EntryKind.ASSISTANT,
            timestamp=timestamp,
            body="\n".join(texts),
            metadata={
                **meta,
                "model": message.get("model") or "unknown",
                "api_message_id": message.get("id"),
                "tool_uses": tools,
                "usage": _usage_dict(message.get("usage")),
            },
        )
    return None


def _merge_assistant(previous: Entry, current: Entry) -> Entry:
    body = "\n".join(part for part in (previous.body, current.body) if part)
    metadata = dict(previous.metadata)
    metadata["tool_uses"] = list(previous.metadata.get("tool_uses") or []) + list(
        current.metadata.get("tool_uses") or []
    )
    if current.metadata.get("usage") is not None:
        metadata["usage"] = current.metadata["usage"]
    metadata["merged_ids"] = list(previous.metadata.get("merged_ids") or []) + [current.id]
    return replace(previous, body=body, metadata=metadata)


def _append_clean(clean: list[Entry], entry: Entry) -> None:
    # Claude Code writes one line per content block of a streamed API response.
    if clean and entry.kind is EntryKind.ASSISTANT and clean[-1].kind is EntryKind.ASSISTANT:
        api_id = entry.metadata.get("api_message_id")
        if api_id and api_id == clean[-1].metadata.get("api_message_id"):
            clean[-1] = _merge_assistant(clean[-1], entry)
            return
    clean.append(entry)


def _conversation_title(clean: Sequence[Entry], summaries: Sequence[str]) -> str:
    for summary in summaries:
        if summary.strip():
            return first_line(summary)
    for entry in clean:
        if entry.kind is EntryKind.USER and entry.body.strip() and not looks_like_wrapper(entry.body):
            return truncate(first_line(entry.body), 80)
    return "Conversation"


def parse_session_file(
    filepath: str | Path,
) -> tuple[ConversationEntries, SessionMeta | None, ParseStats]:
    path = Path(filepath)
    stats = ParseStats()
    raw: list[Entry] = []
    clean: list[Entry] = []
    summaries: list[str] = []
    meta: SessionMeta | None = None

    for line_no, obj in enumerate(_iter_session_objects(path, stats), start=1):
        record_type = obj.get("type")
        if not isinstance(record_type, str):
            stats.skipped_lines += 1
            continue
        stats.parsed_lines += 1
        _bump(stats.line_types, record_type)

        if meta is None and record_type in ("user", "assistant", "system"):
            meta = extract_session_meta_from_head([obj], path=path)
        if record_type == "summary" and isinstance(obj.get("summary"), str):
            summaries.append(obj["summary"])

        entries = raw_entries_from_record(obj, line_no=line_no)
        if entries and entries[0].kind is EntryKind.UNKNOWN:
            _bump(stats.unknown_types, record_type)
        raw.extend(entries)

        entry = clean_entry_from_record(obj)
        if entry is not None:
            _append_clean(clean, entry)

    stats.raw_entries = len(raw)
    stats.clean_entries = len(clean)
    logger.debug(
        "parsed %s: %d lines, %d raw, %d clean, %d skipped",
        path,
        stats.total_lines,
        stats.raw_entries,
        stats.clean_entries,
        stats.skipped_lines,
    )
    if not raw:
        raise SessionParseError(f"no usable entries found in session file {path}")

    session_id = get_session_id_from_filename(path) or (meta.session_id if meta else None)
    conversation = ConversationEntries(
        clean=tuple(clean),
        raw=tuple(raw),
        session_id=session_id,
        title=_conversation_title(clean, summaries),
    )
    return conversation, meta, stats
