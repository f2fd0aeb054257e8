from __future__ import annotations

import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest


SRC_ROOT = (Path(__file__).resolve().parents[1] / "src").as_posix()
if SRC_ROOT not in sys.path:
    sys.path.insert(0, SRC_ROOT)


SESSION_ID = "11111111-2222-3333-4444-555555555555"
BASE_TS = datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)


def _ts(seconds: int) -> str:
    return (BASE_TS + timedelta(seconds=seconds)).isoformat().replace("+00:00", "Z")


def _common(uuid: str, seconds: int, parent: str | None) -> dict[str, Any]:
    return {
        "uuid": uuid,
        "parentUuid": parent,
        "timestamp": _ts(seconds),
        "sessionId": SESSION_ID,
        "cwd": "/tmp/MAGIC_CWD",
        "gitBranch": "feature/magic",
        "version": "2.0.1",
        "isSidechain": False,
        "userType": "external",
    }


def sample_records() -> list[dict[str, Any]]:
    """A short Claude Code session: snapshot, prompt, streamed reply with a tool call, compaction, follow-up."""
    return [
        {
            "type": "file-history-snapshot",
            "messageId": "u1",
            "snapshot": {"messageId": "u1", "trackedFileBackups": {}, "timestamp": _ts(0)},
            "isSnapshotUpdate": False,
        },
        {
            **_common("u1", 1, None),
            "type": "user",
            "message": {"role": "user", "content": "How do I fix the failing test?"},
        },
        {
            **_common("a1", 2, "u1"),
            "type": "assistant",
            "message": {
                "id": "msg_1",
                "role": "assistant",
                "model": "claude-sonnet-4-5",
                "content": [{"type": "text", "text": "Let me run the tests first."}],
                "usage": {"input_tokens": 10, "output_tokens": 5},
            },
        },
        {
            **_common("a2", 3, "a1"),
            "type": "assistant",
            "message": {
                "id": "msg_1",
                "role": "assistant",
                "model": "claude-sonnet-4-5",
                "content": [
                    {"type": "tool_use", "id": "toolu_1", "name": "Bash", "input": {"command": "pytest -q"}}
                ],
                "usage": {"input_tokens": 10, "output_tokens": 20},
            },
        },
        {
            **_common("u2", 4, "a2"),
            "type": "user",
            "message": {
                "role": "user",
                "content": [{"type": "tool_result", "tool_use_id": "toolu_1", "content": "1 failed, 3 passed"}],
            },
        },
        {
            **_common("a3", 5, "u2"),
            "type": "assistant",
            "message": {
                "id": "msg_2",
                "role": "assistant",
                "model": "claude-sonnet-4-5",
                "content": [{"type": "text", "text": "The test fails because the fixture is stale."}],
            },
        },
        {
            **_common("s1", 6, "a3"),
            "type": "system",
            "subtype": "compact_boundary",
            "content": "Conversation compacted",
            "level": "info",
        },
        {
            **_common("u3", 7, "s1"),
            "type": "user",
            "message": {"role": "user", "content": "Thanks, now add a regression test"},
        },
        {
            **_common("a4", 8, "u3"),
            "type": "assistant",
            "message": {
                "id": "msg_3",
                "role": "assistant",
                "model": "claude-sonnet-4-5",
                "content": [{"type": "text", "text": "Done."}],
            },
        },
    ]


def write_jsonl(path: Path, records: list[Any], *, extra_lines: tuple[str, ...] = ()) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [json.dumps(obj, ensure_ascii=False) for obj in records]
    lines.extend(extra_lines)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


@pytest.fixture
def claude_home(tmp_path: Path) -> Path:
    return tmp_path / "claude_home"


@pytest.fixture
def session_file(claude_home: Path) -> Path:
    path = claude_home / "projects" / "-tmp-MAGIC-CWD" / f"{SESSION_ID}.jsonl"
    return write_jsonl(path, sample_records(), extra_lines=("this is not json",))
