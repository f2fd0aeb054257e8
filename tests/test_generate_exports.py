from __future__ import annotations

import json
from pathlib import Path

from conftest import SESSION_ID
from talk_transcripts.entries import ViewMode
from talk_transcripts.navigation import TimelineView
from talk_transcripts.sessions import parse_session_file
from talk_transcripts.thread import build_sections
from talk_transcripts.transcript import (
    JSON_FORMAT,
    StageExporter,
    format_stage_markdown,
    generate_html_from_session,
    generate_json_from_session,
    generate_markdown_from_session,
    generate_text_from_session,
    output_auto_dir,
    question_answer_pairs,
)


def _raw_view(session_file: Path, *, session_id: str | None = SESSION_ID) -> TimelineView:
    conversation, _meta, _stats = parse_session_file(session_file)
    return TimelineView(
        entries=conversation.raw,
        sections=build_sections(conversation.raw),
        title=conversation.title,
        session_id=session_id,
    )


def test_generate_html_writes_index(session_file: Path, tmp_path: Path):
    out_dir, meta, stats = generate_html_from_session(session_file, tmp_path / "out")

    index_html = (out_dir / "index.html").read_text(encoding="utf-8")
    assert "<title>How do I fix the failing test?</title>" in index_html
    assert f"Session {SESSION_ID}" in index_html
    assert "clean view · 5 messages · 2 prompts" in index_html
    assert 'id="msg-u1"' in index_html
    assert "pytest -q" in index_html
    assert "1 Bash" in index_html
    assert "❓ debug · debugging · simple" in index_html
    assert "🔍 analysis" in index_html
    assert "prefers-color-scheme" in index_html

    assert meta is not None and meta.cwd == "/tmp/MAGIC_CWD"
    assert stats.skipped_lines == 1


def test_generate_html_raw_view_shows_every_record(session_file: Path, tmp_path: Path):
    out_dir, _meta, _stats = generate_html_from_session(session_file, tmp_path / "out", view="raw")

    index_html = (out_dir / "index.html").read_text(encoding="utf-8")
    assert "raw view · 9 messages" in index_html
    assert "File snapshot (0 files)" in index_html
    assert "Conversation compacted" in index_html
    assert "1 failed, 3 passed" in index_html
    assert 'id="msg-u2-tool-0"' in index_html
    assert 'id="group-0"' in index_html


def test_generate_html_include_source(session_file: Path, tmp_path: Path):
    out_dir, _meta, _stats = generate_html_from_session(session_file, tmp_path / "out", include_source=True)
    assert (out_dir / session_file.name).read_bytes() == session_file.read_bytes()


def test_generate_markdown(session_file: Path, tmp_path: Path):
    out_path, _meta, _stats = generate_markdown_from_session(session_file, tmp_path / "out")

    assert out_path.name == "transcript.md"
    text = out_path.read_text(encoding="utf-8")
    lines = text.splitlines()
    assert lines[0] == "# How do I fix the failing test?"
    assert f"Session: {SESSION_ID}" in lines
    assert "Project: /tmp/MAGIC_CWD" in lines
    assert "View: clean · 5 entries" in lines
    assert "task time avg 2s · min 1s · max 4s" in lines
    assert "## #1 How do I fix the failing test?" in lines
    assert "## #2 Thanks, now add a regression test" in lines
    assert "### 👤 User · 2026-01-05T12:00:01Z · ❓ debug · debugging · simple" in lines
    assert "### 👤 User · 2026-01-05T12:00:07Z · ❓ implement · implementation · moderate" in lines
    assert "- Model: claude-sonnet-4-5" in lines
    assert "- Tokens: 10 in, 20 out" in lines


def test_generate_markdown_without_metadata(session_file: Path, tmp_path: Path):
    out_path, _meta, _stats = generate_markdown_from_session(
        session_file, tmp_path / "out", view=ViewMode.RAW, include_metadata=False
    )
    text = out_path.read_text(encoding="utf-8")
    assert "View: raw · 9 entries" in text
    assert "## Start (session start)" in text
    assert "```\n1 failed, 3 passed\n```" in text
    assert "- Model:" not in text


def test_generate_text_pairs_prompts_with_replies(session_file: Path, tmp_path: Path):
    out_path, _meta, _stats = generate_text_from_session(session_file, tmp_path / "out")
    assert out_path == tmp_path / "out" / "transcript.txt"
    lines = out_path.read_text(encoding="utf-8").splitlines()

    assert lines[:4] == [
        "How do I fix the failing test?",
        f"Session: {SESSION_ID}",
        "Project: /tmp/MAGIC_CWD",
        "",
    ]
    assert lines[4:] == [
        "Q: How do I fix the failing test?",
        "",
        "A: Let me run the tests first.",
        "",
        "The test fails because the fixture is stale.",
        "",
        "---",
        "",
        "Q: Thanks, now add a regression test",
        "",
        "A: Done.",
        "",
        "---",
    ]
    assert "1 failed" not in out_path.read_text(encoding="utf-8")


def test_question_answer_pairs_skip_unanswered_prompts(session_file: Path):
    conversation, _meta, _stats = parse_session_file(session_file)
    entries = list(conversation.clean[:3]) + [conversation.clean[3]]
    assert [q for q, _a in question_answer_pairs(entries)] == ["How do I fix the failing test?"]
    assert question_answer_pairs([]) == []


def test_generate_json(session_file: Path, tmp_path: Path):
    out_path, _meta, _stats = generate_json_from_session(session_file, tmp_path / "out")

    payload = json.loads(out_path.read_text(encoding="utf-8"))
    assert payload["format"] == JSON_FORMAT
    assert payload["session_id"] == SESSION_ID
    assert payload["title"] == "How do I fix the failing test?"
    assert payload["meta"]["git_branch"] == "feature/magic"
    assert payload["stats"]["raw_entries"] == 9
    assert [e["id"] for e in payload["clean"]] == ["u1", "a1", "a3", "u3", "a4"]
    assert payload["raw"][0]["kind"] == "file_snapshot"
    assert payload["raw"][3]["metadata"]["tool_uses"][0]["name"] == "Bash"
    assert payload["clean"][0]["timestamp"].startswith("2026-01-05T12:00:01")


def test_format_stage_markdown(session_file: Path):
    view = _raw_view(session_file)
    section = view.get_sections()[1]

    text = format_stage_markdown(view, section)
    lines = text.splitlines()
    assert lines[0] == "## Stage 2: Compaction"
    assert "- ⚙️ System (2026-01-05T12:00:06Z)" in lines
    assert "  Conversation compacted" in lines
    assert "  Thanks, now add a regression test" in lines
    assert not any(line.startswith("  ↳") for line in lines)

    detailed = format_stage_markdown(view, section, include_metadata=True)
    assert "  ↳ Subtype: compact_boundary" in detailed.splitlines()


def test_stage_exporter_writes_section_file(session_file: Path, tmp_path: Path):
    view = _raw_view(session_file)
    exporter = StageExporter(output_dir=tmp_path / "exports")

    path = exporter.export_section(view, view.get_sections()[1])
    assert path == tmp_path / "exports" / f"section-{SESSION_ID[:8]}-2.md"
    lines = path.read_text(encoding="utf-8").splitlines()
    assert lines[:4] == [
        "# How do I fix the failing test?",
        f"Session: {SESSION_ID}",
        "Stage 2/2: Compaction",
        "",
    ]
    assert lines[4] == "## Stage 2: Compaction"


def test_stage_exporter_writes_all_sections(session_file: Path, tmp_path: Path):
    view = _raw_view(session_file, session_id=None)
    exporter = StageExporter(output_dir=tmp_path / "nested" / "exports", include_metadata=True)

    path = exporter.export_all(view)
    assert path.name == "sections-session.md"
    text = path.read_text(encoding="utf-8")
    assert "Session: unknown" in text
    assert "Stages: 2" in text
    assert "## Stage 1: Snapshot (0 files)" in text
    assert "## Stage 2: Compaction" in text
    assert "  ↳ Model: claude-sonnet-4-5" in text


def test_output_auto_dir(tmp_path: Path):
    assert output_auto_dir(tmp_path, session_id="abc", filename="x") == tmp_path / "session_abc"
    assert output_auto_dir(tmp_path, session_id=None, filename="a:b") == tmp_path / "a-b"
