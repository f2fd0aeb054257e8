from __future__ import annotations

from pathlib import Path

import pytest

from talk_transcripts.entries import EntryKind
from talk_transcripts.navigation import Command, CommandName, FocusMode
from talk_transcripts.thread import DisplayLine, StyleHint
from talk_transcripts.transcript import StageExporter
from talk_transcripts.tui import ConversationNavigatorApp, command_for_key, lines_to_text


@pytest.mark.parametrize(
    ("key", "reading", "timeline"),
    [
        ("j", Command(CommandName.NEXT), Command(CommandName.MOVE_SELECTION, delta=1)),
        ("down", Command(CommandName.NEXT), Command(CommandName.MOVE_SELECTION, delta=1)),
        ("k", Command(CommandName.PREV), Command(CommandName.MOVE_SELECTION, delta=-1)),
        ("up", Command(CommandName.PREV), Command(CommandName.MOVE_SELECTION, delta=-1)),
    ],
)
def test_movement_keys_depend_on_focus(key, reading, timeline):
    assert command_for_key(key, FocusMode.READING) == reading
    assert command_for_key(key, FocusMode.TIMELINE_NAV) == timeline


def test_command_keys():
    assert command_for_key("[", FocusMode.READING) == Command(CommandName.JUMP_CHECKPOINT, direction="prev")
    assert command_for_key("n", FocusMode.READING) == Command(CommandName.JUMP_CHECKPOINT, direction="next")
    assert command_for_key("U", FocusMode.TIMELINE_NAV) == Command(CommandName.PREV_USER)
    assert command_for_key("tab", FocusMode.READING).name is CommandName.TOGGLE_FOCUS
    assert command_for_key("E", FocusMode.READING).name is CommandName.EXPORT_ALL_SECTIONS
    assert command_for_key("pagedown", FocusMode.READING) == Command(CommandName.SCROLL_DOWN, delta=10)
    assert command_for_key("x", FocusMode.READING) is None


def test_lines_to_text_styles_by_kind():
    text = lines_to_text(
        [
            DisplayLine("▶ 👤 User", StyleHint.ROLE, EntryKind.USER, True),
            DisplayLine("> body", StyleHint.DIM),
            DisplayLine("== Stage ==", StyleHint.EMPHASIS),
        ]
    )
    assert text.plain == "▶ 👤 User\n> body\n== Stage =="
    styles = [str(span.style) for span in text.spans]
    assert styles == ["bold green", "dim", "bold"]


def test_lines_to_text_keeps_brackets_literal():
    text = lines_to_text([DisplayLine("[bold]not markup[/bold]", StyleHint.NORMAL)])
    assert text.plain == "[bold]not markup[/bold]"


def test_app_builds_stage_exporter(tmp_path: Path):
    app = ConversationNavigatorApp(
        session_path=tmp_path / "s.jsonl", export_dir=tmp_path / "out", include_metadata=True
    )
    assert app._exporter == StageExporter(output_dir=tmp_path / "out", include_metadata=True)

    default = ConversationNavigatorApp(session_path=tmp_path / "s.jsonl")
    assert default._exporter.output_dir == Path.cwd() / "exports"


def test_paint_before_mount_is_a_no_op(tmp_path: Path):
    app = ConversationNavigatorApp(session_path=tmp_path / "s.jsonl")
    assert app._paint() is None
