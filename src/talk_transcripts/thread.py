from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Literal, Sequence

from .entries import (
    Entry,
    EntryKind,
    checkpoint_title,
    entry_label,
    entry_metadata_lines,
    format_clock,
    is_checkpoint,
)

if TYPE_CHECKING:
    from .navigation import ViewState


# Every body line is prefixed with "| " (or "> " for the active entry).
BODY_GUTTER = 2

ScrollAlign = Literal["top", "bottom"]


class StyleHint(str, Enum):
    NORMAL = "normal"
    DIM = "dim"
    EMPHASIS = "emphasis"
    ROLE = "role"


@dataclass(frozen=True)
class Section:
    id: int
    title: str
    start_index: int
    end_index: int
    checkpoint_index: int | None

    def contains(self, index: int) -> bool:
        return self.start_index <= index <= self.end_index


@dataclass(frozen=True)
class DisplayLine:
    text: str
    style: StyleHint = StyleHint.NORMAL
    kind: EntryKind | None = None
    bold: bool = False


@dataclass(frozen=True)
class LayoutResult:
    lines: tuple[DisplayLine, ...]
    entry_line_start: tuple[int, ...]


EMPTY_LAYOUT = LayoutResult(lines=(), entry_line_start=())

_DIM_BODY_KINDS = {EntryKind.TOOL_RESULT, EntryKind.SYSTEM}
_COLORED_BODY_KINDS = {
    EntryKind.TOOL_RESULT,
    EntryKind.SYSTEM,
    EntryKind.FILE_SNAPSHOT,
    EntryKind.SUMMARY,
}


def wrap_text(text: str, width: int) -> list[str]:
    """Greedy word wrap that leaves room for the body gutter.

    Newlines are hard breaks (blank paragraphs survive as ""). A word longer
    than the available width is kept whole on its own line.
    """
    if not text:
        return []
    budget = max(1, width - BODY_GUTTER)
    lines: list[str] = []
    for paragraph in text.split("\n"):
        if len(paragraph) <= budget:
            lines.append(paragraph)
            continue
        if not paragraph.split():
            lines.append("")
            continue
        current = ""
        for word in paragraph.split():
            if not current:
                current = word
            elif len(current) + 1 + len(word) <= budget:
                current = f"{current} {word}"
            else:
                lines.append(current)
                current = word
        if current:
            lines.append(current)
    return lines


def build_sections(entries: Sequence[Entry]) -> list[Section]:
    if not entries:
        return []

    sections: list[Section] = []
    start = 0
    title = "Start"
    checkpoint: int | None = None

    for index, entry in enumerate(entries):
        if not is_checkpoint(entry):
            continue
        if index == start:
            title = checkpoint_title(entry)
            checkpoint = index
            continue
        sections.append(
            Section(
                id=len(sections),
                title=title,
                start_index=start,
                end_index=index - 1,
                checkpoint_index=checkpoint,
            )
        )
        start = index
        title = checkpoint_title(entry)
        checkpoint = index

    sections.append(
        Section(
            id=len(sections),
            title=title,
            start_index=start,
            end_index=len(entries) - 1,
            checkpoint_index=checkpoint,
        )
    )
    return sections


def section_index_for(sections: Sequence[Section], index: int) -> int | None:
    for position, section in enumerate(sections):
        if section.contains(index):
            return position
    return None


def _entry_lines(entry: Entry, *, width: int, active: bool) -> list[DisplayLine]:
    marker = "▶" if active else " "
    lines = [
        DisplayLine(
            text=f"{marker} {entry_label(entry)} {format_clock(entry)}",
            style=StyleHint.ROLE,
            kind=entry.kind,
            bold=active,
        )
    ]

    prefix = ">" if active else "|"
    body_style = StyleHint.DIM if entry.kind in _DIM_BODY_KINDS else StyleHint.NORMAL
    body_kind = entry.kind if entry.kind in _COLORED_BODY_KINDS else None
    for line in wrap_text(entry.body, width):
        lines.append(DisplayLine(text=f"{prefix} {line}", style=body_style, kind=body_kind))

    for meta in entry_metadata_lines(entry):
        lines.append(DisplayLine(text=f"  ↳ {meta}", style=StyleHint.DIM))
    return lines


def layout_thread(
    entries: Sequence[Entry],
    sections: Sequence[Section],
    state: ViewState,
    width: int,
) -> LayoutResult:
    if not entries:
        return EMPTY_LAYOUT

    lines: list[DisplayLine] = []
    starts = [0] * len(entries)
    active_index = state.active_index

    def push_entry(index: int) -> None:
        starts[index] = len(lines)
        lines.extend(_entry_lines(entries[index], width=width, active=index == active_index))

    for section in sections:
        collapsed = section.id in state.collapsed_sections
        active = section.contains(active_index)
        header_line = len(lines)
        icon = "○" if section.checkpoint_index is None else "◆"
        toggle = "+" if collapsed else "-"
        lines.append(
            DisplayLine(
                text=f"{'▶' if active else ' '} {icon} {toggle} {section.title}",
                style=StyleHint.EMPHASIS if active else StyleHint.DIM,
                bold=active,
            )
        )

        if state.checkpoint_only or collapsed:
            for index in range(section.start_index, section.end_index + 1):
                starts[index] = header_line
            if state.checkpoint_only and not collapsed and section.checkpoint_index is not None:
                push_entry(section.checkpoint_index)
                # Hidden entries after the checkpoint share its label line.
                for index in range(section.checkpoint_index + 1, section.end_index + 1):
                    starts[index] = starts[section.checkpoint_index]
            lines.append(DisplayLine(text=""))
            continue

        for index in range(section.start_index, section.end_index + 1):
            push_entry(index)
            if index < section.end_index:
                lines.append(DisplayLine(text=""))
        lines.append(DisplayLine(text=""))

    return LayoutResult(lines=tuple(lines), entry_line_start=tuple(starts))


def layout_single(entries: Sequence[Entry], active_index: int, width: int) -> LayoutResult:
    if not entries:
        return EMPTY_LAYOUT
    index = min(max(active_index, 0), len(entries) - 1)
    lines = _entry_lines(entries[index], width=width, active=True)
    return LayoutResult(lines=tuple(lines), entry_line_start=tuple(0 for _ in entries))


def max_scroll(layout: LayoutResult, height: int) -> int:
    return max(0, len(layout.lines) - max(1, height))


def clamp_scroll(layout: LayoutResult, offset: int, height: int) -> int:
    return min(max(offset, 0), max_scroll(layout, height))


def scroll_to_entry(
    layout: LayoutResult,
    target: int,
    height: int,
    align: ScrollAlign = "bottom",
) -> int:
    if not layout.entry_line_start or not layout.lines:
        return 0
    target = min(max(target, 0), len(layout.entry_line_start) - 1)
    start = layout.entry_line_start[target]
    if align == "top":
        return clamp_scroll(layout, start, height)
    return clamp_scroll(layout, start - (max(1, height) - 1), height)
