from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Literal, Protocol, Sequence

from .entries import Entry, EntryKind, ViewMode, entry_preview, entry_time, is_checkpoint
from .overview import Minimap, OverviewBucket, format_timeline_header, render_minimap
from .thread import (
    DisplayLine,
    LayoutResult,
    Section,
    build_sections,
    clamp_scroll,
    layout_single,
    layout_thread,
    scroll_to_entry,
    section_index_for,
)


logger = logging.getLogger(__name__)


class FocusMode(str, Enum):
    READING = "reading"
    TIMELINE_NAV = "timeline_nav"


class LayoutMode(str, Enum):
    THREAD = "thread"
    SINGLE = "single"


class PreviewPosition(str, Enum):
    TOP = "top"
    MIDDLE = "middle"
    BOTTOM = "bottom"


class CommandName(str, Enum):
    NEXT = "next"
    PREV = "prev"
    NEXT_USER = "next-user"
    PREV_USER = "prev-user"
    TOGGLE_VIEW = "toggle-view"
    TOGGLE_LAYOUT = "toggle-layout"
    TOGGLE_FOCUS = "toggle-focus"
    MOVE_SELECTION = "move-selection"
    CONFIRM_SELECTION = "confirm-selection"
    JUMP_CHECKPOINT = "jump-checkpoint"
    TOGGLE_COLLAPSE = "toggle-collapse"
    TOGGLE_COLLAPSE_ALL = "toggle-collapse-all"
    TOGGLE_CHECKPOINT_ONLY = "toggle-checkpoint-only"
    CYCLE_PREVIEW_POSITION = "cycle-preview-position"
    SCROLL_UP = "scroll-up"
    SCROLL_DOWN = "scroll-down"
    EXPORT_CURRENT_SECTION = "export-current-section"
    EXPORT_ALL_SECTIONS = "export-all-sections"


Direction = Literal["next", "prev"]

_COMMAND_RE = re.compile(r"^\s*(?P<name>[a-z-]+)\s*(?:\(\s*(?P<arg>[^)]*)\s*\))?\s*$")


@dataclass(frozen=True)
class Command:
    name: CommandName
    delta: int = 1
    direction: Direction = "next"

    @classmethod
    def parse(cls, text: str) -> Command:
        """Parse ``"next"``, ``"move-selection(-1)"`` or ``"jump-checkpoint(prev)"``."""
        match = _COMMAND_RE.match(text)
        if not match:
            raise ValueError(f"unrecognized command: {text!r}")
        name = CommandName(match.group("name"))
        arg = (match.group("arg") or "").strip()
        if not arg:
            return cls(name)
        if arg in ("next", "prev"):
            return cls(name, direction=arg)
        try:
            return cls(name, delta=int(arg))
        except ValueError:
            raise ValueError(f"bad argument for {name.value}: {arg!r}") from None


class EntrySource(Protocol):
    def get_active_entries(self, view_mode: ViewMode) -> Sequence[Entry]: ...

    def get_raw_entries(self) -> Sequence[Entry]: ...


@dataclass(frozen=True)
class TimelineView:
    """Read-only view of the timeline entries and their sections, handed to exporters."""

    entries: Sequence[Entry]
    sections: Sequence[Section]
    title: str = "Conversation"
    session_id: str | None = None

    def get_sections(self) -> list[Section]:
        return list(self.sections)

    def get_entries_in_range(self, start: int, end: int) -> list[Entry]:
        if not self.entries:
            return []
        start = max(start, 0)
        end = min(end, len(self.entries) - 1)
        return list(self.entries[start : end + 1])


class SectionExporter(Protocol):
    def export_section(self, view: TimelineView, section: Section) -> Path: ...

    def export_all(self, view: TimelineView) -> Path: ...


@dataclass(frozen=True)
class Viewport:
    width: int = 80
    height: int = 24

    @property
    def sidebar_width(self) -> int:
        return max(20, min(28, math.floor(self.width * 0.32)))

    @property
    def content_width(self) -> int:
        return max(28, self.width - self.sidebar_width - 4)

    @property
    def available_height(self) -> int:
        # Six header rows and three footer rows around the body.
        return max(8, self.height - 9)

    @property
    def wrap_width(self) -> int:
        return self.content_width


@dataclass(frozen=True)
class NavigationContext:
    source: EntrySource
    viewport: Viewport = field(default_factory=Viewport)
    exporter: SectionExporter | None = None
    title: str = "Conversation"
    session_id: str | None = None

    def entries(self, state: ViewState) -> Sequence[Entry]:
        return self.source.get_active_entries(state.view_mode)

    def raw_entries(self) -> Sequence[Entry]:
        return self.source.get_raw_entries()

    def timeline_entries(self, state: ViewState) -> Sequence[Entry]:
        raw = self.raw_entries()
        return raw if raw else self.entries(state)

    def timeline_is_active(self, state: ViewState) -> bool:
        return state.view_mode is ViewMode.RAW or not self.raw_entries()


@dataclass(frozen=True)
class ViewState:
    active_index: int = 0
    scroll_offset: int = 0
    collapsed_sections: frozenset[int] = frozenset()
    checkpoint_only: bool = False
    focus_mode: FocusMode = FocusMode.READING
    timeline_selection: int = 0
    view_mode: ViewMode = ViewMode.CLEAN
    preview_position: PreviewPosition = PreviewPosition.TOP
    layout_mode: LayoutMode = LayoutMode.THREAD
    status_text: str = ""


@dataclass(frozen=True)
class RenderSnapshot:
    state: ViewState
    header: str
    lines: tuple[DisplayLine, ...]
    layout: LayoutResult
    minimap: tuple[OverviewBucket, ...]
    minimap_header: str
    minimap_lines: tuple[DisplayLine, ...]
    status_text: str


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(value, high))


def _same_entry(source: Entry, target: Entry) -> bool:
    return target.id in source.aliases or source.id in target.aliases


def _find_by_id(entries: Sequence[Entry], wanted: Entry) -> int | None:
    for index, entry in enumerate(entries):
        if entry.id == wanted.id:
            return index
    for index, entry in enumerate(entries):
        if _same_entry(wanted, entry):
            return index
    return None


def map_index(source: Sequence[Entry], index: int, target: Sequence[Entry]) -> int | None:
    """Map a cursor from one entry view onto another.

    Prefers an id match, then the first target entry at or after the source
    entry's time, then the last target entry. Returns ``None`` only when the
    target view is empty.
    """
    if not target:
        return None
    if not source:
        return _clamp(index, 0, len(target) - 1)

    entry = source[_clamp(index, 0, len(source) - 1)]
    found = _find_by_id(target, entry)
    if found is not None:
        return found

    when = entry_time(entry)
    for position, candidate in enumerate(target):
        if entry_time(candidate) >= when:
            return position
    return len(target) - 1


def _layout(state: ViewState, context: NavigationContext, entries: Sequence[Entry]) -> LayoutResult:
    width = context.viewport.wrap_width
    if state.layout_mode is LayoutMode.SINGLE:
        return layout_single(entries, state.active_index, width)
    return layout_thread(entries, build_sections(entries), state, width)


def _scroll_for(
    state: ViewState,
    context: NavigationContext,
    target: int,
    *,
    align: Literal["top", "bottom"] = "bottom",
) -> int:
    entries = context.entries(state)
    layout = _layout(state, context, entries)
    return scroll_to_entry(layout, target, context.viewport.available_height, align)


def _timeline_index(state: ViewState, context: NavigationContext) -> int:
    if context.timeline_is_active(state):
        return state.active_index
    mapped = map_index(context.entries(state), state.active_index, context.timeline_entries(state))
    return mapped if mapped is not None else 0


def _selection_for(state: ViewState, context: NavigationContext) -> int:
    sections = build_sections(context.timeline_entries(state))
    position = section_index_for(sections, _timeline_index(state, context))
    return position if position is not None else 0


def timeline_view(state: ViewState, context: NavigationContext) -> TimelineView:
    entries = context.timeline_entries(state)
    return TimelineView(
        entries=entries,
        sections=build_sections(entries),
        title=context.title,
        session_id=context.session_id,
    )


def _status(state: ViewState, text: str) -> ViewState:
    return replace(state, status_text=text)


def _move_to(
    state: ViewState,
    context: NavigationContext,
    index: int,
    status: str | None = None,
) -> ViewState:
    entries = context.entries(state)
    safe = _clamp(index, 0, len(entries) - 1) if entries else 0

    collapsed = state.collapsed_sections
    if state.layout_mode is LayoutMode.THREAD:
        sections = build_sections(entries)
        position = section_index_for(sections, safe)
        if position is not None and sections[position].id in collapsed:
            collapsed = collapsed - {sections[position].id}

    moved = replace(state, active_index=safe, collapsed_sections=collapsed)
    moved = replace(moved, scroll_offset=_scroll_for(moved, context, safe))
    if moved.focus_mode is FocusMode.READING:
        moved = replace(moved, timeline_selection=_selection_for(moved, context))
    if status is not None:
        moved = replace(moved, status_text=status)
    return moved


def _step(state: ViewState, context: NavigationContext, delta: int) -> ViewState:
    return _move_to(state, context, state.active_index + delta)


def _step_user(state: ViewState, context: NavigationContext, direction: Direction) -> ViewState:
    entries = context.entries(state)
    if direction == "next":
        candidates = range(state.active_index + 1, len(entries))
    else:
        candidates = range(min(state.active_index, len(entries)) - 1, -1, -1)
    for index in candidates:
        if entries[index].kind is EntryKind.USER:
            return _move_to(state, context, index)
    return _status(state, "No more user messages")


def _switch_to_raw(state: ViewState, context: NavigationContext, index: int, status: str) -> ViewState:
    raw_state = replace(state, view_mode=ViewMode.RAW)
    return _move_to(raw_state, context, index, status)


def _jump_checkpoint(state: ViewState, context: NavigationContext, direction: Direction) -> ViewState:
    timeline = context.timeline_entries(state)
    checkpoints = [i for i, entry in enumerate(timeline) if is_checkpoint(entry)]
    if not checkpoints:
        return _status(state, "No checkpoints in this conversation")

    current = _timeline_index(state, context)
    if direction == "next":
        target = next((i for i in checkpoints if i > current), None)
    else:
        target = next((i for i in reversed(checkpoints) if i < current), None)
    if target is None:
        return _status(state, "No later checkpoint" if direction == "next" else "No earlier checkpoint")

    if context.timeline_is_active(state):
        return _move_to(state, context, target, "Jumped to checkpoint")

    entries = context.entries(state)
    match = _find_by_id(entries, timeline[target])
    if match is not None:
        return _move_to(state, context, match, "Jumped to checkpoint")

    if state.view_mode is not ViewMode.RAW and context.raw_entries():
        return _switch_to_raw(state, context, target, "Switched to raw view for checkpoint")

    mapped = map_index(timeline, target, entries)
    if mapped is None:
        return _status(state, "Checkpoint not available in current view")
    return _move_to(state, context, mapped, "Jumped to checkpoint")


def _toggle_view(state: ViewState, context: NavigationContext) -> ViewState:
    raw = context.raw_entries()
    if not raw:
        return _status(state, "No raw entries available for this conversation")

    next_mode = ViewMode.CLEAN if state.view_mode is ViewMode.RAW else ViewMode.RAW
    current = context.entries(state)
    switched = replace(state, view_mode=next_mode)
    target_entries = context.entries(switched)
    mapped = map_index(current, state.active_index, target_entries)
    index = mapped if mapped is not None else 0
    label = "raw" if next_mode is ViewMode.RAW else "clean"
    return _move_to(switched, context, index, f"Switched to {label} transcript view")


def _toggle_layout(state: ViewState, context: NavigationContext) -> ViewState:
    if state.layout_mode is LayoutMode.THREAD:
        next_layout, status = LayoutMode.SINGLE, "Switched to single-message view"
    else:
        next_layout, status = LayoutMode.THREAD, "Switched to thread view"
    return _move_to(replace(state, layout_mode=next_layout), context, state.active_index, status)


def _toggle_collapse(state: ViewState, context: NavigationContext) -> ViewState:
    if state.layout_mode is not LayoutMode.THREAD:
        return _status(state, "Collapse available in thread view only")
    sections = build_sections(context.entries(state))
    position = section_index_for(sections, state.active_index)
    if position is None:
        return state

    section = sections[position]
    collapsing = section.id not in state.collapsed_sections
    if collapsing:
        collapsed = state.collapsed_sections | {section.id}
    else:
        collapsed = state.collapsed_sections - {section.id}
    updated = replace(state, collapsed_sections=collapsed)
    target = section.start_index if collapsing else state.active_index
    return replace(
        updated,
        scroll_offset=_scroll_for(updated, context, target),
        status_text="Section collapsed" if collapsing else "Section expanded",
    )


def _toggle_collapse_all(state: ViewState, context: NavigationContext) -> ViewState:
    if state.layout_mode is not LayoutMode.THREAD:
        return _status(state, "Collapse available in thread view only")
    sections = build_sections(context.entries(state))
    if not sections:
        return state

    ids = frozenset(section.id for section in sections)
    collapsing = not ids <= state.collapsed_sections
    collapsed = state.collapsed_sections | ids if collapsing else state.collapsed_sections - ids
    updated = replace(state, collapsed_sections=collapsed)
    return replace(
        updated,
        scroll_offset=_scroll_for(updated, context, state.active_index),
        status_text="All sections collapsed" if collapsing else "All sections expanded",
    )


def _toggle_checkpoint_only(state: ViewState, context: NavigationContext) -> ViewState:
    if state.layout_mode is not LayoutMode.THREAD:
        return _status(state, "Checkpoint-only view is available in thread view only")
    enabled = not state.checkpoint_only
    updated = replace(state, checkpoint_only=enabled)
    return replace(
        updated,
        scroll_offset=_scroll_for(updated, context, state.active_index),
        status_text="Checkpoint-only view enabled" if enabled else "Checkpoint-only view disabled",
    )


def _toggle_focus(state: ViewState, context: NavigationContext) -> ViewState:
    if state.layout_mode is not LayoutMode.THREAD:
        return _status(state, "Timeline focus is available in thread view only")
    if state.focus_mode is FocusMode.TIMELINE_NAV:
        return replace(state, focus_mode=FocusMode.READING, status_text="Timeline focus off")
    return replace(
        state,
        focus_mode=FocusMode.TIMELINE_NAV,
        timeline_selection=_selection_for(state, context),
        status_text="Timeline focus on (j/k or ↑/↓ to move, Enter to jump)",
    )


def _move_selection(state: ViewState, context: NavigationContext, delta: int) -> ViewState:
    if state.focus_mode is not FocusMode.TIMELINE_NAV:
        return state
    sections = build_sections(context.timeline_entries(state))
    if not sections:
        return _status(state, "No timeline sections available")
    selection = _clamp(state.timeline_selection + delta, 0, len(sections) - 1)
    return replace(state, timeline_selection=selection)


def _confirm_selection(state: ViewState, context: NavigationContext) -> ViewState:
    timeline = context.timeline_entries(state)
    sections = build_sections(timeline)
    if not sections:
        return _status(state, "No timeline sections available")

    section = sections[_clamp(state.timeline_selection, 0, len(sections) - 1)]
    target = section.checkpoint_index if section.checkpoint_index is not None else section.start_index

    if context.timeline_is_active(state):
        return _move_to(state, context, target, f"Jumped to {section.title}")

    mapped = map_index(timeline, target, context.entries(state))
    if mapped is not None:
        return _move_to(state, context, mapped, f"Jumped to {section.title}")

    if state.view_mode is not ViewMode.RAW and context.raw_entries():
        return _switch_to_raw(state, context, target, f"Switched to raw view: {section.title}")

    return _status(state, "Selected section is not available in the current view")


def _cycle_preview(state: ViewState) -> ViewState:
    order = list(PreviewPosition)
    position = order[(order.index(state.preview_position) + 1) % len(order)]
    return replace(state, preview_position=position, status_text=f"Preview position: {position.value}")


def _scroll(state: ViewState, context: NavigationContext, delta: int) -> ViewState:
    layout = _layout(state, context, context.entries(state))
    offset = clamp_scroll(layout, state.scroll_offset + delta, context.viewport.available_height)
    return replace(state, scroll_offset=offset)


def _export(state: ViewState, context: NavigationContext, *, everything: bool) -> ViewState:
    if context.exporter is None:
        return _status(state, "Export is not available")
    view = timeline_view(state, context)
    if not view.sections:
        return _status(state, "No sections available to export")

    if everything:
        try:
            path = context.exporter.export_all(view)
        except OSError as exc:
            logger.warning("stage export failed: %s", exc)
            return _status(state, f"Failed to export stages: {exc}")
        return _status(state, f"Exported {len(view.sections)} stages to {path}")

    position = section_index_for(view.sections, _timeline_index(state, context)) or 0
    section = view.sections[position]
    try:
        path = context.exporter.export_section(view, section)
    except OSError as exc:
        logger.warning("stage export failed: %s", exc)
        return _status(state, f"Failed to export stage: {exc}")
    return _status(state, f"Exported stage {section.id + 1} to {path}")


def normalize(state: ViewState, context: NavigationContext) -> ViewState:
    """Clamp the cursor and scroll offset to the current entries and layout."""
    entries = context.entries(state)
    index = _clamp(state.active_index, 0, len(entries) - 1) if entries else 0
    if index != state.active_index:
        state = replace(state, active_index=index)
    layout = _layout(state, context, entries)
    offset = clamp_scroll(layout, state.scroll_offset, context.viewport.available_height)
    if offset != state.scroll_offset:
        state = replace(state, scroll_offset=offset)
    return state


def initial_state(context: NavigationContext) -> ViewState:
    state = ViewState()
    entries = context.entries(state)
    state = replace(state, active_index=max(0, len(entries) - 1))
    return replace(state, timeline_selection=_selection_for(state, context))


def apply_command(state: ViewState, command: Command, context: NavigationContext) -> ViewState:
    name = command.name
    if name is CommandName.NEXT:
        updated = _step(state, context, 1)
    elif name is CommandName.PREV:
        updated = _step(state, context, -1)
    elif name is CommandName.NEXT_USER:
        updated = _step_user(state, context, "next")
    elif name is CommandName.PREV_USER:
        updated = _step_user(state, context, "prev")
    elif name is CommandName.TOGGLE_VIEW:
        updated = _toggle_view(state, context)
    elif name is CommandName.TOGGLE_LAYOUT:
        updated = _toggle_layout(state, context)
    elif name is CommandName.TOGGLE_FOCUS:
        updated = _toggle_focus(state, context)
    elif name is CommandName.MOVE_SELECTION:
        updated = _move_selection(state, context, command.delta)
    elif name is CommandName.CONFIRM_SELECTION:
        updated = _confirm_selection(state, context)
    elif name is CommandName.JUMP_CHECKPOINT:
        updated = _jump_checkpoint(state, context, command.direction)
    elif name is CommandName.TOGGLE_COLLAPSE:
        updated = _toggle_collapse(state, context)
    elif name is CommandName.TOGGLE_COLLAPSE_ALL:
        updated = _toggle_collapse_all(state, context)
    elif name is CommandName.TOGGLE_CHECKPOINT_ONLY:
        updated = _toggle_checkpoint_only(state, context)
    elif name is CommandName.CYCLE_PREVIEW_POSITION:
        updated = _cycle_preview(state)
    elif name is CommandName.SCROLL_UP:
        updated = _scroll(state, context, -abs(command.delta))
    elif name is CommandName.SCROLL_DOWN:
        updated = _scroll(state, context, abs(command.delta))
    elif name is CommandName.EXPORT_CURRENT_SECTION:
        updated = _export(state, context, everything=False)
    elif name is CommandName.EXPORT_ALL_SECTIONS:
        updated = _export(state, context, everything=True)
    else:
        raise ValueError(f"unhandled command: {name}")

    updated = normalize(updated, context)
    logger.debug(
        "%s: index %d->%d scroll %d->%d view=%s layout=%s focus=%s status=%r",
        name.value,
        state.active_index,
        updated.active_index,
        state.scroll_offset,
        updated.scroll_offset,
        updated.view_mode.value,
        updated.layout_mode.value,
        updated.focus_mode.value,
        updated.status_text,
    )
    return updated


def render(state: ViewState, context: NavigationContext) -> RenderSnapshot:
    entries = context.entries(state)
    layout = _layout(state, context, entries)
    height = context.viewport.available_height
    offset = clamp_scroll(layout, state.scroll_offset, height)
    visible = layout.lines[offset : offset + height]

    timeline = context.timeline_entries(state)
    sections = build_sections(timeline)
    timeline_index = _timeline_index(state, context)
    preview = entry_preview(entries[state.active_index]) if entries else ""
    focused = state.focus_mode is FocusMode.TIMELINE_NAV
    minimap: Minimap = render_minimap(
        timeline,
        sections,
        height=height - 1,
        width=context.viewport.sidebar_width,
        cursor_index=timeline_index,
        cursor_total=len(timeline),
        section_index=section_index_for(sections, timeline_index),
        preview=preview,
        preview_position=state.preview_position.value,
        focused=focused,
        selection_index=state.timeline_selection if focused else None,
    )

    position = f"{state.active_index + 1}/{len(entries)}" if entries else "0/0"
    header = (
        f"{context.title} | {state.view_mode.value} view | "
        f"{state.layout_mode.value} layout | {position}"
    )
    if state.checkpoint_only:
        header += " | checkpoints only"

    return RenderSnapshot(
        state=state,
        header=header,
        lines=tuple(visible),
        layout=layout,
        minimap=minimap.buckets,
        minimap_header=format_timeline_header(
            context.viewport.sidebar_width,
            focused=focused,
            preview_position=state.preview_position.value,
        ),
        minimap_lines=minimap.lines,
        status_text=state.status_text,
    )


class NavigationController:
    """Holds the current view state and applies commands to it."""

    def __init__(
        self,
        source: EntrySource,
        *,
        viewport: Viewport | None = None,
        exporter: SectionExporter | None = None,
        title: str = "Conversation",
        session_id: str | None = None,
    ) -> None:
        self.context = NavigationContext(
            source=source,
            viewport=viewport or Viewport(),
            exporter=exporter,
            title=title,
            session_id=session_id,
        )
        self.state = initial_state(self.context)

    def dispatch(self, command: Command | CommandName | str) -> ViewState:
        if isinstance(command, str) and not isinstance(command, CommandName):
            command = Command.parse(command)
        elif isinstance(command, CommandName):
            command = Command(command)
        self.state = apply_command(self.state, command, self.context)
        return self.state

    def resize(self, width: int, height: int) -> None:
        self.context = replace(self.context, viewport=Viewport(width=width, height=height))
        self.state = normalize(self.state, self.context)

    def render(self) -> RenderSnapshot:
        return render(self.state, self.context)

    def get_sections(self) -> list[Section]:
        return timeline_view(self.state, self.context).get_sections()

    def get_entries_in_range(self, start: int, end: int) -> list[Entry]:
        return timeline_view(self.state, self.context).get_entries_in_range(start, end)
