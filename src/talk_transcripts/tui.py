from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

from rich.text import Text
from textual import events
from textual.app import App, ComposeResult
from textual.containers import Horizontal
from textual.widgets import Footer, Static

from .entries import KIND_COLORS
from .navigation import (
    Command,
    CommandName,
    FocusMode,
    NavigationController,
    RenderSnapshot,
    Viewport,
)
from .sessions import SessionParseError, parse_session_file
from .thread import DisplayLine, StyleHint
from .transcript import StageExporter


logger = logging.getLogger(__name__)

# Keys whose command depends on whether the timeline has focus.
_NAV_KEYS: dict[str, tuple[Command, Command]] = {
    "j": (Command(CommandName.NEXT), Command(CommandName.MOVE_SELECTION, delta=1)),
    "down": (Command(CommandName.NEXT), Command(CommandName.MOVE_SELECTION, delta=1)),
    "k": (Command(CommandName.PREV), Command(CommandName.MOVE_SELECTION, delta=-1)),
    "up": (Command(CommandName.PREV), Command(CommandName.MOVE_SELECTION, delta=-1)),
}

KEY_COMMANDS: dict[str, Command] = {
    "u": Command(CommandName.NEXT_USER),
    "U": Command(CommandName.PREV_USER),
    "r": Command(CommandName.TOGGLE_VIEW),
    "v": Command(CommandName.TOGGLE_LAYOUT),
    "t": Command(CommandName.TOGGLE_FOCUS),
    "tab": Command(CommandName.TOGGLE_FOCUS),
    "enter": Command(CommandName.CONFIRM_SELECTION),
    "]": Command(CommandName.JUMP_CHECKPOINT, direction="next"),
    "[": Command(CommandName.JUMP_CHECKPOINT, direction="prev"),
    "n": Command(CommandName.JUMP_CHECKPOINT, direction="next"),
    "p": Command(CommandName.JUMP_CHECKPOINT, direction="prev"),
    "c": Command(CommandName.TOGGLE_COLLAPSE),
    "C": Command(CommandName.TOGGLE_COLLAPSE_ALL),
    "o": Command(CommandName.TOGGLE_CHECKPOINT_ONLY),
    "m": Command(CommandName.CYCLE_PREVIEW_POSITION),
    "pageup": Command(CommandName.SCROLL_UP, delta=10),
    "pagedown": Command(CommandName.SCROLL_DOWN, delta=10),
    "e": Command(CommandName.EXPORT_CURRENT_SECTION),
    "E": Command(CommandName.EXPORT_ALL_SECTIONS),
}

HELP_TEXT = (
    "j/k move · u/U user · [ ] checkpoint · r raw/clean · v layout · t timeline · "
    "c/C collapse · o checkpoints · m preview · e/E export · q quit"
)


def command_for_key(key: str, focus: FocusMode) -> Command | None:
    if key in _NAV_KEYS:
        reading, timeline = _NAV_KEYS[key]
        return timeline if focus is FocusMode.TIMELINE_NAV else reading
    return KEY_COMMANDS.get(key)


def _style_for(line: DisplayLine) -> str:
    parts: list[str] = []
    if line.style is StyleHint.DIM:
        parts.append("dim")
    if line.style is StyleHint.EMPHASIS or line.bold:
        parts.append("bold")
    if line.kind is not None and line.style is not StyleHint.DIM:
        parts.append(KIND_COLORS[line.kind])
    return " ".join(parts)


def lines_to_text(lines: Sequence[DisplayLine]) -> Text:
    text = Text(no_wrap=True, overflow="ellipsis")
    for i, line in enumerate(lines):
        if i:
            text.append("\n")
        text.append(line.text, style=_style_for(line))
    return text


class ConversationNavigatorApp(App):
    CSS = """
    #header { height: 1; background: $primary; color: $text; }
    #main { height: 1fr; }
    #body { width: 1fr; padding: 0 1; }
    #minimap { width: 28; border-left: solid $secondary; }
    #status { height: 1; color: $warning; }
    #help { height: 1; color: $text-muted; }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
    ]

    def __init__(
        self,
        *,
        session_path: Path,
        export_dir: Path | None = None,
        include_metadata: bool = False,
    ) -> None:
        super().__init__()
        self._session_path = session_path
        self._exporter = (
            StageExporter(output_dir=export_dir, include_metadata=include_metadata)
            if export_dir is not None
            else StageExporter(include_metadata=include_metadata)
        )
        self._controller: NavigationController | None = None

    def compose(self) -> ComposeResult:
        yield Static("", id="header")
        with Horizontal(id="main"):
            yield Static("", id="body")
            yield Static("", id="minimap")
        yield Static("", id="status")
        yield Static(HELP_TEXT, id="help")
        yield Footer()

    async def on_mount(self) -> None:
        try:
            conversation, _meta, _stats = parse_session_file(self._session_path)
        except (SessionParseError, OSError) as e:
            logger.error("cannot open %s: %s", self._session_path, e)
            self.exit(message=str(e))
            return
        self._controller = NavigationController(
            conversation,
            viewport=Viewport(width=self.size.width, height=self.size.height),
            exporter=self._exporter,
            title=conversation.title,
            session_id=conversation.session_id,
        )
        self._paint()

    def on_resize(self, event: events.Resize) -> None:
        if self._controller is None:
            return
        self._controller.resize(event.size.width, event.size.height)
        self._paint()

    def on_key(self, event: events.Key) -> None:
        if self._controller is None:
            return
        key = event.character if event.character and event.character.isprintable() else event.key
        command = command_for_key(key, self._controller.state.focus_mode)
        if command is None:
            return
        event.stop()
        self._controller.dispatch(command)
        self._paint()

    def _paint(self) -> None:
        if self._controller is None:
            return
        snapshot: RenderSnapshot = self._controller.render()
        self.query_one("#header", Static).update(Text(snapshot.header))
        self.query_one("#body", Static).update(lines_to_text(snapshot.lines))
        minimap = self.query_one("#minimap", Static)
        minimap.styles.width = self._controller.context.viewport.sidebar_width
        minimap.update(
            lines_to_text([DisplayLine(snapshot.minimap_header, StyleHint.EMPHASIS), *snapshot.minimap_lines])
        )
        self.query_one("#status", Static).update(Text(snapshot.status_text))


def run_tui(
    *,
    session_path: Path,
    export_dir: Path | None = None,
    include_metadata: bool = False,
) -> None:
    app = ConversationNavigatorApp(
        session_path=session_path,
        export_dir=export_dir,
        include_metadata=include_metadata,
    )
    app.run()
