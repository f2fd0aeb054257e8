from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

from .entries import Entry, EntryKind, checkpoint_title, is_checkpoint, snapshot_file_count
from .thread import DisplayLine, Section, StyleHint


MIN_MINIMAP_WIDTH = 14
PREVIEW_MIN_ROWS = 6

PREVIEW_INSERT_AFTER = {"top": 0, "middle": 1, "bottom": 2}


@dataclass(frozen=True)
class OverviewBucket:
    start_index: int
    end_index: int
    count: int
    has_checkpoint: bool
    has_file_snapshot: bool
    label: str | None


@dataclass(frozen=True)
class TimelineStats:
    entries: int
    checkpoints: int
    files: int


@dataclass(frozen=True)
class Minimap:
    lines: tuple[DisplayLine, ...]
    buckets: tuple[OverviewBucket, ...]
    cursor_row: int
    header_rows: int


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _row_for(index: int, total: int, height: int) -> int:
    if height <= 1 or total <= 1:
        return 0
    clamped = min(max(index, 0), total - 1)
    row = _round_half_up(clamped * (height - 1) / (total - 1))
    return min(max(row, 0), height - 1)


def bucketize(entries: Sequence[Entry], height: int) -> list[OverviewBucket]:
    height = max(1, height)
    counts = [0] * height
    starts: list[int | None] = [None] * height
    ends = [0] * height
    checkpoints = [False] * height
    files = [False] * height
    labels: list[str | None] = [None] * height

    total = len(entries)
    for index, entry in enumerate(entries):
        row = _row_for(index, total, height)
        counts[row] += 1
        if starts[row] is None:
            starts[row] = index
        ends[row] = index
        if is_checkpoint(entry):
            checkpoints[row] = True
            if labels[row] is None:
                labels[row] = checkpoint_title(entry)
        if entry.kind is EntryKind.FILE_SNAPSHOT:
            files[row] = True

    return [
        OverviewBucket(
            start_index=starts[row] if starts[row] is not None else 0,
            end_index=ends[row],
            count=counts[row],
            has_checkpoint=checkpoints[row],
            has_file_snapshot=files[row],
            label=labels[row],
        )
        for row in range(height)
    ]


def bucket_marker(bucket: OverviewBucket) -> str:
    if bucket.has_checkpoint:
        return "◆"
    if bucket.has_file_snapshot:
        return "■"
    if bucket.count >= 6:
        return "#"
    if bucket.count >= 3:
        return ":"
    if bucket.count >= 1:
        return "."
    return " "


def position_for_entry(index: int, total: int, height: int) -> int:
    return _row_for(index, total, height)


def position_label(index: int, total: int) -> str:
    if total <= 0:
        return "0/0"
    position = min(max(index, 0), total - 1) + 1
    percent = _round_half_up(position / total * 100)
    return f"{position}/{total} ({percent}%)"


def timeline_stats(entries: Sequence[Entry]) -> TimelineStats:
    checkpoints = sum(1 for e in entries if is_checkpoint(e))
    files = sum(snapshot_file_count(e) for e in entries)
    return TimelineStats(entries=len(entries), checkpoints=checkpoints, files=files)


def format_timeline_row(
    rail: str,
    track: str,
    marker: str,
    label: str,
    width: int,
    prefix: str = " ",
) -> str:
    base = f"{prefix}{rail} {track}{marker} "
    label_width = max(0, width - len(base))
    if len(label) > label_width:
        label = label[: max(0, label_width - 1)] + "…"
    return base + label.ljust(label_width)


def format_timeline_header(width: int, *, focused: bool, preview_position: str) -> str:
    preview = "MID" if preview_position == "middle" else preview_position.upper()
    mode = "NAV" if focused else "READ"
    return format_timeline_row(
        " ", " ", " ", f"Timeline [{mode}] P:{preview} ●cur ◆cp ■file", max(MIN_MINIMAP_WIDTH, width)
    )


def _text_row(label: str, width: int, style: StyleHint = StyleHint.DIM, *, bold: bool = False) -> DisplayLine:
    return DisplayLine(text=format_timeline_row(" ", " ", " ", label, width), style=style, bold=bold)


def render_minimap(
    entries: Sequence[Entry],
    sections: Sequence[Section],
    *,
    height: int,
    width: int,
    cursor_index: int,
    cursor_total: int,
    section_index: int | None,
    preview: str = "",
    preview_position: str = "top",
    focused: bool = False,
    selection_index: int | None = None,
) -> Minimap:
    """Render the minimap column as exactly ``height`` display lines.

    The cursor position is computed from ``cursor_index``/``cursor_total``,
    which may describe a different entry view than ``entries`` (the minimap
    always shows the timeline view).
    """
    height = max(1, height)
    width = max(MIN_MINIMAP_WIDTH, width)

    if not entries:
        buckets = bucketize(entries, height)
        blank = DisplayLine(text=format_timeline_row(" ", " ", " ", "", width), style=StyleHint.DIM)
        return Minimap(lines=tuple(blank for _ in range(height)), buckets=tuple(buckets), cursor_row=0, header_rows=0)

    stats = timeline_stats(entries)
    total = max(1, cursor_total)
    cursor = min(max(cursor_index, 0), total - 1)

    active_section: Section | None = None
    active_position = 0
    if sections:
        active_position = min(max(section_index or 0, 0), len(sections) - 1)
        active_section = sections[active_position]

    stage_label = (
        f"Stage {active_position + 1}/{len(sections)}: {active_section.title}"
        if active_section is not None
        else "Stage 0/0: (none)"
    )
    header = [
        _text_row(f"CP {stats.checkpoints} | Files {stats.files} | Msgs {stats.entries}", width),
        _text_row(f"Pos {position_label(cursor, total)}", width, StyleHint.EMPHASIS, bold=True),
        _text_row(stage_label, width, StyleHint.EMPHASIS if active_section else StyleHint.DIM, bold=True),
    ]
    if height - len(header) >= PREVIEW_MIN_ROWS:
        first = (preview or "(empty)").split("\n")[0]
        block = [_text_row("Preview", width), _text_row(first, width, StyleHint.NORMAL)]
        insert_at = PREVIEW_INSERT_AFTER.get(preview_position, 0) + 1
        header[insert_at:insert_at] = block

    if height <= len(header):
        # Too short for a header and a rail: spend every row on buckets.
        header = []

    rows = height - len(header)
    buckets = bucketize(entries, rows)
    cursor_row = position_for_entry(cursor, total, rows)

    highlighted: Section | None = active_section
    if focused and selection_index is not None and sections:
        highlighted = sections[min(max(selection_index, 0), len(sections) - 1)]

    lines = list(header)
    for bucket in buckets:
        in_section = (
            highlighted is not None
            and bucket.count > 0
            and bucket.start_index <= highlighted.end_index
            and bucket.end_index >= highlighted.start_index
        )
        marker = "◆" if bucket.has_checkpoint else "■" if bucket.has_file_snapshot else "•" if bucket.count else " "
        if bucket.has_checkpoint:
            style = StyleHint.EMPHASIS
        elif in_section:
            style = StyleHint.NORMAL
        else:
            style = StyleHint.DIM
        lines.append(
            DisplayLine(
                text=format_timeline_row(
                    bucket_marker(bucket),
                    "║" if in_section else "│",
                    marker,
                    bucket.label if bucket.has_checkpoint and bucket.label else "",
                    width,
                ),
                style=style,
                bold=in_section,
            )
        )

    cursor_label = active_section.title if active_section is not None else "Current"
    lines[len(header) + cursor_row] = DisplayLine(
        text=format_timeline_row(
            bucket_marker(buckets[cursor_row]),
            "┃",
            "●",
            cursor_label,
            width,
            prefix="▶" if focused else " ",
        ),
        style=StyleHint.EMPHASIS,
        bold=True,
    )

    return Minimap(lines=tuple(lines), buckets=tuple(buckets), cursor_row=cursor_row, header_rows=len(header))
