from __future__ import annotations

import json
import logging
import os
import subprocess
from dataclasses import dataclass, field, replace
from typing import Any, Sequence

import click


logger = logging.getLogger(__name__)

GROUPINGS: tuple[str, ...] = ("daily", "monthly", "session")

_COLLECTION_KEYS: dict[str, tuple[str, ...]] = {
    "daily": ("daily",),
    "monthly": ("monthly",),
    "session": ("sessions", "session"),
}
_FALLBACK_KEYS = ("data", "entries", "records")
_LABEL_KEYS = ("date", "month", "sessionId", "session", "id")


@dataclass(frozen=True)
class UsageRow:
    label: str
    cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    total_tokens: int = 0
    models: tuple[str, ...] = ()
    project: str | None = None


@dataclass(frozen=True)
class UsageReport:
    grouping: str
    rows: list[UsageRow]
    totals: UsageRow
    command: list[str] = field(default_factory=list)


def ccusage_binary() -> str:
    return os.environ.get("CCUSAGE_BIN") or "ccusage"


def build_ccusage_args(
    grouping: str,
    *,
    since: str | None = None,
    until: str | None = None,
    breakdown: bool = False,
) -> list[str]:
    if grouping not in GROUPINGS:
        raise ValueError(f"Unknown usage grouping: {grouping}")
    args = [grouping, "--json"]
    if since:
        args.extend(["--since", since])
    if until:
        args.extend(["--until", until])
    if breakdown:
        args.append("--breakdown")
    return args


def _run_ccusage(cmd: list[str]) -> subprocess.CompletedProcess[str]:
    logger.debug("running %s", " ".join(cmd))
    try:
        return subprocess.run(cmd, capture_output=True, text=True, check=True)
    except subprocess.CalledProcessError as e:
        error_msg = e.stderr.strip() if e.stderr else str(e)
        raise click.ClickException(f"Failed to run ccusage: {error_msg}") from e
    except FileNotFoundError as e:
        raise click.ClickException(
            f"Unable to find '{cmd[0]}'. Install ccusage (npm i -g ccusage) or set CCUSAGE_BIN."
        ) from e


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _float(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _row_from_dict(obj: dict[str, Any], *, fallback_label: str) -> UsageRow:
    label = next((str(obj[k]) for k in _LABEL_KEYS if obj.get(k)), fallback_label)
    input_tokens = _int(obj.get("inputTokens"))
    output_tokens = _int(obj.get("outputTokens"))
    cache_creation = _int(obj.get("cacheCreationTokens") or obj.get("cacheCreationInputTokens"))
    cache_read = _int(obj.get("cacheReadTokens") or obj.get("cacheReadInputTokens"))
    total = _int(obj.get("totalTokens")) or input_tokens + output_tokens + cache_creation + cache_read
    models = obj.get("modelsUsed")
    return UsageRow(
        label=label,
        cost_usd=_float(obj.get("totalCost", obj.get("costUSD"))),
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cache_creation_tokens=cache_creation,
        cache_read_tokens=cache_read,
        total_tokens=total,
        models=tuple(str(m) for m in models) if isinstance(models, list) else (),
        project=obj.get("projectPath") if isinstance(obj.get("projectPath"), str) else None,
    )


def sum_rows(rows: Sequence[UsageRow], *, label: str = "Total") -> UsageRow:
    models: list[str] = []
    for row in rows:
        models.extend(m for m in row.models if m not in models)
    return UsageRow(
        label=label,
        cost_usd=sum(r.cost_usd for r in rows),
        input_tokens=sum(r.input_tokens for r in rows),
        output_tokens=sum(r.output_tokens for r in rows),
        cache_creation_tokens=sum(r.cache_creation_tokens for r in rows),
        cache_read_tokens=sum(r.cache_read_tokens for r in rows),
        total_tokens=sum(r.total_tokens for r in rows),
        models=tuple(models),
    )


def parse_usage_json(raw: Any, grouping: str) -> tuple[list[UsageRow], UsageRow]:
    """Normalise ccusage JSON output into rows and totals."""
    if raw is None:
        return [], sum_rows([])
    if isinstance(raw, list):
        items: Any = raw
        totals_obj: Any = None
    elif isinstance(raw, dict):
        items = None
        for key in (*_COLLECTION_KEYS.get(grouping, ()), *_FALLBACK_KEYS):
            if isinstance(raw.get(key), list):
                items = raw[key]
                break
        if items is None and isinstance(raw.get(grouping), dict):
            # Some commands key entries by date instead of listing them.
            items = [
                {**value, "date": value.get("date", key)}
                for key, value in raw[grouping].items()
                if isinstance(value, dict)
            ]
        if items is None:
            if any(isinstance(value, list) for value in raw.values()):
                raise click.ClickException("Unsupported ccusage output structure.")
            items = []
        totals_obj = raw.get("totals")
    else:
        raise click.ClickException("ccusage output must be a JSON object or array.")

    rows = [
        _row_from_dict(item, fallback_label=f"{grouping}-{index + 1}")
        for index, item in enumerate(items)
        if isinstance(item, dict)
    ]
    computed = sum_rows(rows)
    if isinstance(totals_obj, dict):
        totals = _row_from_dict(totals_obj, fallback_label="Total")
        totals = replace(totals, label="Total", models=totals.models or computed.models)
    else:
        totals = computed
    return rows, totals


def fetch_usage(
    grouping: str,
    *,
    since: str | None = None,
    until: str | None = None,
    breakdown: bool = False,
) -> UsageReport:
    cmd = [ccusage_binary(), *build_ccusage_args(grouping, since=since, until=until, breakdown=breakdown)]
    result = _run_ccusage(cmd)
    stdout = result.stdout.strip()
    try:
        raw = json.loads(stdout) if stdout else []
    except json.JSONDecodeError as e:
        raise click.ClickException(f"ccusage returned invalid JSON: {e}") from e
    rows, totals = parse_usage_json(raw, grouping)
    return UsageReport(grouping=grouping, rows=rows, totals=totals, command=cmd)


def _fmt_tokens(n: int) -> str:
    return f"{n:,}"


def format_usage_table(report: UsageReport) -> str:
    first_header = "Session" if report.grouping == "session" else "Period"
    headers = (first_header, "Input", "Output", "Cache W", "Cache R", "Total", "Cost")

    def cells(row: UsageRow) -> tuple[str, ...]:
        return (
            row.label,
            _fmt_tokens(row.input_tokens),
            _fmt_tokens(row.output_tokens),
            _fmt_tokens(row.cache_creation_tokens),
            _fmt_tokens(row.cache_read_tokens),
            _fmt_tokens(row.total_tokens),
            f"${row.cost_usd:,.2f}",
        )

    body = [cells(r) for r in report.rows]
    footer = cells(report.totals)
    widths = [max(len(h), *(len(c[i]) for c in [*body, footer])) for i, h in enumerate(headers)]

    def fmt(values: tuple[str, ...]) -> str:
        first = f"{values[0]:<{widths[0]}}"
        rest = [f"{v:>{w}}" for v, w in zip(values[1:], widths[1:])]
        return "  ".join([first, *rest])

    rule = "  ".join("-" * w for w in widths)
    lines = [fmt(headers), rule, *(fmt(c) for c in body), rule, fmt(footer)]
    if report.totals.models:
        lines.append(f"Models: {', '.join(report.totals.models)}")
    return "\n".join(lines)
