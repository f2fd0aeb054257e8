from __future__ import annotations

import json
import subprocess
from pathlib import Path

from click.testing import CliRunner

from conftest import SESSION_ID, sample_records, write_jsonl
from talk_transcripts import cli as cli_module
from talk_transcripts import usage
from talk_transcripts.cli import NO_SESSIONS_MESSAGE, cli


OTHER_ID = "22222222-2222-2222-2222-222222222222"


def test_export_json_writes_transcript_and_meta(session_file: Path, tmp_path: Path):
    out_dir = tmp_path / "out"
    result = CliRunner().invoke(cli, ["export", str(session_file), "--format", "json", "-o", str(out_dir)])

    assert result.exit_code == 0, result.output
    assert "Parsed: 10 lines, 9 raw entries, 5 clean entries; skipped: 1" in result.output
    assert f"Output: {out_dir / 'transcript.json'}" in result.output
    payload = json.loads((out_dir / "transcript.json").read_text(encoding="utf-8"))
    assert payload["session_id"] == SESSION_ID
    meta = json.loads((out_dir / "session_meta.json").read_text(encoding="utf-8"))
    assert meta["cwd"] == "/tmp/MAGIC_CWD"


def test_export_html_auto_names_output_dir(session_file: Path, tmp_path: Path):
    result = CliRunner().invoke(
        cli, ["export", str(session_file), "-o", str(tmp_path / "out"), "-a", "--include-source"]
    )
    assert result.exit_code == 0, result.output
    target = tmp_path / "out" / f"session_{SESSION_ID}"
    assert (target / "index.html").exists()
    assert (target / session_file.name).exists()


def test_export_without_output_opens_browser(session_file: Path, tmp_path: Path, monkeypatch):
    opened: list[Path] = []
    monkeypatch.setattr(cli_module, "default_output_dir", lambda: tmp_path / "tmp-out")
    monkeypatch.setattr(cli_module, "open_output", opened.append)

    result = CliRunner().invoke(cli, ["export", str(session_file), "--view", "raw"])
    assert result.exit_code == 0, result.output
    assert opened == [tmp_path / "tmp-out"]
    assert "raw view" in (tmp_path / "tmp-out" / "index.html").read_text(encoding="utf-8")


def test_export_errors(session_file: Path, tmp_path: Path):
    runner = CliRunner()
    missing = runner.invoke(cli, ["export", str(tmp_path / "nope.jsonl")])
    assert missing.exit_code != 0
    assert "File not found" in missing.output

    bad_open = runner.invoke(cli, ["export", str(session_file), "--format", "markdown", "--open"])
    assert bad_open.exit_code != 0
    assert "--open is only supported for HTML output." in bad_open.output

    broken = tmp_path / "broken.jsonl"
    broken.write_text("garbage\n", encoding="utf-8")
    unparsable = runner.invoke(cli, ["export", str(broken), "-o", str(tmp_path / "o")])
    assert unparsable.exit_code != 0
    assert "no usable entries" in unparsable.output


def test_local_latest_markdown(claude_home: Path, session_file: Path, tmp_path: Path):
    out_dir = tmp_path / "out"
    result = CliRunner().invoke(
        cli,
        ["local", "--claude-home", str(claude_home), "--latest", "--format", "markdown", "-o", str(out_dir)],
    )
    assert result.exit_code == 0, result.output
    text = (out_dir / "transcript.md").read_text(encoding="utf-8")
    assert text.startswith("# How do I fix the failing test?")


def test_local_is_the_default_command(claude_home: Path, session_file: Path, tmp_path: Path):
    out_dir = tmp_path / "out"
    result = CliRunner().invoke(
        cli, ["--claude-home", str(claude_home), "--latest", "--format", "json", "-o", str(out_dir)]
    )
    assert result.exit_code == 0, result.output
    assert (out_dir / "transcript.json").exists()


def test_local_cwd_filter_reports_no_sessions(claude_home: Path, session_file: Path, tmp_path: Path, monkeypatch):
    elsewhere = tmp_path / "elsewhere"
    elsewhere.mkdir()
    monkeypatch.chdir(elsewhere)

    result = CliRunner().invoke(
        cli, ["local", "--claude-home", str(claude_home), "--latest", "--cwd", "-o", str(tmp_path / "out")]
    )
    assert result.exit_code != 0
    assert NO_SESSIONS_MESSAGE in result.output


def test_local_multi_select_writes_one_dir_per_session(
    claude_home: Path, session_file: Path, tmp_path: Path, monkeypatch
):
    other = write_jsonl(claude_home / "projects" / "-tmp-other" / f"{OTHER_ID}.jsonl", sample_records())

    class Picker:
        def __init__(self, message, choices, validate):
            self.choices = choices

        def ask(self):
            return [choice.value for choice in self.choices]

    monkeypatch.setattr(cli_module.questionary, "checkbox", Picker)
    out_root = tmp_path / "out"
    result = CliRunner().invoke(
        cli, ["local", "--claude-home", str(claude_home), "--format", "json", "-o", str(out_root)]
    )

    assert result.exit_code == 0, result.output
    assert "Conversation" in result.output
    assert (out_root / f"session_{SESSION_ID}" / "transcript.json").exists()
    assert (out_root / f"session_{OTHER_ID}" / "transcript.json").exists()
    assert f"Output root: {out_root}" in result.output
    assert other.exists()


def test_local_picker_cancelled(claude_home: Path, session_file: Path, monkeypatch):
    class Cancelled:
        def __init__(self, *args, **kwargs):
            pass

        def ask(self):
            return None

    monkeypatch.setattr(cli_module.questionary, "checkbox", Cancelled)
    result = CliRunner().invoke(cli, ["local", "--claude-home", str(claude_home)])
    assert result.exit_code != 0
    assert "No session selected." in result.output


def test_tui_with_path_passes_export_options(session_file: Path, tmp_path: Path, monkeypatch):
    calls: list[dict] = []
    monkeypatch.setattr(cli_module, "run_tui", lambda **kwargs: calls.append(kwargs))

    result = CliRunner().invoke(
        cli, ["tui", str(session_file), "--export-dir", str(tmp_path / "stages"), "--metadata"]
    )
    assert result.exit_code == 0, result.output
    assert calls == [
        {"session_path": session_file, "export_dir": tmp_path / "stages", "include_metadata": True}
    ]


def test_tui_latest_picks_newest_session(claude_home: Path, session_file: Path, monkeypatch):
    calls: list[dict] = []
    monkeypatch.setattr(cli_module, "run_tui", lambda **kwargs: calls.append(kwargs))

    result = CliRunner().invoke(cli, ["tui", "--claude-home", str(claude_home), "--latest"])
    assert result.exit_code == 0, result.output
    assert calls[0]["session_path"] == session_file.resolve()
    assert calls[0]["export_dir"] is None
    assert calls[0]["include_metadata"] is False


def test_tui_missing_file(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(cli_module, "run_tui", lambda **kwargs: None)
    result = CliRunner().invoke(cli, ["tui", str(tmp_path / "gone.jsonl")])
    assert result.exit_code != 0
    assert "File not found" in result.output


def _fake_ccusage(monkeypatch, stdout: str, seen: list[list[str]] | None = None):
    def fake_run(cmd, **kwargs):
        if seen is not None:
            seen.append(cmd)
        return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")

    monkeypatch.delenv("CCUSAGE_BIN", raising=False)
    monkeypatch.setattr(usage.subprocess, "run", fake_run)


def test_cost_table(monkeypatch):
    seen: list[list[str]] = []
    stdout = json.dumps({"monthly": [{"month": "2026-01", "inputTokens": 1000, "totalCost": 1.25}]})
    _fake_ccusage(monkeypatch, stdout, seen)

    result = CliRunner().invoke(cli, ["cost", "monthly", "--since", "20260101", "--breakdown"])
    assert result.exit_code == 0, result.output
    assert seen == [["ccusage", "monthly", "--json", "--since", "20260101", "--breakdown"]]
    assert result.output.startswith("Period")
    assert "2026-01" in result.output
    assert "$1.25" in result.output


def test_cost_json_and_empty(monkeypatch):
    _fake_ccusage(monkeypatch, json.dumps([{"date": "2026-01-05", "inputTokens": 3, "outputTokens": 4}]))
    result = CliRunner().invoke(cli, ["cost", "--json"])
    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["format"] == "talk-transcripts.usage.v1"
    assert payload["grouping"] == "daily"
    assert payload["rows"][0]["label"] == "2026-01-05"
    assert payload["totals"]["total_tokens"] == 7

    _fake_ccusage(monkeypatch, "")
    empty = CliRunner().invoke(cli, ["cost"])
    assert empty.exit_code == 0
    assert "No usage data." in empty.output


def test_cost_missing_binary(monkeypatch):
    def missing(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setenv("CCUSAGE_BIN", "not-installed-ccusage")
    monkeypatch.setattr(usage.subprocess, "run", missing)
    result = CliRunner().invoke(cli, ["cost", "session"])
    assert result.exit_code != 0
    assert "Unable to find 'not-installed-ccusage'" in result.output


def test_local_session_prefix_skips_picker(claude_home: Path, session_file: Path, tmp_path: Path, monkeypatch):
    write_jsonl(claude_home / "projects" / "-tmp-other" / f"{OTHER_ID}.jsonl", sample_records())

    def no_picker(*args, **kwargs):
        raise AssertionError("picker should not open")

    monkeypatch.setattr(cli_module.questionary, "checkbox", no_picker)
    out_dir = tmp_path / "out"
    result = CliRunner().invoke(
        cli,
        ["local", "--claude-home", str(claude_home), "-s", SESSION_ID[:8], "--format", "simple", "-o", str(out_dir)],
    )
    assert result.exit_code == 0, result.output
    text = (out_dir / "transcript.txt").read_text(encoding="utf-8")
    assert "Q: How do I fix the failing test?" in text
    assert f"Output: {out_dir / 'transcript.txt'}" in result.output


def test_local_unknown_session_prefix(claude_home: Path, session_file: Path):
    result = CliRunner().invoke(cli, ["local", "--claude-home", str(claude_home), "--session", "deadbeef"])
    assert result.exit_code != 0
    assert "No session matching 'deadbeef'." in result.output


def test_local_project_filter(claude_home: Path, session_file: Path, tmp_path: Path):
    project = tmp_path / "project"
    project.mkdir()
    records = sample_records()
    for record in records:
        if "cwd" in record:
            record["cwd"] = str(project)
    write_jsonl(claude_home / "projects" / "-tmp-other" / f"{OTHER_ID}.jsonl", records)

    out_dir = tmp_path / "out"
    result = CliRunner().invoke(
        cli,
        ["local", "--claude-home", str(claude_home), "-p", str(project), "--latest", "--format", "json", "-o", str(out_dir)],
    )
    assert result.exit_code == 0, result.output
    meta = json.loads((out_dir / "session_meta.json").read_text(encoding="utf-8"))
    assert meta["cwd"] == str(project)

    both = CliRunner().invoke(cli, ["local", "--claude-home", str(claude_home), "--cwd", "--project", str(project)])
    assert both.exit_code != 0
    assert "Use either --cwd or --project, not both." in both.output


def test_tui_session_prefix(claude_home: Path, session_file: Path, monkeypatch):
    calls: list[dict] = []
    monkeypatch.setattr(cli_module, "run_tui", lambda **kwargs: calls.append(kwargs))

    result = CliRunner().invoke(cli, ["tui", "--claude-home", str(claude_home), "--session", SESSION_ID])
    assert result.exit_code == 0, result.output
    assert calls[0]["session_path"] == session_file.resolve()
