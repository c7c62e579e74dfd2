import io
import json
from datetime import datetime, timedelta, timezone

import pytest

import ccpet
from ccpet import main, parse_check_args, run_status_line


def future_timestamp():
    return (datetime.now(timezone.utc) + timedelta(minutes=10)).isoformat()


def test_status_line_from_claude_code_payload(write_state, write_transcript, pet_home):
    write_state(energy=30, lastFeedTime=future_timestamp())
    transcript = write_transcript([{"type": "assistant", "sessionId": "s1", "uuid": "u1", "message": {"usage": {"input_tokens": 100, "output_tokens": 50}}}])
    payload = {"hook_event_name": "Status", "session_id": "s1", "transcript_path": str(transcript), "model": {"id": "claude", "display_name": "Claude"}, "cost": {"total_cost_usd": 0.01}}
    stdout = io.StringIO()

    run_status_line(io.StringIO(json.dumps(payload)), stdout)

    assert stdout.getvalue() == "(o_o) █████░░░░░"
    saved = json.loads((pet_home / "pet-state.json").read_text(encoding="utf-8"))
    assert saved["energy"] == 45
    assert saved["totalTokensConsumed"] == 150


@pytest.mark.parametrize("raw", ["", "   \n", "{not json", "[1, 2, 3]"])
def test_status_line_without_usable_input_shows_pet(pet_home, raw):
    stdout = io.StringIO()
    run_status_line(io.StringIO(raw), stdout)
    assert stdout.getvalue() == "(^_^) ██████████"
    assert (pet_home / "pet-state.json").exists()


def test_main_reads_stdin_by_default(pet_home, monkeypatch, capsys):
    monkeypatch.setattr("sys.stdin", io.StringIO(""))
    assert main([]) == 0
    assert capsys.readouterr().out == "(^_^) ██████████"


def test_main_reports_unexpected_failure(pet_home, monkeypatch, capsys):
    def explode(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(ccpet, "run_status_line", explode)
    assert main([]) == 1
    captured = capsys.readouterr()
    assert captured.out == "(?) ERROR"
    assert "boom" in captured.err


def test_version(capsys):
    assert main(["--version"]) == 0
    assert f"ccpet v{ccpet.__version__}" in capsys.readouterr().out


def test_help(capsys):
    assert main(["-h"]) == 0
    out = capsys.readouterr().out
    assert "check" in out
    assert "reset" in out


def test_unknown_command(capsys):
    assert main(["dance"]) == 1
    assert "Unknown command: dance" in capsys.readouterr().err


def test_reset_removes_state_files(write_state, pet_home, capsys):
    write_state()
    (pet_home / "session-tracker.json").write_text("{}", encoding="utf-8")

    assert main(["reset"]) == 0

    assert not (pet_home / "pet-state.json").exists()
    assert not (pet_home / "session-tracker.json").exists()
    assert "Removed 2 state file(s)" in capsys.readouterr().out


def test_reset_with_nothing_to_remove(pet_home, capsys):
    assert ccpet.reset_pet() == 0
    assert "No pet state files found" in capsys.readouterr().out


def test_check_shows_pet_and_saves(write_state, pet_home, capsys):
    write_state(energy=50, lastFeedTime=future_timestamp(), totalTokensConsumed=1500)
    assert main(["check"]) == 0
    out = capsys.readouterr().out
    assert "(o_o)" in out
    assert "1.5K" in out
    assert (pet_home / "pet-state.json").exists()


@pytest.mark.parametrize("args, expected", [
    ([], (False, 60, None)),
    (["--watch"], (True, 60, None)),
    (["-w", "--interval", "30"], (True, 30, None)),
    (["--interval", "5"], (False, 60, None)),
    (["--interval", "301"], (False, 60, None)),
    (["--interval", "soon"], (False, 60, None)),
    (["--interval"], (False, 60, None)),
    (["--transcript", "/tmp/t.jsonl", "-w"], (True, 60, "/tmp/t.jsonl")),
])
def test_parse_check_args(args, expected):
    assert parse_check_args(args) == expected


def test_check_rejects_unknown_option(capsys):
    assert main(["check", "--loud"]) == 1
    assert "Unknown option: --loud" in capsys.readouterr().err


def test_watch_mode_stops_on_interrupt(pet_home, monkeypatch, capsys):
    def interrupt(seconds):
        raise KeyboardInterrupt

    monkeypatch.setattr(ccpet.os, "system", lambda command: 0)
    monkeypatch.setattr(ccpet.time, "sleep", interrupt)
    assert main(["check", "--watch", "--interval", "10"]) == 0
    out = capsys.readouterr().out
    assert "Refreshing every 10s" in out
    assert "Stopped watching" in out


def test_check_needs_a_transcript_path(capsys):
    assert main(["check", "--transcript"]) == 1
    assert "--transcript needs a path" in capsys.readouterr().err


def test_check_with_transcript_feeds_and_shows_session_tokens(write_state, write_transcript, pet_home, capsys):
    write_state(energy=30, lastFeedTime=future_timestamp())
    transcript = write_transcript([
        {"type": "assistant", "sessionId": "s1", "uuid": "u1", "timestamp": "2025-08-21T10:00:00Z", "message": {"usage": {"input_tokens": 100, "output_tokens": 50, "cache_read_input_tokens": 20}}},
    ])

    assert main(["check", "--transcript", str(transcript)]) == 0

    out = capsys.readouterr().out
    assert "In: 100" in out
    assert "Out: 50" in out
    assert "Cached: 20" in out
    assert "Total: 170" in out
    assert "Ctx: 120" in out
    saved = json.loads((pet_home / "pet-state.json").read_text(encoding="utf-8"))
    assert saved["energy"] == 47
    trackers = json.loads((pet_home / "session-tracker.json").read_text(encoding="utf-8"))
    assert trackers["s1"]["lastProcessedUuid"] == "u1"


def test_check_without_transcript_has_no_session_line(write_state, capsys):
    write_state(energy=50, lastFeedTime=future_timestamp())
    assert main(["check"]) == 0
    assert "Session" not in capsys.readouterr().out
