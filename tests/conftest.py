import json
from datetime import datetime, timezone

import pytest

import ccpet

NOW = datetime(2025, 8, 21, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def pet_home(tmp_path, monkeypatch):
    """Point every pet file at a throwaway directory."""
    state_dir = tmp_path / ".claude-pet"
    monkeypatch.setattr(ccpet, "SAVE_FILE_DIR", state_dir)
    monkeypatch.setattr(ccpet, "SAVE_FILE", state_dir / "pet-state.json")
    monkeypatch.setattr(ccpet, "SESSION_TRACKER_FILE", state_dir / "session-tracker.json")
    return state_dir


@pytest.fixture
def write_state(pet_home):
    def _write(**fields):
        pet_home.mkdir(parents=True, exist_ok=True)
        data = {"energy": 100, "expression": "(^_^)", "lastFeedTime": "2025-08-21T10:00:00Z", "totalTokensConsumed": 0}
        data.update(fields)
        path = pet_home / "pet-state.json"
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        return path
    return _write


@pytest.fixture
def write_transcript(tmp_path):
    def _write(entries, name="transcript.jsonl"):
        path = tmp_path / name
        lines = [entry if isinstance(entry, str) else json.dumps(entry) for entry in entries]
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path
    return _write
