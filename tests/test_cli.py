"""
Tests for the spotwatch command line.
"""

import json

import pytest

from spotwatch import cli
from spotwatch.lock import PipelineLock


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    data_dir = tmp_path / "data"
    monkeypatch.setenv("DATA_DIR", str(data_dir))
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("SUBPAGE_KEYWORDS", raising=False)
    return data_dir


class TestRunCommand:
    """Exit codes of `spotwatch run`."""

    @pytest.mark.parametrize("bad_date", ["2025-03-01", "20251301", "yesterday"])
    def test_bad_date_exits_2(self, data_dir, bad_date, capsys):
        assert cli.main(["run", "--date", bad_date]) == cli.EXIT_BAD_ARGS
        assert capsys.readouterr().err.startswith("Error:")

    def test_lock_held_exits_3(self, data_dir):
        PipelineLock(data_dir / ".ops" / "pipeline.lock").acquire("another run")
        assert cli.main(["run", "--date", "20250301"]) == cli.EXIT_LOCKED

    def test_empty_directory_completes(self, data_dir):
        assert cli.main(["run", "--date", "20250301"]) == cli.EXIT_OK

        assert json.loads((data_dir / "spots.json").read_text()) == []
        assert (data_dir / "logs" / "pipeline-20250301.log").exists()
        config = json.loads((data_dir / "pipeline_config.json").read_text())
        assert config["last_run_status"] == "completed_successfully"

    def test_no_command_exits_2(self, data_dir):
        assert cli.main([]) == cli.EXIT_BAD_ARGS


class TestStatusCommand:
    def test_no_runs(self, data_dir, capsys):
        assert cli.main(["status"]) == cli.EXIT_OK
        assert "No runs recorded." in capsys.readouterr().out

    def test_after_run(self, data_dir, capsys):
        cli.main(["run", "--date", "20250301"])
        capsys.readouterr()

        assert cli.main(["status"]) == cli.EXIT_OK
        out = capsys.readouterr().out
        assert "completed_successfully" in out
        assert "running_extract" in out


class TestWatchlistCommand:
    """Adding, listing and removing watchlist entries."""

    def test_add_list_remove(self, data_dir, capsys):
        assert cli.main(["watchlist", "add", "copper-tap", "--status", "flagged", "--reason", "menu looks stale"]) == 0
        entries = json.loads((data_dir / "watchlist.json").read_text())
        assert entries[0]["venue_id"] == "copper-tap"
        assert entries[0]["status"] == "flagged"

        capsys.readouterr()
        assert cli.main(["watchlist", "list"]) == 0
        assert "copper-tap" in capsys.readouterr().out

        assert cli.main(["watchlist", "remove", "copper-tap"]) == 0
        assert json.loads((data_dir / "watchlist.json").read_text()) == []

    def test_add_replaces_existing_entry(self, data_dir):
        cli.main(["watchlist", "add", "copper-tap", "--status", "flagged"])
        cli.main(["watchlist", "add", "copper-tap"])

        entries = json.loads((data_dir / "watchlist.json").read_text())
        assert [(e["venue_id"], e["status"]) for e in entries] == [("copper-tap", "excluded")]

    def test_remove_unknown_fails(self, data_dir, capsys):
        assert cli.main(["watchlist", "remove", "nobody"]) == cli.EXIT_FAILED
        assert "not on the watchlist" in capsys.readouterr().err

    def test_bare_watchlist_lists(self, data_dir, capsys):
        assert cli.main(["watchlist"]) == 0
        assert "Found 0 watchlist entries" in capsys.readouterr().out
