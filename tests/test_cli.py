import json
import logging
import sys

import pytest

from cinerank import cli


def test_cli_dispatch_profile(monkeypatch):
    called = {}

    def fake_profile(args):
        called["command"] = args.command
        called["user"] = args.user

    monkeypatch.setattr(cli, "cmd_profile", fake_profile)
    monkeypatch.setattr(sys, "argv", ["prog", "profile", "alice"])

    cli.main()
    assert called == {"command": "profile", "user": "alice"}


def test_cli_parses_recommend_and_replay_args(monkeypatch):
    captured = []

    monkeypatch.setattr(cli, "cmd_recommend", captured.append)
    monkeypatch.setattr(cli, "cmd_replay", captured.append)

    monkeypatch.setattr(sys, "argv", [
        "prog", "recommend", "alice", "--pool", "pool.json", "--limit", "5",
        "--lambda", "0.4", "--weight", "tmdb=1.2", "--format", "json",
    ])
    cli.main()
    monkeypatch.setattr(sys, "argv", ["prog", "replay", "--all-users", "--weight", "trakt=1.0", "--lookback-days", "7"])
    cli.main()

    rec, rep = captured
    assert (rec.user, rec.limit, rec.mmr_lambda, rec.weight, rec.format) == ("alice", 5, 0.4, ["tmdb=1.2"], "json")
    assert rep.all_users and rep.user is None
    assert rep.lookback_days == 7


def test_feedback_requires_polarity(monkeypatch):
    monkeypatch.setattr(sys, "argv", ["prog", "feedback", "alice", "603"])
    with pytest.raises(SystemExit):
        cli.main()


def test_parse_weights_ignores_bad_entries():
    assert cli._parse_weights(["tmdb=1.5", "bad", "trakt=x"]) == {"tmdb": 1.5}
    assert cli._parse_weights(None) == {}


def test_import_then_recommend_end_to_end(fresh_engine, tmp_path, monkeypatch, caplog):
    caplog.set_level(logging.INFO)
    export = {
        "films": [
            {"id": 1, "title": "Heat", "genres": ["Action", "Crime"], "keywords": ["heist"], "runtime": 170},
            {"id": 2, "title": "Thief", "genres": ["Crime"], "keywords": ["heist"], "runtime": 123},
            {"id": 3, "title": "Bad", "genres": "not-a-list"},
            {"id": 10, "title": "Ronin", "genres": ["Action"], "keywords": ["car chase"], "runtime": 122},
            {"id": 11, "title": "Baraka", "genres": ["Documentary"], "keywords": ["nature"], "runtime": 130},
        ],
        "watch_records": [
            {"user_id": "alice", "item_id": 1, "rating": 5.0, "watched_at": "2024-01-01T20:00:00"},
            {"user_id": "alice", "item_id": 2, "rating": 4.0, "liked": True, "watched_at": "2024-01-02T20:00:00"},
        ],
    }
    export_path = tmp_path / "export.json"
    export_path.write_text(json.dumps(export))
    pool_path = tmp_path / "pool.json"
    pool_path.write_text(json.dumps([
        {"item_id": 10, "scores": {"tmdb": 0.8, "trakt": 0.6}},
        {"item_id": 11, "scores": {"tastedive": 0.4}},
        {"item_id": 1, "scores": {"tmdb": 0.9}},
    ]))

    monkeypatch.setattr(sys, "argv", ["prog", "import", str(export_path)])
    cli.main()
    assert "Imported 4 films" in caplog.text

    caplog.clear()
    monkeypatch.setattr(sys, "argv", ["prog", "recommend", "alice", "--pool", str(pool_path), "--format", "json"])
    cli.main()

    payload = json.loads(caplog.records[-1].getMessage())
    assert [row["item_id"] for row in payload] == [10, 11]
    assert payload[0]["consensus_level"] == "medium"
    assert payload[1]["exploratory"] is True
