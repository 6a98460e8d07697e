from __future__ import annotations

import csv
import json
import subprocess
import sys
from pathlib import Path

import pytest

import allocate_tickets as cli
from tests.utils import make_roster, want_row, wants_for_events, write_roster, write_wants

ROOT = Path(__file__).resolve().parents[1]


def test_cli_writes_json_csv_and_decision_log(tmp_path: Path) -> None:
    roster = make_roster(3)
    wants_path = tmp_path / "wants.csv"
    roster_path = tmp_path / "roster.csv"
    write_wants(
        wants_path,
        [
            want_row(pid="user1", eid="event1", cost="$4", priority=2),
            want_row(pid="user2", eid="event1", cost="$4", priority=3),
            want_row(pid="user1", eid="event2", cost="$12"),
        ],
    )
    write_roster(roster_path, roster)
    out_json = tmp_path / "out" / "assignments.json"
    out_csv = tmp_path / "out" / "assignments.csv"
    log_path = tmp_path / "out" / "decision_log.csv"

    subprocess.check_call(
        [
            sys.executable,
            str(ROOT / "allocate_tickets.py"),
            "--wants",
            str(wants_path),
            "--roster",
            str(roster_path),
            "--out-json",
            str(out_json),
            "--out-csv",
            str(out_csv),
            "--decision-log",
            str(log_path),
        ],
        cwd=ROOT,
    )

    payload = json.loads(out_json.read_text(encoding="utf-8"))
    assert [a["participant_id"] for a in payload["assignments"]] == ["user1", "user2", "user3"]
    assert [a["total_tickets"] for a in payload["assignments"]] == [2, 1, 0]
    assert payload["errors"] == []
    assert payload["events"][0] == {
        "event_id": "event1",
        "event_title": "Event 1",
        "cost": "$4",
        "priority": 3,
        "interested_ids": ["user1", "user2"],
    }

    rows = list(csv.DictReader(out_csv.open(encoding="utf-8")))
    assert [(r["Participant"], r["EventId"]) for r in rows] == [
        ("User 1", "event1"),
        ("User 1", "event2"),
        ("User 2", "event1"),
    ]
    assert rows[0]["PriorityLabel"] == "Critical"
    assert rows[1]["PriorityLabel"] == "Normal"
    assert rows[0]["Proxy"] == "NO"

    log_rows = list(csv.DictReader(log_path.open(encoding="utf-8")))
    assert log_rows and log_rows[0]["Phase"] == "allocate"


def test_run_allocation_applies_config_overrides(tmp_path: Path) -> None:
    roster = make_roster(2)
    wants_path = tmp_path / "wants.csv"
    roster_path = tmp_path / "roster.csv"
    write_wants(wants_path, [want_row(pid="user1", eid=f"event{i}") for i in range(1, 4)])
    write_roster(roster_path, roster)
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"PER_USER_CAP": 1}), encoding="utf-8")

    result = cli.run_allocation(
        wants=wants_path,
        roster=roster_path,
        out_json=tmp_path / "a.json",
        out_csv=tmp_path / "a.csv",
        decision_log=Path("-"),
        overrides=cli.load_overrides(config_path),
    )

    assert [a.total_tickets for a in result.assignments] == [1, 1]
    assert result.errors == ["No buyers available for event event3 (Event 3)"]
    rows = list(csv.DictReader((tmp_path / "a.csv").open(encoding="utf-8")))
    assert rows[1]["Proxy"] == "YES"
    assert rows[1]["BuyingFor"] == "User 1"
    assert not (tmp_path / "-").exists()


def test_roster_defaults_to_wishlist_participants(tmp_path: Path) -> None:
    wants_path = tmp_path / "wants.csv"
    write_wants(wants_path, wants_for_events(2, make_roster(2)))

    result = cli.run_allocation(
        wants=wants_path,
        out_json=tmp_path / "a.json",
        out_csv=tmp_path / "a.csv",
    )

    assert [a.participant_id for a in result.assignments] == ["user1", "user2"]
    assert [a.total_tickets for a in result.assignments] == [2, 2]


def test_missing_input_exits(tmp_path: Path) -> None:
    with pytest.raises(SystemExit, match="Missing file"):
        cli.run_allocation(
            wants=tmp_path / "nope.csv",
            out_json=tmp_path / "a.json",
            out_csv=tmp_path / "a.csv",
        )


def test_config_must_be_an_object(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ValueError):
        cli.load_overrides(config_path)


def test_unknown_config_key_is_rejected(tmp_path: Path) -> None:
    wants_path = tmp_path / "wants.csv"
    write_wants(wants_path, [want_row(pid="user1", eid="event1")])
    with pytest.raises(ValueError, match="Unknown config keys"):
        cli.run_allocation(
            wants=wants_path,
            out_json=tmp_path / "a.json",
            out_csv=tmp_path / "a.csv",
            overrides={"PER_PERSON_CAP": 3},
        )


def test_sheet_export_url_and_cached_download(tmp_path: Path) -> None:
    url = cli.export_csv_url("DOC", "123")
    assert url == "https://docs.google.com/spreadsheets/d/DOC/export?format=csv&gid=123"

    cached = tmp_path / "wants.csv"
    cached.write_text("ParticipantId\n", encoding="utf-8")
    # An existing cache file is returned as-is without touching the network.
    assert cli.download_if_needed(url, cached) == cached
    assert cached.read_text(encoding="utf-8") == "ParticipantId\n"


def test_gid_without_sheet_id_is_an_error(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    with pytest.raises(SystemExit):
        cli.main(["--wants-gid", "5"])
