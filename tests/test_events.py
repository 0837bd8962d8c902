import dataclasses
import sqlite3

from pdr import events
from pdr.settings import settings


def test_log_event_writes_row(journal):
    journal.log_event("warn", "hello", service_name="broker", endpoint="tcp://10.0.0.1:61616")

    rows = journal.latest_events(1)
    assert rows[0]["level"] == "WARN"
    assert rows[0]["message"] == "hello"
    assert rows[0]["service_name"] == "broker"
    assert rows[0]["endpoint"] == "tcp://10.0.0.1:61616"


def test_latest_events_newest_first(journal):
    for i in range(5):
        journal.log_event("INFO", f"event {i}")

    assert [e["message"] for e in journal.latest_events(3)] == ["event 4", "event 3", "event 2"]


def test_directory_db_path_places_file_inside(tmp_path, monkeypatch):
    d = tmp_path / "data"
    d.mkdir()
    monkeypatch.setattr(events, "settings", dataclasses.replace(settings, db_path=str(d)))

    events.init_db()
    events.log_event("INFO", "inside")

    conn = sqlite3.connect(str(d / "pdr.db"))
    rows = conn.execute("SELECT message FROM events").fetchall()
    conn.close()
    assert rows == [("inside",)]


def test_safe_log_event_reports_unwritable_journal(tmp_path, monkeypatch):
    assert events.safe_log_event("INFO", "written") is True

    blocker = tmp_path / "blocker"
    blocker.write_text("")
    monkeypatch.setattr(events, "settings", dataclasses.replace(settings, db_path=str(blocker / "pdr.db")))

    assert events.safe_log_event("ERROR", "lost") is False
