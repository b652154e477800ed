import dataclasses
import tempfile
import unittest
from datetime import date, datetime
from pathlib import Path

from plansync.calendar_client import RemoteError
from plansync.config_manager import ConfigManager
from plansync.models import CalendarEvent, SyncConfig
from plansync.state_store import StateStore
from plansync.sync_engine import (
    SyncEngine,
    _context_date,
    _daily_note_path,
    _event_signature,
    _is_daily_note,
    _normalize_relative_path,
)


class SyncEngineHelperTests(unittest.TestCase):
    def test_normalize_relative_path(self) -> None:
        self.assertEqual(_normalize_relative_path("\\daily\\2025-07-15.md"), "daily/2025-07-15.md")
        self.assertEqual(_normalize_relative_path(" /notes/plan.md "), "notes/plan.md")

    def test_is_daily_note(self) -> None:
        self.assertTrue(_is_daily_note("daily/2025-07-15.md", "daily"))
        self.assertTrue(_is_daily_note("daily/2025-07-15 Tuesday.md", "/daily/"))
        self.assertTrue(_is_daily_note("2025-07-15.md", ""))
        self.assertFalse(_is_daily_note("notes/2025-07-15.md", "daily"))
        self.assertFalse(_is_daily_note("daily/2025-02-30.md", "daily"))
        self.assertFalse(_is_daily_note("daily/plan.md", "daily"))

    def test_context_date(self) -> None:
        config = SyncConfig.from_dict({"daily_note_folder": "daily"})
        today = date(2025, 7, 1)
        self.assertEqual(_context_date("daily/2025-07-15.md", config, today), (date(2025, 7, 15), True))
        self.assertEqual(_context_date("notes/plan.md", config, today), (today, False))

    def test_daily_note_path(self) -> None:
        self.assertEqual(_daily_note_path(SyncConfig.from_dict({"daily_note_folder": "journal/daily"}), date(2025, 7, 15)), "journal/daily/2025-07-15.md")
        self.assertEqual(_daily_note_path(SyncConfig(), date(2025, 7, 15)), "2025-07-15.md")

    def test_event_signature_truncates_description(self) -> None:
        event = CalendarEvent(id="e", title="t", start="s", end="e", description="x" * 80)
        self.assertEqual(_event_signature(event), ("e", "t", "s", "e", "x" * 50))


class _ListGateway:
    def __init__(self) -> None:
        self.events: list[CalendarEvent] = []
        self.error: Exception | None = None
        self.calendars: list[str] = []

    def fetch_events(self, calendar_id: str, start: datetime, end: datetime) -> list[CalendarEvent]:
        self.calendars.append(calendar_id)
        if self.error is not None:
            raise self.error
        return list(self.events)


class CalendarChangeDetectionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.config_manager = ConfigManager(str(root / "config.yaml"))
        self.config_manager.update(
            {"google": {"calendar_id": "primary", "work_calendar_id": "work", "enable_work_calendar": True}}
        )
        self.gateway = _ListGateway()
        self.engine = SyncEngine(
            self.config_manager,
            StateStore(str(root / "state.db")),
            gateway_factory=lambda config: self.gateway,
        )
        self.day = date(2025, 7, 15)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_detects_changes_between_polls(self) -> None:
        event = CalendarEvent(id="e1", title="Team", start="2025-07-15T09:00:00+00:00", end="2025-07-15T10:00:00+00:00")
        self.assertFalse(self.engine.check_for_calendar_changes(self.day))

        self.gateway.events = [event]
        self.assertTrue(self.engine.check_for_calendar_changes(self.day))
        self.assertFalse(self.engine.check_for_calendar_changes(self.day))

        self.gateway.events = [dataclasses.replace(event, title="Team (moved)")]
        self.assertTrue(self.engine.check_for_calendar_changes(self.day))
        self.assertEqual(self.gateway.calendars[:2], ["primary", "work"])

    def test_fetch_failure_reports_no_change(self) -> None:
        self.gateway.events = [
            CalendarEvent(id="e1", title="Team", start="2025-07-15T09:00:00+00:00", end="2025-07-15T10:00:00+00:00")
        ]
        self.gateway.error = RemoteError("unavailable", 503)
        self.assertFalse(self.engine.check_for_calendar_changes(self.day))
        self.gateway.error = None
        self.assertTrue(self.engine.check_for_calendar_changes(self.day))

    def test_document_state_reports_mtime_of_existing_note(self) -> None:
        self.assertEqual(self.engine.document_state(), ("", None))

        vault = Path(self.temp_dir.name) / "vault"
        (vault / "notes").mkdir(parents=True)
        note = vault / "notes" / "plan.md"
        note.write_text("- [ ] Plan", encoding="utf-8")
        self.config_manager.update({"sync": {"vault_path": str(vault)}})

        self.assertEqual(self.engine.document_state("notes/plan.md"), ("notes/plan.md", note.stat().st_mtime))
        self.assertEqual(self.engine.document_state("notes/missing.md"), ("notes/missing.md", None))
        with self.assertRaises(ValueError):
            self.engine.document_state("../outside.md")


if __name__ == "__main__":
    unittest.main()
