import unittest
from datetime import date, datetime, timezone

from plansync.models import AppConfig, CalendarEvent, SyncResult, TaskRecord, parse_event_bound, resolve_timezone


class ModelsTests(unittest.TestCase):
    def test_sync_config_normalizes_tag_and_bounds(self) -> None:
        cfg = AppConfig.from_dict(
            {
                "sync": {
                    "sync_tag": "calendar",
                    "daily_note_folder": "/daily/",
                    "interval_seconds": 5,
                    "default_start_hour": 40,
                    "default_event_duration": 0,
                },
                "timeline": {"start_hour": 8, "end_hour": 3},
            }
        )
        self.assertEqual(cfg.sync.sync_tag, "#calendar")
        self.assertEqual(cfg.sync.daily_note_folder, "daily")
        self.assertEqual(cfg.sync.interval_seconds, 30)
        self.assertEqual(cfg.sync.default_start_hour, 23)
        self.assertEqual(cfg.sync.default_event_duration, 1)
        self.assertEqual(cfg.timeline.end_hour, 8)

    def test_google_config_defaults(self) -> None:
        cfg = AppConfig.from_dict({"google": {"token_expiry": "oops", "calendar_id": " primary "}})
        self.assertEqual(cfg.google.token_expiry, 0.0)
        self.assertEqual(cfg.google.calendar_id, "primary")
        self.assertFalse(cfg.google.enable_work_calendar)
        self.assertEqual(AppConfig.from_dict(cfg.to_dict()), cfg)

    def test_unknown_timezone_falls_back_to_utc(self) -> None:
        self.assertEqual(resolve_timezone("Mars/Olympus"), timezone.utc)

    def test_all_day_event_spans_one_day(self) -> None:
        event = CalendarEvent(id="e", title="Holiday", start="2025-07-15", end="2025-07-15")
        self.assertTrue(event.all_day)
        self.assertEqual(event.start_at(timezone.utc), datetime(2025, 7, 15, tzinfo=timezone.utc))
        self.assertEqual(event.end_at(timezone.utc), datetime(2025, 7, 16, tzinfo=timezone.utc))

    def test_timed_event_parses_zulu(self) -> None:
        event = CalendarEvent(id="e", title="Call", start="2025-07-15T14:30:00Z", end="2025-07-15T15:00:00Z")
        self.assertFalse(event.all_day)
        self.assertEqual(event.end_at(timezone.utc), datetime(2025, 7, 15, 15, 0, tzinfo=timezone.utc))

    def test_unparseable_event_bound_raises_value_error(self) -> None:
        with self.assertRaises(ValueError):
            parse_event_bound("next tuesday", timezone.utc)

    def test_task_effective_date(self) -> None:
        task = TaskRecord(id="line-0", source_path="p.md", line_number=0, raw_line="", content="x", external_task_id="t")
        self.assertEqual(task.effective_date(date(2025, 7, 15)), date(2025, 7, 15))
        task.date = "2025-07-20"
        self.assertEqual(task.effective_date(date(2025, 7, 15)), date(2025, 7, 20))

    def test_sync_result_to_dict(self) -> None:
        result = SyncResult(
            status="success",
            message="ok",
            duration_ms=12,
            changes_applied=2,
            trigger="manual",
            path="daily/2025-07-15.md",
            notices=["Note was updated."],
            run_at=datetime(2025, 7, 15, 8, 0, tzinfo=timezone.utc),
        )
        payload = result.to_dict()
        self.assertEqual(payload["run_at"], "2025-07-15T08:00:00+00:00")
        self.assertEqual(payload["notices"], ["Note was updated."])
        self.assertEqual(payload["path"], "daily/2025-07-15.md")


if __name__ == "__main__":
    unittest.main()
