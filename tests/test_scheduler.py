import unittest
from unittest import mock

from plansync.models import SyncResult
from plansync.scheduler import SyncScheduler


def _result(status: str = "success", trigger: str = "scheduled", path: str = "daily/2025-07-15.md") -> SyncResult:
    return SyncResult(status=status, message=status, duration_ms=1, changes_applied=0, trigger=trigger, path=path)


class SyncSchedulerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = mock.Mock()
        self.engine.run_once.side_effect = lambda path=None, trigger="manual": _result(trigger=trigger)
        self.mtime = 100.0
        self.engine.document_state.side_effect = lambda path=None: ("daily/2025-07-15.md", self.mtime)
        self.engine.check_for_calendar_changes.return_value = False
        self.scheduler = SyncScheduler(self.engine, mock.Mock())

    def test_first_tick_syncs_unseen_note(self) -> None:
        result = self.scheduler.tick()
        self.assertEqual(result.trigger, "note-changed")
        self.engine.run_once.assert_called_once_with(path="daily/2025-07-15.md", trigger="note-changed")

    def test_quiet_tick_does_not_sync(self) -> None:
        self.scheduler.tick()
        self.engine.run_once.reset_mock()

        self.assertIsNone(self.scheduler.tick())
        self.engine.run_once.assert_not_called()
        self.engine.check_for_calendar_changes.assert_called_once_with()

    def test_own_write_is_not_an_edit(self) -> None:
        def run_and_write(path=None, trigger="manual"):
            self.mtime = 200.0
            return _result(trigger=trigger)

        self.engine.run_once.side_effect = run_and_write
        self.scheduler.tick()
        self.engine.run_once.reset_mock()

        self.assertIsNone(self.scheduler.tick())
        self.engine.run_once.assert_not_called()

    def test_note_edit_triggers_sync(self) -> None:
        self.scheduler.tick()
        self.mtime = 150.0
        result = self.scheduler.tick()
        self.assertEqual(result.trigger, "note-changed")

    def test_calendar_change_triggers_sync(self) -> None:
        self.scheduler.tick()
        self.engine.check_for_calendar_changes.return_value = True
        result = self.scheduler.tick()
        self.assertEqual(result.trigger, "calendar-changed")
        self.engine.run_once.assert_called_with(path="daily/2025-07-15.md", trigger="calendar-changed")

    def test_missing_note_is_left_alone(self) -> None:
        self.engine.document_state.side_effect = lambda path=None: ("daily/2025-07-15.md", None)
        self.assertIsNone(self.scheduler.tick())
        self.engine.run_once.assert_not_called()
        self.engine.check_for_calendar_changes.assert_not_called()

    def test_busy_run_is_retried_on_next_tick(self) -> None:
        self.engine.run_once.side_effect = lambda path=None, trigger="manual": _result(status="busy", trigger=trigger)
        self.scheduler.tick()
        self.engine.run_once.side_effect = lambda path=None, trigger="manual": _result(trigger=trigger)
        result = self.scheduler.tick()
        self.assertEqual(result.trigger, "note-changed")
        self.assertEqual(self.engine.run_once.call_count, 2)

    def test_manual_triggers_run_each_requested_document_once(self) -> None:
        self.scheduler.trigger_manual()
        self.scheduler.trigger_manual(path="notes/plan.md")
        self.scheduler.trigger_manual(path="notes/plan.md")

        results = self.scheduler.drain_manual()

        self.assertEqual(len(results), 2)
        self.assertEqual(
            self.engine.run_once.call_args_list,
            [mock.call(path=None, trigger="manual"), mock.call(path="notes/plan.md", trigger="manual")],
        )
        self.assertEqual(self.scheduler.drain_manual(), [])


if __name__ == "__main__":
    unittest.main()
