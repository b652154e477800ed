import os
import tempfile
import unittest
from datetime import date, datetime, timezone
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

from plansync.calendar_client import RemoteError
from plansync.models import SyncResult
from plansync.web_admin import create_app


class WebAdminTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.vault = Path(self.temp_dir.name) / "vault"
        self.vault.mkdir()
        self.config_path = str(Path(self.temp_dir.name) / "config.yaml")
        self.state_path = str(Path(self.temp_dir.name) / "state.db")
        os.environ["PLANSYNC_CONFIG_PATH"] = self.config_path
        os.environ["PLANSYNC_STATE_PATH"] = self.state_path
        self.client = TestClient(create_app())

        seed_payload = {
            "google": {
                "client_id": "cid",
                "client_secret": "secret-value",
                "refresh_token": "refresh-value",
                "calendar_id": "primary",
            },
            "sync": {"vault_path": str(self.vault), "interval_seconds": 300, "timezone": "UTC"},
        }
        resp = self.client.put("/api/config", json={"payload": seed_payload})
        self.assertEqual(resp.status_code, 200)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    @property
    def context(self):
        return self.client.app.state.context

    def test_healthz(self) -> None:
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_config_raw_has_masked_meta(self) -> None:
        resp = self.client.get("/api/config/raw")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["config"]["google"]["client_secret"], "***")
        self.assertEqual(data["config"]["google"]["refresh_token"], "***")
        self.assertTrue(data["meta"]["google"]["client_secret"]["is_masked"])
        self.assertFalse(data["meta"]["google"]["access_token"]["is_masked"])

    def test_put_config_empty_secret_does_not_override(self) -> None:
        update = {"google": {"calendar_id": "work@example.com", "client_secret": ""}}
        resp = self.client.put("/api/config", json={"payload": update})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["config"]["google"]["calendar_id"], "work@example.com")
        stored = self.context.config_manager.load().google
        self.assertEqual(stored.client_secret, "secret-value")
        self.assertEqual(stored.calendar_id, "work@example.com")

    def test_put_config_masked_secret_does_not_override(self) -> None:
        update = {"google": {"client_secret": "***", "refresh_token": "***"}}
        resp = self.client.put("/api/config", json={"payload": update})
        self.assertEqual(resp.status_code, 200)
        stored = self.context.config_manager.load().google
        self.assertEqual(stored.client_secret, "secret-value")
        self.assertEqual(stored.refresh_token, "refresh-value")

    def test_put_config_non_secret_fields_merge(self) -> None:
        resp = self.client.put("/api/config", json={"payload": {"sync": {"interval_seconds": 600}}})
        self.assertEqual(resp.status_code, 200)
        config = resp.json()["config"]
        self.assertEqual(config["sync"]["interval_seconds"], 600)
        self.assertEqual(config["sync"]["timezone"], "UTC")
        self.assertEqual(config["google"]["client_id"], "cid")

    def test_sync_run_calls_sync_engine(self) -> None:
        fake_result = SyncResult(
            status="success",
            message="ok",
            duration_ms=42,
            changes_applied=1,
            trigger="api",
            path="notes/plan.md",
            run_at=datetime(2025, 7, 15, 8, 0, 0, tzinfo=timezone.utc),
        )
        with mock.patch.object(self.context.sync_engine, "run_once", return_value=fake_result) as run_once:
            resp = self.client.post("/api/sync/run", json={"path": "notes/plan.md"})
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["message"], "sync completed")
        self.assertEqual(data["result"]["path"], "notes/plan.md")
        run_once.assert_called_once_with(path="notes/plan.md", trigger="api")

    def test_sync_run_reports_busy(self) -> None:
        busy = SyncResult(status="busy", message="A sync is already running.", duration_ms=0, changes_applied=0, trigger="api")
        with mock.patch.object(self.context.sync_engine, "run_once", return_value=busy):
            resp = self.client.post("/api/sync/run", json={})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["message"], "sync busy")

    def test_sync_run_on_missing_note_is_skipped(self) -> None:
        resp = self.client.post("/api/sync/run", json={"path": "notes/missing.md"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["result"]["status"], "skipped")
        status = self.client.get("/api/sync/status").json()
        self.assertFalse(status["busy"])
        self.assertEqual(status["runs"][0]["status"], "skipped")

    def test_sync_trigger_wakes_scheduler(self) -> None:
        with mock.patch.object(self.context.scheduler, "trigger_manual") as trigger_manual:
            resp = self.client.post("/api/sync/trigger")
        self.assertEqual(resp.status_code, 200)
        trigger_manual.assert_called_once_with(path=None)

    def test_sync_trigger_passes_document_path(self) -> None:
        with mock.patch.object(self.context.scheduler, "trigger_manual") as trigger_manual:
            resp = self.client.post("/api/sync/trigger", json={"path": "notes/plan.md"})
        self.assertEqual(resp.status_code, 200)
        trigger_manual.assert_called_once_with(path="notes/plan.md")

    def test_sync_trigger_rejects_path_outside_vault(self) -> None:
        with mock.patch.object(self.context.scheduler, "trigger_manual") as trigger_manual:
            resp = self.client.post("/api/sync/trigger", json={"path": "../outside.md"})
        self.assertEqual(resp.status_code, 400)
        trigger_manual.assert_not_called()

    def test_audit_events_list(self) -> None:
        self.context.state_store.record_audit_event(
            calendar_id="primary",
            event_id="evt-1",
            action="create_event",
            details={"task_id": "t-1"},
            run_id=7,
        )
        resp = self.client.get("/api/audit/events?run_id=7")
        self.assertEqual(resp.status_code, 200)
        events = resp.json()["events"]
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]["details"]["task_id"], "t-1")

    def test_timeline_rejects_invalid_date(self) -> None:
        resp = self.client.get("/api/timeline?date=15-07-2025")
        self.assertEqual(resp.status_code, 400)

    def test_timeline_rejects_path_outside_vault(self) -> None:
        resp = self.client.get("/api/timeline?path=../outside.md")
        self.assertEqual(resp.status_code, 400)

    def test_timeline_calls_sync_engine(self) -> None:
        payload = {"date": "2025-07-15", "path": "", "start_hour": 6, "end_hour": 22, "events": [], "notices": []}
        with mock.patch.object(self.context.sync_engine, "timeline", return_value=payload) as timeline:
            resp = self.client.get("/api/timeline?date=2025-07-15")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["date"], "2025-07-15")
        timeline.assert_called_once_with(path=None, day=date(2025, 7, 15))

    def test_calendar_changes(self) -> None:
        with mock.patch.object(self.context.sync_engine, "check_for_calendar_changes", return_value=True) as check:
            resp = self.client.get("/api/calendar/changes?date=2025-07-15")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["changed"])
        check.assert_called_once_with(date(2025, 7, 15))

    def test_oauth_url(self) -> None:
        resp = self.client.get("/api/oauth/url")
        self.assertEqual(resp.status_code, 200)
        self.assertIn("client_id=cid", resp.json()["url"])

    def test_oauth_exchange_maps_transport_failure(self) -> None:
        with mock.patch.object(self.context.credentials, "exchange_code", side_effect=RemoteError("timeout")):
            resp = self.client.post("/api/oauth/exchange", json={"code": "abc"})
        self.assertEqual(resp.status_code, 502)

    def test_oauth_exchange_rejects_empty_code(self) -> None:
        resp = self.client.post("/api/oauth/exchange", json={"code": ""})
        self.assertEqual(resp.status_code, 422)


if __name__ == "__main__":
    unittest.main()
