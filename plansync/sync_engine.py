from __future__ import annotations

import errno
import logging
import re
import threading
import traceback
from datetime import date, datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Callable

from plansync.calendar_client import (
    EventGateway,
    GatewayError,
    GoogleCalendarService,
    GoogleCredentialProvider,
    configured_calendar_ids,
    fetch_events_for_day,
)
from plansync.config_manager import ConfigManager
from plansync.extractor import ExtractionSession, TaskExtractor
from plansync.layout import layout_events
from plansync.models import (
    AppConfig,
    CalendarEvent,
    DocumentContext,
    SyncConfig,
    SyncResult,
    resolve_timezone,
)
from plansync.reconciler import Reconciler, build_event_for_task
from plansync.state_store import StateStore

logger = logging.getLogger(__name__)

DAILY_NOTE_PATTERN = re.compile(r"^(\d{4}-\d{2}-\d{2}).*\.md$")

GatewayFactory = Callable[[AppConfig], EventGateway]


def _normalize_relative_path(path: str) -> str:
    return str(PurePosixPath(str(path or "").replace("\\", "/").strip().lstrip("/")))


def _daily_note_date(path: str, daily_note_folder: str) -> date | None:
    posix = PurePosixPath(_normalize_relative_path(path))
    parent = "" if str(posix.parent) == "." else str(posix.parent)
    if parent != daily_note_folder.strip().strip("/"):
        return None
    match = DAILY_NOTE_PATTERN.match(posix.name)
    if not match:
        return None
    try:
        return date.fromisoformat(match.group(1))
    except ValueError:
        return None


def _is_daily_note(path: str, daily_note_folder: str) -> bool:
    return _daily_note_date(path, daily_note_folder) is not None


def _context_date(path: str, config: SyncConfig, today: date) -> tuple[date, bool]:
    note_date = _daily_note_date(path, config.daily_note_folder)
    if note_date is None:
        return today, False
    return note_date, True


def _daily_note_path(config: SyncConfig, day: date) -> str:
    name = f"{day.isoformat()}.md"
    folder = config.daily_note_folder.strip().strip("/")
    return f"{folder}/{name}" if folder else name


def _event_signature(event: CalendarEvent) -> tuple[str, str, str, str, str]:
    return (event.id, event.title, event.start, event.end, (event.description or "")[:50])


def _write_text_atomic(path: Path, text: str) -> None:
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8", newline="") as handle:
        handle.write(text)
    try:
        tmp_path.replace(path)
    except OSError as exc:
        if exc.errno != errno.EBUSY:
            raise
        with path.open("w", encoding="utf-8", newline="") as handle:
            handle.write(text)
        if tmp_path.exists():
            tmp_path.unlink()


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        extraction_session: ExtractionSession | None = None,
        gateway_factory: GatewayFactory | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.extraction_session = extraction_session or ExtractionSession()
        self.extraction_session.start()
        self.gateway_factory = gateway_factory or self._default_gateway
        self._run_lock = threading.Lock()
        self._last_seen: dict[str, list[tuple[str, str, str, str, str]]] = {}

    def _default_gateway(self, config: AppConfig) -> EventGateway:
        return GoogleCalendarService(
            config.google,
            GoogleCredentialProvider(self.config_manager),
            timezone_name=config.sync.timezone,
        )

    @property
    def busy(self) -> bool:
        return self._run_lock.locked()

    def today(self, config: AppConfig) -> date:
        return datetime.now(resolve_timezone(config.sync.timezone)).date()

    def resolve_document(self, config: AppConfig, path: str | None) -> tuple[str, Path]:
        vault = Path(config.sync.vault_path).expanduser().resolve()
        relative = _normalize_relative_path(path) if path else _daily_note_path(config.sync, self.today(config))
        full_path = (vault / relative).resolve()
        if full_path != vault and vault not in full_path.parents:
            raise ValueError(f"Path escapes the vault: {path}")
        return relative, full_path

    def document_state(self, path: str | None = None) -> tuple[str, float | None]:
        """Return the document's vault-relative path and mtime; mtime is None when it does not exist."""
        config = self.config_manager.load()
        if not config.sync.vault_path:
            return "", None
        relative, full_path = self.resolve_document(config, path)
        try:
            return relative, full_path.stat().st_mtime
        except FileNotFoundError:
            return relative, None

    def run_once(self, path: str | None = None, trigger: str = "manual") -> SyncResult:
        if not self._run_lock.acquire(blocking=False):
            logger.info("Sync already running; dropping %s request", trigger)
            return SyncResult(
                status="busy",
                message="A sync is already running.",
                duration_ms=0,
                changes_applied=0,
                trigger=trigger,
                path=path or "",
            )
        try:
            return self._run_locked(path, trigger)
        finally:
            self._run_lock.release()

    def _skip(self, started_at: datetime, trigger: str, path: str, message: str) -> SyncResult:
        duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
        self.state_store.record_sync_run(
            trigger=trigger,
            status="skipped",
            message=message,
            duration_ms=duration_ms,
            changes_applied=0,
            path=path,
        )
        logger.info("Sync skipped: %s", message)
        return SyncResult(
            status="skipped",
            message=message,
            duration_ms=duration_ms,
            changes_applied=0,
            trigger=trigger,
            path=path,
        )

    def _run_locked(self, path: str | None, trigger: str) -> SyncResult:
        started_at = datetime.now(timezone.utc)
        relative_path = path or ""
        changes_applied = 0
        run_id: int | None = None

        try:
            config = self.config_manager.load()
            if not config.sync.vault_path or not config.google.calendar_id:
                return self._skip(started_at, trigger, relative_path, "Vault path or calendar id missing. Sync skipped.")
            relative_path, full_path = self.resolve_document(config, path)
            if not full_path.is_file():
                return self._skip(started_at, trigger, relative_path, f"Document not found: {relative_path}")

            run_id = self.state_store.start_sync_run(trigger=trigger, path=relative_path)
            text = full_path.read_text(encoding="utf-8")
            context_date, date_bound = _context_date(relative_path, config.sync, self.today(config))
            document = DocumentContext(
                path=relative_path,
                text=text,
                context_date=context_date,
                date_bound=date_bound,
            )
            extractor = TaskExtractor(config.sync, self.extraction_session)
            tasks = extractor.extract(text, relative_path)
            outcome = Reconciler(config, extractor).reconcile(tasks, document, self.gateway_factory(config))

            if outcome.text != text:
                _write_text_atomic(full_path, outcome.text)
            for mutation in outcome.mutations:
                self.state_store.record_audit_event(
                    calendar_id=config.google.calendar_id,
                    event_id=mutation.event_id,
                    action=f"{mutation.action}_event",
                    details={
                        "trigger": trigger,
                        "path": relative_path,
                        "task_id": mutation.task_id,
                        "reason": mutation.reason,
                    },
                    run_id=run_id,
                )

            changes_applied = len(outcome.mutations) + len(outcome.line_edits)
            status = "error" if outcome.auth_failed else "success"
            message = (
                f"Processed {len(tasks)} tasks: {len(outcome.mutations)} calendar changes, "
                f"{len(outcome.line_edits)} line edits."
            )
            if outcome.auth_failed:
                message = f"Calendar authorization failed. {message}"
            duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
            self.state_store.finish_sync_run(
                run_id=run_id,
                status=status,
                message=message,
                duration_ms=duration_ms,
                changes_applied=changes_applied,
            )
            logger.info("Sync %s for %s (%s): %s", status, relative_path, trigger, message)
            return SyncResult(
                status=status,
                message=f"{message} run_id={run_id}",
                duration_ms=duration_ms,
                changes_applied=changes_applied,
                trigger=trigger,
                path=relative_path,
                notices=list(outcome.notices),
            )
        except Exception as exc:
            logger.exception("Sync failed for %s", relative_path or "<daily note>")
            duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
            error_message = f"{type(exc).__name__}: {exc}"
            if run_id is None:
                run_id = self.state_store.record_sync_run(
                    trigger=trigger,
                    status="error",
                    message=error_message,
                    duration_ms=duration_ms,
                    changes_applied=changes_applied,
                    path=relative_path,
                )
            else:
                self.state_store.finish_sync_run(
                    run_id=run_id,
                    status="error",
                    message=error_message,
                    duration_ms=duration_ms,
                    changes_applied=changes_applied,
                )
            self.state_store.record_audit_event(
                calendar_id="system",
                event_id="sync",
                action="run_error",
                details={
                    "trigger": trigger,
                    "path": relative_path,
                    "error": error_message,
                    "traceback": traceback.format_exc(limit=5),
                },
                run_id=run_id,
            )
            return SyncResult(
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                changes_applied=changes_applied,
                trigger=trigger,
                path=relative_path,
            )

    def _fetch_remote_events(
        self, config: AppConfig, day: date, notices: list[str]
    ) -> list[CalendarEvent]:
        gateway = self.gateway_factory(config)
        tz = resolve_timezone(config.sync.timezone)
        events: list[CalendarEvent] = []
        for calendar_id in configured_calendar_ids(config.google):
            try:
                events.extend(fetch_events_for_day(gateway, calendar_id, day, tz))
            except GatewayError as exc:
                logger.warning("Could not load events of %s for %s: %s", calendar_id, day.isoformat(), exc)
                notices.append(f"Could not load calendar events from {calendar_id}: {exc}")
        return events

    def _remember(self, day: date, events: list[CalendarEvent]) -> bool:
        signature = [_event_signature(event) for event in events]
        previous = self._last_seen.get(day.isoformat(), [])
        self._last_seen[day.isoformat()] = signature
        return signature != previous

    def check_for_calendar_changes(self, day: date | None = None) -> bool:
        """Return True when the day's events differ from the last ones seen."""
        config = self.config_manager.load()
        day = day or self.today(config)
        notices: list[str] = []
        events = self._fetch_remote_events(config, day, notices)
        if notices:
            return False
        changed = self._remember(day, events)
        if changed:
            logger.info("Calendar events changed for %s", day.isoformat())
        return changed

    def timeline(self, path: str | None = None, day: date | None = None) -> dict[str, Any]:
        config = self.config_manager.load()
        tz = resolve_timezone(config.sync.timezone)
        notices: list[str] = []
        relative_path = ""
        text = ""
        date_bound = False
        if path or config.sync.vault_path:
            relative_path, full_path = self.resolve_document(config, path)
            if full_path.is_file():
                text = full_path.read_text(encoding="utf-8")
            context_date, date_bound = _context_date(relative_path, config.sync, self.today(config))
        else:
            context_date = self.today(config)
        day = day or context_date

        events = self._fetch_remote_events(config, day, notices)
        if not notices:
            self._remember(day, events)
        if text:
            extractor = TaskExtractor(config.sync, self.extraction_session)
            for task in extractor.extract(text, relative_path):
                if task.completed or task.remote_event_id or not task.time:
                    continue
                if not task.date and not date_bound:
                    continue
                if task.effective_date(context_date) != day:
                    continue
                event = build_event_for_task(task, context_date, config, tz)
                event.id = f"task:{task.external_task_id}"
                events.append(event)

        positioned = layout_events(events, tz)
        return {
            "date": day.isoformat(),
            "path": relative_path,
            "start_hour": config.timeline.start_hour,
            "end_hour": config.timeline.end_hour,
            "events": [item.to_dict() for item in positioned],
            "notices": notices,
        }
