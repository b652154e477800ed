from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, tzinfo

from plansync.calendar_client import AuthError, EventGateway, NotFoundError, RemoteError
from plansync.extractor import TaskExtractor
from plansync.models import (
    AppConfig,
    CalendarEvent,
    DocumentContext,
    EventOrigin,
    ReconcileOutcome,
    RemoteMutation,
    TaskRecord,
    day_window,
    parse_event_bound,
    resolve_timezone,
)
from plansync.task_line import (
    FIELD_EVENT_ID,
    FIELD_SYNC,
    FIELD_TASK_ID,
    build_event_description,
    extract_inline_field,
    has_sync_tag,
    mark_completed,
    migrate_legacy_metadata,
    reformat_line,
    remove_inline_field,
    set_inline_field,
    strip_sync_markers,
)

logger = logging.getLogger(__name__)

UNNAMED_TASK = "Unnamed Task from Obsidian"


def _short(text: str, limit: int = 30) -> str:
    text = text.strip()
    return text if len(text) <= limit else text[:limit] + "..."


class LinePatch:
    """Replacement lines keyed by their index in an immutable snapshot of the document."""

    def __init__(self, text: str) -> None:
        self.snapshot: tuple[str, ...] = tuple(text.split("\n"))
        self.edits: dict[int, str] = {}

    def __contains__(self, index: int) -> bool:
        return 0 <= index < len(self.snapshot)

    def current(self, index: int) -> str:
        return self.edits.get(index, self.snapshot[index])

    def set(self, index: int, line: str) -> bool:
        if index not in self or line == self.current(index):
            return False
        if line == self.snapshot[index]:
            self.edits.pop(index, None)
        else:
            self.edits[index] = line
        return True

    @property
    def changed(self) -> bool:
        return bool(self.edits)

    def render(self) -> str:
        return "\n".join(self.edits.get(index, line) for index, line in enumerate(self.snapshot))


def build_event_for_task(
    task: TaskRecord,
    context_date: date,
    config: AppConfig,
    tz: tzinfo,
    verb: str = "Created",
) -> CalendarEvent:
    day = task.effective_date(context_date)
    if task.time:
        hours, minutes = (int(part) for part in task.time.split(":"))
        start_time = time(hours, minutes)
    else:
        start_time = time(config.sync.default_start_hour, 0)
    start = datetime.combine(day, start_time, tzinfo=tz)
    end = start + timedelta(minutes=task.duration_minutes or config.sync.default_event_duration)
    return CalendarEvent(
        id=task.remote_event_id or "",
        title=task.content.strip() or UNNAMED_TASK,
        start=start.isoformat(),
        end=end.isoformat(),
        description=build_event_description(task.external_task_id, task.source_path, verb),
        linked_task_id=task.external_task_id,
        origin=EventOrigin.TASK_DERIVED,
        calendar_id=config.google.calendar_id,
        source_path=task.source_path,
    )


def _same_instant(left: str, right: str, tz: tzinfo) -> bool:
    try:
        return parse_event_bound(left, tz) == parse_event_bound(right, tz)
    except ValueError:
        return False


def _needs_update(desired: CalendarEvent, current: CalendarEvent, tz: tzinfo) -> bool:
    if desired.title != current.title or desired.linked_task_id != current.linked_task_id:
        return True
    if current.all_day:
        return True
    return not (_same_instant(desired.start, current.start, tz) and _same_instant(desired.end, current.end, tz))


@dataclass
class _Run:
    document: DocumentContext
    gateway: EventGateway
    calendar_id: str
    tz: tzinfo
    patch: LinePatch
    notices: list[str] = field(default_factory=list)
    mutations: list[RemoteMutation] = field(default_factory=list)
    auth_failed: bool = False
    events_by_day: dict[date, list[CalendarEvent] | None] = field(default_factory=dict)

    def notice(self, message: str) -> None:
        if message not in self.notices:
            self.notices.append(message)

    def abort_auth(self, exc: Exception) -> None:
        if self.auth_failed:
            return
        self.auth_failed = True
        logger.warning("Calendar authorization failed; skipping remaining remote calls: %s", exc)
        self.notice(f"Google Calendar authorization failed: {exc}. Remaining calendar changes were skipped.")

    def events_for(self, day: date) -> list[CalendarEvent] | None:
        if day in self.events_by_day:
            return self.events_by_day[day]
        if self.auth_failed:
            return None
        start, end = day_window(day, self.tz)
        events: list[CalendarEvent] | None
        try:
            events = self.gateway.fetch_events(self.calendar_id, start, end)
        except AuthError as exc:
            self.abort_auth(exc)
            events = None
        except RemoteError as exc:
            logger.warning("Could not load events for %s: %s", day.isoformat(), exc)
            self.notice(f"Could not load calendar events for {day.isoformat()}: {exc}")
            events = None
        self.events_by_day[day] = events
        return events


class Reconciler:
    """Three-phase sync of one document's task lines against one calendar."""

    def __init__(self, config: AppConfig, extractor: TaskExtractor) -> None:
        self.config = config
        self.extractor = extractor
        self.tz = resolve_timezone(config.sync.timezone)

    @property
    def sync_tag(self) -> str:
        return self.config.sync.sync_tag

    def reconcile(
        self,
        tasks: list[TaskRecord],
        document: DocumentContext,
        gateway: EventGateway,
    ) -> ReconcileOutcome:
        run = _Run(
            document=document,
            gateway=gateway,
            calendar_id=self.config.google.calendar_id,
            tz=self.tz,
            patch=LinePatch(document.text),
        )
        self._complete_deleted_events(run, tasks)
        self._delete_remote_events(run, tasks)
        if run.patch.changed:
            tasks = self.extractor.extract(run.patch.render(), document.path)
        self._push_tasks(run, tasks)

        if run.patch.changed:
            run.notice("Note was updated.")
        logger.info(
            "Reconciled %s: %d line edit(s), %d remote change(s)",
            document.path,
            len(run.patch.edits),
            len(run.mutations),
        )
        return ReconcileOutcome(
            text=run.patch.render(),
            line_edits=dict(run.patch.edits),
            mutations=list(run.mutations),
            notices=list(run.notices),
            auth_failed=run.auth_failed,
        )

    def _unlink_line(self, line: str, task: TaskRecord, *, strip_sync: bool) -> str:
        line = remove_inline_field(migrate_legacy_metadata(line), FIELD_EVENT_ID)
        if strip_sync:
            line = strip_sync_markers(line, self.sync_tag)
        return reformat_line(line, task.date, task.time)

    def _complete_deleted_events(self, run: _Run, tasks: list[TaskRecord]) -> None:
        for task in tasks:
            if not task.remote_event_id or task.completed or task.line_number not in run.patch:
                continue
            events = run.events_for(task.effective_date(run.document.context_date))
            if events is None:
                continue
            if any(event.id == task.remote_event_id for event in events):
                continue
            line = mark_completed(run.patch.current(task.line_number))
            run.patch.set(task.line_number, self._unlink_line(line, task, strip_sync=True))
            task.completed = True
            task.sync_enabled = False
            task.remote_event_id = None
            run.notice(f"Task '{_short(task.content)}' completed: its calendar event was deleted.")

    def _delete_remote_events(self, run: _Run, tasks: list[TaskRecord]) -> None:
        candidates: dict[str, tuple[TaskRecord | None, str]] = {}
        for task in tasks:
            if not task.remote_event_id:
                continue
            if task.completed:
                candidates.setdefault(task.remote_event_id, (task, "completed"))
            elif not task.sync_enabled:
                candidates.setdefault(task.remote_event_id, (task, "sync-disabled"))

        context_date = run.document.context_date
        task_ids = {task.external_task_id for task in tasks}
        linked_event_ids = {task.remote_event_id for task in tasks if task.remote_event_id}
        days = sorted({task.effective_date(context_date) for task in tasks} | {context_date})
        for day in days:
            for event in run.events_for(day) or []:
                if not event.linked_task_id or event.linked_task_id in task_ids:
                    continue
                if event.id in linked_event_ids:
                    continue
                if event.source_path and event.source_path != run.document.path:
                    continue
                candidates.setdefault(event.id, (None, "orphan"))

        for event_id, (task, reason) in candidates.items():
            if run.auth_failed:
                break
            try:
                run.gateway.delete_event(run.calendar_id, event_id)
            except AuthError as exc:
                run.abort_auth(exc)
                break
            except NotFoundError:
                logger.info("Event %s was already gone", event_id)
            except RemoteError as exc:
                logger.warning("Failed to delete event %s: %s", event_id, exc)
                run.notice(f"Could not delete calendar event {event_id}: {exc}")
                continue
            run.mutations.append(
                RemoteMutation(
                    action="delete",
                    event_id=event_id,
                    task_id=task.external_task_id if task else None,
                    reason=reason,
                )
            )
            if task is None:
                run.notice("Removed calendar event of a deleted task.")
                continue
            if task.line_number in run.patch:
                # A task that opted out keeps its sync field so it stays opted out.
                line = self._unlink_line(
                    run.patch.current(task.line_number), task, strip_sync=task.completed
                )
                run.patch.set(task.line_number, line)
            task.remote_event_id = None
            run.notice(f"Removed calendar event for '{_short(task.content)}'.")

    def _schedulable(self, task: TaskRecord, document: DocumentContext) -> bool:
        if not task.content.strip() or not task.time:
            return False
        return bool(task.date) or document.date_bound

    def _push_tasks(self, run: _Run, tasks: list[TaskRecord]) -> None:
        context_date = run.document.context_date
        for task in tasks:
            if run.auth_failed:
                break
            if task.completed or not task.sync_enabled or task.line_number not in run.patch:
                continue
            if task.remote_event_id:
                events = run.events_for(task.effective_date(context_date))
                if events is None:
                    continue
                current = next((event for event in events if event.id == task.remote_event_id), None)
                if current is not None:
                    self._update(run, task, current)
                    continue
                run.patch.set(
                    task.line_number,
                    self._unlink_line(run.patch.current(task.line_number), task, strip_sync=False),
                )
                task.remote_event_id = None
                run.notice(f"Calendar event for '{_short(task.content)}' no longer exists; it will be recreated.")
            if self._schedulable(task, run.document):
                self._create(run, task)

    def _create(self, run: _Run, task: TaskRecord) -> None:
        event = build_event_for_task(task, run.document.context_date, self.config, self.tz)
        try:
            event_id = run.gateway.create_event(run.calendar_id, event)
        except AuthError as exc:
            run.abort_auth(exc)
            return
        except RemoteError as exc:
            logger.warning("Failed to create event for %s: %s", task.external_task_id, exc)
            run.notice(f"Could not create calendar event for '{_short(task.content)}': {exc}")
            return
        task.remote_event_id = event_id
        run.mutations.append(
            RemoteMutation(action="create", event_id=event_id, task_id=task.external_task_id, reason="new-task")
        )
        run.patch.set(task.line_number, self._link_line(run.patch.current(task.line_number), task))
        run.notice(f"Task '{_short(task.content)}' was added to the calendar.")

    def _update(self, run: _Run, task: TaskRecord, current: CalendarEvent) -> None:
        desired = build_event_for_task(task, run.document.context_date, self.config, self.tz, verb="Updated")
        if _needs_update(desired, current, self.tz):
            try:
                run.gateway.update_event(run.calendar_id, current.id, desired)
            except AuthError as exc:
                run.abort_auth(exc)
                return
            except NotFoundError:
                run.patch.set(
                    task.line_number,
                    self._unlink_line(run.patch.current(task.line_number), task, strip_sync=False),
                )
                task.remote_event_id = None
                run.notice(f"Calendar event for '{_short(task.content)}' was not found; its link was removed.")
                return
            except RemoteError as exc:
                logger.warning("Failed to update event %s: %s", current.id, exc)
                run.notice(f"Could not update calendar event for '{_short(task.content)}': {exc}")
                return
            run.mutations.append(
                RemoteMutation(action="update", event_id=current.id, task_id=task.external_task_id, reason="changed")
            )
            run.notice(f"Task '{_short(task.content)}' was updated in the calendar.")
        run.patch.set(task.line_number, self._link_line(run.patch.current(task.line_number), task))

    def _link_line(self, line: str, task: TaskRecord) -> str:
        line = migrate_legacy_metadata(line)
        line = set_inline_field(line, FIELD_TASK_ID, task.external_task_id)
        if task.remote_event_id:
            line = set_inline_field(line, FIELD_EVENT_ID, task.remote_event_id)
        if extract_inline_field(line, FIELD_SYNC) is None and not has_sync_tag(line, self.sync_tag):
            line = set_inline_field(line, FIELD_SYNC, "true")
        return reformat_line(line, task.date, task.time)
