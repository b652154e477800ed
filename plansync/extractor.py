from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Iterable, Protocol

from plansync.models import SyncConfig, TaskRecord, parse_iso_datetime
from plansync.task_line import (
    ANY_INLINE_FIELD_PATTERN,
    BLOCK_REF_PATTERN,
    CHECKBOX_PATTERN,
    FIELD_DURATION,
    FIELD_EVENT_ID,
    FIELD_SYNC,
    FIELD_TASK_ID,
    LEGACY_META_PATTERN,
    TASKS_EMOJI_PATTERN,
    clean_content,
    extract_inline_field,
    find_date,
    find_time,
    has_sync_tag,
    normalize_sync_tag,
    parse_duration,
    parse_legacy_metadata,
    remove_inline_field,
    tag_matches,
    take_date,
    take_time,
)

logger = logging.getLogger(__name__)


def _coerce_moment(value: Any) -> date | datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, (date, datetime)):
        return value
    text = str(value).strip()
    try:
        if "T" in text or " " in text:
            return parse_iso_datetime(text.replace(" ", "T", 1))
        return date.fromisoformat(text)
    except ValueError:
        return None


@dataclass
class RawTask:
    """One task as reported by an external task index."""

    description: str
    status_indicator: str
    original_line: str
    line_number: int
    block_link: str | None = None
    tags: list[str] = field(default_factory=list)
    happens: date | datetime | None = None
    happens_has_time: bool = False
    scheduled_date: date | datetime | None = None
    start_date: date | datetime | None = None
    due_date: date | datetime | None = None
    done_date: date | datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RawTask":
        tags = data.get("tags") or []
        return cls(
            description=str(data.get("description", "") or ""),
            status_indicator=str(data.get("status_indicator", data.get("status", " ")) or " "),
            original_line=str(data.get("original_line", "") or ""),
            line_number=int(data.get("line_number", -1)),
            block_link=str(data.get("block_link") or "").strip() or None,
            tags=[str(tag) for tag in tags if str(tag).strip()],
            happens=_coerce_moment(data.get("happens")),
            happens_has_time=bool(data.get("happens_has_time", False)),
            scheduled_date=_coerce_moment(data.get("scheduled_date")),
            start_date=_coerce_moment(data.get("start_date")),
            due_date=_coerce_moment(data.get("due_date")),
            done_date=_coerce_moment(data.get("done_date")),
        )

    def happens_moment(self) -> date | datetime | None:
        for candidate in (self.happens, self.scheduled_date, self.start_date, self.due_date):
            if isinstance(candidate, (date, datetime)):
                return candidate
        return None


class TaskIndex(Protocol):
    def get_tasks(self, path: str) -> list[RawTask]: ...


IndexLoader = Callable[[bool], "TaskIndex | None"]


def _new_task_id() -> str:
    return str(uuid.uuid4())


def _date_time_from_moment(moment: date | datetime, explicit_time: bool) -> tuple[str, str | None]:
    if not isinstance(moment, datetime):
        return moment.isoformat(), None
    task_time = None
    if explicit_time or (moment.hour, moment.minute, moment.second) != (0, 0, 0):
        task_time = moment.strftime("%H:%M")
    return moment.date().isoformat(), task_time


class ManualTaskSource:
    """Line-by-line checklist parsing used when no task index is available."""

    def __init__(self, config: SyncConfig) -> None:
        self.config = config

    def extract(self, text: str, path: str) -> list[TaskRecord]:
        tasks: list[TaskRecord] = []
        for index, line in enumerate(text.split("\n")):
            task = self.parse_line(line, index, path)
            if task is not None:
                tasks.append(task)
        return tasks

    def parse_line(self, line: str, line_number: int, path: str) -> TaskRecord | None:
        match = CHECKBOX_PATTERN.match(line)
        if not match:
            return None
        completed = match.group(2) in {"x", "X"}
        full_text = match.group(3).strip()
        sync_tag = normalize_sync_tag(self.config.sync_tag)

        content = full_text
        task_id = extract_inline_field(content, FIELD_TASK_ID)
        content = remove_inline_field(content, FIELD_TASK_ID)
        event_id = extract_inline_field(content, FIELD_EVENT_ID)
        content = remove_inline_field(content, FIELD_EVENT_ID)
        duration_text = extract_inline_field(content, FIELD_DURATION)
        content = remove_inline_field(content, FIELD_DURATION)
        sync_explicit = extract_inline_field(content, FIELD_SYNC)
        content = remove_inline_field(content, FIELD_SYNC)

        legacy = parse_legacy_metadata(content)
        task_id = task_id or legacy.task_id
        event_id = event_id or legacy.event_id
        duration = parse_duration(duration_text) if duration_text else legacy.duration
        if sync_explicit is None and legacy.sync is not None:
            sync_explicit = "true" if legacy.sync else "false"
        content = LEGACY_META_PATTERN.sub("", content).strip()

        block_ref = BLOCK_REF_PATTERN.search(content)
        if block_ref:
            content = content[: block_ref.start()].strip()

        task_date, content = take_date(content)
        task_time, content = take_time(content)

        sync_value = (sync_explicit or "").strip().lower()
        if sync_value == "true":
            sync_enabled = True
        elif sync_value == "false":
            sync_enabled = False
        elif has_sync_tag(full_text, sync_tag):
            sync_enabled = True
        else:
            sync_enabled = self.config.auto_sync

        content = clean_content(TASKS_EMOJI_PATTERN.sub("", content), task_date, task_time, [sync_tag])
        if not content and not event_id:
            return None

        return TaskRecord(
            id=f"^{block_ref.group(1)}" if block_ref else f"line-{line_number}",
            source_path=path,
            line_number=line_number,
            raw_line=line,
            content=content,
            external_task_id=task_id or _new_task_id(),
            date=task_date,
            time=task_time,
            duration_minutes=duration,
            completed=completed,
            sync_enabled=sync_enabled,
            remote_event_id=event_id or None,
        )


class IndexTaskSource:
    """Maps tasks reported by an external task index onto ``TaskRecord``."""

    def __init__(self, index: TaskIndex, config: SyncConfig) -> None:
        self.index = index
        self.config = config

    def extract(self, text: str, path: str) -> list[TaskRecord]:
        lines = text.split("\n")
        tasks: list[TaskRecord] = []
        for raw in self.index.get_tasks(path) or []:
            if not raw.original_line:
                continue
            task = self._map(raw, lines, path)
            if task is not None:
                tasks.append(task)
        return tasks

    def _map(self, raw: RawTask, lines: list[str], path: str) -> TaskRecord | None:
        line = raw.original_line
        description = raw.description
        status = raw.status_indicator
        moment = raw.happens_moment()
        done = raw.done_date is not None
        stale = 0 <= raw.line_number < len(lines) and lines[raw.line_number] != raw.original_line
        if stale:
            # The index lags behind edits made to the text; trust the line itself.
            line = lines[raw.line_number]
            checkbox = CHECKBOX_PATTERN.match(line)
            if checkbox is None:
                logger.debug("Skipping stale index task at %s:%d, line is no longer a task", path, raw.line_number)
                return None
            description = checkbox.group(3)
            status = checkbox.group(2)
            moment = None
            done = False

        task_date: str | None = None
        task_time: str | None = None
        if moment is not None:
            task_date, task_time = _date_time_from_moment(moment, raw.happens_has_time)
        else:
            scan_text = ANY_INLINE_FIELD_PATTERN.sub("", description)
            found_date = find_date(scan_text)
            if found_date:
                task_date = found_date[0]
            found_time = find_time(scan_text)
            if found_time:
                task_time = found_time[0]

        sync_tag = normalize_sync_tag(self.config.sync_tag)
        if stale:
            has_tag = has_sync_tag(line, sync_tag)
        else:
            has_tag = any(tag_matches(tag, sync_tag) for tag in raw.tags)
        sync_field = (extract_inline_field(line, FIELD_SYNC) or "").lower()

        return TaskRecord(
            id=raw.block_link or f"line-{raw.line_number}",
            source_path=path,
            line_number=raw.line_number,
            raw_line=line,
            content=clean_content(description, task_date, task_time, _tags_to_strip(raw.tags, sync_tag)),
            external_task_id=extract_inline_field(line, FIELD_TASK_ID) or _new_task_id(),
            date=task_date,
            time=task_time,
            duration_minutes=parse_duration(extract_inline_field(line, FIELD_DURATION)),
            completed=status in {"x", "X"} or done,
            sync_enabled=has_tag or sync_field == "true",
            remote_event_id=extract_inline_field(line, FIELD_EVENT_ID),
        )


def _tags_to_strip(tags: Iterable[str], sync_tag: str) -> list[str]:
    stripped = list(tags)
    if sync_tag not in stripped:
        stripped.append(sync_tag)
    return stripped


class ExtractionSession:
    """Tracks, for one host session, whether the task index is usable.

    The index is looked up once at startup and once more "definitively" on
    the first extraction that finds it missing or failing; after that the
    manual parser is used for the rest of the session.
    """

    def __init__(self, index_loader: IndexLoader | None = None) -> None:
        self.index_loader = index_loader
        self.index: TaskIndex | None = None
        self.startup_attempted = False
        self.definitive_attempted = False
        self.fallback_permanent = index_loader is None

    def load_index(self, definitive: bool = False) -> TaskIndex | None:
        if self.index is not None or self.index_loader is None:
            return self.index
        if not definitive:
            if self.startup_attempted:
                return None
            self.startup_attempted = True
        try:
            self.index = self.index_loader(definitive)
        except Exception:
            logger.warning("Task index lookup failed (definitive=%s)", definitive, exc_info=True)
            self.index = None
        return self.index

    def start(self) -> None:
        self.load_index(definitive=False)


class TaskExtractor:
    def __init__(self, config: SyncConfig, session: ExtractionSession | None = None) -> None:
        self.config = config
        self.session = session or ExtractionSession()
        self.manual = ManualTaskSource(config)

    def extract(self, text: str, path: str) -> list[TaskRecord]:
        session = self.session
        if not session.fallback_permanent:
            tasks = self._extract_with_index(text, path, definitive=False)
            if tasks is None and not session.definitive_attempted:
                session.definitive_attempted = True
                tasks = self._extract_with_index(text, path, definitive=True)
            if tasks is None:
                if session.definitive_attempted:
                    logger.info("Task index unavailable; using manual task parsing for this session")
                    session.fallback_permanent = True
            elif tasks:
                return tasks
        return self.manual.extract(text, path)

    def _extract_with_index(self, text: str, path: str, *, definitive: bool) -> list[TaskRecord] | None:
        index = self.session.load_index(definitive=definitive)
        if index is None:
            return None
        try:
            return IndexTaskSource(index, self.config).extract(text, path)
        except Exception:
            logger.warning("Task index failed for %s; falling back to manual parsing", path, exc_info=True)
            self.session.index = None
            return None
