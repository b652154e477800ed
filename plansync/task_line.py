from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime

FIELD_TASK_ID = "obsidianTaskId"
FIELD_EVENT_ID = "gcalEventId"
FIELD_SYNC = "sync"
FIELD_DURATION = "duration"

TASK_ID_MARKER = "Obsidian Task ID:"
TASK_ID_MARKER_PATTERN = re.compile(r"Obsidian Task ID:\s*([\w-]+)", re.IGNORECASE)
SOURCE_PATH_PATTERN = re.compile(r"^Path:\s*(.+?)\s*$", re.MULTILINE)

CHECKBOX_PATTERN = re.compile(r"^(\s*)[-*] \[( |x|X)\] (.*)$")
OPEN_CHECKBOX_PATTERN = re.compile(r"^(\s*[-*] )\[ \]")
BLOCK_REF_PATTERN = re.compile(r"\s\^([A-Za-z0-9-]+)\s*$")
LEGACY_META_PATTERN = re.compile(r"\{([\w-]+)\s*:\s*([^}]+?)\s*\}")
ANY_INLINE_FIELD_PATTERN = re.compile(r"\[[\w-]+::[^\]]+\]")
WIKILINK_PATTERN = re.compile(r"\[\[[^\]]*\]\]")
UUID_PATTERN = re.compile(
    r"\b[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}\b", re.IGNORECASE
)
OLD_META_WORD_PATTERN = re.compile(r"\s*(obsidianTaskId|gcalEventId)\s*([a-f0-9-]{10,})?", re.IGNORECASE)
TASKS_EMOJI_PATTERN = re.compile(r"[⏳🛫✅➕]")

DATE_PATTERN = re.compile(r"(?:📅\s*)?(\d{4}-\d{2}-\d{2})")
TIME_PATTERN = re.compile(r"(?:⏰\s*)?\b(\d{1,2}:\d{2})\b")
EMOJI_DATE_PATTERN = re.compile(r"\s*📅\s*\d{4}-\d{2}-\d{2}\s*")
EMOJI_TIME_PATTERN = re.compile(r"\s*⏰\s*\d{1,2}:\d{2}\s*")


@dataclass
class LegacyMetadata:
    sync: bool | None = None
    event_id: str | None = None
    task_id: str | None = None
    duration: int | None = None


def _field_pattern(name: str, *, leading_space: bool = False) -> re.Pattern[str]:
    prefix = r"\s*" if leading_space else ""
    return re.compile(prefix + r"\[" + re.escape(name) + r"::\s*([^\]]+?)\]", re.IGNORECASE)


def extract_inline_field(line: str, name: str) -> str | None:
    match = _field_pattern(name).search(line)
    if not match:
        return None
    return match.group(1).strip()


def remove_inline_field(line: str, name: str) -> str:
    return _field_pattern(name, leading_space=True).sub("", line).rstrip()


def set_inline_field(line: str, name: str, value: str) -> str:
    """Write ``[name::value]``, in place when the field exists, else appended."""
    match = _field_pattern(name).search(line)
    if match is None:
        updated = line.rstrip()
        if updated:
            updated += " "
        return f"{updated}[{name}::{value}]"
    head = line[: match.start()] + f"[{name}::{value}]"
    # Later duplicates of the same field are dropped.
    tail = _field_pattern(name, leading_space=True).sub("", line[match.end() :])
    return head + tail


def parse_legacy_metadata(text: str) -> LegacyMetadata:
    metadata = LegacyMetadata()
    for match in LEGACY_META_PATTERN.finditer(text or ""):
        key = match.group(1).lower().strip()
        value = match.group(2).strip()
        if key == "sync":
            metadata.sync = value.lower() == "true"
        elif key == "eventid":
            metadata.event_id = value
        elif key == "taskid":
            metadata.task_id = value
        elif key == "duration":
            metadata.duration = parse_duration(value)
    return metadata


def strip_legacy_metadata(text: str) -> str:
    indent = text[: len(text) - len(text.lstrip())]
    return indent + _collapse(LEGACY_META_PATTERN.sub("", text))


def migrate_legacy_metadata(line: str) -> str:
    """Rewrite ``{key:value}`` blocks as inline fields, new-style fields winning."""
    if not LEGACY_META_PATTERN.search(line):
        return line
    legacy = parse_legacy_metadata(line)
    updated = strip_legacy_metadata(line)
    if legacy.task_id and extract_inline_field(updated, FIELD_TASK_ID) is None:
        updated = set_inline_field(updated, FIELD_TASK_ID, legacy.task_id)
    if legacy.event_id and extract_inline_field(updated, FIELD_EVENT_ID) is None:
        updated = set_inline_field(updated, FIELD_EVENT_ID, legacy.event_id)
    if legacy.duration and extract_inline_field(updated, FIELD_DURATION) is None:
        updated = set_inline_field(updated, FIELD_DURATION, str(legacy.duration))
    if legacy.sync is not None and extract_inline_field(updated, FIELD_SYNC) is None:
        updated = set_inline_field(updated, FIELD_SYNC, "true" if legacy.sync else "false")
    return updated


def parse_duration(value: str | None) -> int | None:
    if value is None:
        return None
    match = re.match(r"\s*(\d+)", str(value))
    if not match:
        return None
    minutes = int(match.group(1))
    return minutes if minutes > 0 else None


def normalize_sync_tag(tag: str) -> str:
    tag = (tag or "").strip() or "#gcal"
    return tag if tag.startswith("#") else f"#{tag}"


def has_sync_tag(text: str, tag: str) -> bool:
    pattern = re.escape(normalize_sync_tag(tag)) + r"(?![\w/-])"
    return re.search(pattern, text or "", re.IGNORECASE) is not None


def tag_matches(candidate: str, tag: str) -> bool:
    wanted = normalize_sync_tag(tag).lower()
    value = (candidate or "").strip().lower()
    return value == wanted or value == wanted[1:]


def remove_sync_tag(line: str, tag: str) -> str:
    pattern = r"\s*" + re.escape(normalize_sync_tag(tag)) + r"(?![\w/-])"
    return re.sub(pattern, "", line, flags=re.IGNORECASE).rstrip()


def normalize_date(value: str | None) -> str | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value.strip()).isoformat()
    except ValueError:
        return None


def normalize_time(value: str | None) -> str | None:
    if not value:
        return None
    try:
        parsed = datetime.strptime(value.strip(), "%H:%M")
    except ValueError:
        return None
    return parsed.strftime("%H:%M")


def _protected_spans(text: str) -> list[tuple[int, int]]:
    spans = []
    for pattern in (WIKILINK_PATTERN, ANY_INLINE_FIELD_PATTERN, LEGACY_META_PATTERN):
        spans.extend(match.span() for match in pattern.finditer(text))
    return spans


def _is_protected(spans: list[tuple[int, int]], match: re.Match[str]) -> bool:
    start, end = match.span()
    return any(start < span_end and end > span_start for span_start, span_end in spans)


def _sub_unprotected(pattern: re.Pattern[str], text: str, count: int = 0) -> str:
    spans = _protected_spans(text)
    replaced = 0

    def replace(match: re.Match[str]) -> str:
        nonlocal replaced
        if _is_protected(spans, match) or (count and replaced >= count):
            return match.group(0)
        replaced += 1
        return " "

    return pattern.sub(replace, text)


def _find_marker(pattern: re.Pattern[str], text: str, normalize) -> tuple[str, re.Match[str]] | None:
    """First usable marker outside links and fields; an emoji-prefixed one wins over a bare token."""
    text = text or ""
    spans = _protected_spans(text)
    bare: tuple[str, re.Match[str]] | None = None
    for match in pattern.finditer(text):
        if _is_protected(spans, match):
            continue
        normalized = normalize(match.group(1))
        if not normalized:
            continue
        if match.group(0) != match.group(1):
            return normalized, match
        if bare is None:
            bare = (normalized, match)
    return bare


def find_date(text: str) -> tuple[str, str] | None:
    """Return ``(normalized_date, matched_text)`` for the task's date marker."""
    found = _find_marker(DATE_PATTERN, text, normalize_date)
    return (found[0], found[1].group(0)) if found else None


def find_time(text: str) -> tuple[str, str] | None:
    found = _find_marker(TIME_PATTERN, text, normalize_time)
    return (found[0], found[1].group(0)) if found else None


def _cut(text: str, match: re.Match[str]) -> str:
    return _collapse(text[: match.start()] + " " + text[match.end() :])


def take_date(text: str) -> tuple[str | None, str]:
    """Split the task's date marker off ``text``."""
    found = _find_marker(DATE_PATTERN, text, normalize_date)
    if found is None:
        return None, text
    return found[0], _cut(text, found[1])


def take_time(text: str) -> tuple[str | None, str]:
    found = _find_marker(TIME_PATTERN, text, normalize_time)
    if found is None:
        return None, text
    return found[0], _cut(text, found[1])


def _collapse(text: str) -> str:
    return re.sub(r"\s{2,}", " ", text).strip()


def clean_content(
    content: str,
    task_date: str | None = None,
    task_time: str | None = None,
    tags: list[str] | None = None,
) -> str:
    cleaned = content or ""
    if task_date:
        cleaned = _sub_unprotected(re.compile(r"(?:📅\s*)?" + re.escape(task_date) + r"(?=\s|$)"), cleaned, count=1)
    if task_time:
        cleaned = _sub_unprotected(re.compile(_bare_time_regex(task_time, emoji=True) + r"(?=\s|$)"), cleaned, count=1)
    for tag in tags or []:
        if tag:
            cleaned = re.sub(re.escape(tag) + r"(?![\w/-])", "", cleaned, flags=re.IGNORECASE)
    cleaned = ANY_INLINE_FIELD_PATTERN.sub("", cleaned)
    cleaned = UUID_PATTERN.sub("", cleaned)
    cleaned = OLD_META_WORD_PATTERN.sub(" ", cleaned)
    return _collapse(cleaned)


def _bare_time_regex(task_time: str, *, emoji: bool = False) -> str:
    hours, minutes = task_time.split(":")
    prefix = r"(?:⏰\s*)?" if emoji else ""
    return prefix + r"(?<![\d:])0?" + str(int(hours)) + ":" + re.escape(minutes) + r"(?![\d:])"


def _drop_bare_marker(line: str, pattern: re.Pattern[str], normalize, value: str) -> str:
    found = _find_marker(pattern, line, normalize)
    if found is None or found[0] != value:
        return line
    match = found[1]
    if match.group(0) != match.group(1):
        return line
    return line[: match.start()] + " " + line[match.end() :]


def reformat_line(line: str, task_date: str | None, task_time: str | None) -> str:
    """Move the task's time then date markers to the end of the line.

    Emoji markers are rewritten; a bare date or time token is removed only when
    it is the one the parser reads as the task's date or time. Wiki-links and
    field values are left alone.
    """
    indent = line[: len(line) - len(line.lstrip())]
    body = line
    if task_date:
        body = _drop_bare_marker(body, DATE_PATTERN, normalize_date, task_date)
    body = _sub_unprotected(EMOJI_DATE_PATTERN, body)
    if task_time:
        body = _drop_bare_marker(body, TIME_PATTERN, normalize_time, task_time)
    body = _sub_unprotected(EMOJI_TIME_PATTERN, body)
    body = _collapse(body)
    parts = []
    if task_time:
        parts.append(f"⏰ {task_time}")
    if task_date:
        parts.append(f"📅 {task_date}")
    if parts:
        body = f"{body} {' '.join(parts)}".strip()
    return indent + body


def mark_completed(line: str) -> str:
    return OPEN_CHECKBOX_PATTERN.sub(r"\1[x]", line, count=1)


def strip_sync_markers(line: str, tag: str) -> str:
    return remove_sync_tag(remove_inline_field(line, FIELD_SYNC), tag)


def build_event_description(task_id: str, path: str, verb: str = "Created") -> str:
    return f"{verb} from Obsidian.\n{TASK_ID_MARKER} {task_id}\nPath: {path}"


def linked_task_id_from_description(description: str | None) -> str | None:
    if not description:
        return None
    match = TASK_ID_MARKER_PATTERN.search(description)
    return match.group(1) if match else None


def source_path_from_description(description: str | None) -> str | None:
    if not description:
        return None
    match = SOURCE_PATH_PATTERN.search(description)
    return match.group(1) if match else None
