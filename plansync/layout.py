from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Any

from plansync.models import CalendarEvent

GUTTER_PERCENT = 1.0


@dataclass
class PositionedEvent:
    event: CalendarEvent
    start: datetime
    end: datetime
    column: int = 0
    total_columns: int = 1
    left_percent: float = 0.0
    width_percent: float = 100.0

    def to_dict(self) -> dict[str, Any]:
        payload = self.event.to_dict()
        payload.update(
            {
                "column": self.column,
                "total_columns": self.total_columns,
                "left_percent": self.left_percent,
                "width_percent": self.width_percent,
            }
        )
        return payload


def _collides(left: PositionedEvent, right: PositionedEvent) -> bool:
    return left.start < right.end and left.end > right.start


def _clusters(items: list[PositionedEvent]) -> list[list[PositionedEvent]]:
    neighbours: list[list[int]] = [[] for _ in items]
    for i in range(len(items)):
        for j in range(i + 1, len(items)):
            if _collides(items[i], items[j]):
                neighbours[i].append(j)
                neighbours[j].append(i)

    seen = [False] * len(items)
    clusters: list[list[PositionedEvent]] = []
    for index in range(len(items)):
        if seen[index]:
            continue
        seen[index] = True
        cluster = [items[index]]
        queue = deque([index])
        while queue:
            current = queue.popleft()
            for other in neighbours[current]:
                if not seen[other]:
                    seen[other] = True
                    cluster.append(items[other])
                    queue.append(other)
        clusters.append(cluster)
    return clusters


def _assign_columns(cluster: list[PositionedEvent]) -> int:
    cluster.sort(key=lambda item: (item.start, item.end))
    column_ends: list[datetime] = []
    for item in cluster:
        for column, last_end in enumerate(column_ends):
            if last_end <= item.start:
                item.column = column
                column_ends[column] = item.end
                break
        else:
            item.column = len(column_ends)
            column_ends.append(item.end)
    return len(column_ends)


def layout_events(events: list[CalendarEvent], tz: tzinfo = timezone.utc) -> list[PositionedEvent]:
    """Pack overlapping events side by side.

    Events that transitively overlap form a cluster; every member of a cluster
    shares its column count so the whole group renders at the same width.
    """
    if not events:
        return []
    items = [PositionedEvent(event=event, start=event.start_at(tz), end=event.end_at(tz)) for event in events]
    items.sort(key=lambda item: (item.start, -item.end.timestamp()))

    for cluster in _clusters(items):
        total_columns = _assign_columns(list(cluster))
        for item in cluster:
            item.total_columns = total_columns
            if total_columns == 1:
                item.left_percent = 0.0
                item.width_percent = 100.0
                continue
            width = (100.0 - (total_columns - 1) * GUTTER_PERCENT) / total_columns
            item.width_percent = width
            item.left_percent = item.column * (width + GUTTER_PERCENT)
    return items
