from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime

from timeline_sync.models import TimelineDraft, serialize_datetime


# Tool sources whose due date may replace an unassociated calendar entry.
SUBSTITUTING_SOURCE_TYPES = frozenset({"dropbox_folder", "quiz", "content_topic"})


@dataclass
class ReconcileOutcome:
    accepted: bool
    reason: str
    replaced_key: str = ""


def calendar_association_key(draft: TimelineDraft) -> tuple[str, str, str, str]:
    return (
        draft.org_unit_id,
        str(draft.associated_entity_type or ""),
        str(draft.associated_entity_id or ""),
        serialize_datetime(draft.start_at) or "",
    )


def time_title_key(draft: TimelineDraft) -> tuple[str, str, str]:
    return (
        draft.org_unit_id,
        serialize_datetime(draft.start_at) or "",
        draft.title.strip().lower(),
    )


class DraftReconciler:
    """Accumulates the canonical draft set for one sync run.

    Calendar drafts must all be ingested before any tool draft: association
    suppression and reverse substitution both look at what the calendar
    already contributed. Every public method takes the same lock so deep-fetch
    workers can feed drafts concurrently.
    """

    def __init__(self, window_start: datetime, window_end: datetime) -> None:
        self.window_start = window_start
        self.window_end = window_end
        self._lock = threading.Lock()
        self._drafts: dict[str, TimelineDraft] = {}
        self._calendar_assoc_keys: set[tuple[str, str, str, str]] = set()
        self._unassociated_calendar: dict[tuple[str, str, str], str] = {}
        self._counts_by_source: dict[str, int] = {}
        self._duplicates_skipped = 0

    def _in_window(self, draft: TimelineDraft) -> bool:
        return self.window_start <= draft.start_at <= self.window_end

    def _accept(self, draft: TimelineDraft) -> ReconcileOutcome:
        key = draft.key
        if key in self._drafts:
            self._duplicates_skipped += 1
            return ReconcileOutcome(accepted=False, reason="duplicate_key")
        self._drafts[key] = draft
        self._counts_by_source[draft.source_type] = self._counts_by_source.get(draft.source_type, 0) + 1
        return ReconcileOutcome(accepted=True, reason="accepted")

    def add_calendar_draft(self, draft: TimelineDraft) -> ReconcileOutcome:
        with self._lock:
            if not self._in_window(draft):
                return ReconcileOutcome(accepted=False, reason="outside_window")
            outcome = self._accept(draft)
            if draft.is_associated:
                self._calendar_assoc_keys.add(calendar_association_key(draft))
            elif outcome.accepted:
                self._unassociated_calendar[time_title_key(draft)] = draft.key
            return outcome

    def add_draft(self, draft: TimelineDraft) -> ReconcileOutcome:
        if draft.source_type == "calendar":
            return self.add_calendar_draft(draft)
        with self._lock:
            if not self._in_window(draft):
                return ReconcileOutcome(accepted=False, reason="outside_window")

            replaced_key = ""
            if draft.source_type in SUBSTITUTING_SOURCE_TYPES and draft.date_kind == "due":
                index_key = time_title_key(draft)
                calendar_key = self._unassociated_calendar.get(index_key)
                if calendar_key and self._drafts.pop(calendar_key, None) is not None:
                    del self._unassociated_calendar[index_key]
                    self._counts_by_source["calendar"] = max(0, self._counts_by_source.get("calendar", 0) - 1)
                    self._duplicates_skipped += 1
                    replaced_key = calendar_key

            if draft.is_associated and calendar_association_key(draft) in self._calendar_assoc_keys:
                self._duplicates_skipped += 1
                return ReconcileOutcome(accepted=False, reason="calendar_entry_exists", replaced_key=replaced_key)

            outcome = self._accept(draft)
            outcome.replaced_key = replaced_key
            return outcome

    def drafts(self) -> list[TimelineDraft]:
        with self._lock:
            return list(self._drafts.values())

    @property
    def duplicates_skipped(self) -> int:
        with self._lock:
            return self._duplicates_skipped

    @property
    def counts_by_source(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts_by_source)

    def __len__(self) -> int:
        with self._lock:
            return len(self._drafts)
