from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from timeline_sync.concurrency import map_with_concurrency
from timeline_sync.models import TimelineDraft, timeline_key
from timeline_sync.state_store import StateStore


UPSERT_CONCURRENCY = 20
DELETE_BATCH_SIZE = 500


@dataclass
class PersistenceResult:
    upserted: int
    deleted: int


class PersistenceReconciler:
    """Converges stored timeline rows to the drafts of the latest fetch.

    Stale rows are only looked for among org units that synced this run and
    inside the sync window, so a course that answered 403 keeps its data.
    """

    def __init__(
        self,
        state_store: StateStore,
        *,
        upsert_concurrency: int = UPSERT_CONCURRENCY,
        delete_batch_size: int = DELETE_BATCH_SIZE,
    ) -> None:
        self.state_store = state_store
        self.upsert_concurrency = max(1, upsert_concurrency)
        self.delete_batch_size = max(1, delete_batch_size)

    def apply(
        self,
        *,
        user_id: str,
        drafts: list[TimelineDraft],
        synced_org_unit_ids: Iterable[str],
        window_start: datetime,
        window_end: datetime,
        course_ids_by_org_unit: dict[str, int] | None,
        synced_at: datetime,
    ) -> PersistenceResult:
        course_ids = course_ids_by_org_unit or {}

        def _upsert(draft: TimelineDraft) -> None:
            self.state_store.upsert_timeline_event(
                user_id=user_id,
                draft=draft,
                course_id=course_ids.get(draft.org_unit_id),
                synced_at=synced_at,
            )

        map_with_concurrency(drafts, self.upsert_concurrency, _upsert, name="timeline-upsert")

        fetched_keys = {draft.key for draft in drafts}
        existing = self.state_store.list_timeline_keys_in_scope(
            user_id=user_id,
            org_unit_ids=synced_org_unit_ids,
            window_start=window_start,
            window_end=window_end,
        )
        stale_ids = [
            int(row["id"])
            for row in existing
            if timeline_key(row["source_type"], row["source_id"], row["date_kind"]) not in fetched_keys
        ]

        deleted = 0
        for index in range(0, len(stale_ids), self.delete_batch_size):
            deleted += self.state_store.delete_timeline_events(stale_ids[index : index + self.delete_batch_size])
        return PersistenceResult(upserted=len(drafts), deleted=deleted)
