from __future__ import annotations

import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable
from urllib.parse import quote, urlencode

from timeline_sync.concurrency import map_with_concurrency
from timeline_sync.config_manager import ConfigManager
from timeline_sync.connector_client import ConnectorClient, connection_for_user
from timeline_sync.errors import (
    AppError,
    SessionExpiredError,
    is_session_expired,
    is_source_unavailable,
    safe_error_message,
)
from timeline_sync.isolation import chunk_list, isolate_forbidden
from timeline_sync.models import (
    SYNC_STATUS_FAILED,
    SYNC_STATUS_PARTIAL,
    SYNC_STATUS_SUCCESS,
    SyncOutcome,
    TimelineDraft,
    sync_window,
)
from timeline_sync.pagination import (
    MAX_PAGES,
    fetch_object_list_all,
    list_payload_to_array,
    normalize_next_api_path,
)
from timeline_sync.parsers import (
    checklist_ids,
    forum_id_of,
    instance_origin,
    module_ids,
    parse_calendar_event,
    parse_checklist_items,
    parse_content_modules,
    parse_content_topics,
    parse_discussion_forum,
    parse_discussion_topics,
    parse_dropbox_folders,
    parse_quizzes,
    records,
)
from timeline_sync.persistence import UPSERT_CONCURRENCY, PersistenceReconciler
from timeline_sync.reconciler import DraftReconciler
from timeline_sync.state_store import StateStore
from timeline_sync.versions import fetch_versions_to_try, negotiate_version


DEEP_FETCH_CONCURRENCY = 4
MODULE_STRUCTURE_CONCURRENCY = 3
CHECKLIST_ITEM_CONCURRENCY = 4


def _iso_z(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def calendar_events_api_path(
    le_version: str, org_unit_ids: list[str], window_start: datetime, window_end: datetime
) -> str:
    query = urlencode(
        {
            "orgUnitIdsCSV": ",".join(org_unit_ids),
            "startDateTime": _iso_z(window_start),
            "endDateTime": _iso_z(window_end),
        }
    )
    return f"/d2l/api/le/{le_version}/calendar/events/myEvents/?{query}"


@dataclass
class _CalendarRun:
    user_id: str
    client: Any
    instance_url: str
    le_version: str
    reconciler: DraftReconciler

    @property
    def origin(self) -> str:
        return instance_origin(self.instance_url)

    def api(self, org_unit_id: str, tail: str) -> str:
        return f"/d2l/api/le/{self.le_version}/{quote(org_unit_id, safe='')}/{tail}"

    def ingest(self, drafts: list[TimelineDraft]) -> None:
        for draft in drafts:
            self.reconciler.add_draft(draft)


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        client_factory: Callable[..., Any] = ConnectorClient,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.client_factory = client_factory

    def run_calendar_sync(self, user_id: str, now: datetime | None = None) -> SyncOutcome:
        started_at = datetime.now(timezone.utc)
        now = (now or started_at).astimezone(timezone.utc)

        try:
            config = self.config_manager.load()
            instance_url, storage_state = connection_for_user(self.state_store.get_user(user_id))

            # resolving-courses
            courses = self.state_store.list_active_courses(user_id)
            if not courses:
                raise AppError(400, "sync courses first", "no_courses")
            course_ids_by_org_unit = {str(course["org_unit_id"]): int(course["id"]) for course in courses}
            org_unit_ids = list(course_ids_by_org_unit)

            window_start, window_end = sync_window(
                now, config.sync.window_months_back, config.sync.window_months_forward
            )
            client = self.client_factory(config.connector, instance_url, storage_state)

            # negotiating-version
            le_version = negotiate_version(
                fetch_versions_to_try(client),
                lambda version: fetch_object_list_all(
                    client,
                    instance_url,
                    calendar_events_api_path(version, org_unit_ids[:1], window_start, window_end),
                ),
            )
            self.state_store.record_audit_event(
                user_id=user_id,
                scope="calendar",
                action="le_version_selected",
                details={"le_version": le_version},
            )

            # fetching-calendar / isolating-failures
            raw_events: list[Any] = []
            forbidden: list[str] = []
            for chunk in chunk_list(org_unit_ids, config.sync.org_unit_chunk_size):
                result = isolate_forbidden(
                    chunk,
                    lambda ids: fetch_object_list_all(
                        client,
                        instance_url,
                        calendar_events_api_path(le_version, ids, window_start, window_end),
                    ),
                )
                raw_events.extend(result.events)
                forbidden.extend(result.forbidden_org_unit_ids)
            for org_unit_id in forbidden:
                self.state_store.record_audit_event(
                    user_id=user_id,
                    scope=org_unit_id,
                    action="org_unit_forbidden",
                    details={"le_version": le_version},
                )
            forbidden_set = set(forbidden)
            synced_org_unit_ids = [ou for ou in org_unit_ids if ou not in forbidden_set]

            # reconciling: every calendar draft lands before any deep-fetch worker starts.
            reconciler = DraftReconciler(window_start, window_end)
            for raw in raw_events:
                draft = parse_calendar_event(raw)
                if draft is None or draft.org_unit_id in forbidden_set:
                    continue
                reconciler.add_calendar_draft(draft)

            run = _CalendarRun(
                user_id=user_id,
                client=client,
                instance_url=instance_url,
                le_version=le_version,
                reconciler=reconciler,
            )

            # deep-fetch
            map_with_concurrency(
                synced_org_unit_ids,
                DEEP_FETCH_CONCURRENCY,
                lambda ou: self._deep_fetch_org_unit(run, ou),
                name="timeline-deep-fetch",
            )
            drafts = reconciler.drafts()

            # persisting
            persisted = PersistenceReconciler(
                self.state_store,
                upsert_concurrency=UPSERT_CONCURRENCY,
                delete_batch_size=config.sync.delete_batch_size,
            ).apply(
                user_id=user_id,
                drafts=drafts,
                synced_org_unit_ids=synced_org_unit_ids,
                window_start=window_start,
                window_end=window_end,
                course_ids_by_org_unit=course_ids_by_org_unit,
                synced_at=now,
            )

            # logging
            status = SYNC_STATUS_PARTIAL if forbidden else SYNC_STATUS_SUCCESS
            duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
            outcome = SyncOutcome(
                status=status,
                events_fetched=len(drafts),
                events_upserted=persisted.upserted,
                events_deleted=persisted.deleted,
                duplicates_skipped=reconciler.duplicates_skipped,
                org_units_forbidden=tuple(forbidden),
                counts_by_source=reconciler.counts_by_source,
                window_start=window_start,
                window_end=window_end,
                synced_at=now,
                le_version=le_version,
                duration_ms=duration_ms,
                message=f"Synced {len(drafts)} timeline events across {len(synced_org_unit_ids)} courses.",
            )
            self.state_store.record_sync_log(
                user_id=user_id,
                sync_type="calendar",
                status=status,
                items_synced=len(drafts),
                duration_ms=duration_ms,
                outcome=outcome.to_dict(),
            )
            return outcome
        except Exception as exc:
            self._record_failure(user_id, started_at, exc)
            if is_session_expired(exc):
                raise SessionExpiredError() from exc
            if isinstance(exc, AppError) and exc.status_code == 403:
                raise AppError(403, "calendar data unavailable for this role", "calendar_forbidden") from exc
            raise

    def _record_failure(self, user_id: str, started_at: datetime, exc: BaseException) -> None:
        duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
        error_message = safe_error_message(exc)
        try:
            self.state_store.record_sync_log(
                user_id=user_id,
                sync_type="calendar",
                status=SYNC_STATUS_FAILED,
                items_synced=0,
                error_message=error_message,
                duration_ms=duration_ms,
            )
            self.state_store.record_audit_event(
                user_id=user_id,
                scope="calendar",
                action="run_error",
                details={
                    "error": f"{type(exc).__name__}: {error_message}",
                    "code": getattr(exc, "code", ""),
                    "traceback": traceback.format_exc(limit=5),
                },
            )
        except Exception:
            # The original failure is what the caller needs to see.
            pass

    def _from_source(self, run: _CalendarRun, org_unit_id: str, source: str, fetch: Callable[[], list[Any]]) -> list[Any] | None:
        try:
            return fetch()
        except AppError as exc:
            if not is_source_unavailable(exc):
                raise
            self.state_store.record_audit_event(
                user_id=run.user_id,
                scope=org_unit_id,
                action="source_unavailable",
                details={"source": source, "status_code": exc.status_code, "code": exc.code},
            )
            return None

    def _list_objects(self, run: _CalendarRun, api_path: str) -> list[Any]:
        data = run.client.request(api_path)
        objects = list_payload_to_array(data)
        next_value = data.get("Next") if isinstance(data, dict) else None
        if isinstance(next_value, str) and next_value.strip():
            objects = objects + fetch_object_list_all(
                run.client,
                run.instance_url,
                normalize_next_api_path(run.instance_url, next_value),
                max_pages=MAX_PAGES - 1,
            )
        return objects

    def _deep_fetch_org_unit(self, run: _CalendarRun, org_unit_id: str) -> None:
        self._sync_content(run, org_unit_id)
        self._sync_dropbox(run, org_unit_id)
        self._sync_quizzes(run, org_unit_id)
        self._sync_discussions(run, org_unit_id)
        self._sync_checklists(run, org_unit_id)

    def _sync_content(self, run: _CalendarRun, org_unit_id: str) -> None:
        modules = self._from_source(
            run, org_unit_id, "content_module", lambda: self._list_objects(run, run.api(org_unit_id, "content/root/"))
        )
        if modules is None:
            return
        run.ingest(parse_content_modules(modules, org_unit_id, run.origin))

        def _structure(module_id: str) -> None:
            items = self._from_source(
                run,
                org_unit_id,
                "content_topic",
                lambda: self._list_objects(
                    run, run.api(org_unit_id, f"content/modules/{quote(module_id, safe='')}/structure/")
                ),
            )
            if items:
                run.ingest(parse_content_topics(items, org_unit_id, run.instance_url))

        map_with_concurrency(
            module_ids(modules), MODULE_STRUCTURE_CONCURRENCY, _structure, name="timeline-content"
        )

    def _sync_dropbox(self, run: _CalendarRun, org_unit_id: str) -> None:
        folders = self._from_source(
            run, org_unit_id, "dropbox_folder", lambda: self._list_objects(run, run.api(org_unit_id, "dropbox/folders/"))
        )
        if folders:
            run.ingest(parse_dropbox_folders(folders, org_unit_id, run.origin))

    def _sync_quizzes(self, run: _CalendarRun, org_unit_id: str) -> None:
        quizzes = self._from_source(
            run,
            org_unit_id,
            "quiz",
            lambda: fetch_object_list_all(run.client, run.instance_url, run.api(org_unit_id, "quizzes/")),
        )
        if quizzes:
            run.ingest(parse_quizzes(quizzes, org_unit_id, run.origin))

    def _sync_discussions(self, run: _CalendarRun, org_unit_id: str) -> None:
        forums = self._from_source(
            run,
            org_unit_id,
            "discussion_forum",
            lambda: self._list_objects(run, run.api(org_unit_id, "discussions/forums/")),
        )
        for forum in records(forums or []):
            forum_id = forum_id_of(forum)
            if not forum_id:
                continue
            run.ingest(parse_discussion_forum(forum, org_unit_id))
            topics = self._from_source(
                run,
                org_unit_id,
                "discussion_topic",
                lambda: self._list_objects(
                    run, run.api(org_unit_id, f"discussions/forums/{quote(forum_id, safe='')}/topics/")
                ),
            )
            if topics:
                run.ingest(parse_discussion_topics(topics, org_unit_id))

    def _sync_checklists(self, run: _CalendarRun, org_unit_id: str) -> None:
        checklists = self._from_source(
            run,
            org_unit_id,
            "checklist",
            lambda: fetch_object_list_all(run.client, run.instance_url, run.api(org_unit_id, "checklists/")),
        )
        if not checklists:
            return

        def _items(checklist_id: str) -> None:
            base = run.api(org_unit_id, f"checklists/{quote(checklist_id, safe='')}/items")
            # Some instances only answer without the trailing slash.
            for api_path in (f"{base}/", base):
                items = self._from_source(run, org_unit_id, "checklist", lambda: self._list_objects(run, api_path))
                if items is not None:
                    run.ingest(parse_checklist_items(items, checklist_id, org_unit_id))
                    return

        map_with_concurrency(
            checklist_ids(checklists), CHECKLIST_ITEM_CONCURRENCY, _items, name="timeline-checklist"
        )
