from __future__ import annotations

import math
import re
from datetime import datetime
from typing import Any, Iterable
from urllib.parse import quote, urljoin, urlsplit

from timeline_sync.models import TimelineDraft, parse_iso_datetime


CONTENT_TOPIC_ENTITY = "D2L.LE.Content.ContentObject.TopicCO"
DROPBOX_ENTITY = "D2L.LE.Dropbox.Dropbox"
QUIZ_ENTITY = "D2L.LE.Quizzing.Quiz"

STYLE_PATTERN = re.compile(r"<style[\s\S]*?</style>", re.IGNORECASE)
SCRIPT_PATTERN = re.compile(r"<script[\s\S]*?</script>", re.IGNORECASE)
TAG_PATTERN = re.compile(r"<[^>]*>")
WHITESPACE_PATTERN = re.compile(r"\s+")


def as_record(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def records(values: Iterable[Any]) -> list[dict[str, Any]]:
    return [value for value in values if isinstance(value, dict)]


def read_string(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def read_identifier(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and math.isfinite(value):
        return str(int(value)) if value.is_integer() else str(value)
    return None


def to_datetime_or_none(value: Any) -> datetime | None:
    raw = read_string(value)
    if raw is None:
        return None
    try:
        return parse_iso_datetime(raw)
    except ValueError:
        return None


def strip_html(html: str) -> str:
    text = STYLE_PATTERN.sub(" ", html)
    text = SCRIPT_PATTERN.sub(" ", text)
    text = TAG_PATTERN.sub(" ", text)
    return WHITESPACE_PATTERN.sub(" ", text).strip()


def read_description_text(value: Any) -> str | None:
    record = as_record(value)
    if record is None:
        return None
    text = read_string(record.get("Text"))
    if text:
        return text
    html = read_string(record.get("Html"))
    if html:
        return strip_html(html) or None
    return None


def safe_resolve_url(instance_url: str, maybe_relative: str | None) -> str | None:
    if not maybe_relative or not maybe_relative.strip():
        return None
    raw = maybe_relative.strip()
    if raw.startswith("http://") or raw.startswith("https://"):
        return raw
    try:
        return urljoin(instance_url if instance_url.endswith("/") else f"{instance_url}/", raw)
    except ValueError:
        return None


def instance_origin(instance_url: str) -> str:
    parts = urlsplit(instance_url)
    return f"{parts.scheme}://{parts.netloc}"


def content_home_url(origin: str, org_unit_id: str) -> str:
    return f"{origin}/d2l/le/content/{quote(org_unit_id, safe='')}/Home"


def expand_tool_dates(
    *,
    source_type: str,
    source_id: str,
    org_unit_id: str,
    title: str,
    description: str | None,
    associated_entity_type: str | None,
    associated_entity_id: str | None,
    view_url: str | None,
    raw_data: Any,
    start_at: datetime | None,
    due_at: datetime | None,
    end_at: datetime | None,
    is_all_day: bool = False,
) -> list[TimelineDraft]:
    drafts: list[TimelineDraft] = []
    for date_kind, when in (("start", start_at), ("due", due_at), ("end", end_at)):
        if when is None:
            continue
        drafts.append(
            TimelineDraft(
                source_type=source_type,
                source_id=source_id,
                date_kind=date_kind,
                org_unit_id=org_unit_id,
                title=title,
                description=description,
                start_at=when,
                end_at=None,
                is_all_day=is_all_day,
                associated_entity_type=associated_entity_type,
                associated_entity_id=associated_entity_id,
                view_url=view_url,
                raw_data=raw_data,
            )
        )
    return drafts


def parse_calendar_event(raw: Any) -> TimelineDraft | None:
    record = as_record(raw)
    if record is None:
        return None
    event_id = read_identifier(record.get("CalendarEventId"))
    org_unit_id = read_identifier(record.get("OrgUnitId"))
    title = read_string(record.get("Title"))
    start_at = to_datetime_or_none(record.get("StartDateTime")) or to_datetime_or_none(record.get("StartDay"))
    if not event_id or not org_unit_id or not title or start_at is None:
        return None
    end_at = to_datetime_or_none(record.get("EndDateTime")) or to_datetime_or_none(record.get("EndDay"))

    associated = as_record(record.get("AssociatedEntity"))
    associated_type = read_string(associated.get("AssociatedEntityType")) if associated else None
    associated_id = read_identifier(associated.get("AssociatedEntityId")) if associated else None
    associated_link = read_string(associated.get("Link")) if associated else None
    # The associated tool's deep link beats the generic calendar detail page.
    view_url = associated_link or read_string(record.get("CalendarEventViewUrl"))

    return TimelineDraft(
        source_type="calendar",
        source_id=event_id,
        date_kind="event",
        org_unit_id=org_unit_id,
        title=title,
        description=read_string(record.get("Description")),
        start_at=start_at,
        end_at=end_at,
        is_all_day=record.get("IsAllDayEvent") is True,
        associated_entity_type=associated_type,
        associated_entity_id=associated_id,
        view_url=view_url,
        raw_data=raw,
    )


def module_ids(modules: Iterable[Any]) -> list[str]:
    return [mid for mid in (read_identifier(module.get("Id")) for module in records(modules)) if mid]


def parse_content_modules(modules: Iterable[Any], org_unit_id: str, origin: str) -> list[TimelineDraft]:
    drafts: list[TimelineDraft] = []
    for module in records(modules):
        module_id = read_identifier(module.get("Id"))
        if not module_id:
            continue
        title = read_string(module.get("Title")) or "content module"
        drafts.extend(
            expand_tool_dates(
                source_type="content_module",
                source_id=module_id,
                org_unit_id=org_unit_id,
                title=f"Module: {title}",
                description=read_description_text(module.get("Description")),
                associated_entity_type=None,
                associated_entity_id=None,
                view_url=content_home_url(origin, org_unit_id),
                raw_data=module,
                start_at=to_datetime_or_none(module.get("ModuleStartDate")),
                due_at=to_datetime_or_none(module.get("ModuleDueDate")),
                end_at=to_datetime_or_none(module.get("ModuleEndDate")),
            )
        )
    return drafts


def parse_content_topics(items: Iterable[Any], org_unit_id: str, instance_url: str) -> list[TimelineDraft]:
    origin = instance_origin(instance_url)
    drafts: list[TimelineDraft] = []
    for item in records(items):
        topic_id = read_identifier(item.get("Id"))
        if not topic_id:
            continue
        start_at = to_datetime_or_none(item.get("StartDate"))
        due_at = to_datetime_or_none(item.get("DueDate"))
        end_at = to_datetime_or_none(item.get("EndDate"))
        if start_at is None and due_at is None and end_at is None:
            continue
        view_url = safe_resolve_url(instance_url, read_string(item.get("Url"))) or (
            f"{origin}/d2l/le/content/{quote(org_unit_id, safe='')}/viewContent/{quote(topic_id, safe='')}/View"
        )
        drafts.extend(
            expand_tool_dates(
                source_type="content_topic",
                source_id=topic_id,
                org_unit_id=org_unit_id,
                title=read_string(item.get("Title")) or "content item",
                description=read_description_text(item.get("Description")),
                associated_entity_type=CONTENT_TOPIC_ENTITY,
                associated_entity_id=topic_id,
                view_url=view_url,
                raw_data=item,
                start_at=start_at,
                due_at=due_at,
                end_at=end_at,
            )
        )
    return drafts


def parse_dropbox_folders(folders: Iterable[Any], org_unit_id: str, origin: str) -> list[TimelineDraft]:
    drafts: list[TimelineDraft] = []
    for folder in records(folders):
        folder_id = read_identifier(folder.get("Id")) or read_identifier(folder.get("FolderId"))
        if not folder_id:
            continue
        availability = as_record(folder.get("Availability"))
        start_at = to_datetime_or_none(availability.get("StartDate")) if availability else None
        end_at = to_datetime_or_none(availability.get("EndDate")) if availability else None
        due_at = to_datetime_or_none(folder.get("DueDate"))
        if start_at is None and due_at is None and end_at is None:
            continue
        view_url = (
            f"{origin}/d2l/lms/dropbox/user/folder_submit_files.d2l"
            f"?ou={quote(org_unit_id, safe='')}&db={quote(folder_id, safe='')}"
        )
        drafts.extend(
            expand_tool_dates(
                source_type="dropbox_folder",
                source_id=folder_id,
                org_unit_id=org_unit_id,
                title=read_string(folder.get("Name")) or read_string(folder.get("Title")) or "dropbox",
                description=None,
                associated_entity_type=DROPBOX_ENTITY,
                associated_entity_id=folder_id,
                view_url=view_url,
                raw_data=folder,
                start_at=start_at,
                due_at=due_at,
                end_at=end_at,
            )
        )
    return drafts


def parse_quizzes(quizzes: Iterable[Any], org_unit_id: str, origin: str) -> list[TimelineDraft]:
    drafts: list[TimelineDraft] = []
    for quiz in records(quizzes):
        quiz_id = read_identifier(quiz.get("QuizId")) or read_identifier(quiz.get("Id"))
        if not quiz_id:
            continue
        start_at = to_datetime_or_none(quiz.get("StartDate"))
        due_at = to_datetime_or_none(quiz.get("DueDate"))
        end_at = to_datetime_or_none(quiz.get("EndDate"))
        if start_at is None and due_at is None and end_at is None:
            continue
        view_url = (
            f"{origin}/d2l/lms/quizzing/quizzing.d2l"
            f"?ou={quote(org_unit_id, safe='')}&qi={quote(quiz_id, safe='')}"
        )
        drafts.extend(
            expand_tool_dates(
                source_type="quiz",
                source_id=quiz_id,
                org_unit_id=org_unit_id,
                title=read_string(quiz.get("Name")) or "quiz",
                description=read_description_text(quiz.get("Description"))
                or read_description_text(quiz.get("Instructions")),
                associated_entity_type=QUIZ_ENTITY,
                associated_entity_id=quiz_id,
                view_url=view_url,
                raw_data=quiz,
                start_at=start_at,
                due_at=due_at,
                end_at=end_at,
            )
        )
    return drafts


def forum_id_of(forum: dict[str, Any]) -> str | None:
    return read_identifier(forum.get("ForumId")) or read_identifier(forum.get("Id"))


def parse_discussion_forum(forum: Any, org_unit_id: str) -> list[TimelineDraft]:
    record = as_record(forum)
    if record is None:
        return []
    forum_id = forum_id_of(record)
    if not forum_id:
        return []
    name = read_string(record.get("Name")) or "discussion forum"
    description = read_description_text(record.get("Description"))
    drafts = expand_tool_dates(
        source_type="discussion_forum",
        source_id=forum_id,
        org_unit_id=org_unit_id,
        title=f"Forum: {name}",
        description=description,
        associated_entity_type=None,
        associated_entity_id=None,
        view_url=None,
        raw_data=record,
        start_at=to_datetime_or_none(record.get("StartDate")),
        due_at=None,
        end_at=to_datetime_or_none(record.get("EndDate")),
    )
    # Posting window gets its own id so it never overwrites the forum's start/end keys.
    drafts.extend(
        expand_tool_dates(
            source_type="discussion_forum",
            source_id=f"{forum_id}:post",
            org_unit_id=org_unit_id,
            title=f"Forum: {name} (posting window)",
            description=description,
            associated_entity_type=None,
            associated_entity_id=None,
            view_url=None,
            raw_data=record,
            start_at=to_datetime_or_none(record.get("PostStartDate")),
            due_at=None,
            end_at=to_datetime_or_none(record.get("PostEndDate")),
        )
    )
    return drafts


def parse_discussion_topics(topics: Iterable[Any], org_unit_id: str) -> list[TimelineDraft]:
    drafts: list[TimelineDraft] = []
    for topic in records(topics):
        topic_id = read_identifier(topic.get("TopicId")) or read_identifier(topic.get("Id"))
        if not topic_id:
            continue
        name = read_string(topic.get("Name")) or "discussion topic"
        drafts.extend(
            expand_tool_dates(
                source_type="discussion_topic",
                source_id=topic_id,
                org_unit_id=org_unit_id,
                title=f"Topic: {name}",
                description=read_description_text(topic.get("Description")),
                associated_entity_type=None,
                associated_entity_id=None,
                view_url=None,
                raw_data=topic,
                start_at=to_datetime_or_none(topic.get("StartDate")),
                due_at=to_datetime_or_none(topic.get("DueDate")),
                end_at=to_datetime_or_none(topic.get("EndDate")),
            )
        )
    return drafts


def checklist_ids(checklists: Iterable[Any]) -> list[str]:
    output: list[str] = []
    for checklist in records(checklists):
        checklist_id = read_identifier(checklist.get("ChecklistId")) or read_identifier(checklist.get("Id"))
        if checklist_id:
            output.append(checklist_id)
    return output


def parse_checklist_items(items: Iterable[Any], checklist_id: str, org_unit_id: str) -> list[TimelineDraft]:
    drafts: list[TimelineDraft] = []
    for item in records(items):
        item_id = read_identifier(item.get("ChecklistItemId")) or read_identifier(item.get("Id"))
        if not item_id:
            continue
        due_at = to_datetime_or_none(item.get("DueDate")) or to_datetime_or_none(item.get("CompletionDueDate"))
        if due_at is None:
            continue
        name = read_string(item.get("Name")) or read_string(item.get("Title")) or "checklist item"
        drafts.extend(
            expand_tool_dates(
                source_type="checklist",
                source_id=f"{checklist_id}:{item_id}",
                org_unit_id=org_unit_id,
                title=f"Checklist: {name}",
                description=read_description_text(item.get("Description")),
                associated_entity_type=None,
                associated_entity_id=None,
                view_url=None,
                raw_data=item,
                start_at=None,
                due_at=due_at,
                end_at=None,
            )
        )
    return drafts
