from __future__ import annotations

from typing import Any, Callable

from timeline_sync.config_manager import ConfigManager
from timeline_sync.connector_client import ConnectorClient, connection_for_user
from timeline_sync.errors import AppError, is_session_expired, safe_error_message
from timeline_sync.parsers import as_record, read_identifier, read_string, to_datetime_or_none
from timeline_sync.state_store import StateStore


MY_ENROLLMENTS_API_PATH = "/d2l/api/lp/1.28/enrollments/myenrollments/?sortBy=-StartDate"
COURSE_OFFERING_TYPE_ID = 3


def is_course_offering(org_unit: dict[str, Any]) -> bool:
    org_type = as_record(org_unit.get("Type"))
    if org_type is None:
        return False
    if org_type.get("Id") == COURSE_OFFERING_TYPE_ID:
        return True
    return (read_string(org_type.get("Code")) or "").lower() == "course offering"


def extract_course_offerings(payload: Any) -> list[dict[str, Any]]:
    """Turn a ``myenrollments`` payload into course rows; other enrollments are ignored."""
    record = as_record(payload)
    items = record.get("Items") if record else None
    if not isinstance(items, list):
        return []
    courses: list[dict[str, Any]] = []
    seen: set[str] = set()
    for item in items:
        enrollment = as_record(item)
        org_unit = as_record(enrollment.get("OrgUnit")) if enrollment else None
        if org_unit is None or not is_course_offering(org_unit):
            continue
        org_unit_id = read_identifier(org_unit.get("Id"))
        name = org_unit.get("Name")
        if not org_unit_id or not isinstance(name, str) or org_unit_id in seen:
            continue
        seen.add(org_unit_id)
        access = as_record(enrollment.get("Access")) or {}
        is_active = access.get("IsActive")
        courses.append(
            {
                "org_unit_id": org_unit_id,
                "course_name": name,
                "course_code": read_string(org_unit.get("Code")),
                "start_date": to_datetime_or_none(access.get("StartDate")),
                "end_date": to_datetime_or_none(access.get("EndDate")),
                "is_active": is_active if isinstance(is_active, bool) else True,
                "raw_data": enrollment,
            }
        )
    return courses


class CourseSync:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        client_factory: Callable[..., Any] = ConnectorClient,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.client_factory = client_factory

    def run(self, user_id: str) -> dict[str, Any]:
        instance_url, storage_state = connection_for_user(self.state_store.get_user(user_id), "syncing courses")
        config = self.config_manager.load()
        client = self.client_factory(config.connector, instance_url, storage_state)
        try:
            courses = extract_course_offerings(client.request(MY_ENROLLMENTS_API_PATH))
            self.state_store.replace_courses(user_id=user_id, courses=courses)
        except Exception as exc:
            try:
                self.state_store.record_sync_log(
                    user_id=user_id,
                    sync_type="full",
                    status="failed",
                    items_synced=0,
                    error_message=safe_error_message(exc),
                )
            except Exception:
                pass
            if is_session_expired(exc):
                raise AppError(401, "session expired", "session_expired") from exc
            raise

        self.state_store.record_sync_log(
            user_id=user_id, sync_type="full", status="success", items_synced=len(courses)
        )
        self.state_store.record_audit_event(
            user_id=user_id,
            scope="courses",
            action="courses_synced",
            details={"courses": [course["org_unit_id"] for course in courses]},
        )
        return {"success": True, "courses_synced": len(courses)}
