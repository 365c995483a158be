import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from timeline_sync.models import TimelineDraft
from timeline_sync.state_store import StateStore


class StateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "nested" / "state.db"))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_user_connection_round_trip(self) -> None:
        self.store.upsert_user_connection(
            user_id="u1", institution_url="https://learn.example.edu", storage_state={"cookies": [{"name": "d2lSessionVal"}]}
        )
        self.store.upsert_user_connection(
            user_id="u1", institution_url="https://learn2.example.edu", storage_state={"cookies": []}
        )
        user = self.store.get_user("u1")
        assert user is not None
        self.assertEqual(user["institution_url"], "https://learn2.example.edu")
        self.assertEqual(user["storage_state"], {"cookies": []})
        self.assertIsNone(self.store.get_user("missing"))

    def test_replace_courses_drops_courses_no_longer_enrolled(self) -> None:
        self.store.replace_courses(
            user_id="u1",
            courses=[{"org_unit_id": "100", "course_name": "Biology"}, {"org_unit_id": "200", "course_name": "Chemistry"}],
        )
        self.store.replace_courses(
            user_id="u1",
            courses=[{"org_unit_id": "200", "course_name": "Chemistry II"}, {"org_unit_id": "300", "course_name": "Art", "is_active": False}],
        )
        courses = self.store.list_active_courses("u1")
        self.assertEqual([(c["org_unit_id"], c["course_name"]) for c in courses], [("200", "Chemistry II")])

    def test_list_timeline_events_filters_and_orders(self) -> None:
        synced_at = datetime(2026, 10, 18, tzinfo=timezone.utc)
        for source_type, source_id, day in (("quiz", "7", 5), ("calendar", "1", 3), ("checklist", "5:1", 9)):
            self.store.upsert_timeline_event(
                user_id="u1",
                draft=TimelineDraft(
                    source_type=source_type,
                    source_id=source_id,
                    date_kind="event" if source_type == "calendar" else "due",
                    org_unit_id="100",
                    title=source_id,
                    start_at=datetime(2026, 11, day, tzinfo=timezone.utc),
                    raw_data={"id": source_id},
                ),
                course_id=None,
                synced_at=synced_at,
            )

        everything = self.store.list_timeline_events(user_id="u1")
        self.assertEqual([event["source_id"] for event in everything], ["1", "7", "5:1"])
        self.assertEqual(everything[0]["raw_data"], {"id": "1"})

        filtered = self.store.list_timeline_events(
            user_id="u1",
            start=datetime(2026, 11, 4, tzinfo=timezone.utc),
            source_types=["quiz", "checklist"],
            limit=1,
        )
        self.assertEqual([event["source_id"] for event in filtered], ["7"])

        single = self.store.get_timeline_event(user_id="u1", source_type="calendar", source_id="1", date_kind="event")
        assert single is not None
        self.assertFalse(single["is_all_day"])

    def test_sync_logs_and_audit_events(self) -> None:
        log_id = self.store.record_sync_log(
            user_id="u1", sync_type="calendar", status="success", items_synced=3, outcome={"status": "success"}
        )
        self.store.record_audit_event(user_id="u1", scope="100", action="org_unit_forbidden", details={}, run_id=log_id)
        self.store.record_audit_event(user_id="u1", scope="calendar", action="le_version_selected", details={"le_version": "1.80"})

        logs = self.store.recent_sync_logs("u1")
        self.assertEqual(logs[0]["outcome"], {"status": "success"})
        self.assertIsNone(logs[0]["error_message"])
        self.assertEqual(len(self.store.recent_audit_events(run_id=log_id)), 1)
        self.assertEqual(self.store.recent_audit_events()[0]["details"], {"le_version": "1.80"})


if __name__ == "__main__":
    unittest.main()
