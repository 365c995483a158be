import threading
import unittest
from datetime import datetime, timedelta, timezone

from timeline_sync.models import TimelineDraft
from timeline_sync.parsers import DROPBOX_ENTITY, QUIZ_ENTITY
from timeline_sync.reconciler import DraftReconciler


WINDOW_START = datetime(2026, 7, 1, tzinfo=timezone.utc)
WINDOW_END = datetime(2028, 4, 30, 23, 59, 59, 999000, tzinfo=timezone.utc)
DUE = datetime(2026, 11, 2, 17, 0, tzinfo=timezone.utc)


def _draft(source_type: str, source_id: str, date_kind: str, title: str, start_at: datetime = DUE, **extra) -> TimelineDraft:
    return TimelineDraft(
        source_type=source_type,
        source_id=source_id,
        date_kind=date_kind,
        org_unit_id=extra.pop("org_unit_id", "100"),
        title=title,
        start_at=start_at,
        **extra,
    )


class DraftReconcilerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.reconciler = DraftReconciler(WINDOW_START, WINDOW_END)

    def test_calendar_entry_suppresses_associated_tool_date(self) -> None:
        calendar = _draft(
            "calendar",
            "55",
            "event",
            "Essay 1 due",
            associated_entity_type=DROPBOX_ENTITY,
            associated_entity_id="42",
        )
        folder = _draft(
            "dropbox_folder",
            "42",
            "due",
            "Essay 1",
            associated_entity_type=DROPBOX_ENTITY,
            associated_entity_id="42",
        )
        self.assertTrue(self.reconciler.add_calendar_draft(calendar).accepted)
        outcome = self.reconciler.add_draft(folder)

        self.assertFalse(outcome.accepted)
        self.assertEqual(outcome.reason, "calendar_entry_exists")
        self.assertEqual([draft.key for draft in self.reconciler.drafts()], ["calendar:55:event"])
        self.assertEqual(self.reconciler.duplicates_skipped, 1)

    def test_association_requires_same_instant(self) -> None:
        self.reconciler.add_calendar_draft(
            _draft("calendar", "55", "event", "Quiz", associated_entity_type=QUIZ_ENTITY, associated_entity_id="7")
        )
        outcome = self.reconciler.add_draft(
            _draft(
                "quiz",
                "7",
                "start",
                "Quiz",
                start_at=DUE - timedelta(days=7),
                associated_entity_type=QUIZ_ENTITY,
                associated_entity_id="7",
            )
        )
        self.assertTrue(outcome.accepted)
        self.assertEqual(len(self.reconciler), 2)

    def test_tool_due_date_replaces_unassociated_calendar_entry(self) -> None:
        self.reconciler.add_calendar_draft(_draft("calendar", "60", "event", "Essay 1"))
        outcome = self.reconciler.add_draft(
            _draft(
                "dropbox_folder",
                "42",
                "due",
                "  ESSAY 1 ",
                associated_entity_type=DROPBOX_ENTITY,
                associated_entity_id="42",
            )
        )

        self.assertTrue(outcome.accepted)
        self.assertEqual(outcome.replaced_key, "calendar:60:event")
        self.assertEqual([draft.key for draft in self.reconciler.drafts()], ["dropbox_folder:42:due"])
        self.assertEqual(self.reconciler.duplicates_skipped, 1)
        self.assertEqual(self.reconciler.counts_by_source, {"calendar": 0, "dropbox_folder": 1})

    def test_only_due_dates_of_tool_sources_substitute(self) -> None:
        self.reconciler.add_calendar_draft(_draft("calendar", "60", "event", "Essay 1"))
        self.reconciler.add_draft(_draft("dropbox_folder", "42", "start", "Essay 1"))
        self.reconciler.add_draft(_draft("discussion_topic", "90", "due", "Essay 1"))
        keys = {draft.key for draft in self.reconciler.drafts()}
        self.assertIn("calendar:60:event", keys)
        self.assertEqual(self.reconciler.duplicates_skipped, 0)

    def test_drafts_outside_window_are_dropped(self) -> None:
        outcome = self.reconciler.add_draft(_draft("quiz", "7", "due", "Old quiz", start_at=datetime(2020, 1, 1, tzinfo=timezone.utc)))
        self.assertFalse(outcome.accepted)
        self.assertEqual(outcome.reason, "outside_window")
        self.assertEqual(len(self.reconciler), 0)
        self.assertEqual(self.reconciler.duplicates_skipped, 0)

    def test_window_bounds_are_inclusive(self) -> None:
        self.assertTrue(self.reconciler.add_draft(_draft("quiz", "1", "start", "a", start_at=WINDOW_START)).accepted)
        self.assertTrue(self.reconciler.add_draft(_draft("quiz", "1", "end", "a", start_at=WINDOW_END)).accepted)

    def test_duplicate_keys_keep_first_draft(self) -> None:
        self.reconciler.add_draft(_draft("quiz", "7", "due", "First"))
        outcome = self.reconciler.add_draft(_draft("quiz", "7", "due", "Second"))
        self.assertEqual(outcome.reason, "duplicate_key")
        self.assertEqual(self.reconciler.drafts()[0].title, "First")
        self.assertEqual(self.reconciler.duplicates_skipped, 1)

    def test_concurrent_adds_keep_one_draft_per_key(self) -> None:
        def add_many() -> None:
            for number in range(100):
                self.reconciler.add_draft(_draft("checklist", f"5:{number}", "due", f"Item {number}"))

        threads = [threading.Thread(target=add_many) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(self.reconciler), 100)
        self.assertEqual(self.reconciler.duplicates_skipped, 300)
        self.assertEqual(self.reconciler.counts_by_source["checklist"], 100)


if __name__ == "__main__":
    unittest.main()
