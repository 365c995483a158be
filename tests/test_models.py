import unittest
from datetime import datetime, timezone

from timeline_sync.models import (
    AppConfig,
    SyncConfig,
    SyncOutcome,
    TimelineDraft,
    parse_iso_datetime,
    serialize_datetime,
    sync_window,
    timeline_key,
)


class ModelsTests(unittest.TestCase):
    def test_sync_window_spans_three_months_back_and_eighteen_forward(self) -> None:
        start, end = sync_window(datetime(2026, 10, 18, 15, 30, tzinfo=timezone.utc))
        self.assertEqual(start, datetime(2026, 7, 1, tzinfo=timezone.utc))
        self.assertEqual(end, datetime(2028, 4, 30, 23, 59, 59, 999000, tzinfo=timezone.utc))

    def test_sync_window_crosses_year_boundaries(self) -> None:
        start, end = sync_window(datetime(2026, 1, 31, tzinfo=timezone.utc))
        self.assertEqual(start, datetime(2025, 10, 1, tzinfo=timezone.utc))
        self.assertEqual(end, datetime(2027, 7, 31, 23, 59, 59, 999000, tzinfo=timezone.utc))

    def test_sync_window_handles_february_end(self) -> None:
        _, end = sync_window(datetime(2026, 8, 10, tzinfo=timezone.utc), months_back=0, months_forward=6)
        self.assertEqual(end, datetime(2027, 2, 28, 23, 59, 59, 999000, tzinfo=timezone.utc))

    def test_parse_iso_datetime_normalizes_to_utc(self) -> None:
        parsed = parse_iso_datetime("2026-03-01T10:00:00-05:00")
        self.assertEqual(parsed, datetime(2026, 3, 1, 15, 0, tzinfo=timezone.utc))
        self.assertEqual(parse_iso_datetime("2026-03-01T15:00:00Z"), parsed)
        self.assertEqual(parse_iso_datetime("2026-03-01"), datetime(2026, 3, 1, tzinfo=timezone.utc))

    def test_serialize_datetime_is_sortable_text(self) -> None:
        early = serialize_datetime(datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc))
        late = serialize_datetime(datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc))
        self.assertEqual(early, "2026-03-01T09:00:00.000+00:00")
        self.assertLess(early, late)

    def test_timeline_key_is_whole_triple(self) -> None:
        draft = TimelineDraft(
            source_type="discussion_forum",
            source_id="12:post",
            date_kind="start",
            org_unit_id="100",
            title="Forum",
            start_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
        )
        self.assertEqual(draft.key, "discussion_forum:12:post:start")
        self.assertEqual(timeline_key("quiz", "7", "due"), "quiz:7:due")

    def test_sync_config_clamps_values(self) -> None:
        cfg = SyncConfig.from_dict({"org_unit_chunk_size": 0, "window_months_back": -4, "delete_batch_size": "50"})
        self.assertEqual(cfg.org_unit_chunk_size, 1)
        self.assertEqual(cfg.window_months_back, 0)
        self.assertEqual(cfg.delete_batch_size, 50)
        self.assertEqual(cfg.window_months_forward, 18)

    def test_app_config_defaults(self) -> None:
        cfg = AppConfig.from_dict({"connector": {"base_url": "http://connector:4001/"}})
        self.assertEqual(cfg.connector.base_url, "http://connector:4001")
        self.assertEqual(cfg.connector.timeout_seconds, 65)
        self.assertEqual(cfg.to_dict()["sync"]["org_unit_chunk_size"], 25)

    def test_sync_outcome_to_dict(self) -> None:
        outcome = SyncOutcome(
            status="partial",
            events_fetched=3,
            events_upserted=3,
            events_deleted=1,
            duplicates_skipped=2,
            org_units_forbidden=("7",),
            counts_by_source={"calendar": 3},
            window_start=datetime(2026, 7, 1, tzinfo=timezone.utc),
            window_end=datetime(2028, 4, 30, 23, 59, 59, 999000, tzinfo=timezone.utc),
            synced_at=datetime(2026, 10, 18, tzinfo=timezone.utc),
        )
        payload = outcome.to_dict()
        self.assertTrue(payload["success"])
        self.assertEqual(payload["org_units_forbidden"], ["7"])
        self.assertEqual(payload["window_start"], "2026-07-01T00:00:00.000+00:00")


if __name__ == "__main__":
    unittest.main()
