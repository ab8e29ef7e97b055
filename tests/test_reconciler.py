import unittest
from datetime import datetime, timedelta, timezone

from homesync.models import ImportedEvent, ImportedEventStatus, RawEvent
from homesync.reconciler import dedupe_events, diff_events

START = datetime(2026, 1, 10, 9, 0, tzinfo=timezone.utc)


def _raw(external_id: str, title: str = "Event", offset_hours: int = 0) -> RawEvent:
    start = START + timedelta(hours=offset_hours)
    return RawEvent(external_id, title, start, start + timedelta(hours=1))


def _imported(raw: RawEvent, status: ImportedEventStatus = ImportedEventStatus.ACTIVE) -> ImportedEvent:
    return ImportedEvent(
        id=f"imp-{raw.external_id}",
        source_id="src-1",
        child_id="child-1",
        external_event_id=raw.external_id,
        title=raw.title,
        start_at=raw.start_at,
        end_at=raw.end_at,
        content_hash=raw.content_hash,
        status=status,
    )


class DiffEventsTests(unittest.TestCase):
    def test_first_fetch_creates_everything(self) -> None:
        diff = diff_events([], [_raw("a"), _raw("b")])
        self.assertEqual([raw.external_id for raw in diff.creates], ["a", "b"])
        self.assertEqual(diff.counts.to_dict(), {"created": 2, "updated": 0, "deleted": 0})

    def test_unchanged_fetch_is_empty(self) -> None:
        existing = [_imported(_raw("a")), _imported(_raw("b"))]
        diff = diff_events(existing, [_raw("a"), _raw("b")])
        self.assertTrue(diff.is_empty)

    def test_update_and_delete(self) -> None:
        existing = [_imported(_raw("a")), _imported(_raw("b"))]
        diff = diff_events(existing, [_raw("a", title="Renamed")])
        self.assertEqual([(local.external_event_id, raw.title) for local, raw in diff.updates], [("a", "Renamed")])
        self.assertEqual([local.external_event_id for local in diff.deletes], ["b"])
        self.assertEqual(diff.counts.to_dict(), {"created": 0, "updated": 1, "deleted": 1})

    def test_removed_row_reappearing_is_reactivated(self) -> None:
        existing = [_imported(_raw("a"), status=ImportedEventStatus.REMOVED)]
        diff = diff_events(existing, [_raw("a")])
        self.assertEqual(len(diff.reactivations), 1)
        self.assertEqual(diff.counts.created, 1)
        self.assertEqual(diff.deletes, [])

    def test_removed_row_still_absent_is_not_deleted_again(self) -> None:
        existing = [_imported(_raw("a"), status=ImportedEventStatus.REMOVED)]
        self.assertTrue(diff_events(existing, []).is_empty)

    def test_duplicate_ids_last_one_wins(self) -> None:
        deduped = dedupe_events([_raw("a", title="First"), _raw("a", title="Second")])
        self.assertEqual(deduped["a"].title, "Second")
        diff = diff_events([], [_raw("a", title="First"), _raw("a", title="Second")])
        self.assertEqual([raw.title for raw in diff.creates], ["Second"])


if __name__ == "__main__":
    unittest.main()
