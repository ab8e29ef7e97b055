import sqlite3
import tempfile
import unittest
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from homesync.errors import InvalidLocator, ReconciliationConflict, RuleConflict, SourceNotFound
from homesync.models import (
    CalendarSource,
    ConfirmationStatus,
    MappingRule,
    MatchType,
    Provider,
    RawEvent,
    ResultingEventType,
    SyncStatus,
)
from homesync.reconciler import diff_events
from homesync.state_store import StateStore

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def _source(source_id: str = "src-1", identity: str = "identity-1") -> CalendarSource:
    return CalendarSource(
        id=source_id,
        provider=Provider.SUBSCRIPTION_LINK,
        child_id="child-1",
        credential_ref="https://example.com/a.ics",
        external_identity=identity,
        display_name="Family",
        created_at=NOW,
        updated_at=NOW,
    )


def _raw(external_id: str, title: str = "Daddy Days", day: int = 17) -> RawEvent:
    start = datetime(2026, 1, day, tzinfo=timezone.utc)
    return RawEvent(external_id, title, start, start + timedelta(days=1), all_day=True)


class StateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_source_round_trip_and_status(self) -> None:
        self.store.insert_source(_source())
        self.store.update_source_sync(
            "src-1", status=SyncStatus.OK, error=None, now=NOW, synced=True, etag='"v1"'
        )
        source = self.store.get_source("src-1")
        self.assertEqual(source.last_sync_status, SyncStatus.OK)
        self.assertEqual(source.last_synced_at, NOW)
        self.assertEqual(source.etag, '"v1"')

        self.store.update_source_sync("src-1", status=SyncStatus.ERROR, error="boom", now=NOW + timedelta(hours=1))
        source = self.store.get_source("src-1")
        self.assertEqual(source.last_sync_status, SyncStatus.ERROR)
        self.assertEqual(source.last_sync_error, "boom")
        self.assertEqual(source.last_synced_at, NOW)
        self.assertEqual(source.etag, '"v1"')

    def test_one_active_source_per_identity(self) -> None:
        self.store.insert_source(_source())
        with self.assertRaises(InvalidLocator):
            self.store.insert_source(_source("src-2"))
        self.store.deactivate_source("src-1", NOW)
        self.store.insert_source(_source("src-2"))
        self.assertEqual([s.id for s in self.store.list_sources(active_only=True)], ["src-2"])

    def test_batch_creates_imported_and_calendar_events(self) -> None:
        source = _source()
        self.store.insert_source(source)
        outcome = self.store.apply_source_batch(source, [_raw("a"), _raw("b", day=24)], differ=diff_events, now=NOW)
        self.assertEqual(outcome.counts.created, 2)
        self.assertEqual(len(outcome.changed), 2)
        events = self.store.list_calendar_events("child-1")
        self.assertEqual([event.title for event in events], ["Daddy Days", "Daddy Days"])
        self.assertTrue(all(event.confirmation_status == ConfirmationStatus.NONE for event in events))

    def test_batch_rolls_back_on_integrity_error(self) -> None:
        source = _source()
        self.store.insert_source(source)
        original = self.store._reset_calendar_event
        calls = {"count": 0}

        def flaky(conn, event, now):
            calls["count"] += 1
            if calls["count"] == 2:
                raise sqlite3.IntegrityError("UNIQUE constraint failed")
            return original(conn, event, now)

        with mock.patch.object(self.store, "_reset_calendar_event", side_effect=flaky):
            with self.assertRaises(ReconciliationConflict):
                self.store.apply_source_batch(source, [_raw("a"), _raw("b", day=24)], differ=diff_events, now=NOW)

        self.assertEqual(self.store.list_imported_events(source_id="src-1"), [])
        self.assertEqual(self.store.list_calendar_events("child-1"), [])

    def test_deleted_event_hides_calendar_event(self) -> None:
        source = _source()
        self.store.insert_source(source)
        self.store.apply_source_batch(source, [_raw("a"), _raw("b", day=24)], differ=diff_events, now=NOW)
        outcome = self.store.apply_source_batch(source, [_raw("a")], differ=diff_events, now=NOW)
        self.assertEqual(outcome.counts.deleted, 1)
        self.assertEqual(len(self.store.list_calendar_events("child-1")), 1)
        removed = self.store.list_imported_events(source_id="src-1", include_removed=True)
        self.assertEqual(sorted(event.status.value for event in removed), ["active", "removed"])

    def test_duplicate_active_rule_conflicts(self) -> None:
        rule = MappingRule(
            id="r1",
            child_id="child-1",
            match_type=MatchType.TITLE_CONTAINS,
            match_value="Daddy",
            home_id="H1",
            resulting_event_type=ResultingEventType.HOME_DAY,
            created_at=NOW,
            updated_at=NOW,
        )
        self.store.insert_rule(rule)
        duplicate = MappingRule(
            id="r2",
            child_id="child-1",
            match_type=MatchType.TITLE_CONTAINS,
            match_value="  daddy ",
            created_at=NOW,
            updated_at=NOW,
        )
        with self.assertRaises(RuleConflict):
            self.store.insert_rule(duplicate)
        self.store.deactivate_rule("r1", NOW)
        self.store.insert_rule(duplicate)
        self.assertEqual([r.id for r in self.store.list_rules("child-1", active_only=True)], ["r2"])

    def test_batch_refused_once_source_is_disconnected(self) -> None:
        source = _source()
        self.store.insert_source(source)
        self.store.apply_source_batch(source, [_raw("a")], differ=diff_events, now=NOW)
        self.assertTrue(self.store.acquire_lease("src-1", "worker", ttl_seconds=60, now=NOW))
        self.store.deactivate_source("src-1", NOW)
        # The running holder keeps its lease until it releases it.
        self.assertFalse(self.store.acquire_lease("src-1", "other", ttl_seconds=60, now=NOW))

        with self.assertRaises(SourceNotFound):
            self.store.apply_source_batch(source, [_raw("a"), _raw("b", day=24)], differ=diff_events, now=NOW)
        self.assertEqual(self.store.list_imported_events(source_id="src-1"), [])
        self.assertEqual(self.store.list_calendar_events("child-1"), [])
        self.assertEqual(self.store.list_unlinked_imported_events("src-1"), [])

    def test_unlinked_events_exclude_converted_ones(self) -> None:
        source = _source()
        self.store.insert_source(source)
        self.store.apply_source_batch(source, [_raw("a"), _raw("b", day=24)], differ=diff_events, now=NOW)
        rule = MappingRule(
            id="r1",
            child_id="child-1",
            match_type=MatchType.EVENT_ID,
            match_value="a",
            home_id="H1",
            resulting_event_type=ResultingEventType.HOME_DAY,
            created_at=NOW,
            updated_at=NOW,
        )
        self.store.insert_rule(rule)
        by_origin = {
            event.external_event_id: self.store.get_calendar_event_for_origin(event.id)
            for event in self.store.list_imported_events(source_id="src-1")
        }
        converted = replace(by_origin["a"], home_id="H1", mapping_rule_id="r1")
        self.assertTrue(self.store.save_calendar_event(converted))
        self.assertEqual([e.external_event_id for e in self.store.list_unlinked_imported_events("src-1")], ["b"])

        self.store.deactivate_rule("r1", NOW)
        self.assertFalse(self.store.save_calendar_event(converted))
        self.assertIsNone(self.store.get_calendar_event(converted.id).mapping_rule_id)

    def test_lease_is_exclusive_until_expiry(self) -> None:
        self.assertTrue(self.store.acquire_lease("src-1", "a", ttl_seconds=60, now=NOW))
        self.assertFalse(self.store.acquire_lease("src-1", "b", ttl_seconds=60, now=NOW + timedelta(seconds=30)))
        self.assertTrue(self.store.acquire_lease("src-1", "b", ttl_seconds=60, now=NOW + timedelta(seconds=61)))
        # A stale holder cannot release a lease it lost.
        self.store.release_lease("src-1", "a")
        self.assertFalse(self.store.acquire_lease("src-1", "c", ttl_seconds=60, now=NOW + timedelta(seconds=62)))
        self.store.release_lease("src-1", "b")
        self.assertTrue(self.store.acquire_lease("src-1", "c", ttl_seconds=60, now=NOW + timedelta(seconds=62)))

    def test_sync_runs_and_audit_events(self) -> None:
        run_id = self.store.record_sync_run(
            source_id="src-1", trigger="manual", status="success", message="ok", duration_ms=5, created=2
        )
        self.store.record_audit_event(
            source_id="src-1", entity_id="src-1", action="reconcile", details={"created": 2}, run_id=run_id
        )
        runs = self.store.recent_sync_runs(source_id="src-1")
        self.assertEqual(runs[0]["created"], 2)
        events = self.store.recent_audit_events(action="reconcile")
        self.assertEqual(events[0]["details"], {"created": 2})
        self.assertEqual(events[0]["run_id"], run_id)


if __name__ == "__main__":
    unittest.main()
