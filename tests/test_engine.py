import asyncio
import sqlite3
import tempfile
import time
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from homesync.config_manager import ConfigManager
from homesync.engine import CalendarEngine
from homesync.errors import (
    InvalidCredential,
    InvalidLocator,
    InvalidRule,
    ProviderUnavailable,
    ReconciliationConflict,
    RuleConflict,
    SourceNotFound,
    SyncInProgress,
)
from homesync.models import (
    CandidateReason,
    ConfirmationStatus,
    FetchResult,
    MatchType,
    Provider,
    RawEvent,
    SyncStatus,
)
from homesync.rules import classify
from homesync.state_store import StateStore

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
CHILD = "child-1"
LOCATOR = "webcal://example.com/family.ics"


def _daddy(index: int, title: str = "Daddy Days") -> RawEvent:
    start = datetime(2026, 1, 3, tzinfo=timezone.utc) + timedelta(days=7 * index)
    return RawEvent(
        external_id=f"daddy_{index}",
        title=title,
        start_at=start,
        end_at=start + timedelta(days=1),
        all_day=True,
        recurrence_key="daddy",
        recurrence_rule="FREQ=WEEKLY;BYDAY=SA",
    )


def _soccer() -> RawEvent:
    start = datetime(2026, 1, 5, 16, 0, tzinfo=timezone.utc)
    return RawEvent("soccer-1", "Soccer practice", start, start + timedelta(hours=1))


class FakeAdapter:
    def __init__(self) -> None:
        self.events: list[RawEvent] = []
        self.error: Exception | None = None
        self.delay = 0.0
        self.not_modified = False
        self.calls = 0
        self.on_fetch = None

    def fetch_events(self, source, handle) -> FetchResult:
        self.calls += 1
        if self.on_fetch is not None:
            self.on_fetch()
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.not_modified:
            return FetchResult(not_modified=True, etag='"v1"')
        return FetchResult(events=list(self.events), etag='"v1"')


class CalendarEngineTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_manager = ConfigManager(str(Path(self.temp_dir.name) / "config.yaml"))
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.adapter = FakeAdapter()
        self.now = NOW
        self.engine = CalendarEngine(
            self.config_manager,
            self.store,
            adapters={Provider.SUBSCRIPTION_LINK: self.adapter, Provider.OAUTH: self.adapter},
            clock=lambda: self.now,
        )

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    async def _connect(self, locator: str = LOCATOR):
        result = await self.engine.connect_source(Provider.SUBSCRIPTION_LINK, CHILD, locator, "Family")
        return result

    def _active_external_ids(self, source_id: str) -> set[str]:
        return {event.external_event_id for event in self.store.list_imported_events(source_id=source_id)}

    def _events_by_title(self) -> dict[str, list]:
        output: dict[str, list] = {}
        for event in self.engine.list_events(CHILD):
            output.setdefault(event.title, []).append(event)
        return output

    # Sync

    async def test_connect_runs_initial_sync(self) -> None:
        self.adapter.events = [_daddy(i) for i in range(4)] + [_soccer()]
        result = await self._connect()
        self.assertEqual(result.initial_sync.events_imported, 5)
        self.assertEqual(result.initial_sync.candidates_found, 1)
        self.assertEqual(result.source.last_sync_status, SyncStatus.OK)
        self.assertEqual(result.source.credential_ref, "https://example.com/family.ics")
        self.assertEqual(result.source.etag, '"v1"')

    async def test_connecting_same_calendar_twice_fails(self) -> None:
        await self._connect()
        with self.assertRaises(InvalidLocator) as ctx:
            await self._connect("https://EXAMPLE.com/family.ics")
        self.assertEqual(ctx.exception.message, "This calendar is already connected")

    async def test_second_sync_is_idempotent(self) -> None:
        self.adapter.events = [_daddy(i) for i in range(4)] + [_soccer()]
        source = (await self._connect()).source
        counts = await self.engine.sync_now(source.id)
        self.assertEqual(counts.to_dict(), {"created": 0, "updated": 0, "deleted": 0})
        runs = self.store.recent_sync_runs(source_id=source.id)
        self.assertEqual([run["trigger"] for run in runs], ["manual", "connect"])

    async def test_sync_matches_remote_set(self) -> None:
        self.adapter.events = [_daddy(0), _daddy(1), _soccer()]
        source = (await self._connect()).source
        self.adapter.events = [_daddy(0, title="Daddy Days!"), _soccer(), _daddy(2)]
        counts = await self.engine.sync_now(source.id)
        self.assertEqual(counts.to_dict(), {"created": 1, "updated": 1, "deleted": 1})
        self.assertEqual(self._active_external_ids(source.id), {"daddy_0", "daddy_2", "soccer-1"})

    async def test_not_modified_feed_is_a_noop(self) -> None:
        self.adapter.events = [_daddy(0)]
        source = (await self._connect()).source
        self.adapter.not_modified = True
        counts = await self.engine.sync_now(source.id)
        self.assertEqual(counts.total, 0)
        self.assertEqual(self._active_external_ids(source.id), {"daddy_0"})

    async def test_failed_sync_keeps_events_and_records_error(self) -> None:
        self.adapter.events = [_daddy(0), _soccer()]
        source = (await self._connect()).source
        self.adapter.error = ProviderUnavailable()
        with self.assertRaises(ProviderUnavailable):
            await self.engine.sync_now(source.id)
        refreshed = self.store.get_source(source.id)
        self.assertEqual(refreshed.last_sync_status, SyncStatus.ERROR)
        self.assertEqual(refreshed.last_sync_error, "Calendar link unreachable")
        self.assertTrue(refreshed.active)
        self.assertEqual(self._active_external_ids(source.id), {"daddy_0", "soccer-1"})
        self.assertEqual(len(self.store.recent_audit_events(action="sync_error")), 1)

    async def test_reconciliation_conflict_rolls_back(self) -> None:
        source = (await self._connect()).source
        self.adapter.events = [_daddy(0), _daddy(1)]
        with mock.patch.object(
            self.store, "_reset_calendar_event", side_effect=sqlite3.IntegrityError("clash")
        ):
            with self.assertRaises(ReconciliationConflict):
                await self.engine.sync_now(source.id)
        self.assertEqual(self._active_external_ids(source.id), set())
        self.assertEqual(self.store.get_source(source.id).last_sync_status, SyncStatus.ERROR)

    async def test_initial_sync_failure_keeps_source_connected(self) -> None:
        self.adapter.error = InvalidCredential("Calendar link expired, replace it")
        result = await self._connect()
        self.assertTrue(result.source.active)
        self.assertEqual(result.source.last_sync_status, SyncStatus.ERROR)
        self.assertEqual(result.source.last_sync_error, "Calendar link expired, replace it")
        self.assertEqual(result.initial_sync.events_imported, 0)

    async def test_replace_locator_clears_error(self) -> None:
        self.adapter.error = InvalidCredential("Calendar link expired, replace it")
        source = (await self._connect()).source
        replaced = self.engine.replace_locator(source.id, "https://example.com/new.ics")
        self.assertEqual(replaced.credential_ref, "https://example.com/new.ics")
        self.assertIsNone(replaced.last_sync_error)
        self.assertIsNone(replaced.etag)
        self.adapter.error = None
        self.adapter.events = [_soccer()]
        counts = await self.engine.sync_now(source.id)
        self.assertEqual(counts.created, 1)

    async def test_held_lease_rejects_sync_without_touching_status(self) -> None:
        source = (await self._connect()).source
        self.assertTrue(self.store.acquire_lease(source.id, "other-worker", ttl_seconds=300, now=NOW))
        with self.assertRaises(SyncInProgress):
            await self.engine.sync_now(source.id)
        self.assertEqual(self.store.get_source(source.id).last_sync_status, SyncStatus.OK)

    async def test_concurrent_triggers_run_once(self) -> None:
        source = (await self._connect()).source
        self.adapter.events = [_daddy(0)]
        self.adapter.delay = 0.3
        calls_before = self.adapter.calls
        results = await asyncio.gather(
            self.engine.sync_now(source.id),
            self.engine.sync_now(source.id),
            return_exceptions=True,
        )
        self.assertEqual(sum(isinstance(item, SyncInProgress) for item in results), 1)
        self.assertEqual(self.adapter.calls - calls_before, 1)
        self.assertEqual(self._active_external_ids(source.id), {"daddy_0"})

    async def test_timeout_records_error_and_releases_lease(self) -> None:
        source = (await self._connect()).source
        self.config_manager.update({"sync": {"timeout_seconds": 1}})
        self.adapter.delay = 1.5
        with self.assertRaises(ProviderUnavailable) as ctx:
            await self.engine.sync_now(source.id)
        self.assertEqual(ctx.exception.message, "Calendar took too long to load")
        self.assertEqual(self.store.get_source(source.id).last_sync_status, SyncStatus.ERROR)
        self.assertTrue(self.store.acquire_lease(source.id, "next", ttl_seconds=60, now=NOW))

    async def test_sync_due_sources_respects_interval_and_batch_size(self) -> None:
        self.adapter.events = [_soccer()]
        await self._connect("https://example.com/a.ics")
        await self._connect("https://example.com/b.ics")
        self.assertEqual(await self.engine.sync_due_sources(), [])

        self.now = NOW + timedelta(minutes=31)
        results = await self.engine.sync_due_sources()
        self.assertEqual([result.status for result in results], ["success", "success"])

        self.now = NOW + timedelta(minutes=62)
        self.config_manager.update({"sync": {"max_sources_per_run": 1}})
        self.assertEqual(len(await self.engine.sync_due_sources()), 1)

    async def test_sync_due_sources_reports_failures(self) -> None:
        await self._connect()
        self.now = NOW + timedelta(minutes=31)
        self.adapter.error = ProviderUnavailable()
        results = await self.engine.sync_due_sources()
        self.assertEqual(results[0].status, "error")
        self.assertEqual(results[0].message, "Calendar link unreachable")

    async def test_disconnect_removes_events(self) -> None:
        self.adapter.events = [_daddy(0), _soccer()]
        source = (await self._connect()).source
        self.engine.disconnect(source.id)
        self.assertEqual(self.engine.list_events(CHILD), [])
        self.assertFalse(self.store.get_source(source.id).active)
        with self.assertRaises(SourceNotFound):
            await self.engine.sync_now(source.id)
        with self.assertRaises(SourceNotFound):
            self.engine.disconnect("missing")

    async def test_disconnect_during_sync_is_not_undone(self) -> None:
        self.adapter.events = [_daddy(0), _soccer()]
        source = (await self._connect()).source
        self.adapter.events.append(_daddy(1))
        self.adapter.on_fetch = lambda: self.engine.disconnect(source.id)
        with self.assertRaises(SourceNotFound):
            await self.engine.sync_now(source.id)
        self.assertFalse(self.store.get_source(source.id).active)
        self.assertEqual(self._active_external_ids(source.id), set())
        self.assertEqual(self.engine.list_events(CHILD), [])
        self.assertTrue(self.store.acquire_lease(source.id, "next", ttl_seconds=60, now=NOW))

    async def test_events_left_unclassified_are_picked_up_by_next_sync(self) -> None:
        source = (await self._connect()).source
        self.engine.create_rule(CHILD, MatchType.TITLE_CONTAINS, "daddy", "H1", True)
        self.adapter.events = [_daddy(0)]
        real_list_rules = self.store.list_rules
        failures = [sqlite3.OperationalError("database is locked")]

        def list_rules(*args, **kwargs):
            if failures:
                raise failures.pop()
            return real_list_rules(*args, **kwargs)

        with mock.patch.object(self.store, "list_rules", side_effect=list_rules):
            with self.assertRaises(sqlite3.OperationalError):
                await self.engine.sync_now(source.id)
        self.assertEqual(self._active_external_ids(source.id), {"daddy_0"})
        self.assertIsNone(self.engine.list_events(CHILD)[0].home_id)

        self.adapter.not_modified = True
        counts = await self.engine.sync_now(source.id)
        self.assertEqual(counts.to_dict(), {"created": 0, "updated": 0, "deleted": 0})
        event = self.engine.list_events(CHILD)[0]
        self.assertEqual(event.home_id, "H1")
        self.assertEqual(event.confirmation_status, ConfirmationStatus.AUTO_CONFIRMED)

    # Candidates and rules

    async def test_rule_deleted_mid_sync_leaves_no_conversion(self) -> None:
        self.adapter.events = [_daddy(0)]
        source = (await self._connect()).source
        rule = self.engine.create_rule(CHILD, MatchType.TITLE_CONTAINS, "daddy", "H1", True)
        self.adapter.events = [_daddy(0), _daddy(1)]
        real_list_rules = self.store.list_rules
        deleted: list[str] = []

        def list_rules_then_delete(*args, **kwargs):
            rules = real_list_rules(*args, **kwargs)
            if not deleted:
                deleted.append(rule.id)
                self.engine.delete_rule(rule.id)
            return rules

        with mock.patch.object(self.store, "list_rules", side_effect=list_rules_then_delete):
            counts = await self.engine.sync_now(source.id)
        self.assertEqual(counts.created, 1)
        events = self.engine.list_events(CHILD)
        self.assertEqual(len(events), 2)
        for event in events:
            self.assertIsNone(event.home_id)
            self.assertIsNone(event.mapping_rule_id)
            self.assertEqual(event.confirmation_status, ConfirmationStatus.NONE)
        self.assertFalse(self.store.get_rule(rule.id).active)

    async def test_rule_validation_errors_are_typed(self) -> None:
        with self.assertRaises(InvalidRule):
            self.engine.create_rule(CHILD, MatchType.TITLE_CONTAINS, "   ", "H1", True)
        with self.assertRaises(InvalidRule):
            self.engine.create_rule(CHILD, "title_regex", "daddy", "H1", True)
        rule = self.engine.create_rule(CHILD, MatchType.TITLE_CONTAINS, "daddy", "H1", True)
        with self.assertRaises(InvalidRule):
            self.engine.update_rule(rule.id, match_value=" ")
        self.assertEqual(self.store.get_rule(rule.id).match_value, "daddy")

    async def test_daddy_days_scenario(self) -> None:
        self.adapter.events = [_daddy(i) for i in range(4)] + [_soccer()]
        source = (await self._connect()).source

        candidates = self.engine.list_candidates(CHILD)
        self.assertEqual(len(candidates), 1)
        self.assertEqual(candidates[0].reason, CandidateReason.ALL_DAY)
        self.assertGreaterEqual(candidates[0].occurrence_count, 2)

        rule = self.engine.create_rule(CHILD, MatchType.TITLE_CONTAINS, "daddy", "H1", True)
        by_title = self._events_by_title()
        self.assertEqual(len(by_title["Daddy Days"]), 4)
        for event in by_title["Daddy Days"]:
            self.assertEqual(event.home_id, "H1")
            self.assertEqual(event.confirmation_status, ConfirmationStatus.AUTO_CONFIRMED)
        self.assertIsNone(by_title["Soccer practice"][0].home_id)

        self.adapter.events.append(_daddy(4))
        await self.engine.sync_now(source.id)
        self.assertEqual(sum(1 for e in self.engine.list_events(CHILD) if e.home_id == "H1"), 5)

        self.engine.delete_rule(rule.id)
        for event in self.engine.list_events(CHILD):
            self.assertIsNone(event.home_id)
            self.assertEqual(event.confirmation_status, ConfirmationStatus.NONE)
        self.assertEqual(len(self._active_external_ids(source.id)), 6)

    async def test_list_events_range_filter(self) -> None:
        self.adapter.events = [_daddy(i) for i in range(4)]
        await self._connect()
        start = datetime(2026, 1, 9, tzinfo=timezone.utc)
        end = datetime(2026, 1, 18, tzinfo=timezone.utc)
        events = self.engine.list_events(CHILD, start, end)
        self.assertEqual([event.start_at.day for event in events], [10, 17])

    async def test_higher_precedence_rule_wins_without_double_conversion(self) -> None:
        self.adapter.events = [_daddy(i) for i in range(3)]
        await self._connect()
        contains = self.engine.create_rule(CHILD, MatchType.TITLE_CONTAINS, "daddy", "H1", True)
        by_id = self.engine.create_rule(CHILD, MatchType.EVENT_ID, "daddy_0", "H2", True)
        events = {e.start_at.day: e for e in self.engine.list_events(CHILD)}
        self.assertEqual(events[3].home_id, "H2")
        self.assertEqual(events[3].mapping_rule_id, by_id.id)
        self.assertEqual(events[10].mapping_rule_id, contains.id)
        self.assertEqual(events[17].mapping_rule_id, contains.id)

    async def test_rule_edit_preserves_user_confirmation(self) -> None:
        self.adapter.events = [_daddy(0), _daddy(1)]
        await self._connect()
        rule = self.engine.create_rule(CHILD, MatchType.TITLE_EXACT, "daddy days", "H1", False)
        pending = self.engine.list_events(CHILD)
        self.assertTrue(all(e.confirmation_status == ConfirmationStatus.PENDING_CONFIRMATION for e in pending))
        self.engine.confirm_home_stay(pending[0].id)

        self.engine.update_rule(rule.id, priority=5)
        statuses = [e.confirmation_status for e in self.engine.list_events(CHILD)]
        self.assertEqual(statuses, [ConfirmationStatus.CONFIRMED, ConfirmationStatus.PENDING_CONFIRMATION])

        self.engine.update_rule(rule.id, home_id="H2")
        events = self.engine.list_events(CHILD)
        self.assertTrue(all(e.home_id == "H2" for e in events))
        self.assertTrue(all(e.confirmation_status == ConfirmationStatus.PENDING_CONFIRMATION for e in events))

    async def test_content_update_requires_new_confirmation(self) -> None:
        self.adapter.events = [_daddy(0)]
        source = (await self._connect()).source
        self.engine.create_rule(CHILD, MatchType.TITLE_CONTAINS, "daddy", "H1", False)
        event = self.engine.list_events(CHILD)[0]
        self.engine.confirm_home_stay(event.id)

        self.adapter.events = [_daddy(0, title="Daddy Days (late pickup)")]
        counts = await self.engine.sync_now(source.id)
        self.assertEqual(counts.updated, 1)
        updated = self.engine.list_events(CHILD)[0]
        self.assertEqual(updated.id, event.id)
        self.assertEqual(updated.home_id, "H1")
        self.assertEqual(updated.confirmation_status, ConfirmationStatus.PENDING_CONFIRMATION)

    async def test_recreating_rule_converts_again(self) -> None:
        self.adapter.events = [_daddy(0)]
        await self._connect()
        rule = self.engine.create_rule(CHILD, MatchType.TITLE_CONTAINS, "daddy", "H1", True)
        with self.assertRaises(RuleConflict):
            self.engine.create_rule(CHILD, MatchType.TITLE_CONTAINS, " DADDY ", "H2", True)
        self.engine.delete_rule(rule.id)
        self.assertIsNone(self.engine.list_events(CHILD)[0].home_id)

        self.engine.create_rule(CHILD, MatchType.TITLE_CONTAINS, "daddy", "H1", True)
        self.assertEqual(self.engine.list_events(CHILD)[0].home_id, "H1")
        with self.assertRaises(RuleConflict):
            self.engine.activate_rule(rule.id)

    async def test_quick_map_and_ignore(self) -> None:
        self.adapter.events = [_daddy(i) for i in range(3)] + [
            _soccer(),
            RawEvent(
                "camp-1",
                "Summer camp",
                datetime(2026, 1, 20, tzinfo=timezone.utc),
                datetime(2026, 1, 23, tzinfo=timezone.utc),
                all_day=True,
            ),
        ]
        source = (await self._connect()).source
        candidates = {c.title: c for c in self.engine.list_candidates(CHILD)}
        self.assertEqual(set(candidates), {"Daddy Days", "Summer camp"})

        rule = self.engine.quick_map(CHILD, candidates["Daddy Days"].key, "H1", auto_confirm=True)
        self.assertEqual(rule.match_type, MatchType.TITLE_EXACT)
        self.assertEqual(rule.source_id, source.id)
        self.assertEqual([c.title for c in self.engine.list_candidates(CHILD)], ["Summer camp"])

        ignored = self.engine.ignore_candidates_by_title(CHILD, source.id, "summer CAMP")
        self.assertEqual(ignored, 1)
        self.assertEqual(self.engine.list_candidates(CHILD), [])

    async def test_classification_error_is_isolated(self) -> None:
        self.adapter.events = [_soccer(), _daddy(0)]
        await self._connect()

        def flaky_classify(event, rules):
            if event.title == "Soccer practice":
                raise RuntimeError("boom")
            return classify(event, rules)

        with mock.patch("homesync.engine.classify", side_effect=flaky_classify):
            self.engine.create_rule(CHILD, MatchType.TITLE_CONTAINS, "daddy", "H1", True)

        by_title = self._events_by_title()
        self.assertEqual(by_title["Daddy Days"][0].home_id, "H1")
        errors = self.store.recent_audit_events(action="classify_error")
        self.assertEqual(len(errors), 1)


if __name__ == "__main__":
    unittest.main()
