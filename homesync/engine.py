from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from homesync.candidates import detect_candidates
from homesync.config_manager import ConfigManager
from homesync.conversion import ConversionManager
from homesync.errors import (
    SAFE_MESSAGES,
    EventNotFound,
    HomeSyncError,
    InvalidRule,
    ProviderUnavailable,
    RuleNotFound,
    SourceNotFound,
    SyncInProgress,
)
from homesync.models import (
    AppConfig,
    CalendarEvent,
    CalendarSource,
    ConnectResult,
    HomeStayCandidate,
    ImportedEvent,
    InitialSync,
    MappingRule,
    MatchType,
    Provider,
    ReconcileCounts,
    ResultingEventType,
    SyncResult,
    SyncStatus,
    normalize_title,
    utc_now,
)
from homesync.providers import (
    CredentialResolver,
    DirectCredentialResolver,
    OAuthCalendarAdapter,
    ProviderAdapter,
    SubscriptionLinkAdapter,
    external_identity,
    mask_subscription_url,
    normalize_subscription_url,
    split_oauth_locator,
    validate_subscription_url,
)
from homesync.reconciler import Reconciler
from homesync.rules import classify
from homesync.state_store import StateStore

logger = logging.getLogger(__name__)

_UNSET: Any = object()


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


class CalendarEngine:
    """Sync orchestrator and the outbound operations built on top of it.

    Network fetches and store writes are blocking calls; the async entry points
    push them onto worker threads with ``asyncio.to_thread``. Rule and
    confirmation operations are plain synchronous methods.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        *,
        resolver: CredentialResolver | None = None,
        adapters: Mapping[Provider, ProviderAdapter] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.resolver = resolver or DirectCredentialResolver(self._lookup_access_token)
        self.adapters = dict(adapters) if adapters is not None else None
        self.clock = clock
        self.reconciler = Reconciler(state_store, clock=clock)
        self.conversions = ConversionManager(state_store, clock=clock)

    def _lookup_access_token(self, connection_id: str) -> str | None:
        return self.config_manager.load().oauth.access_tokens.get(connection_id)

    def _adapter_for(self, provider: Provider, config: AppConfig) -> ProviderAdapter:
        if self.adapters is not None:
            return self.adapters[provider]
        if provider == Provider.SUBSCRIPTION_LINK:
            return SubscriptionLinkAdapter(config.subscription, config.sync, clock=self.clock)
        return OAuthCalendarAdapter(config.oauth, config.sync, clock=self.clock)

    def _require_source(self, source_id: str) -> CalendarSource:
        source = self.state_store.get_source(source_id)
        if source is None:
            raise SourceNotFound(detail=source_id)
        return source

    def _require_rule(self, rule_id: str) -> MappingRule:
        rule = self.state_store.get_rule(rule_id)
        if rule is None:
            raise RuleNotFound(detail=rule_id)
        return rule

    def _match_type(self, value: MatchType | str) -> MatchType:
        try:
            return MatchType(value)
        except ValueError as exc:
            raise InvalidRule("Unknown match type", detail=str(value)) from exc

    def _audit(self, *, source_id: str, entity_id: str, action: str, details: dict[str, Any], run_id=None) -> None:
        self.state_store.record_audit_event(
            source_id=source_id,
            entity_id=entity_id,
            action=action,
            details=details,
            run_id=run_id,
        )

    # ------------------------------------------------------------------
    # Sync pipeline
    # ------------------------------------------------------------------

    def _classify_events(self, child_id: str, events: list[ImportedEvent], *, trigger: str) -> int:
        """Classify and convert each event; a failure only skips that event."""
        rules = self.state_store.list_rules(child_id, active_only=True)
        converted = 0
        for event in events:
            try:
                outcome = classify(event, rules)
                calendar_event, changed = self.conversions.convert(event, outcome)
            except Exception as exc:
                logger.warning("Could not classify imported event %s", event.id, exc_info=True)
                self._audit(
                    source_id=event.source_id,
                    entity_id=event.id,
                    action="classify_error",
                    details={"trigger": trigger, "error": f"{type(exc).__name__}: {exc}"},
                )
                continue
            if changed and outcome is not None:
                converted += 1
                self._audit(
                    source_id=event.source_id,
                    entity_id=event.id,
                    action="convert",
                    details={
                        "trigger": trigger,
                        "rule_id": outcome.rule_id,
                        "home_id": calendar_event.home_id,
                        "confirmation_status": calendar_event.confirmation_status.value,
                    },
                )
        return converted

    def _rescan_child(self, child_id: str, trigger: str) -> int:
        events = self.state_store.list_imported_events(child_id=child_id)
        return self._classify_events(child_id, events, trigger=trigger)

    async def _run_pipeline(self, source: CalendarSource, config: AppConfig, trigger: str) -> ReconcileCounts:
        handle = await asyncio.to_thread(self.resolver.resolve, source)
        adapter = self._adapter_for(source.provider, config)
        fetched = await asyncio.to_thread(adapter.fetch_events, source, handle)

        if fetched.not_modified:
            counts = ReconcileCounts()
        else:
            outcome = await asyncio.to_thread(self.reconciler.reconcile, source, fetched.events)
            counts = outcome.counts

        # Changed events come back unlinked from the batch. Events left unlinked by
        # an earlier failed or timed-out sync are picked up here as well.
        unlinked = await asyncio.to_thread(self.state_store.list_unlinked_imported_events, source.id)
        if unlinked:
            await asyncio.to_thread(self._classify_events, source.child_id, unlinked, trigger=trigger)

        await asyncio.to_thread(
            self.state_store.update_source_sync,
            source.id,
            status=SyncStatus.OK,
            error=None,
            now=self.clock(),
            synced=True,
            etag=fetched.etag,
            last_modified=fetched.last_modified,
        )
        return counts

    def _scrub(self, text: str, source: CalendarSource) -> str:
        if source.provider == Provider.SUBSCRIPTION_LINK and source.credential_ref:
            return text.replace(source.credential_ref, mask_subscription_url(source.credential_ref))
        return text

    def _record_failure(self, source: CalendarSource, trigger: str, exc: BaseException, duration_ms: int) -> str:
        message = exc.message if isinstance(exc, HomeSyncError) else SAFE_MESSAGES["unknown"]
        detail = exc.detail if isinstance(exc, HomeSyncError) else str(exc)
        self.state_store.update_source_sync(source.id, status=SyncStatus.ERROR, error=message, now=self.clock())
        run_id = self.state_store.record_sync_run(
            source_id=source.id,
            trigger=trigger,
            status="error",
            message=message,
            duration_ms=duration_ms,
        )
        self._audit(
            source_id=source.id,
            entity_id=source.id,
            action="sync_error",
            details={
                "trigger": trigger,
                "error": type(exc).__name__,
                "detail": self._scrub(detail, source),
            },
            run_id=run_id,
        )
        return message

    def _record_success(self, source: CalendarSource, trigger: str, counts: ReconcileCounts, duration_ms: int) -> str:
        message = (
            f"Created {counts.created}, updated {counts.updated}, deleted {counts.deleted} events."
            if counts.total
            else "No changes."
        )
        run_id = self.state_store.record_sync_run(
            source_id=source.id,
            trigger=trigger,
            status="success",
            message=message,
            duration_ms=duration_ms,
            created=counts.created,
            updated=counts.updated,
            deleted=counts.deleted,
        )
        if counts.total:
            self._audit(
                source_id=source.id,
                entity_id=source.id,
                action="reconcile",
                details={"trigger": trigger, **counts.to_dict()},
                run_id=run_id,
            )
        return message

    async def _sync_source(self, source: CalendarSource, trigger: str) -> SyncResult:
        config = self.config_manager.load()
        holder = uuid.uuid4().hex
        acquired = await asyncio.to_thread(
            self.state_store.acquire_lease,
            source.id,
            holder,
            ttl_seconds=config.sync.lease_ttl_seconds,
            now=self.clock(),
        )
        if not acquired:
            raise SyncInProgress(detail=source.id)

        started_at = datetime.now(timezone.utc)
        logger.info("Sync started for source %s (trigger=%s)", source.id, trigger)
        try:
            try:
                counts = await asyncio.wait_for(
                    self._run_pipeline(source, config, trigger),
                    timeout=config.sync.timeout_seconds,
                )
            except asyncio.TimeoutError as exc:
                raise ProviderUnavailable(
                    SAFE_MESSAGES["timeout"],
                    detail=f"sync exceeded {config.sync.timeout_seconds}s",
                ) from exc
        except Exception as exc:
            duration_ms = _elapsed_ms(started_at)
            message = await asyncio.to_thread(self._record_failure, source, trigger, exc, duration_ms)
            logger.warning("Sync failed for source %s: %s", source.id, message)
            raise
        finally:
            await asyncio.to_thread(self.state_store.release_lease, source.id, holder)

        duration_ms = _elapsed_ms(started_at)
        message = await asyncio.to_thread(self._record_success, source, trigger, counts, duration_ms)
        logger.info("Sync finished for source %s: %s", source.id, message)
        return SyncResult(
            source_id=source.id,
            status="success",
            message=message,
            duration_ms=duration_ms,
            counts=counts,
            trigger=trigger,
        )

    async def sync_now(self, source_id: str, trigger: str = "manual") -> ReconcileCounts:
        source = await asyncio.to_thread(self._require_source, source_id)
        if not source.active:
            raise SourceNotFound("Calendar is disconnected", detail=source_id)
        result = await self._sync_source(source, trigger)
        return result.counts

    async def _sync_quietly(self, source: CalendarSource, trigger: str) -> SyncResult | None:
        started_at = datetime.now(timezone.utc)
        try:
            return await self._sync_source(source, trigger)
        except SyncInProgress:
            logger.debug("Skipping source %s, sync already running", source.id)
            return None
        except Exception as exc:
            message = exc.message if isinstance(exc, HomeSyncError) else SAFE_MESSAGES["unknown"]
            return SyncResult(
                source_id=source.id,
                status="error",
                message=message,
                duration_ms=_elapsed_ms(started_at),
                counts=ReconcileCounts(),
                trigger=trigger,
            )

    async def sync_due_sources(self, trigger: str = "scheduled") -> list[SyncResult]:
        """Sync every active source whose refresh interval elapsed, oldest first."""
        config = self.config_manager.load()
        now = self.clock()
        sources = await asyncio.to_thread(self.state_store.list_sources, None, True)
        due = [source for source in sources if source.is_due(now)]
        oldest = datetime.min.replace(tzinfo=timezone.utc)
        due.sort(key=lambda item: item.last_synced_at or oldest)
        batch = due[: config.sync.max_sources_per_run]
        if not batch:
            return []
        results = await asyncio.gather(*(self._sync_quietly(source, trigger) for source in batch))
        return [result for result in results if result is not None]

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def _credential_ref_for(self, provider: Provider, locator: str) -> tuple[str, str | None]:
        if provider == Provider.SUBSCRIPTION_LINK:
            warning = validate_subscription_url(locator)
            return normalize_subscription_url(locator), warning
        connection_id, calendar_id = split_oauth_locator(locator)
        return f"{connection_id}/{calendar_id}", None

    async def connect_source(
        self,
        provider: Provider | str,
        child_id: str,
        locator: str,
        display_name: str = "",
        refresh_interval_minutes: int | None = None,
    ) -> ConnectResult:
        provider = Provider(provider)
        config = self.config_manager.load()
        credential_ref, warning = self._credential_ref_for(provider, locator)
        now = self.clock()
        if not display_name.strip():
            if provider == Provider.SUBSCRIPTION_LINK:
                display_name = "Subscribed Calendar"
            else:
                display_name = split_oauth_locator(credential_ref)[1]
        source = CalendarSource(
            id=uuid.uuid4().hex,
            provider=provider,
            child_id=child_id,
            credential_ref=credential_ref,
            external_identity=external_identity(provider, credential_ref),
            display_name=display_name.strip(),
            refresh_interval_minutes=max(1, int(refresh_interval_minutes or config.sync.default_refresh_minutes)),
            created_at=now,
            updated_at=now,
        )
        await asyncio.to_thread(self.state_store.insert_source, source)
        await asyncio.to_thread(
            self._audit,
            source_id=source.id,
            entity_id=source.id,
            action="source_connected",
            details={
                "provider": provider.value,
                "child_id": child_id,
                "display_name": source.display_name,
                "locator": mask_subscription_url(credential_ref)
                if provider == Provider.SUBSCRIPTION_LINK
                else credential_ref,
                "warning": warning,
            },
        )
        logger.info("Connected %s source %s for child %s", provider.value, source.id, child_id)

        try:
            await self._sync_source(source, trigger="connect")
        except HomeSyncError as exc:
            # The source stays connected with its error recorded for the user to repair.
            logger.info("Initial sync of source %s failed: %s", source.id, exc.message)

        events = await asyncio.to_thread(self.state_store.list_imported_events, source_id=source.id)
        candidates = await asyncio.to_thread(self.list_candidates, child_id)
        refreshed = await asyncio.to_thread(self._require_source, source.id)
        return ConnectResult(
            source=refreshed,
            initial_sync=InitialSync(
                events_imported=len(events),
                candidates_found=sum(1 for item in candidates if item.source_id == source.id),
            ),
        )

    def disconnect(self, source_id: str) -> None:
        source = self._require_source(source_id)
        if not source.active:
            return
        removed = self.state_store.deactivate_source(source_id, self.clock())
        self._audit(
            source_id=source_id,
            entity_id=source_id,
            action="source_disconnected",
            details={"child_id": source.child_id, "events_removed": removed},
        )
        logger.info("Disconnected source %s (%d events removed)", source_id, removed)

    def replace_locator(self, source_id: str, locator: str) -> CalendarSource:
        source = self._require_source(source_id)
        credential_ref, _warning = self._credential_ref_for(source.provider, locator)
        self.state_store.replace_source_locator(
            source_id,
            credential_ref=credential_ref,
            external_identity=external_identity(source.provider, credential_ref),
            now=self.clock(),
        )
        return self._require_source(source_id)

    def list_sources(self, child_id: str | None = None) -> list[CalendarSource]:
        return self.state_store.list_sources(child_id)

    # ------------------------------------------------------------------
    # Candidates
    # ------------------------------------------------------------------

    def list_candidates(self, child_id: str) -> list[HomeStayCandidate]:
        config = self.config_manager.load()
        return detect_candidates(
            self.state_store.list_unmapped_imported_events(child_id),
            foreign_patterns=self.state_store.active_title_patterns(child_id),
            keywords=config.candidates.keywords,
        )

    def ignore_candidates(self, event_ids: list[str]) -> int:
        return self.state_store.set_candidate_ignored(event_ids, True, self.clock())

    def ignore_candidates_by_title(self, child_id: str, source_id: str, title: str) -> int:
        wanted = normalize_title(title)
        event_ids = [
            event.id
            for event in self.state_store.list_imported_events(child_id=child_id, source_id=source_id)
            if normalize_title(event.title) == wanted
        ]
        return self.state_store.set_candidate_ignored(event_ids, True, self.clock())

    def quick_map(
        self,
        child_id: str,
        candidate_key: str,
        home_id: str | None,
        auto_confirm: bool = False,
        match_type: MatchType | str | None = None,
    ) -> MappingRule:
        candidate = next((item for item in self.list_candidates(child_id) if item.key == candidate_key), None)
        if candidate is None:
            raise EventNotFound("Candidate not found", detail=candidate_key)
        chosen = self._match_type(match_type) if match_type else candidate.suggested_match_type
        if chosen == MatchType.EVENT_ID:
            sample = self.state_store.get_imported_event(candidate.sample_event_ids[0])
            if sample is None:
                raise EventNotFound(detail=candidate.sample_event_ids[0])
            match_value = sample.external_event_id
        else:
            match_value = candidate.title
        return self.create_rule(
            child_id,
            chosen,
            match_value,
            home_id,
            auto_confirm,
            source_id=candidate.source_id,
        )

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def create_rule(
        self,
        child_id: str,
        match_type: MatchType | str,
        match_value: str,
        home_id: str | None,
        auto_confirm: bool,
        priority: int = 0,
        source_id: str | None = None,
    ) -> MappingRule:
        match_type = self._match_type(match_type)
        if not str(match_value or "").strip():
            raise InvalidRule("A match value is required", detail="match_value")
        if source_id:
            self._require_source(source_id)
        now = self.clock()
        rule = MappingRule(
            id=uuid.uuid4().hex,
            child_id=child_id,
            match_type=match_type,
            match_value=str(match_value).strip(),
            priority=int(priority),
            home_id=home_id or None,
            resulting_event_type=ResultingEventType.HOME_DAY if home_id else ResultingEventType.EVENT,
            auto_confirm=bool(auto_confirm),
            source_id=source_id or None,
            created_at=now,
            updated_at=now,
        )
        self.state_store.insert_rule(rule)
        self._audit(
            source_id=rule.source_id or "",
            entity_id=rule.id,
            action="rule_created",
            details=rule.to_dict(),
        )
        converted = self._rescan_child(child_id, trigger="rule_created")
        logger.info("Created rule %s for child %s (%d events converted)", rule.id, child_id, converted)
        return rule

    def update_rule(
        self,
        rule_id: str,
        *,
        match_type: MatchType | str | None = None,
        match_value: str | None = None,
        home_id: Any = _UNSET,
        auto_confirm: bool | None = None,
        priority: int | None = None,
    ) -> MappingRule:
        rule = self._require_rule(rule_id)
        changes: dict[str, Any] = {"updated_at": self.clock()}
        if match_type is not None:
            changes["match_type"] = self._match_type(match_type)
        if match_value is not None:
            if not match_value.strip():
                raise InvalidRule("A match value is required", detail="match_value")
            changes["match_value"] = match_value.strip()
        if home_id is not _UNSET:
            changes["home_id"] = home_id or None
            changes["resulting_event_type"] = (
                ResultingEventType.HOME_DAY if home_id else ResultingEventType.EVENT
            )
        if auto_confirm is not None:
            changes["auto_confirm"] = bool(auto_confirm)
        if priority is not None:
            changes["priority"] = int(priority)
        updated = replace(rule, **changes)
        self.state_store.update_rule(updated)
        self._audit(
            source_id=updated.source_id or "",
            entity_id=updated.id,
            action="rule_updated",
            details={"before": rule.to_dict(), "after": updated.to_dict()},
        )
        if updated.active:
            self._rescan_child(updated.child_id, trigger="rule_updated")
        return updated

    def activate_rule(self, rule_id: str) -> MappingRule:
        rule = self._require_rule(rule_id)
        if rule.active:
            return rule
        activated = replace(rule, active=True, updated_at=self.clock())
        self.state_store.update_rule(activated)
        self._audit(
            source_id=activated.source_id or "",
            entity_id=activated.id,
            action="rule_updated",
            details={"active": True},
        )
        self._rescan_child(activated.child_id, trigger="rule_activated")
        return activated

    def delete_rule(self, rule_id: str) -> None:
        rule = self._require_rule(rule_id)
        reverted = self.conversions.revert(rule_id, deactivate=True)
        self._audit(
            source_id=rule.source_id or "",
            entity_id=rule_id,
            action="rule_deactivated",
            details={"child_id": rule.child_id, "was_active": rule.active},
        )
        if reverted:
            self._audit(
                source_id=rule.source_id or "",
                entity_id=rule_id,
                action="revert",
                details={"events_reverted": reverted},
            )
        logger.info("Deactivated rule %s (%d events reverted)", rule_id, reverted)

    def list_rules(self, child_id: str, include_inactive: bool = False) -> list[MappingRule]:
        return self.state_store.list_rules(child_id, active_only=not include_inactive)

    # ------------------------------------------------------------------
    # Calendar events
    # ------------------------------------------------------------------

    def list_events(
        self,
        child_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[CalendarEvent]:
        return self.state_store.list_calendar_events(child_id, start, end)

    def confirm_home_stay(self, event_id: str) -> CalendarEvent:
        return self.conversions.confirm(event_id)

    def reject_home_stay(self, event_id: str) -> CalendarEvent:
        return self.conversions.reject(event_id)
