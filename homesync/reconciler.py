from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Iterable

from homesync.models import (
    CalendarSource,
    ImportedEvent,
    ImportedEventStatus,
    RawEvent,
    ReconcileCounts,
    utc_now,
)

if TYPE_CHECKING:
    from homesync.state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class EventDiff:
    creates: list[RawEvent] = field(default_factory=list)
    reactivations: list[tuple[ImportedEvent, RawEvent]] = field(default_factory=list)
    updates: list[tuple[ImportedEvent, RawEvent]] = field(default_factory=list)
    deletes: list[ImportedEvent] = field(default_factory=list)

    @property
    def counts(self) -> ReconcileCounts:
        return ReconcileCounts(
            created=len(self.creates) + len(self.reactivations),
            updated=len(self.updates),
            deleted=len(self.deletes),
        )

    @property
    def is_empty(self) -> bool:
        return self.counts.total == 0


@dataclass
class ReconcileOutcome:
    counts: ReconcileCounts
    # Imported events that were created, reactivated or changed and need classification.
    changed: list[ImportedEvent] = field(default_factory=list)


def dedupe_events(raw_events: Iterable[RawEvent]) -> dict[str, RawEvent]:
    """Index a fetch by external id; a later duplicate replaces an earlier one."""
    output: dict[str, RawEvent] = {}
    for raw in raw_events:
        if not raw.external_id:
            continue
        output[raw.external_id] = raw
    return output


def diff_events(existing: Iterable[ImportedEvent], incoming: Iterable[RawEvent]) -> EventDiff:
    local_by_id = {event.external_event_id: event for event in existing}
    remote_by_id = dedupe_events(incoming)

    diff = EventDiff()
    for external_id, raw in remote_by_id.items():
        local = local_by_id.get(external_id)
        if local is None:
            diff.creates.append(raw)
        elif local.status == ImportedEventStatus.REMOVED:
            diff.reactivations.append((local, raw))
        elif local.content_hash != raw.content_hash:
            diff.updates.append((local, raw))

    for external_id, local in local_by_id.items():
        if local.status == ImportedEventStatus.ACTIVE and external_id not in remote_by_id:
            diff.deletes.append(local)
    return diff


class Reconciler:
    def __init__(
        self,
        state_store: "StateStore",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.state_store = state_store
        self.clock = clock

    def reconcile(self, source: CalendarSource, raw_events: Iterable[RawEvent]) -> ReconcileOutcome:
        """Apply a full fetch to the source's imported events in one transaction."""
        outcome = self.state_store.apply_source_batch(
            source,
            list(raw_events),
            differ=diff_events,
            now=self.clock(),
        )
        logger.debug(
            "Reconciled source %s: created=%d updated=%d deleted=%d",
            source.id,
            outcome.counts.created,
            outcome.counts.updated,
            outcome.counts.deleted,
        )
        return outcome
