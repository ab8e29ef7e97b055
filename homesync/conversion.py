from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING, Callable

from homesync.errors import EventNotFound, InvalidTransition
from homesync.models import (
    USER_DECIDED_STATUSES,
    CalendarEvent,
    ClassificationOutcome,
    ConfirmationStatus,
    ImportedEvent,
    ResultingEventType,
    utc_now,
)

if TYPE_CHECKING:
    from homesync.state_store import StateStore

logger = logging.getLogger(__name__)


def _state(event: CalendarEvent) -> tuple:
    return (
        event.title,
        event.start_at,
        event.end_at,
        event.all_day,
        event.home_id,
        event.confirmation_status,
        event.event_type,
        event.mapping_rule_id,
        event.removed,
    )


class ConversionManager:
    def __init__(
        self,
        state_store: "StateStore",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.state_store = state_store
        self.clock = clock

    def target_for(
        self,
        event: ImportedEvent,
        existing: CalendarEvent | None,
        outcome: ClassificationOutcome | None,
        now: datetime,
    ) -> CalendarEvent:
        target = CalendarEvent(
            id=existing.id if existing else uuid.uuid4().hex,
            child_id=event.child_id,
            origin_imported_event_id=event.id,
            source_id=event.source_id,
            title=event.title,
            start_at=event.start_at,
            end_at=event.end_at,
            all_day=event.all_day,
            updated_at=now,
        )
        if outcome is None:
            return target
        target.mapping_rule_id = outcome.rule_id
        if outcome.home_id is None:
            return target

        target.home_id = outcome.home_id
        target.event_type = ResultingEventType.HOME_DAY
        same_assignment = (
            existing is not None
            and existing.mapping_rule_id == outcome.rule_id
            and existing.home_id == outcome.home_id
        )
        if same_assignment and existing.confirmation_status in USER_DECIDED_STATUSES:
            target.confirmation_status = existing.confirmation_status
            target.confirmed_at = existing.confirmed_at
        elif outcome.auto_confirm:
            target.confirmation_status = ConfirmationStatus.AUTO_CONFIRMED
            keep_timestamp = same_assignment and existing.confirmation_status == ConfirmationStatus.AUTO_CONFIRMED
            target.confirmed_at = existing.confirmed_at if keep_timestamp else now
        else:
            target.confirmation_status = ConfirmationStatus.PENDING_CONFIRMATION
        return target

    def convert(
        self,
        event: ImportedEvent,
        outcome: ClassificationOutcome | None,
    ) -> tuple[CalendarEvent, bool]:
        """Bring the event's derived CalendarEvent in line with ``outcome``.

        Returns the resulting row and whether anything was written. Re-applying
        the outcome that already produced the row is a no-op, so user
        confirmations survive a re-scan.
        """
        existing = self.state_store.get_calendar_event_for_origin(event.id)
        target = self.target_for(event, existing, outcome, self.clock())
        if existing is not None and _state(existing) == _state(target):
            return existing, False
        if not self.state_store.save_calendar_event(target):
            if outcome is not None:
                # Rule or origin changed since it was read; fall back to the plain row.
                logger.info("Conversion of %s under rule %s refused", event.id, outcome.rule_id)
                return self.convert(event, None)
            logger.info("Imported event %s was removed before conversion", event.id)
            return existing or target, False
        return target, True

    def revert(self, rule_id: str, *, deactivate: bool = False) -> int:
        """Undo every conversion attributed to ``rule_id``.

        With ``deactivate`` the rule is switched off in the same transaction,
        so no sync can convert under it once this returns.
        """
        now = self.clock()
        if deactivate:
            changed = self.state_store.deactivate_rule(rule_id, now)
        else:
            changed = self.state_store.revert_rule_conversions(rule_id, now)
        if changed:
            logger.info("Reverted %d conversions of rule %s", changed, rule_id)
        return changed

    def _decide(self, event_id: str, status: ConfirmationStatus) -> CalendarEvent:
        event = self.state_store.get_calendar_event(event_id)
        if event is None or event.removed:
            raise EventNotFound(detail=event_id)
        if event.confirmation_status != ConfirmationStatus.PENDING_CONFIRMATION:
            raise InvalidTransition(detail=f"{event_id} is {event.confirmation_status.value}")
        now = self.clock()
        decided = replace(
            event,
            confirmation_status=status,
            confirmed_at=now if status == ConfirmationStatus.CONFIRMED else None,
            updated_at=now,
        )
        if not self.state_store.save_calendar_event(decided):
            raise InvalidTransition("Event is no longer linked to an active rule", detail=event_id)
        return decided

    def confirm(self, event_id: str) -> CalendarEvent:
        return self._decide(event_id, ConfirmationStatus.CONFIRMED)

    def reject(self, event_id: str) -> CalendarEvent:
        return self._decide(event_id, ConfirmationStatus.REJECTED)
