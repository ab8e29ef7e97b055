from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any

from dateutil.rrule import rrulestr
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from homesync.errors import SAFE_MESSAGES, ProviderUnavailable
from homesync.models import RawEvent, date_to_datetime, serialize_datetime

logger = logging.getLogger(__name__)

UNTITLED = "Untitled Event"


def _is_date_only(value: Any) -> bool:
    return isinstance(value, date) and not isinstance(value, datetime)


def _decoded(vevent: ICEvent, name: str) -> Any:
    if vevent.get(name) is None:
        return None
    return vevent.decoded(name)


def _text(vevent: ICEvent, name: str) -> str:
    value = vevent.get(name)
    if value is None:
        return ""
    return str(value).strip()


def _rrule_text(vevent: ICEvent) -> str | None:
    value = vevent.get("RRULE")
    if value is None:
        return None
    if isinstance(value, list):
        value = value[0] if value else None
        if value is None:
            return None
    return value.to_ical().decode("utf-8")


def _exdates(vevent: ICEvent) -> list[Any]:
    raw = vevent.get("EXDATE")
    if raw is None:
        return []
    entries = raw if isinstance(raw, list) else [raw]
    output: list[Any] = []
    for entry in entries:
        for item in getattr(entry, "dts", []):
            output.append(item.dt)
    return output


def _occurrence_key(value: datetime) -> str:
    return serialize_datetime(value) or ""


class _Master:
    def __init__(self, vevent: ICEvent) -> None:
        self.uid = _text(vevent, "UID")
        self.title = _text(vevent, "SUMMARY") or UNTITLED
        self.description = _text(vevent, "DESCRIPTION") or None
        self.location = _text(vevent, "LOCATION") or None
        self.rrule = _rrule_text(vevent)
        self.exdates = _exdates(vevent)

        dtstart = _decoded(vevent, "DTSTART")
        if dtstart is None:
            raise ValueError("VEVENT without DTSTART")
        dtend = _decoded(vevent, "DTEND")
        duration = _decoded(vevent, "DURATION")

        self.all_day = _is_date_only(dtstart)
        self.raw_start = dtstart
        if dtend is not None:
            self.all_day = self.all_day and _is_date_only(dtend)
            length = date_to_datetime(dtend) - date_to_datetime(dtstart)
        elif isinstance(duration, timedelta):
            length = duration
        elif self.all_day:
            length = timedelta(days=1)
        else:
            length = timedelta(hours=1)
        if length <= timedelta(0):
            length = timedelta(days=1) if self.all_day else timedelta(hours=1)
        self.length = length

    @property
    def start(self) -> datetime:
        return date_to_datetime(self.raw_start)

    def as_raw(self, start: datetime, external_id: str, recurrence_key: str | None) -> RawEvent:
        return RawEvent(
            external_id=external_id,
            title=self.title,
            start_at=start,
            end_at=start + self.length,
            all_day=self.all_day,
            recurrence_key=recurrence_key,
            recurrence_rule=self.rrule,
            description=self.description,
            location=self.location,
        )


def _expand(
    master: _Master,
    overrides: dict[str, RawEvent],
    window_start: datetime,
    window_end: datetime,
    max_occurrences: int,
) -> list[RawEvent]:
    if master.all_day:
        # Date-only series expand on naive midnights and are pinned to UTC afterwards.
        dtstart = datetime.combine(master.raw_start, datetime.min.time())
        lower = window_start.astimezone(timezone.utc).replace(tzinfo=None)
        upper = window_end.astimezone(timezone.utc).replace(tzinfo=None)
    else:
        dtstart = master.start
        lower, upper = window_start, window_end

    try:
        ruleset = rrulestr(master.rrule, dtstart=dtstart, forceset=True)
        for exdate in master.exdates:
            excluded = date_to_datetime(exdate)
            if master.all_day:
                excluded = excluded.astimezone(timezone.utc).replace(tzinfo=None)
            ruleset.exdate(excluded)
        occurrences = ruleset.xafter(lower, count=max_occurrences + 1, inc=True)
        starts: list[datetime] = []
        for occurrence in occurrences:
            if occurrence > upper:
                break
            starts.append(occurrence)
    except (ValueError, TypeError) as exc:
        # Keep the first occurrence under the usual id scheme when the rule is unusable.
        logger.warning("Could not expand RRULE for %s: %s", master.uid, exc)
        if not window_start <= master.start <= window_end:
            return []
        return [master.as_raw(master.start, f"{master.uid}_{_occurrence_key(master.start)}", master.uid)]

    if len(starts) > max_occurrences:
        raise ProviderUnavailable(SAFE_MESSAGES["too_many_events"], detail=f"series {master.uid}")

    events: list[RawEvent] = []
    for occurrence in starts:
        start = occurrence.replace(tzinfo=timezone.utc) if occurrence.tzinfo is None else occurrence
        external_id = f"{master.uid}_{_occurrence_key(start)}"
        override = overrides.get(external_id)
        events.append(override or master.as_raw(start, external_id, master.uid))
    return events


def parse_ics(
    content: str | bytes,
    *,
    window_start: datetime,
    window_end: datetime,
    max_occurrences: int = 2000,
) -> list[RawEvent]:
    """Parse an iCalendar feed into raw events.

    Recurring masters are expanded inside ``[window_start, window_end]``; each
    occurrence gets ``<UID>_<ISO start>`` as its id and the master UID as its
    recurrence key. ``RECURRENCE-ID`` overrides replace the generated
    occurrence they point at. A series with no occurrence in the window
    contributes nothing.
    """
    try:
        calendar_obj = ICalendar.from_ical(content)
    except (ValueError, IndexError, KeyError) as exc:
        raise ProviderUnavailable(SAFE_MESSAGES["invalid_format"], detail=str(exc)) from exc

    masters: list[_Master] = []
    overrides: dict[str, RawEvent] = {}
    for component in calendar_obj.walk("VEVENT"):
        try:
            master = _Master(component)
        except (ValueError, TypeError, KeyError) as exc:
            logger.debug("Skipping malformed VEVENT: %s", exc)
            continue
        if not master.uid:
            logger.debug("Skipping VEVENT without UID")
            continue
        recurrence_id = _decoded(component, "RECURRENCE-ID")
        if recurrence_id is not None:
            original_start = date_to_datetime(recurrence_id)
            external_id = f"{master.uid}_{_occurrence_key(original_start)}"
            overrides[external_id] = master.as_raw(master.start, external_id, master.uid)
            continue
        masters.append(master)

    events: list[RawEvent] = []
    for master in masters:
        if master.rrule:
            events.extend(_expand(master, overrides, window_start, window_end, max_occurrences))
        else:
            events.append(master.as_raw(master.start, master.uid, None))
        if len(events) > max_occurrences:
            raise ProviderUnavailable(SAFE_MESSAGES["too_many_events"], detail=f"{len(events)} events")
    return events
