from __future__ import annotations

import hashlib
import re
from collections import Counter
from datetime import timedelta
from typing import Iterable

from homesync.models import (
    CandidateReason,
    HomeStayCandidate,
    ImportedEvent,
    MatchType,
    normalize_title,
)

REASON_ORDER = [
    CandidateReason.ALL_DAY,
    CandidateReason.MULTI_DAY,
    CandidateReason.RECURRING,
    CandidateReason.TITLE_MATCH,
]

DAY_NAMES = {
    "MO": "Mon",
    "TU": "Tue",
    "WE": "Wed",
    "TH": "Thu",
    "FR": "Fri",
    "SA": "Sat",
    "SU": "Sun",
}

MAX_SAMPLE_IDS = 5


def describe_recurrence(rrule: str | None) -> str:
    if not rrule:
        return ""
    text = rrule.upper()
    freq_match = re.search(r"FREQ=(\w+)", text)
    if not freq_match:
        return "Recurring"
    freq = freq_match.group(1)
    byday_match = re.search(r"BYDAY=([^;]+)", text)
    days = byday_match.group(1).split(",") if byday_match else []
    if freq == "WEEKLY" and days:
        # Strip ordinal prefixes such as "1SA" or "-1SU".
        names = [DAY_NAMES.get(day.lstrip("+-0123456789"), day) for day in days]
        return "Every " + ", ".join(names)
    if freq == "DAILY":
        return "Every day"
    if freq == "WEEKLY":
        return "Every week"
    if freq == "MONTHLY":
        return "Every month"
    return "Recurring"


def candidate_key(source_id: str, title: str) -> str:
    digest = hashlib.sha1(f"{source_id}\n{normalize_title(title)}".encode("utf-8"))  # nosec B324
    return digest.hexdigest()[:16]


def _event_reasons(
    event: ImportedEvent,
    series_sizes: Counter,
    patterns: list[str],
) -> set[CandidateReason]:
    reasons: set[CandidateReason] = set()
    if event.all_day:
        reasons.add(CandidateReason.ALL_DAY)
    if event.duration >= timedelta(hours=24):
        reasons.add(CandidateReason.MULTI_DAY)
    if event.recurrence_rule or (event.recurrence_key and series_sizes[(event.source_id, event.recurrence_key)] >= 2):
        reasons.add(CandidateReason.RECURRING)
    title = normalize_title(event.title)
    if any(pattern in title for pattern in patterns):
        reasons.add(CandidateReason.TITLE_MATCH)
    return reasons


def _matches_keyword(title: str, keywords: Iterable[str]) -> bool:
    words = set(re.findall(r"\w+", title))
    for keyword in keywords:
        if " " in keyword:
            if keyword in title:
                return True
        elif keyword in words:
            return True
    return False


def detect_candidates(
    events: Iterable[ImportedEvent],
    *,
    foreign_patterns: Iterable[str] = (),
    keywords: Iterable[str] = (),
) -> list[HomeStayCandidate]:
    """Group unmapped events into home-stay suggestions.

    ``events`` must already be limited to one child's active, unmapped and
    non-ignored imported events. ``foreign_patterns`` are the normalized title
    patterns of other children's active rules; ``keywords`` are home-stay words
    that count as a title match on their own. The result is advisory only.
    """
    items = list(events)
    patterns = [normalize_title(p) for p in foreign_patterns if normalize_title(p)]
    keyword_list = [normalize_title(k) for k in keywords if normalize_title(k)]
    series_sizes: Counter = Counter(
        (event.source_id, event.recurrence_key) for event in items if event.recurrence_key
    )

    groups: dict[tuple[str, str], list[ImportedEvent]] = {}
    for event in items:
        groups.setdefault((event.source_id, normalize_title(event.title)), []).append(event)

    candidates: list[HomeStayCandidate] = []
    for (source_id, normalized), members in groups.items():
        reasons: set[CandidateReason] = set()
        for event in members:
            reasons |= _event_reasons(event, series_sizes, patterns)
        if keyword_list and _matches_keyword(normalized, keyword_list):
            reasons.add(CandidateReason.TITLE_MATCH)
        if not reasons:
            continue
        reason = next(item for item in REASON_ORDER if item in reasons)
        members.sort(key=lambda item: (item.start_at, item.id))
        rrule = next((event.recurrence_rule for event in members if event.recurrence_rule), None)
        candidates.append(
            HomeStayCandidate(
                key=candidate_key(source_id, normalized),
                source_id=source_id,
                child_id=members[0].child_id,
                title=members[0].title,
                reason=reason,
                occurrence_count=len(members),
                sample_event_ids=[event.id for event in members[:MAX_SAMPLE_IDS]],
                suggested_match_type=MatchType.TITLE_EXACT if len(members) > 1 else MatchType.EVENT_ID,
                recurrence_description=describe_recurrence(rrule) or None,
            )
        )

    candidates.sort(key=lambda item: (-item.occurrence_count, normalize_title(item.title), item.source_id))
    return candidates
