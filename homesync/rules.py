from __future__ import annotations

from typing import Iterable

from homesync.models import (
    ClassificationOutcome,
    ImportedEvent,
    MappingRule,
    MatchType,
    normalize_title,
)

# Lower rank wins.
MATCH_TYPE_RANK = {
    MatchType.EVENT_ID: 0,
    MatchType.TITLE_EXACT: 1,
    MatchType.TITLE_CONTAINS: 2,
}

NO_MATCH: ClassificationOutcome | None = None


def rule_matches(rule: MappingRule, event: ImportedEvent) -> bool:
    if not rule.active or rule.child_id != event.child_id:
        return False
    if rule.source_id and rule.source_id != event.source_id:
        return False
    pattern = rule.normalized_value
    if not pattern:
        return False
    if rule.match_type == MatchType.EVENT_ID:
        return pattern == event.external_event_id
    title = normalize_title(event.title)
    if rule.match_type == MatchType.TITLE_EXACT:
        return title == pattern
    return pattern in title


def precedence_key(rule: MappingRule) -> tuple:
    """Sort key placing the winning rule first.

    Match type beats priority; priority beats recency; the rule id breaks
    whatever ties remain so the ordering is total.
    """
    created = rule.created_at.timestamp() if rule.created_at else 0.0
    return (
        MATCH_TYPE_RANK[rule.match_type],
        -int(rule.priority),
        -created,
        _descending_text(rule.id),
    )


def _descending_text(value: str) -> tuple[int, ...]:
    return tuple(-ord(ch) for ch in value) + (1,)


def winning_rule(event: ImportedEvent, rules: Iterable[MappingRule]) -> MappingRule | None:
    matching = [rule for rule in rules if rule_matches(rule, event)]
    if not matching:
        return None
    return min(matching, key=precedence_key)


def classify(event: ImportedEvent, rules: Iterable[MappingRule]) -> ClassificationOutcome | None:
    rule = winning_rule(event, rules)
    if rule is None:
        return NO_MATCH
    return ClassificationOutcome(
        rule_id=rule.id,
        home_id=rule.home_id,
        resulting_event_type=rule.resulting_event_type,
        auto_confirm=rule.auto_confirm,
    )
