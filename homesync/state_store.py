from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable

from homesync.errors import InvalidLocator, ReconciliationConflict, RuleConflict, SourceNotFound
from homesync.models import (
    CalendarEvent,
    CalendarSource,
    ConfirmationStatus,
    ImportedEvent,
    ImportedEventStatus,
    MappingRule,
    MatchType,
    Provider,
    RawEvent,
    ResultingEventType,
    SyncStatus,
    parse_iso_datetime,
)

if TYPE_CHECKING:
    from homesync.reconciler import EventDiff, ReconcileOutcome


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ts(value: datetime | None) -> str | None:
    # Fixed-width UTC text so range filters can compare columns lexically.
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _row_to_source(row: sqlite3.Row) -> CalendarSource:
    return CalendarSource(
        id=row["id"],
        provider=Provider(row["provider"]),
        child_id=row["child_id"],
        credential_ref=row["credential_ref"],
        external_identity=row["external_identity"],
        display_name=row["display_name"],
        active=bool(row["active"]),
        last_synced_at=parse_iso_datetime(row["last_synced_at"]),
        last_sync_status=SyncStatus(row["last_sync_status"]),
        last_sync_error=row["last_sync_error"],
        refresh_interval_minutes=int(row["refresh_interval_minutes"]),
        etag=row["etag"],
        last_modified=row["last_modified"],
        created_at=parse_iso_datetime(row["created_at"]),
        updated_at=parse_iso_datetime(row["updated_at"]),
    )


def _row_to_imported(row: sqlite3.Row) -> ImportedEvent:
    return ImportedEvent(
        id=row["id"],
        source_id=row["source_id"],
        child_id=row["child_id"],
        external_event_id=row["external_event_id"],
        title=row["title"],
        start_at=parse_iso_datetime(row["start_at"]),
        end_at=parse_iso_datetime(row["end_at"]),
        all_day=bool(row["all_day"]),
        recurrence_key=row["recurrence_key"],
        recurrence_rule=row["recurrence_rule"],
        content_hash=row["content_hash"],
        status=ImportedEventStatus(row["status"]),
        candidate_ignored=bool(row["candidate_ignored"]),
        created_at=parse_iso_datetime(row["created_at"]),
        updated_at=parse_iso_datetime(row["updated_at"]),
        removed_at=parse_iso_datetime(row["removed_at"]),
    )


def _row_to_rule(row: sqlite3.Row) -> MappingRule:
    return MappingRule(
        id=row["id"],
        child_id=row["child_id"],
        match_type=MatchType(row["match_type"]),
        match_value=row["match_value"],
        priority=int(row["priority"]),
        home_id=row["home_id"],
        resulting_event_type=ResultingEventType(row["resulting_event_type"]),
        auto_confirm=bool(row["auto_confirm"]),
        active=bool(row["active"]),
        source_id=row["source_id"],
        created_at=parse_iso_datetime(row["created_at"]),
        updated_at=parse_iso_datetime(row["updated_at"]),
    )


def _row_to_calendar_event(row: sqlite3.Row) -> CalendarEvent:
    return CalendarEvent(
        id=row["id"],
        child_id=row["child_id"],
        origin_imported_event_id=row["origin_imported_event_id"],
        source_id=row["source_id"],
        title=row["title"],
        start_at=parse_iso_datetime(row["start_at"]),
        end_at=parse_iso_datetime(row["end_at"]),
        all_day=bool(row["all_day"]),
        home_id=row["home_id"],
        confirmation_status=ConfirmationStatus(row["confirmation_status"]),
        event_type=ResultingEventType(row["event_type"]),
        mapping_rule_id=row["mapping_rule_id"],
        confirmed_at=parse_iso_datetime(row["confirmed_at"]),
        removed=bool(row["removed"]),
        updated_at=parse_iso_datetime(row["updated_at"]),
    )


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS calendar_sources (
            id TEXT PRIMARY KEY,
            provider TEXT NOT NULL,
            child_id TEXT NOT NULL,
            credential_ref TEXT NOT NULL,
            external_identity TEXT NOT NULL,
            display_name TEXT NOT NULL,
            active INTEGER NOT NULL,
            last_synced_at TEXT,
            last_sync_status TEXT NOT NULL,
            last_sync_error TEXT,
            refresh_interval_minutes INTEGER NOT NULL,
            etag TEXT,
            last_modified TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS ux_calendar_sources_active_identity
            ON calendar_sources(provider, external_identity) WHERE active = 1;

        CREATE TABLE IF NOT EXISTS imported_events (
            id TEXT PRIMARY KEY,
            source_id TEXT NOT NULL,
            child_id TEXT NOT NULL,
            external_event_id TEXT NOT NULL,
            title TEXT NOT NULL,
            start_at TEXT NOT NULL,
            end_at TEXT NOT NULL,
            all_day INTEGER NOT NULL,
            recurrence_key TEXT,
            recurrence_rule TEXT,
            content_hash TEXT NOT NULL,
            status TEXT NOT NULL,
            candidate_ignored INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            removed_at TEXT,
            UNIQUE (source_id, external_event_id)
        );

        CREATE INDEX IF NOT EXISTS ix_imported_events_child
            ON imported_events(child_id, status);

        CREATE TABLE IF NOT EXISTS mapping_rules (
            id TEXT PRIMARY KEY,
            child_id TEXT NOT NULL,
            match_type TEXT NOT NULL,
            match_value TEXT NOT NULL,
            normalized_value TEXT NOT NULL,
            priority INTEGER NOT NULL,
            home_id TEXT,
            resulting_event_type TEXT NOT NULL,
            auto_confirm INTEGER NOT NULL,
            active INTEGER NOT NULL,
            source_id TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS ux_mapping_rules_active_pattern
            ON mapping_rules(child_id, match_type, normalized_value) WHERE active = 1;

        CREATE TABLE IF NOT EXISTS calendar_events (
            id TEXT PRIMARY KEY,
            child_id TEXT NOT NULL,
            origin_imported_event_id TEXT NOT NULL UNIQUE,
            source_id TEXT NOT NULL,
            title TEXT NOT NULL,
            start_at TEXT NOT NULL,
            end_at TEXT NOT NULL,
            all_day INTEGER NOT NULL,
            home_id TEXT,
            confirmation_status TEXT NOT NULL,
            event_type TEXT NOT NULL,
            mapping_rule_id TEXT,
            confirmed_at TEXT,
            removed INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS ix_calendar_events_child_range
            ON calendar_events(child_id, start_at);
        CREATE INDEX IF NOT EXISTS ix_calendar_events_rule
            ON calendar_events(mapping_rule_id);

        CREATE TABLE IF NOT EXISTS sync_leases (
            source_id TEXT PRIMARY KEY,
            holder TEXT NOT NULL,
            expires_at REAL NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            source_id TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            created INTEGER NOT NULL,
            updated INTEGER NOT NULL,
            deleted INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            source_id TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # ------------------------------------------------------------------
    # Calendar sources
    # ------------------------------------------------------------------

    def insert_source(self, source: CalendarSource) -> CalendarSource:
        with self._lock:
            with self._connect() as conn:
                try:
                    conn.execute(
                        """
                        INSERT INTO calendar_sources(
                            id, provider, child_id, credential_ref, external_identity, display_name,
                            active, last_synced_at, last_sync_status, last_sync_error,
                            refresh_interval_minutes, etag, last_modified, created_at, updated_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            source.id,
                            source.provider.value,
                            source.child_id,
                            source.credential_ref,
                            source.external_identity,
                            source.display_name,
                            int(source.active),
                            _ts(source.last_synced_at),
                            source.last_sync_status.value,
                            source.last_sync_error,
                            int(source.refresh_interval_minutes),
                            source.etag,
                            source.last_modified,
                            _ts(source.created_at),
                            _ts(source.updated_at),
                        ),
                    )
                except sqlite3.IntegrityError as exc:
                    raise InvalidLocator("This calendar is already connected", detail=str(exc)) from exc
                conn.commit()
        return source

    def get_source(self, source_id: str) -> CalendarSource | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM calendar_sources WHERE id = ?", (source_id,)).fetchone()
        return _row_to_source(row) if row else None

    def list_sources(self, child_id: str | None = None, active_only: bool = False) -> list[CalendarSource]:
        clauses: list[str] = []
        params: list[Any] = []
        if child_id is not None:
            clauses.append("child_id = ?")
            params.append(child_id)
        if active_only:
            clauses.append("active = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT * FROM calendar_sources {where} ORDER BY created_at, id",
                    params,
                ).fetchall()
        return [_row_to_source(row) for row in rows]

    def update_source_sync(
        self,
        source_id: str,
        *,
        status: SyncStatus,
        error: str | None,
        now: datetime,
        synced: bool = False,
        etag: str | None = None,
        last_modified: str | None = None,
    ) -> None:
        """Record a sync outcome; fetch state and ``last_synced_at`` only move on success."""
        with self._lock:
            with self._connect() as conn:
                if synced:
                    conn.execute(
                        """
                        UPDATE calendar_sources
                        SET last_sync_status = ?, last_sync_error = ?, last_synced_at = ?,
                            etag = ?, last_modified = ?, updated_at = ?
                        WHERE id = ?
                        """,
                        (status.value, error, _ts(now), etag, last_modified, _ts(now), source_id),
                    )
                else:
                    conn.execute(
                        """
                        UPDATE calendar_sources
                        SET last_sync_status = ?, last_sync_error = ?, updated_at = ?
                        WHERE id = ?
                        """,
                        (status.value, error, _ts(now), source_id),
                    )
                conn.commit()

    def replace_source_locator(
        self,
        source_id: str,
        *,
        credential_ref: str,
        external_identity: str,
        now: datetime,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                try:
                    conn.execute(
                        """
                        UPDATE calendar_sources
                        SET credential_ref = ?, external_identity = ?, etag = NULL, last_modified = NULL,
                            last_sync_error = NULL,
                            last_sync_status = CASE WHEN last_sync_status = 'error' THEN 'never'
                                                    ELSE last_sync_status END,
                            updated_at = ?
                        WHERE id = ?
                        """,
                        (credential_ref, external_identity, _ts(now), source_id),
                    )
                except sqlite3.IntegrityError as exc:
                    raise InvalidLocator("This calendar is already connected", detail=str(exc)) from exc
                conn.commit()

    def deactivate_source(self, source_id: str, now: datetime) -> int:
        """Soft-disable a source with its imported and derived events; returns removed events."""
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE calendar_sources SET active = 0, updated_at = ? WHERE id = ?",
                    (_ts(now), source_id),
                )
                cursor = conn.execute(
                    """
                    UPDATE imported_events
                    SET status = 'removed', removed_at = ?, updated_at = ?
                    WHERE source_id = ? AND status = 'active'
                    """,
                    (_ts(now), _ts(now), source_id),
                )
                conn.execute(
                    "UPDATE calendar_events SET removed = 1, updated_at = ? WHERE source_id = ? AND removed = 0",
                    (_ts(now), source_id),
                )
                conn.commit()
                return int(cursor.rowcount)

    # ------------------------------------------------------------------
    # Imported events
    # ------------------------------------------------------------------

    def _reset_calendar_event(self, conn: sqlite3.Connection, event: ImportedEvent, now: datetime) -> None:
        conn.execute(
            """
            INSERT INTO calendar_events(
                id, child_id, origin_imported_event_id, source_id, title, start_at, end_at, all_day,
                home_id, confirmation_status, event_type, mapping_rule_id, confirmed_at, removed, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, 'none', 'event', NULL, NULL, 0, ?)
            ON CONFLICT(origin_imported_event_id) DO UPDATE SET
                title = excluded.title,
                start_at = excluded.start_at,
                end_at = excluded.end_at,
                all_day = excluded.all_day,
                home_id = NULL,
                confirmation_status = 'none',
                event_type = 'event',
                mapping_rule_id = NULL,
                confirmed_at = NULL,
                removed = 0,
                updated_at = excluded.updated_at
            """,
            (
                uuid.uuid4().hex,
                event.child_id,
                event.id,
                event.source_id,
                event.title,
                _ts(event.start_at),
                _ts(event.end_at),
                int(event.all_day),
                _ts(now),
            ),
        )

    def _insert_imported(
        self,
        conn: sqlite3.Connection,
        source: CalendarSource,
        raw: RawEvent,
        now: datetime,
    ) -> ImportedEvent:
        event = ImportedEvent(
            id=uuid.uuid4().hex,
            source_id=source.id,
            child_id=source.child_id,
            external_event_id=raw.external_id,
            title=raw.title,
            start_at=raw.start_at,
            end_at=raw.end_at,
            all_day=raw.all_day,
            recurrence_key=raw.recurrence_key,
            recurrence_rule=raw.recurrence_rule,
            content_hash=raw.content_hash,
            created_at=now,
            updated_at=now,
        )
        conn.execute(
            """
            INSERT INTO imported_events(
                id, source_id, child_id, external_event_id, title, start_at, end_at, all_day,
                recurrence_key, recurrence_rule, content_hash, status, candidate_ignored,
                created_at, updated_at, removed_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', 0, ?, ?, NULL)
            """,
            (
                event.id,
                event.source_id,
                event.child_id,
                event.external_event_id,
                event.title,
                _ts(event.start_at),
                _ts(event.end_at),
                int(event.all_day),
                event.recurrence_key,
                event.recurrence_rule,
                event.content_hash,
                _ts(now),
                _ts(now),
            ),
        )
        self._reset_calendar_event(conn, event, now)
        return event

    def _rewrite_imported(
        self,
        conn: sqlite3.Connection,
        local: ImportedEvent,
        raw: RawEvent,
        now: datetime,
    ) -> ImportedEvent:
        event = ImportedEvent(
            id=local.id,
            source_id=local.source_id,
            child_id=local.child_id,
            external_event_id=local.external_event_id,
            title=raw.title,
            start_at=raw.start_at,
            end_at=raw.end_at,
            all_day=raw.all_day,
            recurrence_key=raw.recurrence_key,
            recurrence_rule=raw.recurrence_rule,
            content_hash=raw.content_hash,
            candidate_ignored=local.candidate_ignored,
            created_at=local.created_at,
            updated_at=now,
        )
        conn.execute(
            """
            UPDATE imported_events
            SET title = ?, start_at = ?, end_at = ?, all_day = ?, recurrence_key = ?, recurrence_rule = ?,
                content_hash = ?, status = 'active', removed_at = NULL, updated_at = ?
            WHERE id = ?
            """,
            (
                event.title,
                _ts(event.start_at),
                _ts(event.end_at),
                int(event.all_day),
                event.recurrence_key,
                event.recurrence_rule,
                event.content_hash,
                _ts(now),
                event.id,
            ),
        )
        self._reset_calendar_event(conn, event, now)
        return event

    def apply_source_batch(
        self,
        source: CalendarSource,
        raw_events: list[RawEvent],
        *,
        differ: Callable[[Iterable[ImportedEvent], Iterable[RawEvent]], "EventDiff"],
        now: datetime,
    ) -> "ReconcileOutcome":
        """Read, diff and write one source's events inside a single transaction."""
        from homesync.reconciler import ReconcileOutcome

        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                state = conn.execute(
                    "SELECT active FROM calendar_sources WHERE id = ?",
                    (source.id,),
                ).fetchone()
                if state is None or not state["active"]:
                    # Disconnected while the feed was being fetched.
                    raise SourceNotFound("Calendar is disconnected", detail=source.id)
                try:
                    rows = conn.execute(
                        "SELECT * FROM imported_events WHERE source_id = ?",
                        (source.id,),
                    ).fetchall()
                    diff = differ([_row_to_imported(row) for row in rows], raw_events)
                    changed: list[ImportedEvent] = []
                    for raw in diff.creates:
                        changed.append(self._insert_imported(conn, source, raw, now))
                    for local, raw in diff.reactivations:
                        changed.append(self._rewrite_imported(conn, local, raw, now))
                    for local, raw in diff.updates:
                        changed.append(self._rewrite_imported(conn, local, raw, now))
                    for local in diff.deletes:
                        conn.execute(
                            """
                            UPDATE imported_events
                            SET status = 'removed', removed_at = ?, updated_at = ?
                            WHERE id = ?
                            """,
                            (_ts(now), _ts(now), local.id),
                        )
                        conn.execute(
                            """
                            UPDATE calendar_events
                            SET removed = 1, updated_at = ?
                            WHERE origin_imported_event_id = ?
                            """,
                            (_ts(now), local.id),
                        )
                except sqlite3.IntegrityError as exc:
                    # Leaving the connection context with an exception rolls the batch back.
                    raise ReconciliationConflict(detail=str(exc)) from exc
                conn.commit()
        return ReconcileOutcome(counts=diff.counts, changed=changed)

    def get_imported_event(self, event_id: str) -> ImportedEvent | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM imported_events WHERE id = ?", (event_id,)).fetchone()
        return _row_to_imported(row) if row else None

    def list_imported_events(
        self,
        *,
        child_id: str | None = None,
        source_id: str | None = None,
        include_removed: bool = False,
    ) -> list[ImportedEvent]:
        clauses: list[str] = []
        params: list[Any] = []
        if child_id is not None:
            clauses.append("child_id = ?")
            params.append(child_id)
        if source_id is not None:
            clauses.append("source_id = ?")
            params.append(source_id)
        if not include_removed:
            clauses.append("status = 'active'")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT * FROM imported_events {where} ORDER BY start_at, id",
                    params,
                ).fetchall()
        return [_row_to_imported(row) for row in rows]

    def list_unmapped_imported_events(self, child_id: str) -> list[ImportedEvent]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT ie.*
                    FROM imported_events ie
                    JOIN calendar_sources cs ON cs.id = ie.source_id AND cs.active = 1
                    LEFT JOIN calendar_events ce ON ce.origin_imported_event_id = ie.id
                    WHERE ie.child_id = ?
                      AND ie.status = 'active'
                      AND ie.candidate_ignored = 0
                      AND (ce.id IS NULL OR ce.mapping_rule_id IS NULL)
                    ORDER BY ie.start_at, ie.id
                    """,
                    (child_id,),
                ).fetchall()
        return [_row_to_imported(row) for row in rows]

    def list_unlinked_imported_events(self, source_id: str) -> list[ImportedEvent]:
        """Active events of an active source whose derived row carries no rule."""
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT ie.*
                    FROM imported_events ie
                    JOIN calendar_sources cs ON cs.id = ie.source_id AND cs.active = 1
                    LEFT JOIN calendar_events ce ON ce.origin_imported_event_id = ie.id
                    WHERE ie.source_id = ?
                      AND ie.status = 'active'
                      AND (ce.id IS NULL OR ce.mapping_rule_id IS NULL)
                    ORDER BY ie.start_at, ie.id
                    """,
                    (source_id,),
                ).fetchall()
        return [_row_to_imported(row) for row in rows]

    def set_candidate_ignored(self, event_ids: Iterable[str], ignored: bool, now: datetime) -> int:
        ids = [str(item) for item in event_ids if str(item).strip()]
        if not ids:
            return 0
        placeholders = ", ".join("?" for _ in ids)
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"""
                    UPDATE imported_events
                    SET candidate_ignored = ?, updated_at = ?
                    WHERE id IN ({placeholders})
                    """,
                    [int(ignored), _ts(now), *ids],
                )
                conn.commit()
                return int(cursor.rowcount)

    # ------------------------------------------------------------------
    # Mapping rules
    # ------------------------------------------------------------------

    def _rule_params(self, rule: MappingRule) -> tuple[Any, ...]:
        return (
            rule.child_id,
            rule.match_type.value,
            rule.match_value,
            rule.normalized_value,
            int(rule.priority),
            rule.home_id,
            rule.resulting_event_type.value,
            int(rule.auto_confirm),
            int(rule.active),
            rule.source_id,
            _ts(rule.created_at),
            _ts(rule.updated_at),
        )

    def insert_rule(self, rule: MappingRule) -> MappingRule:
        with self._lock:
            with self._connect() as conn:
                try:
                    conn.execute(
                        """
                        INSERT INTO mapping_rules(
                            child_id, match_type, match_value, normalized_value, priority, home_id,
                            resulting_event_type, auto_confirm, active, source_id, created_at, updated_at, id
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (*self._rule_params(rule), rule.id),
                    )
                except sqlite3.IntegrityError as exc:
                    raise RuleConflict(detail=str(exc)) from exc
                conn.commit()
        return rule

    def update_rule(self, rule: MappingRule) -> MappingRule:
        with self._lock:
            with self._connect() as conn:
                try:
                    conn.execute(
                        """
                        UPDATE mapping_rules
                        SET child_id = ?, match_type = ?, match_value = ?, normalized_value = ?, priority = ?,
                            home_id = ?, resulting_event_type = ?, auto_confirm = ?, active = ?, source_id = ?,
                            created_at = ?, updated_at = ?
                        WHERE id = ?
                        """,
                        (*self._rule_params(rule), rule.id),
                    )
                except sqlite3.IntegrityError as exc:
                    raise RuleConflict(detail=str(exc)) from exc
                conn.commit()
        return rule

    def get_rule(self, rule_id: str) -> MappingRule | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM mapping_rules WHERE id = ?", (rule_id,)).fetchone()
        return _row_to_rule(row) if row else None

    def list_rules(self, child_id: str | None = None, active_only: bool = False) -> list[MappingRule]:
        clauses: list[str] = []
        params: list[Any] = []
        if child_id is not None:
            clauses.append("child_id = ?")
            params.append(child_id)
        if active_only:
            clauses.append("active = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT * FROM mapping_rules {where} ORDER BY created_at, id",
                    params,
                ).fetchall()
        return [_row_to_rule(row) for row in rows]

    def active_title_patterns(self, exclude_child_id: str) -> list[str]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT DISTINCT normalized_value
                    FROM mapping_rules
                    WHERE active = 1 AND child_id != ? AND match_type IN ('title_exact', 'title_contains')
                    """,
                    (exclude_child_id,),
                ).fetchall()
        return [str(row["normalized_value"]) for row in rows if row["normalized_value"]]

    def _revert_rule(self, conn: sqlite3.Connection, rule_id: str, now: datetime) -> int:
        cursor = conn.execute(
            """
            UPDATE calendar_events
            SET home_id = NULL, confirmation_status = 'none', event_type = 'event',
                mapping_rule_id = NULL, confirmed_at = NULL, updated_at = ?
            WHERE mapping_rule_id = ?
            """,
            (_ts(now), rule_id),
        )
        return int(cursor.rowcount)

    def revert_rule_conversions(self, rule_id: str, now: datetime) -> int:
        with self._lock:
            with self._connect() as conn:
                changed = self._revert_rule(conn, rule_id, now)
                conn.commit()
                return changed

    def deactivate_rule(self, rule_id: str, now: datetime) -> int:
        """Deactivate a rule and revert everything attributed to it in one transaction."""
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE mapping_rules SET active = 0, updated_at = ? WHERE id = ?",
                    (_ts(now), rule_id),
                )
                changed = self._revert_rule(conn, rule_id, now)
                conn.commit()
                return changed

    # ------------------------------------------------------------------
    # Calendar events
    # ------------------------------------------------------------------

    def get_calendar_event(self, event_id: str) -> CalendarEvent | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM calendar_events WHERE id = ?", (event_id,)).fetchone()
        return _row_to_calendar_event(row) if row else None

    def get_calendar_event_for_origin(self, imported_event_id: str) -> CalendarEvent | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM calendar_events WHERE origin_imported_event_id = ?",
                    (imported_event_id,),
                ).fetchone()
        return _row_to_calendar_event(row) if row else None

    def save_calendar_event(self, event: CalendarEvent) -> bool:
        """Upsert a derived event; returns False when the write was refused.

        A live row is refused when its origin was removed or disconnected, or
        when the rule it is attributed to is no longer active. Both checks run
        in the write transaction, so a rule deleted or a source disconnected
        after the caller read its state wins.
        """
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                if not event.removed:
                    origin = conn.execute(
                        """
                        SELECT ie.status, cs.active
                        FROM imported_events ie
                        JOIN calendar_sources cs ON cs.id = ie.source_id
                        WHERE ie.id = ?
                        """,
                        (event.origin_imported_event_id,),
                    ).fetchone()
                    if origin is None or origin["status"] != "active" or not origin["active"]:
                        return False
                if event.mapping_rule_id is not None:
                    rule = conn.execute(
                        "SELECT active FROM mapping_rules WHERE id = ?",
                        (event.mapping_rule_id,),
                    ).fetchone()
                    if rule is None or not rule["active"]:
                        return False
                conn.execute(
                    """
                    INSERT INTO calendar_events(
                        id, child_id, origin_imported_event_id, source_id, title, start_at, end_at, all_day,
                        home_id, confirmation_status, event_type, mapping_rule_id, confirmed_at, removed,
                        updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        title = excluded.title,
                        start_at = excluded.start_at,
                        end_at = excluded.end_at,
                        all_day = excluded.all_day,
                        home_id = excluded.home_id,
                        confirmation_status = excluded.confirmation_status,
                        event_type = excluded.event_type,
                        mapping_rule_id = excluded.mapping_rule_id,
                        confirmed_at = excluded.confirmed_at,
                        removed = excluded.removed,
                        updated_at = excluded.updated_at
                    """,
                    (
                        event.id,
                        event.child_id,
                        event.origin_imported_event_id,
                        event.source_id,
                        event.title,
                        _ts(event.start_at),
                        _ts(event.end_at),
                        int(event.all_day),
                        event.home_id,
                        event.confirmation_status.value,
                        event.event_type.value,
                        event.mapping_rule_id,
                        _ts(event.confirmed_at),
                        int(event.removed),
                        _ts(event.updated_at),
                    ),
                )
                conn.commit()
        return True

    def list_calendar_events(
        self,
        child_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[CalendarEvent]:
        clauses = ["child_id = ?", "removed = 0", "confirmation_status != 'rejected'"]
        params: list[Any] = [child_id]
        if end is not None:
            clauses.append("start_at < ?")
            params.append(_ts(end))
        if start is not None:
            clauses.append("end_at > ?")
            params.append(_ts(start))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT * FROM calendar_events WHERE {' AND '.join(clauses)} ORDER BY start_at, id",
                    params,
                ).fetchall()
        return [_row_to_calendar_event(row) for row in rows]

    # ------------------------------------------------------------------
    # Per-source leases
    # ------------------------------------------------------------------

    def acquire_lease(self, source_id: str, holder: str, *, ttl_seconds: int, now: datetime) -> bool:
        now_ts = now.timestamp()
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_leases(source_id, holder, expires_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(source_id) DO UPDATE SET
                        holder = excluded.holder,
                        expires_at = excluded.expires_at
                    WHERE sync_leases.expires_at <= ?
                    """,
                    (source_id, holder, now_ts + max(1, ttl_seconds), now_ts),
                )
                conn.commit()
                return cursor.rowcount == 1

    def release_lease(self, source_id: str, holder: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "DELETE FROM sync_leases WHERE source_id = ? AND holder = ?",
                    (source_id, holder),
                )
                conn.commit()

    # ------------------------------------------------------------------
    # Operational trail
    # ------------------------------------------------------------------

    def record_sync_run(
        self,
        *,
        source_id: str,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        created: int = 0,
        updated: int = 0,
        deleted: int = 0,
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(run_at, source_id, trigger, status, message, duration_ms,
                                          created, updated, deleted)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (_utc_now(), source_id, trigger, status, message, duration_ms, created, updated, deleted),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def recent_sync_runs(self, limit: int = 20, source_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if source_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, run_at, source_id, trigger, status, message, duration_ms,
                               created, updated, deleted
                        FROM sync_runs
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, run_at, source_id, trigger, status, message, duration_ms,
                               created, updated, deleted
                        FROM sync_runs
                        WHERE source_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (source_id, max(1, limit)),
                    ).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        source_id: str,
        entity_id: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, source_id, entity_id, action, details_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (run_id, _utc_now(), source_id, entity_id, action, json.dumps(details, ensure_ascii=False)),
                )
                conn.commit()

    def recent_audit_events(
        self,
        limit: int = 100,
        run_id: int | None = None,
        action: str | None = None,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if run_id is not None:
            clauses.append("run_id = ?")
            params.append(int(run_id))
        if action is not None:
            clauses.append("action = ?")
            params.append(action)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT id, run_id, created_at, source_id, entity_id, action, details_json
                    FROM audit_events
                    {where}
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    [*params, max(1, limit)],
                ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output
