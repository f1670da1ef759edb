"""Storage module for TAXII collection state, STIX objects and IOCs."""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from taxii_pipeline.errors import ObjectStoreError
from taxii_pipeline.models import (
    IOC,
    RelationshipRecord,
    StixObjectRecord,
    TAXIICollectionState,
    TAXIIServer,
)
from taxii_pipeline.utils import TIMESTAMP_FORMAT, format_timestamp, utcnow

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS taxii_servers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT UNIQUE NOT NULL,
        url TEXT NOT NULL,
        api_root TEXT,
        auth_type TEXT NOT NULL DEFAULT 'none',
        username TEXT,
        password TEXT,
        api_key TEXT,
        verify_ssl INTEGER NOT NULL DEFAULT 1,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS taxii_collections (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        server_id INTEGER NOT NULL,
        collection_id TEXT NOT NULL,
        title TEXT,
        description TEXT,
        can_read INTEGER NOT NULL DEFAULT 1,
        can_write INTEGER NOT NULL DEFAULT 0,
        media_types TEXT,
        is_polling_enabled INTEGER NOT NULL DEFAULT 1,
        polling_interval_minutes INTEGER NOT NULL DEFAULT 60,
        last_poll_at TEXT,
        next_poll_at TEXT,
        last_poll_status TEXT NOT NULL DEFAULT 'never',
        last_poll_error TEXT,
        objects_count INTEGER NOT NULL DEFAULT 0,
        consecutive_failures INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (server_id, collection_id),
        FOREIGN KEY (server_id) REFERENCES taxii_servers(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS stix_bundles (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        stix_id TEXT NOT NULL,
        spec_version TEXT,
        object_count INTEGER,
        relationship_count INTEGER,
        source_server_id INTEGER,
        processing_status TEXT NOT NULL DEFAULT 'processing',
        objects_stored INTEGER DEFAULT 0,
        relationships_stored INTEGER DEFAULT 0,
        raw_data TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        processed_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS stix_objects (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        stix_id TEXT UNIQUE NOT NULL,
        type TEXT NOT NULL,
        name TEXT,
        description TEXT,
        spec_version TEXT,
        created TEXT,
        modified TEXT,
        created_by_ref TEXT,
        revoked INTEGER DEFAULT 0,
        labels TEXT,
        confidence INTEGER,
        tlp_marking TEXT,
        external_references TEXT,
        pattern TEXT,
        pattern_type TEXT,
        valid_from TEXT,
        valid_until TEXT,
        kill_chain_phases TEXT,
        search_text TEXT,
        source_bundle_id TEXT,
        raw_data TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS stix_relationships (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        stix_id TEXT UNIQUE NOT NULL,
        relationship_type TEXT NOT NULL,
        source_ref TEXT NOT NULL,
        target_ref TEXT NOT NULL,
        description TEXT,
        created TEXT,
        modified TEXT,
        source_bundle_id TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS iocs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        type TEXT NOT NULL,
        value TEXT NOT NULL,
        confidence INTEGER NOT NULL,
        severity TEXT NOT NULL,
        first_seen TEXT,
        last_seen TEXT,
        valid_until TEXT,
        tags TEXT,
        description TEXT,
        source TEXT,
        source_stix_id TEXT,
        false_positive INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (type, value)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_jobs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        collection_state_id INTEGER NOT NULL,
        started_at TEXT NOT NULL,
        finished_at TEXT,
        status TEXT NOT NULL,
        objects_stored INTEGER DEFAULT 0,
        relationships_stored INTEGER DEFAULT 0,
        iocs_extracted INTEGER DEFAULT 0,
        error TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_job_statistics (
        collection_state_id INTEGER PRIMARY KEY,
        window_days INTEGER NOT NULL,
        total_runs INTEGER NOT NULL,
        succeeded INTEGER NOT NULL,
        failed INTEGER NOT NULL,
        avg_duration_seconds REAL,
        computed_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_collection_next_poll ON taxii_collections(next_poll_at)",
    "CREATE INDEX IF NOT EXISTS idx_stix_object_type ON stix_objects(type)",
    "CREATE INDEX IF NOT EXISTS idx_relationship_source ON stix_relationships(source_ref)",
    "CREATE INDEX IF NOT EXISTS idx_relationship_target ON stix_relationships(target_ref)",
    "CREATE INDEX IF NOT EXISTS idx_ioc_value ON iocs(value)",
    "CREATE INDEX IF NOT EXISTS idx_ioc_severity ON iocs(severity)",
    "CREATE INDEX IF NOT EXISTS idx_sync_job_started ON sync_jobs(started_at)",
]


def _loads(value: Optional[str], default):
    if not value:
        return default
    return json.loads(value)


class ThreatIntelDB:
    """SQLite store offering upsert-by-key for every pipeline record."""

    def __init__(self, db_path: str, timeout: float = 30.0):
        """
        Initialize database and create the schema if needed.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds a writer waits on a locked database
        """
        self.db_path = db_path
        self.timeout = timeout
        if db_path != ':memory:':
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self, key: Optional[str] = None):
        """Open a connection, commit on success, and always close it."""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise ObjectStoreError(f"Database error{f' for {key}' if key else ''}: {e}", key=key) from e
        finally:
            conn.close()

    def _init_db(self):
        with self._connect() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    # ------------------------------------------------------------------
    # TAXII servers
    # ------------------------------------------------------------------

    def upsert_server(self, server: TAXIIServer) -> int:
        """Insert or update a server by name and return its row id."""
        with self._connect(key=server.name) as conn:
            conn.execute("""
                INSERT INTO taxii_servers (
                    name, url, api_root, auth_type, username, password,
                    api_key, verify_ssl, is_active
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    url = excluded.url,
                    api_root = COALESCE(excluded.api_root, taxii_servers.api_root),
                    auth_type = excluded.auth_type,
                    username = excluded.username,
                    password = excluded.password,
                    api_key = excluded.api_key,
                    verify_ssl = excluded.verify_ssl,
                    is_active = excluded.is_active,
                    updated_at = CURRENT_TIMESTAMP
            """, (
                server.name, server.url, server.api_root, server.auth_type,
                server.username, server.password, server.api_key,
                int(server.verify_ssl), int(server.is_active),
            ))
            row = conn.execute("SELECT id FROM taxii_servers WHERE name = ?", (server.name,)).fetchone()
        server.id = row['id']
        return server.id

    def set_server_api_root(self, server_id: int, api_root: str):
        with self._connect() as conn:
            conn.execute("""
                UPDATE taxii_servers SET api_root = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
            """, (api_root, server_id))

    def set_server_active(self, server_id: int, is_active: bool):
        with self._connect() as conn:
            conn.execute("""
                UPDATE taxii_servers SET is_active = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
            """, (int(is_active), server_id))

    def get_server(self, server_id: int) -> Optional[TAXIIServer]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM taxii_servers WHERE id = ?", (server_id,)).fetchone()
        return self._row_to_server(row) if row else None

    def get_server_by_name(self, name: str) -> Optional[TAXIIServer]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM taxii_servers WHERE name = ?", (name,)).fetchone()
        return self._row_to_server(row) if row else None

    def list_servers(self) -> List[TAXIIServer]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM taxii_servers ORDER BY name").fetchall()
        return [self._row_to_server(row) for row in rows]

    @staticmethod
    def _row_to_server(row: sqlite3.Row) -> TAXIIServer:
        return TAXIIServer(
            id=row['id'],
            name=row['name'],
            url=row['url'],
            api_root=row['api_root'],
            auth_type=row['auth_type'],
            username=row['username'],
            password=row['password'],
            api_key=row['api_key'],
            verify_ssl=bool(row['verify_ssl']),
            is_active=bool(row['is_active']),
        )

    # ------------------------------------------------------------------
    # TAXII collections
    # ------------------------------------------------------------------

    def upsert_collection(self, state: TAXIICollectionState) -> int:
        """
        Insert a collection, or refresh its descriptive fields.

        Poll bookkeeping (last/next poll, counters, polling flags) is never
        touched on conflict, so re-discovery is safe.
        """
        key = f"{state.server_id}/{state.collection_id}"
        with self._connect(key=key) as conn:
            conn.execute("""
                INSERT INTO taxii_collections (
                    server_id, collection_id, title, description, can_read,
                    can_write, media_types, is_polling_enabled,
                    polling_interval_minutes
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(server_id, collection_id) DO UPDATE SET
                    title = excluded.title,
                    description = excluded.description,
                    can_read = excluded.can_read,
                    can_write = excluded.can_write,
                    media_types = excluded.media_types,
                    updated_at = CURRENT_TIMESTAMP
            """, (
                state.server_id, state.collection_id, state.title,
                state.description, int(state.can_read), int(state.can_write),
                json.dumps(state.media_types), int(state.is_polling_enabled),
                state.polling_interval_minutes,
            ))
            row = conn.execute("""
                SELECT id FROM taxii_collections WHERE server_id = ? AND collection_id = ?
            """, (state.server_id, state.collection_id)).fetchone()
        state.id = row['id']
        return state.id

    def get_collection(self, collection_state_id: int) -> Optional[TAXIICollectionState]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM taxii_collections WHERE id = ?",
                               (collection_state_id,)).fetchone()
        return self._row_to_collection(row) if row else None

    def list_collections(self, server_id: Optional[int] = None) -> List[TAXIICollectionState]:
        query = "SELECT * FROM taxii_collections"
        params = []
        if server_id is not None:
            query += " WHERE server_id = ?"
            params.append(server_id)
        query += " ORDER BY id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_collection(row) for row in rows]

    def get_due_collections(self, now: datetime, limit: int = 10) -> List[TAXIICollectionState]:
        """Collections whose next poll is unset or not in the future."""
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT c.*
                FROM taxii_collections c
                JOIN taxii_servers s ON c.server_id = s.id
                WHERE c.is_polling_enabled = 1
                  AND s.is_active = 1
                  AND (c.next_poll_at IS NULL OR c.next_poll_at <= ?)
                ORDER BY c.next_poll_at ASC, c.id ASC
                LIMIT ?
            """, (format_timestamp(now), limit)).fetchall()
        return [self._row_to_collection(row) for row in rows]

    def set_collection_polling(self, collection_state_id: int,
                               enabled: Optional[bool] = None,
                               interval_minutes: Optional[int] = None):
        with self._connect() as conn:
            conn.execute("""
                UPDATE taxii_collections
                SET is_polling_enabled = COALESCE(?, is_polling_enabled),
                    polling_interval_minutes = COALESCE(?, polling_interval_minutes),
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
            """, (None if enabled is None else int(enabled), interval_minutes, collection_state_id))

    def record_poll_success(self, collection_state_id: int, polled_at: str,
                            next_poll_at: str, objects_stored: int):
        with self._connect(key=str(collection_state_id)) as conn:
            conn.execute("""
                UPDATE taxii_collections
                SET last_poll_at = ?,
                    next_poll_at = ?,
                    last_poll_status = 'success',
                    last_poll_error = NULL,
                    objects_count = objects_count + ?,
                    consecutive_failures = 0,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
            """, (polled_at, next_poll_at, objects_stored, collection_state_id))

    def record_poll_failure(self, collection_state_id: int, error: str,
                            next_poll_at: Optional[str] = None):
        """Mark a poll as failed; next_poll_at only moves if one is given."""
        with self._connect(key=str(collection_state_id)) as conn:
            conn.execute("""
                UPDATE taxii_collections
                SET last_poll_status = 'error',
                    last_poll_error = ?,
                    next_poll_at = COALESCE(?, next_poll_at),
                    consecutive_failures = consecutive_failures + 1,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
            """, (error, next_poll_at, collection_state_id))

    @staticmethod
    def _row_to_collection(row: sqlite3.Row) -> TAXIICollectionState:
        return TAXIICollectionState(
            id=row['id'],
            server_id=row['server_id'],
            collection_id=row['collection_id'],
            title=row['title'],
            description=row['description'],
            can_read=bool(row['can_read']),
            can_write=bool(row['can_write']),
            media_types=_loads(row['media_types'], []),
            is_polling_enabled=bool(row['is_polling_enabled']),
            polling_interval_minutes=row['polling_interval_minutes'],
            last_poll_at=row['last_poll_at'],
            next_poll_at=row['next_poll_at'],
            last_poll_status=row['last_poll_status'],
            last_poll_error=row['last_poll_error'],
            objects_count=row['objects_count'],
            consecutive_failures=row['consecutive_failures'],
        )

    # ------------------------------------------------------------------
    # Bundles, objects and relationships
    # ------------------------------------------------------------------

    def insert_bundle(self, bundle: Dict[str, Any], source_server_id: Optional[int] = None) -> int:
        """Keep an audit copy of a bundle and return its row id."""
        objects = bundle.get('objects', [])
        relationships = [o for o in objects if isinstance(o, dict) and o.get('type') == 'relationship']
        with self._connect(key=bundle.get('id')) as conn:
            cursor = conn.execute("""
                INSERT INTO stix_bundles (
                    stix_id, spec_version, object_count, relationship_count,
                    source_server_id, processing_status, raw_data
                ) VALUES (?, ?, ?, ?, ?, 'processing', ?)
            """, (
                bundle.get('id'),
                bundle.get('spec_version', '2.1'),
                len(objects),
                len(relationships),
                source_server_id,
                json.dumps(bundle, default=str),
            ))
            return cursor.lastrowid

    def complete_bundle(self, bundle_row_id: int, objects_stored: int,
                        relationships_stored: int, status: str = 'completed'):
        with self._connect() as conn:
            conn.execute("""
                UPDATE stix_bundles
                SET processing_status = ?,
                    objects_stored = ?,
                    relationships_stored = ?,
                    processed_at = CURRENT_TIMESTAMP
                WHERE id = ?
            """, (status, objects_stored, relationships_stored, bundle_row_id))

    def upsert_stix_object(self, record: StixObjectRecord):
        """
        Insert or update a STIX object keyed by its STIX id.

        An update only lands when the incoming `modified` is not older than
        the stored one (last write wins on `modified`).
        """
        with self._connect(key=record.stix_id) as conn:
            conn.execute("""
                INSERT INTO stix_objects (
                    stix_id, type, name, description, spec_version, created,
                    modified, created_by_ref, revoked, labels, confidence,
                    tlp_marking, external_references, pattern, pattern_type,
                    valid_from, valid_until, kill_chain_phases, search_text,
                    source_bundle_id, raw_data
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(stix_id) DO UPDATE SET
                    type = excluded.type,
                    name = excluded.name,
                    description = excluded.description,
                    spec_version = excluded.spec_version,
                    created = excluded.created,
                    modified = excluded.modified,
                    created_by_ref = excluded.created_by_ref,
                    revoked = excluded.revoked,
                    labels = excluded.labels,
                    confidence = excluded.confidence,
                    tlp_marking = excluded.tlp_marking,
                    external_references = excluded.external_references,
                    pattern = excluded.pattern,
                    pattern_type = excluded.pattern_type,
                    valid_from = excluded.valid_from,
                    valid_until = excluded.valid_until,
                    kill_chain_phases = excluded.kill_chain_phases,
                    search_text = excluded.search_text,
                    source_bundle_id = excluded.source_bundle_id,
                    raw_data = excluded.raw_data,
                    updated_at = CURRENT_TIMESTAMP
                WHERE excluded.modified IS NULL
                   OR stix_objects.modified IS NULL
                   OR excluded.modified >= stix_objects.modified
            """, (
                record.stix_id, record.type, record.name, record.description,
                record.spec_version, record.created, record.modified,
                record.created_by_ref, int(record.revoked),
                json.dumps(record.labels), record.confidence, record.tlp_marking,
                json.dumps(record.external_refs), record.pattern,
                record.pattern_type, record.valid_from, record.valid_until,
                json.dumps(record.kill_chain_phases), record.search_text,
                record.source_bundle_id, json.dumps(record.raw_data, default=str),
            ))

    def upsert_relationship(self, record: RelationshipRecord):
        """Insert or update a relationship; endpoints need not exist."""
        with self._connect(key=record.stix_id) as conn:
            conn.execute("""
                INSERT INTO stix_relationships (
                    stix_id, relationship_type, source_ref, target_ref,
                    description, created, modified, source_bundle_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(stix_id) DO UPDATE SET
                    relationship_type = excluded.relationship_type,
                    source_ref = excluded.source_ref,
                    target_ref = excluded.target_ref,
                    description = excluded.description,
                    created = excluded.created,
                    modified = excluded.modified,
                    source_bundle_id = excluded.source_bundle_id,
                    updated_at = CURRENT_TIMESTAMP
                WHERE excluded.modified IS NULL
                   OR stix_relationships.modified IS NULL
                   OR excluded.modified >= stix_relationships.modified
            """, (
                record.stix_id, record.relationship_type, record.source_ref,
                record.target_ref, record.description, record.created,
                record.modified, record.source_bundle_id,
            ))

    def get_stix_object(self, stix_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM stix_objects WHERE stix_id = ?", (stix_id,)).fetchone()
        if not row:
            return None
        obj = dict(row)
        for json_field, default in (('labels', []), ('external_references', []),
                                    ('kill_chain_phases', []), ('raw_data', {})):
            obj[json_field] = _loads(obj.get(json_field), default)
        obj['revoked'] = bool(obj['revoked'])
        return obj

    def get_relationship(self, stix_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM stix_relationships WHERE stix_id = ?", (stix_id,)).fetchone()
        return dict(row) if row else None

    def list_stix_objects(self, stix_type: Optional[str] = None, limit: int = 1000) -> List[Dict[str, Any]]:
        query = "SELECT stix_id FROM stix_objects"
        params: List[Any] = []
        if stix_type:
            query += " WHERE type = ?"
            params.append(stix_type)
        query += " ORDER BY modified DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            ids = [row['stix_id'] for row in conn.execute(query, params).fetchall()]
        return [self.get_stix_object(stix_id) for stix_id in ids]

    def count_stix_objects(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM stix_objects").fetchone()[0]

    def count_relationships(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM stix_relationships").fetchone()[0]

    # ------------------------------------------------------------------
    # IOCs
    # ------------------------------------------------------------------

    def get_ioc(self, ioc_type: str, value: str) -> Optional[IOC]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM iocs WHERE type = ? AND value = ?",
                               (ioc_type, value)).fetchone()
        return self._row_to_ioc(row) if row else None

    def upsert_ioc(self, ioc: IOC):
        """
        Insert or merge an IOC keyed by (type, value).

        Confidence and last_seen only ever grow and false_positive is left
        untouched on conflict.
        """
        with self._connect(key=f"{ioc.type}:{ioc.value}") as conn:
            self._write_ioc(conn, ioc)

    def merge_ioc(self, ioc: IOC, merge: Callable[[IOC, IOC], IOC]) -> IOC:
        """
        Read, merge and write an IOC inside one write transaction.

        BEGIN IMMEDIATE takes the write lock before the read, so concurrent
        merges of the same IOC are serialized instead of overwriting each
        other.

        Args:
            ioc: Incoming IOC
            merge: Called as merge(stored, incoming) when the IOC already exists

        Returns:
            The IOC as written
        """
        with self._connect(key=f"{ioc.type}:{ioc.value}") as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT * FROM iocs WHERE type = ? AND value = ?",
                               (ioc.type, ioc.value)).fetchone()
            if row is not None:
                ioc = merge(self._row_to_ioc(row), ioc)
            self._write_ioc(conn, ioc)
        return ioc

    @staticmethod
    def _write_ioc(conn: sqlite3.Connection, ioc: IOC):
        conn.execute("""
            INSERT INTO iocs (
                type, value, confidence, severity, first_seen, last_seen,
                valid_until, tags, description, source, source_stix_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(type, value) DO UPDATE SET
                confidence = MAX(iocs.confidence, excluded.confidence),
                severity = excluded.severity,
                first_seen = MIN(COALESCE(iocs.first_seen, excluded.first_seen),
                                 COALESCE(excluded.first_seen, iocs.first_seen)),
                last_seen = MAX(COALESCE(iocs.last_seen, excluded.last_seen),
                                COALESCE(excluded.last_seen, iocs.last_seen)),
                valid_until = COALESCE(excluded.valid_until, iocs.valid_until),
                tags = excluded.tags,
                description = COALESCE(excluded.description, iocs.description),
                source = excluded.source,
                source_stix_id = excluded.source_stix_id,
                updated_at = CURRENT_TIMESTAMP
        """, (
            ioc.type, ioc.value, ioc.confidence, ioc.severity,
            ioc.first_seen, ioc.last_seen, ioc.valid_until,
            json.dumps(ioc.tags), ioc.description, ioc.source,
            ioc.source_stix_id,
        ))

    def set_false_positive(self, ioc_type: str, value: str, flag: bool = True) -> bool:
        """Operator action. Returns False when no such IOC exists."""
        with self._connect(key=f"{ioc_type}:{value}") as conn:
            cursor = conn.execute("""
                UPDATE iocs SET false_positive = ?, updated_at = CURRENT_TIMESTAMP
                WHERE type = ? AND value = ?
            """, (int(flag), ioc_type, value))
            return cursor.rowcount > 0

    def search_iocs(self,
                    ioc_value: Optional[str] = None,
                    ioc_type: Optional[str] = None,
                    severity: Optional[str] = None,
                    min_confidence: Optional[int] = None,
                    include_false_positives: bool = True,
                    limit: int = 100) -> List[IOC]:
        """
        Search for IOCs.

        Args:
            ioc_value: IOC value to search for (partial match)
            ioc_type: IOC type filter
            severity: Severity filter
            min_confidence: Minimum confidence score
            include_false_positives: Whether to return IOCs flagged as false positives
            limit: Maximum number of results

        Returns:
            List of matching IOCs, most recently seen first
        """
        query = "SELECT * FROM iocs WHERE 1=1"
        params: List[Any] = []

        if ioc_value:
            query += " AND value LIKE ?"
            params.append(f"%{ioc_value}%")

        if ioc_type:
            query += " AND type = ?"
            params.append(ioc_type)

        if severity:
            query += " AND severity = ?"
            params.append(severity)

        if min_confidence is not None:
            query += " AND confidence >= ?"
            params.append(min_confidence)

        if not include_false_positives:
            query += " AND false_positive = 0"

        query += " ORDER BY last_seen DESC, id DESC LIMIT ?"
        params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_ioc(row) for row in rows]

    def count_iocs(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM iocs").fetchone()[0]

    @staticmethod
    def _row_to_ioc(row: sqlite3.Row) -> IOC:
        return IOC(
            type=row['type'],
            value=row['value'],
            confidence=row['confidence'],
            severity=row['severity'],
            first_seen=row['first_seen'],
            last_seen=row['last_seen'],
            valid_until=row['valid_until'],
            tags=_loads(row['tags'], []),
            description=row['description'],
            source=row['source'],
            source_stix_id=row['source_stix_id'],
            false_positive=bool(row['false_positive']),
        )

    # ------------------------------------------------------------------
    # Sync jobs and statistics
    # ------------------------------------------------------------------

    def insert_sync_job(self, collection_state_id: int, started_at: str, finished_at: str,
                        status: str, objects_stored: int = 0, relationships_stored: int = 0,
                        iocs_extracted: int = 0, error: Optional[str] = None) -> int:
        with self._connect() as conn:
            cursor = conn.execute("""
                INSERT INTO sync_jobs (
                    collection_state_id, started_at, finished_at, status,
                    objects_stored, relationships_stored, iocs_extracted, error
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (collection_state_id, started_at, finished_at, status,
                  objects_stored, relationships_stored, iocs_extracted, error))
            return cursor.lastrowid

    def list_sync_jobs(self, collection_state_id: Optional[int] = None, limit: int = 100) -> List[Dict[str, Any]]:
        query = "SELECT * FROM sync_jobs"
        params: List[Any] = []
        if collection_state_id is not None:
            query += " WHERE collection_state_id = ?"
            params.append(collection_state_id)
        query += " ORDER BY started_at DESC, id DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            return [dict(row) for row in conn.execute(query, params).fetchall()]

    def cleanup_old_sync_jobs(self, keep: int = 100) -> int:
        """Delete all but the most recent `keep` sync jobs."""
        with self._connect() as conn:
            cursor = conn.execute("""
                DELETE FROM sync_jobs
                WHERE id NOT IN (
                    SELECT id FROM sync_jobs
                    ORDER BY started_at DESC, id DESC
                    LIMIT ?
                )
            """, (keep,))
            return cursor.rowcount

    def update_sync_statistics(self, window_days: int = 30,
                               now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Recompute rolling per-collection poll statistics."""
        now = now or utcnow()
        since = format_timestamp(now - timedelta(days=window_days))
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT collection_state_id, started_at, finished_at, status
                FROM sync_jobs
                WHERE started_at >= ?
            """, (since,)).fetchall()

            stats: Dict[int, Dict[str, Any]] = {}
            for row in rows:
                entry = stats.setdefault(row['collection_state_id'], {
                    'collection_state_id': row['collection_state_id'],
                    'window_days': window_days,
                    'total_runs': 0,
                    'succeeded': 0,
                    'failed': 0,
                    'durations': [],
                })
                entry['total_runs'] += 1
                if row['status'] == 'success':
                    entry['succeeded'] += 1
                    if row['finished_at']:
                        started = datetime.strptime(row['started_at'], TIMESTAMP_FORMAT)
                        finished = datetime.strptime(row['finished_at'], TIMESTAMP_FORMAT)
                        entry['durations'].append((finished - started).total_seconds())
                else:
                    entry['failed'] += 1

            computed_at = format_timestamp(now)
            results = []
            conn.execute("DELETE FROM sync_job_statistics")
            for entry in stats.values():
                durations = entry.pop('durations')
                entry['avg_duration_seconds'] = sum(durations) / len(durations) if durations else None
                entry['computed_at'] = computed_at
                conn.execute("""
                    INSERT INTO sync_job_statistics (
                        collection_state_id, window_days, total_runs, succeeded,
                        failed, avg_duration_seconds, computed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(collection_state_id) DO UPDATE SET
                        window_days = excluded.window_days,
                        total_runs = excluded.total_runs,
                        succeeded = excluded.succeeded,
                        failed = excluded.failed,
                        avg_duration_seconds = excluded.avg_duration_seconds,
                        computed_at = excluded.computed_at
                """, (
                    entry['collection_state_id'], window_days, entry['total_runs'],
                    entry['succeeded'], entry['failed'],
                    entry['avg_duration_seconds'], computed_at,
                ))
                results.append(entry)
        return results

    def get_sync_statistics(self) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM sync_job_statistics ORDER BY collection_state_id").fetchall()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_statistics(self) -> Dict[str, Any]:
        """STIX object, bundle and IOC counts."""
        with self._connect() as conn:
            total_objects = conn.execute("SELECT COUNT(*) FROM stix_objects").fetchone()[0]
            total_bundles = conn.execute("SELECT COUNT(*) FROM stix_bundles").fetchone()[0]
            total_relationships = conn.execute("SELECT COUNT(*) FROM stix_relationships").fetchone()[0]
            total_iocs = conn.execute("SELECT COUNT(*) FROM iocs WHERE source = 'stix'").fetchone()[0]
            type_counts = {
                row[0]: row[1] for row in conn.execute("""
                    SELECT type, COUNT(*) AS count FROM stix_objects
                    GROUP BY type ORDER BY count DESC
                """).fetchall()
            }
            ioc_counts = {
                row[0]: row[1] for row in conn.execute("""
                    SELECT type, COUNT(*) AS count FROM iocs
                    GROUP BY type ORDER BY count DESC
                """).fetchall()
            }
            severity_counts = {
                row[0]: row[1] for row in conn.execute("""
                    SELECT severity, COUNT(*) AS count FROM iocs GROUP BY severity
                """).fetchall()
            }

        return {
            'total_objects': total_objects,
            'total_bundles': total_bundles,
            'total_relationships': total_relationships,
            'total_iocs': total_iocs,
            'objects_by_type': type_counts,
            'iocs_by_type': ioc_counts,
            'iocs_by_severity': severity_counts,
        }

    def get_polling_statistics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now_str = format_timestamp(now or utcnow())
        with self._connect() as conn:
            active_servers = conn.execute(
                "SELECT COUNT(*) FROM taxii_servers WHERE is_active = 1").fetchone()[0]
            total_collections = conn.execute(
                "SELECT COUNT(*) FROM taxii_collections").fetchone()[0]
            enabled_collections = conn.execute(
                "SELECT COUNT(*) FROM taxii_collections WHERE is_polling_enabled = 1").fetchone()[0]
            due = conn.execute("""
                SELECT COUNT(*) FROM taxii_collections
                WHERE is_polling_enabled = 1 AND (next_poll_at IS NULL OR next_poll_at <= ?)
            """, (now_str,)).fetchone()[0]
            last_polls = conn.execute("""
                SELECT c.id, c.title, c.last_poll_at, c.last_poll_status,
                       c.last_poll_error, s.name AS server_name
                FROM taxii_collections c
                JOIN taxii_servers s ON c.server_id = s.id
                WHERE c.last_poll_at IS NOT NULL OR c.last_poll_status = 'error'
                ORDER BY c.last_poll_at DESC
                LIMIT 10
            """).fetchall()

        return {
            'active_servers': active_servers,
            'total_collections': total_collections,
            'enabled_collections': enabled_collections,
            'due_for_polling': due,
            'last_poll_results': [dict(row) for row in last_polls],
        }
