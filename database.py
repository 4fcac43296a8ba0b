import json
import sqlite3
import threading
from datetime import datetime

import config

# -----------------------
# DB initialisieren
# -----------------------
_SCHEMA = (
    # State table for persistent tracker state
    """
    CREATE TABLE IF NOT EXISTS tracker_state (
        key TEXT PRIMARY KEY,
        value TEXT,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # Store tracker settings in dedicated table (capture region, debug mode)
    """
    CREATE TABLE IF NOT EXISTS tracker_settings (
        key TEXT PRIMARY KEY,
        value TEXT,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # Abgeschlossene Grind-Sessions (Zusammenfassung beim Stop)
    """
    CREATE TABLE IF NOT EXISTS grind_sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        location TEXT,
        started_at DATETIME,
        ended_at DATETIME,
        duration_ms INTEGER,
        item_count INTEGER,
        silver INTEGER,
        loot_json TEXT,
        stats_json TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_grind_sessions_ended
    ON grind_sessions(ended_at DESC)
    """,
)

# Thread-local connections
_local = threading.local()
_schema_lock = threading.Lock()
_schema_ready_for = set()


def _ensure_schema(conn, db_path: str) -> None:
    with _schema_lock:
        if db_path in _schema_ready_for:
            return
        c = conn.cursor()
        for stmt in _SCHEMA:
            c.execute(stmt)
        conn.commit()
        _schema_ready_for.add(db_path)


def get_connection():
    db_path = config.DB_PATH
    conn = getattr(_local, 'conn', None)
    if conn is None or getattr(_local, 'db_path', None) != db_path:
        conn = sqlite3.connect(db_path, check_same_thread=False,
                               detect_types=sqlite3.PARSE_DECLTYPES | sqlite3.PARSE_COLNAMES)
        _local.conn = conn
        _local.db_path = db_path
    _ensure_schema(conn, db_path)
    return conn


def get_cursor():
    return get_connection().cursor()


def _save_kv(table: str, key: str, value: str) -> None:
    conn = get_connection()
    c = conn.cursor()
    c.execute(f"""
        INSERT OR REPLACE INTO {table} (key, value, updated_at)
        VALUES (?, ?, CURRENT_TIMESTAMP)
    """, (key, value))
    conn.commit()


def _load_kv(table: str, key: str, default=None):
    c = get_cursor()
    c.execute(f"SELECT value FROM {table} WHERE key = ?", (key,))
    row = c.fetchone()
    return row[0] if row else default


# Utility functions for persistent state
def save_state(key: str, value: str):
    """Save a key-value pair to persistent state"""
    try:
        _save_kv('tracker_state', key, value)
    except Exception as e:
        print(f"Error saving state {key}: {e}")


def load_state(key: str, default=None):
    """Load a value from persistent state"""
    try:
        return _load_kv('tracker_state', key, default)
    except Exception as e:
        print(f"Error loading state {key}: {e}")
        return default


def save_setting(key: str, value: str):
    try:
        _save_kv('tracker_settings', key, value)
    except Exception as e:
        print(f"Error saving setting {key}: {e}")


def load_setting(key: str, default=None):
    try:
        return _load_kv('tracker_settings', key, default)
    except Exception as e:
        print(f"Error loading setting {key}: {e}")
        return default


def _ms_to_dt(value):
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000.0).strftime("%Y-%m-%d %H:%M:%S")


def save_session_summary(summary: dict, stats: dict | None = None, started_at_ms=None, ended_at_ms=None) -> int | None:
    """Persist the final summary of a grind session. Returns the row id, None on failure."""
    try:
        conn = get_connection()
        c = conn.cursor()
        c.execute(
            """
            INSERT INTO grind_sessions
                (location, started_at, ended_at, duration_ms, item_count, silver, loot_json, stats_json)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                summary.get('location'),
                _ms_to_dt(started_at_ms),
                _ms_to_dt(ended_at_ms),
                int(summary.get('duration_ms') or 0),
                int(summary.get('itemCount') or 0),
                int(summary.get('silver') or 0),
                json.dumps(summary.get('loot') or {}, ensure_ascii=False, sort_keys=True),
                json.dumps(stats or {}, ensure_ascii=False, sort_keys=True),
            ),
        )
        conn.commit()
        return c.lastrowid
    except Exception as e:
        print(f"Error saving session summary: {e}")
        return None


def fetch_recent_sessions(limit: int = 10) -> list[dict]:
    try:
        c = get_cursor()
        c.execute(
            """
            SELECT id, location, started_at, ended_at, duration_ms, item_count, silver, loot_json
            FROM grind_sessions
            ORDER BY id DESC
            LIMIT ?
            """,
            (int(limit),),
        )
        rows = c.fetchall()
    except Exception as e:
        print(f"Error loading session history: {e}")
        return []

    sessions = []
    for row in rows:
        try:
            loot = json.loads(row[7]) if row[7] else {}
        except ValueError:
            loot = {}
        sessions.append({
            'id': row[0],
            'location': row[1],
            'started_at': row[2],
            'ended_at': row[3],
            'duration_ms': row[4],
            'itemCount': row[5],
            'silver': row[6],
            'loot': loot,
        })
    return sessions
