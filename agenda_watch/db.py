from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Set


DB_FILENAME = "meetings.sqlite3"

_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


SCHEMA = """
CREATE TABLE IF NOT EXISTS meeting_agenda_content (
    id TEXT PRIMARY KEY,
    text TEXT NOT NULL,
    html TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS meetings (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    date TEXT NOT NULL,
    schedule_note TEXT NOT NULL DEFAULT '',
    agenda_url TEXT NOT NULL,
    minutes_url TEXT NOT NULL DEFAULT '',
    video_url TEXT NOT NULL DEFAULT '',
    agenda_content_id TEXT REFERENCES meeting_agenda_content (id),
    last_observed TEXT,
    last_updated TEXT
);

CREATE TABLE IF NOT EXISTS meeting_versions (
    meeting_id TEXT NOT NULL REFERENCES meetings (id),
    observed TEXT NOT NULL,
    schedule_note TEXT NOT NULL DEFAULT '',
    agenda_url TEXT NOT NULL,
    minutes_url TEXT NOT NULL DEFAULT '',
    video_url TEXT NOT NULL DEFAULT '',
    agenda_content_id TEXT NOT NULL REFERENCES meeting_agenda_content (id),
    UNIQUE (meeting_id, schedule_note, agenda_url, minutes_url, video_url, agenda_content_id)
);

CREATE TABLE IF NOT EXISTS external_content (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT '',
    text TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS external_content_urls (
    url TEXT PRIMARY KEY,
    added TEXT NOT NULL,
    fetched TEXT,
    content_type TEXT,
    size INTEGER,
    last_modified TEXT,
    etag TEXT,
    error TEXT,
    external_content_id TEXT REFERENCES external_content (id)
);

CREATE TABLE IF NOT EXISTS meeting_external_content_urls (
    meeting_id TEXT NOT NULL REFERENCES meetings (id),
    agenda_content_id TEXT NOT NULL REFERENCES meeting_agenda_content (id),
    external_content_url TEXT NOT NULL REFERENCES external_content_urls (url),
    UNIQUE (meeting_id, agenda_content_id, external_content_url)
);

CREATE INDEX IF NOT EXISTS idx_meetings_agenda_content_id ON meetings (agenda_content_id);
CREATE INDEX IF NOT EXISTS idx_meeting_versions_observed ON meeting_versions (observed);
CREATE INDEX IF NOT EXISTS idx_external_content_urls_fetched ON external_content_urls (fetched);
CREATE INDEX IF NOT EXISTS idx_meeting_external_url ON meeting_external_content_urls (external_content_url);

CREATE VIRTUAL TABLE IF NOT EXISTS meeting_agenda_content_search
    USING fts5(text, content=meeting_agenda_content);

CREATE VIRTUAL TABLE IF NOT EXISTS external_content_search
    USING fts5(title, text, content=external_content);
"""


def format_time(dt: datetime) -> str:
    """Render a timestamp as fixed-width UTC text so SQL ordering is chronological."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(_TIME_FORMAT)


def parse_time(value: Optional[str]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    return datetime.strptime(value, _TIME_FORMAT).replace(tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _open(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db(db_path: Path) -> None:
    conn = _open(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


# store files whose schema this process has already created
_INITIALIZED: Set[str] = set()


def _ensure_schema(db_path: Path) -> None:
    key = str(db_path.resolve())
    if key in _INITIALIZED and db_path.exists():
        return
    init_db(db_path)
    _INITIALIZED.add(key)


@contextmanager
def connect(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Open the store, run the body as one transaction, and close.

    Commits when the body returns and rolls back when it raises, so callers get
    all-or-nothing writes for everything done on the yielded connection.
    """

    _ensure_schema(db_path)
    conn = _open(db_path)
    try:
        with conn:
            yield conn
    finally:
        conn.close()


def max_observed(db_path: Path) -> Optional[datetime]:
    with connect(db_path) as conn:
        row = conn.execute("SELECT max(observed) AS observed FROM meeting_versions").fetchone()
    return parse_time(row["observed"])


def last_observed(db_path: Path, meeting_id: str) -> Optional[datetime]:
    with connect(db_path) as conn:
        row = conn.execute(
            "SELECT last_observed FROM meetings WHERE id = ?",
            (meeting_id,),
        ).fetchone()
    if row is None:
        return None
    return parse_time(row["last_observed"])


def unfetched_urls(db_path: Path, *, limit: int = 500) -> List[str]:
    with connect(db_path) as conn:
        rows = conn.execute(
            """
            SELECT url
            FROM external_content_urls
            WHERE fetched IS NULL
            ORDER BY added, url
            LIMIT ?
            """,
            (int(limit),),
        ).fetchall()
    return [str(r["url"]) for r in rows]


def table_count(db_path: Path, table: str) -> int:
    with connect(db_path) as conn:
        row = conn.execute(f"SELECT count(*) AS n FROM {table}").fetchone()
    return int(row["n"])
