from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import List

from .db import connect


# Index rows are written only when the content row is first inserted. Content
# is immutable and hash-addressed, so there is nothing to reindex later.


def index_agenda_content(conn: sqlite3.Connection, *, content_id: str, text: str) -> None:
    conn.execute(
        """
        INSERT INTO meeting_agenda_content_search (rowid, text)
        VALUES ((SELECT rowid FROM meeting_agenda_content WHERE id = ?), ?)
        """,
        (content_id, text),
    )


def index_external_content(conn: sqlite3.Connection, *, content_id: str, title: str, text: str) -> None:
    conn.execute(
        """
        INSERT INTO external_content_search (rowid, title, text)
        VALUES ((SELECT rowid FROM external_content WHERE id = ?), ?, ?)
        """,
        (content_id, title, text),
    )


@dataclass(frozen=True)
class AgendaHit:
    meeting_id: str
    type: str
    date: str
    agenda_url: str
    snippet: str


@dataclass(frozen=True)
class DocumentHit:
    content_id: str
    title: str
    url: str
    snippet: str


@dataclass(frozen=True)
class VersionRow:
    observed: str
    schedule_note: str
    agenda_url: str
    minutes_url: str
    video_url: str
    agenda_content_id: str


def search_agendas(*, db_path: Path, query: str, limit: int = 20) -> List[AgendaHit]:
    """Meetings whose current agenda matches an FTS5 query, newest first."""

    with connect(db_path) as conn:
        rows = conn.execute(
            """
            SELECT m.id, m.type, m.date, m.agenda_url,
                   snippet(meeting_agenda_content_search, 0, '[', ']', '...', 12) AS snippet
            FROM meeting_agenda_content_search
            JOIN meeting_agenda_content c ON c.rowid = meeting_agenda_content_search.rowid
            JOIN meetings m ON m.agenda_content_id = c.id
            WHERE meeting_agenda_content_search MATCH ?
            ORDER BY m.date DESC, m.id
            LIMIT ?
            """,
            (query, int(limit)),
        ).fetchall()
    return [
        AgendaHit(
            meeting_id=str(r["id"]),
            type=str(r["type"]),
            date=str(r["date"]),
            agenda_url=str(r["agenda_url"]),
            snippet=str(r["snippet"] or ""),
        )
        for r in rows
    ]


def search_documents(*, db_path: Path, query: str, limit: int = 20) -> List[DocumentHit]:
    """External documents matching an FTS5 query, one hit per URL serving them."""

    with connect(db_path) as conn:
        rows = conn.execute(
            """
            SELECT c.id, c.title, u.url,
                   snippet(external_content_search, 1, '[', ']', '...', 12) AS snippet
            FROM external_content_search
            JOIN external_content c ON c.rowid = external_content_search.rowid
            JOIN external_content_urls u ON u.external_content_id = c.id
            WHERE external_content_search MATCH ?
            ORDER BY rank, u.url
            LIMIT ?
            """,
            (query, int(limit)),
        ).fetchall()
    return [
        DocumentHit(
            content_id=str(r["id"]),
            title=str(r["title"] or ""),
            url=str(r["url"]),
            snippet=str(r["snippet"] or ""),
        )
        for r in rows
    ]


def meetings_citing(*, db_path: Path, url: str) -> List[str]:
    """Ids of meetings whose agenda (any version) linked to `url`."""

    with connect(db_path) as conn:
        rows = conn.execute(
            """
            SELECT DISTINCT meeting_id
            FROM meeting_external_content_urls
            WHERE external_content_url = ?
            ORDER BY meeting_id
            """,
            (url,),
        ).fetchall()
    return [str(r["meeting_id"]) for r in rows]


def meeting_history(*, db_path: Path, meeting_id: str) -> List[VersionRow]:
    with connect(db_path) as conn:
        rows = conn.execute(
            """
            SELECT observed, schedule_note, agenda_url, minutes_url, video_url, agenda_content_id
            FROM meeting_versions
            WHERE meeting_id = ?
            ORDER BY observed
            """,
            (meeting_id,),
        ).fetchall()
    return [
        VersionRow(
            observed=str(r["observed"]),
            schedule_note=str(r["schedule_note"]),
            agenda_url=str(r["agenda_url"]),
            minutes_url=str(r["minutes_url"]),
            video_url=str(r["video_url"]),
            agenda_content_id=str(r["agenda_content_id"]),
        )
        for r in rows
    ]
