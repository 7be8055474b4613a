from __future__ import annotations

import base64
import hashlib
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Iterable

from .db import connect, format_time
from .models import Meeting, MeetingAgenda
from .search import index_agenda_content, index_external_content


class StoreError(RuntimeError):
    pass


def _encode_digest(digest: bytes) -> str:
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def content_id(data: bytes) -> str:
    """Stable identifier for a byte sequence (SHA-224, unpadded base64url)."""
    return _encode_digest(hashlib.sha224(data).digest())


def content_id_file(path: Path) -> str:
    h = hashlib.sha224()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return _encode_digest(h.digest())


def save_meeting(*, db_path: Path, meeting: Meeting, agenda: MeetingAgenda, observed: datetime) -> str:
    """Record one observation of a meeting and its agenda in a single transaction.

    Agenda content is stored once per distinct HTML body and indexed on first
    insert only. The meeting row is overwritten with the latest listing values,
    a version row is added if this attribute tuple is new for the meeting, and
    document links found in the agenda are registered for the external content
    pipeline. Re-running with identical inputs writes nothing new.

    Returns the agenda content id.
    """

    if not meeting.id:
        raise StoreError("meeting has no id")
    agenda_url = meeting.url("agenda")
    if not agenda_url:
        raise StoreError(f"meeting {meeting.id} has no agenda URL")

    cid = content_id(agenda.content_html.encode("utf-8"))
    observed_s = format_time(observed)

    with connect(db_path) as conn:
        try:
            _save_agenda_content(conn, cid, agenda)
            _upsert_meeting(conn, meeting, cid)
            conn.execute(
                """
                INSERT INTO meeting_versions (
                    meeting_id, observed, schedule_note, agenda_url, minutes_url, video_url, agenda_content_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT DO NOTHING
                """,
                (
                    meeting.id,
                    observed_s,
                    meeting.note,
                    agenda_url,
                    meeting.url("minutes"),
                    meeting.url("video"),
                    cid,
                ),
            )
            conn.execute(
                """
                UPDATE meetings SET
                    last_observed = ?,
                    last_updated = (SELECT max(observed) FROM meeting_versions WHERE meeting_id = meetings.id)
                WHERE id = ?
                """,
                (observed_s, meeting.id),
            )
            _save_content_urls(conn, meeting.id, cid, agenda.content_urls, observed_s)
        except sqlite3.Error as e:
            raise StoreError(f"saving meeting {meeting.id}: {e}") from e

    return cid


def _save_agenda_content(conn: sqlite3.Connection, cid: str, agenda: MeetingAgenda) -> None:
    cur = conn.execute(
        """
        INSERT INTO meeting_agenda_content (id, text, html)
        VALUES (?, ?, ?)
        ON CONFLICT (id) DO NOTHING
        """,
        (cid, agenda.content_text, agenda.content_html),
    )
    if cur.rowcount > 0:
        index_agenda_content(conn, content_id=cid, text=agenda.content_text)


def _upsert_meeting(conn: sqlite3.Connection, meeting: Meeting, cid: str) -> None:
    conn.execute(
        """
        INSERT INTO meetings (
            id, type, date, schedule_note, agenda_url, minutes_url, video_url, agenda_content_id
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT (id) DO UPDATE SET
            type=excluded.type,
            date=excluded.date,
            schedule_note=excluded.schedule_note,
            agenda_url=excluded.agenda_url,
            minutes_url=excluded.minutes_url,
            video_url=excluded.video_url,
            agenda_content_id=excluded.agenda_content_id
        """,
        (
            meeting.id,
            meeting.type,
            meeting.date.isoformat(),
            meeting.note,
            meeting.url("agenda"),
            meeting.url("minutes"),
            meeting.url("video"),
            cid,
        ),
    )


def _save_content_urls(
    conn: sqlite3.Connection,
    meeting_id: str,
    cid: str,
    urls: Iterable[str],
    observed_s: str,
) -> None:
    for url in urls:
        conn.execute(
            "INSERT INTO external_content_urls (url, added) VALUES (?, ?) ON CONFLICT DO NOTHING",
            (url, observed_s),
        )
        conn.execute(
            """
            INSERT INTO meeting_external_content_urls (meeting_id, agenda_content_id, external_content_url)
            VALUES (?, ?, ?)
            ON CONFLICT DO NOTHING
            """,
            (meeting_id, cid, url),
        )


def external_content_exists(*, db_path: Path, cid: str) -> bool:
    with connect(db_path) as conn:
        row = conn.execute(
            "SELECT 1 FROM external_content WHERE id = ? LIMIT 1",
            (cid,),
        ).fetchone()
    return row is not None


def save_external_content(conn: sqlite3.Connection, *, cid: str, title: str, text: str) -> bool:
    """Insert an external content row if absent. Returns True on first insert."""

    cur = conn.execute(
        "INSERT INTO external_content (id, title, text) VALUES (?, ?, ?) ON CONFLICT (id) DO NOTHING",
        (cid, title, text),
    )
    if cur.rowcount > 0:
        index_external_content(conn, content_id=cid, title=title, text=text)
        return True
    return False
