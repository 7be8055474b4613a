from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from .extract import normalize_text
from .fetch import FetchError, HttpClient
from .models import ListPage, Meeting, MeetingAgenda


logger = logging.getLogger(__name__)


DEFAULT_DOCUMENT_URL_PATTERNS = (
    "halifax.ca/media",
    "cdn.halifax.ca",
    "escribemeetings.com/filestream.ashx",
)


class SourceError(RuntimeError):
    pass


def absolute_url(base: str, href: Optional[str]) -> str:
    if not href:
        return ""
    href = href.strip()
    if not href or href.startswith(("javascript:", "mailto:", "#")):
        return ""
    return urljoin(base, href)


def is_document_url(url: str, patterns: Sequence[str]) -> bool:
    """Whether a link points at an external document worth fetching.

    Matching is a case-insensitive substring test against host/path patterns
    such as "cdn.halifax.ca" so both sources share one rule.
    """

    low = url.lower()
    return bool(url) and any(p.lower() in low for p in patterns)


def html_to_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    text = normalize_text(soup.get_text("\n"))
    lines: List[str] = []
    for line in text.split("\n"):
        line = line.strip()
        if not line and (not lines or not lines[-1]):
            continue
        lines.append(line)
    return "\n".join(lines).strip() + "\n"


def _format_fragment(html: str) -> str:
    # Consistent formatting keeps the content hash stable across fetches.
    return BeautifulSoup(html, "html.parser").prettify()


class Source:
    name = "source"

    def list(self, token: str) -> ListPage:
        raise NotImplementedError

    def agenda(self, url: str) -> MeetingAgenda:
        raise NotImplementedError


_HALIFAX_ID_PREFIXES = (
    "https://www.halifax.ca/city-hall",
    "/",
    "http://legacycontent.halifax.ca/council/",
)


def halifax_meeting_id(agenda_url: str) -> str:
    """Derive a stable meeting id from an agenda URL.

    The listing sometimes emits a malformed variant such as
    https://www.halifax.ca/city-hallboards-committees-commissions, and older
    meetings live on the legacy host; trimming the known prefixes maps both to
    the same path-based id.
    """

    mid = agenda_url
    for prefix in _HALIFAX_ID_PREFIXES:
        if mid.startswith(prefix):
            mid = mid[len(prefix):]
    return mid


class HalifaxSource(Source):
    """Paginated HTML meeting listing on the municipal website."""

    name = "halifax"
    LIST_URL = "https://www.halifax.ca/city-hall/agendas-meetings-reports"
    DATE_FORMAT = "%B %d, %Y"

    def __init__(self, client: HttpClient, *, document_url_patterns: Sequence[str] = DEFAULT_DOCUMENT_URL_PATTERNS):
        self.client = client
        self.document_url_patterns = tuple(document_url_patterns)

    def list(self, token: str) -> ListPage:
        url = token or self.LIST_URL
        try:
            html = self.client.get_text(url)
        except FetchError as e:
            raise SourceError(f"listing meetings: {e}") from e
        return self.parse_listing(html, url)

    def parse_listing(self, html: str, url: str) -> ListPage:
        soup = BeautifulSoup(html, "html.parser")
        table = soup.select_one('table[id^="meetings_listings"]')
        if table is None:
            raise SourceError(f"url={url} unable to find meetings_listings table")

        meetings: List[Meeting] = []
        for tr in table.select("tbody > tr"):
            m_time = _cell_text(tr, "td:nth-child(1) time")
            m_note = _cell_text(tr, "td:nth-child(1) strong")
            m_type = _cell_text(tr, "td:nth-child(2)")
            try:
                m_date = datetime.strptime(m_time, self.DATE_FORMAT).date()
            except ValueError as e:
                raise SourceError(f"bad meeting date format: {m_time!r}") from e

            urls: Dict[str, str] = {}
            for kind, selector in (
                ("agenda", "td:nth-child(3) a"),
                ("minutes", "td:nth-child(4) a"),
                ("video", "td:nth-child(5) a"),
            ):
                a = tr.select_one(selector)
                href = absolute_url(url, a.get("href") if a is not None else None)
                if href:
                    urls[kind] = href

            meetings.append(
                Meeting(
                    id=halifax_meeting_id(urls.get("agenda", "")),
                    type=m_type,
                    date=m_date,
                    note=m_note,
                    urls=urls,
                )
            )

        next_link = soup.select_one(
            "#block-views-block-meetings-listings-block-1 li.pager__item.pager__item--next > a"
        )
        next_token = absolute_url(url, next_link.get("href") if next_link is not None else None)
        return ListPage(meetings=meetings, next_token=next_token)

    def agenda(self, url: str) -> MeetingAgenda:
        try:
            html = self.client.get_text(url)
        except FetchError as e:
            raise SourceError(f"fetching agenda: {e}") from e
        return self.parse_agenda(html, url)

    def parse_agenda(self, html: str, url: str) -> MeetingAgenda:
        soup = BeautifulSoup(html, "html.parser")
        content = soup.select_one("#block-halifax-content > div > article > div")
        if content is None or not content.decode_contents().strip():
            raise SourceError(f"url={url} did not find content")

        content_urls: List[str] = []
        for a in content.select("a[href]"):
            href = absolute_url(url, a.get("href"))
            if not href:
                continue
            a["href"] = href
            if is_document_url(href, self.document_url_patterns) and href not in content_urls:
                content_urls.append(href)

        content_html = _format_fragment(content.decode_contents())
        return MeetingAgenda(
            content_html=content_html,
            content_text=html_to_text(content_html),
            content_urls=content_urls,
        )


class EscribeSource(Source):
    """eScribe meetings portal: one JSON calendar call, no pagination."""

    name = "escribe"
    BASE_URL = "https://pub-halifax.escribemeetings.com"
    TYPE_RENAMES = {"Halifax Regional Council": "Regional Council"}

    def __init__(
        self,
        client: HttpClient,
        *,
        document_url_patterns: Sequence[str] = DEFAULT_DOCUMENT_URL_PATTERNS,
        now: Optional[datetime] = None,
    ):
        self.client = client
        self.document_url_patterns = tuple(document_url_patterns)
        self._now = now

    def list(self, token: str) -> ListPage:
        if token:
            raise SourceError("escribe does not support pagination")

        now = self._now or datetime.now(timezone.utc)
        payload = {
            "calendarStartDate": (now - timedelta(days=365)).isoformat(),
            "calendarEndDate": (now + timedelta(days=365)).isoformat(),
        }
        try:
            data = self.client.post_json(self.BASE_URL + "/MeetingsCalendarView.aspx/GetAllMeetings", payload)
        except FetchError as e:
            raise SourceError(f"listing meetings: {e}") from e
        return self.parse_listing(data)

    def parse_listing(self, data: Any) -> ListPage:
        if not isinstance(data, dict) or not isinstance(data.get("d"), list):
            raise SourceError("listing response did not include a 'd' list")

        meetings: List[Meeting] = []
        for dm in data["d"]:
            start = str(dm.get("StartDate") or "")
            day, sep, _ = start.partition(" ")
            if not sep:
                raise SourceError(f"bad start date {start!r}")
            try:
                m_date = datetime.strptime(day, "%Y/%m/%d").date()
            except ValueError as e:
                raise SourceError(f"bad date {day!r}") from e

            m_type = str(dm.get("MeetingType") or "")
            m_type = self.TYPE_RENAMES.get(m_type, m_type)

            urls: Dict[str, str] = {}
            for dl in dm.get("MeetingDocumentLink") or []:
                href = absolute_url(self.BASE_URL + "/", dl.get("Url"))
                kind = dl.get("Type")
                if kind == "Agenda" and dl.get("Format") == "HTML":
                    urls["agenda"] = href
                elif kind == "AdditionalDocuments" and dl.get("Format") == ".pdf" and "Minutes" in str(dl.get("Title") or ""):
                    urls["minutes"] = href
                elif kind == "Video":
                    urls["video"] = href

            # e.g. "Budget Committee - Continuation" days carry no agenda of their own
            if "agenda" not in urls and "Continuation" in m_type:
                continue

            meetings.append(Meeting(id=str(dm.get("ID") or ""), type=m_type, date=m_date, urls=urls))

        # The calendar is not ordered; callers rely on newest-first.
        meetings.sort(key=lambda m: m.date, reverse=True)
        return ListPage(meetings=meetings, next_token="")

    def agenda(self, url: str) -> MeetingAgenda:
        try:
            html = self.client.get_text(url)
        except FetchError as e:
            raise SourceError(f"fetching agenda: {e}") from e
        return self.parse_agenda(html, url)

    def parse_agenda(self, html: str, url: str) -> MeetingAgenda:
        soup = BeautifulSoup(html, "html.parser")
        content = soup.select_one(".AgendaItems")
        if content is None or not content.decode_contents().strip():
            raise SourceError(f"url={url} did not find content")

        for el in content.select(".AgendaItemIcons"):
            el.decompose()
        for el in content.select('img[title="Attachments"]'):
            el.decompose()

        for a in content.select("a[href]"):
            href = str(a.get("href") or "")
            if href.startswith("javascript:"):
                inner = BeautifulSoup(a.decode_contents().strip(), "html.parser")
                target = a.parent if a.parent is not None and a.parent is not content else a
                target.replace_with(inner)
                continue
            a["href"] = absolute_url(url, href)

        content_urls: List[str] = []
        for a in content.select("a.Link[href]"):
            href = absolute_url(url, a.get("href"))
            if is_document_url(href, self.document_url_patterns) and href not in content_urls:
                content_urls.append(href)

        content_html = _format_fragment(content.decode_contents())
        return MeetingAgenda(
            content_html=content_html,
            content_text=html_to_text(content_html),
            content_urls=content_urls,
        )


def _cell_text(tr: Any, selector: str) -> str:
    el = tr.select_one(selector)
    if el is None:
        return ""
    return el.get_text().strip()


SOURCES = {
    HalifaxSource.name: HalifaxSource,
    EscribeSource.name: EscribeSource,
}


def create_source(name: str, client: HttpClient, *, document_url_patterns: Sequence[str] = DEFAULT_DOCUMENT_URL_PATTERNS) -> Source:
    key = (name or "").strip().lower()
    cls = SOURCES.get(key)
    if cls is None:
        raise ValueError(f"Unsupported source: {name}")
    return cls(client, document_url_patterns=document_url_patterns)
