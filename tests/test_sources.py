from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Dict, List, Tuple

import pytest

from agenda_watch.fetch import FetchError
from agenda_watch.sources import (
    EscribeSource,
    HalifaxSource,
    SourceError,
    create_source,
    halifax_meeting_id,
    html_to_text,
    is_document_url,
)


class FakeClient:
    def __init__(self, pages: Dict[str, Any]) -> None:
        self.pages = pages
        self.calls: List[Tuple[str, Any]] = []

    def get_text(self, url: str, *, timeout_s=None) -> str:
        self.calls.append(("GET", url))
        page = self.pages.get(url)
        if page is None:
            raise FetchError(f"GET {url}: bad status 404")
        return page

    def post_json(self, url: str, payload: Any, *, timeout_s=None) -> Any:
        self.calls.append(("POST", payload))
        page = self.pages.get(url)
        if page is None:
            raise FetchError(f"POST {url}: bad status 404")
        return page


HALIFAX_LISTING = """
<html><body>
<table id="meetings_listings_1">
  <thead><tr><th>Date</th><th>Meeting</th><th>Agenda</th><th>Minutes</th><th>Video</th></tr></thead>
  <tbody>
    <tr>
      <td><time datetime="2025-03-05">March 5, 2025</time> <strong>Rescheduled</strong></td>
      <td>Regional Council</td>
      <td><a href="/city-hall/regional-council/march-5-2025-regional-council">Agenda</a></td>
      <td><a href="https://cdn.halifax.ca/minutes/2025-03-05.pdf">Minutes</a></td>
      <td></td>
    </tr>
    <tr>
      <td><time>February 26, 2025</time></td>
      <td>Transportation Standing Committee</td>
      <td><a href="http://legacycontent.halifax.ca/council/agendasc/c250226.php">Agenda</a></td>
      <td></td>
      <td><a href="https://video.example/tsc">Video</a></td>
    </tr>
  </tbody>
</table>
<div id="block-views-block-meetings-listings-block-1">
  <ul><li class="pager__item pager__item--next"><a href="?page=1">Next</a></li></ul>
</div>
</body></html>
"""

HALIFAX_AGENDA = """
<html><body>
<div id="block-halifax-content"><div><article><div>
  <h2>Regional Council</h2>
  <p>Item 1. <a href="/media/12345">Staff report</a></p>
  <p>Item 2. <a href="https://example.org/unrelated">Unrelated</a></p>
  <p>Item 3. <a href="https://cdn.halifax.ca/sites/default/files/map.pdf">Map</a></p>
</div></article></div></div>
</body></html>
"""


def test_halifax_meeting_id_normalizes_known_prefixes() -> None:
    assert (
        halifax_meeting_id("https://www.halifax.ca/city-hall/regional-council/march-5-2025")
        == "regional-council/march-5-2025"
    )
    # Malformed variant emitted by the listing.
    assert (
        halifax_meeting_id("https://www.halifax.ca/city-hallboards-committees-commissions/x")
        == "boards-committees-commissions/x"
    )
    assert halifax_meeting_id("http://legacycontent.halifax.ca/council/agendasc/c250226.php") == "agendasc/c250226.php"


def test_halifax_listing_parses_rows_and_next_page() -> None:
    client = FakeClient({HalifaxSource.LIST_URL: HALIFAX_LISTING})
    page = HalifaxSource(client).list("")

    assert page.next_token == HalifaxSource.LIST_URL + "?page=1"
    assert len(page.meetings) == 2

    m = page.meetings[0]
    assert m.id == "regional-council/march-5-2025-regional-council"
    assert m.type == "Regional Council"
    assert m.date == date(2025, 3, 5)
    assert m.note == "Rescheduled"
    assert m.url("agenda") == "https://www.halifax.ca/city-hall/regional-council/march-5-2025-regional-council"
    assert m.url("minutes") == "https://cdn.halifax.ca/minutes/2025-03-05.pdf"
    assert m.url("video") == ""

    legacy = page.meetings[1]
    assert legacy.id == "agendasc/c250226.php"
    assert legacy.note == ""
    assert legacy.url("video") == "https://video.example/tsc"


def test_halifax_listing_uses_token_as_page_url() -> None:
    token = HalifaxSource.LIST_URL + "?page=1"
    client = FakeClient({token: HALIFAX_LISTING.replace("pager__item--next", "pager__item--last")})

    page = HalifaxSource(client).list(token)

    assert client.calls == [("GET", token)]
    assert page.next_token == ""


def test_halifax_listing_errors() -> None:
    src = HalifaxSource(FakeClient({}))
    with pytest.raises(SourceError):
        src.list("")

    with pytest.raises(SourceError, match="meetings_listings"):
        src.parse_listing("<html><body><p>maintenance</p></body></html>", HalifaxSource.LIST_URL)

    with pytest.raises(SourceError, match="bad meeting date"):
        src.parse_listing(HALIFAX_LISTING.replace("March 5, 2025", "5/3/2025"), HalifaxSource.LIST_URL)


def test_halifax_agenda_extracts_content_and_document_links() -> None:
    url = "https://www.halifax.ca/city-hall/regional-council/march-5-2025-regional-council"
    agenda = HalifaxSource(FakeClient({url: HALIFAX_AGENDA})).agenda(url)

    assert agenda.content_urls == [
        "https://www.halifax.ca/media/12345",
        "https://cdn.halifax.ca/sites/default/files/map.pdf",
    ]
    assert 'href="https://www.halifax.ca/media/12345"' in agenda.content_html
    assert "Staff report" in agenda.content_text
    assert "<" not in agenda.content_text

    # Same page fetched twice hashes the same.
    again = HalifaxSource(FakeClient({url: HALIFAX_AGENDA})).agenda(url)
    assert again.content_html == agenda.content_html


def test_halifax_agenda_without_content_is_an_error() -> None:
    url = "https://www.halifax.ca/city-hall/x"
    with pytest.raises(SourceError, match="did not find content"):
        HalifaxSource(FakeClient({url: "<html><body></body></html>"})).agenda(url)


ESCRIBE_LISTING = {
    "d": [
        {
            "ID": "aaaa-1111",
            "StartDate": "2025/03/04 10:00:00",
            "MeetingType": "Halifax Regional Council",
            "MeetingDocumentLink": [
                {"Type": "Agenda", "Format": "HTML", "Url": "Meeting.aspx?Id=aaaa-1111&Agenda=Agenda&lang=English"},
                {"Type": "Agenda", "Format": ".pdf", "Url": "FileStream.ashx?DocumentId=10"},
                {"Type": "AdditionalDocuments", "Format": ".pdf", "Title": "Minutes", "Url": "FileStream.ashx?DocumentId=11"},
                {"Type": "Video", "Format": "", "Url": "https://video.example/aaaa"},
            ],
        },
        {
            "ID": "bbbb-2222",
            "StartDate": "2025/03/06 09:30:00",
            "MeetingType": "Budget Committee - Continuation",
            "MeetingDocumentLink": [],
        },
        {
            "ID": "cccc-3333",
            "StartDate": "2025/03/10 13:00:00",
            "MeetingType": "Audit and Finance Standing Committee",
            "MeetingDocumentLink": [
                {"Type": "Agenda", "Format": "HTML", "Url": "Meeting.aspx?Id=cccc-3333&Agenda=Agenda&lang=English"},
            ],
        },
    ]
}


def test_escribe_listing_parses_sorts_and_skips_continuations() -> None:
    now = datetime(2025, 3, 1, tzinfo=timezone.utc)
    client = FakeClient({EscribeSource.BASE_URL + "/MeetingsCalendarView.aspx/GetAllMeetings": ESCRIBE_LISTING})
    page = EscribeSource(client, now=now).list("")

    assert page.next_token == ""
    assert [m.id for m in page.meetings] == ["cccc-3333", "aaaa-1111"]

    council = page.meetings[1]
    assert council.type == "Regional Council"
    assert council.date == date(2025, 3, 4)
    assert council.url("agenda") == (
        "https://pub-halifax.escribemeetings.com/Meeting.aspx?Id=aaaa-1111&Agenda=Agenda&lang=English"
    )
    assert council.url("minutes") == "https://pub-halifax.escribemeetings.com/FileStream.ashx?DocumentId=11"
    assert council.url("video") == "https://video.example/aaaa"

    _, payload = client.calls[0]
    assert payload["calendarStartDate"].startswith("2024-03-01")
    assert payload["calendarEndDate"].startswith("2026-03-01")


def test_escribe_rejects_pagination_and_bad_payloads() -> None:
    src = EscribeSource(FakeClient({}))
    with pytest.raises(SourceError, match="pagination"):
        src.list("page-2")
    with pytest.raises(SourceError):
        src.list("")
    with pytest.raises(SourceError, match="'d'"):
        src.parse_listing({"error": "nope"})
    with pytest.raises(SourceError, match="bad date"):
        src.parse_listing({"d": [{"ID": "x", "StartDate": "March 4 10:00", "MeetingDocumentLink": []}]})


ESCRIBE_AGENDA = """
<html><body>
<div class="AgendaItems">
  <div class="AgendaItem">
    <div class="AgendaItemIcons"><img src="icon.png"></div>
    <div class="AgendaItemTitle"><a href="javascript:SelectItem(1);">1. Call to Order</a></div>
  </div>
  <div class="AgendaItem">
    <div class="AgendaItemTitle">2. Parking Strategy</div>
    <a class="Link" href="FileStream.ashx?DocumentId=42">Staff Report</a>
    <img title="Attachments" src="paperclip.png">
    <a class="Link" href="https://example.org/elsewhere">Elsewhere</a>
  </div>
</div>
</body></html>
"""


def test_escribe_agenda_strips_chrome_and_finds_documents() -> None:
    url = "https://pub-halifax.escribemeetings.com/Meeting.aspx?Id=aaaa-1111&Agenda=Agenda&lang=English"
    agenda = EscribeSource(FakeClient({url: ESCRIBE_AGENDA})).agenda(url)

    assert agenda.content_urls == ["https://pub-halifax.escribemeetings.com/FileStream.ashx?DocumentId=42"]
    assert "AgendaItemIcons" not in agenda.content_html
    assert "paperclip.png" not in agenda.content_html
    assert "javascript:" not in agenda.content_html
    assert "1. Call to Order" in agenda.content_text
    assert "Parking Strategy" in agenda.content_text


def test_document_url_matching_is_shared_and_case_insensitive() -> None:
    patterns = ("halifax.ca/media", "cdn.halifax.ca", "escribemeetings.com/filestream.ashx")

    assert is_document_url("https://www.halifax.ca/media/1", patterns)
    assert is_document_url("https://cdn.halifax.ca/a.pdf", patterns)
    assert is_document_url("https://pub-halifax.escribemeetings.com/FileStream.ashx?DocumentId=1", patterns)
    assert not is_document_url("https://example.org/a.pdf", patterns)
    assert not is_document_url("", patterns)


def test_html_to_text_collapses_blank_lines() -> None:
    text = html_to_text("<h2>Title</h2>\n\n\n<p>One&nbsp;two</p><p></p><p>Three</p>")
    assert text == "Title\n\nOne two\nThree\n"


def test_create_source_by_name() -> None:
    client = FakeClient({})
    assert isinstance(create_source("Halifax", client), HalifaxSource)
    assert isinstance(create_source("escribe", client), EscribeSource)
    with pytest.raises(ValueError):
        create_source("toronto", client)
