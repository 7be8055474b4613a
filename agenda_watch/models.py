from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List


@dataclass(frozen=True)
class Meeting:
    """One listing entry as published by a source.

    `urls` maps a kind ("agenda", "minutes", "video") to an absolute URL.
    """

    id: str
    type: str
    date: date
    note: str = ""
    urls: Dict[str, str] = field(default_factory=dict)

    def url(self, name: str) -> str:
        return self.urls.get(name, "")


@dataclass(frozen=True)
class MeetingAgenda:
    content_html: str  # should be consistently formatted
    content_text: str
    content_urls: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ListPage:
    meetings: List[Meeting]
    next_token: str = ""
