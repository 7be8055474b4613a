from __future__ import annotations

import calendar
import logging
import random
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Set, Tuple

from .db import max_observed, utc_now
from .freshness import is_fresh
from .models import Meeting
from .ratelimit import Deadline, DeadlineExceeded
from .sources import Source, SourceError
from .store import StoreError, save_meeting


logger = logging.getLogger(__name__)


class CrawlError(RuntimeError):
    pass


@dataclass(frozen=True)
class CrawlResult:
    cutoff: date
    listed: int
    skipped_fresh: int
    processed: int


def add_months(dt: datetime, months: int) -> datetime:
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def compute_cutoff(
    *,
    db_path: Path,
    now: datetime,
    lookback_months: int = 8,
    initial_lookback_days: int = 30,
) -> date:
    """Oldest meeting date this run still considers.

    Upstream systems post and correct historical entries after the fact, so the
    window reaches well behind the newest observation.
    """

    newest = max_observed(db_path)
    if newest is None:
        return (now - timedelta(days=initial_lookback_days)).date()
    return add_months(newest, -lookback_months).date()


def list_needed_meetings(
    *,
    db_path: Path,
    source: Source,
    cutoff: date,
    now: datetime,
    rng: Optional[random.Random] = None,
) -> Tuple[List[Meeting], int, int]:
    """Walk a source's pages newest-first, returning (needed, listed, skipped_fresh)."""

    needed: List[Meeting] = []
    listed = 0
    skipped = 0
    seen: Set[str] = set()
    token = ""
    while True:
        try:
            page = source.list(token)
        except SourceError as e:
            raise CrawlError(f"listing {source.name} meetings: {e}") from e

        done = False
        for m in page.meetings:
            if m.date < cutoff:
                done = True
                break
            listed += 1
            if is_fresh(db_path=db_path, meeting_id=m.id, meeting_date=m.date, now=now, rng=rng):
                skipped += 1
                continue
            needed.append(m)

        if done or not page.next_token:
            break
        if page.next_token in seen:
            raise CrawlError(f"listing {source.name} meetings: pagination loop at {page.next_token}")
        seen.add(page.next_token)
        token = page.next_token

    return needed, listed, skipped


def process_meeting(*, db_path: Path, source: Source, meeting: Meeting, observed: datetime) -> str:
    agenda_url = meeting.url("agenda")
    if not agenda_url:
        raise CrawlError("no agenda URL")

    try:
        agenda = source.agenda(agenda_url)
    except SourceError as e:
        raise CrawlError(f"fetching agenda: {e}") from e

    try:
        return save_meeting(db_path=db_path, meeting=meeting, agenda=agenda, observed=observed)
    except StoreError as e:
        raise CrawlError(f"saving: {e}") from e


def crawl(
    *,
    db_path: Path,
    sources: Sequence[Source],
    now: Optional[datetime] = None,
    clock: Callable[[], datetime] = utc_now,
    rng: Optional[random.Random] = None,
    lookback_months: int = 8,
    initial_lookback_days: int = 30,
    progress_every: int = 10,
    deadline: Optional[Deadline] = None,
) -> CrawlResult:
    """List every source, then fetch and save each meeting that is not fresh.

    Listing finishes for all sources before anything is written, so a listing
    failure leaves the store untouched. Meetings are then processed one at a
    time; the first failure aborts the run, as does running past `deadline`.
    """

    now = now or clock()
    cutoff = compute_cutoff(
        db_path=db_path,
        now=now,
        lookback_months=lookback_months,
        initial_lookback_days=initial_lookback_days,
    )

    queue: List[Tuple[Source, Meeting]] = []
    listed = 0
    skipped = 0
    try:
        for source in sources:
            needed, n_listed, n_skipped = list_needed_meetings(
                db_path=db_path, source=source, cutoff=cutoff, now=now, rng=rng
            )
            logger.info("%s: %d meetings listed, %d fresh", source.name, n_listed, n_skipped)
            queue.extend((source, m) for m in needed)
            listed += n_listed
            skipped += n_skipped
    except DeadlineExceeded as e:
        raise CrawlError(f"listing meetings: {e}") from e

    logger.info("need %d meetings >= %s", len(queue), cutoff.isoformat())

    for i, (source, m) in enumerate(queue):
        if deadline is not None and deadline.expired():
            raise CrawlError(f"run deadline exceeded after {i} / {len(queue)} meetings")
        try:
            process_meeting(db_path=db_path, source=source, meeting=m, observed=clock())
        except (CrawlError, DeadlineExceeded) as e:
            raise CrawlError(
                f"processing meeting source={source.name} date={m.date.isoformat()} type={m.type}: {e}"
            ) from e

        if (i + 1) % progress_every == 0:
            logger.info("completed %d / %d meetings", i + 1, len(queue))

    logger.info("completed %d / %d meetings", len(queue), len(queue))
    return CrawlResult(cutoff=cutoff, listed=listed, skipped_fresh=skipped, processed=len(queue))
