from __future__ import annotations

import random
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Optional

from .db import last_observed


# Meetings near today change often; check them on every roughly-hourly run.
# The 2-minute margin keeps a run that fires slightly early from skipping.
NEAR_WINDOW = timedelta(days=7)
NEAR_THRESHOLD = timedelta(hours=1) - timedelta(minutes=2)

# Older meetings rarely change. Jitter spreads their re-checks across runs.
FAR_THRESHOLD = timedelta(hours=24)
FAR_JITTER = timedelta(hours=1)


def freshness_threshold(meeting_date: date, now: datetime, rng: Optional[random.Random] = None) -> timedelta:
    if abs(meeting_date - now.date()) <= NEAR_WINDOW:
        return NEAR_THRESHOLD
    rng = rng or random.Random()
    jitter = rng.uniform(-1.0, 1.0) * FAR_JITTER.total_seconds()
    return FAR_THRESHOLD + timedelta(seconds=jitter)


def is_fresh(
    *,
    db_path: Path,
    meeting_id: str,
    meeting_date: date,
    now: datetime,
    rng: Optional[random.Random] = None,
) -> bool:
    """Whether a known meeting was observed recently enough to skip fetching."""

    observed = last_observed(db_path, meeting_id)
    if observed is None:
        return False
    return now - observed < freshness_threshold(meeting_date, now, rng)
