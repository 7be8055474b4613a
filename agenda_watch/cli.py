from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .config import Config, ConfigError, init_config, load_config, resolve_config_path
from .crawl import CrawlError, crawl
from .db import table_count
from .external import process_external_content_urls
from .extract import ToolchainError
from .fetch import HttpClient
from .ratelimit import Deadline, TokenBucket
from .search import meeting_history, meetings_citing, search_agendas, search_documents
from .sources import create_source


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

STATUS_TABLES = (
    "meetings",
    "meeting_versions",
    "meeting_agenda_content",
    "external_content_urls",
    "external_content",
)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)


def _run_crawl(cfg: Config, db_path: Path, limiter: TokenBucket) -> int:
    client = HttpClient(limiter=limiter, user_agent=cfg.user_agent, timeout_s=cfg.fetch_timeout_s)
    sources = [create_source(name, client, document_url_patterns=cfg.document_url_patterns) for name in cfg.sources]
    try:
        result = crawl(
            db_path=db_path,
            sources=sources,
            lookback_months=cfg.lookback_months,
            initial_lookback_days=cfg.initial_lookback_days,
            progress_every=cfg.progress_every,
        )
    except CrawlError as e:
        print(f"Crawl failed: {e}", file=sys.stderr)
        return 2

    print(
        f"Crawled meetings >= {result.cutoff.isoformat()}: "
        f"listed={result.listed} fresh={result.skipped_fresh} saved={result.processed}"
    )
    return 0


def _run_external(cfg: Config, db_path: Path, limiter: TokenBucket) -> int:
    deadline = Deadline(cfg.run_budget_s)
    client = HttpClient(limiter=limiter, deadline=deadline, user_agent=cfg.user_agent, timeout_s=cfg.fetch_timeout_s)
    try:
        result = process_external_content_urls(
            db_path=db_path,
            client=client,
            deadline=deadline,
            batch_size=cfg.batch_size,
            fetch_timeout_s=cfg.fetch_timeout_s,
            pdf_timeout_s=cfg.pdf_timeout_s,
            title_suffix=cfg.title_suffix,
            progress_every=cfg.progress_every,
        )
    except ToolchainError as e:
        print(f"External content processing failed: {e}", file=sys.stderr)
        return 2

    suffix = " (ran out of time)" if result.out_of_time else ""
    print(
        f"Processed {result.processed} / {result.backlog} external content urls, "
        f"{result.failed} failed{suffix}"
    )
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Incremental municipal meeting and agenda ingestion")
    parser.add_argument("--crawl", action="store_true", help="List sources and save new or changed meetings")
    parser.add_argument(
        "--process-external",
        action="store_true",
        help="Fetch and extract one batch of linked documents not yet fetched",
    )
    parser.add_argument("--search", type=str, default=None, help="Full-text search over agendas (FTS5 query syntax)")
    parser.add_argument("--documents", action="store_true", help="With --search, search linked documents instead of agendas")
    parser.add_argument("--limit", type=int, default=20, help="Maximum search results (default: 20)")
    parser.add_argument("--history", type=str, default=None, metavar="MEETING_ID", help="Print observed versions of a meeting")
    parser.add_argument("--cited-by", type=str, default=None, metavar="URL", help="Print meetings whose agenda linked to URL")
    parser.add_argument("--status", action="store_true", help="Print row counts for the main tables")
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config YAML (optional; defaults to XDG config or ./agenda_watch.yaml)",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Create a starter config at the resolved config path and exit",
    )
    parser.add_argument(
        "--overwrite-config",
        action="store_true",
        help="With --init-config, overwrite an existing config file",
    )
    parser.add_argument("--print-config-path", action="store_true", help="Print the resolved config path and exit")
    parser.add_argument("--db", type=str, default=None, help="SQLite database path (overrides config)")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level")

    args = parser.parse_args(argv)

    # For --init-config, prefer initializing in XDG config by default.
    config_path = resolve_config_path(args.config, prefer_xdg=bool(args.init_config))

    if args.print_config_path:
        print(config_path if config_path is not None else "(built-in defaults)")
        return 0

    if args.init_config:
        init_config(config_path, overwrite=bool(args.overwrite_config))
        print(f"Initialized config at {config_path}")
        return 0

    if not (args.crawl or args.process_external or args.search or args.history or args.cited_by or args.status):
        parser.error("Provide at least one of --crawl, --process-external, --search, --history, --cited-by or --status")

    try:
        cfg = load_config(config_path)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        return 2

    _setup_logging(bool(args.verbose))
    db_path = Path(args.db) if args.db else cfg.database
    logger.debug("using database %s", db_path)

    # One limiter for every outbound request made by this process.
    limiter = TokenBucket(cfg.rate_per_second, cfg.rate_burst)

    if args.crawl:
        rc = _run_crawl(cfg, db_path, limiter)
        if rc:
            return rc

    if args.process_external:
        rc = _run_external(cfg, db_path, limiter)
        if rc:
            return rc

    if args.search:
        if args.documents:
            doc_hits = search_documents(db_path=db_path, query=args.search, limit=args.limit)
            for d in doc_hits:
                print(f"{d.title or '(untitled)'}\t{d.url}\n    {d.snippet}")
            print(f"{len(doc_hits)} document(s)")
        else:
            hits = search_agendas(db_path=db_path, query=args.search, limit=args.limit)
            for h in hits:
                print(f"{h.date}\t{h.type}\t{h.agenda_url}\n    {h.snippet}")
            print(f"{len(hits)} meeting(s)")

    if args.history:
        versions = meeting_history(db_path=db_path, meeting_id=args.history)
        if not versions:
            print(f"No versions recorded for meeting {args.history}")
        for v in versions:
            note = f" ({v.schedule_note})" if v.schedule_note else ""
            print(f"{v.observed}\tagenda={v.agenda_content_id}{note}")
            if v.minutes_url:
                print(f"    minutes: {v.minutes_url}")
            if v.video_url:
                print(f"    video: {v.video_url}")

    if args.cited_by:
        for meeting_id in meetings_citing(db_path=db_path, url=args.cited_by):
            print(meeting_id)

    if args.status:
        for table in STATUS_TABLES:
            print(f"{table}: {table_count(db_path, table)}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
