from __future__ import annotations

import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .db import connect, format_time, unfetched_urls, utc_now
from .extract import DEFAULT_TITLE_SUFFIX, PdfExtractionError, PdfToolchain, extract_pdf, require_pdf_toolchain
from .fetch import FetchError, HttpClient, ResponseMeta
from .ratelimit import Deadline, DeadlineExceeded
from .store import content_id_file, external_content_exists, save_external_content


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExternalRunResult:
    backlog: int
    processed: int
    failed: int
    out_of_time: bool


def _mark_url(
    *,
    db_path: Path,
    url: str,
    meta: Optional[ResponseMeta],
    error: Optional[str] = None,
    cid: Optional[str] = None,
    title: str = "",
    text: str = "",
) -> None:
    """Record the outcome of one fetch. Content row and URL update commit together."""

    with connect(db_path) as conn:
        if cid is not None:
            save_external_content(conn, cid=cid, title=title, text=text)
        conn.execute(
            """
            UPDATE external_content_urls SET
                fetched = ?,
                content_type = ?,
                size = ?,
                last_modified = ?,
                etag = ?,
                error = ?,
                external_content_id = ?
            WHERE url = ?
            """,
            (
                format_time(utc_now()),
                meta.content_type if meta is not None else None,
                meta.size if meta is not None else None,
                format_time(meta.last_modified) if meta is not None and meta.last_modified else None,
                meta.etag if meta is not None else None,
                error,
                cid,
                url,
            ),
        )


def process_external_url(
    *,
    db_path: Path,
    client: HttpClient,
    url: str,
    toolchain: PdfToolchain,
    deadline: Deadline,
    fetch_timeout_s: float = 60.0,
    pdf_timeout_s: float = 300.0,
    title_suffix: str = DEFAULT_TITLE_SUFFIX,
) -> bool:
    """Fetch one document URL, extract it, and record the result.

    Returns False when the URL was marked with an error. Raises DeadlineExceeded
    when the run budget ran out before the fetch or extraction finished; the
    URL is then left unfetched for the next run.
    """

    with tempfile.NamedTemporaryFile(prefix="agenda_watch_", suffix=".download") as tmp:
        try:
            meta = client.download(url, tmp, timeout_s=deadline.bound(fetch_timeout_s))
        except FetchError as e:
            if deadline.expired():
                raise DeadlineExceeded(f"fetching {url}: {e}") from e
            logger.warning("fetch failed url=%s: %s", url, e)
            _mark_url(db_path=db_path, url=url, meta=None, error=str(e))
            return False

        path = Path(tmp.name)
        cid = content_id_file(path)
        if external_content_exists(db_path=db_path, cid=cid):
            logger.debug("url=%s content already known as %s", url, cid)
            _mark_url(db_path=db_path, url=url, meta=meta, cid=cid)
            return True

        title = ""
        text = ""
        if meta.media_type == "application/pdf":
            try:
                pdf = extract_pdf(
                    path,
                    toolchain=toolchain,
                    timeout_s=deadline.bound(pdf_timeout_s),
                    title_suffix=title_suffix,
                )
            except PdfExtractionError as e:
                if deadline.expired():
                    raise DeadlineExceeded(f"extracting {url}: {e}") from e
                logger.warning("PDF extraction failed url=%s: %s", url, e)
                _mark_url(db_path=db_path, url=url, meta=meta, error=str(e))
                return False
            title = pdf.title
            text = pdf.text
            logger.debug("url=%s extracted with %s (%d chars)", url, pdf.engine, len(text))
        else:
            logger.debug("url=%s has content type %r; storing without text", url, meta.content_type)

        _mark_url(db_path=db_path, url=url, meta=meta, cid=cid, title=title, text=text)
    return True


def process_external_content_urls(
    *,
    db_path: Path,
    client: HttpClient,
    toolchain: Optional[PdfToolchain] = None,
    deadline: Optional[Deadline] = None,
    batch_size: int = 500,
    fetch_timeout_s: float = 60.0,
    pdf_timeout_s: float = 300.0,
    run_budget_s: float = 1800.0,
    title_suffix: str = DEFAULT_TITLE_SUFFIX,
    progress_every: int = 10,
) -> ExternalRunResult:
    """Work through one batch of never-fetched document URLs.

    Each URL is fetched, hashed, and (for PDFs) run through text extraction,
    then committed on its own. Per-URL failures are recorded on the URL row and
    the batch continues. The run stops cleanly once the time budget is spent,
    leaving the remaining URLs for the next run.

    Raises ToolchainError when no PDF tooling at all is available.
    """

    if toolchain is None:
        toolchain = require_pdf_toolchain()
    if deadline is None:
        deadline = client.deadline if client.deadline.budget_s is not None else Deadline(run_budget_s)

    urls = unfetched_urls(db_path, limit=batch_size)
    logger.info("need %d external content urls", len(urls))

    processed = 0
    failed = 0
    out_of_time = False
    for i, url in enumerate(urls):
        if deadline.expired():
            out_of_time = True
            break
        try:
            ok = process_external_url(
                db_path=db_path,
                client=client,
                url=url,
                toolchain=toolchain,
                deadline=deadline,
                fetch_timeout_s=fetch_timeout_s,
                pdf_timeout_s=pdf_timeout_s,
                title_suffix=title_suffix,
            )
        except DeadlineExceeded as e:
            logger.debug("stopping: %s", e)
            out_of_time = True
            break

        processed += 1
        if not ok:
            failed += 1
        if (i + 1) % progress_every == 0:
            logger.info("completed %d / %d external content urls", i + 1, len(urls))

    if out_of_time:
        logger.info("completed %d / %d external content urls and ran out of time", processed, len(urls))
    else:
        logger.info("completed %d / %d external content urls", processed, len(urls))

    return ExternalRunResult(backlog=len(urls), processed=processed, failed=failed, out_of_time=out_of_time)


def reset_failed_external_urls(*, db_path: Path, like: Optional[str] = None) -> int:
    """Clear fetch state on errored URLs so the next run retries them.

    `like` is an SQL LIKE pattern limiting which URLs are reset. Returns the
    number of URLs reset.
    """

    sql = """
        UPDATE external_content_urls SET
            fetched = NULL,
            content_type = NULL,
            size = NULL,
            last_modified = NULL,
            etag = NULL,
            error = NULL,
            external_content_id = NULL
        WHERE error IS NOT NULL
    """
    params: tuple = ()
    if like:
        sql += " AND url LIKE ?"
        params = (like,)

    with connect(db_path) as conn:
        cur = conn.execute(sql, params)
    return int(cur.rowcount)
