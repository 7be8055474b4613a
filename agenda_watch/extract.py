from __future__ import annotations

import logging
import re
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from PIL import Image

from .ratelimit import Deadline


logger = logging.getLogger(__name__)

DEFAULT_TITLE_SUFFIX = "| Halifax.ca"
OCR_DPI = 200


class PdfExtractionError(RuntimeError):
    pass


class ToolchainError(RuntimeError):
    pass


def normalize_text(text: str) -> str:
    # Keep ordering stable; normalize common PDF/text artifacts.
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = text.replace("\u00a0", " ")  # NBSP
    text = text.replace("\u200b", "")  # zero-width space
    text = text.replace("\t", " ")

    lines: List[str] = []
    for line in text.split("\n"):
        line = line.rstrip()
        m = re.match(r"^ *", line)
        indent = m.group(0) if m else ""
        rest = line[len(indent) :]
        rest = re.sub(r" {2,}", " ", rest)
        lines.append(indent + rest)

    text = "\n".join(lines)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text


def _load_fitz():
    try:
        import fitz  # PyMuPDF
    except Exception:
        return None
    return fitz


def _load_tesseract():
    try:
        import pytesseract
    except Exception:
        return None
    return pytesseract


@dataclass(frozen=True)
class PdfToolchain:
    metadata: bool
    text: bool
    rasterize: bool
    ocr: bool

    def missing(self) -> List[str]:
        return [name for name in ("metadata", "text", "rasterize", "ocr") if not getattr(self, name)]

    def any(self) -> bool:
        return self.metadata or self.text or self.rasterize or self.ocr


def check_pdf_toolchain() -> PdfToolchain:
    """Probe the PDF/OCR capabilities available in this environment.

    Metadata, text-layer extraction and rasterization come from PyMuPDF; OCR
    needs pytesseract plus a working `tesseract` binary.
    """

    have_fitz = _load_fitz() is not None

    have_ocr = False
    pytesseract = _load_tesseract()
    if pytesseract is not None and shutil.which(pytesseract.pytesseract.tesseract_cmd):
        try:
            pytesseract.get_tesseract_version()
            have_ocr = True
        except Exception as e:
            logger.warning("tesseract is installed but not usable: %s", e)

    toolchain = PdfToolchain(metadata=have_fitz, text=have_fitz, rasterize=have_fitz, ocr=have_ocr)
    if toolchain.missing():
        logger.warning("PDF toolchain missing capabilities: %s", ", ".join(toolchain.missing()))
    return toolchain


def require_pdf_toolchain() -> PdfToolchain:
    toolchain = check_pdf_toolchain()
    if not toolchain.any():
        raise ToolchainError(
            "no PDF tooling available; install PyMuPDF for text extraction and "
            "pytesseract with the tesseract-ocr package for OCR"
        )
    return toolchain


def clean_title(title: str, *, suffix: str = DEFAULT_TITLE_SUFFIX) -> str:
    title = title.strip()
    if suffix and title.endswith(suffix):
        title = title[: -len(suffix)]
    return title.strip()


def read_pdf_title(path: Path) -> str:
    fitz = _load_fitz()
    if fitz is None:
        return ""
    try:
        with fitz.open(str(path)) as doc:
            return str((doc.metadata or {}).get("title") or "")
    except Exception as e:
        raise PdfExtractionError(f"reading PDF metadata: {e}") from e


def extract_pdf_text_layer(path: Path, *, deadline: Optional[Deadline] = None) -> str:
    """Text layer of every page, joined in page order and otherwise verbatim."""

    fitz = _load_fitz()
    if fitz is None:
        return ""
    parts: List[str] = []
    try:
        with fitz.open(str(path)) as doc:
            for idx, page in enumerate(doc, start=1):
                if deadline is not None and deadline.expired():
                    raise PdfExtractionError(f"text extraction timed out at page {idx}")
                parts.append(page.get_text("text") or "")
    except PdfExtractionError:
        raise
    except Exception as e:
        raise PdfExtractionError(f"extracting PDF text: {e}") from e
    return "\n".join(parts).strip()


def rasterize_pdf_pages(path: Path, out_dir: Path, *, deadline: Deadline) -> List[Path]:
    """Render each page to a PNG in `out_dir`, returned in page order."""

    fitz = _load_fitz()
    if fitz is None:
        return []

    pages: List[Path] = []
    try:
        with fitz.open(str(path)) as doc:
            for idx, page in enumerate(doc, start=1):
                if deadline.expired():
                    raise PdfExtractionError(f"rasterizing timed out at page {idx}")
                out = out_dir / f"page-{idx:05d}.png"
                page.get_pixmap(dpi=OCR_DPI).save(str(out))
                pages.append(out)
    except PdfExtractionError:
        raise
    except Exception as e:
        raise PdfExtractionError(f"rasterizing PDF: {e}") from e
    return pages


def ocr_image(path: Path, *, timeout_s: Optional[float] = None) -> str:
    pytesseract = _load_tesseract()
    if pytesseract is None:
        return ""

    # pytesseract kills the tesseract process once the timeout elapses; 0 means none
    timeout = max(1, int(timeout_s)) if timeout_s is not None else 0
    try:
        with Image.open(path) as img:
            return pytesseract.image_to_string(img, timeout=timeout) or ""
    except Exception as e:
        raise PdfExtractionError(f"OCR of {path.name}: {e}") from e


def ocr_pdf(path: Path, *, deadline: Deadline) -> str:
    """Rasterize every page and OCR it, joining text in ascending page order.

    Intermediate images live in a temporary directory that is removed on every
    exit path, including errors and timeouts.
    """

    with tempfile.TemporaryDirectory(prefix="agenda_watch_ocr_") as td:
        pages = rasterize_pdf_pages(path, Path(td), deadline=deadline)
        texts: List[str] = []
        for page in pages:
            remaining = deadline.remaining()
            if remaining is not None and remaining <= 0:
                raise PdfExtractionError(f"OCR timed out before {page.name}")
            texts.append(ocr_image(page, timeout_s=remaining).strip())
    return "\n".join(t for t in texts if t).strip()


@dataclass(frozen=True)
class PdfContent:
    title: str
    text: str
    engine: str


def extract_pdf(
    path: Path,
    *,
    toolchain: PdfToolchain,
    timeout_s: float = 300.0,
    title_suffix: str = DEFAULT_TITLE_SUFFIX,
) -> PdfContent:
    """Title and text for one PDF: text layer first, OCR when it is empty.

    Missing capabilities degrade to empty output. The whole stage is bounded by
    `timeout_s`.
    """

    deadline = Deadline(timeout_s)
    started = time.monotonic()

    title = clean_title(read_pdf_title(path), suffix=title_suffix) if toolchain.metadata else ""
    if deadline.expired():
        raise PdfExtractionError(f"timed out reading metadata of {path.name}")

    text = extract_pdf_text_layer(path, deadline=deadline) if toolchain.text else ""
    if deadline.expired():
        raise PdfExtractionError(f"timed out extracting text of {path.name}")
    if text:
        return PdfContent(title=title, text=text, engine="text")

    if not (toolchain.rasterize and toolchain.ocr):
        logger.info("no text layer in %s and OCR is unavailable", path.name)
        return PdfContent(title=title, text="", engine="none")

    text = ocr_pdf(path, deadline=deadline)
    logger.debug("OCR of %s took %.1fs", path.name, time.monotonic() - started)
    return PdfContent(title=title, text=text, engine="ocr")
