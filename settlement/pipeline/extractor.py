"""
PDF text extraction boundary.

Text comes from PyMuPDF. Each attempt runs in a worker thread and is
bounded by a timeout; a document that cannot be opened at all is an input
error and is not retried.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout

import fitz  # PyMuPDF

from settlement.config import settings
from settlement.errors import ExternalDependencyFailure, UnreadableDocument

logger = logging.getLogger(__name__)


def _read_pages(document: bytes) -> str:
    try:
        doc = fitz.open(stream=document, filetype="pdf")
    except (RuntimeError, ValueError) as exc:
        raise UnreadableDocument(str(exc)) from exc

    with doc:
        pages = []
        for page_index in range(doc.page_count):
            page = doc.load_page(page_index)
            pages.append(page.get_text("text") or "")
        logger.debug("Extracted %d page(s), %d chars", doc.page_count, sum(len(p) for p in pages))
    return "\n".join(pages)


def extract_text(
    document: bytes,
    timeout: float | None = None,
    max_attempts: int | None = None,
) -> str:
    """Return the plain text of a PDF document.

    Raises ``UnreadableDocument`` if the bytes are not a PDF and
    ``ExternalDependencyFailure`` once every attempt has timed out.
    """
    timeout = settings.EXTRACTION_TIMEOUT_SECONDS if timeout is None else timeout
    max_attempts = settings.EXTRACTION_MAX_ATTEMPTS if max_attempts is None else max_attempts
    if not document:
        raise UnreadableDocument("empty document")

    for attempt in range(1, max_attempts + 1):
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pdf-extract")
        future = executor.submit(_read_pages, document)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            logger.warning(
                "Text extraction timed out after %.1fs (attempt %d/%d)",
                timeout, attempt, max_attempts,
            )
        finally:
            # a hung extraction thread is abandoned, not joined
            executor.shutdown(wait=False, cancel_futures=True)

    raise ExternalDependencyFailure(
        f"text extraction timed out {max_attempts} time(s)"
    )
