"""
Receipt parser: document text → ``ParsedReceipt``.

The parser never raises on malformed input. A document no layout can read
comes back with ``status="failed"``, the reason, the offending line index
and the full line list so a new layout rule can be written from the stored
record alone.
"""
from __future__ import annotations

import hashlib
import logging
from typing import Callable, Optional, Sequence

from settlement.errors import UnreadableDocument
from settlement.pipeline.extractor import extract_text
from settlement.pipeline.fields import (
    classify_transfer,
    detect_bank,
    find_receipt_number,
    find_short_name,
    parse_datetime,
)
from settlement.pipeline.layouts import LAYOUTS, LayoutMatch
from settlement.schemas import ParsedReceipt

logger = logging.getLogger(__name__)


def split_lines(text: str) -> list[str]:
    return [line.strip() for line in (text or "").splitlines() if line.strip()]


def content_hash(document: bytes) -> str:
    return hashlib.sha256(document).hexdigest()


def _build(match: LayoutMatch, text: str, lines: list[str]) -> ParsedReceipt:
    values = dict(match.values)
    if values.get("amount") is None:
        values["amount"] = values.get("total")

    kind = classify_transfer(values.get("transfer_type"), values.get("recipient_card"))
    if kind == "phone" and not values.get("recipient_name"):
        values["recipient_name"] = find_short_name(lines)

    return ParsedReceipt(
        status="ok",
        amount=values.get("amount"),
        total=values.get("total"),
        commission=values.get("commission"),
        transaction_date=parse_datetime(lines),
        sender_name=values.get("sender_name"),
        sender_account=values.get("sender_account"),
        recipient_name=values.get("recipient_name"),
        recipient_phone=values.get("recipient_phone"),
        recipient_card=values.get("recipient_card"),
        recipient_bank=values.get("recipient_bank"),
        transfer_type=values.get("transfer_type"),
        transfer_kind=kind,
        operation_id=values.get("operation_id"),
        sbp_code=values.get("sbp_code"),
        receipt_number=find_receipt_number(text),
        bank=detect_bank(text),
        status_text=values.get("status_text"),
        layout=match.layout,
        raw_text=text,
        lines=lines,
    )


def _failed(text: str, lines: list[str], reason: str, line: Optional[int] = None) -> ParsedReceipt:
    return ParsedReceipt(
        status="failed",
        raw_text=text or "",
        lines=lines,
        error_reason=reason,
        error_line=line,
        bank=detect_bank(text or ""),
    )


def parse_lines(lines: list[str], text: str | None = None, layouts: Sequence = LAYOUTS) -> ParsedReceipt:
    """Try every layout in order and keep the first that succeeds."""
    text = "\n".join(lines) if text is None else text
    if not lines:
        return _failed(text, lines, "empty document")

    first_miss: Optional[LayoutMatch] = None
    for layout in layouts:
        match = layout.try_extract(lines)
        if match is None:
            logger.debug("Layout %s declined", layout.name)
            continue
        if match.ok:
            logger.info("Parsed receipt with %s layout (%d lines)", match.layout, len(lines))
            return _build(match, text, lines)
        logger.debug("Layout %s: %s (line %s)", layout.name, match.error_reason, match.error_line)
        if first_miss is None:
            first_miss = match

    if first_miss is not None:
        return _failed(text, lines, first_miss.error_reason, first_miss.error_line)
    return _failed(text, lines, "no known layout")


def parse_receipt_text(text: str) -> ParsedReceipt:
    return parse_lines(split_lines(text), text=text)


def parse_document(
    document: bytes,
    extractor: Callable[[bytes], str] = extract_text,
) -> ParsedReceipt:
    """Extract and parse a PDF.

    Only ``ExternalDependencyFailure`` escapes; an unreadable document is
    a ``failed`` receipt.
    """
    digest = content_hash(document)
    try:
        text = extractor(document)
    except UnreadableDocument as exc:
        logger.warning("Unreadable document %s: %s", digest[:12], exc)
        parsed = _failed("", [], f"unreadable document: {exc}")
    else:
        parsed = parse_receipt_text(text)
    return parsed.model_copy(update={"content_hash": digest})
