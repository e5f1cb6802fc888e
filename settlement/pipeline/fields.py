"""
Field vocabulary and value parsers for bank payment confirmations.

Labels are matched as whole lines (after trimming). A few labels carry
their value on the same line (``Идентификатор операции B5171...``); those
are listed in ``INLINE_VALUE_LABELS``.
"""
from __future__ import annotations

import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional

from settlement.normalize import card_suffix, digits_only, normalize_phone  # noqa: F401

# ---------------------------------------------------------------------------
# Label vocabulary
# ---------------------------------------------------------------------------

FIELD_LABELS: dict[str, str] = {
    "Итого": "total",
    "Перевод": "transfer_type",
    "Статус": "status_text",
    "Сумма": "amount",
    "Комиссия": "commission",
    "Отправитель": "sender_name",
    "Счёт списания": "sender_account",
    "Счет списания": "sender_account",
    "Телефон получателя": "recipient_phone",
    "Получатель": "recipient_name",
    "Банк получателя": "recipient_bank",
    "Карта получателя": "recipient_card",
    "Идентификатор операции": "operation_id",
    "СБП": "sbp_code",
}

INLINE_VALUE_LABELS: tuple[str, ...] = ("Идентификатор операции",)

MANDATORY_AMOUNT_FIELDS = ("amount", "total")
RECIPIENT_IDENTIFIER_FIELDS = ("recipient_phone", "recipient_card")


def label_of(line: str) -> Optional[str]:
    """Return the field name if *line* is exactly a known label."""
    return FIELD_LABELS.get(line.strip().rstrip(":").strip())


def inline_label_of(line: str) -> Optional[tuple[str, str]]:
    """Return ``(field, value)`` for a label that carries its value inline."""
    for label in INLINE_VALUE_LABELS:
        if line.startswith(label + " ") or line.startswith(label + ":"):
            value = line[len(label):].lstrip(": ").strip()
            if value:
                return FIELD_LABELS[label], value
    return None


def is_label(line: str) -> bool:
    return label_of(line) is not None


# ---------------------------------------------------------------------------
# Value parsers
# ---------------------------------------------------------------------------

_MONEY_CHARS = re.compile(r"[^\d,.]")
_DATETIME_RE = re.compile(r"(\d{2})\.(\d{2})\.(\d{4})\s+(\d{2}):(\d{2}):(\d{2})")
_RECEIPT_NUMBER_RE = re.compile(r"Квитанция\s*№\s*([\d-]+)")
_CARD_RE = re.compile(r"^\d{4,6}\*{4,}\d{4}$")
_ACCOUNT_RE = re.compile(r"^\d{3,}\*{2,}\d{4}$")
_SHORT_NAME_RE = re.compile(r"^[А-ЯЁ][а-яё]+\s+[А-ЯЁ]\.?$")


def parse_money(value: str | None) -> Optional[Decimal]:
    """Parse a localized amount such as ``2 700 i``, ``4 500,00 ₽`` or ``1.5``."""
    if not value:
        return None
    cleaned = value.replace(" ", "").replace("\u00a0", "")
    cleaned = _MONEY_CHARS.sub("", cleaned)
    if not cleaned or not any(c.isdigit() for c in cleaned):
        return None
    if "," in cleaned and "." in cleaned:
        # the right-most separator is the decimal one
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    else:
        cleaned = cleaned.replace(",", ".")
    if cleaned.count(".") > 1:
        head, _, tail = cleaned.rpartition(".")
        cleaned = head.replace(".", "") + "." + tail
    try:
        return Decimal(cleaned.strip("."))
    except InvalidOperation:
        return None


def parse_commission(value: str | None) -> Optional[Decimal]:
    if not value:
        return None
    if "без комиссии" in value.lower():
        return Decimal("0")
    return parse_money(value)


def parse_datetime(lines: list[str]) -> Optional[datetime]:
    """Find ``DD.MM.YYYY HH:MM:SS``; banks print it on the first line."""
    for line in lines:
        match = _DATETIME_RE.search(line)
        if not match:
            continue
        day, month, year, hour, minute, second = (int(g) for g in match.groups())
        try:
            return datetime(year, month, day, hour, minute, second)
        except ValueError:
            continue
    return None


def find_receipt_number(text: str) -> Optional[str]:
    match = _RECEIPT_NUMBER_RE.search(text)
    return match.group(1) if match else None


# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------

def looks_like_phone(value: str | None) -> bool:
    if not value:
        return False
    return value.strip().startswith("+") or len(digits_only(value)) >= 10


def looks_like_card(value: str | None) -> bool:
    return bool(value) and bool(_CARD_RE.match(value.replace(" ", "")))


def looks_like_account(value: str | None) -> bool:
    return bool(value) and bool(_ACCOUNT_RE.match(value.replace(" ", "")))


def looks_like_name(value: str | None) -> bool:
    if not value:
        return False
    value = value.strip()
    return value[:1].isupper() and not looks_like_phone(value)


def find_short_name(lines: list[str], window: int = 5) -> Optional[str]:
    """Recover ``Имя Ф.`` from the tail of the document."""
    for line in reversed(lines[-window:]):
        if _SHORT_NAME_RE.match(line):
            return line
    return None


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def detect_bank(text: str) -> str:
    lowered = text.lower()
    if "tbank.ru" in lowered or "т-банк" in lowered or "тинькофф" in lowered:
        return "tbank"
    return "unknown"


def classify_transfer(transfer_type: str | None, card: str | None) -> str:
    """Tag a transfer as ``phone``, ``card`` or ``other``."""
    text = (transfer_type or "").lower()
    if "по номеру телефона" in text:
        return "phone"
    if card or "карт" in text:
        return "card"
    return "other"
