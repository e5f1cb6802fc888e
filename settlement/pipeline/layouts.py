"""
Layout strategies.

Banks print the same confirmation fields in different arrangements. Each
strategy takes the trimmed line list and either recovers the raw field
values or declines. ``LAYOUTS`` is the priority order the parser uses.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from settlement.pipeline.fields import (
    MANDATORY_AMOUNT_FIELDS,
    RECIPIENT_IDENTIFIER_FIELDS,
    inline_label_of,
    label_of,
    looks_like_account,
    looks_like_card,
    looks_like_name,
    looks_like_phone,
    parse_commission,
    parse_money,
)

logger = logging.getLogger(__name__)


@dataclass
class LayoutMatch:
    """Outcome of one strategy on one document."""
    layout: str
    values: dict[str, Any] = field(default_factory=dict)
    label_lines: dict[str, int] = field(default_factory=dict)
    error_reason: Optional[str] = None
    error_line: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error_reason is None


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

_VALIDATORS = {
    "recipient_phone": looks_like_phone,
    "recipient_card": looks_like_card,
    "sender_account": looks_like_account,
    "sender_name": looks_like_name,
    "recipient_name": looks_like_name,
}


def _line_kind(line: str) -> tuple[str, Optional[str], Optional[str]]:
    """Classify a line as ``label``, ``inline`` (label + value) or ``value``."""
    name = label_of(line)
    if name:
        return "label", name, None
    inline = inline_label_of(line)
    if inline:
        return "inline", inline[0], inline[1]
    return "value", None, None


def _assign(raw: dict[str, str], label_lines: dict[str, int], name: str, value: str, idx: int) -> None:
    # first occurrence wins
    if name in raw:
        return
    raw[name] = value
    label_lines[name] = idx


def _mark_empty(label_lines: dict[str, int], name: str, idx: int) -> None:
    """Remember a label printed without a value."""
    label_lines.setdefault(name, idx)


def _label_run(kinds: list, start: int) -> tuple[list[int], list[int]]:
    """Label run starting at *start* and the value lines right after it."""
    run_end = start
    while run_end < len(kinds) and kinds[run_end][0] == "label":
        run_end += 1
    value_end = run_end
    while value_end < len(kinds) and kinds[value_end][0] == "value":
        value_end += 1
    return list(range(start, run_end)), list(range(run_end, value_end))


def _finalize(layout: str, raw: dict[str, str], label_lines: dict[str, int]) -> LayoutMatch:
    """Validate raw values and check the mandatory fields."""
    values: dict[str, Any] = {}
    for name, value in raw.items():
        validator = _VALIDATORS.get(name)
        if validator and not validator(value):
            logger.debug("%s: dropping %s=%r (failed validation)", layout, name, value)
            continue
        if name in ("amount", "total"):
            money = parse_money(value)
            if money is not None:
                values[name] = money
        elif name == "commission":
            values[name] = parse_commission(value)
        else:
            values[name] = value

    match = LayoutMatch(layout=layout, values=values, label_lines=label_lines)

    if not any(values.get(f) is not None for f in MANDATORY_AMOUNT_FIELDS):
        match.error_reason = "missing amount"
        match.error_line = next(
            (label_lines[f] for f in MANDATORY_AMOUNT_FIELDS if f in label_lines), None
        )
    elif not any(values.get(f) for f in RECIPIENT_IDENTIFIER_FIELDS):
        match.error_reason = "missing recipient identifier"
        match.error_line = next(
            (label_lines[f] for f in RECIPIENT_IDENTIFIER_FIELDS if f in label_lines), None
        )
    return match


# ---------------------------------------------------------------------------
# Inline label / next-line value
# ---------------------------------------------------------------------------

class InlineLabelLayout:
    """Each label line is followed by its value line.

    A label followed by another label is a field the bank left empty,
    unless the labels open a run at least as long as the values after it;
    that is a block document and the layout declines.
    """

    name = "inline"

    def try_extract(self, lines: list[str]) -> Optional[LayoutMatch]:
        kinds = [_line_kind(line) for line in lines]
        raw: dict[str, str] = {}
        label_lines: dict[str, int] = {}

        for idx, (kind, name, value) in enumerate(kinds):
            if kind == "inline":
                _assign(raw, label_lines, name, value, idx)
                continue
            if kind != "label":
                continue
            next_kind = kinds[idx + 1][0] if idx + 1 < len(lines) else None
            if next_kind == "value":
                _assign(raw, label_lines, name, lines[idx + 1], idx)
                continue
            if next_kind == "label":
                run, value_lines = _label_run(kinds, idx)
                if len(value_lines) >= len(run):
                    return None
            _mark_empty(label_lines, name, idx)

        if not label_lines:
            return None
        return _finalize(self.name, raw, label_lines)


# ---------------------------------------------------------------------------
# Block of labels / block of values
# ---------------------------------------------------------------------------

class BlockLabelLayout:
    """Runs of label lines followed by runs of value lines.

    When a run has fewer values than labels, the values belong to the
    trailing labels and the leading ones were printed empty.
    """

    name = "block"

    def try_extract(self, lines: list[str]) -> Optional[LayoutMatch]:
        kinds = [_line_kind(line) for line in lines]
        raw: dict[str, str] = {}
        label_lines: dict[str, int] = {}

        idx = 0
        while idx < len(lines):
            kind, name, value = kinds[idx]
            if kind == "inline":
                _assign(raw, label_lines, name, value, idx)
                idx += 1
                continue
            if kind != "label":
                idx += 1
                continue

            run, value_lines = _label_run(kinds, idx)
            paired = min(len(run), len(value_lines))
            if paired < len(run):
                logger.debug(
                    "block: %d labels at line %d but only %d values", len(run), idx, len(value_lines)
                )
            empty, filled = run[:len(run) - paired], run[len(run) - paired:]
            for label_idx in empty:
                _mark_empty(label_lines, kinds[label_idx][1], label_idx)
            for label_idx, value_idx in zip(filled, value_lines):
                _assign(raw, label_lines, kinds[label_idx][1], lines[value_idx], label_idx)
            idx = run[-1] + 1 + paired

        if not label_lines:
            return None
        return _finalize(self.name, raw, label_lines)


LAYOUTS = (InlineLabelLayout(), BlockLabelLayout())
