from __future__ import annotations

import logging
import re
from typing import List

from .errors import MalformedRow
from .model import Opcode, ScriptRecord

logger = logging.getLogger(__name__)

COMMENT_PREFIX = "//"
MIN_CELLS = 6

ROW_SPLIT_RE = re.compile(r"[\r\n]+")


def split_row(row: str) -> List[str]:
    # Split on commas, but not inside "quoted" segments
    in_quote = False
    cells: List[str] = []
    buf: List[str] = []
    for ch in row:
        if ch == '"':
            in_quote = not in_quote
        if ch == ',' and not in_quote:
            cells.append(''.join(buf))
            buf = []
            continue
        buf.append(ch)
    cells.append(''.join(buf))
    return cells


def _unquote_payload(raw: str) -> str:
    text = raw.replace('""', '"')
    if text.startswith('"'):
        text = text[1:]
    if text.endswith('"'):
        text = text[:-1]
    return text


def parse_row(row: str, row_number: int | None = None) -> ScriptRecord:
    cells = split_row(row)
    if len(cells) < MIN_CELLS:
        raise MalformedRow(f"Expected at least {MIN_CELLS} cells, got {len(cells)}", row_number, row)
    try:
        record_id = int(cells[0].strip())
    except ValueError:
        raise MalformedRow(f"Invalid record id: {cells[0]!r}", row_number, row) from None
    payload = _unquote_payload(cells[6]) if len(cells) > 6 else ""
    return ScriptRecord(
        id=record_id,
        opcode=Opcode.from_token(cells[1]),
        actor_id=cells[2].strip(),
        expression=cells[3].strip(),
        position=cells[4].strip(),
        speed=cells[5].strip(),
        payload=payload,
        line=row_number,
    )


def parse_script(source: str, *, name: str = "") -> List[ScriptRecord]:
    """Parse tabular script text into records, in input order.

    The first row is a header. Blank rows and rows starting with ``//`` are
    skipped. Malformed rows are logged and dropped; parsing never fails.
    """
    records: List[ScriptRecord] = []
    rows = [r for r in ROW_SPLIT_RE.split(source or "") if r]
    label = name or "<script>"
    for i, row in enumerate(rows[1:], start=2):
        if not row.strip() or row.lstrip().startswith(COMMENT_PREFIX):
            continue
        try:
            records.append(parse_row(row, i))
        except MalformedRow as e:
            logger.warning(f"[{label}] dropped row {i}: {e.message}: {row}")
    logger.debug(f"Parsed {label}: {len(records)} records")
    return records
