from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Tuple

import fitz  # PyMuPDF

# US Letter, points
PAGE_WIDTH = 612
PAGE_HEIGHT = 792
MARGIN = 50
VALUE_COLUMN_OFFSET = 150

BODY_FONT = "helv"
BOLD_FONT = "hebo"
HEADING_SIZE = 14
BODY_SIZE = 10
HEADING_ADVANCE = 25
LINE_ADVANCE = 15

_HEADING_RE = re.compile(r"^#{1,6}\s+")
_SEPARATOR_CELL_RE = re.compile(r"^:?-{2,}:?$")


@dataclass
class SummaryBlock:
    kind: str  # "heading" | "row" | "paragraph"
    text: str = ""
    label: str = ""
    value: str = ""


def _strip_inline_markup(s: str) -> str:
    return s.replace("**", "").replace("__", "").strip()


def parse_summary_blocks(text: str) -> List[SummaryBlock]:
    """
    Block grammar of the generated summary:
    - '## Heading' lines
    - '| LABEL: | value |' table rows; extra cells join the value (separator rows skipped)
    - any other non-blank line is a paragraph
    """
    blocks: List[SummaryBlock] = []
    for line in (text or "").splitlines():
        s = line.strip()
        if not s:
            continue
        if _HEADING_RE.match(s):
            heading = _strip_inline_markup(_HEADING_RE.sub("", s))
            if heading:
                blocks.append(SummaryBlock(kind="heading", text=heading))
            continue
        if s.startswith("|"):
            cells = [c.strip() for c in s.split("|")][1:-1]
            if not cells or all(_SEPARATOR_CELL_RE.match(c) for c in cells if c):
                continue
            if len(cells) == 1:
                blocks.append(SummaryBlock(kind="paragraph", text=_strip_inline_markup(cells[0])))
                continue
            # Extra columns are folded into the value cell.
            rest = [_strip_inline_markup(c) for c in cells[1:]]
            blocks.append(
                SummaryBlock(
                    kind="row",
                    label=_strip_inline_markup(cells[0]),
                    value=" ".join(c for c in rest if c),
                )
            )
            continue
        blocks.append(SummaryBlock(kind="paragraph", text=_strip_inline_markup(s)))
    return blocks


def _wrap(text: str, fontname: str, fontsize: float, max_width: float) -> List[str]:
    words = (text or "").split()
    if not words:
        return [""]
    lines: List[str] = []
    current = ""
    for word in words:
        candidate = f"{current} {word}" if current else word
        if current and fitz.get_text_length(candidate, fontname=fontname, fontsize=fontsize) > max_width:
            lines.append(current)
            current = word
        else:
            current = candidate
    lines.append(current)
    return lines


class _Cursor:
    """Tracks the current page and the top of the next line."""

    def __init__(self, doc: fitz.Document):
        self.doc = doc
        self.page = doc.new_page(width=PAGE_WIDTH, height=PAGE_HEIGHT)
        self.y = MARGIN

    def reserve(self, advance: float) -> Tuple[fitz.Page, float]:
        if self.y + advance > PAGE_HEIGHT - MARGIN:
            self.page = self.doc.new_page(width=PAGE_WIDTH, height=PAGE_HEIGHT)
            self.y = MARGIN
        top = self.y
        self.y += advance
        return self.page, top


def render_summary_pdf(text: str) -> bytes:
    blocks = parse_summary_blocks(text)
    body_width = PAGE_WIDTH - 2 * MARGIN
    value_x = MARGIN + VALUE_COLUMN_OFFSET
    value_width = PAGE_WIDTH - MARGIN - value_x

    doc = fitz.open()
    try:
        cursor = _Cursor(doc)
        for block in blocks:
            if block.kind == "heading":
                page, top = cursor.reserve(HEADING_ADVANCE)
                page.insert_text(
                    (MARGIN, top + HEADING_SIZE),
                    block.text,
                    fontname=BOLD_FONT,
                    fontsize=HEADING_SIZE,
                )
            elif block.kind == "row":
                value_lines = _wrap(block.value, BODY_FONT, BODY_SIZE, value_width)
                for idx, value_line in enumerate(value_lines):
                    page, top = cursor.reserve(LINE_ADVANCE)
                    baseline = top + BODY_SIZE
                    if idx == 0:
                        page.insert_text((MARGIN, baseline), block.label, fontname=BOLD_FONT, fontsize=BODY_SIZE)
                    if value_line:
                        page.insert_text((value_x, baseline), value_line, fontname=BODY_FONT, fontsize=BODY_SIZE)
            else:
                for para_line in _wrap(block.text, BODY_FONT, BODY_SIZE, body_width):
                    page, top = cursor.reserve(LINE_ADVANCE)
                    page.insert_text(
                        (MARGIN, top + BODY_SIZE),
                        para_line,
                        fontname=BODY_FONT,
                        fontsize=BODY_SIZE,
                        color=(0.1, 0.1, 0.1),
                    )
        return doc.tobytes()
    finally:
        doc.close()
