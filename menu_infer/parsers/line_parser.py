# menu_infer/parsers/line_parser.py
"""
Fallback Line Parser — used when region assembly yields too little.

Rebuilds visual lines from a page's tokens (tokens whose reading_y differ by
at most half an em share a line; joined left to right) and matches four
line shapes, first match wins:

  end_of_line    "Caesar Salad - romaine, parmesan ..... $9.50"
                 optional "-" / "•" / "|" splits name from description
  mid_line       "Caesar Salad $9.50 romaine, parmesan, croutons"
  price_first    "$9.50 Caesar Salad - romaine, parmesan"
  next_line      "Caesar Salad"
                 "$9.50"

Design principles:
  - Pure regex + heuristic, no ML dependencies
  - Non-destructive: returns parsed lines, never touches tokens or regions
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence
import re

from ..category_infer import clean_item_name
from ..pipeline_config import PipelineConfig
from ..pipeline_types import Page, Token
from .price_parser import parse_amount, parse_price_only


# ── Result types ─────────────────────────────────────

@dataclass
class TextLine:
    text: str
    tokens: List[Token]
    reading_y: float
    page_index: int


@dataclass
class ParsedLine:
    name: str
    price: float
    description: Optional[str]
    pattern: str
    confidence: float
    page_index: int
    line_index: int
    tokens: List[Token] = field(default_factory=list)


# ── Patterns ─────────────────────────────────────────

_PRICE = r"(?P<price>[$€£¥]\s*\d{1,4}(?:[.,]\d{1,2})?|(?<![\d.,])\d{1,4}[.,]\d{2})"

END_OF_LINE_RE = re.compile(rf"^(?P<body>.*?[^\W\d_].*?)[\s.·…_-]*{_PRICE}\s*$", re.UNICODE)
MID_LINE_RE = re.compile(rf"^(?P<name>.*?[^\W\d_].*?)\s+{_PRICE}\s+(?P<desc>.*[^\W\d_].*)$", re.UNICODE)
PRICE_FIRST_RE = re.compile(rf"^\s*{_PRICE}\s+(?P<body>.*[^\W\d_].*)$", re.UNICODE)
SEPARATOR_RE = re.compile(r"\s+[-–•|]\s+|\s*[•|]\s*")
_HAS_LETTER_RE = re.compile(r"[^\W\d_]", re.UNICODE)

# Base confidence per pattern; end-of-line is the common menu shape.
PATTERN_CONFIDENCE = {
    "end_of_line": 0.75,
    "mid_line": 0.7,
    "price_first": 0.7,
    "next_line": 0.65,
}


# ── Line reconstruction ──────────────────────────────

def build_lines(page: Page) -> List[TextLine]:
    toks = [t for t in page.tokens if t.text.strip() and t.width > 0 and t.height > 0]
    if not toks:
        return []
    em = sum(t.effective_font_size for t in toks) / len(toks) or 1.0
    ordered = sorted(toks, key=lambda t: (t.reading_y(page.height), t.x))

    groups: List[List[Token]] = []
    for tok in ordered:
        if groups and abs(tok.reading_y(page.height) - groups[-1][0].reading_y(page.height)) <= 0.5 * em:
            groups[-1].append(tok)
        else:
            groups.append([tok])

    lines: List[TextLine] = []
    for g in groups:
        g.sort(key=lambda t: t.x)
        text = " ".join(t.text.strip() for t in g)
        lines.append(TextLine(text=text, tokens=g, reading_y=g[0].reading_y(page.height), page_index=page.index))
    return lines


# ── Matching ─────────────────────────────────────────

def _price_ok(value: Optional[float], config: PipelineConfig) -> bool:
    return value is not None and config.price_min <= value <= config.price_max


def _name_ok(name: str, config: PipelineConfig) -> bool:
    return config.name_min_length <= len(name) <= config.name_max_length and bool(_HAS_LETTER_RE.search(name))


def split_name_description(body: str):
    """"Name - description" / "Name • description" / "Name | description"."""
    parts = SEPARATOR_RE.split(body.strip(), maxsplit=1)
    name = clean_item_name(parts[0])
    desc = parts[1].strip() if len(parts) > 1 else ""
    return name, (desc or None)


def match_line(line: TextLine, config: PipelineConfig):
    """(name, description, price, pattern) for a single line, or None."""
    m = END_OF_LINE_RE.match(line.text)
    if m:
        price = parse_amount(m.group("price"))
        name, desc = split_name_description(m.group("body"))
        if _price_ok(price, config) and _name_ok(name, config):
            return name, desc, price, "end_of_line"

    m = MID_LINE_RE.match(line.text)
    if m:
        price = parse_amount(m.group("price"))
        name = clean_item_name(m.group("name"))
        desc = m.group("desc").strip() or None
        if _price_ok(price, config) and _name_ok(name, config):
            return name, desc, price, "mid_line"

    m = PRICE_FIRST_RE.match(line.text)
    if m:
        price = parse_amount(m.group("price"))
        name, desc = split_name_description(m.group("body"))
        if _price_ok(price, config) and _name_ok(name, config):
            return name, desc, price, "price_first"
    return None


def parse_lines(lines: Sequence[TextLine], config: PipelineConfig) -> List[ParsedLine]:
    out: List[ParsedLine] = []
    i = 0
    while i < len(lines):
        line = lines[i]
        hit = match_line(line, config)
        if hit:
            name, desc, price, pattern = hit
            out.append(ParsedLine(
                name=name, price=price, description=desc, pattern=pattern,
                confidence=PATTERN_CONFIDENCE[pattern],
                page_index=line.page_index, line_index=i, tokens=list(line.tokens),
            ))
            i += 1
            continue

        # Name alone on this line, price alone on the next.
        if i + 1 < len(lines) and parse_price_only(line.text) is None:
            price = parse_price_only(lines[i + 1].text)
            name = clean_item_name(line.text)
            if _price_ok(price, config) and _name_ok(name, config):
                out.append(ParsedLine(
                    name=name, price=price, description=None, pattern="next_line",
                    confidence=PATTERN_CONFIDENCE["next_line"],
                    page_index=line.page_index, line_index=i,
                    tokens=list(line.tokens) + list(lines[i + 1].tokens),
                ))
                i += 2
                continue
        i += 1
    return out


def parse_page_lines(page: Page, config: PipelineConfig) -> List[ParsedLine]:
    return parse_lines(build_lines(page), config)
