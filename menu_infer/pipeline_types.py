# menu_infer/pipeline_types.py
"""
Menu Inference Types — core data model shared by every phase.

Coordinates follow the document's bottom-up convention (PDF text layer):
origin at the bottom-left of the page, ``y`` is the bottom edge of a glyph run
and ``y + height`` its top edge. Reading order (top of page first) is derived
through ``Token.reading_y(page_height)``.

Types:
  - Token / Page                 — input from the token-extraction collaborator
  - NumberKind / NumberClassification / TypographyFingerprint — Phase 0
  - BBox / Region                — Phase 1/2
  - ItemProvenance / MenuItem    — Phase 3
  - LogEntry / ProgressSnapshot  — observability stream
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple


# ────────────────────────────────────────────────
# 🔤 Input primitives
# ────────────────────────────────────────────────

@dataclass(frozen=True)
class Token:
    """A single positioned text fragment with font metadata."""
    text: str
    x: float
    y: float
    width: float
    height: float
    font_size: float = 0.0
    font_family: str = "unknown"
    font_weight: str = "normal"
    font_style: str = "normal"
    page_index: int = 0

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def top(self) -> float:
        return self.y + self.height

    @property
    def effective_font_size(self) -> float:
        # Text layers often omit font size; glyph height is the usual proxy.
        return self.font_size if self.font_size > 0 else self.height

    @property
    def is_bold(self) -> bool:
        w = (self.font_weight or "").lower()
        if w in {"bold", "bolder", "heavy", "black", "semibold"}:
            return True
        if w.isdigit():
            return int(w) >= 600
        return "bold" in (self.font_family or "").lower()

    def reading_y(self, page_height: float) -> float:
        """Distance of the token's top edge from the top of the page."""
        return page_height - self.top


@dataclass
class Page:
    index: int
    height: float
    tokens: List[Token] = field(default_factory=list)
    width: float = 0.0


# ────────────────────────────────────────────────
# 🔢 Phase 0: number classification + typography
# ────────────────────────────────────────────────

class NumberKind(str, Enum):
    PRICE = "price"
    CALORIE = "calorie"
    MEASUREMENT = "measurement"
    COUNT = "count"
    ITEM_NUMBER = "item_number"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class NumberClassification:
    value: float
    kind: NumberKind
    confidence: float
    reasoning: str
    raw_text: str = ""
    token: Optional[Token] = None


FingerprintKey = Tuple[str, float, str]


@dataclass(frozen=True)
class TypographyFingerprint:
    font_family: str
    font_size: float
    font_weight: str
    avg_text_length: float
    patterns: FrozenSet[str]
    sample_count: int
    confidence: float

    @property
    def key(self) -> FingerprintKey:
        return (self.font_family, self.font_size, self.font_weight)


# ────────────────────────────────────────────────
# 🧱 Phase 1/2: geometry + regions
# ────────────────────────────────────────────────

@dataclass(frozen=True)
class BBox:
    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def top(self) -> float:
        return self.y + self.height

    @property
    def area(self) -> float:
        return self.width * self.height

    def contains(self, token: Token, pad: float = 0.0) -> bool:
        return (
            token.x >= self.x - pad
            and token.right <= self.right + pad
            and token.y >= self.y - pad
            and token.top <= self.top + pad
        )

    def union(self, other: "BBox") -> "BBox":
        x0 = min(self.x, other.x)
        y0 = min(self.y, other.y)
        x1 = max(self.right, other.right)
        y1 = max(self.top, other.top)
        return BBox(x0, y0, x1 - x0, y1 - y0)

    def overlap_area(self, other: "BBox") -> float:
        w = min(self.right, other.right) - max(self.x, other.x)
        h = min(self.top, other.top) - max(self.y, other.y)
        if w <= 0 or h <= 0:
            return 0.0
        return w * h

    @classmethod
    def around(cls, tokens: Iterable[Token]) -> "BBox":
        """Minimal axis-aligned box containing every token."""
        toks = list(tokens)
        if not toks:
            raise ValueError("cannot bound an empty token set")
        x0 = min(t.x for t in toks)
        y0 = min(t.y for t in toks)
        x1 = max(t.right for t in toks)
        y1 = max(t.top for t in toks)
        return cls(x0, y0, x1 - x0, y1 - y0)


@dataclass
class Region:
    """
    A geometrically clustered group of tokens hypothesized to form one record.

    Phase 2/3 annotate ``confidence``, ``thumbnail`` and ``continuation`` but
    the token list and bbox are fixed once Phase 1 emits the region.
    """
    tokens: List[Token]
    bbox: BBox
    confidence: float
    page_index: int
    page_height: float
    thumbnail: Optional[bytes] = None
    continuation: Optional["Region"] = None
    source: str = "proximity"

    def member_tokens(self) -> List[Token]:
        """Own tokens followed by tokens merged in from the next page."""
        if self.continuation is None:
            return list(self.tokens)
        return list(self.tokens) + self.continuation.member_tokens()

    def reading_order(self) -> List[Token]:
        """Tokens top-to-bottom, then left-to-right (continuation last)."""
        own = sorted(
            self.tokens,
            key=lambda t: (round(t.reading_y(self.page_height), 1), t.x),
        )
        if self.continuation is None:
            return own
        return own + self.continuation.reading_order()

    @property
    def text(self) -> str:
        return " ".join(t.text.strip() for t in self.reading_order() if t.text.strip())

    @property
    def average_font_size(self) -> float:
        sizes = [t.effective_font_size for t in self.tokens if t.effective_font_size > 0]
        if not sizes:
            return 0.0
        return sum(sizes) / len(sizes)

    def describe(self) -> str:
        b = self.bbox
        return f"p{self.page_index}[{b.x:.1f},{b.y:.1f} {b.width:.1f}x{b.height:.1f}]"


# ────────────────────────────────────────────────
# 🍽️ Phase 3: menu items
# ────────────────────────────────────────────────

@dataclass
class ItemProvenance:
    region: Optional[Region] = None
    phase: str = "region"          # region | pair | fallback | refined
    rule_trace: str = ""
    # Source tokens; fallback items have no region to carry them.
    tokens: List[Token] = field(default_factory=list)


@dataclass
class MenuItem:
    id: str
    name: str
    price: float
    description: Optional[str] = None
    category: str = "Other"
    serving_size: int = 1
    confidence: float = 0.0
    provenance: ItemProvenance = field(default_factory=ItemProvenance)
    priceless: bool = False
    # Confidence as assembled, before pattern re-scoring.
    base_confidence: Optional[float] = None

    @property
    def thumbnail(self) -> Optional[bytes]:
        region = self.provenance.region
        return region.thumbnail if region is not None else None

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price": self.price,
            "category": self.category,
            "serving_size": self.serving_size,
            "confidence": round(self.confidence, 4),
            "phase": self.provenance.phase,
            "page_index": (
                self.provenance.region.page_index
                if self.provenance.region is not None else None
            ),
            "has_thumbnail": self.thumbnail is not None,
        }


# ────────────────────────────────────────────────
# 📈 Observability
# ────────────────────────────────────────────────

@dataclass(frozen=True)
class LogEntry:
    phase: str
    severity: str          # debug | info | warning | error
    message: str
    context: Dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class ProgressSnapshot:
    phase: str
    percent: int
    message: str
