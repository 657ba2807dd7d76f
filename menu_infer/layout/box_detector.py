"""
Box Detector — Phase 1 (bordered-box mode)

For menus laid out as bordered cells (name / picture / price boxes) rather
than reflowing text. Works on a rasterized page:

  1. Sobel gradient magnitude over grayscale, normalized to [0, 1]
  2. maximal horizontal / vertical runs of strong edges → lines
  3. two horizontal lines + two vertical lines spanning them → rectangle
  4. merge rectangles overlapping > 30% of the smaller one
  5. geometric validation (size, aspect ratio, page-edge margin)
  6. map to document coordinates, collect contained tokens
  7. layout gate: name in the top third, price in the bottom third,
     middle third no busier than top + bottom

Raster coordinates are top-down pixels; document coordinates are bottom-up
points (scale = dpi / 72).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np
from PIL import Image, ImageOps

from ..parsers.price_parser import has_currency
from ..pipeline_config import PipelineConfig
from ..pipeline_types import BBox, Page, Region, Token
from ..scoring.confidence import clamp01
from .region_detector import make_region, usable_tokens

PHASE = "boxes"


@dataclass(frozen=True)
class Line:
    orientation: str      # "h" | "v"
    pos: int              # row (h) or column (v)
    start: int
    end: int              # inclusive
    strength: float

    @property
    def length(self) -> int:
        return self.end - self.start + 1


@dataclass(frozen=True)
class Rect:
    x0: int
    y0: int
    x1: int
    y1: int
    confidence: float

    @property
    def width(self) -> int:
        return self.x1 - self.x0

    @property
    def height(self) -> int:
        return self.y1 - self.y0

    @property
    def area(self) -> int:
        return max(0, self.width) * max(0, self.height)

    def overlap(self, other: "Rect") -> int:
        w = min(self.x1, other.x1) - max(self.x0, other.x0)
        h = min(self.y1, other.y1) - max(self.y0, other.y0)
        if w <= 0 or h <= 0:
            return 0
        return w * h

    def union(self, other: "Rect") -> "Rect":
        return Rect(
            min(self.x0, other.x0), min(self.y0, other.y0),
            max(self.x1, other.x1), max(self.y1, other.y1),
            max(self.confidence, other.confidence),
        )


# --- Edge analysis ---------------------------------------------------------

def to_gray(image) -> np.ndarray:
    """PIL Image or ndarray → uint8 grayscale ndarray."""
    if isinstance(image, Image.Image):
        return np.array(ImageOps.grayscale(image), dtype=np.uint8)
    arr = np.asarray(image)
    if arr.ndim == 3:
        arr = cv2.cvtColor(arr.astype(np.uint8), cv2.COLOR_RGB2GRAY)
    return arr.astype(np.uint8)


def edge_magnitude(image) -> np.ndarray:
    gray = to_gray(image)
    sx = cv2.Sobel(gray, cv2.CV_32F, 1, 0, ksize=3)
    sy = cv2.Sobel(gray, cv2.CV_32F, 0, 1, ksize=3)
    mag = cv2.magnitude(sx, sy)
    peak = float(mag.max()) if mag.size else 0.0
    if peak <= 0:
        return np.zeros_like(mag, dtype=np.float32)
    return (mag / peak).astype(np.float32)


def _runs(mask_row: np.ndarray, values_row: np.ndarray, min_span: int, line_thr: float):
    """Maximal True runs of a 1-D mask, yielding (start, end, mean strength)."""
    padded = np.concatenate(([False], mask_row, [False]))
    diff = np.diff(padded.astype(np.int8))
    starts = np.where(diff == 1)[0]
    ends = np.where(diff == -1)[0] - 1
    for s, e in zip(starts, ends):
        if e - s + 1 < min_span:
            continue
        strength = float(values_row[s:e + 1].mean())
        if strength >= line_thr:
            yield int(s), int(e), strength


def _collapse(lines: List[Line], tol: int) -> List[Line]:
    """A drawn border is a few pixels thick; keep the strongest line per stroke."""
    lines = sorted(lines, key=lambda l: (l.pos, l.start))
    out: List[Line] = []
    for ln in lines:
        twin = None
        for idx in range(len(out) - 1, -1, -1):
            prev = out[idx]
            if ln.pos - prev.pos > tol:
                break
            if abs(ln.start - prev.start) <= tol and abs(ln.end - prev.end) <= tol:
                twin = idx
                break
        if twin is None:
            out.append(ln)
        elif ln.strength > out[twin].strength:
            out[twin] = ln
    return sorted(out, key=lambda l: (l.pos, l.start))


def find_lines(edges: np.ndarray, config: PipelineConfig) -> Tuple[List[Line], List[Line]]:
    strong = edges >= config.box_edge_threshold
    h_lines: List[Line] = []
    for row in range(edges.shape[0]):
        for s, e, strength in _runs(strong[row], edges[row], config.box_min_line_span, config.box_line_threshold):
            h_lines.append(Line("h", row, s, e, strength))
    v_lines: List[Line] = []
    for col in range(edges.shape[1]):
        for s, e, strength in _runs(strong[:, col], edges[:, col], config.box_min_line_span, config.box_line_threshold):
            v_lines.append(Line("v", col, s, e, strength))
    tol = config.box_line_tolerance
    return _collapse(h_lines, tol), _collapse(v_lines, tol)


# --- Rectangles ------------------------------------------------------------

def form_rectangles(h_lines: Sequence[Line], v_lines: Sequence[Line], tol: int = 6) -> List[Rect]:
    """
    Each top line pairs with the nearest horizontal line below it that shares
    an X-overlap bounded by spanning verticals; adjacent spanning verticals
    delimit the cells, so a shared-border grid yields one rect per cell.
    """
    rects: List[Rect] = []
    hs = sorted(h_lines, key=lambda l: l.pos)
    for i, top in enumerate(hs):
        for bottom in hs[i + 1:]:
            if bottom.pos - top.pos <= tol:
                continue
            x_lo = max(top.start, bottom.start)
            x_hi = min(top.end, bottom.end)
            if x_hi - x_lo <= tol:
                continue
            spanning = sorted(
                (
                    v for v in v_lines
                    if x_lo - tol <= v.pos <= x_hi + tol
                    and v.start <= top.pos + tol
                    and v.end >= bottom.pos - tol
                ),
                key=lambda v: v.pos,
            )
            found = False
            for left, right in zip(spanning, spanning[1:]):
                if right.pos - left.pos <= tol:
                    continue
                strength = (top.strength + bottom.strength + left.strength + right.strength) / 4.0
                rects.append(Rect(left.pos, top.pos, right.pos, bottom.pos, clamp01(strength)))
                found = True
            if found:
                break
    return rects


def merge_rectangles(rects: Sequence[Rect], overlap_share: float = 0.30) -> List[Rect]:
    pending = list(rects)
    merged = True
    while merged:
        merged = False
        out: List[Rect] = []
        while pending:
            cur = pending.pop(0)
            rest: List[Rect] = []
            for other in pending:
                smaller = min(cur.area, other.area)
                if smaller > 0 and cur.overlap(other) > overlap_share * smaller:
                    cur = cur.union(other)
                    merged = True
                else:
                    rest.append(other)
            pending = rest
            out.append(cur)
        pending = out
    return pending


def is_valid_rectangle(rect: Rect, image_size: Tuple[int, int], config: PipelineConfig) -> bool:
    img_w, img_h = image_size
    if rect.width < config.box_min_width or rect.height < config.box_min_height:
        return False
    aspect = rect.width / max(rect.height, 1)
    if not config.box_min_aspect <= aspect <= config.box_max_aspect:
        return False
    m = config.box_edge_margin
    if rect.x0 <= m or rect.y0 <= m or rect.x1 >= img_w - 1 - m or rect.y1 >= img_h - 1 - m:
        return False
    return True


def rect_to_document(rect: Rect, scale: float, page_height: float) -> BBox:
    """Top-down raster pixels → bottom-up document points."""
    x = rect.x0 / scale
    w = rect.width / scale
    h = rect.height / scale
    y = page_height - rect.y1 / scale
    return BBox(x, y, w, h)


# --- Layout gate -----------------------------------------------------------

def passes_layout_gate(tokens: Sequence[Token], box: BBox) -> bool:
    """Name in the top third, price in the bottom third, quiet middle."""
    third = box.height / 3.0
    top_n = mid_n = bottom_n = 0
    bottom_price = False
    for t in tokens:
        center = t.y + t.height / 2.0
        from_top = box.top - center
        if from_top < third:
            top_n += 1
        elif from_top < 2 * third:
            mid_n += 1
        else:
            bottom_n += 1
            if has_currency(t.text):
                bottom_price = True
    return top_n >= 1 and bottom_price and mid_n <= top_n + bottom_n


# --- Entry -----------------------------------------------------------------

def detect_box_regions(
    page: Page,
    image,
    config: PipelineConfig,
    session=None,
    scale: Optional[float] = None,
) -> List[Region]:
    """
    Regions for bordered cells on one page. ``image`` is the page raster;
    ``scale`` is pixels per document point (defaults to image height / page height).
    """
    edges = edge_magnitude(image)
    img_h, img_w = edges.shape[:2]
    if scale is None:
        scale = img_h / page.height if page.height > 0 else 1.0

    h_lines, v_lines = find_lines(edges, config)
    rects = merge_rectangles(form_rectangles(h_lines, v_lines, config.box_line_tolerance), config.box_merge_overlap)
    tokens = usable_tokens(page.tokens)

    regions: List[Region] = []
    rejected = 0
    for rect in rects:
        if not is_valid_rectangle(rect, (img_w, img_h), config):
            rejected += 1
            continue
        box = rect_to_document(rect, scale, page.height)
        inside = [t for t in tokens if box.contains(t, pad=config.box_token_padding)]
        if len(inside) < 2 or not passes_layout_gate(inside, box):
            rejected += 1
            continue
        region = make_region(inside, page.index, page.height, source="box")
        # Blend the border evidence into the token-based score.
        region.confidence = clamp01(0.5 * region.confidence + 0.5 * rect.confidence + 0.1)
        regions.append(region)

    if session is not None:
        session.log(
            PHASE, "info",
            f"page {page.index}: {len(h_lines)}h/{len(v_lines)}v lines → "
            f"{len(rects)} boxes → {len(regions)} regions ({rejected} rejected)",
            page_index=page.index,
        )
    return regions
