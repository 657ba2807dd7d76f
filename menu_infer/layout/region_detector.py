"""
Region Detector — Phase 1 (proximity mode)

Splits a page's tokens into horizontal bands by vertical proximity, then
clusters each band into candidate regions by horizontal proximity. Both
thresholds are expressed in em (average font size on the page) so they scale
with the typography.

  band:    next token joins when |Δ reading_y| to the band's last token
           <= y_proximity_em × em
  region:  next token (sorted by x) joins when the gap to the previous
           token's right edge <= x_distance_em × em

Regions with fewer than two tokens are dropped at source.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence

from ..parsers.price_parser import has_currency
from ..pipeline_config import PipelineConfig
from ..pipeline_types import BBox, Page, Region, Token
from ..scoring.confidence import clamp01

log = logging.getLogger(__name__)

PHASE = "regions"


# --- Helpers ---------------------------------------------------------------

def usable_tokens(tokens: Iterable[Token]) -> List[Token]:
    """Drop empty-text and zero-size fragments (text-layer noise)."""
    return [t for t in tokens if t.text.strip() and t.width > 0 and t.height > 0]


def average_font_size(tokens: Sequence[Token]) -> float:
    sizes = [t.effective_font_size for t in tokens if t.effective_font_size > 0]
    if not sizes:
        return 0.0
    return sum(sizes) / len(sizes)


def bounding_box(tokens: Sequence[Token]) -> BBox:
    return BBox.around(tokens)


def score_region(tokens: Sequence[Token]) -> float:
    """
    Region confidence: base 0.5
      +0.2 when the longest member text is > 1.5× the shortest (name vs description)
      +0.3 when any member looks like currency
      +0.2 when the member count is 2–5
      +0.1 when at most three distinct font names are used
    The raw sum can reach 1.3; it is clamped, not renormalized.
    """
    lengths = [len(t.text.strip()) for t in tokens]
    score = 0.5
    if lengths and max(lengths) > 1.5 * min(lengths):
        score += 0.2
    if any(has_currency(t.text) for t in tokens):
        score += 0.3
    if 2 <= len(tokens) <= 5:
        score += 0.2
    if len({t.font_family for t in tokens}) <= 3:
        score += 0.1
    return clamp01(score)


def make_region(tokens: Sequence[Token], page_index: int, page_height: float, source: str = "proximity") -> Region:
    toks = list(tokens)
    return Region(
        tokens=toks,
        bbox=bounding_box(toks),
        confidence=score_region(toks),
        page_index=page_index,
        page_height=page_height,
        source=source,
    )


# --- Core ------------------------------------------------------------------

def form_bands(tokens: Sequence[Token], page_height: float, threshold: float) -> List[List[Token]]:
    """Walk tokens top-to-bottom; start a new band when the vertical gap exceeds threshold."""
    ordered = sorted(tokens, key=lambda t: (t.reading_y(page_height), t.x))
    bands: List[List[Token]] = []
    current: List[Token] = []
    for tok in ordered:
        if current and abs(tok.reading_y(page_height) - current[-1].reading_y(page_height)) > threshold:
            bands.append(current)
            current = []
        current.append(tok)
    if current:
        bands.append(current)
    return bands


def cluster_band(band: Sequence[Token], threshold: float) -> List[List[Token]]:
    """Split a band left-to-right wherever the horizontal gap exceeds threshold."""
    if not band:
        return []
    ordered = sorted(band, key=lambda t: t.x)
    clusters: List[List[Token]] = []
    current: List[Token] = [ordered[0]]
    for tok in ordered[1:]:
        gap = tok.x - current[-1].right
        if gap <= threshold:
            current.append(tok)
        else:
            if len(current) >= 2:
                clusters.append(current)
            current = [tok]
    if len(current) >= 2:
        clusters.append(current)
    return clusters


def detect_regions(page: Page, config: PipelineConfig, session=None) -> List[Region]:
    tokens = usable_tokens(page.tokens)
    if len(tokens) < 2:
        return []
    em = average_font_size(tokens) or 1.0
    y_thr = config.y_proximity_em * em
    x_thr = config.x_distance_em * em

    bands = form_bands(tokens, page.height, y_thr)
    regions: List[Region] = []
    for band in bands:
        for cluster in cluster_band(band, x_thr):
            regions.append(make_region(cluster, page.index, page.height))

    if session is not None:
        session.log(
            PHASE, "info",
            f"page {page.index}: {len(tokens)} tokens → {len(bands)} bands → {len(regions)} regions",
            page_index=page.index, em=round(em, 2),
        )
    return regions


def detect_document_regions(
    pages: Sequence[Page],
    config: PipelineConfig,
    session=None,
) -> List[Region]:
    out: List[Region] = []
    for page in pages:
        if session is not None:
            session.check_cancelled(f"region detection page {page.index}")
        out.extend(detect_regions(page, config, session))
    return out
