# menu_infer/region_validator.py
"""
Region Validator — Phase 2

Filters candidate regions through four gates, attaches a visual thumbnail,
and stitches records split across a page break.

Gates (first failure rejects; rejections are logged, never raised):
  1. confidence   region confidence >= min_region_confidence
  2. dimensional  width >= min_width_em, height >= min_height_em
                  (em = the region's own average font size)
  3. content      >= 2 tokens, >= min_text_length chars, density >= floor
  4. heuristic    weighted name / description / price checks
                      name length in [2, 50]                 0.3
                      description not shorter than the name  0.2
                      price classification confidence > 0.7  0.5
                  sum must meet extraction_quality_threshold

Thumbnail failures keep the region at a confidence penalty.

Gate checks and thumbnail capture have no cross-region dependency, so they
run on a bounded thread pool in fixed-size batches; output order always
matches input order.
"""

from __future__ import annotations

import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .errors import FailureKind, RegionExtractionFailure
from .layout.region_detector import score_region
from .parsers.price_parser import strip_prices
from .pipeline_config import PipelineConfig
from .pipeline_types import Region, Token
from .render import image_to_png_bytes
from .scoring.confidence import clamp01
from .token_classifier import ClassificationResult

PHASE = "validation"

_W_NAME = 0.3
_W_DESCRIPTION = 0.2
_W_PRICE = 0.5

_HAS_LETTER_RE = re.compile(r"[^\W\d_]", re.UNICODE)


@dataclass
class HeuristicScore:
    name_ok: bool
    description_ok: bool
    price_ok: bool
    score: float
    name: str = ""
    description: str = ""


@dataclass
class RegionVerdict:
    region: Region
    accepted: bool
    reason: str = ""
    heuristics: Optional[HeuristicScore] = None
    notes: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Individual gates
# ---------------------------------------------------------------------------

def _em(region: Region) -> float:
    return region.average_font_size or 1.0


def check_confidence(region: Region, config: PipelineConfig) -> Tuple[bool, str]:
    if region.confidence < config.min_region_confidence:
        return False, f"confidence {region.confidence:.2f} < {config.min_region_confidence}"
    return True, ""


def check_dimensions(region: Region, config: PipelineConfig) -> Tuple[bool, str]:
    em = _em(region)
    if region.bbox.width < config.min_width_em * em:
        return False, f"width {region.bbox.width:.1f} < {config.min_width_em}em"
    if region.bbox.height < config.min_height_em * em:
        return False, f"height {region.bbox.height:.1f} < {config.min_height_em}em"
    return True, ""


def text_density(region: Region) -> float:
    """Characters per em² of bounding box."""
    em = _em(region)
    area_em2 = region.bbox.area / (em * em)
    if area_em2 <= 0:
        return 0.0
    chars = sum(len(t.text.strip()) for t in region.tokens)
    return chars / area_em2


def check_content(region: Region, config: PipelineConfig) -> Tuple[bool, str]:
    members = region.member_tokens()
    if len(members) < 2:
        return False, f"only {len(members)} token(s)"
    text = region.text.strip()
    if len(text) < config.min_text_length:
        return False, f"text length {len(text)} < {config.min_text_length}"
    density = text_density(region)
    if density < config.min_text_density:
        return False, f"sparse text density {density:.4f}"
    return True, ""


def split_name_description(
    tokens: Sequence[Token],
    classification: ClassificationResult,
    floor: float,
) -> Tuple[str, str, bool]:
    """First non-price text in reading order → name; the rest → description."""
    texts: List[str] = []
    has_price = False
    for tok in tokens:
        if classification.best_price(tok, floor) is not None:
            has_price = True
            rest = strip_prices(tok.text)
            if rest and _HAS_LETTER_RE.search(rest):
                texts.append(rest)
            continue
        t = tok.text.strip()
        if t:
            texts.append(t)
    name = texts[0] if texts else ""
    description = " ".join(texts[1:]).strip()
    return name, description, has_price


def score_heuristics(
    region: Region,
    classification: ClassificationResult,
    config: PipelineConfig,
) -> HeuristicScore:
    name, description, has_price = split_name_description(
        region.reading_order(), classification, config.price_confidence_floor
    )
    name_ok = config.name_min_length <= len(name) <= config.name_max_length
    description_ok = (not description) or len(description) >= len(name)
    score = 0.0
    if name_ok:
        score += _W_NAME
    if description_ok:
        score += _W_DESCRIPTION
    if has_price:
        score += _W_PRICE
    return HeuristicScore(
        name_ok=name_ok,
        description_ok=description_ok,
        price_ok=has_price,
        score=clamp01(round(score, 4)),
        name=name,
        description=description,
    )


def validate_region(
    region: Region,
    classification: ClassificationResult,
    config: PipelineConfig,
) -> RegionVerdict:
    for gate in (check_confidence, check_dimensions, check_content):
        ok, why = gate(region, config)
        if not ok:
            return RegionVerdict(region, False, f"{gate.__name__}: {why}")
    h = score_heuristics(region, classification, config)
    if h.score < config.extraction_quality_threshold:
        missing = [n for n, ok in (("name", h.name_ok), ("description", h.description_ok), ("price", h.price_ok)) if not ok]
        return RegionVerdict(
            region, False,
            f"score_heuristics: {h.score:.2f} < {config.extraction_quality_threshold} (failed: {', '.join(missing)})",
            heuristics=h,
        )
    return RegionVerdict(region, True, heuristics=h)


# ---------------------------------------------------------------------------
# Visual extraction
# ---------------------------------------------------------------------------

def attach_thumbnail(region: Region, renderer, config: PipelineConfig, session=None) -> bool:
    """Render the region's box (+padding); on failure keep it with a penalty."""
    try:
        img = renderer.render_region(
            region.page_index, region.bbox, region.page_height,
            padding=config.thumbnail_padding,
        )
        region.thumbnail = image_to_png_bytes(img)
        return True
    except RegionExtractionFailure as e:
        before = region.confidence
        region.confidence = clamp01(region.confidence * config.thumbnail_failure_penalty)
        if session is not None:
            session.log(
                PHASE, "warning",
                f"thumbnail failed for {region.describe()}: {e}; confidence {before:.2f} → {region.confidence:.2f}",
                kind=FailureKind.REGION_EXTRACTION, bbox=region.describe(),
            )
        return False


# ---------------------------------------------------------------------------
# Cross-page continuation
# ---------------------------------------------------------------------------

def _has_price(region: Region, classification: ClassificationResult, floor: float) -> bool:
    return any(classification.best_price(t, floor) is not None for t in region.tokens)


def _has_name(region: Region, classification: ClassificationResult, floor: float) -> bool:
    for t in region.tokens:
        if classification.best_price(t, floor) is not None:
            continue
        txt = t.text.strip()
        if len(txt) >= 2 and _HAS_LETTER_RE.search(txt):
            return True
    return False


def merge_cross_page(
    regions: Sequence[Region],
    classification: ClassificationResult,
    config: PipelineConfig,
    session=None,
) -> List[Region]:
    """
    A region in the bottom margin of page N that lacks its price (or name)
    absorbs an aligned region in the top margin of page N+1 that supplies it.
    """
    floor = config.price_confidence_floor
    out = list(regions)
    consumed = set()
    for i, head in enumerate(out):
        if i in consumed or head.continuation is not None:
            continue
        if head.bbox.y > head.page_height * config.cross_page_margin:
            continue
        head_price = _has_price(head, classification, floor)
        head_name = _has_name(head, classification, floor)
        if head_price == head_name:
            continue
        em = _em(head)
        for j, tail in enumerate(out):
            if j == i or j in consumed or tail.page_index != head.page_index + 1:
                continue
            if tail.bbox.top < tail.page_height * (1.0 - config.cross_page_margin):
                continue
            if abs(tail.bbox.x - head.bbox.x) > config.cross_page_align_em * em:
                continue
            supplies = (
                _has_price(tail, classification, floor) if not head_price
                else _has_name(tail, classification, floor)
            )
            if not supplies:
                continue
            head.continuation = tail
            head.confidence = score_region(head.member_tokens())
            consumed.add(j)
            if session is not None:
                session.log(
                    PHASE, "info",
                    f"merged {head.describe()} with continuation {tail.describe()}",
                    bbox=head.describe(),
                )
            break
    return [r for k, r in enumerate(out) if k not in consumed]


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

def validate_regions(
    regions: Sequence[Region],
    classification: ClassificationResult,
    config: PipelineConfig,
    session=None,
    renderer=None,
) -> List[Region]:
    candidates = merge_cross_page(regions, classification, config, session)

    def _process(region: Region) -> RegionVerdict:
        verdict = validate_region(region, classification, config)
        if verdict.accepted and renderer is not None:
            attach_thumbnail(region, renderer, config, session)
        return verdict

    verdicts: List[RegionVerdict] = []
    batch = config.render_batch_size
    with ThreadPoolExecutor(max_workers=config.render_workers) as pool:
        for start in range(0, len(candidates), batch):
            if session is not None:
                session.check_cancelled("region validation")
            verdicts.extend(pool.map(_process, candidates[start:start + batch]))

    accepted: List[Region] = []
    for v in verdicts:
        if v.accepted:
            accepted.append(v.region)
        elif session is not None:
            session.log(
                PHASE, "debug",
                f"rejected {v.region.describe()}: {v.reason}",
                kind=FailureKind.VALIDATION, bbox=v.region.describe(), reason=v.reason,
            )
    if session is not None:
        session.log(PHASE, "info", f"{len(accepted)}/{len(candidates)} regions accepted")
    return accepted
