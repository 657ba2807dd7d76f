# menu_infer/item_assembler.py
"""
Item Assembler — Phase 3

Turns validated regions into the final ordered MenuItem list.

Per region (component extraction):
  - anchor: the token carrying the best price classification (>0.7)
  - remaining tokens in reading order: first → name, rest → description
  - no anchor: positional left-to-right; a trailing loose number is the price
  - typography refinement: a bold or >=10% larger token that passes the
    name gate overrides the positional name
  - pair mode: no description; bilingual (CJK + Latin) > CJK-only > Latin-only

Document level (explicit state machine, hard iteration cap):

    ASSEMBLE → ASSESS ─[sufficient]──────────────────────────→ VALIDATE → DEDUP → DONE
                 │                                               ↑
                 └─[insufficient]→ FALLBACK → REPROCESS → CONVERGE
                                     ↑                        │
                                     └──── ASSESS ←─[improved]┘

  FALLBACK   line-oriented regex parse of the raw page text (computed once)
  REPROCESS  learn patterns (name length, price band, categories) from the
             fallback set, re-score primary items, merge; the first pass may
             also re-run Phase 0–2 with the learned price band (``refine``)
  CONVERGE   stop on improvement < convergence_threshold (a small regression
             counts as no improvement), on the iteration cap, or on a
             regression > revert_margin; stopping always keeps the best snapshot
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .category_infer import categorize_item, clean_item_name, estimate_serving_size
from .cross_item import deduplicate, drop_price_outliers, enforce_unique_names, normalize_name
from .errors import FailureKind
from .parsers.line_parser import ParsedLine, parse_page_lines
from .parsers.price_parser import parse_amount, strip_prices
from .pipeline_config import PipelineConfig
from .pipeline_types import ItemProvenance, MenuItem, Page, Region, Token, TypographyFingerprint
from .scoring.confidence import clamp01, item_confidence, mean_confidence
from .token_classifier import ClassificationResult, PriceHints, fingerprint_key

PHASE = "assembly"

_HAS_LETTER_RE = re.compile(r"[^\W\d_]", re.UNICODE)
_CJK_RE = re.compile(r"[\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uac00-\ud7af\uf900-\ufaff]")
_LATIN_RE = re.compile(r"[A-Za-z\u00c0-\u024f]")
_TRAILING_NUMBER_RE = re.compile(r"^(?P<head>.*?)[\s.·…]*[$€£¥]?\s*(?P<num>\d{1,4}(?:[.,]\d{1,2})?)\s*$")

_POSITIONAL_PRICE_CONFIDENCE = 0.5
_TYPOGRAPHY_SIZE_RATIO = 1.1
_HINT_SLACK = 0.10


# ── Component extraction ─────────────────────────────

@dataclass
class Components:
    name: str
    price: float
    description: Optional[str] = None
    price_confidence: float = 0.0
    anchored: bool = True
    priceless: bool = False
    rule_trace: str = ""


def _name_gate(text: str, config: PipelineConfig) -> bool:
    return config.name_min_length <= len(text) <= config.name_max_length and bool(_HAS_LETTER_RE.search(text))


def _find_anchor(
    tokens: Sequence[Token],
    classification: ClassificationResult,
    config: PipelineConfig,
):
    best = None
    for idx, tok in enumerate(tokens):
        c = classification.best_price(tok, config.price_confidence_floor)
        if c is None:
            continue
        # Later tokens win ties: the price usually closes the record.
        if best is None or c.confidence >= best[1].confidence:
            best = (idx, c)
    return best


def _text_parts(tokens: Sequence[Token], classification: ClassificationResult, config, skip: Optional[int]):
    """(token, text) for every non-anchor token with letters; prices stripped."""
    parts: List[Tuple[Token, str]] = []
    for idx, tok in enumerate(tokens):
        text = tok.text.strip()
        if idx == skip or classification.best_price(tok, config.price_confidence_floor) is not None:
            text = strip_prices(text)
        if text and _HAS_LETTER_RE.search(text):
            parts.append((tok, text))
    return parts


def _price_styled(tok: Token, fingerprints: Dict) -> bool:
    fp: Optional[TypographyFingerprint] = fingerprints.get(fingerprint_key(tok)) if fingerprints else None
    return fp is not None and "currency" in fp.patterns


def typography_name(parts: Sequence[Tuple[Token, str]], fingerprints: Dict, config: PipelineConfig) -> Optional[int]:
    """Index of a bold / larger token that should be the name, if any."""
    if len(parts) < 2:
        return None
    all_bold = all(t.is_bold for t, _ in parts)
    for i, (tok, text) in enumerate(parts):
        others = [t.effective_font_size for j, (t, _) in enumerate(parts) if j != i]
        avg_others = sum(others) / len(others) if others else 0.0
        larger = avg_others > 0 and tok.effective_font_size >= _TYPOGRAPHY_SIZE_RATIO * avg_others
        bold = tok.is_bold and not all_bold
        if (larger or bold) and _name_gate(text, config) and not _price_styled(tok, fingerprints):
            return i
    return None


def extract_components(
    region: Region,
    classification: ClassificationResult,
    config: PipelineConfig,
    fingerprints: Optional[Dict] = None,
) -> Optional[Components]:
    fingerprints = classification.fingerprints if fingerprints is None else fingerprints
    tokens = region.reading_order()
    anchor = _find_anchor(tokens, classification, config)

    if anchor is not None:
        idx, cls = anchor
        parts = _text_parts(tokens, classification, config, skip=idx)
        price, price_conf, anchored = cls.value, cls.confidence, True
        trace = f"anchor {cls.reasoning}"
    else:
        parts = _text_parts(tokens, classification, config, skip=None)
        price, price_conf, anchored = None, 0.0, False
        trace = "positional"
        # Trailing loose number on the last token: "Soup of the Day 6"
        last = tokens[-1].text.strip() if tokens else ""
        m = _TRAILING_NUMBER_RE.match(last)
        if m:
            val = parse_amount(m.group("num"))
            if val is not None and config.price_min <= val <= config.price_max:
                price, price_conf = val, _POSITIONAL_PRICE_CONFIDENCE
                head = m.group("head").strip()
                if parts and parts[-1][0] is tokens[-1]:
                    parts = parts[:-1]
                if head and _HAS_LETTER_RE.search(head):
                    parts.append((tokens[-1], head))
                trace += f" trailing number {m.group('num')!r}"

    if not parts:
        return None

    priceless = False
    if price is None:
        if not config.allow_priceless:
            return None
        price, priceless = 0.0, True

    name_idx = 0
    override = typography_name(parts, fingerprints, config)
    if override is not None and override != 0:
        name_idx = override
        trace += f"; typography name #{override}"

    name = clean_item_name(parts[name_idx][1])
    if not _name_gate(name, config):
        return None
    rest = [text for i, (_, text) in enumerate(parts) if i != name_idx]
    description = " ".join(rest).strip() or None

    return Components(
        name=name, price=price, description=description,
        price_confidence=price_conf, anchored=anchored,
        priceless=priceless, rule_trace=trace,
    )


def _script_rank(text: str) -> int:
    cjk = bool(_CJK_RE.search(text))
    latin = bool(_LATIN_RE.search(text))
    if cjk and latin:
        return 0
    if cjk:
        return 1
    if latin:
        return 2
    return 3


def extract_pair(
    region: Region,
    classification: ClassificationResult,
    config: PipelineConfig,
) -> Optional[Components]:
    """Name + price only; the name is chosen by script preference."""
    tokens = region.reading_order()
    anchor = _find_anchor(tokens, classification, config)
    if anchor is None:
        return None
    idx, cls = anchor
    parts = _text_parts(tokens, classification, config, skip=idx)
    candidates = [clean_item_name(text) for _, text in parts]
    candidates = [c for c in candidates if _name_gate(c, config)]
    if not candidates:
        return None
    # min() is stable: reading order breaks ties within a script tier.
    name = min(candidates, key=_script_rank)
    return Components(
        name=name, price=cls.value, description=None,
        price_confidence=cls.confidence, anchored=True,
        rule_trace=f"pair anchor {cls.reasoning}; script tier {_script_rank(name)}",
    )


def _make_item(
    item_id: str,
    comps_name: str,
    price: float,
    description: Optional[str],
    confidence: float,
    provenance: ItemProvenance,
    priceless: bool = False,
) -> MenuItem:
    conf = clamp01(confidence)
    return MenuItem(
        id=item_id,
        name=comps_name,
        price=price,
        description=description,
        category=categorize_item(comps_name, description),
        serving_size=estimate_serving_size(comps_name, description),
        confidence=conf,
        provenance=provenance,
        priceless=priceless,
        base_confidence=conf,
    )


def region_item_id(region: Region) -> str:
    return f"region-{region.page_index}-{int(round(region.bbox.x))}-{int(round(region.bbox.y))}"


def assemble_region(
    region: Region,
    classification: ClassificationResult,
    config: PipelineConfig,
    phase: str = "region",
) -> Optional[MenuItem]:
    if config.pair_mode:
        comps = extract_pair(region, classification, config)
        phase = "pair" if phase == "region" else phase
    else:
        comps = extract_components(region, classification, config)
    if comps is None:
        return None
    return _make_item(
        region_item_id(region),
        comps.name,
        comps.price,
        comps.description,
        item_confidence(region.confidence, comps.price_confidence, anchored=comps.anchored),
        ItemProvenance(region=region, phase=phase, rule_trace=comps.rule_trace, tokens=region.member_tokens()),
        priceless=comps.priceless,
    )


def assemble_items(
    regions: Sequence[Region],
    classification: ClassificationResult,
    config: PipelineConfig,
    phase: str = "region",
    session=None,
) -> List[MenuItem]:
    items: List[MenuItem] = []
    for region in regions:
        item = assemble_region(region, classification, config, phase)
        if item is None:
            if session is not None:
                session.log(
                    PHASE, "debug", f"no components in {region.describe()}",
                    kind=FailureKind.VALIDATION, bbox=region.describe(),
                )
            continue
        items.append(item)
    return items


def fallback_items(parsed: Sequence[ParsedLine]) -> List[MenuItem]:
    return [
        _make_item(
            f"line-{p.page_index}-{p.line_index}",
            p.name, p.price, p.description, p.confidence,
            ItemProvenance(region=None, phase="fallback", rule_trace=f"line[{p.pattern}]", tokens=list(p.tokens)),
        )
        for p in parsed
    ]


# ── Bootstrap assessment ─────────────────────────────

@dataclass
class BootstrapMetrics:
    count: int
    mean_confidence: float
    coverage: float
    reasons: List[str] = field(default_factory=list)

    @property
    def insufficient(self) -> bool:
        return bool(self.reasons)


def price_coverage(items: Sequence[MenuItem], classification: ClassificationResult, config: PipelineConfig) -> float:
    """Share of price-classified tokens that ended up inside some item."""
    price_tokens = {
        tok for tok in classification.by_token
        if classification.best_price(tok, config.price_confidence_floor) is not None
    }
    if not price_tokens:
        return 1.0
    covered = set()
    for item in items:
        covered.update(item.provenance.tokens)
    return len(price_tokens & covered) / len(price_tokens)


def assess_bootstrap(
    items: Sequence[MenuItem],
    classification: ClassificationResult,
    config: PipelineConfig,
) -> BootstrapMetrics:
    count = len(items)
    mean = mean_confidence(it.confidence for it in items)
    coverage = price_coverage(items, classification, config)
    reasons: List[str] = []
    if count < config.min_items:
        reasons.append(f"count {count} < {config.min_items}")
    if mean < config.quality_floor:
        reasons.append(f"mean confidence {mean:.2f} < {config.quality_floor}")
    if coverage < config.min_coverage:
        reasons.append(f"coverage {coverage:.2f} < {config.min_coverage}")
    return BootstrapMetrics(count=count, mean_confidence=mean, coverage=coverage, reasons=reasons)


def quality_metric(items: Sequence[MenuItem], config: PipelineConfig) -> float:
    """Mean confidence, discounted while the item count is below the floor."""
    if not items:
        return 0.0
    yield_factor = min(1.0, len(items) / max(config.min_items, 1))
    return clamp01(round(mean_confidence(it.confidence for it in items) * yield_factor, 4))


# ── Pattern learning / re-scoring ────────────────────

@dataclass(frozen=True)
class LearnedPatterns:
    sample_count: int = 0
    name_length: Tuple[int, int] = (0, 0)
    price_range: Tuple[float, float] = (0.0, 0.0)
    categories: Tuple[Tuple[str, float], ...] = ()

    def category_share(self, category: str) -> float:
        return dict(self.categories).get(category, 0.0)

    def price_hints(self) -> Optional[PriceHints]:
        lo, hi = self.price_range
        if self.sample_count == 0 or hi <= 0:
            return None
        return PriceHints(price_low=round(lo * (1 - _HINT_SLACK), 2), price_high=round(hi * (1 + _HINT_SLACK), 2))


def extract_patterns(items: Sequence[MenuItem]) -> LearnedPatterns:
    priced = [it for it in items if not it.priceless and it.price > 0]
    if not priced:
        return LearnedPatterns()
    lengths = [len(it.name) for it in priced]
    prices = [it.price for it in priced]
    counts = Counter(it.category for it in priced)
    n = len(priced)
    cats = tuple(sorted(((c, round(k / n, 4)) for c, k in counts.items()), key=lambda ck: (-ck[1], ck[0])))
    return LearnedPatterns(
        sample_count=n,
        name_length=(min(lengths), max(lengths)),
        price_range=(min(prices), max(prices)),
        categories=cats,
    )


def rescore(items: Sequence[MenuItem], patterns: LearnedPatterns) -> List[MenuItem]:
    """
    Re-score against learned patterns, always from the assembled
    base_confidence so repeated passes do not compound.
    """
    if patterns.sample_count == 0:
        return list(items)
    lo_len, hi_len = patterns.name_length
    lo_p, hi_p = patterns.price_range
    out: List[MenuItem] = []
    for it in items:
        base = it.base_confidence if it.base_confidence is not None else it.confidence
        adj = 0.0
        if lo_len <= len(it.name) <= hi_len:
            adj += 0.05
        if not it.priceless:
            if lo_p <= it.price <= hi_p:
                adj += 0.05
            elif it.price > 2 * hi_p or it.price < 0.5 * lo_p:
                adj -= 0.1
        if patterns.category_share(it.category) >= 0.2:
            adj += 0.05
        out.append(replace(it, confidence=clamp01(round(base + adj, 4)), base_confidence=base))
    return out


def merge_item_sets(primary: Sequence[MenuItem], supplementary: Sequence[MenuItem]) -> List[MenuItem]:
    """Primary items first, then supplementary items that describe a new record.

    A supplementary item clashes with a kept item when the normalized names
    match or when both were built from a shared source token (the same price
    can't close two records). On a clash the higher-confidence item wins;
    ties keep the item already in the set.
    """
    out = list(primary)
    for it in supplementary:
        key = normalize_name(it.name)
        toks = set(it.provenance.tokens)
        clashes = [
            i for i, kept in enumerate(out)
            if normalize_name(kept.name) == key or (toks and not toks.isdisjoint(kept.provenance.tokens))
        ]
        if not clashes:
            out.append(it)
            continue
        if all(it.confidence > out[i].confidence for i in clashes):
            out[clashes[0]] = it
            for i in reversed(clashes[1:]):
                del out[i]
    return out


# ── State machine ────────────────────────────────────

class AssemblyState(str, Enum):
    ASSEMBLE = "assemble"
    ASSESS = "assess"
    FALLBACK = "fallback"
    REPROCESS = "reprocess"
    CONVERGE = "converge"
    VALIDATE = "validate"
    DEDUP = "dedup"
    DONE = "done"


RefineFn = Callable[[PriceHints], Tuple[Sequence[Region], ClassificationResult]]


@dataclass
class AssemblyResult:
    items: List[MenuItem]
    metrics: BootstrapMetrics
    iterations: int = 0
    converged: bool = False
    reverted: bool = False
    quality: float = 0.0
    states: List[AssemblyState] = field(default_factory=list)


class ItemAssembler:
    def __init__(self, config: PipelineConfig, session=None) -> None:
        self.config = config
        self.session = session

    def _log(self, severity: str, message: str, **context) -> None:
        if self.session is not None:
            self.session.log(PHASE, severity, message, **context)

    def run(
        self,
        regions: Sequence[Region],
        pages: Sequence[Page],
        classification: ClassificationResult,
        refine: Optional[RefineFn] = None,
    ) -> AssemblyResult:
        cfg = self.config
        S = AssemblyState
        state = S.ASSEMBLE
        trace: List[AssemblyState] = []

        primary: List[MenuItem] = []
        current: List[MenuItem] = []
        candidate: List[MenuItem] = []
        fallback: Optional[List[MenuItem]] = None
        metrics = BootstrapMetrics(0, 0.0, 0.0)
        best_items: List[MenuItem] = []
        best_q = 0.0
        prev_q = 0.0
        iterations = 0
        converged = False
        reverted = False
        refined = False

        # Hard bound on transitions.
        max_steps = 8 * (cfg.max_bootstrap_iterations + 2)
        for _ in range(max_steps):
            if state is S.DONE:
                break
            trace.append(state)

            if state is S.ASSEMBLE:
                primary = assemble_items(regions, classification, cfg, session=self.session)
                current = primary
                best_items, best_q = current, quality_metric(current, cfg)
                prev_q = best_q
                self._log("info", f"assembled {len(primary)} items from {len(regions)} regions (q={best_q:.3f})")
                state = S.ASSESS

            elif state is S.ASSESS:
                metrics = assess_bootstrap(current, classification, cfg)
                if not metrics.insufficient:
                    converged = True
                    state = S.VALIDATE
                elif iterations >= cfg.max_bootstrap_iterations:
                    self._log(
                        "warning",
                        f"iteration cap {cfg.max_bootstrap_iterations} reached without convergence: {'; '.join(metrics.reasons)}",
                        kind=FailureKind.CONVERGENCE,
                    )
                    current = best_items
                    state = S.VALIDATE
                else:
                    self._log("info", f"bootstrap triggered: {'; '.join(metrics.reasons)}", kind=FailureKind.LOW_YIELD)
                    state = S.FALLBACK

            elif state is S.FALLBACK:
                if self.session is not None:
                    self.session.check_cancelled(f"bootstrap iteration {iterations + 1}")
                iterations += 1
                if fallback is None:
                    parsed: List[ParsedLine] = []
                    for page in pages:
                        parsed.extend(parse_page_lines(page, cfg))
                    fallback = fallback_items(parsed)
                    self._log("info", f"fallback parsed {len(fallback)} line items")
                state = S.REPROCESS

            elif state is S.REPROCESS:
                learn_from = fallback if iterations == 1 else merge_item_sets(primary, fallback or [])
                patterns = extract_patterns(learn_from)
                hints = patterns.price_hints()
                if refine is not None and not refined and hints is not None:
                    refined = True
                    new_regions, new_cls = refine(hints)
                    classification = new_cls
                    primary = assemble_items(new_regions, new_cls, cfg, phase="refined", session=self.session)
                    self._log(
                        "info",
                        f"refinement pass with price band {hints.price_low}-{hints.price_high}: {len(primary)} items",
                    )
                candidate = merge_item_sets(rescore(primary, patterns), fallback or [])
                state = S.CONVERGE

            elif state is S.CONVERGE:
                q = quality_metric(candidate, cfg)
                improvement = q - prev_q
                self._log("debug", f"iteration {iterations}: q={q:.4f} (Δ {improvement:+.4f})")
                if q < best_q - cfg.revert_margin:
                    reverted = True
                    current = best_items
                    self._log(
                        "warning", f"quality regressed {best_q:.3f} → {q:.3f}; reverting",
                        kind=FailureKind.CONVERGENCE,
                    )
                    state = S.VALIDATE
                    continue
                if q >= best_q:
                    best_items, best_q = candidate, q
                prev_q = q
                if improvement < cfg.convergence_threshold:
                    # Stalled or slightly worse: finish on the best snapshot.
                    converged = True
                    current = best_items
                    metrics = assess_bootstrap(current, classification, cfg)
                    state = S.VALIDATE
                else:
                    current = candidate
                    state = S.ASSESS

            elif state is S.VALIDATE:
                current = enforce_unique_names(current, self.session)
                current = drop_price_outliers(current, cfg.outlier_sigma, self.session)
                state = S.DEDUP

            elif state is S.DEDUP:
                current = deduplicate(current, self.session)
                state = S.DONE

        final_q = quality_metric(current, cfg)
        self._log(
            "info",
            f"{len(current)} items after {iterations} bootstrap iteration(s) "
            f"(converged={converged}, reverted={reverted}, q={final_q:.3f})",
        )
        return AssemblyResult(
            items=list(current),
            metrics=metrics,
            iterations=iterations,
            converged=converged,
            reverted=reverted,
            quality=final_q,
            states=trace,
        )
