# menu_infer/token_classifier.py
"""
Token Classifier — Phase 0

Classifies every numeric substring of every token and summarizes the
document's typography.

Number extraction is layered (first layer to claim a span wins):
  1. currency-prefixed       "$12.95", "€ 8,50"
  2. suffixed unit           "650 cal", "12oz", '16"', "1.5 liter"
  3. bare integer / decimal  "12.95", "#14", "No. 7", "3"

Classification is an ordered rule table evaluated first-match-wins; each rule
fixes its confidence:

  price        currency format within [price_min, price_max]   0.90
  calorie      integer in [100, 2000] with a calorie suffix    0.85
  measurement  unit suffix, or followed by a unit token        0.80
  count        integer <= 20, no currency / item-number mark   0.60
  item_number  ^#?\\d+$ or No.\\s*\\d+                         0.70
  unknown      anything else                                   0.30

During the single refinement pass, Phase 3 may hand back PriceHints (the
price band learned from accepted items); a hint rule then runs ahead of the
count rule and reads bare numbers inside that band as prices (0.75).

Typography fingerprints group tokens by (family, size, weight); groups with
fewer than three members are discarded.

Pure: the same tokens + config (+ hints) always yield the same result.
"""

from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .parsers.price_parser import has_currency, parse_amount
from .pipeline_config import PipelineConfig
from .pipeline_types import (
    FingerprintKey,
    NumberClassification,
    NumberKind,
    Page,
    Token,
    TypographyFingerprint,
)
from .scoring.confidence import clamp01


# ── Extraction patterns ─────────────────────────────

_CURRENCY_LAYER = re.compile(r"[$€£¥]\s*(\d{1,4}(?:[.,]\d{1,2})?)")

_CALORIE_UNITS = r"kcal|calories|calorie|cals?"
_MEASURE_UNITS = (
    r"ounces|ounce|oz|lbs|lb|pounds|pound|ml|liters|liter|litres|litre|l"
    r"|inches|inch|in|ft|foot|feet"
)
_UNIT_LAYER = re.compile(
    rf"(\d+(?:\.\d+)?)\s*(?:({_CALORIE_UNITS})\b|({_MEASURE_UNITS})\b|([\"'”″]))",
    re.IGNORECASE,
)
_BARE_LAYER = re.compile(r"(#|No\.\s*)?(\d+(?:[.,]\d+)?)", re.IGNORECASE)

_UNIT_WORD_RE = re.compile(
    rf"^\s*(?:{_MEASURE_UNITS}|[\"'”″])\.?\s*$", re.IGNORECASE
)
_CALORIE_WORD_RE = re.compile(rf"^\s*(?:{_CALORIE_UNITS})\.?\s*$", re.IGNORECASE)
_ITEM_NUMBER_RE = re.compile(r"^#?\d+$|^No\.\s*\d+$", re.IGNORECASE)


@dataclass(frozen=True)
class NumberMatch:
    raw: str
    value: float
    start: int
    end: int
    currency: bool = False
    decimal2: bool = False
    unit: Optional[str] = None
    unit_kind: Optional[str] = None     # "calorie" | "measure"
    prefix: Optional[str] = None        # "#" | "No."

    @property
    def is_integer(self) -> bool:
        return float(self.value).is_integer() and "." not in self.raw and "," not in self.raw


@dataclass(frozen=True)
class PriceHints:
    """Price band learned by Phase 3, fed back for one refinement pass."""
    price_low: float
    price_high: float


def _overlaps(span: Tuple[int, int], taken: List[Tuple[int, int]]) -> bool:
    a0, a1 = span
    return any(a0 < b1 and b0 < a1 for (b0, b1) in taken)


def extract_numbers(text: str) -> List[NumberMatch]:
    """Every numeric substring of ``text``, in order of appearance."""
    text = text or ""
    taken: List[Tuple[int, int]] = []
    found: List[NumberMatch] = []

    for m in _CURRENCY_LAYER.finditer(text):
        val = parse_amount(m.group(1))
        if val is None:
            continue
        digits = m.group(1)
        taken.append(m.span())
        found.append(NumberMatch(
            raw=m.group(0), value=val, start=m.start(), end=m.end(),
            currency=True,
            decimal2=bool(re.search(r"[.,]\d{2}$", digits)),
        ))

    for m in _UNIT_LAYER.finditer(text):
        if _overlaps(m.span(), taken):
            continue
        val = parse_amount(m.group(1))
        if val is None:
            continue
        if m.group(2):
            unit, kind = m.group(2).lower(), "calorie"
        else:
            unit, kind = (m.group(3) or m.group(4)).lower(), "measure"
        taken.append(m.span())
        found.append(NumberMatch(
            raw=m.group(0), value=val, start=m.start(), end=m.end(),
            unit=unit, unit_kind=kind,
        ))

    for m in _BARE_LAYER.finditer(text):
        if _overlaps(m.span(), taken):
            continue
        digits = m.group(2)
        val = parse_amount(digits)
        if val is None:
            continue
        prefix = None
        if m.group(1):
            prefix = "#" if m.group(1).startswith("#") else "No."
        taken.append(m.span())
        found.append(NumberMatch(
            raw=m.group(0), value=val, start=m.start(), end=m.end(),
            decimal2=bool(re.fullmatch(r"\d+[.,]\d{2}", digits)),
            prefix=prefix,
        ))

    found.sort(key=lambda n: n.start)
    return found


# ── Rule table ──────────────────────────────────────

@dataclass(frozen=True)
class RuleContext:
    match: NumberMatch
    config: PipelineConfig
    next_text: str = ""
    hints: Optional[PriceHints] = None


@dataclass(frozen=True)
class NumberRule:
    name: str
    predicate: Callable[[RuleContext], bool]
    kind: NumberKind
    confidence: float


def _is_currency_price(ctx: RuleContext) -> bool:
    m = ctx.match
    if not (m.currency or m.decimal2) or m.unit_kind:
        return False
    return ctx.config.price_min <= m.value <= ctx.config.price_max


def _is_calorie(ctx: RuleContext) -> bool:
    m = ctx.match
    if not m.is_integer or not 100 <= m.value <= 2000:
        return False
    if m.unit_kind == "calorie":
        return True
    return m.unit_kind is None and bool(_CALORIE_WORD_RE.match(ctx.next_text))


def _is_measurement(ctx: RuleContext) -> bool:
    m = ctx.match
    if m.unit_kind == "measure":
        return True
    return m.unit_kind is None and not m.currency and bool(_UNIT_WORD_RE.match(ctx.next_text))


def _is_hinted_price(ctx: RuleContext) -> bool:
    m, h = ctx.match, ctx.hints
    if h is None or m.unit_kind or m.prefix or m.currency:
        return False
    return h.price_low <= m.value <= h.price_high


def _is_count(ctx: RuleContext) -> bool:
    m = ctx.match
    return m.is_integer and m.value <= 20 and not m.currency and not m.prefix and not m.unit_kind


def _is_item_number(ctx: RuleContext) -> bool:
    return bool(_ITEM_NUMBER_RE.match(ctx.match.raw.strip()))


NUMBER_RULES: Tuple[NumberRule, ...] = (
    NumberRule("currency_in_price_band", _is_currency_price, NumberKind.PRICE, 0.9),
    NumberRule("calorie_suffix", _is_calorie, NumberKind.CALORIE, 0.85),
    NumberRule("unit_adjacent", _is_measurement, NumberKind.MEASUREMENT, 0.8),
    NumberRule("learned_price_band", _is_hinted_price, NumberKind.PRICE, 0.75),
    NumberRule("small_integer", _is_count, NumberKind.COUNT, 0.6),
    NumberRule("item_number_shape", _is_item_number, NumberKind.ITEM_NUMBER, 0.7),
)

_FALLBACK_CONFIDENCE = 0.3


def classify_number(
    match: NumberMatch,
    config: PipelineConfig,
    next_text: str = "",
    hints: Optional[PriceHints] = None,
    token: Optional[Token] = None,
) -> NumberClassification:
    ctx = RuleContext(match=match, config=config, next_text=next_text or "", hints=hints)
    for rule in NUMBER_RULES:
        if rule.predicate(ctx):
            return NumberClassification(
                value=match.value,
                kind=rule.kind,
                confidence=clamp01(rule.confidence),
                reasoning=f"rule[{rule.name}] on {match.raw.strip()!r}",
                raw_text=match.raw,
                token=token,
            )
    return NumberClassification(
        value=match.value,
        kind=NumberKind.UNKNOWN,
        confidence=_FALLBACK_CONFIDENCE,
        reasoning=f"rule[none] on {match.raw.strip()!r}",
        raw_text=match.raw,
        token=token,
    )


def classify_token(
    token: Token,
    config: PipelineConfig,
    next_token: Optional[Token] = None,
    hints: Optional[PriceHints] = None,
) -> List[NumberClassification]:
    """Classify each number in a token independently."""
    matches = extract_numbers(token.text)
    out: List[NumberClassification] = []
    for i, m in enumerate(matches):
        # Only the last number in the token can be followed by the next token.
        if i == len(matches) - 1:
            trailing = token.text[m.end:].strip()
            nxt = trailing or (next_token.text if next_token is not None else "")
        else:
            nxt = token.text[m.end:matches[i + 1].start].strip()
        out.append(classify_number(m, config, next_text=nxt, hints=hints, token=token))
    return out


# ── Typography fingerprints ─────────────────────────

_PREPARATION_RE = re.compile(
    r"\b(grilled|fried|roasted|baked|steamed|saut[eé]ed|braised|smoked|seared|"
    r"toasted|stuffed|marinated|crispy|poached|blackened|glazed|charred)\b",
    re.IGNORECASE,
)
_UNIT_SHAPE_RE = re.compile(rf"\d\s*(?:{_MEASURE_UNITS}|{_CALORIE_UNITS})\b|\d\s*[\"”″]", re.IGNORECASE)
_CATEGORY_WORD_RE = re.compile(
    r"\b(appetizers?|starters?|salads?|soups?|mains?|entr[eé]es?|sides?|"
    r"desserts?|beverages?|drinks?|specials?)\b",
    re.IGNORECASE,
)

CONTENT_PATTERNS: Tuple[Tuple[str, Callable[[str], bool]], ...] = (
    ("preparation", lambda s: bool(_PREPARATION_RE.search(s))),
    ("currency", has_currency),
    ("unit", lambda s: bool(_UNIT_SHAPE_RE.search(s))),
    ("category", lambda s: bool(_CATEGORY_WORD_RE.search(s))),
)


def fingerprint_key(token: Token) -> FingerprintKey:
    return (token.font_family, round(token.effective_font_size, 1), token.font_weight)


def build_fingerprints(
    tokens: Sequence[Token],
    config: Optional[PipelineConfig] = None,
) -> Dict[FingerprintKey, TypographyFingerprint]:
    config = config or PipelineConfig()
    groups: Dict[FingerprintKey, List[Token]] = defaultdict(list)
    for tok in tokens:
        if tok.text.strip():
            groups[fingerprint_key(tok)].append(tok)

    out: Dict[FingerprintKey, TypographyFingerprint] = {}
    for key, members in groups.items():
        n = len(members)
        if n < config.fingerprint_min_group:
            continue
        avg_len = sum(len(t.text.strip()) for t in members) / n
        patterns = set()
        for name, test in CONTENT_PATTERNS:
            hits = sum(1 for t in members if test(t.text))
            if hits / n >= config.fingerprint_pattern_share:
                patterns.add(name)
        family, size, weight = key
        out[key] = TypographyFingerprint(
            font_family=family,
            font_size=size,
            font_weight=weight,
            avg_text_length=round(avg_len, 2),
            patterns=frozenset(patterns),
            sample_count=n,
            confidence=clamp01(min(n / config.fingerprint_full_sample, 1.0)),
        )
    return out


# ── Document-level entry ────────────────────────────

@dataclass
class ClassificationResult:
    classifications: List[NumberClassification] = field(default_factory=list)
    by_token: Dict[Token, List[NumberClassification]] = field(default_factory=dict)
    fingerprints: Dict[FingerprintKey, TypographyFingerprint] = field(default_factory=dict)
    hints: Optional[PriceHints] = None

    def for_token(self, token: Token) -> List[NumberClassification]:
        return self.by_token.get(token, [])

    def best_price(self, token: Token, floor: float = 0.7) -> Optional[NumberClassification]:
        """Highest-confidence price reading of a token above ``floor``."""
        prices = [
            c for c in self.for_token(token)
            if c.kind is NumberKind.PRICE and c.confidence > floor
        ]
        if not prices:
            return None
        # Later numbers win ties: "2 for $12.95" → 12.95
        return max(enumerate(prices), key=lambda ic: (ic[1].confidence, ic[0]))[1]

    def fingerprint_for(self, token: Token) -> Optional[TypographyFingerprint]:
        return self.fingerprints.get(fingerprint_key(token))


def _line_neighbors(page: Page) -> Dict[Token, Token]:
    """Map each token to the next token on the same visual line, if close."""
    toks = sorted(
        (t for t in page.tokens if t.text.strip()),
        key=lambda t: (round(t.reading_y(page.height), 1), t.x),
    )
    nxt: Dict[Token, Token] = {}
    for a, b in zip(toks, toks[1:]):
        em = max(a.effective_font_size, 1.0)
        same_line = abs(a.reading_y(page.height) - b.reading_y(page.height)) <= 0.5 * em
        if same_line and 0 <= b.x - a.right <= 1.5 * em:
            nxt[a] = b
    return nxt


def classify_document(
    pages: Sequence[Page],
    config: PipelineConfig,
    hints: Optional[PriceHints] = None,
) -> ClassificationResult:
    result = ClassificationResult(hints=hints)
    all_tokens: List[Token] = []
    for page in pages:
        neighbors = _line_neighbors(page)
        for tok in page.tokens:
            all_tokens.append(tok)
            if tok in result.by_token:
                continue
            found = classify_token(tok, config, next_token=neighbors.get(tok), hints=hints)
            if found:
                result.by_token[tok] = found
                result.classifications.extend(found)
    result.fingerprints = build_fingerprints(all_tokens, config)
    return result
