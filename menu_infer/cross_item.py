"""
Cross-Item Consistency — document-wide validation of assembled items.

Compares items ACROSS the menu to catch what per-region checks cannot:

  1. Name uniqueness: items whose normalized names collide keep only the
     highest-confidence instance
  2. Price outliers: priced items above mean + 3·stdev of all priced items
     are dropped (priceless items are exempt)
  3. Final dedup on (normalized name, rounded price)

Each check returns a new list; dropped items are reported through the
session log when a session is supplied.
"""
from __future__ import annotations

import re
import statistics
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import FailureKind
from .pipeline_types import MenuItem

PHASE = "cross_item"

# ---------------------------------------------------------------------------
# Name normalisation
# ---------------------------------------------------------------------------

_WHITESPACE_RE = re.compile(r"\s+")
_PUNCT_RE = re.compile(r"[^\w\s]", re.UNICODE)

_MIN_PRICED_FOR_OUTLIERS = 3


def normalize_name(name: str) -> str:
    """Lowercase, strip punctuation, collapse whitespace."""
    n = (name or "").lower()
    n = _PUNCT_RE.sub(" ", n)
    return _WHITESPACE_RE.sub(" ", n).strip()


def _log(session, severity: str, message: str, **context) -> None:
    if session is not None:
        session.log(PHASE, severity, message, **context)


# ---------------------------------------------------------------------------
# Check 1: name uniqueness
# ---------------------------------------------------------------------------

def enforce_unique_names(items: Sequence[MenuItem], session=None) -> List[MenuItem]:
    """Keep one item per normalized name, the highest-confidence one; order preserved."""
    best: Dict[str, int] = {}
    for idx, item in enumerate(items):
        key = normalize_name(item.name)
        cur = best.get(key)
        if cur is None or item.confidence > items[cur].confidence:
            best[key] = idx

    keep = set(best.values())
    out: List[MenuItem] = []
    for idx, item in enumerate(items):
        if idx in keep:
            out.append(item)
        else:
            winner = items[best[normalize_name(item.name)]]
            _log(
                session, "debug",
                f"duplicate name {item.name!r} ({item.confidence:.2f}) lost to {winner.id}",
                kind=FailureKind.VALIDATION, item_id=item.id,
            )
    return out


# ---------------------------------------------------------------------------
# Check 2: price outliers
# ---------------------------------------------------------------------------

def price_outlier_threshold(items: Sequence[MenuItem], sigma: float = 3.0) -> Optional[float]:
    prices = [it.price for it in items if not it.priceless and it.price > 0]
    if len(prices) < _MIN_PRICED_FOR_OUTLIERS:
        return None
    mean = statistics.mean(prices)
    stdev = statistics.stdev(prices)
    return mean + sigma * stdev


def drop_price_outliers(items: Sequence[MenuItem], sigma: float = 3.0, session=None) -> List[MenuItem]:
    threshold = price_outlier_threshold(items, sigma)
    if threshold is None:
        return list(items)
    out: List[MenuItem] = []
    for item in items:
        if not item.priceless and item.price > threshold:
            _log(
                session, "info",
                f"dropped price outlier {item.name!r} at {item.price:.2f} (> {threshold:.2f})",
                kind=FailureKind.VALIDATION, item_id=item.id, price=item.price,
            )
            continue
        out.append(item)
    return out


# ---------------------------------------------------------------------------
# Check 3: final dedup
# ---------------------------------------------------------------------------

def dedup_key(item: MenuItem) -> Tuple[str, float]:
    return normalize_name(item.name), round(item.price, 2)


def deduplicate(items: Sequence[MenuItem], session=None) -> List[MenuItem]:
    seen = set()
    out: List[MenuItem] = []
    for item in items:
        key = dedup_key(item)
        if key in seen:
            _log(session, "debug", f"dropped duplicate {item.name!r}", item_id=item.id)
            continue
        seen.add(key)
        out.append(item)
    return out


def check_cross_item_consistency(items: Sequence[MenuItem], sigma: float = 3.0, session=None) -> List[MenuItem]:
    """Entry: uniqueness → outliers → dedup."""
    out = enforce_unique_names(items, session)
    out = drop_price_outliers(out, sigma, session)
    return deduplicate(out, session)
