"""
Price Parser — currency detection and price-text normalization.

Shared by the token classifier (Phase 0), region scoring (Phase 1), the box
layout gate and the fallback line parser, so every phase agrees on what a
"currency-looking" string is.
"""

import re

CURRENCY_SYMBOLS = "$€£¥"

# Currency mention: a symbol before a digit, or a two-decimal amount ("12.95", "8,50")
CURRENCY_RE = re.compile(r"[$€£¥]\s*\d|(?<![\d.,])\d{1,4}[.,]\d{2}(?!\d)")
# Whole-line price: "$12.95", "12.95", "  $ 9 "
PRICE_ONLY_RE = re.compile(r"^\s*[$€£¥]?\s*(\d{1,4}(?:[.,]\d{1,2})?)\s*$")


def parse_amount(text):
    """Normalize a numeric price string ("12,95" → 12.95). Returns None on junk."""
    if text is None:
        return None
    t = str(text).strip()
    for sym in CURRENCY_SYMBOLS:
        t = t.replace(sym, "")
    t = t.strip().replace(",", ".")
    try:
        return float(t)
    except ValueError:
        return None


def has_currency(text):
    return bool(CURRENCY_RE.search(text or ""))


def parse_price_only(text):
    m = PRICE_ONLY_RE.match(text or "")
    if not m:
        return None
    return parse_amount(m.group(1))


def strip_prices(text):
    """Remove currency mentions (and their dot leaders) from text."""
    t = re.sub(r"[\s.·…]*[$€£¥]\s*\d{1,4}(?:[.,]\d{1,2})?", " ", text or "")
    t = re.sub(r"[\s.·…]*(?<![\d.,])\d{1,4}[.,]\d{2}(?!\d)", " ", t)
    return re.sub(r"\s{2,}", " ", t).strip()
