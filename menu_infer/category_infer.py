"""
menu_infer/category_infer.py

Lightweight category + serving-size inference for assembled menu items.

Goals:
- No heavyweight ML deps.
- Work on plain name / description strings from Phase 3.
- Return a simple category + confidence score + human-readable reason.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Sequence
import re


# ------------------------
# Data structures
# ------------------------

@dataclass
class CategoryGuess:
    category: str
    confidence: int  # 0–100
    reason: str = ""


DEFAULT_CATEGORY = "Other"


# ------------------------
# Keyword heuristics
# ------------------------

# Checked in order; the first category with a keyword hit wins.
CATEGORY_KEYWORDS: Dict[str, Sequence[str]] = {
    "Appetizers": [
        "appetizer", "starter", "wings", "nachos", "dip", "bread",
        "bruschetta", "calamari",
    ],
    "Salads": [
        "salad", "caesar", "greens", "lettuce",
    ],
    "Soups": [
        "soup", "bisque", "chowder", "broth",
    ],
    "Mains": [
        "entree", "main", "chicken", "beef", "pork", "fish", "salmon", "steak",
        "pasta", "pizza", "burger", "sandwich",
    ],
    "Sides": [
        "side", "fries", "rice", "potato", "vegetable", "beans",
    ],
    "Desserts": [
        "dessert", "cake", "pie", "ice cream", "chocolate", "cookie", "tiramisu",
    ],
    "Beverages": [
        "drink", "coffee", "tea", "soda", "juice", "beer", "wine", "cocktail",
        "water",
    ],
}

# Serving-size defaults per category (people served).
CATEGORY_SERVINGS: Dict[str, int] = {
    "Appetizers": 2,
    "Sides": 2,
}

_LEADING_NUMBER_RE = re.compile(r"^\d+\.\s*")
_TRAILING_DOTS_RE = re.compile(r"\.+$")
_WHITESPACE_RE = re.compile(r"\s+")


def _blob(name: str, description: Optional[str]) -> str:
    return f"{name or ''} {description or ''}".lower()


def guess_category(name: str, description: Optional[str] = None) -> CategoryGuess:
    text = _blob(name, description)
    for category, keywords in CATEGORY_KEYWORDS.items():
        for kw in keywords:
            if kw in text:
                # Name hits are stronger evidence than description-only hits.
                in_name = kw in (name or "").lower()
                return CategoryGuess(
                    category=category,
                    confidence=80 if in_name else 60,
                    reason=f"keyword '{kw}' in {'name' if in_name else 'description'}",
                )
    return CategoryGuess(category=DEFAULT_CATEGORY, confidence=0, reason="no keyword match")


def categorize_item(name: str, description: Optional[str] = None) -> str:
    return guess_category(name, description).category


def estimate_serving_size(name: str, description: Optional[str] = None) -> int:
    text = _blob(name, description)
    if "family" in text or "large" in text:
        return 4
    if "sharing" in text or "platter" in text:
        return 6
    if "individual" in text or "personal" in text:
        return 1

    if "pizza" in text:
        if "large" in text:
            return 4
        if "medium" in text:
            return 3
        if "small" in text:
            return 2

    return CATEGORY_SERVINGS.get(categorize_item(name, description), 1)


def clean_item_name(name: str) -> str:
    """Strip leading "12. " numbering and trailing dot leaders; collapse whitespace."""
    n = _LEADING_NUMBER_RE.sub("", name or "")
    n = _TRAILING_DOTS_RE.sub("", n.rstrip())
    return _WHITESPACE_RE.sub(" ", n).strip()
