# menu_infer/ocr_tokens.py
"""
Tesseract adapter: raster page → Page of Tokens.

For scanned menus without a text layer. Converts ``pytesseract.image_to_data``
word boxes (top-down pixels) into bottom-up document Tokens, dropping
low-confidence and ghost words.

Tesseract reports no font metadata; glyph height stands in for font size
and every token shares one family, so typography fingerprints still group
words by size.
"""

from __future__ import annotations

import os
import re
from typing import Dict, List, Optional

import pytesseract
from PIL import Image, ImageOps

from .pipeline_types import Page, Token

LOW_CONF_DROP = 55.0  # drop words with conf < 55

BASE_OCR_CONFIG = r"--oem 3 -c preserve_interword_spaces=1"
OCR_CONFIG = BASE_OCR_CONFIG + " --psm 6"
OCR_LANG = os.getenv("MENU_OCR_LANG", "eng")

OCR_FONT_FAMILY = "tesseract"

_REPEAT3 = re.compile(r"(.)\1\1+")


def _symbol_ratio(s: str) -> float:
    if not s:
        return 1.0
    sym = sum(not (c.isalnum() or c.isspace()) for c in s)
    return sym / max(1, len(s))


def _clean_token(text: str) -> str:
    if not text:
        return ""
    t = _REPEAT3.sub(r"\1\1", text)
    t = re.sub(r"\s{2,}", " ", t).strip()
    return t


def _token_is_garbage(tok: str) -> bool:
    if not tok:
        return True
    if not any(ch.isalnum() for ch in tok):
        # "$" alone is kept: it may sit next to a split-off amount.
        return tok not in {"$", "€", "£", "¥"}
    if _symbol_ratio(tok) > 0.5 and not any(ch.isdigit() for ch in tok):
        return True
    return False


def _make_token(
    i: int,
    data: Dict[str, List],
    page_index: int,
    image_height: int,
    scale: float = 1.0,
    conf_floor: float = LOW_CONF_DROP,
) -> Optional[Token]:
    raw = (data["text"][i] or "").strip()
    try:
        conf_raw = float(data["conf"][i])
    except (TypeError, ValueError):
        conf_raw = -1.0

    if conf_raw < conf_floor:
        return None

    cleaned = _clean_token(raw)
    if _token_is_garbage(cleaned):
        return None

    try:
        x = int(data["left"][i])
        top = int(data["top"][i])
        w = int(data["width"][i])
        h = int(data["height"][i])
    except (TypeError, ValueError):
        return None

    # Skip zero / 1-pixel "ghost" words
    if w <= 1 or h <= 1:
        return None

    # top-down pixels → bottom-up document units
    y_bottom = image_height - (top + h)
    return Token(
        text=cleaned,
        x=x / scale,
        y=y_bottom / scale,
        width=w / scale,
        height=h / scale,
        font_size=h / scale,
        font_family=OCR_FONT_FAMILY,
        page_index=page_index,
    )


def tokens_from_tesseract_data(
    data: Dict[str, List],
    page_index: int,
    image_height: int,
    scale: float = 1.0,
    conf_floor: float = LOW_CONF_DROP,
) -> List[Token]:
    """``scale`` is pixels per document unit (dpi / 72 for PDF points)."""
    out: List[Token] = []
    for i in range(len(data.get("text", []))):
        tok = _make_token(i, data, page_index, image_height, scale, conf_floor)
        if tok is not None:
            out.append(tok)
    return out


def _ocr_page(im: Image.Image) -> Dict[str, List]:
    return pytesseract.image_to_data(
        ImageOps.grayscale(im),
        lang=OCR_LANG,
        output_type=pytesseract.Output.DICT,
        config=OCR_CONFIG,
    )


def extract_page(image: Image.Image, page_index: int, scale: float = 1.0) -> Page:
    """OCR one raster page into a Page measured in document units."""
    data = _ocr_page(image)
    tokens = tokens_from_tesseract_data(data, page_index, image.height, scale)
    return Page(
        index=page_index,
        height=image.height / scale,
        width=image.width / scale,
        tokens=tokens,
    )
