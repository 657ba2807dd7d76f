#!/usr/bin/env python3
"""
Parse a menu PDF (or page images) into structured items.

Rasterizes each page with pdf2image, OCRs it with Tesseract, runs the
inference pipeline and prints one item per line (or JSON).

    python scripts/parse_menu.py menu.pdf
    python scripts/parse_menu.py menu.pdf --pair-mode --json
    python scripts/parse_menu.py page1.png page2.png --box-mode
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from PIL import Image

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from menu_infer.errors import InputFailure, ParseCancelled
from menu_infer.ocr_tokens import extract_page
from menu_infer.pipeline import run_pipeline
from menu_infer.pipeline_config import PipelineConfig
from menu_infer.render import ImagePageRenderer, pdf_to_images_from_path
from menu_infer.session import ParseSession

IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".tif", ".tiff", ".bmp", ".webp"}


def load_images(paths: List[str], dpi: int) -> List[Image.Image]:
    images: List[Image.Image] = []
    for raw in paths:
        p = Path(raw)
        if p.suffix.lower() == ".pdf":
            images.extend(pdf_to_images_from_path(str(p), dpi=dpi))
        elif p.suffix.lower() in IMAGE_SUFFIXES:
            images.append(Image.open(p).convert("RGB"))
        else:
            raise ValueError(f"unsupported input: {p}")
    return images


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Infer menu items from a PDF or page images.")
    ap.add_argument("inputs", nargs="+", help="PDF file or page images, in page order")
    ap.add_argument("--pair-mode", action="store_true", help="Name + price only (no descriptions)")
    ap.add_argument("--box-mode", action="store_true", help="Detect bordered boxes instead of proximity clusters")
    ap.add_argument("--priceless", action="store_true", help="Keep items without a price")
    ap.add_argument("--dpi", type=int, default=None, help="Rasterization DPI (default: box_render_dpi)")
    ap.add_argument("--json", action="store_true", help="Print the full result as JSON")
    ap.add_argument("-v", "--verbose", action="store_true", help="Log pipeline decisions to stderr")
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    config = PipelineConfig.from_env().with_overrides(
        pair_mode=args.pair_mode,
        detection_mode="box" if args.box_mode else "proximity",
        allow_priceless=args.priceless,
    )
    dpi = args.dpi or config.box_render_dpi
    scale = dpi / 72.0

    try:
        images = load_images(args.inputs, dpi)
    except (OSError, ValueError) as e:
        print(f"[ERR] {e}", file=sys.stderr)
        return 1

    pages = [extract_page(img, idx, scale=scale) for idx, img in enumerate(images)]

    with ParseSession(config) as session:
        renderer = ImagePageRenderer(images, [p.height for p in pages], cache=session.page_cache)
        try:
            result = run_pipeline(pages, config, session=session, renderer=renderer)
        except InputFailure as e:
            print(f"[ERR] {e}", file=sys.stderr)
            return 1
        except ParseCancelled as e:
            print(f"[ERR] {e}", file=sys.stderr)
            return 130

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
        return 0

    for item in result.items:
        desc = f" — {item.description}" if item.description else ""
        price = "(no price)" if item.priceless else f"{item.price:.2f}"
        print(f"{item.name}{desc}  {price}  [{item.category}, serves {item.serving_size}, conf {item.confidence:.2f}]")
    print(
        f"{len(result.items)} items (iterations={result.iterations}, "
        f"converged={result.converged}, reverted={result.reverted})",
        file=sys.stderr,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
