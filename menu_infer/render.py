"""
Page rendering — the injected capability behind region thumbnails and the
bordered-box detector.

  PageRenderer        protocol: page_image(page_index) + render_region(page_index, box)
  PageCache           rendered pages for one parse session (thread-safe)
  PdfPageRenderer     pdf2image/Poppler-backed renderer
  ImagePageRenderer   pre-rasterized pages (scans, tests)

Region boxes arrive in document coordinates (bottom-up points); crops are
taken in raster coordinates (top-down pixels).
"""

from __future__ import annotations

import glob
import io
import os
import threading
from typing import Dict, List, Optional, Protocol, Sequence

from PIL import Image
from pdf2image import convert_from_path

from .errors import RegionExtractionFailure
from .pipeline_types import BBox


# =============================
# Poppler (for pdf2image)
# =============================

def get_poppler_path() -> Optional[str]:
    """POPPLER_PATH if set; on Windows, an unpacked release under Program Files.
    Elsewhere pdf2image finds Poppler on PATH."""
    env = os.environ.get("POPPLER_PATH")
    if env and os.path.isdir(env):
        return env

    if os.name == "nt":
        for path in glob.glob(r"C:\Program Files\poppler*\Library\bin"):
            if os.path.isfile(os.path.join(path, "pdfinfo.exe")):
                return path
    return None


def pdf_to_images_from_path(pdf_path: str, dpi: int = 144, first_page=None, last_page=None) -> List[Image.Image]:
    kwargs = {"dpi": dpi}
    if first_page is not None:
        kwargs["first_page"] = first_page
    if last_page is not None:
        kwargs["last_page"] = last_page
    poppler_path = get_poppler_path()
    if poppler_path:
        kwargs["poppler_path"] = poppler_path
    return convert_from_path(pdf_path, **kwargs)


# =============================
# Session cache
# =============================

class PageCache:
    """Rendered pages keyed by page index; lives and dies with one ParseSession."""

    def __init__(self) -> None:
        self._pages: Dict[int, Image.Image] = {}
        self._lock = threading.Lock()

    def get(self, page_index: int) -> Optional[Image.Image]:
        with self._lock:
            return self._pages.get(page_index)

    def put(self, page_index: int, image: Image.Image) -> None:
        with self._lock:
            self._pages[page_index] = image

    def __contains__(self, page_index: int) -> bool:
        with self._lock:
            return page_index in self._pages

    def __len__(self) -> int:
        with self._lock:
            return len(self._pages)

    def clear(self) -> None:
        with self._lock:
            self._pages.clear()


# =============================
# Renderers
# =============================

class PageRenderer(Protocol):
    def page_image(self, page_index: int) -> Image.Image: ...

    def render_region(self, page_index: int, box: BBox, page_height: float, padding: float = 10.0) -> Image.Image: ...


def to_raster_box(box: BBox, page_height: float, scale: float, padding: float, size) -> tuple:
    """Bottom-up document box (+padding) → clamped top-down pixel crop box."""
    img_w, img_h = size
    left = (box.x - padding) * scale
    top = (page_height - box.top - padding) * scale
    right = (box.right + padding) * scale
    bottom = (page_height - box.y + padding) * scale
    left = max(0, int(round(left)))
    top = max(0, int(round(top)))
    right = min(img_w, int(round(right)))
    bottom = min(img_h, int(round(bottom)))
    return left, top, right, bottom


class _CachedRenderer:
    """Shared crop logic; subclasses implement _render_page()."""

    def __init__(self, page_heights: Sequence[float], cache: Optional[PageCache] = None) -> None:
        self.page_heights = list(page_heights)
        self.cache = cache if cache is not None else PageCache()
        self._render_lock = threading.Lock()

    def _render_page(self, page_index: int) -> Image.Image:
        raise NotImplementedError

    def page_image(self, page_index: int) -> Image.Image:
        img = self.cache.get(page_index)
        if img is not None:
            return img
        # One render per page even when workers race for it.
        with self._render_lock:
            img = self.cache.get(page_index)
            if img is None:
                img = self._render_page(page_index)
                self.cache.put(page_index, img)
        return img

    def scale_for(self, page_index: int) -> float:
        img = self.page_image(page_index)
        page_h = self.page_heights[page_index] if page_index < len(self.page_heights) else 0
        return img.height / page_h if page_h else 1.0

    def render_region(self, page_index: int, box: BBox, page_height: float, padding: float = 10.0) -> Image.Image:
        try:
            img = self.page_image(page_index)
        except RegionExtractionFailure:
            raise
        except Exception as e:
            raise RegionExtractionFailure(f"page {page_index} render failed: {e}") from e
        scale = img.height / page_height if page_height else 1.0
        crop = to_raster_box(box, page_height, scale, padding, img.size)
        if crop[2] <= crop[0] or crop[3] <= crop[1]:
            raise RegionExtractionFailure(f"empty crop {crop} for page {page_index}")
        return img.crop(crop)


class PdfPageRenderer(_CachedRenderer):
    def __init__(self, pdf_path: str, page_heights: Sequence[float], dpi: int = 144, cache: Optional[PageCache] = None) -> None:
        super().__init__(page_heights, cache)
        self.pdf_path = pdf_path
        self.dpi = dpi

    def _render_page(self, page_index: int) -> Image.Image:
        try:
            pages = pdf_to_images_from_path(
                self.pdf_path, dpi=self.dpi,
                first_page=page_index + 1, last_page=page_index + 1,
            )
        except Exception as e:
            raise RegionExtractionFailure(f"pdf2image failed on page {page_index}: {e}") from e
        if not pages:
            raise RegionExtractionFailure(f"no raster produced for page {page_index}")
        return pages[0]


class ImagePageRenderer(_CachedRenderer):
    def __init__(self, images: Sequence[Image.Image], page_heights: Sequence[float], cache: Optional[PageCache] = None) -> None:
        super().__init__(page_heights, cache)
        self.images = list(images)

    def _render_page(self, page_index: int) -> Image.Image:
        if not 0 <= page_index < len(self.images):
            raise RegionExtractionFailure(f"no image for page {page_index}")
        return self.images[page_index]


def image_to_png_bytes(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
