# menu_infer/pipeline_config.py
"""
Pipeline configuration — every tunable threshold in one frozen struct.

A PipelineConfig is supplied whole at the start of a run and never mutated
mid-run; an external tuner produces new instances via ``dataclasses.replace``.
``from_env()`` mirrors the env-controlled feature flags the OCR pipeline used
(``MENU_<FIELD_NAME>`` overrides, e.g. ``MENU_Y_PROXIMITY_EM=2.0``).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Optional


DETECTION_MODES = ("proximity", "box")


@dataclass(frozen=True)
class PipelineConfig:
    # Phase 0: number classification
    price_min: float = 0.5
    price_max: float = 200.0
    price_confidence_floor: float = 0.7
    fingerprint_min_group: int = 3
    fingerprint_pattern_share: float = 0.30
    fingerprint_full_sample: int = 10

    # Phase 1: proximity clustering (em = average font size on the page)
    y_proximity_em: float = 1.5
    x_distance_em: float = 6.0
    detection_mode: str = "proximity"

    # Phase 1 alt: bordered boxes (raster pixels unless noted)
    box_render_dpi: int = 144
    box_edge_threshold: float = 0.25
    box_line_threshold: float = 0.35
    box_min_line_span: int = 40
    box_line_tolerance: int = 6
    box_min_width: int = 60
    box_min_height: int = 60
    box_min_aspect: float = 0.3
    box_max_aspect: float = 3.0
    box_edge_margin: int = 4
    box_merge_overlap: float = 0.30
    box_token_padding: float = 2.0

    # Phase 2: region validation
    min_width_em: float = 3.0
    min_height_em: float = 0.8
    min_text_length: int = 5
    min_text_density: float = 0.02      # characters per em²
    min_region_confidence: float = 0.6
    extraction_quality_threshold: float = 0.7
    thumbnail_padding: float = 10.0
    thumbnail_failure_penalty: float = 0.9
    render_workers: int = 4
    render_batch_size: int = 16
    cross_page_margin: float = 0.12     # share of page height
    cross_page_align_em: float = 2.0

    # Phase 3: assembly + bootstrap
    pair_mode: bool = False
    allow_priceless: bool = False
    name_min_length: int = 2
    name_max_length: int = 50
    min_items: int = 5
    quality_floor: float = 0.7
    min_coverage: float = 0.6
    max_bootstrap_iterations: int = 3
    convergence_threshold: float = 0.01
    revert_margin: float = 0.05
    outlier_sigma: float = 3.0

    def validate(self) -> "PipelineConfig":
        """Raise ValueError on out-of-range values; returns self for chaining."""
        problems = []
        if not 0 < self.price_min < self.price_max:
            problems.append("price_min must be positive and below price_max")
        if self.y_proximity_em <= 0 or self.x_distance_em <= 0:
            problems.append("proximity thresholds must be positive")
        if self.detection_mode not in DETECTION_MODES:
            problems.append(f"detection_mode must be one of {DETECTION_MODES}")
        if self.max_bootstrap_iterations < 1:
            problems.append("max_bootstrap_iterations must be >= 1")
        if self.render_workers < 1 or self.render_batch_size < 1:
            problems.append("render_workers and render_batch_size must be >= 1")
        if not 0 < self.thumbnail_failure_penalty <= 1:
            problems.append("thumbnail_failure_penalty must be in (0, 1]")
        if self.name_min_length > self.name_max_length:
            problems.append("name_min_length must not exceed name_max_length")
        for name in (
            "price_confidence_floor", "min_region_confidence",
            "extraction_quality_threshold", "quality_floor", "min_coverage",
            "fingerprint_pattern_share", "cross_page_margin",
            "box_edge_threshold", "box_line_threshold", "box_merge_overlap",
        ):
            v = getattr(self, name)
            if not 0.0 <= v <= 1.0:
                problems.append(f"{name} must be within [0, 1]")
        if problems:
            raise ValueError("invalid PipelineConfig: " + "; ".join(problems))
        return self

    def with_overrides(self, **overrides: Any) -> "PipelineConfig":
        return replace(self, **overrides).validate()

    @classmethod
    def from_env(
        cls,
        environ: Optional[Dict[str, str]] = None,
        prefix: str = "MENU_",
    ) -> "PipelineConfig":
        env = os.environ if environ is None else environ
        base = cls()
        overrides: Dict[str, Any] = {}
        for f in fields(cls):
            raw = env.get(prefix + f.name.upper())
            if raw is None or raw == "":
                continue
            current = getattr(base, f.name)
            if isinstance(current, bool):
                overrides[f.name] = raw.strip().lower() in {"1", "true", "yes", "on"}
            elif isinstance(current, int):
                overrides[f.name] = int(raw)
            elif isinstance(current, float):
                overrides[f.name] = float(raw)
            else:
                overrides[f.name] = raw.strip()
        return replace(base, **overrides).validate()
