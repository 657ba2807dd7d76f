# menu_infer/pipeline.py
"""
Pipeline orchestrator.

    pages ─▶ Phase 0 classify ─▶ Phase 1 regions ─▶ Phase 2 validate ─▶ Phase 3 assemble
                 ▲                                                          │
                 └──────────── one refinement pass with learned hints ──────┘

run_pipeline() owns the ParseSession when the caller does not supply one;
progress snapshots are emitted at every phase boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import InputFailure, RegionExtractionFailure
from .item_assembler import BootstrapMetrics, ItemAssembler
from .layout.box_detector import detect_box_regions
from .layout.region_detector import detect_regions, usable_tokens
from .pipeline_config import PipelineConfig
from .pipeline_types import LogEntry, MenuItem, Page, ProgressSnapshot, Region
from .region_validator import validate_regions
from .session import ParseSession
from .token_classifier import ClassificationResult, PriceHints, classify_document


@dataclass
class PipelineResult:
    items: List[MenuItem]
    logs: List[LogEntry] = field(default_factory=list)
    progress: List[ProgressSnapshot] = field(default_factory=list)
    metrics: Optional[BootstrapMetrics] = None
    converged: bool = False
    reverted: bool = False
    iterations: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "items": [it.to_dict() for it in self.items],
            "converged": self.converged,
            "reverted": self.reverted,
            "iterations": self.iterations,
            "metrics": (
                {
                    "count": self.metrics.count,
                    "mean_confidence": round(self.metrics.mean_confidence, 4),
                    "coverage": round(self.metrics.coverage, 4),
                }
                if self.metrics is not None else None
            ),
        }


def _check_input(pages: Sequence[Page]) -> None:
    if not pages:
        raise InputFailure("document has no pages")
    if not any(usable_tokens(p.tokens) for p in pages):
        raise InputFailure(f"no usable tokens on {len(pages)} page(s)")


def detect_all_regions(
    pages: Sequence[Page],
    config: PipelineConfig,
    session: ParseSession,
    renderer=None,
) -> List[Region]:
    """Phase 1 over every page; box mode falls back to proximity per page."""
    box_mode = config.detection_mode == "box"
    if box_mode and renderer is None:
        session.log("regions", "warning", "box detection needs a page renderer; using proximity mode")
        box_mode = False

    regions: List[Region] = []
    for page in pages:
        session.check_cancelled(f"region detection page {page.index}")
        if box_mode:
            try:
                image = renderer.page_image(page.index)
            except RegionExtractionFailure as e:
                session.log(
                    "boxes", "warning",
                    f"page {page.index} could not be rendered ({e}); using proximity mode",
                    page_index=page.index,
                )
            else:
                regions.extend(detect_box_regions(page, image, config, session))
                continue
        regions.extend(detect_regions(page, config, session))
    return regions


def classify(
    pages: Sequence[Page],
    config: PipelineConfig,
    session: ParseSession,
    hints: Optional[PriceHints] = None,
) -> ClassificationResult:
    classification = classify_document(pages, config, hints=hints)
    session.classification = classification
    session.log(
        "classify", "info",
        f"{len(classification.classifications)} numbers classified, "
        f"{len(classification.fingerprints)} typography fingerprints"
        + (f" (price band {hints.price_low}-{hints.price_high})" if hints is not None else ""),
    )
    return classification


def _phases_0_to_2(
    pages: Sequence[Page],
    config: PipelineConfig,
    session: ParseSession,
    renderer=None,
    hints: Optional[PriceHints] = None,
) -> Tuple[List[Region], ClassificationResult]:
    classification = classify(pages, config, session, hints)
    candidates = detect_all_regions(pages, config, session, renderer)
    validated = validate_regions(candidates, classification, config, session, renderer)
    return validated, classification


def run_pipeline(
    pages: Sequence[Page],
    config: Optional[PipelineConfig] = None,
    session: Optional[ParseSession] = None,
    renderer=None,
) -> PipelineResult:
    """
    Infer menu items from positioned tokens.

    Raises InputFailure for an empty document and ParseCancelled when the
    session is cancelled; every other failure is recovered and logged.
    """
    own_session = session is None
    if session is None:
        session = ParseSession(config)
    config = (config or session.config).validate()

    try:
        _check_input(pages)
        token_count = sum(len(p.tokens) for p in pages)
        session.report_progress("classify", 0, f"{len(pages)} page(s), {token_count} tokens")

        classification = classify(pages, config, session)
        session.report_progress("regions", 15, "detecting regions")

        candidates = detect_all_regions(pages, config, session, renderer)
        session.report_progress("validation", 40, f"validating {len(candidates)} regions")

        validated = validate_regions(candidates, classification, config, session, renderer)
        session.report_progress("assembly", 70, f"assembling items from {len(validated)} regions")

        def refine(hints: PriceHints):
            session.report_progress("refine", 80, "refinement pass with learned price band")
            return _phases_0_to_2(pages, config, session, renderer, hints)

        assembled = ItemAssembler(config, session).run(validated, pages, classification, refine=refine)
        session.report_progress("done", 100, f"{len(assembled.items)} items")

        return PipelineResult(
            items=assembled.items,
            logs=list(session.logs),
            progress=list(session.progress),
            metrics=assembled.metrics,
            converged=assembled.converged,
            reverted=assembled.reverted,
            iterations=assembled.iterations,
        )
    finally:
        if own_session:
            session.close()
