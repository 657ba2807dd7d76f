"""
Region Detector -- Phase 1 proximity banding and clustering.

Covers:
  Bands:
  - tokens 50pt apart at 10pt font with 1.5em -> two bands
  - tokens within threshold share a band
  - band count never increases as y_proximity_em grows

  Clusters:
  - gap to previous right edge decides membership
  - singleton clusters dropped at source

  Regions:
  - bbox is the minimal box containing every member token
  - confidence formula and clamp to [0, 1]
  - empty / zero-size tokens filtered before banding
  - detect_document_regions honours cancellation between pages
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from menu_infer.errors import ParseCancelled
from menu_infer.layout.region_detector import (
    cluster_band,
    detect_document_regions,
    detect_regions,
    form_bands,
    make_region,
    score_region,
    usable_tokens,
)
from menu_infer.pipeline_config import PipelineConfig
from menu_infer.pipeline_types import Page, Token
from menu_infer.session import ParseSession


PAGE_H = 800.0


def _tok(text, x, y, w=None, h=10.0, size=10.0, family="Helvetica"):
    return Token(
        text=text, x=x, y=y, width=w if w is not None else len(text) * 5.0,
        height=h, font_size=size, font_family=family,
    )


def _scenario_a_row(y=700.0):
    return [
        _tok("Grilled Salmon Fillet", 50.0, y, w=105.0),
        _tok("Fresh Atlantic salmon with lemon butter sauce", 165.0, y, w=135.0),
        _tok("$24.95", 320.0, y, w=30.0),
    ]


class TestBands:
    def test_scenario_c_two_bands(self):
        toks = [_tok("Soup", 50.0, 100.0), _tok("Salad", 50.0, 150.0)]
        bands = form_bands(toks, PAGE_H, threshold=1.5 * 10.0)
        assert len(bands) == 2

    def test_bands_top_of_page_first(self):
        low = _tok("Bottom", 50.0, 100.0)
        high = _tok("Top", 50.0, 600.0)
        bands = form_bands([low, high], PAGE_H, threshold=15.0)
        assert bands[0] == [high]

    def test_within_threshold_same_band(self):
        toks = [_tok("Name", 50.0, 700.0), _tok("desc", 50.0, 688.0)]
        assert len(form_bands(toks, PAGE_H, threshold=15.0)) == 1

    def test_band_count_monotonic_in_threshold(self):
        ys = [700, 690, 662, 640, 600, 598, 540, 505, 470, 300, 290, 120]
        toks = [_tok(f"t{i}", 50.0 + i, float(y)) for i, y in enumerate(ys)]
        counts = []
        for em in (0.5, 1.0, 1.5, 2.0, 3.0, 5.0, 10.0, 20.0):
            counts.append(len(form_bands(toks, PAGE_H, threshold=em * 10.0)))
        assert all(a >= b for a, b in zip(counts, counts[1:]))
        assert counts[0] > counts[-1]


class TestClusters:
    def test_gap_to_right_edge(self):
        band = [
            _tok("Burger", 0.0, 700.0, w=50.0),
            _tok("$9.95", 60.0, 700.0, w=50.0),
            _tok("Fries", 300.0, 700.0, w=40.0),
        ]
        clusters = cluster_band(band, threshold=60.0)
        assert len(clusters) == 1
        assert [t.text for t in clusters[0]] == ["Burger", "$9.95"]

    def test_singletons_dropped(self):
        band = [_tok("A", 0.0, 700.0, w=10.0), _tok("B", 500.0, 700.0, w=10.0)]
        assert cluster_band(band, threshold=60.0) == []

    def test_unsorted_input(self):
        band = [_tok("$9.95", 60.0, 700.0, w=50.0), _tok("Burger", 0.0, 700.0, w=50.0)]
        clusters = cluster_band(band, threshold=60.0)
        assert [t.text for t in clusters[0]] == ["Burger", "$9.95"]


class TestRegions:
    def test_bbox_minimal(self):
        toks = [_tok("Name", 40.0, 690.0, w=80.0, h=12.0), _tok("$5.00", 150.0, 692.0, w=30.0)]
        region = make_region(toks, 0, PAGE_H)
        b = region.bbox
        assert b.x == pytest.approx(40.0)
        assert b.y == pytest.approx(690.0)
        assert b.right == pytest.approx(180.0)
        assert b.top == pytest.approx(702.0)
        for t in toks:
            assert b.contains(t)
        assert b.width > 0 and b.height > 0

    def test_score_clamped_not_renormalized(self):
        # 0.5 + 0.2 + 0.3 + 0.2 + 0.1 = 1.3 -> 1.0
        assert score_region(_scenario_a_row()) == pytest.approx(1.0)

    def test_score_without_currency(self):
        toks = [_tok("ab", 0.0, 700.0), _tok("cd", 20.0, 700.0)]
        assert score_region(toks) == pytest.approx(0.8)

    def test_score_many_fonts_and_members(self):
        toks = [_tok(f"w{i}", i * 20.0, 700.0, family=f"Font{i}") for i in range(7)]
        assert score_region(toks) == pytest.approx(0.5)

    def test_usable_tokens_filter(self):
        toks = [_tok("  ", 0.0, 0.0), _tok("x", 0.0, 0.0, w=0.0), _tok("ok", 0.0, 0.0)]
        assert [t.text for t in usable_tokens(toks)] == ["ok"]

    def test_detect_scenario_a_row(self):
        page = Page(index=0, height=PAGE_H, tokens=_scenario_a_row())
        regions = detect_regions(page, PipelineConfig())
        assert len(regions) == 1
        assert len(regions[0].tokens) == 3
        assert 0.0 <= regions[0].confidence <= 1.0

    def test_detect_separate_rows(self):
        page = Page(index=0, height=PAGE_H, tokens=_scenario_a_row(700.0) + _scenario_a_row(650.0))
        regions = detect_regions(page, PipelineConfig())
        assert len(regions) == 2
        for r in regions:
            for t in r.tokens:
                assert r.bbox.contains(t)

    def test_session_log_per_page(self):
        session = ParseSession()
        page = Page(index=3, height=PAGE_H, tokens=_scenario_a_row())
        detect_regions(page, PipelineConfig(), session)
        assert session.entries(phase="regions")[0].context["page_index"] == 3


class TestCancellation:
    def test_cancel_between_pages(self):
        session = ParseSession()
        session.cancel()
        pages = [Page(index=0, height=PAGE_H, tokens=_scenario_a_row())]
        with pytest.raises(ParseCancelled):
            detect_document_regions(pages, PipelineConfig(), session)
