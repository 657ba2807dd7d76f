"""
Item Assembler -- Phase 3 component extraction and the bootstrap state machine.

Covers:
  Components:
  - name / description / price triple from an anchored region
  - pair mode keeps the bilingual label, description None
  - pair mode script preference: bilingual > CJK-only > Latin-only
  - typography refinement: larger or bold token becomes the name
  - positional fallback with a trailing loose number
  - priceless items only when allowed

  Bootstrap:
  - assessment reasons (count, mean confidence, coverage)
  - sufficient primary set skips fallback
  - insufficient primary set falls back to line parsing
  - loop terminates within the iteration cap
  - regression beyond the margin reverts to the best snapshot
  - a regression inside the margin stops and keeps the best snapshot
  - refine callable runs at most once

  Patterns:
  - extract_patterns ranges and category shares
  - rescore is idempotent (always from base confidence)
  - merge: name or token clash keeps the higher-confidence item
"""

import sys
from dataclasses import replace
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from menu_infer import item_assembler
from menu_infer.errors import FailureKind
from menu_infer.item_assembler import (
    AssemblyState,
    ItemAssembler,
    LearnedPatterns,
    assemble_region,
    assess_bootstrap,
    extract_components,
    extract_pair,
    extract_patterns,
    merge_item_sets,
    quality_metric,
    rescore,
)
from menu_infer.layout.region_detector import make_region
from menu_infer.pipeline_config import PipelineConfig
from menu_infer.pipeline_types import ItemProvenance, MenuItem, Page, Token
from menu_infer.session import ParseSession
from menu_infer.token_classifier import classify_document


PAGE_H = 800.0
CFG = PipelineConfig()


def _tok(text, x, y, w=None, h=10.0, size=10.0, weight="normal"):
    return Token(
        text=text, x=x, y=y, width=w if w is not None else len(text) * 5.0,
        height=h, font_size=size, font_family="Helvetica", font_weight=weight,
    )


def _row(name, desc, price, y=700.0):
    return [
        _tok(name, 50.0, y),
        _tok(desc, 60.0 + len(name) * 5.0, y),
        _tok(price, 90.0 + len(name) * 5.0 + len(desc) * 5.0, y, w=30.0),
    ]


def _regions(groups, config=CFG):
    toks = [t for g in groups for t in g]
    cls = classify_document([Page(index=0, height=PAGE_H, tokens=toks)], config)
    return [make_region(g, 0, PAGE_H) for g in groups], cls


def _item(name, price, conf=0.8, category="Other", priceless=False):
    return MenuItem(
        id=f"t-{name}", name=name, price=price, category=category,
        confidence=conf, base_confidence=conf, priceless=priceless,
    )


MAINS = [
    ("Grilled Salmon Fillet", "Fresh Atlantic salmon with lemon butter sauce", "$24.95"),
    ("Roast Chicken Breast", "free range chicken with thyme and garlic jus", "$19.50"),
    ("Mushroom Risotto", "arborio rice with wild mushrooms and parmesan", "$17.00"),
    ("Beef Short Ribs", "slow braised ribs with creamy polenta and greens", "$28.00"),
    ("Lobster Ravioli", "handmade pasta in a light tomato cream sauce", "$26.50"),
    ("Duck Confit", "crispy leg with lentils and cherry gastrique", "$23.00"),
]

FALLBACK_LINES = [
    ("Margherita Pizza - tomato, basil", "$12.50"),
    ("Pepperoni Pizza - mozzarella, pepperoni", "$14.00"),
    ("Caesar Salad - romaine, parmesan", "$9.50"),
    ("Garlic Knots - butter, herbs", "$6.00"),
    ("Tiramisu - espresso, mascarpone", "$8.00"),
    ("Iced Tea - fresh brewed", "$3.00"),
]


def _line_page(lines, index=0):
    toks = []
    for i, (text, price) in enumerate(lines):
        y = 700.0 - 20.0 * i
        toks.append(_tok(text, 50.0, y))
        toks.append(_tok(price, 300.0, y, w=30.0))
    return Page(index=index, height=PAGE_H, tokens=toks)


# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------

class TestComponents:
    def test_scenario_a_triple(self):
        (region,), cls = _regions([_row(*MAINS[0])])
        item = assemble_region(region, cls, CFG)
        assert item.name == "Grilled Salmon Fillet"
        assert item.price == pytest.approx(24.95)
        assert item.description == "Fresh Atlantic salmon with lemon butter sauce"
        assert item.category == "Mains"
        assert item.provenance.region is region
        assert item.provenance.phase == "region"
        assert 0.0 <= item.confidence <= 1.0

    def test_scenario_b_pair(self):
        cfg = PipelineConfig(pair_mode=True)
        toks = [_tok("宫保鸡丁 Kung Pao Chicken", 50.0, 700.0, w=110.0), _tok("$12.95", 170.0, 700.0, w=30.0)]
        (region,), cls = _regions([toks], cfg)
        item = assemble_region(region, cls, cfg)
        assert item.name == "宫保鸡丁 Kung Pao Chicken"
        assert item.description is None
        assert item.price == pytest.approx(12.95)
        assert item.provenance.phase == "pair"

    def test_pair_prefers_cjk_over_latin(self):
        toks = [
            _tok("Kung Pao Chicken", 50.0, 700.0),
            _tok("宫保鸡丁", 140.0, 700.0, w=40.0),
            _tok("$12.95", 200.0, 700.0, w=30.0),
        ]
        (region,), cls = _regions([toks])
        assert extract_pair(region, cls, CFG).name == "宫保鸡丁"

    def test_pair_prefers_bilingual(self):
        toks = [
            _tok("宫保鸡丁", 50.0, 700.0, w=40.0),
            _tok("宫保鸡丁 Kung Pao", 100.0, 700.0, w=80.0),
            _tok("$12.95", 200.0, 700.0, w=30.0),
        ]
        (region,), cls = _regions([toks])
        assert extract_pair(region, cls, CFG).name == "宫保鸡丁 Kung Pao"

    def test_pair_without_price_is_none(self):
        toks = [_tok("Kung Pao Chicken", 50.0, 700.0), _tok("spicy", 140.0, 700.0)]
        (region,), cls = _regions([toks])
        assert extract_pair(region, cls, CFG) is None

    def test_typography_larger_font_name(self):
        toks = [
            _tok("Hand-cut fries and slaw", 50.0, 720.0),
            _tok("CLASSIC BURGER", 50.0, 700.0, h=12.0, size=12.0),
            _tok("$11.00", 200.0, 700.0, w=30.0),
        ]
        (region,), cls = _regions([toks])
        comps = extract_components(region, cls, CFG)
        assert comps.name == "CLASSIC BURGER"
        assert comps.description == "Hand-cut fries and slaw"
        assert "typography" in comps.rule_trace

    def test_typography_bold_name(self):
        toks = [
            _tok("Romaine, parmesan, croutons", 50.0, 720.0),
            _tok("Caesar Salad", 50.0, 700.0, weight="bold"),
            _tok("$9.50", 200.0, 700.0, w=30.0),
        ]
        (region,), cls = _regions([toks])
        assert extract_components(region, cls, CFG).name == "Caesar Salad"

    def test_positional_trailing_number(self):
        toks = [_tok("Soup of the Day", 50.0, 700.0), _tok("6", 140.0, 700.0, w=5.0)]
        (region,), cls = _regions([toks])
        comps = extract_components(region, cls, CFG)
        assert comps.name == "Soup of the Day"
        assert comps.price == pytest.approx(6.0)
        assert comps.anchored is False
        item = assemble_region(region, cls, CFG)
        assert item.confidence == pytest.approx(0.5 * region.confidence + 0.25 - 0.1)

    def test_no_price_dropped(self):
        toks = [_tok("Chef's Special", 50.0, 700.0), _tok("ask your server", 140.0, 700.0)]
        (region,), cls = _regions([toks])
        assert extract_components(region, cls, CFG) is None

    def test_priceless_allowed(self):
        cfg = PipelineConfig(allow_priceless=True)
        toks = [_tok("Chef's Special", 50.0, 700.0), _tok("ask your server", 140.0, 700.0)]
        (region,), cls = _regions([toks], cfg)
        item = assemble_region(region, cls, cfg)
        assert item.priceless is True
        assert item.price == 0.0
        assert item.name == "Chef's Special"


# ---------------------------------------------------------------------------
# Assessment / patterns
# ---------------------------------------------------------------------------

class TestAssessment:
    def test_low_count(self):
        regions, cls = _regions([_row(*m, y=700.0 - 40.0 * i) for i, m in enumerate(MAINS[:2])])
        items = [assemble_region(r, cls, CFG) for r in regions]
        metrics = assess_bootstrap(items, cls, CFG)
        assert metrics.insufficient
        assert metrics.count == 2
        assert metrics.coverage == pytest.approx(1.0)
        assert any(r.startswith("count") for r in metrics.reasons)

    def test_coverage_counts_unclaimed_prices(self):
        regions, cls = _regions([_row(*m, y=700.0 - 40.0 * i) for i, m in enumerate(MAINS[:4])])
        items = [assemble_region(r, cls, CFG) for r in regions[:1]]
        assert assess_bootstrap(items, cls, CFG).coverage == pytest.approx(0.25)

    def test_quality_metric(self):
        assert quality_metric([], CFG) == 0.0
        items = [_item(f"Dish {i}", 10.0, conf=0.8) for i in range(2)]
        assert quality_metric(items, CFG) == pytest.approx(0.8 * 2 / 5)

    def test_extract_patterns(self):
        items = [
            _item("Soup", 6.0, category="Soups"),
            _item("Caesar Salad", 9.5, category="Salads"),
            _item("House Salad", 8.0, category="Salads"),
            _item("Bread Basket", 0.0, priceless=True),
        ]
        p = extract_patterns(items)
        assert p.sample_count == 3
        assert p.name_length == (4, 12)
        assert p.price_range == (6.0, 9.5)
        assert p.category_share("Salads") == pytest.approx(2 / 3, abs=1e-3)
        hints = p.price_hints()
        assert hints.price_low == pytest.approx(5.4)
        assert hints.price_high == pytest.approx(10.45)

    def test_rescore_idempotent(self):
        p = LearnedPatterns(sample_count=3, name_length=(5, 30), price_range=(8.0, 20.0), categories=(("Mains", 0.5),))
        items = [_item("Grilled Salmon Fillet", 24.95, conf=0.6, category="Mains"), _item("Mega Tray", 100.0, conf=0.6)]
        once = rescore(items, p)
        twice = rescore(once, p)
        assert [i.confidence for i in once] == [i.confidence for i in twice]
        assert once[0].confidence == pytest.approx(0.7)
        assert once[1].confidence == pytest.approx(0.55)
        assert all(0.0 <= i.confidence <= 1.0 for i in once)

    def test_merge_primary_wins(self):
        primary = [_item("Caesar Salad", 9.5, conf=0.9)]
        extra = [_item("caesar salad", 9.0, conf=0.75), _item("Soup", 6.0)]
        merged = merge_item_sets(primary, extra)
        assert [i.name for i in merged] == ["Caesar Salad", "Soup"]

    def test_merge_higher_confidence_replaces(self):
        primary = [_item("Soup of the Day", 6.0, conf=0.45), _item("Caesar Salad", 9.5, conf=0.9)]
        extra = [_item("soup of the day", 6.5, conf=0.75)]
        merged = merge_item_sets(primary, extra)
        assert [i.name for i in merged] == ["soup of the day", "Caesar Salad"]
        assert merged[0].price == pytest.approx(6.5)

    def test_merge_skips_item_sharing_tokens(self):
        name, desc, price = _row(*MAINS[0])
        kept = replace(_item("Grilled Salmon Fillet", 24.95, conf=0.95),
                       provenance=ItemProvenance(tokens=[name, desc, price]))
        line = replace(_item(desc.text, 24.95, conf=0.65),
                       provenance=ItemProvenance(phase="fallback", tokens=[desc, price]))
        assert merge_item_sets([kept], [line]) == [kept]


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class TestStateMachine:
    def test_sufficient_skips_fallback(self):
        regions, cls = _regions([_row(*m, y=700.0 - 40.0 * i) for i, m in enumerate(MAINS)])
        result = ItemAssembler(CFG).run(regions, [], cls)
        S = AssemblyState
        assert result.states == [S.ASSEMBLE, S.ASSESS, S.VALIDATE, S.DEDUP]
        assert result.iterations == 0
        assert result.converged is True
        assert len(result.items) == 6

    def test_fallback_recovers_low_yield(self):
        page = _line_page(FALLBACK_LINES)
        cls = classify_document([page], CFG)
        session = ParseSession()
        result = ItemAssembler(CFG, session).run([], [page], cls)
        assert result.iterations == 1
        assert result.converged is True
        assert len(result.items) == 6
        assert {i.provenance.phase for i in result.items} == {"fallback"}
        names = {i.name for i in result.items}
        assert "Margherita Pizza" in names
        low_yield = [e for e in session.logs if e.context.get("kind") == FailureKind.LOW_YIELD]
        assert low_yield

    @pytest.mark.parametrize("cap", [1, 2, 3, 4])
    def test_terminates_within_cap(self, cap):
        page = _line_page(FALLBACK_LINES[:2])
        cls = classify_document([page], CFG)
        cfg = PipelineConfig(max_bootstrap_iterations=cap)
        result = ItemAssembler(cfg).run([], [page], cls)
        assert result.iterations <= cap
        assert result.states[-1] is AssemblyState.DEDUP

    def test_cap_reached_logs_convergence(self):
        page = _line_page(FALLBACK_LINES[:2])
        cls = classify_document([page], CFG)
        session = ParseSession()
        cfg = PipelineConfig(max_bootstrap_iterations=1)
        result = ItemAssembler(cfg, session).run([], [page], cls)
        assert result.iterations == 1
        assert result.converged is False
        assert len(result.items) == 2
        warn = session.entries(severity="warning")
        assert warn and warn[0].context["kind"] == FailureKind.CONVERGENCE

    def test_regression_reverts(self):
        regions, cls = _regions([_row(*m, y=700.0 - 40.0 * i) for i, m in enumerate(MAINS[:4])])
        page = _line_page([("Chocolate Cake - rich and dense", "$7.00")])
        calls = []

        def refine(hints):
            calls.append(hints)
            return [], cls

        result = ItemAssembler(CFG).run(regions, [page], cls, refine=refine)
        assert result.reverted is True
        assert len(calls) == 1
        assert {i.name for i in result.items} == {m[0] for m in MAINS[:4]}

    def test_small_regression_keeps_best(self, monkeypatch):
        regions, cls = _regions([_row(*m, y=700.0 - 40.0 * i) for i, m in enumerate(MAINS[:4])])
        page = _line_page(FALLBACK_LINES[:2])
        scores = iter([0.76, 0.74])
        monkeypatch.setattr(item_assembler, "quality_metric", lambda items, cfg: next(scores, 0.76))
        result = ItemAssembler(CFG).run(regions, [page], cls)
        assert result.reverted is False
        assert result.converged is True
        assert result.iterations == 1
        assert {i.name for i in result.items} == {m[0] for m in MAINS[:4]}

    def test_refine_runs_once(self):
        page = _line_page(FALLBACK_LINES[:2])
        cls = classify_document([page], CFG)
        calls = []

        def refine(hints):
            calls.append(hints)
            return [], cls

        ItemAssembler(CFG).run([], [page], cls, refine=refine)
        assert len(calls) == 1

    def test_cancel_between_iterations(self):
        from menu_infer.errors import ParseCancelled
        page = _line_page(FALLBACK_LINES[:2])
        cls = classify_document([page], CFG)
        session = ParseSession()
        session.cancel()
        with pytest.raises(ParseCancelled):
            ItemAssembler(CFG, session).run([], [page], cls)
