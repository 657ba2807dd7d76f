"""
PipelineConfig -- defaults, validation and env overrides.

Covers:
  - documented defaults
  - validate() rejects out-of-range values (ValueError)
  - with_overrides() returns a new validated instance
  - from_env() parses bool / int / float / str fields by their default's type
  - frozen: no mid-run mutation
"""

import dataclasses
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from menu_infer.pipeline_config import PipelineConfig


class TestDefaults:
    def test_values(self):
        cfg = PipelineConfig()
        assert cfg.y_proximity_em == 1.5
        assert cfg.x_distance_em == 6.0
        assert (cfg.price_min, cfg.price_max) == (0.5, 200.0)
        assert cfg.min_region_confidence == 0.6
        assert cfg.extraction_quality_threshold == 0.7
        assert cfg.max_bootstrap_iterations == 3
        assert cfg.detection_mode == "proximity"
        assert cfg.validate() is cfg

    def test_frozen(self):
        cfg = PipelineConfig()
        with pytest.raises(dataclasses.FrozenInstanceError):
            cfg.min_items = 2


class TestValidate:
    @pytest.mark.parametrize("overrides", [
        {"price_min": 0.0},
        {"price_min": 300.0},
        {"y_proximity_em": 0.0},
        {"detection_mode": "grid"},
        {"max_bootstrap_iterations": 0},
        {"render_workers": 0},
        {"thumbnail_failure_penalty": 1.5},
        {"name_min_length": 60},
        {"min_coverage": 1.2},
    ])
    def test_rejects(self, overrides):
        with pytest.raises(ValueError):
            PipelineConfig(**overrides).validate()

    def test_collects_all_problems(self):
        with pytest.raises(ValueError) as exc:
            PipelineConfig(render_workers=0, detection_mode="grid").validate()
        assert "render_workers" in str(exc.value)
        assert "detection_mode" in str(exc.value)

    def test_with_overrides(self):
        base = PipelineConfig()
        cfg = base.with_overrides(pair_mode=True, min_items=3)
        assert cfg.pair_mode is True and cfg.min_items == 3
        assert base.pair_mode is False

    def test_with_overrides_validates(self):
        with pytest.raises(ValueError):
            PipelineConfig().with_overrides(detection_mode="grid")


class TestFromEnv:
    def test_typed_overrides(self):
        cfg = PipelineConfig.from_env({
            "MENU_Y_PROXIMITY_EM": "2.0",
            "MENU_PAIR_MODE": "yes",
            "MENU_MIN_ITEMS": "7",
            "MENU_DETECTION_MODE": " box ",
            "MENU_ALLOW_PRICELESS": "0",
        })
        assert cfg.y_proximity_em == 2.0
        assert cfg.pair_mode is True
        assert cfg.min_items == 7
        assert cfg.detection_mode == "box"
        assert cfg.allow_priceless is False

    def test_blank_ignored(self):
        assert PipelineConfig.from_env({"MENU_MIN_ITEMS": ""}) == PipelineConfig()

    def test_custom_prefix(self):
        cfg = PipelineConfig.from_env({"X_RENDER_WORKERS": "2"}, prefix="X_")
        assert cfg.render_workers == 2

    def test_invalid_env_value(self):
        with pytest.raises(ValueError):
            PipelineConfig.from_env({"MENU_DETECTION_MODE": "grid"})
