import json

import pytest

from droneqa.config import (
    EngineConfig,
    GpuConfig,
    SceneType,
    SchedulerConfig,
    load_engine_config,
    merge_engine_config,
    validate_tiers,
)
from droneqa.errors import ConfigError


def test_defaults():
    cfg = EngineConfig()
    assert cfg.active_weights().as_dict() == {
        "blur": 0.30, "exposure": 0.25, "noise": 0.20, "technical": 0.10, "descriptor": 0.15,
    }
    assert cfg.forced_scene() is None
    assert cfg.quality_threshold == 70.0


def test_merge_patch_revalidates():
    cfg = merge_engine_config(EngineConfig(), {"weight_preset": "photogrammetric",
                                               "scene_preset": "ground_detail",
                                               "noise": {"block_size": 16}})
    assert cfg.active_weights().descriptor == 0.40
    assert cfg.forced_scene() is SceneType.GROUND_DETAIL
    assert cfg.noise.block_size == 16
    assert cfg.noise.max_sigma == 20.0


@pytest.mark.parametrize("patch", [
    {"weight_preset": "nope"},
    {"quality_threshold": 150},
    {"weights": {"blur": 1.0, "exposure": 1.0}},
    {"recommendation_tiers": [[10, "a"], [50, "b"], [0, "c"]]},
])
def test_invalid_patches_raise_config_error(patch):
    with pytest.raises(ConfigError):
        merge_engine_config(EngineConfig(), patch)


def test_load_from_json_file(tmp_path):
    path = tmp_path / "engine.json"
    path.write_text(json.dumps({"gpu": {"processing_mode": "cpu"}, "quality_threshold": 60}))
    cfg = load_engine_config(str(path))
    assert cfg.gpu.processing_mode == "cpu"
    assert cfg.quality_threshold == 60


def test_load_rejects_missing_and_non_object_files(tmp_path):
    with pytest.raises(ConfigError):
        load_engine_config(str(tmp_path / "missing.json"))
    path = tmp_path / "list.json"
    path.write_text("[1, 2]")
    with pytest.raises(ConfigError):
        load_engine_config(str(path))


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("DRONEQA_PROCESSING_MODE", "cpu")
    monkeypatch.setenv("DRONEQA_MAX_WORKERS", "12")
    assert GpuConfig().processing_mode == "cpu"
    sched = SchedulerConfig()
    assert sched.max_workers == 12
    assert sched.concurrency == 6


def test_worker_default_is_capped(monkeypatch):
    monkeypatch.delenv("DRONEQA_MAX_WORKERS", raising=False)
    assert 1 <= SchedulerConfig().max_workers <= 6


def test_tier_tables_must_descend_to_zero():
    assert validate_tiers([(50, "ok"), (0, "bad")]) == ((50.0, "ok"), (0.0, "bad"))
    with pytest.raises(ValueError):
        validate_tiers([(0, "bad"), (50, "ok")])
    with pytest.raises(ValueError):
        validate_tiers([(50, "ok"), (10, "bad")])
