import math

import pytest
from pydantic import ValidationError

from droneqa.config import WEIGHT_PRESETS, QualityWeights
from droneqa.scoring import classify, composite_score, round_half_up


def test_default_weights_reference_tuple():
    c = composite_score(80, 70, 90, 50, 60)
    # 24 + 17.5 + 18 + 5 + 9 = 73.5
    assert sum(comp.contribution for comp in c.components.values()) == pytest.approx(73.5)
    assert c.overall == 74
    assert c.recommendation == "good"
    assert c.method == "weighted_average"


def test_photogrammetric_preset_weights_descriptors():
    c = composite_score(80, 70, 90, 50, 60, WEIGHT_PRESETS["photogrammetric"],
                        method="photogrammetric_specialized")
    assert c.overall == 71
    assert c.components["technical"].contribution == 0.0
    assert c.weights["descriptor"] == 0.40


@pytest.mark.parametrize("score,label", [
    (100, "excellent"), (85, "excellent"), (84, "good"), (70, "good"), (69, "acceptable"),
    (55, "acceptable"), (54.99, "poor"), (40, "poor"), (39, "unsuitable"), (0, "unsuitable"),
])
def test_classification_boundaries(score, label):
    assert classify(score) == label


def test_custom_tier_table():
    tiers = ((50.0, "keep"), (0.0, "drop"))
    assert classify(49.9, tiers) == "drop"
    assert classify(50, tiers) == "keep"


@pytest.mark.parametrize("bad", [math.nan, math.inf, -math.inf, None])
def test_non_finite_inputs_count_as_zero(bad):
    c = composite_score(bad, 100, 100, 100, 100)
    assert c.blur == 0.0
    assert c.overall == 70


def test_out_of_range_inputs_are_clamped():
    c = composite_score(250, -10, 100, 100, 100)
    assert (c.blur, c.exposure) == (100.0, 0.0)
    assert 0 <= c.overall <= 100


def test_overall_is_deterministic():
    a = composite_score(12.3, 45.6, 78.9, 10.1, 99.9)
    b = composite_score(12.3, 45.6, 78.9, 10.1, 99.9)
    assert a == b


def test_half_up_rounding():
    assert round_half_up(73.5) == 74
    assert round_half_up(72.5) == 73
    assert round_half_up(72.49) == 72


def test_weights_must_sum_to_one():
    with pytest.raises(ValidationError):
        QualityWeights(blur=0.5, exposure=0.5, noise=0.5, technical=0.0, descriptor=0.0)
    w = QualityWeights(blur=0.2, exposure=0.2, noise=0.2, technical=0.2, descriptor=0.2)
    assert composite_score(50, 50, 50, 50, 50, w).overall == 50
