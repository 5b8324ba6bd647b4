import pytest

from droneqa.aggregate import summarize
from droneqa.models import AnalysisResult, BlurMetrics, CompositeScore, DescriptorMetrics
from droneqa.scoring import classify


def _result(i, overall, blur=50.0, keypoints=100):
    return AnalysisResult(
        task_id=str(i),
        source=f"img{i}.jpg",
        blur=BlurMetrics(score=blur),
        descriptor=DescriptorMetrics(keypoint_count=keypoints),
        composite=CompositeScore(overall=overall, recommendation=classify(overall)),
    )


def test_empty_batch():
    stats = summarize([])
    assert stats.total_images == 0
    assert stats.average_composite_score == 0.0


def test_counts_and_averages():
    results = [
        _result(1, 90, blur=80.0, keypoints=300),
        _result(2, 72, blur=60.0, keypoints=100),
        _result(3, 41),
        AnalysisResult.failed("4", "img4.jpg", "corrupt image data"),
    ]
    stats = summarize(results, threshold=70)
    assert stats.total_images == 4
    assert stats.failed_count == 1
    assert (stats.excellent_count, stats.good_count, stats.acceptable_count,
            stats.poor_count, stats.unsuitable_count) == (1, 1, 0, 1, 1)
    assert stats.average_composite_score == pytest.approx(67.67)
    assert stats.average_blur_score == pytest.approx(63.33)
    assert stats.average_keypoint_count == pytest.approx(166.67)
    assert stats.recommended_for_reconstruction == 2


def test_threshold_changes_recommendations():
    results = [_result(1, 90), _result(2, 72)]
    assert summarize(results, threshold=80).recommended_for_reconstruction == 1
    assert summarize(results, threshold=95).recommended_for_reconstruction == 0


def test_summarize_does_not_mutate_results():
    results = [_result(1, 90)]
    before = [r.model_dump() for r in results]
    summarize(results)
    assert [r.model_dump() for r in results] == before
