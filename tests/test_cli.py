import json

import numpy as np

from droneqa.cli import find_images, main


def _write_images(tmp_path, encode):
    (tmp_path / "a.png").write_bytes(encode(np.full((64, 64, 3), 128, np.uint8)))
    (tmp_path / "b.png").write_bytes(encode(np.random.default_rng(1).integers(0, 255, (64, 64, 3))))
    (tmp_path / "notes.txt").write_text("not an image")


def test_find_images_filters_extensions(tmp_path, encode):
    _write_images(tmp_path, encode)
    found = find_images([str(tmp_path)])
    assert [p.rsplit("/", 1)[-1] for p in found] == ["a.png", "b.png"]


def test_json_report(tmp_path, encode, capsys):
    _write_images(tmp_path, encode)
    bench = tmp_path / "bench.json"
    code = main([str(tmp_path), "--json", "--mode", "cpu", "--no-progress",
                 "--benchmarks", str(bench)])
    assert code == 0

    report = json.loads(capsys.readouterr().out)
    assert len(report["results"]) == 2
    assert report["summary"]["total_images"] == 2
    assert all("thumbnail" not in r for r in report["results"])
    assert json.loads(bench.read_text()) == []


def test_text_report_marks_failures(tmp_path, capsys):
    bad = tmp_path / "broken.jpg"
    bad.write_bytes(b"\xff\xd8 nope")
    assert main([str(bad), "--mode", "cpu", "--no-progress"]) == 0
    out = capsys.readouterr().out
    assert "FAILED" in out
    assert "1 failed" in out


def test_missing_inputs_and_bad_config(tmp_path):
    assert main([str(tmp_path / "nothing-here"), "--no-progress"]) == 1
    assert main([str(tmp_path), "--config", str(tmp_path / "missing.json")]) == 2
