"""
test_lecture.py

End-to-end lecture build on a small sample with few resamples and imputations.

Run: python -m pytest test_lecture.py -v
"""

import json
import os

import pytest

from bootstrap_and_impute import lecture
from bootstrap_and_impute.config import LectureConfig
from bootstrap_and_impute.deck import Slide


def _small_config(tmp_path, **overrides):
    settings = dict(
        output_dir=str(tmp_path / "out"),
        n_boot=40,
        n_boot_mixed=4,
        n_imputations=2,
        n_iterations=2,
        n_people=24,
        n_days=5,
    )
    settings.update(overrides)
    return LectureConfig.from_env(environ={}, **settings)


@pytest.fixture(scope="module")
def built(tmp_path_factory):
    config = _small_config(tmp_path_factory.mktemp("lecture"))
    deck, report = lecture.build_lecture(config)
    paths = lecture.write_outputs(deck, report, config)
    return config, deck, report, paths


class TestBuildLecture:

    def test_every_fragment_renders(self, built):
        _, _, report, _ = built
        failed = {k: v.get("error") for k, v in report["fragments"].items() if not v["success"]}
        assert failed == {}
        assert report["n_failed"] == 0
        assert list(report["fragments"]) == [name for name, _, _ in lecture.FRAGMENTS]

    def test_outline_follows_narrative(self, built):
        _, deck, report, _ = built
        outline = report["outline"]
        assert outline == deck.outline()
        assert outline[0] == "Outline"
        assert outline[-1] == "Summary"
        positions = [outline.index(title) for _, title, _ in lecture.FRAGMENTS]
        assert positions == sorted(positions)

    def test_outputs_written(self, built):
        config, _, _, paths = built
        assert set(paths) == {"markdown", "docx", "report_json"}
        for path in paths.values():
            assert os.path.exists(path)
        figures = os.listdir(os.path.join(config.output_dir, "figures"))
        assert "bootstrap_mean.png" in figures
        assert "imputation_trace.png" in figures
        assert "missingness.png" in figures

    def test_report_json(self, built):
        _, _, _, paths = built
        with open(paths["report_json"]) as f:
            report = json.load(f)
        assert report["config"]["n_boot"] == 40
        assert report["config"]["formats"] == ["md", "docx"]
        assert report["peak_memory_mb"] > 0
        assert all("time_sec" in e for e in report["fragments"].values())

    def test_report_has_bootstrap_intervals(self, built):
        _, _, _, paths = built
        with open(paths["report_json"]) as f:
            report = json.load(f)
        intervals = report["bootstrap_intervals"]
        assert set(intervals) == {"mean", "ols", "mixed_parametric", "mixed_cluster"}
        assert intervals["mean"]["B"] == 40
        assert intervals["mixed_parametric"]["kind"] == "parametric"
        assert intervals["mixed_cluster"]["cluster"] == "UserID"
        assert {row["method"] for row in intervals["ols"]["intervals"]} == {"perc", "bca"}

    def test_markdown_contains_tables_and_figures(self, built):
        _, _, _, paths = built
        with open(paths["markdown"]) as f:
            text = f.read()
        assert "## Pooling with Rubin's rules" in text
        assert "| term |" in text
        assert "](figures/" in text


class TestFragmentFailures:

    def test_failed_fragment_becomes_placeholder(self, tmp_path, caplog):
        def broken(ctx):
            raise RuntimeError("model did not converge")

        fragments = [
            ("outline", "Outline", lecture.title_slides),
            ("broken", "Broken part", broken),
            ("summary", "Summary", lecture.summary_slides),
        ]
        deck, report = lecture.build_lecture(_small_config(tmp_path), fragments)
        assert deck.outline() == ["Outline", "Broken part (could not be rendered)", "Summary"]
        assert deck.slides[1].bullets == ["RuntimeError: model did not converge"]
        assert report["n_failed"] == 1
        assert report["fragments"]["broken"] == {
            "success": False,
            "error": "model did not converge",
            "time_sec": report["fragments"]["broken"]["time_sec"],
            "memory_mb": report["fragments"]["broken"]["memory_mb"],
        }
        assert "Fragment broken failed" in caplog.text

    def test_context_caches_shared_data(self, tmp_path):
        ctx = lecture.LectureContext(config=_small_config(tmp_path), figures_dir=str(tmp_path))
        assert ctx.with_missing() is ctx.with_missing()
        assert ctx.with_missing()["NegAff"].isna().sum() > ctx.load()["NegAff"].isna().sum()


class TestBootstrapFragments:

    @pytest.mark.parametrize("progress", [True, False])
    def test_progress_reaches_every_bootstrap(self, tmp_path, monkeypatch, progress):
        calls = []

        def recording(func):
            def wrapper(*args, **kwargs):
                calls.append((func.__name__, kwargs.get("progress")))
                return func(*args, **kwargs)
            return wrapper

        monkeypatch.setattr(lecture, "bootstrap", recording(lecture.bootstrap))
        monkeypatch.setattr(lecture, "parametric_bootstrap_mixed", recording(lecture.parametric_bootstrap_mixed))
        fragments = [f for f in lecture.FRAGMENTS if f[0] in ("bootstrap_mean", "bootstrap_ols", "bootstrap_mixed")]
        config = _small_config(tmp_path, n_boot=20, n_boot_mixed=2, workers=2, progress=progress)
        _, report = lecture.build_lecture(config, fragments)

        assert report["n_failed"] == 0
        assert sorted(calls) == sorted([
            ("bootstrap", progress),
            ("bootstrap", progress),
            ("bootstrap", progress),
            ("parametric_bootstrap_mixed", progress),
        ])


class TestMain:

    def test_main_writes_markdown_only(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr(lecture, "FRAGMENTS", lecture.FRAGMENTS[:3])
        monkeypatch.setenv("BOOTMI_SEED", "99")
        out_dir = tmp_path / "cli"
        rc = lecture.main(["--output-dir", str(out_dir), "--formats", "md", "--B", "10", "--no-progress"])
        assert rc == 0
        assert (out_dir / "lecture.md").exists()
        assert not (out_dir / "lecture.docx").exists()
        with open(out_dir / "lecture_report.json") as f:
            report = json.load(f)
        assert report["config"]["seed"] == 99
        assert report["config"]["n_boot"] == 10
        assert report["config"]["progress"] is False
        assert "Saved markdown" in capsys.readouterr().out
