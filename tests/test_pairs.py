# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Tests for contrastive pair mining."""
import pytest

from promptagent.evolution.models import (
    DistRun, EpicDistResult, EvolutionConfig, PromptDistReport, QualityTier,
)
from promptagent.evolution.pairs import (
    best_pair_for_epic, error_analysis, format_pairs_for_prompt, mine_pairs,
    primary_metric, quality_tier,
)
from promptagent.models import GeneratedOutput, StoryPack

from helpers import make_output


def _run(seed, score, n=5, offset=0, sub=None, valid=True):
    out = make_output(n, seed=seed, offset=offset) if valid else GeneratedOutput(raw_text="", error="bad")
    return DistRun(seed=seed, score=score, passed=score > 0.5, output=out, sub_scores=sub or {})


def _report(*epics):
    return PromptDistReport(
        prompt_id="p",
        per_epic=[EpicDistResult(epic_id=eid, runs=runs) for eid, runs in epics],
    )


class TestBestPair:

    def test_largest_delta_among_similar(self):
        runs = [_run(0, 0.9), _run(1, 0.5), _run(2, 0.2)]
        pair = best_pair_for_epic(EpicDistResult(epic_id="E1", runs=runs), EvolutionConfig())
        assert pair.good.seed == 0
        assert pair.bad.seed == 2
        assert pair.score_delta == pytest.approx(0.7)
        assert pair.similarity == pytest.approx(1.0)

    def test_equal_delta_prefers_higher_similarity(self):
        # (0,1) and (1,2) both have delta 0.4; only (1,2) is identical text
        runs = [_run(0, 0.9, offset=1), _run(1, 0.5), _run(2, 0.9)]
        cfg = EvolutionConfig(pair_min_similarity=0.0)
        pair = best_pair_for_epic(EpicDistResult(epic_id="E1", runs=runs), cfg)
        assert pair.score_delta == pytest.approx(0.4)
        assert pair.similarity == pytest.approx(1.0)
        assert (pair.good.seed, pair.bad.seed) == (2, 1)

        swapped = [_run(0, 0.9), _run(1, 0.5), _run(2, 0.9, offset=1)]
        pair = best_pair_for_epic(EpicDistResult(epic_id="E1", runs=swapped), cfg)
        assert pair.similarity == pytest.approx(1.0)
        assert (pair.good.seed, pair.bad.seed) == (0, 1)

    def test_dissimilar_outputs_not_paired(self):
        other = StoryPack.model_validate({
            "epicId": "E1",
            "userStories": [{
                "title": "Quarterly ledger export",
                "asA": "accountant",
                "iWant": "spreadsheet download monthly",
                "soThat": "auditors reconcile figures",
                "acceptanceCriteria": ["columns include invoice numbers", "totals balance exactly"],
            }],
        })
        runs = [_run(0, 0.9), DistRun(seed=1, score=0.1, output=GeneratedOutput(story_pack=other))]
        cfg = EvolutionConfig()
        assert best_pair_for_epic(EpicDistResult(epic_id="E1", runs=runs), cfg) is None

    def test_both_empty_skipped(self):
        runs = [_run(0, 0.0, valid=False), _run(1, 0.0, valid=False)]
        cfg = EvolutionConfig(pair_min_similarity=-1.0)
        assert best_pair_for_epic(EpicDistResult(epic_id="E1", runs=runs), cfg) is None

    def test_min_delta(self):
        runs = [_run(0, 0.8), _run(1, 0.75)]
        cfg = EvolutionConfig(pair_min_delta=0.1)
        assert best_pair_for_epic(EpicDistResult(epic_id="E1", runs=runs), cfg) is None

    def test_zero_delta_allowed_by_default(self):
        runs = [_run(0, 0.8), _run(1, 0.8)]
        pair = best_pair_for_epic(EpicDistResult(epic_id="E1", runs=runs), EvolutionConfig())
        assert pair is not None
        assert pair.score_delta == 0.0


class TestMinePairs:

    def test_one_pair_per_epic_sorted(self):
        report = _report(
            ("E1", [_run(0, 0.9), _run(1, 0.6), _run(2, 0.8)]),
            ("E2", [_run(3, 0.9), _run(4, 0.1)]),
            ("E3", [_run(5, 0.5)]),
        )
        pairs = mine_pairs(report)
        assert [p.epic_id for p in pairs] == ["E2", "E1"]
        assert pairs[0].score_delta == pytest.approx(0.8)
        assert pairs[1].score_delta == pytest.approx(0.3)

    def test_max_pairs(self):
        report = _report(
            ("E1", [_run(0, 0.9), _run(1, 0.6)]),
            ("E2", [_run(2, 0.9), _run(3, 0.1)]),
        )
        pairs = mine_pairs(report, EvolutionConfig(pair_max_pairs=1))
        assert len(pairs) == 1
        assert pairs[0].epic_id == "E2"

    def test_annotation(self):
        good_sub = {"coverage": 0.9, "invest": 0.9, "criteria": 0.9, "duplication": 1.0}
        bad_sub = {"coverage": 0.85, "invest": 0.3, "criteria": 0.8, "duplication": 1.0}
        report = _report(("E1", [_run(0, 0.8, sub=good_sub), _run(1, 0.4, sub=bad_sub)]))
        pair = mine_pairs(report)[0]
        assert pair.tier == QualityTier.HIGH
        assert pair.primary_metric == "invest"
        assert any("INVEST" in note for note in pair.error_analysis)

    def test_no_annotation(self):
        report = _report(("E1", [_run(0, 0.8), _run(1, 0.4)]))
        pair = mine_pairs(report, annotate=False)[0]
        assert pair.tier is None
        assert pair.error_analysis == []


class TestAnnotationHelpers:

    @pytest.mark.parametrize("score,tier", [
        (0.9, QualityTier.HIGH), (0.75, QualityTier.HIGH),
        (0.6, QualityTier.MEDIUM), (0.2, QualityTier.LOW),
    ])
    def test_quality_tier(self, score, tier):
        assert quality_tier(score, EvolutionConfig()) == tier

    def test_primary_metric_without_subscores(self):
        assert primary_metric(_run(0, 0.9), _run(1, 0.1)) is None

    def test_error_analysis_story_count(self):
        notes = error_analysis(_run(0, 0.9, n=5), _run(1, 0.4, n=2), EvolutionConfig())
        assert any("Story count outside optimal range: 2" in n for n in notes)

    def test_error_analysis_schema(self):
        notes = error_analysis(_run(0, 0.9), _run(1, 0.0, valid=False), EvolutionConfig())
        assert notes[0].startswith("Schema validation failed")


class TestFormatPairs:

    def test_empty(self):
        assert "No contrastive pairs" in format_pairs_for_prompt([])

    def test_renders_good_and_bad(self):
        report = _report(("E1", [_run(0, 0.8), _run(1, 0.4, n=2)]))
        text = format_pairs_for_prompt(mine_pairs(report, EvolutionConfig(pair_min_similarity=0.0)))
        assert "### PAIR 1" in text
        assert "**GOOD** (score=0.800, seed=0)" in text
        assert "**BAD** (score=0.400, seed=1)" in text
        assert '"userStories"' in text
