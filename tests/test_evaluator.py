# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Tests for the distributional evaluator."""
import pytest

from promptagent.evolution.evaluator import (
    DistributionalEvaluator, aggregate, bootstrap_interval, count_clusters, epic_stats,
    format_dist_report, mean, objective, percentile, std, wilson_interval,
)
from promptagent.evolution.models import DistAggregate, DistRun, EvolutionConfig
from promptagent.evolution.scorer import StoryScorer
from promptagent.models import Epic

from helpers import EPIC, FakeGenerator, SeedScorer, make_output


EPIC2 = Epic(id="E2", title="Product search", description="Shoppers search the catalogue by keyword.")


class TestStatistics:

    def test_mean_empty(self):
        assert mean([]) == 0.0

    def test_population_std(self):
        assert std([0.9, 0.6, 0.3]) == pytest.approx(0.2449, abs=1e-4)

    def test_percentile_linear_interpolation(self):
        assert percentile([0.9, 0.6, 0.3], 0.1) == pytest.approx(0.36)
        assert percentile([0.5], 0.1) == 0.5
        assert percentile([1.0, 2.0, 3.0, 4.0, 5.0], 0.5) == 3.0

    def test_clusters(self):
        texts = ["pay with saved card quickly", "pay with saved card quickly", "track delivery order status"]
        assert count_clusters(texts, 0.86) == 2
        assert count_clusters([], 0.86) == 0

    def test_objective_monotonic(self):
        cfg = EvolutionConfig()
        base = DistAggregate(mean_of_means=0.5, mean_pass_rate=0.5, mean_p10=0.3, mean_std=0.1)
        better_pass = base.model_copy(update={"mean_pass_rate": 0.8})
        better_mean = base.model_copy(update={"mean_of_means": 0.8})
        worse_std = base.model_copy(update={"mean_std": 0.3})
        assert objective(better_pass, cfg) > objective(base, cfg)
        assert objective(better_mean, cfg) > objective(base, cfg)
        assert objective(worse_std, cfg) < objective(base, cfg)

    def test_objective_formula(self):
        cfg = EvolutionConfig()
        agg = DistAggregate(mean_of_means=0.6, mean_pass_rate=0.5, mean_p10=0.4, mean_std=0.2)
        expected = 0.45 * 0.5 + 0.35 * 0.6 + 0.20 * 0.4 - 0.25 * 0.2
        assert objective(agg, cfg) == pytest.approx(expected)

    def test_fail_penalty(self):
        cfg = EvolutionConfig(fail_penalty=1.0)
        agg = DistAggregate(mean_of_means=0.0, mean_pass_rate=0.25, mean_p10=0.0, mean_std=0.0)
        assert objective(agg, cfg) == pytest.approx(0.45 * 0.25 - 0.75)


class TestEpicStats:

    def test_three_run_scenario(self):
        runs = [
            DistRun(seed=1, score=0.9, passed=True, output=make_output(5, seed=1)),
            DistRun(seed=2, score=0.6, passed=True, output=make_output(5, seed=2)),
            DistRun(seed=3, score=0.3, passed=False, output=make_output(5, seed=3)),
        ]
        result = epic_stats("E1", runs, EvolutionConfig())
        assert result.mean_score == pytest.approx(0.6)
        assert result.p10_score == pytest.approx(0.36)
        assert result.std_score == pytest.approx(0.245, abs=1e-3)
        assert result.pass_rate == pytest.approx(2 / 3)
        assert result.p10_score <= result.mean_score <= 0.9
        # both passing runs carry identical packs
        assert result.discoverability_k == 1
        assert result.pass_at_k == pytest.approx(1 - (1 / 3) ** 3)

    def test_order_independent(self):
        runs = [DistRun(seed=s, score=sc, passed=sc > 0.5) for s, sc in [(3, 0.3), (1, 0.9), (2, 0.6)]]
        a = epic_stats("E1", runs, EvolutionConfig())
        b = epic_stats("E1", list(reversed(runs)), EvolutionConfig())
        assert a == b
        assert [r.seed for r in a.runs] == [1, 2, 3]

    def test_empty_runs(self):
        result = epic_stats("E1", [], EvolutionConfig())
        assert result.mean_score == 0.0
        assert result.pass_rate == 0.0


class TestConfidenceIntervals:

    def test_wilson_half(self):
        ci = wilson_interval(5, 10)
        assert ci.estimate == pytest.approx(0.5)
        assert ci.lower == pytest.approx(0.2366, abs=1e-3)
        assert ci.upper == pytest.approx(0.7634, abs=1e-3)
        assert ci.method == "wilson"
        assert ci.n == 10

    def test_wilson_all_pass_stays_below_one(self):
        ci = wilson_interval(10, 10)
        assert ci.upper == pytest.approx(1.0)
        assert ci.lower == pytest.approx(0.7225, abs=1e-3)

    def test_wilson_no_runs(self):
        ci = wilson_interval(0, 0)
        assert (ci.lower, ci.upper, ci.n) == (0.0, 1.0, 0)

    def test_bootstrap_brackets_mean_and_repeats(self):
        values = [0.9, 0.6, 0.3]
        ci = bootstrap_interval(values, resamples=500, seed=7)
        assert ci.estimate == pytest.approx(0.6)
        assert 0.3 <= ci.lower <= ci.estimate <= ci.upper <= 0.9
        assert bootstrap_interval(values, resamples=500, seed=7) == ci

    def test_bootstrap_degenerate(self):
        assert bootstrap_interval([0.4]).lower == bootstrap_interval([0.4]).upper == 0.4
        ci = bootstrap_interval([0.5, 0.5, 0.5])
        assert ci.lower == pytest.approx(0.5)
        assert ci.upper == pytest.approx(0.5)

    def test_epic_stats_carries_intervals(self):
        runs = [DistRun(seed=s, score=sc, passed=sc > 0.5) for s, sc in [(1, 0.9), (2, 0.6), (3, 0.3)]]
        result = epic_stats("E1", runs, EvolutionConfig(confidence_level=0.9))
        assert result.pass_rate_ci.n == 3
        assert result.pass_rate_ci.level == 0.9
        assert result.pass_rate_ci.lower <= result.pass_rate <= result.pass_rate_ci.upper
        assert result.mean_ci.lower <= result.mean_score <= result.mean_ci.upper


class TestDistributionalEvaluator:

    @pytest.mark.asyncio
    async def test_scenario_scores(self):
        cfg = EvolutionConfig(replicates=3, seed_base=1)
        evaluator = DistributionalEvaluator(
            FakeGenerator(), SeedScorer({1: 0.9, 2: 0.6, 3: 0.3}), cfg,
        )
        report = await evaluator.evaluate("p1", "prompt", [EPIC])
        epic = report.per_epic[0]
        assert [r.seed for r in epic.runs] == [1, 2, 3]
        assert [r.passed for r in epic.runs] == [True, True, False]
        assert epic.mean_score == pytest.approx(0.6)
        assert epic.pass_rate == pytest.approx(0.667, abs=1e-3)
        assert report.agg.mean_of_means == pytest.approx(0.6)
        assert report.agg.objective == pytest.approx(
            0.45 * (2 / 3) + 0.35 * 0.6 + 0.20 * 0.36 - 0.25 * epic.std_score,
        )

    def test_seed_enumeration(self):
        evaluator = DistributionalEvaluator(FakeGenerator(), config=EvolutionConfig(replicates=4, seed_base=100))
        assert evaluator.seeds_for(0) == [100, 101, 102, 103]
        assert evaluator.seeds_for(2) == [108, 109, 110, 111]

    @pytest.mark.asyncio
    async def test_failed_run_isolated(self):
        cfg = EvolutionConfig(replicates=3)
        gen = FakeGenerator(fail_seeds=[1])
        evaluator = DistributionalEvaluator(gen, SeedScorer({0: 0.8, 1: 0.8, 2: 0.8}), cfg)
        report = await evaluator.evaluate("p", "prompt", [EPIC])
        runs = report.per_epic[0].runs
        assert len(runs) == 3
        failed = [r for r in runs if r.error]
        assert len(failed) == 1
        assert failed[0].seed == 1
        assert failed[0].score == 0.0
        assert not failed[0].passed
        assert "backend unavailable" in failed[0].error
        assert report.failed_runs == 1

    @pytest.mark.asyncio
    async def test_timeout_is_run_failure(self):
        cfg = EvolutionConfig(replicates=2, run_timeout_s=0.01)
        evaluator = DistributionalEvaluator(FakeGenerator(delay=0.5), SeedScorer({}), cfg)
        report = await evaluator.evaluate("p", "prompt", [EPIC])
        assert all(r.error and r.error.startswith("timeout") for r in report.per_epic[0].runs)
        assert report.agg.mean_pass_rate == 0.0

    @pytest.mark.asyncio
    async def test_invalid_output_scores_zero(self):
        cfg = EvolutionConfig(replicates=2)
        evaluator = DistributionalEvaluator(FakeGenerator(invalid_seeds=[0]), StoryScorer(cfg), cfg)
        report = await evaluator.evaluate("p", "prompt", [EPIC])
        runs = {r.seed: r for r in report.per_epic[0].runs}
        assert runs[0].score == 0.0
        assert runs[0].error is None
        assert runs[1].score > 0.0

    @pytest.mark.asyncio
    async def test_progress_monotonic_sync_and_async(self):
        cfg = EvolutionConfig(replicates=3, concurrency=2)
        evaluator = DistributionalEvaluator(FakeGenerator(), SeedScorer({}), cfg)
        seen = []

        def on_progress(done, total):
            seen.append((done, total))

        await evaluator.evaluate("p", "prompt", [EPIC, EPIC2], on_progress=on_progress)
        assert [d for d, _ in seen] == [1, 2, 3, 4, 5, 6]
        assert all(t == 6 for _, t in seen)

        async_seen = []

        async def on_progress_async(done, total):
            async_seen.append(done)

        await evaluator.evaluate("p", "prompt", [EPIC], on_progress=on_progress_async)
        assert async_seen == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_should_continue_stops_new_runs(self):
        cfg = EvolutionConfig(replicates=4, concurrency=1)
        gen = FakeGenerator()
        evaluator = DistributionalEvaluator(gen, SeedScorer({}), cfg)
        done = []

        report = await evaluator.evaluate(
            "p", "prompt", [EPIC],
            on_progress=lambda d, t: done.append(d),
            should_continue=lambda: len(done) < 2,
        )
        assert len(gen.calls) == 2
        assert report.total_runs == 2

    @pytest.mark.asyncio
    async def test_multiple_epics_aggregate(self):
        cfg = EvolutionConfig(replicates=2)
        evaluator = DistributionalEvaluator(FakeGenerator(), SeedScorer({0: 1.0, 1: 1.0, 2: 0.0, 3: 0.0}), cfg)
        report = await evaluator.evaluate("p", "prompt", [EPIC, EPIC2])
        assert [e.epic_id for e in report.per_epic] == ["E1", "E2"]
        assert report.per_epic[0].pass_rate == 1.0
        assert report.per_epic[1].pass_rate == 0.0
        assert report.agg.mean_pass_rate == 0.5
        assert report.agg == aggregate(report.per_epic, cfg)
        text = format_dist_report(report)
        assert "DISTRIBUTION REPORT: p" in text
        assert "Objective" in text

    @pytest.mark.asyncio
    async def test_duplicate_epic_ids_rejected(self):
        gen = FakeGenerator()
        evaluator = DistributionalEvaluator(gen, SeedScorer({}), EvolutionConfig(replicates=2))
        twin = Epic(id="E1", title="Another checkout", description="Same id, different Epic.")
        with pytest.raises(ValueError, match="E1"):
            await evaluator.evaluate("p", "prompt", [EPIC, twin])
        assert gen.calls == []
