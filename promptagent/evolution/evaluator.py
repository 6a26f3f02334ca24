# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Distributional evaluator — score a prompt over many seeded replicates.

A single generation says little about a prompt; the distribution does.
For each Epic the generator runs R times with deterministic seeds

    seed = seed_base + epic_index * R + replicate_index

and the per-Epic statistics (mean, p10, std, pass rate, discoverability)
are folded into one scalar objective used to rank prompts.
"""
import asyncio
import inspect
import json
import logging
import math
import random
from pathlib import Path
from statistics import NormalDist
from typing import Any, Callable, Dict, List, Optional, Sequence

import yaml

from promptagent.errors import GenerationFailure
from promptagent.evolution.models import (
    ConfidenceInterval, DistAggregate, DistRun, EpicDistResult, EvolutionConfig,
    PromptDistReport,
)
from promptagent.evolution.scorer import StoryScorer
from promptagent.models import Epic, GeneratedOutput
from promptagent.providers.base import StoryGenerator
from promptagent.similarity import text_similarity

logger = logging.getLogger(__name__)

# on_progress(completed, total); may be sync or async
ProgressFn = Callable[[int, int], Any]


def load_epics(path: str) -> List[Epic]:
    """Load Epics from YAML or JSON: an ``epics:`` list or a bare list."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError("Epics file not found: {}".format(path))

    with open(p, "r", encoding="utf-8") as f:
        if p.suffix.lower() == ".json":
            data = json.load(f)
        else:
            data = yaml.safe_load(f)

    if isinstance(data, dict):
        data = data.get("epics", [])
    return [Epic(**item) for item in data or []]


def load_config(path: Optional[str] = None) -> EvolutionConfig:
    """Load tuning config from YAML. Falls back to defaults."""
    if path is None:
        return EvolutionConfig()

    p = Path(path)
    if not p.exists():
        return EvolutionConfig()

    with open(p, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    return EvolutionConfig(**data)


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

def mean(xs: Sequence[float]) -> float:
    if not xs:
        return 0.0
    return sum(xs) / len(xs)


def std(xs: Sequence[float]) -> float:
    """Population standard deviation."""
    if not xs:
        return 0.0
    m = mean(xs)
    return math.sqrt(mean([(x - m) ** 2 for x in xs]))


def percentile(xs: Sequence[float], p: float) -> float:
    """Percentile with linear interpolation between closest ranks."""
    if not xs:
        return 0.0
    ordered = sorted(xs)
    pos = p * (len(ordered) - 1)
    lo = int(math.floor(pos))
    hi = int(math.ceil(pos))
    if lo == hi:
        return ordered[lo]
    return ordered[lo] + (ordered[hi] - ordered[lo]) * (pos - lo)


def wilson_interval(successes: int, total: int, level: float = 0.95) -> ConfidenceInterval:
    """Wilson score interval for a pass rate; [0, 1] with no runs."""
    if total <= 0:
        return ConfidenceInterval(estimate=0.0, lower=0.0, upper=1.0, level=level, method="wilson", n=0)
    p = successes / total
    z = NormalDist().inv_cdf(0.5 + level / 2)
    z2 = z * z
    denominator = 1 + z2 / total
    center = (p + z2 / (2 * total)) / denominator
    margin = (z / denominator) * math.sqrt(p * (1 - p) / total + z2 / (4 * total * total))
    return ConfidenceInterval(
        estimate=p,
        lower=max(0.0, center - margin),
        upper=min(1.0, center + margin),
        level=level,
        method="wilson",
        n=total,
    )


def bootstrap_interval(
    values: Sequence[float],
    level: float = 0.95,
    resamples: int = 1000,
    seed: int = 0,
) -> ConfidenceInterval:
    """Percentile bootstrap interval for the mean, seeded so reports repeat."""
    if not values:
        return ConfidenceInterval(estimate=0.0, lower=0.0, upper=1.0, level=level, method="bootstrap", n=0)
    if len(values) == 1:
        v = values[0]
        return ConfidenceInterval(estimate=v, lower=v, upper=v, level=level, method="bootstrap", n=1)

    rng = random.Random(seed)
    means = []
    for _ in range(resamples):
        sample = [rng.choice(values) for _ in range(len(values))]
        means.append(mean(sample))
    alpha = 1.0 - level
    return ConfidenceInterval(
        estimate=mean(values),
        lower=percentile(means, alpha / 2),
        upper=percentile(means, 1.0 - alpha / 2),
        level=level,
        method="bootstrap",
        n=len(values),
    )


def count_clusters(texts: Sequence[str], threshold: float) -> int:
    """Greedy clustering: a text joins the first cluster whose seed it matches."""
    seeds: List[str] = []
    for text in texts:
        if not any(text_similarity(text, s) >= threshold for s in seeds):
            seeds.append(text)
    return len(seeds)


def epic_stats(epic_id: str, runs: List[DistRun], config: EvolutionConfig) -> EpicDistResult:
    """Order-independent aggregation of one Epic's runs."""
    runs = sorted(runs, key=lambda r: r.seed)
    scores = [r.score for r in runs]
    passes = sum(1 for r in runs if r.passed)
    pass_rate = passes / max(1, len(runs))
    passing_texts = [r.output.compact_text() for r in runs if r.passed]
    level = config.confidence_level
    return EpicDistResult(
        epic_id=epic_id,
        runs=runs,
        mean_score=mean(scores),
        p10_score=percentile(scores, 0.1),
        std_score=std(scores),
        pass_rate=pass_rate,
        discoverability_k=count_clusters(passing_texts, config.discoverability_similarity),
        pass_at_k=1.0 - (1.0 - pass_rate) ** config.discoverability_tries,
        pass_rate_ci=wilson_interval(passes, len(runs), level),
        mean_ci=bootstrap_interval(scores, level, config.bootstrap_resamples, seed=config.seed_base),
    )


def aggregate(per_epic: Sequence[EpicDistResult], config: EvolutionConfig) -> DistAggregate:
    """Cross-Epic means and the composite objective."""
    agg = DistAggregate(
        mean_of_means=mean([e.mean_score for e in per_epic]),
        mean_pass_rate=mean([e.pass_rate for e in per_epic]),
        mean_p10=mean([e.p10_score for e in per_epic]),
        mean_std=mean([e.std_score for e in per_epic]),
    )
    agg.objective = objective(agg, config)
    return agg


def objective(agg: DistAggregate, config: EvolutionConfig) -> float:
    return (
        config.objective_pass_weight * agg.mean_pass_rate
        + config.objective_mean_weight * agg.mean_of_means
        + config.objective_p10_weight * agg.mean_p10
        - config.std_lambda * agg.mean_std
        - config.fail_penalty * (1.0 - agg.mean_pass_rate)
    )


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------

class DistributionalEvaluator:
    """Runs generate+score over (Epic, replicate) with bounded concurrency."""

    def __init__(
        self,
        generator: StoryGenerator,
        scorer: Optional[StoryScorer] = None,
        config: Optional[EvolutionConfig] = None,
    ):
        self._config = config or EvolutionConfig()
        self._generator = generator
        self._scorer = scorer or StoryScorer(self._config)

    @property
    def config(self) -> EvolutionConfig:
        return self._config

    def seeds_for(self, epic_index: int, replicates: Optional[int] = None) -> List[int]:
        r = replicates or self._config.replicates
        base = self._config.seed_base + epic_index * r
        return [base + i for i in range(r)]

    async def _run_once(self, epic: Epic, prompt_text: str, seed: int) -> DistRun:
        output = await self._generator.generate(epic, prompt_text, seed=seed)
        if output.seed is None:
            output = output.model_copy(update={"seed": seed})
        result = await self._scorer.score(epic, output)
        return DistRun(
            seed=seed,
            score=result.score,
            passed=result.score > self._config.pass_threshold,
            output=output,
            sub_scores=result.sub_scores,
            reason=result.reason,
        )

    async def run_one(self, epic: Epic, prompt_text: str, seed: int) -> DistRun:
        """One isolated run; any failure becomes a zero-score DistRun."""
        try:
            return await asyncio.wait_for(
                self._run_once(epic, prompt_text, seed),
                timeout=self._config.run_timeout_s,
            )
        except asyncio.TimeoutError:
            error = "timeout after {}s".format(self._config.run_timeout_s)
        except GenerationFailure as e:
            error = str(e)
        except Exception as e:
            error = "{}: {}".format(type(e).__name__, e)
        logger.warning("Run failed (epic=%s seed=%s): %s", epic.id, seed, error)
        return DistRun(seed=seed, score=0.0, passed=False, error=error)

    async def evaluate(
        self,
        prompt_id: str,
        prompt_text: str,
        epics: Sequence[Epic],
        replicates: Optional[int] = None,
        on_progress: Optional[ProgressFn] = None,
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> PromptDistReport:
        """Evaluate one prompt over all Epics.

        ``should_continue`` is checked before each run is issued; once it
        returns False no new runs start and the report covers only the runs
        already done.
        """
        ids = [e.id for e in epics]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError("Duplicate epic ids: {}".format(", ".join(duplicates)))

        r = replicates or self._config.replicates
        total = len(epics) * r
        semaphore = asyncio.Semaphore(self._config.concurrency)
        completed = 0
        progress_lock = asyncio.Lock()

        async def _bounded(epic: Epic, seed: int) -> Optional[DistRun]:
            nonlocal completed
            async with semaphore:
                if should_continue is not None and not should_continue():
                    return None
                run = await self.run_one(epic, prompt_text, seed)
            if on_progress is not None:
                async with progress_lock:
                    completed += 1
                    try:
                        ret = on_progress(completed, total)
                        if inspect.isawaitable(ret):
                            await ret
                    except Exception as e:
                        logger.debug("Progress callback error: %s", e)
            return run

        tasks = []
        for idx, epic in enumerate(epics):
            for seed in self.seeds_for(idx, r):
                tasks.append((epic.id, _bounded(epic, seed)))

        logger.info("Evaluating %s: %d epics x %d replicates", prompt_id, len(epics), r)
        results = await asyncio.gather(*(coro for _, coro in tasks))

        by_epic: Dict[str, List[DistRun]] = {e.id: [] for e in epics}
        for (epic_id, _), run in zip(tasks, results):
            if run is not None:
                by_epic[epic_id].append(run)

        per_epic = [epic_stats(e.id, by_epic[e.id], self._config) for e in epics]
        report = PromptDistReport(
            prompt_id=prompt_id,
            per_epic=per_epic,
            agg=aggregate(per_epic, self._config),
        )
        logger.info(
            "Evaluated %s: objective=%.4f passRate=%.3f (%d runs, %d failed)",
            prompt_id, report.agg.objective, report.agg.mean_pass_rate,
            report.total_runs, report.failed_runs,
        )
        return report


def format_dist_report(report: PromptDistReport) -> str:
    """Human-readable distribution report."""
    lines = [
        "=" * 60,
        "DISTRIBUTION REPORT: {}".format(report.prompt_id),
        "=" * 60,
        "",
        "{:<20} {:>8} {:>13} {:>8} {:>8} {:>8} {:>6}".format(
            "Epic", "Pass", "Pass CI", "Mean", "P10", "Std", "K",
        ),
    ]
    for e in report.per_epic:
        ci = e.pass_rate_ci
        ci_text = "{:.0%}-{:.0%}".format(ci.lower, ci.upper) if ci else "-"
        lines.append("{:<20} {:>7.0%} {:>13} {:>8.3f} {:>8.3f} {:>8.3f} {:>6}".format(
            e.epic_id[:20], e.pass_rate, ci_text, e.mean_score, e.p10_score, e.std_score,
            e.discoverability_k,
        ))
    agg = report.agg
    lines.extend([
        "",
        "Mean pass rate: {:.1%}".format(agg.mean_pass_rate),
        "Mean of means:  {:.3f}".format(agg.mean_of_means),
        "Mean p10:       {:.3f}".format(agg.mean_p10),
        "Mean std:       {:.3f}".format(agg.mean_std),
        "Objective:      {:.4f}".format(agg.objective),
    ])
    if report.failed_runs:
        lines.append("Failed runs:    {}/{}".format(report.failed_runs, report.total_runs))
    return "\n".join(lines)
