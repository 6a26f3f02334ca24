# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Contrastive pair mining.

Two outputs for the same Epic that read alike but score differently point
at what makes an output good. For each Epic the miner keeps the single
pair with the largest score delta among pairs whose texts are at least
``pair_min_similarity`` alike; unrelated outputs are never paired.
"""
import itertools
import logging
from typing import List, Optional

from promptagent.evolution.models import (
    ContrastPair, DistRun, EpicDistResult, EvolutionConfig, PromptDistReport,
    QualityTier,
)
from promptagent.similarity import cosine, hash_vector

logger = logging.getLogger(__name__)

_METRICS = ("coverage", "invest", "criteria", "duplication")
_ANALYSIS_DELTA = 0.15
_METRIC_LABELS = {
    "coverage": "Low keyword coverage",
    "invest": "Poor INVEST compliance",
    "criteria": "Weak acceptance criteria",
    "duplication": "Story duplication",
}


def quality_tier(score: float, config: EvolutionConfig) -> QualityTier:
    if score >= config.tier_high:
        return QualityTier.HIGH
    if score >= config.tier_medium:
        return QualityTier.MEDIUM
    return QualityTier.LOW


def primary_metric(good: DistRun, bad: DistRun) -> Optional[str]:
    """Sub-metric with the largest gap between the two runs."""
    best = None
    best_delta = 0.0
    for metric in _METRICS:
        if metric in good.sub_scores and metric in bad.sub_scores:
            delta = abs(good.sub_scores[metric] - bad.sub_scores[metric])
            if delta > best_delta:
                best, best_delta = metric, delta
    return best


def error_analysis(good: DistRun, bad: DistRun, config: EvolutionConfig) -> List[str]:
    """Short notes on what the bad output got wrong relative to the good one."""
    notes: List[str] = []
    good_pack = good.output.story_pack
    bad_pack = bad.output.story_pack

    if good_pack is not None and bad_pack is None:
        notes.append("Schema validation failed: {}".format(bad.output.error or bad.error or "no story pack"))

    lo, hi = config.optimal_min_items, config.optimal_max_items
    good_n = len(good_pack.user_stories) if good_pack else 0
    bad_n = len(bad_pack.user_stories) if bad_pack else 0
    if lo <= good_n <= hi and bad_pack is not None and not lo <= bad_n <= hi:
        notes.append("Story count outside optimal range: {} (optimal: {}-{}, good had: {})".format(
            bad_n, lo, hi, good_n,
        ))

    for metric in _METRICS:
        g = good.sub_scores.get(metric)
        b = bad.sub_scores.get(metric)
        if g is not None and b is not None and g - b > _ANALYSIS_DELTA:
            notes.append("{}: {:.0%} vs {:.0%}".format(_METRIC_LABELS[metric], b, g))

    if bad_pack is not None:
        for story in bad_pack.user_stories:
            if len(story.acceptance_criteria) < 3:
                notes.append("Story \"{}\" has only {} acceptance criteria".format(
                    story.title[:30], len(story.acceptance_criteria),
                ))
                break
    return notes


def best_pair_for_epic(result: EpicDistResult, config: EvolutionConfig) -> Optional[ContrastPair]:
    """Qualifying pair with the largest delta; ties go to higher similarity."""
    runs = sorted(result.runs, key=lambda r: r.seed)
    texts = [r.output.compact_text() for r in runs]
    vectors = [hash_vector(t) for t in texts]

    best: Optional[ContrastPair] = None
    for i, j in itertools.combinations(range(len(runs)), 2):
        a, b = runs[i], runs[j]
        if not texts[i] and not texts[j]:
            continue
        sim = cosine(vectors[i], vectors[j])
        delta = abs(a.score - b.score)
        if sim < config.pair_min_similarity or delta < config.pair_min_delta:
            continue
        if best is not None and (delta, sim) <= (best.score_delta, best.similarity):
            continue
        good, bad = (a, b) if a.score >= b.score else (b, a)
        best = ContrastPair(
            epic_id=result.epic_id,
            good=good,
            bad=bad,
            similarity=sim,
            score_delta=delta,
        )
    return best


def mine_pairs(
    report: PromptDistReport,
    config: Optional[EvolutionConfig] = None,
    annotate: bool = True,
) -> List[ContrastPair]:
    """At most one pair per Epic, sorted by score delta descending."""
    cfg = config or EvolutionConfig()
    pairs: List[ContrastPair] = []
    for result in report.per_epic:
        pair = best_pair_for_epic(result, cfg)
        if pair is None:
            continue
        if annotate:
            pair = pair.model_copy(update={
                "tier": quality_tier(pair.good.score, cfg),
                "primary_metric": primary_metric(pair.good, pair.bad),
                "error_analysis": error_analysis(pair.good, pair.bad, cfg),
            })
        pairs.append(pair)

    pairs.sort(key=lambda p: (-p.score_delta, -p.similarity))
    if cfg.pair_max_pairs is not None:
        pairs = pairs[:cfg.pair_max_pairs]
    logger.debug("Mined %d pairs from %d epics", len(pairs), len(report.per_epic))
    return pairs


def _pack_json(run: DistRun) -> str:
    if run.output.story_pack is None:
        return run.output.raw_text[:1500] or "(no output)"
    return run.output.story_pack.model_dump_json(by_alias=True, indent=2)


def format_pairs_for_prompt(pairs: List[ContrastPair]) -> str:
    """Render pairs as context for the patch proposer."""
    if not pairs:
        return "No contrastive pairs found (outputs too different or scores too similar)."

    blocks = []
    for idx, p in enumerate(pairs, 1):
        header = "Epic: {} | Similarity: {:.2f} | Delta: {:.3f}".format(
            p.epic_id, p.similarity, p.score_delta,
        )
        if p.tier is not None:
            header += " | Tier: {}".format(p.tier.value)
        if p.primary_metric:
            header += " | Primary: {}".format(p.primary_metric)
        lines = [
            "### PAIR {}".format(idx),
            header,
            "",
            "**GOOD** (score={:.3f}, seed={})".format(p.good.score, p.good.seed),
            "```json",
            _pack_json(p.good),
            "```",
            "",
            "**BAD** (score={:.3f}, seed={})".format(p.bad.score, p.bad.seed),
            "```json",
            _pack_json(p.bad),
            "```",
        ]
        if p.error_analysis:
            lines.append("")
            lines.append("Issues in BAD:")
            lines.extend("- {}".format(note) for note in p.error_analysis)
        blocks.append("\n".join(lines))
    return "\n\n---\n\n".join(blocks)
