# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Pareto portfolio selection among improving challengers.

When several challengers beat the champion in the same generation, the
winner is not a plain argmax over objective. Each challenger gets a
creativity profile; the non-dominated set over (objective, novelty,
constraint_fit) forms the front, and a small portfolio of front members is
kept for the cases where the objective margin alone is ambiguous.
"""
import logging
from typing import Dict, List, Optional, Sequence

from promptagent.evolution.models import (
    CandidateEval, CreativityProfile, EvolutionConfig, PortfolioSelection,
    PromptDistReport,
)
from promptagent.similarity import text_similarity

logger = logging.getLogger(__name__)


def novelty(patch: str, references: Sequence[str]) -> float:
    """1 - max similarity to the reference patches (1.0 with none)."""
    refs = [r for r in references if r and r.strip()]
    if not refs:
        return 1.0
    return max(0.0, 1.0 - max(text_similarity(patch, r) for r in refs))


def constraint_fit(report: PromptDistReport) -> float:
    """Mean pass rate; 0 when no run produced a valid story pack."""
    any_valid = any(r.output.is_valid for e in report.per_epic for r in e.runs)
    if not any_valid:
        return 0.0
    return report.agg.mean_pass_rate


def build_profile(
    patch: str,
    report: PromptDistReport,
    champion_objective: float,
    references: Sequence[str],
    batch: Sequence[str] = (),
) -> CreativityProfile:
    others = [p for p in batch if p != patch]
    return CreativityProfile(
        novelty=novelty(patch, references),
        use_value=report.agg.objective - champion_objective,
        constraint_fit=constraint_fit(report),
        diversity=novelty(patch, others),
    )


def is_eligible(profile: CreativityProfile, config: EvolutionConfig) -> bool:
    return profile.constraint_fit >= config.constraint_fit_threshold or profile.use_value > 0


def _dims(c: CandidateEval):
    return (c.objective, c.profile.novelty, c.profile.constraint_fit)


def dominates(a: CandidateEval, b: CandidateEval) -> bool:
    """a is at least as good on every dimension and better on one."""
    da, db = _dims(a), _dims(b)
    return all(x >= y for x, y in zip(da, db)) and any(x > y for x, y in zip(da, db))


def pareto_front(candidates: Sequence[CandidateEval]):
    """Split candidates into (front, dominated)."""
    front: List[CandidateEval] = []
    dominated: List[CandidateEval] = []
    for c in candidates:
        if any(other.id != c.id and dominates(other, c) for other in candidates):
            dominated.append(c)
        else:
            front.append(c)
    return front, dominated


def illumination(front: Sequence[CandidateEval], eligible: Sequence[CandidateEval]) -> Dict[str, float]:
    if not front:
        return {"front_size": 0, "coverage": 0.0, "qd_score": 0.0,
                "avg_novelty": 0.0, "avg_diversity": 0.0, "objective_spread": 0.0}
    objectives = [c.objective for c in front]
    return {
        "front_size": len(front),
        "coverage": len(front) / max(1, len(eligible)),
        "qd_score": sum(objectives),
        "avg_novelty": sum(c.profile.novelty for c in front) / len(front),
        "avg_diversity": sum(c.profile.diversity for c in front) / len(front),
        "objective_spread": max(objectives) - min(objectives),
    }


def select_portfolio(
    candidates: Sequence[CandidateEval],
    config: Optional[EvolutionConfig] = None,
) -> PortfolioSelection:
    """Pick a winner and a portfolio from improving challengers.

    Contenders are front members within ``promotion_margin`` of the best
    front objective; among them the winner is the best by
    (constraint_fit, novelty, objective).
    """
    cfg = config or EvolutionConfig()
    eligible = [c for c in candidates if is_eligible(c.profile, cfg)]
    ineligible = [c for c in candidates if not is_eligible(c.profile, cfg)]
    for c in ineligible:
        c.eligible = False

    front, dominated = pareto_front(eligible)
    for c in front:
        c.on_front = True

    selection = PortfolioSelection(
        front=front,
        dominated=dominated,
        ineligible=ineligible,
        illumination=illumination(front, eligible),
    )
    if not front:
        return selection

    top = max(c.objective for c in front)
    contenders = [c for c in front if c.objective >= top - cfg.promotion_margin]
    selection.winner = max(
        contenders,
        key=lambda c: (c.profile.constraint_fit, c.profile.novelty, c.objective),
    )
    selection.ambiguous = len(contenders) > 1
    logger.debug(
        "Pareto front %d/%d eligible, %d contenders, winner %s",
        len(front), len(eligible), len(contenders), selection.winner.id,
    )
    return selection


def rank_portfolio(front: Sequence[CandidateEval], size: int) -> List[CandidateEval]:
    """Top ``size`` front members by objective."""
    return sorted(front, key=lambda c: c.objective, reverse=True)[:size]
