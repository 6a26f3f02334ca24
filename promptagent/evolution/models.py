# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Data models for distributional evaluation and prompt evolution."""
import hashlib
import time
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, model_validator

from promptagent.models import GeneratedOutput, JudgeVerdict

PATCH_HEADER = "## PATCH SECTION (auto-generated)"


class EvolutionConfig(BaseModel):
    """Tuning constants for scoring, evaluation, mining and evolution.

    The objective weights and judge-panel tiers are empirically tuned
    defaults, overridable per run (see ``load_config``).
    """

    # Distributional evaluation
    replicates: int = Field(5, ge=1, le=50)
    seed_base: int = Field(0, ge=0)
    concurrency: int = Field(2, ge=1, le=64)
    run_timeout_s: float = Field(120.0, gt=0)
    pass_threshold: float = Field(0.5, ge=0.0, le=1.0)
    discoverability_similarity: float = Field(0.86, ge=-1.0, le=1.0)
    discoverability_tries: int = Field(3, ge=1, le=10)
    confidence_level: float = Field(0.95, gt=0.0, lt=1.0)
    bootstrap_resamples: int = Field(1000, ge=1, le=100000)

    # Objective = w_pass*passRate + w_mean*mean + w_p10*p10
    #             - std_lambda*std - fail_penalty*(1 - passRate)
    objective_pass_weight: float = 0.45
    objective_mean_weight: float = 0.35
    objective_p10_weight: float = 0.20
    std_lambda: float = Field(0.25, ge=0.0, le=5.0)
    fail_penalty: float = Field(0.0, ge=0.0, le=5.0)

    # Scorer composite weights
    coverage_weight: float = Field(0.25, ge=0.0)
    invest_weight: float = Field(0.30, ge=0.0)
    criteria_weight: float = Field(0.30, ge=0.0)
    duplication_weight: float = Field(0.10, ge=0.0)
    count_weight: float = Field(0.05, ge=0.0)
    optimal_min_items: int = Field(4, ge=1)
    optimal_max_items: int = Field(8, ge=1)
    duplicate_similarity: float = Field(0.9, ge=0.0, le=1.0)
    gate_pass_threshold: float = Field(0.7, ge=0.0, le=1.0)
    gate_block_threshold: float = Field(0.3, ge=0.0, le=1.0)
    judge_timeout_s: float = Field(60.0, gt=0)

    # Judge panel congruence tiers: spread below thresholds[0] is the
    # tightest tier; at or above thresholds[2] is the widest.
    congruence_thresholds: Tuple[float, float, float] = (0.10, 0.25, 0.40)
    congruence_penalties: Tuple[float, float, float, float] = (0.00, 0.05, 0.15, 0.30)

    # Contrastive pair mining
    pair_min_similarity: float = Field(0.6, ge=-1.0, le=1.0)
    pair_min_delta: float = Field(0.0, ge=0.0, le=1.0)
    pair_max_pairs: Optional[int] = Field(None, ge=1)
    tier_high: float = 0.75
    tier_medium: float = 0.50

    # Champion / challenger evolution
    max_generations: int = Field(10, ge=1)
    challengers_per_generation: int = Field(4, ge=1, le=50)
    promotion_margin: float = Field(0.01, ge=0.0)
    stop_no_promotion: int = Field(3, ge=1)
    portfolio_size: int = Field(3, ge=1)
    constraint_fit_threshold: float = Field(1.0, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_ranges(self) -> "EvolutionConfig":
        if self.optimal_min_items > self.optimal_max_items:
            raise ValueError("optimal_min_items must be <= optimal_max_items")
        if self.gate_block_threshold > self.gate_pass_threshold:
            raise ValueError("gate_block_threshold must be <= gate_pass_threshold")
        if list(self.congruence_thresholds) != sorted(self.congruence_thresholds):
            raise ValueError("congruence_thresholds must be ascending")
        if list(self.congruence_penalties) != sorted(self.congruence_penalties):
            raise ValueError("congruence_penalties must be non-decreasing")
        weights = (
            self.coverage_weight, self.invest_weight, self.criteria_weight,
            self.duplication_weight, self.count_weight,
        )
        if sum(weights) <= 0:
            raise ValueError("scorer weights must not all be zero")
        return self


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

class GateDecision(str, Enum):
    PASS = "pass"
    DEGRADE = "degrade"
    BLOCK = "block"
    ABSTAIN = "abstain"


class CongruenceLevel(IntEnum):
    """Judge-panel agreement tier; higher means tighter agreement."""
    CL0_WEAK_GUESS = 0
    CL1_PLAUSIBLE = 1
    CL2_VALIDATED = 2
    CL3_VERIFIED = 3


class PanelResult(BaseModel):
    """Weakest-link aggregate of a judge panel."""

    verdicts: List[JudgeVerdict] = Field(default_factory=list)
    failures: List[str] = Field(default_factory=list)
    r_raw: float = 0.0
    max_spread: float = 1.0
    congruence: CongruenceLevel = CongruenceLevel.CL0_WEAK_GUESS
    penalty: float = 0.0
    r_eff: float = 0.0
    gate_decision: GateDecision = GateDecision.ABSTAIN
    cutset: List[str] = Field(default_factory=list)


class ScorerResult(BaseModel):
    """Composite quality score for one generated output."""

    model_config = {"frozen": True}

    score: float = Field(..., ge=0.0, le=1.0)
    reason: str = ""
    sub_scores: Dict[str, float] = Field(default_factory=dict)
    gate_decision: GateDecision = GateDecision.ABSTAIN
    notes: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Distributional evaluation
# ---------------------------------------------------------------------------

class DistRun(BaseModel):
    """One (epic, replicate) generate+score run."""

    seed: int
    score: float = 0.0
    passed: bool = False
    output: GeneratedOutput = Field(default_factory=GeneratedOutput)
    sub_scores: Dict[str, float] = Field(default_factory=dict)
    reason: str = ""
    error: Optional[str] = None


class ConfidenceInterval(BaseModel):
    """Point estimate with lower/upper bounds at ``level``."""

    estimate: float = 0.0
    lower: float = 0.0
    upper: float = 1.0
    level: float = 0.95
    method: str = ""
    n: int = 0


class EpicDistResult(BaseModel):
    """Distribution statistics for one Epic across its replicates."""

    epic_id: str
    runs: List[DistRun] = Field(default_factory=list)
    mean_score: float = 0.0
    p10_score: float = 0.0
    std_score: float = 0.0
    pass_rate: float = 0.0
    discoverability_k: int = 0
    pass_at_k: float = 0.0
    pass_rate_ci: Optional[ConfidenceInterval] = None
    mean_ci: Optional[ConfidenceInterval] = None


class DistAggregate(BaseModel):
    mean_of_means: float = 0.0
    mean_pass_rate: float = 0.0
    mean_p10: float = 0.0
    mean_std: float = 0.0
    objective: float = 0.0


class PromptDistReport(BaseModel):
    """One prompt version evaluated over a set of Epics."""

    prompt_id: str
    per_epic: List[EpicDistResult] = Field(default_factory=list)
    agg: DistAggregate = Field(default_factory=DistAggregate)
    timestamp: float = Field(default_factory=time.time)

    @property
    def total_runs(self) -> int:
        return sum(len(e.runs) for e in self.per_epic)

    @property
    def failed_runs(self) -> int:
        return sum(1 for e in self.per_epic for r in e.runs if r.error)


# ---------------------------------------------------------------------------
# Contrastive pairs
# ---------------------------------------------------------------------------

class QualityTier(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class ContrastPair(BaseModel):
    """Two similar outputs for the same Epic with different quality."""

    model_config = {"frozen": True}

    epic_id: str
    good: DistRun
    bad: DistRun
    similarity: float
    score_delta: float
    tier: Optional[QualityTier] = None
    primary_metric: Optional[str] = None
    error_analysis: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Champion / challenger
# ---------------------------------------------------------------------------

def compose_prompt(base: str, patch: str) -> str:
    """Append the patch to the base under a fixed header."""
    trimmed = patch.strip()
    if not trimmed:
        return base
    return "{}\n\n{}\n{}\n".format(base.strip(), PATCH_HEADER, trimmed)


def content_hash(text: str) -> str:
    """Short hash of prompt text for ids and dedup."""
    return hashlib.sha256(text.encode()).hexdigest()[:12]


class PatchVersion(BaseModel):
    """An archived champion patch, kept for rollback."""

    version: int
    patch: str
    objective: Optional[float] = None
    archived_at: float = Field(default_factory=time.time)


class ChampionPrompt(BaseModel):
    """The active prompt: immutable base plus an evolving patch.

    Promotion returns a new ChampionPrompt with the patch replaced and the
    previous patch archived; ``base`` never changes.
    """

    model_config = {"frozen": True}

    base: str
    patch: str = ""
    version: int = 0
    objective: Optional[float] = None
    history: List[PatchVersion] = Field(default_factory=list)

    @property
    def composed(self) -> str:
        return compose_prompt(self.base, self.patch)

    @property
    def version_id(self) -> str:
        return "v{}-{}".format(self.version, content_hash(self.composed))

    def promote(self, patch: str, objective: Optional[float] = None) -> "ChampionPrompt":
        archived = PatchVersion(version=self.version, patch=self.patch, objective=self.objective)
        return ChampionPrompt(
            base=self.base,
            patch=patch,
            version=self.version + 1,
            objective=objective,
            history=list(self.history) + [archived],
        )

    def rollback(self) -> "ChampionPrompt":
        """Restore the most recently archived patch as a new version."""
        if not self.history:
            raise ValueError("No archived patch to roll back to")
        previous = self.history[-1]
        return ChampionPrompt(
            base=self.base,
            patch=previous.patch,
            version=self.version + 1,
            objective=previous.objective,
            history=list(self.history[:-1]),
        )


class CreativityProfile(BaseModel):
    novelty: float = 1.0
    use_value: float = 0.0
    constraint_fit: float = 0.0
    diversity: float = 1.0


class CandidateEval(BaseModel):
    """A challenger patch and its evaluation summary."""

    id: str
    patch: str
    prompt_text: str
    objective: float = 0.0
    pass_rate: float = 0.0
    mean_score: float = 0.0
    delta_vs_champion: float = 0.0
    profile: CreativityProfile = Field(default_factory=CreativityProfile)
    eligible: bool = True
    on_front: bool = False
    error: Optional[str] = None


class PortfolioSelection(BaseModel):
    """Outcome of Pareto selection among improving challengers."""

    front: List[CandidateEval] = Field(default_factory=list)
    dominated: List[CandidateEval] = Field(default_factory=list)
    ineligible: List[CandidateEval] = Field(default_factory=list)
    winner: Optional[CandidateEval] = None
    ambiguous: bool = False
    illumination: Dict[str, float] = Field(default_factory=dict)


class GenerationResult(BaseModel):
    """Results from one generation of evolution."""

    generation: int
    timestamp: float = Field(default_factory=time.time)
    champion_version: str = ""
    champion_objective: float = 0.0
    pairs_found: int = 0
    candidates: List[CandidateEval] = Field(default_factory=list)
    best_id: str = ""
    best_objective: float = 0.0
    promoted: bool = False
    promoted_id: str = ""
    portfolio: List[str] = Field(default_factory=list)
    illumination: Dict[str, float] = Field(default_factory=dict)
    error: Optional[str] = None
    cancelled: bool = False
    duration_s: float = 0.0


class EvolutionState(BaseModel):
    """Everything needed to resume an optimization session."""

    session_id: str
    champion: ChampionPrompt
    generation: int = 0
    champion_report: Optional[PromptDistReport] = None
    no_promotion_streak: int = 0
    history: List[GenerationResult] = Field(default_factory=list)
    portfolio: List[CandidateEval] = Field(default_factory=list)
    seen_prompts: List[str] = Field(default_factory=list)
    runs_completed: int = 0
    stop_reason: str = ""
    completed: bool = False
    extra: Dict[str, Any] = Field(default_factory=dict)
