# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Story decomposition scorer.

Schema gate first: an output without a valid StoryPack scores 0 and no
sub-metric is computed. Otherwise five sub-metrics are combined:

  coverage      Epic keywords present in the stories     (0.25)
  invest        judged INVEST quality                    (0.30)
  criteria      judged acceptance-criteria testability   (0.30)
  duplication   1 - share of near-duplicate story pairs  (0.10)
  count         story count in the optimal range         (0.05)

Judge failures degrade the affected sub-metric to 0 and add a note;
``score()`` itself never raises.
"""
import itertools
import logging
import re
from typing import Dict, List, Optional

from promptagent.errors import JudgeFailure
from promptagent.evolution.models import EvolutionConfig, GateDecision, ScorerResult
from promptagent.evolution.panel import JudgePanel, gate_for
from promptagent.models import Epic, GeneratedOutput, StoryPack
from promptagent.similarity import text_similarity, tokenize

logger = logging.getLogger(__name__)

INVEST_JUDGE_PROMPT = (
    "You are a strict product coach. Rate the user stories against INVEST: "
    "Independent, Negotiable, Valuable, Estimable, Small, Testable. "
    "Penalize oversized or overlapping stories.\n"
    "Reply with JSON only: {\"score\": <0..1>, \"rationale\": \"<one sentence>\"}"
)

CRITERIA_JUDGE_PROMPT = (
    "You are a strict QA lead. Rate whether the acceptance criteria are "
    "objectively testable (Given/When/Then, measurable thresholds, no vague "
    "words like 'fast' or 'user friendly').\n"
    "Reply with JSON only: {\"score\": <0..1>, \"rationale\": \"<one sentence>\"}"
)

_GWT_RE = re.compile(r"\bgiven\b.*\bwhen\b.*\bthen\b", re.IGNORECASE | re.DOTALL)

SUB_METRICS = ("coverage", "invest", "criteria", "duplication", "count")


def keyword_coverage(epic: Epic, pack: StoryPack) -> float:
    """Share of distinct Epic keywords that appear in the stories."""
    keywords = set(tokenize(epic.as_text()))
    if not keywords:
        return 1.0
    found = set(tokenize(pack.compact_text()))
    return len(keywords & found) / len(keywords)


def duplication_score(pack: StoryPack, threshold: float = 0.9) -> float:
    """1.0 when no two stories are near-duplicates, falling to 0."""
    texts = [
        "{} {} {}".format(s.title, s.i_want, s.so_that) for s in pack.user_stories
    ]
    pairs = list(itertools.combinations(texts, 2))
    if not pairs:
        return 1.0
    dupes = sum(1 for a, b in pairs if text_similarity(a, b) >= threshold)
    return 1.0 - dupes / len(pairs)


def count_score(n: int, lo: int = 4, hi: int = 8) -> float:
    """1.0 inside [lo, hi], 0.7 one step outside, 0.4 otherwise."""
    if lo <= n <= hi:
        return 1.0
    if n == lo - 1 or n == hi + 1:
        return 0.7
    return 0.4


def heuristic_invest(pack: StoryPack) -> float:
    """Rule-based INVEST estimate used when no judge panel is configured."""
    total = 0.0
    for story in pack.user_stories:
        checks = [
            len(story.as_a.split()) >= 1,
            len(story.i_want.split()) >= 3,
            len(story.so_that.split()) >= 3,
            len(story.acceptance_criteria) >= 2,
            story.story_points is None or story.story_points <= 13,
        ]
        total += sum(checks) / len(checks)
    return total / len(pack.user_stories)


def heuristic_testability(pack: StoryPack) -> float:
    """Fraction of acceptance criteria written as Given/When/Then."""
    criteria = [c for s in pack.user_stories for c in s.acceptance_criteria]
    if not criteria:
        return 0.0
    return sum(1 for c in criteria if _GWT_RE.search(c)) / len(criteria)


class StoryScorer:
    """Composite scorer, optionally backed by a judge panel."""

    def __init__(
        self,
        config: Optional[EvolutionConfig] = None,
        panel: Optional[JudgePanel] = None,
    ):
        self._config = config or EvolutionConfig()
        self._panel = panel if panel is not None and len(panel) > 0 else None

    @property
    def weights(self) -> Dict[str, float]:
        cfg = self._config
        return {
            "coverage": cfg.coverage_weight,
            "invest": cfg.invest_weight,
            "criteria": cfg.criteria_weight,
            "duplication": cfg.duplication_weight,
            "count": cfg.count_weight,
        }

    async def _judged(
        self, name: str, epic: Epic, output: GeneratedOutput, prompt: str, notes: List[str],
    ) -> Optional[float]:
        """Panel score for one sub-metric, or None when the panel failed."""
        try:
            result = await self._panel.evaluate(epic, output, prompt)
        except JudgeFailure as e:
            notes.append("{} judge failed: {}".format(name, e))
            logger.warning("Epic %s: %s judge failed: %s", epic.id, name, e)
            return None
        except Exception as e:
            notes.append("{} judge error: {}".format(name, str(e)[:100]))
            logger.warning("Epic %s: %s judge error: %s", epic.id, name, e)
            return None
        if result.failures:
            notes.append("{}: {} judge(s) failed".format(name, len(result.failures)))
        return result.r_eff

    async def score(self, epic: Epic, output: GeneratedOutput) -> ScorerResult:
        if not output.is_valid:
            return ScorerResult(
                score=0.0,
                reason="Score=0. Schema validation failed: {}".format(output.error or "no story pack"),
                gate_decision=GateDecision.BLOCK,
            )

        cfg = self._config
        pack = output.story_pack
        notes: List[str] = []
        sub: Dict[str, float] = {
            "coverage": keyword_coverage(epic, pack),
            "duplication": duplication_score(pack, cfg.duplicate_similarity),
            "count": count_score(len(pack.user_stories), cfg.optimal_min_items, cfg.optimal_max_items),
        }

        judged_any = False
        if self._panel is None:
            sub["invest"] = heuristic_invest(pack)
            sub["criteria"] = heuristic_testability(pack)
            notes.append("no judges configured, heuristic invest/criteria")
        else:
            for name, prompt in (("invest", INVEST_JUDGE_PROMPT), ("criteria", CRITERIA_JUDGE_PROMPT)):
                value = await self._judged(name, epic, output, prompt, notes)
                if value is None:
                    sub[name] = 0.0
                else:
                    sub[name] = value
                    judged_any = True

        weights = self.weights
        total_weight = sum(weights.values())
        composite = sum(weights[k] * sub[k] for k in SUB_METRICS) / total_weight
        composite = max(0.0, min(1.0, composite))

        gate = gate_for(composite, cfg) if judged_any else GateDecision.ABSTAIN
        reason = " | ".join(
            ["Score={:.3f}".format(composite)]
            + ["{}={:.3f}".format(k, sub[k]) for k in SUB_METRICS]
            + ["stories={}".format(len(pack.user_stories))]
            + (["notes=" + "; ".join(notes)] if notes else [])
        )
        return ScorerResult(
            score=composite,
            reason=reason,
            sub_scores=sub,
            gate_decision=gate,
            notes=notes,
        )
