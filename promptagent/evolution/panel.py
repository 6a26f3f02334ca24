# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Judge panel (PoLL) with weakest-link aggregation.

Several independently configured judges score the same output. The panel
reports the weakest score, penalised by how much the judges disagree:

    r_eff = max(0, min(scores) - penalty(congruence tier))

The tier is picked from the largest pairwise spread between judge scores.
"""
import asyncio
import itertools
import logging
from typing import List, Optional, Sequence, Tuple

from promptagent.errors import JudgeFailure
from promptagent.evolution.models import (
    CongruenceLevel, EvolutionConfig, GateDecision, PanelResult,
)
from promptagent.models import Epic, GeneratedOutput, JudgeVerdict
from promptagent.providers.base import DEFAULT_JUDGE_PROMPT, Judge

logger = logging.getLogger(__name__)


def congruence_level(
    spread: float,
    thresholds: Tuple[float, float, float] = (0.10, 0.25, 0.40),
) -> CongruenceLevel:
    """Map a max pairwise score spread to a congruence tier."""
    tight, medium, wide = thresholds
    if spread < tight:
        return CongruenceLevel.CL3_VERIFIED
    if spread < medium:
        return CongruenceLevel.CL2_VALIDATED
    if spread < wide:
        return CongruenceLevel.CL1_PLAUSIBLE
    return CongruenceLevel.CL0_WEAK_GUESS


def congruence_penalty(
    level: CongruenceLevel,
    penalties: Tuple[float, float, float, float] = (0.00, 0.05, 0.15, 0.30),
) -> float:
    """Penalty for a tier; penalties are ordered tightest -> widest."""
    return penalties[CongruenceLevel.CL3_VERIFIED - level]


def gate_for(score: float, config: EvolutionConfig) -> GateDecision:
    if score >= config.gate_pass_threshold:
        return GateDecision.PASS
    if score <= config.gate_block_threshold:
        return GateDecision.BLOCK
    return GateDecision.DEGRADE


def aggregate_verdicts(
    verdicts: Sequence[JudgeVerdict],
    config: Optional[EvolutionConfig] = None,
    failures: Sequence[str] = (),
) -> PanelResult:
    """Weakest-link aggregation of the successful verdicts.

    With fewer than two verdicts there is no agreement to measure, so the
    panel sits at the widest tier. Raises JudgeFailure when no verdict is
    available at all.
    """
    cfg = config or EvolutionConfig()
    if not verdicts:
        raise JudgeFailure("all judges failed: {}".format("; ".join(failures) or "no judges"))

    scores = [v.score for v in verdicts]
    r_raw = min(scores)
    if len(scores) >= 2:
        spread = max(abs(a - b) for a, b in itertools.combinations(scores, 2))
        level = congruence_level(spread, cfg.congruence_thresholds)
    else:
        spread = 1.0
        level = CongruenceLevel.CL0_WEAK_GUESS

    penalty = congruence_penalty(level, cfg.congruence_penalties)
    r_eff = max(0.0, r_raw - penalty)
    cutset = [v.judge_id for v in verdicts if v.score == r_raw]

    return PanelResult(
        verdicts=list(verdicts),
        failures=list(failures),
        r_raw=r_raw,
        max_spread=spread,
        congruence=level,
        penalty=penalty,
        r_eff=r_eff,
        gate_decision=gate_for(r_eff, cfg),
        cutset=cutset,
    )


class JudgePanel:
    """Runs every judge on an output concurrently and aggregates them."""

    def __init__(
        self,
        judges: Sequence[Judge],
        config: Optional[EvolutionConfig] = None,
        judge_prompt: str = DEFAULT_JUDGE_PROMPT,
    ):
        self._judges = list(judges)
        self._config = config or EvolutionConfig()
        self._judge_prompt = judge_prompt

    def __len__(self) -> int:
        return len(self._judges)

    async def _run_one(self, judge: Judge, epic: Epic, output: GeneratedOutput, prompt: str) -> JudgeVerdict:
        verdict = await asyncio.wait_for(
            judge.judge(epic, output, prompt),
            timeout=self._config.judge_timeout_s,
        )
        if not verdict.judge_id:
            verdict = verdict.model_copy(update={"judge_id": judge.judge_id})
        return verdict

    async def evaluate(
        self,
        epic: Epic,
        output: GeneratedOutput,
        judge_prompt: Optional[str] = None,
    ) -> PanelResult:
        """Score ``output`` with the whole panel.

        Individual judge errors and timeouts are dropped from the panel and
        listed in ``failures``; JudgeFailure is raised only when every judge
        failed.
        """
        prompt = judge_prompt if judge_prompt is not None else self._judge_prompt
        results = await asyncio.gather(
            *(self._run_one(j, epic, output, prompt) for j in self._judges),
            return_exceptions=True,
        )
        verdicts: List[JudgeVerdict] = []
        failures: List[str] = []
        for judge, result in zip(self._judges, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                reason = "timeout" if isinstance(result, asyncio.TimeoutError) else str(result)
                logger.warning("Judge %s failed on epic %s: %s", judge.judge_id, epic.id, reason)
                failures.append("{}: {}".format(judge.judge_id, reason))
            else:
                verdicts.append(result)

        return aggregate_verdicts(verdicts, self._config, failures)
