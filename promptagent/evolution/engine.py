# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Champion/challenger evolution engine.

Flow per generation:
  1. Evaluate the champion (cached per champion version)
  2. Mine contrastive pairs from the champion's runs
  3. Ask the patch proposer for K challenger patches
  4. Evaluate every challenger with the champion's seeds
  5. Challengers beating the champion by >= promotion_margin are improvers
  6. Pareto selection among improvers picks the winner and the portfolio
  7. Promote the winner: only the patch changes, the old patch is archived

Stops after max_generations, or after stop_no_promotion generations in a
row without a promotion. State is handed to a checkpoint callback after
every generation so a session can be resumed. A generation interrupted by
cancellation is discarded whole and never checkpointed.
"""
import inspect
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence

from promptagent.evolution.evaluator import DistributionalEvaluator
from promptagent.evolution.models import (
    CandidateEval, ChampionPrompt, EvolutionConfig, EvolutionState,
    GenerationResult, PromptDistReport, compose_prompt, content_hash,
)
from promptagent.evolution.pairs import format_pairs_for_prompt, mine_pairs
from promptagent.evolution.portfolio import build_profile, rank_portfolio, select_portfolio
from promptagent.models import Epic
from promptagent.providers.base import PatchProposer

logger = logging.getLogger(__name__)

# Float tolerance on the promotion margin comparison
_MARGIN_EPS = 1e-9

CheckpointFn = Callable[[EvolutionState], Any]
ProgressFn = Callable[[int, int], Any]


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class EvolutionEngine:
    """Runs champion/challenger generations over a fixed Epic set.

    Usage:
        engine = EvolutionEngine(evaluator, proposer, epics, config)
        state = await engine.run(ChampionPrompt(base=base_prompt))
        print(state.champion.composed)
    """

    def __init__(
        self,
        evaluator: DistributionalEvaluator,
        proposer: PatchProposer,
        epics: Sequence[Epic],
        config: Optional[EvolutionConfig] = None,
    ):
        self._evaluator = evaluator
        self._proposer = proposer
        self._epics = list(epics)
        self._config = config or evaluator.config

    def planned_runs(self) -> int:
        """Upper bound on generate+score runs for a full session."""
        per_eval = len(self._epics) * self._config.replicates
        per_gen = 1 + self._config.challengers_per_generation
        return self._config.max_generations * per_gen * per_eval

    @staticmethod
    def new_state(champion: ChampionPrompt, session_id: Optional[str] = None) -> EvolutionState:
        return EvolutionState(
            session_id=session_id or uuid.uuid4().hex[:12],
            champion=champion,
        )

    async def run(
        self,
        champion: Optional[ChampionPrompt] = None,
        state: Optional[EvolutionState] = None,
        on_progress: Optional[ProgressFn] = None,
        on_checkpoint: Optional[CheckpointFn] = None,
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> EvolutionState:
        """Run until a stop condition; resumes from ``state`` when given."""
        if state is None:
            if champion is None:
                raise ValueError("Either champion or state is required")
            state = self.new_state(champion)
        cfg = self._config
        total = self.planned_runs()

        async def _progress(_done: int, _total: int):
            state.runs_completed += 1
            if on_progress is not None:
                await _maybe_await(on_progress(min(state.runs_completed, total), total))

        while True:
            if state.generation >= cfg.max_generations:
                state.stop_reason = "max_generations"
                break
            if state.no_promotion_streak >= cfg.stop_no_promotion:
                state.stop_reason = "no_promotion"
                break
            if should_continue is not None and not should_continue():
                state.stop_reason = "cancelled"
                break

            result = await self.step(state, _progress, should_continue)
            if result.cancelled:
                # abandoned mid-generation: nothing recorded, state stays resumable
                state.stop_reason = "cancelled"
                break
            state.history.append(result)
            state.generation += 1
            if result.promoted:
                state.no_promotion_streak = 0
            else:
                state.no_promotion_streak += 1

            if on_checkpoint is not None:
                await _maybe_await(on_checkpoint(state))

        state.completed = state.stop_reason != "cancelled"
        logger.info(
            "Evolution stopped after %d generations (%s); champion %s",
            state.generation, state.stop_reason, state.champion.version_id,
        )
        return state

    async def _evaluate(self, prompt_id: str, text: str, progress, should_continue) -> PromptDistReport:
        return await self._evaluator.evaluate(
            prompt_id, text, self._epics,
            on_progress=progress, should_continue=should_continue,
        )

    @staticmethod
    def _stopped(should_continue: Optional[Callable[[], bool]]) -> bool:
        return should_continue is not None and not should_continue()

    def _is_complete(self, report: PromptDistReport) -> bool:
        return report.total_runs == len(self._epics) * self._evaluator.config.replicates

    def _abandon(self, result: GenerationResult, t0: float) -> GenerationResult:
        logger.info("Generation %d abandoned: cancelled", result.generation)
        result.cancelled = True
        result.duration_s = round(time.time() - t0, 2)
        return result

    async def step(
        self,
        state: EvolutionState,
        on_progress: Optional[ProgressFn] = None,
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> GenerationResult:
        """One generation. Mutates ``state.champion``/caches, returns the record.

        If ``should_continue`` turns false during any evaluation the
        generation is abandoned: the partial report is not cached, nothing
        is promoted, and the result comes back with ``cancelled`` set.
        """
        t0 = time.time()
        cfg = self._config
        gen = state.generation
        champion = state.champion
        logger.info("=== Generation %d (champion %s) ===", gen, champion.version_id)
        result = GenerationResult(generation=gen, champion_version=champion.version_id)

        report = state.champion_report
        if report is None or report.prompt_id != champion.version_id or not self._is_complete(report):
            report = await self._evaluate(
                champion.version_id, champion.composed, on_progress, should_continue,
            )
            if self._stopped(should_continue) or not self._is_complete(report):
                return self._abandon(result, t0)
            state.champion_report = report
        champion_obj = report.agg.objective
        if champion.objective is None:
            champion = champion.model_copy(update={"objective": champion_obj})
            state.champion = champion
        result.champion_objective = champion_obj

        pairs = mine_pairs(report, cfg)
        result.pairs_found = len(pairs)

        try:
            patches = await self._proposer.propose(
                champion.base, champion.patch, format_pairs_for_prompt(pairs),
                cfg.challengers_per_generation,
            )
        except Exception as e:
            logger.warning("Patch proposer failed in generation %d: %s", gen, e)
            result.error = "proposer failed: {}".format(str(e)[:200])
            result.duration_s = round(time.time() - t0, 2)
            return result

        patches = self._dedupe(patches, champion)
        references = [champion.patch] + [v.patch for v in champion.history] + list(state.seen_prompts)
        candidates: List[CandidateEval] = []
        reports: Dict[str, PromptDistReport] = {}
        for i, patch in enumerate(patches[:cfg.challengers_per_generation]):
            if self._stopped(should_continue):
                return self._abandon(result, t0)
            cand_id = "gen{}_c{}_{}".format(gen, i, content_hash(patch)[:6])
            text = compose_prompt(champion.base, patch)
            cand_report = await self._evaluate(cand_id, text, on_progress, should_continue)
            if self._stopped(should_continue) or not self._is_complete(cand_report):
                return self._abandon(result, t0)
            reports[cand_id] = cand_report
            candidates.append(CandidateEval(
                id=cand_id,
                patch=patch,
                prompt_text=text,
                objective=cand_report.agg.objective,
                pass_rate=cand_report.agg.mean_pass_rate,
                mean_score=cand_report.agg.mean_of_means,
                delta_vs_champion=cand_report.agg.objective - champion_obj,
                profile=build_profile(patch, cand_report, champion_obj, references, patches),
            ))

        state.seen_prompts.extend(c.patch for c in candidates)
        result.candidates = sorted(candidates, key=lambda c: c.objective, reverse=True)
        if result.candidates:
            result.best_id = result.candidates[0].id
            result.best_objective = result.candidates[0].objective

        improvers = [
            c for c in candidates
            if c.delta_vs_champion > 0 and c.delta_vs_champion >= cfg.promotion_margin - _MARGIN_EPS
        ]
        if improvers:
            selection = select_portfolio(improvers, cfg)
            result.illumination = selection.illumination
            portfolio = rank_portfolio(selection.front, cfg.portfolio_size)
            result.portfolio = [c.id for c in portfolio]
            if selection.winner is not None:
                winner = selection.winner
                state.champion = champion.promote(winner.patch, winner.objective)
                state.champion_report = reports[winner.id].model_copy(
                    update={"prompt_id": state.champion.version_id},
                )
                state.portfolio = portfolio
                result.promoted = True
                result.promoted_id = winner.id
                logger.info(
                    "Promoted %s: objective %.4f -> %.4f (%+.4f)%s",
                    winner.id, champion_obj, winner.objective, winner.delta_vs_champion,
                    " [ambiguous, portfolio kept]" if selection.ambiguous else "",
                )
        if not result.promoted:
            logger.info("No promotion in generation %d (best %s %.4f vs champion %.4f)",
                        gen, result.best_id or "-", result.best_objective, champion_obj)

        result.duration_s = round(time.time() - t0, 2)
        return result

    @staticmethod
    def _dedupe(patches: Sequence[str], champion: ChampionPrompt) -> List[str]:
        seen = {champion.patch.strip()}
        unique = []
        for p in patches:
            key = (p or "").strip()
            if not key or key in seen:
                continue
            seen.add(key)
            unique.append(key)
        return unique


def format_evolution_report(state: EvolutionState) -> str:
    """Format a human-readable evolution report."""
    lines = [
        "=" * 60,
        "Prompt Evolution Report: {}".format(state.session_id),
        "=" * 60,
        "Generations: {}  Runs: {}  Stop: {}".format(
            state.generation, state.runs_completed, state.stop_reason or "-",
        ),
        "Champion: {}  Objective: {}".format(
            state.champion.version_id,
            "{:.4f}".format(state.champion.objective) if state.champion.objective is not None else "-",
        ),
        "",
    ]
    for g in state.history:
        lines.append("--- Generation {} ---".format(g.generation))
        lines.append("Champion {} ({:.4f})  Pairs: {}".format(
            g.champion_version, g.champion_objective, g.pairs_found,
        ))
        if g.error:
            lines.append("Error: {}".format(g.error))
        for c in g.candidates[:3]:
            lines.append("  {} {:.4f} ({:+.4f}, pass {:.0%})".format(
                c.id, c.objective, c.delta_vs_champion, c.pass_rate,
            ))
        if g.promoted:
            lines.append("Promoted: {}".format(g.promoted_id))
        lines.append("")
    return "\n".join(lines)
