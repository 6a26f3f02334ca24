# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Evaluation and evolution engine.

    scorer      one output -> composite score
    evaluator   prompt x epics x replicates -> PromptDistReport
    pairs       report -> contrastive pairs
    engine      champion/challenger generations
"""
from promptagent.evolution.engine import EvolutionEngine, format_evolution_report
from promptagent.evolution.evaluator import (
    DistributionalEvaluator, format_dist_report, load_config, load_epics,
)
from promptagent.evolution.models import (
    CandidateEval, ChampionPrompt, ContrastPair, DistRun, EpicDistResult,
    EvolutionConfig, EvolutionState, GateDecision, GenerationResult,
    PromptDistReport, ScorerResult, compose_prompt,
)
from promptagent.evolution.pairs import format_pairs_for_prompt, mine_pairs
from promptagent.evolution.panel import JudgePanel
from promptagent.evolution.scorer import StoryScorer

__all__ = [
    "CandidateEval", "ChampionPrompt", "ContrastPair", "DistRun",
    "DistributionalEvaluator", "EpicDistResult", "EvolutionConfig",
    "EvolutionEngine", "EvolutionState", "GateDecision", "GenerationResult",
    "JudgePanel", "PromptDistReport", "ScorerResult", "StoryScorer",
    "compose_prompt", "format_dist_report", "format_evolution_report",
    "format_pairs_for_prompt", "load_config", "load_epics", "mine_pairs",
]
