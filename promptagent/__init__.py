# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""promptagent — distributional evaluation and champion/challenger prompt evolution."""
from promptagent.config import ModelConfig
from promptagent.evolution import (
    ChampionPrompt, DistributionalEvaluator, EvolutionConfig, EvolutionEngine,
    JudgePanel, StoryScorer,
)
from promptagent.models import Epic, GeneratedOutput, StoryPack, UserStory
from promptagent.tasks import MemoryTaskStore, SQLiteTaskStore, TaskOrchestrator

__version__ = "0.1.0"
__all__ = [
    "ChampionPrompt", "DistributionalEvaluator", "Epic", "EvolutionConfig",
    "EvolutionEngine", "GeneratedOutput", "JudgePanel", "MemoryTaskStore",
    "ModelConfig", "SQLiteTaskStore", "StoryPack", "StoryScorer",
    "TaskOrchestrator", "UserStory", "__version__",
]
