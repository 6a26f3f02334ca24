# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
from typing import List, Sequence

from promptagent.config import ModelConfig
from promptagent.providers.base import (
    DEFAULT_JUDGE_PROMPT, Judge, PatchProposer, StoryGenerator,
)

__all__ = [
    "DEFAULT_JUDGE_PROMPT", "DEFAULT_JUDGE_TEMPERATURES", "Judge", "PatchProposer",
    "StoryGenerator", "create_generator", "create_judge_panel", "create_proposer",
]

# Panel of independently configured judges; disagreement between them is
# what the congruence tiers measure.
DEFAULT_JUDGE_TEMPERATURES = (0.3, 0.5, 0.7)


def create_generator(config: ModelConfig) -> StoryGenerator:
    from promptagent.providers.openai import OpenAIStoryGenerator
    return OpenAIStoryGenerator(config)


def create_judge_panel(
    config: ModelConfig,
    temperatures: Sequence[float] = DEFAULT_JUDGE_TEMPERATURES,
) -> List[Judge]:
    """One judge per temperature, all on the configured judge model."""
    from promptagent.providers.openai import OpenAIJudge
    return [OpenAIJudge(config, temperature=t) for t in temperatures]


def create_proposer(config: ModelConfig) -> PatchProposer:
    from promptagent.providers.openai import OpenAIPatchProposer
    return OpenAIPatchProposer(config)
