# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Abstract collaborator interfaces: generator, judge, patch proposer."""
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from promptagent.models import Epic, GeneratedOutput, JudgeVerdict

logger = logging.getLogger(__name__)

DEFAULT_JUDGE_PROMPT = (
    "You are a strict reviewer of agile user stories. Rate how well the "
    "stories decompose the epic: INVEST quality of each story (independent, "
    "negotiable, valuable, estimable, small, testable) and whether the "
    "acceptance criteria are concrete and testable (Given/When/Then).\n"
    "Reply with JSON only: {\"score\": <0..1>, \"rationale\": \"<one sentence>\"}"
)


class StoryGenerator(ABC):
    """Turns an Epic plus a candidate prompt into a GeneratedOutput."""

    @abstractmethod
    async def generate(
        self,
        epic: Epic,
        prompt: str,
        seed: Optional[int] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> GeneratedOutput:
        """Generate a StoryPack for ``epic``.

        Output that does not match the schema is reported as
        ``GeneratedOutput(story_pack=None, error=...)``, not raised.
        Transport errors may raise ``GenerationFailure``.
        """


class Judge(ABC):
    """Scores one generated output in [0, 1]."""

    judge_id: str = "judge"

    @abstractmethod
    async def judge(
        self,
        epic: Epic,
        output: GeneratedOutput,
        judge_prompt: str = DEFAULT_JUDGE_PROMPT,
    ) -> JudgeVerdict:
        """Return a verdict; raise ``JudgeFailure`` when no score is obtainable."""


class PatchProposer(ABC):
    """Produces candidate patch texts for the champion prompt."""

    @abstractmethod
    async def propose(
        self,
        base_prompt: str,
        current_patch: str,
        pairs_context: str,
        count: int,
    ) -> List[str]:
        """Return up to ``count`` new patch texts.

        ``pairs_context`` is the rendered contrastive-pair block
        (see ``format_pairs_for_prompt``).
        """
