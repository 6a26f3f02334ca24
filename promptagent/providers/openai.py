# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""OpenAI and OpenAI-compatible generator, judge and patch proposer."""
import json
import logging
import re
from typing import Any, Dict, List, Optional

from promptagent.config import ModelConfig
from promptagent.errors import GenerationFailure, JudgeFailure
from promptagent.models import Epic, GeneratedOutput, JudgeVerdict
from promptagent.providers.base import (
    DEFAULT_JUDGE_PROMPT, Judge, PatchProposer, StoryGenerator,
)
from promptagent.validation import extract_json_from_response, validate_story_pack

logger = logging.getLogger(__name__)

_SCORE_RE = re.compile(r'"?score"?\s*[:=]\s*([0-9]*\.?[0-9]+)', re.IGNORECASE)

PATCH_ENGINEER_PROMPT = (
    "You improve a system prompt that turns epics into user stories. "
    "You never rewrite the base prompt; you write a short PATCH of extra "
    "rules appended after it. Study the contrastive pairs: each shows a "
    "GOOD and a BAD output for the same epic. Write rules that make the "
    "good behaviour more likely.\n"
    "Reply with JSON only: {\"patches\": [\"<patch 1>\", \"<patch 2>\", ...]}"
)


class _OpenAIClient:
    """Shared lazy AsyncOpenAI client and single-turn completion call."""

    def __init__(self, config: ModelConfig, model: Optional[str] = None) -> None:
        self._config = config
        self._model = model or config.model
        self._client = None

    def _make_client(self):
        if self._client is None:
            import openai
            kwargs = {"api_key": self._config.api_key, "timeout": self._config.timeout_s}
            if self._config.base_url:
                kwargs["base_url"] = self._config.base_url
            self._client = openai.AsyncOpenAI(**kwargs)
        return self._client

    async def _complete(
        self,
        system_prompt: str,
        user_content: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        seed: Optional[int] = None,
    ) -> str:
        client = self._make_client()
        create_kwargs: Dict[str, Any] = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_content},
            ],
            "max_tokens": max_tokens or self._config.max_tokens,
            "temperature": self._config.temperature if temperature is None else temperature,
        }
        if seed is not None:
            create_kwargs["seed"] = seed
        response = await client.chat.completions.create(**create_kwargs)
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""


def _epic_payload(epic: Epic) -> str:
    return json.dumps(epic.model_dump(exclude_none=True), ensure_ascii=False, indent=2)


class OpenAIStoryGenerator(_OpenAIClient, StoryGenerator):
    """Generator backed by a chat-completions endpoint."""

    async def generate(
        self,
        epic: Epic,
        prompt: str,
        seed: Optional[int] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> GeneratedOutput:
        try:
            raw = await self._complete(
                prompt, _epic_payload(epic),
                temperature=temperature, max_tokens=max_tokens, seed=seed,
            )
        except Exception as e:
            raise GenerationFailure("generator call failed: {}".format(e)) from e

        pack, error = validate_story_pack(raw)
        if error:
            logger.debug("Epic %s seed %s: invalid output: %s", epic.id, seed, error)
        return GeneratedOutput(story_pack=pack, raw_text=raw, error=error, seed=seed)


class OpenAIJudge(_OpenAIClient, Judge):
    """LLM-as-judge returning a single score in [0, 1]."""

    def __init__(
        self,
        config: ModelConfig,
        temperature: float = 0.5,
        judge_id: Optional[str] = None,
    ) -> None:
        super().__init__(config, model=config.resolved_judge_model)
        self._temperature = temperature
        self.judge_id = judge_id or "judge@{}".format(temperature)

    async def judge(
        self,
        epic: Epic,
        output: GeneratedOutput,
        judge_prompt: str = DEFAULT_JUDGE_PROMPT,
    ) -> JudgeVerdict:
        user_content = "EPIC:\n{}\n\nSTORIES:\n{}".format(
            _epic_payload(epic),
            output.story_pack.model_dump_json(by_alias=True, indent=2)
            if output.story_pack else output.raw_text,
        )
        try:
            raw = await self._complete(
                judge_prompt, user_content, temperature=self._temperature, max_tokens=512,
            )
        except Exception as e:
            raise JudgeFailure("{}: call failed: {}".format(self.judge_id, e)) from e
        return self._parse_verdict(raw)

    def _parse_verdict(self, raw: str) -> JudgeVerdict:
        score = None
        rationale = ""
        payload = extract_json_from_response(raw)
        if payload:
            try:
                data = json.loads(payload)
                score = float(data.get("score"))
                rationale = str(data.get("rationale", ""))
            except (ValueError, TypeError, AttributeError):
                score = None
        if score is None:
            match = _SCORE_RE.search(raw)
            if match:
                score = float(match.group(1))
        if score is None:
            raise JudgeFailure("{}: no score in response".format(self.judge_id))
        # Some models answer on a 0-10 scale
        if 1.0 < score <= 10.0:
            score = score / 10.0
        if not 0.0 <= score <= 1.0:
            raise JudgeFailure("{}: score out of range: {}".format(self.judge_id, score))
        return JudgeVerdict(judge_id=self.judge_id, score=score, rationale=rationale[:500])


class OpenAIPatchProposer(_OpenAIClient, PatchProposer):
    """Asks the model for new patch texts given contrastive pairs."""

    def __init__(self, config: ModelConfig, temperature: float = 0.6) -> None:
        super().__init__(config)
        self._temperature = temperature

    async def propose(
        self,
        base_prompt: str,
        current_patch: str,
        pairs_context: str,
        count: int,
    ) -> List[str]:
        user_content = (
            "BASE PROMPT:\n{}\n\nCURRENT PATCH:\n{}\n\nCONTRASTIVE PAIRS:\n{}\n\n"
            "Write {} alternative patches."
        ).format(base_prompt, current_patch or "(empty)", pairs_context or "(none)", count)
        try:
            raw = await self._complete(
                PATCH_ENGINEER_PROMPT, user_content, temperature=self._temperature,
            )
        except Exception as e:
            raise GenerationFailure("patch proposer call failed: {}".format(e)) from e

        patches: List[str] = []
        payload = extract_json_from_response(raw)
        if payload:
            try:
                data = json.loads(payload)
                patches = [str(p).strip() for p in data.get("patches", []) if str(p).strip()]
            except (ValueError, AttributeError):
                patches = []
        if not patches and raw.strip():
            patches = [p.strip() for p in raw.split("\n---\n") if p.strip()]
        return patches[:count]
