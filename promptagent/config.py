# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Model endpoint configuration.

Built once (directly, from a dict, or from the environment) and passed into
the generator, judge and proposer adapters. Tuning constants for scoring,
evaluation and evolution live in ``EvolutionConfig``.
"""
import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:1234/v1"
DEFAULT_MODEL = "openai/gpt-oss-120b"


@dataclass
class ModelConfig:
    """Configuration for the generator / judge model endpoints.

    Any OpenAI-compatible server works (LM Studio, vLLM, OpenAI itself).
    """
    base_url: str = DEFAULT_BASE_URL
    api_key: str = "lm-studio"
    model: str = DEFAULT_MODEL
    judge_model: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 4096
    timeout_s: float = 60.0

    @classmethod
    def from_dict(cls, data: dict) -> "ModelConfig":
        return cls(
            base_url=data.get("base_url") or DEFAULT_BASE_URL,
            api_key=data.get("api_key", "lm-studio"),
            model=data.get("model") or DEFAULT_MODEL,
            judge_model=data.get("judge_model") or None,
            temperature=data.get("temperature", 0.7),
            max_tokens=data.get("max_tokens", 4096),
            timeout_s=data.get("timeout_s", 60.0),
        )

    @classmethod
    def from_env(cls) -> "ModelConfig":
        """Create config from PROMPTAGENT_* environment variables."""
        return cls(
            base_url=os.getenv("PROMPTAGENT_BASE_URL") or DEFAULT_BASE_URL,
            api_key=os.getenv("PROMPTAGENT_API_KEY", "lm-studio"),
            model=os.getenv("PROMPTAGENT_MODEL") or DEFAULT_MODEL,
            judge_model=os.getenv("PROMPTAGENT_JUDGE_MODEL") or None,
            temperature=float(os.getenv("PROMPTAGENT_TEMPERATURE", "0.7")),
            max_tokens=int(os.getenv("PROMPTAGENT_MAX_TOKENS", "4096")),
            timeout_s=float(os.getenv("PROMPTAGENT_TIMEOUT_S", "60")),
        )

    def __post_init__(self):
        """Clamp values into the ranges the endpoints accept."""
        if self.temperature < 0.0:
            logger.warning("temperature %s < 0, clamping to 0.0", self.temperature)
            self.temperature = 0.0
        elif self.temperature > 2.0:
            logger.warning("temperature %s > 2.0, clamping to 2.0", self.temperature)
            self.temperature = 2.0

        if self.max_tokens < 100:
            logger.warning("max_tokens %s < 100, setting to 100", self.max_tokens)
            self.max_tokens = 100
        elif self.max_tokens > 16384:
            logger.warning("max_tokens %s > 16384, clamping to 16384", self.max_tokens)
            self.max_tokens = 16384

        if self.timeout_s <= 0:
            logger.warning("timeout_s %s <= 0, using 60s", self.timeout_s)
            self.timeout_s = 60.0

    @property
    def resolved_judge_model(self) -> str:
        """Judge model, defaulting to the generator model."""
        return self.judge_model or self.model
