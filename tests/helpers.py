# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""In-process doubles for the generator, judge, scorer and patch proposer."""
import asyncio
from typing import Callable, Dict, List, Optional, Sequence

from promptagent.errors import GenerationFailure, JudgeFailure
from promptagent.evolution.models import GateDecision, ScorerResult
from promptagent.models import Epic, GeneratedOutput, JudgeVerdict, StoryPack
from promptagent.providers.base import Judge, PatchProposer, StoryGenerator

EPIC = Epic(
    id="E1",
    title="Customer checkout",
    description="Customers pay for their basket with a saved card and receive a receipt by email.",
    constraints=["PCI compliance"],
    personas=["shopper"],
)

STORY_TOPICS = [
    ("Pay with saved card", "pay with a saved card", "checkout is quick"),
    ("Email receipt", "receive a receipt by email", "I have proof of purchase"),
    ("Review basket", "review my basket before paying", "I avoid mistakes"),
    ("Handle declined card", "see why a card was declined", "I can try another card"),
    ("Store card securely", "store my card under PCI rules", "my data stays safe"),
    ("Apply voucher", "apply a voucher code", "I pay less"),
    ("Choose delivery", "choose a delivery slot", "I am home for delivery"),
    ("Track order", "track my order status", "I know when it arrives"),
    ("Cancel order", "cancel an unpaid order", "I can change my mind"),
    ("Split payment", "split payment over two cards", "I can use both balances"),
]


def make_pack_dict(n: int = 5, epic_id: str = "E1", gwt: bool = True, offset: int = 0) -> dict:
    stories = []
    for i in range(n):
        title, want, so_that = STORY_TOPICS[(i + offset) % len(STORY_TOPICS)]
        if gwt:
            criteria = [
                "Given a shopper with a basket When they {} Then the system confirms it".format(want),
                "Given an error When they {} Then a clear message is shown".format(want),
            ]
        else:
            criteria = ["It works", "It is fast"]
        stories.append({
            "title": title,
            "asA": "shopper",
            "iWant": "to {}".format(want),
            "soThat": so_that,
            "acceptanceCriteria": criteria,
            "storyPoints": 3,
        })
    return {"epicId": epic_id, "epicTitle": "Customer checkout", "userStories": stories}


def make_output(n: int = 5, gwt: bool = True, seed: Optional[int] = None, offset: int = 0) -> GeneratedOutput:
    data = make_pack_dict(n, gwt=gwt, offset=offset)
    return GeneratedOutput(story_pack=StoryPack.model_validate(data), raw_text=str(data), seed=seed)


class FakeGenerator(StoryGenerator):
    """Returns a fixed valid pack; seeds listed in ``fail_seeds`` raise."""

    def __init__(self, fail_seeds: Sequence[int] = (), delay: float = 0.0, invalid_seeds: Sequence[int] = ()):
        self.fail_seeds = set(fail_seeds)
        self.invalid_seeds = set(invalid_seeds)
        self.delay = delay
        self.calls: List[tuple] = []

    async def generate(self, epic, prompt, seed=None, temperature=None, max_tokens=None):
        self.calls.append((epic.id, prompt, seed))
        if self.delay:
            await asyncio.sleep(self.delay)
        if seed in self.fail_seeds:
            raise GenerationFailure("backend unavailable")
        if seed in self.invalid_seeds:
            return GeneratedOutput(raw_text="not json", error="no JSON object found in output", seed=seed)
        out = make_output(5, seed=seed)
        # raw_text carries the prompt so prompt-aware scorers can see it
        return out.model_copy(update={"raw_text": prompt})


class SeedScorer:
    """Scores each run from a seed -> score table."""

    def __init__(self, scores: Dict[int, float]):
        self.scores = scores

    async def score(self, epic, output):
        value = self.scores.get(output.seed, 0.0)
        return ScorerResult(score=value, reason="seed {}".format(output.seed),
                            sub_scores={"coverage": value}, gate_decision=GateDecision.ABSTAIN)


class MarkerScorer:
    """Scores runs by which marker appears in the prompt echoed in raw_text."""

    def __init__(self, markers: Dict[str, float], default: float = 0.5):
        self.markers = markers
        self.default = default

    async def score(self, epic, output):
        value = self.default
        for marker, s in self.markers.items():
            if marker in output.raw_text:
                value = s
        return ScorerResult(score=value, reason="marker", gate_decision=GateDecision.ABSTAIN)


class FakeJudge(Judge):
    def __init__(self, score: Optional[float] = 0.8, judge_id: str = "j", error: bool = False, delay: float = 0.0):
        self._score = score
        self.judge_id = judge_id
        self._error = error
        self._delay = delay

    async def judge(self, epic, output, judge_prompt=""):
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error:
            raise JudgeFailure("{} unavailable".format(self.judge_id))
        return JudgeVerdict(judge_id=self.judge_id, score=self._score, rationale="ok")


class FakeProposer(PatchProposer):
    """Returns batches in order; an Exception in the list is raised."""

    def __init__(self, batches: List, repeat_last: bool = True):
        self.batches = list(batches)
        self.repeat_last = repeat_last
        self.calls: List[dict] = []

    async def propose(self, base_prompt, current_patch, pairs_context, count):
        self.calls.append({"base": base_prompt, "patch": current_patch, "pairs": pairs_context, "count": count})
        if not self.batches:
            return []
        batch = self.batches.pop(0) if (len(self.batches) > 1 or not self.repeat_last) else self.batches[0]
        if isinstance(batch, Exception):
            raise batch
        return list(batch)[:count]
