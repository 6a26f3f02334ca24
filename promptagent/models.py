# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Pydantic models for generator input and output."""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Epic(BaseModel):
    """A high-level requirement to be decomposed into user stories."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    description: str
    business_value: Optional[str] = None
    success_metrics: List[str] = Field(default_factory=list)
    constraints: List[str] = Field(default_factory=list)
    non_functional: List[str] = Field(default_factory=list)
    out_of_scope: List[str] = Field(default_factory=list)
    personas: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)

    def as_text(self) -> str:
        """Plain-text rendering used for keyword coverage and judging."""
        parts = [self.title, self.description]
        if self.business_value:
            parts.append(self.business_value)
        parts.extend(self.constraints)
        parts.extend(self.non_functional)
        parts.extend(self.personas)
        return "\n".join(p for p in parts if p)


class UserStory(BaseModel):
    """One story of a StoryPack."""

    title: str = Field(..., min_length=1)
    as_a: str = Field(..., min_length=1, alias="asA")
    i_want: str = Field(..., min_length=1, alias="iWant")
    so_that: str = Field(..., min_length=1, alias="soThat")
    acceptance_criteria: List[str] = Field(..., min_length=2, alias="acceptanceCriteria")
    story_points: Optional[int] = Field(None, ge=0, le=21, alias="storyPoints")

    model_config = ConfigDict(populate_by_name=True)


class StoryPack(BaseModel):
    """Validated generator output for one Epic."""

    epic_id: str = Field(..., alias="epicId")
    epic_title: str = Field("", alias="epicTitle")
    user_stories: List[UserStory] = Field(..., min_length=1, alias="userStories")
    assumptions: List[str] = Field(default_factory=list)
    risks: List[str] = Field(default_factory=list)
    follow_ups: List[str] = Field(default_factory=list, alias="followUps")

    model_config = ConfigDict(populate_by_name=True)

    def compact_text(self) -> str:
        """Story titles, narratives and criteria, one per line."""
        parts: List[str] = []
        for story in self.user_stories:
            parts.extend([story.title, story.as_a, story.i_want, story.so_that])
            parts.extend(story.acceptance_criteria)
        return "\n".join(parts)


class GeneratedOutput(BaseModel):
    """Result of one generator call.

    ``story_pack`` is None when the raw text did not validate; ``error``
    then says why. Generators signal failure this way instead of raising.
    """

    story_pack: Optional[StoryPack] = None
    raw_text: str = ""
    error: Optional[str] = None
    seed: Optional[int] = None

    @property
    def is_valid(self) -> bool:
        return self.story_pack is not None and not self.error

    def compact_text(self) -> str:
        if self.story_pack is None:
            return ""
        return self.story_pack.compact_text()


class JudgeVerdict(BaseModel):
    """One judge's answer for one output."""

    judge_id: str = ""
    score: float = Field(..., ge=0.0, le=1.0)
    rationale: str = ""
