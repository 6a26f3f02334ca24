# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Error taxonomy for the evaluation and evolution engine.

Run-level failures (generation, judging) are normally captured as data and
never interrupt a batch. The exceptions below are raised where a caller
needs to see them: by collaborator adapters, or for contract violations.
"""


class PromptAgentError(Exception):
    """Base class for all promptagent errors."""


class SchemaInvalid(PromptAgentError):
    """Generated output does not match the StoryPack schema."""


class GenerationFailure(PromptAgentError):
    """The generator call failed or timed out."""


class JudgeFailure(PromptAgentError):
    """A judge call (or a whole judge panel) failed or timed out."""


class DimensionMismatch(PromptAgentError, ValueError):
    """Two vectors of unequal length were compared."""


class TaskNotFound(PromptAgentError, KeyError):
    """No task with the given id exists in the store."""

    def __str__(self) -> str:
        return "Task not found: {}".format(self.args[0] if self.args else "")


class InvalidTaskTransition(PromptAgentError):
    """A task status change that the lifecycle does not allow."""


class TaskAlreadyTerminal(InvalidTaskTransition):
    """Attempted to move a task out of completed/failed."""
