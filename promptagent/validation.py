# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""StoryPack extraction and schema validation."""
import json
import re
from typing import Any, Optional, Tuple

from pydantic import ValidationError

from promptagent.models import StoryPack

_JSON_BLOCK_RE = re.compile(r'```(?:json)?\s*\n(.*?)```', re.DOTALL)


def extract_json_from_response(text: str) -> Optional[str]:
    """Extract JSON from a markdown code block, or the outermost {...} span."""
    match = _JSON_BLOCK_RE.search(text)
    if match:
        return match.group(1).strip()
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        return text[start:end + 1]
    return None


def validate_story_pack(raw: Any) -> Tuple[Optional[StoryPack], Optional[str]]:
    """Validate raw generator output against the StoryPack schema.

    Accepts a dict, a JSON string, or model text containing a JSON block.
    Returns (story_pack, None) on success, (None, error message) otherwise.
    Never raises.
    """
    data = raw
    if isinstance(raw, str):
        payload = extract_json_from_response(raw)
        if payload is None:
            return None, "no JSON object found in output"
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            return None, "JSON parse error: {}".format(e)

    if not isinstance(data, dict):
        return None, "expected a JSON object, got {}".format(type(data).__name__)

    try:
        return StoryPack.model_validate(data), None
    except ValidationError as e:
        errors = e.errors()
        first = errors[0] if errors else {}
        loc = ".".join(str(p) for p in first.get("loc", ()))
        return None, "schema validation failed ({} error(s)): {} {}".format(
            len(errors), loc, first.get("msg", ""),
        ).strip()
