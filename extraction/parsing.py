"""Helpers for pulling JSON out of raw model answers (code fences, stray prose, small syntax slips)."""

import json
import re
from typing import Any

import json_repair


def _strip_fences(raw: str) -> str:
    raw = (raw or "").strip()
    raw = re.sub(r"^```(?:json)?\s*", "", raw, flags=re.MULTILINE)
    raw = re.sub(r"\s*```$", "", raw, flags=re.MULTILINE)
    return raw


def extract_json_obj(raw: str) -> dict:
    """Extract + repair the outermost JSON object from a model response."""
    raw = _strip_fences(raw)
    start = raw.find("{")
    end = raw.rfind("}") + 1
    if start == -1 or end == 0:
        raise ValueError(f"No JSON object found in model response: {raw[:200]}")
    obj = json_repair.loads(raw[start:end])
    if not isinstance(obj, dict):
        raise ValueError(f"Model response is not a JSON object: {raw[:200]}")
    return obj


def extract_json_payload(raw: str) -> Any:
    """
    Extract a JSON array or object, whichever the response starts with.
    Arrays are preferred when both brackets appear.
    """
    raw = _strip_fences(raw)
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        pass
    start = raw.find("[")
    end = raw.rfind("]") + 1
    if start != -1 and end > start:
        payload = json_repair.loads(raw[start:end])
        if isinstance(payload, list):
            return payload
    return extract_json_obj(raw)
