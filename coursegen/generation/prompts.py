"""Prompt builders for the LLM-backed repair strategies.

Shape descriptions always come from ``schema.describe_shape`` (or
``describe_node`` for a sub-element), never from hand-written text.
"""

import json
from typing import Any, Iterable

from .schema import Issue

# Keep repair prompts focused; long outputs are truncated in the middle of the prompt only.
MAX_ECHOED_OUTPUT_CHARS = 6000


def _dump(value: Any) -> str:
    if isinstance(value, str):
        text = value
    else:
        text = json.dumps(value, indent=2, ensure_ascii=False, default=str)
    if len(text) > MAX_ECHOED_OUTPUT_CHARS:
        text = text[:MAX_ECHOED_OUTPUT_CHARS] + "\n... [truncated]"
    return text


def format_issues_for_prompt(issues: Iterable[Issue]) -> str:
    """Format validation issues as a numbered list for a fix prompt."""
    lines = []
    for index, issue in enumerate(issues, 1):
        where = issue.path or "(root)"
        lines.append(f"{index}. `{where}`: {issue.message}")
    return "\n".join(lines) or "(no specific issues reported)"


def build_critique_prompt(
    original_prompt: str,
    previous_output: Any,
    issues: Iterable[Issue],
    shape_description: str,
) -> str:
    return (
        "You previously answered the request below, but your output failed validation.\n\n"
        f"## Original request\n{original_prompt}\n\n"
        f"## Your previous output\n```json\n{_dump(previous_output)}\n```\n\n"
        f"## Validation issues\n{format_issues_for_prompt(issues)}\n\n"
        f"## Required output shape\n{shape_description}\n\n"
        "Fix ONLY the fields listed in the validation issues. Keep every other value exactly as it was.\n"
        "Output ONLY the corrected JSON. No markdown fences, no commentary."
    )


def build_element_prompt(
    original_prompt: str,
    element_path: str,
    element: Any,
    issues: Iterable[Issue],
    element_description: str,
) -> str:
    return (
        "One element of a larger JSON answer is invalid. Regenerate ONLY that element.\n\n"
        f"## Original request (for context)\n{original_prompt}\n\n"
        f"## Element location\n`{element_path or '(root)'}`\n\n"
        f"## Current element value\n```json\n{_dump(element)}\n```\n\n"
        f"## Validation issues for this element\n{format_issues_for_prompt(issues)}\n\n"
        f"## Required element shape\n{element_description}\n\n"
        "Output ONLY the JSON value of this single element. No markdown fences, no commentary."
    )


def build_escalation_prompt(original_prompt: str, shape_description: str) -> str:
    return (
        f"{original_prompt}\n\n"
        f"## Required output shape\n{shape_description}\n\n"
        "Output ONLY valid JSON matching the shape above. No markdown fences, no commentary."
    )
