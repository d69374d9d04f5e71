"""Repair strategies, ordered cheapest first.

Each strategy takes the latest failed attempt and either produces an
artifact that passes the validator (``Accepted``) or explains why it could
not (``Rejected``). ``Rejected.skip`` tells the engine that retrying the
same strategy is pointless and it should move to the next one.

The chain, in rank order:

    syntax-repair         fix JSON syntax and field names, no generator call
    critique-and-revise   show the generator its output and the issues
    partial-regeneration  regenerate only the invalid elements
    model-escalation      regenerate from scratch with a stronger model
    emergency-fallback    schema-valid placeholder, flagged degraded
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence, Union

from .generator import GenerateOptions, Generator
from .prompts import build_critique_prompt, build_element_prompt, build_escalation_prompt
from .repair import (
    isolate_elements,
    join_path,
    get_at,
    node_at,
    normalize_field_names,
    parse_lenient,
    set_at,
    split_path,
    synthesize_placeholder,
)
from .schema import Issue, SchemaLike, describe_node, describe_shape, json_schema, unwrap_schema, validate

logger = logging.getLogger(__name__)


@dataclass
class GenerationAttempt:
    """State handed to a strategy: the latest output and why it failed."""

    schema: SchemaLike
    original_prompt: str
    raw: Any
    issues: tuple[Issue, ...]
    # Running attempt counter across the whole regeneration run
    number: int = 1
    # 1-based attempt index within the current strategy
    strategy_attempt: int = 1
    # Best parsed value so far, if any output could be parsed
    candidate: Any = None


@dataclass(frozen=True)
class Accepted:
    artifact: Any
    strategy_name: str
    degraded: bool = False
    models_used: tuple[str, ...] = ()


@dataclass(frozen=True)
class Rejected:
    reason: str
    strategy_name: str
    issues: tuple[Issue, ...] = ()
    candidate: Any = None
    skip: bool = False
    models_used: tuple[str, ...] = field(default=())


RepairOutcome = Union[Accepted, Rejected]


class RepairStrategy:
    """Base class. Subclasses set ``name`` and implement ``attempt``."""

    name = ""
    requires_generator = False

    def __init__(self, generator: Optional[Generator] = None) -> None:
        self.generator = generator

    def attempt(self, attempt: GenerationAttempt) -> RepairOutcome:
        raise NotImplementedError

    def _judge(self, schema: SchemaLike, value: Any, models_used: tuple[str, ...] = ()) -> RepairOutcome:
        result = validate(schema, value)
        if result.ok:
            return Accepted(result.value, self.name, models_used=models_used)
        return Rejected(
            f"{len(result.issues)} issue(s) remain",
            self.name,
            issues=result.issues,
            candidate=value,
            models_used=models_used,
        )

    def _parse_generated(self, text: str, schema: SchemaLike) -> Any:
        """Parse generator output and fix field names. Raises ValueError."""
        value, _ = parse_lenient(text)
        root = json_schema(schema)
        value, _ = normalize_field_names(value, root, root)
        return value

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class SyntaxRepairStrategy(RepairStrategy):
    """Deterministic fix-up: JSON syntax via json_repair, then field names."""

    name = "syntax-repair"

    def attempt(self, attempt: GenerationAttempt) -> RepairOutcome:
        source = attempt.raw if attempt.candidate is None else attempt.candidate
        try:
            value, syntax_fixed = parse_lenient(source)
        except ValueError as e:
            return Rejected(str(e), self.name, skip=True)

        root = json_schema(attempt.schema)
        value, renamed = normalize_field_names(value, root, root)

        if not syntax_fixed and not renamed:
            return Rejected(
                "No syntax or field-name problems to repair",
                self.name,
                issues=attempt.issues,
                candidate=value,
                skip=True,
            )

        logger.debug("Syntax repair: syntax_fixed=%s renamed=%s", syntax_fixed, renamed)
        outcome = self._judge(attempt.schema, value)
        if isinstance(outcome, Rejected):
            # Running the same deterministic repair twice gives the same result.
            return Rejected(outcome.reason, self.name, outcome.issues, outcome.candidate, skip=True)
        return outcome


class CritiqueAndReviseStrategy(RepairStrategy):
    """Ask the generator to fix the listed issues in its own output."""

    name = "critique-and-revise"
    requires_generator = True

    def attempt(self, attempt: GenerationAttempt) -> RepairOutcome:
        previous = attempt.raw if attempt.candidate is None else attempt.candidate
        prompt = build_critique_prompt(
            attempt.original_prompt,
            previous,
            attempt.issues,
            describe_shape(attempt.schema),
        )
        text = self.generator.generate(prompt)
        try:
            value = self._parse_generated(text, attempt.schema)
        except ValueError as e:
            return Rejected(f"Revision was not JSON: {e}", self.name, issues=attempt.issues)
        return self._judge(attempt.schema, value)


class PartialRegenerationStrategy(RepairStrategy):
    """Regenerate only the smallest invalid elements and splice them back."""

    name = "partial-regeneration"
    requires_generator = True

    def attempt(self, attempt: GenerationAttempt) -> RepairOutcome:
        value = attempt.candidate
        if value is None:
            try:
                value, _ = parse_lenient(attempt.raw)
            except ValueError:
                return Rejected("Nothing parsed to regenerate parts of", self.name, skip=True)
        if not isinstance(value, (dict, list)):
            return Rejected("Output has no elements to regenerate", self.name, skip=True)

        value, issues = _to_canonical(attempt.schema, value, attempt.issues)
        elements = isolate_elements(issues)
        if not elements:
            return Rejected(
                "Issues are not confined to individual elements",
                self.name,
                issues=attempt.issues,
                skip=True,
            )

        root = json_schema(attempt.schema)
        for path, element_issues in elements.items():
            element_node = node_at(root, path)
            prompt = build_element_prompt(
                attempt.original_prompt,
                join_path(path),
                get_at(value, path),
                element_issues,
                describe_node(element_node, root),
            )
            text = self.generator.generate(prompt)
            try:
                element = _parse_element(text, element_node, root)
                value = set_at(value, path, element)
            except (ValueError, KeyError) as e:
                return Rejected(
                    f"Could not splice element {join_path(path)}: {e}",
                    self.name,
                    issues=attempt.issues,
                    candidate=value,
                )

        logger.debug("Partial regeneration replaced %d element(s)", len(elements))
        return self._judge(attempt.schema, value)


class ModelEscalationStrategy(RepairStrategy):
    """Regenerate from the original prompt with the next, stronger model."""

    name = "model-escalation"
    requires_generator = True

    def __init__(self, generator: Optional[Generator] = None, models: Sequence[str] = ()) -> None:
        super().__init__(generator)
        self.models = tuple(models)

    def attempt(self, attempt: GenerationAttempt) -> RepairOutcome:
        if not self.models:
            return Rejected("No escalation models configured", self.name, skip=True)
        if attempt.strategy_attempt > len(self.models):
            return Rejected("Escalation chain exhausted", self.name, skip=True)

        model = self.models[attempt.strategy_attempt - 1]
        prompt = build_escalation_prompt(attempt.original_prompt, describe_shape(attempt.schema))
        logger.info("Escalating to model %s", model)
        text = self.generator.generate(prompt, GenerateOptions(model=model))
        try:
            value = self._parse_generated(text, attempt.schema)
        except ValueError as e:
            return Rejected(
                f"{model} output was not JSON: {e}",
                self.name,
                issues=attempt.issues,
                models_used=(model,),
            )
        return self._judge(attempt.schema, value, models_used=(model,))


class EmergencyFallbackStrategy(RepairStrategy):
    """Last resort: a schema-valid placeholder, always flagged degraded."""

    name = "emergency-fallback"

    def attempt(self, attempt: GenerationAttempt) -> RepairOutcome:
        base, _ = unwrap_schema(attempt.schema)
        if base.placeholder is not None:
            placeholder = base.placeholder()
        else:
            placeholder = synthesize_placeholder(base.json_schema())

        result = validate(attempt.schema, placeholder)
        if not result.ok:
            return Rejected(
                "Placeholder does not satisfy the schema",
                self.name,
                issues=result.issues,
                skip=True,
            )
        logger.warning("Using degraded placeholder for %s", base.name)
        return Accepted(result.value, self.name, degraded=True)


STRATEGY_CLASSES = {
    cls.name: cls
    for cls in (
        SyntaxRepairStrategy,
        CritiqueAndReviseStrategy,
        PartialRegenerationStrategy,
        ModelEscalationStrategy,
        EmergencyFallbackStrategy,
    )
}


def default_strategies(
    generator: Optional[Generator] = None,
    escalation_models: Sequence[str] = (),
) -> list[RepairStrategy]:
    """One instance of every strategy, in rank order."""
    strategies: list[RepairStrategy] = []
    for cls in STRATEGY_CLASSES.values():
        if cls is ModelEscalationStrategy:
            strategies.append(cls(generator, models=escalation_models))
        else:
            strategies.append(cls(generator))
    return strategies


def _to_canonical(schema: SchemaLike, value: Any, issues: Sequence[Issue]) -> tuple[Any, tuple[Issue, ...]]:
    """Unwrap an accepted envelope so element paths line up with the canonical shape."""
    base, _ = unwrap_schema(schema)
    for variant in base.variants:
        if not variant.prefix:
            continue
        try:
            matches = variant.match(value)
        except (KeyError, TypeError):
            continue
        if not matches:
            continue
        prefix = split_path(variant.prefix)
        if not all(split_path(i.path)[: len(prefix)] == prefix for i in issues):
            continue
        stripped = tuple(
            Issue(join_path(split_path(i.path)[len(prefix):]), i.message) for i in issues
        )
        return variant.unwrap(value), stripped
    return value, tuple(issues)


def _parse_element(text: str, node: dict, root: dict) -> Any:
    """Parse one regenerated element; plain text is accepted for string elements."""
    if node.get("type") == "string":
        try:
            value = json.loads(text)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, str):
            return value
        return text.strip().strip('"').strip()

    value, _ = parse_lenient(text)
    value, _ = normalize_field_names(value, node, root)
    return value
