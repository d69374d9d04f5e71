"""Artifact schemas, the validator gate, and shape descriptions.

A schema is the single source of truth for an artifact's shape. The same
object drives three things:

- ``validate()``: the acceptance gate every LLM-produced artifact passes
  before a stage may claim completion;
- ``describe_shape()``: the human-readable shape shown to the generator in
  repair prompts, so the prompt can never drift from what is validated;
- ``json_schema()``: the structure the repair helpers walk (field names,
  element isolation, placeholder synthesis).

Field-level rules (required/optional, types, length bounds, ranges, enums,
nesting) come from pydantic. Cross-field rules are ``Refinement``s attached
with ``Refined``; they only run once the inner shape is valid, so wrapping
a schema never hides field-level issues.

Usage:
    outcomes = ArtifactSchema(
        Annotated[list[str], Field(min_length=1)],
        name="learning_outcomes",
        variants=[wrapped_in("outcomes"), single_element()],
    )
    result = validate(outcomes, {"outcomes": ["Explain X"]})
    result.ok, result.value  # True, ["Explain X"]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Sequence, Union

from pydantic import TypeAdapter, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Issue:
    """One validation problem. ``path`` is dotted (``outcomes.0``); root is ``""``."""

    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}" if self.path else self.message

    def to_dict(self) -> dict:
        return {"path": self.path, "message": self.message}


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    value: Any = None
    issues: tuple[Issue, ...] = ()
    # "canonical" or the name of the accepted variant that matched
    shape: Optional[str] = None


@dataclass(frozen=True)
class Refinement:
    """A cross-field rule over the validated (plain JSON) value.

    ``check`` returns True when the rule holds.
    """

    check: Callable[[Any], bool]
    message: str
    path: str = ""


@dataclass(frozen=True)
class ShapeVariant:
    """An alternative top-level shape that is accepted and unwrapped.

    ``match`` decides whether the value has this variant's envelope,
    ``unwrap`` converts it to the canonical shape, ``prefix`` is put in
    front of issue paths so they point into the original value.
    """

    name: str
    match: Callable[[Any], bool]
    unwrap: Callable[[Any], Any]
    prefix: str = ""


def wrapped_in(key: str) -> ShapeVariant:
    """Object wrapping the canonical value under *key*: ``{"outcomes": [...]}``."""
    return ShapeVariant(
        name=f"wrapped:{key}",
        match=lambda v: isinstance(v, dict) and key in v,
        unwrap=lambda v: v[key],
        prefix=key,
    )


def single_element() -> ShapeVariant:
    """A lone element where the canonical shape is a list of them."""
    return ShapeVariant(
        name="single-element",
        match=lambda v: v is not None and not isinstance(v, list),
        unwrap=lambda v: [v],
    )


class ArtifactSchema:
    """Declarative shape of one artifact kind.

    Args:
        shape: Anything pydantic can build a TypeAdapter for.
        name: Label used in logs, prompts and traces.
        variants: Accepted non-canonical top-level shapes, tried in order
            after the canonical one.
        placeholder: Optional factory for the emergency fallback, returning
            a minimal valid value. Without it one is synthesized from the
            JSON schema.
    """

    def __init__(
        self,
        shape: Any,
        *,
        name: Optional[str] = None,
        variants: Sequence[ShapeVariant] = (),
        placeholder: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.shape = shape
        self.name = name or getattr(shape, "__name__", None) or repr(shape)
        self.variants = tuple(variants)
        self.placeholder = placeholder
        self._adapter = TypeAdapter(shape)
        self._json_schema: Optional[dict] = None

    def check(self, value: Any) -> tuple[Any, list[Issue]]:
        """Validate against the canonical shape only.

        Returns the plain-JSON value and an empty list, or None and the issues.
        """
        try:
            parsed = self._adapter.validate_python(value)
        except ValidationError as e:
            return None, [
                Issue(path=_format_loc(err.get("loc", ())), message=err.get("msg", "invalid"))
                for err in e.errors(include_url=False)
            ]
        return self._adapter.dump_python(parsed, mode="json"), []

    def json_schema(self) -> dict:
        if self._json_schema is None:
            self._json_schema = self._adapter.json_schema()
        return self._json_schema

    def __repr__(self) -> str:
        return f"ArtifactSchema({self.name})"


class Refined:
    """A schema with cross-field refinements attached (a "wrapped" schema).

    Can wrap an ``ArtifactSchema`` or another ``Refined``.
    """

    def __init__(self, inner: "SchemaLike", *refinements: Refinement) -> None:
        self.inner = inner
        self.refinements = tuple(refinements)

    @property
    def name(self) -> str:
        return unwrap_schema(self)[0].name

    @property
    def placeholder(self) -> Optional[Callable[[], Any]]:
        return unwrap_schema(self)[0].placeholder

    def __repr__(self) -> str:
        return f"Refined({self.inner!r}, {len(self.refinements)} refinement(s))"


SchemaLike = Union[ArtifactSchema, Refined]


def unwrap_schema(schema: SchemaLike) -> tuple[ArtifactSchema, list[Refinement]]:
    """Strip every ``Refined`` layer; returns the base schema and all refinements, outermost last."""
    refinements: list[Refinement] = []
    layers: list[Refined] = []
    while isinstance(schema, Refined):
        layers.append(schema)
        schema = schema.inner
    for layer in reversed(layers):
        refinements.extend(layer.refinements)
    if not isinstance(schema, ArtifactSchema):
        raise TypeError(f"Not an artifact schema: {schema!r}")
    return schema, refinements


def _format_loc(loc: Iterable[Any]) -> str:
    return ".".join(str(part) for part in loc)


def _prefixed(issues: Iterable[Issue], prefix: str) -> list[Issue]:
    if not prefix:
        return list(issues)
    return [Issue(f"{prefix}.{i.path}" if i.path else prefix, i.message) for i in issues]


def _run_refinements(value: Any, refinements: Sequence[Refinement]) -> list[Issue]:
    issues: list[Issue] = []
    for refinement in refinements:
        try:
            holds = bool(refinement.check(value))
        except (KeyError, IndexError, TypeError, ValueError, ZeroDivisionError) as e:
            holds = False
            logger.debug("Refinement %r raised %s", refinement.message, e)
        if not holds:
            issues.append(Issue(refinement.path, refinement.message))
    return issues


def validate(schema: SchemaLike, value: Any) -> ValidationResult:
    """Validate *value* against *schema*, accepting its declared variants.

    The canonical shape is tried first, then each variant whose envelope
    matches. Refinements run against whichever shape validated. On failure
    the issues of the first matching variant are reported (they point
    inside the envelope the generator actually produced), falling back to
    the canonical shape's issues.
    """
    base, refinements = unwrap_schema(schema)

    candidates: list[tuple[str, Any, str]] = [("canonical", value, "")]
    for variant in base.variants:
        try:
            if variant.match(value):
                candidates.append((variant.name, variant.unwrap(value), variant.prefix))
        except (KeyError, TypeError):
            continue

    canonical_issues: list[Issue] = []
    variant_issues: Optional[list[Issue]] = None
    for shape_name, candidate, prefix in candidates:
        parsed, issues = base.check(candidate)
        if not issues:
            issues = _run_refinements(parsed, refinements)
            if not issues:
                return ValidationResult(ok=True, value=parsed, shape=shape_name)
        issues = _prefixed(issues, prefix)
        if shape_name == "canonical":
            canonical_issues = issues
        elif variant_issues is None:
            variant_issues = issues

    reported = variant_issues if variant_issues is not None else canonical_issues
    return ValidationResult(ok=False, issues=tuple(reported))


def json_schema(schema: SchemaLike) -> dict:
    """JSON schema of the underlying shape (refinement wrappers removed)."""
    return unwrap_schema(schema)[0].json_schema()


# ---------------------------------------------------------------------------
# Shape description for generator prompts
# ---------------------------------------------------------------------------

def resolve_ref(node: dict, root: dict) -> dict:
    """Follow local ``$ref`` pointers (``#/$defs/Name``) until a concrete node."""
    seen = set()
    while isinstance(node, dict) and "$ref" in node:
        ref = node["$ref"]
        if ref in seen:
            break
        seen.add(ref)
        target: Any = root
        for part in ref.lstrip("#/").split("/"):
            target = target.get(part, {}) if isinstance(target, dict) else {}
        node = target
    return node if isinstance(node, dict) else {}


def _bounds(node: dict, low: str, high: str, unit: str) -> str:
    lo, hi = node.get(low), node.get(high)
    if lo is not None and hi is not None:
        return f"{lo}-{hi} {unit}"
    if lo is not None:
        return f"at least {lo} {unit}"
    if hi is not None:
        return f"at most {hi} {unit}"
    return ""


def _summarize(node: dict, root: dict) -> str:
    """One-line description of a scalar-ish node."""
    node = resolve_ref(node, root)
    if "enum" in node:
        return "one of " + ", ".join(repr(v) for v in node["enum"])
    if "const" in node:
        return f"exactly {node['const']!r}"
    kind = node.get("type")
    notes: list[str] = []
    if kind == "string":
        notes.append(_bounds(node, "minLength", "maxLength", "chars"))
        if node.get("pattern"):
            notes.append(f"pattern {node['pattern']}")
    elif kind in ("integer", "number"):
        lo = node.get("minimum", node.get("exclusiveMinimum"))
        hi = node.get("maximum", node.get("exclusiveMaximum"))
        if lo is not None or hi is not None:
            notes.append(f"range {lo if lo is not None else '-inf'}..{hi if hi is not None else 'inf'}")
    notes = [n for n in notes if n]
    label = kind if isinstance(kind, str) else "value"
    return f"{label} ({', '.join(notes)})" if notes else label


def _describe(node: dict, root: dict, indent: int) -> list[str]:
    node = resolve_ref(node, root)
    pad = "  " * indent

    if "anyOf" in node or "oneOf" in node:
        options = [o for o in node.get("anyOf", node.get("oneOf", [])) if resolve_ref(o, root).get("type") != "null"]
        nullable = len(options) != len(node.get("anyOf", node.get("oneOf", [])))
        if len(options) == 1:
            lines = _describe(options[0], root, indent)
            if nullable and lines:
                lines[0] += " (or null)"
            return lines
        lines = [f"{pad}one of:"]
        for option in options:
            lines.extend(_describe(option, root, indent + 1))
        return lines

    kind = node.get("type")
    if kind == "object" or "properties" in node:
        props = node.get("properties", {})
        if not props:
            return [f"{pad}object"]
        required = set(node.get("required", []))
        lines = [f"{pad}object with fields:"]
        for field_name, prop in props.items():
            resolved = resolve_ref(prop, root)
            flag = "required" if field_name in required else "optional"
            description = resolved.get("description") or prop.get("description")
            nested = _describe(resolved, root, indent + 2)
            if len(nested) == 1:
                line = f"{pad}  - {field_name} [{flag}]: {nested[0].strip()}"
                if description:
                    line += f" - {description}"
                lines.append(line)
            else:
                head = f"{pad}  - {field_name} [{flag}]"
                if description:
                    head += f" - {description}"
                lines.append(head + ":")
                lines.extend(nested)
        return lines

    if kind == "array":
        bounds = _bounds(node, "minItems", "maxItems", "items")
        head = f"{pad}array" + (f" ({bounds})" if bounds else "") + " of"
        items = resolve_ref(node.get("items", {}), root)
        nested = _describe(items, root, indent + 1)
        if len(nested) == 1:
            return [f"{head} {nested[0].strip()}"]
        return [head + ":"] + nested

    if not node:
        return [f"{pad}any value"]
    return [f"{pad}{_summarize(node, root)}"]


def describe_shape(schema: SchemaLike) -> str:
    """Describe the artifact's structure for a generator prompt.

    Refinement wrappers are unwrapped at every depth before describing, so a
    refined schema gets the same field-by-field description as the bare one,
    followed by its cross-field constraints.
    """
    base, refinements = unwrap_schema(schema)
    root = base.json_schema()
    lines = _describe(root, root, 0)
    if refinements:
        lines.append("Constraints:")
        lines.extend(f"  - {r.message}" for r in refinements)
    return "\n".join(lines)


def describe_node(node: dict, root: dict) -> str:
    """Describe one node of a JSON schema (e.g. an array item) in prompt form."""
    return "\n".join(_describe(node, root, 0))
