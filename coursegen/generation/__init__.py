"""Artifact validation, repair strategies and the regeneration engine."""

from .schema import (
    ArtifactSchema,
    Issue,
    Refined,
    Refinement,
    ShapeVariant,
    ValidationResult,
    describe_shape,
    single_element,
    validate,
    wrapped_in,
)
from .regenerator import RegenerationEngine, RegenerationResult

__all__ = [
    "ArtifactSchema", "Issue", "Refined", "Refinement", "ShapeVariant",
    "ValidationResult", "describe_shape", "single_element", "validate", "wrapped_in",
    "RegenerationEngine", "RegenerationResult",
]
