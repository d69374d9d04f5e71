"""Regeneration engine: validate, then walk the repair chain until something passes.

The engine never hands out an artifact the validator has not accepted.
Strategies run in fixed rank order (cheapest first) no matter how the
enabled set is spelled in configuration; each gets a bounded number of
attempts, and the best candidate so far is carried into the next one.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Sequence

from ..core.config import KNOWN_STRATEGIES, settings
from ..exceptions import GeneratorUnavailableError
from .generator import Generator
from .repair import parse_strict
from .schema import Issue, SchemaLike, validate
from .strategies import Accepted, GenerationAttempt, RepairStrategy, Rejected, default_strategies

logger = logging.getLogger(__name__)

NO_REPAIR = "none"


@dataclass(frozen=True)
class RegenerationResult:
    success: bool
    artifact: Any = None
    # Strategy that produced the artifact, or "none" when the first output passed
    strategy_used: Optional[str] = None
    attempts: int = 0
    degraded: bool = False
    models_used: tuple[str, ...] = ()
    issues: tuple[Issue, ...] = ()
    error: Optional[str] = None
    attempts_exhausted: bool = False
    strategies_tried: tuple[str, ...] = ()


class RegenerationEngine:
    """Runs the repair chain for one artifact at a time.

    Args:
        generator: External generator; strategies that need one are skipped
            when it is None.
        escalation_models: Model chain for the model-escalation strategy.
        strategies: Strategy instances in rank order. Defaults to the
            built-in chain.
    """

    def __init__(
        self,
        generator: Optional[Generator] = None,
        escalation_models: Sequence[str] = (),
        strategies: Optional[Sequence[RepairStrategy]] = None,
    ) -> None:
        self.generator = generator
        self.strategies = list(strategies) if strategies is not None else default_strategies(
            generator, escalation_models
        )
        self._by_name = {s.name: s for s in self.strategies}

    def _select(self, enabled: Optional[Iterable[str]]) -> list[RepairStrategy]:
        if enabled is None:
            configured = set(settings.get_enabled_strategies())
            # Custom strategies outside the built-in chain are always on.
            enabled = [
                s.name for s in self.strategies
                if s.name in configured or s.name not in KNOWN_STRATEGIES
            ]
        enabled = list(enabled)
        unknown = [name for name in enabled if name not in self._by_name]
        if unknown:
            raise ValueError(
                f"Unknown repair strategies: {unknown}. Valid names: {', '.join(self._by_name)}"
            )
        wanted = set(enabled)
        return [s for s in self.strategies if s.name in wanted]

    def regenerate(
        self,
        schema: SchemaLike,
        initial_output: Any,
        original_prompt: str,
        enabled_strategies: Optional[Iterable[str]] = None,
        max_attempts_per_strategy: Optional[int] = None,
    ) -> RegenerationResult:
        """Validate *initial_output*; repair it if needed.

        Raises:
            ValueError: if *enabled_strategies* names an unknown strategy or
                *max_attempts_per_strategy* is below 1.
        """
        chain = self._select(enabled_strategies)
        max_attempts = (
            settings.regeneration_max_attempts if max_attempts_per_strategy is None else max_attempts_per_strategy
        )
        if max_attempts < 1:
            raise ValueError("max_attempts_per_strategy must be at least 1")

        candidate: Any = None
        try:
            candidate = parse_strict(initial_output)
        except json.JSONDecodeError as e:
            issues: tuple[Issue, ...] = (Issue("", f"Output is not valid JSON: {e.msg}"),)
        else:
            first = validate(schema, candidate)
            if first.ok:
                return RegenerationResult(success=True, artifact=first.value, strategy_used=NO_REPAIR)
            issues = first.issues

        logger.info(
            "Artifact failed validation, starting repair",
            extra={"issue_count": len(issues), "strategies": [s.name for s in chain]},
        )

        raw = initial_output
        attempts = 0
        models_used: list[str] = []
        tried: list[str] = []

        for strategy in chain:
            if strategy.requires_generator and self.generator is None:
                logger.warning("Skipping %s: no generator configured", strategy.name)
                continue
            tried.append(strategy.name)

            for strategy_attempt in range(1, max_attempts + 1):
                attempts += 1
                attempt = GenerationAttempt(
                    schema=schema,
                    original_prompt=original_prompt,
                    raw=raw,
                    issues=issues,
                    number=attempts,
                    strategy_attempt=strategy_attempt,
                    candidate=candidate,
                )
                outcome = self._run(strategy, attempt)
                models_used.extend(m for m in outcome.models_used if m not in models_used)

                if isinstance(outcome, Accepted):
                    gate = validate(schema, outcome.artifact)
                    if gate.ok:
                        logger.info(
                            "Artifact repaired by %s after %d attempt(s)", strategy.name, attempts,
                            extra={"degraded": outcome.degraded},
                        )
                        return RegenerationResult(
                            success=True,
                            artifact=gate.value,
                            strategy_used=strategy.name,
                            attempts=attempts,
                            degraded=outcome.degraded,
                            models_used=tuple(models_used),
                            strategies_tried=tuple(tried),
                        )
                    logger.warning("%s returned an artifact that fails validation", strategy.name)
                    candidate = raw = outcome.artifact
                    issues = gate.issues
                    continue

                if outcome.candidate is not None:
                    candidate = raw = outcome.candidate
                if outcome.issues:
                    issues = tuple(outcome.issues)
                logger.debug("%s rejected: %s", strategy.name, outcome.reason)
                if outcome.skip:
                    break

        logger.error(
            "All repair strategies exhausted after %d attempt(s)", attempts,
            extra={"issue_count": len(issues), "strategies": tried},
        )
        return RegenerationResult(
            success=False,
            attempts=attempts,
            models_used=tuple(models_used),
            issues=issues,
            error=f"All repair strategies exhausted after {attempts} attempt(s)",
            attempts_exhausted=True,
            strategies_tried=tuple(tried),
        )

    @staticmethod
    def _run(strategy: RepairStrategy, attempt: GenerationAttempt):
        try:
            return strategy.attempt(attempt)
        except GeneratorUnavailableError as e:
            logger.warning("%s: generator unavailable: %s", strategy.name, e.reason)
            return Rejected(e.message, strategy.name)
        except Exception as e:
            # A broken strategy counts as one failed attempt, not a crashed stage.
            logger.error("%s raised %s", strategy.name, e, exc_info=True)
            return Rejected(f"{type(e).__name__}: {e}", strategy.name)
