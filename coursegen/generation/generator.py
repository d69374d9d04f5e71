"""External generator interface and the LiteLLM-backed implementation.

Everything that talks to an LLM goes through ``Generator.generate``. The
LiteLLM implementation enforces the configured timeout and the per-model
circuit breaker, and reports every failure as GeneratorUnavailableError so
the regeneration engine can treat it as one failed repair attempt.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from ..core.config import settings
from ..exceptions import GeneratorUnavailableError
from .circuit_breaker import CircuitBreakerOpen, run_with_timeout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerateOptions:
    """Per-call overrides. None means "use the generator's default"."""

    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    timeout: Optional[float] = None


class Generator(Protocol):
    def generate(self, prompt: str, options: Optional[GenerateOptions] = None) -> str:
        ...


class LiteLLMGenerator:
    """Generator calling ``litellm.completion`` with a single user message."""

    def __init__(
        self,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> None:
        self.model = model or settings.generator_model
        self.api_key = api_key if api_key is not None else settings.generator_api_key
        self.api_base = api_base if api_base is not None else settings.generator_api_base
        self.timeout = timeout or settings.generator_timeout_seconds
        self.temperature = settings.generator_temperature if temperature is None else temperature
        self.max_tokens = max_tokens or settings.generator_max_tokens
        if not self.model:
            raise ValueError("LiteLLMGenerator needs a model (set GENERATOR_MODEL)")

    def generate(self, prompt: str, options: Optional[GenerateOptions] = None) -> str:
        opts = options or GenerateOptions()
        model = opts.model or self.model
        timeout = opts.timeout or self.timeout

        completion_kwargs: dict = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": opts.max_tokens or self.max_tokens,
            "temperature": self.temperature if opts.temperature is None else opts.temperature,
            "timeout": timeout,
        }
        if self.api_key:
            completion_kwargs["api_key"] = self.api_key
        if self.api_base:
            completion_kwargs["api_base"] = self.api_base

        def _call() -> str:
            import litellm

            response = litellm.completion(**completion_kwargs)
            return response.choices[0].message.content or ""

        try:
            content = run_with_timeout(_call, timeout=timeout, endpoint=model)
        except CircuitBreakerOpen as e:
            raise GeneratorUnavailableError(model, str(e)) from e
        except TimeoutError as e:
            raise GeneratorUnavailableError(model, str(e)) from e
        except Exception as e:
            logger.warning("Generator call to %s failed: %s", model, e)
            raise GeneratorUnavailableError(model, str(e)) from e

        if not content.strip():
            raise GeneratorUnavailableError(model, "empty completion")
        return content


def default_generator() -> Optional[LiteLLMGenerator]:
    """The configured generator, or None when GENERATOR_MODEL is empty."""
    if not settings.generator_configured():
        logger.info("No generator configured; LLM-backed repair strategies will be skipped")
        return None
    return LiteLLMGenerator()
