"""Tests for the regeneration engine: chain order, attempt accounting,
candidate carry-forward and the final validation gate."""

import pytest

from tests.conftest import OUTCOMES, OUTLINE, ScriptedGenerator, make_outline

from coursegen.exceptions import GeneratorUnavailableError
from coursegen.generation.regenerator import NO_REPAIR, RegenerationEngine
from coursegen.generation.schema import validate
from coursegen.generation.strategies import Accepted, Rejected, RepairStrategy

PROMPT = "Write the outline for Intro to Python"
GENERATOR_STRATEGIES = ["syntax-repair", "critique-and-revise"]


def _bad_duration_outline() -> dict:
    outline = make_outline()
    outline["sections"][1]["duration_minutes"] = "thirty"
    return outline


class RecordingStrategy(RepairStrategy):
    """Custom strategy that records attempt numbers and always rejects."""

    requires_generator = False

    def __init__(self, name: str, result=None, skip: bool = False):
        super().__init__()
        self.name = name
        self.result = result
        self.skip = skip
        self.seen: list[tuple[int, int]] = []

    def attempt(self, attempt):
        self.seen.append((attempt.number, attempt.strategy_attempt))
        if self.result is not None:
            return Accepted(self.result, self.name)
        return Rejected("no luck", self.name, skip=self.skip)


class TestNoRepairNeeded:
    def test_valid_output_passes_untouched(self):
        engine = RegenerationEngine(generator=ScriptedGenerator())
        result = engine.regenerate(OUTLINE, make_outline(), PROMPT)
        assert result.success
        assert result.strategy_used == NO_REPAIR
        assert result.attempts == 0
        assert result.artifact == make_outline()

    def test_valid_json_text_passes_untouched(self):
        import json

        result = RegenerationEngine().regenerate(OUTLINE, json.dumps(make_outline()), PROMPT)
        assert result.success
        assert result.strategy_used == NO_REPAIR


class TestRepairChain:
    def test_fenced_json_fixed_by_syntax_repair(self):
        import json

        raw = "```json\n" + json.dumps(make_outline()) + "\n```"
        result = RegenerationEngine().regenerate(OUTLINE, raw, PROMPT)
        assert result.success
        assert result.strategy_used == "syntax-repair"
        assert result.attempts == 1
        assert not result.degraded

    def test_wrong_type_fixed_by_critique(self):
        generator = ScriptedGenerator(make_outline())
        result = RegenerationEngine(generator=generator).regenerate(OUTLINE, _bad_duration_outline(), PROMPT)

        assert result.success
        assert result.strategy_used == "critique-and-revise"
        # syntax-repair found nothing to fix (1), critique succeeded (2)
        assert result.attempts == 2
        assert result.strategies_tried == ("syntax-repair", "critique-and-revise")
        assert validate(OUTLINE, result.artifact).ok

    def test_object_elements_fixed_by_critique(self):
        raw = {"outcomes": [{"text": "Explain X"}, {"text": "Explain Y"}]}
        first = validate(OUTCOMES, raw)
        assert [i.path for i in first.issues] == ["outcomes.0", "outcomes.1"]

        generator = ScriptedGenerator(["Explain X", "Explain Y"])
        result = RegenerationEngine(generator=generator).regenerate(
            OUTCOMES, raw, "List the learning outcomes", enabled_strategies=GENERATOR_STRATEGIES,
        )

        assert result.success
        assert result.strategy_used == "critique-and-revise"
        assert result.artifact == ["Explain X", "Explain Y"]
        # syntax-repair cannot fix a type mismatch and steps aside after one look
        assert result.strategies_tried == ("syntax-repair", "critique-and-revise")
        assert result.attempts == 2
        critique_prompt = generator.calls[0][0]
        assert "`outcomes.0`" in critique_prompt
        assert "`outcomes.1`" in critique_prompt

    def test_enabled_order_does_not_change_rank_order(self):
        generator = ScriptedGenerator(make_outline())
        result = RegenerationEngine(generator=generator).regenerate(
            OUTLINE,
            _bad_duration_outline(),
            PROMPT,
            enabled_strategies=["emergency-fallback", "critique-and-revise"],
        )
        assert result.strategy_used == "critique-and-revise"
        assert not result.degraded

    def test_unknown_strategy_name_raises(self):
        with pytest.raises(ValueError, match="Unknown repair strategies"):
            RegenerationEngine().regenerate(OUTLINE, make_outline(), PROMPT, enabled_strategies=["magic"])

    @pytest.mark.parametrize("max_attempts", [0, -1])
    def test_invalid_max_attempts_raises(self, max_attempts):
        with pytest.raises(ValueError):
            RegenerationEngine().regenerate(
                OUTLINE, make_outline(), PROMPT, max_attempts_per_strategy=max_attempts,
            )

    def test_without_generator_falls_back_to_placeholder(self):
        result = RegenerationEngine(generator=None).regenerate(OUTLINE, _bad_duration_outline(), PROMPT)
        assert result.success
        assert result.strategy_used == "emergency-fallback"
        assert result.degraded
        assert "critique-and-revise" not in result.strategies_tried
        assert validate(OUTLINE, result.artifact).ok

    def test_escalation_records_models(self):
        generator = ScriptedGenerator(make_outline(course_title="X"), make_outline())
        engine = RegenerationEngine(generator=generator, escalation_models=["small", "large"])
        result = engine.regenerate(
            OUTLINE,
            _bad_duration_outline(),
            PROMPT,
            enabled_strategies=["model-escalation"],
            max_attempts_per_strategy=2,
        )
        assert result.success
        assert result.strategy_used == "model-escalation"
        assert result.models_used == ("small", "large")
        assert result.attempts == 2


class TestExhaustion:
    def test_every_attempt_counts(self):
        bad = make_outline(course_title="X")
        generator = ScriptedGenerator(bad, bad)
        result = RegenerationEngine(generator=generator).regenerate(
            OUTLINE,
            _bad_duration_outline(),
            PROMPT,
            enabled_strategies=GENERATOR_STRATEGIES,
            max_attempts_per_strategy=2,
        )
        assert not result.success
        assert result.attempts_exhausted
        assert result.attempts == 3
        assert result.artifact is None
        assert result.error == "All repair strategies exhausted after 3 attempt(s)"
        # Issues are those of the latest candidate, not the original output.
        assert [i.path for i in result.issues] == ["course_title"]

    def test_generator_errors_count_and_chain_continues(self):
        generator = ScriptedGenerator(GeneratorUnavailableError("m", "rate limited"), make_outline())
        result = RegenerationEngine(generator=generator).regenerate(
            OUTLINE,
            _bad_duration_outline(),
            PROMPT,
            enabled_strategies=GENERATOR_STRATEGIES,
            max_attempts_per_strategy=2,
        )
        assert result.success
        assert result.attempts == 3

    def test_strategy_crash_counts_as_rejection(self):
        class Exploding(RepairStrategy):
            name = "exploding"

            def attempt(self, attempt):
                raise RuntimeError("boom")

        engine = RegenerationEngine(strategies=[Exploding()])
        result = engine.regenerate(OUTLINE, _bad_duration_outline(), PROMPT, max_attempts_per_strategy=2)
        assert not result.success
        assert result.attempts == 2


class TestAttemptAccounting:
    def test_attempt_numbers_are_monotonic_across_strategies(self):
        first = RecordingStrategy("first")
        second = RecordingStrategy("second", skip=True)
        third = RecordingStrategy("third")
        engine = RegenerationEngine(strategies=[first, second, third])

        result = engine.regenerate(OUTLINE, _bad_duration_outline(), PROMPT, max_attempts_per_strategy=3)

        assert first.seen == [(1, 1), (2, 2), (3, 3)]
        assert second.seen == [(4, 1)]
        assert third.seen == [(5, 1), (6, 2), (7, 3)]
        assert result.attempts == 7

    def test_custom_strategies_run_without_being_configured(self):
        fixer = RecordingStrategy("fixer", result=make_outline())
        result = RegenerationEngine(strategies=[fixer]).regenerate(OUTLINE, _bad_duration_outline(), PROMPT)
        assert result.success
        assert result.strategy_used == "fixer"


class TestValidationGate:
    def test_invalid_accepted_artifact_is_not_returned(self):
        liar = RecordingStrategy("liar", result=make_outline(sections=[]))
        result = RegenerationEngine(strategies=[liar]).regenerate(
            OUTLINE, _bad_duration_outline(), PROMPT, max_attempts_per_strategy=2
        )
        assert not result.success
        assert result.artifact is None
        assert result.attempts == 2
        assert [i.path for i in result.issues] == ["sections"]

    def test_gate_failure_moves_to_next_strategy(self):
        liar = RecordingStrategy("liar", result=make_outline(sections=[]))
        fixer = RecordingStrategy("fixer", result=make_outline())
        result = RegenerationEngine(strategies=[liar, fixer]).regenerate(
            OUTLINE, _bad_duration_outline(), PROMPT, max_attempts_per_strategy=1
        )
        assert result.success
        assert result.strategy_used == "fixer"
        assert result.attempts == 2
