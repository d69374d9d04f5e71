"""
Tests for the pipeline orchestrator.

Runs stage work items end to end against the test database: fallback and
primary initialization, the multi-item completion barrier, failures with
aggregated issues, degraded artifacts and race classification.
"""

import pytest

from tests.conftest import OUTLINE, ScriptedGenerator, StaticHandler, make_outline

from coursegen.exceptions import IllegalTransitionError, StageHandlerNotFoundError
from coursegen.generation.regenerator import RegenerationEngine
from coursegen.models import StageArtifact, StageTransition
from coursegen.pipeline.orchestrator import HandlerRegistry, PipelineOrchestrator, StageOutput
from coursegen.services import ArtifactService, PipelineService, ProgressStore, TraceService


def _bad_outline() -> dict:
    outline = make_outline()
    outline["sections"][1]["duration_minutes"] = "thirty"
    return outline


def _orchestrator(*handlers, generator=None, enabled=None, **kwargs) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        HandlerRegistry(handlers),
        RegenerationEngine(generator=generator),
        enabled_strategies=enabled,
        max_attempts_per_strategy=1,
        **kwargs,
    )


@pytest.fixture()
def job_id(db):
    return PipelineService(db).create_job("Intro to Python").id


def _stage(db, job_id) -> str:
    return ProgressStore(db).get_job(job_id)["stage"]


class TestInitialization:
    def test_worker_initializes_when_entrypoint_did_not(self, db, job_id):
        outcome = _orchestrator(StaticHandler(2)).run_stage(job_id, 2, {})

        assert outcome.status == "completed"
        assert _stage(db, job_id) == "stage_2_complete"
        history = ProgressStore(db).get_history(job_id)
        assert history[0].trigger_source == "worker-fallback"
        assert history[0].to_stage == "stage_2_init"

    def test_primary_initializer_makes_fallback_a_no_op(self, db, job_id):
        items = PipelineService(db).start_stage(job_id, 2)
        outcome = _orchestrator(StaticHandler(2)).run_stage(job_id, 2, items[0].payload)

        assert outcome.status == "completed"
        triggers = [h.trigger_source for h in ProgressStore(db).get_history(job_id)]
        assert "worker-fallback" not in triggers
        assert triggers[0] == "entrypoint"
        rejected = db.query(StageTransition).filter_by(job_id=job_id, accepted=False).count()
        assert rejected == 0

    def test_job_without_documents_starts_at_analysis(self, db):
        service = PipelineService(db)
        job = service.create_job("From scratch", has_documents=False)
        items = service.start_pipeline(job.id)
        assert items[0].step_id == 4
        assert _stage(db, job.id) == "stage_4_init"

    def test_fallback_does_not_skip_to_analysis(self, db, job_id):
        handler = StaticHandler(4)
        outcome = _orchestrator(handler).run_stage(job_id, 4, {})

        assert outcome.status == "rejected"
        assert handler.payloads == []
        assert _stage(db, job_id) == "pending"
        triggers = [h.trigger_source for h in ProgressStore(db).get_history(job_id)]
        assert "worker-fallback" not in triggers

    def test_zero_attempts_per_strategy_is_rejected(self):
        with pytest.raises(ValueError):
            PipelineOrchestrator(HandlerRegistry(), RegenerationEngine(), max_attempts_per_strategy=0)


class TestCompletionBarrier:
    def test_stage_completes_after_last_item(self, db, job_id):
        items = PipelineService(db).start_stage(job_id, 2, [{"doc": "a"}, {"doc": "b"}, {"doc": "c"}])
        handler = StaticHandler(2)
        orchestrator = _orchestrator(handler)

        first = orchestrator.run_stage(job_id, 2, items[0].payload)
        second = orchestrator.run_stage(job_id, 2, items[1].payload)
        assert (first.status, second.status) == ("in_progress", "in_progress")
        assert _stage(db, job_id) == "stage_2_processing"

        third = orchestrator.run_stage(job_id, 2, items[2].payload)
        assert third.status == "completed"
        assert _stage(db, job_id) == "stage_2_complete"
        assert ArtifactService(db).count(job_id, 2) == 3
        assert [p["doc"] for p in handler.payloads] == ["a", "b", "c"]

    def test_retried_item_does_not_double_count(self, db, job_id):
        items = PipelineService(db).start_stage(job_id, 2, [{}, {}])
        orchestrator = _orchestrator(StaticHandler(2))

        orchestrator.run_stage(job_id, 2, items[0].payload)
        again = orchestrator.run_stage(job_id, 2, items[0].payload)
        assert again.status == "in_progress"
        assert _stage(db, job_id) == "stage_2_processing"

    def test_progress_reports_item_counts(self, db, job_id):
        items = PipelineService(db).start_stage(job_id, 2, [{}, {}])
        _orchestrator(StaticHandler(2)).run_stage(job_id, 2, items[0].payload)

        steps = ProgressStore(db).get_job(job_id)["progress"]["steps"]
        record = next(s for s in steps if s["step_id"] == 2)
        assert record["metadata"]["completed_items"] == 1
        assert record["metadata"]["total_items"] == 2


class TestRepairAndFailure:
    def test_repaired_artifact_is_stored(self, db, job_id):
        generator = ScriptedGenerator(make_outline())
        orchestrator = _orchestrator(StaticHandler(2, raw=_bad_outline()), generator=generator)

        outcome = orchestrator.run_stage(job_id, 2, {})
        assert outcome.status == "completed"
        assert outcome.strategy_used == "critique-and-revise"
        artifact = ArtifactService(db).list_for_step(job_id, 2)[0]
        assert artifact.payload == make_outline()

        trace = TraceService(db).list_traces(job_id=job_id)[0]
        assert trace.status == "success"
        assert trace.stage == "stage_2_processing"
        assert trace.attempts == 2
        assert trace.prompt_text == "Write the outline for Intro to Python"

    def test_exhausted_repairs_fail_the_stage(self, db, job_id):
        orchestrator = _orchestrator(StaticHandler(2, raw=_bad_outline()), enabled=["syntax-repair"])

        outcome = orchestrator.run_stage(job_id, 2, {})

        assert outcome.status == "failed"
        assert outcome.message == "Generation failed, please retry"
        assert [i.path for i in outcome.issues] == ["sections.1.duration_minutes"]
        job = ProgressStore(db).get_job(job_id)
        assert job["stage"] == "failed"
        assert job["error_message"] == "All repair strategies exhausted after 1 attempt(s)"
        record = next(s for s in job["progress"]["steps"] if s["step_id"] == 2)
        assert record["error_details"]["issues"][0]["path"] == "sections.1.duration_minutes"
        assert db.query(StageArtifact).count() == 0

        trace = TraceService(db).list_traces(job_id=job_id, status="failed")[0]
        assert trace.issues[0]["path"] == "sections.1.duration_minutes"

    def test_fallback_placeholder_is_flagged_degraded(self, db, job_id):
        orchestrator = _orchestrator(StaticHandler(2, raw=_bad_outline()))

        outcome = orchestrator.run_stage(job_id, 2, {})
        assert outcome.status == "completed"
        assert outcome.degraded
        assert ArtifactService(db).list_for_step(job_id, 2)[0].degraded is True
        assert TraceService(db).list_traces(job_id=job_id)[0].status == "degraded"

    def test_handler_exception_fails_the_stage(self, db, job_id):
        outcome = _orchestrator(StaticHandler(2, raw=RuntimeError("upstream down"))).run_stage(job_id, 2, {})
        assert outcome.status == "failed"
        assert "upstream down" in ProgressStore(db).get_job(job_id)["error_message"]

    def test_handler_may_return_plain_output(self, db, job_id):
        class PlainHandler:
            step_id = 2
            schema = OUTLINE

            def handle(self, job, payload):
                return make_outline()

        assert _orchestrator(PlainHandler()).run_stage(job_id, 2, {}).status == "completed"


class TestRaces:
    def test_rerun_after_completion_is_skipped(self, db, job_id):
        handler = StaticHandler(2)
        orchestrator = _orchestrator(handler)
        orchestrator.run_stage(job_id, 2, {})

        outcome = orchestrator.run_stage(job_id, 2, {})
        assert outcome.status == "skipped"
        assert len(handler.payloads) == 1
        assert _stage(db, job_id) == "stage_2_complete"

    def test_cancelled_job_is_rejected(self, db, job_id):
        items = PipelineService(db).start_stage(job_id, 2)
        ProgressStore(db).cancel_job(job_id)
        handler = StaticHandler(2)

        outcome = _orchestrator(handler).run_stage(job_id, 2, items[0].payload)
        assert outcome.status == "rejected"
        assert handler.payloads == []
        assert _stage(db, job_id) == "cancelled"

    def test_unregistered_step_raises(self, job_id):
        with pytest.raises(StageHandlerNotFoundError):
            _orchestrator(StaticHandler(2)).run_stage(job_id, 3, {})


class TestApprovalAndFinalize:
    def test_handler_requiring_approval_waits(self, db, job_id):
        completed = []
        orchestrator = _orchestrator(
            StaticHandler(2, requires_approval=True),
            on_stage_complete=lambda j, s: completed.append((j, s)),
        )
        orchestrator.run_stage(job_id, 2, {})

        assert _stage(db, job_id) == "stage_2_awaiting_approval"
        assert completed == [(job_id, 2)]

        ProgressStore(db).approve_stage(job_id, 2)
        assert _stage(db, job_id) == "stage_3_init"

    def test_approving_last_stage_finishes_the_job(self, db):
        job = PipelineService(db).create_job("From scratch", has_documents=False)
        orchestrator = _orchestrator(StaticHandler(4), StaticHandler(5, requires_approval=True))
        orchestrator.run_stage(job.id, 4, {})
        orchestrator.run_stage(job.id, 5, {})
        assert _stage(db, job.id) == "stage_5_awaiting_approval"

        ProgressStore(db).approve_stage(job.id, 5)
        assert _stage(db, job.id) == "completed"

    def test_finalize_after_last_stage(self, db):
        service = PipelineService(db)
        job = service.create_job("From scratch", has_documents=False)
        orchestrator = _orchestrator(StaticHandler(4), StaticHandler(5))

        orchestrator.run_stage(job.id, 4, {})
        orchestrator.run_stage(job.id, 5, {})
        assert _stage(db, job.id) == "stage_5_complete"

        outcome = orchestrator.finalize(job.id)
        assert outcome.status == "completed"
        job_state = ProgressStore(db).get_job(job.id)
        assert job_state["stage"] == "completed"
        assert job_state["progress"]["percentage"] == 100

    def test_finalize_twice_is_benign(self, db):
        job = PipelineService(db).create_job("From scratch", has_documents=False)
        orchestrator = _orchestrator(StaticHandler(4), StaticHandler(5))
        orchestrator.run_stage(job.id, 4, {})
        orchestrator.run_stage(job.id, 5, {})
        orchestrator.finalize(job.id)

        assert orchestrator.finalize(job.id).status == "skipped"

    def test_stage_output_defaults(self):
        output = StageOutput(raw="{}")
        assert output.prompt == ""
        assert output.phase == ""


class TestRestart:
    def test_restart_drops_stored_items(self, db, job_id):
        service = PipelineService(db)
        items = service.start_stage(job_id, 2, [{}, {}])
        orchestrator = _orchestrator(StaticHandler(2))
        orchestrator.run_stage(job_id, 2, items[0].payload)
        ProgressStore(db).cancel_job(job_id)

        service.restart(job_id)
        assert _stage(db, job_id) == "pending"
        assert ArtifactService(db).count(job_id, 2) == 0

        # The new run needs both items again before the stage completes.
        items = service.start_stage(job_id, 2, [{}, {}])
        assert orchestrator.run_stage(job_id, 2, items[0].payload).status == "in_progress"
        assert orchestrator.run_stage(job_id, 2, items[1].payload).status == "completed"

    def test_rejected_restart_keeps_stored_items(self, db, job_id):
        service = PipelineService(db)
        items = service.start_stage(job_id, 2, [{}, {}])
        _orchestrator(StaticHandler(2)).run_stage(job_id, 2, items[0].payload)

        with pytest.raises(IllegalTransitionError):
            service.restart(job_id)
        assert ArtifactService(db).count(job_id, 2) == 1
        assert _stage(db, job_id) == "stage_2_processing"
