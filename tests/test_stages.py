"""Tests for the stage transition table and status mapping."""

import pytest

from coursegen.exceptions import InvalidProgressUpdateError
from coursegen.pipeline.stages import (
    TERMINAL_STAGES,
    TRANSITIONS,
    JobStage,
    StepStatus,
    allowed_next,
    allowed_next_for_job,
    assert_acyclic,
    entry_stages,
    first_step_for,
    is_at_or_beyond,
    is_legal_for_job,
    is_legal_transition,
    next_step_after,
    target_stage,
)


class TestTransitionTable:
    def test_every_stage_has_an_entry(self):
        assert set(TRANSITIONS) == set(JobStage)

    def test_table_is_read_only(self):
        with pytest.raises(TypeError):
            TRANSITIONS[JobStage.PENDING] = frozenset()

    def test_happy_path_is_legal(self):
        path = [
            JobStage.PENDING,
            JobStage.STAGE_2_INIT,
            JobStage.STAGE_2_PROCESSING,
            JobStage.STAGE_2_COMPLETE,
            JobStage.STAGE_3_INIT,
            JobStage.STAGE_3_SUMMARIZING,
            JobStage.STAGE_3_COMPLETE,
            JobStage.STAGE_3_AWAITING_APPROVAL,
            JobStage.STAGE_4_INIT,
            JobStage.STAGE_4_ANALYZING,
            JobStage.STAGE_4_COMPLETE,
            JobStage.STAGE_5_INIT,
            JobStage.STAGE_5_GENERATING,
            JobStage.STAGE_5_COMPLETE,
            JobStage.FINALIZING,
            JobStage.COMPLETED,
        ]
        for from_stage, to_stage in zip(path, path[1:]):
            assert is_legal_transition(from_stage, to_stage), f"{from_stage} -> {to_stage}"

    def test_jobs_without_documents_start_at_analysis(self):
        assert is_legal_transition("pending", "stage_4_init")
        assert not is_legal_transition("pending", "stage_3_init")

    @pytest.mark.parametrize("from_stage,to_stage", [
        ("stage_2_init", "stage_3_init"),
        ("stage_3_complete", "stage_2_init"),
        ("pending", "completed"),
        ("stage_5_complete", "completed"),
        ("completed", "stage_5_generating"),
        ("failed", "stage_2_init"),
    ])
    def test_illegal_moves(self, from_stage, to_stage):
        assert not is_legal_transition(from_stage, to_stage)

    def test_single_item_stage_may_complete_from_init(self):
        assert is_legal_transition("stage_2_init", "stage_2_complete")
        assert is_legal_transition("stage_5_init", "stage_5_complete")
        assert not is_legal_transition("stage_2_init", "stage_2_awaiting_approval")

    def test_unknown_stage_name_is_illegal(self):
        assert not is_legal_transition("pending", "stage_9_init")

    def test_non_terminal_stages_can_fail_or_cancel(self):
        for stage in JobStage:
            if stage in TERMINAL_STAGES:
                continue
            assert {JobStage.FAILED, JobStage.CANCELLED} <= allowed_next(stage)

    def test_terminal_stages_only_restart(self):
        for stage in TERMINAL_STAGES:
            assert allowed_next(stage) == frozenset({JobStage.PENDING})

    def test_no_cycles_besides_restart(self):
        assert_acyclic()


class TestTargetStage:
    @pytest.mark.parametrize("step_id,status,expected", [
        (2, "pending", JobStage.STAGE_2_INIT),
        (2, "in_progress", JobStage.STAGE_2_PROCESSING),
        (3, "in_progress", JobStage.STAGE_3_SUMMARIZING),
        (4, "completed", JobStage.STAGE_4_COMPLETE),
        (5, "awaiting_approval", JobStage.STAGE_5_AWAITING_APPROVAL),
        (6, "in_progress", JobStage.FINALIZING),
        (6, "completed", JobStage.COMPLETED),
        (3, "failed", JobStage.FAILED),
        (4, "cancelled", JobStage.CANCELLED),
    ])
    def test_mapping(self, step_id, status, expected):
        assert target_stage(step_id, status) == expected

    def test_upload_step_only_updates_progress(self):
        assert target_stage(1, StepStatus.IN_PROGRESS) is None
        assert target_stage(1, "completed") is None

    def test_upload_failure_fails_the_job(self):
        assert target_stage(1, "failed") == JobStage.FAILED

    def test_unknown_step(self):
        with pytest.raises(InvalidProgressUpdateError):
            target_stage(7, "pending")

    def test_unknown_status(self):
        with pytest.raises(InvalidProgressUpdateError):
            target_stage(2, "done")

    def test_finalization_has_no_approval(self):
        with pytest.raises(InvalidProgressUpdateError):
            target_stage(6, "awaiting_approval")


class TestOrdering:
    def test_later_stage_is_beyond(self):
        assert is_at_or_beyond(JobStage.STAGE_2_COMPLETE, JobStage.STAGE_2_INIT)
        assert is_at_or_beyond(JobStage.STAGE_2_INIT, JobStage.STAGE_2_INIT)
        assert not is_at_or_beyond(JobStage.STAGE_2_INIT, JobStage.STAGE_2_COMPLETE)

    def test_dead_jobs_are_not_beyond(self):
        assert not is_at_or_beyond(JobStage.FAILED, JobStage.STAGE_2_INIT)
        assert not is_at_or_beyond(JobStage.CANCELLED, JobStage.STAGE_2_INIT)
        assert is_at_or_beyond(JobStage.CANCELLED, JobStage.CANCELLED)

    def test_nothing_is_beyond_pending(self):
        assert not is_at_or_beyond(JobStage.STAGE_3_INIT, JobStage.PENDING)

    def test_entry_stages(self):
        assert entry_stages(2) == frozenset({JobStage.PENDING})
        assert entry_stages(4) == frozenset({
            JobStage.PENDING,
            JobStage.STAGE_3_COMPLETE,
            JobStage.STAGE_3_AWAITING_APPROVAL,
        })

    def test_next_step_after(self):
        assert next_step_after(2) == 3
        assert next_step_after(5) == 6
        with pytest.raises(InvalidProgressUpdateError):
            next_step_after(6)


class TestJobEntry:
    def test_first_step(self):
        assert first_step_for(True) == 2
        assert first_step_for(False) == 4

    def test_pending_only_enters_the_first_step(self):
        assert is_legal_for_job("pending", "stage_2_init", has_documents=True)
        assert not is_legal_for_job("pending", "stage_4_init", has_documents=True)
        assert is_legal_for_job("pending", "stage_4_init", has_documents=False)
        assert not is_legal_for_job("pending", "stage_2_init", has_documents=False)

    def test_later_stages_are_not_narrowed(self):
        assert allowed_next_for_job("stage_3_complete", True) == allowed_next("stage_3_complete")
        assert is_legal_for_job("stage_3_complete", "stage_4_init", has_documents=True)

    def test_allowed_from_pending(self):
        assert allowed_next_for_job("pending", True) == frozenset({
            JobStage.STAGE_2_INIT, JobStage.FAILED, JobStage.CANCELLED,
        })

    def test_unknown_target(self):
        assert not is_legal_for_job("pending", "stage_9_init", has_documents=True)
