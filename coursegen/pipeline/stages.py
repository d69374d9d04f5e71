"""Pipeline stages and the static stage transition table.

The table is built once at import time and exposed read-only. Every write
of ``PipelineJob.stage`` goes through ``ProgressStore.advance_stage``,
which consults ``is_legal_transition`` inside the same transaction.

Stage flow per generation step N (2..5):

    stage_N_init -> [stage_N_<running>] -> stage_N_complete
        -> [stage_N_awaiting_approval] -> next step's init

Stage 5 hands over to ``finalizing -> completed``. Any non-terminal stage
may move to ``failed`` or ``cancelled``; the three terminal stages may only
go back to ``pending`` (an explicit restart).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional

from ..exceptions import InvalidProgressUpdateError


class JobStage(str, Enum):
    PENDING = "pending"
    STAGE_2_INIT = "stage_2_init"
    STAGE_2_PROCESSING = "stage_2_processing"
    STAGE_2_COMPLETE = "stage_2_complete"
    STAGE_2_AWAITING_APPROVAL = "stage_2_awaiting_approval"
    STAGE_3_INIT = "stage_3_init"
    STAGE_3_SUMMARIZING = "stage_3_summarizing"
    STAGE_3_COMPLETE = "stage_3_complete"
    STAGE_3_AWAITING_APPROVAL = "stage_3_awaiting_approval"
    STAGE_4_INIT = "stage_4_init"
    STAGE_4_ANALYZING = "stage_4_analyzing"
    STAGE_4_COMPLETE = "stage_4_complete"
    STAGE_4_AWAITING_APPROVAL = "stage_4_awaiting_approval"
    STAGE_5_INIT = "stage_5_init"
    STAGE_5_GENERATING = "stage_5_generating"
    STAGE_5_COMPLETE = "stage_5_complete"
    STAGE_5_AWAITING_APPROVAL = "stage_5_awaiting_approval"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STAGES = frozenset({JobStage.COMPLETED, JobStage.FAILED, JobStage.CANCELLED})


class StepStatus(str, Enum):
    """Raw per-step status reported by workers and entry points."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    AWAITING_APPROVAL = "awaiting_approval"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PipelineStep:
    """One numbered step of the fixed pipeline and the stages it owns."""

    step_id: int
    name: str
    init: Optional[JobStage] = None
    running: Optional[JobStage] = None
    complete: Optional[JobStage] = None
    awaiting_approval: Optional[JobStage] = None


UPLOAD_STEP = 1
FINALIZE_STEP = 6

STEPS: tuple[PipelineStep, ...] = (
    # Upload happens outside the pipeline core; it only ever writes progress.
    PipelineStep(UPLOAD_STEP, "document_upload"),
    PipelineStep(
        2, "document_processing",
        JobStage.STAGE_2_INIT, JobStage.STAGE_2_PROCESSING,
        JobStage.STAGE_2_COMPLETE, JobStage.STAGE_2_AWAITING_APPROVAL,
    ),
    PipelineStep(
        3, "summarization",
        JobStage.STAGE_3_INIT, JobStage.STAGE_3_SUMMARIZING,
        JobStage.STAGE_3_COMPLETE, JobStage.STAGE_3_AWAITING_APPROVAL,
    ),
    PipelineStep(
        4, "analysis",
        JobStage.STAGE_4_INIT, JobStage.STAGE_4_ANALYZING,
        JobStage.STAGE_4_COMPLETE, JobStage.STAGE_4_AWAITING_APPROVAL,
    ),
    PipelineStep(
        5, "generation",
        JobStage.STAGE_5_INIT, JobStage.STAGE_5_GENERATING,
        JobStage.STAGE_5_COMPLETE, JobStage.STAGE_5_AWAITING_APPROVAL,
    ),
    PipelineStep(FINALIZE_STEP, "finalization", running=JobStage.FINALIZING, complete=JobStage.COMPLETED),
)

STEPS_BY_ID: Mapping[int, PipelineStep] = MappingProxyType({s.step_id: s for s in STEPS})

# Steps whose output goes through a stage handler and the regeneration engine.
GENERATION_STEPS: tuple[int, ...] = (2, 3, 4, 5)

# Jobs without uploaded documents start directly at analysis.
NO_DOCUMENT_FIRST_STEP = 4


def _build_transitions() -> Mapping[JobStage, frozenset]:
    table: dict[JobStage, set[JobStage]] = {stage: set() for stage in JobStage}

    table[JobStage.PENDING].update({JobStage.STAGE_2_INIT, JobStage.STAGE_4_INIT})

    generation = [STEPS_BY_ID[i] for i in GENERATION_STEPS]
    for step, nxt in zip(generation, generation[1:] + [None]):
        next_entry = nxt.init if nxt else JobStage.FINALIZING
        # A single-item stage may report completion without a running heartbeat.
        table[step.init].update({step.running, step.complete})
        table[step.running].add(step.complete)
        table[step.complete].update({step.awaiting_approval, next_entry})
        table[step.awaiting_approval].add(next_entry)

    table[JobStage.FINALIZING].add(JobStage.COMPLETED)

    for stage in JobStage:
        if stage in TERMINAL_STAGES:
            table[stage].add(JobStage.PENDING)
        else:
            table[stage].update({JobStage.FAILED, JobStage.CANCELLED})

    return MappingProxyType({stage: frozenset(nexts) for stage, nexts in table.items()})


TRANSITIONS: Mapping[JobStage, frozenset] = _build_transitions()

# Forward order of the happy path; failed/cancelled are off the line.
_RANK: Mapping[JobStage, int] = MappingProxyType({
    stage: index
    for index, stage in enumerate(s for s in JobStage if s not in (JobStage.FAILED, JobStage.CANCELLED))
})


def is_legal_transition(from_stage: JobStage | str, to_stage: JobStage | str) -> bool:
    """True when the table allows ``from_stage -> to_stage``."""
    try:
        return JobStage(to_stage) in TRANSITIONS[JobStage(from_stage)]
    except ValueError:
        return False


def allowed_next(stage: JobStage | str) -> frozenset:
    return TRANSITIONS[JobStage(stage)]


def first_step_for(has_documents: bool) -> int:
    return GENERATION_STEPS[0] if has_documents else NO_DOCUMENT_FIRST_STEP


def allowed_next_for_job(stage: JobStage | str, has_documents: bool) -> frozenset:
    """``allowed_next`` narrowed to one job: pending only enters the job's first step."""
    stage = JobStage(stage)
    nexts = TRANSITIONS[stage]
    if stage != JobStage.PENDING:
        return nexts
    first = first_step_for(has_documents)
    other_entries = {STEPS_BY_ID[i].init for i in GENERATION_STEPS if i != first}
    return nexts - other_entries


def is_legal_for_job(from_stage: JobStage | str, to_stage: JobStage | str, has_documents: bool) -> bool:
    try:
        return JobStage(to_stage) in allowed_next_for_job(from_stage, has_documents)
    except ValueError:
        return False


def stage_rank(stage: JobStage | str) -> Optional[int]:
    """Position on the forward path, or None for failed/cancelled."""
    return _RANK.get(JobStage(stage))


def is_at_or_beyond(current: JobStage | str, target: JobStage | str) -> bool:
    """Whether a job at *current* has already reached *target*.

    Equal stages always count. A failed or cancelled job is never "beyond"
    a forward stage, so racing against a dead job is not benign.
    """
    current, target = JobStage(current), JobStage(target)
    if current == target:
        return True
    current_rank, target_rank = stage_rank(current), stage_rank(target)
    if current_rank is None or target_rank is None:
        return False
    if target == JobStage.PENDING:
        # Only a restart reaches pending; a running job is not "past" it.
        return False
    return current_rank >= target_rank


def get_step(step_id: int) -> PipelineStep:
    try:
        return STEPS_BY_ID[step_id]
    except KeyError:
        raise InvalidProgressUpdateError(
            f"Invalid step_id: {step_id}. Must be {min(STEPS_BY_ID)}-{max(STEPS_BY_ID)}",
            field="step_id",
        )


def parse_status(status: StepStatus | str) -> StepStatus:
    try:
        return StepStatus(status)
    except ValueError:
        valid = "|".join(s.value for s in StepStatus)
        raise InvalidProgressUpdateError(f"Invalid status: {status}. Must be {valid}", field="status")


def target_stage(step_id: int, status: StepStatus | str) -> Optional[JobStage]:
    """Map a ``(step, raw status)`` report to the job stage it implies.

    Returns None when the report only updates progress (the upload step).

    Raises:
        InvalidProgressUpdateError: unknown step, unknown status, or a
            status the step does not have (e.g. approval on finalization).
    """
    step = get_step(step_id)
    status = parse_status(status)

    if status == StepStatus.FAILED:
        return JobStage.FAILED
    if status == StepStatus.CANCELLED:
        return JobStage.CANCELLED
    if step.step_id == UPLOAD_STEP:
        return None

    if step.step_id == FINALIZE_STEP:
        mapping = {
            StepStatus.PENDING: step.running,
            StepStatus.IN_PROGRESS: step.running,
            StepStatus.COMPLETED: step.complete,
        }
    else:
        mapping = {
            StepStatus.PENDING: step.init,
            StepStatus.IN_PROGRESS: step.running,
            StepStatus.COMPLETED: step.complete,
            StepStatus.AWAITING_APPROVAL: step.awaiting_approval,
        }

    if status not in mapping:
        raise InvalidProgressUpdateError(
            f"Status '{status.value}' does not apply to step {step_id} ({step.name})",
            field="status",
        )
    return mapping[status]


def entry_stages(step_id: int) -> frozenset:
    """Stages from which *step_id*'s init stage may be entered."""
    step = get_step(step_id)
    entry = step.init or step.running
    return frozenset(
        stage for stage, nexts in TRANSITIONS.items()
        if entry in nexts
    )


def next_step_after(step_id: int) -> int:
    """The step that follows *step_id* on the forward path."""
    if step_id in GENERATION_STEPS[:-1]:
        return GENERATION_STEPS[GENERATION_STEPS.index(step_id) + 1]
    if step_id == GENERATION_STEPS[-1]:
        return FINALIZE_STEP
    raise InvalidProgressUpdateError(f"Step {step_id} has no following step", field="step_id")


def assert_acyclic() -> None:
    """Raise ValueError if the table has a cycle other than the restart edges."""
    WHITE, GREY, BLACK = 0, 1, 2
    colour = {stage: WHITE for stage in JobStage}

    def visit(stage: JobStage) -> None:
        colour[stage] = GREY
        for nxt in TRANSITIONS[stage]:
            if stage in TERMINAL_STAGES and nxt == JobStage.PENDING:
                continue
            if colour[nxt] == GREY:
                raise ValueError(f"Cycle through {stage.value} -> {nxt.value}")
            if colour[nxt] == WHITE:
                visit(nxt)
        colour[stage] = BLACK

    for stage in JobStage:
        if colour[stage] == WHITE:
            visit(stage)
