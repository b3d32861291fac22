"""
Production stage table — the only place that knows which moves are legal.

  awaiting-lyrics → awaiting-prompt → awaiting-generation → generation-pending
    → audio-ready → ready-to-send → delivered

Every working stage may also fall into error. generation-pending may go back
to awaiting-generation (stuck recovery). error leaves only through a manual
retry, back to the stage the job failed in; a job that failed while
generation-pending restarts at awaiting-generation since a provider task id
is never reused.
"""
from __future__ import annotations

from core.errors import InvalidTransition
from models.schemas import JobStage

S = JobStage

TRANSITIONS: dict[JobStage, frozenset[JobStage]] = {
    S.AWAITING_LYRICS: frozenset({S.AWAITING_PROMPT, S.ERROR}),
    S.AWAITING_PROMPT: frozenset({S.AWAITING_GENERATION, S.ERROR}),
    S.AWAITING_GENERATION: frozenset({S.GENERATION_PENDING, S.ERROR}),
    S.GENERATION_PENDING: frozenset({S.AUDIO_READY, S.AWAITING_GENERATION, S.ERROR}),
    S.AUDIO_READY: frozenset({S.READY_TO_SEND, S.ERROR}),
    S.READY_TO_SEND: frozenset({S.DELIVERED, S.ERROR}),
    S.DELIVERED: frozenset(),
    S.ERROR: frozenset({
        S.AWAITING_LYRICS, S.AWAITING_PROMPT, S.AWAITING_GENERATION,
        S.AUDIO_READY, S.READY_TO_SEND,
    }),
}

TERMINAL: frozenset[JobStage] = frozenset({S.DELIVERED, S.ERROR})

# where a manual retry resumes for a job that failed in the given stage
RETRY_TARGET: dict[JobStage, JobStage] = {
    S.AWAITING_LYRICS: S.AWAITING_LYRICS,
    S.AWAITING_PROMPT: S.AWAITING_PROMPT,
    S.AWAITING_GENERATION: S.AWAITING_GENERATION,
    S.GENERATION_PENDING: S.AWAITING_GENERATION,
    S.AUDIO_READY: S.AUDIO_READY,
    S.READY_TO_SEND: S.READY_TO_SEND,
}


def can_transition(from_stage: JobStage, to_stage: JobStage) -> bool:
    return JobStage(to_stage) in TRANSITIONS.get(JobStage(from_stage), frozenset())


def validate_transition(from_stage: JobStage, to_stage: JobStage) -> None:
    """Raise InvalidTransition unless the table allows from_stage → to_stage."""
    if not can_transition(from_stage, to_stage):
        raise InvalidTransition(JobStage(from_stage).value, JobStage(to_stage).value)


def is_terminal(stage: JobStage) -> bool:
    return JobStage(stage) in TERMINAL


def _validate_table() -> list[str]:
    errors = []
    for stage in JobStage:
        if stage not in TRANSITIONS:
            errors.append(f"stage '{stage.value}' missing from transition table")
    for stage in TERMINAL - {S.ERROR}:
        if TRANSITIONS.get(stage):
            errors.append(f"terminal stage '{stage.value}' has outgoing transitions")
    for failed, target in RETRY_TARGET.items():
        if target not in TRANSITIONS[S.ERROR]:
            errors.append(f"retry target '{target.value}' for '{failed.value}' not reachable from error")
    return errors


_errors = _validate_table()
if _errors:
    raise ValueError(f"Invalid stage table: {'; '.join(_errors)}")
