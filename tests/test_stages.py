"""Tests for the production stage table."""
import pytest

from core.errors import InvalidTransition
from models.schemas import JobStage
from pipeline.stages import (
    RETRY_TARGET, TRANSITIONS, can_transition, is_terminal, validate_transition,
)

S = JobStage

HAPPY_PATH = [
    S.AWAITING_LYRICS, S.AWAITING_PROMPT, S.AWAITING_GENERATION, S.GENERATION_PENDING,
    S.AUDIO_READY, S.READY_TO_SEND, S.DELIVERED,
]


class TestTable:
    def test_every_stage_listed(self):
        assert set(TRANSITIONS) == set(JobStage)

    def test_happy_path_is_legal(self):
        for a, b in zip(HAPPY_PATH, HAPPY_PATH[1:]):
            validate_transition(a, b)

    def test_every_working_stage_can_fail(self):
        for stage in HAPPY_PATH[:-1]:
            assert can_transition(stage, S.ERROR)

    def test_delivered_is_final(self):
        assert is_terminal(S.DELIVERED)
        assert not any(can_transition(S.DELIVERED, s) for s in JobStage)

    def test_stuck_recovery_edge(self):
        assert can_transition(S.GENERATION_PENDING, S.AWAITING_GENERATION)

    def test_accepts_raw_values(self):
        assert can_transition("awaiting-lyrics", "awaiting-prompt")


class TestInvalidMoves:
    @pytest.mark.parametrize("a,b", [
        (S.AWAITING_LYRICS, S.AWAITING_GENERATION),
        (S.AUDIO_READY, S.DELIVERED),
        (S.READY_TO_SEND, S.AWAITING_LYRICS),
        (S.ERROR, S.DELIVERED),
        (S.ERROR, S.GENERATION_PENDING),
    ])
    def test_rejected(self, a, b):
        with pytest.raises(InvalidTransition):
            validate_transition(a, b)


class TestRetryTargets:
    def test_pending_restarts_generation(self):
        assert RETRY_TARGET[S.GENERATION_PENDING] == S.AWAITING_GENERATION

    def test_other_stages_resume_in_place(self):
        for stage in (S.AWAITING_LYRICS, S.AWAITING_PROMPT, S.AUDIO_READY, S.READY_TO_SEND):
            assert RETRY_TARGET[stage] == stage

    def test_targets_reachable_from_error(self):
        assert all(can_transition(S.ERROR, t) for t in RETRY_TARGET.values())
