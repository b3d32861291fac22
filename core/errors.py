"""
Error taxonomy shared by the scheduler, dispatcher, pipeline and API.

  NotFound            — lead / job / sequence / listen token absent
  InvalidInput        — missing phone, empty sequence, malformed payload
  ExternalCallFailure — gateway or provider error, including timeouts
  Conflict            — document already transitioned by someone else

The HTTP layer maps each family onto a status code; the engine records
them on the document being processed and keeps going.
"""
from __future__ import annotations


class SongFunnelError(Exception):
    """Base exception for all engine operations."""

    http_status: int = 500

    def __init__(self, message: str = "", **context):
        self.context = context
        super().__init__(message)


# ── NotFound ──────────────────────────────────────────────────

class NotFound(SongFunnelError):
    http_status = 404


class LeadNotFound(NotFound):
    def __init__(self, lead_id: str):
        super().__init__(f"Lead not found: {lead_id}", lead_id=lead_id)


class JobNotFound(NotFound):
    def __init__(self, job_id: str):
        super().__init__(f"Production job not found: {job_id}", job_id=job_id)


class SequenceNotFound(NotFound):
    def __init__(self, sequence_id: str):
        super().__init__(f"Sequence not found: {sequence_id}", sequence_id=sequence_id)


class TokenNotFound(NotFound):
    def __init__(self, token: str):
        super().__init__("Listen link not found", token=token)


# ── InvalidInput ──────────────────────────────────────────────

class InvalidInput(SongFunnelError):
    http_status = 400


class MissingPhone(InvalidInput):
    def __init__(self, lead_id: str):
        super().__init__(f"Lead has no phone number: {lead_id}", lead_id=lead_id)


class EmptySequence(InvalidInput):
    def __init__(self, sequence_id: str):
        super().__init__(f"Sequence has no active steps: {sequence_id}", sequence_id=sequence_id)


class InvalidPayload(InvalidInput):
    pass


# ── ExternalCallFailure ───────────────────────────────────────

class ExternalCallFailure(SongFunnelError):
    """A call to a collaborator outside the engine failed."""

    http_status = 502

    def __init__(self, message: str, service: str = "", retryable: bool = False, **context):
        self.service = service
        self.retryable = retryable
        super().__init__(message, service=service, **context)


class GatewayError(ExternalCallFailure):
    def __init__(self, message: str, retryable: bool = False, **context):
        super().__init__(message, service="gateway", retryable=retryable, **context)


class GatewayTimeout(GatewayError):
    def __init__(self, message: str = "Timed out talking to the messaging gateway", **context):
        super().__init__(message, retryable=True, **context)


class GatewayNotConnected(GatewayError):
    def __init__(self, message: str = "Messaging gateway session is not connected"):
        super().__init__(message, retryable=True)


class ProviderError(ExternalCallFailure):
    def __init__(self, message: str, service: str = "provider", retryable: bool = False, **context):
        super().__init__(message, service=service, retryable=retryable, **context)


class TranscodeError(ExternalCallFailure):
    def __init__(self, message: str, **context):
        super().__init__(message, service="transcoder", **context)


class StorageError(ExternalCallFailure):
    def __init__(self, message: str, **context):
        super().__init__(message, service="blob_store", **context)


# ── Conflict ──────────────────────────────────────────────────

class Conflict(SongFunnelError):
    http_status = 409


class TaskConflict(Conflict):
    def __init__(self, task_id: str, expected: str = "pending"):
        super().__init__(
            f"Task {task_id} is no longer {expected}", task_id=task_id, expected=expected,
        )


class InvalidTransition(Conflict):
    def __init__(self, from_stage: str, to_stage: str):
        self.from_stage = from_stage
        self.to_stage = to_stage
        super().__init__(
            f"Invalid stage transition {from_stage} → {to_stage}",
            from_stage=from_stage, to_stage=to_stage,
        )


# ── Listen gate ───────────────────────────────────────────────

class LinkDisabled(SongFunnelError):
    http_status = 410

    def __init__(self, token: str):
        super().__init__("Listen link is disabled", token=token)


class PlayLimitReached(SongFunnelError):
    http_status = 403

    def __init__(self, token: str, max_plays: int):
        super().__init__(
            f"Play limit of {max_plays} reached", token=token, max_plays=max_plays,
        )
