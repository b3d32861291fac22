"""
Production Pipeline Controller — drives song orders through their stages.

  awaiting-lyrics      generate_lyrics()           → awaiting-prompt
  awaiting-prompt      generate_style_prompt()     → awaiting-generation
  awaiting-generation  start_generation()          → generation-pending
  generation-pending   handle_generation_callback()→ audio-ready
  audio-ready          produce_clips()             → ready-to-send
  ready-to-send        deliver_songs()             → delivered

The single-job operations pick the oldest job in their source stage, so one
tick makes at most one provider call. produce_clips and deliver_songs sweep
every matching job. Each stage change is validated against pipeline.stages
and written with a compare-and-set on the source stage; losing that race
leaves the job to whoever won. Provider failures park the job in error with
the message and the stage it failed in.
"""
from __future__ import annotations

import os
import secrets
import structlog
import tempfile
from typing import Any, Awaitable, Callable, Optional

from config.settings import PipelineConfig, SequenceConfig, get_settings
from core.dispatcher import DeliveryDispatcher
from core.errors import (
    InvalidPayload, InvalidTransition, JobNotFound, LinkDisabled, MissingPhone,
    NotFound, PlayLimitReached, TokenNotFound,
)
from database.store_base import BaseStore
from models.schemas import (
    JobStage, ListenToken, MessageKind, Payload, ProductionJob, TaskStatus, utcnow,
)
from pipeline.stages import RETRY_TARGET, validate_transition
from providers.audio_generation import AudioGenerationClient
from providers.blob_store import BlobStore, download_to_file
from providers.text_generation import TextGenerator
from providers.transcoder import FFmpegTranscoder
from sequences.scheduler import SequenceScheduler
from utils.templating import first_name

logger = structlog.get_logger()

Downloader = Callable[[str, str], Awaitable[str]]

LYRICS_MESSAGE = "Hola {name}, esta es la letra:\n\n{lyrics}"
LYRICS_MESSAGE_NO_NAME = "Esta es la letra:\n\n{lyrics}"
LINK_MESSAGE = (
    "🎧 Ya tenemos tu canción lista.\n\n"
    "Escúchala aquí:\n{url}\n\n"
    "⚠️ El acceso es limitado, guárdalo bien."
)


class ProductionPipeline:
    def __init__(
        self,
        store: BaseStore,
        dispatcher: DeliveryDispatcher,
        scheduler: SequenceScheduler,
        text: TextGenerator,
        audio: AudioGenerationClient,
        transcoder: FFmpegTranscoder,
        blobs: BlobStore,
        config: Optional[PipelineConfig] = None,
        sequences: Optional[SequenceConfig] = None,
        downloader: Downloader = download_to_file,
    ):
        settings = get_settings()
        self.store = store
        self.dispatcher = dispatcher
        self.scheduler = scheduler
        self.text = text
        self.audio = audio
        self.transcoder = transcoder
        self.blobs = blobs
        self.config = config or settings.pipeline
        self.sequences = sequences or settings.sequences
        self.download = downloader

    # ══════════════════════════════════════════════════════════
    #  STAGE BOOKKEEPING
    # ══════════════════════════════════════════════════════════

    async def _advance(self, job: ProductionJob, to_stage: JobStage, **fields: Any) -> bool:
        validate_transition(job.stage, to_stage)
        moved = await self.store.transition_job(job.id, job.stage, to_stage, **fields)
        if moved:
            logger.info("job_stage_advanced", job_id=job.id, from_stage=job.stage.value, to_stage=to_stage.value)
        else:
            logger.warning("job_stage_conflict", job_id=job.id, expected=job.stage.value, to_stage=to_stage.value)
        return moved

    async def _fail(self, job: ProductionJob, error: Exception) -> None:
        message = str(error) or type(error).__name__
        validate_transition(job.stage, JobStage.ERROR)
        moved = await self.store.transition_job(
            job.id, job.stage, JobStage.ERROR, error_message=message, failed_stage=job.stage,
        )
        logger.error("job_stage_failed", job_id=job.id, stage=job.stage.value, error=message, recorded=moved)

    def _scratch_dir(self) -> tempfile.TemporaryDirectory:
        return tempfile.TemporaryDirectory(prefix="songfunnel-", dir=self.config.scratch_dir or None)

    # ══════════════════════════════════════════════════════════
    #  INTAKE
    # ══════════════════════════════════════════════════════════

    async def create_job(self, job: ProductionJob) -> ProductionJob:
        """Register a new order; it always starts in awaiting-lyrics."""
        if not job.lead_phone and job.lead_id:
            lead = await self.store.get_lead(job.lead_id)
            if lead is not None:
                job.lead_phone = lead.phone
        job.stage = JobStage.AWAITING_LYRICS
        await self.store.create_job(job)
        logger.info("job_created", job_id=job.id, lead_id=job.lead_id)
        return job

    # ══════════════════════════════════════════════════════════
    #  TEXT STAGES
    # ══════════════════════════════════════════════════════════

    async def generate_lyrics(self) -> Optional[ProductionJob]:
        job = await self.store.oldest_job_in_stage(JobStage.AWAITING_LYRICS)
        if job is None:
            return None
        try:
            lyrics = await self.text.lyrics(job.purpose, job.include_name, job.anecdotes)
        except Exception as e:
            await self._fail(job, e)
            return job

        if await self._advance(job, JobStage.AWAITING_PROMPT, lyrics=lyrics) and job.lead_id:
            await self.store.update_lead(job.lead_id, lyrics=lyrics)
        return job

    async def generate_style_prompt(self) -> Optional[ProductionJob]:
        job = await self.store.oldest_job_in_stage(JobStage.AWAITING_PROMPT)
        if job is None:
            return None
        try:
            style = await self.text.style_prompt(
                job.artist, job.genre, job.voice_type, max_chars=self.config.style_prompt_max_chars,
            )
        except Exception as e:
            await self._fail(job, e)
            return job

        await self._advance(job, JobStage.AWAITING_GENERATION, style_prompt=style)
        return job

    # ══════════════════════════════════════════════════════════
    #  EXTERNAL GENERATION
    # ══════════════════════════════════════════════════════════

    async def start_generation(self) -> Optional[ProductionJob]:
        """
        Move the job to generation-pending before calling the provider, so an
        overlapping tick cannot start a second generation for it. The task id
        is written once the provider answers.
        """
        job = await self.store.oldest_job_in_stage(JobStage.AWAITING_GENERATION)
        if job is None:
            return None
        if not await self._advance(job, JobStage.GENERATION_PENDING, generation_started_at=utcnow()):
            return None
        job.stage = JobStage.GENERATION_PENDING

        try:
            task_id = await self.audio.start(
                title=job.title[: self.config.title_max_chars],
                style=job.style_prompt,
                lyrics=job.lyrics,
            )
        except Exception as e:
            await self._fail(job, e)
            return job

        await self.store.update_job(job.id, external_task_id=task_id)
        job.external_task_id = task_id
        logger.info("generation_requested", job_id=job.id, task_id=task_id)
        return job

    async def handle_generation_callback(self, task_id: str, audio_url: str) -> ProductionJob:
        """
        Store the rendered song for the job that owns task_id. Callbacks
        without an audio URL, or for a job that already moved on, change
        nothing.
        """
        job = await self.store.find_job_by_external_task(task_id)
        if job is None:
            raise JobNotFound(task_id)
        if not audio_url:
            logger.debug("generation_callback_without_audio", job_id=job.id, task_id=task_id)
            return job
        if job.stage != JobStage.GENERATION_PENDING:
            logger.info("generation_callback_ignored", job_id=job.id, stage=job.stage.value)
            return job

        try:
            with self._scratch_dir() as tmp:
                local = os.path.join(tmp, f"{job.id}-full.mp3")
                await self.download(audio_url, local)
                full_url = await self.blobs.upload_file(local, f"songs/full/{job.id}.mp3", "audio/mpeg")
        except Exception as e:
            await self._fail(job, e)
            raise

        await self._advance(job, JobStage.AUDIO_READY, full_audio_url=full_url, generated_at=utcnow())
        return job

    # ══════════════════════════════════════════════════════════
    #  CLIPS
    # ══════════════════════════════════════════════════════════

    async def produce_clips(self) -> int:
        """Trim, watermark and upload a preview clip for every audio-ready job."""
        jobs = await self.store.list_jobs_in_stage(JobStage.AUDIO_READY)
        if not jobs:
            return 0

        done = 0
        with self._scratch_dir() as tmp:
            watermark = ""
            if self.config.watermark_url:
                try:
                    watermark = await self.download(self.config.watermark_url, os.path.join(tmp, "watermark.mp3"))
                except Exception as e:
                    logger.error("watermark_download_failed", error=str(e))
                    for job in jobs:
                        await self._fail(job, e)
                    return 0

            for job in jobs:
                try:
                    clip_url = await self._produce_clip(job, tmp, watermark)
                except Exception as e:
                    await self._fail(job, e)
                    continue
                if await self._advance(job, JobStage.READY_TO_SEND, clip_url=clip_url):
                    done += 1
        return done

    async def _produce_clip(self, job: ProductionJob, tmp: str, watermark: str) -> str:
        if not job.full_audio_url:
            raise InvalidPayload(f"Job {job.id} has no full audio URL")
        full = await self.download(job.full_audio_url, os.path.join(tmp, f"{job.id}-full.mp3"))
        clip = await self.transcoder.trim(full, os.path.join(tmp, f"{job.id}-clip.m4a"), self.config.clip_seconds)
        if watermark:
            clip = await self.transcoder.mix(
                clip, watermark, os.path.join(tmp, f"{job.id}-watermarked.m4a"),
                delay_ms=self.config.watermark_delay_ms, gain=self.config.watermark_gain,
            )
        return await self.blobs.upload_file(clip, f"songs/clip/{job.id}-clip.m4a", "audio/mp4")

    # ══════════════════════════════════════════════════════════
    #  DELIVERY
    # ══════════════════════════════════════════════════════════

    def listen_url(self, token: str) -> str:
        return f"{self.config.listen_base_url.rstrip('/')}/{token}"

    async def _send(self, job: ProductionJob, payload: Payload) -> None:
        if job.lead_phone:
            await self.dispatcher.send_to_phone(job.lead_phone, payload)
        else:
            await self.dispatcher.deliver(job.lead_id, payload)

    async def deliver_songs(self) -> int:
        """Send lyrics plus a capped listen link for every ready-to-send job."""
        jobs = await self.store.list_jobs_in_stage(JobStage.READY_TO_SEND)
        delivered = 0
        for job in jobs:
            try:
                sent = await self._deliver_one(job)
            except Exception as e:
                await self._fail(job, e)
                continue
            delivered += sent
        return delivered

    async def _deliver_one(self, job: ProductionJob) -> bool:
        """
        Attach the listen token first; only the run that attached it sends,
        so overlapping delivery ticks never message the customer twice.
        """
        lead = await self.store.get_lead(job.lead_id) if job.lead_id else None
        if not job.lead_phone and not (lead and lead.phone):
            raise MissingPhone(job.lead_id or job.id)
        if not job.lyrics:
            raise InvalidPayload(f"Job {job.id} has no lyrics")

        name = first_name(lead.name) if lead else ""
        greeting = LYRICS_MESSAGE.format(name=name, lyrics=job.lyrics) if name \
            else LYRICS_MESSAGE_NO_NAME.format(lyrics=job.lyrics)
        token = ListenToken(value=secrets.token_urlsafe(16), max_plays=self.config.max_plays)
        if not await self.store.claim_delivery(job.id, token, utcnow()):
            logger.info("song_delivery_already_claimed", job_id=job.id)
            return False

        await self._send(job, Payload(kind=MessageKind.TEXT, content=greeting))
        await self._send(job, Payload(kind=MessageKind.TEXT, content=LINK_MESSAGE.format(url=self.listen_url(token.value))))

        if not await self._advance(job, JobStage.DELIVERED):
            return False
        logger.info("song_delivered", job_id=job.id, lead_id=job.lead_id)
        if job.lead_id:
            await self.store.add_lead_tags(job.lead_id, self.sequences.delivered_tag)
            await self._start_sales(job.lead_id)
        return True

    async def _start_sales(self, lead_id: str) -> None:
        """Start the sales sequence unless the lead already has it pending."""
        pending = await self.store.list_tasks(lead_id=lead_id, status=TaskStatus.PENDING)
        if any(t.sequence_id == self.sequences.sales_sequence for t in pending):
            return
        await self.scheduler.schedule_sequence(lead_id, self.sequences.sales_sequence)

    # ══════════════════════════════════════════════════════════
    #  LISTEN GATE
    # ══════════════════════════════════════════════════════════

    async def _job_for_token(self, token: str) -> ProductionJob:
        job = await self.store.find_job_by_listen_token(token) if token else None
        if job is None or job.listen is None:
            raise TokenNotFound(token)
        return job

    async def check_listen_link(self, token: str) -> ProductionJob:
        """Resolve a listen link without counting a play."""
        job = await self._job_for_token(token)
        if job.listen.disabled:
            raise LinkDisabled(token)
        return job

    async def open_listen_stream(self, token: str) -> str:
        """Count one play and return the URL to stream; clip preferred over full song."""
        job = await self._job_for_token(token)
        if job.listen.disabled:
            raise LinkDisabled(token)
        url = job.clip_url or job.full_audio_url
        if not url:
            raise NotFound("Audio not available", token=token)

        if not await self.store.increment_play_count(job.id):
            current = await self.store.get_job(job.id)
            if current and current.listen and current.listen.disabled:
                raise LinkDisabled(token)
            raise PlayLimitReached(token, job.listen.max_plays)

        logger.info("listen_play_counted", job_id=job.id, plays=job.listen.play_count + 1,
                    max_plays=job.listen.max_plays)
        return url

    async def record_listen_progress(self, token: str, fraction: float) -> bool:
        """
        Past the half-heard threshold, flip the job's flag; the call that flips
        it stops the sales sequence and starts the follow-up. Returns True
        only for that call.
        """
        job = await self._job_for_token(token)
        if fraction < self.config.half_heard_fraction:
            return False
        if not await self.store.mark_half_heard(job.id):
            return False

        logger.info("listen_half_heard", job_id=job.id, lead_id=job.lead_id)
        if job.lead_id:
            try:
                await self.scheduler.cancel_sequences(job.lead_id, [self.sequences.sales_sequence])
                await self.scheduler.schedule_sequence(job.lead_id, self.sequences.follow_up_sequence)
            except Exception as e:
                # clear the flag so the next beacon tries again
                await self.store.mark_half_heard(job.id, False)
                logger.error("listen_follow_up_failed", job_id=job.id, lead_id=job.lead_id, error=str(e))
                raise
        return True

    # ══════════════════════════════════════════════════════════
    #  MANUAL OPERATIONS
    # ══════════════════════════════════════════════════════════

    async def send_clip(self, lead_id: str) -> ProductionJob:
        """Re-send the lead's latest clip as inline audio."""
        job = await self.store.find_latest_job_for_lead(lead_id)
        if job is None:
            raise JobNotFound(lead_id)
        if not job.clip_url:
            raise InvalidPayload(f"Job {job.id} has no clip yet")
        await self.dispatcher.deliver(lead_id, Payload(kind=MessageKind.CLIP, content=job.clip_url))
        return job

    async def retry_failed(self, job_id: str) -> ProductionJob:
        """Return an errored job to the stage it failed in."""
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        target = RETRY_TARGET.get(job.failed_stage or JobStage.AWAITING_LYRICS, JobStage.AWAITING_LYRICS)
        if job.stage != JobStage.ERROR:
            raise InvalidTransition(job.stage.value, target.value)

        fields: dict[str, Any] = {"error_message": "", "failed_stage": None}
        if target == JobStage.AWAITING_GENERATION:
            fields.update(external_task_id=None, generation_started_at=None)
        if target == JobStage.READY_TO_SEND:
            fields.update(listen=None, sent_at=None)
        if not await self._advance(job, target, **fields):
            raise InvalidTransition(job.stage.value, target.value)
        return await self.store.get_job(job_id)
