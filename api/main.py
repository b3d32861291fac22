"""
FastAPI Application — REST API, webhooks and the listen page.

Provides:
- Sequence enqueue / cancel and ad-hoc sends
- Lead intake (inbound messages, after-form hand-off)
- Song orders, manual retry and clip re-send
- Generation provider callback
- Play-capped listen page, audio stream and progress beacon
- Periodic driver running the engine in the background
"""
from __future__ import annotations

import html
import structlog
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from channels.base import MessagingGateway
from channels.whatsapp_adapter import WhatsAppBridgeGateway
from config.settings import Settings, get_settings
from core.dispatcher import DeliveryDispatcher
from core.driver import PeriodicDriver
from core.errors import EmptySequence, SequenceNotFound, SongFunnelError
from core.intake import LeadIntake
from database.session import close_db, init_db
from database.store import SqlStore
from database.store_base import BaseStore
from database.store_factory import create_store
from models.schemas import MessageKind, Payload, ProductionJob, utcnow
from pipeline.controller import ProductionPipeline
from pipeline.recovery import RecoverySupervisor
from providers.audio_generation import AudioGenerationClient, parse_generation_callback
from providers.blob_store import BlobStore, create_blob_store, download_to_file
from providers.text_generation import TextGenerator
from providers.transcoder import FFmpegTranscoder
from sequences.scheduler import SequenceScheduler

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────


@dataclass
class Engine:
    settings: Settings
    store: BaseStore
    gateway: MessagingGateway
    dispatcher: DeliveryDispatcher
    scheduler: SequenceScheduler
    pipeline: ProductionPipeline
    recovery: RecoverySupervisor
    intake: LeadIntake
    driver: PeriodicDriver
    audio: AudioGenerationClient


def build_engine(
    settings: Optional[Settings] = None,
    store: Optional[BaseStore] = None,
    gateway: Optional[MessagingGateway] = None,
    text: Optional[TextGenerator] = None,
    audio: Optional[AudioGenerationClient] = None,
    transcoder: Optional[FFmpegTranscoder] = None,
    blobs: Optional[BlobStore] = None,
    downloader=download_to_file,
) -> Engine:
    """Wire every component; any piece can be swapped for a test double."""
    settings = settings or get_settings()
    store = store or create_store(settings.database)
    gateway = gateway or WhatsAppBridgeGateway(settings.gateway)
    text = text or TextGenerator(settings.llm)
    audio = audio or AudioGenerationClient(settings.audio_provider)

    dispatcher = DeliveryDispatcher(store, gateway)
    scheduler = SequenceScheduler(store, dispatcher, settings.sequences)
    pipeline = ProductionPipeline(
        store, dispatcher, scheduler, text, audio,
        transcoder or FFmpegTranscoder(timeout=settings.pipeline.transcode_timeout),
        blobs or create_blob_store(settings.storage),
        config=settings.pipeline,
        sequences=settings.sequences,
        downloader=downloader,
    )
    recovery = RecoverySupervisor(store, settings.pipeline)
    intake = LeadIntake(store, scheduler, text, settings.intake, settings.sequences)
    driver = PeriodicDriver.for_engine(scheduler, pipeline, recovery, settings.schedule)
    return Engine(settings, store, gateway, dispatcher, scheduler, pipeline, recovery, intake, driver, audio)


engine = build_engine()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = engine.settings

    if isinstance(engine.store, SqlStore):
        await init_db(settings.database.url)
    await engine.scheduler.register_definitions(settings.sequence_definitions)

    await engine.gateway.connect()
    if settings.schedule.enabled:
        await engine.driver.start_background()

    logger.info("songfunnel_started",
                store=type(engine.store).__name__,
                gateway=engine.gateway.status.value,
                periodic_jobs=list(engine.driver.jobs) if settings.schedule.enabled else [])
    yield

    await engine.driver.stop()
    await engine.gateway.disconnect()
    await engine.audio.close()
    if isinstance(engine.store, SqlStore):
        await close_db()
    logger.info("songfunnel_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="SongFunnel API",
    description="Messaging funnel and personalised song production engine",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SongFunnelError)
async def songfunnel_error_handler(request: Request, exc: SongFunnelError):
    if exc.http_status >= 500:
        logger.error("request_failed", path=request.url.path, error=str(exc), kind=type(exc).__name__)
    return JSONResponse(
        status_code=exc.http_status,
        content={"ok": False, "error": str(exc), "kind": type(exc).__name__},
    )


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class EnqueueRequest(BaseModel):
    lead_id: str = Field(min_length=1)
    trigger: str = Field(min_length=1)
    start_at: Optional[datetime] = None


class CancelRequest(BaseModel):
    lead_id: str = Field(min_length=1)
    sequence_ids: list[str]


class SendMessageRequest(BaseModel):
    phone: str = Field(min_length=1)
    message: str = Field(min_length=1)
    kind: MessageKind = MessageKind.TEXT


class InboundRequest(BaseModel):
    phone: str = Field(min_length=1)
    name: str = ""
    text: str = ""


class AfterFormRequest(BaseModel):
    lead_id: str = Field(min_length=1)
    summary: dict[str, Any]


class SongOrderRequest(BaseModel):
    lead_id: str = ""
    lead_phone: str = ""
    purpose: str = Field(min_length=1)
    include_name: str = ""
    anecdotes: str = ""
    genre: str = ""
    artist: str = ""
    voice_type: str = ""


class SendClipRequest(BaseModel):
    lead_id: str = Field(min_length=1)


class ProgressRequest(BaseModel):
    token: str = Field(min_length=1)
    fraction: float = Field(ge=0.0, le=1.0)


# ══════════════════════════════════════════════════════════════
#  HEALTH & GATEWAY
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "gateway": engine.gateway.status.value,
        "periodic_jobs": engine.driver.status(),
    }


@app.get("/api/v1/whatsapp/status")
async def whatsapp_status():
    refresh = getattr(engine.gateway, "refresh", None)
    if refresh is not None:
        await refresh()
    report = await engine.gateway.health_check()
    report["qr"] = engine.gateway.current_qr
    return report


# ══════════════════════════════════════════════════════════════
#  SEQUENCES & MESSAGES
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/sequences/enqueue")
async def enqueue_sequence(req: EnqueueRequest):
    definition = await engine.scheduler.resolve_definition(req.trigger)
    if definition is None:
        raise SequenceNotFound(req.trigger)
    if not definition.is_schedulable:
        raise EmptySequence(req.trigger)

    scheduled = await engine.scheduler.schedule_sequence(req.lead_id, req.trigger, req.start_at or utcnow())

    cancelled = 0
    sequences = engine.settings.sequences
    if req.trigger == sequences.sales_sequence:
        cancelled = await engine.scheduler.cancel_sequences(req.lead_id, [sequences.intake_sequence])
        if cancelled:
            await engine.store.update_lead(req.lead_id, intake_cancelled=True)
    return {"ok": True, "scheduled": scheduled, "intake_cancelled": cancelled}


@app.post("/api/v1/sequences/cancel")
async def cancel_sequences(req: CancelRequest):
    cancelled = await engine.scheduler.cancel_sequences(req.lead_id, req.sequence_ids)
    return {"ok": True, "cancelled": cancelled}


@app.post("/api/v1/messages/send")
async def send_message(req: SendMessageRequest):
    sent = await engine.dispatcher.send_to_phone(req.phone, Payload(kind=req.kind, content=req.message))
    return {"ok": True, "sent": sent}


# ══════════════════════════════════════════════════════════════
#  LEADS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/leads/inbound")
async def lead_inbound(req: InboundRequest):
    lead = await engine.intake.handle_inbound(req.phone, req.name, req.text)
    return {"ok": True, "lead_id": lead.id, "tags": lead.tags}


@app.post("/api/v1/leads/after-form")
async def lead_after_form(req: AfterFormRequest):
    task = await engine.intake.after_form(req.lead_id, req.summary)
    return {"ok": True, "task_id": task.id, "due_at": task.due_at.isoformat()}


# ══════════════════════════════════════════════════════════════
#  SONGS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/songs")
async def create_song(req: SongOrderRequest):
    job = await engine.pipeline.create_job(ProductionJob(**req.model_dump()))
    return {"ok": True, "job_id": job.id, "stage": job.stage.value}


@app.post("/api/v1/songs/send-clip")
async def send_clip(req: SendClipRequest):
    job = await engine.pipeline.send_clip(req.lead_id)
    return {"ok": True, "job_id": job.id}


@app.post("/api/v1/songs/{job_id}/retry")
async def retry_song(job_id: str):
    job = await engine.pipeline.retry_failed(job_id)
    return {"ok": True, "job_id": job.id, "stage": job.stage.value}


@app.post("/webhooks/generation")
async def generation_callback(request: Request):
    """Provider callback; intermediate events without audio are acknowledged as-is."""
    try:
        raw = await request.json()
    except ValueError:
        raw = None
    callback = parse_generation_callback(raw)
    job = await engine.pipeline.handle_generation_callback(callback.task_id, callback.audio_url)
    return {"ok": True, "job_id": job.id}


# ══════════════════════════════════════════════════════════════
#  LISTEN GATE
# ══════════════════════════════════════════════════════════════

LISTEN_PAGE = """<!doctype html>
<html lang="es">
<meta charset="utf-8"/>
<meta name="viewport" content="width=device-width,initial-scale=1"/>
<title>Escuchar tu canción</title>
<style>
  body {{ font-family: system-ui, Arial; padding: 20px; max-width: 520px; margin: auto; }}
  .wrap {{ border: 1px solid #ddd; border-radius: 14px; padding: 16px; }}
  .warn {{ color: #9a3412; font-size: 14px; margin-top: 8px; }}
  audio {{ width: 100%; margin-top: 10px; }}
  .muted {{ color: #666; font-size: 13px; }}
</style>
<div class="wrap">
  <h2>🎧 Tu canción</h2>
  <p class="muted">Este enlace permite hasta {max_plays} reproducciones.</p>
  <audio id="player" controls controlsList="nodownload noplaybackrate">
    <source src="/api/v1/listen/{token}/stream" type="audio/mp4"/>
  </audio>
  <p class="warn">No cierres esta ventana mientras escuchas.</p>
</div>
<script>
  (function(){{
    const audio = document.getElementById('player');
    let reported = false;
    setInterval(() => {{
      if (reported || !audio.duration || !isFinite(audio.duration)) return;
      const fraction = (audio.currentTime || 0) / audio.duration;
      if (fraction >= {threshold}) {{
        reported = true;
        fetch('/api/v1/listen/progress', {{
          method: 'POST',
          headers: {{ 'Content-Type': 'application/json' }},
          body: JSON.stringify({{ token: '{token}', fraction: fraction }})
        }}).catch(() => {{}});
      }}
    }}, 2000);
  }})();
</script>
"""

NO_STORE = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


@app.get("/listen/{token}", response_class=HTMLResponse)
async def listen_page(token: str):
    job = await engine.pipeline.check_listen_link(token)
    page = LISTEN_PAGE.format(
        token=html.escape(token, quote=True),
        max_plays=job.listen.max_plays,
        threshold=engine.settings.pipeline.half_heard_fraction,
    )
    return HTMLResponse(page, headers={"Cache-Control": "no-store"})


@app.get("/api/v1/listen/{token}/stream")
async def listen_stream(token: str):
    url = await engine.pipeline.open_listen_stream(token)

    client = httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0), follow_redirects=True)
    try:
        upstream = await client.send(client.build_request("GET", url), stream=True)
        upstream.raise_for_status()
    except httpx.HTTPError as e:
        await client.aclose()
        logger.error("listen_stream_upstream_failed", token=token, error=str(e))
        return JSONResponse(status_code=502, content={"ok": False, "error": "Audio upstream unavailable"})

    async def body():
        try:
            async for chunk in upstream.aiter_bytes():
                yield chunk
        finally:
            await upstream.aclose()
            await client.aclose()

    headers = {**NO_STORE, "Content-Disposition": 'inline; filename="listen.m4a"'}
    return StreamingResponse(
        body(),
        media_type=upstream.headers.get("content-type", "audio/mp4"),
        headers=headers,
    )


@app.post("/api/v1/listen/progress")
async def listen_progress(req: ProgressRequest):
    fired = await engine.pipeline.record_listen_progress(req.token, req.fraction)
    return {"ok": True, "half_heard_recorded": fired}
