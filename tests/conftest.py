"""Shared test fixtures for SongFunnel."""
import random
from unittest.mock import AsyncMock

import pytest

from config.settings import IntakeConfig, PipelineConfig, SequenceConfig
from core.dispatcher import DeliveryDispatcher
from core.intake import LeadIntake
from database.store_memory import InMemoryStore
from models.schemas import Lead
from pipeline.controller import ProductionPipeline
from pipeline.recovery import RecoverySupervisor
from sequences.scheduler import SequenceScheduler
from tests.doubles import FakeBlobStore, FakeDownloader, RecordingGateway, make_definition


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def sequence_config() -> SequenceConfig:
    return SequenceConfig(shard_count=4, batch_size=50, dispatch_concurrency=5)


@pytest.fixture
def pipeline_config(tmp_path) -> PipelineConfig:
    return PipelineConfig(
        watermark_url="https://cdn.test/watermark.mp3",
        listen_base_url="https://songs.test/listen",
        scratch_dir=str(tmp_path),
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def dispatcher(store, gateway) -> DeliveryDispatcher:
    return DeliveryDispatcher(store, gateway)


@pytest.fixture
def scheduler(store, dispatcher, sequence_config) -> SequenceScheduler:
    return SequenceScheduler(store, dispatcher, sequence_config, worker_id="worker-a", rng=random.Random(7))


@pytest.fixture
def text_generator() -> AsyncMock:
    text = AsyncMock()
    text.lyrics.return_value = "**Canción para Ana**\nVerso uno\nCoro"
    text.style_prompt.return_value = "pop ballad, acoustic guitar, soft female vocal"
    text.empathy_message.return_value = "Ana, gracias por contarnos tu historia."
    return text


@pytest.fixture
def audio_client() -> AsyncMock:
    audio = AsyncMock()
    audio.start.return_value = "task-001"
    return audio


@pytest.fixture
def transcoder() -> AsyncMock:
    t = AsyncMock()
    t.trim.side_effect = lambda in_path, out_path, duration_s: out_path
    t.mix.side_effect = lambda main, overlay, out_path, delay_ms=1000, gain=0.3: out_path
    return t


@pytest.fixture
def blobs() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def downloader() -> FakeDownloader:
    return FakeDownloader()


@pytest.fixture
def pipeline(store, dispatcher, scheduler, text_generator, audio_client, transcoder, blobs,
             downloader, pipeline_config, sequence_config) -> ProductionPipeline:
    return ProductionPipeline(
        store, dispatcher, scheduler, text_generator, audio_client, transcoder, blobs,
        config=pipeline_config, sequences=sequence_config, downloader=downloader,
    )


@pytest.fixture
def recovery(store, pipeline_config) -> RecoverySupervisor:
    return RecoverySupervisor(store, pipeline_config)


@pytest.fixture
def intake(store, scheduler, text_generator, sequence_config) -> LeadIntake:
    config = IntakeConfig(keyword_triggers={"#web1490": "web-1490"})
    return LeadIntake(store, scheduler, text_generator, config, sequence_config, rng=random.Random(3))


@pytest.fixture
def lead() -> Lead:
    return Lead(id="lead-ana", name="Ana María López", phone="5512345678")


@pytest.fixture
async def funnel_definitions(store):
    """new-lead, song-sales and song-follow-up with three steps each."""
    for seq in ("new-lead", "song-sales", "song-follow-up"):
        await store.upsert_sequence_definition(make_definition(seq, [0, 5, 60]))
    return store
