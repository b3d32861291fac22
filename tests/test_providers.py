"""Tests for the text, audio, transcoding and blob providers."""
import json
import subprocess
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from config.settings import AudioProviderConfig, LLMConfig
from core.errors import InvalidPayload, ProviderError, TranscodeError
from providers.audio_generation import AudioGenerationClient, parse_generation_callback
from providers.blob_store import LocalBlobStore
from providers.text_generation import EMPATHY_CLOSING, TextGenerator, clamp_style, empathy_fallback
from providers.transcoder import FFmpegTranscoder


def openai_client(reply: str = "", error: Exception = None) -> MagicMock:
    client = MagicMock()
    create = AsyncMock()
    if error is not None:
        create.side_effect = error
    else:
        create.return_value = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=reply))])
    client.chat.completions.create = create
    return client


def anthropic_client(reply: str) -> MagicMock:
    client = MagicMock()
    client.messages.create = AsyncMock(return_value=SimpleNamespace(content=[SimpleNamespace(text=reply)]))
    return client


class TestParseGenerationCallback:
    def test_nested_task_and_first_audio(self):
        cb = parse_generation_callback({
            "code": 200,
            "data": {
                "callbackType": "complete",
                "task_id": "t-1",
                "data": [{"id": "a"}, {"audio_url": "https://p/1.mp3"}, {"audio_url": "https://p/2.mp3"}],
            },
        })
        assert cb.task_id == "t-1"
        assert cb.audio_url == "https://p/1.mp3"

    def test_top_level_task_and_source_url(self):
        cb = parse_generation_callback({"taskId": 42, "data": {"data": [{"source_audio_url": "https://p/s.mp3"}]}})
        assert cb.task_id == "42"
        assert cb.audio_url == "https://p/s.mp3"

    def test_progress_event_has_no_audio(self):
        cb = parse_generation_callback({"data": {"taskId": "t-2", "callbackType": "text"}})
        assert cb.audio_url == ""

    @pytest.mark.parametrize("raw", [None, [], {"data": {}}, {"data": "t-1"}])
    def test_rejects_bodies_without_task(self, raw):
        with pytest.raises(InvalidPayload):
            parse_generation_callback(raw)


class TestAudioGenerationClient:
    @pytest.mark.asyncio
    async def test_start_returns_task_id(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"code": 200, "data": {"taskId": "abc123"}})

        config = AudioProviderConfig(base_url="https://music.test/api", api_key="k", callback_url="https://me/cb")
        client = AudioGenerationClient(config, transport=httpx.MockTransport(handler))

        assert await client.start("Para Ana", "pop ballad", "Verso uno") == "abc123"
        assert seen["auth"] == "Bearer k"
        assert seen["body"]["title"] == "Para Ana"
        assert seen["body"]["prompt"] == "Verso uno"
        assert seen["body"]["callbackUrl"] == "https://me/cb"
        assert seen["body"]["customMode"] is True
        await client.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,body", [
        (200, {"code": 400, "msg": "bad lyrics"}),
        (200, {"code": 200, "data": {}}),
        (401, {"msg": "unauthorized"}),
    ])
    async def test_failures_raise_provider_error(self, status, body):
        transport = httpx.MockTransport(lambda request: httpx.Response(status, json=body))
        client = AudioGenerationClient(AudioProviderConfig(base_url="https://music.test"), transport=transport)
        with pytest.raises(ProviderError):
            await client.start("t", "s", "l")


class TestTextGenerator:
    @pytest.mark.asyncio
    async def test_openai_lyrics(self):
        client = openai_client("  **Para Ana**\nVerso  ")
        gen = TextGenerator(LLMConfig(provider="openai", model="gpt-4o"), client=client)

        assert await gen.lyrics("boda", "Ana", "playa") == "**Para Ana**\nVerso"
        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["messages"][0]["role"] == "system"
        assert "Purpose: boda." in kwargs["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_anthropic_style_prompt_is_clamped(self):
        reply = "rock pop, electric guitar, energetic drums, gritty male vocal, stadium reverb."
        gen = TextGenerator(LLMConfig(provider="anthropic", model="claude"), client=anthropic_client(reply))
        assert await gen.style_prompt("Maná", "rock", "male", max_chars=40) == "rock pop, electric guitar"

    @pytest.mark.asyncio
    async def test_empty_lyrics_raise(self):
        gen = TextGenerator(LLMConfig(), client=openai_client("   "))
        with pytest.raises(ProviderError):
            await gen.lyrics("boda", "", "")

    @pytest.mark.asyncio
    async def test_sdk_errors_become_provider_errors(self):
        gen = TextGenerator(LLMConfig(), client=openai_client(error=RuntimeError("rate limited")))
        with pytest.raises(ProviderError, match="rate limited"):
            await gen.style_prompt("a", "b", "c")

    @pytest.mark.asyncio
    async def test_empathy_keeps_first_sentence_and_adds_closing(self):
        reply = 'Ana: qué "hermosa" historia de la playa. Seguro será especial! Saludos.'
        gen = TextGenerator(LLMConfig(), client=openai_client(reply))
        msg = await gen.empathy_message("Ana", "playa")
        assert msg == f"Ana, qué hermosa historia de la playa. {EMPATHY_CLOSING}"

    @pytest.mark.asyncio
    async def test_empathy_falls_back_on_failure(self):
        gen = TextGenerator(LLMConfig(), client=openai_client(error=RuntimeError("down")))
        assert await gen.empathy_message("Ana", "playa") == empathy_fallback("Ana", "playa")


class TestTextHelpers:
    def test_clamp_style(self):
        assert clamp_style("pop, guitar", 120) == "pop, guitar"
        assert clamp_style("a" * 50, 10) == "a" * 10
        assert clamp_style('"pop ballad."', 120) == "pop ballad"

    def test_empathy_fallback(self):
        assert empathy_fallback("").startswith("gracias por la información.")
        assert empathy_fallback("Ana", "x").startswith("Ana, me conmueve")


class TestTranscoderAndBlobs:
    @pytest.mark.asyncio
    async def test_missing_ffmpeg_raises(self, tmp_path):
        transcoder = FFmpegTranscoder(ffmpeg_bin=str(tmp_path / "no-ffmpeg"))
        with pytest.raises(TranscodeError):
            await transcoder.trim(str(tmp_path / "in.mp3"), str(tmp_path / "out.m4a"), 60)

    @pytest.mark.asyncio
    async def test_hung_ffmpeg_times_out(self, tmp_path, monkeypatch):
        calls = []

        def hang(cmd, **kwargs):
            calls.append(kwargs["timeout"])
            raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

        monkeypatch.setattr(subprocess, "run", hang)
        transcoder = FFmpegTranscoder(timeout=5)
        with pytest.raises(TranscodeError, match="timed out after 5s"):
            await transcoder.mix(str(tmp_path / "a.m4a"), str(tmp_path / "wm.mp3"), str(tmp_path / "out.m4a"))
        assert calls == [5]

    @pytest.mark.asyncio
    async def test_local_blob_store(self, tmp_path):
        src = tmp_path / "clip.m4a"
        src.write_bytes(b"data")
        blobs = LocalBlobStore(str(tmp_path / "media"), "http://cdn.test/media/")

        url = await blobs.upload_file(str(src), "songs/clip/j1-clip.m4a", "audio/mp4")

        assert url == "http://cdn.test/media/songs/clip/j1-clip.m4a"
        assert (tmp_path / "media" / "songs" / "clip" / "j1-clip.m4a").read_bytes() == b"data"
