"""
Text generation — lyrics, style prompts and empathy copy through an LLM.

Supports both Anthropic and OpenAI async SDKs, selected by llm.provider.
lyrics() and style_prompt() raise ProviderError so the pipeline can record
the failure on the job; empathy_message() never raises and falls back to a
fixed sentence instead.
"""
from __future__ import annotations

import re
import structlog
from typing import Optional

from config.settings import LLMConfig, get_settings
from core.errors import ProviderError

logger = structlog.get_logger()

LYRICS_SYSTEM = "You are a creative songwriter. Write in Spanish."
LYRICS_PROMPT = """Write song lyrics in simple language following this structure:
verse 1, verse 2, chorus, verse 3, verse 4 and chorus.
Put the title first, in bold.
Purpose: {purpose}.
Name to include: {include_name}.
Anecdotes: {anecdotes}."""

STYLE_SYSTEM = "You write concise music-style prompts for a song generation model."
STYLE_PROMPT = """Write a style prompt for a song with elements of {artist} (never name the artist),
genre {genre} and a {voice_type} voice. At most {max_chars} characters, elements separated by commas.
Example: rock pop with blues influences, electric guitar, energetic drums.
Reply with the prompt only."""

EMPATHY_SYSTEM = "You are concise, warm and natural. You never invent information."
EMPATHY_PROMPT = """Write one WhatsApp sentence in Spanish as if you were the songwriter.
Acknowledge with empathy what the person shared in their anecdote and thank them warmly.
- Start by greeting the first name "{first_name}" if available.
- One natural sentence, no colons, no quotes, no emojis, no hashtags.
- Use only the data provided; do not invent names or facts.
- Mention artist or genre only if it helps.
- 18 to 35 words. Do not add a closing line.

Data:
- First name: {first_name}
- Anecdote: {anecdotes}
- Genre: {genre}
- Artist: {artist}"""

EMPATHY_CLOSING = "En unos minutos te comparto los siguientes pasos para tu canción."

_QUOTES = re.compile(r"[\"“”']")
_SPACES = re.compile(r"\s+")
_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


def _clean(text: str) -> str:
    return _SPACES.sub(" ", _QUOTES.sub("", text or "")).strip()


def _first_sentence(text: str) -> str:
    t = _clean(text).replace(":", ",")
    return _SENTENCE_END.split(t)[0] if t else ""


def clamp_style(text: str, max_chars: int) -> str:
    """Trim a style prompt to max_chars, preferring to cut at a comma."""
    t = _clean(text).rstrip(".")
    if len(t) <= max_chars:
        return t
    cut = t[:max_chars]
    if "," in cut:
        cut = cut[:cut.rfind(",")]
    return cut.strip(" ,")


def empathy_fallback(first_name: str, anecdotes: str = "") -> str:
    lead_in = f"{first_name}, " if first_name else ""
    note = "me conmueve lo que compartes, es una historia especial" if anecdotes else "gracias por la información"
    return f"{lead_in}{note}. {EMPATHY_CLOSING}"


class TextGenerator:
    """Thin wrapper over the configured LLM provider."""

    def __init__(self, config: Optional[LLMConfig] = None, client=None):
        self.config = config or get_settings().llm
        self._client = client

    @property
    def is_openai(self) -> bool:
        return self.config.provider == "openai"

    async def _get_client(self):
        if self._client is None:
            if self.is_openai:
                from openai import AsyncOpenAI
                self._client = AsyncOpenAI(api_key=self.config.api_key)
            else:
                import anthropic
                self._client = anthropic.AsyncAnthropic(api_key=self.config.api_key)
            logger.info("llm_client_initialized", provider=self.config.provider, model=self.config.model)
        return self._client

    async def complete(self, system: str, prompt: str, max_tokens: int = None, temperature: float = None) -> str:
        """Unified call for both Anthropic and OpenAI; returns stripped text."""
        client = await self._get_client()
        max_tokens = max_tokens or self.config.max_tokens
        temperature = temperature if temperature is not None else self.config.temperature
        messages = [{"role": "user", "content": prompt}]

        try:
            if self.is_openai:
                response = await client.chat.completions.create(
                    model=self.config.model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    messages=[{"role": "system", "content": system}] + messages,
                )
                text = response.choices[0].message.content
            else:
                response = await client.messages.create(
                    model=self.config.model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    system=system,
                    messages=messages,
                )
                text = response.content[0].text
        except Exception as e:
            logger.error("llm_call_failed", provider=self.config.provider, error=str(e))
            raise ProviderError(f"Text generation failed: {e}", service="text_generation") from e

        return (text or "").strip()

    async def lyrics(self, purpose: str, include_name: str, anecdotes: str) -> str:
        text = await self.complete(
            LYRICS_SYSTEM,
            LYRICS_PROMPT.format(purpose=purpose, include_name=include_name, anecdotes=anecdotes),
            max_tokens=400,
        )
        if not text:
            raise ProviderError("Text generation returned no lyrics", service="text_generation")
        return text

    async def style_prompt(self, artist: str, genre: str, voice_type: str, max_chars: int = 120) -> str:
        text = await self.complete(
            STYLE_SYSTEM,
            STYLE_PROMPT.format(artist=artist, genre=genre, voice_type=voice_type, max_chars=max_chars),
            max_tokens=100,
        )
        style = clamp_style(text, max_chars)
        if not style:
            raise ProviderError("Text generation returned no style prompt", service="text_generation")
        return style

    async def empathy_message(self, first_name: str, anecdotes: str = "", genre: str = "", artist: str = "") -> str:
        prompt = EMPATHY_PROMPT.format(
            first_name=first_name or "(not available)",
            anecdotes=anecdotes or "(not available)",
            genre=genre or "(not specified)",
            artist=artist or "(not specified)",
        )
        try:
            text = await self.complete(EMPATHY_SYSTEM, prompt, max_tokens=120, temperature=0.35)
        except ProviderError as e:
            logger.warning("empathy_fallback_used", error=str(e))
            return empathy_fallback(first_name, anecdotes)

        sentence = _first_sentence(text)
        if not sentence:
            return empathy_fallback(first_name, anecdotes)
        return _clean(f"{sentence} {EMPATHY_CLOSING}")
