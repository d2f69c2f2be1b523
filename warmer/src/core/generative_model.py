"""
Generative Model
=================

The text / vision / audio backend behind ResponseGenerator.

GenerativeModel is the contract; OpenAIGenerativeModel is the production
implementation (chat completions for text and vision, Whisper for audio).
Every method may raise: network errors, quota, empty responses. Callers are
expected to catch and fall back.

The OpenAI client is synchronous, so calls run in a worker thread to keep the
event loop responsive while a reply is being generated.
"""

import io
import base64
import asyncio
import logging
from typing import Dict, Optional, Protocol

from openai import OpenAI

logger = logging.getLogger(__name__)

AUDIO_EXTENSIONS = {
    "audio/ogg": "ogg",
    "audio/ogg; codecs=opus": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "audio/wav": "wav",
    "audio/webm": "webm",
}


class GenerativeModel(Protocol):
    async def generate_text(self, prompt: str) -> str: ...

    async def generate_text_with_image(self, prompt: str, image_bytes: bytes, mime_type: str) -> str: ...

    async def generate_text_with_audio(self, prompt: str, audio_bytes: bytes, mime_type: str) -> str: ...


class EmptyResponseError(RuntimeError):
    pass


class OpenAIGenerativeModel:
    def __init__(self, client: OpenAI, config: Optional[Dict] = None):
        config = config or {}
        self.client = client
        self.model = config.get("model", "gpt-4o-mini")
        self.vision_model = config.get("vision_model", "gpt-4o")
        self.transcription_model = config.get("transcription_model", "whisper-1")
        self.temperature = config.get("temperature", 0.9)
        self.max_tokens = config.get("max_tokens", 200)

    # ── Text ──────────────────────────────────────────────────────────────────

    async def generate_text(self, prompt: str) -> str:
        return await asyncio.to_thread(
            self._chat, self.model, [{"role": "user", "content": prompt}]
        )

    # ── Vision ────────────────────────────────────────────────────────────────

    async def generate_text_with_image(self, prompt: str, image_bytes: bytes, mime_type: str) -> str:
        b64 = base64.b64encode(image_bytes).decode("utf-8")
        content = [
            {"type": "text", "text": prompt},
            {
                "type": "image_url",
                "image_url": {"url": f"data:{mime_type};base64,{b64}", "detail": "low"},
            },
        ]
        return await asyncio.to_thread(
            self._chat, self.vision_model, [{"role": "user", "content": content}]
        )

    # ── Audio ─────────────────────────────────────────────────────────────────

    async def generate_text_with_audio(self, prompt: str, audio_bytes: bytes, mime_type: str) -> str:
        """Whisper transcript first, then the prompt is answered over the transcript."""
        transcript = await asyncio.to_thread(self._transcribe, audio_bytes, mime_type)
        if not transcript:
            raise EmptyResponseError("empty transcription")
        return await self.generate_text(f"{prompt}\n\nAudio transcript:\n{transcript}")

    def _transcribe(self, audio_bytes: bytes, mime_type: str) -> str:
        ext = AUDIO_EXTENSIONS.get((mime_type or "").lower(), "ogg")
        buffer = io.BytesIO(audio_bytes)
        buffer.name = f"voice.{ext}"
        resp = self.client.audio.transcriptions.create(
            model=self.transcription_model,
            file=buffer,
            response_format="text",
        )
        return str(resp).strip()

    # ── Shared ────────────────────────────────────────────────────────────────

    def _chat(self, model: str, messages) -> str:
        response = self.client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        text = (response.choices[0].message.content or "").strip()
        if not text:
            raise EmptyResponseError(f"{model} returned an empty response")
        return text
