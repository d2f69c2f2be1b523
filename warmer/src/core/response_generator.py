"""
Response Generator
===================

Everything the warming engine says comes from here:

  generate_greeting       → conversation opener (forced variety)
  generate_reply          → 1-2 sentence reply to the running history
  generate_media_caption  → caption grounded in the image being sent
  describe_image          → vision description of an inbound photo/sticker
  transcribe_audio        → transcript of an inbound voice note

Contract: every public method returns something usable. A backend failure
never escapes to the orchestrator, which has no retry path in the middle of a
live send; instead a human-plausible fallback is returned and the failure is
logged.
"""

import re
import random
import logging
from dataclasses import dataclass
from typing import List, Optional

from warmer.src.core.conversation_store import Turn, render_history
from warmer.src.core.generative_model import GenerativeModel

logger = logging.getLogger(__name__)

MAX_MEDIA_BYTES = 10 * 1024 * 1024

# Context window for reply / caption prompts
HISTORY_TURNS = 20

GREETING_STYLES = [
    "curious and upbeat",
    "laid-back and casual",
    "playful with a light joke",
    "warm and a little nostalgic",
    "short and energetic",
    "friendly, asking about their day",
    "relaxed, mentioning the weekend",
    "cheerful, asking what they're up to",
    "chill, like catching up with an old friend",
    "enthusiastic about something small",
]

FALLBACK_GREETINGS = [
    "Hey! How are you?",
    "Hi there! What's up?",
    "Hello! How's it going?",
    "Hey, long time! How have you been?",
    "Yo! What are you up to today?",
    "Hiii, how's your week going?",
    "Hey hey! Anything fun happening?",
    "Good to see you here! How's everything?",
    "Hey! Hope your day is going well 😊",
    "Hi! What's new with you?",
]

FALLBACK_REPLIES = [
    "That's interesting!",
    "Tell me more!",
    "I see!",
    "That's cool!",
    "Haha nice",
    "Oh really? How come?",
]

CAPTION_OPENERS = [
    "Check this out!",
    "Look what I found",
    "Thought you'd like this",
    "Haha look at this",
]

_WRAPPING_QUOTES = re.compile(r'^["\'“”‘’]+|["\'“”‘’]+$')


def strip_wrapping_quotes(text: str) -> str:
    return _WRAPPING_QUOTES.sub("", (text or "").strip()).strip()


@dataclass(frozen=True)
class MediaAnalysis:
    text: str
    fallback: bool = False
    error: str = ""


class ResponseGenerator:
    def __init__(self, model: GenerativeModel, rng: Optional[random.Random] = None):
        self.model = model
        self.rng = rng or random.Random()

    # ── Greeting ──────────────────────────────────────────────────────────────

    async def generate_greeting(self, personality_prompt: str,
                                rng: Optional[random.Random] = None) -> str:
        rng = rng or self.rng
        style = rng.choice(GREETING_STYLES)
        seed = rng.randint(1, 10_000)
        prompt = (
            f"{personality_prompt}\n\n"
            "Write the very first message to start a conversation on WhatsApp.\n"
            f"Style: {style}.\n"
            f"Variation #{seed}: do NOT use a generic opener like \"Hey!\" or "
            "\"Hi there!\" on its own; make it sound like a specific person texting.\n"
            "Keep it natural and short (1-2 sentences). Just respond with the message, nothing else."
        )
        try:
            text = strip_wrapping_quotes(await self.model.generate_text(prompt))
            if text:
                return text
        except Exception as e:
            logger.warning(f"[ResponseGenerator] Greeting generation failed: {e}")
        return rng.choice(FALLBACK_GREETINGS)

    # ── Reply ─────────────────────────────────────────────────────────────────

    async def generate_reply(self, personality_prompt: str, history: List[Turn],
                             rng: Optional[random.Random] = None) -> str:
        rng = rng or self.rng
        prompt = (
            f"{personality_prompt}\n\n"
            "Here's the conversation so far:\n\n"
            f"{render_history(history, HISTORY_TURNS)}\n\n"
            "Generate a natural response to their last message. Keep it short "
            "(1-2 sentences) and conversational. Just respond with your message, nothing else."
        )
        try:
            text = strip_wrapping_quotes(await self.model.generate_text(prompt))
            if text:
                return text
        except Exception as e:
            logger.warning(f"[ResponseGenerator] Reply generation failed: {e}")
        return rng.choice(FALLBACK_REPLIES)

    # ── Caption ───────────────────────────────────────────────────────────────

    async def generate_media_caption(self, personality_prompt: str, history: List[Turn],
                                     media_context: str) -> str:
        context = render_history(history, HISTORY_TURNS) or "(no messages yet)"
        prompt = (
            f"{personality_prompt}\n\n"
            "Here's the conversation so far:\n\n"
            f"{context}\n\n"
            f"You are about to send them an image. The image shows: {media_context}\n"
            "Write a short caption (1 sentence) to go with it that fits the conversation. "
            "Just respond with the caption, nothing else."
        )
        try:
            text = strip_wrapping_quotes(await self.model.generate_text(prompt))
            if text:
                return text
        except Exception as e:
            logger.warning(f"[ResponseGenerator] Caption generation failed: {e}")
        return f"{self.rng.choice(CAPTION_OPENERS)} {media_context}".strip()

    # ── Inbound media understanding ───────────────────────────────────────────

    async def describe_image(self, image_bytes: bytes, mime_type: str) -> MediaAnalysis:
        if len(image_bytes or b"") > MAX_MEDIA_BYTES:
            return MediaAnalysis(
                text="an image", fallback=True,
                error=f"image too large ({len(image_bytes)} bytes > {MAX_MEDIA_BYTES})",
            )
        try:
            text = await self.model.generate_text_with_image(
                "Describe this image in 1-2 short sentences: what's in it, the mood, "
                "and any visible text.",
                image_bytes, mime_type or "image/jpeg",
            )
            return MediaAnalysis(text=text.strip())
        except Exception as e:
            logger.warning(f"[ResponseGenerator] Image description failed: {e}")
            return MediaAnalysis(text="an image", fallback=True, error=str(e))

    async def transcribe_audio(self, audio_bytes: bytes, mime_type: str) -> MediaAnalysis:
        if len(audio_bytes or b"") > MAX_MEDIA_BYTES:
            return MediaAnalysis(
                text="voice message", fallback=True,
                error=f"audio too large ({len(audio_bytes)} bytes > {MAX_MEDIA_BYTES})",
            )
        try:
            text = await self.model.generate_text_with_audio(
                "Transcribe this voice message exactly. Respond with the transcript only.",
                audio_bytes, mime_type or "audio/ogg",
            )
            return MediaAnalysis(text=strip_wrapping_quotes(text))
        except Exception as e:
            logger.warning(f"[ResponseGenerator] Audio transcription failed: {e}")
            return MediaAnalysis(text="voice message", fallback=True, error=str(e))
