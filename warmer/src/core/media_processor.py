"""
Media Processor — Inbound Media → Conversation Text
=====================================================

Turns an inbound media message into the synthetic line stored in the
conversation, so the generator keeps linguistic context for non-text turns:

  image          → [Image: <vision description>] <caption>
  sticker        → [Sticker: <vision description>]
  audio / voice  → [Voice message: "<transcript>"]
  anything else  → [Sent a <type>] <caption>

Never raises. Missing bytes, oversized payloads and backend errors all
degrade to a generic placeholder flagged with `fallback=True`.

Successful results are cached by SHA-256 of the payload so the same forwarded
image is only described once.
"""

import hashlib
import logging
from collections import OrderedDict
from dataclasses import dataclass

from warmer.src.core.response_generator import MediaAnalysis, ResponseGenerator
from warmer.src.whatsapp.transport import InboundMessage

logger = logging.getLogger(__name__)

IMAGE_TYPES = {"image", "photo"}
STICKER_TYPES = {"sticker"}
AUDIO_TYPES = {"audio", "voice", "ptt"}

CACHE_SIZE = 256


@dataclass(frozen=True)
class MediaContext:
    kind: str        # image | sticker | voice | other
    text: str        # line stored in the conversation
    fallback: bool = False
    error: str = ""


class MediaProcessor:
    def __init__(self, generator: ResponseGenerator):
        self.generator = generator
        self._cache: "OrderedDict[str, MediaContext]" = OrderedDict()

    async def handle_media_message(self, event: InboundMessage) -> MediaContext:
        media_type = (event.media_type or "").lower()
        caption = (event.body or "").strip()

        if media_type in AUDIO_TYPES:
            kind = "voice"
        elif media_type in STICKER_TYPES:
            kind = "sticker"
        elif media_type in IMAGE_TYPES:
            kind = "image"
        else:
            kind = "other"

        if kind == "other":
            label = media_type or "file"
            return MediaContext(kind=kind, text=f"[Sent a {label}] {caption}".strip(), fallback=True)

        if not event.media_bytes:
            return self._placeholder(kind, caption, "media payload missing")

        file_hash = hashlib.sha256(event.media_bytes).hexdigest()
        cached = self._cache.get(file_hash)
        if cached is not None:
            return self._with_caption(cached, caption)

        try:
            if kind == "voice":
                analysis = await self.generator.transcribe_audio(event.media_bytes, event.mime_type)
            else:
                analysis = await self.generator.describe_image(event.media_bytes, event.mime_type)
        except Exception as e:
            logger.warning(f"[MediaProcessor] {kind} processing failed: {e}")
            return self._placeholder(kind, caption, str(e))

        context = self._format(kind, analysis)
        if not context.fallback:
            self._remember(file_hash, context)
        return self._with_caption(context, caption)

    # ── Formatting ────────────────────────────────────────────────────────────

    def _format(self, kind: str, analysis: MediaAnalysis) -> MediaContext:
        if analysis.fallback:
            return self._placeholder(kind, "", analysis.error)
        if kind == "voice":
            text = f'[Voice message: "{analysis.text}"]'
        elif kind == "sticker":
            text = f"[Sticker: {analysis.text}]"
        else:
            text = f"[Image: {analysis.text}]"
        return MediaContext(kind=kind, text=text)

    def _placeholder(self, kind: str, caption: str, error: str) -> MediaContext:
        label = {"voice": "[Voice message]", "sticker": "[Sticker]"}.get(kind, "[Image]")
        return MediaContext(kind=kind, text=f"{label} {caption}".strip(), fallback=True, error=error)

    def _with_caption(self, context: MediaContext, caption: str) -> MediaContext:
        if not caption or context.kind == "voice":
            return context
        return MediaContext(kind=context.kind, text=f"{context.text} {caption}",
                            fallback=context.fallback, error=context.error)

    def _remember(self, file_hash: str, context: MediaContext):
        self._cache[file_hash] = context
        while len(self._cache) > CACHE_SIZE:
            self._cache.popitem(last=False)
