"""Response generator fallbacks and prompt shape."""
import random

import pytest

from helpers import FakeModel
from warmer.src.core.conversation_store import Direction, Turn, TurnKind
from warmer.src.core.response_generator import (
    CAPTION_OPENERS,
    FALLBACK_GREETINGS,
    FALLBACK_REPLIES,
    GREETING_STYLES,
    MAX_MEDIA_BYTES,
    ResponseGenerator,
    strip_wrapping_quotes,
)

pytestmark = pytest.mark.asyncio


@pytest.fixture
def failing_model():
    model = FakeModel()
    model.fail = True
    return model


async def test_greeting_variety_with_failing_backend(failing_model):
    generator = ResponseGenerator(failing_model, random.Random(0))
    greetings = [await generator.generate_greeting("be nice") for _ in range(20)]
    assert len(set(greetings)) >= 2
    assert all(g in FALLBACK_GREETINGS for g in greetings)


async def test_fallback_greeting_pool_is_large_enough():
    assert len(set(FALLBACK_GREETINGS)) >= 8


async def test_greeting_prompt_carries_style_and_seed():
    model = FakeModel(reply="yo whats good")
    generator = ResponseGenerator(model, random.Random(1))
    assert await generator.generate_greeting("PERSONA") == "yo whats good"
    prompt = model.prompts[-1]
    assert prompt.startswith("PERSONA")
    assert "Variation #" in prompt
    assert any(style in prompt for style in GREETING_STYLES)


async def test_reply_strips_wrapping_quotes():
    model = FakeModel(reply='"sure, sounds fun"')
    generator = ResponseGenerator(model)
    history = [Turn(Direction.INBOUND, TurnKind.TEXT, "wanna hang?")]
    assert await generator.generate_reply("p", history) == "sure, sounds fun"
    assert "Them: wanna hang?" in model.prompts[-1]


async def test_reply_fallback(failing_model):
    generator = ResponseGenerator(failing_model, random.Random(2))
    assert await generator.generate_reply("p", []) in FALLBACK_REPLIES


async def test_blank_reply_falls_back():
    generator = ResponseGenerator(FakeModel(reply='  ""  '), random.Random(2))
    assert await generator.generate_reply("p", []) in FALLBACK_REPLIES


async def test_caption_fallback_concatenates_context(failing_model):
    generator = ResponseGenerator(failing_model, random.Random(4))
    caption = await generator.generate_media_caption("p", [], "sunset over the lake")
    opener, _, rest = caption.partition(" sunset")
    assert opener in CAPTION_OPENERS
    assert caption.endswith("sunset over the lake")


async def test_caption_prompt_mentions_media_context():
    model = FakeModel(reply="look at this view")
    generator = ResponseGenerator(model)
    assert await generator.generate_media_caption("p", [], "a mountain") == "look at this view"
    assert "The image shows: a mountain" in model.prompts[-1]


async def test_oversized_image_is_declined_without_backend_call():
    model = FakeModel()
    generator = ResponseGenerator(model)
    result = await generator.describe_image(b"x" * (MAX_MEDIA_BYTES + 1), "image/jpeg")
    assert result.fallback
    assert "too large" in result.error
    assert model.image_calls == 0


async def test_oversized_audio_is_declined_without_backend_call():
    model = FakeModel()
    generator = ResponseGenerator(model)
    result = await generator.transcribe_audio(b"x" * (MAX_MEDIA_BYTES + 1), "audio/ogg")
    assert result.fallback
    assert model.audio_calls == 0


async def test_backend_error_is_a_fallback_result(failing_model):
    generator = ResponseGenerator(failing_model)
    result = await generator.describe_image(b"img", "image/png")
    assert result.fallback
    assert result.error == "vision down"


async def test_transcription():
    generator = ResponseGenerator(FakeModel())
    result = await generator.transcribe_audio(b"ogg", "audio/ogg")
    assert not result.fallback
    assert result.text == "on my way"


async def test_strip_wrapping_quotes():
    assert strip_wrapping_quotes("“hello”") == "hello"
    assert strip_wrapping_quotes("'it's fine'") == "it's fine"
    assert strip_wrapping_quotes(None) == ""
