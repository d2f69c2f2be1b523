"""Channel choice, reactions and emotion classification."""
import random

import pytest

from helpers import FakeModel, make_campaign
from warmer.src.core.campaign import MediaPolicy, StickerPolicy
from warmer.src.core.content_policy import (
    DEFAULT_EMOTION,
    REACTION_EMOJIS,
    Channel,
    choose_channel,
    classify_emotion,
    parse_emotion,
    pick_reaction_emoji,
    should_react,
)
from warmer.src.core.conversation_store import Conversation, Direction, Turn, TurnKind


def _conversation(*turns):
    return Conversation(address="111", history=list(turns))


def test_text_when_everything_disabled():
    rng = random.Random(1)
    assert choose_channel(make_campaign(), None, rng) == Channel.TEXT


def test_disabled_policies_consume_no_draws():
    rng = random.Random(42)
    before = rng.getstate()
    choose_channel(make_campaign(), None, rng)
    assert rng.getstate() == before


def test_media_checked_before_sticker():
    campaign = make_campaign(
        media_policy=MediaPolicy(enabled=True, frequency=1.0),
        sticker_policy=StickerPolicy(enabled=True, frequency=1.0),
    )
    rng = random.Random(5)
    assert all(choose_channel(campaign, None, rng) == Channel.MEDIA for _ in range(50))


def test_sticker_when_media_misses():
    campaign = make_campaign(
        media_policy=MediaPolicy(enabled=True, frequency=0.0),
        sticker_policy=StickerPolicy(enabled=True, frequency=1.0),
    )
    assert choose_channel(campaign, None, random.Random(5)) == Channel.STICKER


def _after_sticker():
    return _conversation(
        Turn(Direction.OUTBOUND, TurnKind.STICKER, "[Sticker: funny]"),
        Turn(Direction.INBOUND, TurnKind.TEXT, "lol"),
    )


def test_full_sticker_frequency_holds_after_a_sticker():
    campaign = make_campaign(sticker_policy=StickerPolicy(enabled=True, frequency=1.0))
    assert choose_channel(campaign, _after_sticker(), random.Random(5)) == Channel.STICKER


def test_avoid_repeat_skips_sticker_after_sticker_without_a_draw():
    campaign = make_campaign(sticker_policy=StickerPolicy(enabled=True, frequency=1.0, avoid_repeat=True))
    rng = random.Random(5)
    before = rng.getstate()
    assert choose_channel(campaign, _after_sticker(), rng) == Channel.TEXT
    assert rng.getstate() == before
    assert choose_channel(campaign, None, rng) == Channel.STICKER


def test_sticker_frequency_is_roughly_respected():
    campaign = make_campaign(sticker_policy=StickerPolicy(enabled=True, frequency=0.3))
    rng = random.Random(99)
    hits = sum(choose_channel(campaign, None, rng) == Channel.STICKER for _ in range(2000))
    assert 450 < hits < 750


def test_should_react_bounds():
    rng = random.Random(3)
    assert not any(should_react(0.0, rng) for _ in range(100))
    assert all(should_react(1.0, rng) for _ in range(100))


def test_reaction_emoji_from_fixed_set():
    rng = random.Random(3)
    assert all(pick_reaction_emoji(rng) in REACTION_EMOJIS for _ in range(20))


@pytest.mark.parametrize("raw,expected", [
    ("funny", "funny"),
    ("  Thumbs Up. ", "thumbs_up"),
    ("thumbs-up", "thumbs_up"),
    ("\"WOW\"", "wow"),
    ("angry", DEFAULT_EMOTION),
    ("", DEFAULT_EMOTION),
])
def test_parse_emotion(raw, expected):
    assert parse_emotion(raw) == expected


@pytest.mark.asyncio
async def test_classify_emotion_uses_last_five_turns():
    model = FakeModel(emotion="love")
    history = [Turn(Direction.INBOUND, TurnKind.TEXT, f"line {i}") for i in range(8)]
    assert await classify_emotion(history, model) == "love"
    assert "line 2" not in model.prompts[-1]
    assert "Them: line 7" in model.prompts[-1]


@pytest.mark.asyncio
async def test_classify_emotion_failure_defaults_to_casual():
    model = FakeModel()
    model.fail = True
    history = [Turn(Direction.INBOUND, TurnKind.TEXT, "hey")]
    assert await classify_emotion(history, model) == "casual"


@pytest.mark.asyncio
async def test_classify_emotion_empty_history_skips_backend():
    model = FakeModel()
    assert await classify_emotion([], model) == "casual"
    assert model.prompts == []
