"""
Content Policy — Channel Rules
================================

Decides the modality of the next outbound turn. Pure logic, no I/O except
classify_emotion, which asks the model for a sticker mood.

Order is fixed, first match wins:
  1. MEDIA    if media policy enabled and draw < media.frequency
  2. STICKER  if sticker policy enabled and draw < sticker.frequency
  3. TEXT     otherwise

A disabled policy never consumes a random draw, so a seeded RNG produces the
same sequence of decisions regardless of which policies are switched off
further down the chain. Frequencies are conditional on reaching the check.
With sticker_policy.avoid_repeat set, the sticker check is skipped (no draw)
right after an outbound sticker.

Reactions are decided separately (should_react) and stack on top of the
reply; they never take the reply's slot.
"""

import random
import logging
from enum import Enum
from typing import List, Optional

from warmer.src.core.campaign import CampaignConfig
from warmer.src.core.conversation_store import Conversation, Turn, TurnKind, render_history
from warmer.src.core.generative_model import GenerativeModel

logger = logging.getLogger(__name__)


class Channel(str, Enum):
    TEXT = "text"
    MEDIA = "media"
    STICKER = "sticker"


EMOTION_LABELS = ("funny", "love", "sad", "excited", "thumbs_up", "thinking", "wow", "casual")
DEFAULT_EMOTION = "casual"
EMOTION_HISTORY_TURNS = 5

REACTION_EMOJIS = ["👍", "❤️", "😂", "😮", "🙏", "🔥", "😊", "👏"]


def choose_channel(campaign: CampaignConfig, conversation: Optional[Conversation],
                   rng: random.Random) -> Channel:
    media = campaign.media_policy
    if media.enabled and rng.random() < media.frequency:
        return Channel.MEDIA

    sticker = campaign.sticker_policy
    if sticker.enabled and not (sticker.avoid_repeat and _last_outbound_was_sticker(conversation)):
        if rng.random() < sticker.frequency:
            return Channel.STICKER

    return Channel.TEXT


def _last_outbound_was_sticker(conversation: Optional[Conversation]) -> bool:
    if conversation is None:
        return False
    last = conversation.last_outbound()
    return last is not None and last.kind == TurnKind.STICKER


def should_react(probability: float, rng: random.Random) -> bool:
    if probability <= 0:
        return False
    return rng.random() < probability


def pick_reaction_emoji(rng: random.Random) -> str:
    return rng.choice(REACTION_EMOJIS)


def parse_emotion(raw: str) -> str:
    label = (raw or "").strip().strip(".\"'`").lower().replace(" ", "_").replace("-", "_")
    return label if label in EMOTION_LABELS else DEFAULT_EMOTION


async def classify_emotion(history: List[Turn], model: GenerativeModel) -> str:
    """Mood of the last few turns, as one label from EMOTION_LABELS."""
    if not history:
        return DEFAULT_EMOTION
    prompt = (
        "Read this WhatsApp conversation and pick the ONE sticker mood that best fits "
        "a reply to the last message.\n\n"
        f"{render_history(history, EMOTION_HISTORY_TURNS)}\n\n"
        f"Answer with exactly one word from this list: {', '.join(EMOTION_LABELS)}"
    )
    try:
        return parse_emotion(await model.generate_text(prompt))
    except Exception as e:
        logger.warning(f"[ContentPolicy] Emotion classification failed: {e}")
        return DEFAULT_EMOTION
