"""
CampaignConfig — the immutable settings of one warming run.
"""

from typing import Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_PERSONALITY = (
    "You are a casual, friendly person chatting on WhatsApp. You're warm, engaging, "
    "and conversational. Keep your messages short (1-2 sentences), natural, and use "
    "common texting language. You're helpful and ask questions to keep the "
    "conversation flowing."
)

MAX_REPLY_DELAY_SECONDS = 120.0
DEFAULT_TYPING_RANGE = (1.0, 3.0)


class StickerPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    frequency: float = Field(default=0.2, ge=0.0, le=1.0)
    fallback_to_text: bool = True
    # Skip the sticker check when the previous outbound turn was a sticker
    avoid_repeat: bool = False


class MediaPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    frequency: float = Field(default=0.1, ge=0.0, le=1.0)


class CampaignConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    personality_prompt: str = DEFAULT_PERSONALITY
    targets: Tuple[str, ...] = ()
    reply_delay_range: Tuple[float, float] = (3.0, 8.0)
    typing_duration_range: Tuple[float, float] = DEFAULT_TYPING_RANGE
    sticker_policy: StickerPolicy = StickerPolicy()
    media_policy: MediaPolicy = MediaPolicy()
    reaction_probability: float = Field(default=0.15, ge=0.0, le=1.0)

    @field_validator("targets")
    @classmethod
    def _unique_targets(cls, targets):
        cleaned = tuple(t.strip() for t in targets)
        if any(not t for t in cleaned):
            raise ValueError("target addresses must be non-empty")
        if len(set(cleaned)) != len(cleaned):
            raise ValueError("duplicate target addresses")
        return cleaned

    @field_validator("reply_delay_range", "typing_duration_range")
    @classmethod
    def _valid_range(cls, value):
        low, high = value
        if low < 0:
            raise ValueError("range minimum must be >= 0")
        if high < low:
            raise ValueError("range maximum must be >= minimum")
        if high > MAX_REPLY_DELAY_SECONDS:
            raise ValueError(f"range maximum cannot exceed {MAX_REPLY_DELAY_SECONDS:g} seconds")
        return value

    @model_validator(mode="before")
    @classmethod
    def _default_typing_within_reply_delay(cls, data):
        # An unset typing range shrinks to fit under the reply delay floor
        if not isinstance(data, dict) or "typing_duration_range" in data or "reply_delay_range" not in data:
            return data
        try:
            floor = max(float(data["reply_delay_range"][0]), 0.0)
        except (TypeError, ValueError, IndexError):
            return data
        low, high = DEFAULT_TYPING_RANGE
        return {**data, "typing_duration_range": (min(low, floor), min(high, floor))}

    @model_validator(mode="after")
    def _typing_fits_in_reply_delay(self):
        if self.typing_duration_range[1] > self.reply_delay_range[0]:
            raise ValueError(
                "typing duration maximum must not exceed the minimum reply delay"
            )
        return self
