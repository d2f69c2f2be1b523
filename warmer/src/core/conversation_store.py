"""
Conversation Store
===================

Per-contact warming state for the current session:

  address → Conversation {history: [Turn], last_activity_at}
  address → pending inbound text (single slot, latest wins) for paused contacts

Every mutation is a single synchronous call. Callers on the event loop get
atomic "append turn" semantics for free as long as they never split a
read-compute-write across an await, which this API does not allow.

Non-text turns carry a synthetic description in `text` (e.g.
'[Voice message: "on my way"]') so a mixed history always renders to plain
dialogue lines for the generator.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class TurnKind(str, Enum):
    TEXT = "text"
    STICKER = "sticker"
    MEDIA = "media"
    REACTION = "reaction"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class Turn:
    direction: Direction
    kind: TurnKind
    text: str
    timestamp: float = field(default_factory=time.time)

    @property
    def speaker(self) -> str:
        return "Them" if self.direction == Direction.INBOUND else "You"

    def render(self) -> str:
        return f"{self.speaker}: {self.text}"

    def to_dict(self) -> Dict:
        return {
            "direction": self.direction.value,
            "kind": self.kind.value,
            "text": self.text,
            "timestamp": self.timestamp,
        }


@dataclass
class Conversation:
    address: str
    history: List[Turn] = field(default_factory=list)
    last_activity_at: float = field(default_factory=time.time)

    def last_outbound(self) -> Optional[Turn]:
        for turn in reversed(self.history):
            if turn.direction == Direction.OUTBOUND:
                return turn
        return None


def render_history(turns: Iterable[Turn], limit: Optional[int] = None) -> str:
    turns = list(turns)
    if limit is not None:
        turns = turns[-limit:]
    return "\n".join(t.render() for t in turns)


class ConversationStore:
    def __init__(self):
        self._conversations: Dict[str, Conversation] = {}
        self._pending: Dict[str, str] = {}

    # ── Conversations ─────────────────────────────────────────────────────────

    def __contains__(self, address: str) -> bool:
        return address in self._conversations

    def __len__(self):
        return len(self._conversations)

    def get(self, address: str) -> Optional[Conversation]:
        return self._conversations.get(address)

    def ensure(self, address: str, now: Optional[float] = None) -> Conversation:
        conversation = self._conversations.get(address)
        if conversation is None:
            conversation = Conversation(address=address, last_activity_at=now or time.time())
            self._conversations[address] = conversation
        return conversation

    def append(self, address: str, turn: Turn) -> Conversation:
        conversation = self.ensure(address, turn.timestamp)
        conversation.history.append(turn)
        conversation.last_activity_at = turn.timestamp
        return conversation

    def append_if_absent(self, address: str, turn: Turn) -> bool:
        """Append unless an identical (text, direction) turn is already recorded."""
        if self.has_turn(address, turn.text, turn.direction):
            return False
        self.append(address, turn)
        return True

    def has_turn(self, address: str, text: str, direction: Direction) -> bool:
        conversation = self._conversations.get(address)
        if conversation is None:
            return False
        return any(t.text == text and t.direction == direction for t in conversation.history)

    def history(self, address: str) -> List[Turn]:
        conversation = self._conversations.get(address)
        return list(conversation.history) if conversation else []

    def addresses(self) -> List[str]:
        return list(self._conversations.keys())

    # ── Pending replies (paused contacts) ─────────────────────────────────────

    def set_pending(self, address: str, text: str):
        self._pending[address] = text

    def pop_pending(self, address: str) -> Optional[str]:
        return self._pending.pop(address, None)

    def has_pending(self, address: str) -> bool:
        return address in self._pending

    # ── Session teardown ──────────────────────────────────────────────────────

    def clear(self):
        self._conversations.clear()
        self._pending.clear()
