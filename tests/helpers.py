"""Shared test doubles for the warmer tests.

Regular classes and functions, not fixtures, so they can be imported from both
conftest.py and individual test modules.
"""

import heapq
import asyncio
import itertools
from typing import List, Optional

from warmer.src.core.campaign import CampaignConfig
from warmer.src.whatsapp.transport import InboundMessage, SendResult


class FakeTransport:
    """In-memory MessagingTransport that records every send."""

    def __init__(self, ready: bool = True):
        self.events: asyncio.Queue = asyncio.Queue()
        self.ready = ready
        self.sent = []            # (kind, address, payload)
        self.reactions = []       # (message_ref, emoji)
        self.composing = []
        self.fail_kinds = set()   # kinds that return a failed SendResult
        self.raise_kinds = set()  # kinds that raise
        self.started = False
        self.stopped = False
        self.last_qr = None

    def is_ready(self) -> bool:
        return self.ready

    async def send_text(self, address, text):
        return self._record("text", address, text)

    async def send_media(self, address, data, mime_type, caption=None):
        return self._record("media", address, caption)

    async def send_sticker(self, address, data):
        return self._record("sticker", address, data)

    async def send_reaction(self, message_ref, emoji):
        result = self._check("reaction")
        if result.ok:
            self.reactions.append((message_ref, emoji))
        return result

    async def set_composing(self, address):
        self.composing.append(address)
        return SendResult.success()

    def _check(self, kind) -> SendResult:
        if kind in self.raise_kinds:
            raise RuntimeError(f"{kind} transport exploded")
        if kind in self.fail_kinds:
            return SendResult.failure(f"{kind} rejected")
        return SendResult.success()

    def _record(self, kind, address, payload) -> SendResult:
        result = self._check(kind)
        if result.ok:
            self.sent.append((kind, address, payload))
        return result

    def sent_of(self, kind: str, address: Optional[str] = None) -> List:
        return [s for s in self.sent if s[0] == kind and (address is None or s[1] == address)]

    # SessionManager lifecycle
    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def get_status(self):
        return {"status": "open" if self.ready else "disconnected", "ready": self.ready}


class FakeModel:
    """GenerativeModel stub. Set `fail` to make every call raise."""

    def __init__(self, reply: str = "haha yeah, you?", emotion: str = "funny"):
        self.reply = reply
        self.emotion = emotion
        self.image_description = "a dog on a beach"
        self.transcript = "on my way"
        self.fail = False
        self.gate: Optional[asyncio.Event] = None
        self.prompts: List[str] = []
        self.image_calls = 0
        self.audio_calls = 0

    async def generate_text(self, prompt):
        self.prompts.append(prompt)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise RuntimeError("backend down")
        if "sticker mood" in prompt:
            return self.emotion
        return self.reply

    async def generate_text_with_image(self, prompt, image_bytes, mime_type):
        self.image_calls += 1
        if self.fail:
            raise RuntimeError("vision down")
        return self.image_description

    async def generate_text_with_audio(self, prompt, audio_bytes, mime_type):
        self.audio_calls += 1
        if self.fail:
            raise RuntimeError("audio down")
        return self.transcript


class _VirtualHandle:
    def __init__(self):
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class VirtualScheduler:
    """Scheduler on a simulated clock. Nothing fires until advance() is awaited."""

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = start
        self._queue = []          # heap of (when, seq, kind, handle, payload)
        self._seq = itertools.count()
        self._tasks = set()
        self.delays: List[float] = []
        self.continuations = []   # every fn ever passed to after()

    def after(self, delay, fn):
        handle = _VirtualHandle()
        self.delays.append(delay)
        self.continuations.append(fn)
        heapq.heappush(self._queue, (self._now + delay, next(self._seq), "timer", handle, fn))
        return handle

    async def sleep(self, seconds):
        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._queue, (self._now + seconds, next(self._seq), "sleep", None, future))
        await future

    def now(self):
        return self._now

    def cancel_all(self):
        kept = []
        for entry in self._queue:
            if entry[2] == "timer":
                entry[3].cancel()
            else:
                kept.append(entry)
        heapq.heapify(kept)
        self._queue = kept

    @property
    def pending(self) -> int:
        return sum(1 for e in self._queue if e[2] == "timer" and not e[3].cancelled)

    async def advance(self, seconds: float = 0.0):
        target = self._now + seconds
        await settle()
        while self._queue and self._queue[0][0] <= target:
            when, _, kind, handle, payload = heapq.heappop(self._queue)
            self._now = max(self._now, when)
            if kind == "timer":
                if not handle.cancelled:
                    task = asyncio.ensure_future(payload())
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
            elif not payload.done():
                payload.set_result(None)
            await settle()
        self._now = target
        await settle()


async def settle(rounds: int = 50):
    """Let every ready task run until the loop goes quiet."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def inbound(source: str = "111", body: str = "hi", timestamp: int = 1700000001, **kwargs) -> InboundMessage:
    return InboundMessage(source=f"{source}@c.us", to="999@c.us", body=body,
                          timestamp=timestamp, **kwargs)


def make_campaign(**overrides) -> CampaignConfig:
    """Zero delays, no reactions, one target "111"."""
    fields = dict(
        personality_prompt="x",
        targets=("111",),
        reply_delay_range=(0.0, 0.0),
        typing_duration_range=(0.0, 0.0),
        reaction_probability=0.0,
    )
    fields.update(overrides)
    return CampaignConfig(**fields)
