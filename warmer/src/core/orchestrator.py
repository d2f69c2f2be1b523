"""
Warming Orchestrator
=====================

State machine that runs one warming campaign for the connected account.

  Idle ──start()──▶ Active ──stop() / disconnect──▶ Idle

Pipeline (per inbound message):
  transport.events → dedup ledger → media understanding → conversation append
      → [Active, target, enabled] → optional reaction (independent)
      → reply scheduled after reply delay
      → composing signal + typing wait
      → ContentPolicy: media → sticker → text
      → transport send → conversation append → notifications

Concurrency: one asyncio loop, paced work deferred through the injected
Scheduler. Each session has an epoch number; every continuation captures the
epoch it was scheduled in and re-checks it after every await, so anything that
completes after stop() (or after a stop + start) is dropped instead of being
applied to the new state.

Nothing here raises past a public method. Failures are logged, reported on
the `warming_error` notification and the turn is simply not recorded.
"""

import random
import asyncio
import logging
from enum import Enum
from typing import Dict, List, Optional, Set

from rich.console import Console
from rich.markup import escape

from warmer.src.core import events
from warmer.src.core.campaign import CampaignConfig
from warmer.src.core.content_policy import (
    DEFAULT_EMOTION,
    Channel,
    choose_channel,
    classify_emotion,
    pick_reaction_emoji,
    should_react,
)
from warmer.src.core.conversation_store import ConversationStore, Direction, Turn, TurnKind
from warmer.src.core.dedup_ledger import DeduplicationLedger, fingerprint
from warmer.src.core.media_processor import MediaProcessor
from warmer.src.core.media_selector import MediaSelector
from warmer.src.core.response_generator import ResponseGenerator
from warmer.src.core.scheduler import Scheduler
from warmer.src.whatsapp.transport import (
    InboundMessage,
    MessagingTransport,
    SendResult,
    SessionStatusChanged,
)

logger = logging.getLogger(__name__)

# Spacing between the greetings of one start() so N targets don't fire at once
GREETING_STAGGER_SECONDS = 2.0


class StartError(str, Enum):
    NO_SESSION = "no_session"
    NO_TARGETS = "no_targets"
    NO_PERSONALITY = "no_personality"

    @property
    def message(self) -> str:
        return {
            StartError.NO_SESSION: "No WhatsApp account connected",
            StartError.NO_TARGETS: "At least one phone number is required",
            StartError.NO_PERSONALITY: "A personality prompt is required",
        }[self]


class _StickerOutcome(str, Enum):
    SENT = "sent"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"


def _media_placeholder(event: InboundMessage) -> str:
    return f"[{event.media_type or 'Media'} message] {event.body}".strip()


class WarmingOrchestrator:
    def __init__(
        self,
        transport: MessagingTransport,
        generator: ResponseGenerator,
        media_selector: MediaSelector,
        scheduler: Scheduler,
        notifier: Optional[events.Notifier] = None,
        rng: Optional[random.Random] = None,
        ledger: Optional[DeduplicationLedger] = None,
        console: Optional[Console] = None,
    ):
        self.transport = transport
        self.generator = generator
        self.media_selector = media_selector
        self.scheduler = scheduler
        self.notifier = notifier or events.Notifier()
        self.rng = rng or random.Random()
        self.ledger = ledger or DeduplicationLedger()
        self.console = console or Console()

        self.media_processor = MediaProcessor(generator)
        self.store = ConversationStore()

        self.active = False
        self.campaign: Optional[CampaignConfig] = None
        self.disabled: Set[str] = set()
        self._epoch = 0

        self._inbound_locks: Dict[str, asyncio.Lock] = {}
        self._inbound_holders: Dict[str, int] = {}
        # Own sticker/media sends whose gateway echo has not come back yet
        self._media_echoes: Dict[str, int] = {}
        self._inbound_tasks: Set[asyncio.Task] = set()

    # ──────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────────────────────────────────

    def start(self, campaign: CampaignConfig) -> Optional[StartError]:
        if self.active:
            logger.info("[Orchestrator] Warming already active")
            return None

        if not self.transport.is_ready():
            return StartError.NO_SESSION
        if not campaign.targets:
            return StartError.NO_TARGETS
        if not campaign.personality_prompt.strip():
            return StartError.NO_PERSONALITY

        self._epoch += 1
        epoch = self._epoch
        self.campaign = campaign
        self.active = True
        self.store.clear()
        self._media_echoes.clear()

        now = self.scheduler.now()
        low, high = campaign.reply_delay_range
        for i, address in enumerate(campaign.targets):
            self.store.ensure(address, now)
            delay = self.rng.uniform(low, high) + i * GREETING_STAGGER_SECONDS
            self.scheduler.after(delay, self._greeting_continuation(address, epoch))

        logger.info(f"[Orchestrator] Warming started for {len(campaign.targets)} contact(s)")
        self.console.print(
            f"[bold green]🔥 WARMING STARTED[/bold green] [dim]{len(campaign.targets)} target(s)[/dim]"
        )
        return None

    def stop(self, reason: str = "stopped"):
        was_active = self.active
        self.active = False
        self._epoch += 1
        self.scheduler.cancel_all()
        self.store.clear()
        self._media_echoes.clear()

        if was_active:
            logger.info(f"[Orchestrator] Warming stopped ({reason})")
            self.console.print(f"[bold red]🛑 WARMING STOPPED[/bold red] [dim]{escape(reason)}[/dim]")
            self.notifier.emit(events.WARMING_STOPPED, reason=reason)

    def is_active(self) -> bool:
        return self.active

    def _is_current(self, epoch: int) -> bool:
        return self.active and epoch == self._epoch

    def _can_send(self, address: str, epoch: int) -> bool:
        return self._is_current(epoch) and self.transport.is_ready() and address in self.store

    # ──────────────────────────────────────────────────────────────────────────
    # Transport events
    # ──────────────────────────────────────────────────────────────────────────

    async def run(self):
        """Drain the transport's event channel forever."""
        logger.info("[Orchestrator] Listening for transport events")
        while True:
            event = await self.transport.events.get()
            if isinstance(event, SessionStatusChanged):
                self.on_session_status(event)
            elif isinstance(event, InboundMessage):
                task = asyncio.create_task(self._handle_inbound(event))
                self._inbound_tasks.add(task)
                task.add_done_callback(self._inbound_tasks.discard)
            else:
                logger.debug(f"[Orchestrator] Ignoring unknown event {event!r}")

    async def _handle_inbound(self, event: InboundMessage):
        # Serialise per contact so inbound turns keep arrival order
        address = event.counterparty
        lock = self._acquire_inbound_lock(address)
        try:
            async with lock:
                try:
                    await self.on_inbound_message(event)
                except Exception as e:
                    logger.error(f"[Orchestrator] Inbound handling failed: {e}", exc_info=True)
                    self.notifier.emit(events.WARMING_ERROR, detail=str(e))
        finally:
            self._release_inbound_lock(address)

    def _acquire_inbound_lock(self, address: str) -> asyncio.Lock:
        if address not in self._inbound_locks:
            self._inbound_locks[address] = asyncio.Lock()
        self._inbound_holders[address] = self._inbound_holders.get(address, 0) + 1
        return self._inbound_locks[address]

    def _release_inbound_lock(self, address: str):
        self._inbound_holders[address] -= 1
        if not self._inbound_holders[address]:
            # Nobody holds or waits on it any more
            del self._inbound_holders[address]
            del self._inbound_locks[address]

    def on_session_status(self, event: SessionStatusChanged):
        logger.info(f"[Orchestrator] Session status: {event.status}")
        self.notifier.emit(events.SESSION_STATUS, status=event.status, reason=event.reason)
        if event.is_disconnect and self.active:
            self.stop(reason="disconnected")

    # ──────────────────────────────────────────────────────────────────────────
    # Inbound
    # ──────────────────────────────────────────────────────────────────────────

    async def on_inbound_message(self, event: InboundMessage):
        key = fingerprint(event.source, event.timestamp, event.body)
        if not self.ledger.check_and_record(key):
            logger.debug(f"[Orchestrator] Duplicate delivery dropped: {key}")
            return

        address = event.counterparty
        if not address:
            return

        text, kind = event.body, TurnKind.TEXT
        if event.has_media and event.from_me:
            # Our own media needs no vision or transcription pass
            text, kind = _media_placeholder(event), TurnKind.FALLBACK
        elif event.has_media:
            try:
                context = await self.media_processor.handle_media_message(event)
                text = context.text
                kind = TurnKind.FALLBACK if context.fallback else TurnKind.MEDIA
            except Exception as e:
                logger.warning(f"[Orchestrator] Media understanding failed for {address}: {e}")
                text, kind = _media_placeholder(event), TurnKind.FALLBACK

        direction = Direction.OUTBOUND if event.from_me else Direction.INBOUND
        turn = Turn(direction=direction, kind=kind, text=text, timestamp=self.scheduler.now())

        self.notifier.emit(
            events.MESSAGE_RECEIVED,
            address=address, text=text, from_me=event.from_me, timestamp=event.timestamp,
        )

        if not self.active:
            return

        if event.from_me:
            if event.has_media and self._consume_media_echo(address):
                logger.debug(f"[Orchestrator] Echo of our own media to {address} dropped")
                return
            # Typed on the phone: keep it as context, never reply to ourselves
            if address in self.store:
                self.store.append_if_absent(address, turn)
            return

        if address not in self.campaign.targets:
            return

        self.store.append(address, turn)
        self.console.print(
            f"\n[bold #F6C453]🔔 INBOUND[/bold #F6C453] [dim]{address}: {escape(text[:80])}[/dim]"
        )

        if address in self.disabled:
            self.store.set_pending(address, text)
            logger.info(f"[Orchestrator] {address} is paused, reply queued")
            return

        if event.message_ref and should_react(self.campaign.reaction_probability, self.rng):
            epoch = self._epoch
            ref = event.message_ref
            self.scheduler.after(0, lambda: self._send_reaction(address, ref, epoch))

        self._schedule_reply(address)

    def _schedule_reply(self, address: str):
        epoch = self._epoch
        low, high = self.campaign.reply_delay_range
        delay = self.rng.uniform(low, high)
        self.scheduler.after(delay, lambda: self.send_scheduled_reply(address, epoch))

    def _greeting_continuation(self, address: str, epoch: int):
        return lambda: self._send_greeting(address, epoch)

    # ──────────────────────────────────────────────────────────────────────────
    # Contact pause / resume
    # ──────────────────────────────────────────────────────────────────────────

    def disable_contact(self, address: str):
        self.disabled.add(address)

    def enable_contact(self, address: str):
        self.disabled.discard(address)
        self.drain_pending_queue(address)

    def set_disabled(self, addresses):
        self.disabled = set(addresses)

    def drain_pending_queue(self, address: str) -> bool:
        text = self.store.pop_pending(address)
        if text is None or not self.active:
            return False
        self.store.append_if_absent(
            address,
            Turn(direction=Direction.INBOUND, kind=TurnKind.TEXT, text=text, timestamp=self.scheduler.now()),
        )
        self._schedule_reply(address)
        logger.info(f"[Orchestrator] Drained queued reply for {address}")
        return True

    # ──────────────────────────────────────────────────────────────────────────
    # Outbound: greeting
    # ──────────────────────────────────────────────────────────────────────────

    async def _send_greeting(self, address: str, epoch: int):
        if not self._can_send(address, epoch):
            return
        if address in self.disabled:
            logger.info(f"[Orchestrator] Skipping greeting for paused contact {address}")
            return
        try:
            greeting = await self.generator.generate_greeting(self.campaign.personality_prompt, self.rng)
            if not self._can_send(address, epoch):
                return
            result = await self.transport.send_text(address, greeting)
            if not result.ok:
                self._report_error(f"Greeting to {address} failed: {result.error}", address)
                return
            if self._record(address, epoch, TurnKind.TEXT, greeting):
                self._announce(address, greeting, events.GREETING_SENT)
        except Exception as e:
            self._report_error(f"Error sending greeting to {address}: {e}", address)

    # ──────────────────────────────────────────────────────────────────────────
    # Outbound: reaction
    # ──────────────────────────────────────────────────────────────────────────

    async def _send_reaction(self, address: str, message_ref: str, epoch: int):
        if not self._can_send(address, epoch):
            return
        emoji = pick_reaction_emoji(self.rng)
        try:
            result = await self.transport.send_reaction(message_ref, emoji)
        except Exception as e:
            self._report_error(f"Reaction to {address} failed: {e}", address)
            return
        if not result.ok:
            self._report_error(f"Reaction to {address} failed: {result.error}", address)
            return
        if self._record(address, epoch, TurnKind.REACTION, f"[Reacted with {emoji}]"):
            self.notifier.emit(events.REACTION_SENT, address=address, emoji=emoji)

    # ──────────────────────────────────────────────────────────────────────────
    # Outbound: scheduled reply
    # ──────────────────────────────────────────────────────────────────────────

    async def send_scheduled_reply(self, address: str, epoch: Optional[int] = None):
        if epoch is None:
            epoch = self._epoch
        if not self._can_send(address, epoch):
            return
        if address in self.disabled:
            self._requeue_last_inbound(address)
            return

        campaign = self.campaign
        try:
            composing = await self.transport.set_composing(address)
            if not composing.ok:
                logger.debug(f"[Orchestrator] Composing signal failed for {address}: {composing.error}")
            await self.scheduler.sleep(self.rng.uniform(*campaign.typing_duration_range))
            if not self._can_send(address, epoch):
                return

            channel = choose_channel(campaign, self.store.get(address), self.rng)

            if channel == Channel.MEDIA:
                await self._send_media(address, epoch)
                return

            if channel == Channel.STICKER:
                outcome = await self._send_sticker(address, epoch)
                if outcome != _StickerOutcome.FAILED or not campaign.sticker_policy.fallback_to_text:
                    return
                logger.info(f"[Orchestrator] Sticker failed for {address}, falling back to text")
                if not self._can_send(address, epoch):
                    return

            await self._send_text_reply(address, epoch)
        except Exception as e:
            self._report_error(f"Error sending reply to {address}: {e}", address)

    def _requeue_last_inbound(self, address: str):
        for turn in reversed(self.store.history(address)):
            if turn.direction == Direction.INBOUND:
                self.store.set_pending(address, turn.text)
                return

    async def _send_text_reply(self, address: str, epoch: int):
        reply = await self.generator.generate_reply(
            self.campaign.personality_prompt, self.store.history(address), self.rng
        )
        if not self._can_send(address, epoch):
            return
        result = await self.transport.send_text(address, reply)
        if not result.ok:
            self._report_error(f"Reply to {address} failed: {result.error}", address)
            return
        if self._record(address, epoch, TurnKind.TEXT, reply):
            self._announce(address, reply, events.REPLY_SENT)

    async def _send_media(self, address: str, epoch: int):
        item = self.media_selector.select_random_media()
        if item is None:
            logger.info("[Orchestrator] Media channel chosen but the media catalogue is empty")
            return
        data = item.read_bytes()
        if data is None:
            return

        caption = await self.generator.generate_media_caption(
            self.campaign.personality_prompt, self.store.history(address), item.context
        )
        if not self._can_send(address, epoch):
            return
        result = await self.transport.send_media(address, data, item.mime_type, caption)
        if not result.ok:
            self._report_error(f"Media to {address} failed: {result.error}", address)
            return
        self._expect_media_echo(address)
        text = f"[Sent image: {item.context}] {caption}".strip()
        if self._record(address, epoch, TurnKind.MEDIA, text):
            self._announce(address, text, events.MEDIA_SENT, media_id=item.id)

    async def _send_sticker(self, address: str, epoch: int) -> _StickerOutcome:
        emotion = await classify_emotion(self.store.history(address), self.generator.model)
        if not self._can_send(address, epoch):
            return _StickerOutcome.UNAVAILABLE

        path = (
            self.media_selector.select_random_sticker(emotion)
            or self.media_selector.select_random_sticker(DEFAULT_EMOTION)
        )
        if path is None:
            logger.info(f"[Orchestrator] No sticker available for '{emotion}'")
            return _StickerOutcome.UNAVAILABLE
        try:
            data = path.read_bytes()
        except OSError as e:
            logger.warning(f"[Orchestrator] Sticker {path} unreadable: {e}")
            return _StickerOutcome.UNAVAILABLE

        try:
            result = await self.transport.send_sticker(address, data)
        except Exception as e:
            result = SendResult.failure(str(e))
        if not result.ok:
            self._report_error(f"Sticker to {address} failed: {result.error}", address)
            return _StickerOutcome.FAILED
        self._expect_media_echo(address)

        text = f"[Sticker: {emotion}]"
        if self._record(address, epoch, TurnKind.STICKER, text):
            self._announce(address, text, events.STICKER_SENT, emotion=emotion)
        return _StickerOutcome.SENT

    # ──────────────────────────────────────────────────────────────────────────
    # Helpers
    # ──────────────────────────────────────────────────────────────────────────

    def _expect_media_echo(self, address: str):
        self._media_echoes[address] = self._media_echoes.get(address, 0) + 1

    def _consume_media_echo(self, address: str) -> bool:
        pending = self._media_echoes.get(address, 0)
        if not pending:
            return False
        if pending == 1:
            del self._media_echoes[address]
        else:
            self._media_echoes[address] = pending - 1
        return True

    def _record(self, address: str, epoch: int, kind: TurnKind, text: str) -> bool:
        """Append our own turn, unless the session moved on while we were awaiting."""
        if not self._is_current(epoch) or address not in self.store:
            logger.debug(f"[Orchestrator] Discarding stale {kind.value} result for {address}")
            return False
        self.store.append(
            address,
            Turn(direction=Direction.OUTBOUND, kind=kind, text=text, timestamp=self.scheduler.now()),
        )
        return True

    def _announce(self, address: str, text: str, name: str, **extra):
        self.console.print(
            f"[bold #7FD1AE]📤 SENT[/bold #7FD1AE] [dim]{address}: {escape(text[:80])}[/dim]"
        )
        self.notifier.emit(name, address=address, text=text, **extra)
        self.notifier.emit(events.MESSAGE_COUNT_INCREMENTED, address=address)

    def _report_error(self, detail: str, address: Optional[str] = None):
        logger.error(f"[Orchestrator] {detail}")
        self.notifier.emit(events.WARMING_ERROR, detail=detail, address=address)

    # ──────────────────────────────────────────────────────────────────────────
    # Introspection
    # ──────────────────────────────────────────────────────────────────────────

    def get_active_conversations(self) -> List[str]:
        return self.store.addresses()

    def get_conversation(self, address: str) -> List[Dict]:
        return [t.to_dict() for t in self.store.history(address)]

    def get_warming_status(self) -> Dict:
        return {
            "active": self.active,
            "targets": list(self.campaign.targets) if self.campaign and self.active else [],
            "active_conversations": self.get_active_conversations(),
            "paused_contacts": sorted(self.disabled),
        }
