"""
Session Manager
================

Owns the one connected account and everything hanging off it:

  WhatsAppBridge ──events──▶ WarmingOrchestrator.run()
                                   │ notifications
                                   ▼
                 message log + daily stats (Database), WebSocket clients

At most one bridge exists at a time. start/stop of the bridge are serialised
with `action_lock`; warming start/stop are synchronous on the orchestrator.

The campaign for a warming run is built from the `warming`, `stickers` and
`media` sections of the YAML config, overridden per request, with every
stored contact as a target (disabled contacts stay targets but are paused).
"""

import os
import random
import asyncio
import logging
from typing import Callable, Dict, List, Optional, Set

from openai import OpenAI

from warmer.src.core import events
from warmer.src.core.campaign import DEFAULT_PERSONALITY, CampaignConfig, MediaPolicy, StickerPolicy
from warmer.src.core.database import Database
from warmer.src.core.generative_model import GenerativeModel, OpenAIGenerativeModel
from warmer.src.core.media_selector import MediaSelector
from warmer.src.core.orchestrator import StartError, WarmingOrchestrator
from warmer.src.core.response_generator import ResponseGenerator
from warmer.src.core.scheduler import LoopScheduler
from warmer.src.whatsapp.bridge import WhatsAppBridge

logger = logging.getLogger(__name__)

# Notifications that correspond to a message we sent
SENT_KINDS = {
    events.GREETING_SENT: "text",
    events.REPLY_SENT: "text",
    events.MEDIA_SENT: "media",
    events.STICKER_SENT: "sticker",
}


class SessionManager:
    def __init__(self, db: Database, base_config: Dict,
                 model: Optional[GenerativeModel] = None,
                 transport_factory: Optional[Callable[[Optional[str]], object]] = None,
                 rng: Optional[random.Random] = None):
        self.db = db
        self.base_config = base_config
        self.data_dir = base_config.get("data_dir", "data")
        self.rng = rng or random.Random()

        self.generator = ResponseGenerator(model or self._build_model(), self.rng)
        self.media_selector = MediaSelector(os.path.join(self.data_dir, "vault"), self.rng)
        self.notifier = events.Notifier()
        self.notifier.subscribe(self._on_notification)

        self._transport_factory = transport_factory or self._build_bridge
        self.bridge = None
        self.orchestrator: Optional[WarmingOrchestrator] = None
        self.task: Optional[asyncio.Task] = None

        self.ws_clients: List = []
        self._broadcast_tasks: Set[asyncio.Task] = set()
        self.action_lock = asyncio.Lock()

    # ── Construction ──────────────────────────────────────────────────────────

    def _build_model(self) -> GenerativeModel:
        api_key = os.getenv("OPENAI_API_KEY", "")
        if not api_key:
            logger.warning("[SessionManager] OPENAI_API_KEY not set, replies will use fallbacks")
        return OpenAIGenerativeModel(OpenAI(api_key=api_key), self.base_config.get("openai", {}))

    def _build_bridge(self, phone_number: Optional[str] = None) -> WhatsAppBridge:
        wa = self.base_config.get("whatsapp", {})
        auth_dir = wa.get("auth_dir") or os.path.join(self.data_dir, "whatsapp")
        os.makedirs(auth_dir, exist_ok=True)
        return WhatsAppBridge(
            auth_dir=auth_dir,
            phone_number=phone_number or wa.get("phone_number") or None,
        )

    def build_campaign(self, overrides: Optional[Dict] = None) -> CampaignConfig:
        """Config sections + request overrides → validated CampaignConfig (may raise ValidationError)."""
        overrides = overrides or {}
        warming = {**self.base_config.get("warming", {}), **overrides}
        stickers = self.base_config.get("stickers", {})
        media = self.base_config.get("media", {})

        def pick(key, section, section_key, default):
            if key in overrides:
                return overrides[key]
            return section.get(section_key, default)

        personality = warming.get("personality_prompt")
        if personality is None:
            personality = DEFAULT_PERSONALITY

        return CampaignConfig(
            personality_prompt=personality,
            targets=tuple(c["number"] for c in self.db.get_contacts()),
            reply_delay_range=(warming.get("reply_delay_min", 3.0), warming.get("reply_delay_max", 8.0)),
            typing_duration_range=(warming.get("typing_min", 1.0), warming.get("typing_max", 3.0)),
            reaction_probability=warming.get("reaction_probability", 0.15),
            sticker_policy=StickerPolicy(
                enabled=pick("stickers_enabled", stickers, "enabled", False),
                frequency=pick("sticker_frequency", stickers, "frequency", 0.2),
                fallback_to_text=pick("sticker_fallback_to_text", stickers, "fallback_to_text", True),
                avoid_repeat=pick("sticker_avoid_repeat", stickers, "avoid_repeat", False),
            ),
            media_policy=MediaPolicy(
                enabled=pick("media_enabled", media, "enabled", False),
                frequency=pick("media_frequency", media, "frequency", 0.1),
            ),
        )

    # ── WhatsApp session ──────────────────────────────────────────────────────

    async def start_whatsapp(self, phone_number: Optional[str] = None) -> Dict:
        async with self.action_lock:
            if self.bridge is not None and self.task and not self.task.done():
                return self.get_whatsapp_status()

            bridge = self._transport_factory(phone_number)
            orchestrator = WarmingOrchestrator(
                transport=bridge,
                generator=self.generator,
                media_selector=self.media_selector,
                scheduler=LoopScheduler(),
                notifier=self.notifier,
                rng=self.rng,
            )
            orchestrator.set_disabled(self.db.get_disabled_numbers())

            bridge.start()
            self.bridge = bridge
            self.orchestrator = orchestrator
            self.task = asyncio.create_task(self._run_orchestrator(orchestrator))
            logger.info("[SessionManager] WhatsApp session starting")
            return self.get_whatsapp_status()

    async def _run_orchestrator(self, orchestrator: WarmingOrchestrator):
        try:
            await orchestrator.run()
        except asyncio.CancelledError:
            logger.info("[SessionManager] Event pump cancelled")
        except Exception as e:
            logger.error(f"[SessionManager] Event pump crashed: {e}", exc_info=True)
        finally:
            orchestrator.stop(reason="session ended")

    async def stop_whatsapp(self):
        async with self.action_lock:
            if self.orchestrator:
                self.orchestrator.stop(reason="session stopped")
            if self.task and not self.task.done():
                self.task.cancel()
                try:
                    await asyncio.wait_for(asyncio.shield(self.task), timeout=5)
                except (asyncio.CancelledError, asyncio.TimeoutError):
                    pass
            self.task = None
            if self.bridge is not None:
                try:
                    await asyncio.to_thread(self.bridge.stop)
                except Exception as e:
                    logger.warning(f"[SessionManager] Bridge stop error: {e}")
            self.bridge = None
            self.orchestrator = None
            logger.info("[SessionManager] WhatsApp session stopped")

    def get_whatsapp_status(self) -> Dict:
        if self.bridge is None:
            return {"status": "disconnected", "ready": False}
        return self.bridge.get_status()

    def get_qr(self) -> Optional[str]:
        return getattr(self.bridge, "last_qr", None) if self.bridge is not None else None

    # ── Warming ───────────────────────────────────────────────────────────────

    def start_warming(self, overrides: Optional[Dict] = None) -> Optional[StartError]:
        if self.orchestrator is None:
            return StartError.NO_SESSION
        return self.orchestrator.start(self.build_campaign(overrides))

    def stop_warming(self):
        if self.orchestrator:
            self.orchestrator.stop()

    def get_warming_status(self) -> Dict:
        if self.orchestrator is None:
            return {"active": False, "targets": [], "active_conversations": [], "paused_contacts": []}
        return self.orchestrator.get_warming_status()

    # ── Contacts ──────────────────────────────────────────────────────────────

    def add_contact(self, number: str, name: str = "") -> Dict:
        return self.db.add_contact(number, name)

    def remove_contact(self, number: str) -> bool:
        return self.db.remove_contact(number)

    def toggle_contact(self, number: str) -> Optional[bool]:
        enabled = self.db.toggle_contact(number)
        if enabled is None or self.orchestrator is None:
            return enabled
        if enabled:
            self.orchestrator.enable_contact(number)
        else:
            self.orchestrator.disable_contact(number)
        return enabled

    # ── Stats ─────────────────────────────────────────────────────────────────

    def get_stats(self) -> Dict:
        contacts = self.db.get_contacts()
        return {
            "connected": bool(self.bridge is not None and self.bridge.is_ready()),
            "total_contacts": len(contacts),
            "enabled_contacts": sum(1 for c in contacts if c["enabled"]),
            "messages_sent_today": self.db.get_messages_sent_today(),
            "warming_active": bool(self.orchestrator and self.orchestrator.is_active()),
        }

    # ── Notifications ─────────────────────────────────────────────────────────

    def _on_notification(self, name: str, payload: Dict):
        if name == events.MESSAGE_RECEIVED and not payload.get("from_me"):
            self.db.add_message_and_prune(
                payload["address"], payload.get("text", ""), from_me=False,
                timestamp=payload.get("timestamp"),
            )
        elif name in SENT_KINDS:
            self.db.add_message_and_prune(
                payload["address"], payload.get("text", ""), from_me=True, kind=SENT_KINDS[name],
            )
        elif name == events.MESSAGE_COUNT_INCREMENTED:
            self.db.increment_messages_sent()

        if self.ws_clients:
            task = asyncio.create_task(self._broadcast({"type": name, **payload}))
            self._broadcast_tasks.add(task)
            task.add_done_callback(self._broadcast_tasks.discard)

    # ── WebSocket management ──────────────────────────────────────────────────

    def add_ws_client(self, ws):
        if ws not in self.ws_clients:
            self.ws_clients.append(ws)

    def remove_ws_client(self, ws):
        if ws in self.ws_clients:
            self.ws_clients.remove(ws)

    async def _broadcast(self, message: Dict):
        dead = []
        for ws in list(self.ws_clients):
            try:
                await ws.send_json(message)
            except Exception as e:
                logger.debug(f"[SessionManager] Dropping WebSocket client: {e}")
                dead.append(ws)
        for ws in dead:
            self.remove_ws_client(ws)

    async def shutdown(self):
        await self.stop_whatsapp()
