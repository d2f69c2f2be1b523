"""SessionManager wiring: bridge lifecycle, campaign building, persistence."""
import random

import pytest
from pydantic import ValidationError

from helpers import FakeModel, FakeTransport, settle
from warmer.session_manager import SessionManager
from warmer.src.core import events
from warmer.src.core.database import Database
from warmer.src.core.orchestrator import StartError


@pytest.fixture
def db(tmp_path):
    database = Database(str(tmp_path / "warmer.db"))
    yield database
    database.close()


@pytest.fixture
def transports():
    return []


@pytest.fixture
def manager(tmp_path, db, transports):
    def factory(phone_number=None):
        transport = FakeTransport()
        transports.append(transport)
        return transport

    config = {
        "data_dir": str(tmp_path),
        "warming": {"reply_delay_min": 2, "reply_delay_max": 4, "typing_min": 0.5, "typing_max": 1},
        "stickers": {"enabled": True, "frequency": 0.5},
    }
    return SessionManager(db, config, model=FakeModel(), transport_factory=factory, rng=random.Random(1))


def test_build_campaign_from_config_and_contacts(manager, db):
    db.add_contact("111")
    db.add_contact("222")
    campaign = manager.build_campaign()
    assert campaign.targets == ("111", "222")
    assert campaign.reply_delay_range == (2, 4)
    assert campaign.sticker_policy.enabled
    assert campaign.sticker_policy.frequency == 0.5
    assert not campaign.media_policy.enabled


def test_build_campaign_overrides(manager):
    campaign = manager.build_campaign({"media_enabled": True, "personality_prompt": "grumpy"})
    assert campaign.media_policy.enabled
    assert campaign.personality_prompt == "grumpy"


def test_build_campaign_invalid_override(manager):
    with pytest.raises(ValidationError):
        manager.build_campaign({"typing_max": 10})


def test_start_warming_without_session(manager):
    assert manager.start_warming() == StartError.NO_SESSION


@pytest.mark.asyncio
async def test_whatsapp_lifecycle(manager, transports, db):
    db.add_contact("111")
    await manager.start_whatsapp()
    assert transports[0].started
    assert manager.orchestrator is not None
    assert manager.get_whatsapp_status()["ready"] is True

    assert manager.start_warming() is None
    assert manager.get_warming_status()["active"] is True

    await manager.stop_whatsapp()
    assert transports[0].stopped
    assert manager.orchestrator is None
    assert manager.get_warming_status()["active"] is False


@pytest.mark.asyncio
async def test_start_whatsapp_twice_reuses_session(manager, transports):
    await manager.start_whatsapp()
    await manager.start_whatsapp()
    assert len(transports) == 1
    await manager.stop_whatsapp()


@pytest.mark.asyncio
async def test_toggle_reaches_orchestrator(manager, db):
    db.add_contact("111")
    db.toggle_contact("111")
    await manager.start_whatsapp()
    assert "111" in manager.orchestrator.disabled

    assert manager.toggle_contact("111") is True
    assert "111" not in manager.orchestrator.disabled
    assert manager.toggle_contact("111") is False
    assert "111" in manager.orchestrator.disabled
    await manager.stop_whatsapp()


@pytest.mark.asyncio
async def test_notifications_persist_log_and_stats(manager, db):
    manager.notifier.emit(events.MESSAGE_RECEIVED, address="111", text="hey", from_me=False, timestamp=1)
    manager.notifier.emit(events.MESSAGE_RECEIVED, address="111", text="echo", from_me=True, timestamp=2)
    manager.notifier.emit(events.STICKER_SENT, address="111", text="[Sticker: funny]", emotion="funny")
    manager.notifier.emit(events.MESSAGE_COUNT_INCREMENTED, address="111")

    log = db.get_conversation_log("111")
    assert [(m["text"], m["from_me"], m["kind"]) for m in log] == [
        ("hey", False, "text"),
        ("[Sticker: funny]", True, "sticker"),
    ]
    assert manager.get_stats()["messages_sent_today"] == 1


class _FakeSocket:
    def __init__(self, broken=False):
        self.broken = broken
        self.messages = []

    async def send_json(self, message):
        if self.broken:
            raise RuntimeError("socket closed")
        self.messages.append(message)


@pytest.mark.asyncio
async def test_notifications_broadcast_to_websockets(manager):
    good, bad = _FakeSocket(), _FakeSocket(broken=True)
    manager.add_ws_client(good)
    manager.add_ws_client(bad)

    manager.notifier.emit(events.WARMING_STOPPED, reason="disconnected")
    await settle()

    assert good.messages == [{"type": "warming_stopped", "reason": "disconnected"}]
    assert manager.ws_clients == [good]
    assert manager._broadcast_tasks == set()
