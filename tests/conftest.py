"""Shared pytest fixtures for the warmer tests."""
import random

import pytest
from rich.console import Console

from helpers import FakeModel, FakeTransport, VirtualScheduler
from warmer.src.core.events import Notifier
from warmer.src.core.media_selector import MediaSelector
from warmer.src.core.orchestrator import WarmingOrchestrator
from warmer.src.core.response_generator import ResponseGenerator


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def model():
    return FakeModel()


@pytest.fixture
def scheduler():
    return VirtualScheduler()


@pytest.fixture
def rng():
    return random.Random(7)


@pytest.fixture
def vault(tmp_path):
    return MediaSelector(str(tmp_path / "vault"), random.Random(3))


@pytest.fixture
def notifications():
    """Notifier plus the list of (name, payload) it has emitted."""
    notifier = Notifier()
    received = []
    notifier.subscribe(lambda name, payload: received.append((name, payload)))
    return notifier, received


@pytest.fixture
def orchestrator(transport, model, scheduler, rng, vault, notifications):
    notifier, _ = notifications
    return WarmingOrchestrator(
        transport=transport,
        generator=ResponseGenerator(model, random.Random(11)),
        media_selector=vault,
        scheduler=scheduler,
        notifier=notifier,
        rng=rng,
        console=Console(quiet=True),
    )

