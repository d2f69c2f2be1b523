"""SQLite contacts, message log and stats."""
from datetime import date

import pytest

from warmer.src.core.database import MESSAGE_LOG_KEEP, ContactExistsError, Database


class _Clock:
    def __init__(self, day):
        self.day = day

    def __call__(self):
        return self.day


@pytest.fixture
def clock():
    return _Clock(date(2026, 10, 18))


@pytest.fixture
def db(tmp_path, clock):
    database = Database(str(tmp_path / "data" / "warmer.db"), today=clock)
    yield database
    database.close()


def test_contacts_crud(db):
    contact = db.add_contact(" 15551234567 ", "Ana")
    assert contact["number"] == "15551234567"
    assert contact["enabled"] is True

    with pytest.raises(ContactExistsError):
        db.add_contact("15551234567")

    assert db.toggle_contact("15551234567") is False
    assert db.get_disabled_numbers() == ["15551234567"]
    assert db.toggle_contact("15551234567") is True
    assert db.toggle_contact("000") is None

    assert db.remove_contact("15551234567") is True
    assert db.remove_contact("15551234567") is False
    assert db.get_contacts() == []


def test_contacts_listed_in_insertion_order(db):
    db.add_contact("2")
    db.add_contact("1")
    assert [c["number"] for c in db.get_contacts()] == ["2", "1"]


def test_message_log_pruned_per_number(db):
    for i in range(MESSAGE_LOG_KEEP + 20):
        db.add_message_and_prune("111", f"m{i}", from_me=i % 2 == 0, timestamp=float(i))
    db.add_message_and_prune("222", "other", from_me=False)

    log = db.get_conversation_log("111")
    assert len(log) == MESSAGE_LOG_KEEP
    assert log[0]["text"] == "m20"
    assert log[-1]["text"] == f"m{MESSAGE_LOG_KEEP + 19}"
    assert db.get_messages(limit=1)[0]["number"] == "222"


def test_daily_counter_resets(db, clock):
    assert db.get_messages_sent_today() == 0
    db.increment_messages_sent()
    db.increment_messages_sent()
    assert db.get_messages_sent_today() == 2

    clock.day = date(2026, 10, 19)
    assert db.get_messages_sent_today() == 0
    assert db.increment_messages_sent() == 1
