"""
Database — Contacts, Message Log, Daily Stats

SQLite with check_same_thread=False: the API handlers and the bridge threads
share one connection. A single RLock serialises writes; reads go straight
through (WAL allows them to run alongside a writer).

  contacts  → warming targets, each with an enabled flag (paused = disabled)
  messages  → per-contact log of both directions, pruned to MESSAGE_LOG_KEEP
  stats     → key/value counters; messages_sent_today resets on a new day
"""

import os
import sqlite3
import logging
import threading
from datetime import date
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

MESSAGE_LOG_KEEP = 100


class ContactExistsError(ValueError):
    pass


class Database:
    def __init__(self, db_path: str = "data/warmer.db",
                 today: Optional[Callable[[], date]] = None):
        if os.path.dirname(db_path):
            os.makedirs(os.path.dirname(db_path), exist_ok=True)
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self._write_lock = threading.RLock()
        self._today = today or date.today
        self._init_db()

    def _init_db(self):
        with self._write_lock:
            c = self.conn.cursor()

            c.execute("""
                CREATE TABLE IF NOT EXISTS contacts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    number TEXT UNIQUE NOT NULL,
                    name TEXT DEFAULT '',
                    enabled INTEGER DEFAULT 1,
                    added_at DATETIME DEFAULT CURRENT_TIMESTAMP
                )
            """)

            c.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    number TEXT NOT NULL,
                    text TEXT,
                    from_me INTEGER DEFAULT 0,
                    kind TEXT DEFAULT 'text',
                    timestamp REAL
                )
            """)
            c.execute("CREATE INDEX IF NOT EXISTS idx_messages_number ON messages(number)")

            c.execute("""
                CREATE TABLE IF NOT EXISTS stats (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)

            self.conn.commit()

    # ── Contacts ──────────────────────────────────────────────────────────────

    def add_contact(self, number: str, name: str = "") -> Dict:
        number = number.strip()
        with self._write_lock:
            try:
                with self.conn:
                    self.conn.execute(
                        "INSERT INTO contacts (number, name) VALUES (?, ?)", (number, name or "")
                    )
            except sqlite3.IntegrityError:
                raise ContactExistsError(f"Phone number {number} already exists")
        return self.get_contact(number)

    def remove_contact(self, number: str) -> bool:
        with self._write_lock:
            cursor = self.conn.execute("DELETE FROM contacts WHERE number=?", (number,))
            self.conn.commit()
            return cursor.rowcount > 0

    def toggle_contact(self, number: str) -> Optional[bool]:
        """Flip the enabled flag. Returns the new value, or None for an unknown number."""
        with self._write_lock:
            row = self.conn.execute(
                "SELECT enabled FROM contacts WHERE number=?", (number,)
            ).fetchone()
            if row is None:
                return None
            enabled = not bool(row["enabled"])
            self.conn.execute(
                "UPDATE contacts SET enabled=? WHERE number=?", (int(enabled), number)
            )
            self.conn.commit()
            return enabled

    def get_contact(self, number: str) -> Optional[Dict]:
        row = self.conn.execute("SELECT * FROM contacts WHERE number=?", (number,)).fetchone()
        return self._contact(row) if row else None

    def get_contacts(self) -> List[Dict]:
        rows = self.conn.execute("SELECT * FROM contacts ORDER BY id ASC").fetchall()
        return [self._contact(r) for r in rows]

    def get_disabled_numbers(self) -> List[str]:
        rows = self.conn.execute("SELECT number FROM contacts WHERE enabled=0").fetchall()
        return [r["number"] for r in rows]

    @staticmethod
    def _contact(row) -> Dict:
        return {
            "number": row["number"],
            "name": row["name"] or "",
            "enabled": bool(row["enabled"]),
            "added_at": row["added_at"],
        }

    # ── Message log ───────────────────────────────────────────────────────────

    def add_message_and_prune(self, number: str, text: str, from_me: bool,
                              kind: str = "text", timestamp: Optional[float] = None,
                              keep: int = MESSAGE_LOG_KEEP) -> bool:
        """Insert + prune in one transaction."""
        with self._write_lock:
            try:
                with self.conn:
                    self.conn.execute(
                        "INSERT INTO messages (number, text, from_me, kind, timestamp) VALUES (?,?,?,?,?)",
                        (number, text, int(from_me), kind, timestamp),
                    )
                    self.conn.execute("""
                        DELETE FROM messages WHERE number = ? AND id NOT IN (
                            SELECT id FROM messages WHERE number = ? ORDER BY id DESC LIMIT ?
                        )
                    """, (number, number, keep))
                return True
            except sqlite3.Error as e:
                logger.error(f"[Database] Error adding message for {number}: {e}")
                return False

    def get_messages(self, number: Optional[str] = None, limit: int = 50) -> List[Dict]:
        q, p = "SELECT * FROM messages", []
        if number:
            q += " WHERE number=?"
            p.append(number)
        q += " ORDER BY id DESC LIMIT ?"
        p.append(limit)
        rows = self.conn.execute(q, p).fetchall()
        return [
            {
                "number": r["number"],
                "text": r["text"],
                "from_me": bool(r["from_me"]),
                "kind": r["kind"],
                "timestamp": r["timestamp"],
            }
            for r in rows
        ]

    def get_conversation_log(self, number: str) -> List[Dict]:
        """Oldest first, the way a chat view reads."""
        return list(reversed(self.get_messages(number, limit=MESSAGE_LOG_KEEP)))

    # ── Stats ─────────────────────────────────────────────────────────────────

    def increment_messages_sent(self) -> int:
        with self._write_lock:
            count = self._messages_sent_today() + 1
            self._set_stat("messages_sent_today", str(count))
            return count

    def get_messages_sent_today(self) -> int:
        with self._write_lock:
            return self._messages_sent_today()

    def _messages_sent_today(self) -> int:
        today = self._today().isoformat()
        if self._get_stat("last_reset") != today:
            self._set_stat("last_reset", today)
            self._set_stat("messages_sent_today", "0")
            return 0
        return int(self._get_stat("messages_sent_today") or 0)

    def _get_stat(self, key: str) -> Optional[str]:
        row = self.conn.execute("SELECT value FROM stats WHERE key=?", (key,)).fetchone()
        return row["value"] if row else None

    def _set_stat(self, key: str, value: str):
        self.conn.execute(
            "INSERT INTO stats (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, value),
        )
        self.conn.commit()

    def close(self):
        self.conn.close()
