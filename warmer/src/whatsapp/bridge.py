"""
WhatsApp Bridge
================

Drives the Node gateway (whatsapp-web session, QR pairing, delivery) as a
subprocess speaking one JSON object per line:

  stdin  ← commands: send_message, send_sticker, react, presence, get_status
  stdout → events:   qr, connection, message, error, restart_requested

Inbound events are converted to InboundMessage / SessionStatusChanged and put
on `self.events`, an asyncio.Queue owned by the event loop the bridge was
created on. The reader threads never touch the queue directly; they hop onto
the loop with call_soon_threadsafe.

Writes go through a thread-safe send queue drained by a daemon thread so the
event loop never blocks on a dead pipe.
"""

import os
import json
import time
import queue
import base64
import asyncio
import logging
import threading
import subprocess
from typing import Callable, Dict, Optional

from warmer.src.whatsapp.transport import (
    USER_SUFFIX,
    InboundMessage,
    SendResult,
    SessionStatusChanged,
)

logger = logging.getLogger(__name__)


def parse_gateway_line(line: str) -> Optional[Dict]:
    """Extract the JSON object from a gateway stdout line (Node logs may wrap it)."""
    start = line.find("{")
    end = line.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    try:
        event = json.loads(line[start:end + 1])
    except ValueError:
        return None
    return event if isinstance(event, dict) else None


def to_inbound_message(event: Dict) -> InboundMessage:
    media_bytes = None
    raw_media = event.get("mediaBase64")
    if raw_media:
        try:
            media_bytes = base64.b64decode(raw_media)
        except ValueError:
            logger.warning(f"[Bridge] Undecodable media payload on {event.get('id')}")

    media_type = event.get("mediaType")
    return InboundMessage(
        source=event.get("from", ""),
        to=event.get("to", ""),
        body=event.get("text") or event.get("body") or "",
        timestamp=int(event.get("timestamp") or 0),
        from_me=bool(event.get("fromMe", False)),
        has_media=bool(event.get("hasMedia") or media_type),
        media_type=media_type,
        media_bytes=media_bytes,
        mime_type=event.get("mimetype"),
        message_ref=event.get("id"),
    )


def to_chat_id(address: str) -> str:
    return address if "@" in address else f"{address}{USER_SUFFIX}"


class WhatsAppBridge:
    def __init__(self, auth_dir: str,
                 loop: Optional[asyncio.AbstractEventLoop] = None,
                 phone_number: Optional[str] = None,
                 gateway_script: Optional[str] = None):
        self.auth_dir = auth_dir
        self.phone_number = phone_number
        self.gateway_script = gateway_script or os.path.join(
            os.path.dirname(__file__), "gateway.js"
        )
        self.loop = loop or asyncio.get_running_loop()
        self.events: asyncio.Queue = asyncio.Queue()

        self.process: Optional[subprocess.Popen] = None
        self.is_running = False
        self.status = "disconnected"
        self.account: Dict = {}
        self.last_qr: Optional[str] = None
        self.on_qr: Optional[Callable[[str], None]] = None

        # Set BEFORE killing the process so the monitors do not restart it
        self._intentional_stop = threading.Event()
        self._restart_in_progress = threading.Event()

        self._send_queue: queue.Queue = queue.Queue()
        self._send_thread: Optional[threading.Thread] = None
        self._monitor_threads: list = []

        self.reconnect_attempts = 0
        self.max_reconnect_attempts = 5
        self.restart_backoff = 5.0

    # ── MessagingTransport ───────────────────────────────────────────────────

    def is_ready(self) -> bool:
        return (
            self.is_running
            and self.status == "open"
            and self.process is not None
            and self.process.poll() is None
        )

    async def send_text(self, address: str, text: str) -> SendResult:
        return self._command({
            "type": "send_message",
            "to": to_chat_id(address),
            "text": text,
        })

    async def send_media(self, address: str, data: bytes, mime_type: str,
                         caption: Optional[str] = None) -> SendResult:
        return self._command({
            "type": "send_message",
            "to": to_chat_id(address),
            "text": caption or "",
            "media": base64.b64encode(data).decode("ascii"),
            "mimetype": mime_type,
        })

    async def send_sticker(self, address: str, data: bytes) -> SendResult:
        return self._command({
            "type": "send_sticker",
            "to": to_chat_id(address),
            "media": base64.b64encode(data).decode("ascii"),
            "mimetype": "image/webp",
        })

    async def send_reaction(self, message_ref: str, emoji: str) -> SendResult:
        return self._command({
            "type": "react",
            "messageId": message_ref,
            "emoji": emoji,
        })

    async def set_composing(self, address: str) -> SendResult:
        return self._command({
            "type": "presence",
            "to": to_chat_id(address),
            "state": "composing",
        })

    def _command(self, command: Dict) -> SendResult:
        command["id"] = int(time.time() * 1000)
        try:
            self._enqueue(command)
        except RuntimeError as e:
            return SendResult.failure(str(e))
        return SendResult.success()

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def start(self):
        if self.process and self.process.poll() is None:
            logger.info("[Bridge] start() called but gateway is already running")
            return

        self._intentional_stop.clear()

        try:
            result = subprocess.run(
                ["node", "--version"], capture_output=True, check=True, timeout=5
            )
            logger.info(f"[Bridge] Node.js detected: {result.stdout.decode().strip()}")
        except (OSError, subprocess.SubprocessError) as e:
            logger.error(f"[Bridge] 'node' not found. Install Node.js. ({e})")
            return

        args = ["node", self.gateway_script, self.auth_dir]
        if self.phone_number:
            args.append(self.phone_number)

        try:
            self.process = subprocess.Popen(
                args,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
            )
        except OSError as e:
            logger.error(f"[Bridge] Failed to start gateway: {e}")
            self.is_running = False
            return

        self.is_running = True

        # One writer for the bridge lifetime; restarts reuse it
        if self._send_thread is None or not self._send_thread.is_alive():
            self._send_thread = threading.Thread(
                target=self._drain_send_queue, daemon=True, name="wa-send"
            )
            self._send_thread.start()

        self._monitor_threads = []
        for target, name in [
            (self._monitor_stdout, "wa-stdout"),
            (self._monitor_stderr, "wa-stderr"),
        ]:
            t = threading.Thread(target=target, args=(self.process,), daemon=True, name=name)
            t.start()
            self._monitor_threads.append(t)

        logger.info(f"[Bridge] Gateway started ({self.gateway_script})")

    def stop(self):
        self._intentional_stop.set()
        self.is_running = False
        self._restart_in_progress.clear()

        if self.process:
            try:
                self.process.terminate()
                self.process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                logger.warning("[Bridge] Gateway didn't terminate, killing it")
                self.process.kill()
                self.process.wait()
            finally:
                self.process = None

        if self._send_thread is not None:
            self._send_queue.put(None)
            self._send_thread.join(timeout=3)
            self._send_thread = None
        for t in self._monitor_threads:
            t.join(timeout=3)
        self._monitor_threads = []
        self._set_status("disconnected", "stopped")
        logger.info("[Bridge] Gateway stopped")

    def get_status(self) -> Dict:
        return {
            "status": self.status,
            "ready": self.is_ready(),
            "phone_number": self.account.get("number", ""),
            "name": self.account.get("name", ""),
            "reconnect_attempts": self.reconnect_attempts,
            "has_qr": bool(self.last_qr),
        }

    # ── Send queue ───────────────────────────────────────────────────────────

    def _enqueue(self, command: Dict):
        if not self.is_running:
            raise RuntimeError("Gateway not running")
        self._send_queue.put(command)

    def _drain_send_queue(self):
        while True:
            item = self._send_queue.get()
            if item is None:
                break
            if self._intentional_stop.is_set() or not self.process or not self.is_running:
                continue
            try:
                self.process.stdin.write(json.dumps(item) + "\n")
                self.process.stdin.flush()
            except BrokenPipeError:
                logger.warning("[Bridge] Send queue: broken pipe, waiting for restart")
                self._trigger_restart()
                while self.is_running and not self._intentional_stop.is_set():
                    if self.process and self.process.poll() is None:
                        break
                    time.sleep(0.5)
            except OSError as e:
                logger.error(f"[Bridge] Send error: {e}")

    # ── Event translation ────────────────────────────────────────────────────

    def _publish(self, event):
        self.loop.call_soon_threadsafe(self.events.put_nowait, event)

    def _set_status(self, status: str, reason: str = ""):
        if status == self.status:
            return
        self.status = status
        self._publish(SessionStatusChanged(status=status, reason=reason))

    def handle_event(self, event: Dict):
        """Translate one gateway event. Called from the stdout thread."""
        event_type = event.get("type")

        if event_type == "qr":
            self.last_qr = event.get("data")
            self._set_status("pairing")
            if self.on_qr:
                self.on_qr(self.last_qr)

        elif event_type == "connection":
            status = event.get("status", "")
            if status == "open":
                user = event.get("user") or {}
                jid = user.get("id", "")
                self.account = {"jid": jid, "name": user.get("name"), "number": jid.split("@")[0]}
                self.last_qr = None
                self.reconnect_attempts = 0
            self._set_status(status, event.get("reason", ""))

        elif event_type == "message":
            self._publish(to_inbound_message(event))

        elif event_type == "restart_requested":
            logger.info(f"[Bridge] Gateway requested restart (reason: {event.get('reason', 'unknown')})")
            self._trigger_restart()

        elif event_type == "error":
            logger.error(f"[Bridge] Gateway error: {event.get('message')}")

    def _monitor_stdout(self, process: subprocess.Popen):
        for line in iter(process.stdout.readline, ""):
            if not line:
                break
            event = parse_gateway_line(line)
            if event is None:
                clean = line.strip()
                if clean and len(clean) < 200:
                    logger.debug(f"[Node] {clean}")
                continue
            try:
                self.handle_event(event)
            except Exception as e:
                logger.error(f"[Bridge] Event handling error for {event.get('type')}: {e}")

        # stdout EOF: process died. A replaced process is the restarter's business
        if not self._intentional_stop.is_set() and process is self.process:
            logger.warning("[Bridge] stdout closed, gateway process died")
            self.is_running = False
            self._set_status("disconnected", "gateway exited")
            self._trigger_restart()

    def _monitor_stderr(self, process: subprocess.Popen):
        for line in iter(process.stderr.readline, ""):
            if not line:
                break
            clean = line.strip()
            if clean:
                logger.debug(f"[Node] {clean}")

    # ── Restart ──────────────────────────────────────────────────────────────

    def _trigger_restart(self):
        if self._intentional_stop.is_set() or self._restart_in_progress.is_set():
            return
        self._restart_in_progress.set()
        threading.Thread(target=self._attempt_restart, daemon=True, name="wa-restart").start()

    def _attempt_restart(self):
        if self.reconnect_attempts >= self.max_reconnect_attempts:
            logger.error(f"[Bridge] Max reconnect attempts ({self.max_reconnect_attempts}) reached. Giving up.")
            self._restart_in_progress.clear()
            return

        self.reconnect_attempts += 1
        attempts = self.reconnect_attempts
        logger.info(f"[Bridge] Attempting restart ({attempts}/{self.max_reconnect_attempts})...")

        # Backoff on this daemon thread, never on the event loop
        time.sleep(self.restart_backoff)

        if self._intentional_stop.is_set():
            self._restart_in_progress.clear()
            return

        if self.process and self.process.poll() is None:
            try:
                self.process.kill()
                self.process.wait(timeout=2)
            except (OSError, subprocess.SubprocessError):
                pass
        self.process = None

        # Cleared first so a gateway that dies straight away can trigger the next attempt
        self._restart_in_progress.clear()
        self.start()
        if not self.is_running:
            # Popen itself failed; no monitor will report it
            self._trigger_restart()
