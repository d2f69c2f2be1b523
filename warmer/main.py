"""
WhatsApp Warmer — FastAPI Control API
=======================================
- One connected account, driven through the Node gateway bridge
- SQLite for contacts, message log and daily stats
- WebSocket push of every warming notification
"""

import os
import yaml
import asyncio
import logging
from typing import Dict, Optional
from contextlib import asynccontextmanager
from dotenv import load_dotenv
load_dotenv()
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect, Body, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, ValidationError

from warmer.session_manager import SessionManager
from warmer.src.core.database import ContactExistsError, Database

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)

session_manager: Optional[SessionManager] = None


def load_config(path: Optional[str] = None) -> Dict:
    config_path = path or os.getenv("CONFIG_PATH", "warmer_config.yaml")
    try:
        with open(config_path) as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning(f"Config file {config_path} not found, using defaults")
        return {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    global session_manager
    base_config = load_config()
    data_dir = base_config.get("data_dir", "data")
    db = Database(os.path.join(data_dir, "warmer.db"))
    session_manager = SessionManager(db, base_config)
    logger.info("🚀 Warmer backend ready")
    yield
    await session_manager.shutdown()
    db.close()


app = FastAPI(title="WhatsApp Warmer", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("ALLOWED_ORIGINS", "*").split(","),
    allow_credentials=True, allow_methods=["*"], allow_headers=["*"],
)


# ── Request models ────────────────────────────────────────────────────────────

class StartWaRequest(BaseModel):
    phone_number: Optional[str] = None

class ContactCreate(BaseModel):
    number: str = Field(min_length=1)
    name: str = ""

class WarmingStartRequest(BaseModel):
    personality_prompt: Optional[str] = None
    reply_delay_min: Optional[float] = None
    reply_delay_max: Optional[float] = None
    typing_min: Optional[float] = None
    typing_max: Optional[float] = None
    reaction_probability: Optional[float] = None
    stickers_enabled: Optional[bool] = None
    sticker_frequency: Optional[float] = None
    sticker_fallback_to_text: Optional[bool] = None
    sticker_avoid_repeat: Optional[bool] = None
    media_enabled: Optional[bool] = None
    media_frequency: Optional[float] = None


# ── WhatsApp ──────────────────────────────────────────────────────────────────

@app.get("/api/whatsapp/status")
async def wa_status():
    return session_manager.get_whatsapp_status()


@app.get("/api/whatsapp/qr")
async def wa_qr():
    qr = session_manager.get_qr()
    return {"qr": qr, "has_qr": bool(qr)}


@app.post("/api/whatsapp/start")
async def wa_start(req: StartWaRequest = Body(default=None)):
    phone_number = req.phone_number if req else None
    status = await session_manager.start_whatsapp(phone_number=phone_number)
    return {"message": "WhatsApp starting. Poll /api/whatsapp/qr to pair.", **status}


@app.post("/api/whatsapp/stop")
async def wa_stop():
    await session_manager.stop_whatsapp()
    return {"message": "WhatsApp stopped", "status": "disconnected"}


# ── Warming ───────────────────────────────────────────────────────────────────

@app.post("/api/warming/start")
async def warming_start(req: WarmingStartRequest = Body(default=None)):
    overrides = req.model_dump(exclude_none=True) if req else {}
    try:
        error = session_manager.start_warming(overrides)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=[err["msg"] for err in e.errors()])
    if error is not None:
        raise HTTPException(status_code=400, detail={"code": error.value, "message": error.message})
    return {"success": True, **session_manager.get_warming_status()}


@app.post("/api/warming/stop")
async def warming_stop():
    session_manager.stop_warming()
    return {"success": True}


@app.get("/api/warming/status")
async def warming_status():
    return session_manager.get_warming_status()


# ── Contacts ──────────────────────────────────────────────────────────────────

@app.get("/api/contacts")
async def get_contacts():
    return {"contacts": session_manager.db.get_contacts()}


@app.post("/api/contacts")
async def add_contact(req: ContactCreate):
    try:
        contact = session_manager.add_contact(req.number, req.name)
    except ContactExistsError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"success": True, "contact": contact}


@app.delete("/api/contacts/{number}")
async def remove_contact(number: str):
    if not session_manager.remove_contact(number):
        raise HTTPException(status_code=404, detail="Contact not found")
    return {"success": True}


@app.post("/api/contacts/{number}/toggle")
async def toggle_contact(number: str):
    enabled = session_manager.toggle_contact(number)
    if enabled is None:
        raise HTTPException(status_code=404, detail="Contact not found")
    return {"success": True, "enabled": enabled}


# ── Stats & messages ──────────────────────────────────────────────────────────

@app.get("/api/stats")
async def get_stats():
    return session_manager.get_stats()


@app.get("/api/messages")
async def get_messages(limit: int = Query(50, ge=1, le=500)):
    return {"messages": session_manager.db.get_messages(limit=limit)}


@app.get("/api/messages/{number}")
async def get_messages_for(number: str):
    return {"number": number, "messages": session_manager.db.get_conversation_log(number)}


# ── Sticker / media catalogue ─────────────────────────────────────────────────

@app.get("/api/stickers")
async def get_stickers():
    return {"categories": session_manager.media_selector.categories()}


@app.get("/api/media")
async def get_media():
    return {"media": [m.to_dict() for m in session_manager.media_selector.list_media()]}


@app.post("/api/catalogue/reload")
async def reload_catalogue():
    session_manager.media_selector.reload()
    return {
        "categories": session_manager.media_selector.categories(),
        "media_count": len(session_manager.media_selector.list_media()),
    }


# ── WebSocket ─────────────────────────────────────────────────────────────────

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    session_manager.add_ws_client(websocket)

    await websocket.send_json({"type": "status", **session_manager.get_whatsapp_status()})
    await websocket.send_json({"type": "warming_status", **session_manager.get_warming_status()})

    try:
        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_text(), timeout=45)
                if data == "ping":
                    await websocket.send_json({"type": "pong"})
                elif data == "status":
                    await websocket.send_json({"type": "status", **session_manager.get_whatsapp_status()})
            except asyncio.TimeoutError:
                await websocket.send_json({"type": "ping"})
    except WebSocketDisconnect:
        pass
    finally:
        session_manager.remove_ws_client(websocket)


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "connected": bool(session_manager and session_manager.get_whatsapp_status().get("ready")),
    }
