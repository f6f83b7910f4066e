import asyncio
import base64
import binascii
import json
import logging
import os
import socket
import sys
from contextlib import asynccontextmanager, suppress
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketDisconnect

from overlay.config import effective_api_routes, get_history_path, load_config
from overlay.history import HistoryStore
from overlay.llm import ModelGateway
from overlay.logs import apply_runtime_log_levels, log_important
from overlay.session_manager import SessionManager
from overlay.transcription import WhisperTranscriptionGateway

# Setup Logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger("main")

# Configuration
config = load_config()
apply_runtime_log_levels(config)

manager: Optional[SessionManager] = None


def build_model_gateway(cfg: dict) -> Optional[ModelGateway]:
    routes = effective_api_routes(cfg)
    if not routes:
        log_important(
            "llm.unconfigured",
            level=logging.WARNING,
            dedupe_key="no-api-key",
            dedupe_window_s=30.0,
            provider=cfg.get("api_provider"),
        )
        return None

    fallback_enabled = bool(cfg.get("api_fallback_enabled", True))
    first = routes[0]
    gateway = ModelGateway(
        api_key=str(first.get("api_key") or ""),
        base_url=str(first.get("base_url") or ""),
        model=str(first.get("model") or ""),
        default_headers=first.get("api_extra_headers") or {},
        fallback_routes=routes[1:],
        failover_enabled=fallback_enabled,
    )
    log_important(
        "llm.configured",
        provider=first.get("provider"),
        model=first.get("model"),
        base_url=first.get("base_url"),
        fallback_enabled=fallback_enabled,
        routes=len(routes),
    )
    return gateway


def build_transcription_gateway(cfg: dict) -> WhisperTranscriptionGateway:
    return WhisperTranscriptionGateway(
        model_size=str(cfg.get("whisper_model_size") or "tiny"),
        device=str(cfg.get("whisper_device") or "cpu"),
        sample_rate=int(cfg.get("transcription_sample_rate", 16000)),
        chunk_seconds=float(cfg.get("transcription_chunk_seconds", 3.0)),
        interim_results=bool(cfg.get("transcription_interim_results", True)),
    )


def create_manager() -> SessionManager:
    return SessionManager(
        gateway=build_model_gateway(config),
        store=HistoryStore(get_history_path()),
        config=config,
        transcription=build_transcription_gateway(config),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global manager
    logger.info("Server starting...")
    log_important("server.starting")
    if manager is None:
        manager = create_manager()
    yield
    logger.info("Shutting down...")
    log_important("server.stopping")
    await manager.close()


app = FastAPI(lifespan=lifespan)


async def _ws_send_json(
    websocket: WebSocket,
    payload: dict,
    send_lock: asyncio.Lock | None = None,
) -> bool:
    try:
        if send_lock is None:
            await websocket.send_json(payload)
        else:
            async with send_lock:
                await websocket.send_json(payload)
        return True
    except Exception:
        return False


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"status": "error", "message": message}, status_code=status_code)


def _decode_image(value: object) -> bytes | None:
    if value in (None, ""):
        return None
    if not isinstance(value, str):
        raise ValueError("image_base64 must be a string")
    if value.startswith("data:") and "," in value:
        value = value.split(",", 1)[1]
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid image_base64: {e}") from e


def _public_config(cfg: dict) -> dict:
    out = dict(cfg)
    out["api_key"] = "***" if cfg.get("api_key") else ""
    out["api_routes"] = [
        {**r, "api_key": "***" if r.get("api_key") else ""} for r in (cfg.get("api_routes") or [])
    ]
    return out


# ============================================
# HTTP ROUTES
# ============================================

@app.get("/api/state")
async def api_state():
    return {"status": "ok", "state": manager.snapshot()}


@app.post("/api/send")
async def api_send(request: Request):
    try:
        data = await request.json()
    except Exception:
        return _error("Invalid JSON", 400)
    if not isinstance(data, dict):
        return _error("JSON body must be an object", 400)

    text = data.get("text")
    if not isinstance(text, str) or not text.strip():
        return _error("Text must not be empty", 400)
    try:
        image_data = _decode_image(data.get("image_base64"))
    except ValueError as e:
        return _error(str(e), 400)

    handle = manager.send(text, image_data=image_data)
    return {
        "status": "ok",
        "message_id": handle.message_id if handle is not None else None,
        "state": manager.snapshot(),
    }


@app.post("/api/cancel")
async def api_cancel():
    return {"status": "ok", "cancelled": manager.cancel()}


@app.post("/api/sessions/new")
async def api_new_session():
    session = manager.start_new_session()
    return {"status": "ok", "session_id": session.id}


@app.get("/api/history")
async def api_history():
    return {"status": "ok", "sessions": manager.history_summaries()}


@app.post("/api/history/{session_id}/select")
async def api_select_session(session_id: str):
    session = manager.select_session(session_id)
    if session is None:
        return _error("Session not found", 404)
    return {"status": "ok", "session": session.to_dict()}


@app.delete("/api/history/{session_id}")
async def api_delete_session(session_id: str):
    if manager.delete_from_history(session_id):
        return {"status": "ok"}
    return _error("Session not found", 404)


@app.post("/api/suggestions/{suggestion_id}/activate")
async def api_activate_suggestion(suggestion_id: str):
    message = manager.activate(suggestion_id)
    if message is None:
        return _error("Suggestion not found", 404)
    return {"status": "ok", "message": message.to_dict()}


@app.post("/api/model")
async def api_set_model(request: Request):
    try:
        data = await request.json()
    except Exception:
        return _error("Invalid JSON", 400)
    model = data.get("model") if isinstance(data, dict) else None
    if not isinstance(model, str) or not model.strip():
        return _error("model is required", 400)
    try:
        selected = manager.set_model(model)
    except ValueError as e:
        return _error(str(e), 400)
    return {"status": "ok", "model": selected}


@app.post("/api/model/cycle")
async def api_cycle_model():
    return {"status": "ok", "model": manager.cycle_model()}


@app.get("/api/settings")
def get_settings():
    return {"status": "ok", "config": _public_config(config)}


# ============================================
# WEBSOCKET
# ============================================

async def _handle_ws_command(msg: dict, websocket: WebSocket) -> Optional[dict]:
    msg_type = msg.get("type")
    if msg_type == "send":
        text = msg.get("text")
        if not isinstance(text, str) or not text.strip():
            return {"type": "error", "message": "Text must not be empty"}
        try:
            image_data = _decode_image(msg.get("image_base64"))
        except ValueError as e:
            return {"type": "error", "message": str(e)}
        manager.send(text, image_data=image_data)
    elif msg_type == "cancel":
        manager.cancel()
    elif msg_type == "activate":
        if manager.activate(str(msg.get("id") or "")) is None:
            return {"type": "error", "message": "Suggestion not found"}
    elif msg_type == "new_session":
        manager.start_new_session()
    elif msg_type == "voice_start":
        manager.start_voice_mode(owner=websocket)
    elif msg_type == "voice_stop":
        manager.stop_voice_mode()
    else:
        return {"type": "error", "message": f"Unknown command: {msg_type}"}
    return None


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    logger.info("WebSocket connected")
    log_important("ws.connected")

    send_lock = asyncio.Lock()
    dirty = asyncio.Event()

    async def push_state_loop():
        while True:
            await dirty.wait()
            dirty.clear()
            if not await _ws_send_json(websocket, {"type": "state", **manager.snapshot()}, send_lock):
                return

    remove_listener = manager.add_listener(dirty.set)
    push_task = asyncio.create_task(push_state_loop())
    dirty.set()

    try:
        while True:
            message = await websocket.receive()
            if message.get("type") == "websocket.disconnect":
                break
            frame = message.get("bytes")
            if frame is not None:
                manager.push_audio(frame, owner=websocket)
                continue
            try:
                msg = json.loads(message.get("text") or "")
            except json.JSONDecodeError:
                await _ws_send_json(websocket, {"type": "error", "message": "Invalid JSON"}, send_lock)
                continue
            if not isinstance(msg, dict):
                await _ws_send_json(websocket, {"type": "error", "message": "Command must be an object"}, send_lock)
                continue
            reply = await _handle_ws_command(msg, websocket)
            if reply is not None:
                await _ws_send_json(websocket, reply, send_lock)
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("WebSocket crashed")
    finally:
        remove_listener()
        push_task.cancel()
        with suppress(asyncio.CancelledError):
            await push_task
        # Other connections keep their own audio stream.
        manager.stop_voice_mode(owner=websocket)
        logger.info("WebSocket disconnected")
        log_important("ws.disconnected")


def find_available_port(host: str, preferred_port: int) -> int:
    for port in range(preferred_port, preferred_port + 100):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind((host, port))
                return port
            except OSError:
                continue

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return int(s.getsockname()[1])


def start_server(host: str, port: int):
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    try:
        server_host = "127.0.0.1"
        preferred_port = int(os.environ.get("AMBIENT_OVERLAY_PORT", "8000"))
        server_port = find_available_port(server_host, preferred_port)
        logger.info(f"Starting server on http://{server_host}:{server_port}")
        start_server(server_host, server_port)
    except KeyboardInterrupt:
        logger.info("Stopping...")
    except Exception:
        logger.exception("Fatal error during startup:")
        sys.exit(1)
